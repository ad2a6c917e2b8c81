"""Scripted pinentry for the private gpg-agent.

The agent spawns this program whenever it needs a passphrase. Instead of
asking a human, it answers from the ``PINENTRY_USER_DATA`` environment
variable, a JSON list of ``{"key_id", "fingerprint", "passphrase"}``
objects written by :class:`gpgpipe.gnupg.GnuPG`. Each passphrase is offered
at most once per solicited key so a wrong one turns into a
BAD_PASSPHRASE instead of an endless retry loop.

Protocol lines are Assuan-style: requests on stdin, ``OK``/``D`` replies on
stdout.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import re
import sys
from typing import BinaryIO
from urllib.parse import quote_from_bytes, unquote

from .byteutils import cut, strlen, substr

logger = logging.getLogger(__name__)

CHUNK_SIZE = 8192
MAX_DATA_LENGTH = 997

VERBOSITY_NONE = 0
VERBOSITY_ERRORS = 1
VERBOSITY_ALL = 2

# GPG_ERR_ASS_UNKNOWN_CMD in the assuan error source
ERR_UNKNOWN_COMMAND = 536871187

_DESCRIPTION_PATTERN = re.compile(r'\n"(.+)"\n.*\sID ([A-Z0-9]+),\n')
_NO_OP_COMMANDS = frozenset(
    {
        "SETPROMPT",
        "SETERROR",
        "SETOK",
        "SETNOTOK",
        "SETCANCEL",
        "SETQUALITYBAR",
        "SETQUALITYBAR_TT",
        "SETKEYINFO",
        "SETTITLE",
        "SETREPEAT",
        "SETREPEATERROR",
        "SETTIMEOUT",
        "SETGENPIN",
        "SETGENPIN_TT",
        "OPTION",
    }
)


def get_ok(data: str | None = None) -> bytes:
    line = "OK"
    if data:
        line += f" {data}"
    return (line + "\n").encode("utf-8")


def get_error(code: int, message: str) -> bytes:
    return f"ERR {code} {message}\n".encode("utf-8")


def get_word_wrapped_data(data: bytes, prefix: bytes) -> bytes:
    """Split ``data`` into ``prefix``-led lines of at most 997 payload bytes.

    Every line but the last ends in a backslash. Cuts never fall inside a
    UTF-8 sequence.
    """
    lines = []
    while True:
        if strlen(data) > MAX_DATA_LENGTH:
            chunk = cut(data, MAX_DATA_LENGTH - 1)
            lines.append(prefix + b" " + chunk + b"\\\n")
            data = substr(data, strlen(chunk))
        else:
            lines.append(prefix + b" " + data + b"\n")
            break
    return b"".join(lines)


def get_data(data: str | bytes) -> bytes:
    """Percent-escape ``data`` and wrap it into ``D`` lines."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return get_word_wrapped_data(quote_from_bytes(data, safe="-_.~").encode("ascii"), b"D")


def get_comment(data: str | bytes) -> bytes:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return get_word_wrapped_data(data, b"#")


class PinEntry:
    """Answers one agent session over ``stdin``/``stdout``."""

    def __init__(
        self,
        stdin: BinaryIO,
        stdout: BinaryIO,
        environ: dict[str, str] | None = None,
    ) -> None:
        self._stdin = stdin
        self._stdout = stdout
        self._environ = os.environ if environ is None else environ
        self.pins: list[dict[str, str]] = []
        self.tried_pins: set[str] = set()
        self.current_pin: dict[str, str] | None = None
        self.moribund = False

    def run(self) -> None:
        self.connect()
        self.init_pins_from_env()

        while True:
            raw = self._stdin.readline(CHUNK_SIZE)
            if not raw:
                break
            if raw.endswith(b"\n"):
                raw = raw[:-1]
            self.parse_command(raw.decode("utf-8", errors="replace"))
            if self.moribund:
                break

        self.disconnect()

    def connect(self) -> None:
        # initial handshake
        self.send(get_ok("gpgpipe pinentry ready and waiting"))

    def disconnect(self) -> None:
        logger.debug("-- disconnecting")
        self._stdout.flush()

    def init_pins_from_env(self) -> None:
        user_data = self._environ.get("PINENTRY_USER_DATA")
        if user_data is None:
            return

        try:
            pins = json.loads(user_data)
        except ValueError:
            logger.error("-- failed to parse user data")
            return

        if not isinstance(pins, list):
            logger.error("-- failed to parse user data")
            return

        self.pins = [pin for pin in pins if isinstance(pin, dict) and "key_id" in pin]
        logger.debug("-- got user data [not showing passphrases]")

    def parse_command(self, line: str) -> None:
        logger.debug("<- %s", line)

        command, _, data = line.partition(" ")

        # blank and comment lines get no reply
        if not command or command.startswith("#"):
            return

        if command == "SETDESC":
            self.send_set_description(data)
        elif command in _NO_OP_COMMANDS:
            self.send(get_ok())
        elif command in ("MESSAGE", "CONFIRM"):
            self.send_button_info("close")
        elif command == "GETINFO":
            self.send_get_info(data)
        elif command == "GETPIN":
            self.send_get_pin()
        elif command == "RESET":
            self.send_reset()
        elif command == "BYE":
            self.send_bye()
        else:
            self.send(get_error(ERR_UNKNOWN_COMMAND, "Unknown IPC command"))

    def send_set_description(self, text: str) -> None:
        text = unquote(text)
        match = _DESCRIPTION_PATTERN.search(text)
        if match:
            user_id, key_id = match.group(1), match.group(2)
            # only a newly requested key resets the tried pins
            if self.current_pin is None or self.current_pin["key_id"] != key_id:
                self.current_pin = {"user_id": user_id, "key_id": key_id}
                self.tried_pins = set()
                logger.debug("-- looking for PIN for %s", key_id)

        self.send(get_ok())

    def send_button_info(self, text: str) -> None:
        self.send(f"S BUTTON_INFO {text}\n".encode())
        self.send(get_ok())

    def send_get_pin(self) -> None:
        found_pin = ""

        if self.current_pin is not None:
            wanted = self.current_pin["key_id"]
            for pin in self.pins:
                key_id = str(pin["key_id"])
                if key_id in self.tried_pins:
                    continue
                # short key ids are suffixes of long ids and fingerprints
                if key_id[-len(wanted) :] == wanted:
                    found_pin = pin.get("passphrase") or ""
                    self.tried_pins.add(key_id)
                    break

        self.send(get_data(found_pin))
        self.send(get_ok())

    def send_get_info(self, data: str) -> None:
        command = data.split(" ", 1)[0]
        if command == "pid":
            self.send(get_data(str(os.getpid())))
        self.send(get_ok())

    def send_reset(self) -> None:
        self.current_pin = None
        self.tried_pins = set()
        self.send(get_ok())

    def send_bye(self) -> None:
        self.send(get_ok("closing connection"))
        self.moribund = True

    def send(self, data: bytes) -> None:
        if data.startswith(b"D "):
            logger.debug("-> D [not showing data]")
        else:
            logger.debug("-> %s", data.decode("utf-8", errors="replace").rstrip("\n"))
        self._stdout.write(data)
        self._stdout.flush()


def setup_relay_logging(verbosity: int, log_path: str | None) -> logging.Handler:
    """Route relay logs to ``log_path`` (truncated) or stderr.

    Raises OSError if the log file cannot be opened.
    """
    verbosity = min(verbosity, VERBOSITY_ALL)
    if log_path:
        handler: logging.Handler = logging.FileHandler(log_path, mode="w")
    else:
        handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(message)s"))

    relay_logger = logging.getLogger("gpgpipe")
    relay_logger.addHandler(handler)
    if verbosity >= VERBOSITY_ALL:
        relay_logger.setLevel(logging.DEBUG)
    elif verbosity == VERBOSITY_ERRORS:
        relay_logger.setLevel(logging.ERROR)
    else:
        relay_logger.setLevel(logging.CRITICAL + 1)
    return handler


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gpgpipe-pinentry",
        description="Non-interactive pinentry answering from PINENTRY_USER_DATA",
    )
    parser.add_argument("-l", "--log", metavar="FILE", help="Write the log to FILE instead of stderr")
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Log errors (-v) or all protocol traffic (-vv)",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    args = create_parser().parse_args(argv)

    try:
        handler = setup_relay_logging(args.verbose, args.log)
    except OSError:
        if args.verbose >= VERBOSITY_ERRORS:
            sys.stderr.write(f'Unable to open log file "{args.log}" for writing.\n')
        return 1

    try:
        PinEntry(sys.stdin.buffer, sys.stdout.buffer).run()
    except Exception:
        logger.exception("pinentry failed")
        return 1
    finally:
        handler.close()
        logging.getLogger("gpgpipe").removeHandler(handler)

    return 0


if __name__ == "__main__":
    sys.exit(main())
