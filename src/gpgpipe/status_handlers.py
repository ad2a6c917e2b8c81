"""Line handlers for the gpg status and error channels.

Each handler receives one complete line with the ``[GNUPG:] `` prefix
already removed, splits it on single spaces and acts on the first token.
Handlers only record state while the subprocess runs; callers inspect that
state once :meth:`Engine.run` has returned.
"""

from __future__ import annotations

import logging
import re
from datetime import UTC, datetime
from typing import TYPE_CHECKING
from urllib.parse import unquote_to_bytes

from .errors import (
    BadPassphraseError,
    ErrorCode,
    GPGPipeError,
    KeyNotFoundError,
    NoDataError,
)
from .types import KeyImportResult, KeyRef, Signature, UserId

if TYPE_CHECKING:
    from .engine import Engine

logger = logging.getLogger(__name__)

STATUS_PREFIX = "[GNUPG:] "

_ERROR_PATTERNS: list[tuple[re.Pattern[str], ErrorCode]] = [
    (re.compile(r"no valid OpenPGP data found"), ErrorCode.NO_DATA),
    (re.compile(r"No secret key|secret key not available"), ErrorCode.KEY_NOT_FOUND),
    (re.compile(r"No public key|public key not found"), ErrorCode.KEY_NOT_FOUND),
]
_FILE_PATTERN = re.compile(r"can't (?:access|open) [`'](.*?)'")

_BAD_SIGNATURE_TOKENS = frozenset({"EXPSIG", "EXPKEYSIG", "REVKEYSIG", "BADSIG"})
_SIGNATURE_TOKENS = frozenset({"GOODSIG"}) | _BAD_SIGNATURE_TOKENS


def percent_decode(text: str) -> str:
    """Undo the ``%XX`` escaping gpg applies to user ids in status lines."""
    return unquote_to_bytes(text).decode("utf-8", errors="replace")


def parse_timestamp(value: str) -> datetime | None:
    """Parse a status-line timestamp: epoch seconds or ``YYYYMMDDTHHMMSS``.

    ``0`` and empty fields mean "not set".
    """
    if not value or value == "0":
        return None
    try:
        if "T" not in value:
            return datetime.fromtimestamp(int(value), tz=UTC)
        return datetime.strptime(value, "%Y%m%dT%H%M%S").replace(tzinfo=UTC)
    except ValueError:
        logger.debug("unparseable timestamp in status line: %s", value)
        return None


class ErrorStatusClassifier:
    """Default handlers installed on every run.

    The status side lets a later line overwrite an earlier code. The error
    side only classifies while no code has been recorded yet.
    """

    def __init__(self) -> None:
        self.error_code = ErrorCode.NONE
        self.error_filename = ""
        self.error_key_id = ""
        self.need_passphrase = 0

    def handle_status(self, line: str) -> None:
        tokens = line.split(" ")
        token = tokens[0]

        if token == "BAD_PASSPHRASE":
            self.error_code = ErrorCode.BAD_PASSPHRASE
        elif token == "MISSING_PASSPHRASE":
            self.error_code = ErrorCode.MISSING_PASSPHRASE
        elif token == "NODATA":
            self.error_code = ErrorCode.NO_DATA
        elif token == "DELETE_PROBLEM":
            reason = tokens[1] if len(tokens) > 1 else ""
            if reason == "1":
                self.error_code = ErrorCode.KEY_NOT_FOUND
            elif reason == "2":
                self.error_code = ErrorCode.DELETE_PRIVATE_KEY
        elif token == "IMPORT_RES":
            if _int_field(tokens, 12) > 0:
                self.error_code = ErrorCode.DUPLICATE_KEY
        elif token in ("NO_PUBKEY", "NO_SECKEY"):
            self.error_key_id = tokens[1] if len(tokens) > 1 else ""
            self.error_code = ErrorCode.KEY_NOT_FOUND
        elif token == "NEED_PASSPHRASE":
            self.need_passphrase += 1
        elif token == "GOOD_PASSPHRASE":
            self.need_passphrase -= 1
        elif token in _BAD_SIGNATURE_TOKENS:
            self.error_code = ErrorCode.BAD_SIGNATURE

    def handle_error(self, line: str) -> None:
        if self.error_code != ErrorCode.NONE:
            return

        for pattern, code in _ERROR_PATTERNS:
            if pattern.search(line):
                self.error_code = code
                return

        match = _FILE_PATTERN.search(line)
        if match:
            self.error_filename = match.group(1)
            self.error_code = ErrorCode.FILE_PERMISSIONS


class DecryptStatusHandler:
    """Answers passphrase prompts during decryption and decides, after the
    run, which error (if any) the caller should see.

    ``keys`` is the caller's decrypt-key map, keyed by sub-key id.
    """

    def __init__(self, engine: Engine, keys: dict[str, KeyRef]) -> None:
        self._engine = engine
        self._keys = keys
        self.current_sub_key_id = ""
        self.decryption_okay = True
        self.no_data = False
        self.missing_passphrases: set[str] = set()
        self.bad_passphrases: dict[str, str] = {}
        self.missing_keys: dict[str, str] = {}

    def handle(self, line: str) -> None:
        tokens = line.split(" ")
        token = tokens[0]
        key_id = tokens[1] if len(tokens) > 1 else ""

        if token == "ENC_TO":
            # encrypted message: only DECRYPTION_OKAY clears this again
            self.decryption_okay = False
            self.current_sub_key_id = key_id
        elif token == "NEED_PASSPHRASE":
            key = self._keys.get(key_id)
            if key is not None and key.passphrase is not None:
                self._engine.send_command(key.passphrase.get())
            else:
                self._engine.send_command("")
        elif token == "USERID_HINT" and key_id:
            self.bad_passphrases[key_id] = " ".join(tokens[2:])
        elif token == "GOOD_PASSPHRASE":
            self.bad_passphrases.pop(self.current_sub_key_id, None)
        elif token == "MISSING_PASSPHRASE":
            self.missing_passphrases.add(self.current_sub_key_id)
        elif token == "NO_SECKEY":
            # also sent for other recipients once one key has worked
            self.missing_keys[key_id] = key_id
        elif token == "NODATA":
            self.no_data = True
        elif token == "DECRYPTION_OKAY":
            self.decryption_okay = True

    def get_error_code(self) -> ErrorCode:
        if not self.decryption_okay:
            if self.bad_passphrases:
                return ErrorCode.BAD_PASSPHRASE
            if self.missing_keys:
                return ErrorCode.KEY_NOT_FOUND
            return ErrorCode.UNKNOWN
        if self.no_data:
            return ErrorCode.NO_DATA
        return ErrorCode.NONE

    def throw_exception(self) -> None:
        """Raise the error matching the recorded state, or return quietly."""
        code = self.get_error_code()

        if code == ErrorCode.NONE:
            return

        if code == ErrorCode.KEY_NOT_FOUND:
            key_ids = list(self.missing_keys)
            raise KeyNotFoundError(
                "Cannot decrypt data. No suitable private key is in the keyring. "
                "Import a suitable private key before trying to decrypt this data. "
                f"Missing keys: {', '.join(key_ids)}.",
                key_id=key_ids[0],
            )

        if code == ErrorCode.BAD_PASSPHRASE:
            incorrect = {
                key_id: hint
                for key_id, hint in self.bad_passphrases.items()
                if key_id not in self.missing_passphrases
            }
            missing = {
                key_id: hint
                for key_id, hint in self.bad_passphrases.items()
                if key_id in self.missing_passphrases
            }
            message = "Cannot decrypt data."
            if incorrect:
                message += ' Incorrect passphrase provided for keys: "{}".'.format(
                    '", "'.join(incorrect.values())
                )
            if missing:
                message += ' No passphrase provided for keys: "{}".'.format(
                    '", "'.join(missing.values())
                )
            raise BadPassphraseError(message, key_ids=list(self.bad_passphrases))

        if code == ErrorCode.NO_DATA:
            raise NoDataError(
                "Cannot decrypt data. No PGP encrypted data was found in the provided data."
            )

        raise GPGPipeError("Unknown error decrypting data.", code=ErrorCode.UNKNOWN)


class VerifyStatusHandler:
    """Builds :class:`Signature` records from verify status lines.

    SIG_ID arrives before the line that opens its signature, so it is held
    until the next record is created. VALIDSIG fills in the most recent one.
    """

    def __init__(self) -> None:
        self.signatures: list[Signature] = []
        self._signature_id = ""

    def handle(self, line: str) -> None:
        tokens = line.split(" ")
        token = tokens[0]
        key = tokens[1] if len(tokens) > 1 else ""

        if token in _SIGNATURE_TOKENS:
            signature = self._new_signature(key)
            signature.user_id = UserId.parse(percent_decode(" ".join(tokens[2:])))
        elif token == "ERRSIG":
            self._new_signature(key)
        elif token == "VALIDSIG":
            if not self.signatures or not key:
                return
            signature = self.signatures[-1]
            signature.valid = True
            signature.fingerprint = key
            signature.key_id = key[-16:]
            if len(tokens) > 3:
                signature.creation_date = parse_timestamp(tokens[3])
            if len(tokens) > 4:
                signature.expiration_date = parse_timestamp(tokens[4])
        elif token == "SIG_ID":
            self._signature_id = key

    def _new_signature(self, key: str) -> Signature:
        signature = Signature()
        if self._signature_id:
            signature.id = self._signature_id
            self._signature_id = ""

        # key ids are 8 or 16 hex digits, fingerprints 40
        if len(key) > 16:
            signature.fingerprint = key
            signature.key_id = key[-16:]
        else:
            signature.key_id = key

        self.signatures.append(signature)
        return signature


class SignStatusHandler:
    """Feeds sign-key passphrases to gpg over the command channel."""

    def __init__(self, engine: Engine, keys: dict[str, KeyRef]) -> None:
        self._engine = engine
        self._keys = keys

    def handle(self, line: str) -> None:
        tokens = line.split(" ")
        if tokens[0] != "NEED_PASSPHRASE":
            return
        key = self._keys.get(tokens[1]) if len(tokens) > 1 else None
        if key is not None and key.passphrase is not None:
            self._engine.send_command(key.passphrase.get())
        else:
            self._engine.send_command("")


class ImportStatusHandler:
    def __init__(self, result: KeyImportResult | None = None) -> None:
        self.result = result or KeyImportResult()

    def handle(self, line: str) -> None:
        tokens = line.split(" ")
        if tokens[0] == "IMPORT_OK":
            if len(tokens) > 2:
                self.result.fingerprint = tokens[2]
        elif tokens[0] == "IMPORT_RES":
            self.result.public_imported = _int_field(tokens, 3)
            self.result.public_unchanged = _int_field(tokens, 5)
            self.result.private_imported = _int_field(tokens, 11)
            self.result.private_unchanged = _int_field(tokens, 12)


def _int_field(tokens: list[str], index: int) -> int:
    if index >= len(tokens):
        return 0
    try:
        return int(tokens[index])
    except ValueError:
        return 0
