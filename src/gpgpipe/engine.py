"""Subprocess engine for the gpg binary.

The engine starts ``gpg`` with six pipes (input, output, error, status,
command, message), shuttles bytes between them and the caller's buffers in
a single ``select()`` loop, and feeds complete status and error lines to
registered handlers while the subprocess is still running. Handlers can
answer prompts through :meth:`Engine.send_command`.

For GnuPG 2.x a private ``gpg-agent`` is started first, pointed at the
``gpgpipe-pinentry`` relay, and stopped again once the run is over.
"""

from __future__ import annotations

import io
import logging
import os
import re
import select
import shlex
import subprocess
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO

from .config import (
    EngineOptions,
    ensure_homedir,
    find_executable,
    find_pinentry,
    get_gnupghome,
    is_writable,
)
from .errors import ErrorCode, SubprocessIOError, UsageError, VersionError
from .process_control import ProcessControl
from .status_handlers import STATUS_PREFIX, ErrorStatusClassifier
from .types import AgentInfo, Channel

logger = logging.getLogger(__name__)

CHUNK_SIZE = 8192
MIN_VERSION = "1.0.2"

LineHandler = Callable[[str], None]
Source = bytes | bytearray | str | BinaryIO
Sink = bytearray | BinaryIO

_STATUS_PREFIX_BYTES = STATUS_PREFIX.encode("ascii")
_VERSION_PATTERN = re.compile(r"gpg \(GnuPG[A-Za-z0-9/]*?\) (\S+)")
_AGENT_POLL_INTERVAL = 0.01


def parse_version(version: str) -> tuple[int, ...]:
    """Turn ``"2.2.40"`` (or ``"2.5.0-beta12"``) into a comparable tuple."""
    parts = []
    for part in version.split("."):
        digits = re.match(r"\d+", part)
        if digits is None:
            break
        parts.append(int(digits.group()))
    return tuple(parts)


def version_at_least(version: str, minimum: str) -> bool:
    return parse_version(version) >= parse_version(minimum)


def _fileno(stream: object) -> int | None:
    """Descriptor usable with select(), or None for in-memory streams."""
    try:
        return stream.fileno()  # type: ignore[attr-defined]
    except (AttributeError, OSError, io.UnsupportedOperation):
        return None


@dataclass
class RunContext:
    """Everything owned by one :meth:`Engine.run` call.

    ``pipes`` holds the parent-side descriptors still open. The teardown
    step closes whatever is left.
    """

    process: subprocess.Popen[bytes]
    pipes: dict[Channel, int]
    input_buffer: bytearray = field(default_factory=bytearray)
    message_buffer: bytearray = field(default_factory=bytearray)
    output_buffer: bytearray = field(default_factory=bytearray)
    error_buffer: bytearray = field(default_factory=bytearray)
    status_buffer: bytearray = field(default_factory=bytearray)
    command_buffer: bytearray = field(default_factory=bytearray)
    input_complete: bool = True
    message_complete: bool = True

    def is_open(self, channel: Channel) -> bool:
        return channel in self.pipes

    def fd(self, channel: Channel) -> int:
        return self.pipes[channel]

    def close(self, channel: Channel) -> None:
        fd = self.pipes.pop(channel, None)
        if fd is not None:
            logger.debug("=> closing GPG %s pipe", channel.name.lower())
            os.close(fd)

    def close_all(self) -> None:
        for channel in list(self.pipes):
            self.close(channel)


class Engine:
    """Drives one gpg subprocess per :meth:`run`.

    Typical use::

        engine.reset()
        engine.set_operation("--decrypt")
        engine.set_input(ciphertext)
        engine.set_output(plaintext)
        engine.add_status_handler(handler.handle)
        engine.run()
        code = engine.get_error_code()
    """

    MESSAGE_FILENAME = "-&message"

    def __init__(self, options: EngineOptions | None = None) -> None:
        self._options = options or EngineOptions()
        self._homedir = ensure_homedir(self._options.homedir or get_gnupghome()).unwrap()
        self._binary = find_executable("gpg", self._options.binary).unwrap()
        self._agent_binary: Path | None = None
        self._pinentry: Path | None = None

        self._version = ""
        self._agent_info: AgentInfo | None = None
        self._pinentry_user_data: str | None = None
        self._context: RunContext | None = None

        self._operation: list[str] = []
        self._arguments: list[str] = []
        self._input: Source | None = None
        self._message: Source | None = None
        self._output: Sink = bytearray()
        self._status_handlers: list[LineHandler] = []
        self._error_handlers: list[LineHandler] = []
        self._classifier = ErrorStatusClassifier()

        self.reset()

    @property
    def options(self) -> EngineOptions:
        return self._options

    @property
    def homedir(self) -> Path:
        return self._homedir

    @property
    def binary(self) -> Path:
        return self._binary

    @property
    def agent_info(self) -> AgentInfo | None:
        return self._agent_info

    # Operation setup

    def reset(self) -> None:
        """Forget the previous operation and reinstall the default handlers."""
        self._operation = []
        self._arguments = []
        self._input = None
        self._message = None
        self._output = bytearray()
        self._classifier = ErrorStatusClassifier()

        self._status_handlers = []
        self._error_handlers = []
        self.add_status_handler(self._classifier.handle_status)
        self.add_error_handler(self._classifier.handle_error)

        if self._options.debug:
            self.add_status_handler(self._debug_status)
            self.add_error_handler(self._debug_error)

    def set_operation(self, operation: str | list[str], arguments: list[str] | None = None) -> None:
        if isinstance(operation, str):
            operation = shlex.split(operation)
        self._operation = list(operation)
        self._arguments = list(arguments or [])

    def set_input(self, source: Source | None) -> None:
        self._input = source

    def set_message(self, source: Source | None) -> None:
        self._message = source

    def set_output(self, sink: Sink) -> None:
        """Bind the output sink. A ``bytearray`` is filled in place."""
        self._output = sink

    def set_pinentry_user_data(self, data: str | None) -> None:
        """Value exported as ``PINENTRY_USER_DATA`` for the next run."""
        self._pinentry_user_data = data

    def add_status_handler(self, callback: Callable[..., None], *args: object) -> None:
        self._status_handlers.append(lambda line: callback(line, *args))

    def add_error_handler(self, callback: Callable[..., None], *args: object) -> None:
        self._error_handlers.append(lambda line: callback(line, *args))

    def send_command(self, command: str) -> None:
        """Queue a line for the command channel, if it is still open."""
        context = self._context
        if context is not None and context.is_open(Channel.COMMAND):
            context.command_buffer += command.encode("utf-8") + b"\n"

    # Results

    def get_error_code(self) -> ErrorCode:
        return self._classifier.error_code

    def get_error_filename(self) -> str:
        return self._classifier.error_filename

    def get_error_key_id(self) -> str:
        return self._classifier.error_key_id

    def get_version(self) -> str:
        """Version of the gpg binary, read once and cached."""
        if self._version:
            return self._version

        version_check = Engine(self._options)
        # preset so the check does not look up its own version
        version_check._version = "1.0.0"
        info = bytearray()
        version_check.set_output(info)
        version_check.set_operation(["--version", "--no-permission-warning"])
        version_check.run()

        code = version_check.get_error_code()
        if code != ErrorCode.NONE:
            raise VersionError(f"Unknown error getting GnuPG version information (code {code.name}).")

        match = _VERSION_PATTERN.search(info.decode("utf-8", errors="replace"))
        if match is None:
            raise VersionError(
                f'No GnuPG version information provided by the binary "{self._binary}". '
                "Are you sure it is GnuPG?"
            )

        version = match.group(1)
        if not version_at_least(version, MIN_VERSION):
            raise VersionError(
                f"The version of GnuPG being used ({version}) is not supported. "
                f"The minimum version required is {MIN_VERSION}.",
                version=version,
            )

        self._version = version
        return version

    # Running

    def run(self) -> None:
        if not self._operation:
            raise UsageError(
                "No GPG operation specified. Use Engine.set_operation() before calling Engine.run()."
            )

        try:
            self._context = self._open_subprocess()
            self._process(self._context)
        finally:
            self._close_subprocess()

    def _open_subprocess(self) -> RunContext:
        version = self.get_version()

        env = os.environ.copy()
        # error-line classification relies on English diagnostics
        env["LC_ALL"] = "C"

        if version_at_least(version, "2.0.0"):
            self._launch_agent(version, env)
            if self._agent_info is not None:
                env["GPG_AGENT_INFO"] = str(self._agent_info)

        if self._pinentry_user_data is not None:
            env["PINENTRY_USER_DATA"] = self._pinentry_user_data
        else:
            env.pop("PINENTRY_USER_DATA", None)

        stdin_r, stdin_w = os.pipe()
        stdout_r, stdout_w = os.pipe()
        stderr_r, stderr_w = os.pipe()
        status_r, status_w = os.pipe()
        command_r, command_w = os.pipe()
        message_r, message_w = os.pipe()
        child_ends = [stdin_r, stdout_w, stderr_w, status_w, command_r, message_r]
        pipes = {
            Channel.INPUT: stdin_w,
            Channel.OUTPUT: stdout_r,
            Channel.ERROR: stderr_r,
            Channel.STATUS: status_r,
            Channel.COMMAND: command_w,
            Channel.MESSAGE: message_w,
        }

        argv = self._build_command_line(version, status_w, command_r, message_r)
        logger.debug("OPENING GPG SUBPROCESS WITH THE FOLLOWING COMMAND:")
        logger.debug(shlex.join(argv))

        try:
            process = subprocess.Popen(
                argv,
                stdin=stdin_r,
                stdout=stdout_w,
                stderr=stderr_w,
                pass_fds=(status_w, command_r, message_r),
                env=env,
            )
        except OSError as e:
            for fd in [*child_ends, *pipes.values()]:
                os.close(fd)
            raise SubprocessIOError(f"Unable to open GPG subprocess. ({shlex.join(argv)})", cause=e) from e

        # the child holds its own copies now
        for fd in child_ends:
            os.close(fd)

        for fd in pipes.values():
            os.set_blocking(fd, False)

        self._classifier.error_code = ErrorCode.NONE
        return RunContext(process=process, pipes=pipes)

    def _build_command_line(
        self, version: str, status_fd: int, command_fd: int, message_fd: int
    ) -> list[str]:
        arguments = [
            "--status-fd",
            str(status_fd),
            "--command-fd",
            str(command_fd),
            "--no-secmem-warning",
            "--no-tty",
            "--no-default-keyring",  # ignored if keyring files are not specified
            "--no-options",
        ]

        if version_at_least(version, "1.0.7"):
            if not version_at_least(version, "2.0.0"):
                arguments.append("--no-use-agent")
            arguments.append("--no-permission-warning")

        if version_at_least(version, "1.4.2"):
            arguments.append("--exit-on-status-write-error")

        if version_at_least(version, "1.3.2"):
            arguments.extend(["--trust-model", "always"])
        else:
            arguments.append("--always-trust")

        arguments.extend(self._arguments)

        arguments.extend(["--homedir", str(self._homedir)])
        # the random seed file speeds up later runs, only skip it when forced to
        if not is_writable(self._homedir):
            arguments.append("--no-random-seed-file")

        message_filename = f"-&{message_fd}"
        operation = [message_filename if token == self.MESSAGE_FILENAME else token for token in self._operation]

        return [str(self._binary), *arguments, *operation]

    def _process(self, context: RunContext) -> None:
        """The I/O loop. Runs until every channel is drained or closed."""
        logger.debug("BEGIN PROCESSING")

        input_stream = self._prepare_source(self._input, context.input_buffer)
        context.input_complete = input_stream is None
        message_stream = self._prepare_source(self._message, context.message_buffer)
        context.message_complete = message_stream is None

        output = self._output
        output_bytes = output if isinstance(output, bytearray) else None
        output_stream = None if isinstance(output, bytearray) else output

        # select loop delay in microseconds
        delay = 0

        while True:
            read_fds: dict[int, str] = {}
            write_fds: dict[int, str] = {}
            always_read: list[str] = []
            always_write: list[str] = []

            def want(name: str, fd: int | None, fds: dict[int, str], always: list[str]) -> None:
                if fd is None:
                    always.append(name)
                else:
                    fds[fd] = name

            if input_stream is not None and not context.input_complete:
                want("input", _fileno(input_stream), read_fds, always_read)

            if not context.input_buffer and context.input_complete:
                context.close(Channel.INPUT)

            if message_stream is not None and not context.message_complete:
                want("message", _fileno(message_stream), read_fds, always_read)

            if not context.message_buffer and context.message_complete:
                context.close(Channel.MESSAGE)

            for channel in (Channel.OUTPUT, Channel.STATUS, Channel.ERROR):
                if context.is_open(channel):
                    read_fds[context.fd(channel)] = channel.name

            if context.output_buffer and output_stream is not None:
                want("output", _fileno(output_stream), write_fds, always_write)

            for channel, buffer in (
                (Channel.COMMAND, context.command_buffer),
                (Channel.MESSAGE, context.message_buffer),
                (Channel.INPUT, context.input_buffer),
            ):
                if buffer and context.is_open(channel):
                    write_fds[context.fd(channel)] = channel.name

            # no streams left to read or write, we're all done
            if not (read_fds or write_fds or always_read or always_write):
                break

            timeout = 0 if (always_read or always_write) else None
            logger.debug("selecting streams")
            try:
                ready_r, ready_w, _ = select.select(list(read_fds), list(write_fds), [], timeout)
            except (OSError, ValueError) as e:
                raise SubprocessIOError(
                    "Error selecting stream for communication with GPG subprocess.", cause=e
                ) from e

            if timeout is None and not ready_r and not ready_w:
                raise SubprocessIOError("select() returned 0. This can not happen!")

            readable = {read_fds[fd] for fd in ready_r} | set(always_read)
            writable = {write_fds[fd] for fd in ready_w} | set(always_write)
            logger.debug("=> got %d", len(readable) + len(writable))

            if Channel.INPUT.name in writable:
                self._write_pipe(context, Channel.INPUT, context.input_buffer)

            if "input" in readable:
                chunk = input_stream.read(CHUNK_SIZE) or b""  # type: ignore[union-attr]
                logger.debug("=> read %d bytes from input stream", len(chunk))
                if chunk:
                    context.input_buffer += chunk
                else:
                    context.input_complete = True

            if Channel.MESSAGE.name in writable:
                self._write_pipe(context, Channel.MESSAGE, context.message_buffer)

            if "message" in readable:
                chunk = message_stream.read(CHUNK_SIZE) or b""  # type: ignore[union-attr]
                logger.debug("=> read %d bytes from message stream", len(chunk))
                if chunk:
                    context.message_buffer += chunk
                else:
                    context.message_complete = True

            if Channel.OUTPUT.name in readable:
                chunk = self._read_pipe(context, Channel.OUTPUT)
                if output_bytes is not None:
                    output_bytes += chunk
                else:
                    context.output_buffer += chunk

            if "output" in writable:
                chunk = bytes(context.output_buffer[:CHUNK_SIZE])
                written = output_stream.write(chunk)  # type: ignore[union-attr]
                if written is None:
                    written = len(chunk)
                logger.debug("=> wrote %d bytes to output stream", written)
                del context.output_buffer[:written]

            if Channel.ERROR.name in readable:
                context.error_buffer += self._read_pipe(context, Channel.ERROR)
                for line in self._split_lines(context.error_buffer):
                    self._dispatch(self._error_handlers, line)

            if Channel.STATUS.name in readable:
                context.status_buffer += self._read_pipe(context, Channel.STATUS)
                for line in self._split_lines(context.status_buffer):
                    # only lines with the magic prefix are protocol lines
                    if line.startswith(_STATUS_PREFIX_BYTES):
                        self._dispatch(self._status_handlers, line[len(_STATUS_PREFIX_BYTES) :])

            if Channel.COMMAND.name in writable:
                self._write_pipe(context, Channel.COMMAND, context.command_buffer)

            if not writable or not readable:
                # I/O imbalance, back off a little
                delay += 10
            else:
                delay = max(0, delay - 8)

            if delay > 0:
                time.sleep(delay / 1_000_000)

        # flush whatever a stream sink did not take yet
        if output_stream is not None and context.output_buffer:
            output_stream.write(bytes(context.output_buffer))
            context.output_buffer.clear()

        logger.debug("END PROCESSING")

    @staticmethod
    def _prepare_source(source: Source | None, buffer: bytearray) -> BinaryIO | None:
        """Load in-memory sources into ``buffer``; return streaming ones."""
        if source is None:
            return None
        if isinstance(source, str):
            buffer += source.encode("utf-8")
            return None
        if isinstance(source, (bytes, bytearray, memoryview)):
            buffer += source
            return None
        return source

    @staticmethod
    def _write_pipe(context: RunContext, channel: Channel, buffer: bytearray) -> None:
        chunk = bytes(buffer[:CHUNK_SIZE])
        logger.debug("=> about to write %d bytes to GPG %s", len(chunk), channel.name.lower())
        try:
            written = os.write(context.fd(channel), chunk)
        except BlockingIOError:
            return
        except BrokenPipeError:
            written = 0

        if written == 0:
            logger.debug("=> broken pipe on GPG %s", channel.name.lower())
            context.close(channel)
            return

        logger.debug("=> wrote %d bytes", written)
        del buffer[:written]

    @staticmethod
    def _read_pipe(context: RunContext, channel: Channel) -> bytes:
        try:
            chunk = os.read(context.fd(channel), CHUNK_SIZE)
        except BlockingIOError:
            return b""
        logger.debug("=> read %d bytes from GPG %s", len(chunk), channel.name.lower())
        if not chunk:
            context.close(channel)
        return chunk

    @staticmethod
    def _split_lines(buffer: bytearray) -> list[bytes]:
        """Remove and return every complete line held in ``buffer``."""
        lines = []
        while True:
            pos = buffer.find(b"\n")
            if pos < 0:
                return lines
            lines.append(bytes(buffer[:pos]))
            del buffer[: pos + 1]

    @staticmethod
    def _dispatch(handlers: list[LineHandler], line: bytes) -> None:
        text = line.decode("utf-8", errors="replace")
        for handler in handlers:
            handler(text)

    def _close_subprocess(self) -> None:
        # passphrases must not outlive the run
        self._pinentry_user_data = None

        context = self._context
        self._context = None
        if context is not None:
            logger.debug("CLOSING GPG SUBPROCESS")
            context.close_all()
            exit_code = context.process.wait()

            if exit_code != 0:
                logger.debug("=> subprocess returned an unexpected exit code: %d", exit_code)
                if self._classifier.error_code == ErrorCode.NONE:
                    if self._classifier.need_passphrase > 0:
                        self._classifier.error_code = ErrorCode.MISSING_PASSPHRASE
                    else:
                        self._classifier.error_code = ErrorCode.UNKNOWN

        self._stop_agent()

    # Agent lifecycle

    def _launch_agent(self, version: str, env: dict[str, str]) -> None:
        if self._agent_binary is None:
            self._agent_binary = find_executable("gpg-agent", self._options.agent).unwrap()
        if self._pinentry is None:
            self._pinentry = find_pinentry(self._options.pinentry).unwrap()

        argv = [
            str(self._agent_binary),
            "--options",
            "/dev/null",  # ignore any saved options
            "--csh",
            "--keep-display",
            "--no-grab",
            "--ignore-cache-for-signing",
            "--pinentry-touch-file",
            "/dev/null",
            "--disable-scdaemon",
        ]
        if not version_at_least(version, "2.1.0"):
            argv.append("--no-use-standard-socket")
        argv.extend(["--pinentry-program", str(self._pinentry)])
        argv.extend(["--homedir", str(self._homedir)])
        argv.append("--daemon")

        logger.debug("OPENING GPG-AGENT SUBPROCESS WITH THE FOLLOWING COMMAND:")
        logger.debug(shlex.join(argv))

        try:
            launcher = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=env,
            )
        except OSError as e:
            raise SubprocessIOError(f"Unable to open gpg-agent subprocess. ({shlex.join(argv)})", cause=e) from e

        try:
            announcement = self._read_agent_announcement(launcher)
            returncode = launcher.wait()
        finally:
            logger.debug("CLOSING GPG-AGENT LAUNCH PROCESS")
            launcher.stdout.close()  # type: ignore[union-attr]
            launcher.stderr.close()  # type: ignore[union-attr]

        if returncode != 0:
            logger.warning("gpg-agent did not start (exit %d); using the running agent", returncode)
            return

        parts = announcement.split(" ", 2)
        if len(parts) == 3 and parts[1].startswith("GPG_AGENT_INFO"):
            self._agent_info = AgentInfo.parse(parts[2].strip().rstrip(";").strip("'\""))
        else:
            self._agent_info = self._query_agent()

        logger.debug("gpg-agent started: %s", self._agent_info)

    @staticmethod
    def _read_agent_announcement(launcher: subprocess.Popen[bytes]) -> str:
        """First stdout line of the launcher, or "" if it prints nothing.

        GnuPG 2.1 and later stay silent, and the daemon may keep the pipe
        open, so the read is bounded.
        """
        stdout = launcher.stdout
        assert stdout is not None
        try:
            launcher.wait(timeout=5)
        except subprocess.TimeoutExpired:
            logger.debug("gpg-agent launcher still running")
        ready, _, _ = select.select([stdout], [], [], 0.5)
        if not ready:
            return ""
        data = os.read(stdout.fileno(), CHUNK_SIZE)
        return data.decode("utf-8", errors="replace").split("\n", 1)[0]

    def _query_agent(self) -> AgentInfo | None:
        """Ask a silent (2.1+) agent for its PID and socket."""
        connect = find_executable("gpg-connect-agent")
        if connect.is_err():
            logger.warning("gpg-connect-agent not found; agent will not be stopped")
            return None

        result = subprocess.run(
            [
                str(connect.unwrap()),
                "--homedir",
                str(self._homedir),
                "--no-autostart",
                "getinfo pid",
                "/bye",
            ],
            capture_output=True,
            text=True,
            check=False,
        )
        match = re.search(r"^D (\d+)", result.stdout, re.MULTILINE)
        if match is None:
            logger.warning("could not get gpg-agent pid: %s", result.stderr.strip())
            return None

        socket_path = ""
        gpgconf = find_executable("gpgconf")
        if gpgconf.is_ok():
            dirs = subprocess.run(
                [str(gpgconf.unwrap()), "--homedir", str(self._homedir), "--list-dirs", "agent-socket"],
                capture_output=True,
                text=True,
                check=False,
            )
            socket_path = dirs.stdout.strip()

        return AgentInfo(socket_path=socket_path, pid=int(match.group(1)))

    def _stop_agent(self) -> None:
        info = self._agent_info
        self._agent_info = None
        if info is None or info.pid is None:
            return

        logger.debug("STOPPING GPG-AGENT DAEMON")
        process = ProcessControl(info.pid)
        deadline = time.monotonic() + self._options.agent_stop_timeout

        process.terminate()
        while process.is_running():
            if time.monotonic() >= deadline:
                logger.warning("gpg-agent %d ignored SIGTERM, killing it", info.pid)
                process.kill()
                break
            time.sleep(_AGENT_POLL_INTERVAL)
            process.terminate()

        logger.debug("GPG-AGENT DAEMON STOPPED")

    # Debug echo handlers

    @staticmethod
    def _debug_status(line: str) -> None:
        logger.debug("STATUS: %s", line)

    @staticmethod
    def _debug_error(line: str) -> None:
        logger.debug("ERROR: %s", line)
