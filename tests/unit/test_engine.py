"""Tests for the gpg subprocess engine, driven against a scripted fake gpg."""

from __future__ import annotations

import io
import json
import logging
import os
from collections.abc import Callable
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from gpgpipe.config import EngineOptions
from gpgpipe.engine import Engine, parse_version, version_at_least
from gpgpipe.errors import ConfigError, ErrorCode, UsageError, VersionError
from gpgpipe.types import AgentInfo


def _runs(argv_log: Path) -> list[list[str]]:
    return [json.loads(line) for line in argv_log.read_text().splitlines()]


class TestVersionHelpers:
    """Test version parsing and comparison."""

    def test_parse_plain_version(self) -> None:
        """Test a dotted version becomes an integer tuple."""
        assert parse_version("2.2.40") == (2, 2, 40)

    def test_parse_version_with_suffix(self) -> None:
        """Test trailing labels are ignored."""
        assert parse_version("2.5.0-beta12") == (2, 5, 0)

    def test_version_at_least(self) -> None:
        """Test version comparisons."""
        assert version_at_least("2.1.0", "2.0.0")
        assert version_at_least("1.4.23", "1.4.2")
        assert not version_at_least("1.4.2", "1.4.23")
        assert not version_at_least("1.0.1", "1.0.2")


class TestEngineInit:
    """Test engine construction."""

    def test_creates_missing_homedir(self, tmp_path: Path, fake_gpg: Path) -> None:
        """Test a missing homedir is created with mode 0700."""
        home = tmp_path / "new-home"
        engine = Engine(EngineOptions(homedir=home, binary=str(fake_gpg)))

        assert engine.homedir == home
        assert home.is_dir()
        assert (home.stat().st_mode & 0o777) == 0o700

    def test_missing_binary_raises(self, tmp_path: Path) -> None:
        """Test an explicit binary that does not exist is rejected."""
        with pytest.raises(ConfigError):
            Engine(EngineOptions(homedir=tmp_path, binary=str(tmp_path / "no-such-gpg")))

    def test_homedir_that_is_a_file_raises(self, tmp_path: Path, fake_gpg: Path) -> None:
        """Test a homedir path pointing at a regular file is rejected."""
        home = tmp_path / "file"
        home.write_text("")
        with pytest.raises(ConfigError):
            Engine(EngineOptions(homedir=home, binary=str(fake_gpg)))


class TestGetVersion:
    """Test version probing."""

    def test_get_version(self, fake_engine: Engine) -> None:
        """Test the version is read from --version output."""
        assert fake_engine.get_version() == "1.4.23"

    def test_version_is_cached(self, fake_engine: Engine, argv_log: Path) -> None:
        """Test the binary is only queried once per engine."""
        fake_engine.get_version()
        fake_engine.get_version()

        runs = _runs(argv_log)
        assert len(runs) == 1
        assert "--version" in runs[0]

    def test_unsupported_version(
        self, fake_engine: Engine, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test versions older than the minimum are rejected."""
        monkeypatch.setenv("FAKE_GPG_VERSION", "1.0.1")
        with pytest.raises(VersionError) as exc_info:
            fake_engine.get_version()

        assert exc_info.value.version == "1.0.1"
        assert "1.0.2" in str(exc_info.value)


class TestRun:
    """Test moving data through the subprocess."""

    def test_run_without_operation(self, fake_engine: Engine) -> None:
        """Test run() before set_operation() is a usage error."""
        with pytest.raises(UsageError):
            fake_engine.run()

    def test_echo_bytes(self, fake_engine: Engine) -> None:
        """Test in-memory input reaches gpg and output comes back."""
        output = bytearray()
        fake_engine.set_operation("--decrypt")
        fake_engine.set_input(b"hello world")
        fake_engine.set_output(output)
        fake_engine.run()

        assert bytes(output) == b"hello world"
        assert fake_engine.get_error_code() == ErrorCode.NONE

    def test_string_input_is_utf8(self, fake_engine: Engine) -> None:
        """Test str input is encoded as UTF-8."""
        output = bytearray()
        fake_engine.set_operation("--decrypt")
        fake_engine.set_input("grüße")
        fake_engine.set_output(output)
        fake_engine.run()

        assert bytes(output) == "grüße".encode()

    def test_large_input_matches_chunked_output(self, fake_engine: Engine) -> None:
        """Test data larger than the pipe buffers survives intact."""
        data = os.urandom(1024 * 1024)
        output = bytearray()
        fake_engine.set_operation("--decrypt")
        fake_engine.set_input(data)
        fake_engine.set_output(output)
        fake_engine.run()

        assert bytes(output) == data

    def test_in_memory_streams(self, fake_engine: Engine) -> None:
        """Test streams without a file descriptor as source and sink."""
        data = os.urandom(100_000)
        source = io.BytesIO(data)
        sink = io.BytesIO()
        fake_engine.set_operation("--decrypt")
        fake_engine.set_input(source)
        fake_engine.set_output(sink)
        fake_engine.run()

        assert sink.getvalue() == data

    def test_file_streams(self, fake_engine: Engine, tmp_path: Path) -> None:
        """Test real files as source and sink."""
        data = os.urandom(50_000)
        src = tmp_path / "in.bin"
        dst = tmp_path / "out.bin"
        src.write_bytes(data)

        with src.open("rb") as source, dst.open("wb") as sink:
            fake_engine.set_operation("--decrypt")
            fake_engine.set_input(source)
            fake_engine.set_output(sink)
            fake_engine.run()

        assert dst.read_bytes() == data

    def test_message_channel(self, fake_engine: Engine, argv_log: Path) -> None:
        """Test the message placeholder is replaced by the message fd."""
        output = bytearray()
        fake_engine.set_operation(["--verify", "-", Engine.MESSAGE_FILENAME])
        fake_engine.set_input(b"signature|")
        fake_engine.set_message(b"signed data")
        fake_engine.set_output(output)
        fake_engine.run()

        assert bytes(output) == b"signature|signed data"
        argv = _runs(argv_log)[-1]
        assert Engine.MESSAGE_FILENAME not in argv
        assert argv[-1].startswith("-&")
        assert argv[-1][2:].isdigit()

    def test_gpg_ignoring_input(
        self, fake_engine: Engine, gpg_script: Callable[..., None]
    ) -> None:
        """Test gpg exiting without reading its input does not hang the run."""
        gpg_script({"stdout": "done"}, {"exit": 0})
        output = bytearray()
        fake_engine.set_operation("--decrypt")
        fake_engine.set_input(os.urandom(512 * 1024))
        fake_engine.set_output(output)
        fake_engine.run()

        assert bytes(output) == b"done"

    def test_engine_is_reusable(self, fake_engine: Engine) -> None:
        """Test consecutive runs on the same engine."""
        for payload in (b"first", b"second"):
            output = bytearray()
            fake_engine.reset()
            fake_engine.set_operation("--decrypt")
            fake_engine.set_input(payload)
            fake_engine.set_output(output)
            fake_engine.run()
            assert bytes(output) == payload


class TestCommandLine:
    """Test the argv handed to gpg."""

    def test_fixed_arguments(self, fake_engine: Engine, argv_log: Path) -> None:
        """Test the standard arguments for a 1.4 binary."""
        fake_engine.set_operation("--list-keys")
        fake_engine.run()

        argv = _runs(argv_log)[-1]
        for arg in (
            "--status-fd",
            "--command-fd",
            "--no-secmem-warning",
            "--no-tty",
            "--no-default-keyring",
            "--no-options",
            "--no-use-agent",
            "--no-permission-warning",
            "--exit-on-status-write-error",
        ):
            assert arg in argv
        assert argv[argv.index("--trust-model") + 1] == "always"
        assert argv[argv.index("--homedir") + 1] == str(fake_engine.homedir)
        assert argv[-1] == "--list-keys"

    def test_caller_arguments_precede_operation(self, fake_engine: Engine, argv_log: Path) -> None:
        """Test caller arguments sit before --homedir and the operation."""
        fake_engine.set_operation("--encrypt", ["--armor", "--recipient", "ABCD"])
        fake_engine.run()

        argv = _runs(argv_log)[-1]
        assert argv.index("--armor") < argv.index("--homedir") < argv.index("--encrypt")
        assert argv[-1] == "--encrypt"

    def test_string_operation_is_split(self, fake_engine: Engine, argv_log: Path) -> None:
        """Test a string operation is split like a shell would."""
        fake_engine.set_operation("--list-keys 'Alice Example'")
        fake_engine.run()

        assert _runs(argv_log)[-1][-2:] == ["--list-keys", "Alice Example"]

    def test_read_only_homedir(self, fake_engine: Engine, argv_log: Path) -> None:
        """Test --no-random-seed-file is added when the homedir is read-only."""
        with patch("gpgpipe.engine.is_writable", return_value=False):
            fake_engine.set_operation("--list-keys")
            fake_engine.run()

        assert "--no-random-seed-file" in _runs(argv_log)[-1]

    def test_writable_homedir(self, fake_engine: Engine, argv_log: Path) -> None:
        """Test no seed file option for a writable homedir."""
        fake_engine.set_operation("--list-keys")
        fake_engine.run()

        assert "--no-random-seed-file" not in _runs(argv_log)[-1]


class TestHandlers:
    """Test status and error line dispatch."""

    def test_status_prefix_filter(
        self, fake_engine: Engine, gpg_script: Callable[..., None]
    ) -> None:
        """Test only prefixed lines reach status handlers, prefix removed."""
        gpg_script(
            {"status": "NEWSIG"},
            {"raw_status": "not a status line\n"},
            {"status": "SIG_ID abc 2024-01-01 1700000000"},
        )
        lines: list[str] = []
        fake_engine.add_status_handler(lines.append)
        fake_engine.set_operation("--verify")
        fake_engine.run()

        assert lines == ["NEWSIG", "SIG_ID abc 2024-01-01 1700000000"]

    def test_status_line_split_across_writes(
        self, fake_engine: Engine, gpg_script: Callable[..., None]
    ) -> None:
        """Test a status line written in pieces is delivered whole."""
        gpg_script(
            {"raw_status": "[GNUPG:] GOODSIG AB"},
            {"raw_status": "CD Alice\n"},
        )
        lines: list[str] = []
        fake_engine.add_status_handler(lines.append)
        fake_engine.set_operation("--verify")
        fake_engine.run()

        assert lines == ["GOODSIG ABCD Alice"]

    def test_handler_extra_arguments(
        self, fake_engine: Engine, gpg_script: Callable[..., None]
    ) -> None:
        """Test extra arguments are passed after the line."""
        gpg_script({"status": "NODATA 1"})
        calls: list[tuple[str, str]] = []
        fake_engine.add_status_handler(lambda line, tag: calls.append((line, tag)), "tag")
        fake_engine.set_operation("--decrypt")
        fake_engine.run()

        assert calls == [("NODATA 1", "tag")]

    def test_error_handler_receives_stderr(
        self, fake_engine: Engine, gpg_script: Callable[..., None]
    ) -> None:
        """Test stderr lines reach error handlers."""
        gpg_script({"stderr": "gpg: something happened"})
        lines: list[str] = []
        fake_engine.add_error_handler(lines.append)
        fake_engine.set_operation("--decrypt")
        fake_engine.run()

        assert lines == ["gpg: something happened"]

    def test_reset_removes_handlers(
        self, fake_engine: Engine, gpg_script: Callable[..., None]
    ) -> None:
        """Test reset() drops caller handlers and clears the error code."""
        gpg_script({"status": "NODATA 1"})
        lines: list[str] = []
        fake_engine.add_status_handler(lines.append)
        fake_engine.set_operation("--decrypt")
        fake_engine.run()
        assert fake_engine.get_error_code() == ErrorCode.NO_DATA

        fake_engine.reset()
        fake_engine.reset()
        assert fake_engine.get_error_code() == ErrorCode.NONE

        fake_engine.set_operation("--decrypt")
        fake_engine.run()
        assert lines == ["NODATA 1"]
        # default classification survives the reset
        assert fake_engine.get_error_code() == ErrorCode.NO_DATA

    def test_debug_echo(
        self,
        fake_options: EngineOptions,
        gpg_script: Callable[..., None],
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """Test debug mode logs status and error lines."""
        fake_options.debug = True
        engine = Engine(fake_options)
        gpg_script({"status": "NODATA 1"}, {"stderr": "gpg: oops"})

        with caplog.at_level(logging.DEBUG, logger="gpgpipe"):
            engine.set_operation("--decrypt")
            engine.run()

        assert "STATUS: NODATA 1" in caplog.text
        assert "ERROR: gpg: oops" in caplog.text


class TestErrorClassification:
    """Test the error code recorded by the default handlers."""

    @pytest.mark.parametrize(
        ("steps", "expected"),
        [
            ([{"status": "BAD_PASSPHRASE ABCDEF"}], ErrorCode.BAD_PASSPHRASE),
            ([{"status": "MISSING_PASSPHRASE"}], ErrorCode.MISSING_PASSPHRASE),
            ([{"status": "NODATA 1"}], ErrorCode.NO_DATA),
            ([{"status": "DELETE_PROBLEM 1"}], ErrorCode.KEY_NOT_FOUND),
            ([{"status": "DELETE_PROBLEM 2"}], ErrorCode.DELETE_PRIVATE_KEY),
            ([{"status": "NO_PUBKEY 0123456789ABCDEF"}], ErrorCode.KEY_NOT_FOUND),
            ([{"status": "BADSIG 0123456789ABCDEF Alice"}], ErrorCode.BAD_SIGNATURE),
            ([{"stderr": "gpg: decryption failed: No secret key"}], ErrorCode.KEY_NOT_FOUND),
            ([{"stderr": "gpg: no valid OpenPGP data found."}], ErrorCode.NO_DATA),
        ],
    )
    def test_classification(
        self,
        fake_engine: Engine,
        gpg_script: Callable[..., None],
        steps: list[dict[str, object]],
        expected: ErrorCode,
    ) -> None:
        """Test each status or diagnostic maps to its code."""
        gpg_script(*steps)
        fake_engine.set_operation("--decrypt")
        fake_engine.run()

        assert fake_engine.get_error_code() == expected

    def test_later_status_overwrites(
        self, fake_engine: Engine, gpg_script: Callable[..., None]
    ) -> None:
        """Test the last classifying status line wins."""
        gpg_script({"status": "BAD_PASSPHRASE ABCDEF"}, {"status": "NODATA 2"})
        fake_engine.set_operation("--decrypt")
        fake_engine.run()

        assert fake_engine.get_error_code() == ErrorCode.NO_DATA

    def test_key_id_recorded(self, fake_engine: Engine, gpg_script: Callable[..., None]) -> None:
        """Test the missing key id is kept."""
        gpg_script({"status": "NO_SECKEY 0123456789ABCDEF"})
        fake_engine.set_operation("--decrypt")
        fake_engine.run()

        assert fake_engine.get_error_key_id() == "0123456789ABCDEF"

    def test_file_permissions(self, fake_engine: Engine, gpg_script: Callable[..., None]) -> None:
        """Test an unreadable file is reported with its name."""
        gpg_script({"stderr": "gpg: can't open `/secret/file': Permission denied"})
        fake_engine.set_operation("--decrypt")
        fake_engine.run()

        assert fake_engine.get_error_code() == ErrorCode.FILE_PERMISSIONS
        assert fake_engine.get_error_filename() == "/secret/file"

    def test_diagnostic_does_not_overwrite_status(
        self, fake_engine: Engine, gpg_script: Callable[..., None]
    ) -> None:
        """Test stderr is ignored once a code has been recorded."""
        gpg_script({"status": "BAD_PASSPHRASE ABCDEF"}, {"stderr": "gpg: No secret key"})
        fake_engine.set_operation("--decrypt")
        fake_engine.run()

        assert fake_engine.get_error_code() == ErrorCode.BAD_PASSPHRASE

    def test_nonzero_exit_is_unknown(
        self, fake_engine: Engine, gpg_script: Callable[..., None]
    ) -> None:
        """Test an unexplained failure maps to UNKNOWN."""
        gpg_script({"exit": 2})
        fake_engine.set_operation("--decrypt")
        fake_engine.run()

        assert fake_engine.get_error_code() == ErrorCode.UNKNOWN

    def test_nonzero_exit_after_unanswered_passphrase(
        self, fake_engine: Engine, gpg_script: Callable[..., None]
    ) -> None:
        """Test a pending passphrase request maps to MISSING_PASSPHRASE."""
        gpg_script({"status": "NEED_PASSPHRASE ABCDEF ABCDEF 1 0"}, {"exit": 2})
        fake_engine.set_operation("--decrypt")
        fake_engine.run()

        assert fake_engine.get_error_code() == ErrorCode.MISSING_PASSPHRASE

    def test_nonzero_exit_keeps_classified_code(
        self, fake_engine: Engine, gpg_script: Callable[..., None]
    ) -> None:
        """Test the exit status does not replace a recorded code."""
        gpg_script({"status": "NODATA 1"}, {"exit": 2})
        fake_engine.set_operation("--decrypt")
        fake_engine.run()

        assert fake_engine.get_error_code() == ErrorCode.NO_DATA

    def test_clean_exit(self, fake_engine: Engine, gpg_script: Callable[..., None]) -> None:
        """Test a quiet successful run has no error."""
        gpg_script({"exit": 0})
        fake_engine.set_operation("--decrypt")
        fake_engine.run()

        assert fake_engine.get_error_code() == ErrorCode.NONE


class TestCommandChannel:
    """Test answering gpg over the command fd."""

    def test_handler_answers_prompt(
        self, fake_engine: Engine, gpg_script: Callable[..., None], tmp_path: Path
    ) -> None:
        """Test a status handler can reply while gpg waits."""
        received = tmp_path / "command.txt"
        gpg_script(
            {"status": "NEED_PASSPHRASE ABCDEF ABCDEF 1 0"},
            {"read_command": str(received)},
            {"status": "GOOD_PASSPHRASE"},
        )

        def answer(line: str) -> None:
            if line.startswith("NEED_PASSPHRASE"):
                fake_engine.send_command("s3cret")

        fake_engine.add_status_handler(answer)
        fake_engine.set_operation("--decrypt")
        fake_engine.run()

        assert received.read_bytes() == b"s3cret\n"
        assert fake_engine.get_error_code() == ErrorCode.NONE

    def test_send_command_outside_run(self, fake_engine: Engine) -> None:
        """Test send_command() without a running subprocess is ignored."""
        fake_engine.send_command("ignored")


class TestEnvironment:
    """Test the environment handed to gpg."""

    def test_locale_forced(self, fake_engine: Engine, gpg_script: Callable[..., None]) -> None:
        """Test LC_ALL is forced to C."""
        gpg_script({"env": "LC_ALL"})
        output = bytearray()
        fake_engine.set_operation("--decrypt")
        fake_engine.set_output(output)
        fake_engine.run()

        assert bytes(output) == b"C\n"

    def test_pinentry_user_data_is_single_use(
        self,
        fake_engine: Engine,
        gpg_script: Callable[..., None],
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Test PINENTRY_USER_DATA is exported once and never inherited."""
        monkeypatch.setenv("PINENTRY_USER_DATA", "inherited")
        gpg_script({"env": "PINENTRY_USER_DATA"})

        output = bytearray()
        fake_engine.set_pinentry_user_data('[{"key_id": "ABCD"}]')
        fake_engine.set_operation("--decrypt")
        fake_engine.set_output(output)
        fake_engine.run()
        assert bytes(output) == b'[{"key_id": "ABCD"}]\n'

        output = bytearray()
        fake_engine.set_operation("--decrypt")
        fake_engine.set_output(output)
        fake_engine.run()
        assert bytes(output) == b"<unset>\n"


def _write_script(path: Path, body: str) -> Path:
    path.write_text("#!/bin/sh\n" + body)
    path.chmod(0o755)
    return path


class TestAgent:
    """Test the private gpg-agent lifecycle for GnuPG 2.x."""

    @pytest.fixture
    def agent_options(
        self, fake_options: EngineOptions, fake_gpg: Path, tmp_path: Path
    ) -> EngineOptions:
        log = tmp_path / "agent.log"
        agent = _write_script(
            tmp_path / "gpg-agent",
            f'echo "$@" >> "{log}"\necho "setenv GPG_AGENT_INFO /tmp/S.gpg-agent:4242:1;"\n',
        )
        fake_options.agent = str(agent)
        fake_options.pinentry = str(fake_gpg)
        return fake_options

    def test_agent_started_and_stopped(
        self,
        agent_options: EngineOptions,
        gpg_script: Callable[..., None],
        monkeypatch: pytest.MonkeyPatch,
        tmp_path: Path,
    ) -> None:
        """Test a 2.0 agent announcement is exported and the agent stopped."""
        monkeypatch.setenv("FAKE_GPG_VERSION", "2.0.30")
        gpg_script({"env": "GPG_AGENT_INFO"})
        engine = Engine(agent_options)
        output = bytearray()

        with patch("gpgpipe.engine.ProcessControl") as mock_control:
            mock_control.return_value.is_running.return_value = False
            engine.set_operation("--decrypt")
            engine.set_output(output)
            engine.run()

        assert bytes(output) == b"/tmp/S.gpg-agent:4242:1\n"
        mock_control.assert_called_once_with(4242)
        mock_control.return_value.terminate.assert_called()
        mock_control.return_value.kill.assert_not_called()
        assert engine.agent_info is None

        agent_argv = (tmp_path / "agent.log").read_text()
        assert "--daemon" in agent_argv
        assert "--no-use-standard-socket" in agent_argv
        assert f"--pinentry-program {agent_options.pinentry}" in agent_argv
        assert f"--homedir {engine.homedir}" in agent_argv

    def test_no_agent_for_gnupg_1(
        self, agent_options: EngineOptions, tmp_path: Path
    ) -> None:
        """Test GnuPG 1.x runs without an agent."""
        engine = Engine(agent_options)
        engine.set_operation("--list-keys")
        engine.run()

        assert not (tmp_path / "agent.log").exists()

    def test_silent_agent_is_queried(
        self,
        agent_options: EngineOptions,
        gpg_script: Callable[..., None],
        monkeypatch: pytest.MonkeyPatch,
        tmp_path: Path,
    ) -> None:
        """Test a 2.1+ agent that prints nothing is found via gpg-connect-agent."""
        bin_dir = tmp_path / "bin"
        bin_dir.mkdir()
        _write_script(bin_dir / "gpg-connect-agent", 'echo "D 5151"\necho "OK"\n')
        _write_script(bin_dir / "gpgconf", 'echo "/run/user/0/gnupg/S.gpg-agent"\n')
        agent_options.agent = str(_write_script(tmp_path / "silent-agent", "exit 0\n"))
        monkeypatch.setenv("PATH", f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}")
        monkeypatch.setenv("FAKE_GPG_VERSION", "2.2.40")
        gpg_script({"env": "GPG_AGENT_INFO"})

        engine = Engine(agent_options)
        output = bytearray()
        with patch("gpgpipe.engine.ProcessControl") as mock_control:
            mock_control.return_value.is_running.return_value = False
            engine.set_operation("--decrypt")
            engine.set_output(output)
            engine.run()

        assert bytes(output) == b"/run/user/0/gnupg/S.gpg-agent:5151:1\n"
        mock_control.assert_called_once_with(5151)

    def test_agent_failure_is_not_fatal(
        self,
        agent_options: EngineOptions,
        gpg_script: Callable[..., None],
        monkeypatch: pytest.MonkeyPatch,
        tmp_path: Path,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """Test a failed agent start logs a warning and the run continues."""
        agent_options.agent = str(_write_script(tmp_path / "broken-agent", "exit 2\n"))
        monkeypatch.setenv("FAKE_GPG_VERSION", "2.2.40")
        gpg_script({"stdout": "ran"})
        engine = Engine(agent_options)
        output = bytearray()

        with (
            patch("gpgpipe.engine.ProcessControl") as mock_control,
            caplog.at_level(logging.WARNING, logger="gpgpipe"),
        ):
            engine.set_operation("--decrypt")
            engine.set_output(output)
            engine.run()

        assert bytes(output) == b"ran"
        assert "gpg-agent did not start" in caplog.text
        mock_control.assert_not_called()

    def test_stop_is_bounded(
        self, fake_options: EngineOptions, caplog: pytest.LogCaptureFixture
    ) -> None:
        """Test an agent ignoring SIGTERM is killed once the timeout passes."""
        fake_options.agent_stop_timeout = 0
        engine = Engine(fake_options)
        engine._agent_info = AgentInfo(socket_path="/tmp/S.gpg-agent", pid=4242)
        control = MagicMock()
        control.is_running.return_value = True

        with (
            patch("gpgpipe.engine.ProcessControl", return_value=control),
            caplog.at_level(logging.WARNING, logger="gpgpipe"),
        ):
            engine._stop_agent()

        control.terminate.assert_called()
        control.kill.assert_called_once()
        assert "ignored SIGTERM" in caplog.text
        assert engine.agent_info is None

    def test_stop_polls_until_exit(self, fake_options: EngineOptions) -> None:
        """Test SIGTERM is repeated until the agent exits."""
        engine = Engine(fake_options)
        engine._agent_info = AgentInfo(socket_path="/tmp/S.gpg-agent", pid=4242)
        control = MagicMock()
        control.is_running.side_effect = [True, True, False]

        with patch("gpgpipe.engine.ProcessControl", return_value=control):
            engine._stop_agent()

        assert control.terminate.call_count == 3
        control.kill.assert_not_called()
