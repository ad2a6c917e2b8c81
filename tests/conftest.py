from __future__ import annotations

import contextlib
import json
import os
import shutil
import signal
import subprocess
import sys
import tempfile
from collections.abc import Callable, Generator
from pathlib import Path

import pytest

from gpgpipe.config import EngineOptions, find_pinentry
from gpgpipe.engine import Engine

# Stand-in for the gpg binary. It understands --status-fd, --command-fd and
# "-&N" message filenames, and follows the steps in FAKE_GPG_SCRIPT (a JSON
# list). Without a script it echoes stdin, then the message fd, to stdout.
FAKE_GPG = r'''
import json
import os
import sys

argv = sys.argv[1:]

log_path = os.environ.get("FAKE_GPG_ARGV_LOG")
if log_path:
    with open(log_path, "a") as f:
        f.write(json.dumps(argv) + "\n")

if "--version" in argv:
    sys.stdout.write("gpg (GnuPG) " + os.environ.get("FAKE_GPG_VERSION", "1.4.23") + "\n")
    sys.stdout.write("Copyright (C) 2015 Free Software Foundation, Inc.\n")
    sys.exit(0)


def option(name):
    if name in argv:
        return int(argv[argv.index(name) + 1])
    return None


status_fd = option("--status-fd")
command_fd = option("--command-fd")
message_fds = [int(a[2:]) for a in argv if a.startswith("-&") and a[2:].isdigit()]
command = os.fdopen(command_fd, "rb") if command_fd is not None else None


def read_fd(fd):
    chunks = []
    while True:
        chunk = os.read(fd, 65536)
        if not chunk:
            return b"".join(chunks)
        chunks.append(chunk)


def write_fd(fd, data):
    while data:
        written = os.write(fd, data)
        data = data[written:]


steps = json.loads(os.environ.get("FAKE_GPG_SCRIPT", "null"))
if steps is None:
    steps = [{"echo_input": True}, {"echo_message": True}]

for step in steps:
    if "status" in step:
        write_fd(status_fd, ("[GNUPG:] " + step["status"] + "\n").encode())
    elif "raw_status" in step:
        write_fd(status_fd, step["raw_status"].encode())
    elif "stderr" in step:
        write_fd(2, (step["stderr"] + "\n").encode())
    elif "stdout" in step:
        write_fd(1, step["stdout"].encode())
    elif "env" in step:
        write_fd(1, (os.environ.get(step["env"], "<unset>") + "\n").encode())
    elif "echo_input" in step:
        write_fd(1, read_fd(0))
    elif "echo_message" in step:
        for fd in message_fds:
            write_fd(1, read_fd(fd))
    elif "read_command" in step:
        line = command.readline()
        with open(step["read_command"], "ab") as f:
            f.write(line)
    elif "exit" in step:
        sys.exit(step["exit"])
'''


def _gpg_agent_can_start() -> bool:
    """Check if gpg-agent can be started in a temp directory."""
    if shutil.which("gpg") is None or shutil.which("gpg-agent") is None:
        return False
    if find_pinentry().is_err():
        return False

    with tempfile.TemporaryDirectory(prefix="gpg_") as tmpdir:
        gnupghome = Path(tmpdir)
        try:
            result = subprocess.run(
                ["gpg-agent", "--homedir", str(gnupghome), "--daemon"],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=10,
            )
            started = result.returncode == 0
            subprocess.run(
                ["gpgconf", "--homedir", str(gnupghome), "--kill", "gpg-agent"],
                capture_output=True,
                timeout=5,
            )
            return started
        except (OSError, subprocess.TimeoutExpired):
            return False


# Cache the result
_GPG_AGENT_AVAILABLE: bool | None = None


def gpg_agent_available() -> bool:
    """Check if gpg-agent can be started (cached)."""
    global _GPG_AGENT_AVAILABLE
    if _GPG_AGENT_AVAILABLE is None:
        _GPG_AGENT_AVAILABLE = _gpg_agent_can_start()
    return _GPG_AGENT_AVAILABLE


# Longest a test that runs the real gpg may take before it is failed
SLOW_TEST_TIMEOUT = 300


@pytest.fixture(autouse=True)
def _slow_test_timeout(request: pytest.FixtureRequest) -> Generator[None, None, None]:
    """Fail a real gpg test that stalls instead of hanging the run."""
    if "slow" not in request.keywords or not hasattr(signal, "SIGALRM"):
        yield
        return

    def on_timeout(signum: int, frame: object) -> None:  # noqa: ARG001
        pytest.fail(f"no progress after {SLOW_TEST_TIMEOUT}s", pytrace=False)

    previous = signal.signal(signal.SIGALRM, on_timeout)
    signal.alarm(SLOW_TEST_TIMEOUT)
    try:
        yield
    finally:
        signal.alarm(0)
        signal.signal(signal.SIGALRM, previous)


@pytest.fixture
def gpg_home() -> Generator[Path, None, None]:
    """Create an isolated GnuPG home directory.

    Uses a short /tmp path because agent socket paths have a maximum length
    (~104 chars on macOS) that pytest's tmp_path often exceeds.
    """
    gnupghome = Path(tempfile.mkdtemp(prefix="gpg_"))
    gnupghome.chmod(0o700)

    yield gnupghome

    # Cleanup: kill any agent left for this home
    with contextlib.suppress(OSError, subprocess.TimeoutExpired):
        subprocess.run(
            ["gpgconf", "--homedir", str(gnupghome), "--kill", "gpg-agent"],
            capture_output=True,
            timeout=5,
        )

    shutil.rmtree(gnupghome, ignore_errors=True)


@pytest.fixture
def fake_gpg(tmp_path: Path) -> Path:
    """Executable that behaves enough like gpg for engine tests."""
    script = tmp_path / "fake_gpg.py"
    script.write_text(FAKE_GPG)

    wrapper = tmp_path / "gpg"
    wrapper.write_text(f'#!/bin/sh\nexec "{sys.executable}" "{script}" "$@"\n')
    wrapper.chmod(0o755)
    return wrapper


@pytest.fixture
def fake_options(tmp_path: Path, fake_gpg: Path) -> EngineOptions:
    return EngineOptions(homedir=tmp_path / "gnupg", binary=str(fake_gpg))


@pytest.fixture
def fake_engine(fake_options: EngineOptions) -> Engine:
    return Engine(fake_options)


@pytest.fixture
def gpg_script(monkeypatch: pytest.MonkeyPatch) -> Callable[..., None]:
    """Set the steps the fake gpg follows on its next runs."""

    def set_script(*steps: dict[str, object]) -> None:
        monkeypatch.setenv("FAKE_GPG_SCRIPT", json.dumps(list(steps)))

    return set_script


@pytest.fixture
def argv_log(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """File the fake gpg appends its argv to, one JSON list per run."""
    path = tmp_path / "argv.log"
    monkeypatch.setenv("FAKE_GPG_ARGV_LOG", str(path))
    return path


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "slow: marks tests as slow-running")
    config.addinivalue_line("markers", "gpg_agent: marks tests as requiring gpg-agent")


def pytest_collection_modifyitems(  # noqa: ARG001
    config: pytest.Config, items: list[pytest.Item]
) -> None:
    skip_gpg_agent = pytest.mark.skip(reason="gpg and gpg-agent cannot run in this environment")

    for item in items:
        # Skip slow tests (which run the real gpg) when the agent isn't available
        if ("slow" in item.keywords or "gpg_agent" in item.keywords) and not gpg_agent_available():
            item.add_marker(skip_gpg_agent)
