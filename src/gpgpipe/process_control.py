from __future__ import annotations

import logging
import os
import platform
import signal
import subprocess

logger = logging.getLogger(__name__)


class ProcessControl:
    """Liveness checks and termination for a process we did not spawn
    directly (the detached gpg-agent daemon)."""

    def __init__(self, pid: int | str) -> None:
        self._pid = int(pid)
        self._windows = platform.system() == "Windows"

    @property
    def pid(self) -> int:
        return self._pid

    def is_running(self) -> bool:
        if self._windows:
            return self._tasklist_has_pid()
        try:
            os.kill(self._pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            # exists, owned by someone else
            return True
        return True

    def terminate(self) -> None:
        """Ask the process to exit (SIGTERM)."""
        if self._windows:
            subprocess.run(["taskkill", "/PID", str(self._pid)], capture_output=True, check=False)
            return
        self._send(signal.SIGTERM)

    def kill(self) -> None:
        """Force the process to exit (SIGKILL)."""
        if self._windows:
            subprocess.run(
                ["taskkill", "/F", "/PID", str(self._pid)], capture_output=True, check=False
            )
            return
        self._send(signal.SIGKILL)

    def _send(self, signum: int) -> None:
        try:
            os.kill(self._pid, signum)
        except ProcessLookupError:
            logger.debug("process %d already gone", self._pid)

    def _tasklist_has_pid(self) -> bool:
        result = subprocess.run(
            ["tasklist", "/fo", "csv", "/nh", "/fi", f"PID eq {self._pid}"],
            capture_output=True,
            text=True,
            check=False,
        )
        parts = result.stdout.strip().split(",")
        return len(parts) > 1 and parts[1].strip('"') == str(self._pid)
