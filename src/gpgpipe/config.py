from __future__ import annotations

import logging
import os
import platform
import shutil
import sys
from dataclasses import dataclass
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

from .errors import ConfigError
from .types import Result

DEFAULT_AGENT_STOP_TIMEOUT = 10.0
PINENTRY_SCRIPT = "gpgpipe-pinentry"
LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"


@dataclass
class EngineOptions:
    """Settings for one :class:`~gpgpipe.engine.Engine`.

    Unset binaries are looked up on ``PATH``. An unset homedir falls back to
    ``GNUPGHOME`` and then ``~/.gnupg``.
    """

    homedir: Path | None = None
    binary: str | None = None
    agent: str | None = None
    pinentry: str | None = None
    debug: bool = False
    agent_stop_timeout: float = DEFAULT_AGENT_STOP_TIMEOUT


def get_gnupghome() -> Path:
    """Get the GnuPG home directory."""
    env_home = os.environ.get("GNUPGHOME")
    if env_home:
        return Path(env_home)
    return Path.home() / ".gnupg"


def ensure_homedir(homedir: Path | None = None) -> Result[Path]:
    """Ensure the GnuPG directory exists and can be entered.

    A missing directory is created with mode 0700. A directory that exists
    but is not writable is accepted.
    """
    home = homedir or get_gnupghome()

    try:
        if not home.exists():
            home.mkdir(parents=True)
            # Set restrictive permissions (0700)
            if platform.system() != "Windows":
                home.chmod(0o700)
    except OSError as e:
        return Result.err(ConfigError(f"Could not create GnuPG directory: {e}", str(home)))

    if not home.is_dir():
        return Result.err(ConfigError(f"GnuPG home is not a directory: {home}", str(home)))

    if not os.access(home, os.R_OK | os.X_OK):
        return Result.err(ConfigError(f"GnuPG home is not readable: {home}", str(home)))

    return Result.ok(home)


def is_writable(path: Path) -> bool:
    return os.access(path, os.W_OK)


def find_executable(name: str, explicit: str | None = None) -> Result[Path]:
    """Resolve an executable from an explicit path or from ``PATH``."""
    if explicit:
        candidate = Path(explicit)
        if candidate.is_file() and os.access(candidate, os.X_OK):
            return Result.ok(candidate)
        return Result.err(ConfigError(f"{name} is not executable: {explicit}", explicit))

    found = shutil.which(name)
    if found is None:
        return Result.err(ConfigError(f"{name} not found on PATH"))
    return Result.ok(Path(found))


def find_pinentry(explicit: str | None = None) -> Result[Path]:
    """Locate the passphrase relay the agent daemon should spawn."""
    if explicit:
        return find_executable(PINENTRY_SCRIPT, explicit)

    found = shutil.which(PINENTRY_SCRIPT)
    if found:
        return Result.ok(Path(found))

    # console scripts land next to the interpreter in a virtualenv
    beside = Path(sys.executable).parent / PINENTRY_SCRIPT
    if beside.is_file():
        return Result.ok(beside)
    return Result.err(ConfigError(f"{PINENTRY_SCRIPT} not found; is gpgpipe installed?"))


def setup_logging(
    level: int = logging.WARNING,
    log_path: Path | None = None,
    console: Console | None = None,
) -> logging.Logger:
    """Configure the ``gpgpipe`` logger.

    File output uses a plain formatter. Console output goes through rich.
    """
    logger = logging.getLogger("gpgpipe")
    logger.setLevel(level)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    if log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path)
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(file_handler)
    else:
        rich_handler = RichHandler(
            console=console or Console(stderr=True),
            show_path=False,
            markup=False,
        )
        rich_handler.setLevel(level)
        logger.addHandler(rich_handler)

    return logger
