"""Drive the GnuPG command line tool from Python.

This package runs ``gpg`` as a subprocess, talks to it over its status and
command file descriptors, and turns the results into Python objects. A
private gpg-agent with a scripted pinentry supplies passphrases for
GnuPG 2.x.
"""

from .config import EngineOptions, get_gnupghome, setup_logging
from .diagnostics import DiagnosticInfo, format_diagnostic_report, run_diagnostics
from .engine import Engine, parse_version, version_at_least
from .errors import (
    BadPassphraseError,
    BadSignatureError,
    ConfigError,
    DeletePrivateKeyError,
    DuplicateKeyError,
    ErrorCode,
    FilePermissionsError,
    GPGPipeError,
    KeyNotFoundError,
    MissingPassphraseError,
    NoDataError,
    RecoveryHint,
    SubprocessIOError,
    UsageError,
    VersionError,
    get_recovery_hints_for_message,
    wrap_exception,
)
from .gnupg import GnuPG
from .main import run
from .pinentry import PinEntry
from .process_control import ProcessControl
from .types import (
    AgentInfo,
    Channel,
    FingerprintFormat,
    Key,
    KeyImportResult,
    Result,
    SecureString,
    Signature,
    SignatureMode,
    SubKey,
    UserId,
    Verification,
)

__version__ = "0.1.0"

__all__ = [
    # Engine
    "Engine",
    "EngineOptions",
    "get_gnupghome",
    "parse_version",
    "version_at_least",
    "setup_logging",
    # Operations
    "GnuPG",
    "PinEntry",
    "ProcessControl",
    # Types
    "AgentInfo",
    "Channel",
    "FingerprintFormat",
    "Key",
    "KeyImportResult",
    "Result",
    "SecureString",
    "Signature",
    "SignatureMode",
    "SubKey",
    "UserId",
    "Verification",
    # Diagnostics
    "DiagnosticInfo",
    "run_diagnostics",
    "format_diagnostic_report",
    # Errors
    "GPGPipeError",
    "ErrorCode",
    "RecoveryHint",
    "UsageError",
    "ConfigError",
    "VersionError",
    "SubprocessIOError",
    "BadPassphraseError",
    "MissingPassphraseError",
    "KeyNotFoundError",
    "NoDataError",
    "DuplicateKeyError",
    "DeletePrivateKeyError",
    "BadSignatureError",
    "FilePermissionsError",
    "get_recovery_hints_for_message",
    "wrap_exception",
    # Main
    "run",
    "__version__",
]
