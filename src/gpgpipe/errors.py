"""Error codes and exception types for GnuPG subprocess operations.

This module provides:
- The error code taxonomy the engine and status handlers classify into
- Exception types that carry recovery hints
- Helpers for turning GnuPG diagnostics into hints
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import IntEnum


class ErrorCode(IntEnum):
    """Outcome of one engine run, as classified from status/error lines."""

    NONE = 0
    UNKNOWN = 1
    BAD_PASSPHRASE = 2
    MISSING_PASSPHRASE = 3
    DUPLICATE_KEY = 4
    NO_DATA = 5
    KEY_NOT_FOUND = 8
    DELETE_PRIVATE_KEY = 9
    BAD_SIGNATURE = 10
    FILE_PERMISSIONS = 11


@dataclass
class RecoveryHint:
    """A suggested recovery action for an error."""

    action: str
    command: str | None = None
    documentation_url: str | None = None

    def __str__(self) -> str:
        result = self.action
        if self.command:
            result += f"\n  Command: {self.command}"
        if self.documentation_url:
            result += f"\n  See: {self.documentation_url}"
        return result


@dataclass
class GPGPipeError(Exception):
    """Base error type with an error code and recovery hints."""

    message: str
    code: ErrorCode = ErrorCode.UNKNOWN
    recovery_hints: list[RecoveryHint] = field(default_factory=list)
    cause: Exception | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __str__(self) -> str:
        return self.message

    def __post_init__(self) -> None:
        super().__init__(self.message)

    def format_full(self) -> str:
        """Format error with all recovery hints."""
        lines = [f"Error: {self.message}"]

        if self.cause:
            lines.append(f"Caused by: {self.cause}")

        if self.recovery_hints:
            lines.append("\nRecovery options:")
            for i, hint in enumerate(self.recovery_hints, 1):
                lines.append(f"  {i}. {hint}")

        return "\n".join(lines)


class UsageError(GPGPipeError):
    """The engine was driven incorrectly (e.g. run() without an operation)."""

    def __init__(self, message: str) -> None:
        super().__init__(message=message, code=ErrorCode.UNKNOWN)


class ConfigError(GPGPipeError):
    """Homedir or binary configuration problem."""

    def __init__(self, message: str, path: str | None = None) -> None:
        hints = []
        if path:
            hints.append(RecoveryHint(f"Check that {path} exists and is accessible"))
        super().__init__(message=message, code=ErrorCode.UNKNOWN, recovery_hints=hints)
        self.path = path


class VersionError(GPGPipeError):
    """GnuPG version could not be determined or is unsupported."""

    def __init__(self, message: str, version: str | None = None) -> None:
        super().__init__(
            message=message,
            code=ErrorCode.UNKNOWN,
            recovery_hints=[
                RecoveryHint("Check the installed GnuPG", command="gpg --version"),
            ],
        )
        self.version = version


class SubprocessIOError(GPGPipeError):
    """Fatal I/O failure talking to the GnuPG subprocess."""

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        super().__init__(message=message, code=ErrorCode.UNKNOWN, cause=cause)


class BadPassphraseError(GPGPipeError):
    def __init__(self, message: str, key_ids: list[str] | None = None) -> None:
        super().__init__(
            message=message,
            code=ErrorCode.BAD_PASSPHRASE,
            recovery_hints=[RecoveryHint("Check the passphrase supplied for the key")],
        )
        self.key_ids = key_ids or []


class MissingPassphraseError(GPGPipeError):
    def __init__(self, message: str) -> None:
        super().__init__(
            message=message,
            code=ErrorCode.MISSING_PASSPHRASE,
            recovery_hints=[RecoveryHint("Supply a passphrase when adding the key")],
        )


class KeyNotFoundError(GPGPipeError):
    def __init__(self, message: str, key_id: str | None = None) -> None:
        hints = [RecoveryHint("Import the required key into the keyring")]
        if key_id:
            hints.append(RecoveryHint("Look for the key", command=f"gpg --list-keys {key_id}"))
        super().__init__(message=message, code=ErrorCode.KEY_NOT_FOUND, recovery_hints=hints)
        self.key_id = key_id


class NoDataError(GPGPipeError):
    def __init__(self, message: str) -> None:
        super().__init__(message=message, code=ErrorCode.NO_DATA)


class DuplicateKeyError(GPGPipeError):
    def __init__(self, message: str) -> None:
        super().__init__(message=message, code=ErrorCode.DUPLICATE_KEY)


class DeletePrivateKeyError(GPGPipeError):
    def __init__(self, message: str) -> None:
        super().__init__(
            message=message,
            code=ErrorCode.DELETE_PRIVATE_KEY,
            recovery_hints=[RecoveryHint("Delete the private key before the public key")],
        )


class BadSignatureError(GPGPipeError):
    def __init__(self, message: str) -> None:
        super().__init__(message=message, code=ErrorCode.BAD_SIGNATURE)


class FilePermissionsError(GPGPipeError):
    def __init__(self, message: str, filename: str | None = None) -> None:
        hints = []
        if filename:
            hints.append(RecoveryHint(f"Check permissions on {filename}"))
        super().__init__(message=message, code=ErrorCode.FILE_PERMISSIONS, recovery_hints=hints)
        self.filename = filename


_ERRORS_BY_CODE: dict[ErrorCode, type[GPGPipeError]] = {
    ErrorCode.BAD_PASSPHRASE: BadPassphraseError,
    ErrorCode.MISSING_PASSPHRASE: MissingPassphraseError,
    ErrorCode.DUPLICATE_KEY: DuplicateKeyError,
    ErrorCode.NO_DATA: NoDataError,
    ErrorCode.KEY_NOT_FOUND: KeyNotFoundError,
    ErrorCode.DELETE_PRIVATE_KEY: DeletePrivateKeyError,
    ErrorCode.BAD_SIGNATURE: BadSignatureError,
    ErrorCode.FILE_PERMISSIONS: FilePermissionsError,
}


def error_for_code(code: ErrorCode, message: str) -> GPGPipeError:
    """Build the exception matching an engine error code."""
    error_type = _ERRORS_BY_CODE.get(code)
    if error_type is None:
        return GPGPipeError(message=message, code=code)
    return error_type(message)


# Common GnuPG diagnostics and their fixes

COMMON_ERROR_PATTERNS: dict[str, list[RecoveryHint]] = {
    "no secret key": [
        RecoveryHint("Import the private key", command="gpg --import private.asc"),
    ],
    "no public key": [
        RecoveryHint("Import the signer's public key", command="gpg --import public.asc"),
    ],
    "bad passphrase": [
        RecoveryHint("Check the passphrase supplied for the key"),
    ],
    "gpg-agent": [
        RecoveryHint("Kill and restart GPG agent", command="gpgconf --kill gpg-agent"),
        RecoveryHint("Check socket permissions in the GnuPG home directory"),
    ],
    "permission denied": [
        RecoveryHint("Check GnuPG home directory permissions (0700)"),
    ],
    "pinentry": [
        RecoveryHint("Check the relay is installed", command="gpgpipe doctor"),
    ],
}


def get_recovery_hints_for_message(error_message: str) -> list[RecoveryHint]:
    """Get recovery hints based on error message patterns."""
    hints = []
    lower_message = error_message.lower()

    for pattern, pattern_hints in COMMON_ERROR_PATTERNS.items():
        if pattern in lower_message:
            hints.extend(pattern_hints)

    return hints


def wrap_exception(exception: Exception) -> GPGPipeError:
    """Wrap a generic exception in a GPGPipeError with recovery hints."""
    if isinstance(exception, GPGPipeError):
        return exception
    message = str(exception)
    return GPGPipeError(
        message=message,
        code=ErrorCode.UNKNOWN,
        recovery_hints=get_recovery_hints_for_message(message),
        cause=exception,
    )
