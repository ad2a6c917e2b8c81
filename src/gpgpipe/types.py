from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Generic, TypeVar

T = TypeVar("T")
U = TypeVar("U")


class Channel(IntEnum):
    """Logical streams between the engine and the gpg subprocess."""

    INPUT = 0
    OUTPUT = 1
    ERROR = 2
    STATUS = 3
    COMMAND = 4
    MESSAGE = 5


class SignatureMode(Enum):
    NORMAL = "normal"
    CLEAR = "clear"
    DETACHED = "detached"


class FingerprintFormat(Enum):
    NONE = "none"
    CANONICAL = "canonical"
    X509 = "x509"


@dataclass(frozen=True)
class AgentInfo:
    socket_path: str
    pid: int | None
    protocol: str = "1"

    @classmethod
    def parse(cls, value: str) -> AgentInfo:
        """Parse a ``path:pid:protocol`` GPG_AGENT_INFO value."""
        parts = value.strip().split(":")
        path = parts[0]
        pid = int(parts[1]) if len(parts) > 1 and parts[1].isdigit() else None
        protocol = parts[2] if len(parts) > 2 and parts[2] else "1"
        return cls(socket_path=path, pid=pid, protocol=protocol)

    def __str__(self) -> str:
        pid = "" if self.pid is None else str(self.pid)
        return f"{self.socket_path}:{pid}:{self.protocol}"


_USER_ID_PATTERN = re.compile(r"^(?P<name>.*?)\s*(?:\((?P<comment>[^)]*)\))?\s*(?:<(?P<email>[^>]*)>)?$")


@dataclass
class UserId:
    name: str = ""
    comment: str = ""
    email: str = ""
    revoked: bool = False
    valid: bool = True

    @classmethod
    def parse(cls, text: str) -> UserId:
        """Split ``Name (Comment) <email>`` into its parts."""
        match = _USER_ID_PATTERN.match(text.strip())
        if not match:
            return cls(name=text.strip())
        return cls(
            name=match.group("name") or "",
            comment=match.group("comment") or "",
            email=match.group("email") or "",
        )

    def __str__(self) -> str:
        text = self.name
        if self.comment:
            text += f" ({self.comment})"
        if self.email:
            text += f" <{self.email}>"
        return text.strip()


@dataclass
class SubKey:
    id: str
    fingerprint: str = ""
    algorithm: int = 0
    length: int = 0
    creation_date: datetime | None = None
    expiration_date: datetime | None = None
    can_sign: bool = False
    can_encrypt: bool = False
    has_private: bool = False
    revoked: bool = False


@dataclass
class Key:
    user_ids: list[UserId] = field(default_factory=list)
    sub_keys: list[SubKey] = field(default_factory=list)

    @property
    def primary_key(self) -> SubKey | None:
        return self.sub_keys[0] if self.sub_keys else None

    @property
    def fingerprint(self) -> str:
        primary = self.primary_key
        return primary.fingerprint if primary else ""

    def can_sign(self) -> bool:
        return any(sub_key.can_sign for sub_key in self.sub_keys)

    def can_encrypt(self) -> bool:
        return any(sub_key.can_encrypt for sub_key in self.sub_keys)

    def __str__(self) -> str:
        if self.user_ids:
            return str(self.user_ids[0])
        return self.fingerprint


@dataclass
class Signature:
    """One signature record, filled in as verify status lines arrive."""

    id: str = ""
    fingerprint: str = ""
    key_id: str = ""
    user_id: UserId | None = None
    creation_date: datetime | None = None
    expiration_date: datetime | None = None
    valid: bool = False


@dataclass(frozen=True)
class Verification:
    data: bytes
    signatures: list[Signature]


@dataclass
class KeyImportResult:
    fingerprint: str | None = None
    public_imported: int = 0
    public_unchanged: int = 0
    private_imported: int = 0
    private_unchanged: int = 0


class SecureString:
    __slots__ = ("_value",)

    def __init__(self, value: str) -> None:
        self._value = value

    def get(self) -> str:
        return self._value

    def __repr__(self) -> str:
        return "SecureString(****)"

    def __str__(self) -> str:
        return "****"

    def __len__(self) -> int:
        return len(self._value)

    def clear(self) -> None:
        self._value = "\x00" * len(self._value)
        self._value = ""


@dataclass
class KeyRef:
    """Fingerprint and optional passphrase for one sub-key."""

    fingerprint: str
    passphrase: SecureString | None = None


class Result(Generic[T]):
    __slots__ = ("_value", "_error", "_is_ok")

    def __init__(self, value: T | None, error: Exception | None, is_ok: bool) -> None:
        self._value = value
        self._error = error
        self._is_ok = is_ok

    @staticmethod
    def ok(value: T) -> Result[T]:
        return Result(value, None, True)

    @staticmethod
    def err(error: Exception) -> Result[T]:
        return Result(None, error, False)

    def is_ok(self) -> bool:
        return self._is_ok

    def is_err(self) -> bool:
        return not self._is_ok

    def unwrap(self) -> T:
        if not self._is_ok:
            raise self._error if self._error else RuntimeError("Result is error but no error set")
        return self._value  # type: ignore

    def unwrap_err(self) -> Exception:
        if self._is_ok:
            raise RuntimeError("Called unwrap_err on Ok result")
        return self._error  # type: ignore

    def unwrap_or(self, default: T) -> T:
        return self._value if self._is_ok else default  # type: ignore

    def map(self, fn: Callable[[T], U]) -> Result[U]:
        if self._is_ok:
            try:
                return Result.ok(fn(self._value))  # type: ignore
            except Exception as e:
                return Result.err(e)
        return Result.err(self._error)  # type: ignore
