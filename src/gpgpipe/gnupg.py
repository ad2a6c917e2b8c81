from __future__ import annotations

import json
import logging
import re

from .config import EngineOptions
from .engine import Engine, version_at_least
from .errors import (
    BadPassphraseError,
    ErrorCode,
    GPGPipeError,
    KeyNotFoundError,
    MissingPassphraseError,
    NoDataError,
    UsageError,
    error_for_code,
)
from .status_handlers import (
    DecryptStatusHandler,
    ImportStatusHandler,
    SignStatusHandler,
    VerifyStatusHandler,
    parse_timestamp,
)
from .types import (
    FingerprintFormat,
    Key,
    KeyImportResult,
    KeyRef,
    Result,
    SecureString,
    Signature,
    SignatureMode,
    SubKey,
    UserId,
    Verification,
)

logger = logging.getLogger(__name__)

_LIST_ARGUMENTS = ["--with-colons", "--with-fingerprint", "--with-fingerprint", "--fixed-list-mode"]
_COLON_ESCAPE = re.compile(r"\\x([0-9a-fA-F]{2})")

KeyLike = Key | SubKey | str
Passphrase = str | SecureString | None


def _as_bytes(data: bytes | str) -> bytes:
    return data.encode("utf-8") if isinstance(data, str) else bytes(data)


def _unescape_colon_field(value: str) -> str:
    """Decode the ``\\xNN`` escapes gpg uses inside colon listings."""
    return _COLON_ESCAPE.sub(lambda m: chr(int(m.group(1), 16)), value)


def format_fingerprint(fingerprint: str, fmt: FingerprintFormat) -> str:
    if fmt == FingerprintFormat.CANONICAL:
        groups = [fingerprint[i : i + 4] for i in range(0, len(fingerprint), 4)]
        return " ".join(groups[:5]) + "  " + " ".join(groups[5:])
    if fmt == FingerprintFormat.X509:
        return ":".join(fingerprint[i : i + 2] for i in range(0, len(fingerprint), 2))
    return fingerprint


def parse_sub_key(fields: list[str]) -> SubKey:
    """Build a SubKey from a ``pub``/``sec``/``sub``/``ssb`` colon line."""
    capabilities = fields[11] if len(fields) > 11 else ""
    return SubKey(
        id=fields[4],
        algorithm=int(fields[3] or 0),
        length=int(fields[2] or 0),
        creation_date=parse_timestamp(fields[5]),
        expiration_date=parse_timestamp(fields[6]),
        can_sign="s" in capabilities,
        can_encrypt="e" in capabilities,
        revoked=fields[1] == "r",
    )


def parse_key_listing(output: str, private_fingerprints: set[str] | None = None) -> list[Key]:
    """Turn ``--list-keys --with-colons`` output into Key objects."""
    private_fingerprints = private_fingerprints or set()
    keys: list[Key] = []
    key: Key | None = None

    for line in output.splitlines():
        fields = line.split(":")
        record = fields[0]

        if record == "pub":
            key = Key()
            keys.append(key)
            key.sub_keys.append(parse_sub_key(fields))
        elif record == "sub" and key is not None:
            key.sub_keys.append(parse_sub_key(fields))
        elif record == "fpr" and key is not None and key.sub_keys:
            sub_key = key.sub_keys[-1]
            sub_key.fingerprint = fields[9]
            sub_key.has_private = sub_key.fingerprint in private_fingerprints
        elif record == "uid" and key is not None:
            user_id = UserId.parse(_unescape_colon_field(fields[9]))
            user_id.revoked = fields[1] == "r"
            key.user_ids.append(user_id)

    return keys


def parse_fingerprints(output: str) -> list[str]:
    return [line.split(":")[9] for line in output.splitlines() if line.startswith("fpr:")]


class GnuPG:
    """High level OpenPGP operations on top of :class:`Engine`.

    Keys are selected with ``add_encrypt_key``, ``add_sign_key`` and
    ``add_decrypt_key`` before calling the matching operation. Every public
    operation returns a :class:`Result`.
    """

    def __init__(self, options: EngineOptions | None = None, engine: Engine | None = None) -> None:
        self.engine = engine or Engine(options)
        self.armor = False
        self.encrypt_keys: dict[str, KeyRef] = {}
        self.sign_keys: dict[str, KeyRef] = {}
        self.decrypt_keys: dict[str, KeyRef] = {}

    def enable_armor(self) -> None:
        self.armor = True

    def disable_armor(self) -> None:
        self.armor = False

    def _armor_arguments(self) -> list[str]:
        return ["--armor"] if self.armor else []

    # Keys

    def get_keys(self, key_id: str = "") -> Result[list[Key]]:
        try:
            return Result.ok(self._get_keys(key_id))
        except GPGPipeError as e:
            return Result.err(e)

    def _get_keys(self, key_id: str) -> list[Key]:
        selector = [key_id] if key_id else []

        private_output = self._list("--list-secret-keys", selector)
        public_output = self._list("--list-keys", selector)

        return parse_key_listing(public_output, set(parse_fingerprints(private_output)))

    def _list(self, operation: str, selector: list[str]) -> str:
        output = bytearray()
        self.engine.reset()
        self.engine.set_output(output)
        self.engine.set_operation([operation, *selector], _LIST_ARGUMENTS)
        self.engine.run()

        code = self.engine.get_error_code()
        if code not in (ErrorCode.NONE, ErrorCode.KEY_NOT_FOUND):
            raise GPGPipeError("Unknown error getting keys.", code=code)
        return output.decode("utf-8", errors="replace")

    def get_fingerprint(
        self, key_id: str, fmt: FingerprintFormat = FingerprintFormat.NONE
    ) -> Result[str | None]:
        try:
            return Result.ok(self._get_fingerprint(key_id, fmt))
        except GPGPipeError as e:
            return Result.err(e)

    def _get_fingerprint(self, key_id: str, fmt: FingerprintFormat = FingerprintFormat.NONE) -> str | None:
        output = bytearray()
        self.engine.reset()
        self.engine.set_output(output)
        self.engine.set_operation(["--list-keys", key_id], ["--with-colons", "--with-fingerprint"])
        self.engine.run()

        code = self.engine.get_error_code()
        # a missing key is not an error here
        if code not in (ErrorCode.NONE, ErrorCode.KEY_NOT_FOUND):
            raise GPGPipeError("Unknown error getting key fingerprint.", code=code)

        fingerprints = parse_fingerprints(output.decode("utf-8", errors="replace"))
        if not fingerprints:
            return None
        return format_fingerprint(fingerprints[0], fmt)

    def import_key(self, data: bytes | str) -> Result[KeyImportResult]:
        try:
            return Result.ok(self._import_key(_as_bytes(data)))
        except GPGPipeError as e:
            return Result.err(e)

    def _import_key(self, data: bytes) -> KeyImportResult:
        if not data:
            raise NoDataError("No valid GPG key data found.")

        arguments = []
        version = self.engine.get_version()
        if version_at_least(version, "1.0.5") and not version_at_least(version, "1.0.7"):
            arguments.append("--allow-secret-key-import")

        handler = ImportStatusHandler()
        self.engine.reset()
        self.engine.add_status_handler(handler.handle)
        self.engine.set_operation("--import", arguments)
        self.engine.set_input(data)
        self.engine.run()

        code = self.engine.get_error_code()
        if code in (ErrorCode.NONE, ErrorCode.DUPLICATE_KEY):
            # duplicates are fine
            return handler.result
        if code == ErrorCode.NO_DATA:
            raise NoDataError("No valid GPG key data found.")
        raise GPGPipeError("Unknown error importing GPG key.", code=code)

    def export_public_key(self, key: KeyLike) -> Result[bytes]:
        try:
            return Result.ok(self._export(self._fingerprint_of(key)))
        except GPGPipeError as e:
            return Result.err(e)

    def _export(self, fingerprint: str) -> bytes:
        key_data = bytearray()
        self.engine.reset()
        self.engine.set_output(key_data)
        self.engine.set_operation(["--export", fingerprint], self._armor_arguments())
        self.engine.run()

        code = self.engine.get_error_code()
        if code != ErrorCode.NONE:
            raise GPGPipeError("Unknown error exporting public key.", code=code)
        return bytes(key_data)

    def delete_public_key(self, key: KeyLike) -> Result[None]:
        try:
            self._delete_key(self._fingerprint_of(key))
            return Result.ok(None)
        except GPGPipeError as e:
            return Result.err(e)

    def delete_private_key(self, key: KeyLike) -> Result[None]:
        try:
            self._delete_key(self._fingerprint_of(key), allow_private=True)
            return Result.ok(None)
        except GPGPipeError as e:
            return Result.err(e)

    def _delete_key(self, key_id: str, allow_private: bool = False) -> None:
        fingerprint = self._get_fingerprint(key_id)
        if fingerprint is None:
            raise KeyNotFoundError(f"Key not found: {key_id}", key_id=key_id)

        if allow_private:
            operation = ["--delete-secret-and-public-key", fingerprint]
        else:
            operation = ["--delete-key", fingerprint]

        self.engine.reset()
        self.engine.set_operation(operation, ["--batch", "--yes"])
        self.engine.run()

        code = self.engine.get_error_code()
        if code == ErrorCode.NONE:
            return
        if code == ErrorCode.KEY_NOT_FOUND:
            raise KeyNotFoundError(f"Key not found: {fingerprint}", key_id=fingerprint)
        raise error_for_code(code, "Unknown error deleting key.")

    @staticmethod
    def _fingerprint_of(key: KeyLike) -> str:
        if isinstance(key, Key):
            return key.fingerprint
        if isinstance(key, SubKey):
            return key.fingerprint
        return key

    # Key selection

    def add_encrypt_key(self, key: KeyLike) -> Result[None]:
        return self._add_key_result(self.encrypt_keys, True, False, key)

    def add_sign_key(self, key: KeyLike, passphrase: Passphrase = None) -> Result[None]:
        return self._add_key_result(self.sign_keys, False, True, key, passphrase)

    def add_decrypt_key(self, key: KeyLike, passphrase: Passphrase = None) -> Result[None]:
        return self._add_key_result(self.decrypt_keys, True, False, key, passphrase)

    def clear_encrypt_keys(self) -> None:
        self.encrypt_keys.clear()

    def clear_sign_keys(self) -> None:
        self.sign_keys.clear()

    def clear_decrypt_keys(self) -> None:
        self.decrypt_keys.clear()

    def _add_key_result(
        self,
        target: dict[str, KeyRef],
        encrypt: bool,
        sign: bool,
        key: KeyLike,
        passphrase: Passphrase = None,
    ) -> Result[None]:
        try:
            self._add_key(target, encrypt, sign, key, passphrase)
            return Result.ok(None)
        except GPGPipeError as e:
            return Result.err(e)

    def _add_key(
        self,
        target: dict[str, KeyRef],
        encrypt: bool,
        sign: bool,
        key: KeyLike,
        passphrase: Passphrase = None,
    ) -> None:
        if isinstance(key, str):
            keys = self._get_keys(key)
            if not keys:
                raise KeyNotFoundError(f'Key "{key}" not found.', key_id=key)
            key = keys[0]

        sub_keys: list[SubKey] = []
        if isinstance(key, Key):
            if encrypt and not key.can_encrypt():
                raise UsageError(f'Key "{key}" cannot encrypt.')
            if sign and not key.can_sign():
                raise UsageError(f'Key "{key}" cannot sign.')
            # we were not told which sub-key is needed, take every match
            for sub_key in key.sub_keys:
                if encrypt and sign:
                    wanted = sub_key.can_encrypt and sub_key.can_sign
                elif encrypt:
                    wanted = sub_key.can_encrypt
                else:
                    wanted = sign and sub_key.can_sign
                if wanted:
                    sub_keys.append(sub_key)
        elif isinstance(key, SubKey):
            sub_keys.append(key)

        if not sub_keys:
            raise UsageError(f'Key "{key}" is not in a recognized format.')

        if isinstance(passphrase, str):
            passphrase = SecureString(passphrase)

        for sub_key in sub_keys:
            if encrypt and not sub_key.can_encrypt:
                raise UsageError(f'Key "{key}" cannot encrypt.')
            if sign and not sub_key.can_sign:
                raise UsageError(f'Key "{key}" cannot sign.')
            target[sub_key.id] = KeyRef(fingerprint=sub_key.fingerprint, passphrase=passphrase)
        logger.debug("selected %d sub-key(s) for %s", len(sub_keys), key)

    @staticmethod
    def pinentry_user_data(keys: dict[str, KeyRef]) -> str:
        """JSON handed to the pinentry relay through the environment."""
        return json.dumps(
            [
                {
                    "key_id": key_id,
                    "fingerprint": ref.fingerprint,
                    "passphrase": ref.passphrase.get() if ref.passphrase else None,
                }
                for key_id, ref in keys.items()
            ]
        )

    def _set_pinentry_env(self, keys: dict[str, KeyRef]) -> None:
        self.engine.set_pinentry_user_data(self.pinentry_user_data(keys))

    # Encryption

    def encrypt(self, data: bytes | str) -> Result[bytes]:
        try:
            return Result.ok(self._encrypt(_as_bytes(data)))
        except GPGPipeError as e:
            return Result.err(e)

    def _encrypt(self, data: bytes) -> bytes:
        if not self.encrypt_keys:
            raise UsageError("No encryption keys specified.")

        arguments = self._armor_arguments()
        for ref in self.encrypt_keys.values():
            arguments.extend(["--recipient", ref.fingerprint])

        output = bytearray()
        self.engine.reset()
        self.engine.set_input(data)
        self.engine.set_output(output)
        self.engine.set_operation("--encrypt", arguments)
        self.engine.run()

        code = self.engine.get_error_code()
        if code != ErrorCode.NONE:
            raise error_for_code(code, "Unknown error encrypting data.")
        return bytes(output)

    def encrypt_and_sign(self, data: bytes | str) -> Result[bytes]:
        try:
            return Result.ok(self._encrypt_and_sign(_as_bytes(data)))
        except GPGPipeError as e:
            return Result.err(e)

    def _encrypt_and_sign(self, data: bytes) -> bytes:
        if not self.sign_keys:
            raise UsageError("No signing keys specified.")
        if not self.encrypt_keys:
            raise UsageError("No encryption keys specified.")

        arguments = self._armor_arguments()
        for ref in self.sign_keys.values():
            arguments.extend(["--local-user", ref.fingerprint])
        for ref in self.encrypt_keys.values():
            arguments.extend(["--recipient", ref.fingerprint])

        output = bytearray()
        handler = SignStatusHandler(self.engine, self.sign_keys)
        self.engine.reset()
        self._set_pinentry_env(self.sign_keys)
        self.engine.add_status_handler(handler.handle)
        self.engine.set_input(data)
        self.engine.set_output(output)
        self.engine.set_operation(["--encrypt", "--sign"], arguments)
        self.engine.run()

        self._raise_for_sign_code(self.engine.get_error_code(), "Cannot sign encrypted data.")
        return bytes(output)

    # Decryption

    def decrypt(self, data: bytes | str) -> Result[bytes]:
        try:
            return Result.ok(self._decrypt(_as_bytes(data)))
        except GPGPipeError as e:
            return Result.err(e)

    def _decrypt(self, data: bytes) -> bytes:
        if not data:
            raise NoDataError(
                "Cannot decrypt data. No PGP encrypted data was found in the provided data."
            )

        output = bytearray()
        handler = DecryptStatusHandler(self.engine, self.decrypt_keys)
        self.engine.reset()
        self._set_pinentry_env(self.decrypt_keys)
        self.engine.add_status_handler(handler.handle)
        self.engine.set_operation("--decrypt")
        self.engine.set_input(data)
        self.engine.set_output(output)
        self.engine.run()

        handler.throw_exception()
        return bytes(output)

    def decrypt_and_verify(self, data: bytes | str) -> Result[Verification]:
        try:
            return Result.ok(self._decrypt_and_verify(_as_bytes(data)))
        except GPGPipeError as e:
            return Result.err(e)

    def _decrypt_and_verify(self, data: bytes) -> Verification:
        if not data:
            raise NoDataError("No valid encrypted signed data found.")

        output = bytearray()
        verify_handler = VerifyStatusHandler()
        decrypt_handler = DecryptStatusHandler(self.engine, self.decrypt_keys)
        self.engine.reset()
        self._set_pinentry_env(self.decrypt_keys)
        self.engine.add_status_handler(verify_handler.handle)
        self.engine.add_status_handler(decrypt_handler.handle)
        self.engine.set_input(data)
        self.engine.set_output(output)
        self.engine.set_operation("--decrypt")
        self.engine.run()

        decrypt_handler.throw_exception()
        return Verification(data=bytes(output), signatures=verify_handler.signatures)

    # Signing

    def sign(self, data: bytes | str, mode: SignatureMode = SignatureMode.CLEAR) -> Result[bytes]:
        try:
            return Result.ok(self._sign(_as_bytes(data), mode))
        except GPGPipeError as e:
            return Result.err(e)

    def _sign(self, data: bytes, mode: SignatureMode) -> bytes:
        if not self.sign_keys:
            raise UsageError("No signing keys specified.")

        if mode == SignatureMode.DETACHED:
            operation = "--detach-sign"
        elif mode == SignatureMode.CLEAR:
            operation = "--clearsign"
        else:
            operation = "--sign"

        arguments = self._armor_arguments()
        for ref in self.sign_keys.values():
            arguments.extend(["--local-user", ref.fingerprint])

        output = bytearray()
        handler = SignStatusHandler(self.engine, self.sign_keys)
        self.engine.reset()
        self._set_pinentry_env(self.sign_keys)
        self.engine.add_status_handler(handler.handle)
        self.engine.set_input(data)
        self.engine.set_output(output)
        self.engine.set_operation(operation, arguments)
        self.engine.run()

        self._raise_for_sign_code(self.engine.get_error_code(), "Cannot sign data.")
        return bytes(output)

    @staticmethod
    def _raise_for_sign_code(code: ErrorCode, prefix: str) -> None:
        if code == ErrorCode.NONE:
            return
        if code == ErrorCode.KEY_NOT_FOUND:
            raise KeyNotFoundError(
                f"{prefix} Private key not found. Import the private key before trying to sign."
            )
        if code == ErrorCode.BAD_PASSPHRASE:
            raise BadPassphraseError(f"{prefix} Incorrect passphrase provided.")
        if code == ErrorCode.MISSING_PASSPHRASE:
            raise MissingPassphraseError(f"{prefix} No passphrase provided.")
        raise GPGPipeError(f"{prefix} Unknown error.", code=code)

    # Verification

    def verify(self, data: bytes | str, signature: bytes | str = b"") -> Result[list[Signature]]:
        try:
            return Result.ok(self._verify(_as_bytes(data), _as_bytes(signature)))
        except GPGPipeError as e:
            return Result.err(e)

    def _verify(self, data: bytes, signature: bytes) -> list[Signature]:
        if not data:
            raise NoDataError("No valid signature data found.")

        handler = VerifyStatusHandler()
        self.engine.reset()
        self.engine.add_status_handler(handler.handle)

        if signature:
            # detached signature on input, signed data on the message channel
            self.engine.set_input(signature)
            self.engine.set_message(data)
            self.engine.set_operation(
                ["--verify", "-", Engine.MESSAGE_FILENAME], ["--enable-special-filenames"]
            )
        else:
            self.engine.set_input(data)
            self.engine.set_operation("--verify")

        self.engine.run()

        code = self.engine.get_error_code()
        if code in (ErrorCode.NONE, ErrorCode.BAD_SIGNATURE):
            return handler.signatures
        if code == ErrorCode.NO_DATA:
            raise NoDataError("No valid signature data found.")
        if code == ErrorCode.KEY_NOT_FOUND:
            raise KeyNotFoundError(
                "Public key required for data verification not in keyring.",
                key_id=self.engine.get_error_key_id() or None,
            )
        raise GPGPipeError("Unknown error validating signature details.", code=code)
