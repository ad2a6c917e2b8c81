from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from rich.console import Console
from rich.prompt import Prompt
from rich.table import Table

from .config import EngineOptions, setup_logging
from .diagnostics import format_diagnostic_report, run_diagnostics
from .errors import GPGPipeError, wrap_exception
from .gnupg import GnuPG
from .types import Result, SignatureMode

console = Console()
err_console = Console(stderr=True)


def get_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gpgpipe",
        description="Drive GnuPG through its status protocol",
    )
    parser.add_argument("--homedir", type=Path, default=None, help="GnuPG home directory")
    parser.add_argument("--binary", default=None, help="Path to the gpg binary")
    parser.add_argument("--agent", default=None, help="Path to the gpg-agent binary")
    parser.add_argument("--debug", action="store_true", help="Log engine traffic to stderr")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("version", help="Show the GnuPG version in use")

    list_parser = subparsers.add_parser("list-keys", help="List keys in the keyring")
    list_parser.add_argument("key", nargs="?", default="", help="Key id, fingerprint or user id")

    import_parser = subparsers.add_parser("import", help="Import a key")
    import_parser.add_argument("file", type=Path, help="Key file to import")

    export_parser = subparsers.add_parser("export", help="Export a public key")
    export_parser.add_argument("key", help="Key id or fingerprint")
    _add_output_arguments(export_parser)

    encrypt_parser = subparsers.add_parser("encrypt", help="Encrypt data")
    encrypt_parser.add_argument(
        "-r", "--recipient", action="append", required=True, help="Recipient key (repeatable)"
    )
    encrypt_parser.add_argument("-s", "--sign-with", default=None, help="Also sign with this key")
    encrypt_parser.add_argument("file", nargs="?", default="-", help="Input file (default: stdin)")
    _add_output_arguments(encrypt_parser)

    decrypt_parser = subparsers.add_parser("decrypt", help="Decrypt data")
    decrypt_parser.add_argument(
        "-k", "--key", action="append", default=[], help="Decryption key needing a passphrase"
    )
    decrypt_parser.add_argument(
        "--verify", action="store_true", help="Also report signatures on the data"
    )
    decrypt_parser.add_argument("file", nargs="?", default="-", help="Input file (default: stdin)")
    _add_output_arguments(decrypt_parser)

    sign_parser = subparsers.add_parser("sign", help="Sign data")
    sign_parser.add_argument("-k", "--key", required=True, help="Signing key")
    sign_parser.add_argument(
        "--mode",
        choices=[mode.value for mode in SignatureMode],
        default=SignatureMode.CLEAR.value,
        help="Signature mode (default: clear)",
    )
    sign_parser.add_argument("file", nargs="?", default="-", help="Input file (default: stdin)")
    _add_output_arguments(sign_parser)

    verify_parser = subparsers.add_parser("verify", help="Verify signed data")
    verify_parser.add_argument(
        "--signature", type=Path, default=None, help="Detached signature file"
    )
    verify_parser.add_argument("file", nargs="?", default="-", help="Signed data (default: stdin)")

    subparsers.add_parser("doctor", help="Run diagnostics and troubleshooting")

    return parser


def _add_output_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-a", "--armor", action="store_true", help="ASCII armored output")
    parser.add_argument("-o", "--output", type=Path, default=None, help="Output file (default: stdout)")


def _options_from_args(ns: argparse.Namespace) -> EngineOptions:
    return EngineOptions(
        homedir=ns.homedir,
        binary=ns.binary,
        agent=ns.agent,
        debug=ns.debug,
    )


def _read_input(name: str) -> bytes:
    if name == "-":
        return sys.stdin.buffer.read()
    return Path(name).read_bytes()


def _write_output(data: bytes, path: Path | None) -> None:
    if path is None:
        sys.stdout.buffer.write(data)
        sys.stdout.buffer.flush()
    else:
        path.write_bytes(data)


def _ask_passphrase(key: str) -> str:
    return Prompt.ask(f"Passphrase for {key}", password=True, console=err_console)


def show_error(error: Exception) -> None:
    wrapped = wrap_exception(error)
    err_console.print(f"[red]{wrapped.format_full()}[/red]", markup=True, highlight=False)


def _check(result: Result[object]) -> bool:
    if result.is_err():
        show_error(result.unwrap_err())
        return False
    return True


def cmd_version(gpg: GnuPG) -> int:
    """Show the GnuPG version in use."""
    console.print(f"GnuPG {gpg.engine.get_version()} ({gpg.engine.binary})")
    return 0


def cmd_list_keys(gpg: GnuPG, key: str) -> int:
    """List keys in the keyring."""
    result = gpg.get_keys(key)
    if not _check(result):
        return 1

    keys = result.unwrap()
    if not keys:
        console.print("No keys found.")
        return 0

    table = Table(title="Keys")
    table.add_column("Fingerprint", style="cyan")
    table.add_column("User ID")
    table.add_column("Sub-keys", justify="right")
    table.add_column("Secret")

    for k in keys:
        table.add_row(
            k.fingerprint,
            str(k.user_ids[0]) if k.user_ids else "",
            str(len(k.sub_keys)),
            "yes" if any(sub_key.has_private for sub_key in k.sub_keys) else "no",
        )

    console.print(table)
    return 0


def cmd_import(gpg: GnuPG, path: Path) -> int:
    """Import a key from a file."""
    result = gpg.import_key(path.read_bytes())
    if not _check(result):
        return 1

    imported = result.unwrap()
    console.print(f"[green]Imported[/green] {imported.fingerprint or 'key'}")
    console.print(f"  Public: {imported.public_imported} new, {imported.public_unchanged} unchanged")
    console.print(
        f"  Private: {imported.private_imported} new, {imported.private_unchanged} unchanged"
    )
    return 0


def cmd_export(gpg: GnuPG, ns: argparse.Namespace) -> int:
    """Export a public key."""
    gpg.armor = ns.armor
    result = gpg.export_public_key(ns.key)
    if not _check(result):
        return 1
    _write_output(result.unwrap(), ns.output)
    return 0


def cmd_encrypt(gpg: GnuPG, ns: argparse.Namespace) -> int:
    """Encrypt (and optionally sign) data."""
    gpg.armor = ns.armor
    for recipient in ns.recipient:
        if not _check(gpg.add_encrypt_key(recipient)):
            return 1

    data = _read_input(ns.file)
    if ns.sign_with:
        if not _check(gpg.add_sign_key(ns.sign_with, _ask_passphrase(ns.sign_with))):
            return 1
        result = gpg.encrypt_and_sign(data)
    else:
        result = gpg.encrypt(data)

    if not _check(result):
        return 1
    _write_output(result.unwrap(), ns.output)
    return 0


def cmd_decrypt(gpg: GnuPG, ns: argparse.Namespace) -> int:
    """Decrypt data, optionally reporting signatures."""
    for key in ns.key:
        if not _check(gpg.add_decrypt_key(key, _ask_passphrase(key))):
            return 1

    data = _read_input(ns.file)
    if not ns.verify:
        result = gpg.decrypt(data)
        if not _check(result):
            return 1
        _write_output(result.unwrap(), ns.output)
        return 0

    verified = gpg.decrypt_and_verify(data)
    if not _check(verified):
        return 1
    verification = verified.unwrap()
    _write_output(verification.data, ns.output)
    _show_signatures(verification.signatures)
    return 0


def cmd_sign(gpg: GnuPG, ns: argparse.Namespace) -> int:
    """Sign data."""
    gpg.armor = ns.armor
    if not _check(gpg.add_sign_key(ns.key, _ask_passphrase(ns.key))):
        return 1

    result = gpg.sign(_read_input(ns.file), SignatureMode(ns.mode))
    if not _check(result):
        return 1
    _write_output(result.unwrap(), ns.output)
    return 0


def cmd_verify(gpg: GnuPG, ns: argparse.Namespace) -> int:
    """Verify signed data or a detached signature."""
    signature = ns.signature.read_bytes() if ns.signature else b""
    result = gpg.verify(_read_input(ns.file), signature)
    if not _check(result):
        return 1

    signatures = result.unwrap()
    _show_signatures(signatures)
    return 0 if signatures and all(sig.valid for sig in signatures) else 1


def _show_signatures(signatures: list) -> None:
    if not signatures:
        err_console.print("[yellow]No signatures found.[/yellow]")
        return
    for sig in signatures:
        status = "[green]Good[/green]" if sig.valid else "[red]Bad[/red]"
        who = str(sig.user_id) if sig.user_id else sig.key_id
        created = sig.creation_date.isoformat() if sig.creation_date else "unknown"
        err_console.print(f"{status} signature from {who} ({sig.fingerprint or sig.key_id}), made {created}")


def cmd_doctor(options: EngineOptions) -> int:
    """Run diagnostics and troubleshooting."""
    console.print("Running diagnostics...")
    diagnostic = run_diagnostics(options)
    report = format_diagnostic_report(diagnostic)
    console.print(report, markup=False, highlight=False)
    return 0


def run(args: list[str]) -> int:
    """Main entry point."""
    parser = get_parser()
    ns = parser.parse_args(args)

    if not ns.command:
        parser.print_help()
        return 1

    setup_logging(logging.DEBUG if ns.debug else logging.WARNING, console=err_console)
    options = _options_from_args(ns)

    if ns.command == "doctor":
        return cmd_doctor(options)

    try:
        gpg = GnuPG(options)

        if ns.command == "version":
            return cmd_version(gpg)
        elif ns.command == "list-keys":
            return cmd_list_keys(gpg, ns.key)
        elif ns.command == "import":
            return cmd_import(gpg, ns.file)
        elif ns.command == "export":
            return cmd_export(gpg, ns)
        elif ns.command == "encrypt":
            return cmd_encrypt(gpg, ns)
        elif ns.command == "decrypt":
            return cmd_decrypt(gpg, ns)
        elif ns.command == "sign":
            return cmd_sign(gpg, ns)
        elif ns.command == "verify":
            return cmd_verify(gpg, ns)
    except (GPGPipeError, OSError) as e:
        show_error(e)
        return 1

    parser.print_help()
    return 1
