from __future__ import annotations

import os
import platform
import shutil
import subprocess
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pexpect

from .config import EngineOptions, find_pinentry, get_gnupghome
from .engine import Engine
from .errors import GPGPipeError

_TOOLS = ("gpg", "gpg-agent", "gpg-connect-agent", "gpgconf")


@dataclass
class DiagnosticInfo:
    """Complete diagnostic information."""

    timestamp: datetime
    system_info: dict[str, Any]
    gpg_info: dict[str, Any]
    agent_info: dict[str, Any]
    pinentry_info: dict[str, Any]
    issues: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)


def get_system_info() -> dict[str, Any]:
    """Gather system information."""
    return {
        "platform": platform.system(),
        "platform_release": platform.release(),
        "machine": platform.machine(),
        "python_version": platform.python_version(),
    }


def get_gpg_info(options: EngineOptions | None = None) -> dict[str, Any]:
    """Locate the GnuPG tools and check the version the engine would use."""
    options = options or EngineOptions()
    home = options.homedir or get_gnupghome()
    info: dict[str, Any] = {
        "installed": False,
        "version": None,
        "home": str(home),
        "home_writable": os.access(home, os.W_OK),
        "tools": {tool: shutil.which(tool) for tool in _TOOLS},
    }

    try:
        engine = Engine(options)
        info["installed"] = True
        info["path"] = str(engine.binary)
        info["version"] = engine.get_version()
    except GPGPipeError as e:
        info["error"] = str(e)

    return info


def get_agent_info(homedir: Path | None = None) -> dict[str, Any]:
    """Ask an agent already serving ``homedir`` for its PID and socket."""
    home = homedir or get_gnupghome()
    info: dict[str, Any] = {
        "running": False,
        "pid": None,
        "socket_path": None,
    }

    try:
        result = subprocess.run(
            ["gpg-connect-agent", "--homedir", str(home), "--no-autostart", "GETINFO pid", "/bye"],
            capture_output=True,
            text=True,
            timeout=5,
        )
        for line in result.stdout.split("\n"):
            if line.startswith("D "):
                info["running"] = True
                info["pid"] = line[2:].strip()
    except (OSError, subprocess.TimeoutExpired) as e:
        info["error"] = str(e)

    try:
        result = subprocess.run(
            ["gpgconf", "--homedir", str(home), "--list-dirs", "agent-socket"],
            capture_output=True,
            text=True,
            timeout=5,
        )
        if result.returncode == 0:
            info["socket_path"] = result.stdout.strip()
    except (OSError, subprocess.TimeoutExpired) as e:
        errors = [info["error"]] if "error" in info else []
        info["error"] = "; ".join([*errors, str(e)])

    return info


def check_pinentry(pinentry: str | None = None, timeout: int = 10) -> dict[str, Any]:
    """Run the relay through a short session the way gpg-agent would."""
    info: dict[str, Any] = {
        "path": None,
        "handshake": False,
        "pid": None,
    }

    located = find_pinentry(pinentry)
    if located.is_err():
        info["error"] = str(located.unwrap_err())
        return info
    info["path"] = str(located.unwrap())

    try:
        child = pexpect.spawn(info["path"], [], encoding="utf-8", timeout=timeout)

        child.expect(r"OK [^\r\n]*ready and waiting")
        info["handshake"] = True

        child.sendline("GETINFO pid")
        child.expect(r"D (\d+)")
        info["pid"] = child.match.group(1)
        child.expect(r"OK")

        child.sendline("BYE")
        child.expect(r"OK closing connection")
        child.expect(pexpect.EOF)
        child.close()
        info["exit_status"] = child.exitstatus

    except pexpect.exceptions.TIMEOUT as e:
        info["error"] = f"Timeout talking to pinentry: {e}"
    except pexpect.exceptions.EOF as e:
        info["error"] = f"Unexpected EOF from pinentry: {e}"
    except pexpect.exceptions.ExceptionPexpect as e:
        info["error"] = f"Could not start pinentry: {e}"

    return info


def analyze_issues(diagnostic: DiagnosticInfo) -> None:
    """Analyze diagnostic info and identify issues/recommendations."""
    issues = diagnostic.issues
    recommendations = diagnostic.recommendations
    gpg = diagnostic.gpg_info

    if not gpg.get("installed"):
        issues.append("GnuPG is not usable")
        recommendations.append(
            "Install GnuPG: brew install gnupg (macOS) or apt install gnupg (Linux)"
        )
    elif gpg.get("error"):
        issues.append(f"GnuPG version check failed: {gpg['error']}")

    version = gpg.get("version") or ""
    if version and not version.startswith("1.") and not gpg["tools"].get("gpg-agent"):
        issues.append("gpg-agent is required for GnuPG 2.x but was not found")
        recommendations.append("Install the gpg-agent package or pass --agent")

    if not gpg.get("home_writable"):
        issues.append(f"GnuPG home {gpg.get('home')} is not writable")
        recommendations.append("Runs will use --no-random-seed-file; check directory ownership")

    if not diagnostic.pinentry_info.get("handshake"):
        issues.append("gpgpipe-pinentry did not complete a handshake")
        recommendations.append("Reinstall gpgpipe so the gpgpipe-pinentry script is on PATH")

    if diagnostic.agent_info.get("running"):
        issues.append("An agent is already running for this home directory")
        recommendations.append(
            "Passphrases will go to that agent's pinentry: gpgconf --kill gpg-agent"
        )


def run_diagnostics(options: EngineOptions | None = None) -> DiagnosticInfo:
    """Run complete diagnostics and return results."""
    options = options or EngineOptions()
    diagnostic = DiagnosticInfo(
        timestamp=datetime.now(UTC),
        system_info=get_system_info(),
        gpg_info=get_gpg_info(options),
        agent_info=get_agent_info(options.homedir),
        pinentry_info=check_pinentry(options.pinentry),
    )

    analyze_issues(diagnostic)
    return diagnostic


def format_diagnostic_report(diagnostic: DiagnosticInfo) -> str:
    """Format diagnostic info as a human-readable report."""
    lines = []
    lines.append("=" * 60)
    lines.append("gpgpipe Diagnostic Report")
    lines.append(f"Generated: {diagnostic.timestamp.isoformat()}")
    lines.append("=" * 60)

    lines.append("\n[System Information]")
    for key, value in diagnostic.system_info.items():
        lines.append(f"  {key}: {value}")

    lines.append("\n[GnuPG]")
    gpg = diagnostic.gpg_info
    lines.append(f"  Usable: {gpg.get('installed', False)}")
    if gpg.get("version"):
        lines.append(f"  Version: {gpg['version']}")
    lines.append(f"  Home: {gpg.get('home', 'unknown')}")
    for tool, path in gpg.get("tools", {}).items():
        lines.append(f"  {tool}: {path or 'not found'}")
    if gpg.get("error"):
        lines.append(f"  Error: {gpg['error']}")

    lines.append("\n[GPG Agent]")
    agent = diagnostic.agent_info
    lines.append(f"  Running: {agent.get('running', False)}")
    if agent.get("pid"):
        lines.append(f"  PID: {agent['pid']}")
    if agent.get("socket_path"):
        lines.append(f"  Socket: {agent['socket_path']}")
    if agent.get("error"):
        lines.append(f"  Error: {agent['error']}")

    lines.append("\n[Pinentry Relay]")
    relay = diagnostic.pinentry_info
    lines.append(f"  Path: {relay.get('path') or 'not found'}")
    lines.append(f"  Handshake: {relay.get('handshake', False)}")
    if relay.get("error"):
        lines.append(f"  Error: {relay['error']}")

    if diagnostic.issues:
        lines.append("\n[Issues Detected]")
        for issue in diagnostic.issues:
            lines.append(f"  * {issue}")

    if diagnostic.recommendations:
        lines.append("\n[Recommendations]")
        for rec in diagnostic.recommendations:
            lines.append(f"  -> {rec}")

    if not diagnostic.issues:
        lines.append("\n[Status]")
        lines.append("  All checks passed.")

    lines.append("\n" + "=" * 60)
    return "\n".join(lines)
