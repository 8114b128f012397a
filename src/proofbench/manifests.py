"""Collect host and toolchain manifests for benchmark runs."""
from __future__ import annotations

import os
import platform
import shutil
import subprocess
import sys
from datetime import datetime, timezone
from typing import Any, Dict

TOOLCHAIN_COMMANDS: dict[str, list[list[str]]] = {
    "zkwasm": [["rustc", "--version"], ["cargo", "--version"], ["wasm2wat", "--version"], ["zkengine", "--version"]],
    "openvm": [["rustc", "--version"], ["cargo", "--version"], ["cargo", "openvm", "--version"]],
}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _maybe_run_command(cmd: list[str]) -> Dict[str, Any]:
    if not cmd:
        return {"command": [], "error": "empty command"}
    if shutil.which(cmd[0]) is None:
        return {
            "command": cmd,
            "error": "command unavailable",
        }
    try:
        out = subprocess.check_output(cmd, stderr=subprocess.STDOUT, timeout=5)
    except (OSError, subprocess.CalledProcessError, subprocess.TimeoutExpired) as exc:  # pragma: no cover - best effort
        return {"command": cmd, "error": str(exc)}
    return {
        "command": cmd,
        "stdout": out.decode("utf-8", errors="replace").strip(),
    }


def host_manifest() -> Dict[str, Any]:
    return {
        "schema": "proofbench_host_manifest_v1",
        "generated_at": _now_iso(),
        "platform": platform.platform(),
        "machine": platform.machine(),
        "cpu": platform.processor() or platform.machine(),
        "logical_cores": os.cpu_count(),
        "python": sys.version,
    }


def toolchain_manifest(backend: str) -> Dict[str, Any]:
    """Versions of the external tools a backend shells out to (best effort)."""
    commands = {" ".join(cmd): _maybe_run_command(cmd) for cmd in TOOLCHAIN_COMMANDS.get(backend, [])}
    return {
        "schema": "proofbench_toolchain_manifest_v1",
        "generated_at": _now_iso(),
        "backend": backend,
        "commands": commands,
    }
