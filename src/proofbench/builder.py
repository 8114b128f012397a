"""Compile guest programs with the external toolchain."""
from __future__ import annotations

import logging
import os
import subprocess
from pathlib import Path
from typing import Mapping

from .adapter import BackendAdapter, BuiltArtifact, GuestProgram
from .errors import BuildError

logger = logging.getLogger(__name__)


class GuestArtifactBuilder:
    """Runs an adapter's build plan and returns the resulting artifact.

    ``target_dir`` is the shared output root the toolchain writes into; it is
    passed explicitly so concurrent benchmarks can keep their builds apart.
    Every call rebuilds.
    """

    def __init__(
        self,
        target_dir: Path,
        *,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> None:
        self.target_dir = Path(target_dir)
        self.env = dict(env or {})
        self.timeout = timeout

    def build(self, guest: GuestProgram, adapter: BackendAdapter) -> BuiltArtifact:
        if not guest.source_dir.exists():
            raise BuildError(f"guest source directory not found: {guest.source_dir}")
        plan = adapter.build_plan(guest, self.target_dir)
        env = dict(os.environ)
        env.update(plan.env)
        env.update(self.env)
        cwd = plan.cwd or guest.source_dir

        logger.info("Building guest %s for %s", guest.name, adapter.name)
        for cmd in plan.commands:
            self._run(cmd, cwd=cwd, env=env)

        if not plan.artifact_path.exists():
            raise BuildError(f"build finished but artifact is missing: {plan.artifact_path}")
        artifact = adapter.open_artifact(guest, plan.artifact_path)
        logger.info("Built %s (%s, sha256 %s)", artifact.path, artifact.kind, artifact.digest[:16])
        return artifact

    def _run(self, cmd: tuple[str, ...], *, cwd: Path, env: dict[str, str]) -> None:
        logger.debug("$ %s", " ".join(cmd))
        try:
            result = subprocess.run(
                list(cmd),
                capture_output=True,
                text=True,
                cwd=cwd,
                env=env,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise BuildError(f"build timed out after {self.timeout:g}s", command=cmd) from exc
        except OSError as exc:
            raise BuildError(f"cannot launch {cmd[0]}: {exc}", command=cmd) from exc
        if result.returncode != 0:
            raise BuildError(
                f"{cmd[0]} exited with status {result.returncode}",
                command=cmd,
                stderr=result.stderr or "",
            )
