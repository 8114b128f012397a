"""Abstractions for plugging proving backends into the benchmark pipeline."""
from __future__ import annotations

import hashlib
import json
import subprocess
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Mapping, Optional, Sequence

from .errors import ConfigError, HostToolError, PipelineStageError, SetupError, Stage, StageTimeout, VerifyError


def sha256_file(path: Path) -> str:
    hasher = hashlib.sha256()
    with path.open("rb") as fh:
        while True:
            chunk = fh.read(1 << 20)
            if not chunk:
                break
            hasher.update(chunk)
    return hasher.hexdigest()


def config_fingerprint(backend: str, config: Mapping[str, Any]) -> str:
    """Hash of the canonical JSON form of a backend configuration."""
    canonical = json.dumps({"backend": backend, "config": dict(config)}, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class GuestProgram:
    name: str
    source_dir: Path

    @property
    def manifest_path(self) -> Path:
        return self.source_dir / "Cargo.toml"


@dataclass(frozen=True)
class BuildPlan:
    """Commands an adapter needs run to turn a guest into its artifact."""

    commands: tuple[tuple[str, ...], ...]
    artifact_path: Path
    cwd: Path | None = None
    env: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class BuiltArtifact:
    backend: str
    guest: GuestProgram
    kind: str
    path: Path
    digest: str


@dataclass(frozen=True)
class ProvingParameters:
    """Setup material shared read-only by every run of a benchmark."""

    backend: str
    config: Mapping[str, Any]
    fingerprint: str
    material_dir: Path
    files: Mapping[str, Path] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "config", MappingProxyType(dict(self.config)))
        object.__setattr__(self, "files", MappingProxyType(dict(self.files)))


@dataclass
class ExecutionContext:
    artifact: BuiltArtifact
    entry_point: str
    args: list[str]
    work_dir: Path
    encoded_input: Any = None


@dataclass(frozen=True)
class PublicInstance:
    path: Path
    digest: str
    ref: str


@dataclass(frozen=True)
class Proof:
    backend: str
    path: Path
    instance_ref: str
    compressed: bool = False


@dataclass(frozen=True)
class ProveResult:
    proof: Proof
    instance: PublicInstance
    trace_length: int


def new_instance_ref() -> str:
    return uuid.uuid4().hex


class BackendAdapter(ABC):
    """Interface every proving backend implements.

    The pipeline only talks to a backend through ``setup``, ``build_plan``,
    ``load_executable``, ``prove``, ``compress``, ``verify`` and
    ``serialized_size``.
    """

    name: str = "unknown"
    artifact_kind: str = "unknown"
    supports_compression: bool = False
    default_entry_point: str = "main"
    default_inputs: tuple[str, ...] = ()

    def __init__(self, options: Mapping[str, Any] | None = None, *, timeout: float | None = None) -> None:
        self.options = dict(options or {})
        self.timeout = timeout
        self._progress_callback: Optional[Callable[[dict], None]] = None

    @classmethod
    def option_specs(cls) -> dict[str, Any]:
        """Backend-specific settings and their defaults."""
        return {}

    def default_param_column(self, guest: str) -> str:
        return f"{guest}_arg"

    def entry_point_for(self, guest: str) -> str:
        return self.default_entry_point

    def set_progress_callback(self, callback: Callable[[dict], None] | None) -> None:
        self._progress_callback = callback

    def _emit_progress(self, event_type: str, data: dict[str, Any] | None = None) -> None:
        if self._progress_callback:
            self._progress_callback({"type": event_type, "data": dict(data or {}, backend=self.name)})

    def resolve_config(self, overrides: Mapping[str, Any] | None = None) -> dict[str, Any]:
        """Merge defaults, adapter options and ``overrides`` into a setup config."""
        specs = self.option_specs()
        merged = dict(specs)
        for source in (self.options, overrides or {}):
            for key, value in source.items():
                if key not in specs:
                    raise ConfigError(f"backend {self.name!r} has no option {key!r}")
                if value is not None:
                    merged[key] = value
        return merged

    def describe(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "artifact_kind": self.artifact_kind,
            "supports_compression": self.supports_compression,
            "options": self.resolve_config(),
        }

    def check_params(self, params: ProvingParameters) -> None:
        if params.backend != self.name:
            raise ConfigError(f"proving parameters for {params.backend!r} cannot be used with {self.name!r}")

    def check_binding(self, proof: Proof, instance: PublicInstance) -> None:
        """Fail closed when a proof is paired with an instance it was not produced with."""
        if proof.backend != self.name:
            raise VerifyError(f"proof produced by {proof.backend!r}, not {self.name!r}")
        if proof.instance_ref != instance.ref:
            raise VerifyError("proof is not bound to the supplied public instance")
        if not instance.path.exists():
            raise VerifyError(f"public instance missing: {instance.path}")
        if sha256_file(instance.path) != instance.digest:
            raise VerifyError("public instance was modified after proving")

    def _run_host(
        self,
        cmd: Sequence[str],
        *,
        stage: Stage,
        error_cls: type[Exception],
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> subprocess.CompletedProcess:
        """Run an external prover command, mapping failures to ``error_cls``."""
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
            raise StageTimeout(stage, self.timeout or 0.0, cmd) from exc
        except OSError as exc:
            message = f"cannot launch {cmd[0]}: {exc}"
            if issubclass(error_cls, PipelineStageError):
                # a missing tool is not a rejected proof
                raise HostToolError(stage, message) from exc
            raise error_cls(message) from exc
        if result.returncode != 0:
            message = f"{stage.value} command failed with return code {result.returncode}"
            if issubclass(error_cls, PipelineStageError):
                raise error_cls(message, stderr=result.stderr or "")
            detail = f"\n{result.stderr.rstrip()}" if result.stderr else ""
            raise error_cls(message + detail)
        return result

    @abstractmethod
    def setup(self, config: Mapping[str, Any], material_dir: Path) -> ProvingParameters:
        """Produce proving parameters for ``config``; deterministic in ``config``."""

    @abstractmethod
    def build_plan(self, guest: GuestProgram, target_dir: Path) -> BuildPlan:
        """Describe how to compile ``guest`` into this backend's artifact."""

    def open_artifact(self, guest: GuestProgram, path: Path) -> BuiltArtifact:
        return BuiltArtifact(
            backend=self.name,
            guest=guest,
            kind=self.artifact_kind,
            path=path,
            digest=sha256_file(path),
        )

    @abstractmethod
    def load_executable(
        self,
        artifact: BuiltArtifact,
        entry_point: str,
        args: Sequence[str],
        work_dir: Path,
    ) -> ExecutionContext:
        """Bind an artifact, entry point and arguments into a runnable unit."""

    @abstractmethod
    def prove(self, params: ProvingParameters, ctx: ExecutionContext) -> ProveResult:
        """Execute the program and prove the execution."""

    def compress(self, params: ProvingParameters, proof: Proof, instance: PublicInstance) -> Proof:
        """Default: no compression capability, the proof is returned unchanged."""
        return proof

    @abstractmethod
    def verify(self, params: ProvingParameters, proof: Proof, instance: PublicInstance) -> None:
        """Raise ``VerifyError`` unless ``proof`` verifies against ``instance``."""

    def serialized_size(self, proof: Proof) -> int:
        return proof.path.stat().st_size


def ensure_setup_dir(material_dir: Path) -> Path:
    try:
        material_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise SetupError(f"cannot create setup directory {material_dir}: {exc}") from exc
    return material_dir
