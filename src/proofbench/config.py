"""Benchmark configuration."""
from __future__ import annotations

import json
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Mapping

from .errors import ConfigError

CONFIG_SCHEMA = "proofbench_config_v1"


class VerifyPolicy:
    ABORT = "abort"
    CONTINUE = "continue"

    ALL = (ABORT, CONTINUE)


@dataclass
class BenchConfig:
    """Everything needed to run one (guest, backend, compression) benchmark."""

    backend: str
    guest: str
    guest_dir: Path
    inputs: list[str] = field(default_factory=list)
    entry_point: str | None = None
    param_column: str | None = None
    compress: bool = False
    output_root: Path = Path("benchmark_outputs")
    target_dir: Path | None = None
    work_root: Path | None = None
    backend_options: dict[str, Any] = field(default_factory=dict)
    build_env: dict[str, str] = field(default_factory=dict)
    max_workers: int = 1
    verify_policy: str = VerifyPolicy.ABORT
    timeout: float | None = None
    keep_artifacts: bool = False

    def __post_init__(self) -> None:
        self.guest_dir = Path(self.guest_dir)
        self.output_root = Path(self.output_root)
        if self.target_dir is not None:
            self.target_dir = Path(self.target_dir)
        if self.work_root is not None:
            self.work_root = Path(self.work_root)
        self.inputs = [str(value) for value in self.inputs]

    def validate(self) -> None:
        if not self.guest:
            raise ConfigError("guest name is required")
        if self.max_workers < 1:
            raise ConfigError(f"max_workers must be >= 1, got {self.max_workers}")
        if self.verify_policy not in VerifyPolicy.ALL:
            raise ConfigError(
                f"verify policy must be one of {', '.join(VerifyPolicy.ALL)}, got {self.verify_policy!r}"
            )
        if self.timeout is not None and self.timeout <= 0:
            raise ConfigError(f"timeout must be positive, got {self.timeout}")

    @property
    def resolved_target_dir(self) -> Path:
        return self.target_dir or (self.guest_dir / "target")

    @property
    def resolved_work_root(self) -> Path:
        return self.work_root or (self.output_root / "work")

    def to_json(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"schema": CONFIG_SCHEMA}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, Path):
                value = str(value)
            payload[f.name] = value
        return payload


def parse_env_pairs(pairs: tuple[str, ...] | list[str]) -> dict[str, str]:
    """Parse ``KEY=VALUE`` strings into a mapping."""
    env: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise ConfigError(f"expected KEY=VALUE, got {pair!r}")
        env[key] = value
    return env


def load_config_file(path: Path) -> dict[str, Any]:
    """Load a JSON config file; unknown keys are rejected."""
    try:
        data = json.loads(Path(path).read_text())
    except OSError as exc:
        raise ConfigError(f"cannot read config file {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigError(f"invalid JSON in config file {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"config file {path} must contain a JSON object")
    data.pop("schema", None)
    known = {f.name for f in fields(BenchConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(f"unknown config keys in {path}: {', '.join(unknown)}")
    return data


def merge_config(file_values: Mapping[str, Any], overrides: Mapping[str, Any]) -> BenchConfig:
    """Build a config from file values with non-empty CLI overrides on top."""
    merged: dict[str, Any] = dict(file_values)
    for key, value in overrides.items():
        if value is None:
            continue
        if isinstance(value, (list, tuple, dict)) and not value and key in merged:
            continue
        if key == "backend_options":
            options = dict(merged.get("backend_options") or {})
            options.update({k: v for k, v in value.items() if v is not None})
            merged[key] = options
            continue
        merged[key] = value
    for required in ("backend", "guest", "guest_dir"):
        if not merged.get(required):
            raise ConfigError(f"missing required setting: {required}")
    try:
        config = BenchConfig(**merged)
    except TypeError as exc:
        raise ConfigError(str(exc)) from exc
    config.validate()
    return config
