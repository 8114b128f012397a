"""Folding-scheme zkWASM backend (Nova-style chunked folding over WASM steps).

The prover itself is an external host program (``zkengine`` by default)
exchanging files with this adapter:

    zkengine setup    --execution-step-size N [--memory-step-size M] --out-dir D
    zkengine prove    --pp D --wat F --invoke E --arg A ... --proof-out P
                      --instance-out I --stats-out S
    zkengine compress --pp D --proof P --instance I --out Q
    zkengine verify   --pp D --proof P --instance I

``prove`` writes a stats JSON whose ``execution_trace_length`` is the number
of executed WASM steps.
"""
from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any, Mapping, Sequence

from ..adapter import (
    BackendAdapter,
    BuildPlan,
    BuiltArtifact,
    ExecutionContext,
    GuestProgram,
    Proof,
    ProveResult,
    ProvingParameters,
    PublicInstance,
    config_fingerprint,
    ensure_setup_dir,
    new_instance_ref,
    sha256_file,
)
from ..errors import CompressError, ConfigError, LoadError, ProveError, SetupError, Stage, VerifyError

logger = logging.getLogger(__name__)

WASM_TARGET = "wasm32-unknown-unknown"
VALUE_TYPES = {"i32", "i64", "f32", "f64", "v128", "funcref", "externref"}
INT_TYPES = ("i32", "i64")
FLOAT_TYPES = ("f32", "f64")

_TYPE_RE = re.compile(r"\(type\s+(?:\(;(\d+);\)|\$\S+)\s+\(func(.*)$")
_FUNC_RE = re.compile(r"\(func\s+(\$[^\s()]+|\(;(\d+);\))\s+\(type\s+(\d+)\)")
_EXPORT_RE = re.compile(r"\(export\s+\"([^\"]+)\"\s+\(func\s+(\$[^\s()]+|\d+)\)\)")
_PARAM_RE = re.compile(r"\(param\s+([^()]*)\)")


def _param_types(signature: str) -> tuple[str, ...]:
    types: list[str] = []
    for group in _PARAM_RE.findall(signature):
        tokens = group.split()
        if tokens and tokens[0].startswith("$"):
            # named param: (param $x i32)
            types.extend(tok for tok in tokens[1:2] if tok in VALUE_TYPES)
            continue
        types.extend(tok for tok in tokens if tok in VALUE_TYPES)
    return tuple(types)


def _parse_int(text: str) -> int:
    body = text.strip()
    sign = 1
    if body[:1] in ("-", "+"):
        sign = -1 if body[0] == "-" else 1
        body = body[1:]
    if not body[:1].isdigit():
        raise ValueError(f"invalid integer literal {text!r}")
    if body[:2].lower() == "0x":
        if not body[2:3].isalnum():
            raise ValueError(f"invalid hex literal {text!r}")
        return sign * int(body[2:], 16)
    return sign * int(body, 10)


def convert_arg(value: str, value_type: str) -> str:
    """Render one argument for a parameter of WASM type ``value_type``."""
    if value_type in INT_TYPES:
        try:
            return str(_parse_int(str(value)))
        except ValueError as exc:
            raise LoadError(f"argument {value!r} is not an integer") from exc
    if value_type in FLOAT_TYPES:
        try:
            return repr(float(str(value)))
        except ValueError as exc:
            raise LoadError(f"argument {value!r} is not a number") from exc
    raise LoadError(f"parameters of type {value_type} cannot be passed from the command line")


def parse_wat_exports(text: str) -> dict[str, tuple[str, ...]]:
    """Map each exported function of a ``wasm2wat`` module to its parameter types."""
    type_params: dict[int, tuple[str, ...]] = {}
    type_index = 0
    func_types: dict[str, int] = {}
    exports: dict[str, str] = {}
    for line in text.splitlines():
        stripped = line.strip()
        match = _TYPE_RE.match(stripped)
        if match:
            idx = int(match.group(1)) if match.group(1) is not None else type_index
            type_params[idx] = _param_types(match.group(2))
            type_index = idx + 1
            continue
        for fmatch in _FUNC_RE.finditer(stripped):
            ident = fmatch.group(2) if fmatch.group(2) is not None else fmatch.group(1)
            func_types[ident] = int(fmatch.group(3))
        for ematch in _EXPORT_RE.finditer(stripped):
            exports[ematch.group(1)] = ematch.group(2)

    result: dict[str, tuple[str, ...]] = {}
    for export_name, ident in exports.items():
        type_idx = func_types.get(ident)
        if type_idx is None or type_idx not in type_params:
            continue
        result[export_name] = type_params[type_idx]
    return result


class FoldingWasmBackend(BackendAdapter):
    """zkWASM prover using chunked folding over execution steps."""

    name = "zkwasm"
    artifact_kind = "wat"
    supports_compression = True

    def entry_point_for(self, guest: str) -> str:
        # guests export a function named after the package
        return guest.replace("-", "_")

    @classmethod
    def option_specs(cls) -> dict[str, Any]:
        return {
            "execution_step_size": 10,
            "memory_step_size": None,
            "host_bin": "zkengine",
        }

    def resolve_config(self, overrides: Mapping[str, Any] | None = None) -> dict[str, Any]:
        config = super().resolve_config(overrides)
        for key in ("execution_step_size", "memory_step_size"):
            value = config.get(key)
            if value is None:
                continue
            try:
                value = int(value)
            except (TypeError, ValueError) as exc:
                raise ConfigError(f"{key} must be an integer, got {value!r}") from exc
            if value < 1:
                raise ConfigError(f"{key} must be >= 1, got {value}")
            config[key] = value
        if config["execution_step_size"] is None:
            raise ConfigError("execution_step_size is required")
        return config

    def _host(self, params_or_config: ProvingParameters | Mapping[str, Any]) -> str:
        config = params_or_config.config if isinstance(params_or_config, ProvingParameters) else params_or_config
        return str(config.get("host_bin") or "zkengine")

    def setup(self, config: Mapping[str, Any], material_dir: Path) -> ProvingParameters:
        config = self.resolve_config(config)
        fingerprint = config_fingerprint(self.name, config)
        pp_dir = ensure_setup_dir(Path(material_dir) / f"{self.name}-{fingerprint[:16]}")
        cmd = [
            self._host(config),
            "setup",
            "--execution-step-size",
            str(config["execution_step_size"]),
        ]
        if config.get("memory_step_size") is not None:
            cmd.extend(["--memory-step-size", str(config["memory_step_size"])])
        cmd.extend(["--out-dir", str(pp_dir)])
        logger.info(
            "Producing public parameters (step size %s, memory step size %s)",
            config["execution_step_size"],
            config.get("memory_step_size"),
        )
        self._run_host(cmd, stage=Stage.SETUP, error_cls=SetupError)
        return ProvingParameters(
            backend=self.name,
            config=config,
            fingerprint=fingerprint,
            material_dir=pp_dir,
            files={"pp": pp_dir},
        )

    def build_plan(self, guest: GuestProgram, target_dir: Path) -> BuildPlan:
        release_dir = Path(target_dir) / WASM_TARGET / "release"
        # cargo normalizes dashes in package names to underscores in the output file
        stem = guest.name.replace("-", "_")
        wasm_path = release_dir / f"{stem}.wasm"
        wat_path = release_dir / f"{stem}.wat"
        return BuildPlan(
            commands=(
                (
                    "cargo",
                    "build",
                    "--release",
                    "--target",
                    WASM_TARGET,
                    "--package",
                    guest.name,
                    "--target-dir",
                    str(target_dir),
                ),
                ("wasm2wat", str(wasm_path), "-o", str(wat_path)),
            ),
            artifact_path=wat_path,
            cwd=guest.source_dir,
        )

    def load_executable(
        self,
        artifact: BuiltArtifact,
        entry_point: str,
        args: Sequence[str],
        work_dir: Path,
    ) -> ExecutionContext:
        if artifact.backend != self.name:
            raise LoadError(f"artifact built for {artifact.backend!r}, not {self.name!r}")
        try:
            exports = parse_wat_exports(artifact.path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError) as exc:
            raise LoadError(f"cannot read module {artifact.path}: {exc}") from exc
        if entry_point not in exports:
            available = ", ".join(sorted(exports)) or "none"
            raise LoadError(f"module does not export function {entry_point!r} (exports: {available})")
        param_types = exports[entry_point]
        if len(param_types) != len(args):
            raise LoadError(f"{entry_point} takes {len(param_types)} argument(s), got {len(args)}")
        values = [convert_arg(arg, value_type) for arg, value_type in zip(args, param_types)]
        work_dir.mkdir(parents=True, exist_ok=True)
        return ExecutionContext(
            artifact=artifact,
            entry_point=entry_point,
            args=values,
            work_dir=work_dir,
        )

    def prove(self, params: ProvingParameters, ctx: ExecutionContext) -> ProveResult:
        self.check_params(params)
        proof_path = ctx.work_dir / "proof.bin"
        instance_path = ctx.work_dir / "instance.bin"
        stats_path = ctx.work_dir / "stats.json"
        cmd = [
            self._host(params),
            "prove",
            "--pp",
            str(params.files["pp"]),
            "--wat",
            str(ctx.artifact.path),
            "--invoke",
            ctx.entry_point,
        ]
        for arg in ctx.args:
            cmd.extend(["--arg", arg])
        cmd.extend(
            [
                "--proof-out",
                str(proof_path),
                "--instance-out",
                str(instance_path),
                "--stats-out",
                str(stats_path),
            ]
        )
        self._emit_progress("prove_start", {"args": ctx.args})
        self._run_host(cmd, stage=Stage.PROVE, error_cls=ProveError)
        for required in (proof_path, instance_path, stats_path):
            if not required.exists():
                raise ProveError(f"prover did not write {required.name}")
        try:
            stats = json.loads(stats_path.read_text())
            trace_length = int(stats["execution_trace_length"])
        except (OSError, ValueError, KeyError, TypeError) as exc:
            raise ProveError(f"unreadable prover stats {stats_path}: {exc}") from exc
        ref = new_instance_ref()
        instance = PublicInstance(path=instance_path, digest=sha256_file(instance_path), ref=ref)
        proof = Proof(backend=self.name, path=proof_path, instance_ref=ref)
        self._emit_progress("prove_done", {"trace_length": trace_length})
        return ProveResult(proof=proof, instance=instance, trace_length=trace_length)

    def compress(self, params: ProvingParameters, proof: Proof, instance: PublicInstance) -> Proof:
        self.check_params(params)
        if proof.instance_ref != instance.ref:
            raise CompressError("proof is not bound to the supplied public instance")
        out_path = proof.path.with_name(proof.path.stem + ".compressed" + proof.path.suffix)
        cmd = [
            self._host(params),
            "compress",
            "--pp",
            str(params.files["pp"]),
            "--proof",
            str(proof.path),
            "--instance",
            str(instance.path),
            "--out",
            str(out_path),
        ]
        self._run_host(cmd, stage=Stage.COMPRESS, error_cls=CompressError)
        if not out_path.exists():
            raise CompressError(f"compressor did not write {out_path.name}")
        return Proof(backend=self.name, path=out_path, instance_ref=proof.instance_ref, compressed=True)

    def verify(self, params: ProvingParameters, proof: Proof, instance: PublicInstance) -> None:
        self.check_params(params)
        self.check_binding(proof, instance)
        cmd = [
            self._host(params),
            "verify",
            "--pp",
            str(params.files["pp"]),
            "--proof",
            str(proof.path),
            "--instance",
            str(instance.path),
        ]
        self._run_host(cmd, stage=Stage.VERIFY, error_cls=VerifyError)
