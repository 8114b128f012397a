"""STARK zkVM backend driven through the ``cargo openvm`` toolchain.

Guests are RISC-V programs built to a ``.vmexe``. Inputs are written to the
guest's stdin as little-endian u32 words. The app proof has no notion of an
execution trace length, so ``prove`` reports the sentinel ``0``.
"""
from __future__ import annotations

import json
import logging
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
from ..errors import ConfigError, LoadError, ProveError, SetupError, Stage, VerifyError

logger = logging.getLogger(__name__)

NO_TRACE_LENGTH = 0
U32_MAX = (1 << 32) - 1
# stdin item tag for raw bytes
STDIN_BYTES_TAG = "01"
KNOWN_EXTENSIONS = ("rv32i", "rv32m", "io", "keccak", "sha256", "bigint", "native")
# FRI parameters rendered into openvm.toml are the standard 100-bit preset
CONJECTURED_SECURITY_BITS = 100


def encode_stdin_u32(value: str) -> str:
    """Encode one guest argument the way ``StdIn::write(&n)`` does for a u32."""
    try:
        n = int(str(value), 0)
    except ValueError as exc:
        raise LoadError(f"argument {value!r} is not an integer") from exc
    if not 0 <= n <= U32_MAX:
        raise LoadError(f"argument {value!r} does not fit in a u32")
    return "0x" + STDIN_BYTES_TAG + n.to_bytes(4, "little").hex()


def render_vm_config(config: Mapping[str, Any]) -> str:
    lines: list[str] = []
    for ext in config["extensions"]:
        lines.append(f"[app_vm_config.{ext}]")
        lines.append("")
    lines.append("[app_fri_params]")
    lines.append(f"log_blowup = {int(config['app_log_blowup'])}")
    lines.append("")
    return "\n".join(lines)


class StarkZkvmBackend(BackendAdapter):
    """OpenVM app prover (FRI-based STARK over a RISC-V VM)."""

    name = "openvm"
    artifact_kind = "vmexe"
    supports_compression = False
    default_entry_point = "main"
    default_inputs = ("10", "50", "90")

    @classmethod
    def option_specs(cls) -> dict[str, Any]:
        return {
            "app_log_blowup": 2,
            "security_bits": CONJECTURED_SECURITY_BITS,
            "extensions": ["rv32i", "rv32m", "io"],
            "cargo_bin": "cargo",
        }

    def default_param_column(self, guest: str) -> str:
        return "n"

    def resolve_config(self, overrides: Mapping[str, Any] | None = None) -> dict[str, Any]:
        config = super().resolve_config(overrides)
        extensions = config["extensions"]
        if isinstance(extensions, str):
            extensions = [ext.strip() for ext in extensions.split(",") if ext.strip()]
        unknown = [ext for ext in extensions if ext not in KNOWN_EXTENSIONS]
        if unknown:
            raise ConfigError(f"unknown VM extension(s): {', '.join(unknown)}")
        if "rv32i" not in extensions:
            raise ConfigError("the rv32i extension is required")
        config["extensions"] = list(extensions)
        try:
            config["app_log_blowup"] = int(config["app_log_blowup"])
            config["security_bits"] = int(config["security_bits"])
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"FRI parameters must be integers: {exc}") from exc
        if config["app_log_blowup"] < 1:
            raise ConfigError("app_log_blowup must be >= 1")
        if config["security_bits"] != CONJECTURED_SECURITY_BITS:
            raise ConfigError(
                f"only {CONJECTURED_SECURITY_BITS}-bit conjectured security is supported, got {config['security_bits']}"
            )
        return config

    def _cargo(self, config: Mapping[str, Any]) -> str:
        return str(config.get("cargo_bin") or "cargo")

    def _write_vm_config(self, config: Mapping[str, Any], directory: Path) -> Path:
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / "openvm.toml"
        path.write_text(render_vm_config(config))
        return path

    def setup(self, config: Mapping[str, Any], material_dir: Path) -> ProvingParameters:
        config = self.resolve_config(config)
        fingerprint = config_fingerprint(self.name, config)
        key_dir = ensure_setup_dir(Path(material_dir) / f"{self.name}-{fingerprint[:16]}")
        vm_config_path = self._write_vm_config(config, key_dir)
        logger.info(
            "Generating app keys (log blowup %s, %s-bit conjectured security, extensions %s)",
            config["app_log_blowup"],
            config["security_bits"],
            ",".join(config["extensions"]),
        )
        cmd = [
            self._cargo(config),
            "openvm",
            "keygen",
            "--config",
            str(vm_config_path),
            "--output-dir",
            str(key_dir),
        ]
        self._run_host(cmd, stage=Stage.SETUP, error_cls=SetupError)
        files = {"config": vm_config_path, "app_pk": key_dir / "app.pk", "app_vk": key_dir / "app.vk"}
        missing = [name for name, path in files.items() if not path.exists()]
        if missing:
            raise SetupError(f"keygen did not produce: {', '.join(missing)}")
        return ProvingParameters(
            backend=self.name,
            config=config,
            fingerprint=fingerprint,
            material_dir=key_dir,
            files=files,
        )

    def build_plan(self, guest: GuestProgram, target_dir: Path) -> BuildPlan:
        config = self.resolve_config()
        vm_config_path = self._write_vm_config(config, Path(target_dir) / "openvm-config")
        return BuildPlan(
            commands=(
                (
                    self._cargo(config),
                    "openvm",
                    "build",
                    "--manifest-path",
                    str(guest.manifest_path),
                    "--config",
                    str(vm_config_path),
                    "--target-dir",
                    str(target_dir),
                ),
            ),
            artifact_path=Path(target_dir) / "openvm" / "release" / f"{guest.name}.vmexe",
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
        if entry_point != self.default_entry_point:
            raise LoadError(f"zkVM guests start at {self.default_entry_point!r}, not {entry_point!r}")
        if not args:
            raise LoadError("at least one argument is required")
        encoded = [encode_stdin_u32(arg) for arg in args]
        work_dir.mkdir(parents=True, exist_ok=True)
        return ExecutionContext(
            artifact=artifact,
            entry_point=entry_point,
            args=[str(arg) for arg in args],
            work_dir=work_dir,
            encoded_input=encoded,
        )

    def prove(self, params: ProvingParameters, ctx: ExecutionContext) -> ProveResult:
        self.check_params(params)
        proof_path = ctx.work_dir / f"{ctx.artifact.guest.name}.app.proof"
        input_path = ctx.work_dir / "input.json"
        input_path.write_text(json.dumps({"input": ctx.encoded_input}))
        cmd = [
            self._cargo(params.config),
            "openvm",
            "prove",
            "app",
            "--app-pk",
            str(params.files["app_pk"]),
            "--exe",
            str(ctx.artifact.path),
            "--input",
            str(input_path),
            "--proof",
            str(proof_path),
        ]
        self._emit_progress("prove_start", {"args": ctx.args})
        self._run_host(cmd, stage=Stage.PROVE, error_cls=ProveError)
        if not proof_path.exists():
            raise ProveError(f"prover did not write {proof_path.name}")
        try:
            proof_doc = json.loads(proof_path.read_text())
        except (OSError, ValueError) as exc:
            raise ProveError(f"unreadable app proof {proof_path}: {exc}") from exc
        public_values = proof_doc.get("user_public_values", []) if isinstance(proof_doc, dict) else []

        instance_path = ctx.work_dir / "instance.json"
        instance_path.write_text(
            json.dumps(
                {
                    "exe_digest": ctx.artifact.digest,
                    "input": ctx.encoded_input,
                    "user_public_values": public_values,
                },
                sort_keys=True,
            )
        )
        ref = new_instance_ref()
        instance = PublicInstance(path=instance_path, digest=sha256_file(instance_path), ref=ref)
        proof = Proof(backend=self.name, path=proof_path, instance_ref=ref)
        self._emit_progress("prove_done", {"trace_length": NO_TRACE_LENGTH})
        return ProveResult(proof=proof, instance=instance, trace_length=NO_TRACE_LENGTH)

    def verify(self, params: ProvingParameters, proof: Proof, instance: PublicInstance) -> None:
        self.check_params(params)
        self.check_binding(proof, instance)
        try:
            proof_doc = json.loads(proof.path.read_text())
            instance_doc = json.loads(instance.path.read_text())
        except (OSError, ValueError) as exc:
            raise VerifyError(f"cannot read proof or instance: {exc}") from exc
        claimed = proof_doc.get("user_public_values", []) if isinstance(proof_doc, dict) else []
        if claimed != instance_doc.get("user_public_values", []):
            raise VerifyError("public values in proof do not match the instance")
        cmd = [
            self._cargo(params.config),
            "openvm",
            "verify",
            "app",
            "--app-vk",
            str(params.files["app_vk"]),
            "--proof",
            str(proof.path),
        ]
        self._run_host(cmd, stage=Stage.VERIFY, error_cls=VerifyError)
