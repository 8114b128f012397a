from __future__ import annotations

import hashlib
import json
import subprocess
from pathlib import Path
from typing import Any, Mapping, Sequence

import pytest

from proofbench.adapter import (
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
    new_instance_ref,
    sha256_file,
)
from proofbench.errors import LoadError, ProveError, VerifyError

FIB_WAT = """(module
  (type (;0;) (func (param i32) (result i32)))
  (type (;1;) (func))
  (func $fib (type 0) (param i32) (result i32)
    local.get 0)
  (func $_start (type 1))
  (memory (;0;) 16)
  (export "memory" (memory 0))
  (export "fib" (func $fib))
  (export "_start" (func $_start)))
"""


class StubAdapter(BackendAdapter):
    """In-process backend: proofs are hashes, trace length is 3 * n."""

    name = "stub"
    artifact_kind = "txt"
    supports_compression = True

    def __init__(self, options=None, *, timeout=None, fail_prove=(), fail_verify=()) -> None:
        super().__init__(options, timeout=timeout)
        self.fail_prove = {str(value) for value in fail_prove}
        self.fail_verify = {str(value) for value in fail_verify}

    @classmethod
    def option_specs(cls) -> dict[str, Any]:
        return {"step": 10}

    def setup(self, config: Mapping[str, Any], material_dir: Path) -> ProvingParameters:
        config = self.resolve_config(config)
        fingerprint = config_fingerprint(self.name, config)
        pp_dir = Path(material_dir) / f"{self.name}-{fingerprint[:16]}"
        pp_dir.mkdir(parents=True, exist_ok=True)
        pp = pp_dir / "pp.txt"
        pp.write_text(json.dumps(config, sort_keys=True))
        return ProvingParameters(
            backend=self.name, config=config, fingerprint=fingerprint, material_dir=pp_dir, files={"pp": pp}
        )

    def build_plan(self, guest: GuestProgram, target_dir: Path) -> BuildPlan:
        return BuildPlan(commands=(), artifact_path=guest.source_dir / f"{guest.name}.txt")

    def load_executable(
        self, artifact: BuiltArtifact, entry_point: str, args: Sequence[str], work_dir: Path
    ) -> ExecutionContext:
        values = []
        for arg in args:
            try:
                values.append(str(int(arg)))
            except ValueError as exc:
                raise LoadError(f"argument {arg!r} is not an integer") from exc
        work_dir.mkdir(parents=True, exist_ok=True)
        return ExecutionContext(artifact=artifact, entry_point=entry_point, args=values, work_dir=work_dir)

    def _trace_length(self, n: int) -> int:
        return 3 * n

    def prove(self, params: ProvingParameters, ctx: ExecutionContext) -> ProveResult:
        self.check_params(params)
        arg = ctx.args[0]
        if arg in self.fail_prove:
            raise ProveError(f"prover rejected {arg}", stderr="out of memory")
        instance_path = ctx.work_dir / "instance.json"
        instance_path.write_text(json.dumps({"entry": ctx.entry_point, "args": ctx.args}))
        digest = hashlib.sha256(instance_path.read_bytes()).hexdigest()
        proof_path = ctx.work_dir / "proof.bin"
        # size grows with the input so uncompressed proofs differ across inputs
        proof_path.write_bytes(digest.encode() * (2 + int(arg) % 5))
        ref = new_instance_ref()
        self._emit_progress("prove_done", {"arg": arg})
        return ProveResult(
            proof=Proof(backend=self.name, path=proof_path, instance_ref=ref),
            instance=PublicInstance(path=instance_path, digest=sha256_file(instance_path), ref=ref),
            trace_length=self._trace_length(int(arg)),
        )

    def compress(self, params: ProvingParameters, proof: Proof, instance: PublicInstance) -> Proof:
        out = proof.path.with_name("proof.compressed.bin")
        out.write_bytes(proof.path.read_bytes()[:64])
        return Proof(backend=self.name, path=out, instance_ref=proof.instance_ref, compressed=True)

    def verify(self, params: ProvingParameters, proof: Proof, instance: PublicInstance) -> None:
        self.check_params(params)
        self.check_binding(proof, instance)
        args = json.loads(instance.path.read_text())["args"]
        if args and args[0] in self.fail_verify:
            raise VerifyError("proof does not verify")
        expected = hashlib.sha256(instance.path.read_bytes()).hexdigest().encode()
        if not proof.path.read_bytes().startswith(expected):
            raise VerifyError("proof does not match instance")


class PlainStubAdapter(StubAdapter):
    """No compression and no trace length, like a zkVM app prover."""

    name = "stub-plain"
    supports_compression = False

    def _trace_length(self, n: int) -> int:
        return 0


@pytest.fixture
def stub_adapter() -> StubAdapter:
    return StubAdapter()


@pytest.fixture
def guest_dir(tmp_path: Path) -> Path:
    path = tmp_path / "guests" / "fib"
    path.mkdir(parents=True)
    (path / "fib.txt").write_text(FIB_WAT)
    return path


def make_artifact(adapter: BackendAdapter, guest_dir: Path, name: str = "fib") -> BuiltArtifact:
    guest = GuestProgram(name=name, source_dir=guest_dir)
    return adapter.open_artifact(guest, guest_dir / f"{name}.txt")


@pytest.fixture
def stub_params(stub_adapter: StubAdapter, tmp_path: Path) -> ProvingParameters:
    return stub_adapter.setup({}, tmp_path / "setup")


@pytest.fixture
def stub_artifact(stub_adapter: StubAdapter, guest_dir: Path) -> BuiltArtifact:
    return make_artifact(stub_adapter, guest_dir)


class FakeRun:
    """Stands in for ``subprocess.run``; records commands and runs a side effect."""

    def __init__(self, effect=None, returncode: int = 0, stderr: str = "") -> None:
        self.calls: list[list[str]] = []
        self.kwargs: list[dict] = []
        self.effect = effect
        self.returncode = returncode
        self.stderr = stderr

    def __call__(self, cmd, **kwargs):
        self.calls.append(list(cmd))
        self.kwargs.append(kwargs)
        if self.effect is not None:
            self.effect(list(cmd))
        return subprocess.CompletedProcess(cmd, self.returncode, stdout="", stderr=self.stderr)


def flag_value(cmd: list[str], flag: str) -> str:
    return cmd[cmd.index(flag) + 1]
