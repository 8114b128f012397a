from __future__ import annotations

import json
from pathlib import Path

import pytest

from conftest import FakeRun, flag_value
from proofbench.adapter import GuestProgram
from proofbench.backends.openvm import NO_TRACE_LENGTH, StarkZkvmBackend, encode_stdin_u32, render_vm_config
from proofbench.errors import ConfigError, LoadError, SetupError, VerifyError


def _fake_cargo_openvm(cmd: list[str]) -> None:
    if cmd[2] == "keygen":
        out = Path(flag_value(cmd, "--output-dir"))
        (out / "app.pk").write_bytes(b"pk")
        (out / "app.vk").write_bytes(b"vk")
    elif cmd[2:4] == ["prove", "app"]:
        payload = json.loads(Path(flag_value(cmd, "--input")).read_text())
        Path(flag_value(cmd, "--proof")).write_text(
            json.dumps({"proof": "ab" * 2048, "user_public_values": payload["input"]})
        )


@pytest.fixture
def fake_run(monkeypatch) -> FakeRun:
    fake = FakeRun(_fake_cargo_openvm)
    monkeypatch.setattr("proofbench.adapter.subprocess.run", fake)
    return fake


@pytest.fixture
def vmexe(tmp_path: Path):
    path = tmp_path / "fibonacci.vmexe"
    path.write_bytes(b"\x7fELF-ish")
    return StarkZkvmBackend().open_artifact(GuestProgram(name="fibonacci", source_dir=tmp_path), path)


def test_encode_stdin_u32() -> None:
    assert encode_stdin_u32("10") == "0x010a000000"
    assert encode_stdin_u32("0x100") == "0x0100010000"
    with pytest.raises(LoadError):
        encode_stdin_u32("-1")
    with pytest.raises(LoadError):
        encode_stdin_u32(str(1 << 32))


def test_render_vm_config() -> None:
    text = render_vm_config(StarkZkvmBackend().resolve_config())
    assert "[app_vm_config.rv32i]" in text
    assert "[app_vm_config.rv32m]" in text
    assert "[app_vm_config.io]" in text
    assert "log_blowup = 2" in text


def test_defaults() -> None:
    backend = StarkZkvmBackend()
    assert backend.default_inputs == ("10", "50", "90")
    assert backend.default_param_column("fibonacci") == "n"
    assert backend.entry_point_for("fibonacci") == "main"
    assert not backend.supports_compression


def test_only_supported_security_level() -> None:
    assert StarkZkvmBackend({"security_bits": "100"}).resolve_config()["security_bits"] == 100
    with pytest.raises(ConfigError, match="100-bit"):
        StarkZkvmBackend({"security_bits": 128}).resolve_config()


def test_config_validation() -> None:
    assert StarkZkvmBackend({"extensions": "rv32i, io"}).resolve_config()["extensions"] == ["rv32i", "io"]
    with pytest.raises(ConfigError, match="unknown VM extension"):
        StarkZkvmBackend({"extensions": ["rv32i", "avx"]}).resolve_config()
    with pytest.raises(ConfigError, match="rv32i"):
        StarkZkvmBackend({"extensions": ["io"]}).resolve_config()


def test_build_plan(tmp_path: Path) -> None:
    guest = GuestProgram(name="fibonacci", source_dir=tmp_path / "guest")
    plan = StarkZkvmBackend().build_plan(guest, tmp_path / "target")
    (cmd,) = plan.commands
    assert cmd[:3] == ("cargo", "openvm", "build")
    assert flag_value(list(cmd), "--manifest-path") == str(guest.manifest_path)
    assert plan.artifact_path == tmp_path / "target" / "openvm" / "release" / "fibonacci.vmexe"


def test_setup_requires_keys(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setattr("proofbench.adapter.subprocess.run", FakeRun())
    with pytest.raises(SetupError, match="app_pk"):
        StarkZkvmBackend().setup({}, tmp_path)


def test_load_requires_main_and_args(vmexe, tmp_path: Path) -> None:
    backend = StarkZkvmBackend()
    ctx = backend.load_executable(vmexe, "main", ["10"], tmp_path / "w")
    assert ctx.encoded_input == ["0x010a000000"]
    with pytest.raises(LoadError):
        backend.load_executable(vmexe, "fib", ["10"], tmp_path / "w")
    with pytest.raises(LoadError):
        backend.load_executable(vmexe, "main", [], tmp_path / "w")


def test_prove_and_verify(fake_run: FakeRun, vmexe, tmp_path: Path) -> None:
    backend = StarkZkvmBackend()
    params = backend.setup({}, tmp_path / "setup")
    ctx = backend.load_executable(vmexe, "main", ["90"], tmp_path / "w")
    result = backend.prove(params, ctx)
    assert backend.compress(params, result.proof, result.instance) is result.proof
    backend.verify(params, result.proof, result.instance)

    keygen, prove, verify = fake_run.calls
    assert keygen[2] == "keygen"
    assert prove[2:4] == ["prove", "app"]
    assert flag_value(prove, "--exe") == str(vmexe.path)
    assert verify[2:4] == ["verify", "app"]
    assert flag_value(verify, "--app-vk") == str(params.files["app_vk"])
    assert result.trace_length == NO_TRACE_LENGTH == 0


def test_mismatched_public_values_fail_closed(fake_run: FakeRun, vmexe, tmp_path: Path) -> None:
    backend = StarkZkvmBackend()
    params = backend.setup({}, tmp_path / "setup")
    result = backend.prove(params, backend.load_executable(vmexe, "main", ["10"], tmp_path / "w"))
    doc = json.loads(result.proof.path.read_text())
    doc["user_public_values"] = ["0x0100000000"]
    result.proof.path.write_text(json.dumps(doc))
    calls_before = len(fake_run.calls)
    with pytest.raises(VerifyError, match="public values"):
        backend.verify(params, result.proof, result.instance)
    assert len(fake_run.calls) == calls_before
