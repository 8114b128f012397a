from __future__ import annotations

from pathlib import Path

import pytest

from conftest import PlainStubAdapter, StubAdapter, make_artifact
from proofbench.errors import PipelineError, Stage, VerifyError
from proofbench.events import EventLogger, verify_event_chain
from proofbench.pipeline import PipelineRunner, run_once


def _runner(adapter, params, artifact, tmp_path: Path, **kwargs) -> PipelineRunner:
    return PipelineRunner(adapter, params, artifact, "fib", work_root=tmp_path / "work", **kwargs)


def test_run_once_reports_metrics(stub_adapter, stub_params, stub_artifact, tmp_path: Path) -> None:
    record = run_once(stub_adapter, stub_params, stub_artifact, "fib", "16", work_root=tmp_path / "work")
    assert record.parameter == "16"
    assert record.duration >= 0.0
    assert record.proof_size_bytes > 0
    assert record.execution_trace_length == 48
    assert record.compressed is False


def test_trace_length_is_deterministic(stub_adapter, stub_params, stub_artifact, tmp_path: Path) -> None:
    runner = _runner(stub_adapter, stub_params, stub_artifact, tmp_path)
    first = runner.run_once("17", index=0)
    second = runner.run_once("17", index=1)
    assert first.execution_trace_length == second.execution_trace_length
    assert first.proof_size_bytes == second.proof_size_bytes


def test_compression_never_grows_proof(stub_adapter, stub_params, stub_artifact, tmp_path: Path) -> None:
    plain = _runner(stub_adapter, stub_params, stub_artifact, tmp_path).run_once("16")
    compressed = _runner(stub_adapter, stub_params, stub_artifact, tmp_path, compress=True).run_once("16")
    assert compressed.compressed is True
    assert compressed.proof_size_bytes <= plain.proof_size_bytes


def test_compression_unsupported_reports_uncompressed(guest_dir: Path, tmp_path: Path, caplog) -> None:
    adapter = PlainStubAdapter()
    params = adapter.setup({}, tmp_path / "setup")
    artifact = make_artifact(adapter, guest_dir)
    plain = _runner(adapter, params, artifact, tmp_path).run_once("50")
    with caplog.at_level("WARNING"):
        runner = _runner(adapter, params, artifact, tmp_path, compress=True)
    requested = runner.run_once("50")
    assert "does not support compression" in caplog.text
    assert requested.compressed is False
    assert requested.proof_size_bytes == plain.proof_size_bytes
    assert requested.execution_trace_length == 0


def test_load_failure_is_tagged(stub_adapter, stub_params, stub_artifact, tmp_path: Path) -> None:
    runner = _runner(stub_adapter, stub_params, stub_artifact, tmp_path)
    with pytest.raises(PipelineError) as excinfo:
        runner.run_once("not-a-number")
    assert excinfo.value.stage is Stage.LOAD
    assert excinfo.value.parameter == "not-a-number"


def test_prove_failure_is_tagged(stub_params, stub_artifact, tmp_path: Path) -> None:
    adapter = StubAdapter(fail_prove=["16"])
    runner = _runner(adapter, stub_params, stub_artifact, tmp_path)
    with pytest.raises(PipelineError) as excinfo:
        runner.run_once("16")
    assert excinfo.value.stage is Stage.PROVE
    assert excinfo.value.cause.stderr == "out of memory"
    assert not excinfo.value.is_verification_failure


def test_verify_failure_is_flagged(stub_params, stub_artifact, tmp_path: Path) -> None:
    adapter = StubAdapter(fail_verify=["16"])
    runner = _runner(adapter, stub_params, stub_artifact, tmp_path)
    with pytest.raises(PipelineError) as excinfo:
        runner.run_once("16")
    assert excinfo.value.stage is Stage.VERIFY
    assert excinfo.value.is_verification_failure


def test_proof_rejected_against_foreign_instance(stub_adapter, stub_params, stub_artifact, tmp_path: Path) -> None:
    ctx_a = stub_adapter.load_executable(stub_artifact, "fib", ["16"], tmp_path / "a")
    ctx_b = stub_adapter.load_executable(stub_artifact, "fib", ["17"], tmp_path / "b")
    result_a = stub_adapter.prove(stub_params, ctx_a)
    result_b = stub_adapter.prove(stub_params, ctx_b)

    stub_adapter.verify(stub_params, result_a.proof, result_a.instance)
    with pytest.raises(VerifyError):
        stub_adapter.verify(stub_params, result_a.proof, result_b.instance)


def test_modified_instance_is_rejected(stub_adapter, stub_params, stub_artifact, tmp_path: Path) -> None:
    ctx = stub_adapter.load_executable(stub_artifact, "fib", ["16"], tmp_path / "a")
    result = stub_adapter.prove(stub_params, ctx)
    result.instance.path.write_text('{"entry": "fib", "args": ["99"]}')
    with pytest.raises(VerifyError, match="modified"):
        stub_adapter.verify(stub_params, result.proof, result.instance)


def test_scratch_files_removed_unless_kept(stub_adapter, stub_params, stub_artifact, tmp_path: Path) -> None:
    _runner(stub_adapter, stub_params, stub_artifact, tmp_path).run_once("16", index=3)
    assert not (tmp_path / "work" / "input_0003").exists()

    _runner(stub_adapter, stub_params, stub_artifact, tmp_path, keep_artifacts=True).run_once("16", index=3)
    assert (tmp_path / "work" / "input_0003" / "proof.bin").exists()


def test_pipeline_events_are_chained(stub_adapter, stub_params, stub_artifact, tmp_path: Path) -> None:
    log_path = tmp_path / "events.jsonl"
    with EventLogger(log_path, "run_test") as events:
        runner = _runner(stub_adapter, stub_params, stub_artifact, tmp_path, events=events)
        runner.run_once("16")
        with pytest.raises(PipelineError):
            runner.run_once("x")
    assert verify_event_chain(log_path) == 4
