"""End-to-end benchmark session: build, setup, batch, report."""
from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from .adapter import BackendAdapter, BuiltArtifact, GuestProgram, ProvingParameters
from .backends import get_adapter_cls
from .builder import GuestArtifactBuilder
from .config import BenchConfig
from .errors import BatchAborted, ConfigError, ReportError
from .events import EventLogger, ProgressSink
from .manifests import host_manifest, toolchain_manifest
from .orchestrator import BenchmarkOrchestrator, RunOutcome, successful_records
from . import report

logger = logging.getLogger(__name__)

RUN_META_SCHEMA = "proofbench_run_meta_v1"


def _timestamp_slug() -> str:
    return datetime.now(timezone.utc).strftime("run_%Y%m%d_%H%M%S")


@dataclass
class BenchmarkResult:
    run_id: str
    csv_path: Path
    param_column: str
    outcomes: list[RunOutcome] = field(default_factory=list)
    failures_path: Optional[Path] = None
    run_meta_path: Optional[Path] = None
    aborted: Optional[BatchAborted] = None
    setup_time_ms: float = 0.0

    @property
    def records(self):
        return successful_records(self.outcomes)


def create_adapter(config: BenchConfig) -> BackendAdapter:
    try:
        adapter_cls = get_adapter_cls(config.backend)
    except KeyError as exc:
        raise ConfigError(str(exc.args[0])) from exc
    return adapter_cls(config.backend_options, timeout=config.timeout)


def run_benchmark(config: BenchConfig, *, adapter: BackendAdapter | None = None, run_id: str | None = None) -> BenchmarkResult:
    """Run one benchmark session described by ``config``.

    ``BuildError``, ``SetupError`` and ``ReportError`` propagate. A batch
    stopped by the verify policy still writes the records it completed, and
    the ``BatchAborted`` is attached to the result.
    """
    config.validate()
    adapter = adapter or create_adapter(config)
    run_id = run_id or _timestamp_slug()
    inputs = list(config.inputs) or list(adapter.default_inputs)
    if not inputs:
        raise ConfigError(f"backend {adapter.name!r} has no default inputs; pass at least one argument")
    entry_point = config.entry_point or adapter.entry_point_for(config.guest)
    param_column = config.param_column or adapter.default_param_column(config.guest)
    backend_config = adapter.resolve_config()

    csv_path = report.metrics_path(config.output_root, config.guest, adapter.name, config.compress)
    run_dir = config.resolved_work_root / run_id
    run_dir.mkdir(parents=True, exist_ok=True)
    events = EventLogger(run_dir / "events.jsonl", run_id)
    adapter.set_progress_callback(ProgressSink(events).callback)
    result = BenchmarkResult(run_id=run_id, csv_path=csv_path, param_column=param_column)

    try:
        guest = GuestProgram(name=config.guest, source_dir=config.guest_dir)
        builder = GuestArtifactBuilder(config.resolved_target_dir, env=config.build_env, timeout=config.timeout)
        events.emit("build_start", {"guest": guest.name, "backend": adapter.name})
        artifact = builder.build(guest, adapter)
        events.emit("build_done", {"artifact": str(artifact.path), "digest": artifact.digest})

        t0 = time.perf_counter()
        params = adapter.setup(backend_config, config.resolved_work_root / "setup")
        result.setup_time_ms = (time.perf_counter() - t0) * 1000.0
        events.emit("setup_done", {"fingerprint": params.fingerprint, "setup_time_ms": result.setup_time_ms})

        orchestrator = BenchmarkOrchestrator(
            adapter,
            params,
            artifact,
            entry_point,
            work_root=run_dir / "inputs",
            compress=config.compress,
            max_workers=config.max_workers,
            verify_policy=config.verify_policy,
            keep_artifacts=config.keep_artifacts,
            events=events,
        )
        try:
            result.outcomes = orchestrator.run(inputs)
        except BatchAborted as exc:
            result.outcomes = list(exc.outcomes)
            result.aborted = exc

        report.write(result.records, csv_path, param_column)
        result.failures_path = report.write_failures(result.outcomes, report.failures_path(csv_path))
        events.emit("report_done", {"csv": str(csv_path), "rows": len(result.records)})
        result.run_meta_path = _write_run_meta(
            run_dir, config, adapter, artifact, params, result, entry_point=entry_point, inputs=inputs, events=events
        )
    finally:
        adapter.set_progress_callback(None)
        events.close()
    return result


def _write_run_meta(
    run_dir: Path,
    config: BenchConfig,
    adapter: BackendAdapter,
    artifact: BuiltArtifact,
    params: ProvingParameters,
    result: BenchmarkResult,
    *,
    entry_point: str,
    inputs: list[str],
    events: EventLogger,
) -> Path:
    run_meta: dict[str, Any] = {
        "schema": RUN_META_SCHEMA,
        "run_id": result.run_id,
        "backend": adapter.describe(),
        "guest": config.guest,
        "entry_point": entry_point,
        "inputs": inputs,
        "compress": config.compress,
        "artifact": {"path": str(artifact.path), "kind": artifact.kind, "sha256": artifact.digest},
        "params_fingerprint": params.fingerprint,
        "setup_time_ms": result.setup_time_ms,
        "duration_unit": report.DURATION_UNIT,
        "csv_path": str(result.csv_path),
        "param_column": result.param_column,
        "succeeded": len(result.records),
        "failed": len(result.outcomes) - len(result.records),
        "aborted": result.aborted is not None,
        "failures_path": str(result.failures_path) if result.failures_path else None,
        "events_path": str(events.path),
        "event_count": events.count,
        "config": config.to_json(),
        "host": host_manifest(),
        "toolchain": toolchain_manifest(adapter.name),
    }
    path = run_dir / "run_meta.json"
    try:
        path.write_text(json.dumps(run_meta, indent=2, default=str))
    except OSError as exc:
        raise ReportError(f"cannot write {path}: {exc}") from exc
    return path
