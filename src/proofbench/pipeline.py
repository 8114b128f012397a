"""Single-input pipeline: load, prove, optionally compress, verify."""
from __future__ import annotations

import logging
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from .adapter import BackendAdapter, BuiltArtifact, ProvingParameters
from .errors import PipelineError, PipelineStageError, Stage
from .events import EventLogger

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MetricsRecord:
    """One CSV row. ``duration`` is in milliseconds."""

    parameter: Any
    duration: float
    proof_size_bytes: int
    execution_trace_length: int
    compressed: bool = False


class PipelineRunner:
    """Runs the timed prove/verify sequence for one input at a time.

    Setup and ``load_executable`` happen outside the timed window; the
    window covers proving, optional compression and verification.
    """

    def __init__(
        self,
        adapter: BackendAdapter,
        params: ProvingParameters,
        artifact: BuiltArtifact,
        entry_point: str,
        *,
        work_root: Path,
        compress: bool = False,
        keep_artifacts: bool = False,
        events: Optional[EventLogger] = None,
    ) -> None:
        self.adapter = adapter
        self.params = params
        self.artifact = artifact
        self.entry_point = entry_point
        self.work_root = Path(work_root)
        self.compress = compress
        self.keep_artifacts = keep_artifacts
        self.events = events
        if compress and not adapter.supports_compression:
            logger.warning(
                "Backend %s does not support compression; proofs are reported uncompressed",
                adapter.name,
            )

    def _emit(self, event_type: str, data: dict[str, Any]) -> None:
        if self.events is not None:
            self.events.emit(event_type, data, source="pipeline")

    def run_once(self, parameter: Any, *, index: int = 0) -> MetricsRecord:
        """Run the pipeline for ``parameter``; raise ``PipelineError`` on failure."""
        work_dir = self.work_root / f"input_{index:04d}"
        stage = Stage.LOAD
        self._emit("input_start", {"index": index, "parameter": parameter})
        try:
            ctx = self.adapter.load_executable(self.artifact, self.entry_point, [str(parameter)], work_dir)

            start = time.perf_counter()
            stage = Stage.PROVE
            result = self.adapter.prove(self.params, ctx)
            proof = result.proof
            if self.compress and self.adapter.supports_compression:
                stage = Stage.COMPRESS
                proof = self.adapter.compress(self.params, proof, result.instance)
            stage = Stage.VERIFY
            self.adapter.verify(self.params, proof, result.instance)
            duration_ms = (time.perf_counter() - start) * 1000.0

            record = MetricsRecord(
                parameter=parameter,
                duration=duration_ms,
                proof_size_bytes=self.adapter.serialized_size(proof),
                execution_trace_length=result.trace_length,
                compressed=proof.compressed,
            )
        except (PipelineStageError, OSError) as exc:
            # scratch-file I/O failures count against the stage that hit them
            error = PipelineError(stage, exc, parameter=parameter)
            self._emit("input_failed", error.to_json())
            raise error from exc
        finally:
            if not self.keep_artifacts:
                shutil.rmtree(work_dir, ignore_errors=True)

        logger.info(
            "%s=%s: %.1f ms, proof %d bytes, trace length %d",
            self.adapter.name,
            parameter,
            record.duration,
            record.proof_size_bytes,
            record.execution_trace_length,
        )
        self._emit(
            "input_done",
            {
                "index": index,
                "parameter": parameter,
                "duration_ms": record.duration,
                "proof_size_bytes": record.proof_size_bytes,
                "execution_trace_length": record.execution_trace_length,
                "compressed": record.compressed,
            },
        )
        return record


def run_once(
    adapter: BackendAdapter,
    params: ProvingParameters,
    artifact: BuiltArtifact,
    entry_point: str,
    parameter: Any,
    *,
    work_root: Path,
    compress: bool = False,
) -> MetricsRecord:
    runner = PipelineRunner(adapter, params, artifact, entry_point, work_root=work_root, compress=compress)
    return runner.run_once(parameter)
