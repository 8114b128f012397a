"""Drive the pipeline over a batch of inputs."""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Sequence

from .adapter import BackendAdapter, BuiltArtifact, ProvingParameters
from .config import VerifyPolicy
from .errors import BatchAborted, ConfigError, PipelineError
from .events import EventLogger
from .pipeline import MetricsRecord, PipelineRunner

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunOutcome:
    parameter: Any
    record: Optional[MetricsRecord] = None
    error: Optional[PipelineError] = None

    @property
    def ok(self) -> bool:
        return self.record is not None


def successful_records(outcomes: Sequence[RunOutcome]) -> list[MetricsRecord]:
    return [outcome.record for outcome in outcomes if outcome.record is not None]


def failed_outcomes(outcomes: Sequence[RunOutcome]) -> list[RunOutcome]:
    return [outcome for outcome in outcomes if outcome.error is not None]


class BenchmarkOrchestrator:
    """Runs every input against one backend, parameter set and artifact.

    Per-input failures are recorded and the batch continues. A failed
    verification is a correctness alarm: it is logged at CRITICAL and, under
    the ``abort`` policy, stops the batch with :class:`BatchAborted`.
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
        max_workers: int = 1,
        verify_policy: str = VerifyPolicy.ABORT,
        keep_artifacts: bool = False,
        events: Optional[EventLogger] = None,
    ) -> None:
        adapter.check_params(params)
        if artifact.backend != adapter.name:
            raise ConfigError(f"artifact built for {artifact.backend!r} cannot run on {adapter.name!r}")
        if verify_policy not in VerifyPolicy.ALL:
            raise ConfigError(f"unknown verify policy {verify_policy!r}")
        if max_workers < 1:
            raise ConfigError("max_workers must be >= 1")
        self.verify_policy = verify_policy
        self.max_workers = max_workers
        self.events = events
        self.runner = PipelineRunner(
            adapter,
            params,
            artifact,
            entry_point,
            work_root=work_root,
            compress=compress,
            keep_artifacts=keep_artifacts,
            events=events,
        )

    def _run_one(self, index: int, parameter: Any) -> RunOutcome:
        try:
            record = self.runner.run_once(parameter, index=index)
        except PipelineError as exc:
            return RunOutcome(parameter=parameter, error=exc)
        return RunOutcome(parameter=parameter, record=record)

    def _check(self, outcome: RunOutcome, done: list[RunOutcome]) -> None:
        error = outcome.error
        if error is None:
            return
        if error.is_verification_failure:
            logger.critical("Proof for input %r failed verification: %s", outcome.parameter, error.cause)
            if self.verify_policy == VerifyPolicy.ABORT:
                if self.events is not None:
                    self.events.emit("batch_aborted", error.to_json())
                raise BatchAborted(error, done)
        else:
            logger.error("Input %r failed at %s: %s", outcome.parameter, error.stage.value, error.cause)

    def run(self, inputs: Sequence[Any]) -> list[RunOutcome]:
        """Process ``inputs`` and return one outcome per input, in input order."""
        inputs = list(inputs)
        if self.events is not None:
            self.events.emit("batch_start", {"inputs": inputs, "max_workers": self.max_workers})
        if self.max_workers == 1 or len(inputs) <= 1:
            outcomes = self._run_sequential(inputs)
        else:
            outcomes = self._run_parallel(inputs)
        if self.events is not None:
            self.events.emit(
                "batch_done",
                {"succeeded": len(successful_records(outcomes)), "failed": len(failed_outcomes(outcomes))},
            )
        return outcomes

    def _run_sequential(self, inputs: list[Any]) -> list[RunOutcome]:
        outcomes: list[RunOutcome] = []
        for index, parameter in enumerate(inputs):
            outcome = self._run_one(index, parameter)
            outcomes.append(outcome)
            self._check(outcome, outcomes)
        return outcomes

    def _run_parallel(self, inputs: list[Any]) -> list[RunOutcome]:
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            futures = [pool.submit(self._run_one, index, parameter) for index, parameter in enumerate(inputs)]
            # collect in submission order so results match input order
            outcomes: list[RunOutcome] = []
            try:
                for future in futures:
                    outcome = future.result()
                    outcomes.append(outcome)
                    self._check(outcome, outcomes)
            except BatchAborted:
                for future in futures:
                    future.cancel()
                raise
        return outcomes
