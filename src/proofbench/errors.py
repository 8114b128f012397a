"""Error taxonomy for benchmark runs.

Fatal to the whole run: ``ConfigError``, ``BuildError``, ``SetupError``,
``ReportError``. Fatal to a single input: ``LoadError``, ``ProveError``,
``CompressError``, ``VerifyError``, ``HostToolError``, ``StageTimeout`` (the
runner wraps them in a ``PipelineError`` tagged with the failing stage).
"""
from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any, Sequence

if TYPE_CHECKING:  # pragma: no cover
    from .orchestrator import RunOutcome


class Stage(Enum):
    """Pipeline stage an error is attributed to."""
    BUILD = "build"
    SETUP = "setup"
    LOAD = "load"
    PROVE = "prove"
    COMPRESS = "compress"
    VERIFY = "verify"
    REPORT = "report"


class ProofBenchError(Exception):
    """Base class for all benchmark errors."""


class ConfigError(ProofBenchError):
    """Invalid benchmark or backend configuration."""


class BuildError(ProofBenchError):
    """Guest toolchain failed or the expected artifact is missing."""

    def __init__(self, message: str, *, command: Sequence[str] | None = None, stderr: str = "") -> None:
        super().__init__(message)
        self.command = list(command) if command else []
        self.stderr = stderr

    def __str__(self) -> str:
        base = super().__str__()
        if self.stderr:
            return f"{base}\n{self.stderr.rstrip()}"
        return base


class SetupError(ProofBenchError):
    """Producing proving parameters failed."""


class PipelineStageError(ProofBenchError):
    """Failure of one pipeline stage for one input."""

    stage: Stage = Stage.PROVE

    def __init__(self, message: str, *, stderr: str = "") -> None:
        super().__init__(message)
        self.stderr = stderr


class LoadError(PipelineStageError):
    stage = Stage.LOAD


class ProveError(PipelineStageError):
    stage = Stage.PROVE


class CompressError(PipelineStageError):
    stage = Stage.COMPRESS


class VerifyError(PipelineStageError):
    """Proof was produced but did not verify. Treated as a correctness alarm."""
    stage = Stage.VERIFY


class HostToolError(PipelineStageError):
    """An external prover binary could not be launched at ``stage``."""

    def __init__(self, stage: Stage, message: str) -> None:
        super().__init__(message)
        self.stage = stage


class StageTimeout(PipelineStageError):
    """An external process exceeded its time budget."""

    def __init__(self, stage: Stage, timeout: float, command: Sequence[str] | None = None) -> None:
        cmd = " ".join(command) if command else "<unknown>"
        super().__init__(f"{stage.value} timed out after {timeout:g}s: {cmd}")
        self.stage = stage
        self.timeout = timeout


class ReportError(ProofBenchError):
    """Metrics could not be written to the sink."""


class PipelineError(ProofBenchError):
    """Per-input failure returned by the pipeline runner."""

    def __init__(self, stage: Stage, cause: BaseException, *, parameter: Any = None) -> None:
        super().__init__(f"{stage.value} failed: {cause}")
        self.stage = stage
        self.cause = cause
        self.parameter = parameter

    @property
    def is_verification_failure(self) -> bool:
        return self.stage is Stage.VERIFY and isinstance(self.cause, VerifyError)

    def to_json(self) -> dict[str, Any]:
        return {
            "parameter": self.parameter,
            "stage": self.stage.value,
            "error": type(self.cause).__name__,
            "message": str(self.cause),
        }


class BatchAborted(ProofBenchError):
    """Raised when the verify policy stops a batch; carries partial outcomes."""

    def __init__(self, error: PipelineError, outcomes: list["RunOutcome"]) -> None:
        super().__init__(f"batch aborted on input {error.parameter!r}: {error}")
        self.error = error
        self.outcomes = outcomes
