"""Backend-agnostic benchmarking of zero-knowledge proving backends."""

from .adapter import BackendAdapter, BuiltArtifact, GuestProgram, Proof, ProvingParameters, PublicInstance
from .backends import ADAPTERS, get_adapter_cls
from .bench import BenchmarkResult, run_benchmark
from .builder import GuestArtifactBuilder
from .config import BenchConfig, VerifyPolicy
from .errors import (
    BatchAborted,
    BuildError,
    CompressError,
    ConfigError,
    HostToolError,
    LoadError,
    PipelineError,
    ProofBenchError,
    ProveError,
    ReportError,
    SetupError,
    Stage,
    StageTimeout,
    VerifyError,
)
from .orchestrator import BenchmarkOrchestrator, RunOutcome
from .pipeline import MetricsRecord, PipelineRunner, run_once

__version__ = "0.1.0"

__all__ = [
    "ADAPTERS",
    "BackendAdapter",
    "BatchAborted",
    "BenchConfig",
    "BenchmarkOrchestrator",
    "BenchmarkResult",
    "BuildError",
    "BuiltArtifact",
    "CompressError",
    "ConfigError",
    "GuestArtifactBuilder",
    "GuestProgram",
    "HostToolError",
    "LoadError",
    "MetricsRecord",
    "PipelineError",
    "PipelineRunner",
    "ProofBenchError",
    "Proof",
    "ProveError",
    "ProvingParameters",
    "PublicInstance",
    "ReportError",
    "RunOutcome",
    "SetupError",
    "Stage",
    "StageTimeout",
    "VerifyError",
    "VerifyPolicy",
    "get_adapter_cls",
    "run_benchmark",
    "run_once",
]
