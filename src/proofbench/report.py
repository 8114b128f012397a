"""CSV metrics sink.

Failed inputs never appear in the CSV. They are logged and, when a path is
given, listed in a JSON sidecar next to it.
"""
from __future__ import annotations

import csv
import io
import json
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import IO, Iterable, Iterator, Sequence, Union

from .errors import ReportError
from .orchestrator import RunOutcome
from .pipeline import MetricsRecord

logger = logging.getLogger(__name__)

METRIC_COLUMNS = ("duration", "proof_size_bytes", "execution_trace_length")
DURATION_UNIT = "ms"
FAILURES_SCHEMA = "proofbench_failures_v1"

Sink = Union[str, Path, IO[str]]


def metrics_path(output_root: Path, guest: str, backend: str, compress: bool) -> Path:
    """Deterministic CSV location for a (guest, backend, compression) combination."""
    flag = "with" if compress else "without"
    return Path(output_root) / f"{guest}_{backend}_{flag}_compressing.csv"


def failures_path(csv_path: Path) -> Path:
    return csv_path.with_name(csv_path.stem + ".failures.json")


@contextmanager
def _open_sink(sink: Sink) -> Iterator[IO[str]]:
    if isinstance(sink, (str, Path)):
        path = Path(sink)
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", newline="", encoding="utf-8") as fh:
            yield fh
    else:
        yield sink


def _format_duration(value: float) -> str:
    return f"{value:.3f}"


def write(records: Iterable[MetricsRecord], sink: Sink, parameter_column_name: str) -> int:
    """Write the header and one row per record; return the number of rows."""
    if not parameter_column_name:
        raise ReportError("parameter column name is required")
    rows = 0
    try:
        with _open_sink(sink) as fh:
            writer = csv.writer(fh, lineterminator="\n")
            writer.writerow([parameter_column_name, *METRIC_COLUMNS])
            for record in records:
                writer.writerow(
                    [
                        record.parameter,
                        _format_duration(record.duration),
                        record.proof_size_bytes,
                        record.execution_trace_length,
                    ]
                )
                rows += 1
    except OSError as exc:
        raise ReportError(f"cannot write metrics to {sink}: {exc}") from exc
    logger.info("Wrote %d metrics row(s) to %s", rows, sink if isinstance(sink, (str, Path)) else "stream")
    return rows


def write_failures(outcomes: Sequence[RunOutcome], destination: Path) -> Path | None:
    """Record failed inputs in a JSON sidecar; return its path, or None if nothing failed."""
    failures = [outcome.error.to_json() for outcome in outcomes if outcome.error is not None]
    if not failures:
        return None
    for entry in failures:
        logger.warning("Omitted %r from metrics (%s: %s)", entry["parameter"], entry["stage"], entry["message"])
    try:
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_text(json.dumps({"schema": FAILURES_SCHEMA, "failures": failures}, indent=2))
    except OSError as exc:
        raise ReportError(f"cannot write failure report {destination}: {exc}") from exc
    return destination


def render(records: Iterable[MetricsRecord], parameter_column_name: str) -> str:
    buffer = io.StringIO()
    write(records, buffer, parameter_column_name)
    return buffer.getvalue()
