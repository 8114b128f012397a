"""Event logging utilities for benchmark runs."""
from __future__ import annotations

import hashlib
import json
import os
import threading
import time
from pathlib import Path
from typing import Optional

EVENT_SCHEMA = "proofbench_event_stream_v1"
GENESIS_HASH = "0" * 64


class EventLogger:
    """Writes hash-chained JSON events to a log file.

    Each line carries ``prev_event_hash`` and ``event_hash`` so a truncated or
    edited log is detectable with :func:`verify_event_chain`.
    """

    def __init__(self, path: Path, run_id: str, *, default_source: str = "orchestrator") -> None:
        self.path = Path(path).resolve()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._fh = self.path.open("w", encoding="utf-8")
        self.run_id = run_id
        self._seq = 0
        self._last_hash = GENESIS_HASH
        self._default_source = default_source
        self._lock = threading.Lock()

    def emit(self, event_type: str, data: Optional[dict] = None, *, source: str | None = None) -> str:
        with self._lock:
            if self._fh is None:
                raise RuntimeError("event logger is closed")
            self._seq += 1
            base_event = {
                "schema": EVENT_SCHEMA,
                "v": 1,
                "run_id": self.run_id,
                "seq": self._seq,
                "ts_ms": int(time.time() * 1000),
                "source": source or self._default_source,
                "type": event_type,
                "data": data or {},
            }
            serialized = json.dumps(base_event, sort_keys=True, separators=(",", ":"), default=str).encode("utf-8")
            prev_hash = self._last_hash
            event_hash = hashlib.sha256(bytes.fromhex(prev_hash) + serialized).hexdigest()
            payload = dict(base_event)
            payload["prev_event_hash"] = prev_hash
            payload["event_hash"] = event_hash
            self._fh.write(json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str) + os.linesep)
            self._fh.flush()
            self._last_hash = event_hash
            return event_hash

    @property
    def count(self) -> int:
        return self._seq

    def close(self) -> None:
        with self._lock:
            if self._fh is not None:
                self._fh.close()
                self._fh = None

    def __enter__(self) -> "EventLogger":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class ProgressSink:
    """Bridges adapter progress callbacks into the EventLogger."""

    def __init__(self, logger: EventLogger) -> None:
        self.logger = logger

    def callback(self, payload: dict) -> None:
        event_type = payload.get("type", "progress")
        data = payload.get("data", {})
        self.logger.emit(event_type, data, source="backend")


def verify_event_chain(path: Path) -> int:
    """Check the hash chain of an event log; return the number of events."""
    prev_hash = GENESIS_HASH
    count = 0
    with Path(path).open("r", encoding="utf-8") as fh:
        for lineno, line in enumerate(fh, start=1):
            if not line.strip():
                continue
            event = json.loads(line)
            recorded = event.pop("event_hash", None)
            claimed_prev = event.pop("prev_event_hash", None)
            if claimed_prev != prev_hash:
                raise ValueError(f"event chain broken at line {lineno}")
            serialized = json.dumps(event, sort_keys=True, separators=(",", ":")).encode("utf-8")
            expected = hashlib.sha256(bytes.fromhex(prev_hash) + serialized).hexdigest()
            if recorded != expected:
                raise ValueError(f"event hash mismatch at line {lineno}")
            prev_hash = expected
            count += 1
    return count
