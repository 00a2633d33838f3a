from __future__ import annotations

import json
import time
from pathlib import Path
from queue import Full, Queue
from threading import Lock, Thread
from typing import IO, Any

_AUDIT_REDACTED_KEYS = frozenset(
    {"authorization", "proxy-authorization", "api_key", "api-key", "x-api-key"}
)
# Upstream URLs can carry keys in the query string (`?key=...`).
_AUDIT_URL_KEYS = frozenset({"request_url"})
_REDACTED = "[redacted]"


def sanitize_audit_event(event: dict[str, Any]) -> dict[str, Any]:
    """Copy of ``event`` with credentials and URL query strings redacted."""

    def _sanitize_value(key: str | None, value: Any) -> Any:
        if key is not None and key.lower() in _AUDIT_REDACTED_KEYS:
            return _REDACTED
        if key in _AUDIT_URL_KEYS and isinstance(value, str):
            base, separator, _ = value.partition("?")
            return f"{base}?{_REDACTED}" if separator else base
        if isinstance(value, dict):
            return {
                item_key: _sanitize_value(str(item_key), item)
                for item_key, item in value.items()
            }
        if isinstance(value, list):
            return [_sanitize_value(None, item) for item in value]
        return value

    return {key: _sanitize_value(key, value) for key, value in event.items()}


def _encode_record(record: dict[str, Any]) -> str:
    return json.dumps(record, ensure_ascii=True, separators=(",", ":"), default=str)


class JsonlAuditLogger:
    """Append proxy attempt events to a JSONL file from a background thread.

    ``log`` never blocks the request path: when the queue is full the record is
    dropped and counted, and the count is written once the writer drains.
    """

    def __init__(
        self,
        path: str,
        enabled: bool = True,
        max_queue_size: int = 8192,
    ) -> None:
        self.enabled = enabled
        self.path = Path(path)
        self._lock = Lock()
        self._dropped_records = 0
        self._queue: Queue[str | None] | None = None
        self._worker: Thread | None = None
        if not self.enabled:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._queue = Queue(maxsize=max_queue_size)
        self._worker = Thread(
            target=self._drain_queue, name="proxy-audit-writer", daemon=True
        )
        self._worker.start()

    @property
    def dropped_records(self) -> int:
        with self._lock:
            return self._dropped_records

    def __call__(self, event: dict[str, Any]) -> None:
        self.log(event)

    def log(self, event: dict[str, Any]) -> None:
        queue = self._queue
        if not self.enabled or queue is None:
            return
        line = _encode_record(
            {"ts": round(time.time(), 3), **sanitize_audit_event(event)}
        )
        try:
            queue.put_nowait(line)
        except Full:
            with self._lock:
                self._dropped_records += 1

    def close(self) -> None:
        queue = self._queue
        worker = self._worker
        if queue is None or worker is None:
            return
        queue.put(None)
        worker.join(timeout=2.0)

    def _drain_queue(self) -> None:
        queue = self._queue
        if queue is None:
            return
        with self.path.open("a", encoding="utf-8") as handle:
            while True:
                item = queue.get()
                try:
                    if item is None:
                        break
                    handle.write(item + "\n")
                    handle.flush()
                finally:
                    queue.task_done()
            self._write_dropped_marker(handle)

    def _write_dropped_marker(self, handle: IO[str]) -> None:
        with self._lock:
            dropped = self._dropped_records
            self._dropped_records = 0
        if dropped <= 0:
            return
        handle.write(
            _encode_record(
                {
                    "ts": round(time.time(), 3),
                    "event": "audit_logger_dropped_records",
                    "dropped_count": dropped,
                }
            )
            + "\n"
        )
        handle.flush()
