from __future__ import annotations

import json
import time
from pathlib import Path
from queue import Full, Queue
from threading import Lock, Thread
from typing import Any


class JsonlEventSink:
    """Append structured events to a JSON-lines file from a background thread.

    ``emit`` never blocks the event loop; when the queue is full the record is
    dropped and counted, and the count is written once the writer drains.
    """

    def __init__(
        self,
        path: str | Path,
        enabled: bool = True,
        max_queue_size: int = 8192,
    ) -> None:
        self.enabled = enabled
        self.path = Path(path)
        self._lock = Lock()
        self._queue: Queue[str | None] | None = None
        self._worker: Thread | None = None
        self._dropped_records = 0
        if self.enabled:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._queue = Queue(maxsize=max_queue_size)
            self._worker = Thread(
                target=self._drain_queue, name="orchestrator-event-writer", daemon=True
            )
            self._worker.start()

    def __call__(self, event: dict[str, Any]) -> None:
        self.emit(event)

    def emit(self, event: dict[str, Any]) -> None:
        queue = self._queue
        if not self.enabled or queue is None:
            return
        record = {"ts": round(time.time(), 3), **event}
        line = json.dumps(record, ensure_ascii=True, separators=(",", ":"), default=str)
        try:
            queue.put_nowait(line)
        except Full:
            with self._lock:
                self._dropped_records += 1

    @property
    def dropped_records(self) -> int:
        with self._lock:
            return self._dropped_records

    def close(self) -> None:
        queue = self._queue
        worker = self._worker
        if not self.enabled or queue is None or worker is None:
            return
        queue.put(None)
        worker.join(timeout=2.0)
        self._queue = None
        self._worker = None

    def _drain_queue(self) -> None:
        queue = self._queue
        if queue is None:
            return
        with self.path.open("a", encoding="utf-8") as handle:
            while True:
                item = queue.get()
                if item is None:
                    queue.task_done()
                    break
                handle.write(item + "\n")
                handle.flush()
                queue.task_done()
            with self._lock:
                dropped = self._dropped_records
                self._dropped_records = 0
            if dropped > 0:
                handle.write(
                    json.dumps(
                        {
                            "ts": round(time.time(), 3),
                            "level": "warn",
                            "tag": "events",
                            "message": "event_sink_dropped_records",
                            "meta": {"dropped_count": dropped},
                        },
                        ensure_ascii=True,
                        separators=(",", ":"),
                    )
                    + "\n"
                )
                handle.flush()
