"""Structured observability events and their JSONL export."""
import logging
import time
from collections import deque
from pathlib import Path
from typing import Any, Deque, Dict, Optional
import aiofiles
import orjson

from pnr_tracker.jobs.metrics import Metrics

logger = logging.getLogger(__name__)

# Events that are too chatty for INFO
DEBUG_EVENTS = {"cache_hit", "cache_miss", "job_fired", "check_completed"}


class EventRecorder:
    """Emits structured events: logs them, counts them, keeps the recent ones.

    Counter snapshots can be appended to a JSONL file with `export()` so an
    external collector can tail them.
    """

    def __init__(self, export_path: Optional[Path] = None, keep: int = 1000):
        self.export_path = export_path
        self.metrics = Metrics()
        self.recent: Deque[Dict[str, Any]] = deque(maxlen=keep)

    def emit(self, event: str, **fields: Any) -> None:
        record = {"ts": time.time(), "event": event, **fields}
        self.recent.append(record)
        self.metrics.increment(event)
        if event == "notification_outcome":
            self.metrics.increment(f"notification_{fields.get('outcome')}")
        elif event == "check_completed" and not fields.get("ok", True):
            self.metrics.increment("check_failed")

        level = logging.DEBUG if event in DEBUG_EVENTS else logging.INFO
        if logger.isEnabledFor(level):
            details = " ".join(f"{key}={value}" for key, value in fields.items())
            logger.log(level, f"event={event} {details}".rstrip())

    def count(self, event: str) -> int:
        return self.metrics.get(event)

    def events(self, name: str) -> list[Dict[str, Any]]:
        return [record for record in self.recent if record["event"] == name]

    async def export(self) -> None:
        """Append a counters snapshot to the JSONL export file."""
        if self.export_path is None:
            return
        line = orjson.dumps({"ts": time.time(), **self.metrics.get_summary()}) + b"\n"
        async with aiofiles.open(self.export_path, "ab") as f:
            await f.write(line)
