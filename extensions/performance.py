from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, Optional

from enricher.utils import await_cancelled

logger = logging.getLogger(__name__)


class PerformanceMonitor:
    """Run-level counters plus an optional periodic metrics log line."""

    def __init__(self, *, interval_s: float = 60.0) -> None:
        self.interval_s = interval_s
        self.started_at = time.monotonic()
        self.processed = 0
        self.updated = 0
        self.failed = 0
        self.sessions_created = 0
        self.sessions_closed = 0
        self._total_time = 0.0
        self._task: Optional[asyncio.Task] = None

    # ---------------- Counters ----------------

    def record(self, *, success: bool, elapsed_s: float) -> None:
        self.processed += 1
        self._total_time += max(0.0, elapsed_s)
        if success:
            self.updated += 1
        else:
            self.failed += 1

    def session_created(self) -> None:
        self.sessions_created += 1

    def session_closed(self) -> None:
        self.sessions_closed += 1

    @property
    def average_time_s(self) -> float:
        return self._total_time / self.processed if self.processed else 0.0

    @property
    def error_rate(self) -> float:
        return self.failed / self.processed if self.processed else 0.0

    def snapshot(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "updated": self.updated,
            "failed": self.failed,
            "avg_time_s": round(self.average_time_s, 3),
            "error_rate": round(self.error_rate, 4),
            "sessions_created": self.sessions_created,
            "sessions_closed": self.sessions_closed,
            "uptime_s": round(time.monotonic() - self.started_at, 1),
        }

    def log_metrics(self) -> None:
        s = self.snapshot()
        logger.info(
            "[metrics] processed=%d updated=%d failed=%d success=%.2f%% avg=%.2fs sessions=%d/%d uptime=%.0fs",
            s["processed"], s["updated"], s["failed"], (1 - self.error_rate) * 100 if self.processed else 0.0,
            s["avg_time_s"], s["sessions_created"], s["sessions_closed"], s["uptime_s"],
        )

    # ---------------- Periodic reporting ----------------

    def start(self) -> None:
        if self._task is None and self.interval_s > 0:
            self._task = asyncio.create_task(self._loop(), name="metrics_reporter")

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_s)
            self.log_metrics()

    async def stop(self) -> None:
        await await_cancelled(self._task)
        self._task = None
        self.log_metrics()
