from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

logger = logging.getLogger(__name__)

CleanupFn = Callable[[Any], Union[Awaitable[None], None]]


@dataclass(slots=True)
class _Registered:
    id: str
    type: str
    resource: Any
    cleanup_fn: CleanupFn
    priority: int = 0
    timeout: float = 5.0
    retry_count: int = 0
    seq: int = 0


@dataclass(slots=True)
class CleanupReport:
    trigger: str
    total_resources: int = 0
    cleaned_resources: int = 0
    failed_cleanups: int = 0
    elapsed_s: float = 0.0
    failures: List[str] = field(default_factory=list)


class ResourceRegistry:
    """
    Tracks releasable resources (sessions, pools, handles) and tears them down
    in descending priority order. A failing cleanup never stops the pass.
    """

    def __init__(self, *, default_timeout: float = 5.0, retry_sleep: float = 1.0) -> None:
        self._items: Dict[str, _Registered] = {}
        self._seq = 0
        self._default_timeout = default_timeout
        self._retry_sleep = retry_sleep
        self._lock = asyncio.Lock()
        self.last_report: Optional[CleanupReport] = None

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, resource_id: str) -> bool:
        return resource_id in self._items

    def register(
        self,
        resource_id: str,
        resource_type: str,
        resource: Any,
        cleanup_fn: CleanupFn,
        *,
        priority: int = 0,
        timeout: Optional[float] = None,
        retry_count: int = 0,
    ) -> None:
        self._seq += 1
        self._items[resource_id] = _Registered(
            id=resource_id,
            type=resource_type,
            resource=resource,
            cleanup_fn=cleanup_fn,
            priority=priority,
            timeout=self._default_timeout if timeout is None else timeout,
            retry_count=max(0, retry_count),
            seq=self._seq,
        )
        logger.debug("[registry] registered %s (%s) priority=%d", resource_id, resource_type, priority)

    def unregister(self, resource_id: str) -> bool:
        removed = self._items.pop(resource_id, None) is not None
        if removed:
            logger.debug("[registry] unregistered %s", resource_id)
        return removed

    def ordered(self) -> List[_Registered]:
        # highest priority first; registration order breaks ties
        return sorted(self._items.values(), key=lambda r: (-r.priority, r.seq))

    async def _run_one(self, item: _Registered) -> None:
        result = item.cleanup_fn(item.resource)
        if inspect.isawaitable(result):
            await asyncio.wait_for(result, timeout=item.timeout)

    async def _cleanup_with_retries(self, item: _Registered) -> Optional[str]:
        last: Optional[BaseException] = None
        for attempt in range(item.retry_count + 1):
            try:
                await self._run_one(item)
                return None
            except asyncio.TimeoutError:
                last = TimeoutError(f"cleanup timed out after {item.timeout:.1f}s")
            except Exception as e:
                last = e
            if attempt < item.retry_count:
                logger.warning(
                    "[registry] cleanup of %s failed (attempt %d/%d): %s",
                    item.id, attempt + 1, item.retry_count + 1, last,
                )
                await asyncio.sleep(self._retry_sleep * (attempt + 1))
        return f"{item.id}: {last}"

    async def perform_cleanup(self, trigger: str = "manual") -> CleanupReport:
        async with self._lock:
            started = time.monotonic()
            items = self.ordered()
            report = CleanupReport(trigger=trigger, total_resources=len(items))
            logger.info("[registry] cleanup started trigger=%s resources=%d", trigger, len(items))

            for item in items:
                failure = await self._cleanup_with_retries(item)
                if failure is None:
                    report.cleaned_resources += 1
                    self._items.pop(item.id, None)
                else:
                    report.failed_cleanups += 1
                    report.failures.append(failure)
                    logger.error("[registry] cleanup failed %s", failure)

            report.elapsed_s = time.monotonic() - started
            logger.info(
                "[registry] cleanup done trigger=%s total_resources=%d cleaned_resources=%d "
                "failed_cleanups=%d elapsed=%.2fs",
                trigger, report.total_resources, report.cleaned_resources,
                report.failed_cleanups, report.elapsed_s,
            )
            self.last_report = report
            return report
