from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from extensions.registry import ResourceRegistry

from .errors import PoolClosedError, PoolInitError
from .utils import await_cancelled, retry_fixed_async

logger = logging.getLogger(__name__)

SESSION_PRIORITY = 10
POOL_PRIORITY = 5


class SessionState(str, Enum):
    AVAILABLE = "available"
    BUSY = "busy"
    RETIRING = "retiring"


@dataclass(slots=True)
class PooledSession:
    id: str
    handle: Any
    usage_count: int = 0
    state: SessionState = SessionState.AVAILABLE
    created_at: float = field(default_factory=time.monotonic)


async def _maybe_await(value):
    if inspect.isawaitable(value):
        return await value
    return value


class SessionPool:
    """
    Fixed-size pool of expensive browser sessions.
    - acquire() polls with backoff until a session is free or a slot is free to create one
    - release() retires a session lazily once it reached max_usage
    - a background health check replaces sessions whose browser died
    Handles are any object with is_alive(), close() and kill().
    """

    def __init__(
        self,
        *,
        factory: Callable[[], Awaitable[Any]],
        registry: ResourceRegistry,
        max_sessions: int = 3,
        max_usage: int = 10,
        create_attempts: int = 3,
        create_delay_ms: int = 5000,
        health_interval_s: float = 60.0,
        wait_warn_s: float = 300.0,
        monitor: Any = None,
    ) -> None:
        self._factory = factory
        self._registry = registry
        self.max_sessions = max(1, int(max_sessions))
        self.max_usage = max(1, int(max_usage))
        self._create_attempts = max(1, int(create_attempts))
        self._create_delay_ms = max(0, int(create_delay_ms))
        self._health_interval_s = health_interval_s
        self._wait_warn_s = wait_warn_s
        self._monitor = monitor

        self._sessions: Dict[str, PooledSession] = {}
        self._creating = 0
        self._lock = asyncio.Lock()
        self._health_task: Optional[asyncio.Task] = None
        self._init_failed = False
        self._closing = False
        self._draining = False
        self.total_created = 0

    # ---------------- Introspection ----------------

    @property
    def size(self) -> int:
        return len(self._sessions)

    def available_count(self) -> int:
        return sum(1 for s in self._sessions.values() if s.state is SessionState.AVAILABLE)

    def busy_count(self) -> int:
        return sum(1 for s in self._sessions.values() if s.state is SessionState.BUSY)

    def sessions(self) -> List[PooledSession]:
        return list(self._sessions.values())

    # ---------------- Lifecycle ----------------

    async def start(self, *, warm: int = 1) -> None:
        """Bring up `warm` sessions eagerly and start the health check."""
        self._closing = False
        self._draining = False
        self._registry.register(
            "session_pool", "pool", self, lambda pool: pool.close_all(),
            priority=POOL_PRIORITY, timeout=10.0, retry_count=2,
        )
        warm = min(max(0, warm), self.max_sessions)
        created = 0
        for _ in range(warm):
            try:
                ps = await self.create_session()
            except Exception as e:
                logger.error("[pool] warm-up session failed: %s", e)
                continue
            async with self._lock:
                self._sessions[ps.id] = ps
            created += 1
        if warm and not created:
            self._init_failed = True
            raise PoolInitError(f"could not start any of {warm} warm session(s)")

        if self._health_interval_s and self._health_interval_s > 0:
            self._health_task = asyncio.create_task(self._health_loop(), name="pool_health_check")
        logger.info(
            "[pool] started max_sessions=%d max_usage=%d warm=%d",
            self.max_sessions, self.max_usage, created,
        )

    async def create_session(self) -> PooledSession:
        """Bounded-retry bring-up of one session, registered with the registry on success."""

        @retry_fixed_async(self._create_attempts, self._create_delay_ms, label="create_session")
        async def _bring_up():
            return await self._factory()

        handle = await _bring_up()
        sid = str(getattr(handle, "id", None) or f"session-{self.total_created + 1}")
        ps = PooledSession(id=sid, handle=handle)
        self.total_created += 1
        self._registry.register(
            f"session:{sid}", "browser_session", ps, self._destroy,
            priority=SESSION_PRIORITY, timeout=10.0, retry_count=2,
        )
        if self._monitor is not None:
            self._monitor.session_created()
        logger.info("[pool] session %s created (total_created=%d)", sid, self.total_created)
        return ps

    async def _destroy(self, ps: PooledSession, *, force: bool = False) -> None:
        self._sessions.pop(ps.id, None)
        self._registry.unregister(f"session:{ps.id}")
        if force:
            await ps.handle.kill()
        else:
            await ps.handle.close()
        if self._monitor is not None:
            self._monitor.session_closed()

    # ---------------- Acquire / release ----------------

    async def acquire(self) -> PooledSession:
        delay = 0.05
        started = time.monotonic()
        warned_at = started
        while True:
            create_slot = False
            async with self._lock:
                if self._init_failed:
                    raise PoolInitError("session pool failed to initialize")
                if self._closing or self._draining:
                    raise PoolClosedError("session pool is closed")
                for ps in self._sessions.values():
                    if ps.state is SessionState.AVAILABLE:
                        ps.state = SessionState.BUSY
                        ps.usage_count += 1
                        return ps
                if len(self._sessions) + self._creating < self.max_sessions:
                    self._creating += 1
                    create_slot = True

            if create_slot:
                ps = await self._create_into_slot()
                if ps is not None:
                    return ps
            else:
                now = time.monotonic()
                if now - warned_at >= self._wait_warn_s:
                    logger.warning(
                        "[pool] still waiting for a session after %.0fs (busy=%d size=%d)",
                        now - started, self.busy_count(), self.size,
                    )
                    warned_at = now
                await asyncio.sleep(delay)
                delay = min(delay * 1.5, 1.0)

    async def _create_into_slot(self) -> Optional[PooledSession]:
        try:
            ps = await self.create_session()
        except Exception as e:
            async with self._lock:
                self._creating -= 1
                if not self._sessions and self._creating == 0 and self.total_created == 0:
                    self._init_failed = True
            logger.error("[pool] session creation failed: %s", e)
            if self._init_failed:
                raise PoolInitError(f"no session could be created: {e}") from e
            return None
        async with self._lock:
            self._creating -= 1
            ps.state = SessionState.BUSY
            ps.usage_count = 1
            self._sessions[ps.id] = ps
        return ps

    def retire_on_release(self, ps: PooledSession) -> None:
        """Make the next release() tear this session down (e.g. after a crash)."""
        ps.usage_count = max(ps.usage_count, self.max_usage)

    async def release(self, ps: PooledSession) -> None:
        async with self._lock:
            if self._sessions.get(ps.id) is not ps:
                # evicted by the health check while borrowed
                return
            if ps.usage_count >= self.max_usage or self._closing:
                ps.state = SessionState.RETIRING
                self._sessions.pop(ps.id, None)
                retire = True
            else:
                ps.state = SessionState.AVAILABLE
                retire = False
        if retire:
            logger.info("[pool] retiring session %s after %d uses", ps.id, ps.usage_count)
            try:
                await self._destroy(ps)
            except Exception as e:
                logger.warning("[pool] error closing retired session %s: %s", ps.id, e)

    # ---------------- Health check ----------------

    async def check_health(self) -> int:
        """Evict dead sessions and create replacements. Returns how many were replaced."""
        dead: List[PooledSession] = []
        for ps in list(self._sessions.values()):
            try:
                alive = bool(await _maybe_await(ps.handle.is_alive()))
            except Exception:
                alive = False
            if not alive:
                dead.append(ps)
        if not dead:
            return 0

        async with self._lock:
            for ps in dead:
                self._sessions.pop(ps.id, None)
                ps.state = SessionState.RETIRING
            self._creating += len(dead)

        replaced = 0
        for ps in dead:
            logger.warning("[pool] session %s is dead; replacing", ps.id)
            try:
                await self._destroy(ps, force=True)
            except Exception as e:
                logger.debug("[pool] dead session %s kill error: %s", ps.id, e)
            try:
                fresh = await self.create_session()
            except Exception as e:
                async with self._lock:
                    self._creating -= 1
                logger.error("[pool] replacement for %s failed: %s", ps.id, e)
                continue
            async with self._lock:
                self._creating -= 1
                self._sessions[fresh.id] = fresh
            replaced += 1
        return replaced

    async def _health_loop(self) -> None:
        while not self._closing:
            await asyncio.sleep(self._health_interval_s)
            try:
                await self.check_health()
            except Exception as e:
                logger.warning("[pool] health check error: %s", e)

    # ---------------- Teardown ----------------

    async def drain(self, timeout_s: float) -> bool:
        """
        Stop lending sessions and wait up to `timeout_s` for borrowed ones to
        come back. Sessions stay open; True when none is busy any more.
        """
        self._draining = True
        deadline = time.monotonic() + max(0.0, timeout_s)
        while (self.busy_count() or self._creating) and time.monotonic() < deadline:
            await asyncio.sleep(0.05)
        busy = self.busy_count()
        if busy:
            logger.warning("[pool] %d session(s) still busy after %.1fs drain", busy, timeout_s)
        else:
            logger.info("[pool] drained; no session in use")
        return busy == 0

    async def close_all(self) -> None:
        self._closing = True
        await await_cancelled(self._health_task)
        self._health_task = None
        for ps in list(self._sessions.values()):
            try:
                await self._destroy(ps)
            except Exception as e:
                logger.warning("[pool] error closing session %s: %s", ps.id, e)
        self._registry.unregister("session_pool")
        logger.info("[pool] closed (total_created=%d)", self.total_created)

    async def force_close_all(self) -> None:
        self._closing = True
        await await_cancelled(self._health_task, timeout=0.2)
        self._health_task = None
        for ps in list(self._sessions.values()):
            try:
                await self._destroy(ps, force=True)
            except Exception as e:
                logger.warning("[pool] force close of %s failed: %s", ps.id, e)
        self._registry.unregister("session_pool")
        logger.warning("[pool] force-closed all sessions")
