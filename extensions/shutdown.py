from __future__ import annotations

import asyncio
import inspect
import logging
import signal
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, Union

from .checkpoint import Checkpoint, CheckpointStore
from .registry import ResourceRegistry

logger = logging.getLogger(__name__)

CleanupCallback = Callable[[], Union[Awaitable[None], None]]

EXIT_CODES = {"SIGINT": 130, "SIGTERM": 143, "SIGHUP": 129}


@dataclass(slots=True)
class _StopState:
    signal_name: Optional[str] = None
    reason: str = ""
    exit_code: int = 0


class ShutdownCoordinator:
    """
    First signal (or fatal error) wins: stop new work and write an emergency
    backup of the in-memory checkpoint. Borrowed sessions then get up to
    `drain_timeout_s` to come back before resources are torn down and the
    cleanup callbacks run.
    Later signals are ignored while that is in progress.
    """

    def __init__(
        self,
        *,
        registry: ResourceRegistry,
        store: CheckpointStore,
        state_provider: Callable[[], Optional[Checkpoint]],
        stop_event: Optional[asyncio.Event] = None,
        pool: Any = None,
        drain_timeout_s: float = 10.0,
    ) -> None:
        self.registry = registry
        self.store = store
        self.state_provider = state_provider
        self.stop_event = stop_event or asyncio.Event()
        self.pool = pool
        self.drain_timeout_s = drain_timeout_s
        self.done = asyncio.Event()
        self.state = _StopState()
        self._handling = False
        self._callbacks: List[CleanupCallback] = []
        self._installed: List[int] = []
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._prev_exc_handler = None
        self._task: Optional[asyncio.Task] = None

    @property
    def triggered(self) -> bool:
        return self._handling

    @property
    def exit_code(self) -> int:
        return self.state.exit_code

    def add_cleanup_callback(self, fn: CleanupCallback) -> None:
        self._callbacks.append(fn)

    # ---------------- Installation ----------------

    def install(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        loop = loop or asyncio.get_running_loop()
        self._loop = loop
        for name in ("SIGINT", "SIGTERM", "SIGHUP"):
            sig = getattr(signal, name, None)
            if sig is None:
                continue
            try:
                loop.add_signal_handler(sig, self._on_signal, name)
                self._installed.append(sig)
            except (NotImplementedError, RuntimeError, ValueError):
                # Windows / non-main thread
                logger.debug("[shutdown] cannot install handler for %s", name)
        self._prev_exc_handler = loop.get_exception_handler()
        loop.set_exception_handler(self._on_loop_exception)
        logger.debug("[shutdown] handlers installed for %d signal(s)", len(self._installed))

    def uninstall(self) -> None:
        if self._loop is None:
            return
        for sig in self._installed:
            try:
                self._loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError, ValueError):
                pass
        self._installed.clear()
        self._loop.set_exception_handler(self._prev_exc_handler)

    # ---------------- Triggers ----------------

    def _on_signal(self, name: str) -> None:
        if self._handling or self._task is not None:
            logger.warning("[shutdown] %s received while already shutting down; ignored", name)
            return
        logger.warning("[shutdown] received %s; shutting down gracefully", name)
        self._task = asyncio.ensure_future(
            self.shutdown(name, reason=f"received {name}", exit_code=EXIT_CODES.get(name, 1))
        )

    def _on_loop_exception(self, loop: asyncio.AbstractEventLoop, context: dict) -> None:
        exc = context.get("exception")
        msg = context.get("message", "")
        logger.error("[shutdown] unhandled async error: %s %s", msg, exc or "")
        if self._handling or self._task is not None:
            return
        self._task = asyncio.ensure_future(
            self.shutdown("unhandledRejection", reason=f"{msg}: {exc}" if exc else msg, exit_code=1)
        )

    async def handle_fatal(self, exc: BaseException) -> int:
        logger.error("[shutdown] fatal error: %r", exc)
        await self.shutdown("uncaughtException", reason=f"{type(exc).__name__}: {exc}", exit_code=1)
        return self.exit_code

    # ---------------- Core path ----------------

    async def shutdown(self, signal_name: str, *, reason: str, exit_code: int) -> None:
        if self._handling:
            return
        self._handling = True
        self.state = _StopState(signal_name=signal_name, reason=reason, exit_code=exit_code)
        self.stop_event.set()

        try:
            checkpoint = self.state_provider()
        except Exception as e:
            logger.error("[shutdown] could not read in-memory state: %s", e)
            checkpoint = None
        if checkpoint is not None:
            try:
                self.store.write_emergency(checkpoint, signal_name=signal_name, reason=reason)
            except OSError as e:
                logger.error("[shutdown] emergency backup failed: %s", e)

        if self.pool is not None:
            try:
                await self.pool.drain(self.drain_timeout_s)
            except Exception as e:
                logger.error("[shutdown] drain failed: %s", e)

        report = await self.registry.perform_cleanup(trigger=signal_name)
        if report.failed_cleanups and self.pool is not None:
            logger.warning("[shutdown] %d cleanup(s) failed; force-closing sessions", report.failed_cleanups)
            try:
                await self.pool.force_close_all()
            except Exception as e:
                logger.error("[shutdown] force close failed: %s", e)

        for cb in self._callbacks:
            try:
                result = cb()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error("[shutdown] cleanup callback failed: %s", e)

        logger.warning("[shutdown] done cause=%s reason=%s exit_code=%d", signal_name, reason, exit_code)
        self.done.set()
