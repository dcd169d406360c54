from __future__ import annotations

import asyncio
import logging
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from components.entity_loader import Entity
from extensions.backups import IncrementalBackupStore
from extensions.checkpoint import Checkpoint, CheckpointStore
from extensions.performance import PerformanceMonitor
from extensions.registry import ResourceRegistry
from extensions.report import write_report
from extensions.shutdown import ShutdownCoordinator

from .browser import launch_session
from .config import Config
from .errors import RecoveryPlanner
from .extractor import ColorExtractor
from .orchestrator import BatchOrchestrator, select_for_update
from .pool import SessionPool
from .utils import await_cancelled

logger = logging.getLogger(__name__)


class Pipeline:
    """
    Owns every long-lived collaborator of one run. Nothing here is global;
    tests build a Pipeline with a stub session factory.
    """

    def __init__(
        self,
        cfg: Config,
        *,
        session_factory: Optional[Callable[[], Awaitable[Any]]] = None,
        log_ext: Any = None,
        ops_factory: Any = None,
    ) -> None:
        self.cfg = cfg
        self.log_ext = log_ext
        self.stop_event = asyncio.Event()
        self.registry = ResourceRegistry(default_timeout=cfg.cleanup_timeout_ms / 1000.0)
        self.planner = RecoveryPlanner(base_delay_ms=cfg.retry_delay_ms, max_delay_ms=cfg.retry_max_delay_ms)
        self.monitor = PerformanceMonitor(interval_s=cfg.metrics_interval_s)
        self.incremental = IncrementalBackupStore(cfg.incremental_dir, retention=cfg.incremental_retention)
        self.store = CheckpointStore(
            cfg.checkpoint_file,
            backup_dir=cfg.backup_dir,
            incremental=self.incremental,
            backup_retention=cfg.backup_retention,
        )
        self.pool = SessionPool(
            factory=session_factory or partial(launch_session, cfg),
            registry=self.registry,
            max_sessions=cfg.pool_max_sessions,
            max_usage=cfg.pool_max_usage,
            create_attempts=cfg.session_create_attempts,
            create_delay_ms=cfg.session_create_delay_ms,
            health_interval_s=cfg.health_check_interval_s,
            wait_warn_s=cfg.pool_acquire_timeout_s,
            monitor=self.monitor,
        )
        self.extractor = ColorExtractor(cfg, planner=self.planner, should_stop=self.stop_event.is_set)
        self.orchestrator = BatchOrchestrator(
            cfg=cfg,
            pool=self.pool,
            extractor=self.extractor,
            store=self.store,
            monitor=self.monitor,
            log_ext=log_ext,
            stop_event=self.stop_event,
            report_dir=cfg.report_dir,
            ops_factory=ops_factory,
        )
        self.shutdown = ShutdownCoordinator(
            registry=self.registry,
            store=self.store,
            state_provider=self._in_memory_state,
            stop_event=self.stop_event,
            pool=self.pool,
            drain_timeout_s=cfg.shutdown_grace_s,
        )
        self.shutdown.add_cleanup_callback(self._save_latest)
        self._loaded = False

    # ---------------- State ----------------

    def _in_memory_state(self) -> Optional[Checkpoint]:
        return self.orchestrator.checkpoint if self._loaded else None

    async def _save_latest(self) -> None:
        if not self._loaded:
            return
        cp = self.orchestrator.checkpoint
        await self.store.save(self.orchestrator.position, cp.result_set, cp.statistics)
        logger.info("Latest in-memory state saved at cursor %d", self.orchestrator.position)

    async def load(self) -> Checkpoint:
        cp = await self.store.load()
        self.orchestrator.checkpoint = cp
        self.orchestrator.position = cp.cursor
        self._loaded = True
        return cp

    @staticmethod
    def merge_backlog(cp: Checkpoint, entities: Sequence[Entity]) -> List[Entity]:
        """Checkpoint order first, then colors the checkpoint has never seen."""
        if cp.is_fresh:
            cp.statistics.total = len(entities)
            return list(entities)
        backlog = cp.entities()
        new = [e for e in entities if e.identifier not in cp.result_set]
        if new:
            logger.info("Appending %d new color(s) to the checkpoint backlog", len(new))
            backlog.extend(new)
        cp.statistics.total = len(backlog)
        return backlog

    # ---------------- Lifecycle ----------------

    async def start(self) -> None:
        self.monitor.start()
        await self.pool.start(warm=1)

    async def close(self) -> None:
        await self.monitor.stop()
        if not self.shutdown.triggered:
            await self.registry.perform_cleanup(trigger="exit")
        logger.info("Recovery summary: %s", self.planner.summary())

    async def run_guarded(self, work: Callable[[], Awaitable[Any]], *, grace_s: Optional[float] = None) -> int:
        """
        Run `work` with signal handling installed. Returns the process exit code.
        Any exception escaping `work` goes through the shutdown path.
        """
        if grace_s is None:
            grace_s = float(self.cfg.shutdown_grace_s)
        self.shutdown.install()
        task = asyncio.create_task(work(), name="pipeline_work")
        waiter = asyncio.create_task(self.shutdown.done.wait(), name="shutdown_wait")
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
            if task.done():
                exc = None if task.cancelled() else task.exception()
                if exc is not None:
                    return await self.shutdown.handle_fatal(exc)
                if self.shutdown.triggered:
                    await self.shutdown.done.wait()
                    return self.shutdown.exit_code
                return 0
            # shutdown finished first; in-flight work gets a grace period
            try:
                await asyncio.wait_for(task, timeout=grace_s)
            except asyncio.TimeoutError:
                logger.warning("Work did not stop within %.0fs; cancelled", grace_s)
            except Exception as e:
                logger.warning("Work ended with error during shutdown: %s", e)
            return self.shutdown.exit_code
        finally:
            await await_cancelled(waiter)
            self.shutdown.uninstall()

    # ---------------- Commands ----------------

    async def update(self, entities: Sequence[Entity], *, existing: Optional[Sequence[Entity]] = None) -> Checkpoint:
        cp = await self.load()
        backlog = self.merge_backlog(cp, entities)

        if cp.statistics.failed_identifiers:
            logger.info("Retrying %d pending failure(s) before resuming", len(cp.statistics.failed_identifiers))
            await self.orchestrator.retry_failed(cp)

        if existing is not None:
            for e in backlog:
                cp.result_set.setdefault(e.identifier, e)
            todo = select_for_update(backlog, existing, stale_after_days=self.cfg.stale_after_days)
            selected = {e.identifier for e in todo}
            for e in backlog:
                if e.identifier not in selected:
                    cp.statistics.record_skip(e.identifier)
            logger.info("Incremental mode: %d of %d color(s) need an update", len(todo), len(backlog))
            await self.orchestrator.run(todo, cp, start=0)
        else:
            await self.orchestrator.run(backlog, cp, start=cp.cursor)

        if not self.stop_event.is_set():
            write_report(self.cfg.report_dir, cp.statistics)
        return cp

    async def retry(self) -> Dict[str, int]:
        cp = await self.load()
        result = await self.orchestrator.retry_failed(cp)
        if not self.stop_event.is_set():
            write_report(self.cfg.report_dir, cp.statistics)
        return result

    async def stats(self) -> Dict[str, Any]:
        cp = await self.load()
        s = cp.statistics
        finished = bool(s.total) and cp.cursor >= s.total
        consistent = s.processed <= s.total and (not finished or s.consistency_gap() == 0)
        out = {
            "cursor": cp.cursor,
            "entities": len(cp.result_set),
            "with_hex": sum(1 for e in cp.result_set.values() if e.enriched_value),
            "total": s.total,
            "updated": s.updated,
            "failed": s.failed,
            "skipped": s.skipped,
            "success_rate": round(s.success_rate(), 2),
            "failed_codes": list(s.failed_identifiers),
            "last_updated": cp.last_updated,
            "consistent": consistent,
        }
        if not consistent:
            logger.warning(
                "Data consistency: total=%d but updated+failed+skipped=%d (gap %d)",
                s.total, s.processed, s.consistency_gap(),
            )
        return out

    async def restore(self, name: Optional[str] = None) -> Checkpoint:
        cp = await self.store.restore_from_backup(name)
        self.orchestrator.checkpoint = cp
        self._loaded = True
        return cp
