from __future__ import annotations

import asyncio
import logging
import time
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from components.entity_loader import Entity
from extensions.checkpoint import Checkpoint, CheckpointStore
from extensions.report import write_report

from .config import Config
from .errors import PoolClosedError
from .extractor import ColorExtractor, ExtractionResult
from .pool import PooledSession, SessionPool
from .session import SessionOps
from .utils import parse_iso, utc_now

logger = logging.getLogger(__name__)


# ---------------------------
# Incremental reconciliation
# ---------------------------

def needs_update(entity: Entity, existing: Optional[Entity], *, stale_after_days: int = 30) -> bool:
    if existing is None:
        return True
    if not entity.enriched_value.strip() or not existing.enriched_value.strip():
        return True
    if entity.enriched_value != existing.enriched_value:
        return True
    stamp = parse_iso(entity.last_updated)
    if stamp is None:
        return True
    return utc_now() - stamp > timedelta(days=stale_after_days)


def select_for_update(
    entities: Sequence[Entity],
    existing: Sequence[Entity],
    *,
    stale_after_days: int = 30,
) -> List[Entity]:
    by_code = {e.identifier: e for e in existing}
    return [
        e for e in entities
        if needs_update(e, by_code.get(e.identifier), stale_after_days=stale_after_days)
    ]


# ---------------------------
# Orchestrator
# ---------------------------

class BatchOrchestrator:
    """
    Drives the backlog through pool -> extractor -> statistics -> checkpoint.
    Sequential when concurrency == 1, batched fan-out otherwise.
    """

    def __init__(
        self,
        *,
        cfg: Config,
        pool: SessionPool,
        extractor: ColorExtractor,
        store: CheckpointStore,
        monitor: Any = None,
        log_ext: Any = None,
        stop_event: Optional[asyncio.Event] = None,
        report_dir: Optional[Path] = None,
        ops_factory: Optional[Callable[[PooledSession], SessionOps]] = None,
    ) -> None:
        self.cfg = cfg
        self.pool = pool
        self.extractor = extractor
        self.store = store
        self.monitor = monitor
        self.log_ext = log_ext
        self.stop_event = stop_event or asyncio.Event()
        self.report_dir = report_dir
        self._ops_factory = ops_factory or (lambda ps: SessionOps(ps.handle.page, cfg, label=ps.id))
        self.checkpoint = Checkpoint()
        # next unprocessed index, ahead of the saved cursor between saves
        self.position = 0

    @property
    def stopping(self) -> bool:
        return self.stop_event.is_set()

    # ---------------- One entity ----------------

    async def process_one(self, entity: Entity, *, retry: bool = True) -> ExtractionResult:
        token = self.log_ext.set_entity_context(entity.identifier) if self.log_ext else None
        ps = await self.pool.acquire()
        try:
            ops = self._ops_factory(ps)
            result = await self.extractor.extract_detailed(entity, ops, retry=retry)
            if result.needs_new_session:
                self.pool.retire_on_release(ps)
            return result
        finally:
            await self.pool.release(ps)
            if token is not None:
                self.log_ext.reset_entity_context(token)

    def apply_result(self, before: Entity, result: ExtractionResult, elapsed_s: float = 0.0) -> bool:
        """Fold one outcome into result set + statistics. True when the value changed."""
        after = result.entity
        stats = self.checkpoint.statistics
        changed = bool(after.enriched_value) and after.enriched_value != before.enriched_value
        if changed:
            stats.record_success(before.identifier)
            self.checkpoint.result_set[before.identifier] = after
        else:
            stats.record_failure(before.identifier)
            self.checkpoint.result_set.setdefault(before.identifier, before)
        if self.monitor is not None:
            self.monitor.record(success=changed, elapsed_s=elapsed_s)
        return changed

    async def _timed(self, entity: Entity, *, retry: bool = True) -> Tuple[ExtractionResult, float]:
        started = time.monotonic()
        result = await self.process_one(entity, retry=retry)
        return result, time.monotonic() - started

    # ---------------- Persistence ----------------

    async def save(self, cursor: int, *, partial_report: bool = True) -> None:
        cp = self.checkpoint
        await self.store.save(cursor, cp.result_set, cp.statistics)
        cp.cursor = cursor
        self.log_progress()
        if partial_report and self.report_dir is not None:
            try:
                write_report(self.report_dir, cp.statistics, partial=True)
            except OSError as e:
                logger.warning("Partial report not written: %s", e)

    def log_progress(self) -> None:
        s = self.checkpoint.statistics
        pct = (100.0 * s.processed / s.total) if s.total else 0.0
        logger.info(
            "Progress: %d/%d (%.2f%%) | updated: %d | failed: %d | success rate: %.2f%%",
            s.processed, s.total, pct, s.updated, s.failed, s.success_rate(),
        )

    # ---------------- Modes ----------------

    async def run(self, backlog: Sequence[Entity], checkpoint: Checkpoint, *, start: int = 0) -> Checkpoint:
        self.checkpoint = checkpoint
        self.position = start
        for e in backlog:
            checkpoint.result_set.setdefault(e.identifier, e)
        if start >= len(backlog):
            logger.info("Nothing to process (cursor %d of %d)", start, len(backlog))
            return checkpoint

        logger.info(
            "Processing %d color(s) from index %d mode=%s",
            len(backlog) - start, start, "concurrent" if self.cfg.concurrency > 1 else "sequential",
        )
        if self.cfg.concurrency > 1:
            await self.run_concurrent(backlog, start)
        else:
            await self.run_sequential(backlog, start)
        return checkpoint

    async def run_sequential(self, backlog: Sequence[Entity], start: int = 0) -> None:
        last = len(backlog) - 1
        since_save = 0
        for idx in range(start, len(backlog)):
            if self.stopping:
                logger.warning("Stop requested; not starting %s", backlog[idx].identifier)
                break
            entity = self.checkpoint.result_set.get(backlog[idx].identifier, backlog[idx])
            try:
                result, elapsed = await self._timed(entity)
            except PoolClosedError:
                logger.warning("Pool closed; %s left unprocessed", entity.identifier)
                if since_save:
                    await self.save(idx)
                break
            self.apply_result(entity, result, elapsed)
            self.position = idx + 1
            since_save += 1
            if since_save >= self.cfg.save_interval or idx == last:
                await self.save(idx + 1)
                since_save = 0

    async def run_concurrent(self, backlog: Sequence[Entity], start: int = 0) -> None:
        size = max(1, self.cfg.batch_size)
        for batch_start in range(start, len(backlog), size):
            if self.stopping:
                logger.warning("Stop requested; %d color(s) left unprocessed", len(backlog) - batch_start)
                break
            batch = list(enumerate(backlog[batch_start:batch_start + size], start=batch_start))
            entities = {idx: self.checkpoint.result_set.get(e.identifier, e) for idx, e in batch}
            outcomes = await self._fan_out(entities)
            applied = self._merge_batch(batch, entities, outcomes)
            self.position = batch_start + applied
            await self.save(self.position)
            if applied < len(batch):
                break

    async def _fan_out(self, entities: Mapping[int, Entity]) -> List[Tuple[int, Any]]:
        indices = list(entities)

        async def _task(idx: int) -> Tuple[int, Any]:
            return idx, await self._timed(entities[idx])

        raw = await asyncio.gather(*(_task(i) for i in indices), return_exceptions=True)
        outcomes: List[Tuple[int, Any]] = []
        for idx, item in zip(indices, raw):
            if isinstance(item, BaseException):
                if isinstance(item, asyncio.CancelledError):
                    raise item
                if isinstance(item, PoolClosedError):
                    logger.info("Task for %s not started: %s", entities[idx].identifier, item)
                else:
                    logger.error("Task for %s failed: %s", entities[idx].identifier, item)
                outcomes.append((idx, item))
            else:
                outcomes.append(item)
        return outcomes

    def _merge_batch(
        self,
        batch: Sequence[Tuple[int, Entity]],
        entities: Mapping[int, Entity],
        outcomes: List[Tuple[int, Any]],
    ) -> int:
        """
        Apply outcomes in backlog order up to the first color the pool refused.
        Returns how many were applied; the rest are redone on the next run.
        """
        outcomes.sort(key=lambda o: o[0])
        merged_ids = [entities[idx].identifier for idx, _ in outcomes]
        expected_ids = [e.identifier for _, e in batch]
        if merged_ids != expected_ids:
            logger.warning("Batch order mismatch after merge: expected %s got %s", expected_ids, merged_ids)

        applied = 0
        for idx, outcome in outcomes:
            before = entities[idx]
            if isinstance(outcome, PoolClosedError):
                break
            if isinstance(outcome, BaseException):
                self.apply_result(before, ExtractionResult(before, error=str(outcome)))
            else:
                result, elapsed = outcome
                self.apply_result(before, result, elapsed)
            applied += 1
        if applied < len(outcomes):
            logger.warning(
                "Pool closed mid-batch; %d color(s) left for the next run", len(outcomes) - applied,
            )
        return applied

    # ---------------- Retry ----------------

    async def retry_failed(self, checkpoint: Checkpoint) -> Dict[str, int]:
        """One attempt per failed code; the cursor is left alone."""
        self.checkpoint = checkpoint
        self.position = checkpoint.cursor
        failed = list(checkpoint.statistics.failed_identifiers)
        if not failed:
            logger.info("No failed colors to retry")
            return {"retried": 0, "succeeded": 0}

        logger.info("Retrying %d failed color(s)", len(failed))
        retried = succeeded = 0
        for code in failed:
            if self.stopping:
                break
            entity = checkpoint.result_set.get(code)
            if entity is None:
                logger.warning("Failed code %s not in result set; skipping retry", code)
                continue
            try:
                result, elapsed = await self._timed(entity, retry=False)
            except PoolClosedError:
                logger.warning("Pool closed; retry of %s skipped", code)
                break
            retried += 1
            if self.apply_result(entity, result, elapsed):
                succeeded += 1
                logger.info("Retry succeeded: %s -> %s (%d/%d)", code, result.entity.enriched_value, succeeded, retried)
            else:
                logger.warning("Retry failed: %s still not updated", code)
            if retried % self.cfg.save_interval == 0:
                await self.save(checkpoint.cursor)
        if retried:
            await self.save(checkpoint.cursor)
        logger.info("Retry finished: %d/%d succeeded", succeeded, retried)
        return {"retried": retried, "succeeded": succeeded}
