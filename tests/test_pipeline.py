import asyncio
import json

import pytest

from components.entity_loader import Entity
from enricher.pipeline import Pipeline
from enricher.session import SessionOps
from extensions.checkpoint import Checkpoint

from stubs import HandleFactory, StubPage

SITE = {"19-4052 TCX": "rgb(15, 76, 129)", "13-1023 TCX": "#ffbe98"}


def _pipeline(cfg, site):
    return Pipeline(
        cfg,
        session_factory=HandleFactory(),
        ops_factory=lambda ps: SessionOps(StubPage(color=site), cfg, label=ps.id),
    )


def _entities():
    return [
        Entity("19-4052 TCX", "Classic Blue"),
        Entity("18-1750 TCX", "Viva Magenta"),
        Entity("13-1023 TCX", "Peach Fuzz"),
    ]


@pytest.mark.asyncio
async def test_update_then_rerun_retries_pending_failures(make_cfg):
    cfg = make_cfg(concurrency=1, save_interval=2)

    p = _pipeline(cfg, SITE)
    await p.start()
    cp = await p.update(_entities())
    await p.close()

    assert (cp.statistics.updated, cp.statistics.failed) == (2, 1)
    assert cp.result_set["19-4052 TCX"].enriched_value == "#0F4C81"
    assert cp.result_set["13-1023 TCX"].enriched_value == "#FFBE98"
    assert (cfg.report_dir / "pantone_update_report.md").exists()

    # the site learned the missing code; a second run retries it first
    p2 = _pipeline(cfg, {**SITE, "18-1750 TCX": "rgb(190, 52, 85)"})
    await p2.start()
    cp2 = await p2.update(_entities())
    await p2.close()

    assert (cp2.statistics.updated, cp2.statistics.failed) == (3, 0)
    assert cp2.cursor == 3

    stats = await _pipeline(cfg, SITE).stats()
    assert stats["with_hex"] == 3
    assert stats["failed_codes"] == []
    assert stats["consistent"] is True
    assert stats["success_rate"] == 100.0


@pytest.mark.asyncio
async def test_concurrent_update_matches_input_order(make_cfg):
    cfg = make_cfg(concurrency=3, batch_size=2, pool_max_sessions=2)
    p = _pipeline(cfg, SITE)
    await p.start()
    cp = await p.update(_entities())
    await p.close()

    saved = json.loads(cfg.checkpoint_file.read_text(encoding="utf-8"))
    assert [c["code"] for c in saved["updatedColors"]] == [e.identifier for e in _entities()]
    assert cp.statistics.consistency_gap() == 0
    assert p.pool.size == 0


@pytest.mark.asyncio
async def test_incremental_update_only_touches_outdated(make_cfg):
    cfg = make_cfg(concurrency=1)
    current = [
        Entity("19-4052 TCX", "Classic Blue", enriched_value="#0F4C81", last_updated="2099-01-01T00:00:00Z"),
        Entity("13-1023 TCX", "Peach Fuzz"),
    ]
    p = _pipeline(cfg, SITE)
    await p.start()
    cp = await p.update(current, existing=current)
    await p.close()

    assert cp.statistics.successful_identifiers == ["13-1023 TCX"]
    assert cp.result_set["19-4052 TCX"].enriched_value == "#0F4C81"
    assert cp.statistics.skipped_identifiers == ["19-4052 TCX"]
    assert cp.statistics.skipped == 1
    assert cp.statistics.consistency_gap() == 0
    saved = json.loads(cfg.checkpoint_file.read_text(encoding="utf-8"))
    assert saved["stats"]["skippedCodes"] == ["19-4052 TCX"]


def test_merge_backlog_appends_unseen_colors():
    cp = Checkpoint(cursor=1, result_set={"A": Entity("A", "a"), "B": Entity("B", "b")})
    backlog = Pipeline.merge_backlog(cp, [Entity("B", "b"), Entity("C", "c")])
    assert [e.identifier for e in backlog] == ["A", "B", "C"]
    assert cp.statistics.total == 3


@pytest.mark.asyncio
async def test_stats_flags_inconsistent_counters(make_cfg):
    cfg = make_cfg()
    cfg.checkpoint_file.write_text(json.dumps({
        "currentIndex": 2,
        "updatedColors": [{"code": "A"}, {"code": "B"}],
        "stats": {"total": 2, "updated": 5, "failed": 0, "skipped": 0},
    }), encoding="utf-8")

    stats = await _pipeline(cfg, SITE).stats()
    assert stats["consistent"] is False


@pytest.mark.asyncio
async def test_run_guarded_fatal_error_saves_state_and_exits_1(make_cfg):
    cfg = make_cfg()
    p = _pipeline(cfg, SITE)

    async def work():
        await p.load()
        raise RuntimeError("boom")

    code = await p.run_guarded(work)

    assert code == 1
    assert list(cfg.backup_dir.glob("emergency_backup_uncaughtException_*.json"))
    assert cfg.checkpoint_file.exists()


@pytest.mark.asyncio
async def test_run_guarded_signal_exit_code(make_cfg):
    cfg = make_cfg()
    p = _pipeline(cfg, SITE)

    async def work():
        await p.load()
        p.shutdown._on_signal("SIGTERM")
        await p.stop_event.wait()

    code = await asyncio.wait_for(p.run_guarded(work, grace_s=1), timeout=5)

    assert code == 143
    assert list(cfg.backup_dir.glob("emergency_backup_SIGTERM_*.json"))


@pytest.mark.asyncio
async def test_run_guarded_clean_exit(make_cfg):
    p = _pipeline(make_cfg(), SITE)

    async def work():
        await asyncio.sleep(0)

    assert await p.run_guarded(work) == 0
    assert not p.shutdown.triggered


@pytest.mark.asyncio
async def test_retry_command_only_touches_failed_codes(make_cfg):
    cfg = make_cfg(concurrency=1)
    p = _pipeline(cfg, SITE)
    await p.start()
    await p.update(_entities())
    await p.close()

    p2 = _pipeline(cfg, {"18-1750 TCX": "rgb(190, 52, 85)"})
    await p2.start()
    result = await p2.retry()
    await p2.close()

    assert result == {"retried": 1, "succeeded": 1}
    stats = await _pipeline(cfg, SITE).stats()
    assert (stats["updated"], stats["failed"]) == (3, 0)


class SlowPage(StubPage):
    """Swatch read takes a while and fails once the owning browser is closed."""

    def __init__(self, handle, color, delay):
        super().__init__(color=color)
        self.handle = handle
        self.delay = delay

    async def evaluate(self, fn, arg=None):
        await asyncio.sleep(self.delay)
        if self.handle.closed:
            raise RuntimeError("Target page, context or browser has been closed")
        return await super().evaluate(fn, arg)


@pytest.mark.asyncio
async def test_signal_mid_extraction_lets_the_color_finish(make_cfg):
    cfg = make_cfg(concurrency=1)
    p = Pipeline(
        cfg,
        session_factory=HandleFactory(),
        ops_factory=lambda ps: SessionOps(SlowPage(ps.handle, SITE, 0.3), cfg, label=ps.id),
    )

    async def work():
        await p.start()
        asyncio.get_running_loop().call_later(0.1, p.shutdown._on_signal, "SIGTERM")
        try:
            await p.update(_entities())
        finally:
            await p.close()

    code = await asyncio.wait_for(p.run_guarded(work), timeout=5)

    assert code == 143
    cp = await p.store.load()
    assert cp.statistics.failed_identifiers == []
    assert cp.statistics.successful_identifiers == ["19-4052 TCX"]
    assert cp.result_set["19-4052 TCX"].enriched_value == "#0F4C81"
    assert cp.cursor == 1
