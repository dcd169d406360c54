import asyncio

import pytest

from extensions.registry import ResourceRegistry


@pytest.mark.asyncio
async def test_cleanup_runs_in_priority_order():
    order = []
    reg = ResourceRegistry(retry_sleep=0)

    async def closer(name):
        order.append(name)

    reg.register("pool", "pool", "pool", closer, priority=5)
    reg.register("s1", "browser_session", "s1", closer, priority=10)
    reg.register("log", "file", "log", lambda name: order.append(name), priority=0)
    reg.register("s2", "browser_session", "s2", closer, priority=10)

    report = await reg.perform_cleanup(trigger="exit")

    # same priority -> registration order
    assert order == ["s1", "s2", "pool", "log"]
    assert report.total_resources == 4
    assert report.cleaned_resources == 4
    assert report.failed_cleanups == 0
    assert len(reg) == 0


@pytest.mark.asyncio
async def test_failing_cleanup_is_counted_and_does_not_stop_the_pass():
    cleaned = []
    reg = ResourceRegistry(retry_sleep=0)

    async def bad(_):
        raise RuntimeError("close failed")

    reg.register("bad", "x", None, bad, priority=10)
    reg.register("good", "x", None, lambda _: cleaned.append("good"), priority=1)

    report = await reg.perform_cleanup(trigger="SIGTERM")

    assert cleaned == ["good"]
    assert report.failed_cleanups == 1
    assert report.cleaned_resources == 1
    assert "bad" in report.failures[0]
    # failed resources stay registered
    assert "bad" in reg and "good" not in reg
    assert reg.last_report is report


@pytest.mark.asyncio
async def test_cleanup_timeout_counts_as_failure():
    reg = ResourceRegistry(retry_sleep=0)

    async def hang(_):
        await asyncio.sleep(10)

    reg.register("slow", "x", None, hang, timeout=0.05)
    report = await reg.perform_cleanup()

    assert report.failed_cleanups == 1
    assert "timed out" in report.failures[0]


@pytest.mark.asyncio
async def test_cleanup_retries_up_to_retry_count():
    calls = {"n": 0}
    reg = ResourceRegistry(retry_sleep=0)

    async def flaky(_):
        calls["n"] += 1
        if calls["n"] < 3:
            raise RuntimeError("busy")

    reg.register("flaky", "x", None, flaky, retry_count=2)
    report = await reg.perform_cleanup()

    assert calls["n"] == 3
    assert report.cleaned_resources == 1


def test_register_and_unregister():
    reg = ResourceRegistry()
    reg.register("a", "x", 1, lambda _: None)
    assert "a" in reg
    assert reg.unregister("a") is True
    assert reg.unregister("a") is False
    assert len(reg) == 0
