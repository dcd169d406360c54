import pytest

from enricher.errors import ErrorKind, SessionOperationError
from enricher.session import SessionOps

from stubs import StubPage


@pytest.mark.asyncio
async def test_navigate_uses_configured_wait_until(make_cfg):
    cfg = make_cfg(navigation_wait_until="domcontentloaded")
    page = StubPage()
    await SessionOps(page, cfg).navigate("https://example.test/search")

    assert page.calls[0] == ("goto", "https://example.test/search", "domcontentloaded")
    assert page.calls[1] == ("wait_for_selector", "body")


@pytest.mark.asyncio
async def test_navigate_retries_transient_errors(make_cfg):
    cfg = make_cfg(nav_attempts=3)
    page = StubPage(goto_errors=[
        RuntimeError("net::ERR_CONNECTION_RESET"),
        RuntimeError("net::ERR_CONNECTION_RESET"),
    ])
    await SessionOps(page, cfg).navigate("https://example.test/")
    assert sum(1 for c in page.calls if c[0] == "goto") == 3


@pytest.mark.asyncio
async def test_navigate_gives_up_with_classified_error(make_cfg):
    cfg = make_cfg(nav_attempts=2)
    page = StubPage(goto_errors=[RuntimeError("net::ERR_NAME_NOT_RESOLVED")] * 5)

    with pytest.raises(SessionOperationError) as ei:
        await SessionOps(page, cfg).navigate("https://example.test/")

    assert ei.value.kind is ErrorKind.NETWORK
    assert ei.value.operation == "navigate"
    assert ei.value.attempts == 2


@pytest.mark.asyncio
async def test_closed_browser_is_not_retried(make_cfg):
    cfg = make_cfg(nav_attempts=3)
    page = StubPage(goto_errors=[RuntimeError("Target page, context or browser has been closed")] * 3)

    with pytest.raises(SessionOperationError) as ei:
        await SessionOps(page, cfg).navigate("https://example.test/")

    assert ei.value.kind is ErrorKind.SESSION_CRASH
    assert ei.value.attempts == 1


@pytest.mark.asyncio
async def test_type_text_clears_then_types(make_cfg):
    page = StubPage()
    await SessionOps(page, make_cfg()).type_text("input[name='keyword']", "PANTONE 19-4052 TCX")

    assert [c[0] for c in page.calls] == ["wait_for", "fill", "dispatch_event", "type"]
    assert page.calls[1][2] == ""
    assert page.typed == "PANTONE 19-4052 TCX"


@pytest.mark.asyncio
async def test_click_on_disabled_element_fails_after_retries(make_cfg):
    cfg = make_cfg(op_attempts=3)
    page = StubPage()
    page.disabled.add("button[type='submit']")

    with pytest.raises(SessionOperationError) as ei:
        await SessionOps(page, cfg).click("button[type='submit']")

    assert ei.value.kind is ErrorKind.ELEMENT_NOT_FOUND
    assert ei.value.attempts == 3
    assert not any(c[0] == "click" for c in page.calls)


@pytest.mark.asyncio
async def test_wait_for_element_timeout_is_classified(make_cfg):
    cfg = make_cfg(op_attempts=1)
    page = StubPage()
    page.missing.add("img.swatch")

    with pytest.raises(SessionOperationError) as ei:
        await SessionOps(page, cfg).wait_for_element("img.swatch", timeout_ms=10)
    assert ei.value.kind is ErrorKind.TIMEOUT


@pytest.mark.asyncio
async def test_evaluate_and_condition(make_cfg):
    page = StubPage(color="rgb(1, 2, 3)")
    ops = SessionOps(page, make_cfg())

    assert await ops.evaluate("(s) => s", "img") == "rgb(1, 2, 3)"
    assert page.calls[-1] == ("evaluate", "img")
    assert await ops.wait_for_condition("() => true") is True
