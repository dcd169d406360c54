import pytest

import enricher.browser as browser_mod
from enricher.browser import BrowserSession, launch_session


class StubPage:
    def __init__(self):
        self.closed = False

    def is_closed(self):
        return self.closed

    async def close(self):
        self.closed = True


class StubContext:
    def __init__(self):
        self.closed = False
        self._routes = []
        self._default_timeout = None
        self._default_navigation_timeout = None
        self._new_page_raises = None
        self.kwargs = None

    async def route(self, pattern, handler):
        self._routes.append((pattern, handler))

    def set_default_timeout(self, ms):
        self._default_timeout = ms

    def set_default_navigation_timeout(self, ms):
        self._default_navigation_timeout = ms

    async def new_page(self):
        if self._new_page_raises:
            raise self._new_page_raises
        return StubPage()

    async def close(self):
        self.closed = True


class StubBrowser:
    def __init__(self, context):
        self.context = context
        self.closed = False
        self.connected = True

    def is_connected(self):
        return self.connected

    async def new_context(self, **kwargs):
        self.context.kwargs = kwargs
        return self.context

    async def close(self):
        self.closed = True


class StubChromium:
    def __init__(self, browser):
        self.browser = browser
        self._launch_kwargs = None

    async def launch(self, **kwargs):
        self._launch_kwargs = kwargs
        return self.browser


class StubPlaywright:
    def __init__(self, chromium):
        self.chromium = chromium
        self.stopped = False

    async def stop(self):
        self.stopped = True


class AsyncPlaywrightFactory:
    def __init__(self, pw):
        self._pw = pw

    async def start(self):
        return self._pw


class StubRequest:
    def __init__(self, resource_type):
        self.resource_type = resource_type


class StubRoute:
    def __init__(self):
        self.outcome = None

    async def abort(self):
        self.outcome = "abort"

    async def continue_(self):
        self.outcome = "continue"


def _stubs(monkeypatch):
    context = StubContext()
    browser = StubBrowser(context=context)
    chromium = StubChromium(browser=browser)
    pw = StubPlaywright(chromium=chromium)
    monkeypatch.setattr(browser_mod, "async_playwright", lambda: AsyncPlaywrightFactory(pw))
    return pw, chromium, browser, context


@pytest.mark.asyncio
async def test_launch_session_configures_browser(monkeypatch, make_cfg):
    cfg = make_cfg(headless=True, browser_args_extra=("--lang=en-US",), element_timeout_ms=1234, nav_timeout_ms=5678)
    pw, chromium, browser, context = _stubs(monkeypatch)

    session = await launch_session(cfg)

    assert isinstance(session, BrowserSession)
    assert session.id.startswith("s")
    assert session.browser is browser and session.context is context
    assert chromium._launch_kwargs["headless"] is True
    assert "--lang=en-US" in chromium._launch_kwargs["args"]
    assert "--disable-dev-shm-usage" in chromium._launch_kwargs["args"]
    assert context.kwargs["user_agent"] == cfg.user_agent

    # default timeouts applied
    assert context._default_timeout == 1234
    assert context._default_navigation_timeout == 5678

    # request blocking installed
    pattern, handler = context._routes[0]
    assert pattern == "**/*"
    img, doc = StubRoute(), StubRoute()
    await handler(img, StubRequest("image"))
    await handler(doc, StubRequest("document"))
    assert img.outcome == "abort"
    assert doc.outcome == "continue"


@pytest.mark.asyncio
async def test_session_close_and_liveness(monkeypatch, make_cfg):
    pw, _, browser, context = _stubs(monkeypatch)
    session = await launch_session(make_cfg())

    assert session.is_alive()
    browser.connected = False
    assert not session.is_alive()

    await session.close()
    assert session.page.closed and context.closed and browser.closed
    assert pw.stopped
    assert not session.is_alive()


@pytest.mark.asyncio
async def test_kill_only_stops_driver(monkeypatch, make_cfg):
    pw, _, browser, _ = _stubs(monkeypatch)
    session = await launch_session(make_cfg())

    await session.kill()

    assert pw.stopped
    assert not browser.closed
    assert not session.is_alive()


@pytest.mark.asyncio
async def test_failed_launch_stops_playwright(monkeypatch, make_cfg):
    pw, _, _, context = _stubs(monkeypatch)
    context._new_page_raises = RuntimeError("boom")

    with pytest.raises(RuntimeError):
        await launch_session(make_cfg())
    assert pw.stopped
