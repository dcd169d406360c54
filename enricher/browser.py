from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Optional

from playwright.async_api import async_playwright, Browser, BrowserContext, Playwright, Page

from .config import Config

logger = logging.getLogger(__name__)

_SESSION_IDS = itertools.count(1)


def _browser_args(cfg: Config) -> list[str]:
    args: list[str] = [
        "--disable-dev-shm-usage",
        "--no-sandbox",
        # keep renderer light
        "--disable-extensions",
        "--disable-background-networking",
        "--disable-sync",
        "--metrics-recording-only",
        "--mute-audio",
        "--no-default-browser-check",
        "--no-first-run",
        "--disable-default-apps",
        "--disable-features=TranslateUI",
        "--disable-gpu",
    ]
    for a in cfg.browser_args_extra or ():
        if isinstance(a, str) and a.strip():
            args.append(a.strip())
    return args


async def _install_request_blocking(context: BrowserContext) -> None:
    # color swatches are read from inline styles, so image bytes are never needed
    async def route_handler(route, request):
        if request.resource_type in {"image", "media", "font"}:
            return await route.abort()
        return await route.continue_()
    await context.route("**/*", route_handler)


class BrowserSession:
    """One Playwright driver + Chromium + context + page. The unit the pool lends out."""

    def __init__(self, session_id: str, pw: Playwright, browser: Browser, context: BrowserContext, page: Page) -> None:
        self.id = session_id
        self.pw = pw
        self.browser = browser
        self.context = context
        self.page = page
        self._closed = False

    def is_alive(self) -> bool:
        if self._closed:
            return False
        try:
            return self.browser.is_connected() and not self.page.is_closed()
        except Exception:
            return False

    async def close(self, timeout_s: float = 10.0) -> None:
        """Graceful teardown: page, context, browser, driver."""
        if self._closed:
            return
        self._closed = True
        for label, closer in (
            ("page", self.page.close),
            ("context", self.context.close),
            ("browser", self.browser.close),
        ):
            try:
                await asyncio.wait_for(closer(), timeout=timeout_s)
            except Exception as e:
                logger.warning("[session %s] error while closing %s: %s", self.id, label, e)
        try:
            await self.pw.stop()
        except Exception as e:
            logger.warning("[session %s] error while stopping Playwright: %s", self.id, e)

    async def kill(self) -> None:
        """Skip graceful close; stopping the driver takes its browser processes down with it."""
        self._closed = True
        try:
            await asyncio.wait_for(self.pw.stop(), timeout=5.0)
        except Exception as e:
            logger.warning("[session %s] force stop failed: %s", self.id, e)


async def launch_session(cfg: Config) -> BrowserSession:
    pw = await async_playwright().start()
    try:
        browser = await pw.chromium.launch(headless=cfg.headless, args=_browser_args(cfg))
        context = await browser.new_context(
            user_agent=cfg.user_agent,
            viewport={"width": 1366, "height": 900},
            java_script_enabled=True,
            extra_http_headers={"Accept-Language": "zh-CN,zh;q=0.9,en;q=0.8"},
        )
        context.set_default_timeout(cfg.element_timeout_ms)
        context.set_default_navigation_timeout(cfg.nav_timeout_ms)
        await _install_request_blocking(context)
        page = await context.new_page()
    except Exception:
        await _safe_stop(pw)
        raise

    session = BrowserSession(f"s{next(_SESSION_IDS)}", pw, browser, context, page)
    logger.info("[session %s] browser launched headless=%s", session.id, cfg.headless)
    return session


async def _safe_stop(pw: Optional[Playwright]) -> None:
    if pw is None:
        return
    try:
        await pw.stop()
    except Exception as e:
        logger.warning("Error while stopping Playwright after failed launch: %s", e)
