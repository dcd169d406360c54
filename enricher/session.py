from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from .config import Config
from .errors import ErrorKind, SessionOperationError, classify_error
from .utils import retry_fixed_async

logger = logging.getLogger(__name__)

# a closed browser will not come back by retrying on the same page
_NO_RETRY_KINDS = frozenset({ErrorKind.SESSION_CRASH})


def _retryable(exc: BaseException) -> bool:
    return classify_error(exc) not in _NO_RETRY_KINDS


class ElementNotReady(Exception):
    """Element is attached and visible but not yet enabled."""


class SessionOps:
    """
    Retried primitives over one borrowed Playwright page.
    Every primitive raises SessionOperationError (with an ErrorKind) once retries run out.
    """

    def __init__(self, page: Any, cfg: Config, *, label: str = "") -> None:
        self.page = page
        self.cfg = cfg
        self.label = label or "session"

    async def _run(
        self,
        operation: str,
        fn: Callable[[], Awaitable[Any]],
        *,
        attempts: Optional[int] = None,
        delay_ms: Optional[int] = None,
    ) -> Any:
        max_attempts = attempts if attempts is not None else self.cfg.op_attempts
        wait_ms = delay_ms if delay_ms is not None else self.cfg.op_retry_delay_ms
        counter = {"n": 0}

        @retry_fixed_async(max_attempts, wait_ms, retry_when=_retryable, label=f"{self.label}:{operation}")
        async def _attempt():
            counter["n"] += 1
            logger.debug("[%s] %s attempt %d/%d", self.label, operation, counter["n"], max_attempts)
            return await fn()

        try:
            return await _attempt()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            kind = classify_error(e, {"operation": operation})
            logger.warning(
                "[%s] %s failed after %d attempt(s) kind=%s: %s",
                self.label, operation, counter["n"], kind.value, e,
            )
            raise SessionOperationError(
                f"{operation} failed: {e}", kind=kind, operation=operation, attempts=counter["n"],
            ) from e

    # ---------------- Primitives ----------------

    async def navigate(self, url: str) -> None:
        async def _go():
            await self.page.goto(
                url,
                wait_until=self.cfg.navigation_wait_until,
                timeout=self.cfg.nav_timeout_ms,
            )
            await self.page.wait_for_selector("body", timeout=10_000)

        await self._run(
            "navigate", _go,
            attempts=self.cfg.nav_attempts, delay_ms=self.cfg.nav_retry_delay_ms,
        )

    async def type_text(self, selector: str, text: str) -> None:
        async def _type():
            loc = self.page.locator(selector).first
            await loc.wait_for(state="visible", timeout=self.cfg.element_timeout_ms)
            await loc.fill("")
            await loc.dispatch_event("input")
            await loc.press_sequentially(text, delay=self.cfg.type_char_delay_ms)

        await self._run("type_text", _type)

    async def click(self, selector: str) -> None:
        async def _click():
            loc = self.page.locator(selector).first
            await loc.wait_for(state="visible", timeout=self.cfg.element_timeout_ms)
            if not await loc.is_enabled():
                raise ElementNotReady(f"element {selector!r} not visible or not enabled")
            await loc.click()

        await self._run("click", _click)

    async def wait_for_element(self, selector: str, timeout_ms: Optional[int] = None) -> Any:
        async def _wait():
            return await self.page.wait_for_selector(
                selector, state="visible", timeout=timeout_ms or self.cfg.element_timeout_ms,
            )

        return await self._run("wait_for_element", _wait)

    async def wait_for_condition(self, predicate_js: str, arg: Any = None, timeout_ms: Optional[int] = None) -> Any:
        async def _wait():
            return await self.page.wait_for_function(
                predicate_js, arg=arg, timeout=timeout_ms or self.cfg.condition_timeout_ms,
            )

        return await self._run(
            "wait_for_condition", _wait,
            attempts=self.cfg.condition_attempts, delay_ms=self.cfg.retry_delay_ms,
        )

    async def evaluate(self, fn_js: str, *args: Any) -> Any:
        if not args:
            call = lambda: self.page.evaluate(fn_js)
        elif len(args) == 1:
            call = lambda: self.page.evaluate(fn_js, args[0])
        else:
            call = lambda: self.page.evaluate(fn_js, list(args))
        return await self._run("evaluate", call)

    async def delay(self, ms: int) -> None:
        await asyncio.sleep(max(0, ms) / 1000.0)
