from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from components.entity_loader import Entity

from .config import Config
from .errors import ErrorKind, RecoveryAction, RecoveryPlanner
from .session import SessionOps
from .utils import iso_now, normalize_color

logger = logging.getLogger(__name__)

# Reads the swatch color from the inline style only.
READ_COLOR_JS = r"""
(selector) => {
  const el = document.querySelector(selector);
  if (!el) return null;
  const style = el.getAttribute('style') || '';
  const m = style.match(/background(?:-color)?\s*:\s*(#[0-9a-fA-F]+|rgba?\([^)]*\))/i);
  if (m) return m[1];
  return el.style.backgroundColor || null;
}
"""


class ColorNotFound(LookupError):
    pass


@dataclass(frozen=True, slots=True)
class ExtractionResult:
    entity: Entity
    error_kind: Optional[ErrorKind] = None
    action: Optional[RecoveryAction] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error_kind is None

    @property
    def needs_new_session(self) -> bool:
        return self.action is RecoveryAction.RECREATE_RESOURCE


class ColorExtractor:
    """
    Searches one color code on the target site and reads its swatch.
    Never raises: on failure the original entity comes back unchanged.
    """

    def __init__(
        self,
        cfg: Config,
        *,
        planner: Optional[RecoveryPlanner] = None,
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> None:
        self.cfg = cfg
        self.planner = planner or RecoveryPlanner(
            base_delay_ms=cfg.retry_delay_ms, max_delay_ms=cfg.retry_max_delay_ms,
        )
        self._should_stop = should_stop or (lambda: False)

    def query_for(self, entity: Entity) -> str:
        return f"{self.cfg.query_prefix} {entity.identifier}".strip()

    async def read_color(self, entity: Entity, ops: SessionOps) -> str:
        await ops.navigate(self.cfg.search_url)
        await ops.type_text(self.cfg.search_input_selector, self.query_for(entity))
        await ops.click(self.cfg.search_button_selector)
        await ops.delay(self.cfg.settle_delay_ms)

        raw: Any = await ops.evaluate(READ_COLOR_JS, self.cfg.color_element_selector)
        if not raw:
            raise ColorNotFound(f"failed to find element {self.cfg.color_element_selector} for {entity.identifier}")
        value = normalize_color(str(raw))
        if value is None:
            raise ValueError(f"invalid color value {raw!r} for {entity.identifier}")
        return value

    async def extract_detailed(self, entity: Entity, ops: SessionOps, *, retry: bool = True) -> ExtractionResult:
        while True:
            try:
                value = await self.read_color(entity, ops)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                plan = self.planner.plan(e, {
                    "location": entity.identifier,
                    "operation": getattr(e, "operation", "extract"),
                    "skip_on_missing": True,
                })
                if retry and plan.should_retry and not self._should_stop():
                    logger.info(
                        "[extract] %s: %s -> %s in %.1fs",
                        entity.identifier, plan.error_kind.value, plan.recovery_action.value, plan.retry_delay,
                    )
                    if plan.retry_delay:
                        await asyncio.sleep(plan.retry_delay)
                    continue
                logger.warning(
                    "[extract] %s failed kind=%s action=%s: %s",
                    entity.identifier, plan.error_kind.value, plan.recovery_action.value, e,
                )
                return ExtractionResult(entity, plan.error_kind, plan.recovery_action, str(e))

            self.planner.mark_recovered(entity.identifier)
            logger.info("[extract] %s -> %s", entity.identifier, value)
            return ExtractionResult(entity.with_value(value, stamp=iso_now()))

    async def extract(self, entity: Entity, ops: SessionOps, *, retry: bool = True) -> Entity:
        return (await self.extract_detailed(entity, ops, retry=retry)).entity
