from __future__ import annotations

import json
import logging
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from playwright.async_api import Error as PWError, TimeoutError as PWTimeoutError

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    NETWORK = "network"
    TIMEOUT = "timeout"
    SESSION_CRASH = "session_crash"
    PAGE_CRASH = "page_crash"
    ELEMENT_NOT_FOUND = "element_not_found"
    DATA_PARSE = "data_parse"
    DATA_VALIDATION = "data_validation"
    FILE_NOT_FOUND = "file_not_found"
    FILE_PERMISSION = "file_permission"
    CONFIG = "config"
    PARAMETER = "parameter"
    UNKNOWN = "unknown"


class RecoveryAction(str, Enum):
    RETRY_IMMEDIATELY = "retry_immediately"
    RETRY_WITH_DELAY = "retry_with_delay"
    RETRY_WITH_BACKOFF = "retry_with_backoff"
    RECREATE_RESOURCE = "recreate_resource"
    SKIP_CURRENT = "skip_current"
    FALLBACK_TO_SAFE_STATE = "fallback_to_safe_state"
    TERMINATE = "terminate"


# ========== Exceptions ==========

class EnrichmentError(Exception):
    """Base class for errors raised by the enrichment pipeline."""


class SessionOperationError(EnrichmentError):
    """A façade primitive exhausted its retries."""

    def __init__(self, message: str, *, kind: ErrorKind, operation: str, attempts: int) -> None:
        super().__init__(message)
        self.kind = kind
        self.operation = operation
        self.attempts = attempts


class PoolInitError(EnrichmentError):
    """The session pool could not bring up any session."""


class PoolClosedError(EnrichmentError):
    """acquire() was called after the pool started shutting down."""


class CheckpointVerificationError(EnrichmentError):
    """Re-reading a freshly written checkpoint did not match what was requested."""


class ConfigError(EnrichmentError):
    pass


# ========== Classifier ==========

# Ordered: first match wins. Lowercased substrings.
_MESSAGE_PATTERNS: tuple[tuple[ErrorKind, tuple[str, ...]], ...] = (
    (ErrorKind.NETWORK, (
        "enotfound", "econnrefused", "econnreset", "etimedout",
        "fetch failed", "network error", "net::err_",
    )),
    (ErrorKind.SESSION_CRASH, (
        "browser has been closed", "browser closed", "target closed",
        "target page, context or browser has been closed",
        "disconnected", "session closed",
        "connection closed while reading from the driver",
    )),
    (ErrorKind.PAGE_CRASH, ("page crashed", "navigated or closed")),
    (ErrorKind.TIMEOUT, ("timeout", "timed out")),
    (ErrorKind.ELEMENT_NOT_FOUND, (
        "failed to find element", "not visible", "cannot find context",
        "no element", "element not found",
    )),
    (ErrorKind.DATA_PARSE, ("unexpected token", "json", "syntaxerror")),
    (ErrorKind.DATA_VALIDATION, ("validation", "invalid")),
    (ErrorKind.FILE_NOT_FOUND, ("enoent", "no such file")),
    (ErrorKind.FILE_PERMISSION, ("eacces", "permission denied")),
    (ErrorKind.CONFIG, ("config",)),
    (ErrorKind.PARAMETER, ("parameter", "argument", "must be")),
)


def classify_error(exc: BaseException, context: Optional[Mapping[str, Any]] = None) -> ErrorKind:
    """
    Best-effort mapping of an exception to an ErrorKind.
    Exception type wins over message text; message text wins over context hints.
    """
    if isinstance(exc, SessionOperationError):
        return exc.kind
    if isinstance(exc, CheckpointVerificationError):
        return ErrorKind.DATA_VALIDATION
    if isinstance(exc, ConfigError):
        return ErrorKind.CONFIG
    if isinstance(exc, json.JSONDecodeError):
        return ErrorKind.DATA_PARSE
    if isinstance(exc, FileNotFoundError):
        return ErrorKind.FILE_NOT_FOUND
    if isinstance(exc, PermissionError):
        return ErrorKind.FILE_PERMISSION
    if isinstance(exc, ConnectionError):
        return ErrorKind.NETWORK
    if isinstance(exc, (PWTimeoutError, TimeoutError)):
        return ErrorKind.TIMEOUT

    text = f"{type(exc).__name__}: {exc}".lower()
    for kind, needles in _MESSAGE_PATTERNS:
        if any(n in text for n in needles):
            return kind

    operation = str((context or {}).get("operation", "")).lower()
    if "parse" in operation:
        return ErrorKind.DATA_PARSE
    if "validat" in operation:
        return ErrorKind.DATA_VALIDATION
    if isinstance(exc, (ValueError, TypeError)):
        return ErrorKind.PARAMETER
    if isinstance(exc, PWError):
        # unrecognized driver errors are usually a dying page
        return ErrorKind.PAGE_CRASH
    return ErrorKind.UNKNOWN


# ========== Recovery planning ==========

@dataclass(frozen=True, slots=True)
class RecoveryPlan:
    error_kind: ErrorKind
    recovery_action: RecoveryAction
    retry_delay: float = 0.0          # seconds
    max_attempts_override: Optional[int] = None

    @property
    def should_retry(self) -> bool:
        return self.recovery_action in (
            RecoveryAction.RETRY_IMMEDIATELY,
            RecoveryAction.RETRY_WITH_DELAY,
            RecoveryAction.RETRY_WITH_BACKOFF,
        )


class RecoveryPlanner:
    """
    Turns a failure into a RecoveryPlan. The choice depends only on the error kind
    and how many times the same (kind, location) pair has already been planned.
    """

    def __init__(self, *, base_delay_ms: int = 5000, max_delay_ms: int = 60000) -> None:
        self.base_delay = base_delay_ms / 1000.0
        self.max_delay = max_delay_ms / 1000.0
        self._attempts: Counter[str] = Counter()
        self.stats: Dict[str, Any] = {
            "total_errors": 0,
            "recovered": 0,
            "terminated": 0,
            "skipped": 0,
            "by_kind": Counter(),
            "by_action": Counter(),
        }

    @staticmethod
    def key(kind: ErrorKind, location: str) -> str:
        return f"{kind.value}:{location}"

    def attempts(self, kind: ErrorKind, location: str) -> int:
        return self._attempts[self.key(kind, location)]

    def delay(self, factor: float = 1.0) -> float:
        return min(self.base_delay * factor, self.max_delay)

    def decide(self, kind: ErrorKind, attempts: int, context: Optional[Mapping[str, Any]] = None) -> RecoveryPlan:
        ctx = context or {}
        A = RecoveryAction
        if kind is ErrorKind.NETWORK:
            if attempts < 3:
                return RecoveryPlan(kind, A.RETRY_WITH_DELAY, self.delay(2), 3)
            return RecoveryPlan(kind, A.TERMINATE)
        if kind is ErrorKind.TIMEOUT:
            if attempts < 2:
                return RecoveryPlan(kind, A.RETRY_WITH_DELAY, self.delay(), 2)
            return RecoveryPlan(kind, A.TERMINATE)
        if kind in (ErrorKind.SESSION_CRASH, ErrorKind.PAGE_CRASH):
            return RecoveryPlan(kind, A.RECREATE_RESOURCE, 0.0, 1)
        if kind is ErrorKind.ELEMENT_NOT_FOUND:
            if attempts < 2:
                return RecoveryPlan(kind, A.RETRY_WITH_DELAY, self.delay(), 2)
            return RecoveryPlan(kind, A.SKIP_CURRENT)
        if kind in (ErrorKind.DATA_PARSE, ErrorKind.DATA_VALIDATION):
            return RecoveryPlan(kind, A.SKIP_CURRENT)
        if kind is ErrorKind.FILE_NOT_FOUND:
            if ctx.get("skip_on_missing"):
                return RecoveryPlan(kind, A.SKIP_CURRENT)
            return RecoveryPlan(kind, A.TERMINATE)
        if kind in (ErrorKind.FILE_PERMISSION, ErrorKind.CONFIG, ErrorKind.PARAMETER):
            return RecoveryPlan(kind, A.TERMINATE)
        # unknown: exactly one immediate retry
        if attempts < 1:
            return RecoveryPlan(kind, A.RETRY_IMMEDIATELY, 0.0, 1)
        return RecoveryPlan(kind, A.TERMINATE)

    def plan(self, exc: BaseException, context: Optional[Mapping[str, Any]] = None) -> RecoveryPlan:
        """Classify, pick an action, and count the attempt against (kind, location)."""
        ctx = dict(context or {})
        kind = classify_error(exc, ctx)
        location = str(ctx.get("location") or ctx.get("operation") or "global")
        k = self.key(kind, location)
        plan = self.decide(kind, self._attempts[k], ctx)
        self._attempts[k] += 1

        self.stats["total_errors"] += 1
        self.stats["by_kind"][kind.value] += 1
        self.stats["by_action"][plan.recovery_action.value] += 1
        if plan.recovery_action is RecoveryAction.TERMINATE:
            self.stats["terminated"] += 1
        elif plan.recovery_action is RecoveryAction.SKIP_CURRENT:
            self.stats["skipped"] += 1

        logger.debug(
            "[recovery] %s at %s (attempt %d) -> %s delay=%.1fs",
            kind.value, location, self._attempts[k], plan.recovery_action.value, plan.retry_delay,
        )
        return plan

    def mark_recovered(self, location: str) -> None:
        """Reset attempt counters for a location after it succeeded."""
        suffix = f":{location}"
        hit = [k for k in self._attempts if k.endswith(suffix)]
        for k in hit:
            del self._attempts[k]
        if hit:
            self.stats["recovered"] += 1

    def summary(self) -> Dict[str, Any]:
        return {
            "total_errors": self.stats["total_errors"],
            "recovered": self.stats["recovered"],
            "terminated": self.stats["terminated"],
            "skipped": self.stats["skipped"],
            "by_kind": dict(self.stats["by_kind"]),
            "by_action": dict(self.stats["by_action"]),
        }
