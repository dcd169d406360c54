from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import tempfile
from contextlib import suppress
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

from tenacity import (
    retry,
    retry_if_exception,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
    wait_fixed,
)

logger = logging.getLogger(__name__)


# ========== Env helpers ==========

def getenv_str(name: str, default: str) -> str:
    v = os.getenv(name)
    return v if v is not None and v.strip() else default

def getenv_int(name: str, default: int, min_val: Optional[int] = None, max_val: Optional[int] = None) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        val = int(raw)
    except ValueError:
        return default
    if min_val is not None:
        val = max(min_val, val)
    if max_val is not None:
        val = min(max_val, val)
    return val

def getenv_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


# parse CSV-ish envs into tuples (trim blanks)
def getenv_csv(name: str, default_csv: str) -> Tuple[str, ...]:
    raw = getenv_str(name, default_csv)
    parts = [x.strip() for x in raw.split(",")]
    return tuple(p for p in parts if p)


# ========== Time helpers ==========

def utc_now() -> datetime:
    return datetime.now(timezone.utc)

def iso_now() -> str:
    return utc_now().isoformat().replace("+00:00", "Z")

def file_timestamp() -> str:
    """Filesystem-safe timestamp, millisecond resolution (e.g. 2024-05-01T10-22-03-123Z)."""
    now = utc_now()
    return now.strftime("%Y-%m-%dT%H-%M-%S-") + f"{now.microsecond // 1000:03d}Z"

def parse_iso(s: Optional[str]) -> Optional[datetime]:
    if not s:
        return None
    try:
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


# ========== Retry helpers (tenacity) ==========

def _log_before_sleep(label: str):
    def _hook(retry_state) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "[retry] %s attempt %d failed: %s",
            label, retry_state.attempt_number, exc,
        )
    return _hook

def retry_async(
    max_attempts: int,
    initial_delay_ms: int,
    max_delay_ms: int,
    jitter_ms: int,
    *,
    retry_on: Tuple[Type[BaseException], ...] = (IOError, TimeoutError),
    label: str = "op",
):
    def _decorator(fn: Callable[..., Awaitable]):
        @retry(
            reraise=True,
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential_jitter(
                initial=initial_delay_ms / 1000.0,
                max=max_delay_ms / 1000.0,
                jitter=jitter_ms / 1000.0,
            ),
            retry=retry_if_exception_type(retry_on),
            before_sleep=_log_before_sleep(label),
        )
        async def wrapper(*args, **kwargs):
            return await fn(*args, **kwargs)
        return wrapper
    return _decorator

def retry_fixed_async(
    max_attempts: int,
    delay_ms: int,
    *,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    retry_when: Optional[Callable[[BaseException], bool]] = None,
    label: str = "op",
):
    """Fixed-delay variant used by the session façade and session bring-up."""
    predicate = retry_if_exception_type(retry_on)
    if retry_when is not None:
        predicate = predicate & retry_if_exception(retry_when)

    def _decorator(fn: Callable[..., Awaitable]):
        @retry(
            reraise=True,
            stop=stop_after_attempt(max(1, max_attempts)),
            wait=wait_fixed(delay_ms / 1000.0),
            retry=predicate,
            before_sleep=_log_before_sleep(label),
        )
        async def wrapper(*args, **kwargs):
            return await fn(*args, **kwargs)
        return wrapper
    return _decorator


# ========== File helpers ==========

def atomic_write_text(path: Path, data: str, encoding: str = "utf-8") -> None:
    """
    Write text atomically using a NamedTemporaryFile and os.replace on the same filesystem.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile("w", encoding=encoding, dir=str(path.parent), delete=False) as tmp:
        tmp.write(data)
        tmp.flush()
        os.fsync(tmp.fileno())
        tmp_name = tmp.name
    os.replace(tmp_name, path)

def atomic_write_json(path: Path, obj: Any) -> None:
    atomic_write_text(path, json.dumps(obj, indent=2, ensure_ascii=False) + "\n")

def read_json(path: Path) -> Any:
    return json.loads(path.read_text(encoding="utf-8"))

def prune_files(directory: Path, pattern: str, keep: int) -> list[Path]:
    """
    Delete the oldest files matching pattern, keeping the newest `keep`.
    Names embed sortable timestamps, so lexical order is chronological.
    """
    if not directory.exists():
        return []
    files = sorted(p for p in directory.glob(pattern) if p.is_file())
    doomed = files[:-keep] if keep > 0 else files
    removed: list[Path] = []
    for p in doomed:
        try:
            p.unlink()
            removed.append(p)
        except OSError as e:
            logger.warning("[prune] could not delete %s: %s", p, e)
    return removed


# ========== Color helpers ==========

HEX_RE = re.compile(r"^#[0-9A-F]{6}$")
_RGB_RE = re.compile(
    r"rgba?\(\s*(\d{1,3})\s*,\s*(\d{1,3})\s*,\s*(\d{1,3})\s*(?:,\s*(\d*\.?\d+)%?\s*)?\)",
    re.IGNORECASE,
)
_HEX6_RE = re.compile(r"#?([0-9a-fA-F]{6})")
_HEX3_RE = re.compile(r"#([0-9a-fA-F]{3})")

def is_valid_hex(value: Optional[str]) -> bool:
    return bool(value) and HEX_RE.match(value) is not None

def normalize_color(raw: Optional[str]) -> Optional[str]:
    """
    Convert 'rgb(r, g, b)', an opaque 'rgba(...)' or a hex literal into
    uppercase '#RRGGBB'. The whole value must match; a fully transparent
    rgba() has no color. Returns None when the value cannot be normalized.
    """
    if not raw:
        return None
    text = raw.strip()
    m = _RGB_RE.fullmatch(text)
    if m:
        r, g, b, alpha = m.groups()
        parts = [int(x) for x in (r, g, b)]
        if any(p > 255 for p in parts):
            return None
        if alpha is not None and float(alpha) == 0:
            return None
        out = "#" + "".join(f"{p:02X}" for p in parts)
    else:
        m = _HEX6_RE.fullmatch(text) or _HEX3_RE.fullmatch(text)
        if not m:
            return None
        digits = m.group(1)
        if len(digits) == 3:
            digits = "".join(c * 2 for c in digits)
        out = "#" + digits.upper()
    return out if is_valid_hex(out) else None


# ========== Async helpers ==========

async def await_cancelled(task: Optional[asyncio.Task], *, timeout: float = 1.0) -> None:
    if task is None or task.done():
        return
    task.cancel()
    with suppress(asyncio.CancelledError, asyncio.TimeoutError, Exception):
        await asyncio.wait_for(task, timeout=timeout)
