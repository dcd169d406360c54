from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from .errors import ConfigError
from .utils import getenv_bool, getenv_int, getenv_str, getenv_csv

_WAIT_UNTIL = ("load", "domcontentloaded", "networkidle", "commit")

# ---------- Project Paths ----------
PROJECT_ROOT: Path = Path(__file__).resolve().parents[1]
DATA_DIR: Path = PROJECT_ROOT / "data"
LOG_DIR: Path = PROJECT_ROOT / "logs"

# Subfolders & files (paths only; no logging init here)
BACKUP_DIR: Path = DATA_DIR / "backups"
INCREMENTAL_DIR: Path = BACKUP_DIR / "incremental"
REPORT_DIR: Path = DATA_DIR / "reports"
CHECKPOINT_FILE: Path = DATA_DIR / "checkpoint.json"
COLORS_FILE: Path = DATA_DIR / "colors.json"
LOG_FILE: Path = LOG_DIR / "update_hex.log"

# Ensure directories exist at import time (but do NOT create/log to files here)
for p in (DATA_DIR, LOG_DIR, BACKUP_DIR, INCREMENTAL_DIR, REPORT_DIR):
    p.mkdir(parents=True, exist_ok=True)


# ---------- Config dataclass ----------
@dataclass(frozen=True)
class Config:
    # Session pool
    pool_max_sessions: int
    pool_max_usage: int
    pool_acquire_timeout_s: int
    health_check_interval_s: int
    session_create_attempts: int
    session_create_delay_ms: int

    # Batch processing
    batch_size: int
    concurrency: int
    save_interval: int

    # Retry / recovery
    retry_delay_ms: int
    retry_max_delay_ms: int

    # Façade timings
    navigation_wait_until: Literal["load", "domcontentloaded", "networkidle", "commit"]
    nav_timeout_ms: int
    nav_attempts: int
    nav_retry_delay_ms: int
    op_attempts: int
    op_retry_delay_ms: int
    type_char_delay_ms: int
    element_timeout_ms: int
    condition_timeout_ms: int
    condition_attempts: int
    settle_delay_ms: int

    # Target site contract
    search_url: str
    search_input_selector: str
    search_button_selector: str
    color_element_selector: str
    query_prefix: str

    # Browser
    user_agent: str
    headless: bool
    browser_args_extra: tuple[str, ...]

    # Backups / cleanup
    backup_retention: int
    incremental_retention: int
    cleanup_timeout_ms: int
    shutdown_grace_s: int
    stale_after_days: int

    # Observability
    log_level: str
    metrics_interval_s: int

    # Paths
    project_root: Path
    data_dir: Path
    log_file: Path
    checkpoint_file: Path
    colors_file: Path
    backup_dir: Path
    incremental_dir: Path
    report_dir: Path


# ---------- Loader ----------
def load_config() -> Config:

    cfg = Config(
        # Pool sizing: each session is a full Chromium, keep it small.
        pool_max_sessions=getenv_int("POOL_MAX_SESSIONS", 3, 1, 16),
        pool_max_usage=getenv_int("POOL_MAX_USAGE", 10, 1, 1000),
        pool_acquire_timeout_s=getenv_int("POOL_ACQUIRE_TIMEOUT_S", 300, 5, 3600),
        health_check_interval_s=getenv_int("HEALTH_CHECK_INTERVAL_S", 60, 5, 3600),
        session_create_attempts=getenv_int("SESSION_CREATE_ATTEMPTS", 3, 1, 10),
        session_create_delay_ms=getenv_int("SESSION_CREATE_DELAY_MS", 5000, 0, 60000),

        batch_size=getenv_int("BATCH_SIZE", 10, 1, 500),
        concurrency=getenv_int("CONCURRENCY", 3, 1, 16),
        save_interval=getenv_int("SAVE_INTERVAL", 5, 1, 1000),

        retry_delay_ms=getenv_int("RETRY_DELAY_MS", 5000, 0, 60000),
        retry_max_delay_ms=getenv_int("RETRY_MAX_DELAY_MS", 60000, 1000, 600000),

        navigation_wait_until=getenv_str("NAV_WAIT_UNTIL", "networkidle"),
        nav_timeout_ms=getenv_int("NAV_TIMEOUT_MS", 30000, 1000, 180000),
        nav_attempts=getenv_int("NAV_ATTEMPTS", 3, 1, 10),
        nav_retry_delay_ms=getenv_int("NAV_RETRY_DELAY_MS", 3000, 0, 60000),
        op_attempts=getenv_int("OP_ATTEMPTS", 3, 1, 10),
        op_retry_delay_ms=getenv_int("OP_RETRY_DELAY_MS", 1000, 0, 60000),
        type_char_delay_ms=getenv_int("TYPE_CHAR_DELAY_MS", 100, 0, 2000),
        element_timeout_ms=getenv_int("ELEMENT_TIMEOUT_MS", 20000, 500, 120000),
        condition_timeout_ms=getenv_int("CONDITION_TIMEOUT_MS", 60000, 500, 300000),
        condition_attempts=getenv_int("CONDITION_ATTEMPTS", 2, 1, 10),
        settle_delay_ms=getenv_int("SETTLE_DELAY_MS", 2000, 0, 30000),

        search_url=getenv_str("SEARCH_URL", "https://www.qtccolor.com/secaiku/"),
        search_input_selector=getenv_str("SEARCH_INPUT_SELECTOR", "input[name='keyword']"),
        search_button_selector=getenv_str("SEARCH_BUTTON_SELECTOR", "button[type='submit']"),
        color_element_selector=getenv_str("COLOR_ELEMENT_SELECTOR", 'img[style*="background"]'),
        query_prefix=getenv_str("QUERY_PREFIX", "PANTONE"),

        user_agent=getenv_str(
            "USER_AGENT",
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
            "AppleWebKit/537.36 (KHTML, like Gecko) "
            "Chrome/120.0.0.0 Safari/537.36"
        ),
        headless=getenv_bool("HEADLESS", True),
        browser_args_extra=getenv_csv("BROWSER_ARGS_EXTRA", ""),

        backup_retention=getenv_int("BACKUP_RETENTION", 10, 1, 1000),
        incremental_retention=getenv_int("INCREMENTAL_RETENTION", 150, 1, 10000),
        cleanup_timeout_ms=getenv_int("CLEANUP_TIMEOUT_MS", 5000, 100, 120000),
        shutdown_grace_s=getenv_int("SHUTDOWN_GRACE_S", 10, 0, 600),
        stale_after_days=getenv_int("STALE_AFTER_DAYS", 30, 1, 3650),

        log_level=getenv_str("LOG_LEVEL", "INFO").upper(),
        metrics_interval_s=getenv_int("METRICS_INTERVAL_S", 60, 5, 3600),

        project_root=PROJECT_ROOT,
        data_dir=DATA_DIR,
        log_file=LOG_FILE,
        checkpoint_file=CHECKPOINT_FILE,
        colors_file=COLORS_FILE,
        backup_dir=BACKUP_DIR,
        incremental_dir=INCREMENTAL_DIR,
        report_dir=REPORT_DIR,
    )
    if cfg.navigation_wait_until not in _WAIT_UNTIL:
        raise ConfigError(
            f"NAV_WAIT_UNTIL must be one of {', '.join(_WAIT_UNTIL)}, got {cfg.navigation_wait_until!r}"
        )
    return cfg
