import dataclasses

import pytest

from enricher.config import load_config


@pytest.fixture
def make_cfg(tmp_path, monkeypatch):
    """Build a Config with zero delays and every path under tmp_path."""
    for k in ("NAV_WAIT_UNTIL", "CONCURRENCY", "BATCH_SIZE", "SAVE_INTERVAL", "POOL_MAX_SESSIONS"):
        monkeypatch.delenv(k, raising=False)

    def _make(**overrides):
        base = dataclasses.replace(
            load_config(),
            session_create_delay_ms=0,
            retry_delay_ms=0,
            nav_retry_delay_ms=0,
            op_retry_delay_ms=0,
            settle_delay_ms=0,
            type_char_delay_ms=0,
            health_check_interval_s=0,
            metrics_interval_s=0,
            data_dir=tmp_path,
            log_file=tmp_path / "logs" / "run.log",
            checkpoint_file=tmp_path / "checkpoint.json",
            colors_file=tmp_path / "colors.json",
            backup_dir=tmp_path / "backups",
            incremental_dir=tmp_path / "backups" / "incremental",
            report_dir=tmp_path / "reports",
        )
        return dataclasses.replace(base, **overrides)

    return _make
