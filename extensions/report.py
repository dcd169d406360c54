from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path

from enricher.utils import atomic_write_text

from .checkpoint import RunStatistics

logger = logging.getLogger(__name__)

REPORT_NAME = "pantone_update_report.md"
PARTIAL_REPORT_NAME = "pantone_update_report_partial.md"


def render_report(stats: RunStatistics, *, partial: bool = False, generated_at: datetime | None = None) -> str:
    when = (generated_at or datetime.now()).strftime("%Y-%m-%d %H:%M:%S")
    attempted = stats.updated + stats.failed
    success = f"{100.0 * stats.updated / attempted:.2f}%" if attempted else "n/a"
    progress = f"{100.0 * attempted / stats.total:.2f}%" if stats.total else "n/a"
    failed = "\n".join(f"- {code}" for code in stats.failed_identifiers) or "_none_"

    title = "# PANTONE color update report" + (" (in progress)" if partial else "")
    return (
        f"{title}\n"
        f"Generated: {when}\n\n"
        "## Statistics\n"
        f"- Total colors: {stats.total}\n"
        f"- Updated: {stats.updated}\n"
        f"- Failed: {stats.failed}\n"
        f"- Skipped: {stats.skipped}\n"
        f"- Success rate: {success}\n"
        f"- Overall progress: {progress}\n\n"
        "## Codes still failing\n"
        f"{failed}\n"
    )


def write_report(report_dir: Path, stats: RunStatistics, *, partial: bool = False) -> Path:
    path = Path(report_dir) / (PARTIAL_REPORT_NAME if partial else REPORT_NAME)
    atomic_write_text(path, render_report(stats, partial=partial))
    logger.info("Report written to %s", path)
    return path
