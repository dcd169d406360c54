from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from enricher.utils import atomic_write_json, file_timestamp, iso_now, prune_files, read_json

logger = logging.getLogger(__name__)

_VERSION_RE = re.compile(r"^v(\d+)\.(\d+)\.(\d+)$")
STAT_FIELDS = ("updated", "failed", "skipped", "total")


def unique_path(directory: Path, stem: str, suffix: str = ".json") -> Path:
    """directory/stem.json, or stem_001.json, stem_002.json ... if taken."""
    p = directory / f"{stem}{suffix}"
    n = 1
    while p.exists():
        p = directory / f"{stem}_{n:03d}{suffix}"
        n += 1
    return p


@dataclass(frozen=True, slots=True)
class BackupEntry:
    path: Path
    version: str
    timestamp: str


# ---------------------------------------------------------------------------
#  Diff helpers
# ---------------------------------------------------------------------------

def _same_color(a: Mapping[str, Any], b: Mapping[str, Any]) -> bool:
    return a.get("hex") == b.get("hex") and a.get("name") == b.get("name") and a.get("code") == b.get("code")


def color_differences(current: List[Mapping[str, Any]], previous: List[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    prev_by_code = {c.get("code"): c for c in previous}
    out: List[Dict[str, Any]] = []
    for color in current:
        before = prev_by_code.get(color.get("code"))
        if before is None:
            out.append({"operation": "add", "color": dict(color)})
        elif not _same_color(color, before):
            out.append({"operation": "update", "color": dict(color), "previous": dict(before)})
    return out


def stats_differences(current: Mapping[str, Any], previous: Mapping[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for name in STAT_FIELDS:
        cur, prev = current.get(name, 0), previous.get(name, 0)
        if cur != prev:
            out[name] = {"current": cur, "previous": prev, "delta": cur - prev}
    cur_failed = list(current.get("failedCodes") or [])
    prev_failed = list(previous.get("failedCodes") or [])
    added = [c for c in cur_failed if c not in prev_failed]
    removed = [c for c in prev_failed if c not in cur_failed]
    if added or removed:
        out["failedCodes"] = {"added": added, "removed": removed}
    return out


# ---------------------------------------------------------------------------
#  Store
# ---------------------------------------------------------------------------

class IncrementalBackupStore:
    """
    Diff-only snapshots of the checkpoint, one per save, for diagnostics.
    The first snapshot (no previous checkpoint) holds the full payload.
    """

    def __init__(self, directory: Path, *, retention: int = 150) -> None:
        self.directory = Path(directory)
        self.retention = max(1, retention)

    def list_backups(self) -> List[BackupEntry]:
        if not self.directory.exists():
            return []
        entries: List[BackupEntry] = []
        for p in sorted(self.directory.glob("incremental_*.json")):
            try:
                meta = read_json(p).get("backupMetadata") or {}
            except (OSError, ValueError) as e:
                logger.warning("[backup] unreadable incremental %s: %s", p.name, e)
                continue
            entries.append(BackupEntry(p, meta.get("version") or "v1.0.0", meta.get("timestamp") or ""))
        return entries

    def next_version(self) -> str:
        backups = self.list_backups()
        if not backups:
            return "v1.0.0"
        m = _VERSION_RE.match(backups[-1].version)
        if not m:
            return "v1.0.0"
        major, minor, patch = (int(x) for x in m.groups())
        return f"v{major}.{minor}.{patch + 1}"

    def compute(self, current: Mapping[str, Any], previous: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        if not previous:
            return dict(current)
        return {
            "currentIndex": current.get("currentIndex"),
            "updatedColors": color_differences(current.get("updatedColors") or [], previous.get("updatedColors") or []),
            "stats": stats_differences(current.get("stats") or {}, previous.get("stats") or {}),
            "lastUpdated": current.get("lastUpdated"),
        }

    def create(
        self,
        current: Mapping[str, Any],
        previous: Optional[Mapping[str, Any]] = None,
        *,
        version: Optional[str] = None,
    ) -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        body = self.compute(current, previous)
        parent = None
        if previous:
            parent = (previous.get("backupInfo") or previous.get("backupMetadata") or {}).get("version")
        body["backupMetadata"] = {
            "type": "incremental",
            "timestamp": iso_now(),
            "version": version or self.next_version(),
            "parentVersion": parent,
        }
        path = unique_path(self.directory, f"incremental_{file_timestamp()}")
        atomic_write_json(path, body)
        self.prune()
        n_ops = len(body.get("updatedColors") or []) if previous else -1
        logger.info(
            "[backup] incremental %s written version=%s ops=%s",
            path.name, body["backupMetadata"]["version"], "full" if n_ops < 0 else n_ops,
        )
        return path

    def prune(self) -> int:
        removed = prune_files(self.directory, "incremental_*.json", self.retention)
        for p in removed:
            logger.info("[backup] pruned old incremental %s", p.name)
        return len(removed)

    def load(self, version: Optional[str] = None) -> Dict[str, Any]:
        """Read one incremental snapshot (latest when version is None)."""
        backups = self.list_backups()
        if not backups:
            raise FileNotFoundError(f"no incremental backups in {self.directory}")
        if version is None:
            return read_json(backups[-1].path)
        for b in backups:
            if b.version == version:
                return read_json(b.path)
        raise FileNotFoundError(f"no incremental backup with version {version}")
