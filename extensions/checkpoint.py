from __future__ import annotations

import asyncio
import json
import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from components.entity_loader import Entity
from enricher.errors import CheckpointVerificationError
from enricher.utils import (
    atomic_write_json,
    file_timestamp,
    iso_now,
    prune_files,
    read_json,
    retry_async,
)

from .backups import IncrementalBackupStore, unique_path

logger = logging.getLogger(__name__)

EntityLike = Union[Entity, Mapping[str, Any], str]

# ---------------------------------------------------------------------------
#  Checkpoint schema and helpers
# ---------------------------------------------------------------------------

@dataclass
class RunStatistics:
    total: int = 0
    updated: int = 0
    failed: int = 0
    skipped: int = 0
    failed_identifiers: List[str] = field(default_factory=list)
    successful_identifiers: List[str] = field(default_factory=list)
    skipped_identifiers: List[str] = field(default_factory=list)

    def _unskip(self, identifier: str) -> None:
        if identifier in self.skipped_identifiers:
            self.skipped_identifiers.remove(identifier)
            self.skipped = max(0, self.skipped - 1)

    def record_success(self, identifier: str) -> None:
        self._unskip(identifier)
        if identifier in self.failed_identifiers:
            self.failed_identifiers.remove(identifier)
            self.failed = max(0, self.failed - 1)
        if identifier in self.successful_identifiers:
            return
        self.successful_identifiers.append(identifier)
        self.updated += 1

    def record_failure(self, identifier: str) -> None:
        self._unskip(identifier)
        if identifier in self.failed_identifiers:
            return
        if identifier in self.successful_identifiers:
            self.successful_identifiers.remove(identifier)
            self.updated = max(0, self.updated - 1)
        self.failed_identifiers.append(identifier)
        self.failed += 1

    def record_skip(self, identifier: str) -> None:
        """Not selected for work this run. A code with an earlier outcome keeps it."""
        if identifier in self.failed_identifiers or identifier in self.successful_identifiers:
            return
        if identifier in self.skipped_identifiers:
            return
        self.skipped_identifiers.append(identifier)
        self.skipped += 1

    @property
    def processed(self) -> int:
        return self.updated + self.failed + self.skipped

    def success_rate(self) -> float:
        attempted = self.updated + self.failed
        return (100.0 * self.updated / attempted) if attempted else 0.0

    def consistency_gap(self) -> int:
        """total - (updated + failed + skipped); non-zero means counters drifted."""
        return self.total - self.processed

    def copy(self) -> "RunStatistics":
        return RunStatistics.from_dict(self.to_dict())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "updated": self.updated,
            "failed": self.failed,
            "skipped": self.skipped,
            "failedCodes": list(self.failed_identifiers),
            "successfulCodes": list(self.successful_identifiers),
            "skippedCodes": list(self.skipped_identifiers),
        }

    @classmethod
    def from_dict(cls, raw: Optional[Mapping[str, Any]]) -> "RunStatistics":
        raw = raw or {}
        failed_ids = list(dict.fromkeys(raw.get("failedCodes") or []))
        ok_ids = [c for c in dict.fromkeys(raw.get("successfulCodes") or []) if c not in failed_ids]
        skipped_ids = [
            c for c in dict.fromkeys(raw.get("skippedCodes") or [])
            if c not in failed_ids and c not in ok_ids
        ]
        return cls(
            total=int(raw.get("total") or 0),
            updated=int(raw.get("updated") or 0),
            failed=int(raw.get("failed") or 0),
            skipped=int(raw.get("skipped") or 0),
            failed_identifiers=failed_ids,
            successful_identifiers=ok_ids,
            skipped_identifiers=skipped_ids,
        )


def dedupe_entities(items: Iterable[EntityLike]) -> Dict[str, Entity]:
    """Last write wins; an identifier keeps the position of its first appearance."""
    out: Dict[str, Entity] = {}
    for item in items:
        ent = item if isinstance(item, Entity) else Entity.from_record(item)
        out[ent.identifier] = ent
    return out


@dataclass
class Checkpoint:
    cursor: int = 0
    result_set: Dict[str, Entity] = field(default_factory=dict)
    statistics: RunStatistics = field(default_factory=RunStatistics)
    last_updated: Optional[str] = None
    backup_info: Optional[Dict[str, Any]] = None

    @property
    def is_fresh(self) -> bool:
        return not self.result_set and self.cursor == 0

    def entities(self) -> List[Entity]:
        return list(self.result_set.values())

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "currentIndex": self.cursor,
            "updatedColors": [e.to_record() for e in self.result_set.values()],
            "stats": self.statistics.to_dict(),
            "lastUpdated": self.last_updated or iso_now(),
            "totalProcessed": len(self.result_set),
        }
        if self.backup_info:
            payload["backupInfo"] = dict(self.backup_info)
        return payload

    @classmethod
    def from_payload(cls, raw: Mapping[str, Any]) -> "Checkpoint":
        entries = raw.get("updatedColors") or []
        result_set: Dict[str, Entity] = {}
        for i, item in enumerate(entries):
            try:
                ent = Entity.from_record(item)
            except (ValueError, json.JSONDecodeError) as e:
                logger.warning("[checkpoint] dropping unreadable entry #%d: %s", i, e)
                continue
            result_set[ent.identifier] = ent
        return cls(
            cursor=max(0, int(raw.get("currentIndex") or 0)),
            result_set=result_set,
            statistics=RunStatistics.from_dict(raw.get("stats")),
            last_updated=raw.get("lastUpdated"),
            backup_info=raw.get("backupInfo"),
        )


# ---------------------------------------------------------------------------
#  Store
# ---------------------------------------------------------------------------

class CheckpointStore:
    """
    Canonical run state at `path`, plus timestamped full backups and incremental
    diffs under `backup_dir`. Only one save runs at a time.
    """

    def __init__(
        self,
        path: Path,
        *,
        backup_dir: Path,
        incremental: Optional[IncrementalBackupStore] = None,
        backup_retention: int = 10,
    ) -> None:
        self.path = Path(path)
        self.backup_dir = Path(backup_dir)
        self.incremental = incremental
        self.backup_retention = max(1, backup_retention)
        self._lock = asyncio.Lock()
        self.last_saved: Optional[Checkpoint] = None

    # ---------------------- Load ----------------------

    def _read_payload(self) -> Optional[Dict[str, Any]]:
        if not self.path.exists():
            return None
        text = self.path.read_text(encoding="utf-8")
        if not text.strip():
            return None
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError("checkpoint root is not an object")
        return data

    async def load(self) -> Checkpoint:
        """Load the checkpoint, or a fresh one when missing, empty or unreadable."""
        async with self._lock:
            try:
                data = self._read_payload()
            except (OSError, ValueError) as e:
                logger.warning(f"[checkpoint] Failed to load {self.path.name}: {e}; starting fresh")
                return Checkpoint()
            if data is None:
                logger.info(f"[checkpoint] No checkpoint at {self.path}; starting fresh")
                return Checkpoint()
            cp = Checkpoint.from_payload(data)
            logger.info(
                f"[checkpoint] Loaded cursor={cp.cursor} entities={len(cp.result_set)} "
                f"updated={cp.statistics.updated} failed={cp.statistics.failed}"
            )
            self.last_saved = cp
            return cp

    # ---------------------- Save ----------------------

    async def save(
        self,
        cursor: int,
        result_set: Union[Mapping[str, Entity], Iterable[EntityLike]],
        statistics: RunStatistics,
    ) -> Checkpoint:
        if cursor < 0:
            raise ValueError("cursor must be a non-negative integer")
        items = result_set.values() if isinstance(result_set, Mapping) else result_set

        async with self._lock:
            cp = Checkpoint(
                cursor=cursor,
                result_set=dedupe_entities(items),
                statistics=statistics.copy(),
                last_updated=iso_now(),
                backup_info={
                    "type": "full",
                    "timestamp": iso_now(),
                    "version": self.incremental.next_version() if self.incremental else "v1.0.0",
                },
            )
            payload = cp.to_payload()

            self._write_backups(payload)
            await self._write_primary(payload)
            self._verify(payload)

            self.last_saved = cp
            logger.info(
                f"[checkpoint] Saved cursor={cursor} entities={payload['totalProcessed']} "
                f"updated={statistics.updated} failed={statistics.failed}"
            )
            return cp

    @retry_async(3, 200, 2000, 100, retry_on=(OSError,), label="checkpoint_write")
    async def _write_primary(self, payload: Dict[str, Any]) -> None:
        atomic_write_json(self.path, payload)

    def _write_backups(self, payload: Dict[str, Any]) -> None:
        """Full copy + incremental diff. Never blocks the primary write."""
        try:
            self.backup_dir.mkdir(parents=True, exist_ok=True)
            backup_path = unique_path(self.backup_dir, f"checkpoint_backup_{file_timestamp()}")
            atomic_write_json(backup_path, payload)
            logger.debug(f"[checkpoint] Full backup {backup_path.name}")
        except OSError as e:
            logger.warning(f"[checkpoint] Full backup failed: {e}")

        if self.incremental is not None:
            try:
                previous = self._read_payload()
            except (OSError, ValueError) as e:
                logger.warning(f"[checkpoint] Previous checkpoint unreadable for diff: {e}")
                previous = None
            try:
                self.incremental.create(payload, previous, version=payload["backupInfo"]["version"])
            except (OSError, ValueError) as e:
                logger.warning(f"[checkpoint] Incremental backup failed: {e}")

        try:
            prune_files(self.backup_dir, "checkpoint_backup_*.json", self.backup_retention)
        except OSError as e:
            logger.warning(f"[checkpoint] Backup pruning failed: {e}")

    def _verify(self, expected: Dict[str, Any]) -> None:
        try:
            written = read_json(self.path)
        except (OSError, ValueError) as e:
            raise CheckpointVerificationError(f"checkpoint unreadable after write: {e}") from e

        colors = written.get("updatedColors") or []
        codes = [c.get("code") for c in colors if isinstance(c, dict)]
        problems = []
        if written.get("currentIndex") != expected["currentIndex"]:
            problems.append("currentIndex")
        if len(colors) != len(expected["updatedColors"]):
            problems.append("updatedColors length")
        if (written.get("stats") or {}).get("updated") != expected["stats"]["updated"]:
            problems.append("stats.updated")
        if written.get("totalProcessed") != expected["totalProcessed"]:
            problems.append("totalProcessed")
        if len(set(codes)) != len(codes):
            problems.append("duplicate codes")
        if problems:
            raise CheckpointVerificationError(
                f"checkpoint verification failed ({', '.join(problems)}) for {self.path}"
            )

    # ---------------------- Emergency / restore ----------------------

    def write_emergency(self, checkpoint: Checkpoint, *, signal_name: str, reason: str) -> Path:
        payload = checkpoint.to_payload()
        payload.update({"signal": signal_name, "reason": reason, "savedAt": iso_now()})
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        path = unique_path(self.backup_dir, f"emergency_backup_{signal_name}_{file_timestamp()}")
        atomic_write_json(path, payload)
        logger.warning(f"[checkpoint] Emergency backup written to {path}")
        return path

    def list_full_backups(self) -> List[Path]:
        if not self.backup_dir.exists():
            return []
        return sorted(p for p in self.backup_dir.glob("checkpoint_backup_*.json") if p.is_file())

    async def restore_from_backup(self, name: Optional[str] = None) -> Checkpoint:
        """
        Copy the newest (or the named) full backup over the checkpoint file.
        Incremental snapshots are diagnostic only and never used here.
        """
        backups = self.list_full_backups()
        if not backups:
            raise FileNotFoundError(f"no full backups in {self.backup_dir}")
        if name:
            match = [p for p in backups if p.name == name or p.stem == name]
            if not match:
                raise FileNotFoundError(f"backup {name} not found in {self.backup_dir}")
            source = match[0]
        else:
            source = backups[-1]

        Checkpoint.from_payload(read_json(source))  # refuse to restore garbage
        async with self._lock:
            shutil.copyfile(source, self.path)
        logger.info(f"[checkpoint] Restored {self.path.name} from {source.name}")
        return await self.load()
