from __future__ import annotations

import csv
import json
import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from enricher.utils import normalize_color

logger = logging.getLogger(__name__)

DEFAULT_BRAND = "PANTONE"


@dataclass(frozen=True)
class Entity:
    identifier: str                  # color code, e.g. "19-4052 TCX"
    display_name: str
    brand: str = DEFAULT_BRAND
    enriched_value: str = ""         # "" or "#RRGGBB"
    last_updated: Optional[str] = None

    def with_value(self, value: str, *, stamp: Optional[str] = None) -> "Entity":
        return replace(self, enriched_value=value, last_updated=stamp or self.last_updated)

    def to_record(self) -> Dict[str, Any]:
        """On-disk shape; key order is fixed so checkpoint diffs stay readable."""
        rec: Dict[str, Any] = {
            "code": self.identifier,
            "name": self.display_name,
            "brand": self.brand,
            "hex": self.enriched_value,
        }
        if self.last_updated:
            rec["lastUpdated"] = self.last_updated
        return rec

    @classmethod
    def from_record(cls, raw: Union[str, Mapping[str, Any]]) -> "Entity":
        """
        Accepts the structured record or the legacy shape where each entry was a
        JSON-encoded string. Unknown keys (e.g. 'position') are dropped.
        """
        if isinstance(raw, str):
            raw = json.loads(raw)
        if not isinstance(raw, Mapping):
            raise ValueError(f"invalid entity record: {raw!r}")
        code = str(raw.get("code") or raw.get("identifier") or "").strip()
        if not code:
            raise ValueError(f"entity record without code: {raw!r}")
        raw_hex = str(raw.get("hex") or raw.get("enriched_value") or "").strip()
        value = normalize_color(raw_hex) if raw_hex else ""
        if value is None:
            logger.warning("Invalid hex %r for %s dropped", raw_hex, code)
            value = ""
        return cls(
            identifier=code,
            display_name=str(raw.get("name") or raw.get("display_name") or "").strip(),
            brand=str(raw.get("brand") or DEFAULT_BRAND).strip() or DEFAULT_BRAND,
            enriched_value=value,
            last_updated=raw.get("lastUpdated") or raw.get("last_updated") or None,
        )


def _iter_json_records(path: Path, encoding: str) -> Iterable[Any]:
    data = json.loads(path.read_text(encoding=encoding))
    if isinstance(data, Mapping):
        # {"colors": [...]} or a checkpoint file
        data = data.get("colors") or data.get("updatedColors") or []
    if not isinstance(data, list):
        raise ValueError(f"{path}: expected a list of color records")
    return data


def _iter_csv_records(path: Path, encoding: str) -> Iterable[Dict[str, str]]:
    with path.open("r", encoding=encoding, newline="") as f:
        yield from csv.DictReader(f)


def _dedupe(entities: Iterable[Entity]) -> List[Entity]:
    seen: set[str] = set()
    out: List[Entity] = []
    for e in entities:
        if e.identifier in seen:
            logger.warning("Duplicate color code in input skipped: %s", e.identifier)
            continue
        seen.add(e.identifier)
        out.append(e)
    return out


def load_entities(
    path: Path,
    *,
    encoding: str = "utf-8",
    limit: Optional[int] = None,
    dedupe: bool = True,
) -> List[Entity]:
    """
    Load the color backlog from a .json or .csv file.

    JSON may be a bare list, {"colors": [...]}, or a checkpoint file.
    CSV needs a 'code' column; 'name', 'brand', 'hex' are optional.
    Rows that cannot be parsed are logged and skipped.
    """
    path = Path(path)
    if path.suffix.lower() == ".csv":
        raw_records = _iter_csv_records(path, encoding)
    else:
        raw_records = _iter_json_records(path, encoding)

    entities: List[Entity] = []
    for i, raw in enumerate(raw_records):
        if limit is not None and len(entities) >= limit:
            break
        try:
            entities.append(Entity.from_record(raw))
        except (ValueError, json.JSONDecodeError) as e:
            logger.warning("Skipping record #%d in %s: %s", i, path.name, e)
    if dedupe:
        entities = _dedupe(entities)
    logger.info("Loaded %d color(s) from %s", len(entities), path)
    return entities
