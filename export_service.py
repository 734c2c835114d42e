"""
Export Service
Serializes a snapshot (or a single entity type) to JSON or CSV, optionally
running the same field normalizations the quality analyzer suggests.
"""

import csv
import io
import json
import logging
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from cleaning import clean_entity
from entities import SYNC_ORDER, Entity, EntityType, Snapshot, denormalize

logger = logging.getLogger(__name__)

EXPORT_FORMATS = ("json", "csv")

# Declared CSV column order per entity type; "id" always comes first
CSV_COLUMNS: Dict[EntityType, List[str]] = {
    EntityType.CANDIDATE: ["firstName", "lastName", "email", "phone1", "title", "state", "origin", "creationDate"],
    EntityType.RESOURCE: ["firstName", "lastName", "email", "phone1", "title", "state", "creationDate"],
    EntityType.OPPORTUNITY: ["title", "reference", "state", "startDate", "averageDailyPriceExcludingTax", "creationDate"],
    EntityType.COMPANY: ["name", "email", "phone1", "town", "country", "state", "creationDate"],
    EntityType.CONTACT: ["firstName", "lastName", "email", "phone1", "position", "creationDate"],
    EntityType.PROJECT: ["title", "reference", "state", "startDate", "endDate", "creationDate"],
}


def flatten(value: Any, prefix: str = "") -> Dict[str, Any]:
    """Flatten nested mappings into dotted keys: {"address": {"town": "Lyon"}} -> {"address.town": "Lyon"}"""
    if not isinstance(value, dict):
        return {prefix: value}
    flat: Dict[str, Any] = {}
    for key, item in value.items():
        name = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(item, dict) and item:
            flat.update(flatten(item, name))
        else:
            flat[name] = item
    return flat


def _csv_cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, dict)):
        return json.dumps(value, ensure_ascii=False, sort_keys=True)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def export_filename(entity: Optional[EntityType], environment: str, fmt: str,
                    on: Optional[date] = None) -> str:
    """<entity_or_all>_<env>_<YYYY-MM-DD>.<format>"""
    on = on or datetime.now(timezone.utc).date()
    name = entity.plural if entity else "all"
    return f"{name}_{environment}_{on.isoformat()}.{fmt}"


class ExportService:
    """JSON and CSV exports of BoondManager records"""

    def select(self, snapshot: Snapshot, entity: Optional[EntityType] = None,
               clean: bool = False) -> Dict[EntityType, List[Entity]]:
        """Entities to export, per type in sync order, cleaned when asked"""
        types = [entity] if entity else [t for t in SYNC_ORDER if t in snapshot.entities]
        selected = {}
        for entity_type in types:
            records = snapshot.of(entity_type)
            selected[entity_type] = [clean_entity(e) for e in records] if clean else list(records)
        return selected

    def export(self, snapshot: Snapshot, fmt: str = "json", clean: bool = False,
               entity: Optional[EntityType] = None) -> bytes:
        """
        Serialize a snapshot

        Args:
            snapshot: Records of one environment
            fmt: "json" keeps the full nested structure, "csv" flattens it
            clean: Normalize names, emails, phones and dates first
            entity: Restrict the export to one entity type
        """
        fmt = (fmt or "").lower()
        if fmt not in EXPORT_FORMATS:
            raise ValueError(f"Unsupported export format: {fmt!r}")

        selected = self.select(snapshot, entity, clean)
        count = sum(len(v) for v in selected.values())
        logger.info(f"[{snapshot.environment.value}] Exporting {count} records as {fmt}"
                    f"{' (cleaned)' if clean else ''}")

        if fmt == "json":
            return self.to_json(selected, snapshot.environment.value)
        return self.to_csv(selected, single=entity is not None)

    def to_json(self, selected: Dict[EntityType, List[Entity]], environment: str) -> bytes:
        payload = {
            "exportedAt": datetime.now(timezone.utc).isoformat(),
            "environment": environment,
            "entities": {t.plural: [denormalize(e) for e in records] for t, records in selected.items()},
            "stats": {t.plural: len(records) for t, records in selected.items()},
        }
        return json.dumps(payload, ensure_ascii=False, indent=2).encode("utf-8")

    def columns(self, entity_type: EntityType, records: Iterable[Entity]) -> List[str]:
        """Declared columns, then any extra flattened attribute in first-seen order"""
        columns = ["id"] + CSV_COLUMNS.get(entity_type, [])
        seen = set(columns)
        for record in records:
            for name in flatten(record.attributes):
                if name not in seen:
                    seen.add(name)
                    columns.append(name)
        return columns

    def to_csv(self, selected: Dict[EntityType, List[Entity]], single: bool = True) -> bytes:
        if single:
            [(entity_type, records)] = selected.items()
            header = self.columns(entity_type, records)
            rows = [self._row(e, header) for e in records]
        else:
            header = ["entityType"]
            for entity_type, records in selected.items():
                header.extend(c for c in self.columns(entity_type, records) if c not in header)
            rows = [
                self._row(e, header, entityType=entity_type.value)
                for entity_type, records in selected.items()
                for e in records
            ]

        output = io.StringIO()
        writer = csv.writer(output)
        writer.writerow(header)
        writer.writerows(rows)
        return output.getvalue().encode("utf-8")

    @staticmethod
    def _row(entity: Entity, header: List[str], **extra: Any) -> List[str]:
        values = flatten(entity.attributes)
        values["id"] = entity.id
        values.update(extra)
        return [_csv_cell(values.get(column)) for column in header]

    def preview(self, snapshot: Snapshot) -> Dict[str, Any]:
        """Cleaned snapshot with per-type counts, without producing a file"""
        selected = self.select(snapshot, clean=True)
        return {
            "environment": snapshot.environment.value,
            "stats": {t.plural: len(records) for t, records in selected.items()},
            "entities": {t.plural: [denormalize(e) for e in records] for t, records in selected.items()},
        }
