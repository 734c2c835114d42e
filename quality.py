"""
Data Quality Analyzer
Scans a snapshot of one environment for field-level defects and duplicate records.
Output is deterministic: the same snapshot always yields the same issues and
duplicate groups, in the same order.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from cleaning import (
    FIELD_RULES,
    FieldRules,
    dedup_key,
    is_valid_email,
    is_valid_phone,
    parse_date,
    suggest,
)
from entities import RELATIONSHIP_SCHEMA, SYNC_ORDER, Entity, EntityType, Snapshot

logger = logging.getLogger(__name__)


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


DANGLING_SYNC_REFERENCE = "dangling reference dropped during sync"


@dataclass
class QualityIssue:
    entity_type: EntityType
    entity_id: str
    field: str
    issue: str
    severity: Severity
    current_value: Any = None
    suggested_value: Any = None

    def to_dict(self) -> Dict[str, Any]:
        out = {
            "entityType": self.entity_type.value,
            "entityId": self.entity_id,
            "field": self.field,
            "issue": self.issue,
            "severity": self.severity.value,
            "currentValue": self.current_value,
        }
        if self.suggested_value is not None:
            out["suggestedValue"] = self.suggested_value
        return out


@dataclass
class DuplicateGroup:
    entity_type: EntityType
    field: str
    value: str
    items: List[Entity] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entityType": self.entity_type.value,
            "field": self.field,
            "value": self.value,
            "items": [{"id": e.id, "attributes": e.attributes} for e in self.items],
        }


@dataclass
class QualityReport:
    issues: List[QualityIssue] = field(default_factory=list)
    duplicates: List[DuplicateGroup] = field(default_factory=list)

    @property
    def summary(self) -> Dict[str, int]:
        return {
            "totalIssues": len(self.issues),
            "errors": sum(1 for i in self.issues if i.severity is Severity.ERROR),
            "warnings": sum(1 for i in self.issues if i.severity is Severity.WARNING),
            "info": sum(1 for i in self.issues if i.severity is Severity.INFO),
            "duplicateGroups": len(self.duplicates),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "issues": [i.to_dict() for i in self.issues],
            "duplicates": [d.to_dict() for d in self.duplicates],
            "summary": self.summary,
        }


def id_sort_key(entity_id: str) -> Tuple[int, Any]:
    """Numeric ids in numeric order, anything else after them as text"""
    return (0, int(entity_id)) if str(entity_id).isdigit() else (1, str(entity_id))


def _type_rank(entity_type: EntityType) -> int:
    return SYNC_ORDER.index(entity_type) if entity_type in SYNC_ORDER else len(SYNC_ORDER)


def sort_issues(issues: List[QualityIssue]) -> List[QualityIssue]:
    """Stable sort by entity type then entity id; per-entity rule order is kept"""
    return sorted(issues, key=lambda i: (_type_rank(i.entity_type), id_sort_key(i.entity_id)))


class QualityAnalyzer:
    """Field validators and duplicate detection over a snapshot"""

    def __init__(self, rules: Optional[Dict[EntityType, FieldRules]] = None):
        self.rules = FIELD_RULES if rules is None else rules

    def analyze(self, snapshot: Snapshot) -> QualityReport:
        issues: List[QualityIssue] = []
        duplicates: List[DuplicateGroup] = []

        known_ids = {t: {e.id for e in snapshot.of(t)} for t in snapshot.entities}

        for entity_type in sorted(snapshot.entities, key=_type_rank):
            rules = self.rules.get(entity_type, FieldRules())
            entities = snapshot.of(entity_type)
            for entity in entities:
                issues.extend(self.check_entity(entity, rules))
                issues.extend(self.check_relationships(entity, known_ids))
            duplicates.extend(self.find_duplicates(entities, entity_type, rules.dedup))

        report = QualityReport(issues=sort_issues(issues), duplicates=duplicates)
        logger.info(f"[{snapshot.environment.value}] Quality analysis: {report.summary}")
        return report

    # ==================== FIELD CHECKS ====================

    def check_entity(self, entity: Entity, rules: FieldRules) -> List[QualityIssue]:
        issues: List[QualityIssue] = []
        attrs = entity.attributes

        def add(field_name: str, text: str, severity: Severity, suggested: Any = None):
            issues.append(QualityIssue(
                entity_type=entity.type,
                entity_id=entity.id,
                field=field_name,
                issue=text,
                severity=severity,
                current_value=attrs.get(field_name),
                suggested_value=suggested,
            ))

        for name in rules.required:
            value = attrs.get(name)
            if value is None or (isinstance(value, str) and not value.strip()):
                add(name, "Missing required field", Severity.ERROR)

        for name in rules.emails:
            value = attrs.get(name)
            if not isinstance(value, str) or not value.strip():
                continue
            normalized = suggest(entity.type, name, value)
            if not is_valid_email(value):
                add(name, "Malformed email address", Severity.WARNING,
                    normalized if is_valid_email(normalized) else None)
            elif normalized != value:
                add(name, "Email not normalized", Severity.INFO, normalized)

        for name in rules.phones:
            value = attrs.get(name)
            if not isinstance(value, str) or not value.strip():
                continue
            normalized = suggest(entity.type, name, value)
            if not is_valid_phone(value):
                add(name, "Malformed phone number", Severity.WARNING,
                    normalized if is_valid_phone(normalized) else None)
            elif normalized != value:
                add(name, "Phone number not in canonical format", Severity.INFO, normalized)

        for name in rules.names:
            value = attrs.get(name)
            if isinstance(value, str) and value.strip():
                normalized = suggest(entity.type, name, value)
                if normalized != value:
                    add(name, "Name not title-cased", Severity.INFO, normalized)

        for name in rules.company_names:
            value = attrs.get(name)
            if isinstance(value, str) and value.strip():
                normalized = suggest(entity.type, name, value)
                if normalized != value:
                    add(name, "Company name not normalized", Severity.INFO, normalized)

        for name in rules.dates:
            value = attrs.get(name)
            if not isinstance(value, str) or not value.strip():
                continue
            if parse_date(value) is None:
                add(name, "Malformed date", Severity.WARNING)
            else:
                normalized = suggest(entity.type, name, value)
                if normalized != value:
                    add(name, "Date not in ISO format", Severity.INFO, normalized)

        return issues

    def check_relationships(self, entity: Entity,
                            known_ids: Dict[EntityType, set]) -> List[QualityIssue]:
        """References to records missing from the same snapshot"""
        issues = []
        for relation in RELATIONSHIP_SCHEMA.get(entity.type, ()):
            targets = known_ids.get(relation.target)
            if targets is None:
                continue
            for ref_id in entity.related_ids(relation.name):
                if ref_id not in targets:
                    issues.append(QualityIssue(
                        entity_type=entity.type,
                        entity_id=entity.id,
                        field=relation.name,
                        issue=f"Dangling reference: {relation.target.value} {ref_id} not found",
                        severity=Severity.WARNING,
                        current_value=ref_id,
                    ))
        return issues

    # ==================== DUPLICATES ====================

    def find_duplicates(self, entities: List[Entity], entity_type: EntityType,
                        fields: Tuple[str, ...]) -> List[DuplicateGroup]:
        groups: List[DuplicateGroup] = []
        for name in fields:
            buckets: Dict[str, List[Entity]] = {}
            for entity in entities:
                key = dedup_key(entity.attributes.get(name))
                if not key:
                    continue
                buckets.setdefault(key, []).append(entity)

            for key in sorted(buckets):
                members = buckets[key]
                if len(members) > 1:
                    groups.append(DuplicateGroup(
                        entity_type=entity_type,
                        field=name,
                        value=key,
                        items=sorted(members, key=lambda e: id_sort_key(e.id)),
                    ))
        return groups
