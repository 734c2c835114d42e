"""
BoondManager entity model and JSON:API mapper.

Every BoondManager record arrives as {id, type, attributes, relationships}.
This module turns those payloads into Entity objects, serializes them back
for writes, and declares the relationship schema that drives sync ordering
and relationship-aware quality checks.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from errors import ConfigurationError

logger = logging.getLogger(__name__)


class Environment(str, Enum):
    PRODUCTION = "production"
    SANDBOX = "sandbox"

    @property
    def writable(self) -> bool:
        return self is Environment.SANDBOX


class EntityType(str, Enum):
    CANDIDATE = "candidate"
    RESOURCE = "resource"
    OPPORTUNITY = "opportunity"
    COMPANY = "company"
    CONTACT = "contact"
    PROJECT = "project"

    @property
    def plural(self) -> str:
        if self is EntityType.OPPORTUNITY:
            return "opportunities"
        if self is EntityType.COMPANY:
            return "companies"
        return f"{self.value}s"

    @property
    def endpoint(self) -> str:
        return f"/{self.plural}"

    @classmethod
    def parse(cls, value: str) -> "EntityType":
        """Accept singular or plural names ("company", "companies")"""
        value = (value or "").strip().lower()
        for member in cls:
            if value in (member.value, member.plural):
                return member
        raise ValueError(f"Unknown entity type: {value!r}")


@dataclass(frozen=True)
class Relation:
    """One relationship field and the entity type it points at"""
    name: str
    target: EntityType
    many: bool = False


# Static relationship schema. Only these relationships are translated during
# sync; anything else in a payload (mainManager, agency, ...) stays local.
RELATIONSHIP_SCHEMA: Dict[EntityType, Tuple[Relation, ...]] = {
    EntityType.COMPANY: (),
    EntityType.CONTACT: (
        Relation("company", EntityType.COMPANY),
    ),
    EntityType.RESOURCE: (
        Relation("company", EntityType.COMPANY),
    ),
    EntityType.CANDIDATE: (),
    EntityType.OPPORTUNITY: (
        Relation("company", EntityType.COMPANY),
        Relation("contact", EntityType.CONTACT),
    ),
    EntityType.PROJECT: (
        Relation("company", EntityType.COMPANY),
        Relation("contact", EntityType.CONTACT),
        Relation("opportunity", EntityType.OPPORTUNITY),
        Relation("resources", EntityType.RESOURCE, many=True),
    ),
}

# Preferred order; also the tie-breaker for the topological sort
SYNC_ORDER: Tuple[EntityType, ...] = (
    EntityType.COMPANY,
    EntityType.CONTACT,
    EntityType.RESOURCE,
    EntityType.CANDIDATE,
    EntityType.OPPORTUNITY,
    EntityType.PROJECT,
)

READ_ONLY_ATTRIBUTES = frozenset({"id", "creationDate", "updateDate", "stateLabel", "thumbnail"})


# ==================== DATA MODEL ====================

@dataclass(frozen=True)
class EntityRef:
    """Reference to another record, scoped to the environment it was read from"""
    id: str
    type: str

    def to_dict(self) -> Dict[str, str]:
        return {"id": self.id, "type": self.type}


RelationValue = Union[None, EntityRef, List[EntityRef]]


@dataclass
class Entity:
    """Normalized BoondManager record. `id` is only meaningful within its environment."""
    id: str
    type: EntityType
    attributes: Dict[str, Any] = field(default_factory=dict)
    relationships: Dict[str, RelationValue] = field(default_factory=dict)

    def related_ids(self, name: str) -> List[str]:
        """Ids referenced by one relationship field, whatever its cardinality"""
        value = self.relationships.get(name)
        if value is None:
            return []
        if isinstance(value, list):
            return [ref.id for ref in value]
        return [value.id]

    def copy(self) -> "Entity":
        return Entity(
            id=self.id,
            type=self.type,
            attributes=dict(self.attributes),
            relationships={
                k: list(v) if isinstance(v, list) else v
                for k, v in self.relationships.items()
            },
        )


# ==================== MAPPER ====================

def _parse_ref(data: Any) -> Optional[EntityRef]:
    if not isinstance(data, dict) or data.get("id") in (None, ""):
        return None
    return EntityRef(id=str(data["id"]), type=str(data.get("type") or ""))


def _parse_relationship(raw: Any) -> RelationValue:
    data = raw.get("data") if isinstance(raw, dict) else None
    if isinstance(data, list):
        return [ref for ref in (_parse_ref(item) for item in data) if ref is not None]
    return _parse_ref(data)


def normalize(raw: Dict[str, Any], entity_type: EntityType) -> Entity:
    """Convert a JSON:API record into an Entity"""
    if not isinstance(raw, dict) or raw.get("id") in (None, ""):
        raise ValueError(f"{entity_type.value} payload has no id")

    attributes = dict(raw.get("attributes") or {})
    attributes.pop("id", None)

    relationships: Dict[str, RelationValue] = {}
    for name, rel in (raw.get("relationships") or {}).items():
        relationships[name] = _parse_relationship(rel)

    # Declared relationships are always present, even when unset
    for relation in RELATIONSHIP_SCHEMA[entity_type]:
        relationships.setdefault(relation.name, [] if relation.many else None)

    return Entity(
        id=str(raw["id"]),
        type=entity_type,
        attributes=attributes,
        relationships=relationships,
    )


def _dump_relationship(value: RelationValue) -> Dict[str, Any]:
    if isinstance(value, list):
        return {"data": [ref.to_dict() for ref in value]}
    if value is None:
        return {"data": None}
    return {"data": value.to_dict()}


def denormalize(entity: Entity) -> Dict[str, Any]:
    """Convert an Entity back into its JSON:API shape"""
    return {
        "id": entity.id,
        "type": entity.type.value,
        "attributes": dict(entity.attributes),
        "relationships": {
            name: _dump_relationship(value)
            for name, value in entity.relationships.items()
        },
    }


def create_payload(entity_type: EntityType, attributes: Dict[str, Any],
                   relationships: Optional[Dict[str, RelationValue]] = None) -> Dict[str, Any]:
    """
    Build the POST body for a new record.

    Read-only attributes and null values are stripped; only relationships
    declared in the schema with a value are sent.
    """
    data: Dict[str, Any] = {
        "type": entity_type.value,
        "attributes": {
            k: v for k, v in attributes.items()
            if k not in READ_ONLY_ATTRIBUTES and v is not None
        },
    }

    declared = {r.name for r in RELATIONSHIP_SCHEMA[entity_type]}
    rels = {}
    for name, value in (relationships or {}).items():
        if name not in declared or value is None or value == []:
            continue
        rels[name] = _dump_relationship(value)
    if rels:
        data["relationships"] = rels

    return {"data": data}


def normalize_many(items: Iterable[Dict[str, Any]], entity_type: EntityType) -> List[Entity]:
    """Normalize a page of records, skipping (and logging) unusable ones"""
    entities = []
    for raw in items:
        try:
            entities.append(normalize(raw, entity_type))
        except ValueError as e:
            logger.warning(f"Skipping malformed {entity_type.value} record: {e}")
    return entities


# ==================== DEPENDENCY ORDER ====================

def dependencies(entity_type: EntityType,
                 schema: Optional[Dict[EntityType, Tuple[Relation, ...]]] = None) -> List[EntityType]:
    schema = RELATIONSHIP_SCHEMA if schema is None else schema
    deps: List[EntityType] = []
    for relation in schema.get(entity_type, ()):
        if relation.target not in deps:
            deps.append(relation.target)
    return deps


def resolve_sync_order(schema: Optional[Dict[EntityType, Tuple[Relation, ...]]] = None) -> List[EntityType]:
    """Topological sort of entity types; raises ConfigurationError on a cycle"""
    schema = RELATIONSHIP_SCHEMA if schema is None else schema
    rank = {t: i for i, t in enumerate(SYNC_ORDER)}
    types = sorted(schema, key=lambda t: rank.get(t, len(rank)))

    in_degree: Dict[EntityType, int] = {t: 0 for t in types}
    children: Dict[EntityType, List[EntityType]] = {t: [] for t in types}

    for entity_type in types:
        for dep in dependencies(entity_type, schema):
            if dep not in in_degree:
                raise ConfigurationError(
                    f"'{entity_type.value}' references '{dep.value}' which has no schema entry"
                )
            children[dep].append(entity_type)
            in_degree[entity_type] += 1

    queue = deque(t for t in types if in_degree[t] == 0)
    order: List[EntityType] = []
    while queue:
        current = queue.popleft()
        order.append(current)
        for child in children[current]:
            in_degree[child] -= 1
            if in_degree[child] == 0:
                queue.append(child)
        queue = deque(sorted(queue, key=lambda t: rank.get(t, len(rank))))

    if len(order) != len(types):
        stuck = ", ".join(t.value for t in types if t not in order)
        raise ConfigurationError(f"Relationship schema has a cycle involving: {stuck}")

    return order


# ==================== SNAPSHOT ====================

@dataclass
class Snapshot:
    """All records of one environment, as read at `fetched_at`"""
    environment: Environment
    entities: Dict[EntityType, List[Entity]] = field(default_factory=dict)
    fetched_at: Optional[datetime] = None

    def of(self, entity_type: EntityType) -> List[Entity]:
        return self.entities.get(entity_type, [])

    @property
    def stats(self) -> Dict[str, int]:
        return {t.plural: len(self.of(t)) for t in SYNC_ORDER if t in self.entities}
