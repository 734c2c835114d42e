"""
Shared fixtures: in-memory BoondManager tenants and a controllable clock
"""

import threading
from typing import Any, Callable, Dict, List, Optional

import pytest

from entities import SYNC_ORDER, Entity, EntityRef, EntityType, Environment, Snapshot
from errors import ProductionWriteError, RejectedOperation, TransientFailure


def make_entity(entity_type: EntityType, entity_id: str, **attributes) -> Entity:
    """Entity with the given attributes; relationships are passed as `rel_<name>=id or [ids]`"""
    relationships: Dict[str, Any] = {}
    attrs = {}
    for key, value in attributes.items():
        if key.startswith("rel_"):
            name = key[4:]
            if isinstance(value, list):
                relationships[name] = [EntityRef(id=v, type=name.rstrip("s")) for v in value]
            else:
                relationships[name] = EntityRef(id=value, type=name) if value else None
        else:
            attrs[key] = value
    return Entity(id=entity_id, type=entity_type, attributes=attrs, relationships=relationships)


class FakeBoondClient:
    """In-memory stand-in for BoondManagerClient"""

    def __init__(self, environment: Environment,
                 records: Optional[Dict[EntityType, List[Entity]]] = None,
                 fail_if: Optional[Callable[[EntityType, Dict[str, Any]], bool]] = None,
                 dictionary: Optional[Dict[str, Any]] = None):
        self.environment = Environment(environment)
        self.records: Dict[EntityType, List[Entity]] = {t: [] for t in SYNC_ORDER}
        for entity_type, items in (records or {}).items():
            self.records[entity_type] = list(items)
        self.fail_if = fail_if
        self.dictionary = dictionary if dictionary is not None else {}
        self.list_errors: Dict[EntityType, Exception] = {}
        self.dictionary_error: Optional[Exception] = None
        self.dictionary_calls = 0
        self.created: List[Entity] = []
        self._lock = threading.Lock()
        self._next_id = 1000

    def list(self, entity_type: EntityType, filters=None) -> List[Entity]:
        if entity_type in self.list_errors:
            raise self.list_errors[entity_type]
        return [e.copy() for e in self.records[entity_type]]

    def get(self, entity_type: EntityType, entity_id: str) -> Entity:
        for entity in self.records[entity_type]:
            if entity.id == entity_id:
                return entity.copy()
        raise RejectedOperation(f"{entity_type.value} {entity_id} not found", status=404,
                                entity_type=entity_type.value, entity_id=entity_id)

    def create(self, entity_type: EntityType, attributes: Dict[str, Any], relationships=None) -> Entity:
        if not self.environment.writable:
            raise ProductionWriteError(f"create {entity_type.value} not allowed on {self.environment.value}")
        if self.fail_if and self.fail_if(entity_type, attributes):
            raise RejectedOperation(f"BoondManager sandbox rejected POST {entity_type.value}: 422",
                                    status=422, entity_type=entity_type.value)
        with self._lock:
            self._next_id += 1
            new_id = f"S{self._next_id}"
            entity = Entity(id=new_id, type=entity_type, attributes=dict(attributes),
                            relationships=dict(relationships or {}))
            self.records[entity_type].append(entity)
            self.created.append(entity)
        return entity

    def delete(self, entity_type: EntityType, entity_id: str) -> None:
        if not self.environment.writable:
            raise ProductionWriteError(f"delete {entity_type.value} not allowed on {self.environment.value}")
        self.records[entity_type] = [e for e in self.records[entity_type] if e.id != entity_id]

    def fetch_dictionary(self) -> Dict[str, Any]:
        with self._lock:
            self.dictionary_calls += 1
        if self.dictionary_error is not None:
            raise self.dictionary_error
        return self.dictionary

    def test_connection(self) -> bool:
        return True


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def entity():
    return make_entity


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def production_client():
    return FakeBoondClient(Environment.PRODUCTION)


@pytest.fixture
def sandbox_client():
    return FakeBoondClient(Environment.SANDBOX)


@pytest.fixture
def snapshot_of():
    def build(environment: Environment = Environment.PRODUCTION, **by_plural: List[Entity]) -> Snapshot:
        snapshot = Snapshot(environment=environment)
        for plural, items in by_plural.items():
            snapshot.entities[EntityType.parse(plural)] = list(items)
        return snapshot
    return build


@pytest.fixture
def transient_error():
    return TransientFailure("BoondManager production GET /companies failed after 5 attempts: 503",
                            status=503, method="GET", path="/companies", attempts=5)
