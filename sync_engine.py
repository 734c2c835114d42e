"""
BoondManager Sync Engine
Copies a full snapshot of production into the sandbox, one entity type at a time,
translating relationship ids through the ids the sandbox hands back.

The run is best-effort: a record that fails is reported and the run goes on.
It is not transactional and not resumable.
"""

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import requests

from boond_client import BoondManagerClient
from entities import (
    RELATIONSHIP_SCHEMA,
    Entity,
    EntityRef,
    EntityType,
    Relation,
    RelationValue,
    resolve_sync_order,
)
from errors import BoondError, ProductionWriteError, SyncAborted
from quality import DANGLING_SYNC_REFERENCE, QualityIssue, Severity

logger = logging.getLogger(__name__)

LIMITATIONS = [
    "Sync is not transactional: records created before a failure stay in the sandbox.",
    "Re-running a sync creates duplicate sandbox records.",
    "A create that fails remotely may leave a partial record behind; no compensating delete is issued.",
]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ==================== RESULT MODELS ====================

class IdentifierMap:
    """Production id -> sandbox id, per entity type, for the duration of one run"""

    def __init__(self):
        self._ids: Dict[EntityType, Dict[str, str]] = {}
        self._completed: Set[EntityType] = set()

    def record(self, entity_type: EntityType, production_id: str, sandbox_id: str) -> None:
        self._ids.setdefault(entity_type, {})[str(production_id)] = str(sandbox_id)

    def lookup(self, entity_type: EntityType, production_id: str) -> Optional[str]:
        return self._ids.get(entity_type, {}).get(str(production_id))

    def mark_complete(self, entity_type: EntityType) -> None:
        self._completed.add(entity_type)

    def is_complete(self, entity_type: EntityType) -> bool:
        return entity_type in self._completed

    def to_dict(self) -> Dict[str, Dict[str, str]]:
        return {t.value: dict(ids) for t, ids in self._ids.items()}


@dataclass
class SyncOutcome:
    entity_type: EntityType
    total: int = 0
    processed: int = 0
    success: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "processed": self.processed,
            "success": self.success,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": list(self.errors),
        }


@dataclass
class SyncResult:
    started_at: datetime
    completed_at: Optional[datetime] = None
    per_type: Dict[EntityType, SyncOutcome] = field(default_factory=dict)
    issues: List[QualityIssue] = field(default_factory=list)
    cancelled: bool = False
    error: Optional[str] = None
    identifier_map: IdentifierMap = field(default_factory=IdentifierMap)

    @property
    def total_records(self) -> int:
        return sum(o.total for o in self.per_type.values())

    @property
    def success_records(self) -> int:
        return sum(o.success for o in self.per_type.values())

    @property
    def failed_records(self) -> int:
        return sum(o.failed for o in self.per_type.values())

    @property
    def skipped_records(self) -> int:
        return sum(o.skipped for o in self.per_type.values())

    def to_dict(self) -> Dict[str, Any]:
        out = {
            "startedAt": self.started_at.isoformat(),
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "perType": {t.value: o.to_dict() for t, o in self.per_type.items()},
            "totalRecords": self.total_records,
            "successRecords": self.success_records,
            "failedRecords": self.failed_records,
            "skippedRecords": self.skipped_records,
            "cancelled": self.cancelled,
            "issues": [i.to_dict() for i in self.issues],
            "limitations": list(LIMITATIONS),
        }
        if self.error:
            out["error"] = self.error
        return out


@dataclass
class RecordResult:
    """What happened to one production record"""
    source_id: str
    new_id: Optional[str] = None
    error: Optional[str] = None
    issues: List[QualityIssue] = field(default_factory=list)


# ==================== ENGINE ====================

class SyncEngine:
    """Production -> sandbox copy with a bounded worker pool per entity type"""

    def __init__(self, production: BoondManagerClient, sandbox: BoondManagerClient,
                 workers: int = 4,
                 schema: Optional[Dict[EntityType, Tuple[Relation, ...]]] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.production = production
        self.sandbox = sandbox
        self.workers = max(1, int(workers))
        self.schema = RELATIONSHIP_SCHEMA if schema is None else schema
        self._clock = clock

    def run(self, cancel_event: Optional[threading.Event] = None,
            timeout: Optional[float] = None,
            types: Optional[List[EntityType]] = None) -> SyncResult:
        """
        Run one complete sync.

        Args:
            cancel_event: When set, no new record is started; in-flight creates finish
            timeout: Seconds after which the run behaves as if cancelled
            types: Restrict the run to these entity types (dependency order is kept)

        Raises:
            ConfigurationError: Schema cycle or non-writable target, before any network call
            SyncAborted: Listing a type failed; carries the partial result
        """
        order = resolve_sync_order(self.schema)
        if types:
            wanted = set(types)
            order = [t for t in order if t in wanted]

        if not self.sandbox.environment.writable:
            raise ProductionWriteError(
                f"Sync target must be the sandbox, got {self.sandbox.environment.value}"
            )

        deadline = self._clock() + timeout if timeout else None
        result = SyncResult(started_at=utc_now())

        logger.info("Starting sync: production -> sandbox "
                    f"({', '.join(t.plural for t in order)}; {self.workers} workers)")

        with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="boond-sync") as pool:
            for entity_type in order:
                if self._should_stop(cancel_event, deadline):
                    result.cancelled = True
                    logger.warning(f"Sync cancelled before {entity_type.plural}")
                    break

                try:
                    records = self.production.list(entity_type)
                except (BoondError, requests.RequestException) as e:
                    result.completed_at = utc_now()
                    result.error = f"Listing production {entity_type.plural} failed: {e}"
                    logger.error(f"Sync aborted: {result.error}")
                    raise SyncAborted(result.error, result=result) from e

                logger.info(f"Syncing {len(records)} {entity_type.plural}...")
                outcome = self._sync_type(pool, entity_type, records, result, cancel_event, deadline)
                result.per_type[entity_type] = outcome
                result.identifier_map.mark_complete(entity_type)
                logger.info(f"   {entity_type.plural}: {outcome.success} created, "
                            f"{outcome.failed} failed, {outcome.skipped} skipped "
                            f"(of {outcome.total})")

                if outcome.skipped:
                    result.cancelled = True
                    break

        result.completed_at = utc_now()
        self._log_summary(result)
        return result

    def _should_stop(self, cancel_event: Optional[threading.Event], deadline: Optional[float]) -> bool:
        if cancel_event is not None and cancel_event.is_set():
            return True
        return deadline is not None and self._clock() >= deadline

    def _sync_type(self, pool: ThreadPoolExecutor, entity_type: EntityType,
                   records: List[Entity], result: SyncResult,
                   cancel_event: Optional[threading.Event],
                   deadline: Optional[float]) -> SyncOutcome:
        """Create every record of one type; returns once the whole batch has finished"""
        outcome = SyncOutcome(entity_type=entity_type, total=len(records))
        results: List[Optional[RecordResult]] = [None] * len(records)
        pending: Dict[Future, int] = {}
        next_index = 0
        stopped = False

        while pending or (not stopped and next_index < len(records)):
            while not stopped and next_index < len(records) and len(pending) < self.workers:
                if self._should_stop(cancel_event, deadline):
                    stopped = True
                    logger.warning(f"Sync cancelled: {len(records) - next_index} "
                                   f"{entity_type.plural} not started")
                    break
                future = pool.submit(self._process_record, records[next_index], result.identifier_map)
                pending[future] = next_index
                next_index += 1

            if not pending:
                break

            done, _ = wait(pending, return_when=FIRST_COMPLETED)
            for future in done:
                results[pending.pop(future)] = future.result()

        # Fold in source order so the outcome does not depend on thread timing
        for entity, record in zip(records, results):
            if record is None:
                outcome.skipped += 1
                continue
            outcome.processed += 1
            result.issues.extend(record.issues)
            if record.error is None:
                outcome.success += 1
                result.identifier_map.record(entity_type, entity.id, record.new_id)
            else:
                outcome.failed += 1
                outcome.errors.append(f"ID {entity.id}: {record.error}")

        return outcome

    def _process_record(self, entity: Entity, id_map: IdentifierMap) -> RecordResult:
        """Translate relationships and create one record in the sandbox"""
        relationships, issues = self.translate_relationships(entity, id_map)
        record = RecordResult(source_id=entity.id, issues=issues)
        try:
            created = self.sandbox.create(entity.type, entity.attributes, relationships)
            record.new_id = created.id
        except (BoondError, requests.RequestException) as e:
            logger.error(f"Failed to create {entity.type.value} {entity.id} in sandbox: {e}")
            record.error = str(e)
        except Exception as e:
            logger.exception(f"Unexpected error creating {entity.type.value} {entity.id} in sandbox")
            record.error = f"{type(e).__name__}: {e}"
        return record

    def translate_relationships(self, entity: Entity,
                                id_map: IdentifierMap) -> Tuple[Dict[str, RelationValue], List[QualityIssue]]:
        """
        Rewrite declared relationships to sandbox ids.

        Only targets whose type has finished syncing in this run are looked up.
        References with no sandbox counterpart are dropped, each with one warning issue.
        """
        relationships: Dict[str, RelationValue] = {}
        issues: List[QualityIssue] = []

        for relation in self.schema.get(entity.type, ()):
            value = entity.relationships.get(relation.name)
            refs = value if isinstance(value, list) else ([value] if value is not None else [])

            target_synced = id_map.is_complete(relation.target)
            kept: List[EntityRef] = []
            for ref in refs:
                sandbox_id = id_map.lookup(relation.target, ref.id) if target_synced else None
                if sandbox_id is None:
                    logger.warning(f"{entity.type.value} {entity.id}: dropping {relation.name} -> "
                                   f"{relation.target.value} {ref.id} (no sandbox record)")
                    issues.append(QualityIssue(
                        entity_type=entity.type,
                        entity_id=entity.id,
                        field=relation.name,
                        issue=DANGLING_SYNC_REFERENCE,
                        severity=Severity.WARNING,
                        current_value=ref.id,
                    ))
                    continue
                kept.append(EntityRef(id=sandbox_id, type=ref.type or relation.target.value))

            if relation.many:
                relationships[relation.name] = kept
            else:
                relationships[relation.name] = kept[0] if kept else None

        return relationships, issues

    def _log_summary(self, result: SyncResult) -> None:
        duration = (result.completed_at - result.started_at).total_seconds()
        logger.info("═" * 50)
        logger.info("📊 SYNC SUMMARY")
        logger.info("═" * 50)
        for entity_type, outcome in result.per_type.items():
            logger.info(f"   {entity_type.plural:<15} {outcome.success}/{outcome.total} created, "
                        f"{outcome.failed} failed")
        logger.info(f"   ────────────────────")
        logger.info(f"   Total:    {result.total_records}")
        logger.info(f"   Success:  {result.success_records}")
        logger.info(f"   Failed:   {result.failed_records}")
        if result.cancelled:
            logger.info(f"   Skipped:  {result.skipped_records} (cancelled)")
        logger.info(f"   Warnings: {len(result.issues)}")
        logger.info(f"   Duration: {duration:.2f}s")
        logger.info("═" * 50)
