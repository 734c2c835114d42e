"""
BoondManager Integration Module
Handles all BoondManager API interactions for one tenant (production or sandbox):
listing, reading, creating and deleting records, and fetching the application dictionary.
"""

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import requests

from config import Config
from entities import (
    Entity,
    EntityType,
    Environment,
    RelationValue,
    SYNC_ORDER,
    Snapshot,
    create_payload,
    normalize,
    normalize_many,
)
from errors import BoondError, ProductionWriteError, RejectedOperation, TransientFailure

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = 429


class BoondManagerClient:
    """BoondManager REST client bound to a single environment"""

    def __init__(self, environment: Environment, username: str, password: str,
                 base_url: str = "https://ui.boondmanager.com/api",
                 timeout: float = 30, max_retries: int = 5, backoff_factor: float = 1.5,
                 max_backoff: float = 30, min_interval: float = 0.15,
                 page_size: int = 100, max_pages: int = 100,
                 session: Optional[requests.Session] = None,
                 sleep: Callable[[float], None] = time.sleep):
        """
        Initialize the client

        Args:
            environment: Tenant this client talks to; only sandbox accepts writes
            username, password: Basic-auth credentials for the tenant
            max_retries: Attempt ceiling for transient failures (timeouts, 429, 5xx)
            min_interval: Minimum delay between two requests, shared by all threads
            sleep: Injected for tests
        """
        self.environment = Environment(environment)
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max(1, int(max_retries))
        self.backoff_factor = backoff_factor
        self.max_backoff = max_backoff
        self.min_interval = min_interval
        self.page_size = page_size
        self.max_pages = max_pages
        self._sleep = sleep

        self.session = session or requests.Session()
        self.session.auth = (username, password)
        self.session.headers.update({
            "Content-Type": "application/json",
            "Accept": "application/json",
        })

        self._throttle_lock = threading.Lock()
        self._last_request = 0.0

        logger.info(f"BoondManager client initialized for {self.environment.value}")

    @classmethod
    def from_config(cls, cfg: Config, environment: Environment, **kwargs) -> "BoondManagerClient":
        creds = cfg.credentials(Environment(environment).value)
        http = cfg.http
        return cls(
            environment=environment,
            username=creds.get("username", ""),
            password=creds.get("password", ""),
            base_url=cfg.base_url,
            timeout=http["timeout"],
            max_retries=http["max_retries"],
            backoff_factor=http["backoff_factor"],
            max_backoff=http["max_backoff"],
            min_interval=http["min_interval"],
            page_size=http["page_size"],
            max_pages=http["max_pages"],
            **kwargs,
        )

    # ==================== TRANSPORT ====================

    def _throttle(self) -> None:
        """Keep at least min_interval between requests across worker threads"""
        if self.min_interval <= 0:
            return
        with self._throttle_lock:
            wait = self.min_interval - (time.monotonic() - self._last_request)
            if wait > 0:
                self._sleep(wait)
            self._last_request = time.monotonic()

    def _backoff(self, attempt: int) -> float:
        return min(self.backoff_factor ** attempt, self.max_backoff)

    def _request_with_retry(self, method: str, path: str,
                            entity_type: Optional[EntityType] = None,
                            entity_id: Optional[str] = None, **kwargs) -> requests.Response:
        """Make request with exponential backoff retry and throttling"""
        url = f"{self.base_url}{path}"
        env = self.environment.value
        last_status: Optional[int] = None
        last_error = ""

        for attempt in range(self.max_retries):
            final = attempt == self.max_retries - 1
            self._throttle()

            try:
                response = self.session.request(method, url, timeout=self.timeout, **kwargs)
            except requests.RequestException as e:
                last_status = None
                last_error = str(e)
                logger.warning(f"[{env}] {method} {path} failed (attempt {attempt + 1}/{self.max_retries}): {e}")
                if not final:
                    self._sleep(self._backoff(attempt))
                continue

            status = response.status_code

            if status == RETRYABLE_STATUS:
                last_status = status
                last_error = "rate limited"
                retry_after = response.headers.get("Retry-After")
                try:
                    wait_time = min(float(retry_after), self.max_backoff) if retry_after else self._backoff(attempt)
                except ValueError:
                    wait_time = self._backoff(attempt)
                logger.warning(f"[{env}] Rate limited. Waiting {wait_time:.1f} seconds "
                               f"(attempt {attempt + 1}/{self.max_retries})...")
                if not final:
                    self._sleep(wait_time)
                continue

            if status >= 500:
                last_status = status
                last_error = response.text[:500]
                logger.warning(f"[{env}] BoondManager error {status} on {method} {path} "
                               f"(attempt {attempt + 1}/{self.max_retries})")
                if not final:
                    self._sleep(self._backoff(attempt))
                continue

            if status >= 400:
                # 4xx other than 429 will not change on retry
                detail = response.text[:500]
                logger.error(f"[{env}] BoondManager rejected {method} {path}: {status} {detail}")
                target = f"{entity_type.value} {entity_id}" if entity_type and entity_id else path
                raise RejectedOperation(
                    f"BoondManager {env} rejected {method} {target}: {status} - {detail}",
                    status=status,
                    entity_type=entity_type.value if entity_type else None,
                    entity_id=entity_id,
                    detail=detail,
                )

            return response

        raise TransientFailure(
            f"BoondManager {env} {method} {path} failed after {self.max_retries} attempts: "
            f"{last_status or last_error}",
            status=last_status,
            method=method,
            path=path,
            attempts=self.max_retries,
        )

    def _assert_can_write(self, operation: str) -> None:
        if not self.environment.writable:
            raise ProductionWriteError(
                f"Operation '{operation}' is not allowed on {self.environment.value}; use the sandbox"
            )

    def _json(self, response: requests.Response, method: str, path: str) -> Dict[str, Any]:
        if not response.content:
            return {}
        try:
            body = response.json()
        except ValueError as e:
            raise BoondError(f"BoondManager {self.environment.value} {method} {path} "
                             f"returned a non-JSON body: {e}") from e
        if not isinstance(body, dict):
            raise BoondError(f"BoondManager {self.environment.value} {method} {path} "
                             f"returned {type(body).__name__} instead of a JSON object")
        return body

    def _entity(self, data: Dict[str, Any], entity_type: EntityType) -> Entity:
        try:
            return normalize(data, entity_type)
        except ValueError as e:
            raise BoondError(f"BoondManager {self.environment.value} returned an unusable "
                             f"{entity_type.value}: {e}") from e

    # ==================== ENTITIES ====================

    def list(self, entity_type: EntityType, filters: Optional[Dict[str, Any]] = None) -> List[Entity]:
        """
        List all records of a type, walking every page

        Args:
            entity_type: Which collection to read
            filters: Extra query parameters (keywords, state, ...)
        """
        entities: List[Entity] = []
        page = 1

        while True:
            params: Dict[str, Any] = {
                "page": page,
                "maxResults": self.page_size,
                "sort": "-updateDate",
            }
            params.update(filters or {})

            response = self._request_with_retry("GET", entity_type.endpoint,
                                                entity_type=entity_type, params=params)
            items = self._json(response, "GET", entity_type.endpoint).get("data") or []
            entities.extend(normalize_many(items, entity_type))

            if len(items) < self.page_size:
                break
            if page >= self.max_pages:
                logger.warning(f"[{self.environment.value}] Stopped listing {entity_type.plural} "
                               f"after {page} pages")
                break
            page += 1

        logger.info(f"[{self.environment.value}] Listed {len(entities)} {entity_type.plural}")
        return entities

    def get(self, entity_type: EntityType, entity_id: str) -> Entity:
        """Get a record by ID"""
        path = f"{entity_type.endpoint}/{entity_id}"
        response = self._request_with_retry("GET", path,
                                            entity_type=entity_type, entity_id=str(entity_id))
        data = self._json(response, "GET", path).get("data")
        if not data:
            raise BoondError(f"{entity_type.value} {entity_id} returned no data")
        return self._entity(data, entity_type)

    def create(self, entity_type: EntityType, attributes: Dict[str, Any],
               relationships: Optional[Dict[str, RelationValue]] = None) -> Entity:
        """Create a new record (sandbox only)"""
        self._assert_can_write(f"create {entity_type.value}")
        body = create_payload(entity_type, attributes, relationships)
        response = self._request_with_retry("POST", entity_type.endpoint,
                                            entity_type=entity_type, json=body)
        data = self._json(response, "POST", entity_type.endpoint).get("data")
        if not data:
            raise BoondError(f"BoondManager create {entity_type.value} returned no data")
        return self._entity(data, entity_type)

    def delete(self, entity_type: EntityType, entity_id: str) -> None:
        """Delete a record (sandbox only)"""
        self._assert_can_write(f"delete {entity_type.value}")
        self._request_with_retry("DELETE", f"{entity_type.endpoint}/{entity_id}",
                                 entity_type=entity_type, entity_id=str(entity_id))

    # ==================== APPLICATION ====================

    def fetch_dictionary(self) -> Dict[str, Any]:
        """Raw application dictionary (states, types, civilities, currencies...)"""
        response = self._request_with_retry("GET", "/application/dictionary")
        return self._json(response, "GET", "/application/dictionary")

    def test_connection(self) -> bool:
        """Test connection by fetching the current user"""
        try:
            self._request_with_retry("GET", "/application/current-user")
            return True
        except BoondError as e:
            logger.error(f"BoondManager {self.environment.value} connection test failed: {e}")
            return False


def fetch_snapshot(client: BoondManagerClient, types: Optional[List[EntityType]] = None) -> Snapshot:
    """Read every record of the given types (all six by default) from one environment"""
    snapshot = Snapshot(environment=client.environment,
                        fetched_at=datetime.now(timezone.utc))
    for entity_type in types or SYNC_ORDER:
        snapshot.entities[entity_type] = client.list(entity_type)
    logger.info(f"[{client.environment.value}] Snapshot: {snapshot.stats}")
    return snapshot
