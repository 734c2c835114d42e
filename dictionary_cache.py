"""
BoondManager Dictionary Service
Fetches and caches the application dictionary (states, types, civilities,
currencies...) per environment. Falls back to default labels when a
category is unavailable.
"""

import logging
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from entities import Environment
from errors import BoondError

logger = logging.getLogger(__name__)

# =============================================================================
# DEFAULT FALLBACK LABELS
# =============================================================================

DEFAULT_LABELS: Dict[str, Dict[int, str]] = {
    "candidateStates": {
        0: "Nouveau", 1: "A qualifier", 2: "Qualifié", 3: "En cours", 4: "Entretien",
        5: "Proposition", 6: "Embauché", 7: "Refusé", 8: "Archivé",
    },
    "resourceStates": {
        0: "Non défini", 1: "Disponible", 2: "En mission", 3: "Intercontrat",
        4: "Indisponible", 5: "Sorti",
    },
    "opportunityStates": {0: "En cours", 1: "Gagnée", 2: "Perdue", 3: "Abandonnée"},
    "projectStates": {0: "En préparation", 1: "En cours", 2: "Terminé", 3: "Annulé"},
    "companyStates": {0: "Prospect", 1: "Client", 2: "Ancien client", 3: "Fournisseur", 4: "Archivé"},
    "positioningStates": {0: "En attente", 1: "Proposé", 2: "Validé", 3: "Refusé", 4: "Annulé"},
    "actionTypes": {
        1: "Positionnement", 2: "Entretien client", 3: "Entretien interne", 4: "Proposition",
        5: "Démarrage", 6: "Appel", 7: "Email", 8: "Réunion", 9: "Autre",
    },
}

UNKNOWN_LABEL = "Inconnu"

# BoondManager nests its dictionary under data.setting; map it to flat categories
_SETTING_GROUPS = {
    "state": {
        "candidate": "candidateStates", "resource": "resourceStates",
        "opportunity": "opportunityStates", "project": "projectStates",
        "company": "companyStates", "contact": "contactStates",
        "positioning": "positioningStates", "action": "actionStates",
    },
    "typeOf": {
        "candidate": "candidateTypes", "resource": "resourceTypes",
        "opportunity": "opportunityTypes", "project": "projectTypes",
        "company": "companyTypes", "action": "actionTypes", "employee": "employeeTypes",
    },
    "mode": {"opportunity": "opportunityModes", "project": "projectModes"},
}

_SETTING_DIRECT = {
    "civility": "civilities", "country": "countries", "currency": "currencies",
    "languageSpoken": "languages", "expertiseArea": "expertises", "experience": "expertiseLevels",
    "agency": "agencies", "pole": "poles", "origin": "origins", "source": "sources",
    "durationUnit": "durationUnits", "activityArea": "activityAreas", "tool": "tools",
}


@dataclass
class DictionaryItem:
    id: Any
    value: str
    color: Optional[str] = None
    isDefault: Optional[bool] = None
    isActive: Optional[bool] = None
    order: Optional[int] = None

    @classmethod
    def from_raw(cls, raw: Any) -> Optional["DictionaryItem"]:
        if not isinstance(raw, dict) or "id" not in raw:
            return None
        return cls(
            id=raw["id"],
            value=str(raw.get("value", "")),
            color=raw.get("color"),
            isDefault=raw.get("isDefault"),
            isActive=raw.get("isActive"),
            order=raw.get("order"),
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"id": self.id, "value": self.value}
        for key in ("color", "isDefault", "isActive", "order"):
            value = getattr(self, key)
            if value is not None:
                out[key] = value
        return out


@dataclass
class Dictionary:
    """Categories of pick-list items for one environment"""
    environment: Environment
    categories: Dict[str, List[DictionaryItem]] = field(default_factory=dict)
    fetched_at: Dict[str, float] = field(default_factory=dict)

    def items(self, category: str) -> List[DictionaryItem]:
        return self.categories.get(category, [])

    def to_dict(self) -> Dict[str, Any]:
        return {name: [item.to_dict() for item in items] for name, items in self.categories.items()}


@dataclass
class DictionaryResult:
    dictionary: Dictionary
    cached: bool = False
    stale: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "environment": self.dictionary.environment.value,
            "cached": self.cached,
            "stale": self.stale,
            "data": self.dictionary.to_dict(),
        }


def extract_categories(raw: Dict[str, Any]) -> Dict[str, List[Any]]:
    """
    Flatten a raw dictionary response into {category: [items]}.

    Handles the data.setting.* layout BoondManager actually returns, the
    JSON:API data.attributes layout, and an already-flat mapping.
    """
    data = raw.get("data") if isinstance(raw, dict) else None
    setting = data.get("setting") if isinstance(data, dict) else None

    if isinstance(setting, dict):
        categories: Dict[str, List[Any]] = {}
        for group, mapping in _SETTING_GROUPS.items():
            section = setting.get(group)
            if not isinstance(section, dict):
                continue
            for key, category in mapping.items():
                if isinstance(section.get(key), list):
                    categories[category] = section[key]
        for key, category in _SETTING_DIRECT.items():
            if isinstance(setting.get(key), list):
                categories[category] = setting[key]
        return categories

    if isinstance(data, dict) and isinstance(data.get("attributes"), dict):
        return {k: v for k, v in data["attributes"].items() if isinstance(v, list)}

    if isinstance(raw, dict):
        return {k: v for k, v in raw.items() if isinstance(v, list)}

    return {}


def parse_dictionary(raw: Dict[str, Any], environment: Environment, fetched_at: float) -> Dictionary:
    categories = {}
    for name, items in extract_categories(raw).items():
        categories[name] = [item for item in (DictionaryItem.from_raw(i) for i in items) if item]
    return Dictionary(
        environment=environment,
        categories=categories,
        fetched_at={name: fetched_at for name in categories},
    )


# =============================================================================
# CACHE
# =============================================================================

class DictionaryCache:
    """
    TTL cache of dictionaries keyed by environment.

    Fresh reads make no network call. Concurrent refreshes of the same
    environment share one in-flight fetch. When a refresh fails and an older
    value exists, the older value is returned flagged as stale.
    """

    def __init__(self, fetchers: Dict[Environment, Callable[[], Dict[str, Any]]],
                 ttl: float = 3600, clock: Callable[[], float] = time.monotonic):
        """
        Args:
            fetchers: One callable per environment returning the raw dictionary JSON
                      (normally BoondManagerClient.fetch_dictionary)
            ttl: Seconds a fetched dictionary stays fresh
            clock: Monotonic clock, injectable for tests
        """
        self._fetchers = {Environment(k): v for k, v in fetchers.items()}
        self.ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[Environment, Dictionary] = {}
        self._loaded_at: Dict[Environment, float] = {}
        self._inflight: Dict[Environment, Future] = {}

    def _is_fresh(self, environment: Environment, now: float) -> bool:
        loaded = self._loaded_at.get(environment)
        return loaded is not None and now - loaded < self.ttl

    def get(self, environment: Environment, force_refresh: bool = False) -> DictionaryResult:
        environment = Environment(environment)

        with self._lock:
            now = self._clock()
            if not force_refresh and self._is_fresh(environment, now):
                return DictionaryResult(self._entries[environment], cached=True)

            future = self._inflight.get(environment)
            owner = future is None
            if owner:
                future = Future()
                self._inflight[environment] = future

        if owner:
            self._refresh(environment, future)

        try:
            return DictionaryResult(future.result())
        except Exception as e:
            with self._lock:
                stale = self._entries.get(environment)
            if stale is None:
                raise
            logger.warning(f"Dictionary refresh failed for {environment.value}, serving stale copy: {e}")
            return DictionaryResult(stale, cached=True, stale=True)

    def _refresh(self, environment: Environment, future: Future) -> None:
        fetcher = self._fetchers.get(environment)
        try:
            if fetcher is None:
                raise KeyError(f"No dictionary source configured for {environment.value}")
            raw = fetcher()
            now = self._clock()
            dictionary = parse_dictionary(raw, environment, now)
        except Exception as e:
            with self._lock:
                self._inflight.pop(environment, None)
            future.set_exception(e)
            return

        with self._lock:
            self._entries[environment] = dictionary
            self._loaded_at[environment] = now
            self._inflight.pop(environment, None)
        logger.info(f"Dictionary refreshed for {environment.value}: {len(dictionary.categories)} categories")
        future.set_result(dictionary)

    def clear(self, environment: Optional[Environment] = None) -> None:
        """Drop cached dictionaries (one environment or all)"""
        with self._lock:
            if environment is None:
                self._entries.clear()
                self._loaded_at.clear()
            else:
                self._entries.pop(Environment(environment), None)
                self._loaded_at.pop(Environment(environment), None)

    def label(self, environment: Environment, category: str, item_id: Any) -> str:
        """Label for a dictionary id, using built-in defaults when the dictionary lacks it"""
        try:
            items = self.get(environment).dictionary.items(category)
        except (BoondError, KeyError) as e:
            logger.warning(f"Dictionary unavailable for {Environment(environment).value}: {e}")
            items = []

        for item in items:
            if str(item.id) == str(item_id):
                return item.value

        defaults = DEFAULT_LABELS.get(category, {})
        try:
            return defaults.get(int(item_id), UNKNOWN_LABEL)
        except (TypeError, ValueError):
            return UNKNOWN_LABEL
