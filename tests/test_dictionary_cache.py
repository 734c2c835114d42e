"""
Tests for the dictionary cache
"""

import threading
import time

import pytest

from dictionary_cache import DictionaryCache, extract_categories
from entities import Environment
from errors import TransientFailure

SANDBOX = Environment.SANDBOX
PRODUCTION = Environment.PRODUCTION

RAW = {
    "data": {
        "setting": {
            "state": {
                "resource": [{"id": 1, "value": "Available", "color": "green"}],
                "candidate": [{"id": 0, "value": "New", "isDefault": True}],
            },
            "typeOf": {"opportunity": [{"id": 2, "value": "Fixed price"}]},
            "civility": [{"id": 0, "value": "M."}, {"id": 1, "value": "Mme"}],
        }
    }
}


class CountingFetcher:
    def __init__(self, payload=None):
        self.calls = 0
        self.payload = payload if payload is not None else RAW
        self.error = None

    def __call__(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.payload


def test_second_read_within_ttl_is_served_from_cache(clock):
    fetch = CountingFetcher()
    cache = DictionaryCache({SANDBOX: fetch}, ttl=60, clock=clock)

    first = cache.get(SANDBOX)
    second = cache.get(SANDBOX)

    assert fetch.calls == 1
    assert first.cached is False
    assert second.cached is True
    assert second.dictionary is first.dictionary


def test_forced_refresh_always_fetches(clock):
    fetch = CountingFetcher()
    cache = DictionaryCache({SANDBOX: fetch}, ttl=60, clock=clock)

    cache.get(SANDBOX, force_refresh=False)
    result = cache.get(SANDBOX, force_refresh=True)

    assert fetch.calls == 2
    assert result.cached is False


def test_expired_entry_is_refetched(clock):
    fetch = CountingFetcher()
    cache = DictionaryCache({SANDBOX: fetch}, ttl=60, clock=clock)

    cache.get(SANDBOX)
    clock.advance(59)
    cache.get(SANDBOX)
    assert fetch.calls == 1

    clock.advance(1)
    cache.get(SANDBOX)
    assert fetch.calls == 2


def test_environments_are_cached_separately(clock):
    sandbox, production = CountingFetcher(), CountingFetcher({"data": {"attributes": {"currencies": []}}})
    cache = DictionaryCache({SANDBOX: sandbox, PRODUCTION: production}, clock=clock)

    cache.get(SANDBOX)
    cache.get(PRODUCTION)
    cache.get(SANDBOX)

    assert (sandbox.calls, production.calls) == (1, 1)
    assert list(cache.get(PRODUCTION).dictionary.categories) == ["currencies"]


def test_failed_refresh_serves_stale_copy(clock):
    fetch = CountingFetcher()
    cache = DictionaryCache({SANDBOX: fetch}, ttl=60, clock=clock)
    good = cache.get(SANDBOX).dictionary

    fetch.error = TransientFailure("BoondManager sandbox GET /application/dictionary failed", status=503)
    result = cache.get(SANDBOX, force_refresh=True)

    assert result.stale is True
    assert result.cached is True
    assert result.dictionary is good
    assert result.to_dict()["stale"] is True


def test_failed_fetch_without_cache_propagates(clock):
    fetch = CountingFetcher()
    fetch.error = TransientFailure("down", status=503)
    cache = DictionaryCache({SANDBOX: fetch}, clock=clock)

    with pytest.raises(TransientFailure):
        cache.get(SANDBOX)

    # The failure is not cached
    fetch.error = None
    assert cache.get(SANDBOX).stale is False
    assert fetch.calls == 2


def test_concurrent_refreshes_share_one_fetch():
    started, release = threading.Event(), threading.Event()
    calls = []

    def slow_fetch():
        calls.append(1)
        started.set()
        release.wait(timeout=5)
        return RAW

    cache = DictionaryCache({SANDBOX: slow_fetch}, ttl=60)
    results = []

    def reader():
        results.append(cache.get(SANDBOX))

    threads = [threading.Thread(target=reader) for _ in range(5)]
    for t in threads:
        t.start()
    assert started.wait(timeout=5)
    time.sleep(0.05)
    release.set()
    for t in threads:
        t.join(timeout=5)

    assert len(calls) == 1
    assert len(results) == 5
    assert len({id(r.dictionary) for r in results}) == 1


def test_clear_forces_next_fetch(clock):
    fetch = CountingFetcher()
    cache = DictionaryCache({SANDBOX: fetch}, clock=clock)

    cache.get(SANDBOX)
    cache.clear(SANDBOX)
    cache.get(SANDBOX)
    cache.clear()
    cache.get(SANDBOX)

    assert fetch.calls == 3


def test_setting_layout_is_flattened():
    categories = extract_categories(RAW)

    assert set(categories) == {"resourceStates", "candidateStates", "opportunityTypes", "civilities"}


def test_items_keep_optional_fields(clock):
    cache = DictionaryCache({SANDBOX: CountingFetcher()}, clock=clock)

    data = cache.get(SANDBOX).to_dict()

    assert data["environment"] == "sandbox"
    assert data["data"]["resourceStates"] == [{"id": 1, "value": "Available", "color": "green"}]
    assert data["data"]["candidateStates"] == [{"id": 0, "value": "New", "isDefault": True}]


def test_label_lookup_with_defaults(clock):
    cache = DictionaryCache({SANDBOX: CountingFetcher()}, clock=clock)

    assert cache.label(SANDBOX, "resourceStates", 1) == "Available"
    assert cache.label(SANDBOX, "projectStates", 2) == "Terminé"
    assert cache.label(SANDBOX, "projectStates", 42) == "Inconnu"
    assert cache.label(SANDBOX, "civilities", "1") == "Mme"


def test_label_without_dictionary_source_uses_defaults(clock):
    cache = DictionaryCache({}, clock=clock)

    assert cache.label(PRODUCTION, "opportunityStates", 1) == "Gagnée"
