"""
Tests for the BoondManager Sync HTTP API
"""

import csv
import io

import pytest
from fastapi.testclient import TestClient

import app as app_module
from app import app
from config import Config
from entities import EntityType, Environment
from errors import TransientFailure

COMPANY = EntityType.COMPANY
CANDIDATE = EntityType.CANDIDATE
RESOURCE = EntityType.RESOURCE

DICTIONARY = {"data": {"setting": {"state": {"resource": [{"id": 1, "value": "Disponible"}]}}}}


@pytest.fixture
def services(production_client, sandbox_client):
    """Wire the app to in-memory tenants"""
    production_client.dictionary = DICTIONARY
    sandbox_client.dictionary = DICTIONARY
    app_module.init_services(
        Config(raw={"sync": {"workers": 2}}),
        {Environment.PRODUCTION: production_client, Environment.SANDBOX: sandbox_client},
    )
    yield production_client, sandbox_client
    app_module.config = None
    app_module.clients = {}
    app_module.dictionary_cache = None
    app_module.sync_engine = None


@pytest.fixture
def client():
    """Test client fixture"""
    return TestClient(app)


def test_health_check(client):
    """Test health check endpoint"""
    response = client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert "timestamp" in data
    assert "version" in data


def test_endpoints_report_missing_configuration(client):
    response = client.post("/api/sync")
    assert response.status_code == 500
    assert response.json()["status"] == "error"

    assert client.get("/api/quality", params={"env": "sandbox"}).status_code == 500


def test_connection_status(client, services):
    response = client.get("/api/status")
    assert response.status_code == 200
    assert response.json()["connected"] == {"production": True, "sandbox": True}


def test_sync_returns_result(client, services, entity):
    production, sandbox = services
    production.records[COMPANY] = [entity(COMPANY, "P1", name="Alpha"), entity(COMPANY, "P2", name="Beta")]
    production.records[RESOURCE] = [entity(RESOURCE, "R1", firstName="A", lastName="B", rel_company="P2")]
    sandbox.fail_if = lambda t, attrs: attrs.get("name") == "Beta"

    response = client.post("/api/sync")

    assert response.status_code == 200
    data = response.json()
    assert data["totalRecords"] == 3
    assert data["successRecords"] == 2
    assert data["failedRecords"] == 1
    assert data["perType"]["company"]["errors"][0].startswith("ID P2:")
    assert data["issues"][0]["issue"] == "dangling reference dropped during sync"
    assert data["issues"][0]["severity"] == "warning"
    assert data["cancelled"] is False
    assert data["limitations"]


def test_sync_abort_returns_partial_result(client, services, entity, transient_error):
    production, _ = services
    production.records[COMPANY] = [entity(COMPANY, "P1", name="Alpha")]
    production.list_errors[EntityType.CONTACT] = transient_error

    response = client.post("/api/sync")

    assert response.status_code == 502
    data = response.json()
    assert data["status"] == "error"
    assert data["result"]["perType"]["company"]["success"] == 1


def test_quality_analysis(client, services, entity):
    production, _ = services
    production.records[CANDIDATE] = [
        entity(CANDIDATE, "1", firstName="Jean", lastName="Dupont", email="Jean.Dupont@X.com"),
        entity(CANDIDATE, "2", firstName="Jean", lastName="Dupont", email=" jean.dupont@x.com "),
    ]

    response = client.get("/api/quality", params={"env": "production"})

    assert response.status_code == 200
    data = response.json()
    assert data["summary"]["duplicateGroups"] == 1
    assert data["summary"]["totalIssues"] == len(data["issues"]) == 2
    assert data["duplicates"][0]["entityType"] == "candidate"
    assert [item["id"] for item in data["duplicates"][0]["items"]] == ["1", "2"]


def test_quality_rejects_unknown_environment(client, services):
    response = client.get("/api/quality", params={"env": "staging"})
    assert response.status_code == 422


def test_quality_upstream_failure(client, services, transient_error):
    production, _ = services
    production.list_errors[COMPANY] = transient_error

    response = client.get("/api/quality", params={"env": "production"})

    assert response.status_code == 502


def test_export_csv_download(client, services, entity):
    _, sandbox = services
    sandbox.records[CANDIDATE] = [
        entity(CANDIDATE, "1", firstName="jean", lastName="Dupont", phone1="06.12.34.56.78"),
    ]

    response = client.get("/api/export", params={
        "env": "sandbox", "format": "csv", "clean": "true", "entity": "candidates",
    })

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    disposition = response.headers["content-disposition"]
    assert "filename=candidates_sandbox_" in disposition
    assert disposition.endswith(".csv")

    [row] = list(csv.DictReader(io.StringIO(response.text)))
    assert row["firstName"] == "Jean"
    assert row["phone1"] == "+33612345678"


def test_export_json_all_types(client, services, entity):
    production, _ = services
    production.records[COMPANY] = [entity(COMPANY, "1", name="Acme")]

    response = client.get("/api/export", params={"env": "production"})

    assert response.status_code == 200
    assert "filename=all_production_" in response.headers["content-disposition"]
    data = response.json()
    assert data["stats"]["companies"] == 1
    assert data["entities"]["companies"][0]["attributes"] == {"name": "Acme"}


@pytest.mark.parametrize("params", [
    {"env": "sandbox", "format": "xml"},
    {"env": "sandbox", "entity": "invoices"},
])
def test_export_rejects_bad_parameters(client, services, params):
    response = client.get("/api/export", params=params)
    assert response.status_code == 400


def test_export_preview(client, services, entity):
    _, sandbox = services
    sandbox.records[CANDIDATE] = [entity(CANDIDATE, "1", firstName="jean", lastName="B", email="A@B.FR")]

    response = client.post("/api/export/preview", params={"env": "sandbox"})

    assert response.status_code == 200
    attributes = response.json()["entities"]["candidates"][0]["attributes"]
    assert attributes["firstName"] == "Jean"
    assert attributes["email"] == "a@b.fr"


def test_dictionary_cached_within_ttl(client, services):
    _, sandbox = services

    first = client.get("/api/dictionary", params={"env": "sandbox"})
    second = client.get("/api/dictionary", params={"env": "sandbox", "refresh": "false"})

    assert first.status_code == second.status_code == 200
    assert sandbox.dictionary_calls == 1
    assert first.json()["cached"] is False
    assert second.json()["cached"] is True
    assert second.json()["data"]["resourceStates"] == [{"id": 1, "value": "Disponible"}]

    client.get("/api/dictionary", params={"env": "sandbox", "refresh": "true"})
    assert sandbox.dictionary_calls == 2


def test_dictionary_failure_without_cache(client, services):
    production, _ = services
    production.dictionary_error = TransientFailure("down", status=503)

    response = client.get("/api/dictionary", params={"env": "production"})

    assert response.status_code == 502


def test_dictionary_clear(client, services):
    _, sandbox = services
    client.get("/api/dictionary", params={"env": "sandbox"})

    response = client.post("/api/dictionary/clear", params={"env": "sandbox"})
    client.get("/api/dictionary", params={"env": "sandbox"})

    assert response.json() == {"status": "success", "cleared": "sandbox"}
    assert sandbox.dictionary_calls == 2
