"""
Tests for dashboard.app - the JSON API
Tests each route through the Flask test client with a real KnowledgeService.
"""

from __future__ import annotations

from unittest.mock import patch

import pytest

from agent.learning_worker import AnalysisResult
from conftest import assert_has_keys
from knowledge.builtin import populate_builtins
from knowledge.service import KnowledgeService
from knowledge.types import (
    IcaAnalysisResponse,
    KnowledgeBase,
    KnowledgeSource,
    LearningConfig,
    ProcessCategory,
    ProcessFingerprint,
)


@pytest.fixture
def service(tmp_path, learning_config) -> KnowledgeService:
    kb = KnowledgeBase(version=1)
    populate_builtins(kb)
    return KnowledgeService(kb, learning_config, path=tmp_path / "kb.json")


@pytest.fixture
def client(service):
    from dashboard.app import build_app

    app = build_app(service)
    app.config["TESTING"] = True
    return app.test_client()


class TestPing:
    """Tests for /api/ping"""

    def test_ping_reports_counts(self, client, service):
        """Test that ping drains results and reports counts"""
        service.results.put(
            AnalysisResult(
                ProcessFingerprint("vite", 5173),
                IcaAnalysisResponse("Web UI", "d", ProcessCategory.FRONTEND, None, 0.7),
                KnowledgeSource.API_LEARNED,
            )
        )
        r = client.get("/api/ping")
        assert r.status_code == 200
        data = r.get_json()
        assert_has_keys(data, ("ok", "drained", "entries", "pending", "in_flight"))
        assert data["ok"] is True
        assert data["drained"] == 1
        assert data["entries"] == len(service.entries())


class TestKnowledge:
    """Tests for /api/knowledge"""

    def test_lists_entries_sorted(self, client):
        """Test that all entries come back sorted by name"""
        data = client.get("/api/knowledge").get_json()
        names = [e["display_name"] for e in data["entries"]]
        assert names == sorted(names, key=str.lower)
        assert_has_keys(data["entries"][0], ("fingerprint", "category", "source", "confidence"))

    def test_category_filter(self, client):
        """Test filtering by category"""
        data = client.get("/api/knowledge?category=cache").get_json()
        assert {e["display_name"] for e in data["entries"]} == {"Redis Cache", "Memcached"}

    def test_text_filter(self, client):
        """Test filtering by a search string"""
        data = client.get("/api/knowledge?q=postgres").get_json()
        assert [e["display_name"] for e in data["entries"]] == ["PostgreSQL Database"]

    def test_bad_category(self, client):
        """Test that an unknown category is a 400"""
        r = client.get("/api/knowledge?category=spaceship")
        assert r.status_code == 400
        assert r.get_json()["ok"] is False


class TestLookup:
    """Tests for /api/knowledge/lookup"""

    def test_builtin_by_command(self, client):
        """Test that a port-specific lookup falls back to the builtin"""
        r = client.get("/api/knowledge/lookup?command=redis-server&port=6379")
        assert r.status_code == 200
        data = r.get_json()
        assert data["entry"]["display_name"] == "Redis Cache"
        assert data["key"] == ProcessFingerprint("redis-server", 6379).hash_key()

    def test_unknown(self, client):
        """Test that an unknown process is a 404"""
        r = client.get("/api/knowledge/lookup?command=mystery")
        assert r.status_code == 404
        assert r.get_json()["ok"] is False

    @pytest.mark.parametrize("query", ["", "?command=", "?command=node&port=abc", "?command=node&port=70000"])
    def test_bad_input(self, client, query):
        """Test that missing commands and bad ports are a 400"""
        r = client.get(f"/api/knowledge/lookup{query}")
        assert r.status_code == 400


class TestSightings:
    """Tests for POST /api/sightings and /api/pending"""

    def test_sighting_becomes_pending(self, client):
        """Test that a reported sighting shows up in the pending list"""
        r = client.post(
            "/api/sightings",
            json={"command": "node", "port": 3001, "container_prefix": "dss", "context": {"container_name": "dss_app"}},
        )
        assert r.status_code == 200
        body = r.get_json()
        assert body["queued"] is False
        assert body["key"] == ProcessFingerprint("node", 3001, container_prefix="dss").hash_key()

        pending = client.get("/api/pending").get_json()["pending"]
        assert len(pending) == 1
        assert pending[0]["context"]["container_name"] == "dss_app"
        assert pending[0]["context"]["container_prefix"] == "dss"

    def test_second_sighting_queues(self, client, service):
        """Test that reaching min_sightings queues the analysis"""
        payload = {"command": "dss-api", "port": 3001}
        client.post("/api/sightings", json=payload)
        body = client.post("/api/sightings", json=payload).get_json()
        assert body["queued"] is True
        assert service.requests.qsize() == 1

    @pytest.mark.parametrize(
        "payload",
        [
            {},
            {"command": ""},
            {"command": "node", "port": "abc"},
            {"command": "node", "port": True},
            {"command": "node", "context": "nope"},
            {"command": "node", "context": {"project_name": 5}},
            {"command": "node", "context": {"container_name": ["a"]}},
        ],
    )
    def test_bad_payloads(self, client, payload):
        """Test that malformed sightings are a 400"""
        r = client.post("/api/sightings", json=payload)
        assert r.status_code == 400
        assert r.get_json()["ok"] is False

    def test_bad_context_field_is_rejected_every_time(self, tmp_path):
        """Test that a non-string context field is a 400 before any sighting is recorded"""
        from dashboard.app import build_app

        svc = KnowledgeService(
            KnowledgeBase(version=1), LearningConfig(enabled=False), path=tmp_path / "kb.json"
        )
        client = build_app(svc).test_client()
        payload = {"command": "mystery", "port": 4000, "context": {"project_name": 5}}
        statuses = [client.post("/api/sightings", json=payload).status_code for _ in range(2)]
        assert statuses == [400, 400]
        assert svc.pending() == [] and svc.entries() == []

    def test_builtin_command_is_not_pending(self, client):
        """Test that a builtin command on its usual port is labelled without learning"""
        body = client.post("/api/sightings", json={"command": "postgres", "port": 5432}).get_json()
        assert body["queued"] is False
        assert client.get("/api/pending").get_json()["pending"] == []

    def test_non_json_body(self, client):
        """Test that a non-JSON body is a 400"""
        r = client.post("/api/sightings", data="hello", content_type="text/plain")
        assert r.status_code == 400


class TestRunDashboard:
    """Tests for run_dashboard"""

    def test_serves_with_waitress(self, service):
        """Test that the app is handed to waitress with the configured address"""
        from dashboard import app as dashboard_app

        with patch.object(dashboard_app, "serve") as serve:
            dashboard_app.run_dashboard(service, host="127.0.0.1", port=9999)
        serve.assert_called_once()
        assert serve.call_args.kwargs == {"host": "127.0.0.1", "port": 9999}


def test_ping_live(server_up, base_url, http):
    """Smoke test against a running dashboard (skipped when none is up)"""
    r = http.get(f"{base_url}/api/ping")
    assert r.status_code == 200
    assert r.json()["ok"] is True
