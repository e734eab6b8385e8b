# ============================================================================
# Pitboss -- FastAPI Server Tests (tests/test_api_server.py)
# ============================================================================
#
# WHAT THIS FILE DOES:
#   Tests all REST API endpoints using FastAPI TestClient.
#   No live server needed -- TestClient runs everything in-process.
#   Each test gets a freshly booted engine on a throwaway state file,
#   with the worker threads left off.
#
# USAGE:
#   pytest tests/test_api_server.py -v
#
# INTERNET ACCESS: NONE
# ============================================================================

import pytest

import sys as _sys, os as _os
_sys.path.insert(0, _os.path.dirname(__file__))
from conftest import FakeClock, make_config

from fastapi.testclient import TestClient

from pitboss.api.server import app, state, APP_VERSION
from pitboss.core.boot import boot_pitboss


POT_LINE = "[game] [ERROR] pot_mismatch table=42 expected=1000 actual=950"
CHIP_LINE = "ERROR chip_mismatch table=7"


@pytest.fixture
def client(tmp_path):
    """Create a TestClient with lifespan context around a test engine."""
    state.engine = boot_pitboss(config=make_config(tmp_path), clock=FakeClock())
    state.start_workers = False
    try:
        with TestClient(app) as c:
            yield c
    finally:
        state.engine = None
        state.start_workers = True


def _ingest(client, *lines):
    r = client.post("/ingest", json={"lines": list(lines), "source": "game"})
    assert r.status_code == 200
    return r.json()


# -------------------------------------------------------------------
# Health endpoint
# -------------------------------------------------------------------

class TestHealth:
    def test_health_returns_200(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        data = r.json()
        assert data["status"] == "ok"
        assert data["version"] == APP_VERSION
        assert data["running"] is False
        assert data["escalated"] is False

    def test_health_reports_escalation(self, client):
        _ingest(client, CHIP_LINE)
        assert client.get("/health").json()["escalated"] is True


# -------------------------------------------------------------------
# Ingest endpoint
# -------------------------------------------------------------------

class TestIngest:
    def test_ingest_counts(self, client):
        data = _ingest(client, POT_LINE, POT_LINE, "INFO hand dealt table=42", "DEBUG shuffling")
        assert data["accepted"] == 4
        assert data["events"] == 3
        assert len(data["issue_ids"]) == 1
        assert data["created"] == data["issue_ids"]
        assert data["deferred"] == 0

    def test_ingest_requires_lines(self, client):
        r = client.post("/ingest", json={"lines": []})
        assert r.status_code == 422


# -------------------------------------------------------------------
# Issue endpoints
# -------------------------------------------------------------------

class TestIssues:
    def test_list_issues(self, client):
        _ingest(client, POT_LINE, "ERROR something broke badly")
        r = client.get("/issues")
        assert r.status_code == 200
        body = r.json()
        assert body["ok"] is True
        assert body["data"]["issues"][0]["type"] == "pot_mismatch"

        high = client.get("/issues", params={"severity": "high"}).json()
        assert [i["type"] for i in high["data"]["issues"]] == ["pot_mismatch"]

    def test_bad_status_filter_is_400(self, client):
        r = client.get("/issues", params={"status": "sideways"})
        assert r.status_code == 400
        assert r.json()["error"]["code"] == "QRY-001"

    def test_get_issue(self, client):
        issue_id = _ingest(client, POT_LINE)["issue_ids"][0]
        r = client.get(f"/issues/{issue_id}")
        assert r.status_code == 200
        data = r.json()["data"]
        assert data["id"] == issue_id
        assert data["status"] == "active"

    def test_missing_issue_is_404(self, client):
        r = client.get("/issues/no-such-issue")
        assert r.status_code == 404
        body = r.json()
        assert body["ok"] is False
        assert body["error"]["code"] == "KNB-001"
        assert body["error"]["fix_suggestion"]
        assert body["error"]["issue_id"]

    def test_fixes_and_related(self, client):
        issue_id = _ingest(client, POT_LINE)["issue_ids"][0]
        fixes = client.get(f"/issues/{issue_id}/fixes").json()
        assert fixes["data"]["issue_id"] == issue_id
        assert fixes["data"]["suggestions"] == []
        related = client.get(f"/issues/{issue_id}/related").json()
        assert related["data"]["related"] == []


# -------------------------------------------------------------------
# Attempts and clearance
# -------------------------------------------------------------------

class TestAttempts:
    def test_start_fail_succeed(self, client):
        """
        WHAT: The attempt loop over HTTP: start -> failure -> success.
        WHY:  Operators and agents drive remediation through this route.
        """
        issue_id = _ingest(client, POT_LINE)["issue_ids"][0]
        url = f"/issues/{issue_id}/attempts"

        started = client.post(url, json={"method": "restart_table"}).json()
        ticket_id = started["data"]["ticket_id"]

        failed = client.post(url, json={
            "method": "restart_table", "result": "failure", "ticket_id": ticket_id,
        }).json()
        assert failed["data"]["issue"]["status"] == "active"
        assert failed["data"]["suggestions"][0]["method"] == "restart_table"

        fixed = client.post(url, json={
            "method": "rollback_pot", "result": "success", "duration_ms": 4000,
            "context": {"operator": "sam"},
        }).json()
        assert fixed["data"]["issue"]["status"] == "resolved"
        assert fixed["data"]["attempt"]["context"]["operator"] == "sam"

    def test_bad_result_is_422(self, client):
        issue_id = _ingest(client, POT_LINE)["issue_ids"][0]
        r = client.post(f"/issues/{issue_id}/attempts", json={"method": "x", "result": "maybe"})
        assert r.status_code == 422

    def test_clear_then_restart_is_409(self, client):
        issue_id = _ingest(client, POT_LINE)["issue_ids"][0]
        cleared = client.post(f"/issues/{issue_id}/clear", json={"note": "replayed hand"})
        assert cleared.status_code == 200
        assert cleared.json()["data"]["resolution"] == "manual"

        r = client.post(f"/issues/{issue_id}/attempts", json={"method": "restart_table"})
        assert r.status_code == 409
        assert r.json()["error"]["code"] == "DEC-001"

    def test_clear_without_body(self, client):
        issue_id = _ingest(client, POT_LINE)["issue_ids"][0]
        r = client.post(f"/issues/{issue_id}/clear")
        assert r.status_code == 200
        assert r.json()["data"]["status"] == "resolved"


# -------------------------------------------------------------------
# State, query and stats
# -------------------------------------------------------------------

class TestStateAndQuery:
    def test_write_state(self, client):
        r = client.put("/state", json={"path": "game.tables.42.pot", "value": 950})
        assert r.status_code == 200
        assert r.json() == {"path": "game.tables.42.pot", "version": 1}
        r = client.put("/state", json={"path": "game.tables.42.pot", "value": 1000})
        assert r.json()["version"] == 2

    def test_write_invalid_path_is_400(self, client):
        r = client.put("/state", json={"path": "weather.today", "value": 1})
        assert r.status_code == 400
        body = r.json()
        assert body["ok"] is False
        assert body["error"]["code"] == "STA-001"

    def test_text_query(self, client):
        _ingest(client, POT_LINE)
        r = client.post("/query", json={"question": "active issues"})
        assert r.status_code == 200
        assert r.json()["data"]["count"] == 1

    def test_structured_query(self, client):
        _ingest(client, POT_LINE)
        r = client.post("/query", json={"question": {"kind": "errors", "minutes": 5}})
        assert r.status_code == 200
        assert r.json()["data"]["count"] == 1

    def test_empty_question_is_400(self, client):
        r = client.post("/query", json={"question": ""})
        assert r.status_code == 400
        assert r.json()["error"]["code"] == "QRY-001"

    def test_stats_include_engine_status(self, client):
        _ingest(client, POT_LINE)
        r = client.get("/stats")
        assert r.status_code == 200
        data = r.json()["data"]
        assert "detection" in data
        assert data["engine"]["running"] is False
        assert data["engine"]["boot"]["success"] is True
