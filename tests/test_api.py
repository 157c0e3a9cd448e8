"""Tests for the control API."""
import pytest
from fastapi.testclient import TestClient

from conftest import PNR
from pnr_tracker.api.main import create_app
from pnr_tracker.config import config


@pytest.fixture
def client(service):
    with TestClient(create_app(service, start_scheduler=False)) as test_client:
        yield test_client


def register(client, pnr=PNR):
    return client.post("/tracking", json={"pnr": pnr, "owner_id": "user-1", "check_interval": 600})


def test_health(client):
    """Test health endpoint needs no key."""
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.json()["scheduler_running"] is False


def test_register_and_check(client, upstream):
    """Test registering, checking and reading back a PNR."""
    upstream.script(PNR, "WL/12")

    response = register(client)
    assert response.status_code == 201
    assert response.json()["record"]["pnr"] == PNR
    assert response.json()["next_check_at"] is not None

    response = client.post(f"/tracking/{PNR}/check")
    assert response.status_code == 200
    outcome = response.json()
    assert outcome["ok"] is True
    assert outcome["transition"]["kind"] == "first_seen"

    response = client.get(f"/tracking/{PNR}/history")
    assert response.status_code == 200
    assert [entry["new_status"] for entry in response.json()["entries"]] == ["WL/12"]
    assert response.json()["next_before_id"] is None

    response = client.get(f"/tracking/{PNR}/status")
    assert response.json()["cached_status"] == "WL/12"
    assert response.json()["current_status"] == "WL/12"
    assert response.json()["job_state"] == "scheduled"


def test_invalid_pnr_is_bad_request(client):
    """Test malformed PNRs map to 400."""
    assert register(client, pnr="12AB").status_code == 400
    assert client.post("/tracking/12AB/check").status_code == 400


def test_unknown_pnr_is_not_found(client):
    """Test untracked PNRs map to 404."""
    assert client.post(f"/tracking/{PNR}/check").status_code == 404
    assert client.get(f"/tracking/{PNR}/history").status_code == 404
    assert client.delete(f"/tracking/{PNR}").status_code == 404


def test_check_all(client):
    """Test batch endpoint reports per PNR and rejects empty input."""
    register(client)
    response = client.post("/check-all", json={"pnrs": [PNR]})
    assert response.status_code == 200
    assert response.json()["succeeded"] == 1
    assert PNR in response.json()["outcomes"]

    assert client.post("/check-all", json={"pnrs": []}).status_code == 400


def test_cancel_and_remove(client):
    """Test cancel keeps the record and remove deletes it."""
    register(client)

    response = client.delete(f"/tracking/{PNR}")
    assert response.json() == {"pnr": PNR, "cancelled": True, "removed": False}
    assert client.get(f"/tracking/{PNR}/status").json()["job_state"] == "cancelled"

    response = client.delete(f"/tracking/{PNR}", params={"remove": "true"})
    assert response.json()["removed"] is True
    assert client.get(f"/tracking/{PNR}/status").status_code == 404


def test_api_key_required_when_configured(client, monkeypatch):
    """Test protected routes check the X-API-KEY header."""
    monkeypatch.setattr(config, "API_KEY", "secret")
    assert client.get("/metrics").status_code == 403
    response = client.get("/metrics", headers={"X-API-KEY": "secret"})
    assert response.status_code == 200
    assert "active_records" in response.json()
    assert client.get("/health").status_code == 200
