"""
Tests for the FastAPI surface.
"""

import pytest
from fastapi.testclient import TestClient

from p2p_workflow import __version__
from p2p_workflow.api import create_app


ORG = "org-a"


@pytest.fixture
def client(dispatcher):
    return TestClient(create_app(dispatcher))


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "version": __version__}


def test_config_is_sanitized(client):
    body = client.get("/config").json()
    assert body["auto_approve_limit"] == 1000
    assert [level["level"] for level in body["approval_levels"]] == ["manager", "director", "cfo"]
    assert "api_host" not in body


def test_dispatch_status_mirrors_response(client, seed_po):
    seed_po("PO-1", approval_status="approved")

    ok = client.post("/dispatch", json={"organization_id": ORG, "action": "process_po", "transaction_id": "PO-1"})
    missing = client.post("/dispatch", json={"organization_id": ORG, "action": "process_po", "transaction_id": "PO-9"})
    malformed = client.post("/dispatch", json={"action": "process_po"})

    assert ok.status_code == 200
    assert ok.json()["po_status"] == "sent_to_supplier"
    assert missing.status_code == 404
    assert missing.json()["error_type"] == "not_found"
    assert malformed.status_code == 400
    assert malformed.json()["success"] is False


def test_dispatch_rejects_non_object_body(client):
    response = client.post("/dispatch", json=["process_po"])
    assert response.status_code == 400
    assert response.json()["error_type"] == "validation_error"


def test_batch_dates_serialize(client):
    response = client.post("/dispatch", json={
        "organization_id": ORG,
        "action": "run_payment_batch",
        "metadata": {"payment_date": "2026-03-09"},
    })
    assert response.status_code == 200
    assert response.json()["payment_date"] == "2026-03-09"
