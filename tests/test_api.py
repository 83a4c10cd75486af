"""Tests for the FastAPI backend in api/server.py."""

from __future__ import annotations

from unittest.mock import patch

from fastapi.testclient import TestClient

from freightlens.api.server import create_app
from freightlens.llm.router import LLMResponse


def test_health(known_data_client):
    response = known_data_client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["db_exists"] is True


def test_tools_listing(known_data_client):
    tools = known_data_client.get("/tools").json()["tools"]
    assert len(tools) == 23
    assert all({"name", "description", "input_schema"} <= set(t) for t in tools)


def test_generate_report(known_data_client, scripted_llm):
    llm = scripted_llm([LLMResponse(text="You have 5 shipments.")])
    with patch("freightlens.orchestrator.runtime.complete", new=llm):
        response = known_data_client.post(
            "/generate-report", json={"prompt": "How many shipments?", "customer_id": "c-100"}
        )
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["message"] == "You have 5 shipments."
    assert body["rounds"] == 1


def test_blank_prompt_rejected(known_data_client):
    response = known_data_client.post("/generate-report", json={"prompt": "   ", "customer_id": "c-100"})
    assert response.status_code == 400


def test_missing_customer_is_validation_error(known_data_client):
    response = known_data_client.post("/generate-report", json={"prompt": "Spend"})
    assert response.status_code == 422


def test_missing_database(tmp_path, fast_config):
    client = TestClient(create_app(db_path=tmp_path / "missing.duckdb", config=fast_config))
    response = client.post("/generate-report", json={"prompt": "Spend", "customer_id": "c-100"})
    assert response.status_code == 500
    assert "init-db" in response.json()["detail"]
