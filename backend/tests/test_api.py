"""HTTP surface of the fraud check and settings routers."""

import asyncio

import pytest
from fastapi import Depends
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession

from conftest import FakeAnalyzer, add_documents, make_chain
from fraudcheck.config import settings
from fraudcheck.database import get_db
from fraudcheck.main import app
from fraudcheck.services.fraud_check import get_fraud_check_chain


@pytest.fixture
def analyzer():
    return FakeAnalyzer({"bank_statement": "high"})


@pytest.fixture
def client(session_factory, analyzer, dispatcher, monkeypatch):
    monkeypatch.setattr(settings, "analysis_api_key", "")

    async def override_get_db():
        async with session_factory() as session:
            yield session

    async def override_chain(db: AsyncSession = Depends(get_db)):
        return make_chain(db, analyzer, dispatcher)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_fraud_check_chain] = override_chain
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_missing_application_id(client):
    response = client.post("/api/fraud-check", json={})
    assert response.status_code == 400
    assert response.json() == {"error": "applicationId is required"}

    response = client.post("/api/fraud-check", json={"applicationId": "   "})
    assert response.status_code == 400


def test_unknown_application(client):
    response = client.post("/api/fraud-check", json={"applicationId": "app-404"})
    assert response.status_code == 404
    assert response.json() == {"error": "No documents found for this application"}


def test_invalid_json_body(client):
    response = client.post(
        "/api/fraud-check",
        content="{not json",
        headers={"Content-Type": "application/json"},
    )
    assert response.status_code == 400
    assert "error" in response.json()


def test_full_chain_over_http(client, session_factory, dispatcher):
    asyncio.run(add_documents(session_factory, "app-1", ["pan_card", "bank_statement"]))

    response = client.post("/api/fraud-check", json={"applicationId": "app-1"})
    assert response.status_code == 202
    started = response.json()
    assert started["status"] == "processing"
    assert started["totalDocuments"] == 2
    verification_id = started["verificationId"]

    polled = client.get(f"/api/fraud-check/{verification_id}").json()
    assert polled["status"] == "in_progress"
    assert polled["processed"] == 0
    assert polled["totalDocuments"] == 2

    response = client.post("/api/fraud-check", json=dispatcher.payloads.pop(0).to_request_body())
    assert response.status_code == 200
    assert response.json() == {"status": "processing", "processed": 1, "total": 2}

    polled = client.get(f"/api/fraud-check/{verification_id}").json()
    assert polled["processed"] == 1
    assert polled["currentDocument"] == "pan_card"
    assert len(polled["findings"]) == 1

    response = client.post("/api/fraud-check", json=dispatcher.payloads.pop(0).to_request_body())
    assert response.status_code == 200
    assert response.json() == {"status": "completed", "overall_risk": "high", "risk_score": 75}
    assert dispatcher.payloads == []

    polled = client.get("/api/fraud-check/application/app-1").json()
    assert polled["verificationId"] == verification_id
    assert polled["status"] == "failed"
    assert polled["result"]["overall_risk"] == "high"
    assert polled["remarks"] == "Fraud check: high risk (score: 75). 2 documents analyzed."
    assert polled["verifiedAt"] is not None


def test_out_of_range_cursor(client, session_factory, dispatcher):
    asyncio.run(add_documents(session_factory, "app-1", ["pan_card"]))
    client.post("/api/fraud-check", json={"applicationId": "app-1"})
    body = dispatcher.payloads.pop(0).to_request_body()
    body["currentIndex"] = 3

    response = client.post("/api/fraud-check", json=body)
    assert response.status_code == 400
    assert "out of range" in response.json()["error"]


def test_replayed_step_conflicts(client, session_factory, dispatcher):
    asyncio.run(add_documents(session_factory, "app-1", ["pan_card", "bank_statement"]))
    client.post("/api/fraud-check", json={"applicationId": "app-1"})
    body = dispatcher.payloads.pop(0).to_request_body()

    assert client.post("/api/fraud-check", json=body).status_code == 200
    response = client.post("/api/fraud-check", json=body)
    assert response.status_code == 409
    assert "error" in response.json()


def test_unknown_verification(client):
    response = client.get("/api/fraud-check/does-not-exist")
    assert response.status_code == 404
    assert response.json() == {"error": "Verification does-not-exist not found"}

    response = client.get("/api/fraud-check/application/nobody")
    assert response.status_code == 404


def test_provider_settings(client):
    providers = client.get("/api/settings/analysis-providers").json()
    assert {p["name"] for p in providers} == {"openai", "azure", "anthropic", "gemini", "ollama"}
    assert not any(p["is_active"] for p in providers)

    assert client.get("/api/settings/analysis-providers/active").json() == {
        "configured": False,
        "provider": None,
    }

    response = client.put(
        "/api/settings/analysis-providers/anthropic",
        json={"api_key": "sk-test", "model": "", "is_active": True},
    )
    assert response.status_code == 200
    assert response.json()["api_key"] == "***"
    assert response.json()["is_configured"] is True

    active = client.get("/api/settings/analysis-providers/active").json()
    assert active["provider"] == "anthropic"
    assert active["model"] == "claude-3-5-sonnet-20241022"

    # A masked key keeps the stored one
    client.put(
        "/api/settings/analysis-providers/anthropic",
        json={"api_key": "***", "model": "claude-custom", "is_active": True},
    )
    active = client.get("/api/settings/analysis-providers/active").json()
    assert active["model"] == "claude-custom"

    response = client.put("/api/settings/analysis-providers/mystery", json={})
    assert response.status_code == 400
    assert response.json() == {"error": "Unknown provider: mystery"}


def test_provider_limits_override_settings(client, monkeypatch):
    monkeypatch.setattr(settings, "analysis_timeout", 120.0)
    monkeypatch.setattr(settings, "max_pdf_pages", 3)

    response = client.put(
        "/api/settings/analysis-providers/ollama",
        json={"api_base_url": "http://gpu-box:11434", "request_timeout": 300, "max_pdf_pages": 5, "is_active": True},
    )
    assert response.status_code == 200
    assert response.json()["request_timeout"] == 300

    active = client.get("/api/settings/analysis-providers/active").json()
    assert active["provider"] == "ollama"
    assert active["timeout"] == 300
    assert active["max_pdf_pages"] == 5

    # Cleared limits fall back to the settings
    client.put("/api/settings/analysis-providers/ollama", json={"is_active": True})
    active = client.get("/api/settings/analysis-providers/active").json()
    assert active["timeout"] == 120.0
    assert active["max_pdf_pages"] == 3

    response = client.put("/api/settings/analysis-providers/ollama", json={"max_pdf_pages": 0})
    assert response.status_code == 400
    assert "error" in response.json()
