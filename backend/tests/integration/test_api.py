"""
Integration tests for API endpoints using FastAPI TestClient.

Tests basic endpoints (root, health) that don't require external services.
"""

import uuid

from fastapi.testclient import TestClient


class TestRootEndpoint:
    """Tests for GET /."""

    def test_returns_api_info(self, client: TestClient):
        response = client.get("/")
        assert response.status_code == 200
        data = response.json()
        assert data["name"] == "Textopsy Entitlements API"
        assert data["version"] == "0.1.0"
        assert "docs" in data


class TestHealthEndpoint:
    """Tests for GET /health."""

    def test_returns_healthy(self, client: TestClient):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}


class TestRequestContextMiddleware:
    """Tests for X-Request-ID header injected by RequestContextMiddleware."""

    def test_request_id_is_valid_uuid(self, client: TestClient):
        response = client.get("/health")
        # Should not raise ValueError
        uuid.UUID(response.headers["x-request-id"])

    def test_request_id_unique_per_request(self, client: TestClient):
        r1 = client.get("/health")
        r2 = client.get("/health")
        assert r1.headers["x-request-id"] != r2.headers["x-request-id"]

    def test_incoming_uuid_is_reused(self, client: TestClient):
        request_id = str(uuid.uuid4())

        response = client.get("/health", headers={"X-Request-ID": request_id})

        assert response.headers["x-request-id"] == request_id

    def test_incoming_non_uuid_is_replaced(self, client: TestClient):
        response = client.get("/health", headers={"X-Request-ID": "not-a-uuid"})

        assert response.headers["x-request-id"] != "not-a-uuid"
        uuid.UUID(response.headers["x-request-id"])


class TestAuthProtection:
    """Tests verifying that user endpoints require authentication."""

    def test_limits_without_token_returns_401_or_403(self, client: TestClient):
        response = client.get("/api/v1/billing/limits")
        assert response.status_code in (401, 403)

    def test_conversations_without_token_returns_401_or_403(self, client: TestClient):
        response = client.post("/api/v1/conversations", json={})
        assert response.status_code in (401, 403)

    def test_webhook_needs_no_bearer_token(self, client: TestClient):
        # Reaches the handler, which reports the missing processor
        response = client.post("/api/v1/billing/paystack/webhook", content=b"{}")
        assert response.status_code == 503
