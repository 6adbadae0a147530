"""Integration tests for usage-gated conversation endpoints."""

import asyncio

from entitlements.auth import AuthenticatedUser, get_current_user
from entitlements.config import BillingConfig
from entitlements.services.billing_repository import InMemoryBillingRepository
from entitlements.services.billing_service import BillingService


async def _fake_user() -> AuthenticatedUser:
    return AuthenticatedUser(id="user-1", email="user@example.com")


class FakeCommentaryGenerator:
    def __init__(self, *, fail: bool = False):
        self.fail = fail
        self.calls: list[dict] = []

    async def generate(self, *, text, persona, context=None):
        if self.fail:
            raise RuntimeError("model unavailable")
        self.calls.append({"text": text, "persona": persona, "context": context})
        return f"{persona} says: reply tomorrow."


def _install(client, *, generator=None, config: BillingConfig | None = None) -> InMemoryBillingRepository:
    repo = InMemoryBillingRepository()
    client.app.state.billing_service = BillingService(repo, config or BillingConfig())
    client.app.state.commentary_generator = generator
    client.app.dependency_overrides[get_current_user] = _fake_user
    return repo


class TestCreateConversation:
    def test_creates_conversation(self, client):
        repo = _install(client)

        response = client.post("/api/v1/conversations", json={"title": "Group chat"})

        client.app.dependency_overrides.clear()
        assert response.status_code == 201
        data = response.json()
        assert data["title"] == "Group chat"
        assert data["allowance"]["remaining"] == 5
        assert len(repo.conversations) == 1

    def test_sixth_conversation_is_402(self, client):
        repo = _install(client)
        for _ in range(5):
            assert client.post("/api/v1/conversations", json={}).status_code == 201

        response = client.post("/api/v1/conversations", json={})

        client.app.dependency_overrides.clear()
        assert response.status_code == 402
        body = response.json()
        assert body["code"] == "CONVERSATION_LIMIT"
        assert body["details"] == {"limit": 5, "used": 5}
        assert "error" in body
        assert len(repo.conversations) == 5


class TestAnalyzeConversation:
    def test_analyze_consumes_submission(self, client):
        generator = FakeCommentaryGenerator()
        _install(client, generator=generator)
        conversation_id = client.post("/api/v1/conversations", json={}).json()["id"]

        response = client.post(
            f"/api/v1/conversations/{conversation_id}/analyze",
            json={"text": "hey u up", "persona": "a coach"},
        )

        client.app.dependency_overrides.clear()
        assert response.status_code == 200
        data = response.json()
        assert data["conversationId"] == conversation_id
        assert data["commentary"] == "a coach says: reply tomorrow."
        assert data["allowance"] == {"limit": 3, "used": 1, "remaining": 2}

    def test_fourth_analyze_of_day_is_402_with_reset(self, client):
        _install(client, generator=FakeCommentaryGenerator())
        conversation_id = client.post("/api/v1/conversations", json={}).json()["id"]
        url = f"/api/v1/conversations/{conversation_id}/analyze"
        for _ in range(3):
            assert client.post(url, json={"text": "hi"}).status_code == 200

        response = client.post(url, json={"text": "hi"})

        client.app.dependency_overrides.clear()
        assert response.status_code == 402
        body = response.json()
        assert body["code"] == "SUBMISSION_LIMIT"
        assert body["details"]["limit"] == 3
        assert body["details"]["used"] == 3
        assert "resetsAt" in body["details"]

    def test_unknown_conversation_is_404(self, client):
        repo = _install(client, generator=FakeCommentaryGenerator())

        response = client.post("/api/v1/conversations/missing/analyze", json={"text": "hi"})

        client.app.dependency_overrides.clear()
        assert response.status_code == 404
        assert repo.daily_usage == {}

    def test_foreign_conversation_is_404(self, client):
        repo = _install(client, generator=FakeCommentaryGenerator())
        conversation = asyncio.run(repo.create_conversation("someone-else"))

        response = client.post(f"/api/v1/conversations/{conversation.id}/analyze", json={"text": "hi"})

        client.app.dependency_overrides.clear()
        assert response.status_code == 404

    def test_missing_generator_is_503_without_spending(self, client):
        repo = _install(client, generator=None)
        conversation_id = client.post("/api/v1/conversations", json={}).json()["id"]

        response = client.post(f"/api/v1/conversations/{conversation_id}/analyze", json={"text": "hi"})

        client.app.dependency_overrides.clear()
        assert response.status_code == 503
        assert repo.daily_usage == {}

    def test_generator_failure_is_502(self, client):
        _install(client, generator=FakeCommentaryGenerator(fail=True))
        conversation_id = client.post("/api/v1/conversations", json={}).json()["id"]

        response = client.post(f"/api/v1/conversations/{conversation_id}/analyze", json={"text": "hi"})

        client.app.dependency_overrides.clear()
        assert response.status_code == 502
