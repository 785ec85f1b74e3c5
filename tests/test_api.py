"""Tests for the FastAPI endpoints."""

import pytest
from httpx import ASGITransport, AsyncClient

from atomicswap.api.app import create_app
from atomicswap.swap.secrets import SecretManager

SECRET = "7a" * 32
ADMIN = {"X-Admin-Token": "test-admin-token"}


def participant(participant_id: str) -> dict:
    return {"X-Participant-Id": participant_id, "X-Participant-Token": f"{participant_id}-token"}


def swap_body(**overrides) -> dict:
    body = {
        "initiator_id": "alice",
        "responder_id": "bob",
        "initiator_leg": {
            "chain": "ethereum",
            "asset_id": "USDC",
            "amount": "100",
            "timeout_seconds": 1000,
        },
        "responder_leg": {
            "chain": "hedera",
            "asset_id": "HBAR",
            "amount": "50",
            "timeout_seconds": 400,
        },
        "secret": SECRET,
    }
    body.update(overrides)
    return body


@pytest.fixture
async def test_app(runtime):
    """Application bound to the test runtime (supervisor not started)."""
    return create_app(runtime=runtime, start_supervisor=False)


@pytest.fixture
async def client(test_app):
    """Create async test client."""
    transport = ASGITransport(app=test_app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


async def create_swap(client, **overrides) -> str:
    response = await client.post("/api/v1/swaps", json=swap_body(**overrides))
    assert response.status_code == 201
    return response.json()["swap_id"]


class TestHealthEndpoints:
    """Tests for health check endpoints."""

    @pytest.mark.asyncio
    async def test_health_check(self, client):
        """Test basic health check."""
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["service"] == "atomicswap"

    @pytest.mark.asyncio
    async def test_detailed_health(self, client):
        """Test detailed health check."""
        await create_swap(client)

        response = await client.get("/health/detailed")

        assert response.status_code == 200
        data = response.json()
        assert data["ledgers"] == ["ethereum", "hedera"]
        assert data["swaps"] == {"pending": 1}
        assert data["supervisor"]["running"] is False
        assert data["config"]["environment"] == "test"
        assert data["config"]["master_key"] == "***"


class TestSwapEndpoints:
    """Tests for the swap lifecycle over HTTP."""

    @pytest.mark.asyncio
    async def test_initiate(self, client):
        response = await client.post("/api/v1/swaps", json=swap_body())

        assert response.status_code == 201
        data = response.json()
        assert data["success"] is True
        assert data["status"] == "pending"
        assert data["progress"]["stage"] == "initiated"
        assert data["estimated_completion"]
        assert "secret" not in data

    @pytest.mark.asyncio
    async def test_full_lifecycle(self, client):
        swap_id = await create_swap(client)

        actions = []
        for _ in range(3):
            response = await client.post(f"/api/v1/swaps/{swap_id}/advance")
            assert response.status_code == 200
            actions.append(response.json()["action"])
        assert actions == ["lock_initiator", "lock_responder", "complete"]

        response = await client.get(
            f"/api/v1/swaps/{swap_id}", headers=participant("alice")
        )
        data = response.json()
        assert data["status"] == "completed"
        assert data["secret"] == SECRET

        response = await client.get(
            f"/api/v1/swaps/{swap_id}", headers=participant("bob")
        )
        assert "secret" not in response.json()

        response = await client.get(f"/api/v1/swaps/{swap_id}/confirmations")
        data = response.json()
        assert data["dual_status"] == "dual_confirmed"
        assert len(data["records"]) == 2

    @pytest.mark.asyncio
    async def test_secret_needs_participant_token(self, client):
        """A bare X-Participant-Id header never unlocks the secret."""
        swap_id = await create_swap(client)
        for _ in range(3):
            await client.post(f"/api/v1/swaps/{swap_id}/advance")

        response = await client.get(f"/api/v1/swaps/{swap_id}")
        assert response.status_code == 200
        assert "secret" not in response.json()

        spoofed = await client.get(
            f"/api/v1/swaps/{swap_id}", headers={"X-Participant-Id": "alice"}
        )
        assert spoofed.status_code == 401
        assert "secret" not in spoofed.text

        wrong = await client.get(
            f"/api/v1/swaps/{swap_id}",
            headers={"X-Participant-Id": "alice", "X-Participant-Token": "bob-token"},
        )
        assert wrong.status_code == 401

        unknown = await client.get(
            f"/api/v1/swaps/{swap_id}",
            headers={"X-Participant-Id": "carol", "X-Participant-Token": "carol-token"},
        )
        assert unknown.status_code == 401

        response = await client.get(f"/api/v1/swaps/{swap_id}", headers=participant("alice"))
        assert response.json()["secret"] == SECRET

    @pytest.mark.asyncio
    async def test_claim_with_secret(self, client):
        swap_id = await create_swap(client, secret=None, secret_hash=SecretManager.hash(SECRET))
        for _ in range(3):
            await client.post(f"/api/v1/swaps/{swap_id}/advance")

        wrong = await client.post(
            f"/api/v1/swaps/{swap_id}/legs/1/claim", json={"secret": "00" * 32}
        )
        assert wrong.status_code == 400
        assert wrong.json()["detail"]["code"] == "claim_failed"

        response = await client.post(
            f"/api/v1/swaps/{swap_id}/legs/1/claim", json={"secret": SECRET}
        )
        assert response.status_code == 200
        assert response.json()["claim_ref"]

        response = await client.post(
            f"/api/v1/swaps/{swap_id}/legs/0/claim", json={"secret": SECRET}
        )
        assert response.status_code == 200
        status = (await client.get(f"/api/v1/swaps/{swap_id}")).json()["status"]
        assert status == "completed"

    @pytest.mark.asyncio
    async def test_list_swaps(self, client):
        await create_swap(client)

        response = await client.get("/api/v1/swaps", params={"participant_id": "bob"})
        assert response.status_code == 200
        assert response.json()["total"] == 1

        response = await client.get("/api/v1/swaps", params={"status": "completed"})
        assert response.json()["total"] == 0


class TestErrorMapping:
    """Domain errors map to HTTP status codes."""

    @pytest.mark.asyncio
    async def test_timelock_ordering_violation(self, client):
        body = swap_body()
        body["responder_leg"]["timeout_seconds"] = 950

        response = await client.post("/api/v1/swaps", json=body)

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "validation_error"

    @pytest.mark.asyncio
    async def test_unsupported_chain(self, client):
        body = swap_body()
        body["initiator_leg"]["chain"] = "bitcoin"

        response = await client.post("/api/v1/swaps", json=body)

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "unsupported_chain"

    @pytest.mark.asyncio
    async def test_invalid_amount(self, client):
        body = swap_body()
        body["initiator_leg"]["amount"] = "0"

        response = await client.post("/api/v1/swaps", json=body)

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_unknown_swap(self, client):
        response = await client.get("/api/v1/swaps/swap_missing")

        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "swap_not_found"

    @pytest.mark.asyncio
    async def test_claim_before_lock(self, client):
        swap_id = await create_swap(client)

        response = await client.post(
            f"/api/v1/swaps/{swap_id}/legs/0/claim", json={"secret": SECRET}
        )

        assert response.status_code == 409
        assert response.json()["detail"]["swap_id"] == swap_id


class TestCancelAndRollback:
    """Tests for cancel and operator rollback."""

    @pytest.mark.asyncio
    async def test_cancel_requires_participant(self, client):
        swap_id = await create_swap(client)

        assert (await client.post(f"/api/v1/swaps/{swap_id}/cancel")).status_code == 401
        unauthenticated = await client.post(
            f"/api/v1/swaps/{swap_id}/cancel", headers={"X-Participant-Id": "alice"}
        )
        assert unauthenticated.status_code == 401
        stranger = await client.post(
            f"/api/v1/swaps/{swap_id}/cancel", headers=participant("mallory")
        )
        assert stranger.status_code == 400

        response = await client.post(
            f"/api/v1/swaps/{swap_id}/cancel", headers=participant("alice")
        )
        assert response.status_code == 200
        assert response.json()["status"] == "rolled_back"

    @pytest.mark.asyncio
    async def test_rollback_requires_admin_token(self, client):
        swap_id = await create_swap(client)
        await client.post(f"/api/v1/swaps/{swap_id}/advance")

        response = await client.post(f"/api/v1/swaps/{swap_id}/rollback")
        assert response.status_code == 401

        response = await client.post(
            f"/api/v1/swaps/{swap_id}/rollback", json={"reason": "stuck"}, headers=ADMIN
        )
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "rolling_back"
        assert data["rollback"]["reason"] == "stuck"


class TestReports:
    """Tests for the regulatory report endpoint."""

    @pytest.mark.asyncio
    async def test_confirmation_report(self, client):
        swap_id = await create_swap(client)
        for _ in range(3):
            await client.post(f"/api/v1/swaps/{swap_id}/advance")
        params = {"start": "2026-01-01T00:00:00", "end": "2026-01-02T00:00:00"}

        assert (await client.get("/api/v1/reports/confirmations", params=params)).status_code == 401

        response = await client.get("/api/v1/reports/confirmations", params=params, headers=ADMIN)
        assert response.status_code == 200
        data = response.json()
        assert data["total_records"] == 2
        assert data["dual_confirmed_swaps"] == 1
        assert swap_id in data["swaps"]

    @pytest.mark.asyncio
    async def test_report_rejects_inverted_window(self, client):
        params = {"start": "2026-01-02T00:00:00", "end": "2026-01-01T00:00:00"}

        response = await client.get("/api/v1/reports/confirmations", params=params, headers=ADMIN)

        assert response.status_code == 400
