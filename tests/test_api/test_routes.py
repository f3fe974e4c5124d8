"""REST API tests: the FastAPI app over httpx's ASGI transport.

Database, sinks and settings dependencies are overridden with the test
fixtures; Redis is absent, so the rate limiter is off.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator

import httpx
import pytest
import pytest_asyncio

from barter_settlement.api import deps
from barter_settlement.api.routes import health
from barter_settlement.domain.enums import NotificationEvent
from barter_settlement.main import create_app


@pytest.fixture
def app(session_factory, settings, sink, feed):  # noqa: ANN001, ANN201
    application = create_app()

    async def _session() -> AsyncGenerator:
        async with session_factory() as session:
            yield session

    application.dependency_overrides[deps.get_db_session] = _session
    application.dependency_overrides[deps.get_db_session_factory] = lambda: session_factory
    application.dependency_overrides[deps.get_app_settings] = lambda: settings
    application.dependency_overrides[deps.get_sinks] = lambda: (sink, feed)
    application.dependency_overrides[deps.get_rate_limiter] = lambda: None
    return application


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[httpx.AsyncClient, None]:  # noqa: ANN001
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


def _as(user_id: uuid.UUID) -> dict[str, str]:
    return {"X-Actor-Id": str(user_id)}


async def _offer(client, requester, product_id) -> dict:  # noqa: ANN001
    resp = await client.post(
        "/api/v1/swaps", json={"product_id": str(product_id)}, headers=_as(requester)
    )
    assert resp.status_code == 201, resp.text
    return resp.json()


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, client, session_factory, monkeypatch) -> None:
        monkeypatch.setattr(health, "_get_engine", lambda: session_factory.kw["bind"])

        resp = await client.get("/health")

        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "ok"
        assert body["database"] == "healthy"
        assert body["redis"] == "not configured"
        assert "X-Request-ID" in resp.headers


class TestSwapFlow:
    @pytest.mark.asyncio
    async def test_happy_path_over_http(
        self, client, svc, parties, make_product, sink
    ) -> None:
        owner, requester = parties
        product = await make_product(owner, price=800)

        swap = await _offer(client, requester, product)
        assert swap["status"] == "pending"
        assert swap["escrow_state"] == "held"
        assert "verification_code" not in swap

        resp = await client.post(f"/api/v1/swaps/{swap['id']}/accept", headers=_as(owner))
        assert resp.json()["owner_deposit"] == 80

        resp = await client.post(
            f"/api/v1/swaps/{swap['id']}/delivery",
            json={
                "method": "delivery_point",
                "packaging_photos": ["box.jpg"],
                "delivery_point_id": "DP-KADIKOY-01",
            },
            headers=_as(owner),
        )
        assert resp.json()["status"] == "awaiting_delivery"
        assert resp.json()["delivery_code"].startswith("SWAP-")

        code = (await svc.get_swap(uuid.UUID(swap["id"]))).verification_code
        resp = await client.post(
            f"/api/v1/swaps/{swap['id']}/redeem",
            json={"verification_code": code},
            headers=_as(requester),
        )
        assert resp.json()["status"] == "delivered"

        resp = await client.get(f"/api/v1/swaps/{swap['id']}/status")
        assert "confirm" in resp.json()["allowed_events"]

        resp = await client.post(f"/api/v1/swaps/{swap['id']}/confirm", headers=_as(requester))
        assert resp.status_code == 200
        body = resp.json()
        assert body["swap"]["status"] == "completed"
        assert body["fee"]["total"] == 9

        resp = await client.get(f"/api/v1/valor/{owner}")
        assert resp.json()["valor_balance"] == 1291
        assert resp.json()["trust_score"] == 92

        resp = await client.get(f"/api/v1/swaps/{swap['id']}/logs")
        assert [entry["to_status"] for entry in resp.json()][-1] == "completed"
        assert resp.json()[-1]["metadata"]["fee"] == 9
        assert sink.of_type(NotificationEvent.SWAP_COMPLETED)

    @pytest.mark.asyncio
    async def test_dispute_over_http(
        self, client, driver, parties, admin, make_product
    ) -> None:
        owner, requester = parties
        swap = await driver.delivered(requester, await make_product(owner))

        resp = await client.post(
            f"/api/v1/swaps/{swap.id}/dispute",
            json={
                "type": "not_as_described",
                "description": "Wrong colour and a missing charger",
                "evidence": ["a.jpg"],
            },
            headers=_as(requester),
        )
        assert resp.status_code == 201, resp.text
        dispute_id = resp.json()["id"]

        resp = await client.post(
            f"/api/v1/disputes/{dispute_id}/evidence",
            json={"photos": ["sealed.jpg"]},
            headers=_as(owner),
        )
        assert resp.json()["status"] == "evidence_submitted"

        resp = await client.post(
            f"/api/v1/disputes/{dispute_id}/resolve",
            json={"status": "rejected", "resolution_note": "Matches the listing"},
            headers=_as(admin),
        )
        assert resp.status_code == 200, resp.text
        assert resp.json()["swap"]["status"] == "resolved"


class TestErrorMapping:
    @pytest.mark.asyncio
    async def test_missing_actor_is_401(self, client, parties, make_product) -> None:
        owner, _ = parties
        product = await make_product(owner)
        resp = await client.post("/api/v1/swaps", json={"product_id": str(product)})
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_unknown_swap_is_404(self, client) -> None:
        resp = await client.get(f"/api/v1/swaps/{uuid.uuid4()}")
        assert resp.status_code == 404
        assert resp.json()["error"] == "SWAP_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_wrong_party_is_403(self, client, parties, make_product) -> None:
        owner, requester = parties
        swap = await _offer(client, requester, await make_product(owner))

        resp = await client.post(f"/api/v1/swaps/{swap['id']}/accept", headers=_as(requester))

        assert resp.status_code == 403
        assert resp.json()["error"] == "NOT_AUTHORIZED"

    @pytest.mark.asyncio
    async def test_illegal_transition_is_409(self, client, parties, make_product) -> None:
        owner, requester = parties
        swap = await _offer(client, requester, await make_product(owner))

        resp = await client.post(f"/api/v1/swaps/{swap['id']}/confirm", headers=_as(requester))

        assert resp.status_code == 409
        assert resp.json()["error"] == "INVALID_STATE_TRANSITION"

    @pytest.mark.asyncio
    async def test_insufficient_balance_is_409(
        self, client, make_user, make_product
    ) -> None:
        owner = await make_user()
        poor = await make_user(valor=5)
        product = await make_product(owner, price=800)

        resp = await client.post(
            "/api/v1/swaps", json={"product_id": str(product)}, headers=_as(poor)
        )

        assert resp.status_code == 409
        assert resp.json()["details"]["already_done"] is False

    @pytest.mark.asyncio
    async def test_wrong_code_is_400(self, client, driver, parties, make_product) -> None:
        owner, requester = parties
        swap = await driver.arrange(
            await driver.accept(await driver.offer(requester, await make_product(owner)))
        )
        wrong = "000000" if swap.verification_code != "000000" else "111111"

        resp = await client.post(
            f"/api/v1/swaps/{swap.id}/redeem",
            json={"verification_code": wrong},
            headers=_as(requester),
        )

        assert resp.status_code == 400
        assert resp.json()["error"] == "INVALID_VERIFICATION_CODE"

    @pytest.mark.asyncio
    async def test_malformed_code_is_422(self, client, parties) -> None:
        _, requester = parties
        resp = await client.post(
            f"/api/v1/swaps/{uuid.uuid4()}/redeem",
            json={"verification_code": "12ab"},
            headers=_as(requester),
        )
        assert resp.status_code == 422


class TestNegotiationAndFeedback:
    @pytest.mark.asyncio
    async def test_negotiated_price_over_http(
        self, client, parties, make_product, sink
    ) -> None:
        owner, requester = parties
        swap = await _offer(client, requester, await make_product(owner, price=800))
        url = f"/api/v1/swaps/{swap['id']}/negotiate"

        resp = await client.post(
            url, json={"action": "propose", "proposed_price": 650}, headers=_as(requester)
        )
        assert resp.status_code == 200, resp.text
        assert resp.json()["status"] == "proposed"

        resp = await client.post(
            url, json={"action": "counter", "proposed_price": 720}, headers=_as(owner)
        )
        assert resp.json()["counter_offer_count"] == 1

        resp = await client.post(url, json={"action": "accept"}, headers=_as(requester))
        body = resp.json()
        assert body["status"] == "agreed"
        assert body["pending_valor_amount"] == 720
        assert [entry["action"] for entry in body["history"]] == ["propose", "counter", "accept"]

        resp = await client.get(f"/api/v1/valor/{requester}")
        assert resp.json()["valor_balance"] == 780
        assert sink.of_type(NotificationEvent.PRICE_AGREED)

        resp = await client.get(
            f"/api/v1/swaps/{swap['id']}/negotiation", headers=_as(owner)
        )
        assert resp.json()["owner_price"] == 720

    @pytest.mark.asyncio
    async def test_second_feedback_is_409(
        self, client, svc, driver, parties, make_product
    ) -> None:
        owner, requester = parties
        swap = await driver.delivered(requester, await make_product(owner))
        await svc.confirm_settlement(swap.id, requester)
        await svc.commit()
        url = f"/api/v1/swaps/{swap.id}/feedback"

        resp = await client.post(
            url, json={"is_fair": False, "fairness_score": 2}, headers=_as(requester)
        )
        assert resp.status_code == 201, resp.text
        assert resp.json()["penalized"] is True

        resp = await client.post(url, json={"is_fair": True}, headers=_as(requester))
        assert resp.status_code == 409
        assert resp.json()["error"] == "FEEDBACK_EXISTS"
        assert resp.json()["details"]["already_done"] is True

        resp = await client.get(url)
        assert len(resp.json()) == 1
        resp = await client.get(f"/api/v1/valor/{owner}")
        assert resp.json()["trust_score"] == 90


class TestValorAndJobs:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(("amount", "fee"), [(0, 0), (100, 1), (800, 9), (1000, 12)])
    async def test_fee_preview(self, client, amount, fee) -> None:
        resp = await client.get("/api/v1/valor/fee-preview", params={"amount": amount})
        assert resp.status_code == 200
        assert resp.json()["fee"] == fee
        assert resp.json()["net_amount"] == amount - fee

    @pytest.mark.asyncio
    async def test_jobs_require_cron_secret_when_set(self, app, client, settings) -> None:
        secured = settings.model_copy(update={"cron_secret": "s3cret"})
        app.dependency_overrides[deps.get_app_settings] = lambda: secured

        denied = await client.post("/api/v1/jobs/auto-complete")
        allowed = await client.post(
            "/api/v1/jobs/auto-complete", headers={"Authorization": "Bearer s3cret"}
        )

        assert denied.status_code == 401
        assert allowed.status_code == 200
        assert allowed.json()["processed"] == 0

    @pytest.mark.asyncio
    async def test_auto_cancel_status(self, client, parties, make_product) -> None:
        owner, requester = parties
        await _offer(client, requester, await make_product(owner))

        resp = await client.get("/api/v1/jobs/auto-cancel/status")

        assert resp.status_code == 200
        assert resp.json()["active"] == 1
        assert resp.json()["expired"] == 0
