"""End-to-end tests for the HTTP API, run in-process through httpx."""

import json
from decimal import Decimal

import httpx
import pytest
import pytest_asyncio

from app.api.deps import get_orchestrator
from app.database import get_session
from app.main import app
from helpers import vnpay_callback

CUSTOMER = {"X-User-Id": "U1", "X-User-Role": "CUSTOMER"}
OTHER = {"X-User-Id": "U2", "X-User-Role": "CUSTOMER"}
STAFF = {"X-User-Id": "S1", "X-User-Role": "STAFF"}

CHECKOUT = {
    "order_id": "O1",
    "provider": "VNPAY",
    "amount": "250000",
    "currency": "VND",
    "return_url": "https://shop.example.test/return",
}


@pytest_asyncio.fixture
async def client(orchestrator, session_factory):
    async def override_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_session] = override_session
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


async def _checkout(client, body=None, headers=CUSTOMER):
    response = await client.post("/api/payments", json=body or CHECKOUT, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "providers": ["FAKEPAY", "MANUAL", "VNPAY"]}


class TestCreate:
    @pytest.mark.asyncio
    async def test_checkout(self, client):
        data = await _checkout(client)
        assert data["status"] == "PENDING_CONFIRMATION"
        assert data["provider_ref"].startswith("VNPAY_")
        assert data["redirect_url"].startswith("https://sandbox.vnpayment.vn/")

    @pytest.mark.asyncio
    async def test_missing_identity(self, client):
        response = await client.post("/api/payments", json=CHECKOUT)
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_validation_error_body(self, client):
        response = await client.post("/api/payments", json={**CHECKOUT, "provider": "PAYPAL"}, headers=CUSTOMER)
        assert response.status_code == 422
        assert response.json()["error"] == "validation_error"

    @pytest.mark.asyncio
    async def test_foreign_order(self, client):
        response = await client.post("/api/payments", json=CHECKOUT, headers=OTHER)
        assert response.status_code == 403
        assert response.json()["error"] == "forbidden"

    @pytest.mark.asyncio
    async def test_second_gateway_checkout(self, client):
        first = await _checkout(client)
        second = await _checkout(client, {**CHECKOUT, "provider": "FAKEPAY"})
        assert second["provider_ref"] != first["provider_ref"]

    @pytest.mark.asyncio
    async def test_paid_order_conflicts(self, client):
        data = await _checkout(client)
        await client.get("/api/callbacks/vnpay", params=vnpay_callback(data["provider_ref"], Decimal("250000")).query)

        response = await client.post("/api/payments", json=CHECKOUT, headers=CUSTOMER)
        assert response.status_code == 409
        assert response.json()["error"] == "duplicate_payment"

    @pytest.mark.asyncio
    async def test_provider_rejection(self, client, fake_provider):
        fake_provider.mode = "reject"
        response = await client.post("/api/payments", json={**CHECKOUT, "provider": "FAKEPAY"}, headers=CUSTOMER)
        assert response.status_code == 402
        assert response.json() == {"error": "provider_rejected", "detail": "card declined"}

    @pytest.mark.asyncio
    async def test_provider_unavailable(self, client, fake_provider):
        fake_provider.mode = "unavailable"
        response = await client.post("/api/payments", json={**CHECKOUT, "provider": "FAKEPAY"}, headers=CUSTOMER)
        assert response.status_code == 503


class TestCallbacks:
    @pytest.mark.asyncio
    async def test_vnpay_ipn_confirms_order(self, client):
        data = await _checkout(client)
        payload = vnpay_callback(data["provider_ref"], Decimal("250000"))

        response = await client.get("/api/callbacks/vnpay", params=payload.query)
        assert response.status_code == 200
        assert response.json() == {"RspCode": "00", "Message": "Confirm Success"}

        detail = (await client.get(f"/api/payments/{data['transaction_id']}", headers=CUSTOMER)).json()
        assert detail["status"] == "PAID"

        again = await client.get("/api/callbacks/vnpay", params=payload.query)
        assert again.json()["RspCode"] == "02"

    @pytest.mark.asyncio
    async def test_forged_ipn_acknowledged_but_ignored(self, client):
        data = await _checkout(client)
        payload = vnpay_callback(data["provider_ref"], Decimal("250000"), secret="attacker")

        response = await client.get("/api/callbacks/vnpay", params=payload.query)
        assert response.status_code == 200
        assert response.json()["RspCode"] == "97"

        detail = (await client.get(f"/api/payments/{data['transaction_id']}", headers=CUSTOMER)).json()
        assert detail["status"] == "PENDING_CONFIRMATION"

    @pytest.mark.asyncio
    async def test_unknown_reference(self, client):
        payload = vnpay_callback("VNPAY_0_00000000", Decimal("250000"))
        response = await client.get("/api/callbacks/vnpay", params=payload.query)
        assert response.status_code == 200
        assert response.json()["RspCode"] == "01"

    @pytest.mark.asyncio
    async def test_json_post_callback(self, client):
        data = await _checkout(client, {**CHECKOUT, "provider": "FAKEPAY"})
        body = {"ref": data["provider_ref"], "outcome": "SUCCEEDED", "amount": "250000"}

        response = await client.post("/api/callbacks/fakepay", content=json.dumps(body),
                                     headers={"content-type": "application/json"})
        assert response.json() == {"received": True, "status": "applied"}

    @pytest.mark.asyncio
    async def test_unknown_provider_route(self, client):
        response = await client.post("/api/callbacks/paypal", content=b"{}")
        assert response.status_code == 404


class TestQueries:
    @pytest.mark.asyncio
    async def test_order_payments_owner_only(self, client):
        await _checkout(client)
        own = await client.get("/api/payments/order/O1", headers=CUSTOMER)
        assert own.status_code == 200
        assert len(own.json()) == 1
        assert Decimal(own.json()[0]["amount"]) == Decimal("250000")

        foreign = await client.get("/api/payments/order/O1", headers=OTHER)
        assert foreign.status_code == 403

    @pytest.mark.asyncio
    async def test_my_payments(self, client):
        await _checkout(client)
        mine = (await client.get("/api/payments/my", headers=CUSTOMER)).json()
        assert mine["total"] == 1
        others = (await client.get("/api/payments/my", headers=OTHER)).json()
        assert others["total"] == 0

    @pytest.mark.asyncio
    async def test_list_requires_staff(self, client):
        response = await client.get("/api/payments", headers=CUSTOMER)
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_list_with_filters_and_pages(self, client):
        await _checkout(client)
        await _checkout(client, {**CHECKOUT, "order_id": "O2", "amount": "1200000"})
        await _checkout(client, {**CHECKOUT, "order_id": "O3", "amount": "89000"}, headers=STAFF)

        page = (await client.get("/api/payments", params={"limit": 2}, headers=STAFF)).json()
        assert page["total"] == 3
        assert page["pages"] == 2
        assert len(page["items"]) == 2

        filtered = (await client.get("/api/payments", params={"order_id": "O2"}, headers=STAFF)).json()
        assert [t["order_id"] for t in filtered["items"]] == ["O2"]

        none = (await client.get("/api/payments", params={"status": "paid"}, headers=STAFF)).json()
        assert none["total"] == 0

    @pytest.mark.asyncio
    async def test_stats(self, client):
        data = await _checkout(client)
        await client.get("/api/callbacks/vnpay", params=vnpay_callback(data["provider_ref"], Decimal("250000")).query)
        await _checkout(client, {**CHECKOUT, "order_id": "O2", "amount": "1200000"})

        stats = (await client.get("/api/payments/stats", headers=STAFF)).json()
        assert stats["total"] == 2
        assert stats["by_status"]["PAID"] == 1
        assert stats["by_status"]["PENDING_CONFIRMATION"] == 1
        assert stats["by_provider"] == {"VNPAY": 2}
        assert Decimal(stats["paid_totals"]["VND"]) == Decimal("250000")

    @pytest.mark.asyncio
    async def test_trace(self, client):
        data = await _checkout(client)
        await client.get("/api/callbacks/vnpay", params=vnpay_callback(data["provider_ref"], Decimal("250000")).query)

        trace = (await client.get(f"/api/payments/{data['transaction_id']}/trace", headers=STAFF)).json()
        actions = [e["action"] for e in trace["audit_trail"]]
        assert actions == ["transaction_created", "create_accepted", "callback_applied"]
        assert trace["transaction"]["status"] == "PAID"

    @pytest.mark.asyncio
    async def test_unknown_transaction(self, client):
        response = await client.get("/api/payments/nope", headers=STAFF)
        assert response.status_code == 404
        assert response.json()["error"] == "transaction_not_found"


class TestAdministration:
    @pytest.mark.asyncio
    async def test_refund(self, client):
        data = await _checkout(client)
        await client.get("/api/callbacks/vnpay", params=vnpay_callback(data["provider_ref"], Decimal("250000")).query)

        response = await client.patch(
            f"/api/payments/{data['transaction_id']}",
            json={"status": "REFUNDED", "reason": "customer request"},
            headers=STAFF,
        )
        assert response.status_code == 200
        assert response.json()["status"] == "REFUNDED"

    @pytest.mark.asyncio
    async def test_customer_cannot_patch(self, client):
        data = await _checkout(client)
        response = await client.patch(f"/api/payments/{data['transaction_id']}", json={"status": "FAILED"},
                                      headers=CUSTOMER)
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_delete(self, client):
        data = await _checkout(client)
        response = await client.delete(f"/api/payments/{data['transaction_id']}", headers=STAFF)
        assert response.json() == {"deleted": data["transaction_id"]}
        missing = await client.get(f"/api/payments/{data['transaction_id']}", headers=STAFF)
        assert missing.status_code == 404
