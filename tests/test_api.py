"""Tests for the HTTP API (routing, account header, error mapping, webhooks)."""

import json
import time
import uuid

import httpx
import pytest
import pytest_asyncio

from app.config import settings
from app.core.security import compute_signature
from app.database import get_db
from app.main import app


@pytest_asyncio.fixture
async def client(session_factory):
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


def headers(account):
    return {"X-Account-ID": str(account.id)}


def invoice_payload(**overrides):
    payload = {
        "client_id": str(uuid.uuid4()),
        "issue_date": "2024-03-15",
        "due_date": "2024-04-14",
        "tax_rate": "10",
        "line_items": [
            {"description": "Design work", "quantity": "10", "unit_price": "150"},
            {"description": "Hosting", "quantity": "5", "unit_price": "100"},
        ],
    }
    payload.update(overrides)
    return payload


# ── Account Header Tests ───────────────────────────────────────────────


class TestAccountHeader:
    @pytest.mark.asyncio
    async def test_missing_header(self, client, account):
        response = await client.post("/api/v1/invoices", json=invoice_payload())
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_malformed_header(self, client, account):
        response = await client.post(
            "/api/v1/invoices", json=invoice_payload(), headers={"X-Account-ID": "acme"}
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_unknown_account(self, client, account):
        response = await client.post(
            "/api/v1/invoices", json=invoice_payload(), headers={"X-Account-ID": str(uuid.uuid4())}
        )
        assert response.status_code == 404


# ── Invoice Endpoint Tests ─────────────────────────────────────────────


class TestInvoiceEndpoints:
    @pytest.mark.asyncio
    async def test_create_and_get(self, client, account):
        response = await client.post("/api/v1/invoices", json=invoice_payload(), headers=headers(account))
        assert response.status_code == 201
        body = response.json()
        assert body["invoice_number"] == "INV-10001"
        assert body["status"] == "draft"
        assert float(body["total_amount"]) == 2200.0

        fetched = await client.get(f"/api/v1/invoices/{body['id']}", headers=headers(account))
        assert fetched.status_code == 200
        assert fetched.json()["invoice_number"] == "INV-10001"

    @pytest.mark.asyncio
    async def test_other_account_gets_404(self, client, account, other_account):
        created = (await client.post("/api/v1/invoices", json=invoice_payload(), headers=headers(account))).json()
        response = await client.get(f"/api/v1/invoices/{created['id']}", headers=headers(other_account))
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_invalid_quantity_rejected(self, client, account):
        payload = invoice_payload(line_items=[{"description": "Bad", "quantity": "0", "unit_price": "10"}])
        response = await client.post("/api/v1/invoices", json=payload, headers=headers(account))
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_invalid_transition_is_422(self, client, account):
        created = (await client.post("/api/v1/invoices", json=invoice_payload(), headers=headers(account))).json()
        response = await client.post(f"/api/v1/invoices/{created['id']}/pay", headers=headers(account))
        assert response.status_code == 422
        assert "draft" in response.json()["detail"]

    @pytest.mark.asyncio
    async def test_send_pay_flow(self, client, account):
        created = (await client.post("/api/v1/invoices", json=invoice_payload(), headers=headers(account))).json()
        sent = await client.post(f"/api/v1/invoices/{created['id']}/send", headers=headers(account))
        assert sent.json()["status"] == "sent"

        paid = await client.post(
            f"/api/v1/invoices/{created['id']}/pay",
            json={"payment_method": "bank_transfer", "payment_reference": "TX-9"},
            headers=headers(account),
        )
        assert paid.status_code == 200
        assert paid.json()["status"] == "paid"
        assert paid.json()["payment_reference"] == "TX-9"

    @pytest.mark.asyncio
    async def test_reminder_refusal_is_not_an_http_error(self, client, account):
        created = (await client.post("/api/v1/invoices", json=invoice_payload(), headers=headers(account))).json()
        response = await client.post(f"/api/v1/invoices/{created['id']}/remind", headers=headers(account))
        assert response.status_code == 200
        assert response.json()["success"] is False
        assert response.json()["message"] == "Invoice has not been sent yet"


# ── Estimate / Recurring Endpoint Tests ────────────────────────────────


class TestEstimateEndpoints:
    @pytest.mark.asyncio
    async def test_accept_and_convert(self, client, account):
        payload = invoice_payload()
        payload.pop("due_date")
        created = (await client.post("/api/v1/estimates", json=payload, headers=headers(account))).json()
        assert created["estimate_number"] == "EST-10001"

        await client.post(f"/api/v1/estimates/{created['id']}/send", headers=headers(account))
        await client.post(f"/api/v1/estimates/{created['id']}/accept", headers=headers(account))
        converted = await client.post(f"/api/v1/estimates/{created['id']}/convert", headers=headers(account))

        assert converted.status_code == 200
        body = converted.json()
        assert body["estimate"]["status"] == "converted"
        assert body["invoice"]["invoice_number"] == "INV-10001"
        assert body["estimate"]["converted_invoice_id"] == body["invoice"]["id"]

    @pytest.mark.asyncio
    async def test_convert_draft_is_422(self, client, account):
        payload = invoice_payload()
        payload.pop("due_date")
        created = (await client.post("/api/v1/estimates", json=payload, headers=headers(account))).json()
        response = await client.post(f"/api/v1/estimates/{created['id']}/convert", headers=headers(account))
        assert response.status_code == 422


class TestRecurringEndpoints:
    @pytest.mark.asyncio
    async def test_paused_generation_names_reason(self, client, account):
        payload = invoice_payload(name="Retainer", frequency="monthly", start_date="2024-01-01")
        payload.pop("due_date")
        payload.pop("issue_date")
        created = (await client.post("/api/v1/recurring-invoices", json=payload, headers=headers(account))).json()

        await client.post(f"/api/v1/recurring-invoices/{created['id']}/pause", headers=headers(account))
        response = await client.post(f"/api/v1/recurring-invoices/{created['id']}/generate", headers=headers(account))
        assert response.status_code == 422
        assert "paused" in response.json()["detail"]


# ── Payment Link Endpoint Tests ────────────────────────────────────────


class TestPaymentLinkEndpoints:
    async def _sent_invoice(self, client, account):
        created = (await client.post("/api/v1/invoices", json=invoice_payload(), headers=headers(account))).json()
        await client.post(f"/api/v1/invoices/{created['id']}/send", headers=headers(account))
        return created

    @pytest.mark.asyncio
    async def test_payment_page_is_public(self, client, account):
        created = await self._sent_invoice(client, account)
        token = created["payment_url"].rsplit("/", 1)[-1]

        response = await client.get(f"/api/v1/pay/{token}")
        assert response.status_code == 200
        body = response.json()
        assert body["invoice_number"] == "INV-10001"
        assert body["is_payable"] is True
        assert "account_id" not in body

    @pytest.mark.asyncio
    async def test_unknown_token_is_404(self, client, account):
        response = await client.get("/api/v1/pay/nope")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_checkout_and_return(self, client, account):
        created = await self._sent_invoice(client, account)
        token = created["payment_url"].rsplit("/", 1)[-1]

        checkout = await client.post(f"/api/v1/pay/{token}/checkout")
        assert checkout.status_code == 200
        assert checkout.json()["metadata"]["invoice_id"] == created["id"]
        assert checkout.json()["unit_amount"] == 220000

        returned = await client.get(f"/api/v1/pay/{token}/success")
        assert returned.status_code == 200
        assert returned.json()["status"] == "viewed"

    @pytest.mark.asyncio
    async def test_checkout_on_draft_is_422(self, client, account):
        created = (await client.post("/api/v1/invoices", json=invoice_payload(), headers=headers(account))).json()
        token = created["payment_url"].rsplit("/", 1)[-1]
        response = await client.post(f"/api/v1/pay/{token}/checkout")
        assert response.status_code == 422


# ── Account Endpoint Tests ─────────────────────────────────────────────


class TestAccountSubscription:
    @pytest.mark.asyncio
    async def test_subscription_state(self, client, account):
        response = await client.get("/api/v1/account/subscription", headers=headers(account))
        assert response.status_code == 200
        body = response.json()
        assert body["slug"] == "acme"
        assert body["subscription_status"] == "trialing"
        assert body["plan"]["processor_price_id"] == "price_free"
        assert body["plan"]["is_free"] is True
        assert body["has_active_subscription"] is True
        assert body["days_remaining_in_trial"] == 0


# ── Webhook Endpoint Tests ─────────────────────────────────────────────


class TestProcessorWebhook:
    @pytest.mark.asyncio
    async def test_subscription_event_applied(self, client, account, pro_plan, monkeypatch):
        monkeypatch.setattr(settings, "PROCESSOR_WEBHOOK_SECRET", None)
        event = {
            "id": "evt_api_1",
            "type": "customer.subscription.updated",
            "created": 1710000000,
            "data": {"object": {
                "id": "sub_1",
                "customer": "cus_a",
                "status": "active",
                "items": {"data": [{"price": {"id": "price_pro"}}]},
            }},
        }
        response = await client.post("/api/v1/webhooks/processor", json=event)
        assert response.status_code == 200
        assert response.json()["status"] == "applied"

        replay = await client.post("/api/v1/webhooks/processor", json=event)
        assert replay.json()["status"] == "duplicate"

    @pytest.mark.asyncio
    async def test_unknown_event_acknowledged(self, client, monkeypatch):
        monkeypatch.setattr(settings, "PROCESSOR_WEBHOOK_SECRET", None)
        response = await client.post(
            "/api/v1/webhooks/processor",
            json={"id": "evt_2", "type": "charge.refunded", "data": {"object": {}}},
        )
        assert response.status_code == 200
        assert response.json()["status"] == "ignored"

    @pytest.mark.asyncio
    async def test_invalid_json(self, client, monkeypatch):
        monkeypatch.setattr(settings, "PROCESSOR_WEBHOOK_SECRET", None)
        response = await client.post(
            "/api/v1/webhooks/processor",
            content=b"not json",
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_non_numeric_created_is_400(self, client, monkeypatch):
        monkeypatch.setattr(settings, "PROCESSOR_WEBHOOK_SECRET", None)
        response = await client.post(
            "/api/v1/webhooks/processor",
            json={"id": "evt_4", "type": "customer.subscription.updated", "created": "yesterday", "data": {"object": {}}},
        )
        assert response.status_code == 400
        assert response.json()["detail"] == "Malformed event payload"

    @pytest.mark.asyncio
    async def test_non_object_data_is_400(self, client, monkeypatch):
        monkeypatch.setattr(settings, "PROCESSOR_WEBHOOK_SECRET", None)
        response = await client.post(
            "/api/v1/webhooks/processor",
            json={"id": "evt_5", "type": "checkout.session.completed", "data": ["not", "an", "object"]},
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_signature_required_when_secret_set(self, client, monkeypatch):
        monkeypatch.setattr(settings, "PROCESSOR_WEBHOOK_SECRET", "whsec_test")
        body = json.dumps({"id": "evt_3", "type": "charge.refunded", "data": {"object": {}}}).encode()

        unsigned = await client.post(
            "/api/v1/webhooks/processor", content=body, headers={"Content-Type": "application/json"}
        )
        assert unsigned.status_code == 401

        timestamp = int(time.time())
        signature = compute_signature(body, timestamp, "whsec_test")
        signed = await client.post(
            "/api/v1/webhooks/processor",
            content=body,
            headers={
                "Content-Type": "application/json",
                "Processor-Signature": f"t={timestamp},v1={signature}",
            },
        )
        assert signed.status_code == 200
        assert signed.json()["status"] == "ignored"
