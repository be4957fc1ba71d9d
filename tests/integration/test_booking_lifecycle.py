"""
Integration tests for the booking lifecycle over the HTTP API.
Uses pytest-asyncio + HTTPX AsyncClient against the ASGI app.
"""
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from conftest import OTHER_CUSTOMER, auth_headers, booking_payload, payment_event, signed
from ezrent.middleware.auth import Actor
from ezrent.models.settlement import SettlementRecord
from ezrent.schemas.schemas import ActorRole, PaymentMethodEnum
from ezrent.services.catalog import ItemSnapshot
from ezrent.services.errors import CatalogUnavailable
from ezrent.services.money import Money


async def create(client, headers, method=PaymentMethodEnum.gcash, **extra):
    resp = await client.post("/v1/bookings", headers=headers, json=booking_payload(method), **extra)
    assert resp.status_code == 201, resp.text
    return resp.json()


async def approved_online_booking(client, customer_headers, owner_headers):
    booking = await create(client, customer_headers)
    resp = await client.put(f"/v1/bookings/{booking['id']}/request", headers=customer_headers)
    assert resp.status_code == 200, resp.text
    resp = await client.put(f"/v1/bookings/{booking['id']}/approve", headers=owner_headers)
    assert resp.status_code == 200, resp.text
    return resp.json()


@pytest.mark.asyncio
class TestBookingAPI:
    async def test_health_check(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

    async def test_create_booking_missing_auth(self, client):
        resp = await client.post("/v1/bookings", json=booking_payload())
        assert resp.status_code == 401

    async def test_create_booking_prices_from_catalog(self, client, customer_headers):
        booking = await create(client, customer_headers)
        assert booking["status"] == "pending"
        assert Decimal(booking["price_per_unit"]) == Decimal("500")
        assert Decimal(booking["grand_total"]) == Decimal("1600")
        assert booking["customer_id"] == "cust-1"
        assert booking["owner_id"] == "owner-1"

    async def test_return_before_pickup_rejected(self, client, customer_headers):
        payload = booking_payload()
        payload["return_date"], payload["pickup_date"] = payload["pickup_date"], payload["return_date"]
        resp = await client.post("/v1/bookings", headers=customer_headers, json=payload)
        assert resp.status_code == 422

    async def test_owner_cannot_create_booking(self, client, owner_headers):
        resp = await client.post("/v1/bookings", headers=owner_headers, json=booking_payload())
        assert resp.status_code == 403

    async def test_idempotent_create(self, client, customer_headers):
        headers = {**customer_headers, "Idempotency-Key": "create-abc-123"}
        first = await client.post("/v1/bookings", headers=headers, json=booking_payload())
        second = await client.post("/v1/bookings", headers=headers, json=booking_payload())
        assert first.status_code == 201
        assert second.status_code == 201
        assert second.json()["id"] == first.json()["id"]
        assert second.headers.get("X-Idempotency-Replay") == "true"

    async def test_get_nonexistent_booking(self, client, customer_headers):
        resp = await client.get("/v1/bookings/nonexistent-uuid", headers=customer_headers)
        assert resp.status_code == 404
        assert resp.json()["error"] == "booking_not_found"

    async def test_stranger_cannot_view(self, client, customer_headers):
        booking = await create(client, customer_headers)
        resp = await client.get(f"/v1/bookings/{booking['id']}", headers=auth_headers(OTHER_CUSTOMER))
        assert resp.status_code == 403

    async def test_customer_cannot_name_the_owner(self, client, customer_headers):
        resp = await client.post(
            "/v1/bookings", headers=customer_headers, json=booking_payload(owner_id="mallory")
        )
        assert resp.status_code == 201
        booking = resp.json()
        assert booking["owner_id"] == "owner-1"

        await client.put(f"/v1/bookings/{booking['id']}/request", headers=customer_headers)
        mallory = auth_headers(Actor(id="mallory", role=ActorRole.owner))
        resp = await client.put(f"/v1/bookings/{booking['id']}/approve", headers=mallory)
        assert resp.status_code == 403
        assert resp.json()["error"] == "not_permitted"

        after = (await client.get(f"/v1/bookings/{booking['id']}", headers=customer_headers)).json()
        assert after["status"] == "booked"
        assert after["payment_intent_id"] is None

    async def test_item_without_owner_cannot_be_booked(self, client, customer_headers, catalog_item):
        catalog_item.side_effect = CatalogUnavailable("Item catalog has no owner for item item-1")
        resp = await client.post("/v1/bookings", headers=customer_headers, json=booking_payload())
        assert resp.status_code == 503
        assert resp.json()["error"] == "catalog_unavailable"

    async def test_update_terms_before_approval(self, client, customer_headers):
        booking = await create(client, customer_headers)
        resp = await client.put(
            f"/v1/bookings/{booking['id']}/terms", headers=customer_headers, json={"rental_duration": 5}
        )
        assert resp.status_code == 200, resp.text
        assert Decimal(resp.json()["grand_total"]) == Decimal("2600")


@pytest.mark.asyncio
class TestOnlinePaymentFlow:
    async def test_approve_opens_payment_intent(self, client, customer_headers, owner_headers):
        body = await approved_online_booking(client, customer_headers, owner_headers)
        assert body["booking"]["status"] == "approved"
        assert body["payment"]["id"].startswith("pi_test_")
        assert body["payment"]["status"] == "pending"
        assert Decimal(body["payment"]["amount"]) == Decimal("1600")
        assert body["payment"]["next_action_url"]
        assert body["booking"]["payment_intent_id"] == body["payment"]["id"]

    async def test_second_approve_is_noop(self, client, customer_headers, owner_headers):
        body = await approved_online_booking(client, customer_headers, owner_headers)
        booking_id = body["booking"]["id"]
        again = await client.put(f"/v1/bookings/{booking_id}/approve", headers=owner_headers)
        assert again.status_code == 200
        assert again.json()["noop"] is True
        assert again.json()["payment"]["id"] == body["payment"]["id"]

    async def test_customer_cannot_approve(self, client, customer_headers):
        booking = await create(client, customer_headers)
        await client.put(f"/v1/bookings/{booking['id']}/request", headers=customer_headers)
        resp = await client.put(f"/v1/bookings/{booking['id']}/approve", headers=customer_headers)
        assert resp.status_code == 403
        assert resp.json()["error"] == "not_permitted"

    async def test_duplicate_paid_webhooks_settle_once(
        self, client, customer_headers, owner_headers, session_factory
    ):
        body = await approved_online_booking(client, customer_headers, owner_headers)
        booking_id, intent_id = body["booking"]["id"], body["payment"]["id"]
        raw = payment_event(intent_id)

        first = await client.post("/v1/payments/webhook", content=raw, headers=signed(raw))
        second = await client.post("/v1/payments/webhook", content=raw, headers=signed(raw))
        assert first.status_code == 200
        assert first.json() == {"received": True, "result": "applied"}
        assert second.status_code == 200
        assert second.json()["result"] == "duplicate"

        booking = (await client.get(f"/v1/bookings/{booking_id}", headers=customer_headers)).json()
        assert booking["status"] == "ongoing"

        settlement = (await client.get(f"/v1/bookings/{booking_id}/settlement", headers=owner_headers)).json()
        assert Decimal(settlement["rental_amount"]) == Decimal("1600")
        assert Decimal(settlement["commission_amount"]) == Decimal("480")
        assert Decimal(settlement["owner_share"]) == Decimal("1120")
        assert settlement["payment_intent_id"] == intent_id

        async with session_factory() as db:
            count = await db.scalar(
                select(func.count()).select_from(SettlementRecord).where(SettlementRecord.booking_id == booking_id)
            )
        assert count == 1

    async def test_failed_webhook_allows_new_payment(self, client, customer_headers, owner_headers):
        body = await approved_online_booking(client, customer_headers, owner_headers)
        booking_id, intent_id = body["booking"]["id"], body["payment"]["id"]
        raw = payment_event(intent_id, "payment.failed")

        resp = await client.post("/v1/payments/webhook", content=raw, headers=signed(raw))
        assert resp.json()["result"] == "payment_reset"

        booking = (await client.get(f"/v1/bookings/{booking_id}", headers=customer_headers)).json()
        assert booking["status"] == "approved"
        assert booking["payment_intent_id"] is None

        retry = await client.post(f"/v1/bookings/{booking_id}/payment", headers=customer_headers)
        assert retry.status_code == 200, retry.text
        assert retry.json()["payment"]["id"] != intent_id
        assert retry.json()["booking"]["payment_intent_id"] == retry.json()["payment"]["id"]

    async def test_settlement_missing_before_payment(self, client, customer_headers, owner_headers):
        body = await approved_online_booking(client, customer_headers, owner_headers)
        resp = await client.get(f"/v1/bookings/{body['booking']['id']}/settlement", headers=owner_headers)
        assert resp.status_code == 404

    async def test_bad_signature_rejected(self, client, customer_headers, owner_headers):
        body = await approved_online_booking(client, customer_headers, owner_headers)
        raw = payment_event(body["payment"]["id"])
        headers = signed(payment_event(body["payment"]["id"], amount=1))
        resp = await client.post("/v1/payments/webhook", content=raw, headers=headers)
        assert resp.status_code == 401

        booking = (await client.get(f"/v1/bookings/{body['booking']['id']}", headers=customer_headers)).json()
        assert booking["status"] == "approved"

    async def test_missing_signature_rejected(self, client):
        raw = payment_event("pi_test_nothing")
        resp = await client.post("/v1/payments/webhook", content=raw)
        assert resp.status_code == 401

    async def test_malformed_body(self, client):
        raw = b"this is not json"
        resp = await client.post("/v1/payments/webhook", content=raw, headers=signed(raw))
        assert resp.status_code == 400
        assert resp.json()["error"] == "malformed_webhook"

    async def test_unknown_intent_acknowledged(self, client):
        raw = payment_event("pi_test_unknown")
        resp = await client.post("/v1/payments/webhook", content=raw, headers=signed(raw))
        assert resp.status_code == 200
        assert resp.json()["result"] == "ignored"

    async def test_irrelevant_event_acknowledged(self, client):
        raw = payment_event("pi_test_unknown", event_type="source.chargeable")
        resp = await client.post("/v1/payments/webhook", content=raw, headers=signed(raw))
        assert resp.status_code == 200
        assert resp.json()["result"] == "ignored"


@pytest.mark.asyncio
class TestConflicts:
    async def test_approve_rejected_booking(self, client, customer_headers, owner_headers):
        booking = await create(client, customer_headers)
        booking_id = booking["id"]
        await client.put(f"/v1/bookings/{booking_id}/request", headers=customer_headers)
        rejected = await client.put(f"/v1/bookings/{booking_id}/reject", headers=owner_headers)
        assert rejected.json()["booking"]["status"] == "rejected"

        resp = await client.put(f"/v1/bookings/{booking_id}/approve", headers=owner_headers)
        assert resp.status_code == 409
        assert resp.json()["error"] == "invalid_transition"

        after = (await client.get(f"/v1/bookings/{booking_id}", headers=owner_headers)).json()
        assert after["status"] == "rejected"

    async def test_cancel_requested_booking(self, client, customer_headers):
        booking = await create(client, customer_headers)
        await client.put(f"/v1/bookings/{booking['id']}/request", headers=customer_headers)
        resp = await client.delete(f"/v1/bookings/{booking['id']}", headers=customer_headers)
        assert resp.status_code == 200
        assert resp.json()["booking"]["status"] == "cancelled"

        again = await client.delete(f"/v1/bookings/{booking['id']}", headers=customer_headers)
        assert again.json()["noop"] is True

    async def test_request_unavailable_item(self, client, customer_headers, catalog_item):
        booking = await create(client, customer_headers)
        catalog_item.return_value = ItemSnapshot(
            item_id="item-1", available=False, price_per_unit=Money.from_major("500"), owner_id="owner-1"
        )
        resp = await client.put(f"/v1/bookings/{booking['id']}/request", headers=customer_headers)
        assert resp.status_code == 409
        assert resp.json()["error"] == "item_unavailable"

    async def test_terms_locked_after_approval(self, client, customer_headers, owner_headers):
        body = await approved_online_booking(client, customer_headers, owner_headers)
        resp = await client.put(
            f"/v1/bookings/{body['booking']['id']}/terms", headers=customer_headers, json={"rental_duration": 9}
        )
        assert resp.status_code == 409
        assert resp.json()["error"] == "terms_locked"


@pytest.mark.asyncio
class TestCashFlow:
    async def test_cash_rental_start_to_finish(self, client, customer_headers, owner_headers):
        booking = await create(client, customer_headers, method=PaymentMethodEnum.cash)
        booking_id = booking["id"]
        await client.put(f"/v1/bookings/{booking_id}/request", headers=customer_headers)

        approved = await client.put(f"/v1/bookings/{booking_id}/approve", headers=owner_headers)
        assert approved.json()["booking"]["status"] == "approved"
        assert approved.json()["payment"] is None

        early = await client.put(f"/v1/bookings/{booking_id}/start", headers=owner_headers)
        assert early.status_code == 409
        assert early.json()["error"] == "guard_rejected"

        confirmed = await client.put(f"/v1/bookings/{booking_id}/cash-confirmed", headers=owner_headers)
        assert confirmed.status_code == 200

        started = await client.put(f"/v1/bookings/{booking_id}/start", headers=owner_headers)
        assert started.json()["booking"]["status"] == "ongoing"

        closed = await client.put(
            f"/v1/bookings/{booking_id}/close", headers=owner_headers, json={"return_confirmed": True}
        )
        assert closed.status_code == 200
        assert closed.json()["booking"]["status"] == "completed"

    async def test_cash_booking_has_no_online_payment(self, client, customer_headers, owner_headers):
        booking = await create(client, customer_headers, method=PaymentMethodEnum.cash)
        await client.put(f"/v1/bookings/{booking['id']}/request", headers=customer_headers)
        await client.put(f"/v1/bookings/{booking['id']}/approve", headers=owner_headers)
        resp = await client.post(f"/v1/bookings/{booking['id']}/payment", headers=customer_headers)
        assert resp.status_code == 409
        assert resp.json()["error"] == "payment_not_required"

    async def test_terminate_ongoing_rental(self, client, customer_headers, owner_headers):
        booking = await create(client, customer_headers, method=PaymentMethodEnum.cash)
        booking_id = booking["id"]
        await client.put(f"/v1/bookings/{booking_id}/request", headers=customer_headers)
        await client.put(f"/v1/bookings/{booking_id}/approve", headers=owner_headers)
        await client.put(f"/v1/bookings/{booking_id}/cash-confirmed", headers=owner_headers)
        await client.put(f"/v1/bookings/{booking_id}/start", headers=owner_headers)

        resp = await client.put(f"/v1/bookings/{booking_id}/terminate", headers=owner_headers)
        assert resp.json()["booking"]["status"] == "terminated"


@pytest.mark.asyncio
class TestMaintenanceAPI:
    async def test_sweep_requires_admin(self, client, customer_headers):
        resp = await client.post("/v1/maintenance/sweep", headers=customer_headers)
        assert resp.status_code == 403

    async def test_sweep(self, client, admin_headers):
        resp = await client.post("/v1/maintenance/sweep", headers=admin_headers)
        assert resp.status_code == 200
        assert resp.json() == {"intents_polled": 0, "rentals_closed": 0, "notifications_retried": 0}
