"""
Unit tests for the payment gateway adapter (HTTP mocked with respx).
"""
import httpx
import pytest
import respx

from ezrent.schemas.schemas import IntentStatus, PaymentMethodEnum
from ezrent.services import gateway
from ezrent.services.errors import GatewayRejected, GatewayTimeout, GatewayUnavailable
from ezrent.services.money import Money

BASE = "https://gateway.test/v1"
PAYER = gateway.PayerInfo(name="cust-1", email="cust@example.com")


def intent_body(intent_id="pi_live_1"):
    return {"data": {"id": intent_id, "attributes": {"status": "awaiting_payment_method"}}}


def attach_body(status="awaiting_next_action", next_action=None):
    return {
        "data": {
            "id": "pi_live_1",
            "attributes": {
                "status": status,
                "next_action": next_action
                or {"type": "redirect", "redirect": {"url": "https://pay.test/gcash/abc"}},
            },
        }
    }


@pytest.fixture
def live_gateway(monkeypatch):
    monkeypatch.setattr(gateway.settings, "gateway_use_stub", False)
    monkeypatch.setattr(gateway.settings, "gateway_secret_key", "sk_test_123")
    monkeypatch.setattr(gateway.settings, "gateway_base_url", BASE)
    monkeypatch.setattr(gateway.settings, "gateway_backoff_base_seconds", 0)
    monkeypatch.setattr(gateway.settings, "gateway_max_attempts", 3)


@pytest.mark.asyncio
class TestCreateIntent:
    @respx.mock
    async def test_gcash_intent_flow(self, live_gateway):
        create = respx.post(f"{BASE}/payment_intents").respond(200, json=intent_body())
        method = respx.post(f"{BASE}/payment_methods").respond(200, json={"data": {"id": "pm_1"}})
        attach = respx.post(f"{BASE}/payment_intents/pi_live_1/attach").respond(200, json=attach_body())

        intent = await gateway.create_intent("bk-1", Money(160000), PaymentMethodEnum.gcash, PAYER)

        assert intent.id == "pi_live_1"
        assert intent.status == IntentStatus.pending
        assert intent.next_action_url == "https://pay.test/gcash/abc"
        assert intent.amount == Money(160000)
        assert create.calls[0].request.headers["Idempotency-Key"] == "booking-bk-1-attempt-0-intent"
        assert method.calls[0].request.headers["Idempotency-Key"] == "booking-bk-1-attempt-0-method"
        assert attach.called

    @respx.mock
    async def test_qrph_returns_qr_image(self, live_gateway):
        respx.post(f"{BASE}/payment_intents").respond(200, json=intent_body())
        respx.post(f"{BASE}/payment_methods").respond(200, json={"data": {"id": "pm_1"}})
        respx.post(f"{BASE}/payment_intents/pi_live_1/attach").respond(
            200,
            json=attach_body(next_action={"type": "consume_qr", "code": {"image_url": "data:image/png;qr"}}),
        )

        intent = await gateway.create_intent("bk-1", Money(5000), PaymentMethodEnum.qrph, PAYER, attempt=2)
        assert intent.next_action_url == "data:image/png;qr"
        assert intent.provider == PaymentMethodEnum.qrph

    @respx.mock
    async def test_retries_transient_errors_with_same_key(self, live_gateway):
        create = respx.post(f"{BASE}/payment_intents")
        create.side_effect = [httpx.Response(503), httpx.Response(200, json=intent_body())]
        respx.post(f"{BASE}/payment_methods").respond(200, json={"data": {"id": "pm_1"}})
        respx.post(f"{BASE}/payment_intents/pi_live_1/attach").respond(200, json=attach_body())

        intent = await gateway.create_intent("bk-1", Money(1000), PaymentMethodEnum.gcash, PAYER)

        assert intent.id == "pi_live_1"
        assert create.call_count == 2
        keys = {c.request.headers["Idempotency-Key"] for c in create.calls}
        assert keys == {"booking-bk-1-attempt-0-intent"}

    @respx.mock
    async def test_gives_up_after_max_attempts(self, live_gateway):
        create = respx.post(f"{BASE}/payment_intents").respond(502)

        with pytest.raises(GatewayUnavailable):
            await gateway.create_intent("bk-1", Money(1000), PaymentMethodEnum.gcash, PAYER)
        assert create.call_count == 3

    @respx.mock
    async def test_timeout_exhaustion(self, live_gateway):
        create = respx.post(f"{BASE}/payment_intents")
        create.side_effect = httpx.ConnectTimeout

        with pytest.raises(GatewayTimeout):
            await gateway.create_intent("bk-1", Money(1000), PaymentMethodEnum.gcash, PAYER)
        assert create.call_count == 3

    @respx.mock
    async def test_client_error_not_retried(self, live_gateway):
        create = respx.post(f"{BASE}/payment_intents").respond(
            400, json={"errors": [{"detail": "amount is below minimum"}]}
        )

        with pytest.raises(GatewayRejected) as exc_info:
            await gateway.create_intent("bk-1", Money(1000), PaymentMethodEnum.gcash, PAYER)
        assert create.call_count == 1
        assert "below minimum" in exc_info.value.detail

    async def test_cash_is_not_a_gateway_method(self, live_gateway):
        with pytest.raises(GatewayRejected):
            await gateway.create_intent("bk-1", Money(1000), PaymentMethodEnum.cash, PAYER)

    async def test_non_positive_amount_rejected(self, live_gateway):
        with pytest.raises(GatewayRejected):
            await gateway.create_intent("bk-1", Money(0), PaymentMethodEnum.gcash, PAYER)


@pytest.mark.asyncio
class TestQueryStatus:
    @respx.mock
    async def test_succeeded(self, live_gateway):
        respx.get(f"{BASE}/payment_intents/pi_1").respond(
            200, json={"data": {"id": "pi_1", "attributes": {"status": "succeeded"}}}
        )
        assert await gateway.query_status("pi_1") == IntentStatus.succeeded

    @respx.mock
    async def test_still_awaiting(self, live_gateway):
        respx.get(f"{BASE}/payment_intents/pi_1").respond(
            200, json={"data": {"id": "pi_1", "attributes": {"status": "awaiting_next_action"}}}
        )
        assert await gateway.query_status("pi_1") == IntentStatus.pending


class TestStatusMapping:
    def test_cancelled_is_expired(self):
        assert gateway.map_gateway_status({"status": "cancelled"}) == IntentStatus.expired

    def test_payment_error_is_failed(self):
        attrs = {"status": "awaiting_payment_method", "last_payment_error": {"code": "declined"}}
        assert gateway.map_gateway_status(attrs) == IntentStatus.failed

    def test_fresh_intent_is_pending(self):
        assert gateway.map_gateway_status({"status": "awaiting_payment_method"}) == IntentStatus.pending

    def test_processing_is_pending(self):
        assert gateway.map_gateway_status({"status": "processing"}) == IntentStatus.pending

    def test_idempotency_key(self):
        assert gateway.idempotency_key("bk-1", 3) == "booking-bk-1-attempt-3"


@pytest.mark.asyncio
class TestStubMode:
    async def test_stub_is_deterministic_per_attempt(self, monkeypatch):
        monkeypatch.setattr(gateway.settings, "gateway_use_stub", True)
        first = await gateway.create_intent("bk-9", Money(2500), PaymentMethodEnum.gcash, PAYER)
        again = await gateway.create_intent("bk-9", Money(2500), PaymentMethodEnum.gcash, PAYER)
        retry = await gateway.create_intent("bk-9", Money(2500), PaymentMethodEnum.gcash, PAYER, attempt=1)

        assert first.id == again.id
        assert first.id != retry.id
        assert first.id.startswith("pi_test_")
        assert first.status == IntentStatus.pending
        assert "booking=bk-9" in first.next_action_url

    async def test_stub_status_is_pending(self, monkeypatch):
        monkeypatch.setattr(gateway.settings, "gateway_use_stub", True)
        assert await gateway.query_status("pi_test_x") == IntentStatus.pending
