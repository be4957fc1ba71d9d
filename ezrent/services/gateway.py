"""
Payment gateway adapter (PayMongo payment intents).

GCash is a wallet redirect and QR Ph a QR presentment; both go through the
same intent -> payment method -> attach sequence and differ only in the
next_action the gateway returns.

Every request:
  - carries an Idempotency-Key derived from booking id + attempt epoch + step,
    so a retry after a timeout never opens a second intent
  - has its own timeout (gateway_timeout_seconds)
  - is retried up to gateway_max_attempts on GatewayUnavailable / GatewayTimeout
    with exponential backoff (gateway_backoff_base_seconds * 2**n)

Without a secret key (or with gateway_use_stub) the adapter answers with
predictable stub intents so local runs and tests never reach the network.
"""
import asyncio
import hashlib
import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from ezrent.config import get_settings
from ezrent.schemas.schemas import IntentStatus, PaymentMethodEnum, ONLINE_METHODS
from ezrent.services.errors import (
    GatewayError,
    GatewayRejected,
    GatewayTimeout,
    GatewayUnavailable,
)
from ezrent.services.money import Money

logger = logging.getLogger(__name__)
settings = get_settings()

PENDING_GATEWAY_STATUSES = {"awaiting_payment_method", "awaiting_next_action", "processing"}


@dataclass(frozen=True)
class PayerInfo:
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None


@dataclass(frozen=True)
class GatewayIntent:
    id: str
    amount: Money
    provider: PaymentMethodEnum
    status: IntentStatus
    next_action_url: Optional[str] = None


def idempotency_key(booking_id: str, attempt: int) -> str:
    return f"booking-{booking_id}-attempt-{attempt}"


def _use_stub() -> bool:
    return settings.gateway_use_stub or not settings.gateway_secret_key


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

async def create_intent(
    booking_id: str,
    amount: Money,
    method: PaymentMethodEnum,
    payer: PayerInfo,
    attempt: int = 0,
) -> GatewayIntent:
    """Open a payment intent for a booking and attach the wallet / QR method."""
    if method not in ONLINE_METHODS:
        raise GatewayRejected(f"{method.value} is not collected through the gateway")
    if amount.cents <= 0:
        raise GatewayRejected("Amount must be positive")

    key = idempotency_key(booking_id, attempt)
    if _use_stub():
        return _stub_intent(booking_id, amount, method, key)

    created = await _request(
        "POST",
        "/payment_intents",
        key=f"{key}-intent",
        json={
            "data": {
                "attributes": {
                    "amount": amount.cents,
                    "currency": amount.currency,
                    "payment_method_allowed": [method.value],
                    "capture_type": "automatic",
                    "description": f"EzRent booking {booking_id}",
                    "metadata": {"booking_id": booking_id, "attempt": str(attempt)},
                }
            }
        },
    )
    intent_id = created["data"]["id"]

    billing = {k: v for k, v in {"name": payer.name, "email": payer.email, "phone": payer.phone}.items() if v}
    pm = await _request(
        "POST",
        "/payment_methods",
        key=f"{key}-method",
        json={"data": {"attributes": {"type": method.value, "billing": billing}}},
    )

    attached = await _request(
        "POST",
        f"/payment_intents/{intent_id}/attach",
        key=f"{key}-attach",
        json={
            "data": {
                "attributes": {
                    "payment_method": pm["data"]["id"],
                    "return_url": f"{settings.frontend_url.rstrip('/')}/payment-success?booking={booking_id}",
                }
            }
        },
    )
    attrs = attached["data"]["attributes"]
    logger.info("Gateway intent created: id=%s booking=%s amount=%s", intent_id, booking_id, amount)
    return GatewayIntent(
        id=intent_id,
        amount=amount,
        provider=method,
        status=map_gateway_status(attrs),
        next_action_url=_next_action_url(attrs.get("next_action")),
    )


async def query_status(intent_id: str) -> IntentStatus:
    """Poll the gateway for an intent's status (fallback for missed webhooks)."""
    if _use_stub():
        return IntentStatus.pending
    body = await _request("GET", f"/payment_intents/{intent_id}")
    return map_gateway_status(body["data"]["attributes"])


def map_gateway_status(attrs: dict) -> IntentStatus:
    gateway_status = str(attrs.get("status", "")).lower()
    if gateway_status == "succeeded":
        return IntentStatus.succeeded
    if gateway_status == "cancelled":
        return IntentStatus.expired
    if gateway_status == "awaiting_payment_method" and attrs.get("last_payment_error"):
        return IntentStatus.failed
    if gateway_status not in PENDING_GATEWAY_STATUSES:
        logger.warning("Unknown gateway status %r treated as pending", gateway_status)
    return IntentStatus.pending


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------

async def _request(method: str, path: str, key: str | None = None, json: dict | None = None) -> dict:
    """Send one gateway request, retrying transient failures with backoff."""
    last_exc: GatewayError | None = None
    for attempt in range(1, settings.gateway_max_attempts + 1):
        try:
            return await _call_gateway(method, path, key, json)
        except (GatewayUnavailable, GatewayTimeout) as exc:
            last_exc = exc
            if attempt == settings.gateway_max_attempts:
                break
            wait = settings.gateway_backoff_base_seconds * 2 ** (attempt - 1)
            logger.warning(
                "Gateway %s %s failed (attempt %d/%d): %s; retrying in %.2fs",
                method, path, attempt, settings.gateway_max_attempts, exc, wait,
            )
            await asyncio.sleep(wait)

    logger.error("Gateway %s %s failed after %d attempts: %s", method, path, settings.gateway_max_attempts, last_exc)
    raise last_exc


async def _call_gateway(method: str, path: str, key: str | None, json: dict | None) -> dict:
    headers = {"Accept": "application/json"}
    if key:
        headers["Idempotency-Key"] = key
    try:
        async with httpx.AsyncClient(
            base_url=settings.gateway_base_url,
            timeout=settings.gateway_timeout_seconds,
            auth=(settings.gateway_secret_key, ""),
        ) as client:
            resp = await client.request(method, path, headers=headers, json=json)
    except httpx.TimeoutException as exc:
        raise GatewayTimeout(f"Gateway timed out on {method} {path}") from exc
    except httpx.TransportError as exc:
        raise GatewayUnavailable(f"Gateway unreachable: {exc}") from exc

    if resp.status_code == 429 or resp.status_code >= 500:
        raise GatewayUnavailable(f"Gateway error {resp.status_code}")
    if resp.status_code >= 400:
        raise GatewayRejected(f"Gateway rejected request ({resp.status_code}): {_error_detail(resp)}")
    return resp.json()


def _error_detail(resp: httpx.Response) -> str:
    try:
        errors = resp.json().get("errors") or []
        return "; ".join(str(e.get("detail", e)) for e in errors) or resp.text
    except ValueError:
        return resp.text


def _next_action_url(next_action: dict | None) -> str | None:
    if not next_action:
        return None
    if next_action.get("type") == "redirect":
        return (next_action.get("redirect") or {}).get("url")
    # QR Ph presentment
    return (next_action.get("code") or {}).get("image_url")


def _stub_intent(booking_id: str, amount: Money, method: PaymentMethodEnum, key: str) -> GatewayIntent:
    # Same key -> same id, mirroring gateway-side idempotency
    intent_id = f"pi_test_{hashlib.sha256(key.encode()).hexdigest()[:24]}"
    preview = (
        f"{settings.frontend_url.rstrip('/')}/payments/preview?"
        f"booking={booking_id}&amount={amount.cents}&intent={intent_id}&method={method.value}"
    )
    return GatewayIntent(
        id=intent_id,
        amount=amount,
        provider=method,
        status=IntentStatus.pending,
        next_action_url=preview,
    )
