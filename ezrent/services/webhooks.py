"""
Gateway webhook verification and parsing.

Signature header format: "t=<unix ts>,te=<test signature>,li=<live signature>",
where each signature is HMAC-SHA256 over "<t>.<raw body>" keyed with the
webhook secret.
"""
import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass
from typing import Optional

from ezrent.config import get_settings
from ezrent.services.errors import MalformedWebhook, SignatureVerificationFailed

logger = logging.getLogger(__name__)
settings = get_settings()

PAID_EVENTS = {"payment.paid"}
FAILED_EVENTS = {"payment.failed"}


@dataclass(frozen=True)
class WebhookEvent:
    event_id: str
    event_type: str
    intent_id: Optional[str]
    amount_cents: Optional[int]
    livemode: bool = False

    @property
    def recognised(self) -> bool:
        return self.event_type in PAID_EVENTS | FAILED_EVENTS


def compute_signature(secret: str, timestamp: str, raw: bytes) -> str:
    message = timestamp.encode("utf-8") + b"." + raw
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def sign_payload(raw: bytes, secret: str | None = None, timestamp: int | None = None, live: bool = False) -> str:
    """Build a signature header for a payload, as the gateway would."""
    ts = str(timestamp if timestamp is not None else int(time.time()))
    sig = compute_signature(secret or settings.gateway_webhook_secret, ts, raw)
    return f"t={ts},te={'' if live else sig},li={sig if live else ''}"


def verify_signature(raw: bytes, header: str | None, now: float | None = None) -> None:
    """Raise SignatureVerificationFailed unless the header signs `raw`."""
    if not settings.gateway_webhook_secret:
        logger.error("Webhook received but no webhook secret is configured")
        raise SignatureVerificationFailed("Webhook secret not configured")
    if not header:
        raise SignatureVerificationFailed("Missing signature header")

    parts = {}
    for chunk in header.split(","):
        name, sep, value = chunk.strip().partition("=")
        if sep:
            parts[name] = value

    timestamp = parts.get("t", "")
    if not timestamp.isdigit():
        raise SignatureVerificationFailed("Signature timestamp missing")

    tolerance = settings.webhook_tolerance_seconds
    current = now if now is not None else time.time()
    if tolerance and abs(current - int(timestamp)) > tolerance:
        raise SignatureVerificationFailed("Signature timestamp outside tolerance")

    expected = compute_signature(settings.gateway_webhook_secret, timestamp, raw)
    candidates = [parts.get("te", ""), parts.get("li", "")]
    if not any(c and hmac.compare_digest(c, expected) for c in candidates):
        raise SignatureVerificationFailed("Signature mismatch")


def parse_event(raw: bytes) -> WebhookEvent:
    try:
        payload = json.loads(raw.decode("utf-8"))
        event = payload["data"]
        attrs = event["attributes"]
        resource = attrs.get("data") or {}
        resource_attrs = resource.get("attributes") or {}
    except (ValueError, KeyError, TypeError, AttributeError) as exc:
        raise MalformedWebhook("Webhook body is not a gateway event") from exc

    event_type = str(attrs.get("type", "")).lower()
    if not event_type:
        raise MalformedWebhook("Webhook event has no type")

    amount = resource_attrs.get("amount")
    try:
        amount_cents = int(amount) if amount is not None else None
    except (TypeError, ValueError) as exc:
        raise MalformedWebhook("Webhook amount is not an integer") from exc

    return WebhookEvent(
        event_id=str(event.get("id", "")),
        event_type=event_type,
        intent_id=resource_attrs.get("payment_intent_id"),
        amount_cents=amount_cents,
        livemode=bool(attrs.get("livemode", False)),
    )
