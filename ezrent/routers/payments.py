"""
Payments router: POST /v1/payments/webhook, POST /v1/payments/{intent_id}/poll
"""
import logging

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from ezrent.database import get_db
from ezrent.middleware.auth import Actor, get_current_actor
from ezrent.models.payment_intent import PaymentIntent
from ezrent.redis_client import get_redis
from ezrent.schemas.schemas import ActorRole, WebhookAck
from ezrent.services import reconciliation
from ezrent.services.errors import PaymentIntentNotFound

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1/payments", tags=["Payments"])


@router.post("/webhook", response_model=WebhookAck)
async def payment_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    paymongo_signature: str | None = Header(default=None, alias="Paymongo-Signature"),
):
    """
    Gateway webhook ingress.
    - Signature over the raw body is checked before anything is parsed (401 on failure).
    - Malformed bodies answer 400.
    - Every recognised, duplicate or irrelevant event answers 200 so the gateway stops redelivering.
    """
    raw = await request.body()
    redis = await get_redis()
    result = await reconciliation.handle_payment_webhook(db, redis, raw, paymongo_signature)
    return WebhookAck(result=result)


@router.post("/{intent_id}/poll", response_model=WebhookAck)
async def poll_payment(
    intent_id: str,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Ask the gateway for the intent's status when a webhook is overdue."""
    intent = await db.get(PaymentIntent, intent_id)
    if intent is None:
        raise PaymentIntentNotFound(f"Payment intent {intent_id} not found")
    if actor.role != ActorRole.admin:
        # Only parties to the booking may poll its payment
        await reconciliation.get_booking(db, intent.booking_id, actor)

    redis = await get_redis()
    result = await reconciliation.poll_intent(db, redis, intent_id)
    return WebhookAck(result=result)
