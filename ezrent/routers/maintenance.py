"""
Maintenance router: POST /v1/maintenance/sweep (admin).

Meant for a scheduler: polls overdue payment intents, completes rentals past
their return date and re-queues failed notifications.
"""
import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ezrent.database import get_db
from ezrent.middleware.auth import Actor, get_current_admin
from ezrent.redis_client import get_redis
from ezrent.schemas.schemas import SweepResponse
from ezrent.services import notifications, reconciliation

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1/maintenance", tags=["Maintenance"])


@router.post("/sweep", response_model=SweepResponse)
async def sweep(
    db: AsyncSession = Depends(get_db),
    admin: Actor = Depends(get_current_admin),
):
    redis = await get_redis()
    polled = await reconciliation.sweep_pending_intents(db, redis)
    closed = await reconciliation.close_due_rentals(db, redis)
    retried = await notifications.retry_failed_notifications()
    logger.info("Sweep by %s: polled=%d closed=%d retried=%d", admin.id, polled, closed, retried)
    return SweepResponse(intents_polled=polled, rentals_closed=closed, notifications_retried=retried)
