"""
Settlements router: GET /v1/settlements (admin).

The receipts view: every settled booking with the platform commission and the
owner's share, plus ledger-wide totals.
"""
import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ezrent.database import get_db
from ezrent.middleware.auth import Actor, get_current_admin
from ezrent.routers.bookings import settlement_response
from ezrent.schemas.schemas import SettlementListResponse
from ezrent.services import ledger
from ezrent.services.money import Money

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1/settlements", tags=["Settlements"])


@router.get("", response_model=SettlementListResponse)
async def list_settlements(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
    admin: Actor = Depends(get_current_admin),
):
    records = await ledger.list_settlements(db, limit=limit, offset=offset)
    count, commission_cents, owner_share_cents = await ledger.settlement_totals(db)
    logger.info("Settlements listed by %s: %d of %d", admin.id, len(records), count)
    return SettlementListResponse(
        items=[settlement_response(r) for r in records],
        count=count,
        total_commission=Money(commission_cents).to_major(),
        total_owner_share=Money(owner_share_cents).to_major(),
    )
