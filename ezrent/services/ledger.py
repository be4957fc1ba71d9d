"""
Settlement ledger: append-only, one row per booking.

The unique key on settlements.booking_id is the last line of defence for
at-most-once settlement; callers check first and treat a constraint
violation at commit as a duplicate.
"""
import logging

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ezrent.models.settlement import SettlementRecord
from ezrent.services.commission import Settlement
from ezrent.services.errors import DuplicateSettlement, SettlementNotFound

logger = logging.getLogger(__name__)


async def find_settlement(db: AsyncSession, booking_id: str) -> SettlementRecord | None:
    result = await db.execute(select(SettlementRecord).where(SettlementRecord.booking_id == booking_id))
    return result.scalar_one_or_none()


async def get_settlement(db: AsyncSession, booking_id: str) -> SettlementRecord:
    record = await find_settlement(db, booking_id)
    if record is None:
        raise SettlementNotFound(f"No settlement for booking {booking_id}")
    return record


async def record_settlement(
    db: AsyncSession,
    booking_id: str,
    payment_intent_id: str | None,
    settlement: Settlement,
) -> SettlementRecord:
    """Stage a settlement row in the caller's transaction. Does not commit."""
    if await find_settlement(db, booking_id) is not None:
        raise DuplicateSettlement(f"Booking {booking_id} is already settled")

    record = SettlementRecord(
        booking_id=booking_id,
        payment_intent_id=payment_intent_id,
        rental_amount_cents=settlement.rental_amount.cents,
        commission_rate=settlement.commission_rate,
        commission_amount_cents=settlement.commission_amount.cents,
        owner_share_cents=settlement.owner_share.cents,
    )
    db.add(record)
    logger.info(
        "Settlement staged booking=%s total=%s commission=%s owner_share=%s",
        booking_id, settlement.rental_amount, settlement.commission_amount, settlement.owner_share,
    )
    return record


async def list_settlements(db: AsyncSession, limit: int = 50, offset: int = 0) -> list[SettlementRecord]:
    result = await db.execute(
        select(SettlementRecord).order_by(SettlementRecord.settled_at.desc(), SettlementRecord.id.desc())
        .limit(limit).offset(offset)
    )
    return list(result.scalars().all())


async def settlement_totals(db: AsyncSession) -> tuple[int, int, int]:
    """(count, commission_cents, owner_share_cents) over the whole ledger."""
    row = (
        await db.execute(
            select(
                func.count(SettlementRecord.id),
                func.coalesce(func.sum(SettlementRecord.commission_amount_cents), 0),
                func.coalesce(func.sum(SettlementRecord.owner_share_cents), 0),
            )
        )
    ).one()
    return int(row[0]), int(row[1]), int(row[2])
