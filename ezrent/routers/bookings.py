"""
Bookings router: customer and owner actions on a booking.

Every action answers with the booking as persisted (the server is the only
authority on status); replayed actions come back with noop=true.
"""
import logging

from fastapi import APIRouter, Depends, Header, Query, Request, status
from fastapi.encoders import jsonable_encoder
from sqlalchemy.ext.asyncio import AsyncSession

from ezrent.database import as_utc, get_db
from ezrent.middleware.auth import Actor, get_current_actor
from ezrent.middleware.idempotency import check_idempotency, store_idempotency_result
from ezrent.models.booking import Booking
from ezrent.models.payment_intent import PaymentIntent
from ezrent.models.settlement import SettlementRecord
from ezrent.redis_client import get_redis
from ezrent.schemas.schemas import (
    ActionResponse,
    BookingCloseRequest,
    BookingCreateRequest,
    BookingResponse,
    BookingStatus,
    BookingTermsUpdate,
    PaymentIntentResponse,
    SettlementResponse,
)
from ezrent.services import reconciliation
from ezrent.services.errors import ConcurrentModification, ConflictRetry
from ezrent.services.money import Money

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1/bookings", tags=["Bookings"])


def booking_response(booking: Booking) -> BookingResponse:
    return BookingResponse(
        id=booking.id,
        item_id=booking.item_id,
        customer_id=booking.customer_id,
        owner_id=booking.owner_id,
        status=booking.status,
        price_per_unit=Money(booking.price_per_unit_cents).to_major(),
        rental_duration=booking.rental_duration,
        rental_period_unit=booking.rental_period_unit,
        delivery_charge=Money(booking.delivery_charge_cents).to_major(),
        grand_total=booking.grand_total.to_major(),
        payment_method=booking.payment_method,
        payment_intent_id=booking.payment_intent_id,
        pickup_date=as_utc(booking.pickup_date),
        return_date=as_utc(booking.return_date),
        version=booking.version,
        created_at=as_utc(booking.created_at),
        updated_at=as_utc(booking.updated_at),
    )


def intent_response(intent: PaymentIntent | None) -> PaymentIntentResponse | None:
    if intent is None:
        return None
    return PaymentIntentResponse(
        id=intent.id,
        booking_id=intent.booking_id,
        amount=Money(intent.amount_cents).to_major(),
        provider=intent.provider,
        status=intent.status,
        next_action_url=intent.next_action_url,
        requires_refund=intent.requires_refund,
    )


def settlement_response(record: SettlementRecord) -> SettlementResponse:
    return SettlementResponse(
        booking_id=record.booking_id,
        payment_intent_id=record.payment_intent_id,
        rental_amount=Money(record.rental_amount_cents).to_major(),
        commission_rate=record.commission_rate,
        commission_amount=Money(record.commission_amount_cents).to_major(),
        owner_share=Money(record.owner_share_cents).to_major(),
        settled_at=as_utc(record.settled_at),
    )


def action_response(result: reconciliation.ActionResult) -> ActionResponse:
    return ActionResponse(
        booking=booking_response(result.booking),
        noop=result.noop,
        payment=intent_response(result.intent),
    )


async def run_action(action, db: AsyncSession, booking_id: str, actor: Actor, **kwargs):
    """Run a booking action, retrying once if another writer got there first."""
    redis = await get_redis()
    try:
        return await action(db, redis, booking_id, actor, **kwargs)
    except ConcurrentModification:
        logger.info("Retrying %s on booking=%s after concurrent modification", action.__name__, booking_id)
    try:
        return await action(db, redis, booking_id, actor, **kwargs)
    except ConcurrentModification as exc:
        raise ConflictRetry("Booking is busy; please retry") from exc


@router.post("", status_code=status.HTTP_201_CREATED, response_model=BookingResponse)
async def create_booking(
    payload: BookingCreateRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    """Save a draft booking. Repeated calls with the same Idempotency-Key replay the first result."""
    if idempotency_key:
        cached = await check_idempotency(request, actor.id)
        if cached:
            return cached

    booking = await reconciliation.create_booking(db, actor, payload)
    response = booking_response(booking)

    if idempotency_key:
        await store_idempotency_result(actor.id, idempotency_key, 201, jsonable_encoder(response))
    return response


@router.get("", response_model=list[BookingResponse])
async def list_bookings(
    statuses: list[BookingStatus] | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """The caller's bookings: a customer's rentals or an owner's request / ongoing queues."""
    bookings = await reconciliation.list_bookings(db, actor, statuses, limit=limit, offset=offset)
    return [booking_response(b) for b in bookings]


@router.get("/overdue", response_model=list[BookingResponse])
async def list_overdue_rentals(
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return [booking_response(b) for b in await reconciliation.list_overdue_rentals(db, actor)]


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: str,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return booking_response(await reconciliation.get_booking(db, booking_id, actor))


@router.put("/{booking_id}/terms", response_model=BookingResponse)
async def update_terms(
    booking_id: str,
    payload: BookingTermsUpdate,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    booking = await run_action(reconciliation.update_terms, db, booking_id, actor, payload=payload)
    return booking_response(booking)


@router.put("/{booking_id}/request", response_model=ActionResponse)
async def request_booking(
    booking_id: str,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return action_response(await run_action(reconciliation.request_booking, db, booking_id, actor))


@router.put("/{booking_id}/approve", response_model=ActionResponse)
async def approve_booking(
    booking_id: str,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return action_response(await run_action(reconciliation.approve_booking, db, booking_id, actor))


@router.put("/{booking_id}/reject", response_model=ActionResponse)
async def reject_booking(
    booking_id: str,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return action_response(await run_action(reconciliation.reject_booking, db, booking_id, actor))


@router.put("/{booking_id}/cash-confirmed", response_model=BookingResponse)
async def confirm_cash(
    booking_id: str,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return booking_response(await run_action(reconciliation.confirm_cash, db, booking_id, actor))


@router.put("/{booking_id}/start", response_model=ActionResponse)
async def start_booking(
    booking_id: str,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return action_response(await run_action(reconciliation.start_booking, db, booking_id, actor))


@router.put("/{booking_id}/terminate", response_model=ActionResponse)
async def terminate_booking(
    booking_id: str,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return action_response(await run_action(reconciliation.terminate_booking, db, booking_id, actor))


@router.put("/{booking_id}/close", response_model=ActionResponse)
async def close_booking(
    booking_id: str,
    payload: BookingCloseRequest | None = None,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    confirmed = payload.return_confirmed if payload else True
    result = await run_action(reconciliation.close_booking, db, booking_id, actor, return_confirmed=confirmed)
    return action_response(result)


@router.delete("/{booking_id}", response_model=ActionResponse)
async def cancel_booking(
    booking_id: str,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return action_response(await run_action(reconciliation.cancel_booking, db, booking_id, actor))


@router.post("/{booking_id}/payment", response_model=ActionResponse)
async def begin_payment(
    booking_id: str,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Create the payment intent for an approved booking, or return the one still open."""
    return action_response(await run_action(reconciliation.begin_payment, db, booking_id, actor))


@router.get("/{booking_id}/settlement", response_model=SettlementResponse)
async def get_settlement(
    booking_id: str,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return settlement_response(await reconciliation.get_settlement(db, booking_id, actor))
