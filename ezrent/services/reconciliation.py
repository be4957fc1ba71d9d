"""
Booking / payment reconciliation.

The only place where booking transitions and gateway events meet. Both entry
points hold the booking's Redis lock for the whole load -> decide -> commit
sequence:

  1. Synchronous actions (customer / owner buttons): load booking, resolve the
     caller's role, run the state machine, persist; entering `approved` with
     an online method also opens a gateway payment intent.
  2. Gateway events (webhook or status poll): find the booking through the
     payment intent, skip anything already applied, then settle or roll the
     booking back to payment-required in a single commit.

Idempotency does the heavy lifting: the settlement row (unique per booking)
guards `paid`, the intent's terminal status guards `failed` / `expired`, and
state equality turns replayed actions into no-ops.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

import redis.asyncio as aioredis
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from ezrent.config import get_settings
from ezrent.database import as_utc, utcnow
from ezrent.middleware.auth import Actor, SYSTEM_ACTOR
from ezrent.models.booking import Booking
from ezrent.models.payment_intent import PaymentIntent
from ezrent.models.settlement import SettlementRecord
from ezrent.redis_client import booking_lock
from ezrent.schemas.schemas import (
    ActorRole,
    BookingAction,
    BookingCreateRequest,
    BookingStatus,
    BookingTermsUpdate,
    IntentStatus,
    ONLINE_METHODS,
)
from ezrent.services import catalog, gateway, ledger, notifications
from ezrent.services.commission import compute_settlement
from ezrent.services.errors import (
    BookingNotFound,
    ConcurrentModification,
    DuplicateSettlement,
    GatewayError,
    GatewayRejected,
    GuardRejected,
    ItemUnavailable,
    MalformedWebhook,
    NotPermitted,
    PaymentAlreadyInProgress,
    PaymentAlreadySettled,
    PaymentInitiationFailed,
    PaymentIntentNotFound,
    PaymentNotRequired,
    SignatureVerificationFailed,
    TransitionRejected,
)
from ezrent.services.money import Money
from ezrent.services.state_machine import GuardContext, transition
from ezrent.services.webhooks import PAID_EVENTS, parse_event, verify_signature

logger = logging.getLogger(__name__)
settings = get_settings()

A = BookingAction


@dataclass
class ActionResult:
    booking: Booking
    noop: bool = False
    intent: Optional[PaymentIntent] = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

async def _load_booking(db: AsyncSession, booking_id: str) -> Booking:
    result = await db.execute(
        select(Booking)
        .where(Booking.id == booking_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    booking = result.scalar_one_or_none()
    if booking is None:
        raise BookingNotFound(f"Booking {booking_id} not found")
    return booking


async def _load_intent(db: AsyncSession, intent_id: str) -> PaymentIntent | None:
    result = await db.execute(
        select(PaymentIntent)
        .where(PaymentIntent.id == intent_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


def _role_for(booking: Booking, actor: Actor, action) -> ActorRole:
    """Map the caller onto this booking: only its own customer or owner act on it."""
    if actor.role == ActorRole.system:
        return ActorRole.system
    if actor.role == ActorRole.customer and actor.id == booking.customer_id:
        return ActorRole.customer
    if actor.role == ActorRole.owner and actor.id == booking.owner_id:
        return ActorRole.owner
    raise NotPermitted(actor.role, action)


async def _commit(db: AsyncSession) -> None:
    try:
        await db.commit()
    except StaleDataError as exc:
        await db.rollback()
        raise ConcurrentModification("Booking changed underneath this request") from exc


async def _act(
    db: AsyncSession,
    redis: aioredis.Redis,
    booking_id: str,
    actor: Actor,
    action: BookingAction,
    guard_facts: Callable[[AsyncSession, Booking], Awaitable[GuardContext]] | None = None,
    on_change: Callable[[Booking], None] | None = None,
) -> ActionResult:
    async with booking_lock(redis, booking_id):
        booking = await _load_booking(db, booking_id)
        role = _role_for(booking, actor, action)
        ctx = await guard_facts(db, booking) if guard_facts else GuardContext()
        moved = transition(booking.status, action, role, ctx)
        if moved.noop:
            return ActionResult(booking, noop=True)

        booking.status = moved.target
        if on_change:
            on_change(booking)
        await _commit(db)
        logger.info(
            "Booking %s: %s -> %s (%s by %s)",
            booking.id, moved.source.value, moved.target.value, action.value, actor.id,
        )
    return ActionResult(booking)


async def _current_intent(db: AsyncSession, booking: Booking) -> PaymentIntent | None:
    if not booking.payment_intent_id:
        return None
    return await db.get(PaymentIntent, booking.payment_intent_id)


def _payment_hint(intent: PaymentIntent | None) -> str:
    if intent and intent.next_action_url:
        return f"Complete your payment here: {intent.next_action_url}"
    return ""


# ---------------------------------------------------------------------------
# Synchronous booking actions
# ---------------------------------------------------------------------------

async def create_booking(db: AsyncSession, actor: Actor, payload: BookingCreateRequest) -> Booking:
    """Save a draft (pending) booking priced from the catalog, never from the client."""
    if actor.role != ActorRole.customer:
        raise NotPermitted(actor.role, "create")

    item = await catalog.fetch_item(payload.item_id)
    booking = Booking(
        item_id=payload.item_id,
        customer_id=actor.id,
        owner_id=item.owner_id,
        customer_email=payload.customer_email,
        owner_email=item.owner_email,
        rental_period_unit=payload.rental_period_unit,
        payment_method=payload.payment_method,
        pickup_date=payload.pickup_date,
        return_date=payload.return_date,
        status=BookingStatus.pending,
        payment_attempt=0,
        cash_confirmed=False,
    )
    booking.reprice(item.price_per_unit, payload.rental_duration, Money.from_major(payload.delivery_charge))
    db.add(booking)
    await db.commit()
    logger.info("Booking %s drafted by %s for item %s (%s)", booking.id, actor.id, booking.item_id, booking.grand_total)
    return booking


async def update_terms(
    db: AsyncSession, redis: aioredis.Redis, booking_id: str, actor: Actor, payload: BookingTermsUpdate
) -> Booking:
    async with booking_lock(redis, booking_id):
        booking = await _load_booking(db, booking_id)
        if _role_for(booking, actor, "update") != ActorRole.customer:
            raise NotPermitted(actor.role, "update")

        pickup = payload.pickup_date or as_utc(booking.pickup_date)
        return_ = payload.return_date or as_utc(booking.return_date)
        if return_ <= pickup:
            raise GuardRejected("return_date must be after pickup_date")

        booking.reprice(
            Money(booking.price_per_unit_cents),
            payload.rental_duration or booking.rental_duration,
            Money.from_major(payload.delivery_charge)
            if payload.delivery_charge is not None
            else Money(booking.delivery_charge_cents),
        )
        booking.pickup_date = pickup
        booking.return_date = return_
        await _commit(db)
    return booking


async def request_booking(db: AsyncSession, redis: aioredis.Redis, booking_id: str, actor: Actor) -> ActionResult:
    async def facts(db: AsyncSession, booking: Booking) -> GuardContext:
        if booking.status != BookingStatus.pending:
            return GuardContext()
        item = await catalog.fetch_item(booking.item_id)
        if item.available:
            # Refresh the price while terms are still open
            booking.reprice(item.price_per_unit, booking.rental_duration, Money(booking.delivery_charge_cents))
        return GuardContext(item_available=item.available)

    try:
        result = await _act(db, redis, booking_id, actor, A.request, guard_facts=facts)
    except GuardRejected as exc:
        raise ItemUnavailable(exc.detail) from exc
    if not result.noop:
        await notifications.notify("booking_requested", result.booking)
    return result


async def approve_booking(db: AsyncSession, redis: aioredis.Redis, booking_id: str, actor: Actor) -> ActionResult:
    """
    Approve, then open the payment intent for online methods.

    Approval is committed before the gateway call: if the gateway stays down
    after retries the booking remains `approved` (unpaid) and
    PaymentInitiationFailed is raised; the customer can retry via
    begin_payment().
    """
    def stamp(booking: Booking) -> None:
        booking.approved_at = utcnow()

    result = await _act(db, redis, booking_id, actor, A.approve, on_change=stamp)
    booking = result.booking
    if result.noop:
        result.intent = await _current_intent(db, booking)
        return result

    if booking.payment_method in ONLINE_METHODS:
        try:
            async with booking_lock(redis, booking_id):
                booking = await _load_booking(db, booking_id)
                result.booking = booking
                if booking.status == BookingStatus.approved and not booking.payment_intent_id:
                    result.intent = await _open_intent(db, booking)
        except (PaymentInitiationFailed, GatewayRejected):
            await notifications.notify(
                "booking_approved", booking,
                payment_hint="We could not open a payment link yet; please retry payment from the app.",
            )
            raise

    await notifications.notify("booking_approved", booking, payment_hint=_payment_hint(result.intent))
    return result


async def reject_booking(db: AsyncSession, redis: aioredis.Redis, booking_id: str, actor: Actor) -> ActionResult:
    result = await _act(db, redis, booking_id, actor, A.reject)
    if not result.noop:
        await notifications.notify("booking_rejected", result.booking)
    return result


async def cancel_booking(db: AsyncSession, redis: aioredis.Redis, booking_id: str, actor: Actor) -> ActionResult:
    result = await _act(db, redis, booking_id, actor, A.delete)
    if not result.noop:
        await notifications.notify("booking_cancelled", result.booking)
    return result


async def confirm_cash(db: AsyncSession, redis: aioredis.Redis, booking_id: str, actor: Actor) -> Booking:
    """Owner confirms cash was collected on pickup; unlocks `start` for cash bookings."""
    async with booking_lock(redis, booking_id):
        booking = await _load_booking(db, booking_id)
        if _role_for(booking, actor, "confirm cash for") != ActorRole.owner:
            raise NotPermitted(actor.role, "confirm cash for")
        if booking.status != BookingStatus.approved:
            raise GuardRejected(f"Cash can only be confirmed on an approved booking, not {booking.status.value}")
        if booking.payment_method in ONLINE_METHODS:
            raise PaymentNotRequired("This booking is paid online, not in cash")
        if not booking.cash_confirmed:
            booking.cash_confirmed = True
            await _commit(db)
    return booking


async def start_booking(db: AsyncSession, redis: aioredis.Redis, booking_id: str, actor: Actor) -> ActionResult:
    async def facts(db: AsyncSession, booking: Booking) -> GuardContext:
        settled = await ledger.find_settlement(db, booking.id) is not None
        return GuardContext(payment_settled=settled, cash_confirmed=booking.cash_confirmed)

    return await _act(db, redis, booking_id, actor, A.start, guard_facts=facts)


async def terminate_booking(db: AsyncSession, redis: aioredis.Redis, booking_id: str, actor: Actor) -> ActionResult:
    result = await _act(db, redis, booking_id, actor, A.terminate)
    if not result.noop:
        await notifications.notify("booking_terminated", result.booking)
    return result


async def close_booking(
    db: AsyncSession,
    redis: aioredis.Redis,
    booking_id: str,
    actor: Actor,
    return_confirmed: bool = False,
    now: datetime | None = None,
) -> ActionResult:
    now = now or utcnow()

    async def facts(db: AsyncSession, booking: Booking) -> GuardContext:
        return GuardContext(return_due=as_utc(booking.return_date) <= now, return_confirmed=return_confirmed)

    result = await _act(db, redis, booking_id, actor, A.close, guard_facts=facts)
    if not result.noop:
        await notifications.notify("booking_completed", result.booking)
    return result


async def begin_payment(db: AsyncSession, redis: aioredis.Redis, booking_id: str, actor: Actor) -> ActionResult:
    """
    Open (or reuse) the payment intent for an approved booking.

    A still-pending intent is returned as is; a booking's intent id is never
    swapped for another while set.
    """
    async with booking_lock(redis, booking_id):
        booking = await _load_booking(db, booking_id)
        _role_for(booking, actor, "pay for")
        if booking.payment_method not in ONLINE_METHODS:
            raise PaymentNotRequired("Cash bookings are paid on pickup")
        if await ledger.find_settlement(db, booking.id) is not None:
            raise PaymentAlreadySettled(f"Booking {booking.id} is already paid")
        if booking.status != BookingStatus.approved:
            raise PaymentNotRequired(f"Booking is {booking.status.value}; payment is only taken once approved")

        if booking.payment_intent_id:
            intent = await _load_intent(db, booking.payment_intent_id)
            if intent is not None and intent.status == IntentStatus.pending:
                return ActionResult(booking, noop=True, intent=intent)
            raise PaymentAlreadyInProgress(
                "The current payment attempt has not been reconciled yet; try again shortly"
            )

        intent = await _open_intent(db, booking)
    return ActionResult(booking, intent=intent)


async def _open_intent(db: AsyncSession, booking: Booking) -> PaymentIntent:
    """Create the gateway intent and link it to the booking. Caller holds the lock."""
    key = gateway.idempotency_key(booking.id, booking.payment_attempt)
    try:
        created = await gateway.create_intent(
            booking.id,
            booking.grand_total,
            booking.payment_method,
            gateway.PayerInfo(name=booking.customer_id, email=booking.customer_email),
            attempt=booking.payment_attempt,
        )
    except GatewayRejected:
        logger.warning("Gateway rejected payment for booking=%s", booking.id)
        raise
    except GatewayError as exc:
        logger.error("Payment initiation failed for booking=%s: %s", booking.id, exc)
        raise PaymentInitiationFailed(
            "Payment gateway is unavailable; the booking stays approved and payment can be retried"
        ) from exc

    intent = await _load_intent(db, created.id)
    if intent is None:
        intent = PaymentIntent(
            id=created.id,
            booking_id=booking.id,
            amount_cents=created.amount.cents,
            provider=created.provider,
            status=created.status,
            idempotency_key=key,
            next_action_url=created.next_action_url,
            requires_refund=False,
        )
        db.add(intent)
    elif intent.booking_id != booking.id:
        logger.error("Gateway returned intent %s already linked to booking %s", intent.id, intent.booking_id)
        raise PaymentInitiationFailed("Gateway returned an intent that belongs to another booking")

    booking.payment_intent_id = intent.id
    await _commit(db)
    logger.info("Booking %s linked to payment intent %s (attempt %d)", booking.id, intent.id, booking.payment_attempt)
    return intent


# ---------------------------------------------------------------------------
# Gateway events
# ---------------------------------------------------------------------------

async def handle_payment_webhook(
    db: AsyncSession, redis: aioredis.Redis, raw: bytes, signature: str | None
) -> str:
    """
    Verify, parse and apply a gateway webhook.

    Returns a short result for the 200 response; only signature and payload
    problems raise.
    """
    try:
        verify_signature(raw, signature)
    except SignatureVerificationFailed as exc:
        logger.warning("Rejected webhook: %s", exc.detail)
        raise

    event = parse_event(raw)
    if not event.recognised:
        logger.info("Ignoring webhook event %s (%s)", event.event_id, event.event_type)
        return "ignored"
    if not event.intent_id:
        raise MalformedWebhook(f"{event.event_type} event without payment_intent_id")

    outcome = IntentStatus.succeeded if event.event_type in PAID_EVENTS else IntentStatus.failed
    logger.info("Webhook %s: %s for intent %s", event.event_id, event.event_type, event.intent_id)
    return await apply_payment_event(db, redis, event.intent_id, outcome, amount_cents=event.amount_cents)


async def apply_payment_event(
    db: AsyncSession,
    redis: aioredis.Redis,
    intent_id: str,
    outcome: IntentStatus,
    amount_cents: int | None = None,
    now: datetime | None = None,
) -> str:
    intent = await _load_intent(db, intent_id)
    if intent is None:
        logger.warning("Payment event for unknown intent %s ignored", intent_id)
        return "ignored"

    async with booking_lock(redis, intent.booking_id):
        intent = await _load_intent(db, intent_id)
        booking = await _load_booking(db, intent.booking_id)
        if outcome == IntentStatus.succeeded:
            result, record = await _settle(db, booking, intent, amount_cents)
        else:
            result, record = await _fail(db, booking, intent, outcome, now or utcnow()), None

    if result == "applied":
        await notifications.notify("payment_received", booking)
        await notifications.notify(
            "payout_notice", booking,
            commission=str(Money(record.commission_amount_cents)),
            owner_share=str(Money(record.owner_share_cents)),
        )
    elif result in ("payment_reset", "booking_rejected"):
        hint = (
            "Please retry the payment from the app."
            if result == "payment_reset"
            else "The payment window has closed and the booking was released."
        )
        await notifications.notify("payment_failed", booking, payment_hint=hint)
    return result


async def _settle(
    db: AsyncSession, booking: Booking, intent: PaymentIntent, amount_cents: int | None
) -> tuple[str, SettlementRecord | None]:
    if await ledger.find_settlement(db, booking.id) is not None:
        logger.info("Duplicate paid event for booking=%s intent=%s", booking.id, intent.id)
        return "duplicate", None

    if amount_cents is not None and amount_cents != intent.amount_cents:
        logger.error(
            "Paid amount %s does not match intent %s amount %s; not settling",
            amount_cents, intent.id, intent.amount_cents,
        )
        return "amount_mismatch", None

    settleable = booking.status == BookingStatus.approved and booking.payment_intent_id in (None, intent.id)
    if not settleable:
        if intent.status == IntentStatus.succeeded and intent.requires_refund:
            return "duplicate", None
        # Money arrived for a booking that can no longer take it
        intent.status = IntentStatus.succeeded
        intent.requires_refund = True
        await _commit(db)
        logger.warning(
            "Payment %s arrived for booking=%s in status %s; flagged for refund",
            intent.id, booking.id, booking.status.value,
        )
        return "refund_required", None

    settlement = compute_settlement(booking.grand_total, settings.commission_rate)
    try:
        record = await ledger.record_settlement(db, booking.id, intent.id, settlement)
    except DuplicateSettlement:
        return "duplicate", None

    moved = transition(booking.status, A.start, ActorRole.system, GuardContext(payment_settled=True))
    booking.status = moved.target
    booking.payment_intent_id = intent.id
    intent.status = IntentStatus.succeeded
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        logger.info("Settlement for booking=%s already committed elsewhere", booking.id)
        return "duplicate", None
    except StaleDataError as exc:
        await db.rollback()
        raise ConcurrentModification("Booking changed while settling") from exc

    logger.info(
        "Booking %s settled via %s: commission=%s owner_share=%s; now %s",
        booking.id, intent.id, settlement.commission_amount, settlement.owner_share, booking.status.value,
    )
    return "applied", record


async def _fail(
    db: AsyncSession, booking: Booking, intent: PaymentIntent, outcome: IntentStatus, now: datetime
) -> str:
    if intent.is_terminal:
        logger.info("Intent %s already %s; %s event ignored", intent.id, intent.status.value, outcome.value)
        return "duplicate"

    intent.status = outcome
    result = "recorded"
    if booking.payment_intent_id == intent.id and booking.status == BookingStatus.approved:
        booking.payment_intent_id = None
        booking.payment_attempt += 1
        approved_at = as_utc(booking.approved_at) or as_utc(booking.created_at)
        window_closed = now - approved_at >= timedelta(hours=settings.payment_retry_window_hours)
        if window_closed:
            moved = transition(
                booking.status, A.expire, ActorRole.system, GuardContext(retry_window_elapsed=True)
            )
            booking.status = moved.target
            result = "booking_rejected"
        else:
            result = "payment_reset"

    await _commit(db)
    logger.info("Intent %s marked %s for booking=%s (%s)", intent.id, outcome.value, booking.id, result)
    return result


async def poll_intent(
    db: AsyncSession, redis: aioredis.Redis, intent_id: str, now: datetime | None = None
) -> str:
    """Ask the gateway directly; used when a webhook is late or lost."""
    now = now or utcnow()
    intent = await _load_intent(db, intent_id)
    if intent is None:
        raise PaymentIntentNotFound(f"Payment intent {intent_id} not found")
    if intent.is_terminal:
        return "unchanged"

    status = await gateway.query_status(intent_id)
    if status == IntentStatus.pending:
        if now - as_utc(intent.created_at) < timedelta(hours=settings.intent_expiry_hours):
            return "pending"
        status = IntentStatus.expired
    return await apply_payment_event(db, redis, intent_id, status, now=now)


async def sweep_pending_intents(db: AsyncSession, redis: aioredis.Redis, now: datetime | None = None) -> int:
    now = now or utcnow()
    cutoff = now - timedelta(minutes=settings.intent_poll_after_minutes)
    result = await db.execute(
        select(PaymentIntent.id).where(
            PaymentIntent.status == IntentStatus.pending,
            PaymentIntent.created_at <= cutoff,
        )
    )
    polled = 0
    for intent_id in result.scalars().all():
        try:
            await poll_intent(db, redis, intent_id, now=now)
        except (GatewayError, ConcurrentModification) as exc:
            logger.warning("Sweep could not reconcile intent %s: %s", intent_id, exc)
            continue
        polled += 1
    return polled


async def close_due_rentals(db: AsyncSession, redis: aioredis.Redis, now: datetime | None = None) -> int:
    """Complete ongoing rentals whose return date has been reached."""
    now = now or utcnow()
    result = await db.execute(
        select(Booking.id).where(Booking.status == BookingStatus.ongoing, Booking.return_date <= now)
    )
    closed = 0
    for booking_id in result.scalars().all():
        try:
            outcome = await close_booking(db, redis, booking_id, SYSTEM_ACTOR, now=now)
        except (TransitionRejected, ConcurrentModification) as exc:
            logger.warning("Could not close due rental %s: %s", booking_id, exc)
            continue
        if not outcome.noop:
            closed += 1
    return closed


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

async def get_booking(db: AsyncSession, booking_id: str, actor: Actor) -> Booking:
    booking = await db.get(Booking, booking_id)
    if booking is None:
        raise BookingNotFound(f"Booking {booking_id} not found")
    if actor.role != ActorRole.admin:
        _role_for(booking, actor, "view")
    return booking


async def get_settlement(db: AsyncSession, booking_id: str, actor: Actor) -> SettlementRecord:
    await get_booking(db, booking_id, actor)
    return await ledger.get_settlement(db, booking_id)


def _scoped(query, actor: Actor):
    """Customers see what they booked, owners what was booked from them, admins everything."""
    if actor.role == ActorRole.customer:
        return query.where(Booking.customer_id == actor.id)
    if actor.role == ActorRole.owner:
        return query.where(Booking.owner_id == actor.id)
    if actor.role == ActorRole.admin:
        return query
    raise NotPermitted(actor.role, "list")


async def list_bookings(
    db: AsyncSession,
    actor: Actor,
    statuses: list[BookingStatus] | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Booking]:
    """The caller's bookings, newest first, optionally narrowed to some statuses."""
    query = _scoped(select(Booking), actor)
    if statuses:
        query = query.where(Booking.status.in_(statuses))
    query = query.order_by(Booking.created_at.desc(), Booking.id).limit(limit).offset(offset)
    result = await db.execute(query)
    return list(result.scalars().all())


async def list_overdue_rentals(db: AsyncSession, actor: Actor, now: datetime | None = None) -> list[Booking]:
    """Ongoing rentals already past their return date, most overdue first."""
    now = now or utcnow()
    query = _scoped(select(Booking), actor).where(
        Booking.status == BookingStatus.ongoing, Booking.return_date < now
    )
    result = await db.execute(query.order_by(Booking.return_date, Booking.id))
    return list(result.scalars().all())
