"""
Out-of-band owner / customer notices.

dispatch() records a NotificationLog (idle) in its own session and hands the
delivery to a background task; the caller never waits on SMTP or the push
relay. Delivery moves the log to sending -> sent | failed. Nothing raised
here reaches the booking or settlement flow: failures are logged, recorded
on the row and retried later via retry_notification().
"""
import asyncio
import logging
from email.message import EmailMessage
from typing import Iterable

import aiosmtplib
import httpx
from sqlalchemy import select

from ezrent.config import get_settings
from ezrent.database import AsyncSessionLocal, utcnow
from ezrent.models.booking import Booking
from ezrent.models.notification import NotificationLog
from ezrent.schemas.schemas import NotificationChannel, NotificationStatus
from ezrent.services.errors import NotificationNotFound

logger = logging.getLogger(__name__)
settings = get_settings()

# Keeps references to in-flight deliveries so they are not garbage collected
_pending: set[asyncio.Task] = set()

CUSTOMER = "customer"
OWNER = "owner"

TEMPLATES: dict[str, tuple[tuple[str, ...], str, str]] = {
    "booking_requested": (
        (OWNER,),
        "New rental request",
        "A customer requested item {item_id} from {pickup} to {return_}. Total: {total}.",
    ),
    "booking_approved": (
        (CUSTOMER,),
        "Your booking was approved",
        "Your booking {booking_id} was approved. Total due: {total}. {payment_hint}",
    ),
    "booking_rejected": (
        (CUSTOMER,),
        "Your booking was declined",
        "Booking {booking_id} was declined.",
    ),
    "booking_cancelled": (
        (OWNER,),
        "Rental request cancelled",
        "The customer cancelled booking {booking_id}.",
    ),
    "payment_received": (
        (CUSTOMER,),
        "Payment received",
        "We received {total} for booking {booking_id}. Your rental is now ongoing.",
    ),
    "payout_notice": (
        (OWNER,),
        "Payment settled for your rental",
        "Booking {booking_id} was paid. Total {total}, platform commission {commission}, "
        "your share {owner_share}.",
    ),
    "payment_failed": (
        (CUSTOMER,),
        "Payment did not go through",
        "Payment for booking {booking_id} failed or expired. {payment_hint}",
    ),
    "booking_terminated": (
        (CUSTOMER, OWNER),
        "Rental terminated",
        "Booking {booking_id} was terminated.",
    ),
    "booking_completed": (
        (CUSTOMER, OWNER),
        "Rental completed",
        "Booking {booking_id} is complete. Thank you for renting with EzRent.",
    ),
}


async def notify(kind: str, booking: Booking, **context) -> list[int]:
    """Dispatch the `kind` notice for a booking to each of its recipients."""
    recipients, subject, template = TEMPLATES[kind]
    values = {
        "booking_id": booking.id,
        "item_id": booking.item_id,
        "pickup": booking.pickup_date.date().isoformat(),
        "return_": booking.return_date.date().isoformat(),
        "total": str(booking.grand_total),
        "payment_hint": "",
    }
    values.update(context)
    body = template.format(**values).strip()

    log_ids = []
    for who in recipients:
        if who == CUSTOMER:
            recipient_id, email = booking.customer_id, booking.customer_email
        else:
            recipient_id, email = booking.owner_id, booking.owner_email
        log_id = await dispatch(kind, booking.id, recipient_id, subject, body, email=email)
        if log_id is not None:
            log_ids.append(log_id)
    return log_ids


async def dispatch(
    kind: str,
    booking_id: str,
    recipient_id: str,
    subject: str,
    body: str,
    email: str | None = None,
) -> int | None:
    try:
        async with AsyncSessionLocal() as db:
            log = NotificationLog(
                booking_id=booking_id,
                recipient_id=recipient_id,
                recipient_email=email,
                channel=NotificationChannel.email if email else NotificationChannel.push,
                kind=kind,
                subject=subject,
                body=body,
                status=NotificationStatus.idle,
                attempts=0,
            )
            db.add(log)
            await db.commit()
            log_id = log.id
    except Exception as exc:
        logger.error("Could not record %s notice for booking=%s: %s", kind, booking_id, exc)
        return None

    _schedule(log_id)
    return log_id


def _schedule(log_id: int) -> None:
    task = asyncio.create_task(deliver(log_id))
    _pending.add(task)
    task.add_done_callback(_pending.discard)


async def deliver(log_id: int) -> NotificationStatus | None:
    """Send one notice. Returns the resulting status, or None if it was not attempted."""
    try:
        async with AsyncSessionLocal() as db:
            log = await db.get(NotificationLog, log_id)
            if log is None or log.status in (NotificationStatus.sending, NotificationStatus.sent):
                return None
            log.status = NotificationStatus.sending
            log.attempts += 1
            await db.commit()

            try:
                await _send(log)
            except Exception as exc:
                log.status = NotificationStatus.failed
                log.last_error = str(exc)[:1000] or type(exc).__name__
                logger.warning(
                    "Notification %s (%s) to %s failed on attempt %d: %s",
                    log.id, log.kind, log.recipient_id, log.attempts, exc,
                )
            else:
                log.status = NotificationStatus.sent
                log.sent_at = utcnow()
                log.last_error = None
                logger.info("Notification %s (%s) sent to %s", log.id, log.kind, log.recipient_id)
            await db.commit()
            return log.status
    except Exception as exc:
        logger.error("Notification %s delivery bookkeeping failed: %s", log_id, exc, exc_info=True)
        return None


async def _send(log: NotificationLog) -> None:
    if log.channel == NotificationChannel.email and log.recipient_email:
        await _send_email(log.recipient_email, log.subject, log.body)
    else:
        await _send_push(log.recipient_id, log.subject, log.body, log.booking_id)


async def _send_email(recipient: str, subject: str, body: str) -> None:
    msg = EmailMessage()
    msg["From"] = settings.smtp_from
    msg["To"] = recipient
    msg["Subject"] = subject
    msg.set_content(body)
    await aiosmtplib.send(
        msg,
        hostname=settings.smtp_host,
        port=settings.smtp_port,
        username=settings.smtp_username or None,
        password=settings.smtp_password or None,
        start_tls=bool(settings.smtp_username),
        timeout=settings.notification_timeout_seconds,
    )


async def _send_push(recipient_id: str, title: str, body: str, booking_id: str) -> None:
    async with httpx.AsyncClient(timeout=settings.notification_timeout_seconds) as client:
        resp = await client.post(
            settings.push_relay_url,
            json={"user_id": recipient_id, "title": title, "body": body, "data": {"booking_id": booking_id}},
        )
        resp.raise_for_status()


# ---------------------------------------------------------------------------
# Status / retries
# ---------------------------------------------------------------------------

async def get_notification(log_id: int) -> NotificationLog:
    async with AsyncSessionLocal() as db:
        log = await db.get(NotificationLog, log_id)
    if log is None:
        raise NotificationNotFound(f"Notification {log_id} not found")
    return log


async def retry_notification(log_id: int) -> NotificationLog:
    """Re-send a failed notice. Anything not failed is returned untouched."""
    log = await get_notification(log_id)
    if log.status == NotificationStatus.failed and log.attempts < settings.notification_max_attempts:
        await deliver(log_id)
        log = await get_notification(log_id)
    return log


async def retry_failed_notifications(limit: int = 100) -> int:
    async with AsyncSessionLocal() as db:
        result = await db.execute(
            select(NotificationLog.id)
            .where(
                NotificationLog.status == NotificationStatus.failed,
                NotificationLog.attempts < settings.notification_max_attempts,
            )
            .order_by(NotificationLog.id)
            .limit(limit)
        )
        ids: Iterable[int] = result.scalars().all()

    count = 0
    for log_id in ids:
        _schedule(log_id)
        count += 1
    return count


async def wait_for_pending() -> None:
    """Wait for scheduled deliveries to finish (shutdown, tests)."""
    while _pending:
        await asyncio.gather(*list(_pending), return_exceptions=True)
