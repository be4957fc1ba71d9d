from datetime import datetime
from sqlalchemy import String, Integer, Boolean, DateTime, Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column

from ezrent.database import Base, utcnow
from ezrent.schemas.schemas import IntentStatus, PaymentMethodEnum, TERMINAL_INTENT_STATUSES


class PaymentIntent(Base):
    """Local shadow of a gateway payment intent. The gateway stays authoritative."""

    __tablename__ = "payment_intents"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    booking_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    provider: Mapped[PaymentMethodEnum] = mapped_column(
        SAEnum(PaymentMethodEnum, native_enum=False, length=10), nullable=False
    )
    status: Mapped[IntentStatus] = mapped_column(
        SAEnum(IntentStatus, native_enum=False, length=20),
        nullable=False,
        default=IntentStatus.pending,
        index=True,
    )
    idempotency_key: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    next_action_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    requires_refund: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_INTENT_STATUSES
