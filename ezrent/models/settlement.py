from datetime import datetime
from decimal import Decimal
from sqlalchemy import String, Integer, Numeric, DateTime
from sqlalchemy.orm import Mapped, mapped_column

from ezrent.database import Base, utcnow


class SettlementRecord(Base):
    __tablename__ = "settlements"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # At most one settlement per booking
    booking_id: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    payment_intent_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    rental_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    commission_rate: Mapped[Decimal] = mapped_column(Numeric(5, 4), nullable=False)
    commission_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    owner_share_cents: Mapped[int] = mapped_column(Integer, nullable=False)

    settled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
