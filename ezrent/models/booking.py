import uuid
from datetime import datetime
from sqlalchemy import String, Integer, Boolean, DateTime, Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column

from ezrent.database import Base, utcnow
from ezrent.schemas.schemas import BookingStatus, PaymentMethodEnum, RentalPeriodUnit
from ezrent.services.errors import TermsLocked
from ezrent.services.money import Money


class Booking(Base):
    __tablename__ = "bookings"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    item_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    customer_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    owner_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    customer_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    owner_email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Amounts are centavos
    price_per_unit_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    rental_duration: Mapped[int] = mapped_column(Integer, nullable=False)
    rental_period_unit: Mapped[RentalPeriodUnit] = mapped_column(
        SAEnum(RentalPeriodUnit, native_enum=False, length=10), nullable=False, default=RentalPeriodUnit.day
    )
    delivery_charge_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    grand_total_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    payment_method: Mapped[PaymentMethodEnum] = mapped_column(
        SAEnum(PaymentMethodEnum, native_enum=False, length=10), nullable=False
    )

    pickup_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    return_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)

    status: Mapped[BookingStatus] = mapped_column(
        SAEnum(BookingStatus, native_enum=False, length=20),
        nullable=False,
        default=BookingStatus.pending,
        index=True,
    )
    payment_intent_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    payment_attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cash_confirmed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __mapper_args__ = {"version_id_col": version}

    @property
    def grand_total(self) -> Money:
        return Money(self.grand_total_cents)

    def reprice(self, price_per_unit: Money, rental_duration: int, delivery_charge: Money) -> Money:
        """Recompute the grand total. Only drafts and unapproved requests may change terms."""
        if self.status not in (BookingStatus.pending, BookingStatus.booked):
            raise TermsLocked(self.status)
        total = price_per_unit * rental_duration + delivery_charge
        self.price_per_unit_cents = price_per_unit.cents
        self.rental_duration = rental_duration
        self.delivery_charge_cents = delivery_charge.cents
        self.grand_total_cents = total.cents
        return total
