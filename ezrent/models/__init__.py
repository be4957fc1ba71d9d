from ezrent.models.booking import Booking
from ezrent.models.payment_intent import PaymentIntent
from ezrent.models.settlement import SettlementRecord
from ezrent.models.notification import NotificationLog

__all__ = ["Booking", "PaymentIntent", "SettlementRecord", "NotificationLog"]
