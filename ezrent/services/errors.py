"""
Error taxonomy for booking actions, payment initiation and webhook ingestion.

Every error carries an HTTP status and a stable machine-readable code; the
application renders them as {"error": code, "detail": ...}.
"""


class EzRentError(Exception):
    status_code = 400
    code = "error"

    def __init__(self, detail: str = ""):
        super().__init__(detail or self.code)
        self.detail = detail or self.code


# ---------------------------------------------------------------------------
# Booking / state machine
# ---------------------------------------------------------------------------

class BookingNotFound(EzRentError):
    status_code = 404
    code = "booking_not_found"


class TransitionRejected(EzRentError):
    status_code = 409
    code = "transition_rejected"


class InvalidTransition(TransitionRejected):
    code = "invalid_transition"

    def __init__(self, current, action):
        self.current = current
        self.action = action
        super().__init__(f"Cannot {_value(action)} a booking that is {_value(current)}")


class NotPermitted(TransitionRejected):
    status_code = 403
    code = "not_permitted"

    def __init__(self, role, action):
        self.role = role
        self.action = action
        super().__init__(f"A {_value(role)} may not {_value(action)} this booking")


class GuardRejected(TransitionRejected):
    code = "guard_rejected"


class TermsLocked(EzRentError):
    status_code = 409
    code = "terms_locked"

    def __init__(self, status):
        super().__init__(f"Booking terms are locked once the booking is {_value(status)}")


class ItemUnavailable(EzRentError):
    status_code = 409
    code = "item_unavailable"


class CatalogUnavailable(EzRentError):
    status_code = 503
    code = "catalog_unavailable"


class ConcurrentModification(EzRentError):
    status_code = 409
    code = "concurrent_modification"


class ConflictRetry(EzRentError):
    status_code = 409
    code = "conflict_retry"


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------

class GatewayError(EzRentError):
    status_code = 502
    code = "gateway_error"


class GatewayUnavailable(GatewayError):
    code = "gateway_unavailable"


class GatewayTimeout(GatewayError):
    status_code = 504
    code = "gateway_timeout"


class GatewayRejected(GatewayError):
    status_code = 402
    code = "gateway_rejected"


class PaymentInitiationFailed(EzRentError):
    status_code = 502
    code = "payment_initiation_failed"


class PaymentNotRequired(EzRentError):
    status_code = 409
    code = "payment_not_required"


class PaymentAlreadyInProgress(EzRentError):
    status_code = 409
    code = "payment_in_progress"


class PaymentAlreadySettled(EzRentError):
    status_code = 409
    code = "payment_settled"


class PaymentIntentNotFound(EzRentError):
    status_code = 404
    code = "payment_intent_not_found"


class DuplicateSettlement(EzRentError):
    status_code = 200
    code = "duplicate_settlement"


class SettlementNotFound(EzRentError):
    status_code = 404
    code = "settlement_not_found"


class SignatureVerificationFailed(EzRentError):
    status_code = 401
    code = "signature_verification_failed"


class MalformedWebhook(EzRentError):
    status_code = 400
    code = "malformed_webhook"


class NotificationNotFound(EzRentError):
    status_code = 404
    code = "notification_not_found"


def _value(v) -> str:
    return getattr(v, "value", v)
