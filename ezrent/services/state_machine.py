r"""
Booking lifecycle state machine.

Pure: no I/O, no persistence. The TRANSITIONS table is the only place the
legal moves are defined; callers gather the guard facts (availability,
settlement, return date) and pass them in through GuardContext.

    pending --request--> booked --approve--> approved --start--> ongoing --close--> completed
                           |  \--reject--> rejected     |  \--terminate--> terminated
                           \--delete--> cancelled        \--expire--> rejected
                                                   ongoing --terminate--> terminated
"""
import logging
from dataclasses import dataclass
from typing import Callable, NamedTuple, Optional

from ezrent.schemas.schemas import ActorRole, BookingAction, BookingStatus
from ezrent.services.errors import GuardRejected, InvalidTransition, NotPermitted

logger = logging.getLogger(__name__)

S = BookingStatus
A = BookingAction
R = ActorRole


@dataclass(frozen=True)
class GuardContext:
    item_available: bool = False
    payment_settled: bool = False
    cash_confirmed: bool = False
    return_due: bool = False
    return_confirmed: bool = False
    retry_window_elapsed: bool = False


class Rule(NamedTuple):
    target: BookingStatus
    roles: frozenset
    guard: Optional[Callable[[GuardContext], Optional[str]]] = None


@dataclass(frozen=True)
class Transition:
    source: BookingStatus
    target: BookingStatus
    action: BookingAction
    noop: bool = False


# Guards return a rejection reason, or None when the move is allowed.

def _item_available(ctx: GuardContext) -> Optional[str]:
    return None if ctx.item_available else "Item is not currently available"


def _paid_or_cash(ctx: GuardContext) -> Optional[str]:
    if ctx.payment_settled or ctx.cash_confirmed:
        return None
    return "Payment has not been settled and cash on pickup was not confirmed"


def _return_reached(ctx: GuardContext) -> Optional[str]:
    if ctx.return_due or ctx.return_confirmed:
        return None
    return "Return date not reached and return not confirmed by owner"


def _retry_window_elapsed(ctx: GuardContext) -> Optional[str]:
    return None if ctx.retry_window_elapsed else "Payment retry window is still open"


TRANSITIONS: dict[tuple[BookingStatus, BookingAction], Rule] = {
    (S.pending, A.request): Rule(S.booked, frozenset({R.customer}), _item_available),
    (S.booked, A.delete): Rule(S.cancelled, frozenset({R.customer})),
    (S.booked, A.approve): Rule(S.approved, frozenset({R.owner})),
    (S.booked, A.reject): Rule(S.rejected, frozenset({R.owner})),
    (S.approved, A.start): Rule(S.ongoing, frozenset({R.owner, R.system}), _paid_or_cash),
    (S.approved, A.terminate): Rule(S.terminated, frozenset({R.owner})),
    (S.approved, A.expire): Rule(S.rejected, frozenset({R.system}), _retry_window_elapsed),
    (S.ongoing, A.close): Rule(S.completed, frozenset({R.owner, R.system}), _return_reached),
    (S.ongoing, A.terminate): Rule(S.terminated, frozenset({R.owner})),
}

TERMINAL_STATUSES = frozenset({S.rejected, S.cancelled, S.terminated, S.completed})


def _replay_targets(action: BookingAction, role: ActorRole) -> set[BookingStatus]:
    return {
        rule.target
        for (_, rule_action), rule in TRANSITIONS.items()
        if rule_action == action and role in rule.roles
    }


def transition(
    current: BookingStatus,
    action: BookingAction,
    role: ActorRole,
    ctx: GuardContext | None = None,
) -> Transition:
    """
    Resolve `action` by `role` against the booking's `current` status.

    A replayed action on a booking that already sits in that action's
    destination is a no-op. Everything else outside the table raises
    InvalidTransition; a wrong role raises NotPermitted and a failed guard
    raises GuardRejected.
    """
    ctx = ctx or GuardContext()
    rule = TRANSITIONS.get((current, action))

    if rule is None:
        if current in _replay_targets(action, role):
            logger.debug("Replay of %s on %s treated as no-op", action.value, current.value)
            return Transition(current, current, action, noop=True)
        raise InvalidTransition(current, action)

    if role not in rule.roles:
        raise NotPermitted(role, action)

    if rule.guard is not None:
        reason = rule.guard(ctx)
        if reason:
            raise GuardRejected(reason)

    return Transition(current, rule.target, action)


def allowed_actions(current: BookingStatus, role: ActorRole) -> list[BookingAction]:
    """Actions `role` may attempt from `current`, guards not evaluated."""
    return [
        action
        for (source, action), rule in TRANSITIONS.items()
        if source == current and role in rule.roles
    ]


def is_terminal(status: BookingStatus) -> bool:
    return status in TERMINAL_STATUSES
