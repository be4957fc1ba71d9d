"""
Platform commission and owner share.
"""
from dataclasses import dataclass
from decimal import Decimal

from ezrent.services.money import Money


@dataclass(frozen=True)
class Settlement:
    rental_amount: Money
    commission_rate: Decimal
    commission_amount: Money
    owner_share: Money


def compute_settlement(grand_total: Money, commission_rate: Decimal | str) -> Settlement:
    """
    Split a rental total into commission and owner share.

    commission = total * rate, rounded half away from zero to the centavo;
    owner share = total - commission, so the two always add back to total.
    """
    rate = Decimal(str(commission_rate))
    if not Decimal("0") <= rate <= Decimal("1"):
        raise ValueError(f"commission_rate must be between 0 and 1, got {rate}")
    if grand_total.cents < 0:
        raise ValueError("Cannot settle a negative total")

    commission = grand_total.scale(rate)
    return Settlement(
        rental_amount=grand_total,
        commission_rate=rate,
        commission_amount=commission,
        owner_share=grand_total - commission,
    )
