"""
pricing.py — Order Totals

Authenticated users get a percentage discount on the subtotal and the member
shipping fee (free by default); guests pay the subtotal plus the guest shipping
fee. The rates themselves come from `Settings`.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from .config import Settings
from .domain import AuthenticatedOwner, CartSnapshot, OwnerIdentity

CENT = Decimal("0.01")


@dataclass(frozen=True)
class OrderTotals:
    subtotal: Decimal
    discount: Decimal
    shipping: Decimal
    total: Decimal

    @property
    def total_cents(self) -> int:
        return to_minor_units(self.total)


def to_minor_units(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def compute_totals(snapshot: CartSnapshot, settings: Settings) -> OrderTotals:
    return totals_for(snapshot.owner, sum((line.line_total for line in snapshot.lines), Decimal("0")), settings)


def totals_for(owner: OwnerIdentity, subtotal: Decimal, settings: Settings) -> OrderTotals:
    if isinstance(owner, AuthenticatedOwner):
        discount = subtotal * settings.member_discount_rate
        shipping = settings.member_shipping_fee
    else:
        discount = Decimal("0")
        shipping = settings.guest_shipping_fee
    total = (subtotal - discount + shipping).quantize(CENT, rounding=ROUND_HALF_UP)
    return OrderTotals(
        subtotal=subtotal.quantize(CENT, rounding=ROUND_HALF_UP),
        discount=discount.quantize(CENT, rounding=ROUND_HALF_UP),
        shipping=Decimal(shipping).quantize(CENT, rounding=ROUND_HALF_UP),
        total=total,
    )
