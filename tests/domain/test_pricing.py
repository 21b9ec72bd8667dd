from decimal import Decimal

import pytest

from reconciliation_service.config import Settings
from reconciliation_service.domain import (
    AuthenticatedOwner,
    CartLine,
    CartSnapshot,
    GuestContact,
    GuestOwner,
)
from reconciliation_service.pricing import compute_totals, to_minor_units, totals_for

GUEST = GuestOwner("tok", GuestContact("a@b.c", "A", "1 Road", "Town", "ST", "12345"))


def snapshot(owner, *lines):
    return CartSnapshot(
        owner=owner,
        cart_id="cart-1",
        lines=tuple(CartLine(f"line-{i}", pid, qty, Decimal(price)) for i, (pid, qty, price) in enumerate(lines)),
    )


class TestTotals:
    def test_member_gets_discount_and_free_shipping(self):
        totals = compute_totals(snapshot(AuthenticatedOwner("u1"), ("A", 2, "10.00")), Settings())

        assert totals.subtotal == Decimal("20.00")
        assert totals.discount == Decimal("1.00")
        assert totals.shipping == Decimal("0.00")
        assert totals.total == Decimal("19.00")
        assert totals.total_cents == 1900

    def test_guest_pays_shipping_without_discount(self):
        totals = compute_totals(snapshot(GUEST, ("A", 2, "10.00")), Settings())

        assert totals.discount == Decimal("0.00")
        assert totals.shipping == Decimal("9.99")
        assert totals.total == Decimal("29.99")
        assert totals.total_cents == 2999

    def test_rates_come_from_settings(self):
        settings = Settings(member_discount_rate=Decimal("0.10"), member_shipping_fee=Decimal("4.50"))

        totals = compute_totals(snapshot(AuthenticatedOwner("u1"), ("A", 1, "30.00"), ("B", 3, "5.00")), settings)

        assert totals.subtotal == Decimal("45.00")
        assert totals.total == Decimal("45.00")  # 45 - 4.50 + 4.50

    def test_total_is_rounded_to_cents(self):
        totals = totals_for(AuthenticatedOwner("u1"), Decimal("9.99"), Settings())

        # 9.99 * 0.95 = 9.4905
        assert totals.total == Decimal("9.49")


@pytest.mark.parametrize("amount, cents", [
    (Decimal("0.50"), 50),
    (Decimal("19.00"), 1900),
    (Decimal("0.005"), 1),
    (Decimal("12.344"), 1234),
])
def test_to_minor_units(amount, cents):
    assert to_minor_units(amount) == cents
