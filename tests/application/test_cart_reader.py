from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from reconciliation_service.cart import CartSnapshotReader
from reconciliation_service.domain import AuthenticatedOwner, GuestContact, GuestOwner
from reconciliation_service.errors import EmptyCartError

CONTACT = GuestContact("g@x.io", "Guest", "Main St 1", "Springfield", "IL", "62701")


@pytest.fixture
def reader(session_factory):
    return CartSnapshotReader(session_factory)


def test_reads_authenticated_cart_in_insertion_order(seed, reader):
    cart_id = seed.cart(user_id="user-1", lines=[("prod-b", 1, "5.00"), ("prod-a", 2, "10.00")])

    snapshot = reader.read(AuthenticatedOwner("user-1"))

    assert snapshot.cart_id == cart_id
    assert [(l.product_id, l.quantity, l.unit_price) for l in snapshot.lines] == [
        ("prod-b", 1, Decimal("5.00")),
        ("prod-a", 2, Decimal("10.00")),
    ]


def test_reads_guest_cart_by_session_token(seed, reader):
    seed.cart(user_id="user-1", session_id="shared", lines=[("prod-a", 9, "1.00")])
    guest_cart = seed.cart(session_id="shared", lines=[("prod-a", 1, "1.00")])

    snapshot = reader.read(GuestOwner("shared", CONTACT))

    assert snapshot.cart_id == guest_cart
    assert snapshot.lines[0].quantity == 1


def test_newest_cart_wins(seed, reader):
    now = datetime.now(timezone.utc)
    seed.cart(user_id="user-1", lines=[("old", 1, "1.00")], updated_at=now - timedelta(days=1))
    seed.cart(user_id="user-1", lines=[("new", 1, "1.00")], updated_at=now)

    assert reader.read(AuthenticatedOwner("user-1")).lines[0].product_id == "new"


def test_missing_cart_is_empty(reader):
    with pytest.raises(EmptyCartError):
        reader.read(AuthenticatedOwner("nobody"))


def test_cart_without_lines_is_empty(seed, reader):
    seed.cart(user_id="user-1")

    with pytest.raises(EmptyCartError) as excinfo:
        reader.read(AuthenticatedOwner("user-1"))
    assert "user user-1" in str(excinfo.value)


def test_clear_removes_only_snapshot_lines(seed, reader):
    cart_id = seed.cart(user_id="user-1", lines=[("prod-a", 1, "1.00"), ("prod-b", 1, "2.00")])
    snapshot = reader.read(AuthenticatedOwner("user-1"))
    seed.add_line(cart_id, "prod-c", 1, "3.00")

    removed = reader.clear(snapshot)

    assert removed == 2
    assert seed.cart_line_count(cart_id) == 1
    assert reader.read(AuthenticatedOwner("user-1")).lines[0].product_id == "prod-c"
