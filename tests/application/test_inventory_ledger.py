import pytest

from reconciliation_service.inventory import lock_product, try_decrement


def test_lock_product_reads_stock(seed, session_factory):
    seed.product("prod-a", stock=4, price="12.50", name="Desk Lamp")

    with session_factory.begin() as session:
        product = lock_product(session, "prod-a")

    assert product.name == "Desk Lamp"
    assert product.stock_quantity == 4
    assert product.can_supply(4)
    assert not product.can_supply(5)


def test_lock_product_missing_returns_none(session_factory):
    with session_factory.begin() as session:
        assert lock_product(session, "nope") is None


def test_decrement_within_stock(seed, session_factory):
    seed.product("prod-a", stock=5)

    with session_factory.begin() as session:
        assert try_decrement(session, "prod-a", 3) == (2, True)

    assert seed.stock("prod-a") == 2


def test_decrement_to_exactly_zero(seed, session_factory):
    seed.product("prod-a", stock=2)

    with session_factory.begin() as session:
        assert try_decrement(session, "prod-a", 2) == (0, True)

    assert seed.stock("prod-a") == 0


def test_decrement_beyond_stock_is_refused_without_change(seed, session_factory):
    seed.product("prod-a", stock=2)

    with session_factory.begin() as session:
        assert try_decrement(session, "prod-a", 3) == (None, False)

    assert seed.stock("prod-a") == 2


def test_decrement_unknown_product(session_factory):
    with session_factory.begin() as session:
        assert try_decrement(session, "ghost", 1) == (None, False)


@pytest.mark.parametrize("quantity", [0, -1])
def test_decrement_requires_positive_quantity(seed, session_factory, quantity):
    seed.product("prod-a", stock=2)

    with session_factory.begin() as session:
        with pytest.raises(ValueError):
            try_decrement(session, "prod-a", quantity)


def test_decrement_rolls_back_with_transaction(seed, session_factory):
    seed.product("prod-a", stock=5)

    with pytest.raises(RuntimeError):
        with session_factory.begin() as session:
            try_decrement(session, "prod-a", 5)
            raise RuntimeError("abort")

    assert seed.stock("prod-a") == 5


def test_lock_sees_committed_decrement_in_same_session(seed, session_factory):
    seed.product("prod-a", stock=5)

    with session_factory.begin() as session:
        lock_product(session, "prod-a")
        try_decrement(session, "prod-a", 2)
        assert lock_product(session, "prod-a").stock_quantity == 3
