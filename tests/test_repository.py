from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from marketplace.order import repository as repository_module
from marketplace.order.aggregate import CartLine, OrderStatus, PaymentStatus, Role, SellerDraft
from marketplace.order.errors import OrderNotFoundError
from marketplace.order.repository import SqlOrderRepository
from marketplace.schema import order_items, orders


@pytest.fixture
def repo(session_factory) -> SqlOrderRepository:
    return SqlOrderRepository(session_factory)


def _draft(seller_id: str, *lines: tuple[str, int, str], discount: str = "0.00") -> SellerDraft:
    draft = SellerDraft(seller_id=seller_id, discount=Decimal(discount))
    for product_id, quantity, price in lines:
        draft.items.append(
            CartLine(user_id="C1", product_id=product_id, quantity=quantity, seller_id=seller_id, price=Decimal(price))
        )
        draft.subtotal += Decimal(price) * quantity
    return draft


async def test_cart_lines_carry_seller_and_price_in_selection_order(repo):
    lines = await repo.get_cart_lines("C1", ["P2", "P1", "P9"])

    assert [(l.product_id, l.seller_id, l.price, l.quantity) for l in lines] == [
        ("P2", "S2", Decimal("30.00"), 1),
        ("P1", "S1", Decimal("10.00"), 2),
    ]
    assert await repo.get_cart_lines("C2", ["P1"]) == []


async def test_create_orders_round_trip(repo):
    created = await repo.create_orders(
        "C1",
        [_draft("S1", ("P1", 2, "10.00"), discount="2.40"), _draft("S2", ("P2", 1, "30.00"), discount="3.60")],
        {"street": "1 Market St", "city": "Baku", "postal_code": "AZ1000", "country": "AZ"},
    )

    loaded = await repo.get_order(created[0].id)
    assert loaded.seller_id == "S1"
    assert loaded.total_amount == Decimal("17.60")
    assert loaded.discount_amount == Decimal("2.40")
    assert loaded.status is OrderStatus.PENDING
    assert loaded.payment_status is PaymentStatus.PENDING
    assert loaded.shipping_address["city"] == "Baku"
    assert [(i.product_id, i.quantity, i.price) for i in loaded.items] == [("P1", 2, Decimal("10.00"))]
    assert loaded.created_at.tzinfo is not None


async def test_create_orders_is_all_or_nothing(repo, session_factory, monkeypatch):
    # 2件目の注文で主キーが衝突する
    monkeypatch.setattr(repository_module, "_new_order_id", lambda: "dup")

    with pytest.raises(IntegrityError):
        await repo.create_orders(
            "C1",
            [_draft("S1", ("P1", 1, "10.00")), _draft("S2", ("P2", 1, "30.00"))],
            {"city": "Baku"},
        )

    async with session_factory() as session:
        for table in (orders, order_items):
            count = (await session.execute(select(func.count()).select_from(table))).scalar_one()
            assert count == 0


async def test_delete_cart_lines(repo):
    assert await repo.delete_cart_lines("C1", ["P1", "P9"]) == 1
    assert [l.product_id for l in await repo.get_cart_lines("C1", ["P1", "P2"])] == ["P2"]


async def test_update_order(repo):
    [order] = await repo.create_orders("C1", [_draft("S1", ("P1", 1, "10.00"))], {"city": "Baku"})
    paid_at = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)

    updated = await repo.update_order(
        order.id,
        status=OrderStatus.CONFIRMED,
        payment_status=PaymentStatus.PAID,
        paid_at=paid_at,
        courier_id="K1",
    )

    assert updated.status is OrderStatus.CONFIRMED
    assert updated.payment_status is PaymentStatus.PAID
    assert updated.paid_at == paid_at
    assert updated.courier_id == "K1"
    assert len(updated.items) == 1

    with pytest.raises(OrderNotFoundError):
        await repo.update_order("missing", status=OrderStatus.CANCELLED)
    with pytest.raises(ValueError):
        await repo.update_order(order.id, total_amount=Decimal("0"))


async def test_list_orders(repo):
    await repo.create_orders("C1", [_draft("S1", ("P1", 1, "10.00"))], {"city": "Baku"})
    await repo.create_orders("C1", [_draft("S2", ("P2", 1, "30.00"))], {"city": "Baku"})

    all_orders, total = await repo.list_orders()
    assert total == 2
    assert [o.seller_id for o in all_orders] == ["S2", "S1"]

    s1_orders, total = await repo.list_orders(seller_id="S1")
    assert total == 1 and s1_orders[0].seller_id == "S1"

    page, total = await repo.list_orders(offset=1, limit=1)
    assert total == 2 and len(page) == 1

    none, total = await repo.list_orders(status=OrderStatus.SHIPPED)
    assert (none, total) == ([], 0)


async def test_get_user(repo):
    user = await repo.get_user("K1")
    assert user.role is Role.COURIER
    assert await repo.get_user("nobody") is None
