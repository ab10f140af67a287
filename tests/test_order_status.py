from datetime import datetime, timezone
from decimal import Decimal

import pytest

from marketplace.events import EventType, Priority
from marketplace.order.aggregate import ALLOWED_STATUSES, Order, OrderStatus, PaymentStatus, Role
from marketplace.order.errors import (
    InvalidCourierError,
    InvalidStatusTransitionError,
    OrderNotFoundError,
    UnauthorizedError,
    ValidationError,
)

from .test_saga import capture

ACTORS = {Role.ADMIN: "A1", Role.SELLER: "S1", Role.COURIER: "K1", Role.CUSTOMER: "C1"}


def place(repository, order_id="O1", status=OrderStatus.PENDING, courier_id="K1", **fields) -> Order:
    now = datetime.now(timezone.utc)
    order = Order(
        id=order_id,
        customer_id="C1",
        seller_id="S1",
        status=status,
        courier_id=courier_id,
        total_amount=Decimal("20.00"),
        shipping_address={"city": "Baku"},
        created_at=now,
        updated_at=now,
        **fields,
    )
    repository.orders[order_id] = order
    return order


# ── ロール別の遷移表 ─────────────────────────────


@pytest.mark.parametrize("from_status", [OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.SHIPPED])
@pytest.mark.parametrize("role", list(Role))
@pytest.mark.parametrize("target", list(OrderStatus))
async def test_role_transition_table(orchestrator, repository, role, target, from_status):
    place(repository, status=from_status)

    if target in ALLOWED_STATUSES[role]:
        updated = await orchestrator.update_order_status("O1", target, ACTORS[role], role)
        assert updated.status is target
    else:
        with pytest.raises(UnauthorizedError):
            await orchestrator.update_order_status("O1", target, ACTORS[role], role)
        assert repository.orders["O1"].status is from_status


@pytest.mark.parametrize(
    "role, actor_id, target",
    [
        (Role.SELLER, "S2", OrderStatus.CONFIRMED),
        (Role.COURIER, "K2", OrderStatus.SHIPPED),
        (Role.CUSTOMER, "C2", OrderStatus.CANCELLED),
    ],
)
async def test_non_owner_is_unauthorized(orchestrator, repository, role, actor_id, target):
    place(repository)
    with pytest.raises(UnauthorizedError):
        await orchestrator.update_order_status("O1", target, actor_id, role)


async def test_unassigned_courier_cannot_update(orchestrator, repository):
    place(repository, courier_id=None)
    with pytest.raises(UnauthorizedError):
        await orchestrator.update_order_status("O1", OrderStatus.SHIPPED, "K1", Role.COURIER)


async def test_owning_seller_cannot_deliver(orchestrator, repository):
    place(repository, status=OrderStatus.SHIPPED)
    with pytest.raises(UnauthorizedError):
        await orchestrator.update_order_status("O1", "DELIVERED", "S1", "SELLER")


@pytest.mark.parametrize("terminal", [OrderStatus.DELIVERED, OrderStatus.CANCELLED])
async def test_terminal_status_cannot_be_left(orchestrator, repository, terminal):
    place(repository, status=terminal)
    with pytest.raises(InvalidStatusTransitionError):
        await orchestrator.update_order_status("O1", OrderStatus.PENDING, "A1", Role.ADMIN)


async def test_unknown_order_and_status(orchestrator, repository):
    with pytest.raises(OrderNotFoundError):
        await orchestrator.update_order_status("missing", "CANCELLED", "A1", "ADMIN")

    place(repository)
    with pytest.raises(ValidationError):
        await orchestrator.update_order_status("O1", "LOST", "A1", "ADMIN")
    with pytest.raises(UnauthorizedError):
        await orchestrator.update_order_status("O1", "CANCELLED", "X1", "GUEST")


# ── 配送員の割り当て ─────────────────────────────


async def test_admin_assigns_courier(orchestrator, repository):
    place(repository, courier_id=None)
    repository.add_user("K2", Role.COURIER)

    updated = await orchestrator.update_order_status("O1", "CONFIRMED", "A1", "ADMIN", courier_id="K2")

    assert updated.courier_id == "K2"


@pytest.mark.parametrize("courier_id", ["C1", "nobody"])
async def test_admin_assigning_non_courier_fails(orchestrator, repository, courier_id):
    place(repository, courier_id=None)
    with pytest.raises(InvalidCourierError):
        await orchestrator.update_order_status("O1", "CONFIRMED", "A1", "ADMIN", courier_id=courier_id)
    assert repository.orders["O1"].status is OrderStatus.PENDING


async def test_courier_id_from_non_admin_is_ignored(orchestrator, repository):
    place(repository)
    updated = await orchestrator.update_order_status("O1", "CONFIRMED", "S1", "SELLER", courier_id="nobody")
    assert updated.courier_id == "K1"


# ── 副作用 ───────────────────────────────────────


async def test_cancellation_emits_events_and_pushes_status(orchestrator, repository, bus, realtime, cache):
    events = capture(bus, EventType.ORDER_UPDATED, EventType.ORDER_CANCELLED, EventType.ORDER_COMPLETED)
    place(repository)

    await orchestrator.update_order_status("O1", "CANCELLED", "C1", "CUSTOMER")
    await bus.drain()

    assert [e.type for e in events] == [EventType.ORDER_UPDATED, EventType.ORDER_CANCELLED]
    assert events[0].payload.previous_status == "PENDING"
    assert events[0].payload.status == "CANCELLED"
    assert ("order.status.update", {"order_id": "O1", "status": "CANCELLED", "payment_status": "PENDING"}, "C1") in realtime.messages
    assert ("order", "O1", "C1") in cache.calls
    assert ("related", "user", "S1") in cache.calls


async def test_delivery_emits_order_completed(orchestrator, repository, bus):
    events = capture(bus, EventType.ORDER_COMPLETED)
    place(repository, status=OrderStatus.SHIPPED)

    await orchestrator.update_order_status("O1", "DELIVERED", "K1", "COURIER")
    await bus.drain()

    assert [e.payload.order_id for e in events] == ["O1"]


async def test_status_update_survives_side_effect_failures(orchestrator, repository, realtime, cache):
    realtime.fail = True
    cache.fail = True
    place(repository)

    updated = await orchestrator.update_order_status("O1", "CONFIRMED", "S1", "SELLER")

    assert updated.status is OrderStatus.CONFIRMED
    assert repository.orders["O1"].status is OrderStatus.CONFIRMED


# ── 支払い ───────────────────────────────────────


async def test_payment_succeeded_is_emitted_once(orchestrator, repository, bus):
    events = capture(bus, EventType.ORDER_PAYMENT_SUCCEEDED, EventType.ORDER_PAYMENT_FAILED)
    place(repository)
    paid_at = datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)

    for _ in range(3):
        updated = await orchestrator.update_order_payment_status("O1", "CONFIRMED", "PAID", paid_at)
    await bus.drain()

    assert updated.payment_status is PaymentStatus.PAID
    assert updated.paid_at == paid_at
    assert len(events) == 1
    assert events[0].type is EventType.ORDER_PAYMENT_SUCCEEDED
    assert events[0].priority is Priority.CRITICAL


async def test_payment_failed_then_paid(orchestrator, repository, bus):
    events = capture(bus, EventType.ORDER_PAYMENT_SUCCEEDED, EventType.ORDER_PAYMENT_FAILED)
    place(repository)

    await orchestrator.update_order_payment_status("O1", "PENDING", "FAILED")
    await orchestrator.update_order_payment_status("O1", "PENDING", "FAILED")
    await orchestrator.update_order_payment_status("O1", "CONFIRMED", "PAID")
    await bus.drain()

    assert [e.type for e in events] == [
        EventType.ORDER_PAYMENT_FAILED,
        EventType.ORDER_PAYMENT_SUCCEEDED,
    ]


async def test_payment_on_cancelled_order_cannot_reopen_it(orchestrator, repository):
    place(repository, status=OrderStatus.CANCELLED)
    with pytest.raises(InvalidStatusTransitionError):
        await orchestrator.update_order_payment_status("O1", "CONFIRMED", "PAID")


async def test_payment_info_records_intent(orchestrator, repository, bus):
    events = capture(bus, EventType.ORDER_UPDATED)
    place(repository)

    updated = await orchestrator.update_order_payment_info("O1", payment_intent_id="pi_123")
    await bus.drain()

    assert updated.payment_intent_id == "pi_123"
    assert events[0].payload.payment_intent_id == "pi_123"


async def test_payment_status_records_intent_in_one_update(orchestrator, repository, bus, realtime):
    events = capture(bus, EventType.ORDER_UPDATED, EventType.ORDER_PAYMENT_SUCCEEDED)
    place(repository)

    updated = await orchestrator.update_order_payment_status(
        "O1", "CONFIRMED", "PAID", payment_intent_id="pi_9"
    )
    await bus.drain()

    assert updated.payment_intent_id == repository.orders["O1"].payment_intent_id == "pi_9"
    assert [e.type for e in events] == [EventType.ORDER_UPDATED, EventType.ORDER_PAYMENT_SUCCEEDED]
    assert all(e.payload.payment_intent_id == "pi_9" for e in events)
    assert realtime.keys().count("order.status.update") == 1


# ── 一覧 ─────────────────────────────────────────


async def test_user_orders_are_scoped_by_role(orchestrator, repository):
    place(repository, "O1")
    place(repository, "O2", courier_id=None)
    other = place(repository, "O3")
    repository.orders["O3"] = other.model_copy(update={"customer_id": "C2", "seller_id": "S2"})

    customer_orders, total = await orchestrator.get_user_orders("C1", "CUSTOMER")
    assert total == 2 and {o.id for o in customer_orders} == {"O1", "O2"}

    seller_orders, total = await orchestrator.get_user_orders("S2", "SELLER")
    assert [o.id for o in seller_orders] == ["O3"]

    courier_orders, total = await orchestrator.get_user_orders("K1", "COURIER")
    assert {o.id for o in courier_orders} == {"O1", "O3"}

    admin_orders, total = await orchestrator.get_user_orders("A1", "ADMIN", page=2, limit=2)
    assert total == 3 and len(admin_orders) == 1


async def test_user_orders_filter_by_status(orchestrator, repository):
    place(repository, "O1")
    place(repository, "O2", status=OrderStatus.SHIPPED)

    orders, total = await orchestrator.get_user_orders("A1", "ADMIN", status="SHIPPED")

    assert total == 1 and orders[0].id == "O2"
    with pytest.raises(ValidationError):
        await orchestrator.get_user_orders("A1", "ADMIN", page=0)
