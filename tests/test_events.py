from decimal import Decimal

import pytest

from marketplace.collaborators import Collaborators
from marketplace.events import EventType, Priority, register_all_handlers
from marketplace.events.order_events import emit_order_created, emit_order_payment_failed
from marketplace.events.product_events import (
    emit_product_created,
    emit_product_deleted,
    emit_product_stock_low,
    emit_product_updated,
)
from marketplace.events.types import ProductCreated, ProductUpdated, UserNotification
from marketplace.events.user_events import (
    emit_user_login,
    emit_user_notification,
    emit_user_updated,
)
from marketplace.order.aggregate import Order, OrderItem


@pytest.fixture
def wired(bus, cache, realtime, search, notifier):
    register_all_handlers(bus, Collaborators(cache=cache, realtime=realtime, search=search, notifier=notifier))
    return bus


def _order() -> Order:
    return Order(
        id="O1",
        customer_id="C1",
        seller_id="S1",
        total_amount=Decimal("20.00"),
        shipping_address={},
        items=(OrderItem(order_id="O1", product_id="P1", quantity=2, price=Decimal("10.00")),),
    )


def test_register_all_handlers_covers_domains(wired):
    for event_type in (
        EventType.ORDER_CREATED,
        EventType.ORDER_PAYMENT_FAILED,
        EventType.PRODUCT_UPDATED,
        EventType.PRODUCT_STOCK_OUT,
        EventType.USER_NOTIFICATION,
        EventType.USER_LOGOUT,
    ):
        assert wired.get_handlers(event_type), event_type
    assert wired.get_handlers(EventType.ORDER_PAYMENT_FAILED)[0].priority is Priority.CRITICAL


# ── 注文 ─────────────────────────────────────────


async def test_order_created_pushes_and_invalidates(wired, cache, realtime, notifier):
    emit_order_created(wired, _order(), "C1")
    await wired.drain()

    assert realtime.messages[0][0] == "order.new"
    assert realtime.messages[0][2] == "C1"
    assert ("order", "O1", "C1") in cache.calls
    assert ("related", "user", "S1") in cache.calls
    assert notifier.confirmations == []


async def test_order_created_handler_contains_failures(wired, cache, realtime):
    realtime.fail = True
    emit_order_created(wired, _order(), "C1")
    await wired.drain()

    assert ("order", "O1", "C1") in cache.calls
    assert wired.get_status()["failed"] == 0


async def test_payment_failure_handler_is_retried(wired, bus_config, cache):
    cache.fail = True
    emit_order_payment_failed(wired, _order(), reason="card declined")
    await wired.drain()

    attempts = [c for c in cache.calls if c[0] == "order"]
    assert len(attempts) == 1 + bus_config.retry_attempts
    assert wired.get_status()["failed"] == 1


# ── 商品 ─────────────────────────────────────────


async def test_product_created_indexes_and_announces(wired, search, realtime, cache):
    emit_product_created(
        wired,
        ProductCreated(product_id="P1", seller_id="S1", name="Tea", price=Decimal("9.90"), stock=5, category_id="cat"),
    )
    await wired.drain()

    assert search.indexed == ["P1"]
    assert ("category", "cat") in cache.calls
    assert realtime.keys() == ["product.new"]
    assert realtime.messages[0][1]["price"] == "9.90"


async def test_product_update_pushes_stock_and_price_changes(wired, realtime, cache):
    emit_product_updated(
        wired,
        ProductUpdated(
            product_id="P1",
            category_id="new",
            old_category_id="old",
            stock=3,
            previous_stock=8,
            price=Decimal("12.00"),
            previous_price=Decimal("10.00"),
        ),
    )
    await wired.drain()

    assert realtime.keys() == ["inventory.stock.updated", "product.price.updated"]
    assert ("category", "new") in cache.calls and ("category", "old") in cache.calls


async def test_product_update_without_previous_values_is_quiet(wired, realtime, search):
    emit_product_updated(wired, ProductUpdated(product_id="P1", stock=3))
    await wired.drain()

    assert realtime.messages == []
    assert search.indexed == ["P1"]


async def test_stock_alerts_go_to_the_seller(wired, realtime):
    emit_product_stock_low(wired, "P1", 2, 5, seller_id="S1")
    await wired.drain()

    assert realtime.messages == [
        ("inventory.stock.low", {"product_id": "P1", "current_stock": 2, "threshold": 5}, "S1")
    ]


async def test_product_deleted_invalidates(wired, cache):
    emit_product_deleted(wired, "P1", category_id="cat")
    await wired.drain()

    assert ("product", "P1") in cache.calls
    assert ("category", "cat") in cache.calls


# ── ユーザー ─────────────────────────────────────


async def test_user_notification_is_delivered(wired, realtime):
    emit_user_notification(
        wired, UserNotification(user_id="C1", title="Hi", message="Welcome", type="success", admin_id="A1")
    )
    await wired.drain()

    [(key, payload, target)] = realtime.messages
    assert (key, target) == ("user.notification", "C1")
    assert payload["type"] == "success"


async def test_user_updated_invalidates_user_cache(wired, cache):
    emit_user_updated(wired, "C1", ["email"])
    await wired.drain()

    assert ("user", "C1") in cache.calls
    assert ("related", "user", "C1") in cache.calls


async def test_login_is_only_logged(wired, cache, realtime, caplog):
    caplog.set_level("DEBUG", logger="marketplace.events.user_events")
    emit_user_login(wired, "C1", ip="127.0.0.1")
    await wired.drain()

    assert cache.calls == [] and realtime.messages == []
    assert "user.login" in caplog.text
