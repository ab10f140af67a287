"""
Order Events — 注文イベントの発行と購読

emit_xxx: 注文の状態変化をイベントにしてバスへ積む
register_order_event_handlers: キャッシュ無効化とリアルタイム配信のハンドラを登録する

支払いイベント (critical) のハンドラは失敗をそのまま送出し、
バスのリトライに任せる。それ以外のハンドラは手順ごとに失敗を閉じ込める。
"""

import logging

from ..best_effort import best_effort
from ..collaborators import CacheInvalidator, RealtimeChannel
from ..order.aggregate import Order
from .bus import EventBus
from .types import (
    Event,
    EventMetadata,
    EventType,
    OrderCancelled,
    OrderCompleted,
    OrderCreated,
    OrderLine,
    OrderPaymentFailed,
    OrderPaymentSucceeded,
    OrderUpdated,
    Priority,
)

logger = logging.getLogger(__name__)


def _metadata(user_id: str | None, request_id: str | None) -> EventMetadata:
    return EventMetadata(user_id=user_id, request_id=request_id, source="order-service")


# ── 発行 ─────────────────────────────────────────


def emit_order_created(
    bus: EventBus, order: Order, user_id: str, request_id: str | None = None
) -> Event | None:
    payload = OrderCreated(
        order_id=order.id,
        customer_id=order.customer_id,
        seller_id=order.seller_id,
        status=order.status.value,
        total_amount=order.total_amount,
        discount_amount=order.discount_amount,
        items=tuple(
            OrderLine(product_id=i.product_id, quantity=i.quantity, price=i.price)
            for i in order.items
        ),
    )
    return bus.emit(
        EventType.ORDER_CREATED, payload, _metadata(user_id, request_id), priority=Priority.HIGH
    )


def emit_order_updated(
    bus: EventBus, payload: OrderUpdated, user_id: str | None = None, request_id: str | None = None
) -> Event | None:
    return bus.emit(
        EventType.ORDER_UPDATED, payload, _metadata(user_id, request_id), priority=Priority.NORMAL
    )


def emit_order_cancelled(
    bus: EventBus,
    order: Order,
    reason: str | None = None,
    user_id: str | None = None,
    request_id: str | None = None,
) -> Event | None:
    payload = OrderCancelled(order_id=order.id, customer_id=order.customer_id, reason=reason)
    return bus.emit(
        EventType.ORDER_CANCELLED, payload, _metadata(user_id, request_id), priority=Priority.HIGH
    )


def emit_order_completed(
    bus: EventBus, order: Order, user_id: str | None = None, request_id: str | None = None
) -> Event | None:
    payload = OrderCompleted(order_id=order.id, customer_id=order.customer_id)
    return bus.emit(
        EventType.ORDER_COMPLETED, payload, _metadata(user_id, request_id), priority=Priority.NORMAL
    )


def emit_order_payment_succeeded(
    bus: EventBus, order: Order, user_id: str | None = None, request_id: str | None = None
) -> Event | None:
    payload = OrderPaymentSucceeded(
        order_id=order.id,
        customer_id=order.customer_id,
        payment_intent_id=order.payment_intent_id,
    )
    return bus.emit(
        EventType.ORDER_PAYMENT_SUCCEEDED,
        payload,
        _metadata(user_id, request_id),
        priority=Priority.CRITICAL,
    )


def emit_order_payment_failed(
    bus: EventBus,
    order: Order,
    reason: str | None = None,
    user_id: str | None = None,
    request_id: str | None = None,
) -> Event | None:
    payload = OrderPaymentFailed(order_id=order.id, customer_id=order.customer_id, reason=reason)
    return bus.emit(
        EventType.ORDER_PAYMENT_FAILED,
        payload,
        _metadata(user_id, request_id),
        priority=Priority.CRITICAL,
    )


# ── 購読 ─────────────────────────────────────────


def register_order_event_handlers(
    bus: EventBus, cache: CacheInvalidator, realtime: RealtimeChannel
) -> None:
    async def on_order_created(event: Event) -> None:
        p: OrderCreated = event.payload
        with best_effort(logger, "push new order notification", order_id=p.order_id):
            await realtime.emit_realtime_event(
                "order.new",
                {"order_id": p.order_id, "seller_id": p.seller_id, "total_amount": str(p.total_amount)},
                p.customer_id,
            )
        with best_effort(logger, "invalidate caches for new order", order_id=p.order_id):
            await cache.invalidate_order_cache(p.order_id, p.customer_id)
            await cache.invalidate_related_caches("order", p.order_id, {"user_id": p.customer_id})
            await cache.invalidate_related_caches("user", p.seller_id, {"user_id": p.customer_id})

    async def on_order_updated(event: Event) -> None:
        p: OrderUpdated = event.payload
        with best_effort(logger, "invalidate caches for updated order", order_id=p.order_id):
            await cache.invalidate_order_cache(p.order_id)
            if p.customer_id:
                await cache.invalidate_related_caches("order", p.order_id, {"user_id": p.customer_id})
        if p.status and p.status != p.previous_status:
            with best_effort(logger, "push order update", order_id=p.order_id):
                await realtime.emit_realtime_event(
                    "order.update", {"order_id": p.order_id, "status": p.status}, p.customer_id
                )

    async def on_order_cancelled(event: Event) -> None:
        p: OrderCancelled = event.payload
        with best_effort(logger, "invalidate caches for cancelled order", order_id=p.order_id):
            await cache.invalidate_order_cache(p.order_id)
            await cache.invalidate_related_caches("order", p.order_id)
        with best_effort(logger, "push order cancellation", order_id=p.order_id):
            await realtime.emit_realtime_event(
                "order.update", {"order_id": p.order_id, "status": "CANCELLED"}, p.customer_id
            )

    async def on_payment_succeeded(event: Event) -> None:
        p: OrderPaymentSucceeded = event.payload
        await cache.invalidate_order_cache(p.order_id)
        await cache.invalidate_related_caches("order", p.order_id)
        await realtime.emit_realtime_event(
            "order.update", {"order_id": p.order_id, "payment_status": "PAID"}, p.customer_id
        )

    async def on_payment_failed(event: Event) -> None:
        p: OrderPaymentFailed = event.payload
        await cache.invalidate_order_cache(p.order_id)
        await cache.invalidate_related_caches("order", p.order_id)
        await realtime.emit_realtime_event(
            "order.update", {"order_id": p.order_id, "payment_status": "FAILED"}, p.customer_id
        )

    bus.on(EventType.ORDER_CREATED, on_order_created, priority=Priority.HIGH)
    bus.on(EventType.ORDER_UPDATED, on_order_updated, priority=Priority.NORMAL)
    bus.on(EventType.ORDER_CANCELLED, on_order_cancelled, priority=Priority.HIGH)
    bus.on(EventType.ORDER_PAYMENT_SUCCEEDED, on_payment_succeeded, priority=Priority.HIGH)
    bus.on(EventType.ORDER_PAYMENT_FAILED, on_payment_failed, priority=Priority.CRITICAL)
    logger.info("Order event handlers registered")
