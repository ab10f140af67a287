"""
Product Events — 商品イベントの発行と購読

ハンドラはキャッシュ無効化・検索インデックス更新・リアルタイム配信を行う。
どれも後から作り直せる副作用なので、失敗は手順ごとにログへ閉じ込める。
"""

import logging
from decimal import Decimal

from ..best_effort import best_effort
from ..collaborators import CacheInvalidator, RealtimeChannel, SearchIndexer
from .bus import EventBus
from .types import (
    Event,
    EventMetadata,
    EventType,
    Priority,
    ProductCreated,
    ProductDeleted,
    ProductStockLow,
    ProductStockOut,
    ProductUpdated,
)

logger = logging.getLogger(__name__)

_SOURCE = "product-service"


# ── 発行 ─────────────────────────────────────────


def emit_product_created(
    bus: EventBus, payload: ProductCreated, user_id: str | None = None
) -> Event | None:
    return bus.emit(
        EventType.PRODUCT_CREATED,
        payload,
        EventMetadata(user_id=user_id, source=_SOURCE),
        priority=Priority.NORMAL,
    )


def emit_product_updated(
    bus: EventBus, payload: ProductUpdated, user_id: str | None = None
) -> Event | None:
    return bus.emit(
        EventType.PRODUCT_UPDATED,
        payload,
        EventMetadata(user_id=user_id, source=_SOURCE),
        priority=Priority.NORMAL,
    )


def emit_product_deleted(
    bus: EventBus,
    product_id: str,
    seller_id: str | None = None,
    category_id: str | None = None,
    user_id: str | None = None,
) -> Event | None:
    payload = ProductDeleted(product_id=product_id, seller_id=seller_id, category_id=category_id)
    return bus.emit(
        EventType.PRODUCT_DELETED,
        payload,
        EventMetadata(user_id=user_id, source=_SOURCE),
        priority=Priority.NORMAL,
    )


def emit_product_stock_low(
    bus: EventBus,
    product_id: str,
    current_stock: int,
    threshold: int,
    seller_id: str | None = None,
) -> Event | None:
    payload = ProductStockLow(
        product_id=product_id,
        current_stock=current_stock,
        threshold=threshold,
        seller_id=seller_id,
    )
    return bus.emit(
        EventType.PRODUCT_STOCK_LOW,
        payload,
        EventMetadata(source="inventory-service"),
        priority=Priority.HIGH,
    )


def emit_product_stock_out(
    bus: EventBus, product_id: str, seller_id: str | None = None
) -> Event | None:
    payload = ProductStockOut(product_id=product_id, seller_id=seller_id)
    return bus.emit(
        EventType.PRODUCT_STOCK_OUT,
        payload,
        EventMetadata(source="inventory-service"),
        priority=Priority.HIGH,
    )


# ── 購読 ─────────────────────────────────────────


def _money(value: Decimal) -> str:
    return str(value)


def register_product_event_handlers(
    bus: EventBus,
    cache: CacheInvalidator,
    realtime: RealtimeChannel,
    search: SearchIndexer,
) -> None:
    async def on_product_created(event: Event) -> None:
        p: ProductCreated = event.payload
        with best_effort(logger, "invalidate caches for new product", product_id=p.product_id):
            await cache.invalidate_related_caches("product", p.product_id)
            if p.category_id:
                await cache.invalidate_category_cache(p.category_id)
        with best_effort(logger, "index new product", product_id=p.product_id):
            await search.index_product(p.product_id)
        with best_effort(logger, "push new product", product_id=p.product_id):
            await realtime.emit_realtime_event(
                "product.new",
                {
                    "product_id": p.product_id,
                    "seller_id": p.seller_id,
                    "name": p.name,
                    "price": _money(p.price),
                },
            )

    async def on_product_updated(event: Event) -> None:
        p: ProductUpdated = event.payload
        with best_effort(logger, "invalidate caches for updated product", product_id=p.product_id):
            await cache.invalidate_product_cache(p.product_id)
            await cache.invalidate_related_caches("product", p.product_id)
            if p.category_id:
                await cache.invalidate_category_cache(p.category_id)
            if p.old_category_id and p.old_category_id != p.category_id:
                await cache.invalidate_category_cache(p.old_category_id)
        with best_effort(logger, "re-index product", product_id=p.product_id):
            await search.index_product(p.product_id)

        if p.stock is not None and p.previous_stock is not None and p.stock != p.previous_stock:
            with best_effort(logger, "push stock update", product_id=p.product_id):
                await realtime.emit_realtime_event(
                    "inventory.stock.updated",
                    {
                        "product_id": p.product_id,
                        "stock": p.stock,
                        "previous_stock": p.previous_stock,
                    },
                )
        if p.price is not None and p.previous_price is not None and p.price != p.previous_price:
            with best_effort(logger, "push price update", product_id=p.product_id):
                await realtime.emit_realtime_event(
                    "product.price.updated",
                    {
                        "product_id": p.product_id,
                        "price": _money(p.price),
                        "previous_price": _money(p.previous_price),
                    },
                )

    async def on_product_deleted(event: Event) -> None:
        p: ProductDeleted = event.payload
        with best_effort(logger, "invalidate caches for deleted product", product_id=p.product_id):
            await cache.invalidate_product_cache(p.product_id)
            await cache.invalidate_related_caches("product", p.product_id)
            if p.category_id:
                await cache.invalidate_category_cache(p.category_id)

    async def on_stock_low(event: Event) -> None:
        p: ProductStockLow = event.payload
        logger.warning(
            "Low stock: product=%s stock=%d threshold=%d", p.product_id, p.current_stock, p.threshold
        )
        if p.seller_id:
            with best_effort(logger, "alert seller about low stock", product_id=p.product_id):
                await realtime.emit_realtime_event(
                    "inventory.stock.low",
                    {
                        "product_id": p.product_id,
                        "current_stock": p.current_stock,
                        "threshold": p.threshold,
                    },
                    p.seller_id,
                )
        with best_effort(logger, "invalidate product cache", product_id=p.product_id):
            await cache.invalidate_product_cache(p.product_id)

    async def on_stock_out(event: Event) -> None:
        p: ProductStockOut = event.payload
        logger.warning("Out of stock: product=%s", p.product_id)
        if p.seller_id:
            with best_effort(logger, "alert seller about stock out", product_id=p.product_id):
                await realtime.emit_realtime_event(
                    "inventory.stock.out", {"product_id": p.product_id}, p.seller_id
                )
        with best_effort(logger, "invalidate product cache", product_id=p.product_id):
            await cache.invalidate_product_cache(p.product_id)
            await cache.invalidate_related_caches("product", p.product_id)

    bus.on(EventType.PRODUCT_CREATED, on_product_created, priority=Priority.NORMAL)
    bus.on(EventType.PRODUCT_UPDATED, on_product_updated, priority=Priority.NORMAL)
    bus.on(EventType.PRODUCT_DELETED, on_product_deleted, priority=Priority.NORMAL)
    bus.on(EventType.PRODUCT_STOCK_LOW, on_stock_low, priority=Priority.HIGH)
    bus.on(EventType.PRODUCT_STOCK_OUT, on_stock_out, priority=Priority.HIGH)
    logger.info("Product event handlers registered")
