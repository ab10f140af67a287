"""
Event Registry — イベント定義

ドメインで発生した事実(イベント)の閉じた語彙。
イベント名は `<集約>.<過去の出来事>` で、それぞれ専用のペイロード型を持つ。
イベントは不変(immutable)として扱う。
"""

from collections.abc import Mapping
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, SerializeAsAny

SCHEMA_VERSION = 1


class EventType(str, Enum):
    ORDER_CREATED = "order.created"
    ORDER_UPDATED = "order.updated"
    ORDER_CANCELLED = "order.cancelled"
    ORDER_COMPLETED = "order.completed"
    ORDER_PAYMENT_SUCCEEDED = "order.payment.succeeded"
    ORDER_PAYMENT_FAILED = "order.payment.failed"

    PRODUCT_CREATED = "product.created"
    PRODUCT_UPDATED = "product.updated"
    PRODUCT_DELETED = "product.deleted"
    PRODUCT_STOCK_LOW = "product.stock.low"
    PRODUCT_STOCK_OUT = "product.stock.out"

    USER_REGISTERED = "user.registered"
    USER_UPDATED = "user.updated"
    USER_DELETED = "user.deleted"
    USER_LOGIN = "user.login"
    USER_LOGOUT = "user.logout"
    USER_NOTIFICATION = "user.notification"

    CART_ITEM_ADDED = "cart.item.added"
    CART_ITEM_REMOVED = "cart.item.removed"
    CART_CLEARED = "cart.cleared"

    WISHLIST_ITEM_ADDED = "wishlist.item.added"
    WISHLIST_ITEM_REMOVED = "wishlist.item.removed"


class Priority(str, Enum):
    """イベント・ハンドラ共通の優先度 (critical > high > normal > low)"""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    Priority.LOW: 1,
    Priority.NORMAL: 2,
    Priority.HIGH: 3,
    Priority.CRITICAL: 4,
}


class EventPayload(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


# ── Order ────────────────────────────────────────


class OrderLine(BaseModel):
    model_config = ConfigDict(frozen=True)

    product_id: str
    quantity: int
    price: Decimal


class OrderCreated(EventPayload):
    """注文が作成された (販売者ごとに1件)"""
    order_id: str
    customer_id: str
    seller_id: str
    status: str
    total_amount: Decimal
    discount_amount: Decimal = Decimal("0.00")
    items: tuple[OrderLine, ...] = ()


class OrderUpdated(EventPayload):
    """注文のステータスまたは支払い情報が更新された"""
    order_id: str
    customer_id: str | None = None
    seller_id: str | None = None
    status: str | None = None
    previous_status: str | None = None
    courier_id: str | None = None
    payment_status: str | None = None
    previous_payment_status: str | None = None
    payment_intent_id: str | None = None


class OrderCancelled(EventPayload):
    """注文がキャンセルされた"""
    order_id: str
    customer_id: str | None = None
    reason: str | None = None


class OrderCompleted(EventPayload):
    """注文が配達完了した"""
    order_id: str
    customer_id: str | None = None


class OrderPaymentSucceeded(EventPayload):
    """支払いが成功した"""
    order_id: str
    customer_id: str | None = None
    payment_intent_id: str | None = None


class OrderPaymentFailed(EventPayload):
    """支払いが失敗した"""
    order_id: str
    customer_id: str | None = None
    reason: str | None = None


# ── Product ──────────────────────────────────────


class ProductCreated(EventPayload):
    product_id: str
    seller_id: str
    name: str
    price: Decimal
    stock: int
    category_id: str | None = None


class ProductUpdated(EventPayload):
    """
    商品が更新された。

    在庫・価格が変わった場合は変更前の値も載せる
    (ハンドラがリアルタイム通知の差分を作るため)。
    """
    product_id: str
    seller_id: str | None = None
    name: str | None = None
    category_id: str | None = None
    old_category_id: str | None = None
    price: Decimal | None = None
    previous_price: Decimal | None = None
    stock: int | None = None
    previous_stock: int | None = None


class ProductDeleted(EventPayload):
    product_id: str
    seller_id: str | None = None
    category_id: str | None = None


class ProductStockLow(EventPayload):
    product_id: str
    current_stock: int
    threshold: int
    seller_id: str | None = None


class ProductStockOut(EventPayload):
    product_id: str
    seller_id: str | None = None


# ── User ─────────────────────────────────────────


class UserRegistered(EventPayload):
    user_id: str
    email: str
    role: str
    name: str | None = None


class UserUpdated(EventPayload):
    user_id: str
    changed_fields: tuple[str, ...] = ()


class UserDeleted(EventPayload):
    user_id: str


class UserLogin(EventPayload):
    user_id: str
    ip: str | None = None
    user_agent: str | None = None


class UserLogout(EventPayload):
    user_id: str


class UserNotification(EventPayload):
    """管理画面などからユーザーへ送る通知"""
    user_id: str
    title: str
    message: str
    type: Literal["info", "warning", "error", "success"] = "info"
    source: str = "system"
    admin_id: str | None = None


# ── Cart / Wishlist ──────────────────────────────


class CartItemAdded(EventPayload):
    user_id: str
    product_id: str
    quantity: int


class CartItemRemoved(EventPayload):
    user_id: str
    product_id: str


class CartCleared(EventPayload):
    user_id: str
    product_ids: tuple[str, ...] = ()


class WishlistItemAdded(EventPayload):
    user_id: str
    product_id: str


class WishlistItemRemoved(EventPayload):
    user_id: str
    product_id: str


PAYLOAD_MODELS: dict[EventType, type[EventPayload]] = {
    EventType.ORDER_CREATED: OrderCreated,
    EventType.ORDER_UPDATED: OrderUpdated,
    EventType.ORDER_CANCELLED: OrderCancelled,
    EventType.ORDER_COMPLETED: OrderCompleted,
    EventType.ORDER_PAYMENT_SUCCEEDED: OrderPaymentSucceeded,
    EventType.ORDER_PAYMENT_FAILED: OrderPaymentFailed,
    EventType.PRODUCT_CREATED: ProductCreated,
    EventType.PRODUCT_UPDATED: ProductUpdated,
    EventType.PRODUCT_DELETED: ProductDeleted,
    EventType.PRODUCT_STOCK_LOW: ProductStockLow,
    EventType.PRODUCT_STOCK_OUT: ProductStockOut,
    EventType.USER_REGISTERED: UserRegistered,
    EventType.USER_UPDATED: UserUpdated,
    EventType.USER_DELETED: UserDeleted,
    EventType.USER_LOGIN: UserLogin,
    EventType.USER_LOGOUT: UserLogout,
    EventType.USER_NOTIFICATION: UserNotification,
    EventType.CART_ITEM_ADDED: CartItemAdded,
    EventType.CART_ITEM_REMOVED: CartItemRemoved,
    EventType.CART_CLEARED: CartCleared,
    EventType.WISHLIST_ITEM_ADDED: WishlistItemAdded,
    EventType.WISHLIST_ITEM_REMOVED: WishlistItemRemoved,
}


# ── Envelope ─────────────────────────────────────


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EventMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=_utcnow)
    user_id: str | None = None
    request_id: str | None = None
    session_id: str | None = None
    source: str | None = None
    schema_version: int = SCHEMA_VERSION


class Event(BaseModel):
    """
    バスを流れるイベント。

    emit 時に生成され、キューに積まれ、ディスパッチ後に破棄される。
    永続化・リプレイはしない。
    """

    model_config = ConfigDict(frozen=True)

    type: EventType
    payload: SerializeAsAny[EventPayload]
    metadata: EventMetadata = Field(default_factory=EventMetadata)
    priority: Priority = Priority.NORMAL

    @classmethod
    def build(
        cls,
        event_type: EventType | str,
        payload: EventPayload | Mapping[str, Any],
        metadata: EventMetadata | Mapping[str, Any] | None = None,
        priority: Priority | str = Priority.NORMAL,
    ) -> "Event":
        """
        イベントタイプに対応するペイロード型で検証してイベントを組み立てる。

        型が合わない場合は TypeError / pydantic.ValidationError を送出する。
        """
        event_type = EventType(event_type)
        model = PAYLOAD_MODELS[event_type]
        if isinstance(payload, EventPayload):
            if not isinstance(payload, model):
                raise TypeError(
                    f"{event_type.value} expects {model.__name__}, got {type(payload).__name__}"
                )
        else:
            payload = model.model_validate(dict(payload))

        if metadata is None:
            metadata = EventMetadata()
        elif not isinstance(metadata, EventMetadata):
            metadata = EventMetadata.model_validate(dict(metadata))

        return cls(
            type=event_type,
            payload=payload,
            metadata=metadata,
            priority=Priority(priority),
        )
