"""
外部コラボレーターのインターフェース

Saga とイベントハンドラは、在庫・永続化・通知・キャッシュ・リアルタイム配信・
検索インデックスにこの狭いインターフェース越しにだけ触れる。
"""

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .inventory.reservations import StockReservation
    from .order.aggregate import CartLine, Order, OrderStatus, SellerDraft, User


@runtime_checkable
class StockReservationManager(Protocol):
    async def reserve(
        self,
        product_id: str,
        quantity: int,
        ttl_seconds: int | None = None,
        owner_id: str | None = None,
    ) -> "StockReservation | None": ...

    async def confirm(self, reservation_id: str) -> None: ...

    async def cancel(self, reservation_id: str) -> None: ...


@runtime_checkable
class OrderRepository(Protocol):
    async def get_cart_lines(self, user_id: str, product_ids: Sequence[str]) -> "list[CartLine]": ...

    async def create_orders(
        self,
        customer_id: str,
        drafts: "Sequence[SellerDraft]",
        shipping_address: Mapping[str, Any],
    ) -> "list[Order]": ...

    async def delete_cart_lines(self, user_id: str, product_ids: Sequence[str]) -> int: ...

    async def get_order(self, order_id: str) -> "Order | None": ...

    async def update_order(self, order_id: str, **changes: Any) -> "Order": ...

    async def list_orders(
        self,
        *,
        customer_id: str | None = None,
        seller_id: str | None = None,
        courier_id: str | None = None,
        status: "OrderStatus | None" = None,
        offset: int = 0,
        limit: int = 10,
    ) -> "tuple[list[Order], int]": ...

    async def get_user(self, user_id: str) -> "User | None": ...


@runtime_checkable
class Notifier(Protocol):
    async def send_order_confirmation(self, order: "Order") -> None: ...

    async def send_new_order_email_to_seller(self, order: "Order", seller_email: str) -> None: ...


@runtime_checkable
class CacheInvalidator(Protocol):
    async def invalidate_order_cache(self, order_id: str, user_id: str | None = None) -> None: ...

    async def invalidate_product_cache(self, product_id: str) -> None: ...

    async def invalidate_category_cache(self, category_id: str) -> None: ...

    async def invalidate_user_cache(self, user_id: str) -> None: ...

    async def invalidate_related_caches(
        self,
        entity_kind: str,
        entity_id: str,
        extra: Mapping[str, Any] | None = None,
    ) -> None: ...


@runtime_checkable
class RealtimeChannel(Protocol):
    async def emit_realtime_event(
        self,
        channel_key: str,
        payload: Mapping[str, Any],
        target_user_id: str | None = None,
    ) -> None: ...


@runtime_checkable
class SearchIndexer(Protocol):
    async def index_product(self, product_id: str) -> None: ...


@dataclass(frozen=True)
class Collaborators:
    """ハンドラ登録とアプリ組み立てで使う外部コラボレーター一式"""

    cache: CacheInvalidator
    realtime: RealtimeChannel
    search: SearchIndexer
    notifier: Notifier
