"""
Order Service — 注文集約 (Order Aggregate)

注文・明細・カート行・ユーザーの型と、ステータス遷移のルール。

状態遷移:
    PENDING → CONFIRMED → SHIPPED → DELIVERED
    (終端でない状態) → CANCELLED
    終端: DELIVERED, CANCELLED

1件の注文は必ず1人の販売者のもの。
"""

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .errors import InvalidStatusTransitionError, UnauthorizedError

CENT = Decimal("0.01")


def money(value: Decimal | int | float | str) -> Decimal:
    """金額を小数点以下2桁に丸める (四捨五入)。"""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.DELIVERED, OrderStatus.CANCELLED)


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class Role(str, Enum):
    ADMIN = "ADMIN"
    SELLER = "SELLER"
    COURIER = "COURIER"
    CUSTOMER = "CUSTOMER"


class User(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    role: Role
    name: str | None = None


class CartLine(BaseModel):
    """カート行 — 商品の販売者と現在価格を添えて読み出す"""
    model_config = ConfigDict(frozen=True)

    user_id: str
    product_id: str
    quantity: int
    seller_id: str
    price: Decimal
    product_name: str | None = None


class OrderItem(BaseModel):
    """価格は注文作成時点のスナップショットで、以後変えない"""
    model_config = ConfigDict(frozen=True)

    order_id: str
    product_id: str
    quantity: int
    price: Decimal


class Order(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    customer_id: str
    seller_id: str
    status: OrderStatus = OrderStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.PENDING
    total_amount: Decimal
    discount_amount: Decimal = Decimal("0.00")
    shipping_address: dict[str, Any]
    courier_id: str | None = None
    payment_intent_id: str | None = None
    paid_at: datetime | None = None
    items: tuple[OrderItem, ...] = ()
    created_at: datetime | None = None
    updated_at: datetime | None = None


# ── ロール別の遷移表 ─────────────────────────────

ALLOWED_STATUSES: dict[Role, frozenset[OrderStatus]] = {
    Role.ADMIN: frozenset(OrderStatus),
    Role.SELLER: frozenset({OrderStatus.CONFIRMED, OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    Role.COURIER: frozenset({OrderStatus.SHIPPED, OrderStatus.DELIVERED}),
    Role.CUSTOMER: frozenset({OrderStatus.CANCELLED}),
}


def _owns(order: Order, actor_id: str, role: Role) -> bool:
    if role is Role.ADMIN:
        return True
    if role is Role.SELLER:
        return order.seller_id == actor_id
    if role is Role.COURIER:
        return order.courier_id is not None and order.courier_id == actor_id
    return order.customer_id == actor_id


def check_transition(order: Order, new_status: OrderStatus, actor_id: str, role: Role) -> None:
    """
    ロールと所有関係からステータス変更の可否を判定する。

    - ロールの許可リストにない遷移、所有者でない場合 → UnauthorizedError
    - 終端ステータスから別のステータスへ → InvalidStatusTransitionError
    """
    if not _owns(order, actor_id, role):
        raise UnauthorizedError(f"{role.value} {actor_id} does not own order {order.id}")

    allowed = ALLOWED_STATUSES[role]
    if new_status not in allowed:
        names = ", ".join(sorted(s.value for s in allowed))
        raise UnauthorizedError(f"{role.value} can only update status to: {names}")

    if order.status.is_terminal and new_status is not order.status:
        raise InvalidStatusTransitionError(
            f"Order {order.id} is {order.status.value} and cannot move to {new_status.value}"
        )


class SellerDraft(BaseModel):
    """永続化前の、販売者ごとの注文の下書き"""

    seller_id: str
    items: list[CartLine] = Field(default_factory=list)
    subtotal: Decimal = Decimal("0.00")
    discount: Decimal = Decimal("0.00")

    @property
    def total_amount(self) -> Decimal:
        return max(Decimal("0.00"), self.subtotal - self.discount)
