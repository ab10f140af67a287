"""
Order Service — 永続化 (Order Repository)

カート行の読み出し、注文グループの作成、注文の取得・更新・一覧。
create_orders は1回のチェックアウトで作る全販売者分の注文を
1トランザクションで書き込む (一部だけ作られることはない)。
"""

import copy
import json
import logging
import uuid
from collections.abc import Mapping, Sequence
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..schema import cart_items, order_items, orders, products, users
from .aggregate import (
    CartLine,
    Order,
    OrderItem,
    OrderStatus,
    PaymentStatus,
    Role,
    SellerDraft,
    User,
    money,
)
from .errors import OrderNotFoundError

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = frozenset(
    {"status", "payment_status", "courier_id", "payment_intent_id", "paid_at"}
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _new_order_id() -> str:
    return str(uuid.uuid4())


def _check_changes(changes: Mapping[str, Any]) -> None:
    unknown = set(changes) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot update order fields: {', '.join(sorted(unknown))}")


def _build_order(
    order_id: str,
    customer_id: str,
    draft: SellerDraft,
    shipping_address: Mapping[str, Any],
    now: datetime,
) -> Order:
    return Order(
        id=order_id,
        customer_id=customer_id,
        seller_id=draft.seller_id,
        status=OrderStatus.PENDING,
        payment_status=PaymentStatus.PENDING,
        total_amount=money(draft.total_amount),
        discount_amount=money(draft.discount),
        shipping_address=dict(shipping_address),
        items=tuple(
            OrderItem(
                order_id=order_id,
                product_id=line.product_id,
                quantity=line.quantity,
                price=money(line.price),
            )
            for line in draft.items
        ),
        created_at=now,
        updated_at=now,
    )


# ── インメモリ実装 ───────────────────────────────


class InMemoryOrderRepository:
    """テストとローカル実行用"""

    def __init__(self) -> None:
        self.users: dict[str, User] = {}
        self.products: dict[str, dict[str, Any]] = {}
        self.carts: dict[str, dict[str, int]] = {}
        self.orders: dict[str, Order] = {}

    # ── シード ───────────────────────────────────

    def add_user(self, user_id: str, role: Role | str, email: str | None = None, name: str | None = None) -> User:
        user = User(id=user_id, email=email or f"{user_id}@example.com", role=Role(role), name=name)
        self.users[user_id] = user
        return user

    def add_product(
        self, product_id: str, seller_id: str, price: Decimal | int | str, name: str | None = None
    ) -> None:
        self.products[product_id] = {
            "seller_id": seller_id,
            "price": money(price),
            "name": name or product_id,
        }

    def add_cart_item(self, user_id: str, product_id: str, quantity: int) -> None:
        self.carts.setdefault(user_id, {})[product_id] = quantity

    # ── OrderRepository ──────────────────────────

    async def get_cart_lines(self, user_id: str, product_ids: Sequence[str]) -> list[CartLine]:
        cart = self.carts.get(user_id, {})
        lines = []
        for product_id in product_ids:
            if product_id not in cart or product_id not in self.products:
                continue
            product = self.products[product_id]
            lines.append(
                CartLine(
                    user_id=user_id,
                    product_id=product_id,
                    quantity=cart[product_id],
                    seller_id=product["seller_id"],
                    price=product["price"],
                    product_name=product["name"],
                )
            )
        return lines

    async def create_orders(
        self,
        customer_id: str,
        drafts: Sequence[SellerDraft],
        shipping_address: Mapping[str, Any],
    ) -> list[Order]:
        now = _utcnow()
        created = [
            _build_order(_new_order_id(), customer_id, draft, copy.deepcopy(dict(shipping_address)), now)
            for draft in drafts
        ]
        for order in created:
            self.orders[order.id] = order
        return created

    async def delete_cart_lines(self, user_id: str, product_ids: Sequence[str]) -> int:
        cart = self.carts.get(user_id, {})
        removed = 0
        for product_id in product_ids:
            if cart.pop(product_id, None) is not None:
                removed += 1
        return removed

    async def get_order(self, order_id: str) -> Order | None:
        return self.orders.get(order_id)

    async def update_order(self, order_id: str, **changes: Any) -> Order:
        _check_changes(changes)
        order = self.orders.get(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        updated = order.model_copy(update={**changes, "updated_at": _utcnow()})
        self.orders[order_id] = updated
        return updated

    async def list_orders(
        self,
        *,
        customer_id: str | None = None,
        seller_id: str | None = None,
        courier_id: str | None = None,
        status: OrderStatus | None = None,
        offset: int = 0,
        limit: int = 10,
    ) -> tuple[list[Order], int]:
        matched = [
            o for o in self.orders.values()
            if (customer_id is None or o.customer_id == customer_id)
            and (seller_id is None or o.seller_id == seller_id)
            and (courier_id is None or o.courier_id == courier_id)
            and (status is None or o.status is status)
        ]
        matched.sort(key=lambda o: o.created_at, reverse=True)
        return matched[offset:offset + limit], len(matched)

    async def get_user(self, user_id: str) -> User | None:
        return self.users.get(user_id)


# ── SQL 実装 ─────────────────────────────────────


def _row_to_order(row: Any, items: Sequence[Any]) -> Order:
    return Order(
        id=row.id,
        customer_id=row.customer_id,
        seller_id=row.seller_id,
        courier_id=row.courier_id,
        status=OrderStatus(row.status),
        payment_status=PaymentStatus(row.payment_status),
        payment_intent_id=row.payment_intent_id,
        paid_at=_aware(row.paid_at),
        total_amount=money(row.total_amount),
        discount_amount=money(row.discount_amount),
        shipping_address=json.loads(row.shipping_address),
        items=tuple(
            OrderItem(
                order_id=row.id,
                product_id=i.product_id,
                quantity=i.quantity,
                price=money(i.price),
            )
            for i in items
        ),
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
    )


class SqlOrderRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def get_cart_lines(self, user_id: str, product_ids: Sequence[str]) -> list[CartLine]:
        if not product_ids:
            return []
        stmt = (
            select(
                cart_items.c.product_id,
                cart_items.c.quantity,
                products.c.seller_id,
                products.c.price,
                products.c.name,
            )
            .join(products, products.c.id == cart_items.c.product_id)
            .where(cart_items.c.user_id == user_id, cart_items.c.product_id.in_(list(product_ids)))
        )
        async with self.session_factory() as session:
            rows = {r.product_id: r for r in (await session.execute(stmt)).all()}

        # 選択された順に並べる
        return [
            CartLine(
                user_id=user_id,
                product_id=pid,
                quantity=rows[pid].quantity,
                seller_id=rows[pid].seller_id,
                price=money(rows[pid].price),
                product_name=rows[pid].name,
            )
            for pid in product_ids
            if pid in rows
        ]

    async def create_orders(
        self,
        customer_id: str,
        drafts: Sequence[SellerDraft],
        shipping_address: Mapping[str, Any],
    ) -> list[Order]:
        now = _utcnow()
        created = [
            _build_order(_new_order_id(), customer_id, draft, shipping_address, now)
            for draft in drafts
        ]
        async with self.session_factory() as session:
            async with session.begin():
                for order in created:
                    await session.execute(
                        insert(orders).values(
                            id=order.id,
                            customer_id=order.customer_id,
                            seller_id=order.seller_id,
                            status=order.status.value,
                            payment_status=order.payment_status.value,
                            total_amount=order.total_amount,
                            discount_amount=order.discount_amount,
                            shipping_address=json.dumps(order.shipping_address),
                            created_at=now,
                            updated_at=now,
                        )
                    )
                    if order.items:
                        await session.execute(
                            insert(order_items),
                            [
                                {
                                    "order_id": order.id,
                                    "position": position,
                                    "product_id": item.product_id,
                                    "quantity": item.quantity,
                                    "price": item.price,
                                }
                                for position, item in enumerate(order.items)
                            ],
                        )
        logger.info("Persisted %d orders for customer %s", len(created), customer_id)
        return created

    async def delete_cart_lines(self, user_id: str, product_ids: Sequence[str]) -> int:
        if not product_ids:
            return 0
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    delete(cart_items).where(
                        cart_items.c.user_id == user_id,
                        cart_items.c.product_id.in_(list(product_ids)),
                    )
                )
        return result.rowcount

    async def _load(self, session: AsyncSession, order_rows: Sequence[Any]) -> list[Order]:
        if not order_rows:
            return []
        ids = [r.id for r in order_rows]
        item_rows = (
            await session.execute(
                select(order_items)
                .where(order_items.c.order_id.in_(ids))
                .order_by(order_items.c.order_id, order_items.c.position)
            )
        ).all()
        by_order: dict[str, list[Any]] = {}
        for item in item_rows:
            by_order.setdefault(item.order_id, []).append(item)
        return [_row_to_order(r, by_order.get(r.id, [])) for r in order_rows]

    async def get_order(self, order_id: str) -> Order | None:
        async with self.session_factory() as session:
            row = (await session.execute(select(orders).where(orders.c.id == order_id))).first()
            if row is None:
                return None
            return (await self._load(session, [row]))[0]

    async def update_order(self, order_id: str, **changes: Any) -> Order:
        _check_changes(changes)
        values = {k: v.value if isinstance(v, (OrderStatus, PaymentStatus)) else v for k, v in changes.items()}
        values["updated_at"] = _utcnow()
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(orders).where(orders.c.id == order_id).values(**values)
                )
                if result.rowcount != 1:
                    raise OrderNotFoundError(order_id)
                row = (await session.execute(select(orders).where(orders.c.id == order_id))).one()
                return (await self._load(session, [row]))[0]

    async def list_orders(
        self,
        *,
        customer_id: str | None = None,
        seller_id: str | None = None,
        courier_id: str | None = None,
        status: OrderStatus | None = None,
        offset: int = 0,
        limit: int = 10,
    ) -> tuple[list[Order], int]:
        conditions = []
        if customer_id is not None:
            conditions.append(orders.c.customer_id == customer_id)
        if seller_id is not None:
            conditions.append(orders.c.seller_id == seller_id)
        if courier_id is not None:
            conditions.append(orders.c.courier_id == courier_id)
        if status is not None:
            conditions.append(orders.c.status == status.value)

        async with self.session_factory() as session:
            total = (
                await session.execute(select(func.count()).select_from(orders).where(*conditions))
            ).scalar_one()
            rows = (
                await session.execute(
                    select(orders)
                    .where(*conditions)
                    .order_by(orders.c.created_at.desc(), orders.c.id)
                    .offset(offset)
                    .limit(limit)
                )
            ).all()
            return await self._load(session, rows), total

    async def get_user(self, user_id: str) -> User | None:
        async with self.session_factory() as session:
            row = (await session.execute(select(users).where(users.c.id == user_id))).first()
        if row is None:
            return None
        return User(id=row.id, email=row.email, role=Role(row.role), name=row.name)
