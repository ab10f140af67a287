"""
Inventory Service — 在庫引き当て (Stock Reservation Manager)

引き当ては3状態:
    held      … reserve で作られる。products.reserved に計上される
    confirmed … 実在庫を減らす (成功の終端)
    cancelled … 保留を解放する (ロールバックの終端。TTL 切れもここ)

1件の引き当てに終端遷移はちょうど1回。
confirmed の後に cancelled になることも、その逆もない。
同じ商品への同時 reserve に対して、available の確認と加算は原子的に行う。
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict
from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..events.bus import EventBus
from ..events.product_events import emit_product_stock_low, emit_product_stock_out
from ..order.errors import ReservationError, ReservationExpiredError
from ..schema import products, stock_reservations

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 15 * 60
LOW_STOCK_THRESHOLD = 5


class ReservationStatus(str, Enum):
    HELD = "held"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class StockReservation(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    product_id: str
    quantity: int
    owner_user_id: str | None = None
    status: ReservationStatus = ReservationStatus.HELD
    expires_at: datetime


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime) -> datetime:
    # SQLite はタイムゾーンを落として返す
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def _new_reservation_id() -> str:
    return f"res_{uuid.uuid4().hex}"


def _emit_stock_alert(
    bus: EventBus | None,
    product_id: str,
    seller_id: str | None,
    stock: int,
    threshold: int,
) -> None:
    """確定後の残り在庫が少なければ product.stock.low / product.stock.out を発行する。"""
    if bus is None:
        return
    if stock <= 0:
        emit_product_stock_out(bus, product_id, seller_id)
    elif stock <= threshold:
        emit_product_stock_low(bus, product_id, stock, threshold, seller_id)


# ── インメモリ実装 ───────────────────────────────


@dataclass
class _ProductStock:
    stock: int
    reserved: int = 0
    seller_id: str | None = None

    @property
    def available(self) -> int:
        return self.stock - self.reserved


class InMemoryStockReservationManager:
    """asyncio.Lock で直列化したインメモリの在庫引き当て"""

    def __init__(
        self,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        bus: EventBus | None = None,
        low_stock_threshold: int = LOW_STOCK_THRESHOLD,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.bus = bus
        self.low_stock_threshold = low_stock_threshold
        self.products: dict[str, _ProductStock] = {}
        self.reservations: dict[str, StockReservation] = {}
        self._lock = asyncio.Lock()

    def add_product(self, product_id: str, stock: int, seller_id: str | None = None) -> None:
        self.products[product_id] = _ProductStock(stock=stock, seller_id=seller_id)

    def stock_of(self, product_id: str) -> int:
        return self.products[product_id].stock

    def available(self, product_id: str) -> int:
        product = self.products.get(product_id)
        return product.available if product else 0

    def get(self, reservation_id: str) -> StockReservation | None:
        return self.reservations.get(reservation_id)

    async def reserve(
        self,
        product_id: str,
        quantity: int,
        ttl_seconds: int | None = None,
        owner_id: str | None = None,
    ) -> StockReservation | None:
        async with self._lock:
            product = self.products.get(product_id)
            if product is None:
                logger.warning("Product %s not found for stock reservation", product_id)
                return None
            if product.available < quantity:
                logger.warning(
                    "Insufficient stock for reservation: product=%s requested=%d available=%d",
                    product_id, quantity, product.available,
                )
                return None

            product.reserved += quantity
            reservation = StockReservation(
                id=_new_reservation_id(),
                product_id=product_id,
                quantity=quantity,
                owner_user_id=owner_id,
                expires_at=_utcnow() + timedelta(seconds=ttl_seconds or self.ttl_seconds),
            )
            self.reservations[reservation.id] = reservation

        logger.info("Stock reserved: %s product=%s qty=%d", reservation.id, product_id, quantity)
        return reservation

    async def confirm(self, reservation_id: str) -> None:
        async with self._lock:
            reservation = self.reservations.get(reservation_id)
            if reservation is None or reservation.status is not ReservationStatus.HELD:
                raise ReservationError(f"Reservation {reservation_id} is not held")

            product = self.products[reservation.product_id]
            product.reserved -= reservation.quantity
            if _utcnow() > reservation.expires_at:
                self.reservations[reservation_id] = reservation.model_copy(
                    update={"status": ReservationStatus.CANCELLED}
                )
                logger.warning("Reservation %s expired before confirmation", reservation_id)
                raise ReservationExpiredError(reservation_id)

            product.stock -= reservation.quantity
            self.reservations[reservation_id] = reservation.model_copy(
                update={"status": ReservationStatus.CONFIRMED}
            )
            remaining, seller_id = product.stock, product.seller_id

        logger.info(
            "Stock reservation confirmed: %s product=%s qty=%d",
            reservation_id, reservation.product_id, reservation.quantity,
        )
        _emit_stock_alert(self.bus, reservation.product_id, seller_id, remaining, self.low_stock_threshold)

    async def cancel(self, reservation_id: str) -> None:
        async with self._lock:
            reservation = self.reservations.get(reservation_id)
            if reservation is None or reservation.status is not ReservationStatus.HELD:
                logger.warning("Reservation %s is not held, nothing to cancel", reservation_id)
                return
            self.products[reservation.product_id].reserved -= reservation.quantity
            self.reservations[reservation_id] = reservation.model_copy(
                update={"status": ReservationStatus.CANCELLED}
            )
        logger.info("Stock reservation cancelled: %s", reservation_id)

    async def expire_stale(self) -> int:
        now = _utcnow()
        stale = [
            r.id for r in self.reservations.values()
            if r.status is ReservationStatus.HELD and r.expires_at < now
        ]
        for reservation_id in stale:
            await self.cancel(reservation_id)
        return len(stale)


# ── SQL 実装 ─────────────────────────────────────


class SqlStockReservationManager:
    """
    products.reserved への条件付き加算で引き当てる。

    UPDATE products SET reserved = reserved + :qty
    WHERE id = :id AND stock - reserved >= :qty

    が1行更新できたときだけ引き当て成功。DB の行ロックが同時実行を直列化する。
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        bus: EventBus | None = None,
        low_stock_threshold: int = LOW_STOCK_THRESHOLD,
    ) -> None:
        self.session_factory = session_factory
        self.ttl_seconds = ttl_seconds
        self.bus = bus
        self.low_stock_threshold = low_stock_threshold

    async def reserve(
        self,
        product_id: str,
        quantity: int,
        ttl_seconds: int | None = None,
        owner_id: str | None = None,
    ) -> StockReservation | None:
        now = _utcnow()
        reservation = StockReservation(
            id=_new_reservation_id(),
            product_id=product_id,
            quantity=quantity,
            owner_user_id=owner_id,
            expires_at=now + timedelta(seconds=ttl_seconds or self.ttl_seconds),
        )

        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(products)
                    .where(
                        products.c.id == product_id,
                        products.c.stock - products.c.reserved >= quantity,
                    )
                    .values(reserved=products.c.reserved + quantity)
                )
                if result.rowcount != 1:
                    logger.warning(
                        "Insufficient stock for reservation: product=%s requested=%d",
                        product_id, quantity,
                    )
                    return None

                await session.execute(
                    insert(stock_reservations).values(
                        id=reservation.id,
                        product_id=product_id,
                        quantity=quantity,
                        owner_user_id=owner_id,
                        status=ReservationStatus.HELD.value,
                        expires_at=reservation.expires_at,
                        created_at=now,
                    )
                )

        logger.info("Stock reserved: %s product=%s qty=%d", reservation.id, product_id, quantity)
        return reservation

    async def get(self, reservation_id: str) -> StockReservation | None:
        async with self.session_factory() as session:
            row = (
                await session.execute(
                    select(stock_reservations).where(stock_reservations.c.id == reservation_id)
                )
            ).first()
        if row is None:
            return None
        return StockReservation(
            id=row.id,
            product_id=row.product_id,
            quantity=row.quantity,
            owner_user_id=row.owner_user_id,
            status=ReservationStatus(row.status),
            expires_at=_aware(row.expires_at),
        )

    async def _release(self, session: AsyncSession, reservation_id: str, product_id: str, quantity: int) -> bool:
        result = await session.execute(
            update(stock_reservations)
            .where(
                stock_reservations.c.id == reservation_id,
                stock_reservations.c.status == ReservationStatus.HELD.value,
            )
            .values(status=ReservationStatus.CANCELLED.value)
        )
        if result.rowcount != 1:
            return False
        await session.execute(
            update(products)
            .where(products.c.id == product_id)
            .values(reserved=products.c.reserved - quantity)
        )
        return True

    async def confirm(self, reservation_id: str) -> None:
        expired = False
        async with self.session_factory() as session:
            async with session.begin():
                row = (
                    await session.execute(
                        select(stock_reservations).where(stock_reservations.c.id == reservation_id)
                    )
                ).first()
                if row is None or row.status != ReservationStatus.HELD.value:
                    raise ReservationError(f"Reservation {reservation_id} is not held")

                if _utcnow() > _aware(row.expires_at):
                    expired = await self._release(session, reservation_id, row.product_id, row.quantity)
                else:
                    result = await session.execute(
                        update(stock_reservations)
                        .where(
                            stock_reservations.c.id == reservation_id,
                            stock_reservations.c.status == ReservationStatus.HELD.value,
                        )
                        .values(status=ReservationStatus.CONFIRMED.value)
                    )
                    if result.rowcount != 1:
                        raise ReservationError(f"Reservation {reservation_id} is not held")
                    await session.execute(
                        update(products)
                        .where(products.c.id == row.product_id)
                        .values(
                            stock=products.c.stock - row.quantity,
                            reserved=products.c.reserved - row.quantity,
                        )
                    )
                    product = (
                        await session.execute(
                            select(products.c.stock, products.c.seller_id).where(
                                products.c.id == row.product_id
                            )
                        )
                    ).one()

        if expired:
            logger.warning("Reservation %s expired before confirmation", reservation_id)
            raise ReservationExpiredError(reservation_id)

        logger.info(
            "Stock reservation confirmed: %s product=%s qty=%d",
            reservation_id, row.product_id, row.quantity,
        )
        _emit_stock_alert(self.bus, row.product_id, product.seller_id, product.stock, self.low_stock_threshold)

    async def cancel(self, reservation_id: str) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                row = (
                    await session.execute(
                        select(stock_reservations).where(stock_reservations.c.id == reservation_id)
                    )
                ).first()
                released = row is not None and await self._release(
                    session, reservation_id, row.product_id, row.quantity
                )

        if released:
            logger.info("Stock reservation cancelled: %s", reservation_id)
        else:
            logger.warning("Reservation %s is not held, nothing to cancel", reservation_id)

    async def expire_stale(self) -> int:
        now = _utcnow()
        async with self.session_factory() as session:
            rows = (
                await session.execute(
                    select(stock_reservations.c.id, stock_reservations.c.expires_at).where(
                        stock_reservations.c.status == ReservationStatus.HELD.value
                    )
                )
            ).all()
        stale = [r.id for r in rows if _aware(r.expires_at) < now]
        for reservation_id in stale:
            await self.cancel(reservation_id)
        if stale:
            logger.info("Expired %d stale stock reservations", len(stale))
        return len(stale)
