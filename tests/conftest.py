from collections.abc import Mapping
from decimal import Decimal
from typing import Any

import pytest
from sqlalchemy import insert
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from marketplace.config import EventBusConfig
from marketplace.events import EventBus
from marketplace.inventory.reservations import InMemoryStockReservationManager
from marketplace.order.aggregate import Order, Role
from marketplace.order.repository import InMemoryOrderRepository
from marketplace.saga.orchestrator import OrderSagaOrchestrator
from marketplace.schema import cart_items, create_schema, products, users

ADDRESS = {
    "street": "1 Market St",
    "city": "Baku",
    "postal_code": "AZ1000",
    "country": "az",
}


# ── 記録するフェイク ─────────────────────────────


class RecordingCache:
    def __init__(self) -> None:
        self.calls: list[tuple[Any, ...]] = []
        self.fail = False

    def _record(self, *call: Any) -> None:
        self.calls.append(call)
        if self.fail:
            raise ConnectionError("cache down")

    async def invalidate_order_cache(self, order_id: str, user_id: str | None = None) -> None:
        self._record("order", order_id, user_id)

    async def invalidate_product_cache(self, product_id: str) -> None:
        self._record("product", product_id)

    async def invalidate_category_cache(self, category_id: str) -> None:
        self._record("category", category_id)

    async def invalidate_user_cache(self, user_id: str) -> None:
        self._record("user", user_id)

    async def invalidate_related_caches(
        self, entity_kind: str, entity_id: str, extra: Mapping[str, Any] | None = None
    ) -> None:
        self._record("related", entity_kind, entity_id)


class RecordingRealtime:
    def __init__(self) -> None:
        self.messages: list[tuple[str, dict[str, Any], str | None]] = []
        self.fail = False

    async def emit_realtime_event(
        self, channel_key: str, payload: Mapping[str, Any], target_user_id: str | None = None
    ) -> None:
        if self.fail:
            raise ConnectionError("realtime down")
        self.messages.append((channel_key, dict(payload), target_user_id))

    def keys(self) -> list[str]:
        return [m[0] for m in self.messages]


class RecordingSearch:
    def __init__(self) -> None:
        self.indexed: list[str] = []

    async def index_product(self, product_id: str) -> None:
        self.indexed.append(product_id)


class RecordingNotifier:
    def __init__(self) -> None:
        self.confirmations: list[str] = []
        self.seller_emails: list[tuple[str, str]] = []
        self.fail = False

    async def send_order_confirmation(self, order: Order) -> None:
        if self.fail:
            raise ConnectionError("smtp down")
        self.confirmations.append(order.id)

    async def send_new_order_email_to_seller(self, order: Order, seller_email: str) -> None:
        if self.fail:
            raise ConnectionError("smtp down")
        self.seller_emails.append((order.id, seller_email))


class SpyReservations(InMemoryStockReservationManager):
    """引き当て・確定・取り消しの呼び出し順を記録する"""

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.log: list[tuple[str, str]] = []

    async def reserve(self, product_id, quantity, ttl_seconds=None, owner_id=None):
        reservation = await super().reserve(product_id, quantity, ttl_seconds, owner_id)
        self.log.append(("reserve", product_id))
        return reservation

    async def confirm(self, reservation_id):
        self.log.append(("confirm", reservation_id))
        await super().confirm(reservation_id)

    async def cancel(self, reservation_id):
        self.log.append(("cancel", reservation_id))
        await super().cancel(reservation_id)


# ── Fixtures ─────────────────────────────────────


@pytest.fixture
def bus_config() -> EventBusConfig:
    return EventBusConfig(
        processing_interval_ms=0,
        retry_attempts=3,
        retry_delay_ms=1,
        handler_timeout_ms=2000,
    )


@pytest.fixture
async def bus(bus_config):
    bus = EventBus(bus_config)
    yield bus
    await bus.close()


@pytest.fixture
def cache() -> RecordingCache:
    return RecordingCache()


@pytest.fixture
def realtime() -> RecordingRealtime:
    return RecordingRealtime()


@pytest.fixture
def search() -> RecordingSearch:
    return RecordingSearch()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def repository() -> InMemoryOrderRepository:
    repo = InMemoryOrderRepository()
    repo.add_user("C1", Role.CUSTOMER, email="c1@example.com")
    repo.add_user("S1", Role.SELLER, email="s1@example.com")
    repo.add_user("S2", Role.SELLER, email="s2@example.com")
    repo.add_user("K1", Role.COURIER)
    repo.add_user("A1", Role.ADMIN)
    repo.add_product("P1", "S1", Decimal("10.00"))
    repo.add_product("P2", "S2", Decimal("30.00"))
    repo.add_product("P3", "S1", Decimal("5.00"))
    for product_id, qty in (("P1", 2), ("P2", 1), ("P3", 1)):
        repo.add_cart_item("C1", product_id, qty)
    return repo


@pytest.fixture
def reservations(bus) -> SpyReservations:
    manager = SpyReservations(bus=bus)
    manager.add_product("P1", 100, seller_id="S1")
    manager.add_product("P2", 100, seller_id="S2")
    manager.add_product("P3", 100, seller_id="S1")
    return manager


@pytest.fixture
def orchestrator(repository, reservations, notifier, cache, realtime, bus) -> OrderSagaOrchestrator:
    return OrderSagaOrchestrator(
        repository=repository,
        reservations=reservations,
        notifier=notifier,
        cache=cache,
        realtime=realtime,
        bus=bus,
    )


# ── SQLite ───────────────────────────────────────


@pytest.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'marketplace.db'}")
    await create_schema(engine)
    async with engine.begin() as conn:
        await conn.execute(
            insert(users),
            [
                {"id": "C1", "email": "c1@example.com", "role": "CUSTOMER"},
                {"id": "S1", "email": "s1@example.com", "role": "SELLER"},
                {"id": "S2", "email": "s2@example.com", "role": "SELLER"},
                {"id": "K1", "email": "k1@example.com", "role": "COURIER"},
            ],
        )
        await conn.execute(
            insert(products),
            [
                {"id": "P1", "seller_id": "S1", "name": "Tea", "price": Decimal("10.00"), "stock": 10, "reserved": 0},
                {"id": "P2", "seller_id": "S2", "name": "Rug", "price": Decimal("30.00"), "stock": 3, "reserved": 0},
            ],
        )
        await conn.execute(
            insert(cart_items),
            [
                {"user_id": "C1", "product_id": "P1", "quantity": 2},
                {"user_id": "C1", "product_id": "P2", "quantity": 1},
            ],
        )
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()
