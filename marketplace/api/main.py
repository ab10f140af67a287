"""
Order API — FastAPI エントリーポイント

チェックアウト (POST /orders) と注文ステータス・支払い状態の更新、
注文の参照、イベントバスの状態を公開する。

認証はこのシステムの外側。呼び出し元のユーザーは
X-User-Id / X-User-Role ヘッダで受け取る。

ドメイン例外は例外ハンドラで HTTP ステータスに変換する:
  400 入力不正・空のカート・不正な配送員・終端からの遷移
  403 権限なし / 404 注文なし / 409 在庫不足
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

import httpx
import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from ..cache import RedisCacheInvalidator
from ..collaborators import Collaborators
from ..config import EventBusConfig, Settings
from ..events import EventBus, register_all_handlers
from ..inventory.reservations import SqlStockReservationManager
from ..notifications import HttpNotifier
from ..order.aggregate import Order, Role
from ..order.errors import (
    EmptyCartError,
    InsufficientStockError,
    InvalidCourierError,
    MarketplaceError,
    OrderNotFoundError,
    UnauthorizedError,
    ValidationError,
)
from ..order.repository import SqlOrderRepository
from ..realtime import RedisRealtimeChannel
from ..saga.orchestrator import OrderSagaOrchestrator
from ..schema import create_schema
from ..search import HttpSearchIndexer

logger = logging.getLogger(__name__)

SHUTDOWN_DRAIN_TIMEOUT = 10.0


@dataclass
class Wiring:
    """リクエスト処理に必要なもの一式 (lifespan 中だけ有効)"""

    bus: EventBus
    orchestrator: OrderSagaOrchestrator
    collaborators: Collaborators


WiringFactory = Callable[[], AbstractAsyncContextManager[Wiring]]


@asynccontextmanager
async def build_wiring() -> AsyncIterator[Wiring]:
    """環境変数から DB・Redis・HTTP クライアントをつないで組み立てる。"""
    settings = Settings.from_env()
    engine = create_async_engine(settings.database_url, echo=False)
    session_factory = async_sessionmaker(engine, expire_on_commit=False)
    redis_pool = aioredis.from_url(settings.redis_url, decode_responses=True)
    http_client = httpx.AsyncClient(timeout=10.0)

    await create_schema(engine)

    bus = EventBus(EventBusConfig.from_env())
    collaborators = Collaborators(
        cache=RedisCacheInvalidator(redis_pool),
        realtime=RedisRealtimeChannel(redis_pool),
        search=HttpSearchIndexer(settings.search_service_url, http_client),
        notifier=HttpNotifier(settings.notification_service_url, http_client),
    )
    orchestrator = OrderSagaOrchestrator(
        repository=SqlOrderRepository(session_factory),
        reservations=SqlStockReservationManager(
            session_factory, settings.reservation_ttl_seconds, bus=bus
        ),
        notifier=collaborators.notifier,
        cache=collaborators.cache,
        realtime=collaborators.realtime,
        bus=bus,
        reservation_ttl_seconds=settings.reservation_ttl_seconds,
    )
    try:
        yield Wiring(bus=bus, orchestrator=orchestrator, collaborators=collaborators)
    finally:
        await http_client.aclose()
        await redis_pool.aclose()
        await engine.dispose()


# ── Request Models ───────────────────────────────


class CheckoutRequest(BaseModel):
    # 明細と住所の検証は Saga 側で行う (400 を返すため)
    items: list[Any] = Field(default_factory=list)
    shipping_address: dict[str, Any] = Field(default_factory=dict)
    discount_amount: Decimal | None = None


class UpdateStatusRequest(BaseModel):
    status: str
    courier_id: str | None = None


class PaymentWebhookRequest(BaseModel):
    status: str
    payment_status: str
    paid_at: datetime | None = None
    payment_intent_id: str | None = None


# ── 依存関係 ─────────────────────────────────────


@dataclass(frozen=True)
class Actor:
    user_id: str
    role: Role


def get_actor(
    x_user_id: str = Header(),
    x_user_role: str = Header(default=Role.CUSTOMER.value),
) -> Actor:
    try:
        role = Role(x_user_role.upper())
    except ValueError as e:
        raise UnauthorizedError(f"Unknown role {x_user_role!r}") from e
    return Actor(user_id=x_user_id, role=role)


def get_wiring(request: Request) -> Wiring:
    return request.app.state.wiring


def get_orchestrator(wiring: Wiring = Depends(get_wiring)) -> OrderSagaOrchestrator:
    return wiring.orchestrator


def _dump(order: Order) -> dict[str, Any]:
    return order.model_dump(mode="json")


def _can_view(order: Order, actor: Actor) -> bool:
    if actor.role is Role.ADMIN:
        return True
    return actor.user_id in (order.customer_id, order.seller_id, order.courier_id)


# ── エラー変換 ───────────────────────────────────

_ERROR_STATUS: list[tuple[type[MarketplaceError], int]] = [
    (InsufficientStockError, 409),
    (OrderNotFoundError, 404),
    (UnauthorizedError, 403),
    (ValidationError, 400),
    (EmptyCartError, 400),
    (InvalidCourierError, 400),
]


async def marketplace_error_handler(request: Request, exc: MarketplaceError) -> JSONResponse:
    status_code = next((code for cls, code in _ERROR_STATUS if isinstance(exc, cls)), 500)
    body: dict[str, Any] = {"detail": str(exc), "error": type(exc).__name__}
    if isinstance(exc, InsufficientStockError):
        body["product_id"] = exc.product_id
    if status_code >= 500:
        logger.error("%s %s failed: %r", request.method, request.url.path, exc)
    else:
        logger.info("%s %s rejected (%d): %s", request.method, request.url.path, status_code, exc)
    return JSONResponse(status_code=status_code, content=body)


# ── App ──────────────────────────────────────────


def create_app(wiring_factory: WiringFactory = build_wiring) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        async with wiring_factory() as wiring:
            register_all_handlers(wiring.bus, wiring.collaborators)
            await wiring.bus.start()
            app.state.wiring = wiring
            yield
            try:
                await asyncio.wait_for(wiring.bus.drain(), SHUTDOWN_DRAIN_TIMEOUT)
            except asyncio.TimeoutError:
                logger.warning("Event bus did not drain within %.0fs", SHUTDOWN_DRAIN_TIMEOUT)
            await wiring.bus.close()

    app = FastAPI(title="Marketplace Order Service", lifespan=lifespan)
    app.add_exception_handler(MarketplaceError, marketplace_error_handler)

    # ── Command Endpoints ────────────────────────

    @app.post("/orders", status_code=201)
    async def checkout(
        req: CheckoutRequest,
        request: Request,
        actor: Actor = Depends(get_actor),
        orchestrator: OrderSagaOrchestrator = Depends(get_orchestrator),
    ):
        """カートの選択から販売者ごとの注文を作成する"""
        created = await orchestrator.create_order(
            req.items,
            req.shipping_address,
            actor.user_id,
            discount_amount=req.discount_amount,
            request_id=request.headers.get("x-request-id"),
        )
        return {"orders": [_dump(o) for o in created]}

    @app.patch("/orders/{order_id}/status")
    async def update_status(
        order_id: str,
        req: UpdateStatusRequest,
        actor: Actor = Depends(get_actor),
        orchestrator: OrderSagaOrchestrator = Depends(get_orchestrator),
    ):
        order = await orchestrator.update_order_status(
            order_id, req.status.upper(), actor.user_id, actor.role, req.courier_id
        )
        return _dump(order)

    @app.post("/orders/{order_id}/payment")
    async def payment_webhook(
        order_id: str,
        req: PaymentWebhookRequest,
        orchestrator: OrderSagaOrchestrator = Depends(get_orchestrator),
    ):
        """決済サービスからの Webhook (署名検証は前段のゲートウェイで行う)"""
        order = await orchestrator.update_order_payment_status(
            order_id,
            req.status.upper(),
            req.payment_status.upper(),
            req.paid_at,
            req.payment_intent_id,
        )
        return _dump(order)

    # ── Query Endpoints ──────────────────────────

    @app.get("/orders")
    async def list_orders(
        page: int = 1,
        limit: int = 10,
        status: str | None = None,
        actor: Actor = Depends(get_actor),
        orchestrator: OrderSagaOrchestrator = Depends(get_orchestrator),
    ):
        orders, total = await orchestrator.get_user_orders(
            actor.user_id, actor.role, page, limit, status.upper() if status else None
        )
        return {"orders": [_dump(o) for o in orders], "total": total, "page": page, "limit": limit}

    @app.get("/orders/{order_id}")
    async def get_order(
        order_id: str,
        actor: Actor = Depends(get_actor),
        orchestrator: OrderSagaOrchestrator = Depends(get_orchestrator),
    ):
        order = await orchestrator.get_order(order_id)
        if not _can_view(order, actor):
            raise UnauthorizedError(f"{actor.role.value} {actor.user_id} cannot view order {order_id}")
        return _dump(order)

    # ── 運用 ─────────────────────────────────────

    @app.get("/events/status")
    async def event_bus_status(wiring: Wiring = Depends(get_wiring)):
        return wiring.bus.get_status()

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "order-service"}

    return app


app = create_app()
