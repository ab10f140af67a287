"""
Saga Orchestrator — チェックアウト Saga

Saga パターン (オーケストレーション型):
  カートの選択から、販売者ごとの注文をまとめて作る。
  在庫と金額は全か無か。通知・イベント・キャッシュは後追いのベストエフォート。

  フロー:
  ┌──────────────────────────────────────────────────────────────┐
  │  1. 入力検証 (明細・配送先・割引)                              │
  │  2. カート行を読み出す (販売者と現在価格つき)                  │
  │  3. 販売者ごとに下書きを作り、割引を小計比で按分する            │
  │  4. 全下書きの全明細の在庫を引き当てる                         │
  │     └─ 1件でも失敗 → 取得済みの引き当てをすべて取り消す        │
  │                       (補償トランザクション)                   │
  │  5. 注文グループを1トランザクションで作成し、引き当てを確定    │
  │  6. 確認メール・販売者メール・order.created   (ベストエフォート) │
  │  7. 消費したカート行を削除                    (ベストエフォート) │
  │  8. キャッシュ無効化                          (ベストエフォート) │
  └──────────────────────────────────────────────────────────────┘

  1〜5 の失敗だけが呼び出し元に返る。6〜8 の失敗はログに残るだけで、
  作成済みの注文は取り消さない。
"""

import logging
from collections.abc import Mapping, Sequence
from datetime import datetime
from decimal import ROUND_DOWN, Decimal
from typing import Any

from ..best_effort import best_effort
from ..collaborators import (
    CacheInvalidator,
    Notifier,
    OrderRepository,
    RealtimeChannel,
    StockReservationManager,
)
from ..events.bus import EventBus
from ..events.order_events import (
    emit_order_cancelled,
    emit_order_completed,
    emit_order_created,
    emit_order_payment_failed,
    emit_order_payment_succeeded,
    emit_order_updated,
)
from ..events.types import OrderUpdated
from ..inventory.reservations import StockReservation
from ..order.aggregate import (
    CENT,
    CartLine,
    Order,
    OrderStatus,
    PaymentStatus,
    Role,
    SellerDraft,
    check_transition,
    money,
)
from ..order.errors import (
    EmptyCartError,
    InsufficientStockError,
    InvalidCourierError,
    InvalidStatusTransitionError,
    OrderNotFoundError,
    ReservationError,
    UnauthorizedError,
    ValidationError,
)
from ..order.validation import (
    validate_discount,
    validate_order_items,
    validate_shipping_address,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")


# ── 下書きと割引の按分 ───────────────────────────


def group_by_seller(lines: Sequence[CartLine]) -> list[SellerDraft]:
    """
    カート行を販売者ごとの下書きにまとめる。

    下書きは販売者が最初に現れた順、明細は行の順のまま。
    小計はこの時点の価格で計算する。
    """
    drafts: dict[str, SellerDraft] = {}
    for line in lines:
        draft = drafts.get(line.seller_id)
        if draft is None:
            draft = drafts[line.seller_id] = SellerDraft(seller_id=line.seller_id)
        draft.items.append(line)
        draft.subtotal = money(draft.subtotal + line.price * line.quantity)
    return list(drafts.values())


def distribute_discount(drafts: Sequence[SellerDraft], discount: Decimal) -> Decimal:
    """
    割引を小計比で下書きに按分し、実際に按分した合計を返す。

    割引は全体の小計を上限に切り詰める。最後以外の下書きは1セント未満を
    切り捨て、最後の下書きが端数を吸収するので、按分の合計は (切り詰め後の)
    割引にちょうど一致する。どの下書きの割引も 0 以上・自分の小計以下。

    最後の下書きの小計が端数を吸収しきれないときは、吸収しきれない分を
    切り捨て幅の大きい下書きから1セントずつ戻す。
    """
    total = sum((d.subtotal for d in drafts), ZERO)
    discount = money(min(discount, total)) if total > 0 else ZERO
    if discount <= 0:
        for draft in drafts:
            draft.discount = ZERO
        return ZERO

    leftovers: list[Decimal] = []
    for draft in drafts[:-1]:
        exact = discount * draft.subtotal / total
        draft.discount = exact.quantize(CENT, rounding=ROUND_DOWN)
        leftovers.append(exact - draft.discount)

    last = drafts[-1]
    last.discount = discount - sum((d.discount for d in drafts[:-1]), ZERO)
    excess = last.discount - last.subtotal
    if excess > 0:
        last.discount = last.subtotal
        # 小計の合計は割引以上なので、必ずどこかに余地がある
        order = sorted(range(len(leftovers)), key=lambda i: leftovers[i], reverse=True)
        while excess > 0:
            for i in order:
                draft = drafts[i]
                if excess > 0 and draft.subtotal - draft.discount >= CENT:
                    draft.discount += CENT
                    excess -= CENT
    return discount


# ── Orchestrator ─────────────────────────────────


class OrderSagaOrchestrator:
    """チェックアウト Saga と注文ステータス更新のオーケストレーター"""

    def __init__(
        self,
        repository: OrderRepository,
        reservations: StockReservationManager,
        notifier: Notifier,
        cache: CacheInvalidator,
        realtime: RealtimeChannel,
        bus: EventBus,
        reservation_ttl_seconds: int | None = None,
    ) -> None:
        self.repository = repository
        self.reservations = reservations
        self.notifier = notifier
        self.cache = cache
        self.realtime = realtime
        self.bus = bus
        self.reservation_ttl_seconds = reservation_ttl_seconds

    async def create_order(
        self,
        cart_selection: Any,
        shipping_address: Any,
        user_id: str,
        discount_amount: Any = None,
        request_id: str | None = None,
    ) -> list[Order]:
        """
        カートの選択から販売者ごとの注文を作成する。

        全注文が作られるか、1件も作られないかのどちらか。
        在庫不足なら InsufficientStockError (不足した商品IDつき)。
        """
        # ── Step 1: 入力検証 ────────────────────────
        selections = validate_order_items(cart_selection)
        address = validate_shipping_address(shipping_address)
        discount = validate_discount(discount_amount)

        # ── Step 2: カート行の読み出し ──────────────
        product_ids = [s.product_id for s in selections]
        lines = await self.repository.get_cart_lines(user_id, product_ids)
        if not lines:
            raise EmptyCartError(user_id)

        # 数量はリクエストの指定を使う
        requested = {s.product_id: s.quantity for s in selections}
        lines = [line.model_copy(update={"quantity": requested[line.product_id]}) for line in lines]

        # ── Step 3: 販売者ごとの下書きと割引の按分 ──
        drafts = group_by_seller(lines)
        distribute_discount(drafts, discount)

        # ── Step 4: 在庫引き当て (全か無か) ─────────
        held = await self._reserve_all(drafts, user_id)

        # ── Step 5: 注文作成と引き当ての確定 ────────
        try:
            created = await self.repository.create_orders(
                user_id, drafts, address.model_dump(exclude_none=True)
            )
        except Exception as e:
            logger.exception("Failed to persist orders for user %s, releasing reservations", user_id)
            await self._cancel_all([r for rs in held for r in rs])
            raise ReservationError(f"Failed to create orders for user {user_id}") from e

        for order, reservations in zip(created, held):
            await self._confirm_all(order, reservations)

        logger.info(
            "Checkout completed: user=%s orders=%s",
            user_id, ", ".join(o.id for o in created),
        )

        # ── Step 6: 通知とイベント (ベストエフォート) ─
        for order in created:
            await self._notify_created(order, user_id, request_id)

        # ── Step 7: カート行の削除 (ベストエフォート) ─
        with best_effort(logger, "clear ordered cart items", user_id=user_id):
            await self.repository.delete_cart_lines(user_id, [line.product_id for line in lines])

        # ── Step 8: キャッシュ無効化 (ベストエフォート) ─
        with best_effort(logger, "invalidate order caches", user_id=user_id):
            for order in created:
                await self.cache.invalidate_order_cache(order.id, user_id)
            await self.cache.invalidate_related_caches("user", user_id)

        return created

    async def _reserve_all(self, drafts: Sequence[SellerDraft], user_id: str) -> list[list[StockReservation]]:
        """
        下書き順・明細順に引き当てる。

        1件でも取れなければ、それまでに取れた分をすべて取り消して
        InsufficientStockError を送出する。
        """
        held: list[list[StockReservation]] = []
        acquired: list[StockReservation] = []
        try:
            for draft in drafts:
                per_draft: list[StockReservation] = []
                held.append(per_draft)
                for line in draft.items:
                    reservation = await self.reservations.reserve(
                        line.product_id,
                        line.quantity,
                        self.reservation_ttl_seconds,
                        user_id,
                    )
                    if reservation is None:
                        raise InsufficientStockError(line.product_id)
                    per_draft.append(reservation)
                    acquired.append(reservation)
        except InsufficientStockError as e:
            logger.warning(
                "Checkout aborted for user %s: insufficient stock for %s", user_id, e.product_id
            )
            await self._cancel_all(acquired)
            raise
        except Exception:
            logger.exception("Checkout aborted for user %s while reserving stock", user_id)
            await self._cancel_all(acquired)
            raise
        return held

    async def _cancel_all(self, reservations: Sequence[StockReservation]) -> None:
        for reservation in reservations:
            with best_effort(logger, "cancel stock reservation", reservation_id=reservation.id):
                await self.reservations.cancel(reservation.id)

    async def _confirm_all(self, order: Order, reservations: Sequence[StockReservation]) -> None:
        for reservation in reservations:
            try:
                await self.reservations.confirm(reservation.id)
            except ReservationError:
                logger.exception(
                    "Reservation %s could not be confirmed for order %s", reservation.id, order.id
                )
            except Exception:
                logger.exception(
                    "Reservation %s could not be confirmed for order %s, releasing it",
                    reservation.id, order.id,
                )
                with best_effort(logger, "cancel stock reservation", reservation_id=reservation.id):
                    await self.reservations.cancel(reservation.id)

    async def _notify_created(self, order: Order, user_id: str, request_id: str | None) -> None:
        with best_effort(logger, "send order confirmation", order_id=order.id):
            await self.notifier.send_order_confirmation(order)
        with best_effort(logger, "notify seller about new order", order_id=order.id):
            seller = await self.repository.get_user(order.seller_id)
            if seller is None:
                logger.warning("Seller %s of order %s not found, skipping e-mail", order.seller_id, order.id)
            else:
                await self.notifier.send_new_order_email_to_seller(order, seller.email)
        with best_effort(logger, "emit order.created", order_id=order.id):
            emit_order_created(self.bus, order, user_id, request_id)

    # ── ステータス更新 ───────────────────────────

    async def _get_order(self, order_id: str) -> Order:
        order = await self.repository.get_order(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    async def update_order_status(
        self,
        order_id: str,
        new_status: OrderStatus | str,
        actor_id: str,
        actor_role: Role | str,
        courier_id: str | None = None,
    ) -> Order:
        """
        ロール別の遷移表に従って注文ステータスを変更する。

        courier_id は ADMIN のときだけ反映し、COURIER ロールのユーザーでなければ
        InvalidCourierError。それ以外のロールが渡した courier_id は無視する。
        """
        try:
            role = Role(actor_role)
        except ValueError as e:
            raise UnauthorizedError(f"Unknown role {actor_role!r}") from e
        try:
            status = OrderStatus(new_status)
        except ValueError as e:
            raise ValidationError(f"Invalid order status {new_status!r}") from e

        order = await self._get_order(order_id)
        check_transition(order, status, actor_id, role)

        changes: dict[str, Any] = {"status": status}
        if courier_id:
            if role is Role.ADMIN:
                courier = await self.repository.get_user(courier_id)
                if courier is None or courier.role is not Role.COURIER:
                    raise InvalidCourierError(courier_id)
                changes["courier_id"] = courier_id
            else:
                logger.debug("Ignoring courier assignment by %s %s", role.value, actor_id)

        updated = await self.repository.update_order(order_id, **changes)
        logger.info(
            "Order %s status %s -> %s by %s %s",
            order_id, order.status.value, updated.status.value, role.value, actor_id,
        )

        with best_effort(logger, "emit order status events", order_id=order_id):
            emit_order_updated(
                self.bus,
                OrderUpdated(
                    order_id=order_id,
                    customer_id=updated.customer_id,
                    seller_id=updated.seller_id,
                    status=updated.status.value,
                    previous_status=order.status.value,
                    courier_id=updated.courier_id,
                ),
                user_id=actor_id,
            )
            if status is not order.status:
                if status is OrderStatus.CANCELLED:
                    emit_order_cancelled(self.bus, updated, user_id=actor_id)
                elif status is OrderStatus.DELIVERED:
                    emit_order_completed(self.bus, updated, user_id=actor_id)

        await self._push_status(updated)
        await self._invalidate(updated)
        return updated

    async def update_order_payment_status(
        self,
        order_id: str,
        status: OrderStatus | str,
        payment_status: PaymentStatus | str,
        paid_at: datetime | None = None,
        payment_intent_id: str | None = None,
    ) -> Order:
        """
        決済 Webhook からの支払い状態の反映。

        order.payment.succeeded / order.payment.failed は、支払い状態が
        PAID / FAILED へ実際に変わったときだけ発行する。同じ Webhook が
        繰り返し届いても二重には発行しない。

        payment_intent_id を渡すと同じ更新で記録し、order.updated にも載せる。
        """
        try:
            status = OrderStatus(status)
            payment_status = PaymentStatus(payment_status)
        except ValueError as e:
            raise ValidationError(str(e)) from e

        order = await self._get_order(order_id)
        if order.status.is_terminal and status is not order.status:
            raise InvalidStatusTransitionError(
                f"Order {order_id} is {order.status.value} and cannot move to {status.value}"
            )

        changes: dict[str, Any] = {"status": status, "payment_status": payment_status}
        if paid_at is not None:
            changes["paid_at"] = paid_at
        if payment_intent_id is not None:
            changes["payment_intent_id"] = payment_intent_id
        updated = await self.repository.update_order(order_id, **changes)
        previous = order.payment_status
        logger.info(
            "Order %s payment %s -> %s", order_id, previous.value, updated.payment_status.value
        )

        with best_effort(logger, "emit payment events", order_id=order_id):
            emit_order_updated(
                self.bus,
                OrderUpdated(
                    order_id=order_id,
                    customer_id=updated.customer_id,
                    status=updated.status.value,
                    previous_status=order.status.value,
                    payment_status=updated.payment_status.value,
                    previous_payment_status=previous.value,
                    payment_intent_id=updated.payment_intent_id,
                ),
                user_id=updated.customer_id,
            )
            if payment_status is PaymentStatus.PAID and previous is not PaymentStatus.PAID:
                emit_order_payment_succeeded(self.bus, updated, user_id=updated.customer_id)
            elif payment_status is PaymentStatus.FAILED and previous is not PaymentStatus.FAILED:
                emit_order_payment_failed(self.bus, updated, user_id=updated.customer_id)

        await self._push_status(updated)
        await self._invalidate(updated)
        return updated

    async def update_order_payment_info(
        self,
        order_id: str,
        payment_intent_id: str | None = None,
        status: OrderStatus | str | None = None,
        payment_status: PaymentStatus | str | None = None,
    ) -> Order:
        """決済インテントIDなどの支払いメタデータを記録する。"""
        changes: dict[str, Any] = {}
        try:
            if status is not None:
                changes["status"] = OrderStatus(status)
            if payment_status is not None:
                changes["payment_status"] = PaymentStatus(payment_status)
        except ValueError as e:
            raise ValidationError(str(e)) from e
        if payment_intent_id is not None:
            changes["payment_intent_id"] = payment_intent_id

        order = await self._get_order(order_id)
        if not changes:
            return order
        updated = await self.repository.update_order(order_id, **changes)

        with best_effort(logger, "emit order.updated", order_id=order_id):
            emit_order_updated(
                self.bus,
                OrderUpdated(
                    order_id=order_id,
                    customer_id=updated.customer_id,
                    status=updated.status.value,
                    previous_status=order.status.value,
                    payment_status=updated.payment_status.value,
                    previous_payment_status=order.payment_status.value,
                    payment_intent_id=updated.payment_intent_id,
                ),
                user_id=updated.customer_id,
            )
        await self._push_status(updated)
        return updated

    async def _push_status(self, order: Order) -> None:
        with best_effort(logger, "push order status", order_id=order.id):
            await self.realtime.emit_realtime_event(
                "order.status.update",
                {
                    "order_id": order.id,
                    "status": order.status.value,
                    "payment_status": order.payment_status.value,
                },
                order.customer_id,
            )

    async def _invalidate(self, order: Order) -> None:
        with best_effort(logger, "invalidate order caches", order_id=order.id):
            await self.cache.invalidate_order_cache(order.id, order.customer_id)
            await self.cache.invalidate_related_caches("user", order.customer_id)
            await self.cache.invalidate_related_caches("user", order.seller_id)

    # ── 参照 ─────────────────────────────────────

    async def get_order(self, order_id: str) -> Order:
        return await self._get_order(order_id)

    async def get_user_orders(
        self,
        user_id: str,
        role: Role | str,
        page: int = 1,
        limit: int = 10,
        status: OrderStatus | str | None = None,
    ) -> tuple[list[Order], int]:
        """ロールに応じた注文一覧 (新しい順) と総件数"""
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive")
        try:
            role = Role(role)
            status = OrderStatus(status) if status is not None else None
        except ValueError as e:
            raise ValidationError(str(e)) from e

        scope: Mapping[Role, dict[str, str]] = {
            Role.CUSTOMER: {"customer_id": user_id},
            Role.SELLER: {"seller_id": user_id},
            Role.COURIER: {"courier_id": user_id},
            Role.ADMIN: {},
        }
        return await self.repository.list_orders(
            **scope[role], status=status, offset=(page - 1) * limit, limit=limit
        )
