"""
Notifier — 通知サービス (HTTP) 経由の注文メール

メール本文の組み立てと送信は通知サービス側の責務。
ここでは注文の要約を POST するだけ。
URL が未設定なら送らずにログだけ残す。
"""

import logging
from typing import Any

import httpx

from .order.aggregate import Order

logger = logging.getLogger(__name__)


def _order_summary(order: Order) -> dict[str, Any]:
    return {
        "order_id": order.id,
        "customer_id": order.customer_id,
        "seller_id": order.seller_id,
        "status": order.status.value,
        "total_amount": str(order.total_amount),
        "discount_amount": str(order.discount_amount),
        "items": [
            {"product_id": i.product_id, "quantity": i.quantity, "price": str(i.price)}
            for i in order.items
        ],
    }


class HttpNotifier:
    def __init__(self, base_url: str | None, client: httpx.AsyncClient | None = None) -> None:
        self.base_url = base_url.rstrip("/") if base_url else None
        self.client = client or httpx.AsyncClient(timeout=10.0)

    async def _post(self, path: str, body: dict[str, Any]) -> None:
        if self.base_url is None:
            logger.info("Notification service not configured, skipping %s", path)
            return
        resp = await self.client.post(f"{self.base_url}{path}", json=body)
        resp.raise_for_status()

    async def send_order_confirmation(self, order: Order) -> None:
        await self._post("/emails/order-confirmation", _order_summary(order))
        logger.info("Order confirmation requested: order=%s", order.id)

    async def send_new_order_email_to_seller(self, order: Order, seller_email: str) -> None:
        body = _order_summary(order)
        body["seller_email"] = seller_email
        await self._post("/emails/new-order-seller", body)
        logger.info("Seller new-order email requested: order=%s", order.id)

    async def aclose(self) -> None:
        await self.client.aclose()
