"""
Cache Invalidator — Redis キャッシュの無効化

キャッシュキー:
    product:{id} / productDetails:{id} / products:{params}
    category:{id} / categories:all
    user:{id} / order:{id} / orders:{user_id}:{params}
    recommendations:{type}[:user:{user_id}]

`*` を含むキーは SCAN でパターン一致したものをまとめて削除する。
"""

import logging
from collections.abc import Iterable, Mapping
from typing import Any

import redis.asyncio as aioredis

logger = logging.getLogger(__name__)


# ── キー ─────────────────────────────────────────


def product_key(product_id: str) -> str:
    return f"product:{product_id}"


def product_details_key(product_id: str) -> str:
    return f"productDetails:{product_id}"


def products_key(params: str = "") -> str:
    return f"products:{params}"


def category_key(category_id: str) -> str:
    return f"category:{category_id}"


CATEGORIES_KEY = "categories:all"


def user_key(user_id: str) -> str:
    return f"user:{user_id}"


def order_key(order_id: str) -> str:
    return f"order:{order_id}"


def orders_key(user_id: str, params: str = "") -> str:
    return f"orders:{user_id}:{params}" if params else f"orders:{user_id}"


def recommendations_key(kind: str, user_id: str | None = None) -> str:
    key = f"recommendations:{kind}"
    if user_id:
        key += f":user:{user_id}"
    return key


# ── 無効化 ───────────────────────────────────────


class RedisCacheInvalidator:
    def __init__(self, redis: aioredis.Redis) -> None:
        self.redis = redis

    async def delete_many(self, keys: Iterable[str]) -> int:
        exact: list[str] = []
        deleted = 0
        for key in keys:
            if "*" not in key:
                exact.append(key)
                continue
            matched = [k async for k in self.redis.scan_iter(match=key, count=500)]
            if matched:
                deleted += await self.redis.delete(*matched)
        if exact:
            deleted += await self.redis.delete(*exact)
        return deleted

    async def invalidate_product_cache(self, product_id: str) -> None:
        deleted = await self.delete_many(
            [
                product_key(product_id),
                product_details_key(product_id),
                products_key() + "*",
                product_key("popular:*"),
                recommendations_key("*") + "*",
            ]
        )
        logger.debug("Product cache invalidated: %s (%d keys)", product_id, deleted)

    async def invalidate_category_cache(self, category_id: str) -> None:
        deleted = await self.delete_many(
            [
                category_key(category_id),
                CATEGORIES_KEY,
                products_key() + "*",
            ]
        )
        logger.debug("Category cache invalidated: %s (%d keys)", category_id, deleted)

    async def invalidate_order_cache(self, order_id: str, user_id: str | None = None) -> None:
        keys = [order_key(order_id)]
        if user_id:
            keys.append(orders_key(user_id) + "*")
        deleted = await self.delete_many(keys)
        logger.debug("Order cache invalidated: %s user=%s (%d keys)", order_id, user_id, deleted)

    async def invalidate_user_cache(self, user_id: str) -> None:
        deleted = await self.delete_many(
            [
                user_key(user_id),
                orders_key(user_id) + "*",
                recommendations_key("*", user_id) + "*",
            ]
        )
        logger.debug("User cache invalidated: %s (%d keys)", user_id, deleted)

    async def invalidate_related_caches(
        self,
        entity_kind: str,
        entity_id: str,
        extra: Mapping[str, Any] | None = None,
    ) -> None:
        extra = extra or {}
        if entity_kind == "product":
            await self.invalidate_product_cache(entity_id)
            category_id = extra.get("category_id")
            old_category_id = extra.get("old_category_id")
            if category_id:
                await self.invalidate_category_cache(category_id)
            if old_category_id and old_category_id != category_id:
                await self.invalidate_category_cache(old_category_id)
        elif entity_kind == "category":
            await self.invalidate_category_cache(entity_id)
        elif entity_kind == "order":
            await self.invalidate_order_cache(entity_id, extra.get("user_id"))
        elif entity_kind == "user":
            await self.invalidate_user_cache(entity_id)
        else:
            logger.warning("Unknown entity kind for cache invalidation: %s", entity_kind)
