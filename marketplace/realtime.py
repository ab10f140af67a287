"""
Realtime Channel — Redis Pub/Sub でのリアルタイム配信

宛先ユーザーがあれば realtime:user:{user_id}、なければ realtime:broadcast に
JSON で publish する。WebSocket ゲートウェイなどがこのチャネルを購読して
クライアントへ中継する。

Redis Pub/Sub は fire-and-forget。購読者がいなければメッセージは消える。
"""

import json
import logging
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

import redis.asyncio as aioredis

logger = logging.getLogger(__name__)

BROADCAST_CHANNEL = "realtime:broadcast"


def user_channel(user_id: str) -> str:
    return f"realtime:user:{user_id}"


class RedisRealtimeChannel:
    def __init__(self, redis: aioredis.Redis) -> None:
        self.redis = redis

    async def emit_realtime_event(
        self,
        channel_key: str,
        payload: Mapping[str, Any],
        target_user_id: str | None = None,
    ) -> None:
        channel = user_channel(target_user_id) if target_user_id else BROADCAST_CHANNEL
        message = json.dumps(
            {
                "event": channel_key,
                "data": dict(payload),
                "sent_at": datetime.now(timezone.utc).isoformat(),
            },
            default=str,
        )
        receivers = await self.redis.publish(channel, message)
        logger.debug("Realtime event %s published to %s (%d receivers)", channel_key, channel, receivers)
