"""
設定 — 環境変数から読み込む

イベントバスの挙動 (キュー上限・バッチ間隔・リトライ) と、
API プロセスが接続する外部サービスの URL をまとめる。
値は生成時に一度だけ読む。モジュールレベルのシングルトンは持たない。
"""

import os

from pydantic import BaseModel, ConfigDict, Field


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


class EventBusConfig(BaseModel):
    """イベントバスの設定 (時間はすべてミリ秒)"""

    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    max_queue_size: int = Field(default=1000, ge=1)
    batch_size: int = Field(default=10, ge=1)
    processing_interval_ms: int = Field(default=100, ge=0)
    retry_attempts: int = Field(default=3, ge=0)
    retry_delay_ms: int = Field(default=1000, ge=0)
    # 0 ならハンドラの締め切りなし
    handler_timeout_ms: int = Field(default=30_000, ge=0)
    error_sink_size: int = Field(default=100, ge=1)

    @classmethod
    def from_env(cls) -> "EventBusConfig":
        return cls(
            enabled=os.environ.get("EVENT_BUS_ENABLED", "true").lower() != "false",
            max_queue_size=_env_int("EVENT_BUS_MAX_QUEUE_SIZE", 1000),
            batch_size=_env_int("EVENT_BUS_BATCH_SIZE", 10),
            processing_interval_ms=_env_int("EVENT_BUS_PROCESSING_INTERVAL_MS", 100),
            retry_attempts=_env_int("EVENT_BUS_RETRY_ATTEMPTS", 3),
            retry_delay_ms=_env_int("EVENT_BUS_RETRY_DELAY_MS", 1000),
            handler_timeout_ms=_env_int("EVENT_BUS_HANDLER_TIMEOUT_MS", 30_000),
            error_sink_size=_env_int("EVENT_BUS_ERROR_SINK_SIZE", 100),
        )


class Settings(BaseModel):
    """API プロセスの接続先"""

    model_config = ConfigDict(frozen=True)

    database_url: str
    redis_url: str = "redis://localhost:6379"
    notification_service_url: str | None = None
    search_service_url: str | None = None
    reservation_ttl_seconds: int = Field(default=900, ge=1)

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.environ["DATABASE_URL"],
            redis_url=os.environ.get("REDIS_URL", "redis://localhost:6379"),
            notification_service_url=os.environ.get("NOTIFICATION_SERVICE_URL") or None,
            search_service_url=os.environ.get("SEARCH_SERVICE_URL") or None,
            reservation_ttl_seconds=_env_int("RESERVATION_TTL_SECONDS", 900),
        )
