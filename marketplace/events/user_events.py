"""
User Events — ユーザーイベントの発行と購読
"""

import logging
from collections.abc import Iterable

from ..best_effort import best_effort
from ..collaborators import CacheInvalidator, RealtimeChannel
from .bus import EventBus
from .types import (
    Event,
    EventMetadata,
    EventType,
    Priority,
    UserDeleted,
    UserLogin,
    UserLogout,
    UserNotification,
    UserRegistered,
    UserUpdated,
)

logger = logging.getLogger(__name__)

_SOURCE = "user-service"


# ── 発行 ─────────────────────────────────────────


def emit_user_registered(
    bus: EventBus, user_id: str, email: str, role: str, name: str | None = None
) -> Event | None:
    payload = UserRegistered(user_id=user_id, email=email, role=role, name=name)
    return bus.emit(
        EventType.USER_REGISTERED,
        payload,
        EventMetadata(user_id=user_id, source=_SOURCE),
        priority=Priority.NORMAL,
    )


def emit_user_updated(bus: EventBus, user_id: str, changed_fields: Iterable[str] = ()) -> Event | None:
    payload = UserUpdated(user_id=user_id, changed_fields=tuple(changed_fields))
    return bus.emit(
        EventType.USER_UPDATED,
        payload,
        EventMetadata(user_id=user_id, source=_SOURCE),
        priority=Priority.NORMAL,
    )


def emit_user_deleted(bus: EventBus, user_id: str, admin_id: str | None = None) -> Event | None:
    return bus.emit(
        EventType.USER_DELETED,
        UserDeleted(user_id=user_id),
        EventMetadata(user_id=admin_id or user_id, source=_SOURCE),
        priority=Priority.HIGH,
    )


def emit_user_login(
    bus: EventBus,
    user_id: str,
    ip: str | None = None,
    user_agent: str | None = None,
    session_id: str | None = None,
) -> Event | None:
    return bus.emit(
        EventType.USER_LOGIN,
        UserLogin(user_id=user_id, ip=ip, user_agent=user_agent),
        EventMetadata(user_id=user_id, session_id=session_id, source=_SOURCE),
        priority=Priority.LOW,
    )


def emit_user_logout(bus: EventBus, user_id: str, session_id: str | None = None) -> Event | None:
    return bus.emit(
        EventType.USER_LOGOUT,
        UserLogout(user_id=user_id),
        EventMetadata(user_id=user_id, session_id=session_id, source=_SOURCE),
        priority=Priority.LOW,
    )


def emit_user_notification(bus: EventBus, payload: UserNotification) -> Event | None:
    return bus.emit(
        EventType.USER_NOTIFICATION,
        payload,
        EventMetadata(user_id=payload.admin_id or payload.user_id, source=payload.source),
        priority=Priority.HIGH,
    )


# ── 購読 ─────────────────────────────────────────


def register_user_event_handlers(
    bus: EventBus, cache: CacheInvalidator, realtime: RealtimeChannel
) -> None:
    async def on_user_registered(event: Event) -> None:
        p: UserRegistered = event.payload
        logger.info("User registered: %s (%s)", p.user_id, p.role)
        with best_effort(logger, "invalidate user cache", user_id=p.user_id):
            await cache.invalidate_user_cache(p.user_id)

    async def on_user_changed(event: Event) -> None:
        user_id = event.payload.user_id
        with best_effort(logger, "invalidate user caches", user_id=user_id):
            await cache.invalidate_user_cache(user_id)
            await cache.invalidate_related_caches("user", user_id)

    async def on_user_notification(event: Event) -> None:
        p: UserNotification = event.payload
        with best_effort(logger, "deliver user notification", user_id=p.user_id):
            await realtime.emit_realtime_event(
                "user.notification",
                {
                    "title": p.title,
                    "message": p.message,
                    "type": p.type,
                    "source": p.source,
                    "timestamp": event.metadata.timestamp.isoformat(),
                },
                p.user_id,
            )

    def on_user_activity(event: Event) -> None:
        logger.debug("User activity: %s user=%s", event.type.value, event.payload.user_id)

    bus.on(EventType.USER_REGISTERED, on_user_registered, priority=Priority.NORMAL)
    bus.on(EventType.USER_UPDATED, on_user_changed, priority=Priority.NORMAL)
    bus.on(EventType.USER_DELETED, on_user_changed, priority=Priority.HIGH)
    bus.on(EventType.USER_NOTIFICATION, on_user_notification, priority=Priority.HIGH)
    bus.on(EventType.USER_LOGIN, on_user_activity, priority=Priority.LOW, run_async=False)
    bus.on(EventType.USER_LOGOUT, on_user_activity, priority=Priority.LOW, run_async=False)
    logger.info("User event handlers registered")
