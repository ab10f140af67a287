"""
Event Bus — プロセス内 Pub/Sub

外部ブローカーを使わないイベントバス。

  emit ──▶ [ 上限付き FIFO キュー ] ──▶ ディスパッチャ ──▶ ハンドラ (優先度順)
                                       (batch_size 件ずつ,
                                        バッチ間は processing_interval だけ譲る)

- emit はブロックせず、例外も投げない。キューが満杯なら破棄してログに残す。
- ハンドラは登録時に優先度順 (critical > high > normal > low) に並べておく。
- run_async=True (既定) のハンドラは切り離したタスクで実行し、待たない。
  run_async=False のハンドラは完了を待ってから次へ進む。
- critical イベントのハンドラが失敗したときだけ、そのハンドラを
  retry_delay * attempt 間隔で最大 retry_attempts 回再実行する。
"""

import asyncio
import inspect
import logging
import threading
from collections import deque
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import asdict, dataclass
from typing import Any

from ..config import EventBusConfig
from .detached import DetachedTasks, HandlerFailure
from .types import Event, EventMetadata, EventPayload, EventType, Priority

logger = logging.getLogger(__name__)

Handler = Callable[[Event], Awaitable[None] | None]


def _event_type(value: EventType | str) -> EventType | None:
    try:
        return EventType(value)
    except ValueError:
        logger.warning("Unknown event type %r, ignoring", value)
        return None


@dataclass(frozen=True)
class HandlerRegistration:
    handler: Handler
    priority: Priority = Priority.NORMAL
    run_async: bool = True

    @property
    def name(self) -> str:
        return getattr(self.handler, "__qualname__", repr(self.handler))


class EventBus:
    def __init__(self, config: EventBusConfig | None = None) -> None:
        self.config = config if config is not None else EventBusConfig.from_env()
        self.tasks = DetachedTasks(self.config.error_sink_size)
        self.dropped = 0

        self._handlers: dict[EventType, list[HandlerRegistration]] = {}
        self._queue: deque[Event] = deque()
        # emit は複数スレッドから呼ばれうる
        self._lock = threading.Lock()
        self._processing = False
        self._worker: asyncio.Task | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    # ── 登録 ─────────────────────────────────────

    def on(
        self,
        event_type: EventType | str,
        handler: Handler,
        *,
        priority: Priority | str = Priority.NORMAL,
        run_async: bool = True,
    ) -> None:
        """
        ハンドラを登録する。

        同じハンドラを二度登録すると二度呼ばれる。
        バスが無効なら何もしない。
        """
        if not self.config.enabled:
            return

        event_type = _event_type(event_type)
        if event_type is None:
            return
        try:
            priority = Priority(priority)
        except ValueError:
            logger.warning("Unknown handler priority %r for %s, using normal", priority, event_type.value)
            priority = Priority.NORMAL
        registration = HandlerRegistration(handler, priority, run_async)
        registrations = self._handlers.setdefault(event_type, [])
        registrations.append(registration)
        # 安定ソートなので同じ優先度は登録順のまま
        registrations.sort(key=lambda r: -r.priority.rank)

        logger.debug(
            "Event handler registered: %s (%s, priority=%s, async=%s)",
            event_type.value, registration.name, registration.priority.value, run_async,
        )

    def off(self, event_type: EventType | str, handler: Handler) -> None:
        """最初に一致したハンドラを1件だけ外す。なければ何もしない。"""
        event_type = _event_type(event_type)
        registrations = self._handlers.get(event_type) if event_type is not None else None
        if not registrations:
            return

        for index, registration in enumerate(registrations):
            # 関数は同一性で比較される。束縛メソッドは __self__ と __func__ が同じなら一致する
            if registration.handler == handler:
                del registrations[index]
                logger.debug("Event handler unregistered: %s (%s)", event_type.value, registration.name)
                break

        if not registrations:
            del self._handlers[event_type]

    def get_handlers(self, event_type: EventType | str) -> list[HandlerRegistration]:
        event_type = _event_type(event_type)
        if event_type is None:
            return []
        return list(self._handlers.get(event_type, ()))

    @property
    def registered_handler_count(self) -> int:
        return sum(len(regs) for regs in self._handlers.values())

    # ── 発行 ─────────────────────────────────────

    def emit(
        self,
        event_type: EventType | str,
        payload: EventPayload | Mapping[str, Any],
        metadata: EventMetadata | Mapping[str, Any] | None = None,
        *,
        priority: Priority | str = Priority.NORMAL,
    ) -> Event | None:
        """
        イベントをキューに積む。

        ブロックしない・例外を投げない。キューに積めたイベントを返し、
        無効化・ペイロード不正・キュー満杯で破棄した場合は None を返す。
        """
        if not self.config.enabled:
            return None

        try:
            event = Event.build(event_type, payload, metadata, priority)
        except (TypeError, ValueError, KeyError) as e:
            logger.error("Rejected malformed event %s: %s", event_type, e)
            return None

        with self._lock:
            if len(self._queue) >= self.config.max_queue_size:
                self.dropped += 1
                logger.warning(
                    "Event queue is full, dropping event %s (queue_size=%d)",
                    event.type.value, len(self._queue),
                )
                return None
            self._queue.append(event)

        self._wake()
        logger.debug("Event emitted: %s", event.type.value)
        return event

    def clear_queue(self) -> None:
        with self._lock:
            self._queue.clear()
        logger.info("Event queue cleared")

    # ── ライフサイクル ───────────────────────────

    async def start(self) -> None:
        """実行中のループに結びつけ、起動前に積まれたイベントを流し始める。"""
        self._loop = asyncio.get_running_loop()
        if not self.config.enabled:
            logger.info("Event bus disabled")
            return
        logger.info(
            "Event bus started (max_queue_size=%d, processing_interval_ms=%d)",
            self.config.max_queue_size, self.config.processing_interval_ms,
        )
        self._ensure_worker()

    async def drain(self) -> None:
        """キューが空になり、切り離したハンドラもすべて終わるまで待つ。"""
        while True:
            worker = self._worker
            if worker is not None:
                await worker
            elif self._queue:
                self._ensure_worker()
            elif self.tasks.in_flight:
                await self.tasks.wait()
            else:
                return

    async def close(self) -> None:
        worker = self._worker
        if worker is not None:
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass
        await self.tasks.cancel_all()
        logger.info("Event bus closed (%d events left in queue)", len(self._queue))

    def get_status(self) -> dict[str, Any]:
        return {
            "enabled": self.config.enabled,
            "queue_size": len(self._queue),
            "registered_handler_count": self.registered_handler_count,
            "is_processing": self._processing,
            "in_flight": self.tasks.in_flight,
            "failed": self.tasks.failed,
            "dropped": self.dropped,
            "recent_failures": [asdict(f) for f in self.tasks.failures],
            "config": self.config.model_dump(),
        }

    # ── ディスパッチ ─────────────────────────────

    def _wake(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is not None and (self._loop is None or self._loop.is_closed()):
            self._loop = loop

        if loop is not None and loop is self._loop:
            self._ensure_worker()
        elif self._loop is not None and self._loop.is_running():
            self._loop.call_soon_threadsafe(self._ensure_worker)
        # ループがまだ無ければ start() / drain() が拾う

    def _ensure_worker(self) -> None:
        if self._processing or not self._queue:
            return
        self._processing = True
        self._worker = asyncio.get_running_loop().create_task(
            self._process_queue(), name="event-bus-dispatcher"
        )

    def _pop_batch(self) -> list[Event]:
        with self._lock:
            size = min(self.config.batch_size, len(self._queue))
            return [self._queue.popleft() for _ in range(size)]

    async def _process_queue(self) -> None:
        try:
            while True:
                batch = self._pop_batch()
                if not batch:
                    break
                for event in batch:
                    await self._process_event(event)
                if self._queue:
                    await asyncio.sleep(self.config.processing_interval_ms / 1000)
        except Exception:
            logger.exception("Event queue processing failed")
        finally:
            self._processing = False
            self._worker = None

    async def _process_event(self, event: Event) -> None:
        registrations = list(self._handlers.get(event.type, ()))
        if not registrations:
            logger.debug("No handlers registered for event %s", event.type.value)
            return

        for registration in registrations:
            if registration.run_async:
                self.tasks.spawn(
                    self._execute(registration, event),
                    name=f"{event.type.value}:{registration.name}",
                )
            else:
                await self._execute(registration, event)

    async def _invoke(self, registration: HandlerRegistration, event: Event) -> None:
        result = registration.handler(event)
        if inspect.isawaitable(result):
            timeout_ms = self.config.handler_timeout_ms
            if timeout_ms:
                await asyncio.wait_for(result, timeout_ms / 1000)
            else:
                await result

    async def _execute(self, registration: HandlerRegistration, event: Event) -> None:
        try:
            await self._invoke(registration, event)
            return
        except Exception as e:
            logger.error(
                "Event handler %s failed for %s: %r",
                registration.name, event.type.value, e,
            )
            if event.priority is not Priority.CRITICAL:
                self.tasks.record_failure(
                    HandlerFailure(event.type.value, registration.name, repr(e), attempts=1)
                )
                return

        await self._retry(registration, event)

    async def _retry(self, registration: HandlerRegistration, event: Event) -> None:
        attempts = self.config.retry_attempts
        last_error = ""
        for attempt in range(1, attempts + 1):
            await asyncio.sleep(self.config.retry_delay_ms * attempt / 1000)
            try:
                await self._invoke(registration, event)
            except Exception as e:
                last_error = repr(e)
                logger.warning(
                    "Event handler %s retry %d/%d failed for %s",
                    registration.name, attempt, attempts, event.type.value,
                )
                continue
            logger.info(
                "Event handler %s retry succeeded for %s (attempt %d)",
                registration.name, event.type.value, attempt,
            )
            return

        logger.error(
            "Event handler %s retry exhausted for %s after %d attempts",
            registration.name, event.type.value, attempts,
        )
        self.tasks.record_failure(
            HandlerFailure(event.type.value, registration.name, last_error, attempts=attempts + 1)
        )
