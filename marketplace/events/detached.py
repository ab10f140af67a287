"""
Detached tasks — 待たずに走らせるハンドラの管理

非同期ハンドラは発行元・ディスパッチループを待たせないよう
asyncio タスクとして切り離して実行する。
切り離したタスクは集合で追跡し、失敗はエラーシンク(上限付き)に記録する。
ログに出すだけで消えてしまう失敗を、件数と直近の内容として観測できる。
"""

import asyncio
import logging
from collections import deque
from collections.abc import Coroutine
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HandlerFailure:
    event_type: str
    handler: str
    error: str
    attempts: int
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class DetachedTasks:
    """切り離されたタスクの集合とエラーシンク"""

    def __init__(self, sink_size: int = 100) -> None:
        self._tasks: set[asyncio.Task] = set()
        self.failures: deque[HandlerFailure] = deque(maxlen=sink_size)
        self.spawned = 0
        self.failed = 0

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str | None = None) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        self.spawned += 1
        task.add_done_callback(self._on_done)
        return task

    def record_failure(self, failure: HandlerFailure) -> None:
        self.failed += 1
        self.failures.append(failure)

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            # ハンドラ実行側で捕捉しきれなかった失敗
            logger.error("Detached task %s crashed: %r", task.get_name(), exc)
            self.record_failure(
                HandlerFailure(
                    event_type="unknown",
                    handler=task.get_name(),
                    error=repr(exc),
                    attempts=1,
                )
            )

    async def wait(self) -> None:
        """実行中のタスクがなくなるまで待つ (待機中に生まれたタスクも含む)"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel_all(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
