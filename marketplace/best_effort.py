"""
ベストエフォートな副作用の失敗を閉じ込める

    with best_effort(logger, "send order confirmation", order_id=order.id):
        await notifier.send_order_confirmation(order)

ブロック内の例外はコンテキスト付きでログに残し、呼び出し元には伝えない。
キャンセル (BaseException) は閉じ込めない。
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any


@contextmanager
def best_effort(logger: logging.Logger, action: str, **context: Any) -> Iterator[None]:
    try:
        yield
    except Exception:
        details = ", ".join(f"{k}={v}" for k, v in context.items())
        logger.exception("Failed to %s (%s)", action, details)
