from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Any


class LogBroker:
    """
    Fan-out message broker.

    Each subscriber gets its own asyncio.Queue bound to the event loop it
    connected from. publish() may be called from any thread (log handlers,
    the browser worker); if a subscriber is too slow, its oldest message is
    dropped.
    """

    def __init__(self, max_queue_size: int = 1000) -> None:
        self._subscribers: dict[asyncio.Queue[str], asyncio.AbstractEventLoop] = {}
        self._max_queue_size = max_queue_size
        self._lock = asyncio.Lock()

    async def connect(self) -> asyncio.Queue[str]:
        q: asyncio.Queue[str] = asyncio.Queue(maxsize=self._max_queue_size)
        async with self._lock:
            self._subscribers[q] = asyncio.get_running_loop()
        return q

    async def disconnect(self, q: asyncio.Queue[str]) -> None:
        async with self._lock:
            self._subscribers.pop(q, None)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, message: str) -> None:
        for q, loop in tuple(self._subscribers.items()):
            if loop.is_closed():
                continue
            with contextlib.suppress(RuntimeError):
                loop.call_soon_threadsafe(self._offer, q, message)

    def publish_json(self, payload: dict[str, Any]) -> None:
        self.publish(json.dumps(payload, ensure_ascii=False))

    @staticmethod
    def _offer(q: asyncio.Queue[str], message: str) -> None:
        try:
            q.put_nowait(message)
        except asyncio.QueueFull:
            with contextlib.suppress(asyncio.QueueEmpty):
                q.get_nowait()
            with contextlib.suppress(asyncio.QueueFull):
                q.put_nowait(message)


class BrokerLogHandler(logging.Handler):
    """Forward log records to a :class:`LogBroker` as ``{"type": "log"}`` messages."""

    def __init__(self, target: LogBroker, level: int = logging.INFO) -> None:
        super().__init__(level)
        self.target = target

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.target.publish_json(
                {
                    "type": "log",
                    "level": record.levelname,
                    "logger": record.name,
                    "msg": record.getMessage(),
                },
            )
        except Exception:  # noqa: BLE001 - logging must never raise
            self.handleError(record)


# Singleton broker
broker = LogBroker()
