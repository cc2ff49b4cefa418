from __future__ import annotations
import asyncio
import logging
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence

from alerts import AlertPayload, now_ms
from scanner_config import Constants, TIMEFRAMES

logger = logging.getLogger("kiwi_scanner.notifications")


@dataclass
class Notification:
    id: str
    symbol: str
    timeframe: str
    type: str
    price: float
    body: Optional[str]
    timestamp: int
    read: bool = False


def make_notification(payload: AlertPayload, now: Optional[int] = None) -> Notification:
    return Notification(
        id=uuid.uuid4().hex,
        symbol=payload.symbol,
        timeframe=payload.timeframe,
        type=payload.type,
        price=payload.price,
        body=payload.body,
        timestamp=now_ms() if now is None else now,
    )


class NotificationQueue:
    """
    One FIFO per timeframe feeding a single active slot.

    The slot is refilled from the first non-empty queue in timeframe order,
    not round-robin, so a busy short timeframe can starve a long one.
    """

    def __init__(self, timeframes: Sequence[str] = TIMEFRAMES):
        self._queues: Dict[str, Deque[Notification]] = {tf: deque() for tf in timeframes}
        self.active: Optional[Notification] = None

    def enqueue(self, notification: Notification) -> None:
        self._queues.setdefault(notification.timeframe, deque()).append(notification)

    def dequeue_next(self) -> Optional[Notification]:
        for queue in self._queues.values():
            if queue:
                return queue.popleft()
        return None

    def activate_next(self) -> Optional[Notification]:
        """Fill the active slot if it is empty; returns whatever is active afterwards."""
        if self.active is None:
            self.active = self.dequeue_next()
        return self.active

    def complete_active(self) -> Optional[Notification]:
        done, self.active = self.active, None
        return done

    def pending_count(self, timeframe: Optional[str] = None) -> int:
        if timeframe is not None:
            return len(self._queues.get(timeframe, ()))
        return sum(len(q) for q in self._queues.values())

    def __len__(self) -> int:
        return self.pending_count()


class NotificationLog:
    """Bounded most-recent-first history of delivered notifications."""

    def __init__(self, limit: int = Constants.NOTIFICATION_LIMIT):
        self.limit = limit
        self._items: Deque[Notification] = deque(maxlen=limit)

    def add(self, notification: Notification) -> None:
        self._items.appendleft(notification)

    @property
    def items(self) -> List[Notification]:
        return list(self._items)

    def mark_all_read(self) -> None:
        for n in self._items:
            n.read = True

    def unread_count(self) -> int:
        return sum(1 for n in self._items if not n.read)

    def clear(self) -> None:
        self._items.clear()

    def __len__(self) -> int:
        return len(self._items)


class UpdateBatcher:
    """
    Coalesces keyed display updates and applies them once per window from a
    ticker task.  A lost or failed window only delays visibility.
    """

    def __init__(self, apply: Callable[[Dict[str, Any]], None], window: float = Constants.UPDATE_BATCH_WINDOW_SEC):
        self.apply = apply
        self.window = window
        self._pending: Dict[str, Any] = {}
        self._task: Optional[asyncio.Task] = None
        self.batches_applied = 0

    def submit(self, key: str, value: Any) -> None:
        self._pending[key] = value

    def flush(self) -> int:
        if not self._pending:
            return 0
        batch, self._pending = self._pending, {}
        try:
            self.apply(batch)
        except Exception as e:
            logger.error(f"Batched update of {len(batch)} keys failed: {e!r}")
            return 0
        self.batches_applied += 1
        return len(batch)

    async def _ticker(self) -> None:
        while True:
            await asyncio.sleep(self.window)
            self.flush()

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._ticker())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self.flush()
