"""
Delivery Queue — in-memory FIFO of sends attempted while the connection was down.

Items are consumed by the DeliveryService drain loop once the connection is
ready again. Nothing here is persisted; a crash loses the queue.

Item lifecycle:
  enqueue → dequeue_all (stale items dropped) → delivered
                                               → retry() (retry_count+1, front of queue)
                                               → dropped (retry budget exhausted)
"""
from __future__ import annotations

import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional, Union

import structlog

from models.schemas import DeliveryOptions, ItemKind, MediaPayload

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Item Model
# ──────────────────────────────────────────────────────────────

@dataclass
class QueuedItem:
    """A pending unit of outbound work."""
    kind: ItemKind
    recipient: str
    payload: Union[str, MediaPayload]
    caption: Optional[str] = None
    enqueued_at: float = field(default_factory=time.monotonic)
    options: DeliveryOptions = field(default_factory=DeliveryOptions)
    item_id: str = ""

    def __post_init__(self):
        if not self.item_id:
            self.item_id = f"item_{uuid.uuid4().hex[:12]}"

    @classmethod
    def text(cls, recipient: str, body: str, options: Optional[DeliveryOptions] = None,
             enqueued_at: Optional[float] = None) -> QueuedItem:
        item = cls(kind=ItemKind.TEXT, recipient=recipient, payload=body,
                   options=options or DeliveryOptions())
        if enqueued_at is not None:
            item.enqueued_at = enqueued_at
        return item

    @classmethod
    def media(cls, recipient: str, media: MediaPayload, caption: Optional[str] = None,
              options: Optional[DeliveryOptions] = None,
              enqueued_at: Optional[float] = None) -> QueuedItem:
        item = cls(kind=ItemKind.MEDIA, recipient=recipient, payload=media, caption=caption,
                   options=options or DeliveryOptions())
        if enqueued_at is not None:
            item.enqueued_at = enqueued_at
        return item

    def age(self, now: float) -> float:
        return now - self.enqueued_at


# ──────────────────────────────────────────────────────────────
#  Queue
# ──────────────────────────────────────────────────────────────

class DeliveryQueue:
    """
    FIFO buffer across all recipients, no per-recipient priority.

    Not safe for concurrent drains: the owner guarantees a single drain loop.
    """

    def __init__(
        self,
        stale_after_seconds: float = 300.0,
        max_retries: int = 3,
        clock: Callable[[], float] = time.monotonic,
        on_drop: Optional[Callable[[QueuedItem, str], None]] = None,
    ):
        self.stale_after = stale_after_seconds
        self.max_retries = max_retries
        self._clock = clock
        self._on_drop = on_drop
        self._items: deque[QueuedItem] = deque()

    def now(self) -> float:
        return self._clock()

    def enqueue(self, item: QueuedItem) -> None:
        self._items.append(item)
        logger.info("item_queued",
                    item_id=item.item_id,
                    kind=item.kind.value,
                    recipient=item.recipient,
                    queue_length=len(self._items))

    def dequeue_all(self) -> list[QueuedItem]:
        """Remove and return every non-stale item, oldest first."""
        now = self._clock()
        fresh: list[QueuedItem] = []
        while self._items:
            item = self._items.popleft()
            if item.age(now) > self.stale_after:
                logger.warning("stale_item_dropped",
                               item_id=item.item_id,
                               recipient=item.recipient,
                               age_seconds=round(item.age(now), 1))
                self._drop(item, "stale")
                continue
            fresh.append(item)
        return fresh

    def requeue(self, items: Iterable[QueuedItem]) -> None:
        """Put items back at the front, preserving their relative order."""
        self._items.extendleft(reversed(list(items)))

    def retry(self, item: QueuedItem) -> bool:
        """
        Return an item to the front with retry_count+1.
        Items that would exceed max_retries are dropped instead.
        """
        if item.options.retry_count + 1 > self.max_retries:
            logger.warning("item_retry_budget_exhausted",
                           item_id=item.item_id,
                           recipient=item.recipient,
                           retry_count=item.options.retry_count)
            self._drop(item, "retries_exhausted")
            return False
        item.options = item.options.next_attempt()
        self._items.appendleft(item)
        return True

    def peek(self, count: int = 10) -> list[QueuedItem]:
        return list(self._items)[:count]

    def clear(self) -> int:
        dropped = len(self._items)
        self._items.clear()
        return dropped

    def length(self) -> int:
        return len(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def _drop(self, item: QueuedItem, reason: str) -> None:
        if self._on_drop:
            self._on_drop(item, reason)
