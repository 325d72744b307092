"""In-process change feed.

Committed writes are published as ChangeRecords; subscribers filter by table and
an optional predicate. Delivery is at-least-once, so consumers that care wrap
their handler in DedupConsumer.
"""
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Set, Tuple
import logging
import queue
import threading

logger = logging.getLogger(__name__)

_CLOSED = object()


@dataclass(frozen=True)
class ChangeRecord:
    table: str
    entity_id: Any
    version: int
    payload: Dict[str, Any] = field(default_factory=dict, compare=False)


Predicate = Callable[[ChangeRecord], bool]


class Subscription:
    def __init__(self, feed: "ChangeFeed", table: str, predicate: Optional[Predicate] = None):
        self._feed = feed
        self.table = table
        self.predicate = predicate
        self._queue: "queue.Queue" = queue.Queue()
        self.closed = False

    def wants(self, record: ChangeRecord) -> bool:
        if self.closed or record.table != self.table:
            return False
        return self.predicate is None or bool(self.predicate(record))

    def _put(self, item) -> None:
        self._queue.put(item)

    def get(self, timeout: Optional[float] = None) -> Optional[ChangeRecord]:
        """Next record, or None on timeout or after close."""
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        return None if item is _CLOSED else item

    def drain(self) -> List[ChangeRecord]:
        records = []
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return records
            if item is _CLOSED:
                return records
            records.append(item)

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._feed._remove(self)
            self._put(_CLOSED)

    def __iter__(self) -> Iterator[ChangeRecord]:
        while True:
            item = self._queue.get()
            if item is _CLOSED:
                return
            yield item


class ChangeFeed:
    def __init__(self):
        self._lock = threading.Lock()
        self._subscriptions: List[Subscription] = []

    def subscribe(self, table: str, predicate: Optional[Predicate] = None) -> Subscription:
        sub = Subscription(self, table, predicate)
        with self._lock:
            self._subscriptions.append(sub)
        logger.debug("New subscription on %s", table)
        return sub

    def _remove(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self._subscriptions:
                self._subscriptions.remove(sub)

    def publish(self, record: ChangeRecord) -> int:
        with self._lock:
            targets = list(self._subscriptions)
        delivered = 0
        for sub in targets:
            try:
                if sub.wants(record):
                    sub._put(record)
                    delivered += 1
            except Exception:
                logger.exception("Subscription predicate failed for %s:%s", record.table, record.entity_id)
        return delivered

    def close(self) -> None:
        with self._lock:
            targets = list(self._subscriptions)
        for sub in targets:
            sub.close()


class DedupConsumer:
    """Calls ``handler`` once per (table, entity_id, version)."""

    def __init__(self, handler: Callable[[ChangeRecord], None]):
        self.handler = handler
        self._seen: Set[Tuple[str, Any, int]] = set()

    def __call__(self, record: ChangeRecord) -> bool:
        key = (record.table, record.entity_id, record.version)
        if key in self._seen:
            return False
        self._seen.add(key)
        self.handler(record)
        return True
