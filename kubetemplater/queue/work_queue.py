"""Thread-safe priority work queue with deduplication and bounded retries.

Items are ordered by priority (descending) and then by the time they become
ready (ascending) in a single binary heap, so delayed retries need no separate
timer structure. Each identity occupies at most one slot: enqueueing an
identity that is already waiting only raises its priority.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from kubetemplater.core.metrics import ObservabilityContext
from kubetemplater.exceptions import QueueClosedError
from kubetemplater.models.template import NamespacedName

logger = logging.getLogger(__name__)

# Default retry configuration values
DEFAULT_MAX_RETRIES = 5
DEFAULT_INITIAL_RETRY_DELAY = 1.0  # seconds
DEFAULT_MAX_RETRY_DELAY = 300.0  # seconds
DEFAULT_MAX_RETRY_CYCLES = 3

# 2**30 is already far beyond any sensible max delay
MAX_BACKOFF_EXPONENT = 30


@dataclass(eq=False)
class WorkItem:
    """A unit of reconciliation work."""

    identity: NamespacedName
    priority: int = 0
    retry_count: int = 0
    retry_cycle: int = 0
    enqueued_at: float = 0.0
    scheduled_at: float = 0.0
    last_delay: float = 0.0
    index: int = field(default=-1, repr=False)


@dataclass
class QueueMetrics:
    """Point-in-time snapshot of queue counters."""

    enqueue_count: int = 0
    dequeue_count: int = 0
    retry_count: int = 0
    dropped_count: int = 0
    current_depth: int = 0
    processing_items: int = 0


class WorkQueue:
    """Priority queue with delayed readiness, retry backoff and cycle capping."""

    def __init__(
        self,
        max_retries: int = DEFAULT_MAX_RETRIES,
        initial_retry_delay: float = DEFAULT_INITIAL_RETRY_DELAY,
        max_retry_delay: float = DEFAULT_MAX_RETRY_DELAY,
        max_retry_cycles: int = DEFAULT_MAX_RETRY_CYCLES,
        observability: Optional[ObservabilityContext] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_retries = max_retries
        self.initial_retry_delay = initial_retry_delay
        self.max_retry_delay = max_retry_delay
        self.max_retry_cycles = max_retry_cycles  # 0 = unlimited
        self.observability = observability
        self._clock = clock

        self._lock = threading.Lock()
        self._cond = threading.Condition(self._lock)
        self._heap: List[WorkItem] = []
        self._items: Dict[NamespacedName, WorkItem] = {}
        self._shutdown = False

        self._metrics_lock = threading.Lock()
        self._metrics = QueueMetrics()

    @classmethod
    def from_settings(cls, settings, observability=None) -> "WorkQueue":
        return cls(
            max_retries=settings.queue_max_retries,
            initial_retry_delay=settings.queue_initial_retry_delay,
            max_retry_delay=settings.queue_max_retry_delay,
            max_retry_cycles=settings.queue_max_retry_cycles,
            observability=observability,
        )

    # ------------------------------------------------------------------
    # Producer / consumer API
    # ------------------------------------------------------------------

    def enqueue(self, identity: NamespacedName, priority: int = 0) -> None:
        """Add an identity, or raise the priority of the waiting entry.

        Raises QueueClosedError once the queue has been shut down.
        """
        with self._cond:
            if self._shutdown:
                raise QueueClosedError(f"Cannot enqueue {identity}: work queue is shut down")

            existing = self._items.get(identity)
            if existing is not None:
                if priority > existing.priority:
                    existing.priority = priority
                    self._fix(existing.index)
                    logger.debug(f"Updated priority of {identity} to {priority}")
                    self._cond.notify()
                else:
                    logger.debug(
                        f"Skipping duplicate enqueue of {identity} "
                        f"(retry count {existing.retry_count})"
                    )
                return

            now = self._clock()
            item = WorkItem(
                identity=identity,
                priority=priority,
                enqueued_at=now,
                scheduled_at=now,
            )
            self._push(item)

            with self._metrics_lock:
                self._metrics.enqueue_count += 1
                self._metrics.current_depth = len(self._heap)
            self._observe_enqueue()

            logger.debug(
                f"Enqueued {identity} with priority {priority}, depth {len(self._heap)}"
            )
            self._cond.notify()

    def dequeue(self, timeout: Optional[float] = None) -> Tuple[Optional[WorkItem], bool]:
        """Block until an item is ready or the queue shuts down.

        Returns ``(item, True)`` for a ready item and ``(None, False)`` once the
        queue is closed. With a ``timeout``, ``(None, True)`` is returned when
        it elapses before anything becomes ready.
        """
        deadline = None if timeout is None else self._clock() + timeout

        with self._cond:
            while True:
                if self._shutdown:
                    return None, False

                now = self._clock()
                wait: Optional[float] = None

                if self._heap:
                    head = self._heap[0]
                    if head.scheduled_at <= now:
                        self._remove(0)
                        del self._items[head.identity]

                        with self._metrics_lock:
                            self._metrics.dequeue_count += 1
                            self._metrics.current_depth = len(self._heap)
                            self._metrics.processing_items += 1
                        self._observe_dequeue()
                        return head, True

                    # Head is a delayed retry: sleep until it is due, but any
                    # enqueue/requeue wakes us to re-check the head.
                    wait = head.scheduled_at - now

                if deadline is not None:
                    remaining = deadline - now
                    if remaining <= 0:
                        return None, True
                    wait = remaining if wait is None else min(wait, remaining)

                self._cond.wait(wait)

    def requeue(self, item: WorkItem, cause: Optional[BaseException] = None) -> bool:
        """Put a failed item back with exponential backoff.

        Returns False when the item was dropped because it exhausted its
        retry cycles; the caller owns marking the template paused.
        """
        with self._cond:
            item.retry_count += 1

            with self._metrics_lock:
                self._metrics.processing_items = max(0, self._metrics.processing_items - 1)
            if self.observability:
                self.observability.queue_processing.dec()

            if item.retry_count > self.max_retries:
                if self.max_retry_cycles > 0 and item.retry_cycle >= self.max_retry_cycles:
                    logger.error(
                        f"Maximum retry cycles exceeded for {item.identity}, giving up "
                        f"(cycles {item.retry_cycle}/{self.max_retry_cycles}): {cause}"
                    )
                    with self._metrics_lock:
                        self._metrics.dropped_count += 1
                    if self.observability:
                        self.observability.queue_dropped.inc()
                    return False

                # Start a fresh cycle after a cooldown
                item.retry_cycle += 1
                item.retry_count = 0
                delay = self.max_retry_delay
                logger.info(
                    f"Max retries exceeded for {item.identity}, starting cycle "
                    f"{item.retry_cycle} after {delay}s cooldown: {cause}"
                )
            else:
                delay = self.backoff_delay(item.retry_count)

            item.last_delay = delay
            item.scheduled_at = self._clock() + delay

            existing = self._items.get(item.identity)
            if existing is item:
                self._fix(item.index)
            else:
                if existing is not None:
                    # Re-enqueued while in flight: keep a single slot at the
                    # highest requested priority.
                    item.priority = max(item.priority, existing.priority)
                    self._remove(existing.index)
                self._push(item)

            with self._metrics_lock:
                self._metrics.retry_count += 1
                self._metrics.current_depth = len(self._heap)
            if self.observability:
                self.observability.queue_retries.inc()
                self.observability.queue_depth.set(len(self._heap))

            logger.info(
                f"Requeued {item.identity} with backoff "
                f"(retry {item.retry_count}, cycle {item.retry_cycle}, delay {delay}s)"
            )
            self._cond.notify()
            return True

    def done(self, item: WorkItem) -> None:
        """Mark an item as processed. The item already left the heap at dequeue."""
        with self._metrics_lock:
            self._metrics.processing_items = max(0, self._metrics.processing_items - 1)
        if self.observability:
            self.observability.queue_processing.dec()

    def shutdown(self) -> None:
        """Close the queue and release every blocked consumer."""
        with self._cond:
            self._shutdown = True
            self._cond.notify_all()
        logger.info("Work queue shut down")

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def backoff_delay(self, retry_count: int) -> float:
        """Delay before attempt ``retry_count`` within a cycle."""
        exponent = min(max(retry_count - 1, 0), MAX_BACKOFF_EXPONENT)
        return min(self.initial_retry_delay * (1 << exponent), self.max_retry_delay)

    def metrics(self) -> QueueMetrics:
        with self._metrics_lock:
            return QueueMetrics(**vars(self._metrics))

    def len(self) -> int:
        with self._lock:
            return len(self._heap)

    def __len__(self) -> int:
        return self.len()

    def contains(self, identity: NamespacedName) -> bool:
        with self._lock:
            return identity in self._items

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._shutdown

    # ------------------------------------------------------------------
    # Heap internals (caller holds the lock)
    # ------------------------------------------------------------------

    def _less(self, i: int, j: int) -> bool:
        a, b = self._heap[i], self._heap[j]
        if a.priority != b.priority:
            return a.priority > b.priority
        return a.scheduled_at < b.scheduled_at

    def _swap(self, i: int, j: int) -> None:
        heap = self._heap
        heap[i], heap[j] = heap[j], heap[i]
        heap[i].index = i
        heap[j].index = j

    def _up(self, i: int) -> bool:
        moved = False
        while i > 0:
            parent = (i - 1) // 2
            if not self._less(i, parent):
                break
            self._swap(i, parent)
            i = parent
            moved = True
        return moved

    def _down(self, i: int) -> None:
        n = len(self._heap)
        while True:
            smallest = i
            left, right = 2 * i + 1, 2 * i + 2
            if left < n and self._less(left, smallest):
                smallest = left
            if right < n and self._less(right, smallest):
                smallest = right
            if smallest == i:
                return
            self._swap(i, smallest)
            i = smallest

    def _fix(self, i: int) -> None:
        if not self._up(i):
            self._down(i)

    def _push(self, item: WorkItem) -> None:
        item.index = len(self._heap)
        self._heap.append(item)
        self._up(item.index)
        self._items[item.identity] = item

    def _remove(self, i: int) -> WorkItem:
        last = len(self._heap) - 1
        if i != last:
            self._swap(i, last)
        item = self._heap.pop()
        item.index = -1
        if i < len(self._heap):
            self._fix(i)
        return item

    def _observe_enqueue(self) -> None:
        if self.observability:
            self.observability.queue_enqueued.inc()
            self.observability.queue_depth.set(len(self._heap))

    def _observe_dequeue(self) -> None:
        if self.observability:
            self.observability.queue_dequeued.inc()
            self.observability.queue_depth.set(len(self._heap))
            self.observability.queue_processing.inc()
