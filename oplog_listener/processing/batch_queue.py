"""
Debounced batching of documents for the sink.

Documents are enqueued one at a time. The first enqueue arms a single-shot
timer; when it fires, up to ``max_batch_size`` queued documents are handed to
the sink in one call and every item's completion future receives the batch
outcome. If documents remain (or arrived during the flush) the timer is armed
again, so everything enqueued is eventually delivered and at most one timer is
ever pending.
"""

from collections import deque
from concurrent.futures import Future
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional
import logging
import threading
import time

from prometheus_client import Counter, Gauge

from .field_filter import ID_FIELD
from ..errors import SinkError

logger = logging.getLogger(__name__)

Sink = Callable[[List[Dict[str, Any]]], Any]

DEFAULT_BATCH_PROCESS_DELAY_MS = 5000
DEFAULT_MAX_BATCH_SIZE = 5000
DEFAULT_SINK_ID_FIELD = "objectID"

docs_enqueued_total = Counter(
    'oplog_listener_docs_enqueued_total',
    'Documents queued for the sink'
)

batches_total = Counter(
    'oplog_listener_batches_total',
    'Sink invocations',
    ['status']
)

queue_depth = Gauge(
    'oplog_listener_queue_depth',
    'Documents waiting for a batch flush'
)


class QueueState(str, Enum):
    """Flush scheduling state."""
    IDLE = "idle"
    TIMER_ARMED = "timer_armed"
    FLUSHING = "flushing"


@dataclass
class QueueItem:
    """A document waiting for a flush, and the future its batch outcome goes to."""
    document: Dict[str, Any]
    completion: Future = field(default_factory=Future)


def noop_sink(docs: List[Dict[str, Any]]) -> None:
    """Sink used when none is configured: accepts every batch after a short delay."""
    time.sleep(0.01)
    return None


class BatchQueue:
    """
    Queue of pending upserts flushed to the sink on a debounce timer.

    Thread Safety: YES. ``enqueue`` may be called from any thread, including
    while a flush is running; items enqueued during a flush wait for the next
    one.
    """

    def __init__(
        self,
        sink: Optional[Sink] = None,
        batch_process_delay_ms: int = DEFAULT_BATCH_PROCESS_DELAY_MS,
        max_batch_size: int = DEFAULT_MAX_BATCH_SIZE,
        id_field: str = ID_FIELD,
        sink_id_field: str = DEFAULT_SINK_ID_FIELD
    ):
        """
        Args:
            sink: Called with each batch; its return value is the batch result.
                Raising marks the batch as failed.
            batch_process_delay_ms: Debounce delay before a flush
            max_batch_size: Maximum documents per sink call
            id_field: Identifier field of source documents
            sink_id_field: Field the identifier is carried under for the sink
        """
        if batch_process_delay_ms < 0:
            raise ValueError("batch_process_delay_ms must be non-negative")
        if max_batch_size <= 0:
            raise ValueError("max_batch_size must be positive")

        self.sink: Sink = sink or noop_sink
        self.delay_seconds = batch_process_delay_ms / 1000.0
        self.max_batch_size = max_batch_size
        self.id_field = id_field
        self.sink_id_field = sink_id_field

        self._items: Deque[QueueItem] = deque()
        self._state = QueueState.IDLE
        self._timer: Optional[threading.Timer] = None
        self._lock = threading.Lock()
        # Serializes flushes triggered by the timer and by drain()
        self._flush_lock = threading.Lock()

    @property
    def state(self) -> QueueState:
        return self._state

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def enqueue(self, document: Dict[str, Any]) -> Future:
        """
        Queue a document for the next flush.

        The identifier is moved to ``sink_id_field``.

        Returns:
            Future resolved with the sink result of the batch the document is
            delivered in, or with a SinkError wrapping the sink exception
        """
        if document.get(self.id_field) is not None:
            document[self.sink_id_field] = document.pop(self.id_field)

        item = QueueItem(document)
        with self._lock:
            self._items.append(item)
            queue_depth.set(len(self._items))
            self._schedule_locked()
        docs_enqueued_total.inc()
        return item.completion

    def _schedule_locked(self) -> None:
        if not self._items or self._timer is not None or self._state == QueueState.FLUSHING:
            return
        timer = threading.Timer(self.delay_seconds, self._on_timer)
        timer.daemon = True
        self._timer = timer
        self._state = QueueState.TIMER_ARMED
        timer.start()

    def _on_timer(self) -> None:
        with self._lock:
            # A flush may already have replaced this timer with a newer one
            if self._timer is threading.current_thread():
                self._timer = None
        self.flush_now()

    def flush_now(self) -> int:
        """
        Deliver one batch immediately.

        Returns:
            Number of documents handed to the sink
        """
        with self._flush_lock:
            with self._lock:
                if self._timer is not None:
                    self._timer.cancel()
                    self._timer = None
                count = min(len(self._items), self.max_batch_size)
                batch = [self._items.popleft() for _ in range(count)]
                queue_depth.set(len(self._items))
                if not batch:
                    self._state = QueueState.IDLE
                    return 0
                self._state = QueueState.FLUSHING

            try:
                self._deliver(batch)
            finally:
                with self._lock:
                    self._state = QueueState.IDLE
                    self._schedule_locked()
            return len(batch)

    def _deliver(self, batch: List[QueueItem]) -> None:
        docs = [item.document for item in batch]
        error: Optional[BaseException] = None
        result: Any = None

        start = time.time()
        try:
            result = self.sink(docs)
        except Exception as e:
            error = SinkError(f"sink failed on a batch of {len(docs)}: {e}")
            error.__cause__ = e
            batches_total.labels(status='error').inc()
            logger.error(
                f"Error processing batch: {e}",
                extra={"batch_size": len(docs), "error_type": type(e).__name__}
            )
        else:
            batches_total.labels(status='success').inc()
            logger.info(
                f"Flushed batch of {len(docs)} documents",
                extra={"batch_size": len(docs), "duration_seconds": time.time() - start}
            )

        for item in batch:
            if error is not None:
                item.completion.set_exception(error)
            else:
                item.completion.set_result(result)

    def drain(self) -> int:
        """
        Flush until the queue is empty (used on shutdown).

        Returns:
            Total documents delivered
        """
        total = 0
        while True:
            flushed = self.flush_now()
            if not flushed:
                return total
            total += flushed
