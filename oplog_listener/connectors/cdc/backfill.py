"""
Entire-collection processing, used to seed the sink when no checkpoint exists.
"""

from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Optional
import logging
import threading
import time

from prometheus_client import Counter

from ...errors import BackfillError, ProcessingCancelled

logger = logging.getLogger(__name__)

ProcessDoc = Callable[[Dict[str, Any], bool, Optional[threading.Event]], Future]

DEFAULT_CONCURRENCY = 5000

backfill_docs_total = Counter(
    'oplog_listener_backfill_docs_total',
    'Documents processed while reading the entire collection',
    ['status']
)


@dataclass
class BackfillResult:
    """Outcome of a completed entire-collection pass."""
    count: int
    elapsed_seconds: float

    @property
    def elapsed(self) -> str:
        seconds = int(round(self.elapsed_seconds))
        return f"{seconds // 60}m{seconds % 60}s"


class BackfillRunner:
    """
    Feed every document of a cursor through the processing chain.

    Up to ``concurrency`` documents are in flight at once; a document stays in
    flight until the batch it was queued in has been delivered. The first
    failure (processing or delivery) stops the pass and is raised as
    ``BackfillError``: with no checkpoint to resume from, a partial pass leaves
    the sink in an unknown state.

    Example:
        >>> runner = BackfillRunner(processor.process_doc, concurrency=5000)
        >>> result = runner.run(collection.find())
        >>> result.count
        3
    """

    def __init__(
        self,
        process_doc: ProcessDoc,
        concurrency: int = DEFAULT_CONCURRENCY,
        workers: int = 8,
        cancel_event: Optional[threading.Event] = None
    ):
        if concurrency <= 0:
            raise ValueError("concurrency must be positive")
        if workers <= 0:
            raise ValueError("workers must be positive")
        self.process_doc = process_doc
        self.concurrency = concurrency
        self.workers = workers
        self.cancel_event = cancel_event

        self._lock = threading.Lock()
        self._count = 0
        self._error: Optional[BaseException] = None

    @property
    def count(self) -> int:
        return self._count

    def _record(self, delivery: Future, slots: threading.BoundedSemaphore) -> None:
        error = delivery.exception()
        with self._lock:
            self._count += 1
            if error is not None and self._error is None:
                self._error = error
        backfill_docs_total.labels(status='error' if error else 'success').inc()
        slots.release()

    def _process(self, doc: Dict[str, Any], slots: threading.BoundedSemaphore) -> None:
        try:
            delivery = self.process_doc(doc, True, self.cancel_event)
        except Exception as e:
            delivery = Future()
            delivery.set_exception(e)
        delivery.add_done_callback(lambda done: self._record(done, slots))

    def _failed(self) -> bool:
        with self._lock:
            return self._error is not None

    def run(self, cursor: Iterable[Dict[str, Any]]) -> BackfillResult:
        """
        Process the whole cursor and wait for every document's delivery.

        Raises:
            BackfillError: On the first document, delivery or cursor failure
            ProcessingCancelled: If the cancel event was set during the pass
        """
        start = time.time()
        slots = threading.BoundedSemaphore(self.concurrency)
        cursor_error: Optional[BaseException] = None

        with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="backfill") as executor:
            try:
                for doc in cursor:
                    if self._failed() or (self.cancel_event is not None and self.cancel_event.is_set()):
                        break
                    slots.acquire()
                    executor.submit(self._process, doc, slots)
            except Exception as e:
                # driver or override cursor failure
                cursor_error = e

        # Every slot back means every in-flight document was delivered
        for _ in range(self.concurrency):
            slots.acquire()

        if cursor_error is not None:
            raise BackfillError(f"error reading entire collection: {cursor_error}") from cursor_error
        if self._error is not None:
            if isinstance(self._error, ProcessingCancelled):
                raise self._error
            raise BackfillError(f"error processing entire collection: {self._error}") from self._error
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise ProcessingCancelled("entire collection processing interrupted")

        result = BackfillResult(count=self._count, elapsed_seconds=time.time() - start)
        logger.info(
            f"entire collection processed ({result.count} documents, {result.elapsed}).",
            extra={"documents": result.count, "elapsed_seconds": result.elapsed_seconds}
        )
        return result
