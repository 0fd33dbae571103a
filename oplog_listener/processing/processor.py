"""
Per-op processing chain: resolve -> filter -> transform -> enqueue.
"""

from concurrent.futures import Executor, Future
import contextvars
from typing import Any, Callable, Dict, Optional
import logging
import threading

from .batch_queue import BatchQueue
from .field_filter import FieldFilter
from .models import Op
from .op_resolver import DocGetter, OpResolver
from .transformer import Transformer
from ..errors import ProcessingCancelled

logger = logging.getLogger(__name__)


def _done(result: Any = None, error: Optional[BaseException] = None) -> Future:
    future: Future = Future()
    if error is not None:
        future.set_exception(error)
    else:
        future.set_result(result)
    return future


def _chain(source: Future, then: Callable[[Any], Future]) -> Future:
    """Future for ``then(source.result())``, propagating errors from either step.

    ``then`` runs in the caller's context (correlation id included), even when
    ``source`` completes on another thread.
    """
    outcome: Future = Future()
    context = contextvars.copy_context()

    def _relay(inner: Future) -> None:
        error = inner.exception()
        if error is not None:
            outcome.set_exception(error)
        else:
            outcome.set_result(inner.result())

    def _continue(done: Future) -> None:
        error = done.exception()
        if error is not None:
            outcome.set_exception(error)
            return
        try:
            inner = context.run(then, done.result())
        except Exception as e:
            outcome.set_exception(e)
            return
        inner.add_done_callback(_relay)

    source.add_done_callback(_continue)
    return outcome


class Processor:
    """
    Turns ops and documents into queued upserts.

    Every call returns a future that completes when the resulting document's
    batch has been delivered (or immediately, with None, when there is nothing
    to deliver). Filtering, transforming and enqueueing of a document happen on
    the calling thread, except after a full-document read, which continues on
    the fetch executor's thread.
    """

    def __init__(
        self,
        field_filter: FieldFilter,
        transformer: Transformer,
        queue: BatchQueue,
        doc_getter: Optional[DocGetter] = None,
        fetch_executor: Optional[Executor] = None
    ):
        self.field_filter = field_filter
        self.transformer = transformer
        self.queue = queue
        self.resolver = OpResolver(field_filter, doc_getter, fetch_executor)

    def set_doc_getter(self, doc_getter: DocGetter) -> None:
        self.resolver.doc_getter = doc_getter

    @property
    def queue_size(self) -> int:
        return len(self.queue)

    def process_op(self, op: Op, cancel_event: Optional[threading.Event] = None) -> Future:
        """
        Process a live oplog op.

        Args:
            op: Parsed op
            cancel_event: Set on shutdown; a set event stops the op before enqueue

        Returns:
            Future with the batch result, None if the op needed no upsert, or
            the processing error (read failure, sink failure, cancellation)
        """
        resolved = self.resolver.resolve(op)
        return _chain(resolved, lambda doc: self.process_doc(doc, False, cancel_event))

    def process_doc(
        self,
        doc: Optional[Dict[str, Any]],
        full_upserting: bool = False,
        cancel_event: Optional[threading.Event] = None
    ) -> Future:
        """
        Filter, transform and enqueue one full document.

        Args:
            doc: Full document (None means nothing to do)
            full_upserting: True while processing the entire collection; only
                suppresses the per-document trace log
            cancel_event: Set on shutdown
        """
        if cancel_event is not None and cancel_event.is_set():
            return _done(error=ProcessingCancelled("listener is stopping"))
        if doc is None:
            return _done()

        filtered = self.field_filter.filter_document(doc)
        if filtered is None:
            logger.debug("after filtering, no update needed")
            return _done()

        transformed = self.transformer.transform(filtered)
        if transformed is None:
            logger.debug("after transforming, no update needed")
            return _done()

        if cancel_event is not None and cancel_event.is_set():
            return _done(error=ProcessingCancelled("listener is stopping"))

        if not full_upserting:
            logger.debug("upserting", extra={"doc_id": str(transformed.get(self.field_filter.id_field))})
        return self.queue.enqueue(transformed)
