"""
Resolve raw oplog operations into candidate documents.

Inserts and replacement updates already carry the full document. Partial
updates (``$set``/``$unset`` style) only carry the changed fields, so unless the
filter shows none of those fields matter, the current document is fetched from
the source collection.
"""

from concurrent.futures import Future, Executor
import contextvars
from typing import Any, Callable, Dict, Optional
import logging

from prometheus_client import Counter

from .field_filter import FieldFilter
from .models import Op, OpKind
from ..errors import DocFetchError

logger = logging.getLogger(__name__)

DocGetter = Callable[[Any], Optional[Dict[str, Any]]]

FIELD_OPERATORS = ("$set", "$unset")
# Oplog format version marker, not an update operator
VERSION_KEY = "$v"

ops_skipped_total = Counter(
    'oplog_listener_ops_skipped_total',
    'Ops resolved to no document',
    ['reason']
)

doc_fetches_total = Counter(
    'oplog_listener_doc_fetches_total',
    'Full document reads for partial updates',
    ['status']
)


def is_partial_update(op: Op) -> bool:
    """True if the update is expressed with operators rather than a replacement document."""
    return (
        op.kind == OpKind.UPDATE
        and bool(op.payload)
        and bool(op.target)
        and any(name.startswith("$") for name in op.payload)
    )


def _completed(result: Optional[Dict[str, Any]]) -> "Future[Optional[Dict[str, Any]]]":
    future: Future = Future()
    future.set_result(result)
    return future


class OpResolver:
    """
    Classify ops and produce the candidate document for each.

    Thread Safety: YES, holds no per-op state.
    """

    def __init__(
        self,
        field_filter: FieldFilter,
        doc_getter: Optional[DocGetter] = None,
        fetch_executor: Optional[Executor] = None
    ):
        """
        Args:
            field_filter: Filter used to decide whether a partial update matters
            doc_getter: Reads the current document by id from the source
            fetch_executor: Runs document reads off the caller's thread; when
                omitted reads happen synchronously
        """
        self.field_filter = field_filter
        self.doc_getter = doc_getter
        self.fetch_executor = fetch_executor

    def filter_op(self, op: Op) -> bool:
        """
        Decide whether an op can affect the filtered document.

        Only ``$set``/``$unset`` field lists are inspected. Any other operator is
        assumed to need the update.
        """
        if not op.payload or self.field_filter.allows_all:
            return True

        for name, fields in op.payload.items():
            if name == VERSION_KEY:
                continue
            if not name.startswith("$"):
                # not a partial update, always pass
                return True
            if name in FIELD_OPERATORS:
                if any(self.field_filter.filter_field(path) for path in (fields or {})):
                    return True
            else:
                return True
        return False

    def read_full_doc(self, doc_id: Any) -> Optional[Dict[str, Any]]:
        if self.doc_getter is None:
            raise DocFetchError("a doc getter is required to resolve partial updates")
        try:
            doc = self.doc_getter(doc_id)
        except Exception as e:
            doc_fetches_total.labels(status='error').inc()
            raise DocFetchError(f"failed to read document {doc_id!r}: {e}") from e
        doc_fetches_total.labels(status='success').inc()
        return doc

    def resolve(self, op: Op) -> "Future[Optional[Dict[str, Any]]]":
        """
        Resolve an op to its candidate document.

        The returned future is already done unless a full-document read was
        needed; in that case it completes when the read does (with the read
        error, if any). A result of None means the op needs no downstream work.
        """
        if not op.is_upsert_kind:
            ops_skipped_total.labels(reason='kind').inc()
            return _completed(None)

        if not is_partial_update(op):
            return _completed(op.payload)

        if not self.filter_op(op):
            ops_skipped_total.labels(reason='filtered_update').inc()
            logger.debug(
                "partial update, after filtering, skipping",
                extra={"doc_id": str(op.id)}
            )
            return _completed(None)

        logger.debug(
            "partial update, reading full doc from db",
            extra={"doc_id": str(op.id)}
        )
        if self.fetch_executor is None:
            future: Future = Future()
            try:
                future.set_result(self.read_full_doc(op.id))
            except DocFetchError as e:
                future.set_exception(e)
            return future
        return self.fetch_executor.submit(contextvars.copy_context().run, self.read_full_doc, op.id)
