"""
User-supplied document transformation with failure isolation.
"""

from typing import Any, Callable, Dict, Optional
import logging

from prometheus_client import Counter

from .field_filter import ID_FIELD

logger = logging.getLogger(__name__)

TransformFn = Callable[[Dict[str, Any]], Optional[Dict[str, Any]]]

PROCESSING_FAILED_TAG = "processing-failed"

transform_failures_total = Counter(
    'oplog_listener_transform_failures_total',
    'Documents whose transform raised and were replaced by an error document'
)


def processing_failed_document(doc_id: Any, error: BaseException, id_field: str = ID_FIELD) -> Dict[str, Any]:
    """Build the document sent in place of one whose transform raised."""
    return {
        id_field: doc_id,
        "processingFailed": True,
        "processingError": str(error),
        "tags": [PROCESSING_FAILED_TAG],
    }


class Transformer:
    """
    Apply the configured transform function to filtered documents.

    A raising transform never propagates: the sink receives an error document
    carrying the original identifier so the failure is visible downstream.
    """

    def __init__(self, transform: Optional[TransformFn] = None, id_field: str = ID_FIELD):
        if transform is not None and not callable(transform):
            raise TypeError("transform must be callable")
        self.transform_fn = transform
        self.id_field = id_field

    def transform(self, doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        """
        Transform a document.

        Args:
            doc: Filtered document

        Returns:
            The transformed document, the error document if the transform
            raised, or None if the transform decided no update is needed
        """
        if doc is None or self.transform_fn is None:
            return doc

        doc_id = doc.get(self.id_field)
        try:
            transformed = self.transform_fn(doc)
        except Exception as e:
            transform_failures_total.inc()
            logger.error(
                f"transform error: {e}",
                extra={"doc_id": str(doc_id), "error_type": type(e).__name__}
            )
            return processing_failed_document(doc_id, e, self.id_field)

        if transformed is not None and self.id_field not in transformed and doc_id is not None:
            transformed[self.id_field] = doc_id
        return transformed
