"""
Op resolution, filtering, transformation and batching.
"""

from .models import Op, OpKind
from .field_filter import ALLOW, Allow, Node, FilterTree, FieldFilter, build_filter_tree, filter_document, filter_field
from .transformer import Transformer, processing_failed_document
from .op_resolver import OpResolver, is_partial_update
from .batch_queue import BatchQueue, QueueItem, QueueState, noop_sink
from .processor import Processor

__all__ = [
    "Op",
    "OpKind",
    "ALLOW",
    "Allow",
    "Node",
    "FilterTree",
    "FieldFilter",
    "build_filter_tree",
    "filter_document",
    "filter_field",
    "Transformer",
    "processing_failed_document",
    "OpResolver",
    "is_partial_update",
    "BatchQueue",
    "QueueItem",
    "QueueState",
    "noop_sink",
    "Processor",
]
