"""
CDC (Change Data Capture) module for MongoDB oplog processing.
"""

from .checkpoint_store import (
    CheckpointStore, FileCheckpointStore, RedisCheckpointStore, SqlCheckpointStore,
    ListenerCheckpoint, create_checkpoint_store
)
from .position import position_to_string, position_from_string
from .oplog_tailer import OplogTailer
from .backfill import BackfillRunner, BackfillResult

__all__ = [
    "CheckpointStore",
    "FileCheckpointStore",
    "RedisCheckpointStore",
    "SqlCheckpointStore",
    "ListenerCheckpoint",
    "create_checkpoint_store",
    "position_to_string",
    "position_from_string",
    "OplogTailer",
    "BackfillRunner",
    "BackfillResult",
]
