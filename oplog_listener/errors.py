"""
Exception hierarchy for the oplog listener.
"""


class ListenerError(Exception):
    """Base exception for listener errors."""
    pass


class CheckpointError(ListenerError):
    """Error saving/loading the last processed position."""
    pass


class DocFetchError(ListenerError):
    """The full document for a partial update could not be read."""
    pass


class SinkError(ListenerError):
    """The sink rejected or failed to process a batch."""
    pass


class BackfillError(ListenerError):
    """Processing the entire collection failed; the destination is in an unknown state."""
    pass


class ProcessingCancelled(ListenerError):
    """Processing was abandoned because the listener is shutting down."""
    pass
