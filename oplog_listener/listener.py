"""
Listener: keeps a sink in sync with a MongoDB collection by tailing the oplog.

On start the last processed position is read from the checkpoint store. With a
position the oplog is tailed from there. Without one, the oplog is tailed from
its current end and, unless ``skip_full_upsert`` is set, the entire collection
is processed concurrently so older documents are seeded while live ops keep
flowing. Every op of the watched namespace advances the checkpoint right after
it has been dispatched for processing.
"""

from concurrent.futures import Future, ThreadPoolExecutor
from enum import Enum
from functools import partial
from typing import Any, Callable, Dict, Optional
import logging
import threading

from bson import Timestamp
from prometheus_client import Counter

from .config import ListenerConfig
from .connectors.cdc.backfill import BackfillResult, BackfillRunner
from .connectors.cdc.checkpoint_store import CheckpointStore, create_checkpoint_store
from .connectors.cdc.oplog_tailer import OplogTailer
from .connectors.cdc.position import position_to_string
from .connectors.mongo import SourceCollection
from .errors import BackfillError, CheckpointError, ProcessingCancelled
from .processing import BatchQueue, FieldFilter, Op, Processor, Transformer
from .utils.logging import CorrelationContext

logger = logging.getLogger(__name__)

ops_received_total = Counter(
    'oplog_listener_ops_received_total',
    'Oplog entries of the watched namespace',
    ['kind']
)

TailerFactory = Callable[[Optional[Timestamp]], OplogTailer]


class ListenerState(str, Enum):
    """Listener lifecycle."""
    INITIALIZING = "initializing"
    RESOLVING_START_POSITION = "resolving_start_position"
    STREAMING = "streaming"
    STOPPED = "stopped"


class Listener:
    """
    Oplog-to-sink pipeline coordinator.

    Thread Safety: ``start`` and ``stop`` are meant to be called from one
    controlling thread; ops arrive on the tailer thread.

    Example:
        >>> listener = Listener(ListenerConfig(mongo=MongoConfig(db="shop", collection="products")))
        >>> listener.start()
        >>> listener.wait()
    """

    def __init__(
        self,
        config: ListenerConfig,
        checkpoint_store: Optional[CheckpointStore] = None,
        source: Optional[SourceCollection] = None,
        tailer_factory: Optional[TailerFactory] = None,
        on_fatal: Optional[Callable[[BaseException], None]] = None
    ):
        """
        Args:
            config: Listener configuration
            checkpoint_store: Overrides the store selected from the config
            source: Overrides the collection used for reads
            tailer_factory: Builds the op subscription for a start position
            on_fatal: Called after a fatal entire-collection failure stopped the listener
        """
        if not config.mongo.db or not config.mongo.collection:
            raise ValueError("mongo db and collection are required")

        self.config = config
        self.state = ListenerState.INITIALIZING
        self.app_version: Optional[str] = None
        self.on_fatal = on_fatal

        self.cancel_event = threading.Event()
        self._stopped = threading.Event()
        self._stop_lock = threading.Lock()
        self._stopping = False

        self.source = source or SourceCollection(
            config.mongo.read_uri, config.mongo.db, config.mongo.collection
        )
        self.checkpoint_store = checkpoint_store or create_checkpoint_store(config)
        self.tailer_factory = tailer_factory or self._default_tailer
        self.tailer: Optional[OplogTailer] = None

        self._fetch_executor = ThreadPoolExecutor(
            max_workers=config.fetch_workers, thread_name_prefix="doc-fetch"
        )
        # One worker: checkpoint writes land in op order
        self._checkpoint_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="checkpoint")

        self.queue = BatchQueue(
            sink=config.process_docs,
            batch_process_delay_ms=config.batch_process_delay,
            max_batch_size=config.max_batch_size,
            id_field=config.id_field,
            sink_id_field=config.sink_id_field,
        )
        self.processor = Processor(
            FieldFilter(config.filter, config.id_field),
            Transformer(config.transform, config.id_field),
            self.queue,
            doc_getter=self.source.get_document,
            fetch_executor=self._fetch_executor,
        )

        self.last_position: Optional[Timestamp] = None
        self.backfilling = False
        self.backfill_result: Optional[BackfillResult] = None
        self.fatal_error: Optional[BaseException] = None
        self._backfill_thread: Optional[threading.Thread] = None
        self.status_server = None

    @property
    def namespace(self) -> str:
        return self.config.mongo.namespace

    def _default_tailer(self, since: Optional[Timestamp]) -> OplogTailer:
        return OplogTailer(self.config.mongo.uri, self.namespace, since=since)

    def start(self) -> None:
        """Resolve the start position, begin tailing and, if needed, process the entire collection."""
        if self.state != ListenerState.INITIALIZING:
            raise RuntimeError(f"Listener cannot start from state {self.state.value}")

        self.state = ListenerState.RESOLVING_START_POSITION
        since = self._read_checkpoint()
        run_backfill = False
        if since is not None:
            logger.info(f"resuming from timestamp {position_to_string(since)}")
        elif self.config.skip_full_upsert:
            logger.info("unable to determine last op, skipping entire collection (skip_full_upsert)")
        else:
            logger.info("unable to determine last op, processing entire collection...")
            run_backfill = True

        self.tailer = self.tailer_factory(since)
        self.tailer.on("op", self._on_op).on("error", self._on_stream_error).on("end", self._on_stream_end)
        self.state = ListenerState.STREAMING
        self.tailer.tail()

        if run_backfill:
            self._start_backfill()

        self._start_status_server()

    def _read_checkpoint(self) -> Optional[Timestamp]:
        try:
            return self.checkpoint_store.get()
        except CheckpointError as e:
            logger.error(f"error reading lastop: {e}")
            return None

    def _on_op(self, entry: Dict[str, Any]) -> None:
        # Ops arriving while stopping are not checkpointed and replay on restart
        if self._stopping or entry.get("ns") != self.namespace:
            return

        op = Op.from_entry(entry)
        ops_received_total.labels(kind=op.kind.name.lower()).inc()

        correlation_id = position_to_string(op.position) if op.position is not None else None
        with CorrelationContext(correlation_id):
            outcome = self.processor.process_op(op, self.cancel_event)
        outcome.add_done_callback(partial(self._on_op_done, op))

        if op.position is not None:
            self._save_checkpoint(op.position)

    def _on_op_done(self, op: Op, outcome: Future) -> None:
        error = outcome.exception()
        if error is None:
            return
        logger.error(
            f"error processing op: {error}",
            exc_info=error,
            extra={"doc_id": str(op.id), "op_kind": op.kind.value, "namespace": op.namespace}
        )

    def _save_checkpoint(self, position: Timestamp) -> None:
        self.last_position = position
        self._checkpoint_executor.submit(self._write_checkpoint, position)

    def _write_checkpoint(self, position: Timestamp) -> None:
        try:
            self.checkpoint_store.set(position)
        except CheckpointError as e:
            logger.error(f"Failed to save checkpoint: {e}")

    def _on_stream_error(self, error: BaseException) -> None:
        logger.error(f"oplog stream error: {error}", extra={"namespace": self.namespace})

    def _on_stream_end(self) -> None:
        logger.info("Stream ended", extra={"namespace": self.namespace})

    def _start_backfill(self) -> None:
        cursor = self.config.entire_collection_cursor
        if cursor is None:
            cursor = self.source.find_all()
        runner = BackfillRunner(
            self.processor.process_doc,
            concurrency=self.config.max_batch_size,
            workers=self.config.backfill_workers,
            cancel_event=self.cancel_event,
        )
        self.backfilling = True
        self._backfill_thread = threading.Thread(
            target=self._run_backfill, args=(runner, cursor), name="backfill", daemon=True
        )
        self._backfill_thread.start()

    def _run_backfill(self, runner: BackfillRunner, cursor) -> None:
        try:
            self.backfill_result = runner.run(cursor)
        except ProcessingCancelled:
            logger.warning(f"entire collection processing interrupted after {runner.count} documents")
        except BackfillError as e:
            logger.error(f"error processing entire collection: {e}", exc_info=e)
            self._fatal(e)
        except Exception as e:
            logger.exception(f"error processing entire collection: {e}")
            self._fatal(BackfillError(f"entire collection processing failed: {e}"))
        finally:
            self.backfilling = False

    def _fatal(self, error: BaseException) -> None:
        self.fatal_error = error
        # stop() joins the backfill thread, so it cannot run on it
        threading.Thread(target=self._stop_after_fatal, args=(error,), name="fatal-stop").start()

    def _stop_after_fatal(self, error: BaseException) -> None:
        self.stop()
        if self.on_fatal is not None:
            self.on_fatal(error)

    def _start_status_server(self) -> None:
        if not self.config.http_port:
            return
        from .api.status_api import StatusServer

        self.status_server = StatusServer(self, host=self.config.http_host, port=self.config.http_port)
        self.status_server.start()
        logger.info(f"server listening at http://localhost:{self.config.http_port}")

    def status(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "backfilling": self.backfilling,
            "last_op": position_to_string(self.last_position) if self.last_position is not None else None,
            "queue_size": self.processor.queue_size,
        }

    def stop(self, timeout: Optional[float] = None) -> None:
        """
        Stop tailing, let dispatched ops reach the queue, and flush it.

        Args:
            timeout: Per-thread join timeout
        """
        with self._stop_lock:
            if self._stopped.is_set():
                return
            logger.info("Stopping listener", extra={"namespace": self.namespace})
            self._stopping = True

            if self.tailer is not None:
                self.tailer.stop(timeout)
            # Dispatched partial updates finish their reads and get queued
            self._fetch_executor.shutdown(wait=True)
            self.cancel_event.set()
            backfill = self._backfill_thread
            if backfill is not None and backfill is not threading.current_thread():
                backfill.join(timeout)

            drained = self.queue.drain()
            if drained:
                logger.info(f"Flushed {drained} remaining documents")

            self._checkpoint_executor.shutdown(wait=True)
            self.checkpoint_store.close()
            self.source.close()
            if self.status_server is not None:
                self.status_server.stop()

            self.state = ListenerState.STOPPED
            self._stopped.set()
            logger.info("server stopped", extra={"namespace": self.namespace})

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the listener has stopped. Returns False on timeout."""
        return self._stopped.wait(timeout)
