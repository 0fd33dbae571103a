"""
Oplog subscription for one namespace.

Tails ``local.oplog.rs`` with a tailable-await cursor from a given position (or
from the current end of the oplog) and emits ``op``, ``error`` and ``end``
events to registered handlers on a background thread.
"""

from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional
import logging
import threading

import pymongo
from bson import Timestamp
from pymongo.errors import ConnectionFailure, PyMongoError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

logger = logging.getLogger(__name__)

EVENTS = ("op", "error", "end")


class OplogTailer:
    """
    Subscription delivering raw oplog entries (``{op, ns, o, o2?, ts}``).

    Transient connection failures reopen the cursor from the last delivered
    position. Any other error is emitted as an ``error`` event, followed by
    ``end``; restarting is left to the owner.
    """

    def __init__(
        self,
        uri: str,
        namespace: str,
        since: Optional[Timestamp] = None,
        client: Optional[pymongo.MongoClient] = None,
        max_await_time_ms: int = 1000
    ):
        self.uri = uri
        self.namespace = namespace
        self.since = since
        self.max_await_time_ms = max_await_time_ms
        self.last_position: Optional[Timestamp] = None

        self._client = client
        self._handlers: Dict[str, List[Callable[..., Any]]] = defaultdict(list)
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def client(self) -> pymongo.MongoClient:
        if self._client is None:
            self._client = pymongo.MongoClient(self.uri)
        return self._client

    def on(self, event: str, handler: Callable[..., Any]) -> "OplogTailer":
        if event not in EVENTS:
            raise ValueError(f"Unknown event {event!r}, expected one of {EVENTS}")
        self._handlers[event].append(handler)
        return self

    def _emit(self, event: str, *args: Any) -> None:
        for handler in self._handlers[event]:
            try:
                handler(*args)
            except Exception:
                logger.exception(f"Error in oplog {event} handler")

    def tail(self) -> threading.Thread:
        """Start tailing on a daemon thread."""
        if self._thread is not None and self._thread.is_alive():
            return self._thread
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="oplog-tailer", daemon=True)
        self._thread.start()
        return self._thread

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def _start_position(self) -> Optional[Timestamp]:
        if self.last_position is not None:
            return self.last_position
        if self.since is not None:
            return self.since
        latest = list(self.client.local.oplog.rs.find().sort("$natural", pymongo.DESCENDING).limit(1))
        return latest[0]["ts"] if latest else None

    @retry(
        stop=stop_after_attempt(5),
        wait=wait_exponential(multiplier=1, min=1, max=30),
        retry=retry_if_exception_type(ConnectionFailure),
        reraise=True
    )
    def _open_cursor(self):
        start = self._start_position()
        query: Dict[str, Any] = {"ns": self.namespace}
        if start is not None:
            query["ts"] = {"$gt": start}

        logger.info(
            f"Creating oplog tailing cursor for {self.namespace}",
            extra={"namespace": self.namespace, "since": str(start) if start else None}
        )
        cursor = self.client.local.oplog.rs.find(query, cursor_type=pymongo.CursorType.TAILABLE_AWAIT)
        return cursor.max_await_time_ms(self.max_await_time_ms)

    def _run(self) -> None:
        try:
            while not self._stop_event.is_set():
                # Raises once reconnect attempts are exhausted
                cursor = self._open_cursor()
                try:
                    while cursor.alive and not self._stop_event.is_set():
                        for entry in cursor:
                            self.last_position = entry.get("ts", self.last_position)
                            self._emit("op", entry)
                            if self._stop_event.is_set():
                                break
                except ConnectionFailure as e:
                    logger.warning(f"Oplog connection lost, reopening cursor: {e}")
                    continue
                finally:
                    cursor.close()
                # Dead cursor (e.g. empty oplog at open time): reopen after a pause
                self._stop_event.wait(1.0)
        except PyMongoError as e:
            self._emit("error", e)
        finally:
            self._emit("end")
