"""Unit tests for the oplog tailer."""

import threading
from unittest.mock import MagicMock

import pytest
from bson import Timestamp
from pymongo.errors import OperationFailure

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../../'))

from oplog_listener.connectors.cdc.oplog_tailer import OplogTailer

NS = "shop.products"


def make_client(entries):
    client = MagicMock()
    cursor = MagicMock()
    cursor.alive = True
    cursor.__iter__.return_value = iter(entries)
    client.local.oplog.rs.find.return_value.max_await_time_ms.return_value = cursor
    return client, cursor


class TestOplogTailer:
    """Test OplogTailer."""

    def test_unknown_event(self):
        with pytest.raises(ValueError, match="Unknown event"):
            OplogTailer("mongodb://x", NS, client=MagicMock()).on("change", print)

    def test_emits_ops_from_since(self):
        entries = [
            {"op": "i", "ns": NS, "o": {"_id": 1}, "ts": Timestamp(10, 1)},
            {"op": "i", "ns": NS, "o": {"_id": 2}, "ts": Timestamp(10, 2)},
        ]
        client, cursor = make_client(entries)
        tailer = OplogTailer("mongodb://x", NS, since=Timestamp(9, 0), client=client)

        received = []
        ended = threading.Event()

        def on_op(entry):
            received.append(entry)
            if len(received) == 2:
                tailer.stop()

        tailer.on("op", on_op).on("end", ended.set)
        tailer.tail()

        assert ended.wait(5)
        assert received == entries
        assert tailer.last_position == Timestamp(10, 2)
        query = client.local.oplog.rs.find.call_args[0][0]
        assert query == {"ns": NS, "ts": {"$gt": Timestamp(9, 0)}}
        cursor.close.assert_called()

    def test_start_position_defaults_to_oplog_end(self):
        client = MagicMock()
        client.local.oplog.rs.find.return_value.sort.return_value.limit.return_value = [{"ts": Timestamp(50, 7)}]
        tailer = OplogTailer("mongodb://x", NS, client=client)
        assert tailer._start_position() == Timestamp(50, 7)

    def test_resume_prefers_last_delivered_position(self):
        tailer = OplogTailer("mongodb://x", NS, since=Timestamp(1, 1), client=MagicMock())
        tailer.last_position = Timestamp(3, 1)
        assert tailer._start_position() == Timestamp(3, 1)

    def test_stream_error_emits_error_then_end(self):
        client = MagicMock()
        client.local.oplog.rs.find.side_effect = OperationFailure("not authorized on local")
        tailer = OplogTailer("mongodb://x", NS, since=Timestamp(1, 1), client=client)

        events = []
        ended = threading.Event()
        tailer.on("error", lambda e: events.append(("error", e)))
        tailer.on("end", lambda: (events.append(("end", None)), ended.set()))
        tailer.tail()

        assert ended.wait(5)
        assert events[0][0] == "error"
        assert isinstance(events[0][1], OperationFailure)
        assert events[-1] == ("end", None)

    def test_handler_errors_do_not_stop_stream(self):
        entries = [
            {"op": "i", "ns": NS, "o": {"_id": 1}, "ts": Timestamp(10, 1)},
            {"op": "i", "ns": NS, "o": {"_id": 2}, "ts": Timestamp(10, 2)},
        ]
        client, _ = make_client(entries)
        tailer = OplogTailer("mongodb://x", NS, since=Timestamp(9, 0), client=client)
        seen = []
        ended = threading.Event()

        def on_op(entry):
            seen.append(entry["o"]["_id"])
            if len(seen) == 2:
                tailer.stop()
            raise RuntimeError("handler bug")

        tailer.on("op", on_op).on("end", ended.set)
        tailer.tail()

        assert ended.wait(5)
        assert seen == [1, 2]
