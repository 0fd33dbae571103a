"""
End-to-end pipeline test.

The source collection is a mongomock collection; the oplog stream is driven by
hand since mongomock has no replication oplog.
"""

import threading

import pytest
from bson import Timestamp

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../../'))

from oplog_listener import ListenerConfig, MongoConfig, create
from oplog_listener.connectors.cdc.checkpoint_store import FileCheckpointStore
from oplog_listener.connectors.mongo import SourceCollection
from oplog_listener.listener import Listener

mongomock = pytest.importorskip("mongomock")

NS = "shop.products"


class ManualTailer:
    """Op subscription fed by the test."""

    def __init__(self, since):
        self.since = since
        self.handlers = {"op": [], "error": [], "end": []}

    def on(self, event, handler):
        self.handlers[event].append(handler)
        return self

    def tail(self):
        pass

    def stop(self, timeout=None):
        for handler in self.handlers["end"]:
            handler()

    def push(self, entry):
        for handler in self.handlers["op"]:
            handler(entry)


class CollectingSink:

    def __init__(self):
        self.docs = []
        self.calls = 0
        self._lock = threading.Lock()

    def __call__(self, docs):
        with self._lock:
            self.calls += 1
            self.docs.extend(docs)
        return {"objectIDs": [d["objectID"] for d in docs]}


@pytest.fixture
def client():
    client = mongomock.MongoClient()
    client.shop.products.insert_many([
        {"_id": 1, "name": "pen", "price": 2, "internal": {"counter": 0}},
        {"_id": 2, "name": "ink", "price": 5, "internal": {"counter": 0}},
        {"_id": 3, "name": "pad", "price": 3, "internal": {"counter": 0}},
    ])
    return client


def build(client, checkpoint_path, sink, tailers, **overrides):
    values = dict(
        mongo=MongoConfig(db="shop", collection="products"),
        filter={"name": True, "price": True},
        transform=lambda doc: {**doc, "label": doc.get("name", "").upper()},
        process_docs=sink,
        batch_process_delay=20,
        max_batch_size=2,
        skip_full_upsert=False,
    )
    values.update(overrides)

    def factory(since):
        tailer = ManualTailer(since)
        tailers.append(tailer)
        return tailer

    return Listener(
        ListenerConfig(**values),
        checkpoint_store=FileCheckpointStore(checkpoint_path),
        source=SourceCollection("mongodb://unused", "shop", "products", client=client),
        tailer_factory=factory,
    )


class TestPipeline:
    """Backfill, live ops and resume."""

    def test_backfill_then_live_op(self, client, tmp_path):
        sink = CollectingSink()
        tailers = []
        listener = build(client, tmp_path / "lastop.json", sink, tailers)
        listener.start()
        listener._backfill_thread.join(10)
        assert listener.backfill_result.count == 3

        client.shop.products.update_one({"_id": 2}, {"$set": {"name": "blue ink"}})
        tailers[0].push({
            "op": "u", "ns": NS, "o": {"$set": {"name": "blue ink"}}, "o2": {"_id": 2},
            "ts": Timestamp(1700000000, 1),
        })
        listener.stop()

        by_id = {}
        for doc in sink.docs:
            by_id.setdefault(doc["objectID"], []).append(doc)
        assert sorted(by_id) == [1, 2, 3]
        assert len(sink.docs) == 4
        assert by_id[2][-1] == {"objectID": 2, "name": "blue ink", "price": 5, "label": "BLUE INK"}
        assert all("internal" not in doc for doc in sink.docs)
        assert FileCheckpointStore(tmp_path / "lastop.json").get() == Timestamp(1700000000, 1)

    def test_irrelevant_update_reaches_no_sink(self, client, tmp_path):
        sink = CollectingSink()
        tailers = []
        listener = build(client, tmp_path / "lastop.json", sink, tailers, skip_full_upsert=True)
        listener.start()
        tailers[0].push({
            "op": "u", "ns": NS, "o": {"$set": {"internal.counter": 5}}, "o2": {"_id": 1},
            "ts": Timestamp(1700000000, 2),
        })
        listener.stop()

        assert sink.calls == 0
        assert FileCheckpointStore(tmp_path / "lastop.json").get() == Timestamp(1700000000, 2)

    def test_restart_resumes_from_checkpoint(self, client, tmp_path):
        path = tmp_path / "lastop.json"
        sink = CollectingSink()
        tailers = []

        first = build(client, path, sink, tailers, skip_full_upsert=True)
        first.start()
        tailers[0].push({"op": "i", "ns": NS, "o": {"_id": 4, "name": "cap", "price": 1},
                         "ts": Timestamp(1700000100, 1)})
        first.stop()

        second = build(client, path, sink, tailers)
        second.start()
        second.stop()

        assert tailers[1].since == Timestamp(1700000100, 1)
        assert second.backfill_result is None
        assert [d["objectID"] for d in sink.docs] == [4]

    def test_create(self, tmp_path):
        listener = create(ListenerConfig(
            mongo=MongoConfig(db="shop", collection="products"),
            checkpoint_file=str(tmp_path / "lastop.json"),
        ))
        assert listener.namespace == NS
        assert listener.state.value == "initializing"
