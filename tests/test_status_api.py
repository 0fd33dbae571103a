"""Tests for the status endpoint."""

from unittest.mock import Mock

from fastapi.testclient import TestClient

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from oplog_listener import __version__
from oplog_listener.api.status_api import StatusServer, create_status_app


def make_listener(**status):
    listener = Mock()
    listener.status.return_value = {
        "state": "streaming",
        "backfilling": False,
        "last_op": None,
        "queue_size": 0,
        **status,
    }
    return listener


def test_status_reports_listener_progress():
    client = TestClient(create_status_app(make_listener(last_op="4294967298", queue_size=12, backfilling=True)))

    response = client.get("/")
    assert response.status_code == 200
    body = response.json()
    assert body["name"] == "oplog-listener"
    assert body["version"] == __version__
    assert body["state"] == "streaming"
    assert body["backfilling"] is True
    assert body["last_op"] == "4294967298"
    assert body["queue_size"] == 12


def test_status_reports_process_health():
    client = TestClient(create_status_app(make_listener()))

    body = client.get("/").json()
    assert body["memory"]["max_rss_kb"] > 0
    assert len(body["loadavg"]) == 3
    assert body["last_op"] is None


def test_server_stop_without_start():
    StatusServer(make_listener(), port=0).stop()
