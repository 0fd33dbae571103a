"""
HTTP status endpoint: process health and listener progress as JSON.
"""

from typing import List, Optional
import logging
import os
import resource
import threading

import uvicorn
from fastapi import FastAPI
from pydantic import BaseModel, Field

from .. import __version__

logger = logging.getLogger(__name__)


class MemoryUsage(BaseModel):
    """Resident memory of the process."""
    max_rss_kb: int = Field(..., description="Peak resident set size (KiB)")


class ListenerStatus(BaseModel):
    """Status response."""
    name: str = Field(default="oplog-listener", description="Service name")
    version: str = Field(..., description="Package version")
    state: str = Field(..., description="Listener state")
    backfilling: bool = Field(..., description="Entire-collection pass running")
    memory: MemoryUsage
    loadavg: List[float] = Field(..., description="1, 5 and 15 minute load averages")
    last_op: Optional[str] = Field(None, description="Last checkpointed oplog position")
    queue_size: int = Field(..., description="Documents waiting for a batch flush")


def _memory_usage() -> MemoryUsage:
    return MemoryUsage(max_rss_kb=resource.getrusage(resource.RUSAGE_SELF).ru_maxrss)


def _loadavg() -> List[float]:
    try:
        return list(os.getloadavg())
    except OSError:
        return [0.0, 0.0, 0.0]


def create_status_app(listener) -> FastAPI:
    """Build the status app for a listener."""
    app = FastAPI(title="oplog-listener", version=__version__)

    @app.get("/", response_model=ListenerStatus)
    def get_status() -> ListenerStatus:
        status = listener.status()
        return ListenerStatus(
            version=__version__,
            state=status["state"],
            backfilling=status["backfilling"],
            memory=_memory_usage(),
            loadavg=_loadavg(),
            last_op=status["last_op"],
            queue_size=status["queue_size"],
        )

    return app


class StatusServer:
    """Serves the status app with uvicorn on a daemon thread."""

    def __init__(self, listener, host: str = "0.0.0.0", port: int = 8080):
        self.host = host
        self.port = port
        self.app = create_status_app(listener)
        self._server: Optional[uvicorn.Server] = None
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        config = uvicorn.Config(self.app, host=self.host, port=self.port, log_level="warning")
        self._server = uvicorn.Server(config)
        self._thread = threading.Thread(target=self._server.run, name="status-server", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        if self._server is None:
            return
        self._server.should_exit = True
        if self._thread is not None:
            self._thread.join(timeout)
