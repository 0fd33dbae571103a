"""
Oplog listener: tails a MongoDB collection's oplog and keeps a sink in sync.
"""

__version__ = "1.2.0"
app_version = ".".join(__version__.split(".")[:2])

from .config import ListenerConfig, MongoConfig, RedisCheckpointConfig  # noqa: E402
from .listener import Listener, ListenerState  # noqa: E402
from .app import ListenerApp  # noqa: E402


def create(config: ListenerConfig) -> Listener:
    """Create a listener for a configuration."""
    return Listener(config)


__all__ = [
    "__version__",
    "app_version",
    "ListenerConfig",
    "MongoConfig",
    "RedisCheckpointConfig",
    "Listener",
    "ListenerState",
    "ListenerApp",
    "create",
]
