"""
Immutable listener configuration.

Built once at startup (usually from ``config.settings``) and passed to every
component constructor.
"""

from importlib import import_module
from typing import Any, Callable, Mapping, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .processing.batch_queue import DEFAULT_BATCH_PROCESS_DELAY_MS, DEFAULT_MAX_BATCH_SIZE, DEFAULT_SINK_ID_FIELD
from .processing.field_filter import ID_FIELD, Allow, Node, build_filter_tree

DEFAULT_CHECKPOINT_FILE = "lastop.json"
DEFAULT_CHECKPOINT_KEY = "mongoListenerLastOp"


def load_callable(path: str) -> Callable[..., Any]:
    """
    Import a callable from a ``module:attribute`` (or ``module.attribute``) path.

    Raises:
        ValueError: If the path is malformed or does not name a callable
    """
    module_name, sep, attr = path.partition(":")
    if not sep:
        module_name, _, attr = path.rpartition(".")
    if not module_name or not attr:
        raise ValueError(f"Invalid import path: {path!r}")

    target = getattr(import_module(module_name), attr)
    if not callable(target):
        raise ValueError(f"{path!r} is not callable")
    return target


class MongoConfig(BaseModel):
    """Source database coordinates."""
    model_config = ConfigDict(frozen=True)

    uri: str = Field(default="mongodb://localhost:27017", description="URI used to tail the oplog")
    uri_entire_collection_read: Optional[str] = Field(None, description="URI used to read documents")
    db: Optional[str] = Field(None, description="Watched database")
    collection: Optional[str] = Field(None, description="Watched collection")

    @property
    def namespace(self) -> str:
        return f"{self.db}.{self.collection}"

    @property
    def read_uri(self) -> str:
        return self.uri_entire_collection_read or self.uri


class RedisCheckpointConfig(BaseModel):
    """Remote checkpoint location."""
    model_config = ConfigDict(frozen=True)

    url: str
    key: str = DEFAULT_CHECKPOINT_KEY


class ListenerConfig(BaseModel):
    """Listener configuration."""
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    mongo: MongoConfig = Field(default_factory=MongoConfig)

    # Processing
    filter: Optional[Any] = Field(None, description="Filter tree; None allows every field")
    transform: Optional[Callable[..., Any]] = Field(None, description="Document transform function")
    process_docs: Optional[Callable[..., Any]] = Field(None, description="Sink; None is a no-op sink")
    batch_process_delay: int = Field(default=DEFAULT_BATCH_PROCESS_DELAY_MS, description="Flush debounce (ms)")
    max_batch_size: int = Field(default=DEFAULT_MAX_BATCH_SIZE, description="Batch size and backfill concurrency")
    id_field: str = Field(default=ID_FIELD, description="Identifier field of source documents")
    sink_id_field: str = Field(default=DEFAULT_SINK_ID_FIELD, description="Identifier field for the sink")
    fetch_workers: int = Field(default=8, description="Threads reading full documents for partial updates")
    backfill_workers: int = Field(default=8, description="Threads processing entire-collection documents")

    # Start position
    skip_full_upsert: bool = Field(default=True, description="Skip the entire-collection pass without a checkpoint")
    entire_collection_cursor: Optional[Any] = Field(None, description="Cursor override for the backfill")

    # Checkpoint storage
    redis_last_op: Optional[RedisCheckpointConfig] = Field(None, description="Remote checkpoint storage")
    checkpoint_database_url: Optional[str] = Field(None, description="SQL checkpoint storage")
    checkpoint_file: str = Field(default=DEFAULT_CHECKPOINT_FILE, description="Local checkpoint file")
    checkpoint_key: str = Field(default=DEFAULT_CHECKPOINT_KEY, description="Checkpoint key in the SQL table")

    # Status endpoint
    http_port: Optional[int] = Field(None, description="Status server port")
    http_host: str = Field(default="0.0.0.0", description="Status server bind address")

    @field_validator("filter", mode="before")
    @classmethod
    def build_filter(cls, v: Any) -> Any:
        if v is None or isinstance(v, (Allow, Node)):
            return v
        if isinstance(v, Mapping):
            return build_filter_tree(v)
        raise ValueError("filter must be a mapping or a filter tree")

    @field_validator("batch_process_delay")
    @classmethod
    def validate_delay(cls, v: int) -> int:
        if v < 0:
            raise ValueError("batch_process_delay must be non-negative")
        return v

    @field_validator("max_batch_size", "fetch_workers", "backfill_workers")
    @classmethod
    def validate_positive(cls, v: int, info) -> int:
        if v <= 0:
            raise ValueError(f"{info.field_name} must be positive")
        return v

    @classmethod
    def from_settings(cls, settings: Any, **overrides: Any) -> "ListenerConfig":
        """
        Build the configuration from environment settings.

        Args:
            settings: ``config.settings.Settings`` instance
            **overrides: Field values taking precedence over settings
        """
        values = dict(
            mongo=MongoConfig(
                uri=settings.mongo.url,
                uri_entire_collection_read=settings.mongo.full_read_url,
                db=settings.mongo.db,
                collection=settings.mongo.collection,
            ),
            filter=settings.filter,
            transform=load_callable(settings.transform) if settings.transform else None,
            process_docs=load_callable(settings.process_docs) if settings.process_docs else None,
            batch_process_delay=settings.batch_process_delay,
            max_batch_size=settings.max_batch_size,
            skip_full_upsert=settings.skip_full_upsert,
            redis_last_op=(
                RedisCheckpointConfig(url=settings.redis.url, key=settings.redis.key)
                if settings.redis.url else None
            ),
            checkpoint_database_url=settings.checkpoint.database_url,
            checkpoint_file=settings.checkpoint.file,
            checkpoint_key=settings.checkpoint.key,
            http_port=settings.http.port,
            http_host=settings.http.host,
        )
        values.update(overrides)
        return cls(**values)
