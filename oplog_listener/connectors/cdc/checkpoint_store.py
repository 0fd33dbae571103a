"""
Checkpoint stores for the last processed oplog position.

Three interchangeable backends:
- ``FileCheckpointStore``: local file, overwritten in place
- ``RedisCheckpointStore``: remote key-value store
- ``SqlCheckpointStore``: a row per key in a SQL table

Backend failures surface as ``CheckpointError``; nothing is retried here.
An unreadable stored value is logged and treated as "no checkpoint".
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union
import logging

import redis
from bson import Timestamp
from prometheus_client import Counter
from sqlalchemy import BigInteger, Column, DateTime, Integer, String, create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .position import position_from_string, position_to_string
from ...errors import CheckpointError

logger = logging.getLogger(__name__)

Base = declarative_base()

checkpoint_saves_total = Counter(
    'oplog_listener_checkpoint_saves_total',
    'Total checkpoint saves',
    ['status']
)

checkpoint_loads_total = Counter(
    'oplog_listener_checkpoint_loads_total',
    'Total checkpoint loads',
    ['status']
)


class CheckpointStore(ABC):
    """Get/set the last processed position."""

    @abstractmethod
    def get(self) -> Optional[Timestamp]:
        """
        Load the stored position.

        Returns:
            The position, or None if nothing (valid) is stored

        Raises:
            CheckpointError: If the backend cannot be read
        """

    @abstractmethod
    def set(self, position: Timestamp) -> None:
        """
        Store a position, replacing the previous one.

        Raises:
            CheckpointError: If the backend cannot be written
        """

    def close(self) -> None:
        pass

    def _parse(self, value: Union[str, bytes], source: str) -> Optional[Timestamp]:
        try:
            position = position_from_string(value)
        except ValueError as e:
            checkpoint_loads_total.labels(status='invalid').inc()
            logger.error(f"error reading lastop {source}: {e}")
            return None
        checkpoint_loads_total.labels(status='success').inc()
        return position


class FileCheckpointStore(CheckpointStore):
    """Position kept as text in a local file."""

    def __init__(self, path: Union[str, Path] = "lastop.json"):
        self.path = Path(path)

    def get(self) -> Optional[Timestamp]:
        if not self.path.exists():
            checkpoint_loads_total.labels(status='not_found').inc()
            return None
        try:
            value = self.path.read_bytes()
        except OSError as e:
            checkpoint_loads_total.labels(status='error').inc()
            raise CheckpointError(f"Failed to read {self.path}: {e}") from e
        return self._parse(value, "file")

    def set(self, position: Timestamp) -> None:
        try:
            self.path.write_text(position_to_string(position), encoding="utf-8")
        except OSError as e:
            checkpoint_saves_total.labels(status='error').inc()
            raise CheckpointError(f"Failed to write {self.path}: {e}") from e
        checkpoint_saves_total.labels(status='success').inc()


class RedisCheckpointStore(CheckpointStore):
    """Position kept under a Redis key."""

    def __init__(self, url: str, key: str = "mongoListenerLastOp", client: Optional[redis.Redis] = None):
        """
        Args:
            url: Redis URL (the client connects lazily)
            key: Key holding the position
            client: Pre-built client, mainly for tests
        """
        self.url = url
        self.key = key
        self._client = client

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.Redis.from_url(self.url)
        return self._client

    def get(self) -> Optional[Timestamp]:
        try:
            value = self.client.get(self.key)
        except (redis.RedisError, ValueError) as e:
            checkpoint_loads_total.labels(status='error').inc()
            raise CheckpointError(f"Redis error reading {self.key}: {e}") from e
        if not value:
            checkpoint_loads_total.labels(status='not_found').inc()
            return None
        return self._parse(value, "redis key")

    def set(self, position: Timestamp) -> None:
        try:
            self.client.set(self.key, position_to_string(position))
        except (redis.RedisError, ValueError) as e:
            checkpoint_saves_total.labels(status='error').inc()
            raise CheckpointError(f"Redis error writing {self.key}: {e}") from e
        checkpoint_saves_total.labels(status='success').inc()

    def close(self) -> None:
        if self._client is not None:
            self._client.close()


class ListenerCheckpoint(Base):
    """
    Checkpoint row.

    Stores:
    - key: Checkpoint key (one per listener)
    - position: Encoded oplog timestamp
    - updated_at: Last update time
    """
    __tablename__ = "listener_checkpoints"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    key = Column(String(255), nullable=False, unique=True, index=True)
    position = Column(String(32), nullable=False)
    updated_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))


class SqlCheckpointStore(CheckpointStore):
    """
    Position kept in the ``listener_checkpoints`` table.

    Thread Safety: YES (session per call)
    """

    def __init__(self, database_url: str, key: str = "mongoListenerLastOp"):
        """
        Raises:
            CheckpointError: If the database cannot be reached
        """
        self.key = key
        try:
            self.engine = create_engine(database_url, pool_pre_ping=True, echo=False)
            self.SessionLocal = sessionmaker(bind=self.engine, autoflush=False)
            Base.metadata.create_all(self.engine)
        except SQLAlchemyError as e:
            logger.error(f"Failed to initialize SqlCheckpointStore: {e}")
            raise CheckpointError(f"Database connection failed: {e}") from e

    def get(self) -> Optional[Timestamp]:
        session: Optional[Session] = None
        try:
            session = self.SessionLocal()
            row = session.query(ListenerCheckpoint).filter_by(key=self.key).first()
            value = row.position if row else None
        except SQLAlchemyError as e:
            checkpoint_loads_total.labels(status='error').inc()
            raise CheckpointError(f"Database error: {e}") from e
        finally:
            if session:
                session.close()

        if value is None:
            checkpoint_loads_total.labels(status='not_found').inc()
            return None
        return self._parse(value, "row")

    def set(self, position: Timestamp) -> None:
        session: Optional[Session] = None
        try:
            session = self.SessionLocal()
            with session.begin():
                row = session.query(ListenerCheckpoint).filter_by(key=self.key).with_for_update().first()
                if row:
                    row.position = position_to_string(position)
                    row.updated_at = datetime.now(timezone.utc)
                else:
                    session.add(ListenerCheckpoint(key=self.key, position=position_to_string(position)))
        except SQLAlchemyError as e:
            checkpoint_saves_total.labels(status='error').inc()
            raise CheckpointError(f"Database error: {e}") from e
        finally:
            if session:
                session.close()
        checkpoint_saves_total.labels(status='success').inc()

    def close(self) -> None:
        self.engine.dispose()


def create_checkpoint_store(config) -> CheckpointStore:
    """
    Pick the backend for a ``ListenerConfig``: Redis if configured, then SQL,
    then the local file.
    """
    if config.redis_last_op is not None:
        return RedisCheckpointStore(config.redis_last_op.url, config.redis_last_op.key)
    if config.checkpoint_database_url:
        return SqlCheckpointStore(config.checkpoint_database_url, config.checkpoint_key)
    return FileCheckpointStore(config.checkpoint_file)
