"""
Source collection access: document lookups and the entire-collection cursor.
"""

from typing import Any, Dict, Optional
import logging

import pymongo
from pymongo.collection import Collection
from pymongo.errors import PyMongoError

from ..errors import DocFetchError

logger = logging.getLogger(__name__)


def _get_client(mongo_uri: str) -> pymongo.MongoClient:
    """Create a MongoClient from a URI. Caller is responsible for closing if needed.

    Looking up ``pymongo.MongoClient`` at call time lets tests monkeypatch it
    (e.g. with mongomock) and have this module pick it up.
    """
    return pymongo.MongoClient(mongo_uri)


class SourceCollection:
    """
    Lazily connected handle on the watched collection, used for reads only.

    Thread Safety: YES (MongoClient is thread-safe)
    """

    def __init__(self, uri: str, database: str, collection: str, client: Optional[pymongo.MongoClient] = None):
        self.uri = uri
        self.database = database
        self.collection_name = collection
        self._client = client

    @property
    def collection(self) -> Collection:
        if self._client is None:
            self._client = _get_client(self.uri)
        return self._client[self.database][self.collection_name]

    def get_document(self, doc_id: Any) -> Optional[Dict[str, Any]]:
        """
        Read the current version of a document.

        Returns:
            The document, or None if it no longer exists

        Raises:
            DocFetchError: On database errors
        """
        try:
            return self.collection.find_one({"_id": doc_id})
        except PyMongoError as e:
            raise DocFetchError(f"Error reading document {doc_id!r}: {e}") from e

    def find_all(self):
        """Cursor over every document of the collection."""
        return self.collection.find()

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
