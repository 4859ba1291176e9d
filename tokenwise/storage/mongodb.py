"""
MongoDB store.

Records are written as documents with metadata kept as a nested document.
"""

import logging
from typing import Any, Callable, Dict, Optional

from ..config.loader import MongoDBConfig
from .base import BackgroundSink
from .models import UsageLogRecord

logger = logging.getLogger(__name__)


def _load_mongo_client_class():
    try:
        from pymongo import MongoClient
    except ImportError as e:
        raise ImportError(
            "pymongo is required for MongoDB support. "
            "Install it with: pip install 'tokenwise-tracker[mongodb]'"
        ) from e
    return MongoClient


def record_to_document(record: UsageLogRecord) -> Dict[str, Any]:
    """Project a usage record onto a MongoDB document."""
    document = {
        "timestamp": record.timestamp,
        "provider": record.provider,
        "model": record.model,
        "input_tokens": record.input_tokens,
        "output_tokens": record.output_tokens,
        "cost": record.cost,
        "latency_ms": record.latency_ms,
        "status": record.status.value,
        "metadata": record.metadata,
        "createdAt": record.timestamp,
    }
    if record.error_message:
        document["error_message"] = record.error_message
    return document


class MongoDBSink(BackgroundSink):
    """Sink writing usage records to a MongoDB collection."""

    destination = "MongoDB"

    def __init__(self, config: MongoDBConfig, client_factory: Optional[Callable[..., Any]] = None):
        self.config = config
        self._client_factory = client_factory
        self._client = None
        super().__init__()

    def _connect(self) -> Any:
        factory = self._client_factory or _load_mongo_client_class()
        self._client = factory(self.config.connection_url, **(self.config.options or {}))
        collection = self._client[self.config.database][self.config.collection]
        logger.info(
            "MongoDB usage log initialized for database: %s, collection: %s",
            self.config.database, self.config.collection,
        )
        return collection

    def _write(self, collection: Any, record: UsageLogRecord) -> None:
        collection.insert_one(record_to_document(record))

    def close(self) -> None:
        super().close()
        if self._client is not None:
            self._client.close()
