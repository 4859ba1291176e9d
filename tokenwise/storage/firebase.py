"""
Firestore store via the Firebase Admin SDK.

Credentials are taken, in order, from an explicit client email and private
key, a service account mapping, a service account key file, or application
default credentials.
"""

import json
import logging
from collections import namedtuple
from typing import Any, Callable, Dict, Optional

from ..config.loader import FirebaseConfig
from .base import BackgroundSink
from .models import UsageLogRecord

logger = logging.getLogger(__name__)

FirestoreHandle = namedtuple("FirestoreHandle", ["client", "server_timestamp"])


def _build_credential(credentials: Any, config: FirebaseConfig) -> Any:
    if config.client_email and config.private_key:
        return credentials.Certificate({
            "type": "service_account",
            "project_id": config.project_id,
            "client_email": config.client_email,
            # Keys from env files usually carry escaped newlines
            "private_key": config.private_key.replace("\\n", "\n"),
            "token_uri": "https://oauth2.googleapis.com/token",
        })
    if config.service_account:
        return credentials.Certificate(config.service_account)
    if config.service_account_key:
        return credentials.Certificate(config.service_account_key)
    return credentials.ApplicationDefault()


def initialize_firestore(config: FirebaseConfig) -> FirestoreHandle:
    """Initialize a dedicated Firebase app and return its Firestore client."""
    try:
        import firebase_admin
        from firebase_admin import credentials, firestore
    except ImportError as e:
        raise ImportError(
            "firebase-admin is required for Firebase support. "
            "Install it with: pip install 'tokenwise-tracker[firebase]'"
        ) from e

    app_name = f"tokenwise-{config.project_id}"
    try:
        app = firebase_admin.get_app(app_name)
    except ValueError:
        app = firebase_admin.initialize_app(
            _build_credential(credentials, config),
            {"projectId": config.project_id},
            name=app_name,
        )
    return FirestoreHandle(client=firestore.client(app), server_timestamp=firestore.SERVER_TIMESTAMP)


def record_to_firestore(record: UsageLogRecord, server_timestamp: Any) -> Dict[str, Any]:
    """Project a usage record onto a Firestore document."""
    document = {
        "timestamp": record.timestamp,
        "provider": record.provider,
        "model": record.model,
        "input_tokens": record.input_tokens,
        "output_tokens": record.output_tokens,
        "cost": record.cost,
        "latency_ms": record.latency_ms,
        "status": record.status.value,
        "metadata": json.dumps(record.metadata, default=str) if record.metadata is not None else None,
        "createdAt": server_timestamp,
    }
    if record.error_message:
        document["error_message"] = record.error_message
    return document


class FirestoreSink(BackgroundSink):
    """Sink writing usage records to a Firestore collection."""

    destination = "Firebase"

    def __init__(self, config: FirebaseConfig, app_factory: Optional[Callable[[FirebaseConfig], FirestoreHandle]] = None):
        self.config = config
        self._app_factory = app_factory or initialize_firestore
        super().__init__()

    def _connect(self) -> FirestoreHandle:
        handle = self._app_factory(self.config)
        logger.info(
            "Firebase usage log initialized for project: %s, collection: %s",
            self.config.project_id, self.config.collection,
        )
        return handle

    def _write(self, handle: FirestoreHandle, record: UsageLogRecord) -> None:
        handle.client.collection(self.config.collection).add(
            record_to_firestore(record, handle.server_timestamp)
        )
