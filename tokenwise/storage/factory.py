"""
Sink selection from configuration.

Sinks are process-wide owners of their storage client: every monitor()
built from the same backend configuration shares one sink, so a remote
client is constructed at most once.
"""

import threading
from typing import Dict, Tuple

from ..config.loader import DatabaseType, MonitorConfig, validate_config
from .base import LogSink
from .firebase import FirestoreSink
from .mongodb import MongoDBSink
from .sqlite import SQLiteSink

_sinks: Dict[Tuple[DatabaseType, str], LogSink] = {}
_sinks_lock = threading.Lock()


def _sink_key(config: MonitorConfig) -> Tuple[DatabaseType, str]:
    database = config.database
    # Backend configs hold dicts, so key on their repr rather than a hash
    section = {
        DatabaseType.SQLITE: database.sqlite,
        DatabaseType.MONGODB: database.mongodb,
        DatabaseType.FIREBASE: database.firebase,
    }[database.type]
    return database.type, repr(section)


def _build_sink(config: MonitorConfig) -> LogSink:
    database = config.database
    if database.type is DatabaseType.MONGODB:
        return MongoDBSink(database.mongodb)
    if database.type is DatabaseType.FIREBASE:
        return FirestoreSink(database.firebase)
    return SQLiteSink(database.sqlite)


def create_sink(config: MonitorConfig) -> LogSink:
    """Get the shared sink for the configured backend, building it once.

    Raises:
        ValueError: If the backend configuration is incomplete
    """
    validate_config(config)
    key = _sink_key(config)
    with _sinks_lock:
        sink = _sinks.get(key)
        if sink is None:
            sink = _build_sink(config)
            _sinks[key] = sink
    return sink


def close_sinks() -> None:
    """Close and forget every shared sink (e.g. at shutdown or between tests)."""
    with _sinks_lock:
        sinks = list(_sinks.values())
        _sinks.clear()
    for sink in sinks:
        sink.close()
