"""
Embedded SQLite store.

Provides connections, schema creation and the append-only insert used by
the default sink.
"""

import logging
import sqlite3
from pathlib import Path

from ..config.loader import SQLiteConfig
from .base import LazyResource, LogSink, log_fallback
from .models import UsageLogRecord

logger = logging.getLogger(__name__)


def get_connection(db_path: str) -> sqlite3.Connection:
    """Create and return a SQLite database connection.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection
    """
    path = Path(db_path)
    return sqlite3.connect(str(path))


def initialize_schema(db_path: str, table_name: str = "llm_logs") -> None:
    """Create the usage log table if it doesn't exist.

    The table is an append-only ledger; rows are never updated or deleted
    by this package.

    Args:
        db_path: Path to SQLite database file
        table_name: Validated table name (see SQLiteConfig)
    """
    conn = get_connection(db_path)
    try:
        # WAL lets the CLI read while an application is writing
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute(f"""
            CREATE TABLE IF NOT EXISTS {table_name} (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                provider TEXT NOT NULL,
                model TEXT NOT NULL,
                input_tokens INTEGER,
                output_tokens INTEGER,
                cost REAL,
                latency_ms INTEGER NOT NULL,
                status TEXT NOT NULL CHECK(status IN ('SUCCESS', 'ERROR')),
                error_message TEXT,
                metadata TEXT
            )
        """)
        conn.commit()
    finally:
        conn.close()


def insert_log(record: UsageLogRecord, db_path: str, table_name: str = "llm_logs") -> None:
    """Insert a single usage record into the append-only ledger.

    Args:
        record: The usage record to store
        db_path: Path to SQLite database file
        table_name: Validated table name
    """
    conn = get_connection(db_path)
    try:
        conn.execute(f"""
            INSERT INTO {table_name}
            (timestamp, provider, model, input_tokens, output_tokens,
             cost, latency_ms, status, error_message, metadata)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            record.timestamp,
            record.provider,
            record.model,
            record.input_tokens,
            record.output_tokens,
            record.cost,
            record.latency_ms,
            record.status.value,
            record.error_message,
            record.metadata_json()
        ))
        conn.commit()
    finally:
        conn.close()


class SQLiteSink(LogSink):
    """Sink writing to a local SQLite file.

    The schema is created on the first insert and only once per sink.
    """

    def __init__(self, config: SQLiteConfig = SQLiteConfig()):
        self.config = config
        self.db_path = str(Path(config.filename).resolve())
        self._schema = LazyResource(self._create_schema)

    def _create_schema(self) -> bool:
        initialize_schema(self.db_path, self.config.table_name)
        logger.info("SQLite usage log initialized at %s", self.db_path)
        return True

    def insert_log(self, record: UsageLogRecord) -> None:
        try:
            self._schema.get()
        except Exception:
            logger.exception("Failed to initialize SQLite database at %s", self.db_path)
            log_fallback(record, "SQLite database")
            return
        try:
            insert_log(record, self.db_path, self.config.table_name)
        except Exception:
            logger.exception("Error inserting usage record into SQLite database")
