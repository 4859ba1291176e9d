"""
Repository pattern for data access.

Read-only queries over the SQLite usage log used by the analytics helpers
and the CLI dashboard.
"""

import json
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..config.loader import DEFAULT_SQLITE_FILENAME, DEFAULT_TABLE_NAME, SQLiteConfig
from .models import LogStatus, UsageLogRecord
from .sqlite import get_connection


@dataclass(frozen=True)
class GroupSummary:
    """Aggregated usage for one metadata value."""
    grouped_by: Any
    total_calls: int
    total_cost: Optional[float]
    avg_latency: float


def _metadata_path(key: str) -> str:
    """JSON path selecting a top-level metadata key, quoted for any characters."""
    escaped = key.replace('\\', '\\\\').replace('"', '\\"')
    return f'$."{escaped}"'


class LogRepository:
    """Repository for reading stored usage records.

    Missing databases or tables are treated as "no data yet" rather than errors,
    since the log is only created once a monitored application makes a call.
    """

    def __init__(self, db_path: str = DEFAULT_SQLITE_FILENAME, table_name: str = DEFAULT_TABLE_NAME):
        """Initialize the repository.

        Args:
            db_path: Path to SQLite database file
            table_name: Usage log table name

        Raises:
            ValueError: If the table name is not a valid identifier
        """
        config = SQLiteConfig(filename=db_path, table_name=table_name)
        self.db_path = config.filename
        self.table_name = config.table_name

    def exists(self) -> bool:
        """Whether the database file and usage table are present."""
        if not Path(self.db_path).exists():
            return False
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table' AND name=?",
                (self.table_name,)
            ).fetchone()
            return row is not None
        finally:
            conn.close()

    def _connect(self) -> sqlite3.Connection:
        return get_connection(self.db_path)

    def get_logs(self) -> List[UsageLogRecord]:
        """Get all stored records in insertion order.

        Returns:
            List of usage records, empty if nothing has been logged yet
        """
        if not self.exists():
            return []
        conn = self._connect()
        try:
            cursor = conn.execute(f"""
                SELECT timestamp, provider, model, input_tokens, output_tokens,
                       cost, latency_ms, status, error_message, metadata
                FROM {self.table_name}
                ORDER BY id
            """)
            records = []
            for row in cursor.fetchall():
                records.append(UsageLogRecord(
                    timestamp=row[0],
                    provider=row[1],
                    model=row[2],
                    input_tokens=row[3],
                    output_tokens=row[4],
                    cost=row[5],
                    latency_ms=row[6],
                    status=LogStatus(row[7]),
                    error_message=row[8],
                    metadata=json.loads(row[9]) if row[9] else None
                ))
            return records
        finally:
            conn.close()

    def get_cost_summary(self, group_by: Optional[str] = None) -> Dict[Any, Optional[float]]:
        """Get total cost, optionally grouped by a metadata key.

        Args:
            group_by: Metadata key to group on; records without it are excluded

        Returns:
            {"total_cost": sum} when ungrouped, else {metadata value: sum of cost}
        """
        if not self.exists():
            return {} if group_by else {"total_cost": None}
        conn = self._connect()
        try:
            if not group_by:
                row = conn.execute(f"SELECT SUM(cost) FROM {self.table_name}").fetchone()
                return {"total_cost": row[0]}

            path = _metadata_path(group_by)
            cursor = conn.execute(f"""
                SELECT json_extract(metadata, ?) AS grouped_by, SUM(cost) AS total_cost
                FROM {self.table_name}
                WHERE json_extract(metadata, ?) IS NOT NULL
                GROUP BY grouped_by
            """, (path, path))
            return {row[0]: row[1] for row in cursor.fetchall()}
        finally:
            conn.close()

    def get_group_summaries(self, group_by: str) -> List[GroupSummary]:
        """Get call count, cost and average latency per metadata value."""
        if not self.exists():
            return []
        conn = self._connect()
        try:
            path = _metadata_path(group_by)
            cursor = conn.execute(f"""
                SELECT
                    json_extract(metadata, ?) AS grouped_by,
                    COUNT(*) AS total_calls,
                    SUM(cost) AS total_cost,
                    AVG(latency_ms) AS avg_latency
                FROM {self.table_name}
                WHERE json_extract(metadata, ?) IS NOT NULL
                GROUP BY grouped_by
                ORDER BY grouped_by
            """, (path, path))
            return [
                GroupSummary(
                    grouped_by=row[0],
                    total_calls=row[1],
                    total_cost=row[2],
                    avg_latency=float(row[3] or 0)
                )
                for row in cursor.fetchall()
            ]
        finally:
            conn.close()


def get_logs(db_path: str = DEFAULT_SQLITE_FILENAME, table_name: str = DEFAULT_TABLE_NAME) -> List[UsageLogRecord]:
    """Read every stored usage record."""
    return LogRepository(db_path, table_name).get_logs()


def get_cost_summary(
    group_by: Optional[str] = None,
    db_path: str = DEFAULT_SQLITE_FILENAME,
    table_name: str = DEFAULT_TABLE_NAME
) -> Dict[Any, Optional[float]]:
    """Summarize cost, optionally grouped by a metadata key."""
    return LogRepository(db_path, table_name).get_cost_summary(group_by)
