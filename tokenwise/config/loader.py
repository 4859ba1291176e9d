"""
Configuration management and loading.

Selects the storage backend and its connection parameters. Validation is
strict and happens before any request is monitored: a monitor that cannot
store records fails loudly instead of silently dropping usage data.
"""

import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

DEFAULT_SQLITE_FILENAME = "llm-logs.db"
DEFAULT_TABLE_NAME = "llm_logs"

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class DatabaseType(Enum):
    """Supported storage backends."""
    SQLITE = "sqlite"
    MONGODB = "mongodb"
    FIREBASE = "firebase"


@dataclass(frozen=True)
class SQLiteConfig:
    """Embedded file-based store."""
    filename: str = DEFAULT_SQLITE_FILENAME
    table_name: str = DEFAULT_TABLE_NAME

    def __post_init__(self):
        if not self.filename:
            raise ValueError("SQLite filename cannot be empty")
        if not _IDENTIFIER.match(self.table_name or ""):
            raise ValueError(f"Invalid SQLite table name: {self.table_name!r}")


@dataclass(frozen=True)
class MongoDBConfig:
    """Managed document store."""
    connection_url: Optional[str] = None
    database: Optional[str] = None
    collection: Optional[str] = DEFAULT_TABLE_NAME
    options: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class FirebaseConfig:
    """Cloud document store (Firestore)."""
    project_id: Optional[str] = None
    collection: Optional[str] = None
    client_email: Optional[str] = None
    private_key: Optional[str] = None
    service_account: Optional[Dict[str, Any]] = None
    service_account_key: Optional[str] = None


@dataclass(frozen=True)
class DatabaseConfig:
    """Backend selection plus per-backend parameters."""
    type: DatabaseType = DatabaseType.SQLITE
    sqlite: SQLiteConfig = field(default_factory=SQLiteConfig)
    mongodb: Optional[MongoDBConfig] = None
    firebase: Optional[FirebaseConfig] = None

    def __post_init__(self):
        if not isinstance(self.type, DatabaseType):
            object.__setattr__(self, "type", parse_database_type(self.type))


@dataclass(frozen=True)
class MonitorConfig:
    """Complete monitoring configuration."""
    database: DatabaseConfig = field(default_factory=DatabaseConfig)


def parse_database_type(value: Any) -> DatabaseType:
    """Parse a backend name, rejecting unsupported ones."""
    try:
        return DatabaseType(str(value).lower())
    except ValueError:
        supported = ", ".join(t.value for t in DatabaseType)
        raise ValueError(
            f"Unsupported database type: {value}. Supported types are: {supported}"
        )


def validate_config(config: MonitorConfig) -> None:
    """Fail fast when the selected backend is missing required parameters.

    Raises:
        ValueError: If the configuration cannot be used to store records
    """
    database = config.database
    if database.type is DatabaseType.FIREBASE:
        firebase = database.firebase
        if firebase is None:
            raise ValueError("Firebase configuration is required when using Firebase database")
        if not firebase.project_id:
            raise ValueError("Firebase project_id is required")
        if not firebase.collection:
            raise ValueError("Firebase collection name is required")
    elif database.type is DatabaseType.MONGODB:
        mongodb = database.mongodb
        if mongodb is None:
            raise ValueError("MongoDB configuration is required when using MongoDB database")
        if not mongodb.connection_url:
            raise ValueError("MongoDB connection_url is required")
        if not mongodb.database:
            raise ValueError("MongoDB database name is required")
        if not mongodb.collection:
            raise ValueError("MongoDB collection name is required")


def load_monitor_config(path: str) -> MonitorConfig:
    """Load and validate monitoring configuration from a YAML file.

    Expected layout:

        database:
          type: mongodb
          mongodb:
            connection_url: mongodb://localhost:27017
            database: metering

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated MonitorConfig

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Monitor config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    _reject_unknown(raw_config, {'database'}, "configuration")

    database_data = raw_config.get('database') or {}
    if not isinstance(database_data, dict):
        raise ValueError("'database' must be a dictionary")
    _reject_unknown(database_data, {'type', 'sqlite', 'mongodb', 'firebase'}, "database")

    config = MonitorConfig(database=DatabaseConfig(
        type=parse_database_type(database_data.get('type', DatabaseType.SQLITE.value)),
        sqlite=_parse_section(database_data, 'sqlite', SQLiteConfig) or SQLiteConfig(),
        mongodb=_parse_section(database_data, 'mongodb', MongoDBConfig),
        firebase=_parse_section(database_data, 'firebase', FirebaseConfig),
    ))
    validate_config(config)
    return config


def _parse_section(data: Dict, name: str, config_class):
    """Build a backend config section, rejecting unknown keys."""
    section = data.get(name)
    if section is None:
        return None
    if not isinstance(section, dict):
        raise ValueError(f"'database.{name}' must be a dictionary")
    _reject_unknown(section, set(config_class.__dataclass_fields__), f"database.{name}")
    return config_class(**section)


def _reject_unknown(data: Dict, allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def config_from_env(environ: Optional[Mapping[str, str]] = None) -> MonitorConfig:
    """Build configuration from environment variables.

    TOKENWISE_DB_TYPE selects the backend (default sqlite); the remaining
    variables fill that backend's parameters.
    """
    env = os.environ if environ is None else environ
    db_type = parse_database_type(env.get("TOKENWISE_DB_TYPE", DatabaseType.SQLITE.value))

    sqlite = SQLiteConfig(
        filename=env.get("TOKENWISE_SQLITE_PATH", DEFAULT_SQLITE_FILENAME),
        table_name=env.get("TOKENWISE_SQLITE_TABLE", DEFAULT_TABLE_NAME),
    )
    mongodb = None
    firebase = None
    if db_type is DatabaseType.MONGODB:
        mongodb = MongoDBConfig(
            connection_url=env.get("MONGODB_URL"),
            database=env.get("MONGODB_DATABASE"),
            collection=env.get("MONGODB_COLLECTION", DEFAULT_TABLE_NAME),
        )
    elif db_type is DatabaseType.FIREBASE:
        firebase = FirebaseConfig(
            project_id=env.get("FIREBASE_PROJECT_ID"),
            collection=env.get("FIREBASE_COLLECTION"),
            client_email=env.get("FIREBASE_CLIENT_EMAIL"),
            private_key=env.get("FIREBASE_PRIVATE_KEY"),
            service_account_key=env.get("GOOGLE_APPLICATION_CREDENTIALS"),
        )

    config = MonitorConfig(database=DatabaseConfig(
        type=db_type, sqlite=sqlite, mongodb=mongodb, firebase=firebase
    ))
    validate_config(config)
    return config
