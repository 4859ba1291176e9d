"""
Unit tests for sink machinery and the document-store sinks.

Remote drivers are replaced with mocks through the sinks' factory hooks.
"""

import json
import logging
import threading
from types import SimpleNamespace
from unittest.mock import MagicMock, Mock, patch

import pytest

from tokenwise.config.loader import (
    DatabaseConfig,
    DatabaseType,
    FirebaseConfig,
    MongoDBConfig,
    MonitorConfig,
    SQLiteConfig,
)
from tokenwise.sdk.openai_client import MonitoredOpenAI
from tokenwise.storage.base import LazyResource, MemorySink
from tokenwise.storage.factory import close_sinks, create_sink
from tokenwise.storage.firebase import FirestoreHandle, FirestoreSink, _build_credential, record_to_firestore
from tokenwise.storage.models import UsageLogRecord
from tokenwise.storage.mongodb import MongoDBSink, record_to_document
from tokenwise.storage.sqlite import SQLiteSink

MONGO_CONFIG = MongoDBConfig(
    connection_url="mongodb://localhost:27017",
    database="metering",
    collection="llm_logs",
    options={"serverSelectionTimeoutMS": 1000}
)
FIREBASE_CONFIG = FirebaseConfig(project_id="demo-project", collection="llm_logs")


def make_record(**overrides):
    values = dict(model="gpt-4o-mini", latency_ms=42, input_tokens=10, output_tokens=20,
                  cost=0.0000534, metadata={"userId": "A"})
    values.update(overrides)
    return UsageLogRecord.success(**values)


class TestLazyResource:
    """Test initialize-once guarding."""

    def test_factory_runs_once(self):
        factory = Mock(return_value="client")
        resource = LazyResource(factory)

        assert not resource.is_ready
        assert resource.get() == "client"
        assert resource.get() == "client"
        assert resource.is_ready
        factory.assert_called_once()

    def test_concurrent_get_constructs_once(self):
        factory = Mock(return_value=object())
        resource = LazyResource(factory)
        threads = [threading.Thread(target=resource.get) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        factory.assert_called_once()

    def test_failure_is_recorded_and_retryable(self):
        factory = Mock(side_effect=[RuntimeError("offline"), "client"])
        resource = LazyResource(factory)

        with pytest.raises(RuntimeError):
            resource.get()
        assert resource.failed
        assert resource.get() == "client"
        assert not resource.failed


class TestMemorySink:

    def test_keeps_records(self):
        sink = MemorySink()
        record = make_record()
        sink.insert_log(record)
        assert sink.records == [record]


class TestMongoDBSink:
    """Test the MongoDB sink with a mocked client."""

    def test_insert_writes_document(self):
        client = MagicMock()
        factory = Mock(return_value=client)
        sink = MongoDBSink(MONGO_CONFIG, client_factory=factory)

        record = make_record()
        sink.insert_log(record)
        sink.flush(timeout=5)

        factory.assert_called_once_with("mongodb://localhost:27017", serverSelectionTimeoutMS=1000)
        client.__getitem__.assert_called_with("metering")
        collection = client.__getitem__.return_value.__getitem__.return_value
        collection.insert_one.assert_called_once_with(record_to_document(record))
        sink.close()
        client.close.assert_called_once()

    def test_document_shape(self):
        record = make_record()
        document = record_to_document(record)
        assert document["metadata"] == {"userId": "A"}
        assert document["createdAt"] == record.timestamp
        assert document["status"] == "SUCCESS"
        assert "error_message" not in document

        error = UsageLogRecord.error(model="gpt-4o", latency_ms=3, error_message="boom")
        error_document = record_to_document(error)
        assert error_document["error_message"] == "boom"
        assert error_document["cost"] is None

    def test_metadata_snapshot_survives_caller_mutation(self):
        """A queued write stores metadata as it was when the call finished."""
        gate = threading.Event()
        client = MagicMock()

        def slow_factory(*args, **kwargs):
            gate.wait(timeout=5)
            return client

        sink = MongoDBSink(MONGO_CONFIG, client_factory=slow_factory)
        openai_client = Mock()
        openai_client.chat.completions.create.return_value = SimpleNamespace(
            model="gpt-4o-mini",
            usage=SimpleNamespace(prompt_tokens=10, completion_tokens=20)
        )
        metadata = {"userId": "A", "tags": ["x"]}

        MonitoredOpenAI(openai_client, sink).chat.completions.create(
            model="gpt-4o-mini", messages=[], monitor_options={"metadata": metadata}
        )
        metadata["userId"] = "MUTATED"
        metadata["tags"].append("y")
        gate.set()
        sink.flush(timeout=5)
        sink.close()

        collection = client.__getitem__.return_value.__getitem__.return_value
        document = collection.insert_one.call_args[0][0]
        assert document["metadata"] == {"userId": "A", "tags": ["x"]}

    def test_connection_failure_falls_back_to_log(self, caplog):
        factory = Mock(side_effect=ConnectionError("unreachable"))

        with caplog.at_level(logging.WARNING):
            sink = MongoDBSink(MONGO_CONFIG, client_factory=factory)
            sink.insert_log(make_record())
            sink.flush(timeout=5)
            sink.close()

        assert "Failed to initialize MongoDB" in caplog.text
        assert "MongoDB is not available" in caplog.text

    def test_write_failure_is_absorbed(self, caplog):
        client = MagicMock()
        collection = client.__getitem__.return_value.__getitem__.return_value
        collection.insert_one.side_effect = RuntimeError("write concern")
        sink = MongoDBSink(MONGO_CONFIG, client_factory=Mock(return_value=client))

        with caplog.at_level(logging.ERROR):
            sink.insert_log(make_record())
            sink.flush(timeout=5)
        sink.close()

        assert "Failed to insert usage record into MongoDB" in caplog.text

    def test_insert_after_close_falls_back(self, caplog):
        sink = MongoDBSink(MONGO_CONFIG, client_factory=Mock(return_value=MagicMock()))
        sink.close()

        with caplog.at_level(logging.WARNING):
            sink.insert_log(make_record())
        assert "MongoDB is not available" in caplog.text


class TestFirestoreSink:
    """Test the Firestore sink with a mocked app."""

    def test_insert_writes_document(self):
        client = MagicMock()
        factory = Mock(return_value=FirestoreHandle(client=client, server_timestamp="SERVER_TS"))
        sink = FirestoreSink(FIREBASE_CONFIG, app_factory=factory)

        sink.insert_log(make_record())
        sink.flush(timeout=5)
        sink.close()

        factory.assert_called_once_with(FIREBASE_CONFIG)
        client.collection.assert_called_once_with("llm_logs")
        document = client.collection.return_value.add.call_args[0][0]
        assert document["createdAt"] == "SERVER_TS"
        assert json.loads(document["metadata"]) == {"userId": "A"}
        assert document["input_tokens"] == 10

    def test_initialization_failure_falls_back_to_log(self, caplog):
        factory = Mock(side_effect=ImportError("firebase-admin is required"))

        with caplog.at_level(logging.WARNING):
            sink = FirestoreSink(FIREBASE_CONFIG, app_factory=factory)
            sink.insert_log(make_record())
            sink.flush(timeout=5)
            sink.close()

        assert "Firebase is not available" in caplog.text

    def test_empty_metadata_is_kept(self):
        document = record_to_firestore(make_record(metadata={}), "TS")
        assert document["metadata"] == "{}"
        assert record_to_firestore(make_record(metadata=None), "TS")["metadata"] is None

    def test_credential_from_client_email_and_key(self):
        credentials = Mock()
        config = FirebaseConfig(
            project_id="demo-project",
            collection="logs",
            client_email="svc@demo.iam.gserviceaccount.com",
            private_key="-----BEGIN KEY-----\\nabc\\n-----END KEY-----"
        )

        _build_credential(credentials, config)

        info = credentials.Certificate.call_args[0][0]
        assert info["client_email"] == "svc@demo.iam.gserviceaccount.com"
        assert info["private_key"] == "-----BEGIN KEY-----\nabc\n-----END KEY-----"
        assert info["project_id"] == "demo-project"

    def test_credential_precedence(self):
        credentials = Mock()

        _build_credential(credentials, FirebaseConfig(project_id="p", collection="c", service_account={"a": 1}))
        credentials.Certificate.assert_called_with({"a": 1})

        _build_credential(credentials, FirebaseConfig(project_id="p", collection="c", service_account_key="/key.json"))
        credentials.Certificate.assert_called_with("/key.json")

        _build_credential(credentials, FirebaseConfig(project_id="p", collection="c"))
        credentials.ApplicationDefault.assert_called_once()


class TestCreateSink:
    """Test sink selection from configuration."""

    def setup_method(self):
        close_sinks()

    def teardown_method(self):
        close_sinks()

    def test_default_is_sqlite(self):
        assert isinstance(create_sink(MonitorConfig()), SQLiteSink)

    @patch('tokenwise.storage.factory.MongoDBSink')
    def test_mongodb(self, mock_sink_class):
        config = MonitorConfig(database=DatabaseConfig(type=DatabaseType.MONGODB, mongodb=MONGO_CONFIG))
        assert create_sink(config) is mock_sink_class.return_value
        mock_sink_class.assert_called_once_with(MONGO_CONFIG)

    @patch('tokenwise.storage.factory.FirestoreSink')
    def test_firebase(self, mock_sink_class):
        config = MonitorConfig(database=DatabaseConfig(type="firebase", firebase=FIREBASE_CONFIG))
        assert create_sink(config) is mock_sink_class.return_value
        mock_sink_class.assert_called_once_with(FIREBASE_CONFIG)

    @patch('tokenwise.storage.factory.MongoDBSink')
    def test_same_config_shares_sink(self, mock_sink_class):
        config = MonitorConfig(database=DatabaseConfig(type=DatabaseType.MONGODB, mongodb=MONGO_CONFIG))
        same = MonitorConfig(database=DatabaseConfig(type=DatabaseType.MONGODB, mongodb=MongoDBConfig(
            connection_url="mongodb://localhost:27017",
            database="metering",
            collection="llm_logs",
            options={"serverSelectionTimeoutMS": 1000}
        )))

        assert create_sink(config) is create_sink(same)
        mock_sink_class.assert_called_once()

    def test_different_configs_get_different_sinks(self):
        first = create_sink(MonitorConfig(database=DatabaseConfig(sqlite=SQLiteConfig(filename="a.db"))))
        second = create_sink(MonitorConfig(database=DatabaseConfig(sqlite=SQLiteConfig(filename="b.db"))))
        assert first is not second

    @patch('tokenwise.storage.factory.MongoDBSink')
    def test_close_sinks_closes_and_forgets(self, mock_sink_class):
        config = MonitorConfig(database=DatabaseConfig(type=DatabaseType.MONGODB, mongodb=MONGO_CONFIG))
        create_sink(config)

        close_sinks()

        mock_sink_class.return_value.close.assert_called_once()
        create_sink(config)
        assert mock_sink_class.call_count == 2

    def test_incomplete_firebase_config(self):
        config = MonitorConfig(database=DatabaseConfig(
            type=DatabaseType.FIREBASE, firebase=FirebaseConfig(project_id="p")
        ))
        with pytest.raises(ValueError, match="Firebase collection name is required"):
            create_sink(config)
