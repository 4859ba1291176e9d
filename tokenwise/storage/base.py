"""
Log sink contract and shared sink machinery.

Sinks are fire-and-forget from the caller's perspective: every failure is
absorbed and logged here so metering can never break the request path.
"""

import json
import logging
import threading
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Generic, List, Optional, TypeVar

from .models import UsageLogRecord

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LogSink(ABC):
    """Durable destination for finalized usage records."""

    @abstractmethod
    def insert_log(self, record: UsageLogRecord) -> None:
        """Persist a record. Must never raise into the caller."""

    def close(self) -> None:
        """Release any underlying resources."""


class LazyResource(Generic[T]):
    """Initialize-once handle around an expensive client.

    The factory runs at most once successfully; concurrent callers wait on
    the same lock instead of constructing a second client.
    """

    def __init__(self, factory: Callable[[], T]):
        self._factory = factory
        self._lock = threading.Lock()
        self._value: Optional[T] = None
        self._ready = False
        self.error: Optional[BaseException] = None

    @property
    def is_ready(self) -> bool:
        return self._ready

    @property
    def failed(self) -> bool:
        return self.error is not None

    def get(self) -> T:
        if self._ready:
            return self._value
        with self._lock:
            if not self._ready:
                try:
                    self._value = self._factory()
                except Exception as e:
                    self.error = e
                    raise
                self.error = None
                self._ready = True
        return self._value


def log_fallback(record: UsageLogRecord, destination: str) -> None:
    """Emit a record to the log when its store is unavailable."""
    logger.warning(
        "%s is not available; usage record written to log instead: %s",
        destination,
        json.dumps(record.to_dict(), default=str),
    )


class BackgroundSink(LogSink):
    """Base for remote sinks that connect and write off the caller's thread.

    Client initialization is scheduled on a single worker as soon as the
    sink is built; inserts are queued behind it on the same worker, so they
    never observe a half-initialized client.
    """

    destination = "Remote store"

    def __init__(self):
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="tokenwise-sink")
        self._resource: LazyResource[Any] = LazyResource(self._connect)
        self._pending: List[Future] = []
        self._pending_lock = threading.Lock()
        self._submit(self._initialize)

    @abstractmethod
    def _connect(self) -> Any:
        """Create the storage handle records are written to."""

    @abstractmethod
    def _write(self, handle: Any, record: UsageLogRecord) -> None:
        """Write one record through an initialized handle."""

    def _initialize(self) -> None:
        try:
            self._resource.get()
        except Exception:
            logger.exception("Failed to initialize %s", self.destination)

    def _submit(self, fn: Callable, *args) -> None:
        future = self._executor.submit(fn, *args)
        with self._pending_lock:
            self._pending = [f for f in self._pending if not f.done()]
            self._pending.append(future)

    def insert_log(self, record: UsageLogRecord) -> None:
        try:
            self._submit(self._insert, record)
        except RuntimeError:
            # Executor already shut down
            log_fallback(record, self.destination)

    def _insert(self, record: UsageLogRecord) -> None:
        if not self._resource.is_ready:
            log_fallback(record, self.destination)
            return
        try:
            self._write(self._resource.get(), record)
            logger.debug("Usage record stored in %s", self.destination)
        except Exception:
            logger.exception("Failed to insert usage record into %s", self.destination)

    def flush(self, timeout: Optional[float] = None) -> None:
        """Block until every queued write has been attempted."""
        with self._pending_lock:
            pending = list(self._pending)
        for future in pending:
            future.exception(timeout=timeout)

    def close(self) -> None:
        self._executor.shutdown(wait=True)


class MemorySink(LogSink):
    """Keeps records in memory; useful for tests and embedding."""

    def __init__(self):
        self.records: List[UsageLogRecord] = []

    def insert_log(self, record: UsageLogRecord) -> None:
        self.records.append(record)
