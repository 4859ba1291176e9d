"""
Data models for storage layer.

Defines the usage log record persisted once per request.
"""

import copy
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

DEFAULT_PROVIDER = "openai"


class LogStatus(Enum):
    """Outcome of a monitored request."""
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"


def utc_timestamp() -> str:
    """Current instant as an ISO-8601 string in UTC."""
    return datetime.now(timezone.utc).isoformat()


def snapshot_metadata(metadata: Dict[str, Any]) -> Dict[str, Any]:
    try:
        return copy.deepcopy(dict(metadata))
    except (TypeError, copy.Error):
        # Uncopyable values (locks, clients) are kept by reference
        return dict(metadata)


@dataclass(frozen=True)
class UsageLogRecord:
    """Immutable record of a single LLM request.

    Exactly one record is produced per logical request. ERROR records never
    carry token counts or cost, and only ERROR records carry an error message.
    """
    timestamp: str
    provider: str
    model: str
    latency_ms: int
    status: LogStatus
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    cost: Optional[float] = None
    error_message: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = field(default=None)

    def __post_init__(self):
        """Validate the status invariants."""
        if self.metadata is not None:
            # Private snapshot; callers may keep mutating their own dict
            object.__setattr__(self, "metadata", snapshot_metadata(self.metadata))
        if not isinstance(self.status, LogStatus):
            object.__setattr__(self, "status", LogStatus(self.status))
        if self.latency_ms < 0:
            raise ValueError("latency_ms must be >= 0")
        if self.status is LogStatus.ERROR:
            if self.input_tokens is not None or self.output_tokens is not None or self.cost is not None:
                raise ValueError("ERROR records cannot carry token counts or cost")
            if self.error_message is None:
                raise ValueError("ERROR records require an error_message")
        elif self.error_message is not None:
            raise ValueError("error_message is only allowed on ERROR records")
        for name in ("input_tokens", "output_tokens"):
            value = getattr(self, name)
            if value is not None and value < 0:
                raise ValueError(f"{name} must be >= 0")
        if self.cost is not None and self.cost < 0:
            raise ValueError("cost must be >= 0")

    @classmethod
    def success(
        cls,
        model: str,
        latency_ms: int,
        input_tokens: Optional[int],
        output_tokens: Optional[int],
        cost: Optional[float],
        metadata: Optional[Dict[str, Any]] = None,
        provider: str = DEFAULT_PROVIDER,
    ) -> "UsageLogRecord":
        return cls(
            timestamp=utc_timestamp(),
            provider=provider,
            model=model,
            latency_ms=latency_ms,
            status=LogStatus.SUCCESS,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost=cost,
            metadata=metadata,
        )

    @classmethod
    def error(
        cls,
        model: str,
        latency_ms: int,
        error_message: str,
        metadata: Optional[Dict[str, Any]] = None,
        provider: str = DEFAULT_PROVIDER,
    ) -> "UsageLogRecord":
        return cls(
            timestamp=utc_timestamp(),
            provider=provider,
            model=model,
            latency_ms=latency_ms,
            status=LogStatus.ERROR,
            error_message=error_message,
            metadata=metadata,
        )

    def metadata_json(self) -> Optional[str]:
        """Metadata serialized for string-typed storage columns."""
        if self.metadata is None:
            return None
        return json.dumps(self.metadata, default=str)

    def to_dict(self) -> Dict[str, Any]:
        """Plain representation with unknown values as None."""
        return {
            "timestamp": self.timestamp,
            "provider": self.provider,
            "model": self.model,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cost": self.cost,
            "latency_ms": self.latency_ms,
            "status": self.status.value,
            "error_message": self.error_message,
            "metadata": self.metadata,
        }
