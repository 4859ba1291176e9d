"""
Monitored OpenAI client wrappers.

Records a usage log for every chat completion without modifying behavior:
same call signature, same return values, same exceptions.
"""

import inspect
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Union

from openai import AsyncOpenAI

from ..config.loader import MonitorConfig
from ..core.pricing import OPENAI_PRICING, PricingTable, calculate_cost
from ..core.stream_accumulator import (
    AsyncStreamAccumulator,
    StreamAccumulator,
    TokenCallback,
    elapsed_ms,
)
from ..core.token_counter import TokenUsage
from ..storage.base import LogSink
from ..storage.factory import create_sink
from ..storage.models import DEFAULT_PROVIDER, UsageLogRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MonitorOptions:
    """Per-call monitoring options.

    Attributes:
        metadata: Caller-defined key/values stored verbatim with the record
        on_token: Streaming only; called with each text delta and the running cost
    """
    metadata: Optional[Dict[str, Any]] = None
    on_token: Optional[TokenCallback] = None


MonitorOptionsArg = Union[MonitorOptions, Mapping[str, Any], None]


def _coerce_options(options: MonitorOptionsArg) -> MonitorOptions:
    if options is None:
        return MonitorOptions()
    if isinstance(options, MonitorOptions):
        return options
    if isinstance(options, Mapping):
        return MonitorOptions(metadata=options.get("metadata"), on_token=options.get("on_token"))
    raise TypeError("monitor_options must be a MonitorOptions or a mapping")


def _field(obj: Any, name: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


class _Forwarding:
    """Forwards every attribute it does not define to the wrapped object."""

    def __init__(self, target: Any):
        self._target = target

    def __getattr__(self, name: str) -> Any:
        if name == "_target":
            raise AttributeError(name)
        return getattr(self._target, name)


class _UsageRecorder:
    """Builds usage records for one wrapped client and hands them to its sink."""

    def __init__(self, sink: LogSink, provider: str, pricing: PricingTable):
        self.sink = sink
        self.provider = provider
        self.pricing = pricing

    def emit(self, record: UsageLogRecord) -> None:
        try:
            self.sink.insert_log(record)
        except Exception:
            logger.exception("Usage log sink raised; record dropped")

    def record_response(self, request: Dict[str, Any], response: Any, start_time: float, options: MonitorOptions) -> None:
        latency_ms = elapsed_ms(start_time)
        usage = _field(response, "usage")
        if usage is None:
            return

        model = request.get("model") or _field(response, "model")
        exact = TokenUsage.from_response_usage(usage)
        cost = calculate_cost(model, exact.prompt_tokens, exact.completion_tokens, self.pricing)
        self.emit(UsageLogRecord.success(
            model=model,
            latency_ms=latency_ms,
            input_tokens=exact.prompt_tokens,
            output_tokens=exact.completion_tokens,
            cost=cost,
            metadata=options.metadata,
            provider=self.provider,
        ))

    def record_error(self, request: Dict[str, Any], error: BaseException, start_time: float, options: MonitorOptions) -> None:
        self.emit(UsageLogRecord.error(
            model=request.get("model") or "",
            latency_ms=elapsed_ms(start_time),
            error_message=str(error) or type(error).__name__,
            metadata=options.metadata,
            provider=self.provider,
        ))

    def stream_options(self, request: Dict[str, Any], start_time: float, options: MonitorOptions) -> Dict[str, Any]:
        return {
            "model": request.get("model") or "",
            "start_time": start_time,
            "messages": request.get("messages"),
            "metadata": options.metadata,
            "on_token": options.on_token,
            "on_complete": self.emit,
            "provider": self.provider,
            "pricing": self.pricing,
        }


class MonitoredCompletions(_Forwarding):
    """`chat.completions` with a metered `create`."""

    def __init__(self, completions: Any, recorder: _UsageRecorder):
        super().__init__(completions)
        self._recorder = recorder

    def create(self, *args: Any, monitor_options: MonitorOptionsArg = None, **kwargs: Any) -> Any:
        """Create a chat completion and record its usage.

        Accepts exactly the arguments of `client.chat.completions.create`,
        plus `monitor_options` which never reaches the API.

        Returns:
            The original completion, or a StreamAccumulator for `stream=True`

        Raises:
            Whatever the underlying client raises, unchanged
        """
        options = _coerce_options(monitor_options)
        start_time = time.monotonic()
        try:
            response = self._target.create(*args, **kwargs)
        except Exception as e:
            self._recorder.record_error(kwargs, e, start_time, options)
            raise

        if kwargs.get("stream"):
            return StreamAccumulator(response, **self._recorder.stream_options(kwargs, start_time, options))
        self._recorder.record_response(kwargs, response, start_time, options)
        return response


class AsyncMonitoredCompletions(_Forwarding):
    """Async `chat.completions` with a metered `create`."""

    def __init__(self, completions: Any, recorder: _UsageRecorder):
        super().__init__(completions)
        self._recorder = recorder

    async def create(self, *args: Any, monitor_options: MonitorOptionsArg = None, **kwargs: Any) -> Any:
        options = _coerce_options(monitor_options)
        start_time = time.monotonic()
        try:
            response = await self._target.create(*args, **kwargs)
        except Exception as e:
            self._recorder.record_error(kwargs, e, start_time, options)
            raise

        if kwargs.get("stream"):
            return AsyncStreamAccumulator(response, **self._recorder.stream_options(kwargs, start_time, options))
        self._recorder.record_response(kwargs, response, start_time, options)
        return response


class MonitoredChat(_Forwarding):
    """`chat` namespace whose `completions` are metered."""

    def __init__(self, chat: Any, completions: _Forwarding):
        super().__init__(chat)
        self.completions = completions


class MonitoredOpenAI(_Forwarding):
    """OpenAI client wrapper that records usage logs.

    Use it exactly like the wrapped `openai.OpenAI` instance. Only
    `chat.completions.create` is metered; everything else is forwarded.
    """

    _completions_class = MonitoredCompletions

    def __init__(
        self,
        client: Any,
        sink: LogSink,
        provider: str = DEFAULT_PROVIDER,
        pricing: PricingTable = OPENAI_PRICING
    ):
        if client is None:
            raise ValueError("OpenAI client is required")
        super().__init__(client)
        self.sink = sink
        recorder = _UsageRecorder(sink, provider, pricing)
        self.chat = MonitoredChat(
            client.chat,
            self._completions_class(client.chat.completions, recorder)
        )

    @property
    def wrapped_client(self) -> Any:
        """The original, unmonitored client."""
        return self._target


class AsyncMonitoredOpenAI(MonitoredOpenAI):
    """Wrapper for `openai.AsyncOpenAI`; `create` stays awaitable."""

    _completions_class = AsyncMonitoredCompletions


def _is_async_client(client: Any) -> bool:
    if isinstance(client, AsyncOpenAI):
        return True
    return inspect.iscoroutinefunction(client.chat.completions.create)


def monitor(
    client: Any,
    config: Optional[MonitorConfig] = None,
    sink: Optional[LogSink] = None,
    provider: str = DEFAULT_PROVIDER
) -> MonitoredOpenAI:
    """Wrap an OpenAI client so every chat completion is metered.

    Args:
        client: `openai.OpenAI` or `openai.AsyncOpenAI` instance
        config: Storage configuration; defaults to the local SQLite file
        sink: Explicit sink, bypassing config-based construction
        provider: Provider name stored on every record

    Returns:
        MonitoredOpenAI, or AsyncMonitoredOpenAI for async clients

    Raises:
        ValueError: If the client is missing or the storage config is incomplete
    """
    if client is None:
        raise ValueError("OpenAI client is required")
    if sink is None:
        sink = create_sink(config or MonitorConfig())

    if _is_async_client(client):
        return AsyncMonitoredOpenAI(client, sink, provider)
    return MonitoredOpenAI(client, sink, provider)
