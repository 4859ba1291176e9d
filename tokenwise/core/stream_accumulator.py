"""
Streaming usage accumulation.

Wraps a streamed chat completion so usage can be metered while the caller
consumes it. Chunks pass through untouched and in order; token counts and
cost are estimated as text arrives and replaced by exact figures whenever
the stream reports a usage block. One record is emitted when the stream is
exhausted, never for a stream that is abandoned part way.
"""

import inspect
import logging
import math
import time
from typing import Any, Callable, Dict, Iterable, List, Optional

from ..storage.models import DEFAULT_PROVIDER, UsageLogRecord, snapshot_metadata
from .pricing import OPENAI_PRICING, PricingTable, calculate_cost
from .token_counter import CHARS_PER_TOKEN, TokenUsage, estimate_message_tokens

logger = logging.getLogger(__name__)

TokenCallback = Callable[[str, float], None]
RecordCallback = Callable[[UsageLogRecord], None]


def _field(obj: Any, name: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def _delta_content(chunk: Any) -> Optional[str]:
    """Text carried by the first choice of a chunk, if any."""
    choices = _field(chunk, "choices")
    if not choices:
        return None
    delta = _field(choices[0], "delta")
    if delta is None:
        return None
    return _field(delta, "content")


def elapsed_ms(start_time: float) -> int:
    """Milliseconds since a time.monotonic() reading."""
    return max(0, int((time.monotonic() - start_time) * 1000))


class _AccumulatorBase:
    """Usage state shared by the sync and async stream wrappers.

    States: accumulating until the wrapped stream is exhausted, then
    finalized. Finalizing again is a no-op.
    """

    def __init__(
        self,
        model: str,
        start_time: float,
        messages: Optional[Iterable[Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        on_token: Optional[TokenCallback] = None,
        on_complete: Optional[RecordCallback] = None,
        provider: str = DEFAULT_PROVIDER,
        pricing: PricingTable = OPENAI_PRICING,
    ):
        self.model = model
        self.start_time = start_time
        self.metadata = snapshot_metadata(metadata) if metadata is not None else None
        self.provider = provider
        self._on_token = on_token
        self._on_complete = on_complete
        self._pricing = pricing

        self._input_tokens = estimate_message_tokens(messages)
        self._estimated_output_tokens = 0
        self._exact_output_tokens: Optional[int] = None
        self._content: List[str] = []
        self._content_length = 0
        self._running_cost = 0.0
        self._finalized = False
        self.record: Optional[UsageLogRecord] = None

    @property
    def input_tokens(self) -> int:
        return self._input_tokens

    @property
    def output_tokens(self) -> int:
        if self._exact_output_tokens is not None:
            return self._exact_output_tokens
        return self._estimated_output_tokens

    @property
    def running_cost(self) -> float:
        """Cost estimate for the text seen so far. Never persisted."""
        return self._running_cost

    @property
    def content(self) -> str:
        return "".join(self._content)

    @property
    def is_finalized(self) -> bool:
        return self._finalized

    def _track_chunk(self, chunk: Any) -> None:
        usage = _field(chunk, "usage")
        if usage is not None:
            exact = TokenUsage.from_response_usage(usage)
            self._input_tokens = exact.prompt_tokens
            self._exact_output_tokens = exact.completion_tokens

        token = _delta_content(chunk)
        if not token:
            return

        self._content.append(token)
        self._content_length += len(token)
        self._estimated_output_tokens = math.ceil(self._content_length / CHARS_PER_TOKEN)

        # Unknown models warn once at finalize, not on every chunk
        rates = self._pricing.find_pricing(self.model)
        if rates is not None:
            self._running_cost = (
                self._input_tokens / 1_000_000 * rates.input_per_million
                + self._estimated_output_tokens / 1_000_000 * rates.output_per_million
            )

        if self._on_token is not None:
            try:
                self._on_token(token, self._running_cost)
            except Exception:
                logger.exception("on_token callback failed")

    def finalize(self) -> Optional[UsageLogRecord]:
        """Build and emit the usage record for the whole stream, once."""
        if self._finalized:
            return None
        self._finalized = True

        input_tokens = self._input_tokens
        output_tokens = self.output_tokens
        # Recomputed from final counts; exact usage may have replaced estimates
        cost = calculate_cost(self.model, input_tokens, output_tokens, self._pricing)

        self.record = UsageLogRecord.success(
            model=self.model,
            latency_ms=elapsed_ms(self.start_time),
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost=cost,
            metadata=self.metadata,
            provider=self.provider,
        )
        if self._on_complete is not None:
            try:
                self._on_complete(self.record)
            except Exception:
                logger.exception("Failed to hand off streamed usage record")
        return self.record


class StreamAccumulator(_AccumulatorBase):
    """Pass-through wrapper for a synchronous `openai.Stream`.

    Iterate it exactly like the original stream. Other attributes (such as
    `response`) are forwarded to the wrapped stream.
    """

    def __init__(self, stream: Any, **options: Any):
        self._stream = stream
        self._iterator = None
        super().__init__(**options)

    def __iter__(self):
        return self

    def __next__(self) -> Any:
        if self._iterator is None:
            self._iterator = iter(self._stream)
        try:
            chunk = next(self._iterator)
        except StopIteration:
            self.finalize()
            raise
        self._track_chunk(chunk)
        return chunk

    def __enter__(self) -> "StreamAccumulator":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        close = getattr(self._stream, "close", None)
        if close is not None:
            close()

    def __getattr__(self, name: str) -> Any:
        if name == "_stream":
            raise AttributeError(name)
        return getattr(self._stream, name)


class AsyncStreamAccumulator(_AccumulatorBase):
    """Pass-through wrapper for an `openai.AsyncStream`."""

    def __init__(self, stream: Any, **options: Any):
        self._stream = stream
        self._iterator = None
        super().__init__(**options)

    def __aiter__(self):
        return self

    async def __anext__(self) -> Any:
        if self._iterator is None:
            self._iterator = self._stream.__aiter__()
        try:
            chunk = await self._iterator.__anext__()
        except StopAsyncIteration:
            self.finalize()
            raise
        self._track_chunk(chunk)
        return chunk

    async def __aenter__(self) -> "AsyncStreamAccumulator":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        close = getattr(self._stream, "close", None)
        if close is None:
            return
        result = close()
        if inspect.isawaitable(result):
            await result

    def __getattr__(self, name: str) -> Any:
        if name == "_stream":
            raise AttributeError(name)
        return getattr(self._stream, name)
