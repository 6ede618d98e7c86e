"""Inference port: LiteLLM client with retries, fallback, streaming and a mock.

This module provides:
- LLMClient: wrapper around litellm.acompletion with exponential-backoff
  retries, an optional fallback model and per-run metrics recording.
- LLMClient.stream: async iterator of StreamChunk (token, tool_call, and
  exactly one final done chunk carrying the assembled LLMResponse).
- MockLLMClient: scripted responses for tests, no network.
"""

import asyncio
import json
import re
import time
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal, Optional

import structlog
from litellm import acompletion
from litellm.exceptions import (
    AuthenticationError,
    BadRequestError,
    RateLimitError,
    ServiceUnavailableError,
    Timeout,
)

from config import settings

if TYPE_CHECKING:
    from metrics import RunMetricsCollector

logger = structlog.get_logger()

MAX_BACKOFF_SECONDS = 4.0


def normalize_tool_args(raw_args: Any) -> dict[str, Any]:
    """Normalize raw tool-call arguments into a dictionary.

    Models occasionally emit malformed tool arguments (JSON arrays, primitives,
    or partially valid strings). Tool execution always receives a dict.
    """
    if isinstance(raw_args, dict):
        return raw_args

    if isinstance(raw_args, str):
        if not raw_args.strip():
            return {}
        try:
            parsed = json.loads(raw_args)
        except json.JSONDecodeError:
            return {"raw": raw_args}
        return parsed if isinstance(parsed, dict) else {"value": parsed}

    if raw_args is None:
        return {}

    return {"value": raw_args}


@dataclass
class ToolCallData:
    """A tool call requested by the model.

    Attributes:
        id: Identifier the model assigned to the call
        name: Tool id to invoke
        args: Normalized arguments
    """

    id: str
    name: str
    args: dict[str, Any]

    def to_llm_dict(self) -> dict[str, Any]:
        """Render in OpenAI assistant-message tool_calls shape."""
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": json.dumps(self.args)},
        }


@dataclass
class LLMUsage:
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    latency_ms: int = 0
    cost: float = 0.0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class LLMResponse:
    """Structured response from an LLM call.

    Attributes:
        content: The text content of the response
        tool_calls: Tool calls the model requested
        finish_reason: Why the model stopped (stop, tool_calls, length, ...)
        usage: Token usage, latency and reported cost
        raw_response: The original LiteLLM response, if any
    """

    content: str
    tool_calls: list[ToolCallData] = field(default_factory=list)
    finish_reason: str = "stop"
    usage: LLMUsage = field(default_factory=lambda: LLMUsage(model="unknown"))
    raw_response: Any = field(default=None, repr=False)


@dataclass
class StreamChunk:
    """One element of a streamed completion."""

    type: Literal["token", "tool_call", "done"]
    token: str | None = None
    tool_call: ToolCallData | None = None
    response: LLMResponse | None = None


def _build_messages(
    messages: list[dict[str, Any]],
    system_prompt: str | None,
) -> list[dict[str, Any]]:
    if not system_prompt:
        return list(messages)
    return [{"role": "system", "content": system_prompt}, *messages]


def _response_cost(response: Any) -> float:
    hidden = getattr(response, "_hidden_params", None) or {}
    cost = hidden.get("response_cost") if isinstance(hidden, dict) else None
    return float(cost) if cost else 0.0


class LLMClient:
    """Wrapper around LiteLLM with retry logic, fallback, and metrics.

    Retries on: RateLimitError, ServiceUnavailableError and Timeout, with
    exponential backoff capped at 4 seconds.
    Does NOT retry on: AuthenticationError or BadRequestError.
    After retries are exhausted the fallback model, if configured, is tried
    once.

    Attributes:
        default_model: Model to use if not specified
        fallback_model: Optional fallback model if primary fails after retries
        retry_attempts: Number of retry attempts for failed calls
        retry_delay: Base delay between retry attempts in seconds
        metrics_collector: Optional per-run metrics sink
    """

    def __init__(
        self,
        default_model: str | None = None,
        fallback_model: str | None = None,
        retry_attempts: int | None = None,
        retry_delay: float = 1.0,
        metrics_collector: Optional["RunMetricsCollector"] = None,
    ) -> None:
        self.default_model = default_model or settings.default_model
        self.fallback_model = fallback_model or settings.llm_fallback_model
        self.retry_attempts = (
            retry_attempts if retry_attempts is not None
            else settings.llm_max_retries
        )
        self.retry_delay = retry_delay
        self.metrics_collector = metrics_collector

    async def generate(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int | None = None,
        system_prompt: str | None = None,
        run_id: str | None = None,
    ) -> LLMResponse:
        """Make a non-streaming LLM call.

        Args:
            messages: List of message dicts with 'role' and 'content'
            tools: Optional list of tool definitions
            model: Model to use (defaults to self.default_model)
            temperature: Sampling temperature
            max_tokens: Maximum tokens in response
            system_prompt: Optional system message prepended to messages
            run_id: Run to attribute usage to in the metrics collector

        Returns:
            LLMResponse with content, tool calls and usage

        Raises:
            AuthenticationError: If the API key is invalid
            BadRequestError: If the request is malformed
            Exception: After all retries and fallback are exhausted
        """
        start_time = time.time()
        response, used_model = await self._request_with_retries(
            messages=_build_messages(messages, system_prompt),
            tools=tools,
            model=model or self.default_model,
            temperature=temperature,
            max_tokens=max_tokens,
            stream=False,
        )
        latency_ms = int((time.time() - start_time) * 1000)
        llm_response = self._parse_response(response, used_model, latency_ms)
        self._record_usage(run_id, llm_response.usage)

        logger.info(
            "llm_call_complete",
            model=used_model,
            input_tokens=llm_response.usage.input_tokens,
            output_tokens=llm_response.usage.output_tokens,
            latency_ms=latency_ms,
            tool_calls=len(llm_response.tool_calls),
        )
        return llm_response

    async def stream(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int | None = None,
        system_prompt: str | None = None,
        run_id: str | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Stream a completion as token, tool_call and a final done chunk.

        Retries and fallback apply to opening the stream. Tool-call deltas are
        assembled by index and emitted once the stream ends, before done.
        """
        start_time = time.time()
        response, used_model = await self._request_with_retries(
            messages=_build_messages(messages, system_prompt),
            tools=tools,
            model=model or self.default_model,
            temperature=temperature,
            max_tokens=max_tokens,
            stream=True,
        )

        content_parts: list[str] = []
        trackers: dict[int, dict[str, str]] = {}
        finish_reason = "stop"
        usage: Any = None

        async for chunk in response:
            choices = getattr(chunk, "choices", None) or []
            if choices:
                choice = choices[0]
                delta = getattr(choice, "delta", None)
                if delta is not None:
                    text = getattr(delta, "content", None)
                    if text:
                        content_parts.append(text)
                        yield StreamChunk(type="token", token=text)

                    for tc in getattr(delta, "tool_calls", None) or []:
                        index = getattr(tc, "index", None) or 0
                        tracker = trackers.setdefault(index, {"id": "", "name": "", "arguments": ""})
                        if getattr(tc, "id", None):
                            tracker["id"] = tc.id
                        function = getattr(tc, "function", None)
                        if function is not None:
                            if getattr(function, "name", None):
                                tracker["name"] = function.name
                            if getattr(function, "arguments", None):
                                tracker["arguments"] += function.arguments

                if getattr(choice, "finish_reason", None):
                    finish_reason = choice.finish_reason

            if getattr(chunk, "usage", None):
                usage = chunk.usage

        tool_calls = [
            ToolCallData(
                id=tracker["id"] or f"call_{uuid.uuid4().hex[:8]}",
                name=tracker["name"],
                args=normalize_tool_args(tracker["arguments"]),
            )
            for _, tracker in sorted(trackers.items())
        ]
        for tool_call in tool_calls:
            yield StreamChunk(type="tool_call", tool_call=tool_call)

        llm_usage = LLMUsage(
            model=used_model,
            input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            output_tokens=getattr(usage, "completion_tokens", 0) or 0,
            latency_ms=int((time.time() - start_time) * 1000),
        )
        self._record_usage(run_id, llm_usage)

        logger.info(
            "llm_stream_complete",
            model=used_model,
            input_tokens=llm_usage.input_tokens,
            output_tokens=llm_usage.output_tokens,
            latency_ms=llm_usage.latency_ms,
            tool_calls=len(tool_calls),
        )
        yield StreamChunk(
            type="done",
            response=LLMResponse(
                content="".join(content_parts),
                tool_calls=tool_calls,
                finish_reason=finish_reason,
                usage=llm_usage,
            ),
        )

    async def _request_with_retries(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None,
        model: str,
        temperature: float,
        max_tokens: int | None,
        stream: bool,
    ) -> tuple[Any, str]:
        """Open a completion, retrying transient errors and falling back once.

        Returns:
            The raw LiteLLM response (or stream) and the model that served it.
        """
        last_exception: Exception | None = None
        retry_count = 0

        for attempt in range(self.retry_attempts + 1):
            try:
                response = await self._make_request(
                    messages, tools, model, temperature, max_tokens, stream
                )
                return response, model

            except (RateLimitError, ServiceUnavailableError, Timeout) as e:
                last_exception = e
                retry_count = attempt + 1
                if attempt < self.retry_attempts:
                    delay = min(self.retry_delay * (2 ** attempt), MAX_BACKOFF_SECONDS)
                    logger.warning(
                        "llm_call_retry",
                        model=model,
                        attempt=attempt + 1,
                        max_retries=self.retry_attempts,
                        error_type=type(e).__name__,
                        error=str(e),
                        retry_delay=delay,
                    )
                    await self._async_sleep(delay)
                else:
                    logger.error(
                        "llm_call_failed_all_retries",
                        model=model,
                        attempts=self.retry_attempts + 1,
                        error_type=type(e).__name__,
                        error=str(e),
                    )

            except (AuthenticationError, BadRequestError) as e:
                logger.error(
                    "llm_call_failed_no_retry",
                    model=model,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                raise

        if self.fallback_model and self.fallback_model != model:
            logger.warning(
                "llm_fallback_attempt",
                primary_model=model,
                fallback_model=self.fallback_model,
                primary_retries=retry_count,
                primary_error=str(last_exception),
            )
            try:
                response = await self._make_request(
                    messages, tools, self.fallback_model, temperature, max_tokens, stream
                )
                logger.info("llm_fallback_success", fallback_model=self.fallback_model)
                return response, self.fallback_model
            except Exception as fallback_error:
                logger.error(
                    "llm_fallback_failed",
                    fallback_model=self.fallback_model,
                    error_type=type(fallback_error).__name__,
                    error=str(fallback_error),
                )
                last_exception = last_exception or fallback_error

        raise last_exception or Exception("LLM call failed after all retries")

    async def _make_request(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None,
        model: str,
        temperature: float,
        max_tokens: int | None,
        stream: bool,
    ) -> Any:
        """Make the actual LiteLLM request."""
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "timeout": settings.llm_request_timeout_seconds,
        }

        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"

        if max_tokens:
            kwargs["max_tokens"] = max_tokens

        if stream:
            kwargs["stream"] = True
            kwargs["stream_options"] = {"include_usage": True}

        return await acompletion(**kwargs)

    def _parse_response(self, response: Any, model: str, latency_ms: int) -> LLMResponse:
        choice = response.choices[0]
        message = choice.message

        tool_calls = [
            ToolCallData(
                id=tc.id,
                name=tc.function.name,
                args=normalize_tool_args(tc.function.arguments),
            )
            for tc in (message.tool_calls or [])
        ]

        usage = response.usage
        return LLMResponse(
            content=message.content or "",
            tool_calls=tool_calls,
            finish_reason=choice.finish_reason or "unknown",
            usage=LLMUsage(
                model=model,
                input_tokens=usage.prompt_tokens if usage else 0,
                output_tokens=usage.completion_tokens if usage else 0,
                latency_ms=latency_ms,
                cost=_response_cost(response),
            ),
            raw_response=response,
        )

    def _record_usage(self, run_id: str | None, usage: LLMUsage) -> None:
        if self.metrics_collector and run_id:
            self.metrics_collector.record_llm_call(
                run_id,
                prompt_tokens=usage.input_tokens,
                completion_tokens=usage.output_tokens,
                cost=usage.cost,
            )

    async def _async_sleep(self, seconds: float) -> None:
        """Async sleep for retry delay; a method so tests can patch it."""
        await asyncio.sleep(seconds)


class MockLLMClient(LLMClient):
    """Mock LLM client for testing without API calls.

    Streams each scripted response word by word, then its tool calls, then a
    done chunk.

    Usage:
        >>> client = MockLLMClient(responses=[
        ...     LLMResponse(content="Looking it up", tool_calls=[ToolCallData("c1", "web_search", {})]),
        ...     LLMResponse(content="Done"),
        ... ])
        >>> response = await client.generate(messages=[...])
    """

    def __init__(
        self,
        responses: list[LLMResponse] | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.responses = list(responses) if responses else []
        self.call_history: list[dict[str, Any]] = []
        self._response_index = 0

    def _next_response(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None,
        model: str | None,
        temperature: float,
        max_tokens: int | None,
        system_prompt: str | None,
    ) -> LLMResponse:
        self.call_history.append({
            "messages": list(messages),
            "tools": tools,
            "model": model or self.default_model,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "system_prompt": system_prompt,
        })

        if self._response_index >= len(self.responses):
            raise IndexError("No more mock responses available")

        response = self.responses[self._response_index]
        self._response_index += 1

        logger.debug(
            "mock_llm_call",
            response_index=self._response_index - 1,
            content_preview=response.content[:50] if response.content else "",
            tool_calls=len(response.tool_calls),
        )
        return response

    async def generate(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int | None = None,
        system_prompt: str | None = None,
        run_id: str | None = None,
    ) -> LLMResponse:
        """Return the next scripted response.

        Raises:
            IndexError: If no more responses are available
        """
        response = self._next_response(
            messages, tools, model, temperature, max_tokens, system_prompt
        )
        self._record_usage(run_id, response.usage)
        return response

    async def stream(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int | None = None,
        system_prompt: str | None = None,
        run_id: str | None = None,
    ) -> AsyncIterator[StreamChunk]:
        response = self._next_response(
            messages, tools, model, temperature, max_tokens, system_prompt
        )
        for token in re.findall(r"\S+\s*", response.content):
            yield StreamChunk(type="token", token=token)
        for tool_call in response.tool_calls:
            yield StreamChunk(type="tool_call", tool_call=tool_call)
        self._record_usage(run_id, response.usage)
        yield StreamChunk(type="done", response=response)

    def reset(self) -> None:
        """Start returning responses from the beginning again."""
        self._response_index = 0
        self.call_history.clear()
