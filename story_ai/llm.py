"""LLM client - one interface over heterogeneous chat backends.

Every implementation exposes:

    async def generate(messages, *, json_mode=False, max_output_tokens=None) -> Generation
    def generate_stream(messages, *, json_mode=False, max_output_tokens=None,
                        cancel=None) -> AsyncIterator[StreamDelta]

Two implementations are provided, selected once by ``create_client``:

    GeminiClient        - native multimodal protocol via the google-genai SDK.
                          Messages keep their {role, parts} shape.
    OpenAICompatClient  - POST {base_url}/chat/completions over httpx, used for
                          OpenAI, xAI, OpenRouter, Volcano and Claude. Streams
                          are Server-Sent Events.

Non-2xx responses raise ``TransportError``; connection failures and
timeouts propagate as the underlying ``httpx`` exceptions.
"""

from __future__ import annotations

import asyncio
import base64
import inspect
import json
import logging
import re
import time
from collections.abc import AsyncIterator, Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Protocol

import httpx
from google import genai
from google.genai import types
from pydantic import BaseModel

from story_ai.errors import MissingStreamBodyError, StreamFormatError, TransportError
from story_ai.models import AIConfig, InlinePart, Message, Provider, TextPart

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com/v1"

BASE_URLS: dict[str, str] = {
    Provider.XAI.value: "https://api.x.ai/v1",
    Provider.OPENAI.value: "https://api.openai.com/v1",
    Provider.OPENROUTER.value: "https://openrouter.ai/api/v1",
    Provider.VOLCANO.value: "https://ark.cn-beijing.volces.com/api/v3",
    Provider.CLAUDE.value: "https://api.anthropic.com/v1",
}

JSON_MODE_PROVIDERS = frozenset({
    Provider.GEMINI.value,
    Provider.VOLCANO.value,
    Provider.OPENAI.value,
    Provider.XAI.value,
    Provider.OPENROUTER.value,
})

_DATA_URL_PREFIX = re.compile(r"^data:[^;,]*;base64,")
_LINE_BREAKS = re.compile(r"[\r\n]+")


def provider_key(provider: Provider | str) -> str:
    return provider.value if isinstance(provider, Provider) else str(provider)


def supports_json_mode(provider: Provider | str) -> bool:
    return provider_key(provider) in JSON_MODE_PROVIDERS


def strip_base64_prefix(data: str) -> str:
    return _DATA_URL_PREFIX.sub("", _LINE_BREAKS.sub("", data or ""))


# ---------------------------------------------------------------------------
# Protocol and shared types
# ---------------------------------------------------------------------------

@dataclass
class Generation:
    text: str


@dataclass
class StreamDelta:
    text: str | None = None


def _running_loop() -> asyncio.AbstractEventLoop | None:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


class CancelToken:
    """Explicit cancellation for an in-flight stream.

    ``cancel()`` runs the registered close callbacks (the stream registers
    its transport's close) and wakes ``wait()``; the generator then
    finishes without raising. It may be called from any thread: the work
    is handed to the event loop the stream runs on.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._fired = False
        self._callbacks: list[Callable[[], Any]] = []
        self._waiters: set[asyncio.Future] = set()
        self._tasks: set[asyncio.Future] = set()
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def on_cancel(self, callback: Callable[[], Any]) -> None:
        self._loop = self._loop or _running_loop()
        if self._fired:
            self._run(callback)
        else:
            self._callbacks.append(callback)

    async def wait(self) -> None:
        """Block until the cancellation has been handled."""
        loop = asyncio.get_running_loop()
        self._loop = self._loop or loop
        if self._fired:
            return
        waiter = loop.create_future()
        self._waiters.add(waiter)
        try:
            await waiter
        finally:
            self._waiters.discard(waiter)

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        loop = self._loop
        if loop is not None and not loop.is_closed() and loop is not _running_loop():
            loop.call_soon_threadsafe(self._fire)
        else:
            self._fire()

    def _fire(self) -> None:
        self._fired = True
        callbacks, self._callbacks = self._callbacks, []
        for cb in callbacks:
            self._run(cb)
        for waiter in list(self._waiters):
            if not waiter.done():
                waiter.set_result(None)

    def _run(self, callback: Callable[[], Any]) -> None:
        result = callback()
        if not inspect.isawaitable(result):
            return
        loop = self._loop or _running_loop()
        if loop is None or loop.is_closed():
            logger.warning("Cancel callback %r needs an event loop; skipped", callback)
            if inspect.iscoroutine(result):
                result.close()
            return
        task = asyncio.ensure_future(result, loop=loop)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Future) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Cancel callback failed: %s", task.exception())


class LLMClient(Protocol):
    async def generate(
        self,
        messages: Sequence[Message],
        *,
        json_mode: bool = False,
        max_output_tokens: int | None = None,
    ) -> Generation: ...

    def generate_stream(
        self,
        messages: Sequence[Message],
        *,
        json_mode: bool = False,
        max_output_tokens: int | None = None,
        cancel: CancelToken | None = None,
    ) -> AsyncIterator[StreamDelta]: ...


# ---------------------------------------------------------------------------
# GeminiClient - native multimodal protocol
# ---------------------------------------------------------------------------

_END = object()


async def _anext(iterator: AsyncIterator[Any]) -> Any:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return _END


async def _next_or_cancel(iterator: AsyncIterator[Any], cancel: CancelToken | None) -> Any:
    """Next item of ``iterator``, or ``_END`` once it is exhausted or ``cancel`` fires.

    A pending read is abandoned as soon as the token fires, so a stalled
    SDK stream cannot hold the consumer.
    """
    if cancel is None:
        return await _anext(iterator)
    if cancel.cancelled:
        return _END

    step = asyncio.ensure_future(_anext(iterator))
    stop = asyncio.ensure_future(cancel.wait())
    try:
        await asyncio.wait({step, stop}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        step.cancel()
        stop.cancel()
        raise
    stop.cancel()
    if step.done():
        return step.result()

    logger.debug("gemini stream cancelled")
    step.cancel()
    await asyncio.wait({step})
    if not step.cancelled() and step.exception() is not None:
        logger.debug("gemini stream read failed after cancel: %s", step.exception())
    return _END


def normalize_native_messages(messages: Sequence[Message]) -> list[Message]:
    """Copy messages with inline image data reduced to bare base64."""
    normalized = []
    for msg in messages:
        parts = [
            InlinePart(mime_type=p.mime_type, data=strip_base64_prefix(p.data))
            if isinstance(p, InlinePart) else p
            for p in msg.parts
        ]
        normalized.append(Message(role=msg.role, parts=parts))
    return normalized


class GeminiClient:
    """Async client for the Gemini API.

    ``system`` turns are sent as the request's system instruction, since
    Gemini contents only accept ``user`` and ``model`` roles.

    Args:
        config:  Model, temperature and provider settings.
        api_key: Gemini API key.
        client:  Pre-built ``genai.Client``; created lazily when omitted.
    """

    def __init__(self, config: AIConfig, api_key: str = "", client: genai.Client | None = None) -> None:
        self._config = config
        self._api_key = api_key
        self._client = client

    @property
    def client(self) -> genai.Client:
        if self._client is None:
            self._client = genai.Client(api_key=self._api_key)
        return self._client

    def _build_request(
        self, messages: Sequence[Message], json_mode: bool, max_output_tokens: int | None
    ) -> tuple[list[types.Content], types.GenerateContentConfig]:
        contents: list[types.Content] = []
        system_texts: list[str] = []
        for msg in normalize_native_messages(messages):
            if msg.role == "system" and not msg.has_image:
                system_texts.append(msg.text)
                continue
            parts = []
            for p in msg.parts:
                if isinstance(p, TextPart):
                    parts.append(types.Part.from_text(text=p.text))
                else:
                    parts.append(types.Part.from_bytes(data=base64.b64decode(p.data), mime_type=p.mime_type))
            role = "model" if msg.role in ("model", "assistant") else "user"
            contents.append(types.Content(role=role, parts=parts))

        config = types.GenerateContentConfig(
            temperature=self._config.temperature,
            max_output_tokens=max_output_tokens,
            response_mime_type="application/json" if json_mode else None,
            system_instruction="\n\n".join(system_texts) if system_texts else None,
        )
        return contents, config

    async def generate(
        self,
        messages: Sequence[Message],
        *,
        json_mode: bool = False,
        max_output_tokens: int | None = None,
    ) -> Generation:
        contents, config = self._build_request(messages, json_mode, max_output_tokens)
        logger.debug("gemini generate model=%s turns=%d", self._config.model, len(contents))
        resp = await self.client.aio.models.generate_content(
            model=self._config.model, contents=contents, config=config,
        )
        return Generation(text=resp.text or "")

    async def generate_stream(
        self,
        messages: Sequence[Message],
        *,
        json_mode: bool = False,
        max_output_tokens: int | None = None,
        cancel: CancelToken | None = None,
    ) -> AsyncIterator[StreamDelta]:
        contents, config = self._build_request(messages, json_mode, max_output_tokens)
        logger.debug("gemini stream model=%s turns=%d", self._config.model, len(contents))
        stream = await self.client.aio.models.generate_content_stream(
            model=self._config.model, contents=contents, config=config,
        )
        chunks = stream.__aiter__()
        try:
            while True:
                chunk = await _next_or_cancel(chunks, cancel)
                if chunk is _END:
                    break
                yield StreamDelta(text=chunk.text)
        finally:
            aclose = getattr(chunks, "aclose", None)
            if aclose is not None:
                await aclose()


# ---------------------------------------------------------------------------
# OpenAICompatClient - REST chat/completions
# ---------------------------------------------------------------------------

def _data_url(part: InlinePart) -> str:
    raw = _LINE_BREAKS.sub("", part.data or "")
    if raw.startswith("data:"):
        return raw
    return f"data:{part.mime_type or 'image/jpeg'};base64,{raw}"


def to_openai_messages(messages: Sequence[Message]) -> list[dict[str, Any]]:
    """Convert {role, parts} messages to OpenAI chat messages."""
    converted = []
    for msg in messages:
        if msg.role in ("model", "assistant"):
            role = "assistant"
        elif msg.role == "system":
            role = "system"
        else:
            role = "user"

        content: list[dict[str, Any]] = []
        for p in msg.parts:
            if isinstance(p, TextPart):
                content.append({"type": "text", "text": p.text})
            else:
                content.append({"type": "image_url", "image_url": {"url": _data_url(p), "detail": "auto"}})

        # Strict multimodal parsers reject blank text blocks next to images
        if len(content) > 1:
            filtered = [c for c in content if c["type"] != "text" or c["text"].strip()]
            if filtered:
                content = filtered

        final: str | list[dict[str, Any]] = content
        if len(content) == 1 and content[0]["type"] == "text":
            final = content[0]["text"]
        elif not content:
            final = ""
        converted.append({"role": role, "content": final})
    return converted


def parse_sse_line(line: str) -> str | None:
    """Return the content delta carried by one SSE line, if any.

    Raises ``StreamFormatError`` when a ``data:`` line is not valid JSON.
    """
    trimmed = line.strip()
    if not trimmed or trimmed == "data: [DONE]" or not trimmed.startswith("data: "):
        return None
    try:
        payload = json.loads(trimmed[6:])
    except json.JSONDecodeError as e:
        raise StreamFormatError(f"Malformed SSE line: {trimmed[:80]!r}") from e
    try:
        delta = payload["choices"][0]["delta"].get("content")
    except (KeyError, IndexError, TypeError, AttributeError):
        return None
    return delta or None


class OpenAICompatClient:
    """Async HTTP client for OpenAI-compatible chat/completions backends.

    Args:
        config:    Provider, model, temperature and reasoning effort.
        api_key:   Bearer token.
        base_url:  Override for the per-provider base URL table.
        timeout:   HTTP timeout in seconds. Defaults to 120.
        transport: Optional httpx transport (tests inject a MockTransport).
    """

    def __init__(
        self,
        config: AIConfig,
        api_key: str = "",
        base_url: str | None = None,
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._api_key = api_key
        self._base_url = (base_url or BASE_URLS.get(provider_key(config.provider), DEFAULT_BASE_URL)).rstrip("/")
        self._timeout = timeout
        self._transport = transport

    @property
    def url(self) -> str:
        return f"{self._base_url}/chat/completions"

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._api_key}",
        }

    def build_body(
        self,
        messages: Sequence[Message],
        *,
        stream: bool = False,
        json_mode: bool = False,
        max_output_tokens: int | None = None,
    ) -> dict:
        body: dict[str, Any] = {
            "model": self._config.model,
            "messages": to_openai_messages(messages),
            "temperature": self._config.temperature,
        }
        if stream:
            body["stream"] = True
        if max_output_tokens:
            body["max_tokens"] = max_output_tokens
        effort = self._config.reasoning_effort
        if effort and effort != "minimal":
            body["reasoning_effort"] = effort
        if json_mode and supports_json_mode(self._config.provider):
            body["response_format"] = {"type": "json_object"}
        return body

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    async def generate(
        self,
        messages: Sequence[Message],
        *,
        json_mode: bool = False,
        max_output_tokens: int | None = None,
    ) -> Generation:
        body = self.build_body(messages, json_mode=json_mode, max_output_tokens=max_output_tokens)
        logger.debug("llm call url=%s model=%s turns=%d", self.url, self._config.model, len(messages))

        async with self._http() as client:
            resp = await client.post(self.url, json=body, headers=self._headers())
        if not resp.is_success:
            raise TransportError(resp.status_code, resp.reason_phrase, resp.text)

        data = resp.json()
        choices = data.get("choices") or [{}]
        text = (choices[0].get("message") or {}).get("content") or ""
        logger.debug("llm response len=%d", len(text))
        return Generation(text=text)

    async def generate_stream(
        self,
        messages: Sequence[Message],
        *,
        json_mode: bool = False,
        max_output_tokens: int | None = None,
        cancel: CancelToken | None = None,
    ) -> AsyncIterator[StreamDelta]:
        body = self.build_body(
            messages, stream=True, json_mode=json_mode, max_output_tokens=max_output_tokens,
        )
        logger.debug("llm stream url=%s model=%s turns=%d", self.url, self._config.model, len(messages))

        async with self._http() as client:
            async with client.stream("POST", self.url, json=body, headers=self._headers()) as resp:
                if not resp.is_success:
                    await resp.aread()
                    raise TransportError(resp.status_code, resp.reason_phrase, resp.text)
                if cancel is not None:
                    cancel.on_cancel(resp.aclose)

                buffer = ""
                received = False
                try:
                    async for chunk in resp.aiter_text():
                        if cancel is not None and cancel.cancelled:
                            return
                        received = received or bool(chunk)
                        buffer += chunk
                        *lines, buffer = buffer.split("\n")
                        for line in lines:
                            delta = self._line_delta(line)
                            if delta:
                                yield StreamDelta(text=delta)
                except Exception:
                    if cancel is not None and cancel.cancelled:
                        logger.debug("llm stream cancelled")
                        return
                    raise

                if not received:
                    raise MissingStreamBodyError(resp.status_code, resp.reason_phrase)
                delta = self._line_delta(buffer)
                if delta:
                    yield StreamDelta(text=delta)

    @staticmethod
    def _line_delta(line: str) -> str | None:
        try:
            return parse_sse_line(line)
        except StreamFormatError as e:
            logger.debug("Skipping stream line: %s", e)
            return None


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------

def resolve_api_key(config: AIConfig, api_keys: Mapping[str, str]) -> str:
    return config.api_key or api_keys.get(provider_key(config.provider), "") or ""


def create_client(
    config: AIConfig,
    api_keys: Mapping[str, str],
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    genai_client: genai.Client | None = None,
) -> LLMClient:
    """Build the client for ``config.provider``."""
    api_key = resolve_api_key(config, api_keys)
    if provider_key(config.provider) == Provider.GEMINI.value:
        return GeminiClient(config, api_key, client=genai_client)
    return OpenAICompatClient(config, api_key, transport=transport)


# ---------------------------------------------------------------------------
# Connection check
# ---------------------------------------------------------------------------

CONNECTION_TEST_MESSAGE = "Hello! Please reply with 'Connection Successful' if you receive this."


class ConnectionCheck(BaseModel):
    success: bool
    response: str
    latency_ms: int
    request_details: dict[str, Any]


async def check_connection(
    config: AIConfig,
    api_key: str,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    genai_client: genai.Client | None = None,
) -> ConnectionCheck:
    """Send one greeting to the configured model. Never raises."""
    client = create_client(
        config, {provider_key(config.provider): api_key},
        transport=transport, genai_client=genai_client,
    )
    messages = [Message(role="user", parts=[TextPart(text=CONNECTION_TEST_MESSAGE)])]
    details: dict[str, Any] = {
        "provider": provider_key(config.provider),
        "model": config.model,
        "endpoint": "google-genai SDK" if provider_key(config.provider) == Provider.GEMINI.value else "REST /chat/completions",
        "messages": [m.model_dump() for m in messages],
        "reasoning_effort": config.reasoning_effort,
    }
    start = time.monotonic()
    try:
        result = await client.generate(messages)
    except Exception as e:
        details["error"] = repr(e)
        return ConnectionCheck(
            success=False,
            response=f"Error: {e}",
            latency_ms=int((time.monotonic() - start) * 1000),
            request_details=details,
        )
    return ConnectionCheck(
        success=True,
        response=result.text,
        latency_ms=int((time.monotonic() - start) * 1000),
        request_details=details,
    )
