"""Feature orchestrator - runs one model request end to end.

Request flow:
  1. Fill the feature template with global variables and caller data.
  2. Split the prompt into turns on <user>/<system>/<assistant> tags,
     inlining images registered in the request's own ImageContextBuilder.
  3. Stack global, model-specific and character-specific context layers.
  4. Stream the response (live field updates) when streaming is enabled and
     the caller listens; otherwise generate under the retry supervisor.
  5. Emit debug log entries for success and failure.

Callers get the parsed JSON, or None when the model never produced valid
output.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from story_ai.images import ImageContextBuilder
from story_ai.llm import LLMClient, create_client, supports_json_mode
from story_ai.models import AIConfig, AppSettings, ContextConfig, DebugLog, Message
from story_ai.prompts import build_context_messages, fill_prompt, parse_prompt_structure
from story_ai.streaming import stream_structured
from story_ai.supervisor import StatusReporter, robust_generate

logger = logging.getLogger(__name__)

DebugSink = Callable[[DebugLog], None]


@dataclass
class FeatureRequest:
    """Everything one feature call needs. Build a new one per call."""

    name: str
    template: str
    config: AIConfig
    settings: AppSettings
    validator: Callable[[Any], Any]
    data: Mapping[str, str] = field(default_factory=dict)
    global_context: ContextConfig | None = None
    character_context: ContextConfig | None = None
    character_name: str = "System"
    stream_keys: Sequence[str] = ()
    json_mode: bool = True
    max_retries: int = 3
    image_builder: ImageContextBuilder = field(default_factory=ImageContextBuilder)


def build_messages(request: FeatureRequest) -> list[Message]:
    variables = request.settings.global_variables
    prompt = fill_prompt(request.template, request.data, variables)
    turns = parse_prompt_structure(prompt, request.image_builder.interleave)
    return build_context_messages(
        request.global_context,
        request.config.context_config,
        request.character_context,
        turns,
        variables,
    )


def _now_ms() -> int:
    return int(time.time() * 1000)


def _dump_messages(messages: Sequence[Message]) -> str:
    return json.dumps([m.model_dump() for m in messages], ensure_ascii=False, indent=2)


async def run_feature(
    request: FeatureRequest,
    *,
    client: LLMClient | None = None,
    on_stream: Callable[[dict[str, str]], None] | None = None,
    on_debug: DebugSink | None = None,
    reporter: StatusReporter | None = None,
) -> Any | None:
    """Execute one feature request and return the parsed, validated JSON or None."""
    client = client or create_client(request.config, request.settings.api_keys)
    messages = build_messages(request)
    json_mode = request.json_mode and supports_json_mode(request.config.provider)
    max_tokens = request.settings.max_output_tokens
    logger.debug("feature=%s character=%s turns=%d", request.name, request.character_name, len(messages))

    def debug(suffix: str, character_name: str, response: str) -> None:
        if on_debug is None:
            return
        on_debug(DebugLog(
            id=f"debug_{request.name}{suffix}_{request.character_name}_{_now_ms()}",
            timestamp=_now_ms(),
            character_name=character_name,
            prompt=_dump_messages(messages),
            response=response,
        ))

    if request.settings.enable_streaming and on_stream is not None and request.stream_keys:
        stream = client.generate_stream(messages, json_mode=json_mode, max_output_tokens=max_tokens)
        result = await stream_structured(stream, request.stream_keys, on_stream, reporter=reporter)
        if result.data is not None and request.validator(result.data):
            debug("_stream", request.character_name, result.raw)
            return result.data
        logger.warning("feature=%s stream produced no valid output", request.name)
        debug("_stream_fail", f"{request.character_name} (Failed)", f"Raw Response:\n{result.raw or '(No Response)'}")
        return None

    def on_failure(error: BaseException, raw: str) -> None:
        debug(
            "_fail",
            f"{request.character_name} (Failed)",
            f"Error: {error}\n\nRaw Response:\n{raw or '(No Response)'}",
        )

    data = await robust_generate(
        lambda: client.generate(messages, json_mode=json_mode, max_output_tokens=max_tokens),
        request.validator,
        request.max_retries,
        on_failure,
        reporter=reporter,
    )
    if data is not None:
        debug("", request.character_name, json.dumps(data, ensure_ascii=False, indent=2))
    return data
