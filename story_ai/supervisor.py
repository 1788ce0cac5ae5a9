"""Retry/validation loop around a generation call.

Each logical request gets an id from a ``StatusReporter`` and moves through
``blue`` (processing) -> ``yellow`` (warn) -> ``red`` (danger) as attempts
fail, ending in ``green`` (success) or ``gray`` (abandoned). Status events go
to an injected sink; nothing waits on them.
"""

from __future__ import annotations

import itertools
import json
import logging
import re
from collections.abc import Awaitable, Callable
from typing import Any, Protocol, TypeVar

from story_ai.errors import OutputValidationError, ParseError
from story_ai.models import StatusColor, StatusEvent

logger = logging.getLogger(__name__)

T = TypeVar("T")

StatusSink = Callable[[StatusEvent], None]

_FENCE = re.compile(r"```(?:json)?", re.IGNORECASE)


class HasText(Protocol):
    text: str


class StatusReporter:
    """Issues request ids and forwards status events to ``sink``."""

    def __init__(self, sink: StatusSink | None = None, prefix: str = "req") -> None:
        self._sink = sink
        self._prefix = prefix
        self._ids = itertools.count(1)

    def new_request_id(self) -> str:
        return f"{self._prefix}_{next(self._ids)}"

    def emit(self, request_id: str, color: StatusColor) -> None:
        if self._sink is None:
            return
        try:
            self._sink(StatusEvent(id=request_id, color=color))
        except Exception as e:
            logger.debug("Status sink failed for %s: %s", request_id, e)


default_reporter = StatusReporter()


def strip_code_fences(text: str) -> str:
    """Remove Markdown code-fence markers (```json / ```) and surrounding whitespace."""
    return _FENCE.sub("", text).strip()


def parse_json_output(text: str) -> Any:
    """Parse model output as JSON after stripping code fences."""
    cleaned = strip_code_fences(text)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise ParseError(f"Model output is not valid JSON: {e}") from e


def _attempt_color(attempt: int) -> StatusColor:
    if attempt == 0:
        return "blue"
    if attempt == 1:
        return "yellow"
    return "red"


async def robust_generate(
    call_api: Callable[[], Awaitable[HasText | str]],
    validator: Callable[[Any], Any],
    max_retries: int = 3,
    on_failure: Callable[[BaseException, str], None] | None = None,
    *,
    reporter: StatusReporter | None = None,
) -> Any | None:
    """Call ``call_api`` until its output parses and passes ``validator``.

    Attempts run strictly one after another. Every failure (transport,
    parse or validation) is retried the same way. After the last failed
    attempt ``on_failure(error, last_raw_text)`` is called once and
    ``None`` is returned.
    """
    reporter = reporter or default_reporter
    request_id = reporter.new_request_id()
    last_raw = ""

    for attempt in range(max_retries):
        reporter.emit(request_id, _attempt_color(attempt))
        try:
            result = await call_api()
            last_raw = result if isinstance(result, str) else result.text
            data = parse_json_output(last_raw)
            if not validator(data):
                raise OutputValidationError("Validation failed")
        except Exception as e:
            logger.warning("Generate attempt %d/%d failed (%s): %s", attempt + 1, max_retries, request_id, e)
            if attempt == max_retries - 1 and on_failure is not None:
                on_failure(e, last_raw)
            continue

        reporter.emit(request_id, "green")
        return data

    reporter.emit(request_id, "gray")
    return None
