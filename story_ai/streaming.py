"""Live field extraction from an in-flight JSON response.

While a structured response streams in, the buffer is almost never a valid
JSON document. ``extract_partial_field`` pulls the current value of one
string field out of it lexically, so the caller can show text as it arrives.
"""

from __future__ import annotations

import logging
import re
from collections.abc import AsyncIterator, Callable, Sequence
from dataclasses import dataclass
from typing import Any

from story_ai.llm import StreamDelta
from story_ai.supervisor import StatusReporter, default_reporter, parse_json_output

logger = logging.getLogger(__name__)

_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "b": "\b", "f": "\f", '"': '"', "\\": "\\", "/": "/"}
_HEX = set("0123456789abcdefABCDEF")


def extract_partial_field(buffer: str, key: str) -> str:
    """Return the (possibly unfinished) string value of ``key`` in ``buffer``.

    Scans from the opening quote of the first ``"key": "`` occurrence up to
    the closing quote or the end of the buffer. Returns ``""`` when the key
    has not arrived yet. Never raises.
    """
    match = re.search(r'"' + re.escape(key) + r'"\s*:\s*"', buffer)
    if not match:
        return ""

    out: list[str] = []
    escaped = False
    i = match.end()
    n = len(buffer)
    while i < n:
        ch = buffer[i]
        if escaped:
            escaped = False
            if ch == "u":
                code = buffer[i + 1:i + 5]
                if len(code) == 4 and all(c in _HEX for c in code):
                    out.append(chr(int(code, 16)))
                    i += 5
                    continue
                if len(code) < 4:  # escape cut off by the stream
                    break
            out.append(_ESCAPES.get(ch, ch))
        elif ch == "\\":
            escaped = True
        elif ch == '"':
            break
        else:
            out.append(ch)
        i += 1
    return "".join(out)


@dataclass
class StreamResult:
    data: Any | None
    raw: str


async def stream_structured(
    stream: AsyncIterator[StreamDelta],
    keys: Sequence[str],
    on_update: Callable[[dict[str, str]], None],
    *,
    reporter: StatusReporter | None = None,
) -> StreamResult:
    """Consume a JSON response stream, reporting live field values.

    ``on_update`` receives ``{key: partial value}`` every time one of the
    values changes. At end of stream the whole buffer is parsed. Any
    failure (transport or parse) yields ``StreamResult(None, raw)``.
    """
    reporter = reporter or default_reporter
    request_id = reporter.new_request_id()
    reporter.emit(request_id, "blue")

    buffer = ""
    current = {k: "" for k in keys}
    try:
        async for delta in stream:
            if not delta.text:
                continue
            buffer += delta.text
            latest = {k: extract_partial_field(buffer, k) for k in keys}
            if latest != current:
                current = latest
                on_update(dict(current))
        data = parse_json_output(buffer)
    except Exception as e:
        logger.warning("Stream/parse failed after %d chars: %s", len(buffer), e)
        reporter.emit(request_id, "gray")
        return StreamResult(data=None, raw=buffer)

    reporter.emit(request_id, "green")
    return StreamResult(data=data, raw=buffer)

