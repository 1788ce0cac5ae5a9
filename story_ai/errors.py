"""Error taxonomy for provider calls and model output handling.

Transport and output errors all derive from ``LLMError`` so callers that do
not care about the difference can catch one type. The supervisor retries
every one of them; only ``StreamFormatError`` is tolerated in place.
"""

from __future__ import annotations


class LLMError(RuntimeError):
    """Raised when the LLM backend cannot be reached or returns unusable output."""


class TransportError(LLMError):
    """The backend answered with a non-2xx status."""

    def __init__(self, status: int, status_text: str = "", body: str = "") -> None:
        self.status = status
        self.status_text = status_text
        self.body = body
        super().__init__(f"API Error: {status} {status_text} - {body}".rstrip(" -"))


class MissingStreamBodyError(TransportError):
    """A streaming request returned a response without a body."""

    def __init__(self, status: int = 200, status_text: str = "") -> None:
        super().__init__(status, status_text, "No response body for stream.")


class ParseError(LLMError):
    """Model output is not JSON, even after stripping Markdown fences."""


class OutputValidationError(LLMError):
    """Parsed JSON was rejected by the caller's validator."""


class StreamFormatError(LLMError):
    """A single SSE line could not be decoded. Skipped, never fatal."""


class PromptError(Exception):
    """Raised when a prompt cannot be assembled from the given input."""
