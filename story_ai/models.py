"""Core domain models.

Every component of the orchestration core reads and produces these types.
Pydantic is used for validation and serialisation at every data boundary:
game state, settings and context layers arrive as plain JSON and are
validated here once.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

Role = Literal["user", "model", "assistant", "system"]
StatusColor = Literal["blue", "green", "yellow", "red", "gray"]
ReasoningEffort = Literal["minimal", "low", "medium", "high"]


class Provider(str, Enum):
    GEMINI = "gemini"
    OPENAI = "openai"
    XAI = "xai"
    OPENROUTER = "openrouter"
    VOLCANO = "volcano"
    CLAUDE = "claude"


# ---------------------------------------------------------------------------
# Game state (read-only inputs)
# ---------------------------------------------------------------------------

class ImageRef(BaseModel):
    """An image owned by game state. The builder only borrows it per request."""

    id: str
    base64: str
    mime_type: str = "image/jpeg"
    description: str | None = None


class RoundSnapshot(BaseModel):
    is_hidden_round: bool = False
    current_order: list[str] = Field(default_factory=list)


class LogEntry(BaseModel):
    """One line of the world history. Immutable once appended."""

    model_config = ConfigDict(frozen=True)

    round: int
    content: str
    acting_char_id: str | None = None
    present_char_ids: list[str] | None = None
    location_id: str | None = None
    images: list[ImageRef] = Field(default_factory=list)
    snapshot: RoundSnapshot | None = None


class MemoryOverride(BaseModel):
    use_override: bool = False
    max_memory_rounds: int = 10
    action_dropout_probability: float | None = None
    reaction_dropout_probability: float | None = None


class Character(BaseModel):
    id: str
    name: str
    memory_config: MemoryOverride | None = None

    @property
    def is_env(self) -> bool:
        return self.id.startswith("env_")


class Location(BaseModel):
    id: str
    name: str


# ---------------------------------------------------------------------------
# Chat messages
# ---------------------------------------------------------------------------

class TextPart(BaseModel):
    text: str


class InlinePart(BaseModel):
    """Inline image payload. ``data`` is base64, possibly with a data-URL prefix."""

    mime_type: str
    data: str

    @model_validator(mode="before")
    @classmethod
    def _unwrap_native(cls, value: Any) -> Any:
        # Accept the native wire shape {"inlineData": {"mimeType", "data"}}
        if isinstance(value, dict):
            inner = value.get("inlineData") or value.get("inline_data")
            if isinstance(inner, dict):
                value = inner
            if "mimeType" in value and "mime_type" not in value:
                value = {"mime_type": value["mimeType"], "data": value.get("data", "")}
        return value


Part = Union[TextPart, InlinePart]


class Message(BaseModel):
    role: Role = "user"
    parts: list[Part] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _content_to_parts(cls, value: Any) -> Any:
        """Legacy context layers carry ``content`` (string or list) instead of parts."""
        if not isinstance(value, dict) or "parts" in value or "content" not in value:
            return value
        content = value["content"]
        if isinstance(content, list):
            parts: list[Any] = []
            for item in content:
                if isinstance(item, str):
                    parts.append({"text": item})
                elif isinstance(item, dict) and item.get("type") == "text":
                    parts.append({"text": item.get("text", "")})
                else:
                    parts.append(item)
        else:
            parts = [{"text": "" if content is None else str(content)}]
        return {"role": value.get("role", "user"), "parts": parts}

    @property
    def has_image(self) -> bool:
        return any(isinstance(p, InlinePart) for p in self.parts)

    @property
    def text(self) -> str:
        return "".join(p.text for p in self.parts if isinstance(p, TextPart))


class ContextConfig(BaseModel):
    """An ordered layer of context messages (global, per-model or per-character)."""

    messages: list[Message] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class AIConfig(BaseModel):
    # Unknown provider names are kept as plain strings (served as OpenAI-compatible)
    provider: Annotated[Union[Provider, str], Field(union_mode="left_to_right")] = Provider.GEMINI
    model: str = ""
    api_key: str | None = None
    temperature: float = 1.0
    reasoning_effort: ReasoningEffort | None = None
    context_config: ContextConfig | None = None

    def duplicate(self, **changes: Any) -> AIConfig:
        """Return an independent copy, optionally with some fields replaced."""
        copy = self.model_copy(deep=True)
        return copy.model_copy(update=changes) if changes else copy


class GlobalVariable(BaseModel):
    key: str
    value: str = ""


class AppSettings(BaseModel):
    api_keys: dict[str, str] = Field(default_factory=dict)
    global_variables: list[GlobalVariable] = Field(default_factory=list)
    max_input_tokens: int = 64000
    max_output_tokens: int = 8192
    max_character_memory_rounds: int = 10
    max_env_memory_rounds: int = 5
    max_short_history_rounds: int = 5
    action_memory_dropout_probability: float = 0.34
    reaction_memory_dropout_probability: float = 0.34
    enable_streaming: bool = True


# ---------------------------------------------------------------------------
# Observability
# ---------------------------------------------------------------------------

class DebugLog(BaseModel):
    id: str
    timestamp: int  # epoch milliseconds
    character_name: str
    prompt: str
    response: str


class StatusEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    color: StatusColor
