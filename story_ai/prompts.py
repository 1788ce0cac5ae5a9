"""Prompt filling, tag-based turn splitting and context assembly.

Templates use ``{{KEY}}`` placeholders. Global variables (from settings) are
substituted before and after the caller's data so that variables introduced
by user-authored data are resolved too.

A filled prompt may split itself into turns with ``<user>``, ``<system>``,
``<assistant>`` and ``<model>`` tags; ``build_context_messages`` then stacks
the global, per-model and per-character context layers in front of it.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable, Mapping, Sequence
from typing import Union

from story_ai.errors import PromptError
from story_ai.models import (
    ContextConfig,
    GlobalVariable,
    InlinePart,
    Message,
    Part,
    TextPart,
)

logger = logging.getLogger(__name__)

__all__ = [
    "PromptError",
    "build_context_messages",
    "fill_prompt",
    "parse_prompt_structure",
    "replace_global_variables",
]

Interleaver = Callable[[str], list[Part]]
ContextLayer = Union[ContextConfig, Sequence[Message], None]

_TAG_RE = re.compile(r"<(user|system|assistant|model)>([\s\S]*?)</\1>", re.IGNORECASE)


def replace_global_variables(
    text: str, variables: Iterable[GlobalVariable] | None
) -> str:
    """Replace every ``{{key}}`` occurrence with its global value."""
    if not text or not variables:
        return text
    for var in variables:
        text = text.replace("{{" + var.key + "}}", var.value)
    return text


def fill_prompt(
    template: str,
    data: Mapping[str, str],
    variables: Iterable[GlobalVariable] | None = None,
) -> str:
    """Fill a template with global variables and caller data."""
    variables = list(variables or [])
    prompt = replace_global_variables(template, variables)
    for key, value in data.items():
        prompt = prompt.replace("{{" + key + "}}", str(value))
    return replace_global_variables(prompt, variables)


def parse_prompt_structure(prompt: str, interleave: Interleaver) -> list[Message]:
    """Split a tagged prompt into role-tagged turns.

    Untagged text before, between or after tags becomes a ``user`` turn;
    ``model`` is normalized to ``assistant``. A ``system`` turn carrying an
    image is sent as ``user`` since several backends reject images there.
    Without any tags the whole prompt is one ``user`` turn.
    """
    messages: list[Message] = []
    last = 0
    found = False

    for match in _TAG_RE.finditer(prompt):
        found = True
        before = prompt[last:match.start()].strip()
        if before:
            messages.append(Message(role="user", parts=interleave(before)))

        role = match.group(1).lower()
        if role == "model":
            role = "assistant"

        content = match.group(2).strip()
        if content:
            parts = interleave(content)
            if role == "system" and any(isinstance(p, InlinePart) for p in parts):
                logger.warning("Image in system turn, sending it as a user turn instead")
                role = "user"
            messages.append(Message(role=role, parts=parts))

        last = match.end()

    if not found:
        return [Message(role="user", parts=interleave(prompt))]

    after = prompt[last:].strip()
    if after:
        messages.append(Message(role="user", parts=interleave(after)))
    return messages


def _layer_messages(layer: ContextLayer) -> list[Message]:
    if layer is None:
        return []
    if isinstance(layer, ContextConfig):
        return list(layer.messages)
    return [m if isinstance(m, Message) else Message.model_validate(m) for m in layer]


def _canonical_role(role: str) -> str:
    if role in ("model", "assistant"):
        return "model"
    if role == "system":
        return "system"
    return "user"


def build_context_messages(
    global_context: ContextLayer,
    model_context: ContextLayer,
    character_context: ContextLayer,
    turns: str | Sequence[Message] | Sequence[Part],
    variables: Iterable[GlobalVariable] | None = None,
) -> list[Message]:
    """Stack context layers and the prompt turns into one message list.

    Order: global, model-specific, character-specific, then ``turns`` (a
    parsed multi-turn list, a list of parts, or a plain string). Global
    variables are substituted in every text part and roles come out as
    ``user``, ``model`` or ``system``.
    """
    raw: list[Message] = []
    raw.extend(_layer_messages(global_context))
    raw.extend(_layer_messages(model_context))
    raw.extend(_layer_messages(character_context))

    if isinstance(turns, str):
        raw.append(Message(role="user", parts=[TextPart(text=turns)]))
    elif turns and all(isinstance(t, Message) for t in turns):
        raw.extend(turns)  # type: ignore[arg-type]
    elif all(isinstance(t, (TextPart, InlinePart)) for t in turns):
        raw.append(Message(role="user", parts=list(turns)))  # type: ignore[arg-type]
    else:
        raise PromptError(f"Unsupported prompt input: {type(turns).__name__}")

    variables = list(variables or [])
    result: list[Message] = []
    for msg in raw:
        parts: list[Part] = []
        for part in msg.parts:
            if isinstance(part, TextPart):
                parts.append(TextPart(text=replace_global_variables(part.text, variables)))
            else:
                parts.append(part)
        result.append(Message(role=_canonical_role(msg.role), parts=parts))
    return result
