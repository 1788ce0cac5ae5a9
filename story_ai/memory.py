"""Token-budgeted history for the whole world or a single actor.

World memory is a plain recency window. Actor memory keeps every round the
actor witnessed inside its capacity and samples older rounds with a
logarithmic decay:

    age < capacity                  step = 1   (keep all)
    capacity <= age < 2*capacity    step = 2
    2^(n-1)*capacity <= age < 2^n*capacity   step = 2^n

A round is kept iff ``age % step == 0``. Runs of skipped rounds collapse
into one gap-summary line naming where the actor was and whom they saw.

Budgets are checked per block (one entry or one round); a block that does
not fit stops the walk and is dropped whole, never truncated.
"""

from __future__ import annotations

import logging
import random
import re
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Literal

from story_ai.images import ImageContextBuilder
from story_ai.models import AppSettings, Character, DebugLog, Location, LogEntry
from story_ai.tokens import estimate_token_count

logger = logging.getLogger(__name__)

HEADROOM_TOKENS = 4000  # system prompt + world state + misc context
MIN_BUDGET_TOKENS = 1000
WORLD_CANDIDATE_LIMIT = 50
SUMMARY_MAX_LOCATIONS = 3
SUMMARY_MAX_ACTORS = 5
ACTION_DROPOUT_MEMORY_ROUNDS = 4
REACTION_DROPOUT_MEMORY_ROUNDS = 2
DEFAULT_DROPOUT_PROBABILITY = 0.34

DropoutKind = Literal["action", "reaction"]
_DROPOUT_ID_TAGS = {"action": "act", "reaction": "react"}

SYSTEM_ACTOR = "system"
ENV_PREFIX = "env_"

_HTML_TAG = re.compile(r"<[^>]+>")
_SYSTEM_LINE = re.compile(r"^(系统|\[系统\]|system|\[system\])[:：\s]", re.IGNORECASE)
_STORY_TIME = (
    re.compile(r"当前故事时间：(.*?)，世界状态：(.*)"),
    re.compile(r"current story time:\s*(.*?),\s*world state:\s*(.*)", re.IGNORECASE),
)
_SKILL_ACTIVATION = re.compile(r"发动了.*技能|activated .*skill", re.IGNORECASE)

# Meta-mechanic notices an actor should not recall as narrative.
POPULATION_PHRASES = ("(后台)", "正在寻找", "发现当地角色", "(background)", "searching for", "found local character")
SETTLEMENT_PHRASES = ("--- 轮次结算", "欲望已满足", "新欲望已产生", "--- round settlement", "desire fulfilled", "new desire generated")
ENGINE_PHRASES = ("引擎全局设置", "engine global settings")
TRAVEL_PHRASES = ("快速移动至", "fast travel to")
SKILL_TARGET_PHRASES = ("(目标: ", "(target: ")
FILTERED_PHRASES = (
    POPULATION_PHRASES + SETTLEMENT_PHRASES + ENGINE_PHRASES + TRAVEL_PHRASES + SKILL_TARGET_PHRASES
)

MECHANIC_MARKERS = (">", "＞")
# Mechanic lines survive only when they record something the actor would remember.
MECHANIC_KEEP_KEYWORDS = (
    "获得", "交易", "抽取", "放入", "查看", "发现", "移动", "燃命",
    "obtain", "acquire", "trade", "draw", "deposit", "inspect", "discover", "move", "burn life",
)
PAST_ONLY_PHRASES = ("(行为生效)", "(action took effect)")


def strip_html(text: str) -> str:
    return _HTML_TAG.sub("", text)


def _contains_any(text: str, phrases: Sequence[str]) -> bool:
    lowered = text.lower()
    return any(p.lower() in lowered for p in phrases)


def _budget(token_limit: int) -> int:
    return max(MIN_BUDGET_TOKENS, token_limit - HEADROOM_TOKENS)


# ---------------------------------------------------------------------------
# World memory
# ---------------------------------------------------------------------------

def build_world_memory(
    history: Sequence[LogEntry],
    current_round: int,
    rounds_to_keep: int = 20,
    token_limit: int = 64000,
    image_builder: ImageContextBuilder | None = None,
) -> str:
    """Recent history for world-level prompts, one ``[R<round>] ...`` line per entry."""
    budget = _budget(token_limit)
    min_round = max(1, current_round - rounds_to_keep)
    candidates = [e for e in history if e.round >= min_round][-WORLD_CANDIDATE_LIMIT:]

    selected: list[str] = []
    used = 0
    for entry in reversed(candidates):
        content = strip_html(entry.content)
        if image_builder is not None and entry.images:
            content += image_builder.image_tags(entry.images)
        line = f"[R{entry.round}] {content}"
        tokens = estimate_token_count(line)
        if used + tokens > budget:
            break
        selected.append(line)
        used += tokens

    selected.reverse()
    return "\n".join(selected)


# ---------------------------------------------------------------------------
# Actor memory
# ---------------------------------------------------------------------------

def decay_step(age: int, capacity: int) -> int:
    """Sampling interval for a round ``age`` rounds in the past."""
    capacity = max(1, capacity)
    if age < capacity:
        return 1
    tier = (age // capacity).bit_length()  # floor(log2(age / capacity)) + 1
    return 2 ** tier


def is_round_kept(age: int, capacity: int) -> bool:
    return age % decay_step(age, capacity) == 0


def is_present(entry: LogEntry, actor_id: str, current_location_id: str | None = None) -> bool:
    """Whether ``actor_id`` witnessed ``entry``."""
    snapshot = entry.snapshot
    if snapshot is not None and snapshot.is_hidden_round:
        participant = actor_id in snapshot.current_order or entry.acting_char_id == actor_id
        if not participant and actor_id != SYSTEM_ACTOR and not actor_id.startswith(ENV_PREFIX):
            return False

    if entry.present_char_ids and actor_id in entry.present_char_ids:
        return True
    if current_location_id and entry.location_id == current_location_id:
        return True
    if entry.acting_char_id == actor_id:
        return True
    if actor_id.startswith(ENV_PREFIX):
        return entry.location_id == actor_id[len(ENV_PREFIX):]
    return False


def clean_memory_line(text: str, *, past_round: bool) -> str | None:
    """Strip mechanics from one history entry. ``None`` means drop it."""
    text = strip_html(text).strip()

    if _SYSTEM_LINE.match(text) or text.startswith("系统"):
        return None
    if _contains_any(text, FILTERED_PHRASES):
        return None
    if text.startswith(MECHANIC_MARKERS) and not _contains_any(text, MECHANIC_KEEP_KEYWORDS):
        return None

    for pattern, sep in zip(_STORY_TIME, ("，", ", ")):
        match = pattern.search(text)
        if match:
            text = f"{match.group(1)}{sep}{match.group(2)}"
            break

    if past_round:
        if _SKILL_ACTIVATION.search(text):
            return None
        if _contains_any(text, PAST_ONLY_PHRASES):
            return None

    if not text.strip():
        return None
    return text


@dataclass
class _GapBuffer:
    start_round: int | None = None
    end_round: int | None = None
    locations: dict[str, None] = field(default_factory=dict)
    actors: dict[str, None] = field(default_factory=dict)

    def add(self, round_: int, entries: Sequence[LogEntry], actor_id: str) -> None:
        if self.end_round is None:
            self.end_round = round_
        self.start_round = round_  # walking back in time
        for e in entries:
            if e.location_id:
                self.locations[e.location_id] = None
            for cid in e.present_char_ids or []:
                if cid != actor_id:
                    self.actors[cid] = None

    def summary(
        self,
        characters: Mapping[str, Character] | None,
        locations: Mapping[str, Location] | None,
    ) -> str:
        loc_names = [locations[l].name for l in self.locations if locations and l in locations]
        actor_names = [characters[c].name for c in self.actors if characters and c in characters]

        loc_str = ""
        if loc_names:
            more = "..." if len(loc_names) > SUMMARY_MAX_LOCATIONS else ""
            loc_str = f"Locations: {','.join(loc_names[:SUMMARY_MAX_LOCATIONS])}{more}"
        actor_str = ""
        if actor_names:
            more = "..." if len(actor_names) > SUMMARY_MAX_ACTORS else ""
            actor_str = f"Seen: {','.join(actor_names[:SUMMARY_MAX_ACTORS])}{more}"

        return f"[R{self.start_round}-R{self.end_round} summary] {loc_str} {actor_str}".strip()


def build_actor_memory(
    history: Sequence[LogEntry],
    actor_id: str,
    current_location_id: str | None = None,
    capacity: int = 10,
    token_limit: int = 64000,
    characters: Mapping[str, Character] | None = None,
    locations: Mapping[str, Location] | None = None,
    image_builder: ImageContextBuilder | None = None,
) -> str:
    """Decay-sampled, cleaned memory of what ``actor_id`` witnessed.

    The newest round the actor witnessed counts as the current round.
    Output is chronological, with gap summaries where rounds were skipped.
    """
    if not history:
        return ""
    budget = _budget(token_limit)

    rounds: dict[int, list[LogEntry]] = {}
    for entry in history:
        if is_present(entry, actor_id, current_location_id):
            rounds.setdefault(entry.round, []).append(entry)
    if not rounds:
        return ""

    ordered = sorted(rounds, reverse=True)
    current_round = ordered[0]
    blocks: list[str] = []
    used = 0
    gap = _GapBuffer()

    def flush_gap() -> None:
        nonlocal gap, used
        if gap.start_round is None:
            return
        summary = gap.summary(characters, locations)
        tokens = estimate_token_count(summary)
        if used + tokens <= budget:
            blocks.append(summary)
            used += tokens
        gap = _GapBuffer()

    for round_ in ordered:
        if used >= budget:
            break

        age = current_round - round_
        if not is_round_kept(age, capacity):
            gap.add(round_, rounds[round_], actor_id)
            continue

        flush_gap()
        lines = []
        for entry in rounds[round_]:
            text = clean_memory_line(entry.content, past_round=entry.round < current_round)
            if text is None:
                continue
            if image_builder is not None and entry.images:
                text += image_builder.image_tags(entry.images)
            lines.append(text)

        block = "\n".join(lines)
        if not block:
            continue
        tokens = estimate_token_count(block)
        if used + tokens > budget:
            logger.debug("Memory budget reached for %s at round %d", actor_id, round_)
            break
        blocks.append(block)
        used += tokens

    flush_gap()
    blocks.reverse()
    return "\n".join(blocks)


def resolve_memory_capacity(
    actor: Character,
    settings: AppSettings,
    *,
    dropout: DropoutKind | None = None,
    rng: Callable[[], float] = random.random,
    on_debug: Callable[[DebugLog], None] | None = None,
) -> tuple[int, bool]:
    """Pick the memory capacity for ``actor``.

    A per-character override wins, then the environment default, then the
    global setting. Action and reaction calls roll a dropout that forces a
    short memory (4 and 2 rounds) to break repetition loops; a triggered
    dropout is reported to ``on_debug``. Returns ``(capacity, dropped_out)``.
    """
    override = actor.memory_config if actor.memory_config and actor.memory_config.use_override else None
    if override is not None:
        capacity = override.max_memory_rounds
    elif actor.is_env:
        capacity = settings.max_env_memory_rounds
    else:
        capacity = settings.max_character_memory_rounds

    if dropout is None:
        return capacity, False

    if dropout == "action":
        short = ACTION_DROPOUT_MEMORY_ROUNDS
        if override is not None:
            probability = override.action_dropout_probability
        else:
            probability = settings.action_memory_dropout_probability
    else:
        short = REACTION_DROPOUT_MEMORY_ROUNDS
        if override is not None:
            probability = override.reaction_dropout_probability
        else:
            probability = settings.reaction_memory_dropout_probability
    if probability is None:
        probability = DEFAULT_DROPOUT_PROBABILITY

    if rng() >= probability:
        return capacity, False

    logger.info("%s memory dropout for %s: %d -> %d rounds", dropout, actor.id, capacity, short)
    if on_debug is not None:
        now = int(time.time() * 1000)
        label = dropout.capitalize()
        on_debug(DebugLog(
            id=f"debug_dropout_{_DROPOUT_ID_TAGS[dropout]}_{actor.name}_{now}",
            timestamp=now,
            character_name=f"System ({label} Dropout)",
            prompt=f"{label} Memory Dropout Triggered",
            response=f"Memory reduced from {capacity} to {short} rounds to prevent repetition.",
        ))
    return short, True
