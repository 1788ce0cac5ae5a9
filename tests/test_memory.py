"""Tests for world and actor memory compaction."""

import re

import pytest

from story_ai.images import ImageContextBuilder
from story_ai.memory import (
    ACTION_DROPOUT_MEMORY_ROUNDS,
    REACTION_DROPOUT_MEMORY_ROUNDS,
    build_actor_memory,
    build_world_memory,
    clean_memory_line,
    decay_step,
    is_present,
    is_round_kept,
    resolve_memory_capacity,
)
from story_ai.models import (
    AppSettings,
    Character,
    ImageRef,
    Location,
    LogEntry,
    MemoryOverride,
    RoundSnapshot,
)


def entry(round_: int, content: str, **kw) -> LogEntry:
    return LogEntry(round=round_, content=content, **kw)


# ── world memory ────────────────────────────────────────────


def test_world_memory_formats_rounds_chronologically():
    history = [entry(1, "<b>Dawn</b> breaks."), entry(2, "Rain."), entry(3, "Thunder.")]
    assert build_world_memory(history, 3) == "[R1] Dawn breaks.\n[R2] Rain.\n[R3] Thunder."


def test_world_memory_respects_rounds_to_keep():
    history = [entry(r, f"event {r}") for r in range(1, 31)]
    lines = build_world_memory(history, 30, rounds_to_keep=5).split("\n")
    assert lines[0] == "[R25] event 25"
    assert lines[-1] == "[R30] event 30"


def test_world_memory_keeps_last_50_candidates():
    history = [entry(10, f"line {i}") for i in range(80)]
    lines = build_world_memory(history, 10).split("\n")
    assert len(lines) == 50
    assert lines[0] == "[R10] line 30"


def test_world_memory_drops_oldest_when_over_budget():
    history = [entry(r, "word " * 400) for r in range(1, 6)]
    # budget floors at 1000 tokens; each line is 403
    lines = build_world_memory(history, 5, token_limit=3000).split("\n")
    assert [l.split("]")[0] for l in lines] == ["[R4", "[R5"]


def test_world_memory_small_token_limit_keeps_minimum_budget():
    assert build_world_memory([entry(1, "Dawn breaks.")], 1, token_limit=3000) == "[R1] Dawn breaks."


def test_world_memory_window_starts_at_round_one():
    history = [entry(0, "setup"), entry(1, "go")]
    assert build_world_memory(history, 5, rounds_to_keep=20) == "[R1] go"


def test_world_memory_round_numbers_non_decreasing():
    history = [entry(r % 7 + 1, f"e{r}") for r in range(30)]
    history.sort(key=lambda e: e.round)
    out = build_world_memory(history, 7)
    rounds = [int(m.group(1)) for m in re.finditer(r"^\[R(\d+)\]", out, re.MULTILINE)]
    assert rounds == sorted(rounds)


def test_world_memory_registers_images():
    builder = ImageContextBuilder()
    img = ImageRef(id="m1", base64="QUJD", description="a map")
    out = build_world_memory([entry(1, "Found", images=[img])], 1, image_builder=builder)
    assert out == "[R1] Found\n(you see: a map) [[IMG:m1]]"
    assert "m1" in builder


# ── decay ───────────────────────────────────────────────────


@pytest.mark.parametrize("age,capacity,step", [
    (0, 10, 1), (9, 10, 1), (10, 10, 2), (19, 10, 2), (20, 10, 4), (39, 10, 4), (40, 10, 8),
])
def test_decay_step(age, capacity, step):
    assert decay_step(age, capacity) == step


def test_round_85_dropped_at_capacity_10():
    assert is_round_kept(0, 10)
    assert not is_round_kept(15, 10)
    assert is_round_kept(16, 10)


# ── presence ────────────────────────────────────────────────


def test_presence_rules():
    assert is_present(entry(1, "x", present_char_ids=["a"]), "a")
    assert is_present(entry(1, "x", location_id="inn"), "a", "inn")
    assert is_present(entry(1, "x", acting_char_id="a"), "a")
    assert is_present(entry(1, "x", location_id="inn"), "env_inn")
    assert not is_present(entry(1, "x", location_id="inn"), "a", "dock")


def test_hidden_round_requires_participation():
    hidden = RoundSnapshot(is_hidden_round=True, current_order=["b"])
    e = entry(1, "secret", location_id="inn", snapshot=hidden)
    assert not is_present(e, "a", "inn")
    assert is_present(e, "b", "inn")
    assert is_present(e, "env_inn")
    acting = entry(1, "secret", acting_char_id="a", snapshot=hidden)
    assert is_present(acting, "a")


# ── cleaning ────────────────────────────────────────────────


@pytest.mark.parametrize("text", [
    "系统: round begins",
    "[系统] notice",
    "System: autosave",
    "(后台) 正在寻找角色",
    "欲望已满足",
    "新欲望已产生",
    "引擎全局设置已更新",
    "快速移动至 港口",
    "> 技能冷却",
    "> cooldown reset",
])
def test_mechanics_dropped(text):
    assert clean_memory_line(text, past_round=False) is None


def test_mechanic_line_with_keyword_kept():
    assert clean_memory_line("> 获得 金币 x3", past_round=True) == "> 获得 金币 x3"
    assert clean_memory_line("＞ 交易完成", past_round=False) == "＞ 交易完成"
    assert clean_memory_line("> You trade a sword", past_round=True) == "> You trade a sword"


def test_story_time_collapsed():
    text = "当前故事时间：2077年1月1日08时00分，世界状态：日间阴天"
    assert clean_memory_line(text, past_round=False) == "2077年1月1日08时00分，日间阴天"
    english = "Current story time: Day 3 08:00, world state: overcast"
    assert clean_memory_line(english, past_round=False) == "Day 3 08:00, overcast"


def test_skill_activation_dropped_only_for_past_rounds():
    text = "Aki 发动了 火焰 技能"
    assert clean_memory_line(text, past_round=False) == text
    assert clean_memory_line(text, past_round=True) is None
    assert clean_memory_line("Done (行为生效)", past_round=True) is None
    assert clean_memory_line("Done (行为生效)", past_round=False) == "Done (行为生效)"


def test_html_stripped_and_empty_dropped():
    assert clean_memory_line("<i>Quiet.</i>", past_round=False) == "Quiet."
    assert clean_memory_line("<br/>", past_round=False) is None


# ── actor memory ────────────────────────────────────────────


CHARS = {
    "a": Character(id="a", name="Aki"),
    "b": Character(id="b", name="Bren"),
    "c": Character(id="c", name="Cato"),
}
LOCS = {"inn": Location(id="inn", name="Inn"), "dock": Location(id="dock", name="Dock")}


def test_actor_memory_empty_history():
    assert build_actor_memory([], "a") == ""


def test_actor_memory_only_witnessed_rounds():
    history = [
        entry(1, "Aki arrives.", present_char_ids=["a"]),
        entry(2, "Bren schemes alone.", present_char_ids=["b"]),
        entry(3, "Aki waves.", acting_char_id="a"),
    ]
    assert build_actor_memory(history, "a") == "Aki arrives.\nAki waves."


def test_actor_memory_decay_with_gap_summary():
    history = [
        entry(r, f"round {r}", present_char_ids=["a", "b"], location_id="inn")
        for r in range(80, 101)
    ]
    out = build_actor_memory(history, "a", capacity=10, characters=CHARS, locations=LOCS)
    lines = out.split("\n")
    assert lines[-1] == "round 100"
    assert "round 91" in lines
    assert "round 90" in lines  # age 10, step 2
    assert "round 85" not in lines  # age 15, step 2
    assert "round 84" in lines
    assert "round 80" in lines  # age 20, step 4
    assert "[R85-R85 summary] Locations: Inn Seen: Bren" in lines
    assert "[R83-R83 summary] Locations: Inn Seen: Bren" in lines
    assert lines.index("round 80") + 1 == lines.index("[R81-R81 summary] Locations: Inn Seen: Bren")


def test_actor_memory_chronological_with_summaries_interspersed():
    history = [entry(r, f"round {r}", present_char_ids=["a"]) for r in range(0, 41)]
    lines = build_actor_memory(history, "a", capacity=10).split("\n")
    first_round = lines.index("round 31")
    assert lines[first_round - 1] == "round 30"
    assert lines[first_round - 2].startswith("[R29-R29 summary]")


def test_actor_memory_summary_truncates_names():
    chars = {f"x{i}": Character(id=f"x{i}", name=f"N{i}") for i in range(7)}
    locs = {f"l{i}": Location(id=f"l{i}", name=f"L{i}") for i in range(4)}
    history = [entry(20, "now", present_char_ids=["a"])]
    history += [
        entry(5, "old", present_char_ids=["a"] + [f"x{i}" for i in range(7)], location_id=f"l{i}")
        for i in range(4)
    ]
    out = build_actor_memory(history, "a", capacity=10, characters=chars, locations=locs)
    assert "[R5-R5 summary] Locations: L0,L1,L2... Seen: N0,N1,N2,N3,N4..." in out


def test_actor_memory_budget_stops_at_first_overflowing_round():
    history = [
        entry(1, "old " * 1200, present_char_ids=["a"]),
        entry(2, "mid", present_char_ids=["a"]),
        entry(3, "new", present_char_ids=["a"]),
    ]
    out = build_actor_memory(history, "a", capacity=10, token_limit=4010)
    assert out == "mid\nnew"


def test_actor_memory_drops_system_lines():
    history = [
        entry(1, "系统: tick", present_char_ids=["a"]),
        entry(1, "Aki eats.", present_char_ids=["a"]),
    ]
    assert build_actor_memory(history, "a") == "Aki eats."


def test_actor_memory_env_actor_uses_location_suffix():
    history = [entry(1, "Waves.", location_id="dock"), entry(1, "Music.", location_id="inn")]
    assert build_actor_memory(history, "env_dock") == "Waves."


def test_actor_memory_image_tags():
    builder = ImageContextBuilder()
    img = ImageRef(id="p", base64="QUJD")
    history = [entry(1, "Painted.", present_char_ids=["a"], images=[img])]
    out = build_actor_memory(history, "a", image_builder=builder)
    assert out == "Painted.\n[[IMG:p]]"


# ── capacity resolution ─────────────────────────────────────


def test_capacity_defaults_to_setting():
    settings = AppSettings(max_character_memory_rounds=12)
    assert resolve_memory_capacity(Character(id="a", name="A"), settings) == (12, False)


def test_capacity_env_actor():
    settings = AppSettings(max_env_memory_rounds=3)
    assert resolve_memory_capacity(Character(id="env_inn", name="Inn"), settings) == (3, False)


def test_capacity_override_wins():
    actor = Character(id="env_x", name="X", memory_config=MemoryOverride(use_override=True, max_memory_rounds=30))
    assert resolve_memory_capacity(actor, AppSettings()) == (30, False)


def test_action_dropout():
    actor = Character(id="a", name="A")
    settings = AppSettings(action_memory_dropout_probability=0.5)
    assert resolve_memory_capacity(actor, settings, dropout="action", rng=lambda: 0.1) == (
        ACTION_DROPOUT_MEMORY_ROUNDS, True,
    )
    assert resolve_memory_capacity(actor, settings, dropout="action", rng=lambda: 0.9) == (10, False)


def test_reaction_dropout_uses_its_own_probability():
    actor = Character(id="a", name="A")
    settings = AppSettings(action_memory_dropout_probability=0.0, reaction_memory_dropout_probability=0.5)
    assert resolve_memory_capacity(actor, settings, dropout="reaction", rng=lambda: 0.1) == (
        REACTION_DROPOUT_MEMORY_ROUNDS, True,
    )
    assert resolve_memory_capacity(actor, settings, dropout="action", rng=lambda: 0.1) == (10, False)


def test_no_dropout_roll_without_kind():
    never = lambda: pytest.fail("dropout rolled")
    assert resolve_memory_capacity(Character(id="a", name="A"), AppSettings(), rng=never) == (10, False)


def test_override_dropout_probabilities():
    override = MemoryOverride(
        use_override=True, max_memory_rounds=8, action_dropout_probability=0.0, reaction_dropout_probability=1.0,
    )
    actor = Character(id="a", name="A", memory_config=override)
    settings = AppSettings(action_memory_dropout_probability=1.0, reaction_memory_dropout_probability=0.0)
    assert resolve_memory_capacity(actor, settings, dropout="action", rng=lambda: 0.5) == (8, False)
    assert resolve_memory_capacity(actor, settings, dropout="reaction", rng=lambda: 0.5) == (2, True)


def test_override_without_probability_uses_default():
    actor = Character(id="a", name="A", memory_config=MemoryOverride(use_override=True))
    settings = AppSettings(reaction_memory_dropout_probability=1.0)
    assert resolve_memory_capacity(actor, settings, dropout="reaction", rng=lambda: 0.5) == (10, False)
    assert resolve_memory_capacity(actor, settings, dropout="reaction", rng=lambda: 0.2) == (2, True)


@pytest.mark.parametrize("kind,name,tag,rounds", [
    ("action", "System (Action Dropout)", "act", 4),
    ("reaction", "System (Reaction Dropout)", "react", 2),
])
def test_dropout_reported_to_debug_sink(kind, name, tag, rounds):
    logs = []
    actor = Character(id="a", name="Aki")
    resolve_memory_capacity(actor, AppSettings(), dropout=kind, rng=lambda: 0.0, on_debug=logs.append)
    assert len(logs) == 1
    assert logs[0].character_name == name
    assert logs[0].id.startswith(f"debug_dropout_{tag}_Aki_")
    assert logs[0].response == f"Memory reduced from 10 to {rounds} rounds to prevent repetition."


def test_no_debug_entry_without_dropout():
    logs = []
    resolve_memory_capacity(
        Character(id="a", name="A"), AppSettings(), dropout="action", rng=lambda: 0.99, on_debug=logs.append,
    )
    assert logs == []
