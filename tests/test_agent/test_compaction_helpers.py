import json

import pytest

from agent_runner.compaction import (
    build_active_context,
    build_multi_part_summary_prompt,
    build_summary_prompt,
    compact_session_history,
    estimate_tokens,
    limit_history_turns,
    parse_summary_response,
    prune_context_messages,
    should_compact,
    split_messages_by_token_share,
    split_recent_history,
)
from agent_runner.config import ContextConfig, ContextPruningConfig, MemoryConfig
from agent_runner.session import Message, SessionStore


def _msg(role: str, content: str, seq: int = 0) -> Message:
    return Message(role=role, content=content, seq=seq)


def test_estimate_tokens_weights_character_classes():
    assert estimate_tokens("") == 0
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2
    assert estimate_tokens("a b") == 1
    assert estimate_tokens("!!") == 1
    assert estimate_tokens("héllo") == 2


def test_should_compact_threshold_is_inclusive():
    assert should_compact(100, 100) is True
    assert should_compact(99, 100) is False


def test_split_recent_history_respects_budget_and_minimum():
    messages = [_msg("user", "x" * 40, seq=i) for i in range(1, 11)]  # 10 tokens each

    recent, older = split_recent_history(messages, token_budget=35, min_messages=2)

    assert [m.seq for m in recent] == [8, 9, 10]
    assert [m.seq for m in older] == list(range(1, 8))


def test_split_recent_history_keeps_minimum_even_over_budget():
    messages = [_msg("user", "x" * 400, seq=i) for i in range(1, 7)]

    recent, older = split_recent_history(messages, token_budget=10, min_messages=4)

    assert [m.seq for m in recent] == [3, 4, 5, 6]
    assert len(older) == 2


def test_split_recent_history_short_history_is_all_recent():
    messages = [_msg("user", "hi", seq=1), _msg("assistant", "hello", seq=2)]

    recent, older = split_recent_history(messages, token_budget=0, min_messages=4)

    assert recent == messages
    assert older == []


def test_split_messages_by_token_share():
    messages = [_msg("user", "x" * 40, seq=i) for i in range(1, 7)]

    chunks = split_messages_by_token_share(messages, 3)

    assert [[m.seq for m in chunk] for chunk in chunks] == [[1, 2], [3, 4], [5, 6]]
    assert split_messages_by_token_share([], 3) == []
    assert split_messages_by_token_share(messages, 1) == [messages]


def test_split_messages_by_token_share_never_exceeds_parts():
    messages = [_msg("user", "x" * 400)] + [_msg("user", "y" * 4) for _ in range(9)]

    chunks = split_messages_by_token_share(messages, 2)

    assert len(chunks) <= 2
    assert sum(len(chunk) for chunk in chunks) == len(messages)


def test_build_summary_prompt_sections():
    prompt = build_summary_prompt("", [], [_msg("user", "I live in Split")])

    assert "Return JSON only with keys: summary (string), facts (array of strings)." in prompt.instructions
    assert prompt.input.startswith("Existing summary:\nNone.")
    assert "Existing facts:\nNone." in prompt.input
    assert "New messages:\nUSER: I live in Split" in prompt.input


def test_build_multi_part_summary_prompt_carries_previous_parts():
    prompt = build_multi_part_summary_prompt(
        "Old summary",
        ["Likes tea"],
        [_msg("assistant", "Noted")],
        part_index=1,
        total_parts=3,
        previous_part_summaries=["First part"],
    )

    assert "This is part 2 of 3 of a conversation compaction." in prompt.instructions
    assert "Existing facts:\n- Likes tea" in prompt.input
    assert "Previous part summaries:\nPart 1: First part" in prompt.input
    assert "New messages (part 2/3):\nASSISTANT: Noted" in prompt.input


def test_parse_summary_response_accepts_fenced_json_and_drops_non_strings():
    text = 'Sure:\n```json\n{"summary": "S", "facts": ["a", 3, "b"]}\n```'

    parsed = parse_summary_response(text)

    assert parsed is not None
    assert parsed.summary == "S"
    assert parsed.facts == ["a", "b"]


@pytest.mark.parametrize(
    "text",
    ["not json", '{"summary": 1, "facts": []}', '{"summary": "s"}', "[1, 2]", ""],
)
def test_parse_summary_response_rejects_bad_shapes(text):
    assert parse_summary_response(text) is None


def test_prune_context_messages_trims_only_old_assistant_messages():
    pruning = ContextPruningConfig(
        soft_trim_max_chars=100, soft_trim_head_chars=10, soft_trim_tail_chars=5, keep_last_assistant=1
    )
    long_text = "A" * 10 + "m" * 200 + "Z" * 5
    messages = [
        _msg("assistant", long_text, 1),
        _msg("user", "u" * 300, 2),
        _msg("assistant", long_text, 3),
    ]

    pruned = prune_context_messages(messages, pruning)

    assert pruned[0].content == (
        "AAAAAAAAAA\n...\n[Content trimmed: kept first 10 and last 5 of 215 chars]\nZZZZZ"
    )
    assert pruned[0].seq == 1
    assert pruned[1].content == "u" * 300
    assert pruned[2].content == long_text
    assert messages[0].content == long_text


def test_limit_history_turns():
    messages = [_msg("user", str(i)) for i in range(5)]

    assert [m.content for m in limit_history_turns(messages, 2)] == ["3", "4"]
    assert limit_history_turns(messages, 0) == messages
    assert limit_history_turns(messages, 10) == messages


def _seed(store, ctx, count, size=40):
    for idx in range(count):
        role = "user" if idx % 2 == 0 else "assistant"
        store.append_history(ctx, role, f"message {idx} " + "x" * size)


@pytest.mark.asyncio
async def test_compact_session_history_below_trigger_is_noop(tmp_path):
    store = SessionStore(tmp_path)
    ctx, _ = store.create_or_load("s1")
    _seed(store, ctx, 4)
    history = store.load_history(ctx)

    async def summarize(prompt):
        raise AssertionError("summarizer must not be called")

    result = await compact_session_history(
        store, ctx, history, summarize, ContextConfig(compaction_trigger_tokens=10_000)
    )

    assert result.compacted is False
    assert len(store.load_history(ctx)) == 4


@pytest.mark.asyncio
async def test_compact_session_history_updates_state_and_rewrites_history(tmp_path):
    store = SessionStore(tmp_path)
    ctx, _ = store.create_or_load("s1")
    _seed(store, ctx, 12)
    history = store.load_history(ctx)
    prompts = []

    async def summarize(prompt):
        prompts.append(prompt)
        return json.dumps({"summary": "Talked about messages.", "facts": ["Counts to twelve"]})

    cfg = ContextConfig(compaction_trigger_tokens=50, recent_context_tokens=30)
    result = await compact_session_history(store, ctx, history, summarize, cfg, archive_dir=tmp_path / "group")

    assert result.compacted is True
    assert result.summary_updated is True
    assert len(prompts) == 1
    kept = store.load_history(ctx)
    assert [m.seq for m in kept] == [m.seq for m in result.history]
    assert len(kept) == 4
    assert ctx.state.summary == "Talked about messages."
    assert ctx.state.last_summary_seq == kept[0].seq - 1
    assert result.archive_path is not None and result.archive_path.exists()

    reopened, _ = store.create_or_load("s1")
    assert reopened.state.facts == ["Counts to twelve"]


@pytest.mark.asyncio
async def test_compact_session_history_failed_summary_keeps_prior_state(tmp_path):
    store = SessionStore(tmp_path)
    ctx, _ = store.create_or_load("s1")
    ctx.state.summary = "prior"
    store.save_memory_state(ctx)
    _seed(store, ctx, 12)
    history = store.load_history(ctx)

    async def summarize(prompt):
        return "I cannot do that"

    cfg = ContextConfig(compaction_trigger_tokens=50, recent_context_tokens=30)
    result = await compact_session_history(store, ctx, history, summarize, cfg)

    assert result.compacted is True
    assert result.summary_updated is False
    assert ctx.state.summary == "prior"
    assert ctx.state.last_summary_seq == 0


@pytest.mark.asyncio
async def test_compact_session_history_multi_part_merges_facts(tmp_path):
    store = SessionStore(tmp_path)
    ctx, _ = store.create_or_load("s1")
    ctx.state.facts = ["Likes tea"]
    _seed(store, ctx, 20, size=400)
    history = store.load_history(ctx)
    replies = iter([
        {"summary": "Part one.", "facts": ["likes TEA", "Has a cat"]},
        {"summary": "Part two.", "facts": ["Has a cat", "Lives in Split"]},
        {"summary": "Part three.", "facts": []},
    ])

    async def summarize(prompt):
        return json.dumps(next(replies))

    cfg = ContextConfig(
        compaction_trigger_tokens=100,
        recent_context_tokens=150,
        multi_part_threshold_tokens=500,
        max_summary_parts=3,
    )
    result = await compact_session_history(store, ctx, history, summarize, cfg)

    assert result.parts == 3
    assert ctx.state.summary == "Part one. Part two. Part three."
    assert ctx.state.facts == ["Likes tea", "Has a cat", "Lives in Split"]


@pytest.mark.asyncio
async def test_compact_session_history_survives_summarizer_exception(tmp_path):
    store = SessionStore(tmp_path)
    ctx, _ = store.create_or_load("s1")
    _seed(store, ctx, 12)

    async def summarize(prompt):
        raise RuntimeError("provider down")

    cfg = ContextConfig(compaction_trigger_tokens=50, recent_context_tokens=30)
    result = await compact_session_history(store, ctx, store.load_history(ctx), summarize, cfg)

    assert result.summary_updated is False
    assert ctx.state.summary == ""


def test_build_active_context_recalls_older_material(tmp_path):
    store = SessionStore(tmp_path)
    ctx, _ = store.create_or_load("s1")
    ctx.state.facts = ["Favourite city is Zagreb"]
    store.append_history(ctx, "user", "My dog is called Rex " + "x" * 200)
    for idx in range(8):
        store.append_history(ctx, "assistant" if idx % 2 else "user", f"filler {idx} " + "y" * 200)

    active = build_active_context(
        store.load_history(ctx),
        ctx,
        "what is my dog called and which city",
        ContextConfig(recent_context_tokens=50),
        MemoryConfig(),
    )

    assert len(active.messages) == 6
    assert active.older_count == 3
    assert active.recalled[0] == "Favourite city is Zagreb"
    assert any(item.startswith("My dog is called Rex") for item in active.recalled)
