"""Context compaction - token budgeting, history splitting and summarization.

When a session's history outgrows the compaction trigger, older messages are
folded into the durable summary/facts in ``memory.json`` and only the recent
window stays in ``history.jsonl``. The model call that produces the summary is
injected by the caller; this module only builds prompts and parses replies.
"""

import json
import math
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Awaitable, Callable, Sequence, TypeVar

from agent_runner.config import ContextConfig, ContextPruningConfig, MemoryConfig
from agent_runner.logging import get_logger, log_context
from agent_runner.session import (
    Message,
    SessionContext,
    SessionStore,
    archive_conversation,
)

log = get_logger(__name__)

M = TypeVar("M")

SUMMARY_JSON_CONTRACT = "Return JSON only with keys: summary (string), facts (array of strings)."
_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)


@dataclass
class SummaryPrompt:
    """Instruction + input pair for a summarization model call."""

    instructions: str
    input: str


@dataclass
class SummaryUpdate:
    """Parsed summarization reply."""

    summary: str
    facts: list[str]


@dataclass
class ContextOverflowRecoveryPlan:
    """How to resubmit after the provider rejected the context as too long."""

    to_compact: list[Any]
    to_keep: list[Any]
    retry_input: list[dict[str, str]]


@dataclass
class CompactionResult:
    """Outcome of one compaction pass over a session."""

    compacted: bool
    total_tokens: int
    history: list[Message]
    summary_updated: bool = False
    summarized_messages: int = 0
    parts: int = 0
    archive_path: Path | None = None


@dataclass
class ActiveContext:
    """The context window handed to the model for one turn."""

    messages: list[Message]
    recalled: list[str] = field(default_factory=list)
    older_count: int = 0


def estimate_tokens(text: str) -> int:
    """Estimate tokens with character-class weighting.

    ASCII letters and digits count 0.25; whitespace, punctuation and any
    non-ASCII character count 0.5. Host and worker must agree on this.
    """
    if not text:
        return 0
    weighted = 0.0
    for ch in text:
        code = ord(ch)
        if code > 127:
            weighted += 0.5
        elif 48 <= code <= 57 or 65 <= code <= 90 or 97 <= code <= 122:
            weighted += 0.25
        else:
            weighted += 0.5
    return math.ceil(weighted)


def _role_of(message: Any) -> str:
    if isinstance(message, dict):
        return str(message.get("role", ""))
    return str(getattr(message, "role", ""))


def _content_of(message: Any) -> str:
    if isinstance(message, dict):
        return str(message.get("content") or "")
    return str(getattr(message, "content", "") or "")


def should_compact(total_tokens: int, trigger_tokens: int) -> bool:
    """Whether history has reached the compaction trigger."""
    return total_tokens >= trigger_tokens


def split_recent_history(
    messages: Sequence[M],
    token_budget: int,
    min_messages: int = 4,
) -> tuple[list[M], list[M]]:
    """Split history into (recent, older), both chronological.

    Walks newest to oldest and stops once the next message would exceed the
    budget and at least ``min_messages`` have been kept.
    """
    keep = 0
    tokens = 0
    for message in reversed(messages):
        msg_tokens = estimate_tokens(_content_of(message))
        if tokens + msg_tokens > token_budget and keep >= min_messages:
            break
        keep += 1
        tokens += msg_tokens
    split_at = len(messages) - keep
    return list(messages[split_at:]), list(messages[:split_at])


def split_messages_by_token_share(messages: Sequence[M], parts: int) -> list[list[M]]:
    """Chunk messages contiguously into at most ``parts`` similar-sized pieces."""
    if not messages:
        return []
    if parts <= 1:
        return [list(messages)]

    total_tokens = sum(estimate_tokens(_content_of(m)) for m in messages)
    target_per_part = math.ceil(total_tokens / parts)
    chunks: list[list[M]] = []
    current: list[M] = []
    current_tokens = 0

    for message in messages:
        msg_tokens = estimate_tokens(_content_of(message))
        if current_tokens + msg_tokens > target_per_part and current and len(chunks) < parts - 1:
            chunks.append(current)
            current = []
            current_tokens = 0
        current.append(message)
        current_tokens += msg_tokens
    if current:
        chunks.append(current)
    return chunks


def _format_facts(facts: Sequence[str]) -> str:
    return "\n".join(f"- {fact}" for fact in facts) if facts else "None."


def _format_messages(messages: Sequence[Any]) -> str:
    return "\n\n".join(f"{_role_of(m).upper()}: {_content_of(m)}" for m in messages)


def build_summary_prompt(
    existing_summary: str,
    existing_facts: Sequence[str],
    new_messages: Sequence[Any],
) -> SummaryPrompt:
    """Prompt that folds new messages into the running summary and facts."""
    instructions = "\n".join([
        "You maintain long-term memory for a personal assistant.",
        "Update the summary and facts using the NEW messages.",
        "Keep the summary concise, chronological, and focused on durable information.",
        "Facts should be short, specific, and stable. Avoid transient or speculative details.",
        SUMMARY_JSON_CONTRACT,
    ])
    input_text = "\n\n".join([
        f"Existing summary:\n{existing_summary or 'None.'}",
        f"Existing facts:\n{_format_facts(existing_facts)}",
        f"New messages:\n{_format_messages(new_messages)}",
    ])
    return SummaryPrompt(instructions=instructions, input=input_text)


def build_multi_part_summary_prompt(
    existing_summary: str,
    existing_facts: Sequence[str],
    message_chunk: Sequence[Any],
    part_index: int,
    total_parts: int,
    previous_part_summaries: Sequence[str],
) -> SummaryPrompt:
    """Prompt for one chunk of a multi-part compaction.

    Summaries of earlier parts are carried forward so the model keeps
    continuity across chunks.
    """
    part_label = f"{part_index + 1}/{total_parts}"
    instructions = "\n".join([
        "You maintain long-term memory for a personal assistant.",
        f"This is part {part_index + 1} of {total_parts} of a conversation compaction.",
        "Update the summary and facts using the NEW messages for this part.",
        "Keep the summary concise, chronological, and focused on durable information.",
        "Facts should be short, specific, and stable. Avoid transient or speculative details.",
        SUMMARY_JSON_CONTRACT,
    ])
    sections = [
        f"Existing summary:\n{existing_summary or 'None.'}",
        f"Existing facts:\n{_format_facts(existing_facts)}",
    ]
    if previous_part_summaries:
        previous = "\n".join(
            f"Part {idx + 1}: {text}" for idx, text in enumerate(previous_part_summaries)
        )
        sections.append(f"Previous part summaries:\n{previous}")
    sections.append(f"New messages (part {part_label}):\n{_format_messages(message_chunk)}")
    return SummaryPrompt(instructions=instructions, input="\n\n".join(sections))


def parse_summary_response(text: str) -> SummaryUpdate | None:
    """Parse ``{summary, facts}`` from a model reply; None on any failure."""
    json_text = (text or "").strip()
    fence = _FENCE_RE.search(json_text)
    if fence:
        json_text = fence.group(1).strip()
    try:
        parsed = json.loads(json_text)
    except ValueError:
        return None
    if not isinstance(parsed, dict):
        return None
    summary = parsed.get("summary")
    facts = parsed.get("facts")
    if not isinstance(summary, str) or not isinstance(facts, list):
        return None
    return SummaryUpdate(summary=summary, facts=[f for f in facts if isinstance(f, str)])


def prune_context_messages(
    messages: Sequence[Message],
    pruning: ContextPruningConfig,
) -> list[Message]:
    """Soft-trim old oversized assistant messages to a head/tail window.

    The newest ``keep_last_assistant`` assistant messages and every user
    message are returned unchanged.
    """
    protected: set[int] = set()
    if pruning.keep_last_assistant > 0:
        for idx in range(len(messages) - 1, -1, -1):
            if messages[idx].role == "assistant":
                protected.add(idx)
                if len(protected) >= pruning.keep_last_assistant:
                    break

    head_chars = max(0, pruning.soft_trim_head_chars)
    tail_chars = max(0, pruning.soft_trim_tail_chars)
    pruned: list[Message] = []
    for idx, msg in enumerate(messages):
        if msg.role != "assistant" or idx in protected or len(msg.content) <= pruning.soft_trim_max_chars:
            pruned.append(msg)
            continue
        head = msg.content[:head_chars]
        tail = msg.content[-tail_chars:] if tail_chars else ""
        trimmed = (
            f"{head}\n...\n[Content trimmed: kept first {head_chars} and last {tail_chars} "
            f"of {len(msg.content)} chars]\n{tail}"
        )
        pruned.append(replace(msg, content=trimmed))
    return pruned


def limit_history_turns(messages: Sequence[M], max_turns: int) -> list[M]:
    """Keep only the newest ``max_turns`` messages (``<= 0`` means no limit)."""
    if max_turns <= 0 or len(messages) <= max_turns:
        return list(messages)
    return list(messages[-max_turns:])


def build_context_overflow_recovery_plan(
    context_messages: Sequence[Any],
    emergency_summary: str | None = None,
    keep_recent_count: int | float | None = 4,
) -> ContextOverflowRecoveryPlan:
    """Plan a resubmission after a hard context-length failure."""
    try:
        keep = max(1, math.floor(float(keep_recent_count)))
    except (TypeError, ValueError, OverflowError):
        keep = 4
    messages = list(context_messages or [])
    keep_start = max(0, len(messages) - keep)
    to_compact = messages[:keep_start]
    to_keep = messages[keep_start:]
    summary = (emergency_summary or "").strip()

    retry_input = [{"role": _role_of(m), "content": _content_of(m)} for m in to_keep]
    if summary:
        retry_input.insert(0, {"role": "user", "content": f"[Previous conversation summary: {summary}]"})
    return ContextOverflowRecoveryPlan(to_compact=to_compact, to_keep=to_keep, retry_input=retry_input)


def total_history_tokens(messages: Sequence[Any]) -> int:
    return sum(estimate_tokens(_content_of(m)) for m in messages)


def _merge_facts(existing: list[str], new_facts: Sequence[str]) -> list[str]:
    merged = list(existing)
    seen = {fact.lower() for fact in merged}
    for fact in new_facts:
        key = fact.lower()
        if key not in seen:
            merged.append(fact)
            seen.add(key)
    return merged


async def _summarize_once(
    summarize: Callable[[SummaryPrompt], Awaitable[str]],
    prompt: SummaryPrompt,
    label: str,
) -> SummaryUpdate | None:
    try:
        text = await summarize(prompt)
    except Exception as e:
        log.warning("Summarization call failed", part=label, error=str(e))
        return None
    parsed = parse_summary_response(text)
    if parsed is None:
        log.warning("Summarization reply unparseable", part=label)
    return parsed


async def compact_session_history(
    store: SessionStore,
    ctx: SessionContext,
    history: list[Message],
    summarize: Callable[[SummaryPrompt], Awaitable[str]],
    context_cfg: ContextConfig,
    archive_dir: Path | str | None = None,
) -> CompactionResult:
    """Fold older history into memory state when the trigger is reached.

    Args:
        store: Session store used to persist state and rewrite history
        ctx: Session being compacted
        history: Current history (already turn-limited by the caller)
        summarize: Async callable returning the model's raw reply to a prompt
        context_cfg: Context budgets
        archive_dir: When set, the full transcript is archived there first

    Returns:
        CompactionResult; ``history`` is the window to continue with
    """
    with log_context(session_id=ctx.session_id):
        return await _compact(store, ctx, history, summarize, context_cfg, archive_dir)


async def _compact(
    store: SessionStore,
    ctx: SessionContext,
    history: list[Message],
    summarize: Callable[[SummaryPrompt], Awaitable[str]],
    context_cfg: ContextConfig,
    archive_dir: Path | str | None,
) -> CompactionResult:
    total_tokens = total_history_tokens(history)
    if not should_compact(total_tokens, context_cfg.compaction_trigger_tokens):
        return CompactionResult(compacted=False, total_tokens=total_tokens, history=list(history))

    recent, older = split_recent_history(history, context_cfg.recent_context_tokens)
    log.info(
        "Compacting history",
        total_tokens=total_tokens,
        older=len(older),
        recent=len(recent),
    )
    archive_path = None
    if archive_dir:
        archive_path = archive_conversation(history, ctx.state.summary or None, archive_dir)

    older_tokens = total_history_tokens(older)
    threshold = max(1, context_cfg.multi_part_threshold_tokens)
    num_parts = 1
    if older_tokens > threshold:
        num_parts = min(max(1, context_cfg.max_summary_parts), math.ceil(older_tokens / threshold))

    update: SummaryUpdate | None = None
    if older and num_parts > 1:
        chunks = split_messages_by_token_share(older, num_parts)
        part_summaries: list[str] = []
        merged_facts = list(ctx.state.facts)
        for idx, chunk in enumerate(chunks):
            prompt = build_multi_part_summary_prompt(
                ctx.state.summary, merged_facts, chunk, idx, len(chunks), part_summaries
            )
            parsed = await _summarize_once(summarize, prompt, f"{idx + 1}/{len(chunks)}")
            if parsed is None:
                continue
            part_summaries.append(parsed.summary)
            merged_facts = _merge_facts(merged_facts, parsed.facts)
        if part_summaries:
            update = SummaryUpdate(summary=" ".join(part_summaries), facts=merged_facts)
    elif older:
        prompt = build_summary_prompt(ctx.state.summary, ctx.state.facts, older)
        update = await _summarize_once(summarize, prompt, "1/1")

    if update is not None:
        ctx.state.summary = update.summary
        ctx.state.facts = update.facts
        ctx.state.last_summary_seq = older[-1].seq
        store.save_memory_state(ctx)

    store.write_history(ctx, recent)
    return CompactionResult(
        compacted=True,
        total_tokens=total_tokens,
        history=recent,
        summary_updated=update is not None,
        summarized_messages=len(older) if update is not None else 0,
        parts=num_parts if older else 0,
        archive_path=archive_path,
    )


def build_active_context(
    history: Sequence[Message],
    ctx: SessionContext,
    query: str,
    context_cfg: ContextConfig,
    memory_cfg: MemoryConfig,
    min_messages: int = 6,
) -> ActiveContext:
    """Select the recent window, recall older material, and prune the window."""
    from agent_runner.memory import retrieve_relevant_memories

    limited = limit_history_turns(history, context_cfg.max_history_turns)
    recent, older = split_recent_history(limited, context_cfg.recent_context_tokens, min_messages)
    recalled = retrieve_relevant_memories(
        query=query,
        summary=ctx.state.summary,
        facts=ctx.state.facts,
        older_messages=older,
        memory_cfg=memory_cfg,
    )
    return ActiveContext(
        messages=prune_context_messages(recent, context_cfg.pruning),
        recalled=recalled,
        older_count=len(older),
    )
