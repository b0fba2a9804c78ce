"""Lexical recall over a session's summary, facts and compacted messages."""

import math
import re
from dataclasses import dataclass
from typing import Sequence

from agent_runner.compaction import estimate_tokens
from agent_runner.config import MemoryConfig
from agent_runner.session import Message

SUMMARY_WEIGHT = 1.4
FACT_WEIGHT = 2.0
MESSAGE_WEIGHT = 1.0
MAX_OLDER_MESSAGES = 200
SNIPPET_MAX_CHARS = 300

_TOKEN_RE = re.compile(r"[a-z0-9]+")


@dataclass
class MemoryCandidate:
    text: str
    score: float


def tokenize(text: str) -> list[str]:
    """Lowercase alphanumeric runs longer than one character."""
    return [token for token in _TOKEN_RE.findall((text or "").lower()) if len(token) > 1]


def score_candidate(candidate: str, query_tokens: Sequence[str], weight: float) -> float:
    """Query-token overlap damped by candidate length.

    Every query token (duplicates included) found in the candidate counts
    once; the sum is divided by sqrt(candidate token count).
    """
    candidate_tokens = tokenize(candidate)
    if not candidate_tokens or not query_tokens:
        return 0.0
    token_set = set(candidate_tokens)
    overlap = sum(1 for token in query_tokens if token in token_set)
    if overlap == 0:
        return 0.0
    return overlap / math.sqrt(len(candidate_tokens)) * weight


def collect_memory_candidates(
    query_tokens: Sequence[str],
    summary: str,
    facts: Sequence[str],
    older_messages: Sequence[Message],
) -> list[MemoryCandidate]:
    candidates: list[MemoryCandidate] = []

    for line in (summary or "").split("\n"):
        line = line.strip()
        if not line:
            continue
        score = score_candidate(line, query_tokens, SUMMARY_WEIGHT)
        if score > 0:
            candidates.append(MemoryCandidate(line, score))

    for fact in facts:
        score = score_candidate(fact, query_tokens, FACT_WEIGHT)
        if score > 0:
            candidates.append(MemoryCandidate(fact, score))

    for msg in list(older_messages)[-MAX_OLDER_MESSAGES:]:
        snippet = msg.content
        if len(snippet) > SNIPPET_MAX_CHARS:
            snippet = f"{snippet[:SNIPPET_MAX_CHARS]}..."
        score = score_candidate(snippet, query_tokens, MESSAGE_WEIGHT)
        if score > 0:
            candidates.append(MemoryCandidate(snippet, score))

    return candidates


def retrieve_relevant_memories(
    query: str,
    summary: str,
    facts: Sequence[str],
    older_messages: Sequence[Message],
    memory_cfg: MemoryConfig,
) -> list[str]:
    """Pick the best-scoring snippets within the result and token caps.

    Candidates are ranked by score (ties keep summary, fact, message order)
    and taken greedily until either cap would be exceeded.
    """
    query_tokens = tokenize(query)
    if not query_tokens:
        return []

    candidates = collect_memory_candidates(query_tokens, summary, facts, older_messages)
    candidates.sort(key=lambda c: c.score, reverse=True)

    results: list[str] = []
    tokens = 0
    for candidate in candidates:
        if len(results) >= memory_cfg.max_results:
            break
        next_tokens = estimate_tokens(candidate.text)
        if tokens + next_tokens > memory_cfg.max_tokens:
            break
        results.append(candidate.text)
        tokens += next_tokens
    return results
