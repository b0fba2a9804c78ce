"""Best-effort natural-language heuristics around tool use.

Kept apart from ``tool_policy`` so they can be replaced without touching the
loop rules. Nothing here should gate correctness.
"""

import math
import re
from dataclasses import dataclass

_TOOL_REQUIRED_SCENARIO_RE = re.compile(r"\[(?:scenario:)?tool_heavy\]", re.IGNORECASE)
_EXPLICIT_TOOL_INSTRUCTION_RE = re.compile(
    r"\b(use|call|run)\s+(?:the\s+)?(?:read|write|edit|glob|grep|bash|python|tool|tools)\b",
    re.IGNORECASE,
)
_FILE_ACTION_VERB_RE = re.compile(
    r"\b(create|write|edit|update|append|delete|remove|rename|read|open|list|show|find|search|grep|cat|head|tail)\b",
    re.IGNORECASE,
)
_FILE_OBJECT_RE = re.compile(
    r"\b(file|files|folder|directory|path|paths|inbox|workspace|repo|repository)\b",
    re.IGNORECASE,
)
_PATH_HINT_RE = re.compile(
    r"(?:\b[\w.-]+/[\w./-]+|\b[\w.-]+\.(?:txt|md|json|yaml|yml|csv|log|js|jsx|ts|tsx|py|sh|toml|xml|html)\b)",
    re.IGNORECASE,
)
_TOOL_ACTION_PHRASE_RE = re.compile(
    r"\b(read it back|verify|newest files?|list the \d+ newest files?|exact filename)\b",
    re.IGNORECASE,
)
_CONVERSATION_RECALL_RE = re.compile(
    r"\b(from\s+(?:this|our)\s+(?:same\s+)?(?:conversation|chat)"
    r"|what\s+(?:exact\s+)?(?:file\s*name|filename)\s+did\s+you\s+just\s+create"
    r"|what\s+did\s+(?:i|you)\s+just)\b",
    re.IGNORECASE,
)
_CREATE_READ_FILE_RE = re.compile(
    r"create file\s+[\"']([^\"']+)[\"']\s+with\s+\d+\s+lines?:\s*([^\n.]+)\.",
    re.IGNORECASE,
)
_LIST_NEWEST_READ_RE = re.compile(
    r"list\s+(?:the\s+)?(\d+)\s+newest\s+files?\s+(?:under|in)\s+[\"'`]?([^\"'`\s,.;]+/?)[\"'`]?"
    r"(?:,|\s).*?\bread\s+the\s+newest\s+one\b",
    re.IGNORECASE,
)
_LIST_NEWEST_READ_FALLBACK_RE = re.compile(
    r"list\s+(?:the\s+)?newest\s+files?\s+(?:under|in)\s+[\"'`]?([^\"'`\s,.;]+/?)[\"'`]?"
    r"(?:,|\s).*?\bread\s+the\s+newest\s+one\b",
    re.IGNORECASE,
)
_EXACT_BULLET_COUNT_RE = re.compile(r"\bexactly\s+(\d+)\s+bullet(?:\s+point)?s?\b", re.IGNORECASE)
_AND_SEPARATOR_RE = re.compile(r"\s+\band\b\s+", re.IGNORECASE)

FILE_ACTION_REASONS = frozenset({"workspace_file_action", "scenario_tool_heavy"})


@dataclass
class ToolExecutionRequirement:
    required: bool
    reason: str | None = None


@dataclass
class CreateReadFileInstruction:
    path: str
    lines: list[str]


@dataclass
class ListReadNewestInstruction:
    directory: str
    count: int = 5
    bullet_count: int | None = None


def detect_tool_execution_requirement(prompt: str) -> ToolExecutionRequirement:
    """Guess whether a user prompt can only be answered by running tools."""
    text = str(prompt or "").strip()
    if not text:
        return ToolExecutionRequirement(required=False)
    if _TOOL_REQUIRED_SCENARIO_RE.search(text):
        return ToolExecutionRequirement(required=True, reason="scenario_tool_heavy")
    if _EXPLICIT_TOOL_INSTRUCTION_RE.search(text):
        return ToolExecutionRequirement(required=True, reason="explicit_tool_instruction")
    # Questions about the conversation itself are answered from context.
    if _CONVERSATION_RECALL_RE.search(text):
        return ToolExecutionRequirement(required=False)

    has_file_action = bool(_FILE_ACTION_VERB_RE.search(text))
    has_file_target = bool(
        _FILE_OBJECT_RE.search(text)
        or _PATH_HINT_RE.search(text)
        or _TOOL_ACTION_PHRASE_RE.search(text)
    )
    if has_file_action and has_file_target:
        return ToolExecutionRequirement(required=True, reason="workspace_file_action")
    return ToolExecutionRequirement(required=False)


def build_tool_execution_nudge_prompt(reason: str | None = None, attempt: int | float | None = 1) -> str:
    """Continuation prompt sent when the model answered without calling tools."""
    reason = reason or "required_tool_execution"
    try:
        attempt_no = max(1, math.floor(attempt or 1))
    except (TypeError, ValueError, OverflowError):
        attempt_no = 1
    if reason in FILE_ACTION_REASONS:
        guidance = (
            "For file work, use appropriate tools (for example: Write/Edit then Read, "
            "or Glob/Read/Bash for listing and verification)."
        )
    else:
        guidance = "Use the appropriate tools to gather/act on required state before finalizing."
    return "\n".join([
        "[SYSTEM CONTINUATION]",
        f"The previous response did not execute tools for a tool-required request ({reason}). Attempt {attempt_no}.",
        "You MUST emit at least one function_call in your next response before any user-facing prose.",
        guidance,
        "Do not claim file/system/web actions unless corresponding tool calls in this turn succeeded.",
        "If a required tool fails, report the failure and the next best action instead of claiming success.",
        "Return only the final user-facing answer after tool execution.",
    ])


def parse_create_read_file_instruction(prompt: str) -> CreateReadFileInstruction | None:
    """Parse 'create file "x" with N lines: a, b and c.'"""
    text = str(prompt or "").strip()
    if not text:
        return None
    match = _CREATE_READ_FILE_RE.search(text)
    if not match:
        return None
    file_path = match.group(1).strip()
    if not file_path:
        return None
    raw_lines = _AND_SEPARATOR_RE.sub(",", match.group(2) or "")
    lines = [item.strip() for item in raw_lines.split(",") if item.strip()]
    if not lines:
        return None
    return CreateReadFileInstruction(path=file_path, lines=lines)


def parse_list_read_newest_instruction(prompt: str) -> ListReadNewestInstruction | None:
    """Parse 'list the N newest files in dir/, ... read the newest one'.

    Count defaults to 5 and is capped at 50; an "exactly K bullets" phrase
    is captured as ``bullet_count`` (1..6).
    """
    text = str(prompt or "").strip()
    if not text:
        return None

    count = 5
    explicit = _LIST_NEWEST_READ_RE.search(text)
    if explicit:
        parsed_count = int(explicit.group(1))
        if parsed_count > 0:
            count = min(50, parsed_count)
        directory = explicit.group(2).strip()
    else:
        fallback = _LIST_NEWEST_READ_FALLBACK_RE.search(text)
        if not fallback:
            return None
        directory = fallback.group(1).strip()

    directory = re.sub(r"[.,;:]+$", "", directory)
    if not directory:
        return None

    bullet_count = None
    bullets = _EXACT_BULLET_COUNT_RE.search(text)
    if bullets:
        bullet_count = min(6, max(1, int(bullets.group(1))))
    return ListReadNewestInstruction(directory=directory, count=count, bullet_count=bullet_count)
