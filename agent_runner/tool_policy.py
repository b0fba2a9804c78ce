"""Tool-call policy: classification, argument repair, retries and transcript compaction.

Everything here is a pure function of its inputs so the runner in
``tool_loop`` and the tests can share one rule set.
"""

import json
import math
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Sequence

from pydantic import BaseModel, Field, ValidationInfo, field_validator


class ToolCallClass(str, Enum):
    """Retry class of a tool."""

    IDEMPOTENT = "idempotent"
    MUTATING = "mutating"
    UNKNOWN = "unknown"


@dataclass
class ToolCall:
    """One tool invocation requested by the model."""

    name: str
    arguments: Any = None
    id: str | None = None


@dataclass
class ToolResult:
    """Outcome of executing one tool call."""

    name: str
    ok: bool
    output: str | None = None
    error: str | None = None


@dataclass
class NormalizedArguments:
    """Repaired arguments plus the reason they are unusable, if any."""

    arguments: Any
    malformed_reason: str | None = None

    @property
    def ok(self) -> bool:
        return self.malformed_reason is None


DEFAULT_IDEMPOTENT_TOOL_NAMES = frozenset({
    "read",
    "glob",
    "grep",
    "webfetch",
    "websearch",
    "analyzeimage",
    "listtasks",
    "listgroups",
    "getconfig",
    "mcp__runner__memory_search",
    "mcp__runner__memory_list",
    "mcp__runner__memory_stats",
    "mcp__runner__list_tasks",
    "mcp__runner__list_groups",
    "mcp__runner__get_config",
})

DEFAULT_IDEMPOTENT_PREFIXES = (
    "mcp__runner__memory_search",
    "mcp__runner__memory_list",
    "mcp__runner__memory_stats",
    "mcp__runner__list_",
    "mcp__runner__get_",
)

DEFAULT_MUTATING_TOOL_NAMES = frozenset({
    "write",
    "edit",
    "bash",
    "python",
    "gitclone",
    "packageinstall",
    "sendmessage",
    "sendfile",
    "sendphoto",
    "sendvoice",
    "sendaudio",
    "sendlocation",
    "sendcontact",
    "sendpoll",
    "sendbuttons",
    "editmessage",
    "deletemessage",
    "downloadurl",
    "scheduletask",
    "runtask",
    "pausetask",
    "resumetask",
    "canceltask",
    "updatetask",
    "registergroup",
    "removegroup",
    "setmodel",
    "mcp__runner__set_model",
    "mcp__runner__set_behavior",
    "mcp__runner__set_mcp_config",
    "mcp__runner__set_tool_policy",
    "mcp__runner__memory_upsert",
    "mcp__runner__memory_forget",
})

DEFAULT_MUTATING_PREFIXES = (
    "plugin__",
    "mcp__runner__send_",
    "mcp__runner__set_",
    "mcp__runner__schedule_",
    "mcp__runner__update_",
    "mcp__runner__register_",
    "mcp__runner__remove_",
    "mcp__runner__memory_upsert",
    "mcp__runner__memory_forget",
)

POSITIVE_INT_FIELDS_BY_TOOL: dict[str, tuple[str, ...]] = {
    "read": ("maxBytes",),
    "glob": ("maxResults",),
    "grep": ("maxResults",),
    "webfetch": ("maxBytes",),
    "websearch": ("count",),
    "bash": ("timeoutMs",),
    "process": ("timeoutMs",),
    "gitclone": ("depth",),
    "sendmessage": ("reply_to_message_id",),
    "sendfile": ("reply_to_message_id",),
    "sendphoto": ("reply_to_message_id",),
    "sendvoice": ("duration", "reply_to_message_id"),
    "sendaudio": ("duration", "reply_to_message_id"),
    "sendlocation": ("reply_to_message_id",),
    "sendcontact": ("reply_to_message_id",),
    "sendpoll": ("reply_to_message_id",),
    "editmessage": ("message_id",),
    "deletemessage": ("message_id",),
}

NONNEGATIVE_INT_FIELDS_BY_TOOL: dict[str, tuple[str, ...]] = {
    "websearch": ("offset",),
}

PATH_LIKE_FIELDS_BY_TOOL: dict[str, tuple[str, ...]] = {
    "read": ("path",),
    "write": ("path",),
    "edit": ("path",),
    "glob": ("pattern",),
    "grep": ("path", "glob"),
    "sendfile": ("path",),
    "sendphoto": ("path",),
    "sendvoice": ("path",),
    "sendaudio": ("path",),
    "analyzeimage": ("path",),
}

# Bare (non-object) arguments are wrapped under this key for the listed tools.
SCALAR_ARGUMENT_KEYS: dict[str, str] = {
    "bash": "command",
    "process": "command",
    "python": "code",
    "webfetch": "url",
    "websearch": "query",
    "read": "path",
    "glob": "pattern",
    "grep": "pattern",
}
_TRIMMED_SCALAR_TOOLS = frozenset({"webfetch"})

_TRANSIENT_ERROR_PATTERNS = [
    re.compile(r"\b429\b", re.IGNORECASE),
    re.compile(r"\b5\d{2}\b", re.IGNORECASE),
    re.compile(r"rate.?limit", re.IGNORECASE),
    re.compile(r"timeout|timed out|deadline", re.IGNORECASE),
    re.compile(r"temporar|transient|unavailable|overloaded|busy", re.IGNORECASE),
    re.compile(r"econnreset|econnrefused|enotfound|eai_again|socket hang up", re.IGNORECASE),
]

_NON_RETRYABLE_ERROR_PATTERNS = [
    re.compile(r"tool is disabled by policy", re.IGNORECASE),
    re.compile(r"tool not allowed by policy", re.IGNORECASE),
    re.compile(r"usage limit reached", re.IGNORECASE),
    re.compile(r"invalid input|validation|zod", re.IGNORECASE),
    re.compile(r"malformed arguments|unterminated string|unexpected end of json input", re.IGNORECASE),
    re.compile(r"path is required|content is required|command is required|code is required", re.IGNORECASE),
    re.compile(r"out of range|received undefined", re.IGNORECASE),
    re.compile(r"path is outside allowed roots|path does not exist|must be inside", re.IGNORECASE),
    re.compile(r"permission denied|forbidden|unauthorized", re.IGNORECASE),
]

DEFAULT_ARGUMENT_REDACT_KEYS = (
    "content",
    "text",
    "body",
    "input",
    "code",
    "script",
    "patch",
    "diff",
    "markdown",
    "html",
    "xml",
    "json",
    "yaml",
)

# field -> (floor, default); zero or missing values fall back to the default.
_COMPACTION_LIMITS: dict[str, tuple[int, int]] = {
    "max_output_chars": (800, 3000),
    "output_head_chars": (200, 1200),
    "output_tail_chars": (120, 600),
    "max_argument_chars": (300, 1000),
    "max_argument_array_items": (3, 20),
    "max_argument_object_keys": (4, 24),
}
_MAX_ARGUMENT_DEPTH = 4
_SIGNATURE_MAX_DEPTH = 64
_TRIM_MARKER_RE = re.compile(
    r"\n\[(?:Argument trimmed|Tool output trimmed): kept first \d+ and last \d+ of \d+ chars\.\]$"
)
_ITEMS_OMITTED_RE = re.compile(r"^\[(\d+) items omitted\]$")
_TRIMMED_KEYS = "__trimmed_keys"


class ToolCompactionOptions(BaseModel):
    """Limits for shrinking the accumulated tool transcript."""

    max_output_chars: int = 3000
    output_head_chars: int = 1200
    output_tail_chars: int = 600
    max_argument_chars: int = 1000
    max_argument_array_items: int = 20
    max_argument_object_keys: int = 24
    argument_redact_keys: list[str] = Field(default_factory=lambda: list(DEFAULT_ARGUMENT_REDACT_KEYS))

    @field_validator(*_COMPACTION_LIMITS, mode="before")
    @classmethod
    def _apply_floor(cls, value: Any, info: ValidationInfo) -> int:
        floor, default = _COMPACTION_LIMITS[info.field_name]
        try:
            number = math.floor(float(value)) if value else default
        except (TypeError, ValueError, OverflowError):
            number = default
        return max(floor, number)

    @field_validator("argument_redact_keys", mode="before")
    @classmethod
    def _clean_redact_keys(cls, value: Any) -> list[str]:
        if not isinstance(value, (list, tuple)):
            return list(DEFAULT_ARGUMENT_REDACT_KEYS)
        keys = [str(item or "").strip() for item in value]
        keys = [key for key in keys if key]
        return keys or list(DEFAULT_ARGUMENT_REDACT_KEYS)


def normalize_tool_name(name: str | None) -> str:
    """Normalize tool names for policy comparisons."""
    return str(name or "").strip().lower()


class ToolClassifier:
    """Classifies tool names as idempotent, mutating or unknown.

    Mutating membership is checked first, so a name that matches both
    catalogs is never retried.
    """

    def __init__(
        self,
        idempotent_names: Iterable[str] = DEFAULT_IDEMPOTENT_TOOL_NAMES,
        idempotent_prefixes: Iterable[str] = DEFAULT_IDEMPOTENT_PREFIXES,
        mutating_names: Iterable[str] = DEFAULT_MUTATING_TOOL_NAMES,
        mutating_prefixes: Iterable[str] = DEFAULT_MUTATING_PREFIXES,
    ):
        self.idempotent_names = frozenset(normalize_tool_name(n) for n in idempotent_names)
        self.idempotent_prefixes = tuple(normalize_tool_name(p) for p in idempotent_prefixes if p)
        self.mutating_names = frozenset(normalize_tool_name(n) for n in mutating_names)
        self.mutating_prefixes = tuple(normalize_tool_name(p) for p in mutating_prefixes if p)

    @classmethod
    def from_config(cls, tools_cfg: Any) -> "ToolClassifier":
        """Build from a ``ToolsConfig`` section."""
        return cls(
            idempotent_names=tools_cfg.idempotent_names,
            idempotent_prefixes=tools_cfg.idempotent_prefixes,
            mutating_names=tools_cfg.mutating_names,
            mutating_prefixes=tools_cfg.mutating_prefixes,
        )

    def classify(self, name: str | None) -> ToolCallClass:
        normalized = normalize_tool_name(name)
        if not normalized:
            return ToolCallClass.UNKNOWN
        if normalized in self.mutating_names or normalized.startswith(self.mutating_prefixes):
            return ToolCallClass.MUTATING
        if normalized in self.idempotent_names or normalized.startswith(self.idempotent_prefixes):
            return ToolCallClass.IDEMPOTENT
        return ToolCallClass.UNKNOWN


DEFAULT_CLASSIFIER = ToolClassifier()


def classify_tool_call_class(name: str | None) -> ToolCallClass:
    """Classify a tool name against the default catalog."""
    return DEFAULT_CLASSIFIER.classify(name)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _coerce_integer_field(value: Any, allow_zero: bool) -> int | None:
    if _is_number(value):
        try:
            number = float(value)
        except OverflowError:
            return None
    elif isinstance(value, str):
        trimmed = value.strip()
        if not trimmed:
            return None
        try:
            number = float(trimmed)
        except ValueError:
            return None
    else:
        return None
    if not math.isfinite(number):
        return None
    rounded = math.floor(number)
    if allow_zero:
        return rounded if rounded >= 0 else None
    return rounded if rounded > 0 else None


def _sanitize_object_arguments(tool_name: str, record: dict[str, Any]) -> dict[str, Any]:
    normalized = normalize_tool_name(tool_name)
    out = dict(record)
    for fields, allow_zero in (
        (POSITIVE_INT_FIELDS_BY_TOOL.get(normalized, ()), False),
        (NONNEGATIVE_INT_FIELDS_BY_TOOL.get(normalized, ()), True),
    ):
        for name in fields:
            if name not in out:
                continue
            coerced = _coerce_integer_field(out[name], allow_zero)
            if coerced is None:
                del out[name]
            else:
                out[name] = coerced
    return out


def _validate_object_arguments(tool_name: str, record: dict[str, Any]) -> str | None:
    for name in PATH_LIKE_FIELDS_BY_TOOL.get(normalize_tool_name(tool_name), ()):
        value = record.get(name)
        if not isinstance(value, str):
            continue
        trimmed = value.strip()
        if not trimmed:
            continue
        if "$(" in trimmed or "`" in trimmed or "\r" in trimmed or "\n" in trimmed or "\0" in trimmed:
            return f"{name} contains unsupported shell syntax"
    return None


def _finish_object(tool_name: str, record: dict[str, Any]) -> NormalizedArguments:
    sanitized = _sanitize_object_arguments(tool_name, record)
    return NormalizedArguments(sanitized, _validate_object_arguments(tool_name, sanitized))


def _coerce_scalar_arguments(tool_name: str, value: str) -> dict[str, Any] | None:
    normalized = normalize_tool_name(tool_name)
    key = SCALAR_ARGUMENT_KEYS.get(normalized)
    if not key or not value.strip():
        return None
    return {key: value.strip() if normalized in _TRIMMED_SCALAR_TOOLS else value}


def _scalar_text(value: bool | int | float) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def normalize_tool_call_arguments(tool_name: str, raw_arguments: Any) -> NormalizedArguments:
    """Repair model-supplied arguments into an object, or explain why not.

    Never raises. Objects get integer fields coerced and path fields checked
    for shell syntax; strings are JSON-decoded (up to two levels of
    encoding) or wrapped under the tool's scalar key.
    """
    raw = raw_arguments
    if isinstance(raw, (list, tuple)):
        return NormalizedArguments(raw, "arguments must be an object")
    if isinstance(raw, dict):
        return _finish_object(tool_name, raw)

    if isinstance(raw, str):
        trimmed = raw.strip()
        if not trimmed:
            return NormalizedArguments(raw, "arguments are empty")
        if trimmed[0] in "{[\"":
            try:
                parsed = json.loads(trimmed)
                # Double-encoded objects arrive as a JSON string holding JSON.
                if isinstance(parsed, str) and parsed.strip()[:1] in ("{", "["):
                    parsed = json.loads(parsed)
            except (ValueError, RecursionError):
                return NormalizedArguments(raw, "malformed JSON arguments (possibly truncated)")
            if isinstance(parsed, list):
                return NormalizedArguments(parsed, "arguments must be an object")
            if isinstance(parsed, dict):
                return _finish_object(tool_name, parsed)
            if isinstance(parsed, str):
                coerced = _coerce_scalar_arguments(tool_name, parsed)
                if coerced:
                    return _finish_object(tool_name, coerced)
        coerced = _coerce_scalar_arguments(tool_name, trimmed)
        if coerced:
            return _finish_object(tool_name, coerced)
        return NormalizedArguments(raw, "arguments must be an object")

    if isinstance(raw, bool) or _is_number(raw):
        try:
            text = _scalar_text(raw)
        except ValueError:
            return NormalizedArguments(raw, "unsupported argument type")
        coerced = _coerce_scalar_arguments(tool_name, text)
        if coerced:
            return _finish_object(tool_name, coerced)

    if raw is None:
        return NormalizedArguments(raw, "arguments are missing")
    return NormalizedArguments(raw, "unsupported argument type")


def stable_json(value: Any, _depth: int = 0) -> str:
    """Key-sorted compact JSON; None renders as an empty string.

    Containers nested deeper than ``_SIGNATURE_MAX_DEPTH`` render as a
    placeholder.
    """
    if value is None:
        return ""
    if _depth >= _SIGNATURE_MAX_DEPTH and isinstance(value, (dict, list, tuple)):
        return '"[nested]"'
    if isinstance(value, dict):
        entries = [
            f"{json.dumps(str(key), ensure_ascii=False)}:{stable_json(val, _depth + 1)}"
            for key, val in sorted(value.items(), key=lambda item: str(item[0]))
        ]
        return "{" + ",".join(entries) + "}"
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(stable_json(item, _depth + 1) for item in value) + "]"
    try:
        return json.dumps(value, ensure_ascii=False, default=str)
    except ValueError:
        # ints past the str() digit limit
        return json.dumps(type(value).__name__)


def normalize_tool_call_signature(call: ToolCall) -> str:
    """``<lowercased name>:<stable JSON of arguments>``."""
    name = normalize_tool_name(call.name) or "unknown"
    return f"{name}:{stable_json(call.arguments)}"


def normalize_tool_round_signature(calls: Sequence[ToolCall]) -> str:
    """Order-independent signature of one round of calls."""
    return "|".join(sorted(normalize_tool_call_signature(call) for call in calls))


def _error_text(error: Any) -> str:
    if not error:
        return ""
    return str(error)


def is_non_retryable_tool_error(error: Any) -> bool:
    message = _error_text(error)
    if not message:
        return False
    return any(pattern.search(message) for pattern in _NON_RETRYABLE_ERROR_PATTERNS)


def is_retryable_tool_error(error: Any) -> bool:
    """Transient-looking errors, unless a non-retryable pattern also matches."""
    message = _error_text(error)
    if not message or is_non_retryable_tool_error(message):
        return False
    return any(pattern.search(message) for pattern in _TRANSIENT_ERROR_PATTERNS)


def should_retry_idempotent_tool_call(
    tool_name: str,
    error: Any,
    attempt: int,
    max_attempts: int,
    classifier: ToolClassifier | None = None,
) -> bool:
    """Whether a failed call may be re-issued (idempotent + transient + budget left)."""
    if attempt >= max_attempts:
        return False
    if (classifier or DEFAULT_CLASSIFIER).classify(tool_name) is not ToolCallClass.IDEMPOTENT:
        return False
    return is_retryable_tool_error(error)


def _compact_line(text: str, max_chars: int) -> str:
    normalized = re.sub(r"\s+", " ", text).strip()
    if len(normalized) <= max_chars:
        return normalized
    return normalized[: max(0, max_chars - 1)] + "…"


def _compact_with_head_tail(text: str, max_chars: int, head_chars: int, tail_chars: int, label: str) -> str:
    if not text:
        return text
    trimmed = text.strip()
    if len(trimmed) <= max_chars or _TRIM_MARKER_RE.search(trimmed):
        return trimmed
    head = trimmed[: max(0, head_chars)]
    tail = trimmed[len(trimmed) - max(0, tail_chars):] if tail_chars > 0 else ""
    return (
        f"{head}\n...\n{tail}\n[{label}: kept first {len(head)} and last {len(tail)} "
        f"of {len(trimmed)} chars.]"
    )


def _compact_argument_value(
    value: Any,
    options: ToolCompactionOptions,
    redact_keys: frozenset[str],
    depth: int = 0,
    key_hint: str = "",
) -> Any:
    if depth > _MAX_ARGUMENT_DEPTH:
        return "[argument depth trimmed]"
    if isinstance(value, str):
        key = key_hint.strip().lower()
        max_chars = options.max_argument_chars
        if key in redact_keys and len(value) > math.floor(max_chars * 0.6):
            return f"[{key or 'value'} omitted: {len(value)} chars]"
        if len(value) > max_chars:
            return _compact_with_head_tail(
                value,
                max_chars,
                min(math.floor(max_chars * 0.6), max_chars),
                min(math.floor(max_chars * 0.25), max_chars),
                "Argument trimmed",
            )
        return value
    if isinstance(value, (list, tuple)):
        items = list(value)
        omitted = 0
        marker = _ITEMS_OMITTED_RE.match(items[-1]) if items and isinstance(items[-1], str) else None
        if marker:
            items.pop()
            omitted = int(marker.group(1))
        limit = max(1, options.max_argument_array_items)
        mapped = [_compact_argument_value(item, options, redact_keys, depth + 1) for item in items[:limit]]
        omitted += max(0, len(items) - limit)
        if omitted:
            mapped.append(f"[{omitted} items omitted]")
        return mapped
    if isinstance(value, dict):
        entries = [(key, val) for key, val in value.items() if key != _TRIMMED_KEYS]
        trimmed_keys = value.get(_TRIMMED_KEYS, 0)
        omitted = trimmed_keys if _is_number(trimmed_keys) else 0
        limit = max(1, options.max_argument_object_keys)
        out: dict[str, Any] = {
            key: _compact_argument_value(val, options, redact_keys, depth + 1, str(key))
            for key, val in entries[:limit]
        }
        omitted += max(0, len(entries) - limit)
        if omitted:
            out[_TRIMMED_KEYS] = omitted
        return out
    return value


def _compact_item(item: Any, options: ToolCompactionOptions, redact_keys: frozenset[str]) -> tuple[Any, bool]:
    if not isinstance(item, dict):
        return item, False
    item_type = item.get("type")
    if item_type == "function_call_output":
        output = item.get("output")
        if not isinstance(output, str) or len(output) <= options.max_output_chars:
            return item, False
        compacted_output = _compact_with_head_tail(
            output,
            options.max_output_chars,
            options.output_head_chars,
            options.output_tail_chars,
            "Tool output trimmed",
        )
        if compacted_output == output:
            return item, False
        return {**item, "output": compacted_output}, True
    if item_type == "function_call":
        arguments = item.get("arguments")
        compacted_args = _compact_argument_value(arguments, options, redact_keys)
        if compacted_args == arguments:
            return item, False
        return {**item, "arguments": compacted_args}, True
    return item, False


def compact_tool_conversation_items(
    items: Sequence[Any],
    options: ToolCompactionOptions | dict[str, Any] | None = None,
) -> tuple[list[Any], int]:
    """Shrink oversized tool outputs and arguments in a transcript.

    Items other than ``function_call``/``function_call_output`` dicts pass
    through untouched. Applying the result a second time changes nothing.

    Returns:
        Tuple of (new item list, number of items that were changed)
    """
    if options is None:
        resolved = ToolCompactionOptions()
    elif isinstance(options, ToolCompactionOptions):
        resolved = options
    else:
        resolved = ToolCompactionOptions.model_validate(options)
    redact_keys = frozenset(key.lower() for key in resolved.argument_redact_keys)

    out: list[Any] = []
    compacted = 0
    for item in items or []:
        new_item, changed = _compact_item(item, resolved, redact_keys)
        out.append(new_item)
        if changed:
            compacted += 1
    return out, compacted


def select_tool_outcome_highlights(tool_outputs: Sequence[ToolResult], limit: int = 4) -> list[str]:
    """Newest-first one-line summaries of successful outputs and errors."""
    lines: list[str] = []
    for item in reversed(list(tool_outputs or [])):
        if len(lines) >= limit:
            break
        if not item or not item.name:
            continue
        if item.ok:
            if item.output and item.output.strip():
                lines.append(f"- {item.name}: {_compact_line(item.output, 260)}")
            continue
        if item.error and item.error.strip():
            lines.append(f"- {item.name} (error): {_compact_line(item.error, 200)}")
    return lines


def build_forced_synthesis_prompt(
    reason: str,
    pending_calls: Sequence[ToolCall],
    tool_outputs: Sequence[ToolResult],
) -> str:
    """Continuation prompt asking for a final answer without more tool calls."""
    if pending_calls:
        pending_summary = "\n".join(f"- {call.name}" for call in list(pending_calls)[:8])
    else:
        pending_summary = "- none"
    outcome_lines = select_tool_outcome_highlights(tool_outputs, 6)
    outcomes = "\n".join(outcome_lines) if outcome_lines else "- no tool outputs captured"
    return "\n".join([
        "[SYSTEM CONTINUATION]",
        f"Tool loop ended because: {reason}.",
        "Produce a final assistant response now.",
        "Do not call more tools in this response.",
        "If there is missing data, state what is missing and provide the best next action.",
        "",
        "Pending tool calls:",
        pending_summary,
        "",
        "Recent tool outcomes:",
        outcomes,
    ])


def build_tool_outcome_fallback(
    reason: str,
    tool_outputs: Sequence[ToolResult],
    pending_calls: Sequence[ToolCall],
) -> str:
    """User-facing text when tool work finished but no final answer came back."""
    lines = [f"I completed tool work but could not produce a full final response ({reason})."]
    highlights = select_tool_outcome_highlights(tool_outputs, 5)
    if highlights:
        lines.append("Here are the most relevant tool outcomes:")
        lines.extend(highlights)
    if pending_calls:
        names = ", ".join(call.name for call in list(pending_calls)[:8])
        lines.append(f"Unresolved tool calls: {names}.")
    lines.append("Tell me if you want me to continue from this point or change approach.")
    return "\n".join(lines)
