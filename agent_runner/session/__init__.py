"""Session management with file-backed storage.

Each session lives in its own directory::

    <root>/<session_id>/session.json   metadata (next sequence number)
    <root>/<session_id>/memory.json    summary + facts
    <root>/<session_id>/history.jsonl  append-only message log

Single writer per session; no lock is taken.
"""

import json
import os
import re
import uuid
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

from agent_runner.exceptions import SessionNotFoundError
from agent_runner.logging import get_logger

log = get_logger(__name__)

Role = Literal["user", "assistant"]

MEMORY_SCHEMA_VERSION = 1
ARCHIVE_MESSAGE_MAX_CHARS = 4000


def _utcnow_iso() -> str:
    """Return current UTC timestamp in ISO format."""
    return datetime.now(UTC).isoformat()


def atomic_write_text(path: Path, content: str) -> None:
    """Write through a sibling temp file and rename it over ``path``."""
    tmp_path = path.with_name(f"{path.name}.tmp")
    tmp_path.write_text(content, encoding="utf-8")
    os.replace(tmp_path, path)


@dataclass
class Message:
    """A message in the session history."""

    role: Role
    content: str
    timestamp: str = field(default_factory=_utcnow_iso)
    seq: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        return cls(
            role=data["role"],
            content=data["content"],
            timestamp=str(data.get("timestamp") or _utcnow_iso()),
            seq=int(data.get("seq", 0)),
        )


@dataclass
class SessionMeta:
    """Per-session metadata; ``next_seq`` advances on every append."""

    session_id: str
    created_at: str = field(default_factory=_utcnow_iso)
    updated_at: str = field(default_factory=_utcnow_iso)
    next_seq: int = 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "nextSeq": self.next_seq,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SessionMeta":
        return cls(
            session_id=str(data["sessionId"]),
            created_at=str(data.get("createdAt") or _utcnow_iso()),
            updated_at=str(data.get("updatedAt") or _utcnow_iso()),
            next_seq=int(data.get("nextSeq", 1)),
        )


@dataclass
class MemoryState:
    """Durable summary and facts distilled from compacted history."""

    summary: str = ""
    facts: list[str] = field(default_factory=list)
    last_summary_seq: int = 0
    updated_at: str = field(default_factory=_utcnow_iso)
    schema_version: int = MEMORY_SCHEMA_VERSION

    def to_dict(self) -> dict[str, Any]:
        return {
            "summary": self.summary,
            "facts": list(self.facts),
            "lastSummarySeq": self.last_summary_seq,
            "updatedAt": self.updated_at,
            "schemaVersion": self.schema_version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MemoryState":
        facts = data.get("facts", [])
        return cls(
            summary=str(data.get("summary") or ""),
            facts=[str(item) for item in facts] if isinstance(facts, list) else [],
            last_summary_seq=int(data.get("lastSummarySeq", 0)),
            updated_at=str(data.get("updatedAt") or _utcnow_iso()),
            schema_version=int(data.get("schemaVersion", MEMORY_SCHEMA_VERSION)),
        )


@dataclass
class SessionContext:
    """Everything one worker needs to read and write a single session."""

    session_id: str
    session_dir: Path
    history_path: Path
    meta_path: Path
    state_path: Path
    meta: SessionMeta
    state: MemoryState


class SessionStore:
    """Creates, loads and persists sessions under one root directory."""

    def __init__(self, root: Path | str):
        self.root = Path(root).expanduser()

    def create_or_load(self, session_id: str | None = None) -> tuple[SessionContext, bool]:
        """Open a session, creating its files when missing.

        Args:
            session_id: Existing session id; a new one is generated when blank

        Returns:
            Tuple of (session context, whether the session was newly created)
        """
        self.root.mkdir(parents=True, exist_ok=True)
        is_new = False
        resolved_id = (session_id or "").strip()
        if not resolved_id:
            resolved_id = f"session-{uuid.uuid4()}"
            is_new = True

        session_dir = self.root / resolved_id
        session_dir.mkdir(parents=True, exist_ok=True)
        meta_path = session_dir / "session.json"
        state_path = session_dir / "memory.json"
        history_path = session_dir / "history.jsonl"

        if meta_path.exists():
            try:
                meta = SessionMeta.from_dict(json.loads(meta_path.read_text(encoding="utf-8")))
            except (OSError, ValueError, KeyError, TypeError) as e:
                raise SessionNotFoundError(resolved_id) from e
        else:
            meta = SessionMeta(session_id=resolved_id)
            atomic_write_text(meta_path, json.dumps(meta.to_dict(), indent=2))
            is_new = True

        state: MemoryState | None = None
        if state_path.exists():
            try:
                state = MemoryState.from_dict(json.loads(state_path.read_text(encoding="utf-8")))
            except (OSError, ValueError, TypeError) as e:
                log.warning("Memory state unreadable, starting empty", session_id=resolved_id, error=str(e))
        if state is None:
            state = MemoryState()
            atomic_write_text(state_path, json.dumps(state.to_dict(), indent=2))

        ctx = SessionContext(
            session_id=resolved_id,
            session_dir=session_dir,
            history_path=history_path,
            meta_path=meta_path,
            state_path=state_path,
            meta=meta,
            state=state,
        )
        if is_new:
            log.info("Created new session", session_id=resolved_id)
        return ctx, is_new

    def save_session_meta(self, ctx: SessionContext) -> None:
        """Persist session metadata."""
        ctx.meta.updated_at = _utcnow_iso()
        atomic_write_text(ctx.meta_path, json.dumps(ctx.meta.to_dict(), indent=2))

    def save_memory_state(self, ctx: SessionContext) -> None:
        """Persist summary, facts and last summarized sequence."""
        ctx.state.updated_at = _utcnow_iso()
        atomic_write_text(ctx.state_path, json.dumps(ctx.state.to_dict(), indent=2))

    def append_history(self, ctx: SessionContext, role: Role, content: str) -> Message:
        """Append one message and advance the sequence counter."""
        message = Message(role=role, content=content, seq=ctx.meta.next_seq)
        ctx.meta.next_seq += 1
        with open(ctx.history_path, "a", encoding="utf-8") as f:
            f.write(json.dumps(message.to_dict(), ensure_ascii=False) + "\n")
        self.save_session_meta(ctx)
        return message

    def load_history(self, ctx: SessionContext) -> list[Message]:
        """Read the history log, skipping malformed lines."""
        if not ctx.history_path.exists():
            return []
        messages: list[Message] = []
        skipped = 0
        # split("\n") rather than splitlines(): U+2028 and friends may appear unescaped.
        for line in ctx.history_path.read_text(encoding="utf-8").split("\n"):
            if not line.strip():
                continue
            try:
                parsed = json.loads(line)
            except ValueError:
                skipped += 1
                continue
            if (
                not isinstance(parsed, dict)
                or not parsed.get("role")
                or not isinstance(parsed.get("content"), str)
            ):
                skipped += 1
                continue
            try:
                messages.append(Message.from_dict(parsed))
            except (KeyError, TypeError, ValueError):
                skipped += 1
        if skipped:
            log.debug("Skipped malformed history lines", session_id=ctx.session_id, skipped=skipped)
        return messages

    def write_history(self, ctx: SessionContext, messages: list[Message]) -> None:
        """Replace the whole history log (used after compaction)."""
        if not messages:
            ctx.history_path.unlink(missing_ok=True)
            return
        content = "".join(json.dumps(m.to_dict(), ensure_ascii=False) + "\n" for m in messages)
        atomic_write_text(ctx.history_path, content)


def format_transcript_markdown(
    messages: list[Message],
    title: str | None = None,
    now: datetime | None = None,
) -> str:
    """Render messages as a Markdown transcript for archiving."""
    archived_at = (now or datetime.now()).strftime("%b %d, %I:%M %p")
    lines = [f"# {title or 'Conversation'}", "", f"Archived: {archived_at}", "", "---", ""]
    for msg in messages:
        sender = "User" if msg.role == "user" else "Assistant"
        content = msg.content
        if len(content) > ARCHIVE_MESSAGE_MAX_CHARS:
            content = f"{content[:ARCHIVE_MESSAGE_MAX_CHARS]}..."
        lines.append(f"**{sender}**: {content}")
        lines.append("")
    return "\n".join(lines)


def sanitize_filename(summary: str) -> str:
    """Turn free text into a short lowercase dash-separated file stem."""
    slug = re.sub(r"[^a-z0-9]+", "-", summary.lower()).strip("-")
    return slug[:50]


def archive_conversation(
    messages: list[Message],
    summary: str | None,
    group_dir: Path | str,
) -> Path | None:
    """Write a Markdown transcript under ``<group_dir>/conversations``."""
    if not messages:
        return None
    conversations_dir = Path(group_dir) / "conversations"
    conversations_dir.mkdir(parents=True, exist_ok=True)

    now = datetime.now()
    name = sanitize_filename(summary) if summary else ""
    if not name:
        name = f"conversation-{now:%H%M}"
    file_path = conversations_dir / f"{now:%Y-%m-%d}-{name}.md"
    atomic_write_text(file_path, format_transcript_markdown(messages, summary, now=now))
    log.info("Archived conversation", path=str(file_path), messages=len(messages))
    return file_path


__all__ = [
    "Message",
    "MemoryState",
    "SessionContext",
    "SessionMeta",
    "SessionStore",
    "archive_conversation",
    "atomic_write_text",
    "format_transcript_markdown",
    "sanitize_filename",
]
