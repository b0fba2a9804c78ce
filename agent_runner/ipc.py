"""File-based IPC with the supervising host.

The worker drops JSON records into directories the host watches::

    <root>/messages/        outbound chat messages
    <root>/tasks/           task and group control events
    <root>/requests/        correlated requests (the host answers in responses/)
    <root>/responses/       <request id>.json, consumed and deleted here
    <root>/current_tasks.json   task list published by the host

Every file is written to a temp name and renamed into place.
"""

import asyncio
import json
import re
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Annotated, Any, Literal, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from agent_runner.config import IpcConfig
from agent_runner.ids import generate_id
from agent_runner.logging import get_logger
from agent_runner.session import atomic_write_text

log = get_logger(__name__)

IpcResult = dict[str, Any]

_LEADING_INT_RE = re.compile(r"^\s*([+-]?\d+)")


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


class IpcEvent(BaseModel):
    """Base for fire-and-forget records."""

    model_config = ConfigDict(populate_by_name=True)

    type: str
    timestamp: str = Field(default_factory=_utcnow_iso)

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class MessageEvent(IpcEvent):
    type: Literal["message"] = "message"
    chat_jid: str = Field(alias="chatJid")
    text: str
    group_folder: str = Field(alias="groupFolder")


class ScheduleTaskEvent(IpcEvent):
    type: Literal["schedule_task"] = "schedule_task"
    prompt: str
    schedule_type: Literal["cron", "interval", "once"]
    schedule_value: str
    context_mode: Literal["group", "isolated"] = "group"
    timezone: str | None = None
    group_folder: str = Field(alias="groupFolder")
    chat_jid: str = Field(alias="chatJid")
    created_by: str = Field(alias="createdBy")


class TaskControlEvent(IpcEvent):
    task_id: str = Field(alias="taskId")
    group_folder: str = Field(alias="groupFolder")
    is_main: bool = Field(alias="isMain")


class PauseTaskEvent(TaskControlEvent):
    type: Literal["pause_task"] = "pause_task"


class ResumeTaskEvent(TaskControlEvent):
    type: Literal["resume_task"] = "resume_task"


class CancelTaskEvent(TaskControlEvent):
    type: Literal["cancel_task"] = "cancel_task"


class UpdateTaskEvent(TaskControlEvent):
    type: Literal["update_task"] = "update_task"
    state_json: str | None = None
    prompt: str | None = None
    schedule_type: str | None = None
    schedule_value: str | None = None
    context_mode: str | None = None
    status: str | None = None


class RegisterGroupEvent(IpcEvent):
    type: Literal["register_group"] = "register_group"
    jid: str
    name: str
    folder: str
    trigger: str | None = None


class RemoveGroupEvent(IpcEvent):
    type: Literal["remove_group"] = "remove_group"
    identifier: str
    group_folder: str = Field(alias="groupFolder")
    is_main: bool = Field(alias="isMain")


class SetModelEvent(IpcEvent):
    type: Literal["set_model"] = "set_model"
    model: str
    scope: Literal["global", "group", "user"] | None = None
    target_id: str | None = None
    group_folder: str = Field(alias="groupFolder")
    chat_jid: str = Field(alias="chatJid")


class OpaqueIpcEvent(IpcEvent):
    """Record of a type this worker does not know; extra fields are kept."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")


_EVENT_CLASSES = (
    MessageEvent,
    ScheduleTaskEvent,
    PauseTaskEvent,
    ResumeTaskEvent,
    CancelTaskEvent,
    UpdateTaskEvent,
    RegisterGroupEvent,
    RemoveGroupEvent,
    SetModelEvent,
)
_KNOWN_EVENT_TYPES = frozenset(cls.model_fields["type"].default for cls in _EVENT_CLASSES)

AnyIpcEvent = Annotated[Union[_EVENT_CLASSES], Field(discriminator="type")]
_EVENT_ADAPTER: TypeAdapter[Any] = TypeAdapter(AnyIpcEvent)


def parse_ipc_event(data: dict[str, Any]) -> IpcEvent:
    """Validate a raw record into its typed event model.

    Unknown types come back as ``OpaqueIpcEvent``; a known type with bad
    fields raises ``pydantic.ValidationError``.
    """
    if data.get("type") not in _KNOWN_EVENT_TYPES:
        return OpaqueIpcEvent.model_validate(data)
    return _EVENT_ADAPTER.validate_python(data)


class IpcRequest(BaseModel):
    """Correlated request; the host answers in ``responses/<id>.json``."""

    id: str = Field(default_factory=lambda: generate_id("req"))
    type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: str = Field(default_factory=_utcnow_iso)


@dataclass
class IpcContext:
    """Identity of the chat/group this worker is serving."""

    chat_jid: str
    group_folder: str
    is_main: bool = False


def validate_schedule(schedule_type: str, schedule_value: str, timezone: str | None = None) -> str | None:
    """Return an error message for an invalid schedule, or None."""
    value = schedule_value if isinstance(schedule_value, str) else ""
    if schedule_type == "cron":
        if not croniter.is_valid(value):
            return (
                f'Invalid cron: "{schedule_value}". Use format like "0 9 * * *" (daily 9am) '
                f'or "*/5 * * * *" (every 5 min).'
            )
    elif schedule_type == "interval":
        match = _LEADING_INT_RE.match(value)
        if not match or int(match.group(1)) <= 0:
            return (
                f'Invalid interval: "{schedule_value}". Must be positive milliseconds '
                f'(e.g., "300000" for 5 min).'
            )
    elif schedule_type == "once":
        try:
            datetime.fromisoformat(value.strip())
        except ValueError:
            return (
                f'Invalid timestamp: "{schedule_value}". Use local ISO 8601 format like '
                f'"2026-02-01T15:30:00" (no Z/UTC suffix).'
            )
    else:
        return f'Invalid schedule_type: "{schedule_type}". Use "cron", "interval" or "once".'

    if timezone:
        try:
            ZoneInfo(timezone)
        except (ZoneInfoNotFoundError, ValueError, TypeError):
            return f'Invalid timezone: "{timezone}". Use an IANA name like "Europe/Zagreb".'
    return None


class IpcClient:
    """Worker side of the host IPC protocol."""

    def __init__(self, ipc_cfg: IpcConfig, context: IpcContext):
        self.config = ipc_cfg
        self.context = context
        self.root = Path(ipc_cfg.root).expanduser()
        self.messages_dir = self.root / "messages"
        self.tasks_dir = self.root / "tasks"
        self.requests_dir = self.root / "requests"
        self.responses_dir = self.root / "responses"
        self.current_tasks_path = self.root / "current_tasks.json"

    @staticmethod
    def _write_record(directory: Path, data: dict[str, Any]) -> str:
        directory.mkdir(parents=True, exist_ok=True)
        filename = f"{generate_id()}.json"
        atomic_write_text(directory / filename, json.dumps(data, indent=2, ensure_ascii=False))
        return filename

    def _emit(self, directory: Path, event_cls: type[IpcEvent], **fields: Any) -> IpcResult:
        """Build and write one event; field validation failures come back as results."""
        try:
            event = event_cls(**fields)
        except ValidationError as e:
            first = e.errors()[0]
            field = ".".join(str(part) for part in first["loc"]) or "event"
            log.info("Rejected invalid IPC event", event_type=event_cls.__name__, field=field)
            return {"ok": False, "error": f"Invalid {field}: {first['msg']}"}
        filename = self._write_record(directory, event.to_record())
        log.debug("IPC event written", type=event.type, file=filename)
        return {"ok": True, "id": filename}

    def _permission_denied(self, action: str) -> IpcResult | None:
        if self.context.is_main:
            return None
        log.info("IPC action denied for non-main group", action=action, group=self.context.group_folder)
        return {"ok": False, "error": f"Only the main group can {action}."}

    @staticmethod
    def _take_response(response_path: Path, request_id: str) -> IpcResult:
        raw = response_path.read_text(encoding="utf-8")
        response_path.unlink(missing_ok=True)
        try:
            return json.loads(raw)
        except ValueError:
            log.warning("Unparseable IPC response", request_id=request_id)
            return {"ok": False, "error": "Failed to parse IPC response"}

    async def request_response(
        self,
        request_type: str,
        payload: dict[str, Any] | None = None,
        timeout_ms: int | None = None,
    ) -> IpcResult:
        """Write a request and poll for its response until the deadline.

        Timeout is a result value, never an exception.
        """
        timeout = self.config.request_timeout_ms if timeout_ms is None else timeout_ms
        poll_seconds = max(1, self.config.request_poll_ms) / 1000.0
        self.responses_dir.mkdir(parents=True, exist_ok=True)

        fields = {key: value for key, value in (payload or {}).items() if value is not None}
        request = IpcRequest(type=request_type, payload=fields)
        self._write_record(self.requests_dir, request.model_dump())
        response_path = self.responses_dir / f"{request.id}.json"

        deadline = time.monotonic() + timeout / 1000.0
        while time.monotonic() < deadline:
            if response_path.exists():
                return self._take_response(response_path, request.id)
            await asyncio.sleep(poll_seconds)
        # A response may have landed during the last sleep.
        if response_path.exists():
            return self._take_response(response_path, request.id)

        log.warning("IPC request timed out", request_id=request.id, type=request_type, timeout_ms=timeout)
        return {"ok": False, "error": f"IPC request timeout ({timeout}ms)"}

    async def send_message(self, text: str) -> IpcResult:
        return self._emit(
            self.messages_dir,
            MessageEvent,
            chat_jid=self.context.chat_jid,
            text=text,
            group_folder=self.context.group_folder,
        )

    async def schedule_task(
        self,
        prompt: str,
        schedule_type: str,
        schedule_value: str,
        context_mode: str | None = None,
        target_group: str | None = None,
        timezone: str | None = None,
    ) -> IpcResult:
        """Schedule a task; ``target_group`` is honored only for the main group."""
        error = validate_schedule(schedule_type, schedule_value, timezone)
        if error:
            return {"ok": False, "error": error}
        if context_mode not in (None, "", "group", "isolated"):
            return {"ok": False, "error": f'Invalid context_mode: "{context_mode}". Use "group" or "isolated".'}

        group = target_group if self.context.is_main and target_group else self.context.group_folder
        return self._emit(
            self.tasks_dir,
            ScheduleTaskEvent,
            prompt=prompt,
            schedule_type=schedule_type,
            schedule_value=schedule_value,
            context_mode=context_mode or "group",
            timezone=timezone or None,
            group_folder=group,
            chat_jid=self.context.chat_jid,
            created_by=self.context.group_folder,
        )

    async def list_tasks(self) -> IpcResult:
        """Tasks from the host snapshot; non-main groups only see their own."""
        if not self.current_tasks_path.exists():
            return {"ok": True, "tasks": []}
        try:
            all_tasks = json.loads(self.current_tasks_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            log.warning("Task snapshot unreadable", path=str(self.current_tasks_path), error=str(e))
            return {"ok": False, "error": "Failed to read task list"}
        if not isinstance(all_tasks, list):
            all_tasks = []
        if self.context.is_main:
            return {"ok": True, "tasks": all_tasks}
        tasks = [
            task for task in all_tasks
            if isinstance(task, dict) and task.get("groupFolder") == self.context.group_folder
        ]
        return {"ok": True, "tasks": tasks}

    def _task_control(self, event_cls: type[TaskControlEvent], task_id: str, **fields: Any) -> IpcResult:
        return self._emit(
            self.tasks_dir,
            event_cls,
            task_id=task_id,
            group_folder=self.context.group_folder,
            is_main=self.context.is_main,
            **fields,
        )

    async def pause_task(self, task_id: str) -> IpcResult:
        return self._task_control(PauseTaskEvent, task_id)

    async def resume_task(self, task_id: str) -> IpcResult:
        return self._task_control(ResumeTaskEvent, task_id)

    async def cancel_task(self, task_id: str) -> IpcResult:
        return self._task_control(CancelTaskEvent, task_id)

    async def update_task(
        self,
        task_id: str,
        state_json: str | None = None,
        prompt: str | None = None,
        schedule_type: str | None = None,
        schedule_value: str | None = None,
        context_mode: str | None = None,
        status: str | None = None,
    ) -> IpcResult:
        return self._task_control(
            UpdateTaskEvent,
            task_id,
            state_json=state_json,
            prompt=prompt,
            schedule_type=schedule_type,
            schedule_value=schedule_value,
            context_mode=context_mode,
            status=status,
        )

    async def register_group(self, jid: str, name: str, folder: str, trigger: str | None = None) -> IpcResult:
        denied = self._permission_denied("register new groups")
        if denied:
            return denied
        return self._emit(self.tasks_dir, RegisterGroupEvent, jid=jid, name=name, folder=folder, trigger=trigger)

    async def remove_group(self, identifier: str) -> IpcResult:
        denied = self._permission_denied("remove groups")
        if denied:
            return denied
        if not identifier or not isinstance(identifier, str):
            return {"ok": False, "error": "identifier is required (chat id, name, or folder)."}
        return self._emit(
            self.tasks_dir,
            RemoveGroupEvent,
            identifier=identifier,
            group_folder=self.context.group_folder,
            is_main=self.context.is_main,
        )

    async def list_groups(self) -> IpcResult:
        denied = self._permission_denied("list groups")
        if denied:
            return denied
        return await self.request_response("list_groups", {})

    async def set_model(self, model: str, scope: str | None = None, target_id: str | None = None) -> IpcResult:
        denied = self._permission_denied("change the model")
        if denied:
            return denied
        if scope not in (None, "global", "group", "user"):
            return {"ok": False, "error": f'Invalid scope: "{scope}". Use "global", "group" or "user".'}
        return self._emit(
            self.tasks_dir,
            SetModelEvent,
            model=model,
            scope=scope,
            target_id=target_id,
            group_folder=self.context.group_folder,
            chat_jid=self.context.chat_jid,
        )

    async def memory_upsert(
        self,
        items: list[Any],
        source: str | None = None,
        target_group: str | None = None,
    ) -> IpcResult:
        return await self.request_response(
            "memory_upsert",
            {"items": items, "source": source, "target_group": target_group},
        )

    async def memory_forget(
        self,
        ids: list[str] | None = None,
        content: str | None = None,
        scope: str | None = None,
        user_id: str | None = None,
        target_group: str | None = None,
    ) -> IpcResult:
        return await self.request_response(
            "memory_forget",
            {"ids": ids, "content": content, "scope": scope, "userId": user_id, "target_group": target_group},
        )

    async def memory_list(
        self,
        scope: str | None = None,
        memory_type: str | None = None,
        user_id: str | None = None,
        limit: int | None = None,
        target_group: str | None = None,
    ) -> IpcResult:
        return await self.request_response(
            "memory_list",
            {"scope": scope, "type": memory_type, "userId": user_id, "limit": limit, "target_group": target_group},
        )

    async def memory_search(
        self,
        query: str,
        user_id: str | None = None,
        limit: int | None = None,
        target_group: str | None = None,
    ) -> IpcResult:
        return await self.request_response(
            "memory_search",
            {"query": query, "userId": user_id, "limit": limit, "target_group": target_group},
        )

    async def memory_stats(self, user_id: str | None = None, target_group: str | None = None) -> IpcResult:
        return await self.request_response("memory_stats", {"userId": user_id, "target_group": target_group})
