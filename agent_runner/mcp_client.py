"""Minimal MCP client over stdio, plus a registry of external MCP servers.

Messages are newline-delimited JSON-RPC 2.0. One subprocess per client; a
reader task resolves pending request futures by id.
"""

import asyncio
import json
import os
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from agent_runner.config import McpConfig, McpServerConfig
from agent_runner.exceptions import (
    McpError,
    McpNotConnectedError,
    McpProcessError,
    McpRequestError,
    McpTimeoutError,
)
from agent_runner.logging import get_logger
from agent_runner.tool_policy import ToolCall

log = get_logger(__name__)

MCP_TOOL_PREFIX = "mcp_ext__"
_ENV_REF_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_STREAM_LIMIT = 16 * 1024 * 1024
_TERMINATE_GRACE_SECONDS = 2.0


class McpClientState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSED = "closed"


@dataclass
class McpTool:
    """Tool advertised by an MCP server."""

    name: str
    description: str = ""
    input_schema: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "McpTool":
        schema = data.get("inputSchema")
        return cls(
            name=str(data.get("name", "")),
            description=str(data.get("description") or ""),
            input_schema=schema if isinstance(schema, dict) else {},
        )


@dataclass
class McpCallResult:
    """Result of ``tools/call``."""

    content: list[dict[str, Any]] = field(default_factory=list)
    is_error: bool = False
    error: str | None = None

    @classmethod
    def from_dict(cls, data: Any) -> "McpCallResult":
        if not isinstance(data, dict):
            return cls()
        content = data.get("content")
        return cls(
            content=[item for item in content if isinstance(item, dict)] if isinstance(content, list) else [],
            is_error=bool(data.get("isError", False)),
        )

    @property
    def text(self) -> str:
        parts = [str(item.get("text")) for item in self.content if item.get("type") == "text" and item.get("text")]
        if not parts and self.error:
            return self.error
        return "\n".join(parts)


def resolve_env(env: dict[str, str]) -> dict[str, str]:
    """Expand ``${VAR}`` references from the current environment (missing -> empty)."""
    return {
        key: _ENV_REF_RE.sub(lambda m: os.environ.get(m.group(1), ""), str(value))
        for key, value in (env or {}).items()
    }


class McpStdioClient:
    """JSON-RPC client for one MCP server subprocess.

    State moves DISCONNECTED -> CONNECTING -> CONNECTED -> CLOSED. Once the
    server process exits (or ``close()`` runs) the client stays CLOSED.
    """

    def __init__(
        self,
        command: str,
        args: list[str] | None = None,
        env: dict[str, str] | None = None,
        timeout_ms: int = 10_000,
        protocol_version: str = "2024-11-05",
        client_name: str = "agent-runner",
        client_version: str = "0.1.0",
        name: str | None = None,
    ):
        self.command = command
        self.args = list(args or [])
        self.env = dict(env or {})
        self.timeout_ms = timeout_ms
        self.protocol_version = protocol_version
        self.client_name = client_name
        self.client_version = client_version
        self.name = name or command

        self._state = McpClientState.DISCONNECTED
        self._process: asyncio.subprocess.Process | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._connect_task: asyncio.Task[None] | None = None
        self._pending: dict[int, asyncio.Future[Any]] = {}
        self._lock = asyncio.Lock()
        self._next_id = 1
        self.server_info: dict[str, Any] = {}

    @classmethod
    def from_config(cls, server: McpServerConfig, mcp_cfg: McpConfig) -> "McpStdioClient":
        return cls(
            command=server.command,
            args=server.args,
            env=server.env,
            timeout_ms=mcp_cfg.connection_timeout_ms,
            protocol_version=mcp_cfg.protocol_version,
            client_name=mcp_cfg.client_name,
            client_version=mcp_cfg.client_version,
            name=server.name,
        )

    @property
    def state(self) -> McpClientState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is McpClientState.CONNECTED

    async def connect(self) -> None:
        """Spawn the server and run the handshake; concurrent callers share one attempt."""
        if self._state is McpClientState.CONNECTED:
            return
        if self._state is McpClientState.CLOSED:
            raise McpNotConnectedError("MCP client closed")
        if self._connect_task is None:
            self._connect_task = asyncio.create_task(self._do_connect())
        task = self._connect_task
        try:
            await asyncio.shield(task)
        finally:
            if task.done() and self._connect_task is task:
                self._connect_task = None

    async def _do_connect(self) -> None:
        self._state = McpClientState.CONNECTING
        try:
            self._process = await asyncio.create_subprocess_exec(
                self.command,
                *self.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env={**os.environ, **resolve_env(self.env)},
                limit=_STREAM_LIMIT,
            )
        except OSError as e:
            self._state = McpClientState.CLOSED
            raise McpProcessError(f"Failed to start MCP server {self.name}: {e}") from e

        log.info("MCP server started", server=self.name, pid=self._process.pid)
        self._reader_task = asyncio.create_task(self._read_loop(self._process))
        self._stderr_task = asyncio.create_task(self._drain_stderr(self._process))

        try:
            result = await self._request("initialize", {
                "protocolVersion": self.protocol_version,
                "capabilities": {},
                "clientInfo": {"name": self.client_name, "version": self.client_version},
            })
            await self._notify("notifications/initialized")
        except BaseException:
            await self.close()
            raise

        if isinstance(result, dict):
            info = result.get("serverInfo")
            self.server_info = info if isinstance(info, dict) else {}
        self._state = McpClientState.CONNECTED
        log.info("MCP server connected", server=self.name, server_info=self.server_info or None)

    async def _read_loop(self, process: asyncio.subprocess.Process) -> None:
        assert process.stdout is not None
        try:
            while True:
                line = await process.stdout.readline()
                if not line:
                    break
                text = line.decode("utf-8", errors="replace").strip()
                if not text:
                    continue
                try:
                    message = json.loads(text)
                except ValueError:
                    log.debug("Skipping malformed MCP line", server=self.name, line=text[:200])
                    continue
                if not isinstance(message, dict) or "id" not in message or "method" in message:
                    continue
                async with self._lock:
                    future = self._pending.pop(message["id"], None)
                if future is None or future.done():
                    continue
                error = message.get("error")
                if error:
                    if isinstance(error, dict):
                        future.set_exception(McpRequestError(
                            str(error.get("message") or "MCP request failed"),
                            code=error.get("code"),
                            data=error.get("data"),
                        ))
                    else:
                        future.set_exception(McpRequestError(str(error)))
                else:
                    future.set_result(message.get("result"))
        finally:
            if self._state is not McpClientState.CLOSED:
                self._state = McpClientState.CLOSED
                log.warning("MCP server process closed", server=self.name)
                await self._fail_pending(McpProcessError("MCP server process closed"))

    async def _drain_stderr(self, process: asyncio.subprocess.Process) -> None:
        assert process.stderr is not None
        while True:
            line = await process.stderr.readline()
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                log.debug("MCP server stderr", server=self.name, line=text[:200])

    async def _fail_pending(self, error: McpError) -> None:
        async with self._lock:
            pending = list(self._pending.values())
            self._pending.clear()
        for future in pending:
            if not future.done():
                future.set_exception(error)

    async def _write(self, payload: dict[str, Any]) -> None:
        process = self._process
        if process is None or process.stdin is None or self._state is McpClientState.CLOSED:
            raise McpNotConnectedError()
        try:
            process.stdin.write((json.dumps(payload) + "\n").encode("utf-8"))
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise McpProcessError(f"MCP server process closed: {e}") from e

    async def _request(self, method: str, params: dict[str, Any] | None = None) -> Any:
        if self._process is None or self._state is McpClientState.CLOSED:
            raise McpNotConnectedError()
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        async with self._lock:
            request_id = self._next_id
            self._next_id += 1
            self._pending[request_id] = future

        payload: dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            payload["params"] = params
        try:
            await self._write(payload)
            return await asyncio.wait_for(future, timeout=self.timeout_ms / 1000.0)
        except asyncio.TimeoutError:
            raise McpTimeoutError(method, self.timeout_ms) from None
        finally:
            async with self._lock:
                self._pending.pop(request_id, None)

    async def _notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        payload: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            payload["params"] = params
        await self._write(payload)

    async def list_tools(self) -> list[McpTool]:
        result = await self._request("tools/list")
        tools = result.get("tools") if isinstance(result, dict) else None
        if not isinstance(tools, list):
            return []
        return [McpTool.from_dict(item) for item in tools if isinstance(item, dict)]

    async def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> McpCallResult:
        result = await self._request("tools/call", {"name": name, "arguments": arguments or {}})
        return McpCallResult.from_dict(result)

    async def close(self) -> None:
        """Stop the server process and fail anything still pending. Safe to repeat."""
        already_closed = self._state is McpClientState.CLOSED and self._process is None
        self._state = McpClientState.CLOSED
        if already_closed:
            return
        await self._fail_pending(McpProcessError("MCP client closed"))

        process, self._process = self._process, None
        if process is not None:
            if process.stdin is not None and not process.stdin.is_closing():
                process.stdin.close()
            if process.returncode is None:
                try:
                    process.terminate()
                    await asyncio.wait_for(process.wait(), timeout=_TERMINATE_GRACE_SECONDS)
                except ProcessLookupError:
                    pass
                except asyncio.TimeoutError:
                    process.kill()
                    await process.wait()

        current = asyncio.current_task()
        for task in (self._reader_task, self._stderr_task):
            if task is None or task is current or task.done():
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._reader_task = None
        self._stderr_task = None
        log.info("MCP client closed", server=self.name)


@dataclass
class McpToolSpec:
    """A discovered tool under its collision-free qualified name."""

    qualified_name: str
    server: str
    tool: McpTool


def qualified_tool_name(server: str, tool: str) -> str:
    return f"{MCP_TOOL_PREFIX}{server}__{tool}"


class McpToolRegistry:
    """Connects to every configured server and routes calls by qualified name.

    A server that fails to start or list tools is dropped without affecting
    the others.
    """

    def __init__(
        self,
        mcp_cfg: McpConfig,
        client_factory: Callable[[McpServerConfig, McpConfig], McpStdioClient] | None = None,
    ):
        self.config = mcp_cfg
        self._client_factory = client_factory or McpStdioClient.from_config
        self.clients: dict[str, McpStdioClient] = {}
        self.tools: dict[str, McpToolSpec] = {}

    async def discover_tools(self) -> list[McpToolSpec]:
        if not self.config.enabled:
            return []
        for server in self.config.servers:
            if not server.command:
                continue
            client = self._client_factory(server, self.config)
            try:
                await client.connect()
                server_tools = await client.list_tools()
            except (McpError, OSError) as e:
                log.warning("MCP server unavailable", server=server.name, error=str(e))
                await client.close()
                continue
            self.clients[server.name] = client
            for tool in server_tools:
                spec = McpToolSpec(qualified_tool_name(server.name, tool.name), server.name, tool)
                self.tools[spec.qualified_name] = spec
            log.info("Discovered MCP tools", server=server.name, count=len(server_tools))
        return list(self.tools.values())

    def is_mcp_tool(self, name: str) -> bool:
        return name in self.tools

    async def call(self, qualified_name: str, arguments: dict[str, Any] | None = None) -> McpCallResult:
        spec = self.tools.get(qualified_name)
        if spec is None:
            return McpCallResult(is_error=True, error=f"MCP tool {qualified_name} not found")
        client = self.clients.get(spec.server)
        if client is None:
            return McpCallResult(is_error=True, error=f"MCP server {spec.server} not found")
        return await client.call_tool(spec.tool.name, arguments)

    async def execute(self, call: ToolCall) -> str:
        """Tool-loop executor for MCP tools; an error result raises."""
        arguments = call.arguments if isinstance(call.arguments, dict) else {}
        result = await self.call(call.name, arguments)
        if result.is_error:
            raise McpRequestError(result.text or f"MCP tool {call.name} failed")
        return result.text

    async def close_all(self) -> None:
        for client in self.clients.values():
            await client.close()
        self.clients.clear()
        self.tools.clear()
