"""Agent Runner - sandboxed execution core for a conversational agent."""

__version__ = "0.1.0"

from agent_runner.config import Config, ConfigSource
from agent_runner.session import SessionStore
from agent_runner.tool_loop import ToolLoopController

__all__ = ["Config", "ConfigSource", "SessionStore", "ToolLoopController", "__version__"]
