"""Tool registry and base tool class."""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Iterable

from pydantic import BaseModel, model_validator

from converse_agent.exceptions import ToolExecutionError, ToolNotFoundError
from converse_agent.logging import get_logger

log = get_logger(__name__)


def _normalize_tool_name(value: str) -> str:
    """Normalize tool names for enabled-list comparisons."""
    return str(value or "").strip().lower()


class ToolOutcome(BaseModel):
    """Outcome of one tool execution."""

    success: bool = True
    content: Any = ""
    error: str | None = None

    @model_validator(mode="after")
    def _normalize_failure_error(self) -> "ToolOutcome":
        """Ensure failed outcomes always provide an error message."""
        if not self.success and not (self.error or "").strip():
            fallback = self.content.strip() if isinstance(self.content, str) else ""
            self.error = fallback or "Tool execution failed"
        return self


class Tool(ABC):
    """Base class for all tools."""

    name: str = ""
    description: str = ""
    parameters: dict[str, Any] = {}
    timeout_seconds: float | None = None

    @abstractmethod
    async def execute(self, **kwargs: Any) -> ToolOutcome:
        """Execute the tool.

        Args:
            **kwargs: Tool-specific arguments

        Returns:
            ToolOutcome with success status and content
        """
        pass

    def get_tool_spec(self) -> dict[str, Any]:
        """Get the Converse-style tool spec for the model."""
        return {
            "toolSpec": {
                "name": self.name,
                "description": self.description,
                "inputSchema": {"json": self.parameters or {"type": "object", "properties": {}}},
            }
        }

    def validate_arguments(self, arguments: dict[str, Any]) -> None:
        """Validate required arguments against the schema.

        Raises:
            ToolExecutionError if a required argument is missing
        """
        required = (self.parameters or {}).get("required", [])
        for field in required:
            if field not in arguments:
                raise ToolExecutionError(
                    self.name,
                    f"Missing required argument: {field}",
                )


class ToolRegistry:
    """Registry of available tools; the default ToolExecutor."""

    def __init__(self, default_timeout: float | None = None):
        self._tools: dict[str, Tool] = {}
        self._default_timeout = default_timeout

    def register(self, tool: Tool) -> None:
        """Register a tool.

        Args:
            tool: Tool instance to register
        """
        if not tool.name:
            raise ValueError("Tool must have a name")

        log.debug("Registering tool", tool=tool.name)
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def has_tool(self, name: str) -> bool:
        return name in self._tools

    def get(self, name: str) -> Tool:
        """Get a tool by name.

        Raises:
            ToolNotFoundError if not found
        """
        if name not in self._tools:
            raise ToolNotFoundError(name)
        return self._tools[name]

    def _resolve_tools(self, enabled: Iterable[str] | None = None) -> list[Tool]:
        tools = list(self._tools.values())
        if not enabled:
            return tools
        allowed = {_normalize_tool_name(item) for item in enabled if _normalize_tool_name(item)}
        return [tool for tool in tools if _normalize_tool_name(tool.name) in allowed]

    def list_tools(self, enabled: Iterable[str] | None = None) -> list[str]:
        """List registered tool names, optionally filtered by an enabled list."""
        return [tool.name for tool in self._resolve_tools(enabled)]

    def get_tool_specs(self, enabled: Iterable[str] | None = None) -> list[dict[str, Any]]:
        """Tool specs for the model request."""
        return [tool.get_tool_spec() for tool in self._resolve_tools(enabled)]

    @staticmethod
    async def _cancel_task(task: asyncio.Task[Any] | None) -> None:
        """Cancel task and await it to avoid pending task warnings."""
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def execute(self, name: str, input: Any) -> Any:
        """Execute a tool by name and return its outcome content.

        Raises:
            ToolNotFoundError if tool not found
            ToolExecutionError if execution fails, times out or reports failure
        """
        tool = self.get(name)

        if isinstance(input, dict):
            arguments = input
        elif input is None:
            arguments = {}
        else:
            # Unparseable model arguments arrive as the raw fragment string.
            raise ToolExecutionError(name, f"Tool input is not a JSON object: {str(input)[:200]}")

        tool.validate_arguments(arguments)

        timeout_seconds = float(tool.timeout_seconds or self._default_timeout or 30.0)
        timeout_seconds = max(1.0, timeout_seconds)

        execute_task: asyncio.Task[ToolOutcome] | None = None
        try:
            log.info("Executing tool", tool=name, args=arguments)
            execute_task = asyncio.create_task(tool.execute(**arguments))
            done, _ = await asyncio.wait({execute_task}, timeout=timeout_seconds)

            if execute_task not in done:
                await self._cancel_task(execute_task)
                timeout_label = int(timeout_seconds) if timeout_seconds.is_integer() else timeout_seconds
                raise ToolExecutionError(name, f"Execution timed out after {timeout_label}s")

            outcome = execute_task.result()
        except asyncio.CancelledError:
            await self._cancel_task(execute_task)
            raise
        except ToolExecutionError:
            raise
        except Exception as e:
            log.error("Tool execution failed", tool=name, error=str(e))
            raise ToolExecutionError(name, str(e))

        if not isinstance(outcome, ToolOutcome):
            raise ToolExecutionError(name, "Tool returned invalid outcome payload")
        log.info("Tool executed", tool=name, success=outcome.success)
        if not outcome.success:
            raise ToolExecutionError(name, outcome.error or "Tool execution failed")
        return outcome.content
