import asyncio

import pytest

from converse_agent.exceptions import ToolExecutionError, ToolNotFoundError
from converse_agent.tools.registry import Tool, ToolOutcome, ToolRegistry


class EchoTool(Tool):
    name = "echo"
    description = "Echo text back"
    parameters = {
        "type": "object",
        "properties": {"text": {"type": "string"}},
        "required": ["text"],
    }

    async def execute(self, **kwargs):
        return ToolOutcome(success=True, content={"echo": kwargs["text"]})


class FailingTool(Tool):
    name = "failing"
    description = "Always reports failure"

    async def execute(self, **kwargs):
        return ToolOutcome(success=False, content="disk full")


class SlowTool(Tool):
    name = "slow"
    description = "Slow"
    timeout_seconds = 1.0

    async def execute(self, **kwargs):
        await asyncio.sleep(2.0)
        return ToolOutcome(success=True, content="done")


def test_tool_specs_use_converse_shape_and_enabled_filter():
    registry = ToolRegistry()
    registry.register(EchoTool())
    registry.register(FailingTool())

    specs = registry.get_tool_specs()
    assert [spec["toolSpec"]["name"] for spec in specs] == ["echo", "failing"]
    assert specs[0]["toolSpec"]["inputSchema"]["json"]["required"] == ["text"]
    assert specs[1]["toolSpec"]["inputSchema"]["json"] == {"type": "object", "properties": {}}

    assert registry.list_tools(enabled=["ECHO"]) == ["echo"]


def test_failed_outcome_always_has_error_message():
    outcome = ToolOutcome(success=False, content="  boom  ")
    assert outcome.error == "boom"
    assert ToolOutcome(success=False).error == "Tool execution failed"


@pytest.mark.asyncio
async def test_execute_returns_outcome_content():
    registry = ToolRegistry()
    registry.register(EchoTool())

    assert await registry.execute("echo", {"text": "hi"}) == {"echo": "hi"}


@pytest.mark.asyncio
async def test_execute_unknown_tool_raises():
    registry = ToolRegistry()
    with pytest.raises(ToolNotFoundError, match="Tool not found: missing"):
        await registry.execute("missing", {})


@pytest.mark.asyncio
async def test_execute_validates_required_arguments():
    registry = ToolRegistry()
    registry.register(EchoTool())
    with pytest.raises(ToolExecutionError, match="Missing required argument: text"):
        await registry.execute("echo", {})


@pytest.mark.asyncio
async def test_execute_rejects_unparsed_input_string():
    registry = ToolRegistry()
    registry.register(EchoTool())
    with pytest.raises(ToolExecutionError, match="not a JSON object"):
        await registry.execute("echo", '{"text": ')


@pytest.mark.asyncio
async def test_failed_outcome_raises_tool_execution_error():
    registry = ToolRegistry()
    registry.register(FailingTool())
    with pytest.raises(ToolExecutionError, match="disk full"):
        await registry.execute("failing", {})


@pytest.mark.asyncio
async def test_execute_enforces_timeout():
    registry = ToolRegistry()
    registry.register(SlowTool())
    with pytest.raises(ToolExecutionError, match="Execution timed out after 1s"):
        await registry.execute("slow", {})


class UntimedSlowTool(Tool):
    name = "untimed_slow"
    description = "Slow, without its own timeout"

    async def execute(self, **kwargs):
        await asyncio.sleep(2.0)
        return ToolOutcome(success=True, content="done")


@pytest.mark.asyncio
async def test_registry_default_timeout_applies_when_tool_sets_none():
    registry = ToolRegistry(default_timeout=1.0)
    registry.register(UntimedSlowTool())
    with pytest.raises(ToolExecutionError, match="Execution timed out after 1s"):
        await registry.execute("untimed_slow", {})


@pytest.mark.asyncio
async def test_tool_timeout_overrides_registry_default():
    registry = ToolRegistry(default_timeout=60.0)
    registry.register(SlowTool())
    with pytest.raises(ToolExecutionError, match="Execution timed out after 1s"):
        await registry.execute("slow", {})
