"""Tool execution for converse-agent."""

from converse_agent.tools.dispatcher import ToolDispatcher, ToolExecutor
from converse_agent.tools.guardrail import (
    GuardrailChecker,
    GuardrailDecision,
    PatternGuardrailChecker,
)
from converse_agent.tools.registry import Tool, ToolOutcome, ToolRegistry

__all__ = [
    "GuardrailChecker",
    "GuardrailDecision",
    "PatternGuardrailChecker",
    "Tool",
    "ToolDispatcher",
    "ToolExecutor",
    "ToolOutcome",
    "ToolRegistry",
]
