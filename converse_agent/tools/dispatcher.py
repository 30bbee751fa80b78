"""Execute one assistant turn's tool calls and build ordered ToolResult blocks."""

import asyncio
import json
from typing import Any, Callable, Protocol, Sequence

from converse_agent.channel import (
    ConversationEvent,
    ToolExecutionStarted,
    ToolResultReady,
)
from converse_agent.exceptions import GuardrailCheckError
from converse_agent.logging import get_logger
from converse_agent.messages import (
    STATUS_ERROR,
    STATUS_SUCCESS,
    ToolResultBlock,
    ToolUseBlock,
)
from converse_agent.tools.guardrail import GuardrailChecker, run_check

log = get_logger(__name__)


class ToolExecutor(Protocol):
    async def execute(self, name: str, input: Any) -> Any: ...


def outcome_to_text(content: Any) -> str:
    """Flatten a tool outcome to text for guardrail evaluation."""
    if isinstance(content, str):
        return content
    try:
        return json.dumps(content, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(content)


class ToolDispatcher:
    """Run tool calls concurrently; results keep the input order.

    A failing tool becomes an ``error`` ToolResult and never aborts its
    siblings. With guardrails enabled every successful output is checked and
    an intervention replaces the content with the remediation text.
    """

    def __init__(
        self,
        executor: ToolExecutor,
        guardrail: GuardrailChecker | None = None,
        guardrails_enabled: bool = False,
        publish: Callable[[ConversationEvent], None] | None = None,
    ):
        self.executor = executor
        self.guardrail = guardrail
        self.guardrails_enabled = guardrails_enabled and guardrail is not None
        self._publish = publish

    def _emit(self, event: ConversationEvent) -> None:
        if self._publish is not None:
            self._publish(event)

    async def dispatch(self, tool_uses: Sequence[ToolUseBlock]) -> list[ToolResultBlock]:
        if not tool_uses:
            return []
        return list(await asyncio.gather(*(self._run_one(tool_use) for tool_use in tool_uses)))

    async def _run_one(self, tool_use: ToolUseBlock) -> ToolResultBlock:
        self._emit(
            ToolExecutionStarted(
                tool_use_id=tool_use.tool_use_id,
                name=tool_use.name,
                input=tool_use.input,
            )
        )
        try:
            content = await self.executor.execute(tool_use.name, tool_use.input)
            result = ToolResultBlock(
                tool_use_id=tool_use.tool_use_id,
                content=content,
                status=STATUS_SUCCESS,
            )
        except Exception as e:
            log.error("Tool execution failed", tool=tool_use.name, call_id=tool_use.tool_use_id, error=str(e))
            result = ToolResultBlock(
                tool_use_id=tool_use.tool_use_id,
                content=str(e) or type(e).__name__,
                status=STATUS_ERROR,
            )

        if result.status == STATUS_SUCCESS and self.guardrails_enabled:
            result = await self._apply_guardrail(tool_use, result)

        self._emit(ToolResultReady(name=tool_use.name, result=result))
        return result

    async def _apply_guardrail(self, tool_use: ToolUseBlock, result: ToolResultBlock) -> ToolResultBlock:
        try:
            decision = await run_check(self.guardrail, "OUTPUT", outcome_to_text(result.content))
        except GuardrailCheckError as e:
            # Keep the unredacted output when the checker itself fails.
            log.warning("Guardrail check failed; keeping tool output", tool=tool_use.name, error=str(e), exc_info=True)
            return result

        if not decision.intervened:
            return result

        log.warning("Guardrail intervened for tool result", tool=tool_use.name, call_id=tool_use.tool_use_id)
        return ToolResultBlock(
            tool_use_id=result.tool_use_id,
            content=decision.remediation or "Tool result blocked by guardrail.",
            status=STATUS_ERROR,
        )
