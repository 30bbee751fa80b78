"""Incremental assembly of streamed model events into finalized messages."""

import json
from dataclasses import dataclass
from typing import Callable

from converse_agent.channel import (
    ConversationEvent,
    ReasoningDelta,
    TextDelta,
    ToolUseStarted,
)
from converse_agent.exceptions import ProtocolError
from converse_agent.logging import get_logger
from converse_agent.messages import (
    ROLE_ASSISTANT,
    ROLE_USER,
    ContentBlock,
    Message,
    ReasoningBlock,
    RedactedBlock,
    TextBlock,
    ToolUseBlock,
    Usage,
)
from converse_agent.stream_events import (
    STOP_END_TURN,
    ContentBlockDelta,
    ContentBlockStart,
    ContentBlockStop,
    MessageStart,
    MessageStop,
    Metadata,
    StreamEvent,
    ToolUseStart,
)

log = get_logger(__name__)


@dataclass(frozen=True)
class FinalizedMessage:
    """A message closed by ``messageStop``."""

    message: Message
    stop_reason: str


@dataclass(frozen=True)
class UsageUpdate:
    """Usage that belongs to an already finalized message."""

    message_id: str
    usage: Usage
    latency_ms: int | None = None


AssemblyResult = FinalizedMessage | UsageUpdate


def parse_tool_input(raw: str) -> object:
    """Parse concatenated tool-input fragments, keeping the raw text on failure."""
    if not raw.strip():
        return {}
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        log.warning("Tool input is not valid JSON; keeping raw string", size=len(raw))
        return raw


class StreamEventAssembler:
    """Consume stream events one at a time and build typed content blocks.

    ``feed`` returns a :class:`FinalizedMessage` at ``messageStop``, a
    :class:`UsageUpdate` when metadata arrives for a finalized message, and
    ``None`` otherwise. Live deltas go to ``publish``.
    """

    def __init__(self, publish: Callable[[ConversationEvent], None] | None = None):
        self._publish = publish
        self._started = False
        self._role = ROLE_ASSISTANT
        self._content: list[ContentBlock] = []
        self._last_message_id: str | None = None
        self._pending_usage: Usage | None = None
        self._reset_block()

    def _reset_block(self) -> None:
        self._text = ""
        self._reasoning_text = ""
        self._reasoning_signature = ""
        self._redacted: bytes | None = None
        self._tool_use: ToolUseStart | None = None
        self._tool_input = ""

    def _emit(self, event: ConversationEvent) -> None:
        if self._publish is not None:
            self._publish(event)

    @property
    def started(self) -> bool:
        return self._started

    @property
    def last_message_id(self) -> str | None:
        return self._last_message_id

    def _block_has_data(self) -> bool:
        return bool(
            self._tool_use
            or self._text
            or self._reasoning_text
            or self._reasoning_signature
            or self._redacted is not None
        )

    def feed(self, event: StreamEvent) -> AssemblyResult | None:
        if isinstance(event, MessageStart):
            self._on_message_start(event)
            return None
        if isinstance(event, ContentBlockStart):
            self._on_block_start(event)
            return None
        if isinstance(event, ContentBlockDelta):
            self._on_block_delta(event)
            return None
        if isinstance(event, ContentBlockStop):
            self._close_block()
            return None
        if isinstance(event, MessageStop):
            return self._on_message_stop(event)
        if isinstance(event, Metadata):
            return self._on_metadata(event)
        raise ProtocolError(f"Unsupported stream event: {type(event).__name__}")

    def _on_message_start(self, event: MessageStart) -> None:
        if self._started:
            log.warning("messageStart while a message is open; discarding partial content")
        role = event.role if event.role in (ROLE_USER, ROLE_ASSISTANT) else ROLE_ASSISTANT
        self._started = True
        self._role = role
        self._content = []
        self._reset_block()

    def _on_block_start(self, event: ContentBlockStart) -> None:
        if self._block_has_data():
            # Missing contentBlockStop; close implicitly to keep generation order.
            self._close_block()
        if event.tool_use is not None:
            self._tool_use = event.tool_use
            self._emit(ToolUseStarted(tool_use_id=event.tool_use.tool_use_id, name=event.tool_use.name))

    def _on_block_delta(self, event: ContentBlockDelta) -> None:
        if event.text:
            self._text += event.text
            self._emit(TextDelta(text=event.text, snapshot=self._text))

        reasoning = event.reasoning
        if reasoning is not None:
            if reasoning.redacted is not None:
                self._redacted = reasoning.redacted
            if reasoning.text:
                self._reasoning_text += reasoning.text
                self._emit(ReasoningDelta(text=reasoning.text, snapshot=self._reasoning_text))
            if reasoning.signature:
                self._reasoning_signature = reasoning.signature

        if event.tool_use_input is not None:
            if self._tool_use is None:
                log.warning("Tool input fragment outside a tool-use block; ignoring")
            else:
                self._tool_input += event.tool_use_input

    def _close_block(self) -> None:
        if self._tool_use is not None:
            self._content.append(
                ToolUseBlock(
                    tool_use_id=self._tool_use.tool_use_id,
                    name=self._tool_use.name,
                    input=parse_tool_input(self._tool_input),
                )
            )
            self._reset_block()
            return

        if self._redacted is not None:
            if self._reasoning_text:
                log.warning("Block carried both reasoning text and redacted content; keeping redacted")
            self._content.append(RedactedBlock(self._redacted))
        elif self._reasoning_text or self._reasoning_signature:
            self._content.append(
                ReasoningBlock(text=self._reasoning_text, signature=self._reasoning_signature)
            )
        if self._text:
            self._content.append(TextBlock(self._text))
        self._reset_block()

    def _on_message_stop(self, event: MessageStop) -> FinalizedMessage:
        if not self._started:
            raise ProtocolError("messageStop received without messageStart")
        if self._block_has_data():
            self._close_block()

        metadata = {}
        if self._pending_usage is not None and self._role == ROLE_ASSISTANT:
            metadata["usage"] = self._pending_usage
            self._pending_usage = None

        message = Message(role=self._role, content=tuple(self._content), metadata=metadata)
        if message.role == ROLE_ASSISTANT:
            self._last_message_id = message.id

        self._started = False
        self._content = []
        self._reset_block()
        return FinalizedMessage(message=message, stop_reason=event.stop_reason or STOP_END_TURN)

    def _on_metadata(self, event: Metadata) -> UsageUpdate | None:
        if event.usage is None:
            return None
        if self._last_message_id is None:
            # Arrived before any message finalized; attach at messageStop.
            self._pending_usage = event.usage
            return None
        return UsageUpdate(
            message_id=self._last_message_id,
            usage=event.usage,
            latency_ms=event.latency_ms,
        )
