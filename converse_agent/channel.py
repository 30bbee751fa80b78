"""Typed event channel the orchestrator publishes to.

Consumers (CLI printer, UI adapters, tests) subscribe independently; a failing
subscriber is logged and never breaks the conversation loop.
"""

from dataclasses import dataclass
from typing import Any, Callable, Union

from converse_agent.logging import get_logger
from converse_agent.messages import Message, ToolResultBlock, Usage

log = get_logger(__name__)


@dataclass(frozen=True)
class TextDelta:
    text: str
    # Accumulated text of the current block, for consumers that redraw.
    snapshot: str


@dataclass(frozen=True)
class ReasoningDelta:
    text: str
    snapshot: str


@dataclass(frozen=True)
class ToolUseStarted:
    tool_use_id: str
    name: str


@dataclass(frozen=True)
class MessageAppended:
    message: Message


@dataclass(frozen=True)
class MessageUpdated:
    message: Message


@dataclass(frozen=True)
class MessagesRemoved:
    message_ids: tuple[str, ...]


@dataclass(frozen=True)
class ToolExecutionStarted:
    tool_use_id: str
    name: str
    input: Any


@dataclass(frozen=True)
class ToolResultReady:
    name: str
    result: ToolResultBlock


@dataclass(frozen=True)
class UsageReported:
    message_id: str
    usage: Usage
    cost: float | None


@dataclass(frozen=True)
class StatusChanged:
    previous: str
    current: str


@dataclass(frozen=True)
class TurnFailed:
    error: str
    error_type: str


ConversationEvent = Union[
    TextDelta,
    ReasoningDelta,
    ToolUseStarted,
    MessageAppended,
    MessageUpdated,
    MessagesRemoved,
    ToolExecutionStarted,
    ToolResultReady,
    UsageReported,
    StatusChanged,
    TurnFailed,
]

Subscriber = Callable[[ConversationEvent], None]


class EventChannel:
    """Fan-out of conversation events to independent subscribers."""

    def __init__(self):
        self._subscribers: list[Subscriber] = []

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        """Register a subscriber; returns a callable that unsubscribes it."""
        self._subscribers.append(subscriber)

        def _unsubscribe() -> None:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

        return _unsubscribe

    def publish(self, event: ConversationEvent) -> None:
        for subscriber in list(self._subscribers):
            try:
                subscriber(event)
            except Exception as e:
                log.warning(
                    "Event subscriber failed",
                    event=type(event).__name__,
                    error=str(e),
                )

    def __len__(self) -> int:
        return len(self._subscribers)
