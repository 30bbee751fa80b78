"""Typed model-stream events and parsing from Converse-style wire payloads."""

from dataclasses import dataclass
from typing import Any, Union

from converse_agent.exceptions import ProtocolError, TransportError
from converse_agent.messages import Usage

STOP_END_TURN = "end_turn"
STOP_TOOL_USE = "tool_use"
STOP_MAX_TOKENS = "max_tokens"
STOP_SEQUENCE = "stop_sequence"
STOP_GUARDRAIL = "guardrail_intervened"
STOP_CONTENT_FILTERED = "content_filtered"

# Provider exception payloads that may appear in place of an event.
_EXCEPTION_KEYS = (
    "internalServerException",
    "modelStreamErrorException",
    "validationException",
    "throttlingException",
    "serviceUnavailableException",
)


@dataclass(frozen=True)
class ToolUseStart:
    tool_use_id: str
    name: str


@dataclass(frozen=True)
class ReasoningDeltaPayload:
    text: str = ""
    signature: str = ""
    redacted: bytes | None = None


@dataclass(frozen=True)
class MessageStart:
    role: str = "assistant"


@dataclass(frozen=True)
class ContentBlockStart:
    tool_use: ToolUseStart | None = None


@dataclass(frozen=True)
class ContentBlockDelta:
    text: str | None = None
    tool_use_input: str | None = None
    reasoning: ReasoningDeltaPayload | None = None


@dataclass(frozen=True)
class ContentBlockStop:
    pass


@dataclass(frozen=True)
class MessageStop:
    stop_reason: str = STOP_END_TURN


@dataclass(frozen=True)
class Metadata:
    usage: Usage | None = None
    latency_ms: int | None = None


StreamEvent = Union[
    MessageStart,
    ContentBlockStart,
    ContentBlockDelta,
    ContentBlockStop,
    MessageStop,
    Metadata,
]

_EVENT_TYPES = (
    MessageStart,
    ContentBlockStart,
    ContentBlockDelta,
    ContentBlockStop,
    MessageStop,
    Metadata,
)


def _parse_reasoning(raw: dict[str, Any]) -> ReasoningDeltaPayload:
    redacted = raw.get("redactedContent")
    if redacted is not None and not isinstance(redacted, bytes):
        redacted = str(redacted).encode("utf-8")
    return ReasoningDeltaPayload(
        text=str(raw.get("text") or ""),
        signature=str(raw.get("signature") or ""),
        redacted=redacted,
    )


def parse_stream_event(payload: dict[str, Any]) -> StreamEvent:
    """Turn one wire payload into a typed stream event.

    Raises:
        TransportError: the payload carries a provider exception
        ProtocolError: the payload is not a known event
    """
    if not isinstance(payload, dict):
        raise ProtocolError(f"Stream event must be an object, got {type(payload).__name__}")

    for key in _EXCEPTION_KEYS:
        if key in payload:
            detail = payload.get(key) or {}
            message = detail.get("message") if isinstance(detail, dict) else str(detail)
            raise TransportError(f"{key}: {message or 'provider error'}")

    if "messageStart" in payload:
        raw = payload["messageStart"] or {}
        return MessageStart(role=str(raw.get("role") or "assistant"))

    if "contentBlockStart" in payload:
        raw = payload["contentBlockStart"] or {}
        tool_use = (raw.get("start") or {}).get("toolUse")
        if tool_use:
            return ContentBlockStart(
                tool_use=ToolUseStart(
                    tool_use_id=str(tool_use.get("toolUseId") or ""),
                    name=str(tool_use.get("name") or ""),
                )
            )
        return ContentBlockStart()

    if "contentBlockDelta" in payload:
        delta = (payload["contentBlockDelta"] or {}).get("delta") or {}
        tool_use = delta.get("toolUse")
        reasoning = delta.get("reasoningContent")
        return ContentBlockDelta(
            text=delta.get("text"),
            tool_use_input=(tool_use or {}).get("input") if tool_use else None,
            reasoning=_parse_reasoning(reasoning) if reasoning else None,
        )

    if "contentBlockStop" in payload:
        return ContentBlockStop()

    if "messageStop" in payload:
        raw = payload["messageStop"] or {}
        return MessageStop(stop_reason=str(raw.get("stopReason") or STOP_END_TURN))

    if "metadata" in payload:
        raw = payload["metadata"] or {}
        usage = raw.get("usage")
        latency = (raw.get("metrics") or {}).get("latencyMs")
        return Metadata(
            usage=Usage.from_dict(usage) if usage else None,
            latency_ms=int(latency) if latency is not None else None,
        )

    raise ProtocolError(f"Unknown stream event: {sorted(payload)}")


def coerce_stream_event(item: Any) -> StreamEvent:
    """Accept typed events as-is, parse wire dicts."""
    if isinstance(item, _EVENT_TYPES):
        return item
    return parse_stream_event(item)
