"""Conversation data model: messages and the content-block union.

Blocks are immutable; patching a message (usage, cost) yields a new instance
so snapshots handed to subscribers never change underneath them.
"""

import base64
import json
import secrets
import time
from dataclasses import dataclass, field, replace
from typing import Any, Literal, Union

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"

STATUS_SUCCESS = "success"
STATUS_ERROR = "error"

Role = Literal["user", "assistant"]
ToolResultStatus = Literal["success", "error"]


def generate_message_id() -> str:
    """Return a sortable, collision-resistant message id."""
    return f"msg_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


@dataclass(frozen=True)
class TextBlock:
    text: str
    kind: Literal["text"] = field(default="text", init=False)


@dataclass(frozen=True)
class ToolUseBlock:
    tool_use_id: str
    name: str
    # Parsed JSON arguments, or the raw fragment string when parsing failed.
    input: Any = None
    kind: Literal["tool_use"] = field(default="tool_use", init=False)


@dataclass(frozen=True)
class ToolResultBlock:
    tool_use_id: str
    content: Any
    status: ToolResultStatus = STATUS_SUCCESS
    kind: Literal["tool_result"] = field(default="tool_result", init=False)


@dataclass(frozen=True)
class ReasoningBlock:
    text: str
    signature: str = ""
    kind: Literal["reasoning"] = field(default="reasoning", init=False)


@dataclass(frozen=True)
class RedactedBlock:
    opaque: bytes
    kind: Literal["redacted"] = field(default="redacted", init=False)


@dataclass(frozen=True)
class CachePointBlock:
    kind: Literal["cache_point"] = field(default="cache_point", init=False)


ContentBlock = Union[
    TextBlock,
    ToolUseBlock,
    ToolResultBlock,
    ReasoningBlock,
    RedactedBlock,
    CachePointBlock,
]


@dataclass(frozen=True)
class Usage:
    """Token usage reported by the provider for one model response."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    cache_read_input_tokens: int = 0
    cache_write_input_tokens: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "Usage":
        data = data or {}
        input_tokens = int(data.get("inputTokens", data.get("input_tokens", 0)) or 0)
        output_tokens = int(data.get("outputTokens", data.get("output_tokens", 0)) or 0)
        return cls(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=int(
                data.get("totalTokens", data.get("total_tokens", input_tokens + output_tokens)) or 0
            ),
            cache_read_input_tokens=int(
                data.get("cacheReadInputTokens", data.get("cache_read_input_tokens", 0)) or 0
            ),
            cache_write_input_tokens=int(
                data.get("cacheWriteInputTokens", data.get("cache_write_input_tokens", 0)) or 0
            ),
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "totalTokens": self.total_tokens,
            "cacheReadInputTokens": self.cache_read_input_tokens,
            "cacheWriteInputTokens": self.cache_write_input_tokens,
        }


@dataclass(frozen=True)
class Message:
    """A message in the conversation."""

    role: Role
    content: tuple[ContentBlock, ...] = ()
    id: str = field(default_factory=generate_message_id)
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def user_text(cls, text: str) -> "Message":
        return cls(role=ROLE_USER, content=(TextBlock(text),))

    @classmethod
    def assistant_text(cls, text: str, **metadata: Any) -> "Message":
        return cls(role=ROLE_ASSISTANT, content=(TextBlock(text),), metadata=dict(metadata))

    @property
    def text(self) -> str:
        """Concatenated text of all text blocks."""
        return "".join(block.text for block in self.content if isinstance(block, TextBlock))

    @property
    def tool_uses(self) -> list[ToolUseBlock]:
        return [block for block in self.content if isinstance(block, ToolUseBlock)]

    @property
    def tool_results(self) -> list[ToolResultBlock]:
        return [block for block in self.content if isinstance(block, ToolResultBlock)]

    @property
    def usage(self) -> Usage | None:
        raw = self.metadata.get("usage")
        if isinstance(raw, Usage):
            return raw
        if isinstance(raw, dict):
            return Usage.from_dict(raw)
        return None

    @property
    def cost(self) -> float | None:
        return self.metadata.get("cost")

    @property
    def is_error(self) -> bool:
        return bool(self.metadata.get("error"))

    def with_metadata(self, **patch: Any) -> "Message":
        """Return a copy with metadata keys merged in."""
        return replace(self, metadata={**self.metadata, **patch})

    def with_content(self, content: tuple[ContentBlock, ...]) -> "Message":
        return replace(self, content=tuple(content))


# ---------------------------------------------------------------------------
# Wire conversion (Converse-style camelCase dicts)
# ---------------------------------------------------------------------------


def block_to_wire(block: ContentBlock) -> dict[str, Any]:
    """Convert a content block into its wire dict."""
    if isinstance(block, TextBlock):
        return {"text": block.text}
    if isinstance(block, ToolUseBlock):
        return {
            "toolUse": {
                "toolUseId": block.tool_use_id,
                "name": block.name,
                "input": block.input,
            }
        }
    if isinstance(block, ToolResultBlock):
        if isinstance(block.content, str):
            payload: list[dict[str, Any]] = [{"text": block.content}]
        else:
            payload = [{"json": block.content}]
        return {
            "toolResult": {
                "toolUseId": block.tool_use_id,
                "content": payload,
                "status": block.status,
            }
        }
    if isinstance(block, ReasoningBlock):
        return {
            "reasoningContent": {
                "reasoningText": {"text": block.text, "signature": block.signature}
            }
        }
    if isinstance(block, RedactedBlock):
        return {
            "reasoningContent": {
                "redactedContent": base64.b64encode(block.opaque).decode("ascii")
            }
        }
    if isinstance(block, CachePointBlock):
        return {"cachePoint": {"type": "default"}}
    raise TypeError(f"Unsupported content block: {type(block)!r}")


def _decode_redacted(value: Any) -> bytes:
    if isinstance(value, bytes):
        return value
    try:
        return base64.b64decode(str(value), validate=True)
    except ValueError:
        return str(value).encode("utf-8")


def block_from_wire(data: dict[str, Any]) -> ContentBlock:
    """Convert a wire dict into a content block."""
    if "text" in data:
        return TextBlock(str(data["text"]))
    if "toolUse" in data:
        raw = data["toolUse"] or {}
        return ToolUseBlock(
            tool_use_id=str(raw.get("toolUseId", "")),
            name=str(raw.get("name", "")),
            input=raw.get("input"),
        )
    if "toolResult" in data:
        raw = data["toolResult"] or {}
        parts = raw.get("content") or []
        content: Any = ""
        if len(parts) == 1 and isinstance(parts[0], dict):
            part = parts[0]
            content = part["json"] if "json" in part else part.get("text", "")
        elif parts:
            content = "\n".join(
                str(p.get("text", "")) if "text" in p else json.dumps(p.get("json"))
                for p in parts
                if isinstance(p, dict)
            )
        return ToolResultBlock(
            tool_use_id=str(raw.get("toolUseId", "")),
            content=content,
            status=STATUS_ERROR if raw.get("status") == STATUS_ERROR else STATUS_SUCCESS,
        )
    if "reasoningContent" in data:
        raw = data["reasoningContent"] or {}
        if "redactedContent" in raw:
            return RedactedBlock(_decode_redacted(raw["redactedContent"]))
        reasoning = raw.get("reasoningText") or {}
        return ReasoningBlock(
            text=str(reasoning.get("text", "")),
            signature=str(reasoning.get("signature", "") or ""),
        )
    if "cachePoint" in data:
        return CachePointBlock()
    raise ValueError(f"Unknown content block keys: {sorted(data)}")


def metadata_to_wire(metadata: dict[str, Any]) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for key, value in metadata.items():
        result[key] = value.to_dict() if isinstance(value, Usage) else value
    return result


def message_to_wire(message: Message, include_meta: bool = False) -> dict[str, Any]:
    """Convert a message into its wire dict.

    Model requests only carry ``role`` and ``content``; persistence also keeps
    the id and metadata.
    """
    payload: dict[str, Any] = {
        "role": message.role,
        "content": [block_to_wire(block) for block in message.content],
    }
    if include_meta:
        payload["id"] = message.id
        payload["metadata"] = metadata_to_wire(message.metadata)
    return payload


def message_from_wire(data: dict[str, Any]) -> Message:
    """Rebuild a message from its wire dict."""
    role = data.get("role")
    if role not in (ROLE_USER, ROLE_ASSISTANT):
        raise ValueError(f"Invalid message role: {role!r}")
    metadata = dict(data.get("metadata") or {})
    if isinstance(metadata.get("usage"), dict):
        metadata["usage"] = Usage.from_dict(metadata["usage"])
    return Message(
        role=role,
        content=tuple(block_from_wire(block) for block in data.get("content") or []),
        id=str(data.get("id") or generate_message_id()),
        metadata=metadata,
    )


def find_orphan_tool_use_ids(messages: list[Message]) -> set[str]:
    """Return ToolUse ids that have no matching ToolResult anywhere in history."""
    used: set[str] = set()
    answered: set[str] = set()
    for message in messages:
        for block in message.content:
            if isinstance(block, ToolUseBlock) and block.tool_use_id:
                used.add(block.tool_use_id)
            elif isinstance(block, ToolResultBlock) and block.tool_use_id:
                answered.add(block.tool_use_id)
    return used - answered


def prune_orphan_tool_uses(messages: list[Message]) -> tuple[list[Message], list[Message]]:
    """Drop assistant messages holding unanswered ToolUse blocks.

    Returns ``(kept, removed)``.
    """
    orphans = find_orphan_tool_use_ids(messages)
    if not orphans:
        return list(messages), []
    kept: list[Message] = []
    removed: list[Message] = []
    for message in messages:
        if any(block.tool_use_id in orphans for block in message.tool_uses):
            removed.append(message)
        else:
            kept.append(message)
    return kept, removed
