"""Context window trimming and prompt-cache point placement."""

import json
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence

from converse_agent.exceptions import ContextOverflowError
from converse_agent.logging import get_logger
from converse_agent.messages import (
    ROLE_USER,
    CachePointBlock,
    Message,
    ReasoningBlock,
    RedactedBlock,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    Usage,
)
from converse_agent.model_catalog import CacheableField, get_cacheable_fields

log = get_logger(__name__)

CACHE_POINT_WIRE = {"cachePoint": {"type": "default"}}
_MESSAGE_OVERHEAD_TOKENS = 3
ALL_CACHEABLE_FIELDS: tuple[CacheableField, ...] = ("messages", "system", "tools")


def estimate_text_tokens(text: str) -> int:
    """Rough token estimate: ~1 token per 4 characters."""
    if not text:
        return 0
    return max(1, len(text) // 4)


def _payload_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(value)


def estimate_message_tokens(message: Message) -> int:
    """Estimate the prompt tokens one message costs."""
    total = _MESSAGE_OVERHEAD_TOKENS
    for block in message.content:
        if isinstance(block, TextBlock):
            total += estimate_text_tokens(block.text)
        elif isinstance(block, ToolUseBlock):
            total += estimate_text_tokens(block.name) + estimate_text_tokens(_payload_text(block.input))
        elif isinstance(block, ToolResultBlock):
            total += estimate_text_tokens(_payload_text(block.content))
        elif isinstance(block, ReasoningBlock):
            total += estimate_text_tokens(block.text)
        elif isinstance(block, RedactedBlock):
            total += max(1, len(block.opaque) // 4)
    return total


def estimate_tokens(
    messages: Sequence[Message],
    estimate: Callable[[Message], int] = estimate_message_tokens,
) -> int:
    return sum(estimate(message) for message in messages)


@dataclass(frozen=True)
class ContextWindow:
    """Messages to send plus the cache-point index to echo back next turn."""

    messages: list[Message]
    cache_point_index: int | None = None
    dropped_messages: int = 0
    estimated_tokens: int = 0
    stats: dict[str, Any] = field(default_factory=dict)


def _is_clean_user_start(message: Message) -> bool:
    return message.role == ROLE_USER and not message.tool_results


def _untrimmable_tail_tokens(messages: Sequence[Message], costs: Sequence[int]) -> int:
    """Tokens from the last clean user message to the end, the smallest valid window."""
    for index in range(len(messages) - 1, -1, -1):
        if _is_clean_user_start(messages[index]):
            return sum(costs[index:])
    return sum(costs)


def trim_history(
    history: Sequence[Message],
    token_budget: int,
    estimate: Callable[[Message], int] = estimate_message_tokens,
) -> list[Message]:
    """Drop whole messages oldest-first until the estimate fits the budget.

    A trimmed window always starts with a user message that carries no tool
    results, so no ToolResult is sent without its ToolUse.

    Raises:
        ContextOverflowError: the tail from the last clean user message does
            not fit
    """
    messages = list(history)
    if not messages:
        return messages

    costs = [estimate(message) for message in messages]
    total = sum(costs)
    if total <= token_budget:
        return messages

    start = 0
    while start < len(messages) and total > token_budget:
        total -= costs[start]
        start += 1

    while start < len(messages) and not _is_clean_user_start(messages[start]):
        total -= costs[start]
        start += 1

    if start >= len(messages):
        raise ContextOverflowError(_untrimmable_tail_tokens(messages, costs), token_budget)
    return messages[start:]


def strip_cache_points(messages: Sequence[Message]) -> list[Message]:
    """Remove cache markers; stored history never keeps them."""
    result: list[Message] = []
    for message in messages:
        if any(isinstance(block, CachePointBlock) for block in message.content):
            message = message.with_content(
                tuple(block for block in message.content if not isinstance(block, CachePointBlock))
            )
        result.append(message)
    return result


def _with_cache_point(message: Message) -> Message:
    if message.content and isinstance(message.content[-1], CachePointBlock):
        return message
    return message.with_content(message.content + (CachePointBlock(),))


def fit_context(
    history: Sequence[Message],
    token_budget: int,
    cache_point_index: int | None = None,
    caching_enabled: bool = False,
    *,
    cacheable_fields: Sequence[CacheableField] = ALL_CACHEABLE_FIELDS,
    estimate: Callable[[Message], int] = estimate_message_tokens,
) -> ContextWindow:
    """Trim ``history`` to ``token_budget`` and place message cache points.

    Pure: the input list is never modified. The returned
    ``cache_point_index`` is meant to be passed back verbatim next turn.
    """
    trimmed = trim_history(history, token_budget, estimate)
    dropped = len(history) - len(trimmed)
    used = estimate_tokens(trimmed, estimate)
    stats = {
        "budget_tokens": token_budget,
        "history_tokens": used,
        "total_messages": len(history),
        "included_messages": len(trimmed),
        "dropped_messages": dropped,
    }
    if dropped:
        log.info(
            "Context window pruned history",
            dropped_messages=dropped,
            included_messages=len(trimmed),
            history_tokens=used,
            budget=token_budget,
        )

    if not caching_enabled or "messages" not in cacheable_fields or not trimmed:
        return ContextWindow(trimmed, None, dropped, used, stats)

    previous = cache_point_index
    # Index positions shift once anything is trimmed; the cached prefix is gone.
    if dropped or previous is None or not 0 <= previous < len(trimmed):
        previous = None

    def _cacheable(index: int) -> bool:
        # Some models reject a cache point right after a tool result.
        return "tools" in cacheable_fields or not trimmed[index].tool_results

    candidate = len(trimmed) - 1
    next_index = previous
    marked = list(trimmed)
    if previous is not None and _cacheable(previous):
        marked[previous] = _with_cache_point(marked[previous])
    if (previous is None or candidate > previous) and _cacheable(candidate):
        marked[candidate] = _with_cache_point(marked[candidate])
        next_index = candidate

    stats["cache_point_index"] = next_index
    return ContextWindow(marked, next_index, dropped, used, stats)


def apply_system_cache(
    system: list[dict[str, Any]] | None,
    cacheable_fields: Sequence[CacheableField],
) -> list[dict[str, Any]] | None:
    """Append one cache point to the system prompt when the model caches it."""
    if not system or "system" not in cacheable_fields:
        return system
    if CACHE_POINT_WIRE in system:
        return system
    return [*system, dict(CACHE_POINT_WIRE)]


def apply_tool_cache(
    tool_config: dict[str, Any] | None,
    cacheable_fields: Sequence[CacheableField],
) -> dict[str, Any] | None:
    """Append one cache point to the tool list when the model caches tools."""
    if not tool_config or "tools" not in cacheable_fields:
        return tool_config
    tools = list(tool_config.get("tools") or [])
    if not tools or CACHE_POINT_WIRE in tools:
        return tool_config
    return {**tool_config, "tools": [*tools, dict(CACHE_POINT_WIRE)]}


def log_cache_usage(usage: Usage, model_id: str) -> None:
    total_input = usage.cache_read_input_tokens + usage.cache_write_input_tokens + usage.input_tokens
    ratio = (usage.cache_read_input_tokens / total_input) if total_input else 0.0
    log.debug(
        "Prompt cache usage",
        model_id=model_id,
        input_tokens=usage.input_tokens,
        output_tokens=usage.output_tokens,
        cache_read_input_tokens=usage.cache_read_input_tokens,
        cache_write_input_tokens=usage.cache_write_input_tokens,
        cache_hit_ratio=round(ratio, 2),
    )


class ContextWindowManager:
    """Per-conversation settings around :func:`fit_context`."""

    def __init__(
        self,
        model_id: str,
        context_length: int,
        prompt_cache: bool = True,
        estimate: Callable[[Message], int] = estimate_message_tokens,
    ):
        self.model_id = model_id
        self.context_length = max(1, int(context_length))
        self.prompt_cache = prompt_cache
        self.estimate = estimate
        self.cacheable_fields: tuple[CacheableField, ...] = get_cacheable_fields(model_id)

    @property
    def caching_enabled(self) -> bool:
        return self.prompt_cache and bool(self.cacheable_fields)

    def fit(
        self,
        history: Sequence[Message],
        cache_point_index: int | None = None,
        reserved_tokens: int = 0,
    ) -> ContextWindow:
        """Fit history into the context length minus ``reserved_tokens``."""
        budget = max(1, self.context_length - max(0, reserved_tokens))
        return fit_context(
            history,
            budget,
            cache_point_index,
            self.caching_enabled,
            cacheable_fields=self.cacheable_fields,
            estimate=self.estimate,
        )

    def prepare_system(self, system: list[dict[str, Any]] | None) -> list[dict[str, Any]] | None:
        if not self.caching_enabled:
            return system
        return apply_system_cache(system, self.cacheable_fields)

    def prepare_tool_config(self, tool_config: dict[str, Any] | None) -> dict[str, Any] | None:
        if not self.caching_enabled:
            return tool_config
        return apply_tool_cache(tool_config, self.cacheable_fields)
