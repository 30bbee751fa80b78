import pytest

from converse_agent.context_window import (
    CACHE_POINT_WIRE,
    ContextWindowManager,
    apply_system_cache,
    apply_tool_cache,
    fit_context,
    strip_cache_points,
    trim_history,
)
from converse_agent.exceptions import ContextOverflowError
from converse_agent.messages import (
    CachePointBlock,
    Message,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
)


def _ten(_message):
    return 10


def _conversation(turns: int) -> list[Message]:
    messages: list[Message] = []
    for index in range(turns):
        messages.append(Message.user_text(f"question {index}"))
        messages.append(Message.assistant_text(f"answer {index}"))
    return messages


def _has_cache_point(message: Message) -> bool:
    return any(isinstance(block, CachePointBlock) for block in message.content)


def test_fitting_history_is_returned_unchanged():
    history = _conversation(2)
    window = fit_context(history, token_budget=1000, estimate=_ten)

    assert window.messages == history
    assert window.dropped_messages == 0
    assert window.cache_point_index is None


def test_trim_drops_oldest_whole_messages_within_budget():
    history = _conversation(5)
    window = fit_context(history, token_budget=45, estimate=_ten)

    assert window.messages == history[-4:]
    assert window.estimated_tokens <= 45
    assert window.dropped_messages == 6


def test_trim_is_idempotent():
    history = _conversation(5)
    once = trim_history(history, 45, _ten)
    twice = trim_history(once, 45, _ten)
    assert once == twice


def test_trimmed_window_never_starts_with_tool_result():
    tool_use = Message(role="assistant", content=(ToolUseBlock("t1", "lookup", {}),))
    tool_result = Message(role="user", content=(ToolResultBlock("t1", "ok"),))
    history = [
        Message.user_text("first"),
        tool_use,
        tool_result,
        Message.assistant_text("done"),
        Message.user_text("second"),
        Message.assistant_text("reply"),
    ]

    # Budget cuts between the ToolUse and its ToolResult.
    window = fit_context(history, token_budget=40, estimate=_ten)

    assert window.messages[0].role == "user"
    assert not window.messages[0].tool_results
    assert window.messages == history[4:]


def test_newest_message_alone_over_budget_raises():
    history = [Message.user_text("tiny"), Message.user_text("x" * 4000)]
    with pytest.raises(ContextOverflowError):
        fit_context(history, token_budget=50)


def test_overflow_reports_tail_from_last_clean_user_message():
    history = [
        Message.user_text("go"),
        Message(role="assistant", content=(ToolUseBlock("t1", "lookup", {}),)),
        Message(role="user", content=(ToolResultBlock("t1", "ok"),)),
    ]

    # Each message fits on its own, but the window cannot start at the ToolResult.
    with pytest.raises(ContextOverflowError, match="30 > 25 tokens") as info:
        fit_context(history, token_budget=25, estimate=_ten)

    assert info.value.current_tokens == 30
    assert info.value.max_tokens == 25


def test_cache_point_advances_and_previous_point_keeps_marker():
    history = _conversation(1)[:1]
    first = fit_context(history, 1000, None, caching_enabled=True, estimate=_ten)
    assert first.cache_point_index == 0
    assert _has_cache_point(first.messages[0])

    history = _conversation(2)[:3]
    second = fit_context(history, 1000, first.cache_point_index, caching_enabled=True, estimate=_ten)
    assert second.cache_point_index == 2
    assert _has_cache_point(second.messages[0])
    assert _has_cache_point(second.messages[2])
    assert not _has_cache_point(second.messages[1])

    # Input history is never modified.
    assert not any(_has_cache_point(message) for message in history)


def test_cache_index_discarded_when_trimming_drops_messages():
    history = _conversation(5)
    window = fit_context(history, 45, cache_point_index=2, caching_enabled=True, estimate=_ten)

    marked = [index for index, message in enumerate(window.messages) if _has_cache_point(message)]
    assert marked == [len(window.messages) - 1]
    assert window.cache_point_index == len(window.messages) - 1


def test_no_marker_after_tool_result_when_model_does_not_cache_tools():
    history = [
        Message.user_text("go"),
        Message(role="assistant", content=(ToolUseBlock("t1", "lookup", {}),)),
        Message(role="user", content=(ToolResultBlock("t1", "ok"),)),
    ]
    window = fit_context(
        history,
        1000,
        None,
        caching_enabled=True,
        cacheable_fields=("messages", "system"),
        estimate=_ten,
    )

    assert window.cache_point_index is None
    assert not any(_has_cache_point(message) for message in window.messages)


def test_caching_disabled_adds_no_markers():
    history = _conversation(2)
    window = fit_context(history, 1000, 1, caching_enabled=False, estimate=_ten)
    assert window.cache_point_index is None
    assert window.messages == history


def test_strip_cache_points_removes_markers():
    marked = Message(role="user", content=(TextBlock("hi"), CachePointBlock()))
    (stripped,) = strip_cache_points([marked])
    assert stripped.content == (TextBlock("hi"),)
    assert stripped.id == marked.id


def test_system_and_tool_cache_markers():
    system = [{"text": "be brief"}]
    assert apply_system_cache(system, ("messages", "system")) == [{"text": "be brief"}, CACHE_POINT_WIRE]
    assert apply_system_cache(system, ("messages",)) == system

    tools = {"tools": [{"toolSpec": {"name": "a"}}]}
    assert apply_tool_cache(tools, ("tools",))["tools"][-1] == CACHE_POINT_WIRE
    assert apply_tool_cache(tools, ("messages", "system")) == tools


def test_manager_uses_model_catalog_cacheability():
    cached = ContextWindowManager("us.anthropic.claude-sonnet-4-20250514-v1:0", 200000)
    uncached = ContextWindowManager("anthropic.claude-3-5-sonnet-20240620-v1:0", 200000)
    disabled = ContextWindowManager("us.anthropic.claude-sonnet-4-20250514-v1:0", 200000, prompt_cache=False)

    history = [Message.user_text("hello")]
    assert cached.fit(history).cache_point_index == 0
    assert uncached.fit(history).cache_point_index is None
    assert disabled.fit(history).cache_point_index is None
    assert uncached.prepare_system([{"text": "s"}]) == [{"text": "s"}]


def test_manager_reserves_tokens_from_budget():
    manager = ContextWindowManager("unknown-model", context_length=50, estimate=_ten)
    history = _conversation(2)
    assert len(manager.fit(history).messages) == 4
    assert len(manager.fit(history, reserved_tokens=25).messages) == 2
