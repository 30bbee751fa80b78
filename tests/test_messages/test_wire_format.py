from converse_agent.messages import (
    Message,
    RedactedBlock,
    ReasoningBlock,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    Usage,
    block_to_wire,
    find_orphan_tool_use_ids,
    message_from_wire,
    message_to_wire,
    prune_orphan_tool_uses,
)


def test_tool_result_content_shape_depends_on_type():
    assert block_to_wire(ToolResultBlock("t1", "plain")) == {
        "toolResult": {"toolUseId": "t1", "content": [{"text": "plain"}], "status": "success"}
    }
    assert block_to_wire(ToolResultBlock("t2", {"rows": 3}, status="error")) == {
        "toolResult": {"toolUseId": "t2", "content": [{"json": {"rows": 3}}], "status": "error"}
    }


def test_request_wire_omits_id_and_metadata():
    message = Message.assistant_text("hi", stop_reason="end_turn")
    assert message_to_wire(message) == {"role": "assistant", "content": [{"text": "hi"}]}


def test_stored_wire_keeps_usage_and_reasoning():
    message = Message(
        role="assistant",
        content=(ReasoningBlock("hmm", "sig"), RedactedBlock(b"\xff\x00"), TextBlock("answer")),
        metadata={"usage": Usage(input_tokens=3, output_tokens=2, total_tokens=5)},
    )

    wire = message_to_wire(message, include_meta=True)
    assert wire["metadata"]["usage"]["inputTokens"] == 3

    restored = message_from_wire(wire)
    assert restored == message


def test_orphan_tool_uses_are_found_and_pruned():
    answered = Message(role="assistant", content=(ToolUseBlock("a", "x", {}),))
    result = Message(role="user", content=(ToolResultBlock("a", "ok"),))
    dangling = Message(role="assistant", content=(TextBlock("calling"), ToolUseBlock("b", "y", {})))
    history = [Message.user_text("go"), answered, result, dangling]

    assert find_orphan_tool_use_ids(history) == {"b"}
    kept, removed = prune_orphan_tool_uses(history)
    assert removed == [dangling]
    assert kept == history[:3]
