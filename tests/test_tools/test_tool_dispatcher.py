import asyncio

import pytest

from converse_agent.channel import ToolExecutionStarted, ToolResultReady
from converse_agent.messages import ToolUseBlock
from converse_agent.tools.dispatcher import ToolDispatcher
from converse_agent.tools.guardrail import GuardrailDecision


class FakeExecutor:
    def __init__(self, outcomes=None, delays=None):
        self.outcomes = outcomes or {}
        self.delays = delays or {}
        self.calls: list[tuple[str, object]] = []
        self.finished: list[str] = []

    async def execute(self, name, input):
        self.calls.append((name, input))
        await asyncio.sleep(self.delays.get(name, 0))
        outcome = self.outcomes.get(name, f"{name} ok")
        self.finished.append(name)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakeGuardrail:
    def __init__(self, blocked_text=None, fail=False):
        self.blocked_text = blocked_text
        self.fail = fail
        self.checked: list[tuple[str, str]] = []

    async def check(self, direction, text):
        self.checked.append((direction, text))
        if self.fail:
            raise RuntimeError("guardrail service down")
        if self.blocked_text and self.blocked_text in text:
            return GuardrailDecision(intervened=True, remediation="Blocked: contains PII")
        return GuardrailDecision(intervened=False)


def _uses(*names):
    return [ToolUseBlock(tool_use_id=f"id-{name}", name=name, input={"q": name}) for name in names]


@pytest.mark.asyncio
async def test_results_keep_input_order_when_completion_order_differs():
    executor = FakeExecutor(delays={"a": 0.05, "b": 0.0, "c": 0.02})
    dispatcher = ToolDispatcher(executor)

    results = await dispatcher.dispatch(_uses("a", "b", "c"))

    assert [result.tool_use_id for result in results] == ["id-a", "id-b", "id-c"]
    assert [result.content for result in results] == ["a ok", "b ok", "c ok"]
    assert executor.finished == ["b", "c", "a"]


@pytest.mark.asyncio
async def test_failing_tool_becomes_error_result_without_aborting_siblings():
    executor = FakeExecutor(outcomes={"bad": RuntimeError("exploded")})
    dispatcher = ToolDispatcher(executor)

    results = await dispatcher.dispatch(_uses("good", "bad", "other"))

    assert len(results) == 3
    assert results[0].status == "success"
    assert results[1].status == "error"
    assert results[1].content == "exploded"
    assert results[2].status == "success"


@pytest.mark.asyncio
async def test_output_guardrail_replaces_blocked_content():
    executor = FakeExecutor(
        outcomes={
            "lookup_user": {"name": "Ann", "ssn": "123-45-6789"},
            "weather": "sunny",
        }
    )
    guardrail = FakeGuardrail(blocked_text="123-45-6789")
    dispatcher = ToolDispatcher(executor, guardrail=guardrail, guardrails_enabled=True)

    results = await dispatcher.dispatch(_uses("lookup_user", "weather"))

    assert results[0].status == "error"
    assert results[0].content == "Blocked: contains PII"
    assert results[1].status == "success"
    assert results[1].content == "sunny"
    assert [direction for direction, _ in guardrail.checked] == ["OUTPUT", "OUTPUT"]
    assert '"ssn": "123-45-6789"' in guardrail.checked[0][1]


@pytest.mark.asyncio
async def test_guardrail_skips_failed_results():
    executor = FakeExecutor(outcomes={"bad": ValueError("nope")})
    guardrail = FakeGuardrail(blocked_text="nope")
    dispatcher = ToolDispatcher(executor, guardrail=guardrail, guardrails_enabled=True)

    results = await dispatcher.dispatch(_uses("bad"))

    assert results[0].content == "nope"
    assert guardrail.checked == []


@pytest.mark.asyncio
async def test_guardrail_failure_keeps_original_content():
    executor = FakeExecutor(outcomes={"weather": "sunny"})
    dispatcher = ToolDispatcher(executor, guardrail=FakeGuardrail(fail=True), guardrails_enabled=True)

    results = await dispatcher.dispatch(_uses("weather"))

    assert results[0].status == "success"
    assert results[0].content == "sunny"


@pytest.mark.asyncio
async def test_guardrail_not_consulted_when_disabled():
    guardrail = FakeGuardrail(blocked_text="ok")
    dispatcher = ToolDispatcher(FakeExecutor(), guardrail=guardrail, guardrails_enabled=False)

    results = await dispatcher.dispatch(_uses("x"))

    assert results[0].status == "success"
    assert guardrail.checked == []


@pytest.mark.asyncio
async def test_dispatch_publishes_started_and_ready_events():
    events = []
    dispatcher = ToolDispatcher(FakeExecutor(), publish=events.append)

    await dispatcher.dispatch(_uses("x"))

    assert events[0] == ToolExecutionStarted(tool_use_id="id-x", name="x", input={"q": "x"})
    assert isinstance(events[1], ToolResultReady)
    assert events[1].result.content == "x ok"


@pytest.mark.asyncio
async def test_empty_dispatch_returns_empty_list():
    assert await ToolDispatcher(FakeExecutor()).dispatch([]) == []
