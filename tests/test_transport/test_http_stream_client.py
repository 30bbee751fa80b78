import json

import httpx
import pytest

from converse_agent.exceptions import ProtocolError, TransportError
from converse_agent.messages import Message
from converse_agent.orchestrator import ConversationOrchestrator
from converse_agent.transport import CancellationToken, HttpModelStreamClient, ModelRequest

ENDPOINT = "http://models.test/converse-stream"


def _ndjson(*payloads) -> bytes:
    return "\n".join(json.dumps(p) for p in payloads).encode("utf-8") + b"\n"


def _client(handler, api_key=None) -> HttpModelStreamClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpModelStreamClient(ENDPOINT, api_key=api_key, client=http)


async def _collect(client, request):
    return [item async for item in client.stream(request, CancellationToken())]


@pytest.mark.asyncio
async def test_stream_posts_request_and_yields_events():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        seen["auth"] = request.headers.get("Authorization")
        return httpx.Response(
            200,
            content=_ndjson(
                {"messageStart": {"role": "assistant"}},
                {"contentBlockDelta": {"delta": {"text": "hi"}}},
            ),
        )

    client = _client(handler, api_key="secret")
    request = ModelRequest(
        model_id="m1",
        messages=[Message.user_text("hello")],
        inference_config={"maxTokens": 10},
    )
    try:
        events = await _collect(client, request)
    finally:
        await client.close()

    assert events == [
        {"messageStart": {"role": "assistant"}},
        {"contentBlockDelta": {"delta": {"text": "hi"}}},
    ]
    assert seen["auth"] == "Bearer secret"
    assert seen["body"]["modelId"] == "m1"
    assert seen["body"]["messages"] == [{"role": "user", "content": [{"text": "hello"}]}]
    assert seen["body"]["inferenceConfig"] == {"maxTokens": 10}
    assert "system" not in seen["body"]


@pytest.mark.asyncio
async def test_error_status_raises_transport_error():
    client = _client(lambda request: httpx.Response(429, text="slow down"))
    try:
        with pytest.raises(TransportError) as exc_info:
            await _collect(client, ModelRequest(model_id="m1", messages=[]))
    finally:
        await client.close()

    assert exc_info.value.status_code == 429
    assert "slow down" in str(exc_info.value)


@pytest.mark.asyncio
async def test_malformed_line_raises_protocol_error():
    client = _client(lambda request: httpx.Response(200, content=b'{"messageStart": {}}\nnot json\n'))
    try:
        with pytest.raises(ProtocolError):
            await _collect(client, ModelRequest(model_id="m1", messages=[]))
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_connection_failure_raises_transport_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = _client(handler)
    try:
        with pytest.raises(TransportError, match="connection refused"):
            await _collect(client, ModelRequest(model_id="m1", messages=[]))
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_orchestrator_over_http_transport():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            content=_ndjson(
                {"messageStart": {"role": "assistant"}},
                {"contentBlockDelta": {"delta": {"text": "4"}}},
                {"contentBlockStop": {}},
                {"messageStop": {"stopReason": "end_turn"}},
                {"metadata": {"usage": {"inputTokens": 5, "outputTokens": 1}, "metrics": {"latencyMs": 42}}},
            ),
        )

    class NoTools:
        async def execute(self, name, input):
            raise AssertionError("unexpected tool call")

    client = _client(handler)
    orchestrator = ConversationOrchestrator(client, NoTools(), "anthropic.claude-3-5-haiku-20241022-v1:0")
    try:
        final = await orchestrator.submit("What is 2+2?")
    finally:
        await client.close()

    assert final.text == "4"
    assert final.metadata["latency_ms"] == 42
    assert final.cost == pytest.approx((5 * 0.0008 + 1 * 0.004) / 1000)
