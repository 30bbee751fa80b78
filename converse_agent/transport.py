"""Model stream transport: request shape, cancellation and an HTTP client."""

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Protocol

import httpx

from converse_agent.exceptions import ProtocolError, RequestAbortedError, TransportError
from converse_agent.logging import get_logger
from converse_agent.messages import Message, message_to_wire

log = get_logger(__name__)


@dataclass
class ModelRequest:
    """Everything one model-stream invocation needs."""

    model_id: str
    messages: list[Message]
    system: list[dict[str, Any]] | None = None
    tool_config: dict[str, Any] | None = None
    inference_config: dict[str, Any] | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_wire(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "modelId": self.model_id,
            "messages": [message_to_wire(message) for message in self.messages],
        }
        if self.system:
            body["system"] = self.system
        if self.tool_config:
            body["toolConfig"] = self.tool_config
        if self.inference_config:
            body["inferenceConfig"] = self.inference_config
        body.update(self.extra)
        return body


class CancellationToken:
    """One-shot cancellation signal for a single submitted turn."""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: str = ""

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise RequestAbortedError()


class ModelStreamClient(Protocol):
    def stream(
        self,
        request: ModelRequest,
        token: CancellationToken,
    ) -> AsyncIterator[Any]: ...


async def _next_item(iterator: AsyncIterator[Any]) -> Any:
    return await iterator.__anext__()


async def _cancel_task(task: asyncio.Task[Any] | None) -> None:
    """Cancel task and await it to avoid pending task warnings."""
    if task is None or task.done():
        return
    task.cancel()
    try:
        await task
    except (asyncio.CancelledError, StopAsyncIteration):
        pass
    except Exception as e:
        log.debug("Stream task raised while cancelling", error=str(e))


async def _close_iterator(iterator: AsyncIterator[Any]) -> None:
    aclose = getattr(iterator, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except Exception as e:
        log.debug("Stream close failed", error=str(e))


async def iterate_with_cancellation(
    source: AsyncIterator[Any],
    token: CancellationToken,
) -> AsyncIterator[Any]:
    """Yield from ``source`` until exhausted, aborting when ``token`` fires.

    A pending read is cancelled immediately, so a transport blocked on the
    next chunk still stops promptly.

    Raises:
        RequestAbortedError: the token was cancelled
    """
    iterator = source.__aiter__()
    try:
        while True:
            if token.cancelled:
                raise RequestAbortedError()
            next_task = asyncio.create_task(_next_item(iterator))
            cancel_task = asyncio.create_task(token.wait())
            try:
                done, _ = await asyncio.wait(
                    {next_task, cancel_task},
                    return_when=asyncio.FIRST_COMPLETED,
                )
            except asyncio.CancelledError:
                await _cancel_task(next_task)
                raise
            finally:
                await _cancel_task(cancel_task)

            if next_task not in done:
                await _cancel_task(next_task)
                raise RequestAbortedError()
            try:
                item = next_task.result()
            except StopAsyncIteration:
                return
            yield item
    finally:
        await _close_iterator(iterator)


class HttpModelStreamClient:
    """Stream model events from an HTTP endpoint speaking NDJSON.

    The request body is the Converse-style request; each response line is one
    stream event object (``{"messageStart": {...}}`` and so on).
    """

    def __init__(
        self,
        endpoint: str,
        api_key: str | None = None,
        timeout: float = 120.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.endpoint = endpoint
        self.api_key = api_key
        self.client = client or httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
        )

    def _headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/x-ndjson",
        }
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def stream(
        self,
        request: ModelRequest,
        token: CancellationToken,
    ) -> AsyncIterator[dict[str, Any]]:
        body = request.to_wire()
        log.debug(
            "Calling model stream",
            model=request.model_id,
            url=self.endpoint,
            msg_count=len(request.messages),
        )
        try:
            async with self.client.stream(
                "POST", self.endpoint, json=body, headers=self._headers()
            ) as response:
                if not response.is_success:
                    error_text = (await response.aread()).decode("utf-8", errors="replace")
                    raise TransportError(
                        f"Model stream error {response.status_code}: {error_text}",
                        status_code=response.status_code,
                    )

                async for line in response.aiter_lines():
                    token.raise_if_cancelled()
                    if not line.strip():
                        continue
                    try:
                        payload = json.loads(line)
                    except json.JSONDecodeError as e:
                        raise ProtocolError(f"Malformed stream line: {e}") from e
                    yield payload
        except httpx.HTTPError as e:
            raise TransportError(f"Model stream HTTP error: {e}") from e

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()
