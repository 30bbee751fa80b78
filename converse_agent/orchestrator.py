"""Conversation orchestrator: the bounded stream / tool-use loop."""

import asyncio
import json
import uuid
from enum import Enum
from typing import Any, Sequence

from converse_agent.assembler import FinalizedMessage, StreamEventAssembler, UsageUpdate
from converse_agent.channel import (
    EventChannel,
    MessageAppended,
    MessagesRemoved,
    MessageUpdated,
    StatusChanged,
    TurnFailed,
    UsageReported,
)
from converse_agent.context_window import (
    ContextWindowManager,
    estimate_text_tokens,
    log_cache_usage,
)
from converse_agent.exceptions import (
    ConversationBusyError,
    GuardrailCheckError,
    ProtocolError,
    RecursionLimitExceeded,
    RequestAbortedError,
)
from converse_agent.logging import conversation_context, get_logger
from converse_agent.messages import (
    ROLE_ASSISTANT,
    ROLE_USER,
    Message,
    ToolUseBlock,
    Usage,
    prune_orphan_tool_uses,
)
from converse_agent.model_catalog import is_thinking_supported
from converse_agent.pricing import CostTable
from converse_agent.stream_events import STOP_TOOL_USE, coerce_stream_event
from converse_agent.tools.dispatcher import ToolDispatcher, ToolExecutor
from converse_agent.tools.guardrail import GuardrailChecker, run_check
from converse_agent.transport import (
    CancellationToken,
    ModelRequest,
    ModelStreamClient,
    iterate_with_cancellation,
)

log = get_logger(__name__)

DEFAULT_MAX_TOOL_DEPTH = 25
INTERLEAVED_THINKING_BETA = "interleaved-thinking-2025-05-14"


class ConversationStatus(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    TOOL_EXECUTING = "tool_executing"
    FINALIZED = "finalized"
    ABORTED = "aborted"


class ConversationOrchestrator:
    """Drive one conversation: stream, execute tools, repeat until a final answer.

    All collaborators are injected. State is only mutated by the task running
    ``submit``; one turn at a time is enforced with an ``asyncio.Lock``.
    Every change is published on ``channel`` as an immutable snapshot.
    """

    def __init__(
        self,
        client: ModelStreamClient,
        executor: ToolExecutor,
        model_id: str,
        *,
        session_id: str | None = None,
        persistence: Any = None,
        cost_table: CostTable | None = None,
        guardrail: GuardrailChecker | None = None,
        guardrails_enabled: bool = False,
        check_input: bool = False,
        system_prompt: str = "",
        tool_specs: Sequence[dict[str, Any]] | None = None,
        inference_config: dict[str, Any] | None = None,
        thinking: dict[str, Any] | None = None,
        interleaved_thinking: bool = False,
        context_length: int = 200000,
        prompt_cache: bool = True,
        max_tool_depth: int = DEFAULT_MAX_TOOL_DEPTH,
        protocol_retries: int = 1,
        channel: EventChannel | None = None,
        history: Sequence[Message] | None = None,
    ):
        self.client = client
        self.model_id = model_id
        self.session_id = session_id or str(uuid.uuid4())
        self.persistence = persistence
        self.cost_table = cost_table or CostTable()
        self.guardrail = guardrail
        self.check_input = check_input and guardrail is not None
        self.system_prompt = system_prompt
        self.tool_specs: list[dict[str, Any]] = list(tool_specs or [])
        self.inference_config = dict(inference_config or {})
        self.thinking = dict(thinking) if thinking else None
        self.interleaved_thinking = interleaved_thinking
        self.max_tool_depth = max(0, int(max_tool_depth))
        self.protocol_retries = max(0, int(protocol_retries))
        self.channel = channel or EventChannel()
        self.context = ContextWindowManager(model_id, context_length, prompt_cache)
        self.dispatcher = ToolDispatcher(
            executor,
            guardrail=guardrail,
            guardrails_enabled=guardrails_enabled,
            publish=self.channel.publish,
        )

        self._messages: list[Message] = list(history or [])
        self._status = ConversationStatus.IDLE
        self._cache_point_index: int | None = None
        self._token: CancellationToken | None = None
        self._lock = asyncio.Lock()
        self._last_usage: Usage | None = None
        self._total_cost = 0.0

    @classmethod
    async def resume(
        cls,
        session_id: str,
        persistence: Any,
        client: ModelStreamClient,
        executor: ToolExecutor,
        model_id: str,
        **kwargs: Any,
    ) -> "ConversationOrchestrator":
        """Rebuild an orchestrator from persisted history.

        ToolUse messages left unanswered by an interrupted run are pruned
        before the first request.
        """
        history = await persistence.load_messages(session_id)
        kept, removed = prune_orphan_tool_uses(history)
        for message in removed:
            try:
                await persistence.delete(session_id, message.id)
            except Exception as e:
                log.error("Failed to prune orphan message", session_id=session_id, message_id=message.id, error=str(e))
        if removed:
            log.info("Pruned orphan tool-use messages on resume", session_id=session_id, count=len(removed))
        log.info("Resumed conversation", session_id=session_id, messages=len(kept))
        return cls(
            client,
            executor,
            model_id,
            session_id=session_id,
            persistence=persistence,
            history=kept,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    @property
    def status(self) -> ConversationStatus:
        return self._status

    @property
    def cache_point_index(self) -> int | None:
        return self._cache_point_index

    @property
    def last_usage(self) -> Usage | None:
        return self._last_usage

    @property
    def total_cost(self) -> float:
        return self._total_cost

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def set_system_prompt(self, prompt: str) -> None:
        self.system_prompt = prompt or ""

    def set_tool_specs(self, tool_specs: Sequence[dict[str, Any]] | None) -> None:
        self.tool_specs = list(tool_specs or [])

    def reset(self, session_id: str | None = None) -> None:
        """Start over with empty history under a new session id."""
        if self.busy:
            raise ConversationBusyError("Cannot reset while a turn is running")
        self._messages = []
        self._cache_point_index = None
        self._last_usage = None
        self._total_cost = 0.0
        self.session_id = session_id or str(uuid.uuid4())
        self._set_status(ConversationStatus.IDLE)

    def cancel(self, reason: str = "cancelled") -> bool:
        """Abort the running turn. Returns False when nothing is running."""
        if self._token is None or self._token.cancelled:
            return False
        log.info("Cancelling conversation turn", session_id=self.session_id, reason=reason)
        self._token.cancel(reason)
        return True

    # ------------------------------------------------------------------
    # State helpers
    # ------------------------------------------------------------------

    def _set_status(self, status: ConversationStatus) -> None:
        previous = self._status
        if previous == status:
            return
        self._status = status
        self.channel.publish(StatusChanged(previous=previous.value, current=status.value))

    async def _persist(self, operation: str, *args: Any) -> None:
        if self.persistence is None:
            return
        try:
            await getattr(self.persistence, operation)(self.session_id, *args)
        except Exception as e:
            log.error(
                "Persistence failed",
                operation=operation,
                session_id=self.session_id,
                error=str(e),
            )

    async def _append(self, message: Message) -> None:
        self._messages.append(message)
        self.channel.publish(MessageAppended(message=message))
        await self._persist("append", message)

    async def _remove(self, messages: Sequence[Message]) -> None:
        if not messages:
            return
        ids = {m.id for m in messages}
        self._messages = [m for m in self._messages if m.id not in ids]
        self.channel.publish(MessagesRemoved(message_ids=tuple(m.id for m in messages)))
        for message in messages:
            await self._persist("delete", message.id)

    async def _rollback(self, snapshot: int) -> None:
        await self._remove(self._messages[snapshot:])

    def _find(self, message_id: str) -> int | None:
        for index in range(len(self._messages) - 1, -1, -1):
            if self._messages[index].id == message_id:
                return index
        return None

    def _price(self, usage: Usage) -> float | None:
        return self.cost_table.price(
            self.model_id,
            usage.input_tokens,
            usage.output_tokens,
            usage.cache_read_input_tokens,
            usage.cache_write_input_tokens,
        )

    def _record_usage(self, message_id: str, usage: Usage, cost: float | None) -> None:
        self._last_usage = usage
        if cost is not None:
            self._total_cost += cost
        self.channel.publish(UsageReported(message_id=message_id, usage=usage, cost=cost))
        log_cache_usage(usage, self.model_id)

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

    def _system_blocks(self) -> list[dict[str, Any]] | None:
        if not self.system_prompt:
            return None
        return [{"text": self.system_prompt}]

    def _tool_config(self) -> dict[str, Any] | None:
        if not self.tool_specs:
            return None
        return {"tools": list(self.tool_specs)}

    def _reserved_tokens(self) -> int:
        reserved = estimate_text_tokens(self.system_prompt) if self.system_prompt else 0
        if self.tool_specs:
            reserved += estimate_text_tokens(json.dumps(self.tool_specs, default=str))
        return reserved

    def _thinking_enabled(self) -> bool:
        return bool(
            self.thinking
            and self.thinking.get("type") == "enabled"
            and is_thinking_supported(self.model_id)
        )

    def _request_options(self) -> tuple[dict[str, Any], dict[str, Any]]:
        """Return the inference config and extra request fields for this model."""
        inference_config = dict(self.inference_config)
        extra: dict[str, Any] = {}
        if self._thinking_enabled():
            fields: dict[str, Any] = {"thinking": dict(self.thinking)}
            if self.interleaved_thinking:
                fields["anthropic_beta"] = [INTERLEAVED_THINKING_BETA]
            extra["additionalModelRequestFields"] = fields
            # Thinking requires temperature 1 and rejects topP.
            inference_config.pop("topP", None)
            inference_config["temperature"] = 1
        return inference_config, extra

    def _build_request(self) -> tuple[ModelRequest, int | None]:
        window = self.context.fit(
            self._messages,
            self._cache_point_index,
            reserved_tokens=self._reserved_tokens(),
        )
        inference_config, extra = self._request_options()
        request = ModelRequest(
            model_id=self.model_id,
            messages=window.messages,
            system=self.context.prepare_system(self._system_blocks()),
            tool_config=self.context.prepare_tool_config(self._tool_config()),
            inference_config=inference_config or None,
            extra=extra,
        )
        return request, window.cache_point_index

    # ------------------------------------------------------------------
    # Turn loop
    # ------------------------------------------------------------------

    async def submit(self, user_input: str) -> Message | None:
        """Run one user turn to completion.

        Returns the final assistant message, or ``None`` when the turn was
        cancelled.

        Raises:
            ValueError: empty input
            ConversationBusyError: a turn is already running
            RecursionLimitExceeded: the model kept requesting tools
            TransportError: the model stream failed
        """
        if not user_input or not user_input.strip():
            raise ValueError("User input must not be empty")
        if self._lock.locked():
            raise ConversationBusyError("A turn is already running for this conversation")

        async with self._lock:
            token = CancellationToken()
            self._token = token
            try:
                with conversation_context(self.session_id):
                    return await self._run_turn(user_input, token)
            finally:
                self._token = None

    async def _check_user_input(self, user_input: str) -> Message | None:
        """Return a remediation message when the input guardrail intervenes."""
        try:
            decision = await run_check(self.guardrail, "INPUT", user_input)
        except GuardrailCheckError as e:
            log.warning("Input guardrail check failed; continuing", error=str(e), exc_info=True)
            return None
        if not decision.intervened:
            return None
        log.warning("Input guardrail intervened", session_id=self.session_id, reason=decision.reason)
        return Message.assistant_text(
            decision.remediation or "Input blocked by guardrail.",
            guardrail=True,
        )

    async def _run_turn(self, user_input: str, token: CancellationToken) -> Message | None:
        if self.check_input:
            blocked = await self._check_user_input(user_input)
            if blocked is not None:
                self._set_status(ConversationStatus.FINALIZED)
                return blocked

        await self._append(Message.user_text(user_input))
        depth = 0

        while True:
            snapshot = len(self._messages)
            self._set_status(ConversationStatus.STREAMING)
            try:
                finalized = await self._invoke_model(token, snapshot)
                if finalized.stop_reason == STOP_TOOL_USE and finalized.message.tool_uses:
                    depth += 1
                    if depth > self.max_tool_depth:
                        raise RecursionLimitExceeded(self.max_tool_depth)
            except RequestAbortedError:
                await self._handle_abort()
                return None
            except Exception as e:
                await self._fail(e, snapshot)
                raise

            if finalized.stop_reason != STOP_TOOL_USE or not finalized.message.tool_uses:
                if finalized.stop_reason == STOP_TOOL_USE:
                    log.warning("tool_use stop without tool blocks; treating as final", message_id=finalized.message.id)
                final = await self._drop_unanswered_tool_uses(finalized.message, finalized.stop_reason)
                self._set_status(ConversationStatus.FINALIZED)
                return final

            self._set_status(ConversationStatus.TOOL_EXECUTING)
            tool_uses = finalized.message.tool_uses
            log.info("Executing tool calls", count=len(tool_uses), depth=depth)
            results = await self.dispatcher.dispatch(tool_uses)
            if token.cancelled:
                # Tools ran to completion; their results are dropped with the turn.
                await self._handle_abort()
                return None
            await self._append(Message(role=ROLE_USER, content=tuple(results)))

    async def _invoke_model(self, token: CancellationToken, snapshot: int) -> FinalizedMessage:
        attempt = 0
        while True:
            try:
                return await self._stream_once(token)
            except ProtocolError as e:
                if attempt >= self.protocol_retries:
                    raise
                attempt += 1
                log.warning("Protocol error from model stream; retrying", attempt=attempt, error=str(e))
                await self._rollback(snapshot)

    async def _stream_once(self, token: CancellationToken) -> FinalizedMessage:
        request, next_cache_index = self._build_request()
        assembler = StreamEventAssembler(publish=self.channel.publish)
        finalized: FinalizedMessage | None = None

        log.info("Calling model", model=self.model_id, message_count=len(request.messages))
        events = iterate_with_cancellation(self.client.stream(request, token), token)
        try:
            async for item in events:
                result = assembler.feed(coerce_stream_event(item))
                if isinstance(result, FinalizedMessage):
                    finalized = await self._on_finalized(result)
                elif isinstance(result, UsageUpdate):
                    await self._on_usage(result)
        finally:
            await events.aclose()

        if finalized is None:
            raise ProtocolError("Model stream ended without messageStop")
        self._cache_point_index = next_cache_index
        return finalized

    async def _on_finalized(self, result: FinalizedMessage) -> FinalizedMessage:
        message = result.message
        if message.role != ROLE_ASSISTANT:
            raise ProtocolError(f"Model stream produced a {message.role} message")
        usage = message.usage
        cost = None
        if usage is not None:
            cost = self._price(usage)
            message = message.with_metadata(cost=cost)
        message = message.with_metadata(stop_reason=result.stop_reason)
        await self._append(message)
        if usage is not None:
            self._record_usage(message.id, usage, cost)
        return FinalizedMessage(message=message, stop_reason=result.stop_reason)

    async def _on_usage(self, update: UsageUpdate) -> None:
        index = self._find(update.message_id)
        if index is None:
            log.warning("Usage for unknown message", message_id=update.message_id)
            return
        cost = self._price(update.usage)
        patch: dict[str, Any] = {"usage": update.usage, "cost": cost}
        if update.latency_ms is not None:
            patch["latency_ms"] = update.latency_ms
        message = self._messages[index].with_metadata(**patch)
        self._messages[index] = message
        self.channel.publish(MessageUpdated(message=message))
        await self._persist("update", message.id, {"metadata": patch})
        self._record_usage(message.id, update.usage, cost)

    async def _drop_unanswered_tool_uses(self, finalized: Message, stop_reason: str) -> Message:
        """Strip ToolUse blocks from a final message; nothing will answer them.

        The message leaves history entirely when no other content remains.
        """
        index = self._find(finalized.id)
        message = self._messages[index] if index is not None else finalized
        if not message.tool_uses:
            return message

        content = tuple(block for block in message.content if not isinstance(block, ToolUseBlock))
        log.warning(
            "Dropping unanswered tool calls from final message",
            message_id=message.id,
            stop_reason=stop_reason,
            count=len(message.tool_uses),
        )
        stripped = message.with_content(content)
        if index is None:
            return stripped
        if not content:
            await self._remove([message])
            return stripped
        self._messages[index] = stripped
        self.channel.publish(MessageUpdated(message=stripped))
        await self._persist("update", message.id, {"content": content})
        return stripped

    async def _handle_abort(self) -> None:
        self._set_status(ConversationStatus.ABORTED)
        kept, removed = prune_orphan_tool_uses(self._messages)
        if removed:
            log.info("Pruning orphan tool-use messages", count=len(removed))
            await self._remove(removed)
        log.info("Conversation turn aborted", session_id=self.session_id, messages=len(self._messages))
        self._set_status(ConversationStatus.IDLE)

    async def _fail(self, error: Exception, snapshot: int) -> None:
        await self._rollback(snapshot)
        log.error(
            "Conversation turn failed",
            session_id=self.session_id,
            error=str(error),
            error_type=type(error).__name__,
        )
        await self._append(
            Message.assistant_text(
                str(error) or type(error).__name__,
                error=True,
                error_type=type(error).__name__,
            )
        )
        self.channel.publish(TurnFailed(error=str(error), error_type=type(error).__name__))
        self._set_status(ConversationStatus.IDLE)
