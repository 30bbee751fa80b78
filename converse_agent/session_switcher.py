"""Switch the active conversation between persisted sessions.

An orchestrator is bound to one session for its lifetime. Switching cancels
the current one (best effort, without waiting) and builds a fresh
orchestrator from the target session's stored history.
"""

from typing import Any

from converse_agent.channel import EventChannel
from converse_agent.exceptions import SessionError, SessionNotFoundError
from converse_agent.logging import get_logger
from converse_agent.orchestrator import ConversationOrchestrator
from converse_agent.session import SessionManager
from converse_agent.tools.dispatcher import ToolExecutor
from converse_agent.transport import ModelStreamClient

log = get_logger(__name__)


class SessionSwitcher:
    """Own the active orchestrator and replace it on session changes."""

    def __init__(
        self,
        session_manager: SessionManager | None,
        client: ModelStreamClient,
        executor: ToolExecutor,
        model_id: str,
        channel: EventChannel | None = None,
        **orchestrator_kwargs: Any,
    ):
        self.session_manager = session_manager
        self.client = client
        self.executor = executor
        self.model_id = model_id
        # Shared so subscribers survive a switch.
        self.channel = channel or EventChannel()
        self._orchestrator_kwargs = orchestrator_kwargs
        self._current: ConversationOrchestrator | None = None

    @property
    def current(self) -> ConversationOrchestrator | None:
        return self._current

    def _retire_current(self) -> None:
        old = self._current
        self._current = None
        if old is not None and old.busy:
            old.cancel("session switch")
            log.info("Cancelled running turn for session switch", session_id=old.session_id)

    async def new_session(self, name: str = "default") -> ConversationOrchestrator:
        """Create an empty session and make it active.

        Without a session manager the conversation lives in memory only.
        """
        self._retire_current()
        session_id = None
        if self.session_manager is not None:
            session = await self.session_manager.create_session(name=name, model_id=self.model_id)
            session_id = session.id
        self._current = ConversationOrchestrator(
            self.client,
            self.executor,
            self.model_id,
            session_id=session_id,
            persistence=self.session_manager,
            channel=self.channel,
            **self._orchestrator_kwargs,
        )
        return self._current

    async def switch_session(self, session_id: str) -> ConversationOrchestrator:
        """Make a stored session active.

        Raises:
            SessionError: session history is disabled
            SessionNotFoundError: no session with this id exists
        """
        if self.session_manager is None:
            raise SessionError("Session history is disabled")
        session = await self.session_manager.load_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        self._retire_current()
        self._current = await ConversationOrchestrator.resume(
            session.id,
            self.session_manager,
            self.client,
            self.executor,
            session.model_id or self.model_id,
            channel=self.channel,
            **self._orchestrator_kwargs,
        )
        log.info("Switched session", session_id=session.id, name=session.name)
        return self._current
