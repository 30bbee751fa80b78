"""converse-agent - streaming agent conversations over a Converse-style model API."""

__version__ = "0.1.0"

from converse_agent.config import Config
from converse_agent.orchestrator import ConversationOrchestrator, ConversationStatus

__all__ = ["Config", "ConversationOrchestrator", "ConversationStatus", "__version__"]
