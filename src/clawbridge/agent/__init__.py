"""Agent session layer — in-memory sessions and the engine facade."""

from clawbridge.agent.engine import AgentEngine, AgentError, StreamHandlers
from clawbridge.agent.sessions import ChatMessage, Session, SessionManager, estimate_tokens

__all__ = [
    "AgentEngine",
    "AgentError",
    "ChatMessage",
    "Session",
    "SessionManager",
    "StreamHandlers",
    "estimate_tokens",
]
