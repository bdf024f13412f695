# adapters/agent/agent_backend.py

from abc import ABC, abstractmethod
from typing import List, Optional

from model.result_event import ModelSelector, TurnPart, TurnResult


class AgentBackend(ABC):
    """
    The agent service. Implementations raise BackendUnavailable on transport
    failures; boolean returns mean "the backend answered but refused".
    """

    @abstractmethod
    async def create_session(self, title: str) -> Optional[str]:
        pass

    @abstractmethod
    async def send_turn(self, session_ref: str, parts: List[TurnPart], model: ModelSelector) -> TurnResult:
        """May take longer than the caller is willing to wait."""
        pass

    @abstractmethod
    async def reply_question(self, request_id: str, answers: List[List[str]]) -> bool:
        pass

    @abstractmethod
    async def delete_session(self, session_ref: str) -> None:
        pass

    async def respond_permission(self, session_ref: str, permission_id: str,
                                 allow: bool, remember: bool = False) -> bool:
        return False

    async def abort_session(self, session_ref: str) -> bool:
        return False

    async def revert_turn(self, session_ref: str, agent_message_id: str,
                          after: Optional[str] = None) -> bool:
        """
        Drop the agent message and the user message that produced it. Without an
        agent message id, drop everything after `after` (the last kept agent reply).
        """
        return False
