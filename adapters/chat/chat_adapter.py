# adapters/chat/chat_adapter.py

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional


class ChatAdapter(ABC):
    """
    Outbound side of the chat surface. Delivery is best effort: the engine logs
    and moves on when a call fails.
    """

    # Surfaces without editable cards get streamed output as plain text chunks.
    supports_cards: bool = True

    @abstractmethod
    async def send_card(self, chat_ref: str, card: Dict[str, Any]) -> Optional[str]:
        """Post a new card. Returns the surface message id."""
        pass

    @abstractmethod
    async def update_card(self, message_ref: str, card: Dict[str, Any]) -> None:
        """Replace the content of a card we previously sent."""
        pass

    @abstractmethod
    async def reply(self, message_ref: str, text: str) -> Optional[str]:
        """Reply in-thread to a message. None when the surface refused."""
        pass

    @abstractmethod
    async def send_text(self, chat_ref: str, text: str) -> Optional[str]:
        pass

    async def delete_message(self, message_ref: str) -> bool:
        """Optional; surfaces without recall support keep the default."""
        return False
