from typing import Any, Dict, Optional
from pydantic import BaseModel


class InboundMessage(BaseModel):
    """A user message already normalized by the chat transport."""
    conversation_key: str
    chat_ref: str
    message_ref: str
    sender_id: str = ""
    text: str = ""
    has_attachments: bool = False


class CardAction(BaseModel):
    """A button tap on a card we rendered."""
    action: str
    conversation_key: str
    chat_ref: Optional[str] = None
    message_ref: Optional[str] = None   # the card that was tapped
    actor_id: str = ""
    value: Dict[str, Any] = {}
