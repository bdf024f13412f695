from typing import List, Optional, Literal, Dict, Any
from pydantic import BaseModel, Field

InteractionKind = Literal["normal", "question_prompt", "question_answer"]


class InteractionRecord(BaseModel):
    # Chat-surface id of the user message that started the turn
    user_message_id: str = ""
    # Agent-side message id, used as the revert point on undo
    agent_message_id: str = ""
    # Chat-surface messages the bot produced during the turn, in order
    bot_message_ids: List[str] = []
    kind: InteractionKind = "normal"
    # Opaque UI snapshot (e.g. answered question card) attached after the fact
    ui_state: Optional[Dict[str, Any]] = None
    timestamp: float = 0.0


class ConversationRecord(BaseModel):
    conversation_key: str
    chat_ref: str
    session_ref: str
    creator_id: str = ""
    title: Optional[str] = None
    created_at: float = 0.0

    preferred_model: Optional[str] = None     # "provider:model" or bare model id
    preferred_agent: Optional[str] = None
    protect_from_delete: bool = False

    interactions: List[InteractionRecord] = Field(default_factory=list)

    # Derived from `interactions`, recomputed on every ledger mutation
    last_user_message_id: Optional[str] = None
    last_ai_message_id: Optional[str] = None
