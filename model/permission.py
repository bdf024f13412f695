from typing import Optional, Literal
from pydantic import BaseModel

RiskTier = Literal["low", "medium", "high"]


class PermissionRequest(BaseModel):
    session_ref: str
    permission_id: str
    tool: str
    description: str = ""
    risk: Optional[RiskTier] = None


class PendingPermission(BaseModel):
    session_ref: str
    permission_id: str
    tool: str
    description: str = ""
    risk: Optional[RiskTier] = None
    chat_ref: str
    created_at: float
    card_message_ref: Optional[str] = None
