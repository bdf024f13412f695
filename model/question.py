from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class QuestionOption(BaseModel):
    label: str
    description: str = ""


class QuestionInfo(BaseModel):
    question: str = ""
    header: str = ""
    options: List[QuestionOption] = []
    multiple: bool = False


class QuestionRequest(BaseModel):
    """A batch of questions the agent asks mid-turn (wire shape uses `sessionID`)."""
    model_config = ConfigDict(populate_by_name=True)

    id: str
    session_id: str = Field(alias="sessionID")
    questions: List[QuestionInfo]


class ParsedAnswer(BaseModel):
    kind: Literal["skip", "custom", "selected", "unrecognized"]
    text: str = ""
    indices: List[int] = []

    @classmethod
    def skip(cls) -> "ParsedAnswer":
        return cls(kind="skip")

    @classmethod
    def custom(cls, text: str) -> "ParsedAnswer":
        return cls(kind="custom", text=text)

    @classmethod
    def selected(cls, indices: List[int]) -> "ParsedAnswer":
        return cls(kind="selected", indices=list(indices))

    @classmethod
    def unrecognized(cls) -> "ParsedAnswer":
        return cls(kind="unrecognized")


@dataclass
class DraftAnswer:
    selected: List[int] = field(default_factory=list)
    custom: str = ""


@dataclass
class PendingQuestion:
    request: QuestionRequest
    conversation_key: str
    chat_ref: str
    created_at: float
    drafts: List[DraftAnswer] = field(default_factory=list)
    current_index: int = 0
    card_message_ref: Optional[str] = None
    submitting: bool = False

    def __post_init__(self) -> None:
        if not self.drafts:
            self.drafts = [DraftAnswer() for _ in self.request.questions]

    @property
    def total(self) -> int:
        return len(self.request.questions)

    @property
    def current_question(self) -> QuestionInfo:
        return self.request.questions[self.current_index]
