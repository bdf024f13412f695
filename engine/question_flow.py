# engine/question_flow.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Literal, Optional

from adapters.agent.agent_backend import AgentBackend
from engine.errors import BackendUnavailable, SubmissionFailure, UnrecognizedAnswer
from model.question import DraftAnswer, ParsedAnswer, PendingQuestion, QuestionRequest
from shared import time

logger = logging.getLogger(__name__)


@dataclass
class AnswerOutcome:
    status: Literal["next", "submitted", "stale"]
    pending: PendingQuestion
    answers: Optional[List[List[str]]] = None

    @property
    def next_index(self) -> Optional[int]:
        return self.pending.current_index if self.status == "next" else None


def resolve_answers(pending: PendingQuestion) -> List[List[str]]:
    """Per question, in order: custom text if set, else selected labels, else []."""
    answers: List[List[str]] = []
    for question, draft in zip(pending.request.questions, pending.drafts):
        custom = draft.custom.strip()
        if custom:
            answers.append([custom])
        else:
            answers.append([question.options[i].label for i in draft.selected])
    return answers


class QuestionFlowEngine:
    """
    Walks the ordered questions of one agent question request per conversation:
    awaiting_answer(i) for i in [0, N), then submitted (record dropped) or
    cancelled. A failed submission leaves the cursor on the last question.
    """

    def __init__(self, backend: AgentBackend, clock: Callable[[], float] = time.now):
        self.backend = backend
        self.clock = clock
        self._pending: Dict[str, PendingQuestion] = {}

    # ---- registry ----

    def open(self, request: QuestionRequest, conversation_key: str, chat_ref: str) -> PendingQuestion:
        pending = PendingQuestion(
            request=request,
            conversation_key=conversation_key,
            chat_ref=chat_ref,
            created_at=self.clock(),
        )
        self._pending[conversation_key] = pending
        logger.info("[QUESTION] opened request=%s key=%s questions=%d",
                    request.id[:8], conversation_key, pending.total)
        return pending

    def get(self, key: str) -> Optional[PendingQuestion]:
        return self._pending.get(key)

    def has(self, key: str) -> bool:
        return key in self._pending

    def get_by_session(self, session_ref: str) -> Optional[PendingQuestion]:
        for pending in self._pending.values():
            if pending.request.session_id == session_ref:
                return pending
        return None

    def get_by_card_message(self, message_ref: str) -> Optional[PendingQuestion]:
        for pending in self._pending.values():
            if pending.card_message_ref == message_ref:
                return pending
        return None

    def set_card_message(self, key: str, message_ref: str) -> None:
        pending = self._pending.get(key)
        if pending:
            pending.card_message_ref = message_ref

    def cancel(self, key: str) -> Optional[PendingQuestion]:
        pending = self._pending.pop(key, None)
        if pending:
            logger.info("[QUESTION] cancelled request=%s key=%s", pending.request.id[:8], key)
        return pending

    def cleanup_expired(self, max_age: float) -> List[PendingQuestion]:
        now = self.clock()
        expired = [p for p in self._pending.values() if now - p.created_at >= max_age]
        for pending in expired:
            del self._pending[pending.conversation_key]
        if expired:
            logger.info("[QUESTION] cleaned up %d expired questions", len(expired))
        return expired

    # ---- transitions ----

    @staticmethod
    def record_draft(pending: PendingQuestion, index: int, parsed: ParsedAnswer) -> None:
        if parsed.kind == "skip":
            pending.drafts[index] = DraftAnswer()
        elif parsed.kind == "custom":
            pending.drafts[index] = DraftAnswer(custom=parsed.text)
        elif parsed.kind == "selected":
            option_count = len(pending.request.questions[index].options)
            picked: List[int] = []
            for i in parsed.indices:
                if 0 <= i < option_count and i not in picked:
                    picked.append(i)
            pending.drafts[index] = DraftAnswer(selected=picked)
        else:
            raise UnrecognizedAnswer(f"unrecognized answer for question {index}")

    async def answer(self, key: str, parsed: ParsedAnswer,
                     question_index: Optional[int] = None) -> Optional[AnswerOutcome]:
        pending = self._pending.get(key)
        if pending is None:
            return None
        if pending.submitting or (question_index is not None and question_index != pending.current_index):
            logger.info("[QUESTION] stale answer for key=%s index=%s (cursor=%d)",
                        key, question_index, pending.current_index)
            return AnswerOutcome(status="stale", pending=pending)

        self.record_draft(pending, pending.current_index, parsed)

        if pending.current_index + 1 < pending.total:
            pending.current_index += 1
            return AnswerOutcome(status="next", pending=pending)

        return await self.submit(key)

    async def skip(self, key: str, question_index: Optional[int] = None) -> Optional[AnswerOutcome]:
        return await self.answer(key, ParsedAnswer.skip(), question_index)

    async def select(self, key: str, question_index: Optional[int],
                     indices: List[int]) -> Optional[AnswerOutcome]:
        return await self.answer(key, ParsedAnswer.selected(indices), question_index)

    async def submit(self, key: str) -> Optional[AnswerOutcome]:
        pending = self._pending.get(key)
        if pending is None:
            return None

        answers = resolve_answers(pending)
        logger.info("[QUESTION] submitting request=%s answers=%s", pending.request.id[:8], answers)
        pending.submitting = True
        try:
            ok = await self.backend.reply_question(pending.request.id, answers)
        except BackendUnavailable:
            logger.exception("[QUESTION] reply failed for request=%s", pending.request.id[:8])
            ok = False
        finally:
            pending.submitting = False

        if not ok:
            raise SubmissionFailure(pending.request.id, answers)

        if self._pending.get(key) is pending:
            del self._pending[key]
        return AnswerOutcome(status="submitted", pending=pending, answers=answers)
