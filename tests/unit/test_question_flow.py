"""Question flow state machine: drafts, cursor, batch submission."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from engine.errors import BackendUnavailable, SubmissionFailure, UnrecognizedAnswer
from engine.question_flow import QuestionFlowEngine, resolve_answers
from model.question import ParsedAnswer, QuestionRequest


def _request(n: int = 2, multiple: bool = False) -> QuestionRequest:
    return QuestionRequest.model_validate({
        "id": "que_12345678",
        "sessionID": "ses_00000001",
        "questions": [
            {
                "question": f"Question {i}",
                "header": f"Q{i}",
                "options": [{"label": f"opt{i}-0"}, {"label": f"opt{i}-1"}, {"label": f"opt{i}-2"}],
                "multiple": multiple,
            }
            for i in range(n)
        ],
    })


def _engine(reply_result=True):
    backend = AsyncMock()
    backend.reply_question.return_value = reply_result
    return backend, QuestionFlowEngine(backend, clock=lambda: 0.0)


@pytest.mark.anyio
async def test_two_questions_select_then_skip() -> None:
    backend, flow = _engine()
    flow.open(_request(2), "chat-1", "oc_chat")

    first = await flow.answer("chat-1", ParsedAnswer.selected([0]))
    assert first.status == "next"
    assert first.next_index == 1

    done = await flow.skip("chat-1")

    assert done.status == "submitted"
    assert done.answers == [["opt0-0"], []]
    backend.reply_question.assert_awaited_once_with("que_12345678", [["opt0-0"], []])
    assert not flow.has("chat-1")


@pytest.mark.anyio
async def test_single_question_skip_submits_empty_answer() -> None:
    backend, flow = _engine()
    flow.open(_request(1), "chat-1", "oc_chat")

    done = await flow.skip("chat-1")

    assert done.answers == [[]]
    backend.reply_question.assert_awaited_once_with("que_12345678", [[]])
    assert flow.get("chat-1") is None


def test_custom_text_overrides_selection() -> None:
    _, flow = _engine()
    pending = flow.open(_request(1, multiple=True), "chat-1", "oc_chat")

    flow.record_draft(pending, 0, ParsedAnswer.selected([0, 2]))
    flow.record_draft(pending, 0, ParsedAnswer.custom("  something else "))

    assert resolve_answers(pending) == [["something else"]]

    flow.record_draft(pending, 0, ParsedAnswer.skip())
    assert resolve_answers(pending) == [[]]


def test_selection_ignores_out_of_range_and_duplicates() -> None:
    _, flow = _engine()
    pending = flow.open(_request(1, multiple=True), "chat-1", "oc_chat")

    flow.record_draft(pending, 0, ParsedAnswer.selected([2, 2, 7, 0]))

    assert resolve_answers(pending) == [["opt0-2", "opt0-0"]]


@pytest.mark.anyio
async def test_unrecognized_answer_leaves_state_untouched() -> None:
    backend, flow = _engine()
    pending = flow.open(_request(2), "chat-1", "oc_chat")

    with pytest.raises(UnrecognizedAnswer):
        await flow.answer("chat-1", ParsedAnswer.unrecognized())

    assert pending.current_index == 0
    backend.reply_question.assert_not_awaited()


@pytest.mark.anyio
async def test_failed_submission_keeps_pending_for_retry() -> None:
    backend, flow = _engine(reply_result=False)
    flow.open(_request(2), "chat-1", "oc_chat")
    await flow.answer("chat-1", ParsedAnswer.selected([1]))

    with pytest.raises(SubmissionFailure) as exc_info:
        await flow.answer("chat-1", ParsedAnswer.custom("later"))

    assert exc_info.value.answers == [["opt0-1"], ["later"]]
    pending = flow.get("chat-1")
    assert pending is not None
    assert pending.current_index == 1
    assert pending.submitting is False

    backend.reply_question.return_value = True
    done = await flow.submit("chat-1")
    assert done.status == "submitted"
    assert not flow.has("chat-1")


@pytest.mark.anyio
async def test_transport_error_counts_as_failed_submission() -> None:
    backend, flow = _engine()
    backend.reply_question.side_effect = BackendUnavailable("connection refused")
    flow.open(_request(1), "chat-1", "oc_chat")

    with pytest.raises(SubmissionFailure):
        await flow.skip("chat-1")

    assert flow.has("chat-1")


@pytest.mark.anyio
async def test_stale_question_index_is_ignored() -> None:
    backend, flow = _engine()
    pending = flow.open(_request(2), "chat-1", "oc_chat")
    await flow.select("chat-1", 0, [2])

    stale = await flow.select("chat-1", 0, [1])

    assert stale.status == "stale"
    assert pending.current_index == 1
    assert pending.drafts[0].selected == [2]


@pytest.mark.anyio
async def test_answer_without_pending_question_returns_none() -> None:
    _, flow = _engine()
    assert await flow.answer("chat-1", ParsedAnswer.skip()) is None
    assert await flow.submit("chat-1") is None


def test_lookups_cancel_and_cleanup() -> None:
    now = [0.0]
    flow = QuestionFlowEngine(AsyncMock(), clock=lambda: now[0])
    flow.open(_request(1), "chat-1", "oc_chat")
    flow.set_card_message("chat-1", "card_1")

    assert flow.get_by_session("ses_00000001").conversation_key == "chat-1"
    assert flow.get_by_card_message("card_1").conversation_key == "chat-1"
    assert flow.cancel("chat-1") is not None
    assert flow.cancel("chat-1") is None

    flow.open(_request(1), "chat-2", "oc_chat")
    now[0] = 100.0
    assert [p.conversation_key for p in flow.cleanup_expired(max_age=50)] == ["chat-2"]
