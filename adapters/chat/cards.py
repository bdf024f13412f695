"""
Minimal card payloads. The chat transport owns the real templates; these dicts
carry everything a template needs.
"""
from typing import Any, Dict, List

from model.permission import PendingPermission
from model.question import PendingQuestion
from model.stream import StreamState

TOOL_STATUS_ICONS = {"pending": "⏸️", "running": "⏳", "completed": "✅", "failed": "❌"}
RISK_LABELS = {"high": "⚠️ high risk", "medium": "⚡ medium risk"}


def build_stream_card(state: StreamState, conversation_key: str) -> Dict[str, Any]:
    return {
        "type": "stream",
        "status": state.status,
        "thinking": state.reasoning,
        "text": state.text,
        "output": state.output,
        "tools": [
            {"name": t.name, "status": t.status, "icon": TOOL_STATUS_ICONS[t.status], "output": t.output}
            for t in state.tools
        ],
        "actions": [] if state.status != "processing" else [
            {"action": "stop", "conversation_key": conversation_key},
        ],
    }


def build_question_card(pending: PendingQuestion) -> Dict[str, Any]:
    index = pending.current_index
    question = pending.current_question
    draft = pending.drafts[index]
    return {
        "type": "question",
        "title": f"Question {index + 1}/{pending.total}",
        "header": question.header,
        "question": question.question,
        "multiple": question.multiple,
        "options": [
            {"index": i, "label": opt.label, "description": opt.description, "selected": i in draft.selected}
            for i, opt in enumerate(question.options)
        ],
        "actions": [
            {"action": "question_select", "conversation_key": pending.conversation_key, "question_index": index},
            {"action": "question_skip", "conversation_key": pending.conversation_key, "question_index": index},
        ],
        "request_id": pending.request.id,
    }


def build_answered_card(answers: List[List[str]]) -> Dict[str, Any]:
    return {
        "type": "question_answered",
        "title": "Answered",
        "answers": [", ".join(a) if a else "(skipped)" for a in answers],
    }


def build_permission_card(pending: PendingPermission, conversation_key: str) -> Dict[str, Any]:
    return {
        "type": "permission",
        "tool": pending.tool,
        "description": pending.description,
        "risk": RISK_LABELS.get(pending.risk or "", "✅ low risk"),
        "actions": [
            {"action": "permission_allow", "conversation_key": conversation_key,
             "permission_id": pending.permission_id},
            {"action": "permission_deny", "conversation_key": conversation_key,
             "permission_id": pending.permission_id},
        ],
    }


def build_permission_resolved_card(pending: PendingPermission, outcome: str) -> Dict[str, Any]:
    """outcome: allowed / denied / expired"""
    return {
        "type": "permission_resolved",
        "tool": pending.tool,
        "description": pending.description,
        "outcome": outcome,
    }
