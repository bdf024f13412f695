"""Shared fixtures: in-memory collaborators and a fully wired engine on virtual time."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

import pytest

from adapters.agent.agent_backend import AgentBackend
from adapters.chat.chat_adapter import ChatAdapter
from config.settings import BridgeSettings
from engine.delayed_registry import DelayedResponseRegistry
from engine.permission_arbiter import PermissionArbiter
from engine.question_flow import QuestionFlowEngine
from engine.turn_engine import TurnEngine
from model.result_event import ModelSelector, TurnPart, TurnResult
from shared.scheduler import ManualScheduler
from store.conversation_store import ConversationStore
from store.interaction_ledger import InteractionLedger
from store.kv import MemoryStore


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class FakeChat(ChatAdapter):
    def __init__(self, supports_cards: bool = True):
        self.supports_cards = supports_cards
        self.cards_sent: List[tuple[str, Dict[str, Any]]] = []
        self.cards_updated: List[tuple[str, Dict[str, Any]]] = []
        self.replies: List[tuple[str, str]] = []
        self.texts: List[tuple[str, str]] = []
        self.deleted: List[str] = []
        self._seq = 0

    def _next_id(self, prefix: str) -> str:
        self._seq += 1
        return f"{prefix}_{self._seq}"

    async def send_card(self, chat_ref: str, card: Dict[str, Any]) -> Optional[str]:
        self.cards_sent.append((chat_ref, card))
        return self._next_id("card")

    async def update_card(self, message_ref: str, card: Dict[str, Any]) -> None:
        self.cards_updated.append((message_ref, card))

    async def reply(self, message_ref: str, text: str) -> Optional[str]:
        self.replies.append((message_ref, text))
        return self._next_id("reply")

    async def send_text(self, chat_ref: str, text: str) -> Optional[str]:
        self.texts.append((chat_ref, text))
        return self._next_id("text")

    async def delete_message(self, message_ref: str) -> bool:
        self.deleted.append(message_ref)
        return True

    def reply_texts(self) -> List[str]:
        return [text for _, text in self.replies]


class FakeBackend(AgentBackend):
    """
    send_turn resolves immediately with `next_result` unless `hold` is set, in
    which case it waits for release().
    """

    def __init__(self):
        self.sessions_created = 0
        self.create_session_result: Optional[str] = None
        self.next_result = TurnResult(message_id="msg_agent_1", parts=[{"type": "text", "text": "hello"}])
        self.turn_error: Optional[Exception] = None
        self.hold = False
        self.turn_started = asyncio.Event()
        self._release: Optional[asyncio.Future] = None
        self.turns: List[tuple[str, List[TurnPart], ModelSelector]] = []
        self.question_replies: List[tuple[str, List[List[str]]]] = []
        self.reply_ok = True
        self.permission_responses: List[tuple[str, str, bool, bool]] = []
        self.deleted_sessions: List[str] = []
        self.reverted: List[tuple[str, str, Optional[str]]] = []
        self.aborted: List[str] = []

    async def create_session(self, title: str) -> Optional[str]:
        self.sessions_created += 1
        if self.create_session_result is not None:
            return self.create_session_result or None
        return f"ses_{self.sessions_created:08d}"

    async def send_turn(self, session_ref: str, parts: List[TurnPart], model: ModelSelector) -> TurnResult:
        self.turns.append((session_ref, parts, model))
        self.turn_started.set()
        if self.turn_error is not None:
            raise self.turn_error
        if self.hold:
            self._release = asyncio.get_running_loop().create_future()
            return await self._release
        return self.next_result

    def release(self, result: Optional[TurnResult] = None, error: Optional[Exception] = None) -> None:
        if error is not None:
            self._release.set_exception(error)
        else:
            self._release.set_result(result or self.next_result)

    async def reply_question(self, request_id: str, answers: List[List[str]]) -> bool:
        self.question_replies.append((request_id, answers))
        return self.reply_ok

    async def delete_session(self, session_ref: str) -> None:
        self.deleted_sessions.append(session_ref)

    async def respond_permission(self, session_ref: str, permission_id: str,
                                 allow: bool, remember: bool = False) -> bool:
        self.permission_responses.append((session_ref, permission_id, allow, remember))
        return True

    async def abort_session(self, session_ref: str) -> bool:
        self.aborted.append(session_ref)
        return True

    async def revert_turn(self, session_ref: str, agent_message_id: str,
                          after: Optional[str] = None) -> bool:
        self.reverted.append((session_ref, agent_message_id, after))
        return True


@pytest.fixture
def settings() -> BridgeSettings:
    return BridgeSettings(store_backend="memory", turn_wait_window=180.0, tool_whitelist=["Read", "Glob"])


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler(start=1000.0)


@pytest.fixture
def chat() -> FakeChat:
    return FakeChat()


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def conversations() -> ConversationStore:
    return ConversationStore(MemoryStore())


@pytest.fixture
def make_engine(settings, backend, conversations, scheduler):
    def _make(chat: ChatAdapter) -> TurnEngine:
        return TurnEngine(
            settings=settings,
            chat=chat,
            backend=backend,
            conversations=conversations,
            ledger=InteractionLedger(conversations, capacity=settings.ledger_capacity),
            questions=QuestionFlowEngine(backend, clock=scheduler.now),
            permissions=PermissionArbiter(settings.tool_whitelist, settings.permission_timeout, clock=scheduler.now),
            delayed=DelayedResponseRegistry(clock=scheduler.now),
            scheduler=scheduler,
        )

    return _make


@pytest.fixture
def engine(make_engine, chat) -> TurnEngine:
    return make_engine(chat)
