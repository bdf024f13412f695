# engine/delayed_registry.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional

from model.result_event import TurnResult
from shared import time

logger = logging.getLogger(__name__)

DelayedCallback = Callable[[TurnResult], Awaitable[None]]


@dataclass
class DelayedRequest:
    conversation_key: str
    chat_ref: str
    session_ref: str
    callback: DelayedCallback
    created_at: float
    anchor_message_ref: Optional[str] = None


class DelayedResponseRegistry:
    """
    One pending resolution per conversation key for turns that outlived the
    synchronous wait window. Entries never expire on their own.
    """

    def __init__(self, clock: Callable[[], float] = time.now):
        self.clock = clock
        self._pending: Dict[str, DelayedRequest] = {}

    def register(self, request: DelayedRequest) -> None:
        if request.conversation_key in self._pending:
            logger.info("[DELAYED] replacing registration for %s", request.conversation_key)
        self._pending[request.conversation_key] = request
        logger.info("[DELAYED] registered %s session=%s", request.conversation_key, request.session_ref[:8])

    def get(self, key: str) -> Optional[DelayedRequest]:
        return self._pending.get(key)

    def has(self, key: str) -> bool:
        return key in self._pending

    def remove(self, key: str) -> Optional[DelayedRequest]:
        request = self._pending.pop(key, None)
        if request:
            logger.info("[DELAYED] removed %s", key)
        return request

    def find_by_session(self, session_ref: str) -> Optional[DelayedRequest]:
        for request in self._pending.values():
            if request.session_ref == session_ref:
                return request
        return None

    async def resolve(self, key: str, result: TurnResult) -> bool:
        """Fire the stored callback once. Results with no listener are dropped."""
        request = self._pending.pop(key, None)
        if request is None:
            logger.info("[DELAYED] no listener for %s, dropping late result", key)
            return False
        try:
            await request.callback(result)
        except Exception:
            logger.exception("[DELAYED] callback failed for %s", key)
            return False
        logger.info("[DELAYED] resolved %s after %.1fs", key, self.clock() - request.created_at)
        return True

    async def resolve_session(self, session_ref: str, result: TurnResult) -> bool:
        request = self.find_by_session(session_ref)
        if request is None:
            return False
        return await self.resolve(request.conversation_key, result)

    def cleanup_expired(self, max_age: float) -> List[DelayedRequest]:
        """Explicit sweep only (e.g. on shutdown with max_age=0)."""
        now = self.clock()
        expired = [r for r in self._pending.values() if now - r.created_at >= max_age]
        for request in expired:
            del self._pending[request.conversation_key]
        if expired:
            logger.info("[DELAYED] cleaned up %d registrations", len(expired))
        return expired

    def __len__(self) -> int:
        return len(self._pending)
