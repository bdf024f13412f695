from __future__ import annotations

import logging
from typing import Callable, Optional

from model.conversation_record import ConversationRecord, InteractionRecord
from shared import time
from store.conversation_store import ConversationStore

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 20


def _recompute_pointers(record: ConversationRecord) -> None:
    """Newest non-empty value of each field wins; None when no record carries one."""
    record.last_user_message_id = None
    record.last_ai_message_id = None
    for item in reversed(record.interactions):
        if record.last_user_message_id is None and item.user_message_id:
            record.last_user_message_id = item.user_message_id
        if record.last_ai_message_id is None and item.bot_message_ids:
            record.last_ai_message_id = item.bot_message_ids[-1]
        if record.last_user_message_id is not None and record.last_ai_message_id is not None:
            break


class InteractionLedger:
    """Bounded per-conversation history of completed turns (FIFO eviction)."""

    def __init__(self, conversations: ConversationStore, capacity: int = DEFAULT_CAPACITY):
        self.conversations = conversations
        self.capacity = capacity

    def push(self, key: str, item: InteractionRecord) -> bool:
        record = self.conversations.get(key)
        if record is None:
            logger.warning("[LEDGER] push for unknown conversation %s ignored", key)
            return False
        if not item.timestamp:
            item.timestamp = time.wall_clock()
        record.interactions.append(item)
        while len(record.interactions) > self.capacity:
            record.interactions.pop(0)
        _recompute_pointers(record)
        self.conversations.save(record)
        return True

    def pop(self, key: str) -> Optional[InteractionRecord]:
        record = self.conversations.get(key)
        if record is None or not record.interactions:
            return None
        item = record.interactions.pop()
        _recompute_pointers(record)
        self.conversations.save(record)
        return item

    def last(self, key: str) -> Optional[InteractionRecord]:
        record = self.conversations.get(key)
        if record is None or not record.interactions:
            return None
        return record.interactions[-1]

    def find_by_bot_message(self, key: str, message_ref: str) -> Optional[InteractionRecord]:
        record = self.conversations.get(key)
        if record is None:
            return None
        for item in record.interactions:
            if message_ref in item.bot_message_ids:
                return item
        return None

    def update_where(
        self,
        key: str,
        predicate: Callable[[InteractionRecord], bool],
        mutator: Callable[[InteractionRecord], None],
    ) -> bool:
        record = self.conversations.get(key)
        if record is None:
            return False
        for item in record.interactions:
            if predicate(item):
                mutator(item)
                _recompute_pointers(record)
                self.conversations.save(record)
                return True
        return False

    def append_bot_message(self, key: str, user_message_ref: str, message_ref: str) -> bool:
        return self.update_where(
            key,
            lambda item: item.user_message_id == user_message_ref,
            lambda item: item.bot_message_ids.append(message_ref),
        )

    def latest_agent_message_id(self, key: str) -> Optional[str]:
        record = self.conversations.get(key)
        if record is None:
            return None
        for item in reversed(record.interactions):
            if item.agent_message_id:
                return item.agent_message_id
        return None
