from __future__ import annotations

import logging
from typing import Dict, Optional

from pydantic import ValidationError

from engine.errors import PersistenceFailure
from model.conversation_record import ConversationRecord
from shared import time
from store.kv import KeyValueStore

logger = logging.getLogger(__name__)


class ConversationStore:
    """
    Conversation records keyed by conversation key.
    The in-memory table is authoritative for the process lifetime; the KV store
    is written through on every mutation and read through on cache misses.
    """

    def __init__(self, kv: KeyValueStore):
        self.kv = kv
        self._records: Dict[str, ConversationRecord] = {}
        self._load()

    def _load(self) -> None:
        try:
            entries = list(self.kv.items())
        except PersistenceFailure:
            logger.exception("[STORE] Could not read persisted conversations, starting empty")
            return
        for key, raw in entries:
            record = self._parse(key, raw)
            if record:
                self._records[key] = record
        logger.info("[STORE] Loaded %d conversations", len(self._records))

    @staticmethod
    def _parse(key: str, raw) -> Optional[ConversationRecord]:
        try:
            return ConversationRecord.model_validate(raw)
        except ValidationError:
            logger.error("[STORE] Dropping malformed conversation %s", key)
            return None

    def save(self, record: ConversationRecord) -> None:
        self._records[record.conversation_key] = record
        try:
            self.kv.set(record.conversation_key, record.model_dump(mode="json"))
        except PersistenceFailure:
            logger.exception("[STORE] Write-through failed for %s, keeping in-memory state",
                             record.conversation_key)

    def get(self, key: str) -> Optional[ConversationRecord]:
        record = self._records.get(key)
        if record is not None:
            return record
        try:
            raw = self.kv.get(key)
        except PersistenceFailure:
            logger.exception("[STORE] Read-through failed for %s", key)
            return None
        if raw is None:
            return None
        record = self._parse(key, raw)
        if record:
            self._records[key] = record
        return record

    def get_session_ref(self, key: str) -> Optional[str]:
        record = self.get(key)
        return record.session_ref if record and record.session_ref else None

    def find_by_session(self, session_ref: str) -> Optional[ConversationRecord]:
        for record in self._records.values():
            if record.session_ref == session_ref:
                return record
        return None

    def bind(self, key: str, chat_ref: str, session_ref: str,
             creator_id: str = "", title: Optional[str] = None) -> ConversationRecord:
        """Bind (or rebind) a conversation to an agent session. Ledger starts fresh on rebind."""
        previous = self.get(key)
        record = ConversationRecord(
            conversation_key=key,
            chat_ref=chat_ref,
            session_ref=session_ref,
            creator_id=creator_id,
            title=title,
            created_at=time.wall_clock(),
            preferred_model=previous.preferred_model if previous else None,
            preferred_agent=previous.preferred_agent if previous else None,
            protect_from_delete=previous.protect_from_delete if previous else False,
        )
        self.save(record)
        logger.info("[STORE] Bound %s -> session %s", key, session_ref[:8])
        return record

    def update_config(self, key: str, **changes) -> Optional[ConversationRecord]:
        allowed = {"preferred_model", "preferred_agent", "protect_from_delete", "title"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValueError(f"Unknown conversation settings: {sorted(unknown)}")
        record = self.get(key)
        if record is None:
            return None
        for name, value in changes.items():
            setattr(record, name, value)
        self.save(record)
        return record

    def remove(self, key: str) -> Optional[ConversationRecord]:
        record = self._records.pop(key, None)
        try:
            self.kv.delete(key)
        except PersistenceFailure:
            logger.exception("[STORE] Delete failed for %s", key)
        if record:
            logger.info("[STORE] Removed conversation %s", key)
        return record
