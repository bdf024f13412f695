"""Conversation repository over the key-value persistence port."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from engine.errors import PersistenceFailure
from store.conversation_store import ConversationStore
from store.kv import FirestoreStore, KeyValueStore, MemoryStore


class BrokenStore(KeyValueStore):
    def get(self, key):
        raise PersistenceFailure("read failed")

    def set(self, key, value):
        raise PersistenceFailure("disk full")

    def delete(self, key):
        raise PersistenceFailure("disk full")

    def items(self):
        raise PersistenceFailure("unreadable")


def test_bind_writes_through_and_reads_back() -> None:
    kv = MemoryStore()
    conversations = ConversationStore(kv)

    conversations.bind("chat-1", "oc_chat", "ses_00000001", creator_id="ou_alice", title="hello")

    assert kv.get("chat-1")["session_ref"] == "ses_00000001"
    assert ConversationStore(kv).get("chat-1").title == "hello"
    assert conversations.get_session_ref("chat-1") == "ses_00000001"
    assert conversations.find_by_session("ses_00000001").conversation_key == "chat-1"


def test_rebind_keeps_preferences() -> None:
    conversations = ConversationStore(MemoryStore())
    conversations.bind("chat-1", "oc_chat", "ses_00000001")
    conversations.update_config("chat-1", preferred_model="anthropic:claude", protect_from_delete=True)

    record = conversations.bind("chat-1", "oc_chat", "ses_00000002")

    assert record.session_ref == "ses_00000002"
    assert record.preferred_model == "anthropic:claude"
    assert record.protect_from_delete is True
    assert record.interactions == []


def test_update_config_rejects_unknown_fields() -> None:
    conversations = ConversationStore(MemoryStore())
    conversations.bind("chat-1", "oc_chat", "ses_00000001")

    with pytest.raises(ValueError):
        conversations.update_config("chat-1", session_ref="other")

    assert conversations.update_config("missing", title="x") is None


def test_remove_deletes_from_both_layers() -> None:
    kv = MemoryStore()
    conversations = ConversationStore(kv)
    conversations.bind("chat-1", "oc_chat", "ses_00000001")

    assert conversations.remove("chat-1") is not None
    assert conversations.get("chat-1") is None
    assert kv.get("chat-1") is None


def test_persistence_failures_keep_memory_authoritative() -> None:
    conversations = ConversationStore(BrokenStore())

    record = conversations.bind("chat-1", "oc_chat", "ses_00000001")
    conversations.update_config("chat-1", preferred_agent="build")

    assert conversations.get("chat-1") is record
    assert record.preferred_agent == "build"
    assert conversations.get("unknown") is None


def test_firestore_store_maps_documents() -> None:
    db = MagicMock()
    collection = db.collection.return_value
    doc = MagicMock()
    doc.exists = True
    doc.to_dict.return_value = {"conversation_key": "chat-1", "chat_ref": "oc", "session_ref": "ses_1"}
    collection.document.return_value.get.return_value = doc

    store = FirestoreStore(db)
    assert store.get("chat-1")["session_ref"] == "ses_1"

    store.set("chat-1", {"a": 1})
    collection.document.return_value.set.assert_called_once_with({"a": 1})
    db.collection.assert_called_once_with("conversations")


def test_firestore_errors_become_persistence_failures() -> None:
    db = MagicMock()
    db.collection.return_value.document.return_value.set.side_effect = RuntimeError("quota")

    with pytest.raises(PersistenceFailure):
        FirestoreStore(db).set("chat-1", {})
