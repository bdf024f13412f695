"""Bounded turn history and its derived last-message pointers."""

from __future__ import annotations

from model.conversation_record import InteractionRecord
from store.conversation_store import ConversationStore
from store.interaction_ledger import InteractionLedger
from store.kv import JsonFileStore, MemoryStore


def _ledger(capacity: int = 20):
    conversations = ConversationStore(MemoryStore())
    conversations.bind("chat-1", "oc_chat", "ses_00000001", creator_id="ou_alice")
    return conversations, InteractionLedger(conversations, capacity=capacity)


def test_push_evicts_oldest_beyond_capacity() -> None:
    conversations, ledger = _ledger()

    for i in range(25):
        ledger.push("chat-1", InteractionRecord(user_message_id=f"om_{i}", bot_message_ids=[f"bot_{i}"]))

    record = conversations.get("chat-1")
    assert len(record.interactions) == 20
    assert record.interactions[0].user_message_id == "om_5"
    assert record.last_user_message_id == "om_24"
    assert record.last_ai_message_id == "bot_24"


def test_pointers_skip_records_without_the_field() -> None:
    conversations, ledger = _ledger()

    ledger.push("chat-1", InteractionRecord(user_message_id="om_1", bot_message_ids=["bot_1", "bot_2"]))
    ledger.push("chat-1", InteractionRecord(kind="question_prompt", bot_message_ids=["card_q"]))
    ledger.push("chat-1", InteractionRecord(user_message_id="om_2", kind="question_answer"))

    record = conversations.get("chat-1")
    assert record.last_user_message_id == "om_2"
    assert record.last_ai_message_id == "card_q"


def test_eviction_recomputes_pointers_from_remaining_records() -> None:
    conversations, ledger = _ledger(capacity=2)

    ledger.push("chat-1", InteractionRecord(user_message_id="om_1", bot_message_ids=["bot_1"]))
    ledger.push("chat-1", InteractionRecord(user_message_id="om_2"))
    ledger.push("chat-1", InteractionRecord(user_message_id="om_3"))

    record = conversations.get("chat-1")
    assert [i.user_message_id for i in record.interactions] == ["om_2", "om_3"]
    assert record.last_ai_message_id is None


def test_pop_returns_newest_and_recomputes() -> None:
    conversations, ledger = _ledger()
    ledger.push("chat-1", InteractionRecord(user_message_id="om_1", bot_message_ids=["bot_1"]))
    ledger.push("chat-1", InteractionRecord(user_message_id="om_2", bot_message_ids=["bot_2"]))

    popped = ledger.pop("chat-1")

    assert popped.user_message_id == "om_2"
    record = conversations.get("chat-1")
    assert record.last_user_message_id == "om_1"
    assert record.last_ai_message_id == "bot_1"

    ledger.pop("chat-1")
    assert ledger.pop("chat-1") is None
    assert conversations.get("chat-1").last_user_message_id is None


def test_push_for_unknown_conversation_is_ignored() -> None:
    _, ledger = _ledger()
    assert ledger.push("nope", InteractionRecord(user_message_id="om_1")) is False


def test_find_by_bot_message_and_update_where() -> None:
    _, ledger = _ledger()
    ledger.push("chat-1", InteractionRecord(user_message_id="om_1", bot_message_ids=["bot_1"]))
    ledger.push("chat-1", InteractionRecord(kind="question_prompt", bot_message_ids=["card_q"]))

    found = ledger.find_by_bot_message("chat-1", "card_q")
    assert found.kind == "question_prompt"
    assert ledger.find_by_bot_message("chat-1", "missing") is None

    def attach(item: InteractionRecord) -> None:
        item.ui_state = {"answered": True}

    assert ledger.update_where("chat-1", lambda item: "card_q" in item.bot_message_ids, attach)
    assert ledger.last("chat-1").ui_state == {"answered": True}
    assert not ledger.update_where("chat-1", lambda item: False, attach)


def test_append_bot_message_and_latest_agent_message() -> None:
    conversations, ledger = _ledger()
    ledger.push("chat-1", InteractionRecord(user_message_id="om_1", agent_message_id="msg_a"))
    ledger.push("chat-1", InteractionRecord(kind="question_prompt", bot_message_ids=["card_q"]))

    assert ledger.append_bot_message("chat-1", "om_1", "bot_late")
    assert conversations.get("chat-1").interactions[0].bot_message_ids == ["bot_late"]
    assert ledger.latest_agent_message_id("chat-1") == "msg_a"


def test_ledger_survives_restart_through_json_store(tmp_path) -> None:
    path = tmp_path / "conversations.json"
    conversations = ConversationStore(JsonFileStore(path))
    conversations.bind("chat-1", "oc_chat", "ses_00000001")
    InteractionLedger(conversations).push(
        "chat-1", InteractionRecord(user_message_id="om_1", agent_message_id="msg_a", bot_message_ids=["bot_1"])
    )

    reloaded = ConversationStore(JsonFileStore(path))
    record = reloaded.get("chat-1")

    assert record.session_ref == "ses_00000001"
    assert record.interactions[0].agent_message_id == "msg_a"
    assert record.last_ai_message_id == "bot_1"


def test_malformed_file_starts_empty(tmp_path) -> None:
    path = tmp_path / "conversations.json"
    path.write_text("{not json", encoding="utf-8")

    conversations = ConversationStore(JsonFileStore(path))

    assert conversations.get("chat-1") is None
    conversations.bind("chat-1", "oc_chat", "ses_00000001")
    assert ConversationStore(JsonFileStore(path)).get("chat-1") is not None


def test_malformed_record_is_dropped(tmp_path) -> None:
    kv = MemoryStore()
    kv.set("good", {"conversation_key": "good", "chat_ref": "oc", "session_ref": "ses_1"})
    kv.set("bad", {"interactions": "not a list"})

    conversations = ConversationStore(kv)

    assert conversations.get("good") is not None
    assert conversations.get("bad") is None
