from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from engine.delayed_registry import DelayedRequest, DelayedResponseRegistry
from model.result_event import TurnResult


def _request(key: str = "chat-1", callback=None, created_at: float = 0.0) -> DelayedRequest:
    return DelayedRequest(
        conversation_key=key,
        chat_ref="oc_chat",
        session_ref=f"ses_{key}",
        callback=callback or AsyncMock(),
        created_at=created_at,
    )


@pytest.mark.anyio
async def test_resolve_fires_callback_exactly_once() -> None:
    registry = DelayedResponseRegistry(clock=lambda: 5.0)
    request = _request()
    registry.register(request)
    result = TurnResult(message_id="msg_1")

    assert await registry.resolve("chat-1", result) is True
    assert await registry.resolve("chat-1", result) is False

    request.callback.assert_awaited_once_with(result)
    assert not registry.has("chat-1")


@pytest.mark.anyio
async def test_register_overwrites_previous_entry() -> None:
    registry = DelayedResponseRegistry()
    old, new = _request(), _request()
    registry.register(old)
    registry.register(new)

    await registry.resolve_session("ses_chat-1", TurnResult())

    old.callback.assert_not_awaited()
    new.callback.assert_awaited_once()


@pytest.mark.anyio
async def test_result_without_listener_is_dropped() -> None:
    registry = DelayedResponseRegistry()
    assert await registry.resolve_session("ses_unknown", TurnResult()) is False
    assert len(registry) == 0


@pytest.mark.anyio
async def test_failing_callback_is_still_consumed() -> None:
    registry = DelayedResponseRegistry()
    registry.register(_request(callback=AsyncMock(side_effect=RuntimeError("chat down"))))

    assert await registry.resolve("chat-1", TurnResult()) is False
    assert not registry.has("chat-1")


def test_entries_only_expire_on_explicit_cleanup() -> None:
    registry = DelayedResponseRegistry(clock=lambda: 1000.0)
    registry.register(_request("chat-1", created_at=0.0))
    registry.register(_request("chat-2", created_at=990.0))

    assert registry.get("chat-1") is not None
    expired = registry.cleanup_expired(max_age=100)

    assert [r.conversation_key for r in expired] == ["chat-1"]
    assert registry.find_by_session("ses_chat-2") is not None
    assert registry.remove("chat-2") is not None
    assert len(registry) == 0
