import asyncio
import json
import logging
from contextlib import aclosing
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx
from pydantic import ValidationError

from adapters.agent.agent_backend import AgentBackend
from engine.errors import BackendUnavailable
from engine.permission_arbiter import normalize_tool_name
from engine.turn_engine import TurnEngine
from model.permission import PermissionRequest
from model.question import QuestionRequest
from model.result_event import ModelSelector, ResultPart, TurnPart, TurnResult
from shared.scheduler import wait_or_stop

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 15.0


def _to_result_part(raw: Dict[str, Any]) -> ResultPart:
    ptype = raw.get("type")
    if ptype == "text":
        return ResultPart(type="text", text=raw.get("text") or "")
    if ptype == "reasoning":
        return ResultPart(type="reasoning", text=raw.get("text") or "")
    if ptype == "tool":
        state = raw.get("state") or {}
        return ResultPart(type="tool", tool=raw.get("tool"), status=state.get("status"), output=state.get("output"))
    return ResultPart(type="other")


def parse_turn_result(data: Dict[str, Any]) -> TurnResult:
    info = data.get("info") or {}
    return TurnResult(
        message_id=info.get("id") or "",
        parts=[_to_result_part(p) for p in (data.get("parts") or []) if isinstance(p, dict)],
    )


class OpencodeClient(AgentBackend):
    def __init__(self, base_url: str, client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=DEFAULT_TIMEOUT)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            r = await self._client.request(method, path, **kwargs)
            r.raise_for_status()
            return r
        except httpx.HTTPError as e:
            logger.warning("[OPENCODE] %s %s failed: %s", method, path, e)
            raise BackendUnavailable(f"{method} {path} failed: {e}") from e

    async def create_session(self, title: str) -> Optional[str]:
        r = await self._request("POST", "/session", json={"title": title or "New conversation"})
        session_id = (r.json() or {}).get("id")
        if session_id:
            logger.info("[OPENCODE] created session %s", session_id[:8])
        return session_id

    async def delete_session(self, session_ref: str) -> None:
        await self._request("DELETE", f"/session/{session_ref}")
        logger.info("[OPENCODE] deleted session %s", session_ref[:8])

    async def send_turn(self, session_ref: str, parts: List[TurnPart], model: ModelSelector) -> TurnResult:
        body: Dict[str, Any] = {
            "parts": [p.model_dump(exclude_none=True) for p in parts],
            "model": {"providerID": model.provider_id, "modelID": model.model_id},
        }
        if model.agent:
            body["agent"] = model.agent
        # The turn can run for minutes; the engine decides how long to wait.
        r = await self._request("POST", f"/session/{session_ref}/message", json=body, timeout=None)
        return parse_turn_result(r.json() or {})

    async def reply_question(self, request_id: str, answers: List[List[str]]) -> bool:
        try:
            await self._request("POST", f"/question/{request_id}/reply", json={"answers": answers})
        except BackendUnavailable:
            return False
        return True

    async def respond_permission(self, session_ref: str, permission_id: str,
                                 allow: bool, remember: bool = False) -> bool:
        response = ("always" if remember else "once") if allow else "reject"
        try:
            await self._request("POST", f"/session/{session_ref}/permissions/{permission_id}",
                                json={"response": response})
        except BackendUnavailable:
            return False
        return True

    async def abort_session(self, session_ref: str) -> bool:
        try:
            r = await self._request("POST", f"/session/{session_ref}/abort")
        except BackendUnavailable:
            return False
        return r.json() is True

    async def list_message_ids(self, session_ref: str) -> List[str]:
        r = await self._request("GET", f"/session/{session_ref}/message")
        return [((m or {}).get("info") or {}).get("id", "") for m in (r.json() or [])]

    async def revert_turn(self, session_ref: str, agent_message_id: str,
                          after: Optional[str] = None) -> bool:
        """
        Revert removes the target message and everything after it, so target the
        user message right before the agent reply. Without a known agent message
        (question answers) target the first message after `after`, and with no
        anchor at all drop the last two messages.
        """
        ids = await self.list_message_ids(session_ref)
        target = ""
        if agent_message_id and agent_message_id in ids:
            idx = ids.index(agent_message_id)
            target = ids[idx - 1] if idx >= 1 else ids[idx]
        elif after and after in ids:
            idx = ids.index(after)
            target = ids[idx + 1] if idx + 1 < len(ids) else ""
        elif len(ids) >= 2:
            target = ids[-2]
        elif ids:
            target = ids[0]
        if not target:
            return False
        try:
            await self._request("POST", f"/session/{session_ref}/revert", json={"messageID": target})
        except BackendUnavailable:
            return False
        return True

    async def iter_events(self) -> AsyncIterator[Dict[str, Any]]:
        """Server-sent events from /event, one decoded JSON object per `data:` line."""
        try:
            async with self._client.stream("GET", "/event", timeout=None) as r:
                r.raise_for_status()
                async for line in r.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    payload = line[5:].strip()
                    if not payload:
                        continue
                    try:
                        event = json.loads(payload)
                    except ValueError:
                        logger.warning("[OPENCODE] undecodable event: %s", payload[:200])
                        continue
                    if isinstance(event, dict):
                        yield event
        except httpx.HTTPError as e:
            raise BackendUnavailable(f"event stream failed: {e}") from e


# ---- event pump ----

TOOL_STATUS_MAP = {"pending": "pending", "running": "running", "completed": "completed",
                   "error": "failed", "failed": "failed"}
PERMISSION_EVENTS = ("permission.asked", "permission.request", "permission.updated")
RECONNECT_DELAY = 5.0


def _permission_from_event(props: Dict[str, Any]) -> Optional[PermissionRequest]:
    session_ref = props.get("sessionID")
    permission_id = props.get("id")
    if not session_ref or not permission_id:
        return None
    tool = normalize_tool_name(props.get("permission") or props.get("tool") or props.get("type")) or "unknown"
    risk = props.get("risk") if props.get("risk") in ("low", "medium", "high") else None
    return PermissionRequest(
        session_ref=session_ref,
        permission_id=permission_id,
        tool=tool,
        description=props.get("title") or props.get("description") or "",
        risk=risk,
    )


async def dispatch_event(engine: TurnEngine, event: Dict[str, Any]) -> None:
    etype = event.get("type")
    props = event.get("properties") or {}

    if etype == "message.part.updated":
        part = props.get("part") or {}
        session_ref = part.get("sessionID")
        if not session_ref:
            return
        ptype = part.get("type")
        delta = props.get("delta")
        message_id = part.get("messageID")
        if ptype in ("text", "reasoning") and delta:
            await engine.on_stream_delta(session_ref, ptype, delta, message_id=message_id)
        elif ptype == "tool":
            state = part.get("state") or {}
            status = TOOL_STATUS_MAP.get(state.get("status"))
            if status:
                await engine.on_tool_event(session_ref, part.get("tool") or "", status, state.get("output"),
                                           message_id=message_id)

    elif etype == "question.asked":
        try:
            request = QuestionRequest.model_validate(props)
        except ValidationError:
            logger.warning("[OPENCODE] malformed question event: %s", props)
            return
        await engine.on_question_asked(request)

    elif etype in PERMISSION_EVENTS:
        request = _permission_from_event(props)
        if request is None:
            logger.warning("[OPENCODE] malformed permission event: %s", props)
            return
        await engine.on_permission_requested(request)


async def pump_events(client: OpencodeClient, engine: TurnEngine, stop_event: asyncio.Event,
                      retry_delay: float = RECONNECT_DELAY) -> None:
    """Runs until stop_event is set, reconnecting after stream failures."""
    while not stop_event.is_set():
        try:
            async with aclosing(client.iter_events()) as events:
                async for event in events:
                    try:
                        await dispatch_event(engine, event)
                    except Exception:
                        logger.exception("[OPENCODE] failed to handle %s event", event.get("type"))
                    if stop_event.is_set():
                        break
        except BackendUnavailable as e:
            logger.warning("[OPENCODE] event stream dropped: %s", e)
        await wait_or_stop(stop_event, retry_delay)
