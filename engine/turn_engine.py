"""
Turn orchestration between the chat surface and the agent backend.

Inbound user messages go to a pending question first; otherwise they start an
agent turn that races the synchronous wait window. Turns that outlive the
window are handed to the delayed-response registry and finish in the
background. Backend events (stream deltas, tool updates, questions, permission
requests) are routed back to the owning conversation by session id.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Set

from adapters.agent.agent_backend import AgentBackend
from adapters.chat.cards import (
    build_answered_card,
    build_permission_card,
    build_permission_resolved_card,
    build_question_card,
    build_stream_card,
)
from adapters.chat.chat_adapter import ChatAdapter
from config.settings import BridgeSettings
from engine.delayed_registry import DelayedRequest, DelayedResponseRegistry
from engine.errors import BackendUnavailable, BridgeError, TurnTimeout, UnrecognizedAnswer
from engine.output_coalescer import OutputCoalescer
from engine.permission_arbiter import PermissionArbiter
from engine.question_flow import AnswerOutcome, QuestionFlowEngine
from engine.question_parser import classify_answer
from model.conversation_record import ConversationRecord, InteractionRecord
from model.input_event import CardAction, InboundMessage
from model.permission import PermissionRequest
from model.question import ParsedAnswer, QuestionInfo, QuestionRequest
from model.result_event import ModelSelector, TurnPart, TurnResult, format_output
from model.stream import BufferedOutput, ToolStatus
from shared.scheduler import Scheduler
from store.conversation_store import ConversationStore
from store.interaction_ledger import InteractionLedger

logger = logging.getLogger(__name__)

Classifier = Callable[[str, QuestionInfo], ParsedAnswer]

SESSION_TITLE_LIMIT = 50
SUBMITTING_NOTICE = "⏳ Your answers are being submitted, please wait."


def _toast(kind: str, content: str) -> Dict[str, Any]:
    return {"toast": {"type": kind, "content": content}}


def _session_title(msg: InboundMessage) -> str:
    first_line = (msg.text or "").strip().splitlines()[0] if (msg.text or "").strip() else ""
    return first_line[:SESSION_TITLE_LIMIT] or f"Chat {msg.conversation_key}"


class TurnEngine:
    def __init__(
        self,
        *,
        settings: BridgeSettings,
        chat: ChatAdapter,
        backend: AgentBackend,
        conversations: ConversationStore,
        ledger: InteractionLedger,
        questions: QuestionFlowEngine,
        permissions: PermissionArbiter,
        delayed: DelayedResponseRegistry,
        scheduler: Scheduler,
        classify: Classifier = classify_answer,
    ):
        self.settings = settings
        self.chat = chat
        self.backend = backend
        self.conversations = conversations
        self.ledger = ledger
        self.questions = questions
        self.permissions = permissions
        self.delayed = delayed
        self.scheduler = scheduler
        self.classify = classify

        interval = settings.stream_update_interval if chat.supports_cards else settings.output_update_interval
        self.coalescer = OutputCoalescer(scheduler, self._render_stream, interval)
        self._background: Set[asyncio.Future] = set()

    # ---- best-effort chat delivery ----

    async def _safe_reply(self, message_ref: str, text: str) -> Optional[str]:
        try:
            return await self.chat.reply(message_ref, text)
        except Exception:
            logger.exception("[TURN] reply to %s failed", message_ref)
            return None

    async def _safe_send_card(self, chat_ref: str, card: Dict[str, Any]) -> Optional[str]:
        try:
            return await self.chat.send_card(chat_ref, card)
        except Exception:
            logger.exception("[TURN] send_card to %s failed", chat_ref)
            return None

    async def _safe_update_card(self, message_ref: str, card: Dict[str, Any]) -> None:
        try:
            await self.chat.update_card(message_ref, card)
        except Exception:
            logger.exception("[TURN] update_card %s failed", message_ref)

    # ---- inbound messages ----

    async def handle_message(self, msg: InboundMessage) -> None:
        if not (msg.text or "").strip() and not msg.has_attachments:
            return
        try:
            if self.questions.has(msg.conversation_key):
                await self._answer_from_text(msg)
            else:
                await self._run_turn(msg)
        except BridgeError as e:
            logger.warning("[TURN] %s: %s", msg.conversation_key, e)
            await self._safe_reply(msg.message_ref, e.user_message)
        except Exception:
            logger.exception("[TURN] unexpected failure for %s", msg.conversation_key)
            await self._safe_reply(msg.message_ref, BridgeError.user_message)

    async def _ensure_session(self, msg: InboundMessage) -> ConversationRecord:
        record = self.conversations.get(msg.conversation_key)
        if record and record.session_ref:
            return record

        title = _session_title(msg)
        session_ref = await self.backend.create_session(title)
        if not session_ref:
            raise BackendUnavailable("agent backend returned no session id")
        return self.conversations.bind(
            msg.conversation_key, msg.chat_ref, session_ref, creator_id=msg.sender_id, title=title
        )

    def model_for(self, record: ConversationRecord) -> ModelSelector:
        return ModelSelector.resolve(
            record.preferred_model,
            self.settings.default_provider,
            self.settings.default_model,
            record.preferred_agent,
        )

    async def _run_turn(self, msg: InboundMessage) -> None:
        key = msg.conversation_key
        record = await self._ensure_session(msg)
        session_ref = record.session_ref

        # a new synchronous turn supersedes whatever was still waiting
        self.delayed.remove(key)
        previous = self.coalescer.get(key)
        buffer = self.coalescer.open(key, msg.chat_ref, session_ref, msg.message_ref)
        if previous and previous.session_ref == session_ref:
            # the superseded turn may keep streaming on the same session
            buffer.ignored_message_ids = previous.ignored_message_ids | previous.agent_message_ids

        parts = [TurnPart(type="text", text=msg.text)]
        model = self.model_for(record)
        logger.info("[TURN] %s -> session %s (%s/%s)", key, session_ref[:8], model.provider_id, model.model_id)
        turn_task = asyncio.ensure_future(self.backend.send_turn(session_ref, parts, model))

        try:
            result = await self._wait_for_turn(turn_task)
        except TurnTimeout:
            self._go_delayed(msg, session_ref, turn_task)
            await self._safe_reply(msg.message_ref, TurnTimeout.user_message)
            return
        except Exception:
            await self._fail_buffer(key, msg.message_ref)
            raise

        await self._complete_turn(msg, result)

    async def _wait_for_turn(self, turn_task: asyncio.Future) -> TurnResult:
        loop = asyncio.get_running_loop()
        expired = loop.create_future()

        async def _expire() -> None:
            if not expired.done():
                expired.set_result(None)

        handle = self.scheduler.call_later(self.settings.turn_wait_window, _expire)
        try:
            await asyncio.wait({turn_task, expired}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            handle.cancel()
            if not expired.done():
                expired.cancel()

        if not turn_task.done():
            raise TurnTimeout(f"no result within {self.settings.turn_wait_window:.0f}s")
        return turn_task.result()

    def _go_delayed(self, msg: InboundMessage, session_ref: str, turn_task: asyncio.Future) -> None:
        async def _deliver(result: TurnResult) -> None:
            await self._complete_turn(msg, result)

        request = DelayedRequest(
            conversation_key=msg.conversation_key,
            chat_ref=msg.chat_ref,
            session_ref=session_ref,
            callback=_deliver,
            created_at=self.scheduler.now(),
            anchor_message_ref=msg.message_ref,
        )
        self.delayed.register(request)
        self._spawn(self._watch_late_turn(request, turn_task))

    async def _watch_late_turn(self, request: DelayedRequest, turn_task: asyncio.Future) -> None:
        key = request.conversation_key
        try:
            result = await turn_task
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("[TURN] delayed turn for %s failed: %s", key, e)
            if self.delayed.get(key) is request:
                self.delayed.remove(key)
                await self._fail_buffer(key, request.anchor_message_ref)
                message = e.user_message if isinstance(e, BridgeError) else BridgeError.user_message
                await self._safe_reply(request.anchor_message_ref or "", message)
            return

        if self.delayed.get(key) is not request:
            logger.info("[TURN] late result for %s has no listener, dropped", key)
            return
        await self.delayed.resolve(key, result)

    async def on_late_result(self, session_ref: str, result: TurnResult) -> bool:
        return await self.delayed.resolve_session(session_ref, result)

    def _owned_buffer(self, key: str, anchor_message_ref: Optional[str]) -> Optional[BufferedOutput]:
        buffer = self.coalescer.get(key)
        if buffer and buffer.anchor_message_ref == anchor_message_ref:
            return buffer
        return None

    async def _fail_buffer(self, key: str, anchor_message_ref: Optional[str]) -> None:
        if self._owned_buffer(key, anchor_message_ref):
            await self.coalescer.set_status(key, "failed")
            self.coalescer.close(key)

    async def _complete_turn(self, msg: InboundMessage, result: TurnResult) -> None:
        key = msg.conversation_key
        text = format_output(result, self.settings.max_message_length)
        bot_message_ids: List[str] = []
        delivered = False

        buffer = self._owned_buffer(key, msg.message_ref)
        if buffer:
            buffer.state.output = text
            await self.coalescer.set_status(key, "completed")
            self.coalescer.close(key)
            if buffer.message_ref:
                bot_message_ids.append(buffer.message_ref)
            bot_message_ids.extend(buffer.text_message_refs)
            # the terminal card carries the output; plain text was already posted
            delivered = bool(buffer.message_ref) or buffer.text_sent > 0

        self.ledger.push(key, InteractionRecord(
            user_message_id=msg.message_ref,
            agent_message_id=result.message_id,
            bot_message_ids=bot_message_ids,
            kind="normal",
        ))
        if not delivered:
            reply_ref = await self._safe_reply(msg.message_ref, text)
            if reply_ref:
                self.ledger.append_bot_message(key, msg.message_ref, reply_ref)
        logger.info("[TURN] %s completed (agent message %s)", key, (result.message_id or "-")[:8])

    # ---- stream rendering ----

    async def _render_stream(self, buffer: BufferedOutput) -> None:
        if not self.chat.supports_cards:
            await self._render_text(buffer)
            return

        card = build_stream_card(buffer.state, buffer.key)
        if buffer.message_ref:
            await self.chat.update_card(buffer.message_ref, card)
            return
        if buffer.state.is_empty():
            return
        message_ref = await self.chat.send_card(buffer.chat_ref, card)
        if message_ref:
            buffer.message_ref = message_ref

    async def _render_text(self, buffer: BufferedOutput) -> None:
        chunk = buffer.state.text[buffer.text_sent:]
        if not chunk.strip():
            return
        message_ref = await self.chat.send_text(buffer.chat_ref, chunk)
        buffer.text_sent = len(buffer.state.text)
        if message_ref:
            buffer.text_message_refs.append(message_ref)

    # ---- backend events ----

    def _buffer_key_for(self, session_ref: str, message_id: Optional[str] = None) -> Optional[str]:
        record = self.conversations.find_by_session(session_ref)
        if record is None:
            return None
        buffer = self.coalescer.get(record.conversation_key)
        if buffer is None or buffer.session_ref != session_ref:
            return None
        if message_id:
            if message_id in buffer.ignored_message_ids:
                return None
            buffer.agent_message_ids.add(message_id)
        return record.conversation_key

    async def on_stream_delta(self, session_ref: str, kind: str, delta: str,
                              message_id: Optional[str] = None) -> None:
        key = self._buffer_key_for(session_ref, message_id)
        if key is None:
            return
        if kind == "reasoning":
            await self.coalescer.append_reasoning(key, delta)
        else:
            await self.coalescer.append_text(key, delta)

    async def on_tool_event(self, session_ref: str, tool: str, status: ToolStatus,
                            output: Optional[str] = None, message_id: Optional[str] = None) -> None:
        key = self._buffer_key_for(session_ref, message_id)
        if key is None or not tool:
            return
        if status == "pending":
            await self.coalescer.add_tool(key, tool)
            return
        if not await self.coalescer.set_tool_status(key, tool, status, output):
            await self.coalescer.add_tool(key, tool)
            await self.coalescer.set_tool_status(key, tool, status, output)

    async def on_question_asked(self, request: QuestionRequest) -> bool:
        record = self.conversations.find_by_session(request.session_id)
        if record is None:
            logger.warning("[QUESTION] request %s for unknown session %s", request.id[:8], request.session_id[:8])
            return False
        key = record.conversation_key
        if self.questions.has(key):
            logger.warning("[QUESTION] %s already has a pending question, rejecting %s", key, request.id[:8])
            return False
        if not request.questions:
            return False

        pending = self.questions.open(request, key, record.chat_ref)
        card_ref = await self._safe_send_card(record.chat_ref, build_question_card(pending))
        if card_ref:
            self.questions.set_card_message(key, card_ref)
            self.ledger.push(key, InteractionRecord(kind="question_prompt", bot_message_ids=[card_ref]))
        return True

    async def on_permission_requested(self, request: PermissionRequest) -> bool:
        record = self.conversations.find_by_session(request.session_ref)
        if record is None:
            logger.warning("[PERMISSION] request %s for unknown session %s",
                           request.permission_id[:8], request.session_ref[:8])
            return False

        if self.permissions.is_whitelisted(request.tool):
            logger.info("[PERMISSION] auto-approving whitelisted tool %s", request.tool)
            try:
                await self.backend.respond_permission(request.session_ref, request.permission_id, allow=True)
            except BackendUnavailable:
                logger.exception("[PERMISSION] auto-approve failed for %s", request.permission_id[:8])
            return True

        key = record.conversation_key
        pending = self.permissions.add_pending(key, request, record.chat_ref)
        card_ref = await self._safe_send_card(record.chat_ref, build_permission_card(pending, key))
        if card_ref:
            self.permissions.set_card_message(key, card_ref)
        return True

    # ---- question answers ----

    async def _answer_from_text(self, msg: InboundMessage) -> None:
        pending = self.questions.get(msg.conversation_key)
        parsed = self.classify(msg.text, pending.current_question)
        if parsed.kind == "unrecognized":
            raise UnrecognizedAnswer(f"could not classify {msg.text!r}")
        outcome = await self.questions.answer(msg.conversation_key, parsed)
        if outcome is not None and outcome.status == "stale":
            await self._safe_reply(msg.message_ref, SUBMITTING_NOTICE)
            return
        await self._after_answer(msg.conversation_key, outcome, msg.message_ref)

    async def _after_answer(self, key: str, outcome: Optional[AnswerOutcome],
                            user_message_ref: str = "") -> None:
        if outcome is None or outcome.status == "stale":
            return

        pending = outcome.pending
        if outcome.status == "next":
            card = build_question_card(pending)
            if pending.card_message_ref:
                await self._safe_update_card(pending.card_message_ref, card)
            else:
                card_ref = await self._safe_send_card(pending.chat_ref, card)
                if card_ref:
                    self.questions.set_card_message(key, card_ref)
            return

        answered = build_answered_card(outcome.answers or [])
        card_ref = pending.card_message_ref
        if card_ref:
            await self._safe_update_card(card_ref, answered)

            def _attach(item: InteractionRecord) -> None:
                item.ui_state = answered

            self.ledger.update_where(key, lambda item: card_ref in item.bot_message_ids, _attach)
        self.ledger.push(key, InteractionRecord(user_message_id=user_message_ref, kind="question_answer"))

    # ---- card actions ----

    async def handle_card_action(self, action: CardAction) -> Dict[str, Any]:
        handlers = {
            "question_skip": self._on_question_skip,
            "question_select": self._on_question_select,
            "question_submit": self._on_question_submit,
            "permission_allow": self._on_permission_allow,
            "permission_deny": self._on_permission_deny,
            "undo": self._on_undo,
            "stop": self._on_stop,
            "model_select": self._on_model_select,
            "agent_select": self._on_agent_select,
        }
        handler = handlers.get(action.action)
        if handler is None:
            logger.warning("[TURN] unknown card action %s", action.action)
            return _toast("error", "Unknown action")
        try:
            return await handler(action)
        except BridgeError as e:
            logger.warning("[TURN] card action %s for %s: %s", action.action, action.conversation_key, e)
            return _toast("error", e.user_message)
        except Exception:
            logger.exception("[TURN] card action %s failed", action.action)
            return _toast("error", BridgeError.user_message)

    def _outcome_toast(self, outcome: Optional[AnswerOutcome]) -> Dict[str, Any]:
        if outcome is None:
            return _toast("info", "No pending question")
        if outcome.status == "stale":
            return _toast("info", "This question was already answered")
        if outcome.status == "submitted":
            return _toast("success", "Answers submitted")
        return _toast("success", f"Question {outcome.pending.current_index + 1}/{outcome.pending.total}")

    def _is_stale_question_card(self, action: CardAction) -> bool:
        if not action.message_ref:
            return False
        pending = self.questions.get_by_card_message(action.message_ref)
        return pending is None or pending.conversation_key != action.conversation_key

    async def _on_question_skip(self, action: CardAction) -> Dict[str, Any]:
        if self._is_stale_question_card(action):
            return _toast("info", "This question was already answered")
        outcome = await self.questions.skip(action.conversation_key, action.value.get("question_index"))
        await self._after_answer(action.conversation_key, outcome)
        return self._outcome_toast(outcome)

    async def _on_question_select(self, action: CardAction) -> Dict[str, Any]:
        if self._is_stale_question_card(action):
            return _toast("info", "This question was already answered")
        indices = action.value.get("option_indices")
        if indices is None and action.value.get("option_index") is not None:
            indices = [action.value["option_index"]]
        if not indices:
            return _toast("info", "Pick at least one option")
        outcome = await self.questions.select(
            action.conversation_key, action.value.get("question_index"), [int(i) for i in indices]
        )
        await self._after_answer(action.conversation_key, outcome)
        return self._outcome_toast(outcome)

    async def _on_question_submit(self, action: CardAction) -> Dict[str, Any]:
        if self._is_stale_question_card(action):
            return _toast("info", "This question was already answered")
        outcome = await self.questions.submit(action.conversation_key)
        await self._after_answer(action.conversation_key, outcome)
        return self._outcome_toast(outcome)

    async def _resolve_permission(self, action: CardAction, allow: bool) -> Dict[str, Any]:
        key = action.conversation_key
        pending = self.permissions.get_pending(key)
        permission_id = action.value.get("permission_id")
        if pending is None or (permission_id and permission_id != pending.permission_id):
            return _toast("info", "This permission request has expired")

        ok = await self.backend.respond_permission(
            pending.session_ref, pending.permission_id, allow=allow, remember=bool(action.value.get("remember"))
        )
        if not ok:
            return _toast("error", "Failed to send your decision, please try again")

        self.permissions.remove_pending(key)
        if pending.card_message_ref:
            outcome = "allowed" if allow else "denied"
            await self._safe_update_card(pending.card_message_ref, build_permission_resolved_card(pending, outcome))
        logger.info("[PERMISSION] %s %s for %s", pending.permission_id[:8], "allowed" if allow else "denied", key)
        return _toast("success", "Allowed" if allow else "Denied")

    async def _on_permission_allow(self, action: CardAction) -> Dict[str, Any]:
        return await self._resolve_permission(action, allow=True)

    async def _on_permission_deny(self, action: CardAction) -> Dict[str, Any]:
        return await self._resolve_permission(action, allow=False)

    async def _on_undo(self, action: CardAction) -> Dict[str, Any]:
        key = action.conversation_key
        if action.message_ref:
            # a tap on an older turn's message must not undo the newest one
            owner = self.ledger.find_by_bot_message(key, action.message_ref)
            if owner is None or not any(owner is item for item in self._undo_group(key)):
                return _toast("info", "Only the latest turn can be undone")
        if await self.undo(key):
            return _toast("success", "Last turn undone")
        return _toast("info", "Nothing to undo")

    async def _on_stop(self, action: CardAction) -> Dict[str, Any]:
        if await self.stop_turn(action.conversation_key):
            return _toast("success", "Stopped")
        return _toast("info", "Nothing to stop")

    def _selected_option(self, action: CardAction) -> Optional[str]:
        return action.value.get("option") or action.value.get("selected")

    async def _on_model_select(self, action: CardAction) -> Dict[str, Any]:
        model = self._selected_option(action)
        if not model:
            return _toast("error", "No model selected")
        if self.conversations.update_config(action.conversation_key, preferred_model=model) is None:
            return _toast("info", "Start a conversation first")
        logger.info("[TURN] %s switched model to %s", action.conversation_key, model)
        return _toast("success", f"Model changed: {model}")

    async def _on_agent_select(self, action: CardAction) -> Dict[str, Any]:
        selected = self._selected_option(action)
        agent = None if not selected or selected == "none" else selected
        if self.conversations.update_config(action.conversation_key, preferred_agent=agent) is None:
            return _toast("info", "Start a conversation first")
        logger.info("[TURN] %s switched agent to %s", action.conversation_key, agent or "default")
        return _toast("success", f"Agent changed: {agent}" if agent else "Agent disabled")

    # ---- conversation commands ----

    def _undo_group(self, key: str) -> List[InteractionRecord]:
        """The newest record, plus the question prompts an answer record closes."""
        newest = self.ledger.last(key)
        if newest is None:
            return []
        record = self.conversations.get(key)
        group = [newest]
        if newest.kind == "question_answer":
            for item in reversed(record.interactions[:-1]):
                if item.kind != "question_prompt":
                    break
                group.append(item)
        return group

    async def undo(self, key: str) -> bool:
        record = self.conversations.get(key)
        if record is None:
            return False
        popped = self._undo_group(key)
        if not popped:
            return False
        for _ in popped:
            self.ledger.pop(key)

        item = popped[0]
        # answer records carry no agent message; revert past the last kept reply
        after = None if item.agent_message_id else self.ledger.latest_agent_message_id(key)
        try:
            reverted = await self.backend.revert_turn(record.session_ref, item.agent_message_id, after=after)
        except BackendUnavailable:
            logger.exception("[TURN] revert failed for %s", key)
            reverted = False
        if not reverted:
            logger.warning("[TURN] agent session %s was not reverted", record.session_ref[:8])

        for entry in popped:
            for message_ref in entry.bot_message_ids:
                try:
                    await self.chat.delete_message(message_ref)
                except Exception:
                    logger.exception("[TURN] could not delete message %s", message_ref)

        logger.info("[TURN] undid %d record(s) for %s", len(popped), key)
        return True

    async def stop_turn(self, key: str) -> bool:
        session_ref = self.conversations.get_session_ref(key)
        if not session_ref:
            return False
        try:
            aborted = await self.backend.abort_session(session_ref)
        except BackendUnavailable:
            logger.exception("[TURN] abort failed for %s", key)
            aborted = False

        # an aborted session will never read the answers
        pending = self.questions.get_by_session(session_ref)
        if pending:
            self.questions.cancel(pending.conversation_key)
        self.delayed.remove(key)
        if self.coalescer.has(key):
            await self.coalescer.set_status(key, "failed")
            self.coalescer.close(key)
        return aborted

    async def reset(self, key: str) -> bool:
        record = self.conversations.get(key)
        self.questions.cancel(key)
        self.permissions.remove_pending(key)
        self.delayed.remove(key)
        self.coalescer.close(key)
        if record is None:
            return False

        if record.session_ref and not record.protect_from_delete:
            try:
                await self.backend.delete_session(record.session_ref)
            except BackendUnavailable:
                logger.exception("[TURN] could not delete session %s", record.session_ref[:8])
        self.conversations.remove(key)
        return True

    # ---- housekeeping ----

    async def run_maintenance(self) -> int:
        expired = self.permissions.cleanup_expired()
        for pending in expired:
            if pending.card_message_ref:
                await self._safe_update_card(pending.card_message_ref,
                                             build_permission_resolved_card(pending, "expired"))
        return len(expired)

    def _spawn(self, coro) -> asyncio.Future:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    def _on_background_done(self, task: asyncio.Future) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("[TURN] background task failed", exc_info=exc)

    async def drain(self) -> None:
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def shutdown(self) -> None:
        for task in list(self._background):
            task.cancel()
        await asyncio.gather(*list(self._background), return_exceptions=True)
        self.coalescer.close_all()
        self.delayed.cleanup_expired(0)
        self.questions.cleanup_expired(0)
