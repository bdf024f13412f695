# engine/output_coalescer.py
from __future__ import annotations

import logging
from typing import Awaitable, Callable, Dict, Optional

from model.stream import (
    TERMINAL_TOOL_STATUSES,
    TERMINAL_TURN_STATUSES,
    BufferedOutput,
    ToolState,
    ToolStatus,
    TurnStatus,
)
from shared.scheduler import Scheduler

logger = logging.getLogger(__name__)

RefreshCallback = Callable[[BufferedOutput], Awaitable[None]]

DEFAULT_INTERVAL = 0.5


class OutputCoalescer:
    """
    Accumulates streaming agent output per conversation and pushes at most one
    UI refresh per interval.

    - mutation with no timer pending and more than `interval` since the last
      refresh: refresh now
    - otherwise one trailing refresh is scheduled for `interval - elapsed`;
      further mutations before it fires ride along
    - terminal set_status() cancels the timer and refreshes before returning
    - empty state never reaches the callback unless the refresh is terminal
    - at most one callback runs per buffer; requests that arrive meanwhile
      collapse into one re-run, and a terminal request waits for it
    """

    def __init__(self, scheduler: Scheduler, on_refresh: RefreshCallback, interval: float = DEFAULT_INTERVAL):
        self.scheduler = scheduler
        self.on_refresh = on_refresh
        self.interval = interval
        self._buffers: Dict[str, BufferedOutput] = {}

    # ---- lifecycle ----

    def open(self, key: str, chat_ref: str, session_ref: str,
             anchor_message_ref: Optional[str] = None) -> BufferedOutput:
        if key in self._buffers:
            self.close(key)
        now = self.scheduler.now()
        buffer = BufferedOutput(
            key=key,
            chat_ref=chat_ref,
            session_ref=session_ref,
            anchor_message_ref=anchor_message_ref,
            opened_at=now,
            last_refresh=now,
        )
        self._buffers[key] = buffer
        logger.debug("[COALESCE] open %s session=%s", key, session_ref[:8])
        return buffer

    def close(self, key: str) -> Optional[BufferedOutput]:
        buffer = self._buffers.pop(key, None)
        if buffer and buffer.timer:
            buffer.timer.cancel()
            buffer.timer = None
        return buffer

    def close_all(self) -> None:
        for key in list(self._buffers):
            self.close(key)

    def get(self, key: str) -> Optional[BufferedOutput]:
        return self._buffers.get(key)

    def has(self, key: str) -> bool:
        return key in self._buffers

    def set_message_ref(self, key: str, message_ref: str) -> None:
        buffer = self._buffers.get(key)
        if buffer:
            buffer.message_ref = message_ref

    # ---- mutations ----

    async def append_text(self, key: str, delta: str) -> None:
        buffer = self._buffers.get(key)
        if not buffer or not delta:
            return
        buffer.state.text += delta
        await self._request_refresh(buffer)

    async def append_reasoning(self, key: str, delta: str) -> None:
        buffer = self._buffers.get(key)
        if not buffer or not delta:
            return
        buffer.state.reasoning += delta
        await self._request_refresh(buffer)

    async def add_tool(self, key: str, name: str) -> None:
        buffer = self._buffers.get(key)
        if not buffer:
            return
        buffer.state.tools.append(ToolState(name=name))
        await self._request_refresh(buffer)

    async def set_tool_status(self, key: str, name: str, status: ToolStatus,
                              output: Optional[str] = None) -> bool:
        """Updates the newest non-terminal entry for `name`. False when none matches."""
        buffer = self._buffers.get(key)
        if not buffer:
            return False
        for tool in reversed(buffer.state.tools):
            if tool.name == name and tool.status not in TERMINAL_TOOL_STATUSES:
                tool.status = status
                if output:
                    tool.output = output
                await self._request_refresh(buffer)
                return True
        return False

    async def set_status(self, key: str, status: TurnStatus) -> None:
        buffer = self._buffers.get(key)
        if not buffer:
            return
        buffer.state.status = status
        if status not in TERMINAL_TURN_STATUSES:
            await self._request_refresh(buffer)
            return
        if buffer.timer:
            buffer.timer.cancel()
            buffer.timer = None
        await self._refresh(buffer, force=True)

    # ---- throttling ----

    async def _request_refresh(self, buffer: BufferedOutput) -> None:
        if buffer.timer is not None:
            return

        elapsed = self.scheduler.now() - buffer.last_refresh
        if elapsed > self.interval:
            await self._refresh(buffer)
            return

        async def _on_timer() -> None:
            if self._buffers.get(buffer.key) is not buffer:
                return
            buffer.timer = None
            await self._refresh(buffer)

        buffer.timer = self.scheduler.call_later(self.interval - elapsed, _on_timer)

    async def _refresh(self, buffer: BufferedOutput, force: bool = False) -> None:
        buffer.last_refresh = self.scheduler.now()
        if buffer.state.is_empty() and not force:
            return
        buffer.refresh_again = True
        if buffer.refresh_lock.locked() and not force:
            # the in-flight refresh picks this up when it finishes
            return
        async with buffer.refresh_lock:
            while buffer.refresh_again:
                buffer.refresh_again = False
                buffer.refresh_count += 1
                try:
                    await self.on_refresh(buffer)
                except Exception:
                    logger.exception("[COALESCE] refresh failed for %s", buffer.key)
