from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import List, Literal, Optional, Set

from shared.scheduler import TimerHandle

ToolStatus = Literal["pending", "running", "completed", "failed"]
TurnStatus = Literal["processing", "completed", "failed"]

TERMINAL_TOOL_STATUSES = ("completed", "failed")
TERMINAL_TURN_STATUSES = ("completed", "failed")


@dataclass
class ToolState:
    name: str
    status: ToolStatus = "pending"
    output: Optional[str] = None


@dataclass
class StreamState:
    text: str = ""
    reasoning: str = ""
    tools: List[ToolState] = field(default_factory=list)
    status: TurnStatus = "processing"
    # formatted final answer, shown on the terminal card
    output: Optional[str] = None

    def is_empty(self) -> bool:
        return not (self.text or self.reasoning or self.tools)


@dataclass
class BufferedOutput:
    """Per-turn accumulation owned by the coalescer."""
    key: str
    chat_ref: str
    session_ref: str
    anchor_message_ref: Optional[str]
    opened_at: float
    last_refresh: float
    state: StreamState = field(default_factory=StreamState)
    message_ref: Optional[str] = None      # rendered card, once sent
    timer: Optional[TimerHandle] = None
    refresh_count: int = 0
    # plain-text surfaces: how much of state.text was already posted, and where
    text_sent: int = 0
    text_message_refs: List[str] = field(default_factory=list)
    # one refresh in flight per buffer; refreshes requested meanwhile re-run once after it
    refresh_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    refresh_again: bool = False
    # agent message ids seen on this turn, and ids of superseded turns on the same session
    agent_message_ids: Set[str] = field(default_factory=set)
    ignored_message_ids: Set[str] = field(default_factory=set)
