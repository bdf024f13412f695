import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

from model.permission import PendingPermission, PermissionRequest
from shared import time

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 60.0


def normalize_tool_name(tool: Any) -> Optional[str]:
    """Backends send either a bare name or an object carrying `name`."""
    if isinstance(tool, str):
        return tool.strip() or None
    if isinstance(tool, dict) and isinstance(tool.get("name"), str):
        return tool["name"].strip() or None
    return None


class PermissionArbiter:
    """
    One outstanding tool-permission request per actor.
    Expiry is lazy on lookup; cleanup_expired() is the explicit sweep.
    """

    def __init__(
        self,
        whitelist: Iterable[str] = (),
        timeout: float = DEFAULT_TIMEOUT,
        clock: Callable[[], float] = time.now,
    ):
        self.whitelist = {t.strip().lower() for t in whitelist if t and t.strip()}
        self.timeout = timeout
        self.clock = clock
        self._pending: Dict[str, PendingPermission] = {}

    def is_whitelisted(self, tool: Any) -> bool:
        name = normalize_tool_name(tool)
        return bool(name) and name.lower() in self.whitelist

    def _expired(self, pending: PendingPermission) -> bool:
        return self.clock() - pending.created_at > self.timeout

    def add_pending(self, actor: str, request: PermissionRequest, chat_ref: str) -> PendingPermission:
        previous = self._pending.get(actor)
        if previous and previous.permission_id != request.permission_id:
            logger.info("[PERMISSION] %s replaces unresolved %s for actor %s",
                        request.permission_id[:8], previous.permission_id[:8], actor)
        pending = PendingPermission(
            session_ref=request.session_ref,
            permission_id=request.permission_id,
            tool=request.tool,
            description=request.description,
            risk=request.risk,
            chat_ref=chat_ref,
            created_at=self.clock(),
        )
        self._pending[actor] = pending
        return pending

    def get_pending(self, actor: str) -> Optional[PendingPermission]:
        pending = self._pending.get(actor)
        if pending is None:
            return None
        if self._expired(pending):
            del self._pending[actor]
            logger.info("[PERMISSION] %s for actor %s expired", pending.permission_id[:8], actor)
            return None
        return pending

    def remove_pending(self, actor: str) -> Optional[PendingPermission]:
        return self._pending.pop(actor, None)

    def set_card_message(self, actor: str, message_ref: str) -> None:
        pending = self._pending.get(actor)
        if pending:
            pending.card_message_ref = message_ref

    def cleanup_expired(self) -> List[PendingPermission]:
        expired = [(actor, p) for actor, p in self._pending.items() if self._expired(p)]
        for actor, _ in expired:
            del self._pending[actor]
        if expired:
            logger.info("[PERMISSION] swept %d expired requests", len(expired))
        return [p for _, p in expired]

    def __len__(self) -> int:
        return len(self._pending)
