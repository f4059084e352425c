"""In-memory store of open role editor sessions."""

import logging
import time
import uuid
from dataclasses import dataclass, field

from crm_access.services.role_editor import RoleEditor

logger = logging.getLogger(__name__)


@dataclass
class EditorSession:
    session_id: str
    owner: str
    editor: RoleEditor
    touched_at: float = field(default_factory=time.monotonic)


class RoleEditorStore:
    """Editor sessions keyed by id, private to the principal that opened them."""

    def __init__(self, ttl_seconds: int = 1800):
        self.ttl_seconds = ttl_seconds
        self._sessions: dict[str, EditorSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def open(self, owner: str, editor: RoleEditor) -> EditorSession:
        self.purge_expired()
        session = EditorSession(session_id=uuid.uuid4().hex, owner=owner, editor=editor)
        self._sessions[session.session_id] = session
        logger.debug("Opened role editor session %s for %s", session.session_id, owner)
        return session

    def get(self, session_id: str, owner: str) -> EditorSession | None:
        session = self._sessions.get(session_id)
        if session is None or session.owner != owner:
            return None
        if self._expired(session):
            self._sessions.pop(session_id, None)
            return None
        session.touched_at = time.monotonic()
        return session

    def close(self, session_id: str, owner: str) -> bool:
        session = self._sessions.get(session_id)
        if session is None or session.owner != owner:
            return False
        del self._sessions[session_id]
        return True

    def purge_expired(self) -> int:
        expired = [sid for sid, session in self._sessions.items() if self._expired(session)]
        for sid in expired:
            del self._sessions[sid]
        if expired:
            logger.info("Purged %d expired role editor sessions", len(expired))
        return len(expired)

    def _expired(self, session: EditorSession) -> bool:
        return time.monotonic() - session.touched_at > self.ttl_seconds
