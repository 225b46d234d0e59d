"""Per-tab session identity."""

from __future__ import annotations

import logging
import random
import string
import time

from science_quiz.kv_store import KVStore

logger = logging.getLogger(__name__)

SESSION_ID_KEY = "userSessionId"

_BASE36 = string.digits + string.ascii_lowercase


def new_session_id() -> str:
    """Timestamp plus a random base36 suffix, e.g. ``user_1718000000000_k3j9x0a1b``."""
    suffix = "".join(random.choices(_BASE36, k=9))
    return f"user_{int(time.time() * 1000)}_{suffix}"


class SessionIdentity:
    """Lazily creates a session id and caches it in tab-scoped storage."""

    def __init__(self, tab_store: KVStore) -> None:
        self.tab_store = tab_store
        self._session_id: str | None = None

    def get_session_id(self) -> str:
        if self._session_id is None:
            session_id = self.tab_store.get(SESSION_ID_KEY)
            if not session_id:
                session_id = new_session_id()
                self.tab_store.set(SESSION_ID_KEY, session_id)
                logger.info("Created session %s", session_id)
            self._session_id = session_id
        return self._session_id
