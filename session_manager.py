"""Session id persistence with an inactivity TTL."""

from __future__ import annotations

import time
import uuid
from typing import Callable

from config import JsonConfigStore

SESSION_TTL_S = 30 * 60


class SessionManager:
    """Hands out a session id that stays valid for ``ttl_s`` after the last
    network activity. Any completed request should call ``refresh_activity``.
    """

    def __init__(
        self,
        store: JsonConfigStore,
        ttl_s: float = SESSION_TTL_S,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._ttl_s = ttl_s
        self._clock = clock

    def get_or_create_session_id(self) -> str:
        session_id, last_activity = self._store.get_session()
        if session_id and self._clock() - last_activity < self._ttl_s:
            return session_id
        return self._create_session()

    def refresh_activity(self) -> None:
        session_id, _ = self._store.get_session()
        if not session_id:
            return
        self._store.set_session(session_id, self._clock())

    def clear_session(self) -> None:
        self._store.set_session("", 0.0)

    def _create_session(self) -> str:
        session_id = str(uuid.uuid4())
        self._store.set_session(session_id, self._clock())
        return session_id
