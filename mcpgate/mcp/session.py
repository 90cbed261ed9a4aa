"""Per-service MCP session ids, kept in memory only."""

from __future__ import annotations

import threading
from typing import Dict, Optional


class SessionStore:
    """
    Thread-safe map of service id -> opaque session id.

    ``lock(service_id)`` hands out one lock per service so that the
    check -> clear -> reinitialize sequence for a service is serialized,
    while different services never wait on each other.
    """

    def __init__(self):
        self._sessions: Dict[str, str] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._mu = threading.Lock()

    def lock(self, service_id: str) -> threading.Lock:
        with self._mu:
            lock = self._locks.get(service_id)
            if lock is None:
                lock = self._locks[service_id] = threading.Lock()
            return lock

    def get(self, service_id: str) -> Optional[str]:
        with self._mu:
            return self._sessions.get(service_id)

    def set(self, service_id: str, session_id: str) -> None:
        session_id = (session_id or "").strip()
        if not session_id:
            return
        with self._mu:
            self._sessions[service_id] = session_id

    def replace(self, service_id: str, expected: Optional[str], session_id: str) -> bool:
        """
        Store ``session_id`` only if the current session is still ``expected``.

        A reply that arrives late on an old session must not overwrite one a
        concurrent caller has renewed in the meantime.
        """
        session_id = (session_id or "").strip()
        if not session_id:
            return False
        with self._mu:
            if self._sessions.get(service_id) != expected:
                return False
            self._sessions[service_id] = session_id
            return True

    def clear(self, service_id: str, stale: Optional[str] = None) -> bool:
        """
        Drop the session for ``service_id``.

        With ``stale`` given, only drop it if it is still that value; a
        session another caller already renewed is left alone. Returns whether
        anything was removed.
        """
        with self._mu:
            current = self._sessions.get(service_id)
            if current is None:
                return False
            if stale is not None and current != stale:
                return False
            del self._sessions[service_id]
            return True

    def __len__(self) -> int:
        with self._mu:
            return len(self._sessions)
