from __future__ import annotations

import secrets
from dataclasses import dataclass

from .clock import now_ms


@dataclass
class Session:
    user_id: str
    session_token: str
    expires_at_ms: int


class SessionStore:
    """Tracks bearer sessions issued at login, keyed by session token."""

    def __init__(self, ttl_ms: int = 60 * 60 * 1000, *, now_func=now_ms) -> None:
        self._ttl_ms = ttl_ms
        self._now = now_func
        self._by_session: dict[str, Session] = {}

    def create(self, user_id: str) -> Session:
        session = Session(
            user_id=user_id,
            session_token=f"st_{secrets.token_urlsafe(16)}",
            expires_at_ms=self._now() + self._ttl_ms,
        )
        self._by_session[session.session_token] = session
        return session

    def get_by_session(self, session_token: str) -> Session | None:
        session = self._by_session.get(session_token)
        if session is None:
            return None
        if session.expires_at_ms <= self._now():
            self.invalidate(session)
            return None
        return session

    def invalidate(self, session: Session) -> None:
        self._by_session.pop(session.session_token, None)

    def invalidate_user(self, user_id: str) -> int:
        """Drop every session issued to ``user_id``; returns how many were dropped."""

        stale = [session for session in self._by_session.values() if session.user_id == user_id]
        for session in stale:
            self.invalidate(session)
        return len(stale)
