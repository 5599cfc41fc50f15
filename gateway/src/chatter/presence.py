from __future__ import annotations

import logging
from typing import Dict, Hashable, List, Set, Tuple

log = logging.getLogger("chatter.presence")

Handle = Hashable


class PresenceRegistry:
    """Connection sessions and the online set derived from them.

    A user is online while at least one connection handle is bound to it.
    Membership is never toggled directly; it follows the per-user session
    count, so several connections for the same user collapse into a single
    presence entry.
    """

    def __init__(self) -> None:
        self._sessions: Dict[Handle, str] = {}
        self._handles_by_user: Dict[str, Set[Handle]] = {}

    def mark_online(self, handle: Handle, user_id: str) -> bool:
        """Bind ``handle`` to ``user_id``; return True if the user just came online.

        Binding the same handle to the same user again is a no-op. A handle
        that was bound to another user is moved.
        """

        current = self._sessions.get(handle)
        if current == user_id:
            return False
        if current is not None:
            self.mark_offline(handle)

        self._sessions[handle] = user_id
        handles = self._handles_by_user.setdefault(user_id, set())
        became_online = not handles
        handles.add(handle)
        if became_online:
            log.debug("user %s online", user_id)
        return became_online

    def mark_offline(self, handle: Handle) -> Tuple[str | None, bool]:
        """Drop the session bound to ``handle``.

        Returns ``(user_id, went_offline)``; ``went_offline`` is True only when
        this was the user's last live session. Unknown handles return
        ``(None, False)``.
        """

        user_id = self._sessions.pop(handle, None)
        if user_id is None:
            return None, False
        handles = self._handles_by_user.get(user_id)
        if handles is not None:
            handles.discard(handle)
            if not handles:
                self._handles_by_user.pop(user_id, None)
                log.debug("user %s offline", user_id)
                return user_id, True
        return user_id, False

    def is_online(self, user_id: str) -> bool:
        return user_id in self._handles_by_user

    def online_users(self) -> List[str]:
        return sorted(self._handles_by_user)

    def user_for(self, handle: Handle) -> str | None:
        return self._sessions.get(handle)

    def handles_for(self, user_id: str) -> List[Handle]:
        return list(self._handles_by_user.get(user_id, ()))

    def session_count(self, user_id: str) -> int:
        return len(self._handles_by_user.get(user_id, ()))
