from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Hashable, Iterable

from .history import Message
from .peek import PeekersChanged
from .presence import PresenceRegistry

log = logging.getLogger("chatter.fanout")

Deliver = Callable[[dict], None]


def frame(frame_type: str, body: dict[str, Any], *, request_id: str | None = None) -> dict[str, Any]:
    out: dict[str, Any] = {"v": 1, "t": frame_type, "body": body}
    if request_id is not None:
        out["id"] = request_id
    return out


class ConnectionHub:
    """Registers live connections and hands frames to their deliver callbacks.

    Delivery is fire-and-forget: nothing is acknowledged or retried, and a
    callback that raises only affects its own connection.
    """

    def __init__(self) -> None:
        self._connections: Dict[Hashable, Deliver] = {}

    def attach(self, handle: Hashable, deliver: Deliver) -> None:
        self._connections[handle] = deliver

    def detach(self, handle: Hashable) -> None:
        self._connections.pop(handle, None)

    def __contains__(self, handle: Hashable) -> bool:
        return handle in self._connections

    def __len__(self) -> int:
        return len(self._connections)

    def send(self, handle: Hashable, payload: dict) -> bool:
        deliver = self._connections.get(handle)
        if deliver is None:
            return False
        try:
            deliver(payload)
        except Exception:
            log.exception("delivery to connection %r failed", handle)
            return False
        return True

    def send_many(self, handles: Iterable[Hashable], payload: dict) -> int:
        return sum(1 for handle in list(handles) if self.send(handle, payload))

    def broadcast(self, payload: dict) -> int:
        return self.send_many(self._connections, payload)


class Notifier:
    """Decides which connections hear about each state change."""

    def __init__(self, hub: ConnectionHub, presence: PresenceRegistry) -> None:
        self.hub = hub
        self.presence = presence

    def to_user(self, user_id: str, payload: dict) -> int:
        return self.hub.send_many(self.presence.handles_for(user_id), payload)

    def presence_changed(self) -> int:
        return self.hub.broadcast(frame("presence.online", {"users": self.presence.online_users()}))

    def peekers_changed(self, events: Iterable[PeekersChanged]) -> None:
        for event in events:
            peekers = list(event.peekers)
            for user_id in (event.user_a, event.user_b):
                body = {"with_user": event.counterpart(user_id), "peekers": peekers}
                self.to_user(user_id, frame("chat.peekers", body))

    def new_message(self, message: Message) -> None:
        # Sender and recipient receive the identical message value.
        payload = frame("chat.message", {"message": message.to_dict()})
        self.to_user(message.sender, payload)
        if message.recipient != message.sender and self.presence.is_online(message.recipient):
            self.to_user(message.recipient, payload)

    def messages_seen(self, messages: Iterable[Message]) -> None:
        for message in messages:
            self.to_user(message.sender, frame("chat.seen", {"message": message.to_dict()}))

    def history(
        self,
        handle: Hashable,
        with_user: str,
        messages: Iterable[Message],
        *,
        request_id: str | None = None,
    ) -> bool:
        body = {"with_user": with_user, "messages": [message.to_dict() for message in messages]}
        return self.hub.send(handle, frame("chat.history", body, request_id=request_id))

    def profile_updated(self, user_id: str, profile: dict[str, Any]) -> int:
        return self.hub.broadcast(frame("profile.updated", {"user_id": user_id, **profile}))
