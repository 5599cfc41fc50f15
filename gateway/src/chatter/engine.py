from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Hashable, List

from .accounts import AccountStore
from .delivery import DeliveryEngine
from .errors import InvalidRequest, Unauthenticated, UnknownRecipient
from .fanout import ConnectionHub, Deliver, Notifier
from .history import HistoryStore, InMemoryHistoryStore, Message, MessageStatus
from .peek import PeekTracker
from .presence import PresenceRegistry
from .clock import now_ms

log = logging.getLogger("chatter.engine")


class Coordinator:
    """Presence, peek and delivery-status engine behind every connection.

    Handlers are plain synchronous methods. They run on the event loop
    thread one at a time, so each read-check-write-notify sequence is atomic
    with respect to every other handler. The acting identity is always the
    one bound to the calling connection.
    """

    def __init__(
        self,
        *,
        history: HistoryStore | None = None,
        accounts: AccountStore | None = None,
        peek_ttl_ms: int = 0,
        peek_sweep_interval_s: float = 5.0,
        reject_unknown_recipients: bool = False,
        now_func: Callable[[], int] = now_ms,
    ) -> None:
        self.history = history if history is not None else InMemoryHistoryStore()
        self.accounts = accounts
        self.presence = PresenceRegistry()
        self.peeks = PeekTracker(ttl_ms=peek_ttl_ms, now_func=now_func)
        self.delivery = DeliveryEngine(self.history, self.presence, self.peeks, now_func=now_func)
        self.hub = ConnectionHub()
        self.notifier = Notifier(self.hub, self.presence)
        self.reject_unknown_recipients = reject_unknown_recipients
        self._peek_sweep_interval_s = peek_sweep_interval_s
        self._sweeper_task: asyncio.Task | None = None

    def start_sweeper(self) -> None:
        if self._sweeper_task is None and self.peeks.ttl_ms > 0:
            self._sweeper_task = asyncio.create_task(self._sweep())

    async def stop_sweeper(self) -> None:
        if self._sweeper_task is None:
            return
        self._sweeper_task.cancel()
        try:
            await self._sweeper_task
        except asyncio.CancelledError:
            pass
        self._sweeper_task = None

    async def _sweep(self) -> None:
        try:
            while True:
                await asyncio.sleep(self._peek_sweep_interval_s)
                self.expire_peeks()
        except asyncio.CancelledError:
            return

    def expire_peeks(self) -> None:
        self.notifier.peekers_changed(self.peeks.expire())

    def _require_user(self, handle: Hashable, action: str) -> str:
        user_id = self.presence.user_for(handle)
        if user_id is None:
            raise Unauthenticated(f"{action} requires login")
        return user_id

    def on_connect(self, handle: Hashable, deliver: Deliver) -> None:
        self.hub.attach(handle, deliver)

    def on_login(self, handle: Hashable, user_id: str) -> None:
        if not user_id:
            raise InvalidRequest("user_id required")
        previous = self.presence.user_for(handle)
        if previous is not None and previous != user_id:
            log.info("connection %r switching from %s to %s", handle, previous, user_id)
            self._end_session(handle)
        self.presence.mark_online(handle, user_id)
        log.info("user %s logged in (%d session(s))", user_id, self.presence.session_count(user_id))
        self.notifier.presence_changed()

    def on_disconnect(self, handle: Hashable) -> None:
        self._end_session(handle)
        self.hub.detach(handle)

    def _end_session(self, handle: Hashable) -> None:
        user_id, went_offline = self.presence.mark_offline(handle)
        if user_id is None:
            return
        if went_offline:
            self.notifier.peekers_changed(self.peeks.on_disconnect(user_id))
            log.info("user %s went offline", user_id)
        self.notifier.presence_changed()

    def on_send(self, handle: Hashable, to: str, payload: bytes | str, has_attachment: bool = False) -> Message:
        sender = self._require_user(handle, "send")
        if not to:
            raise InvalidRequest("recipient required")
        if self.reject_unknown_recipients and self.accounts is not None and not self.accounts.identity_exists(to):
            raise UnknownRecipient(to)

        message = self.delivery.send(sender, to, payload, has_attachment)
        self.notifier.new_message(message)
        if message.status is MessageStatus.SEEN:
            self.notifier.messages_seen([message])
        return message

    def on_get_history(self, handle: Hashable, with_user: str, *, request_id: str | None = None) -> List[Message]:
        requester = self._require_user(handle, "history")
        if not with_user:
            raise InvalidRequest("with_user required")
        messages, newly_seen = self.delivery.fetch_history(requester, with_user)
        self.notifier.history(handle, with_user, messages, request_id=request_id)
        self.notifier.messages_seen(newly_seen)
        return messages

    def on_poll_status(self, handle: Hashable, to: str) -> List[Message]:
        sender = self._require_user(handle, "poll")
        if not to:
            raise InvalidRequest("recipient required")
        newly_seen = self.delivery.poll_status(sender, to)
        self.notifier.messages_seen(newly_seen)
        return newly_seen

    def on_set_peek(self, handle: Hashable, target: str) -> None:
        viewer = self._require_user(handle, "peek")
        if not target or target == viewer:
            raise InvalidRequest("peek target must be another user")
        self.notifier.peekers_changed(self.peeks.set_peek(viewer, target))

    def on_clear_peek(self, handle: Hashable, target: str) -> None:
        viewer = self._require_user(handle, "unpeek")
        self.notifier.peekers_changed(self.peeks.clear_peek(viewer, target))

    def notify_profile_updated(self, user_id: str, profile: dict[str, Any]) -> None:
        self.notifier.profile_updated(user_id, profile)
