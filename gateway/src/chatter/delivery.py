"""Delivery status decisions: sent -> delivered -> seen."""

from __future__ import annotations

import logging
import uuid
from typing import Callable, List, Tuple

from .addressing import conversation_id
from .history import HistoryStore, Message, MessageStatus, encode_payload
from .peek import PeekTracker
from .presence import PresenceRegistry
from .clock import now_ms

log = logging.getLogger("chatter.delivery")


def _new_msg_id() -> str:
    return uuid.uuid4().hex


class DeliveryEngine:
    """Creates messages and advances their status from presence and peek state."""

    def __init__(
        self,
        history: HistoryStore,
        presence: PresenceRegistry,
        peeks: PeekTracker,
        *,
        now_func: Callable[[], int] = now_ms,
        id_func: Callable[[], str] = _new_msg_id,
    ) -> None:
        self.history = history
        self.presence = presence
        self.peeks = peeks
        self._now = now_func
        self._new_id = id_func

    def initial_status(self, sender: str, recipient: str) -> MessageStatus:
        if self.presence.is_online(recipient):
            if self.peeks.is_peeking(recipient, sender):
                return MessageStatus.SEEN
            return MessageStatus.DELIVERED
        return MessageStatus.SENT

    def send(self, sender: str, recipient: str, payload: bytes | str, has_attachment: bool = False) -> Message:
        """Create and store exactly one new message from ``sender`` to ``recipient``."""

        conv_id = conversation_id(sender, recipient)
        message = Message(
            msg_id=self._new_id(),
            conv_id=conv_id,
            sender=sender,
            recipient=recipient,
            payload=encode_payload(payload),
            has_attachment=bool(has_attachment),
            created_at_ms=self._now(),
            status=self.initial_status(sender, recipient),
        )
        self.history.append(conv_id, message)
        log.debug("message %s %s -> %s stored as %s", message.msg_id, sender, recipient, message.status.value)
        return message

    def _mark_seen(self, conv_id: str, candidates: List[Message]) -> List[Message]:
        newly_seen: List[Message] = []
        for message in candidates:
            updated = self.history.update_status(conv_id, message.msg_id, MessageStatus.SEEN)
            if updated is not None:
                newly_seen.append(updated)
        return newly_seen

    def fetch_history(self, requester: str, counterpart: str) -> Tuple[List[Message], List[Message]]:
        """Return the conversation history after marking inbound unseen messages as seen.

        Opening a conversation is a one-time seen signal: every message from
        ``counterpart`` to ``requester`` that is not yet seen becomes seen.
        Returns ``(history, newly_seen)``.
        """

        conv_id = conversation_id(requester, counterpart)
        unseen = [
            message
            for message in self.history.list_messages(conv_id)
            if message.recipient == requester
            and message.sender == counterpart
            and message.status is not MessageStatus.SEEN
        ]
        newly_seen = self._mark_seen(conv_id, unseen)
        return self.history.list_messages(conv_id), newly_seen

    def poll_status(self, sender: str, recipient: str) -> List[Message]:
        """Promote delivered messages to seen if ``recipient`` is now peeking at ``sender``."""

        if not self.peeks.is_peeking(recipient, sender):
            return []
        conv_id = conversation_id(sender, recipient)
        delivered = [
            message
            for message in self.history.list_messages(conv_id)
            if message.sender == sender
            and message.recipient == recipient
            and message.status is MessageStatus.DELIVERED
        ]
        return self._mark_seen(conv_id, delivered)
