from __future__ import annotations

import base64
import dataclasses
import enum
from dataclasses import dataclass
from typing import Any, Dict, List, Protocol


class MessageStatus(str, enum.Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    SEEN = "seen"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    def advances_to(self, other: "MessageStatus") -> bool:
        """True if moving from this status to ``other`` goes strictly forward."""

        return other.rank > self.rank


_STATUS_RANK = {MessageStatus.SENT: 0, MessageStatus.DELIVERED: 1, MessageStatus.SEEN: 2}


@dataclass(frozen=True)
class Message:
    """A direct message as stored in a conversation's history.

    Everything but ``status`` is fixed at send time; status changes produce a
    new value via :meth:`with_status`.
    """

    msg_id: str
    conv_id: str
    sender: str
    recipient: str
    payload: str
    has_attachment: bool
    created_at_ms: int
    status: MessageStatus

    def with_status(self, status: MessageStatus) -> "Message":
        return dataclasses.replace(self, status=status)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "msg_id": self.msg_id,
            "conv_id": self.conv_id,
            "from": self.sender,
            "to": self.recipient,
            "payload": self.payload,
            "has_attachment": self.has_attachment,
            "created_at": self.created_at_ms,
            "status": self.status.value,
        }


def encode_payload(payload: bytes | str) -> str:
    """Payloads are opaque; raw bytes are carried as base64 text."""

    if isinstance(payload, bytes):
        return base64.b64encode(payload).decode("ascii")
    return payload


class HistoryStore(Protocol):
    def append(self, conv_id: str, message: Message) -> None:
        ...

    def list_messages(self, conv_id: str) -> List[Message]:
        ...

    def update_status(self, conv_id: str, msg_id: str, status: MessageStatus) -> Message | None:
        ...


class InMemoryHistoryStore:
    """Append-only per-conversation message log with in-place status updates."""

    def __init__(self) -> None:
        self._messages: Dict[str, List[Message]] = {}
        self._index: Dict[str, Dict[str, int]] = {}

    def append(self, conv_id: str, message: Message) -> None:
        messages = self._messages.setdefault(conv_id, [])
        index = self._index.setdefault(conv_id, {})
        if message.msg_id in index:
            raise ValueError(f"duplicate msg_id {message.msg_id} in {conv_id}")
        index[message.msg_id] = len(messages)
        messages.append(message)

    def list_messages(self, conv_id: str) -> List[Message]:
        """Return the conversation's messages in insertion order."""

        return list(self._messages.get(conv_id, []))

    def update_status(self, conv_id: str, msg_id: str, status: MessageStatus) -> Message | None:
        """Advance a stored message's status.

        Returns the updated message, or ``None`` when the message is unknown or
        already at or beyond ``status``; statuses never move backwards.
        """

        position = self._index.get(conv_id, {}).get(msg_id)
        if position is None:
            return None
        current = self._messages[conv_id][position]
        if not current.status.advances_to(status):
            return None
        updated = current.with_status(status)
        self._messages[conv_id][position] = updated
        return updated
