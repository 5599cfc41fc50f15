"""Chatter gateway: presence, peek tracking and delivery status for direct messages."""

from .addressing import conversation_id
from .engine import Coordinator
from .fanout import ConnectionHub, Notifier
from .history import InMemoryHistoryStore, Message, MessageStatus
from .peek import PeekersChanged, PeekTracker
from .presence import PresenceRegistry
from .server import main, simulate

__all__ = [
    "ConnectionHub",
    "Coordinator",
    "InMemoryHistoryStore",
    "Message",
    "MessageStatus",
    "Notifier",
    "PeekersChanged",
    "PeekTracker",
    "PresenceRegistry",
    "conversation_id",
    "main",
    "simulate",
]
