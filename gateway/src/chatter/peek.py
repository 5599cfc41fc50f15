from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Tuple

from .clock import now_ms

log = logging.getLogger("chatter.peek")


@dataclass(frozen=True)
class PeekersChanged:
    """Who currently has the conversation between ``user_a`` and ``user_b`` open.

    Both parties are sent the same ``peekers`` tuple.
    """

    user_a: str
    user_b: str
    peekers: Tuple[str, ...]

    def counterpart(self, user_id: str) -> str:
        return self.user_b if user_id == self.user_a else self.user_a


@dataclass
class _Peek:
    target: str
    refreshed_at_ms: int


class PeekTracker:
    """Tracks, per viewer, the single counterpart conversation being viewed.

    Every mutation returns the :class:`PeekersChanged` events it caused; the
    caller is responsible for fanning them out.
    """

    def __init__(self, *, ttl_ms: int = 0, now_func: Callable[[], int] = now_ms) -> None:
        self._ttl_ms = ttl_ms
        self._now = now_func
        self._peeks: Dict[str, _Peek] = {}

    @property
    def ttl_ms(self) -> int:
        return self._ttl_ms

    def peeking_at(self, viewer: str) -> str | None:
        peek = self._peeks.get(viewer)
        return peek.target if peek else None

    def is_peeking(self, viewer: str, target: str) -> bool:
        return self.peeking_at(viewer) == target

    def peekers(self, user_a: str, user_b: str) -> Tuple[str, ...]:
        found = []
        if self.is_peeking(user_a, user_b):
            found.append(user_a)
        if self.is_peeking(user_b, user_a):
            found.append(user_b)
        return tuple(sorted(found))

    def _changed(self, user_a: str, user_b: str) -> PeekersChanged:
        return PeekersChanged(user_a=user_a, user_b=user_b, peekers=self.peekers(user_a, user_b))

    def set_peek(self, viewer: str, target: str) -> List[PeekersChanged]:
        """Record that ``viewer`` has the conversation with ``target`` open.

        Any previous entry is replaced. Re-asserting the same target refreshes
        the entry and re-emits the current peeker set.
        """

        previous = self.peeking_at(viewer)
        self._peeks[viewer] = _Peek(target=target, refreshed_at_ms=self._now())
        events: List[PeekersChanged] = []
        if previous is not None and previous != target:
            events.append(self._changed(viewer, previous))
        events.append(self._changed(viewer, target))
        return events

    def clear_peek(self, viewer: str, target: str) -> List[PeekersChanged]:
        """Drop ``viewer``'s peek only if it still points at ``target``."""

        if not self.is_peeking(viewer, target):
            log.debug("ignoring stale unpeek %s -> %s (current=%s)", viewer, target, self.peeking_at(viewer))
            return []
        self._peeks.pop(viewer, None)
        return [self._changed(viewer, target)]

    def on_disconnect(self, user_id: str) -> List[PeekersChanged]:
        """Remove ``user_id``'s own peek and every peek aimed at it."""

        events: List[PeekersChanged] = []
        own = self._peeks.pop(user_id, None)
        if own is not None:
            events.append(self._changed(user_id, own.target))

        for viewer, peek in list(self._peeks.items()):
            if peek.target == user_id:
                self._peeks.pop(viewer, None)
                events.append(self._changed(viewer, user_id))
        return events

    def expire(self) -> List[PeekersChanged]:
        """Drop peeks that were not re-asserted within the configured window."""

        if self._ttl_ms <= 0:
            return []
        cutoff = self._now() - self._ttl_ms
        events: List[PeekersChanged] = []
        for viewer, peek in list(self._peeks.items()):
            if peek.refreshed_at_ms <= cutoff:
                self._peeks.pop(viewer, None)
                log.info("peek %s -> %s expired", viewer, peek.target)
                events.append(self._changed(viewer, peek.target))
        return events

    def __len__(self) -> int:
        return len(self._peeks)
