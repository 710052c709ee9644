"""Ordered buffer of remote ICE candidates for one peer link."""

import logging
from collections import deque
from typing import Any, Deque, Dict, Iterable, List, Set, Tuple

from stream_rtc.protocol import candidate_key

logger = logging.getLogger(__name__)


class IceCandidateQueue:
    """FIFO of wire candidates waiting for the remote description.

    Duplicates (same candidate line, sdpMid and sdpMLineIndex) are accepted
    once per queue lifetime, whether they are still queued or already
    applied.
    """

    def __init__(self):
        self._items: Deque[Dict[str, Any]] = deque()
        self._seen: Set[Tuple[Any, Any, Any]] = set()

    def push(self, candidate: Dict[str, Any]) -> bool:
        """Append a candidate; return False if it was a duplicate."""
        key = candidate_key(candidate)
        if key in self._seen:
            logger.debug(f"Ignoring duplicate candidate {key[0]!r}")
            return False
        self._seen.add(key)
        self._items.append(candidate)
        return True

    def push_front(self, candidates: Iterable[Dict[str, Any]]) -> int:
        """Insert candidates ahead of everything queued, keeping their order.

        Returns:
            Number of candidates inserted (duplicates skipped).
        """
        fresh = []
        for candidate in candidates:
            key = candidate_key(candidate)
            if key in self._seen:
                continue
            self._seen.add(key)
            fresh.append(candidate)
        self._items.extendleft(reversed(fresh))
        return len(fresh)

    def pop(self) -> Dict[str, Any]:
        return self._items.popleft()

    def drain(self) -> List[Dict[str, Any]]:
        """Remove and return every queued candidate in arrival order."""
        items = list(self._items)
        self._items.clear()
        return items

    def clear(self):
        self._items.clear()
        self._seen.clear()

    def __len__(self) -> int:
        return len(self._items)

    def __bool__(self) -> bool:
        return bool(self._items)
