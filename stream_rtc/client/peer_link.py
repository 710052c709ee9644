"""Per-peer connection state for the signaling client.

A PeerLink binds one remote user to one session engine (an aiortc
RTCPeerConnection or anything with the same contract), the remote-stream
sink, the local tracks the link owns and the queue of remote candidates that
arrived before they could be applied.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional

from stream_rtc.client.ice_queue import IceCandidateQueue
from stream_rtc.exceptions import DuplicateLinkError, SessionEngineNotReadyError
from stream_rtc.protocol import candidate_from_dict

logger = logging.getLogger(__name__)


class LinkState(str, Enum):
    """Lifecycle of a PeerLink."""

    CREATED = "created"
    OFFERING = "offering"
    ANSWERING = "answering"
    AWAITING_REMOTE = "awaiting_remote"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    CLOSED = "closed"


_TRANSITIONS = {
    LinkState.CREATED: {LinkState.OFFERING, LinkState.ANSWERING, LinkState.FAILED, LinkState.CLOSED},
    LinkState.OFFERING: {LinkState.AWAITING_REMOTE, LinkState.FAILED, LinkState.CLOSED},
    LinkState.ANSWERING: {LinkState.AWAITING_REMOTE, LinkState.FAILED, LinkState.CLOSED},
    LinkState.AWAITING_REMOTE: {
        LinkState.CONNECTED,
        LinkState.DISCONNECTED,
        LinkState.FAILED,
        LinkState.CLOSED,
    },
    LinkState.CONNECTED: {LinkState.DISCONNECTED, LinkState.FAILED, LinkState.CLOSED},
    LinkState.DISCONNECTED: {LinkState.CLOSED},
    LinkState.FAILED: {LinkState.CLOSED},
    LinkState.CLOSED: set(),
}


class PeerLink:
    """One negotiated (or negotiating) session with a remote user.

    Args:
        remote_user_id: The peer on the other end.
        engine: Session engine handle.
        initiated_locally: True if this side sent the offer. Fixed for the
            lifetime of the link.
        remote_stream: Sink that collects the peer's tracks.
        room_id: Room this link belongs to, if any.
        on_state_change: Called with ``(link, state)`` after every accepted
            transition.
    """

    def __init__(
        self,
        remote_user_id: str,
        engine: Any,
        initiated_locally: bool,
        remote_stream: Any = None,
        room_id: Optional[str] = None,
        on_state_change: Optional[Callable[["PeerLink", LinkState], None]] = None,
    ):
        self.remote_user_id = remote_user_id
        self.engine = engine
        self.remote_stream = remote_stream
        self.room_id = room_id
        self.local_tracks: List[Any] = []
        self.candidates = IceCandidateQueue()
        self.state = LinkState.CREATED
        self._initiated_locally = bool(initiated_locally)
        self._on_state_change = on_state_change
        self._remote_ready = False
        self._drainer: Optional[asyncio.Task] = None

    @property
    def initiated_locally(self) -> bool:
        return self._initiated_locally

    @property
    def connected(self) -> bool:
        return self.state == LinkState.CONNECTED

    @property
    def closed(self) -> bool:
        return self.state == LinkState.CLOSED

    @property
    def remote_ready(self) -> bool:
        """Whether queued candidates have been flushed after the remote description."""
        return self._remote_ready

    def require_engine(self) -> Any:
        if self.engine is None:
            raise SessionEngineNotReadyError(
                f"Link with {self.remote_user_id} has no session engine"
            )
        return self.engine

    def transition(self, new_state: LinkState) -> bool:
        """Move to ``new_state`` if the lifecycle allows it.

        Returns:
            True if the state changed.
        """
        if new_state == self.state:
            return False
        if new_state not in _TRANSITIONS[self.state]:
            logger.warning(
                f"[{self.remote_user_id}] ignoring illegal transition "
                f"{self.state.value} -> {new_state.value}"
            )
            return False

        logger.debug(f"[{self.remote_user_id}] {self.state.value} -> {new_state.value}")
        self.state = new_state
        if self._on_state_change is not None:
            self._on_state_change(self, new_state)
        return True

    # =========================================================================
    # Remote candidates
    # =========================================================================

    def enqueue_candidate(self, candidate: Dict[str, Any]) -> bool:
        """Queue a remote candidate, applying it in order once the link is ready.

        Returns:
            False if the candidate was a duplicate or the link is closed.
        """
        if self.closed:
            return False
        if not self.candidates.push(candidate):
            return False
        if self._remote_ready:
            self._schedule_drain()
        return True

    async def flush_candidates(self):
        """Apply every queued candidate, then mark the link remote-ready.

        Called once, right after the remote description is set. Candidates
        that arrive while flushing are applied in the same pass.
        """
        while self.candidates:
            await self._apply(self.candidates.pop())
        self._remote_ready = True
        logger.debug(f"[{self.remote_user_id}] remote candidates flushed")

    def _schedule_drain(self):
        if self._drainer is None or self._drainer.done():
            self._drainer = asyncio.ensure_future(self._drain())

    async def _drain(self):
        while self.candidates and not self.closed:
            await self._apply(self.candidates.pop())

    async def _apply(self, candidate: Dict[str, Any]):
        engine = self.require_engine()
        try:
            await engine.addIceCandidate(candidate_from_dict(candidate))
        except Exception as e:
            logger.warning(f"[{self.remote_user_id}] failed to add ICE candidate: {e}")

    # =========================================================================
    # Teardown
    # =========================================================================

    async def close(self):
        """Release the engine, the owned local tracks and the sink. Idempotent."""
        if self.closed:
            return

        if self._drainer is not None and not self._drainer.done():
            self._drainer.cancel()
        self.candidates.clear()

        engine, self.engine = self.engine, None
        if engine is not None:
            try:
                await engine.close()
            except Exception as e:
                logger.warning(f"[{self.remote_user_id}] error closing engine: {e}")

        for track in self.local_tracks:
            track.stop()
        self.local_tracks = []

        if self.remote_stream is not None:
            self.remote_stream.detach()

        self.transition(LinkState.CLOSED)


class PeerLinkRegistry:
    """PeerLinks keyed by remote user id; at most one per user."""

    def __init__(self):
        self._links: Dict[str, PeerLink] = {}

    def add(self, link: PeerLink):
        if link.remote_user_id in self._links:
            raise DuplicateLinkError(link.remote_user_id)
        self._links[link.remote_user_id] = link

    def get(self, remote_user_id: str) -> Optional[PeerLink]:
        return self._links.get(remote_user_id)

    def remove(self, remote_user_id: str) -> Optional[PeerLink]:
        return self._links.pop(remote_user_id, None)

    def user_ids(self) -> List[str]:
        return list(self._links)

    def __contains__(self, remote_user_id: str) -> bool:
        return remote_user_id in self._links

    def __iter__(self) -> Iterator[PeerLink]:
        return iter(list(self._links.values()))

    def __len__(self) -> int:
        return len(self._links)
