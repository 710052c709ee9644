"""Multi-peer signaling client.

SignalingClient drives one session engine per remote user through offer,
answer and candidate exchange over a SignalingChannel. Links are keyed by
remote user id and never share negotiation state.

Typical use::

    channel = await connect_channel(url, "alice", password)
    client = SignalingClient(channel)
    client.events.on("remote_stream_added", on_stream)
    local_media, remote_stream = await client.initiate_link("bob", MediaConstraints(source="clip.mp4"))
"""

import asyncio
import dataclasses
import inspect
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection

from stream_rtc.client.channel import SignalingChannel
from stream_rtc.client.ice_queue import IceCandidateQueue
from stream_rtc.client.media import LocalMedia, MediaConstraints, RemoteStream, open_local_media
from stream_rtc.client.peer_link import LinkState, PeerLink, PeerLinkRegistry
from stream_rtc.config import IceServerConfig, get_config
from stream_rtc.events import SignalBus
from stream_rtc.exceptions import DuplicateLinkError
from stream_rtc.protocol import (
    EVT_ANSWER_RESPONSE,
    EVT_AVAILABLE_OFFERS,
    EVT_CANCEL_OFFER,
    EVT_DISCONNECT,
    EVT_NEW_ANSWER,
    EVT_NEW_OFFER,
    EVT_NEW_OFFER_AWAITING,
    EVT_RECEIVED_ICE_CANDIDATE,
    EVT_SEND_ICE_CANDIDATE,
    EVT_USER_DISCONNECTED,
    IceCandidateMessage,
    Offer,
    candidate_to_dict,
    description_from_dict,
    description_to_dict,
)

logger = logging.getLogger(__name__)

# Candidates buffered per announced offer before it is accepted
MAX_EARLY_CANDIDATES = 64

_ENGINE_STATES = {
    "connected": LinkState.CONNECTED,
    "disconnected": LinkState.DISCONNECTED,
    "failed": LinkState.FAILED,
}


def create_peer_connection(ice_servers: Optional[List[IceServerConfig]] = None) -> RTCPeerConnection:
    """Create RTCPeerConnection with the configured ICE servers.

    Args:
        ice_servers: Servers to use; defaults to the loaded configuration.

    Returns:
        RTCPeerConnection configured with ICE servers.
    """
    if ice_servers is None:
        ice_servers = get_config().ice_servers

    if ice_servers:
        ice_server_objects = [RTCIceServer(**server.to_kwargs()) for server in ice_servers]
        config = RTCConfiguration(iceServers=ice_server_objects)
        logger.debug(f"Creating RTCPeerConnection with {len(ice_server_objects)} ICE server(s)")
        return RTCPeerConnection(configuration=config)

    logger.warning("No ICE servers configured, using default RTCPeerConnection")
    return RTCPeerConnection()


class SignalingClient:
    """Negotiates peer links with any number of remote users.

    Args:
        channel: Registered signaling channel.
        user_id: This client's user id; defaults to the channel's.
        engine_factory: Zero-argument callable returning a new session
            engine. Defaults to ``create_peer_connection``.
        media_provider: Callable (or coroutine function) taking
            MediaConstraints and returning LocalMedia. Defaults to
            ``open_local_media``.
        legacy_candidate_fanout: Apply candidates that name no target to
            every open link.
        constraints: Media constraints used when an operation names none.

    Events (``client.events``):
        offers_received(offers), remote_stream_added(stream, user_id),
        error(exc, user_id), user_disconnected(user_id),
        link_state_changed(user_id, state)
    """

    def __init__(
        self,
        channel: SignalingChannel,
        user_id: Optional[str] = None,
        engine_factory: Optional[Callable[[], Any]] = None,
        media_provider: Optional[Callable[[MediaConstraints], Any]] = None,
        legacy_candidate_fanout: bool = False,
        constraints: Optional[MediaConstraints] = None,
    ):
        self.channel = channel
        self.user_id = user_id or channel.user_id
        self.engine_factory = engine_factory or create_peer_connection
        self.media_provider = media_provider or open_local_media
        self.legacy_candidate_fanout = legacy_candidate_fanout
        self.constraints = constraints

        self.links = PeerLinkRegistry()
        self.events = SignalBus(f"client:{self.user_id}")
        self.local_media: Optional[LocalMedia] = None
        self._media_lock = asyncio.Lock()
        self._early_candidates: Dict[str, IceCandidateQueue] = {}
        self._held_outgoing: Dict[PeerLink, List[IceCandidateMessage]] = {}

        channel.on(EVT_NEW_OFFER_AWAITING, self._on_offers)
        channel.on(EVT_AVAILABLE_OFFERS, self._on_offers)
        channel.on(EVT_ANSWER_RESPONSE, self._on_answer_response)
        channel.on(EVT_RECEIVED_ICE_CANDIDATE, self._on_ice_candidate)
        channel.on(EVT_USER_DISCONNECTED, self._on_user_disconnected)
        channel.on(EVT_DISCONNECT, self._on_channel_closed)

    # =========================================================================
    # Accessors
    # =========================================================================

    def connected_users(self) -> List[str]:
        return [link.remote_user_id for link in self.links if link.connected]

    def connection_state(self, user_id: str) -> Optional[LinkState]:
        link = self.links.get(user_id)
        return link.state if link else None

    def is_user_connected(self, user_id: str) -> bool:
        link = self.links.get(user_id)
        return link is not None and link.connected

    def total_links(self) -> int:
        return len(self.links)

    def remote_stream(self, user_id: str) -> Optional[RemoteStream]:
        link = self.links.get(user_id)
        return link.remote_stream if link else None

    def initiated_locally(self, user_id: str) -> Optional[bool]:
        link = self.links.get(user_id)
        return link.initiated_locally if link else None

    # =========================================================================
    # Link construction
    # =========================================================================

    def report_error(self, exc: BaseException, user_id: Optional[str] = None):
        logger.error(f"[{self.user_id}] link with {user_id}: {exc!r}")
        self.events.emit("error", exc, user_id)

    async def _acquire_media(self, constraints: Optional[MediaConstraints]) -> LocalMedia:
        async with self._media_lock:
            if self.local_media is None or self.local_media.stopped:
                media = self.media_provider(constraints or self.constraints)
                if inspect.isawaitable(media):
                    media = await media
                self.local_media = media
            return self.local_media

    async def _create_link(self, remote_user_id: str, initiated_locally: bool, media: LocalMedia, room_id: Optional[str]) -> PeerLink:
        engine = self.engine_factory()
        link = PeerLink(
            remote_user_id,
            engine,
            initiated_locally,
            remote_stream=RemoteStream(remote_user_id),
            room_id=room_id,
            on_state_change=self._on_link_state,
        )
        try:
            self.links.add(link)
        except DuplicateLinkError:
            # Another negotiation with this user won the race while media was opening
            await engine.close()
            raise

        for track in media.subscribe():
            engine.addTrack(track)
            link.local_tracks.append(track)

        @engine.on("track")
        def on_track(track):
            logger.info(f"[{self.user_id}] received {track.kind} track from {remote_user_id}")
            link.remote_stream.add_track(track)
            self.events.emit("remote_stream_added", link.remote_stream, remote_user_id)

        @engine.on("icecandidate")
        def on_ice_candidate(event):
            if event.candidate is not None:
                self._publish_candidate(link, event.candidate)

        @engine.on("connectionstatechange")
        async def on_connection_state_change():
            await self._on_engine_state(link)

        early = self._early_candidates.pop(remote_user_id, None)
        if early:
            logger.debug(f"[{self.user_id}] adopting {len(early)} early candidate(s) from {remote_user_id}")
            for candidate in early.drain():
                link.enqueue_candidate(candidate)

        return link

    def _publish_candidate(self, link: PeerLink, candidate: Any):
        msg = IceCandidateMessage(
            sender_user_id=self.user_id,
            candidate=candidate_to_dict(candidate),
            target_user_id=link.remote_user_id,
            initiated_locally=link.initiated_locally,
        )
        held = self._held_outgoing.get(link)
        if held is not None:
            held.append(msg)
            return
        self.channel.emit(EVT_SEND_ICE_CANDIDATE, msg.to_dict())

    def _hold_outgoing(self, link: PeerLink):
        """Hold local candidates until the description they belong to is sent."""
        self._held_outgoing[link] = []

    def _release_outgoing(self, link: PeerLink):
        for msg in self._held_outgoing.pop(link, []):
            self.channel.emit(EVT_SEND_ICE_CANDIDATE, msg.to_dict())

    def _on_link_state(self, link: PeerLink, state: LinkState):
        self.events.emit("link_state_changed", link.remote_user_id, state)

    async def _on_engine_state(self, link: PeerLink):
        if link.closed or link.engine is None:
            return
        engine_state = link.engine.connectionState
        logger.info(f"[{self.user_id}] connection with {link.remote_user_id}: {engine_state}")

        new_state = _ENGINE_STATES.get(engine_state)
        if new_state is None or not link.transition(new_state):
            return

        if new_state in (LinkState.DISCONNECTED, LinkState.FAILED):
            self.events.emit("user_disconnected", link.remote_user_id)
            await self._close(link)

    # =========================================================================
    # Negotiation
    # =========================================================================

    async def initiate_link(
        self,
        remote_user_id: str,
        constraints: Optional[MediaConstraints] = None,
        room_id: Optional[str] = None,
    ) -> Tuple[LocalMedia, RemoteStream]:
        """Offer a new link to ``remote_user_id``.

        Returns as soon as the offer is published; the returned remote
        stream fills as the peer's tracks arrive.

        Raises:
            DuplicateLinkError: A link with this user already exists.
            MediaAcquisitionError: Local media could not be opened.
        """
        try:
            return await self._initiate(remote_user_id, constraints, room_id)
        except Exception as e:
            self.report_error(e, remote_user_id)
            raise

    async def _initiate(self, remote_user_id, constraints, room_id):
        if remote_user_id in self.links:
            raise DuplicateLinkError(remote_user_id)

        media = await self._acquire_media(constraints)
        link = await self._create_link(remote_user_id, True, media, room_id)
        self._hold_outgoing(link)
        try:
            link.transition(LinkState.OFFERING)
            offer = await link.require_engine().createOffer()
            await link.require_engine().setLocalDescription(offer)

            request = {
                "sessionDescription": description_to_dict(link.require_engine().localDescription),
                "targetUserId": remote_user_id,
            }
            if room_id:
                request["roomId"] = room_id
            self.channel.emit(EVT_NEW_OFFER, request)
            self._release_outgoing(link)
            link.transition(LinkState.AWAITING_REMOTE)
        except Exception:
            await self._close(link, cancel_offer=False)
            raise

        logger.info(f"[{self.user_id}] offer sent to {remote_user_id}")
        return media, link.remote_stream

    async def accept_offer(
        self, offer: Offer, constraints: Optional[MediaConstraints] = None
    ) -> Tuple[LocalMedia, RemoteStream]:
        """Answer an offer received from the server.

        Candidates the server held for this offer are applied before any
        candidate forwarded live.

        Raises:
            DuplicateLinkError: A link with the offerer already exists.
            MediaAcquisitionError: Local media could not be opened.
        """
        try:
            return await self._accept(offer, constraints)
        except Exception as e:
            self.report_error(e, offer.offerer_user_id)
            raise

    async def _accept(self, offer, constraints):
        remote_user_id = offer.offerer_user_id
        if remote_user_id in self.links:
            raise DuplicateLinkError(remote_user_id)

        media = await self._acquire_media(constraints)
        link = await self._create_link(remote_user_id, False, media, offer.room_id)
        self._hold_outgoing(link)
        try:
            link.transition(LinkState.ANSWERING)
            await link.require_engine().setRemoteDescription(
                description_from_dict(offer.session_description)
            )
            answer = await link.require_engine().createAnswer()
            await link.require_engine().setLocalDescription(answer)
            link.transition(LinkState.AWAITING_REMOTE)

            answered = dataclasses.replace(
                offer,
                answer=description_to_dict(link.require_engine().localDescription),
                answerer_user_id=self.user_id,
            )
            ack = self.channel.request(EVT_NEW_ANSWER, answered.to_dict())
            self._release_outgoing(link)
            held_candidates = await ack

            link.candidates.push_front(held_candidates or [])
            await link.flush_candidates()
        except Exception:
            await self._close(link, cancel_offer=False)
            raise

        logger.info(f"[{self.user_id}] answered offer from {remote_user_id}")
        return media, link.remote_stream

    async def receive_answer(self, offer: Offer):
        """Apply the answer to the link that made the offer."""
        remote_user_id = offer.counterpart(self.user_id)
        link = self.links.get(remote_user_id)
        if link is None or not link.initiated_locally:
            logger.info(f"[{self.user_id}] answer from {remote_user_id} has no pending offer, ignoring")
            return
        if link.remote_ready:
            logger.warning(f"[{self.user_id}] duplicate answer from {remote_user_id} ignored")
            return

        try:
            await link.require_engine().setRemoteDescription(description_from_dict(offer.answer))
            await link.flush_candidates()
        except Exception as e:
            self.report_error(e, remote_user_id)
            raise
        logger.info(f"[{self.user_id}] answer from {remote_user_id} applied")

    def receive_ice_candidate(self, msg: IceCandidateMessage):
        """Queue a forwarded candidate on the sender's link.

        Candidates from a sender with no link wait in an early queue only
        while that sender's announced offer is unaccepted. Anything else
        without a link, such as a late candidate from a closed session, is
        dropped.
        """
        if msg.target_user_id and msg.target_user_id != self.user_id:
            logger.warning(f"[{self.user_id}] candidate addressed to {msg.target_user_id} dropped")
            return

        if self.legacy_candidate_fanout and not msg.target_user_id:
            for link in self.links:
                link.enqueue_candidate(msg.candidate)
            return

        sender = msg.sender_user_id
        if not sender:
            logger.warning(f"[{self.user_id}] candidate without sender dropped")
            return

        link = self.links.get(sender)
        if link is None:
            queue = self._early_candidates.get(sender)
            if queue is None:
                logger.debug(f"[{self.user_id}] candidate from {sender} dropped: no link or pending offer")
                return
            if len(queue) >= MAX_EARLY_CANDIDATES:
                logger.warning(f"[{self.user_id}] early candidate queue for {sender} full, dropping")
                return
            queue.push(msg.candidate)
            logger.debug(f"[{self.user_id}] early candidate from {sender} queued ({len(queue)})")
            return

        link.enqueue_candidate(msg.candidate)

    # =========================================================================
    # Multi-peer helpers
    # =========================================================================

    async def _gather(self, user_ids: List[str], calls: List[Any]):
        results = await asyncio.gather(*calls, return_exceptions=True)
        remote_streams: Dict[str, RemoteStream] = {}
        errors: Dict[str, BaseException] = {}
        for user_id, result in zip(user_ids, results):
            if isinstance(result, BaseException):
                errors[user_id] = result
            else:
                remote_streams[user_id] = result[1]
        return self.local_media, remote_streams, errors

    async def initiate_links(self, user_ids: Iterable[str], constraints: Optional[MediaConstraints] = None):
        """Offer links to several users at once.

        Returns:
            ``(local_media, remote_streams, errors)``; ``errors`` maps user id
            to the exception that stopped that link.
        """
        user_ids = list(user_ids)
        calls = [self.initiate_link(user_id, constraints) for user_id in user_ids]
        return await self._gather(user_ids, calls)

    async def accept_offers(self, offers: Iterable[Offer], constraints: Optional[MediaConstraints] = None):
        """Answer several offers at once; same return shape as ``initiate_links``."""
        offers = list(offers)
        calls = [self.accept_offer(offer, constraints) for offer in offers]
        return await self._gather([o.offerer_user_id for o in offers], calls)

    # =========================================================================
    # Teardown
    # =========================================================================

    async def _close(self, link: PeerLink, cancel_offer: bool = True):
        if self.links.get(link.remote_user_id) is link:
            self.links.remove(link.remote_user_id)
        self._held_outgoing.pop(link, None)
        if cancel_offer and link.initiated_locally and not link.closed:
            self.channel.emit(EVT_CANCEL_OFFER, {"targetUserId": link.remote_user_id})
        await link.close()
        logger.info(f"[{self.user_id}] link with {link.remote_user_id} closed")

    async def close_link(self, remote_user_id: str):
        """Close the link with one user. Idempotent."""
        self._early_candidates.pop(remote_user_id, None)
        link = self.links.get(remote_user_id)
        if link is None:
            return
        await self._close(link)

    async def close_all(self):
        """Close every link and stop local media. Idempotent."""
        for link in list(self.links):
            await self._close(link)
        self._early_candidates.clear()
        if self.local_media is not None:
            self.local_media.stop()
            self.local_media = None

    # =========================================================================
    # Transport events
    # =========================================================================

    def _on_offers(self, data):
        offers = [Offer.from_dict(d) for d in data or []]
        offers = [o for o in offers if o.offerer_user_id != self.user_id]
        for offer in offers:
            if offer.offerer_user_id not in self.links:
                # Each announced offer gets a fresh queue
                self._early_candidates[offer.offerer_user_id] = IceCandidateQueue()
        if offers:
            logger.info(f"[{self.user_id}] {len(offers)} offer(s) received")
            self.events.emit("offers_received", offers)

    async def _on_answer_response(self, data):
        try:
            await self.receive_answer(Offer.from_dict(data))
        except Exception:
            # Already delivered to error subscribers by receive_answer
            return

    def _on_ice_candidate(self, data):
        self.receive_ice_candidate(IceCandidateMessage.from_delivery(data))

    async def _on_user_disconnected(self, user_id):
        self._early_candidates.pop(user_id, None)
        if user_id in self.links:
            await self.close_link(user_id)
        self.events.emit("user_disconnected", user_id)

    def _on_channel_closed(self, *args):
        logger.warning(f"[{self.user_id}] signaling connection lost; {len(self.links)} link(s) left open")
