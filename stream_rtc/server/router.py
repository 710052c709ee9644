"""Routing decisions for the signaling server.

The router holds no state of its own. Every handler reads and mutates the
injected SignalingRegistry, then delivers frames through ``send(user_id,
event, data)`` on the resolved endpoints. Routing failures are logged and
dropped; the sender never receives a negative acknowledgement.
"""

import logging
from typing import Any, Dict, List, Optional

from stream_rtc.exceptions import RoomError, RoutingFailure
from stream_rtc.protocol import (
    EVT_ANSWER_RESPONSE,
    EVT_AVAILABLE_OFFERS,
    EVT_AVAILABLE_ROOMS_UPDATED,
    EVT_NEW_OFFER_AWAITING,
    EVT_RECEIVED_ICE_CANDIDATE,
    EVT_ROOM_CLOSED,
    EVT_USER_CONNECTED,
    EVT_USER_DISCONNECTED,
    EVT_USER_JOINED_ROOM,
    EVT_USER_LEFT_ROOM,
    IceCandidateMessage,
    Offer,
    format_frame,
)
from stream_rtc.server.registry import LeaveOutcome, SignalingRegistry

logger = logging.getLogger(__name__)


class SignalingRouter:
    """Decides who receives each negotiation and room message.

    Endpoints are anything with an async ``send(str)`` method, normally the
    server-side websocket of each connected user.
    """

    def __init__(self, registry: SignalingRegistry):
        self.registry = registry

    # =========================================================================
    # Delivery
    # =========================================================================

    def resolve(self, user_id: Optional[str]) -> Any:
        """Return the endpoint of a connected user.

        Raises:
            RoutingFailure: If the user is not connected.
        """
        endpoint = self.registry.users.resolve(user_id)
        if endpoint is None:
            raise RoutingFailure(f"user {user_id} not connected")
        return endpoint

    async def send(self, user_id: str, event: str, data: Any = None) -> bool:
        """Deliver one frame to a connected user.

        Returns:
            True if the frame was handed to the user's endpoint.
        """
        try:
            endpoint = self.resolve(user_id)
        except RoutingFailure as e:
            logger.warning(f"Cannot deliver {event}: {e}")
            return False
        try:
            await endpoint.send(format_frame(event, data))
        except Exception as e:
            logger.warning(f"Delivery of {event} to {user_id} failed: {e}")
            return False
        logger.debug(f"Delivered {event} to {user_id}")
        return True

    async def broadcast(self, event: str, data: Any = None, exclude: Optional[str] = None):
        for user_id in self.registry.users.user_ids():
            if user_id != exclude:
                await self.send(user_id, event, data)

    async def broadcast_room_list(self):
        rooms = [room.to_dict() for room in self.registry.rooms.available_rooms()]
        await self.broadcast(EVT_AVAILABLE_ROOMS_UPDATED, rooms)

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    async def on_connect(self, user_id: str, endpoint: Any):
        """Register a user and hand them the offers they may answer."""
        self.registry.users.register(user_id, endpoint)
        logger.info(f"User connected: {user_id} (total: {len(self.registry.users)})")

        open_offers = self.registry.offers.open_offers_for(user_id)
        if open_offers:
            await self.send(user_id, EVT_AVAILABLE_OFFERS, [o.to_dict() for o in open_offers])

        await self.broadcast(EVT_USER_CONNECTED, user_id, exclude=user_id)

    async def on_disconnect(self, user_id: str, endpoint: Any = None):
        """Release everything the user held.

        Removes the directory entry and the user's open offer, leaves every
        room the user is in, then tells the remaining users.
        """
        if not self.registry.users.remove(user_id, endpoint):
            logger.debug(f"Ignoring stale disconnect for {user_id}")
            return

        if self.registry.offers.remove(user_id) is not None:
            logger.info(f"Dropped open offer from {user_id}")

        for room in self.registry.rooms.rooms_of(user_id):
            await self._leave(room.room_id, user_id)

        await self.broadcast(EVT_USER_DISCONNECTED, user_id)
        logger.info(f"User disconnected: {user_id} (remaining: {len(self.registry.users)})")

    # =========================================================================
    # Negotiation
    # =========================================================================

    def _offer_destinations(self, offer: Offer) -> List[str]:
        sender = offer.offerer_user_id

        if offer.target_user_id:
            return [offer.target_user_id]

        if offer.room_id:
            room = self.registry.rooms.get(offer.room_id)
            if room is None:
                logger.warning(f"Offer from {sender} names unknown room {offer.room_id}")
                return []
            return [p for p in room.participants if p != sender]

        if offer.user_ids:
            return [u for u in offer.user_ids if u != sender]

        return [u for u in self.registry.users.user_ids() if u != sender]

    async def on_new_offer(
        self,
        sender_user_id: str,
        description: Dict[str, str],
        routing: Optional[Dict[str, Any]] = None,
    ) -> Offer:
        """Store a new offer and forward it to its destinations.

        Destination precedence is targetUserId, then roomId, then userIds,
        then every other connected user.
        """
        routing = routing or {}
        offer = Offer(
            offerer_user_id=sender_user_id,
            session_description=description,
            target_user_id=routing.get("targetUserId"),
            room_id=routing.get("roomId"),
            user_ids=routing.get("userIds"),
        )
        replaced = self.registry.offers.put(offer)
        if replaced is not None:
            logger.info(f"Offer from {sender_user_id} replaced a previous open offer")
            await self._release_held_candidates(replaced)

        destinations = self._offer_destinations(offer)
        if not destinations:
            logger.warning(f"Offer from {sender_user_id} has no reachable destination")

        payload = [offer.to_dict()]
        for user_id in destinations:
            await self.send(user_id, EVT_NEW_OFFER_AWAITING, payload)

        logger.info(f"Offer from {sender_user_id} forwarded to {destinations}")
        return offer

    async def on_new_answer(self, answerer_user_id: str, offer_data: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Complete an offer with its answer.

        Returns:
            The offerer's candidates collected so far, as the answer's
            acknowledgement. Empty if the offerer is gone.
        """
        offerer_user_id = offer_data.get("offererUserId")
        try:
            self.resolve(offerer_user_id)
        except RoutingFailure as e:
            logger.warning(f"Answer from {answerer_user_id} dropped: {e}")
            return []

        offer = self.registry.offers.get(offerer_user_id)
        if offer is None or not offer.addresses(answerer_user_id):
            # The offer was replaced by a newer one to someone else; its held
            # candidates were already released to the answerer directly.
            logger.info(f"Answer from {answerer_user_id} matches a superseded offer from {offerer_user_id}")
            superseded = Offer.from_dict(offer_data)
            superseded.answerer_user_id = answerer_user_id
            await self.send(offerer_user_id, EVT_ANSWER_RESPONSE, superseded.to_dict())
            return []

        ack = list(offer.offer_candidates)
        try:
            offer.accept_answer(answerer_user_id, offer_data.get("answer"))
        except ValueError as e:
            logger.warning(f"Answer from {answerer_user_id} rejected: {e}")
            return []

        await self.send(offerer_user_id, EVT_ANSWER_RESPONSE, offer.to_dict())
        logger.info(f"Answer from {answerer_user_id} forwarded to {offerer_user_id}")
        return ack

    async def on_cancel_offer(self, user_id: str, target_user_id: Optional[str] = None):
        """Drop the user's open offer, or only their offer to ``target_user_id``."""
        offer = self.registry.offers.get(user_id)
        if offer is None:
            return
        if target_user_id and offer.target_user_id and offer.target_user_id != target_user_id:
            logger.debug(f"Cancel from {user_id} for {target_user_id} ignored: open offer targets {offer.target_user_id}")
            return
        self.registry.offers.remove(user_id)
        logger.info(f"Offer from {user_id} cancelled")

    async def _deliver_candidate(self, msg: IceCandidateMessage, target_user_id: str):
        await self.send(
            target_user_id,
            EVT_RECEIVED_ICE_CANDIDATE,
            {
                "iceCandidate": msg.candidate,
                "senderUserId": msg.sender_user_id,
                "targetUserId": target_user_id,
            },
        )

    async def _release_held_candidates(self, offer: Offer):
        """Forward candidates held on an unanswered offer that is going away."""
        if offer.answered or not offer.target_user_id:
            return
        for candidate in offer.offer_candidates:
            held = IceCandidateMessage(sender_user_id=offer.offerer_user_id, candidate=candidate)
            await self._deliver_candidate(held, offer.target_user_id)

    async def on_ice_candidate(self, msg: IceCandidateMessage):
        """Route one candidate.

        Explicit targets are delivered directly, except that an offerer's
        candidates are held on its still-unanswered offer to that target.
        Room candidates go to every other participant. Anything else falls
        back to the offer table.
        """
        sender = msg.sender_user_id
        offers = self.registry.offers

        if msg.target_user_id:
            own_offer = offers.get(sender)
            if own_offer is not None and own_offer.addresses(msg.target_user_id):
                own_offer.offer_candidates.append(msg.candidate)
                if not own_offer.answered:
                    logger.debug(f"Holding candidate from {sender} until {msg.target_user_id} answers")
                    return
            await self._deliver_candidate(msg, msg.target_user_id)
            return

        if msg.room_id:
            room = self.registry.rooms.get(msg.room_id)
            if room is None or sender not in room.participants:
                logger.warning(f"Candidate from {sender} for room {msg.room_id} dropped: not a participant")
                return
            for participant in room.participants:
                if participant != sender:
                    await self._deliver_candidate(msg, participant)
            return

        # Legacy routing through the offer table
        if msg.initiated_locally:
            offer = offers.get(sender)
            if offer is None:
                logger.warning(f"Candidate from offerer {sender} dropped: no open offer")
                return
            offer.offer_candidates.append(msg.candidate)
            if offer.answered:
                await self._deliver_candidate(msg, offer.answerer_user_id)
            return

        offer = offers.find_by_answerer(sender)
        if offer is None:
            logger.warning(f"Candidate from answerer {sender} dropped: no matching offer")
            return
        offer.answerer_candidates.append(msg.candidate)
        await self._deliver_candidate(msg, offer.offerer_user_id)

    # =========================================================================
    # Rooms
    # =========================================================================

    async def on_create_room(self, user_id: str, request: Dict[str, Any]) -> Dict[str, Any]:
        """Create a room; the ack is the room record or a room error."""
        try:
            room = self.registry.rooms.create_room(
                name=request.get("name", ""),
                creator_user_id=user_id,
                max_participants=request.get("maxParticipants"),
                is_private=request.get("isPrivate", False),
                room_id=request.get("roomId"),
            )
        except RoomError as e:
            logger.warning(f"createRoom from {user_id} failed: {e}")
            return e.to_ack()

        if not room.is_private:
            await self.broadcast_room_list()
        return room.to_dict()

    async def on_join_room(self, user_id: str, request: Dict[str, Any]) -> Dict[str, Any]:
        """Add a user to a room and tell the members already there."""
        room_id = request.get("roomId")
        try:
            room = self.registry.rooms.join_room(room_id, user_id)
        except RoomError as e:
            logger.warning(f"joinRoom from {user_id} failed: {e}")
            return e.to_ack()

        notice = {"userId": user_id, "roomId": room.room_id}
        for participant in room.participants:
            if participant != user_id:
                await self.send(participant, EVT_USER_JOINED_ROOM, notice)

        if not room.is_private:
            await self.broadcast_room_list()
        return room.to_dict()

    async def on_leave_room(self, user_id: str, request: Dict[str, Any]) -> Dict[str, Any]:
        room_id = request.get("roomId")
        outcome = await self._leave(room_id, user_id)
        return {"roomId": room_id, "closed": outcome.closed}

    async def on_get_available_rooms(self, user_id: str, request: Any = None) -> List[Dict[str, Any]]:
        return [room.to_dict() for room in self.registry.rooms.available_rooms()]

    async def _leave(self, room_id: str, user_id: str) -> LeaveOutcome:
        outcome = self.registry.rooms.leave_room(room_id, user_id)
        if outcome.room is None or outcome.remaining is None:
            return outcome

        if outcome.closed:
            notice = {"roomId": room_id, "reason": outcome.reason}
            for participant in outcome.remaining:
                await self.send(participant, EVT_ROOM_CLOSED, notice)
        else:
            notice = {"userId": user_id, "roomId": room_id}
            for participant in outcome.remaining:
                await self.send(participant, EVT_USER_LEFT_ROOM, notice)

        if not outcome.room.is_private:
            await self.broadcast_room_list()
        return outcome
