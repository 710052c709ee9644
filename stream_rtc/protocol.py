"""Message protocol definitions for stream-rtc.

This module defines the events and records exchanged between clients and the
signaling server over the websocket transport.

Framing
-------

Every websocket text frame is a JSON object::

    {"event": "<name>", "data": <payload>}

A frame that expects an acknowledgement carries an ``ackId``::

    {"event": "newAnswer", "data": {...}, "ackId": 7}

and the receiver answers with::

    {"event": "ack", "ackId": 7, "data": <result>}

Connection Handshake
--------------------

The first frame a client sends must be ``register``::

    {"event": "register", "data": {"userId": "alice", "password": "..."}}

On a password mismatch the server closes the socket without replying. On
success it replies ``connected`` with ``{"userId", "connectedUsers"}``.

Negotiation Flow
----------------

1. Caller → Server: newOffer {sessionDescription, targetUserId | roomId | userIds}
2. Server → Callee(s): newOfferAwaiting [Offer]
3. Callee → Server: newAnswer Offer (ack) → Server acks with buffered candidates
4. Server → Caller: answerResponse Offer
5. Both → Server: sendIceCandidateToSignalingServer IceCandidateMessage
6. Server → Peer: receivedIceCandidateFromServer {iceCandidate, senderUserId, targetUserId}

Room Flow
---------

1. Host → Server: createRoom (ack) → RoomRecord
2. Guest → Server: joinRoom (ack) → RoomRecord
3. Server → existing members: userJoinedRoom {userId, roomId}
4. Each existing member runs the negotiation flow toward the guest.
5. Server → members: userLeftRoom {userId, roomId} or roomClosed {roomId, reason}
6. Server → everyone: availableRoomsUpdated [RoomRecord] (private rooms omitted)

Wire Formats
------------

Session descriptions are ``{"sdp": str, "type": "offer" | "answer"}``.
ICE candidates use the browser layout::

    {"candidate": "candidate:842163049 1 udp ...", "sdpMid": "0", "sdpMLineIndex": 0}
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from aiortc import RTCIceCandidate, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

# Transport-level events
EVT_REGISTER = "register"
EVT_CONNECTED = "connected"
EVT_ACK = "ack"
EVT_DISCONNECT = "disconnect"

# Negotiation events
EVT_NEW_OFFER = "newOffer"
EVT_NEW_OFFER_AWAITING = "newOfferAwaiting"
EVT_NEW_ANSWER = "newAnswer"
EVT_ANSWER_RESPONSE = "answerResponse"
EVT_CANCEL_OFFER = "cancelOffer"
EVT_SEND_ICE_CANDIDATE = "sendIceCandidateToSignalingServer"
EVT_RECEIVED_ICE_CANDIDATE = "receivedIceCandidateFromServer"
EVT_AVAILABLE_OFFERS = "availableOffers"

# Room events
EVT_CREATE_ROOM = "createRoom"
EVT_JOIN_ROOM = "joinRoom"
EVT_LEAVE_ROOM = "leaveRoom"
EVT_GET_AVAILABLE_ROOMS = "getAvailableRooms"
EVT_USER_JOINED_ROOM = "userJoinedRoom"
EVT_USER_LEFT_ROOM = "userLeftRoom"
EVT_ROOM_CLOSED = "roomClosed"
EVT_AVAILABLE_ROOMS_UPDATED = "availableRoomsUpdated"

# Presence events
EVT_USER_CONNECTED = "userConnected"
EVT_USER_DISCONNECTED = "userDisconnected"

# Room close reasons
REASON_HOST_LEFT = "host left"
REASON_EMPTY = "empty"

CANDIDATE_PREFIX = "candidate:"


def format_frame(event: str, data: Any = None, ack_id: Optional[int] = None) -> str:
    """Format a transport frame.

    Args:
        event: Event name (e.g., EVT_NEW_OFFER).
        data: JSON-serializable payload.
        ack_id: Request id when the sender expects an acknowledgement.

    Returns:
        JSON text frame.

    Examples:
        >>> format_frame(EVT_CANCEL_OFFER, {})
        '{"event": "cancelOffer", "data": {}}'

        >>> format_frame(EVT_ACK, [], ack_id=3)
        '{"event": "ack", "data": [], "ackId": 3}'
    """
    frame = {"event": event, "data": data}
    if ack_id is not None:
        frame["ackId"] = ack_id
    return json.dumps(frame)


def parse_frame(message: str) -> Tuple[str, Any, Optional[int]]:
    """Parse a transport frame into event, payload and ack id.

    Args:
        message: JSON text frame.

    Returns:
        Tuple of (event, data, ack_id).

    Raises:
        ValueError: If the frame is not a JSON object with an event name.

    Examples:
        >>> parse_frame('{"event": "ack", "data": [], "ackId": 3}')
        ('ack', [], 3)
    """
    frame = json.loads(message)
    if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
        raise ValueError(f"Malformed frame: {message[:80]}")
    return frame["event"], frame.get("data"), frame.get("ackId")


# =============================================================================
# Session description and candidate codecs
# =============================================================================


def description_to_dict(description: RTCSessionDescription) -> Dict[str, str]:
    """Convert an engine session description to its wire form."""
    return {"sdp": description.sdp, "type": description.type}


def description_from_dict(data: Dict[str, str]) -> RTCSessionDescription:
    """Build an engine session description from its wire form."""
    return RTCSessionDescription(sdp=data["sdp"], type=data["type"])


def candidate_to_dict(candidate: RTCIceCandidate) -> Dict[str, Any]:
    """Convert an engine ICE candidate to the browser wire layout."""
    return {
        "candidate": CANDIDATE_PREFIX + candidate_to_sdp(candidate),
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
    }


def candidate_from_dict(data: Dict[str, Any]) -> RTCIceCandidate:
    """Build an engine ICE candidate from the browser wire layout."""
    line = data["candidate"]
    if line.startswith(CANDIDATE_PREFIX):
        line = line[len(CANDIDATE_PREFIX) :]
    candidate = candidate_from_sdp(line)
    candidate.sdpMid = data.get("sdpMid")
    candidate.sdpMLineIndex = data.get("sdpMLineIndex")
    return candidate


def candidate_key(data: Dict[str, Any]) -> Tuple[Any, Any, Any]:
    """Identity of a wire candidate, used to apply duplicates only once."""
    return data.get("candidate"), data.get("sdpMid"), data.get("sdpMLineIndex")


# =============================================================================
# Records
# =============================================================================


@dataclass
class Offer:
    """An in-flight offer and, once answered, its answer.

    Attributes:
        offerer_user_id: User who created the offer.
        session_description: Offer description in wire form.
        offer_candidates: Offerer candidates collected by the server.
        answerer_user_id: User who answered ("" until answered).
        answer: Answer description in wire form, None until answered.
        answerer_candidates: Answerer candidates collected by the server.
        target_user_id: Explicit single destination, if any.
        room_id: Room the offer was broadcast to, if any.
        user_ids: Explicit destination list, if any.
    """

    offerer_user_id: str
    session_description: Dict[str, str]
    offer_candidates: List[Dict[str, Any]] = field(default_factory=list)
    answerer_user_id: str = ""
    answer: Optional[Dict[str, str]] = None
    answerer_candidates: List[Dict[str, Any]] = field(default_factory=list)
    target_user_id: Optional[str] = None
    room_id: Optional[str] = None
    user_ids: Optional[List[str]] = None

    @property
    def answered(self) -> bool:
        return self.answer is not None

    def accept_answer(self, answerer_user_id: str, answer: Dict[str, str]):
        """Stamp the answer on this offer.

        Raises:
            ValueError: If the offer was already answered.
        """
        if self.answer is not None:
            raise ValueError(f"Offer from {self.offerer_user_id} already answered")
        self.answer = answer
        self.answerer_user_id = answerer_user_id

    def addresses(self, user_id: str) -> bool:
        """Whether this offer is meant for ``user_id``."""
        if user_id == self.offerer_user_id:
            return False
        if self.target_user_id:
            return self.target_user_id == user_id
        if self.user_ids:
            return user_id in self.user_ids
        return True

    def counterpart(self, user_id: str) -> str:
        """The other party of this offer from ``user_id``'s point of view."""
        if user_id == self.offerer_user_id:
            return self.answerer_user_id or self.target_user_id or ""
        return self.offerer_user_id

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "offererUserId": self.offerer_user_id,
            "sessionDescription": self.session_description,
            "offerCandidates": list(self.offer_candidates),
            "answererUserId": self.answerer_user_id,
            "answer": self.answer,
            "answererCandidates": list(self.answerer_candidates),
        }
        if self.target_user_id:
            data["targetUserId"] = self.target_user_id
        if self.room_id:
            data["roomId"] = self.room_id
        if self.user_ids:
            data["userIds"] = list(self.user_ids)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Offer":
        return cls(
            offerer_user_id=data["offererUserId"],
            session_description=data["sessionDescription"],
            offer_candidates=list(data.get("offerCandidates") or []),
            answerer_user_id=data.get("answererUserId") or "",
            answer=data.get("answer"),
            answerer_candidates=list(data.get("answererCandidates") or []),
            target_user_id=data.get("targetUserId"),
            room_id=data.get("roomId"),
            user_ids=data.get("userIds"),
        )


@dataclass
class IceCandidateMessage:
    """A candidate on its way through the signaling server.

    ``initiated_locally`` is the sender's fixed role on the link the candidate
    belongs to; the server only consults it for the legacy routing tier.
    """

    sender_user_id: str
    candidate: Dict[str, Any]
    target_user_id: Optional[str] = None
    room_id: Optional[str] = None
    initiated_locally: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"senderUserId": self.sender_user_id, "candidate": self.candidate}
        if self.target_user_id:
            data["targetUserId"] = self.target_user_id
        if self.room_id:
            data["roomId"] = self.room_id
        if self.initiated_locally is not None:
            data["didIOffer"] = self.initiated_locally
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IceCandidateMessage":
        return cls(
            sender_user_id=data["senderUserId"],
            candidate=data["candidate"],
            target_user_id=data.get("targetUserId"),
            room_id=data.get("roomId"),
            initiated_locally=data.get("didIOffer"),
        )

    @classmethod
    def from_delivery(cls, data: Dict[str, Any]) -> "IceCandidateMessage":
        """Parse a receivedIceCandidateFromServer payload."""
        return cls(
            sender_user_id=data.get("senderUserId") or "",
            candidate=data["iceCandidate"],
            target_user_id=data.get("targetUserId"),
            room_id=data.get("roomId"),
        )


@dataclass
class RoomRecord:
    """A room and its ordered membership (join order)."""

    room_id: str
    name: str
    creator_user_id: str
    max_participants: int
    is_private: bool = False
    participants: List[str] = field(default_factory=list)
    created_at: float = 0.0

    @property
    def is_full(self) -> bool:
        return len(self.participants) >= self.max_participants

    def to_dict(self) -> Dict[str, Any]:
        return {
            "roomId": self.room_id,
            "name": self.name,
            "isPrivate": self.is_private,
            "maxParticipants": self.max_participants,
            "participants": list(self.participants),
            "creatorUserId": self.creator_user_id,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RoomRecord":
        return cls(
            room_id=data["roomId"],
            name=data.get("name", ""),
            creator_user_id=data.get("creatorUserId", ""),
            max_participants=data.get("maxParticipants", 0),
            is_private=data.get("isPrivate", False),
            participants=list(data.get("participants") or []),
            created_at=data.get("createdAt", 0.0),
        )
