"""Server-side registries: connected users, open offers and rooms.

All three live in one SignalingRegistry instance, constructed once per server
process and handed to the router by reference. Nothing here performs I/O;
the router turns registry results into deliveries.
"""

import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional

from stream_rtc.exceptions import (
    AlreadyInRoomError,
    DuplicateRoomIdError,
    RoomError,
    RoomFullError,
    RoomNotFoundError,
)
from stream_rtc.protocol import REASON_EMPTY, REASON_HOST_LEFT, Offer, RoomRecord

logger = logging.getLogger(__name__)


class UserDirectory:
    """Maps a stable user id to the endpoint of its current connection."""

    def __init__(self):
        self._endpoints: Dict[str, Any] = {}

    def register(self, user_id: str, endpoint: Any):
        if user_id in self._endpoints:
            logger.info(f"User {user_id} reconnected, replacing endpoint")
        self._endpoints[user_id] = endpoint

    def remove(self, user_id: str, endpoint: Any = None) -> bool:
        """Drop a user's entry.

        When ``endpoint`` is given the entry is only removed if it still
        points at that endpoint, so a stale connection closing after a
        reconnect does not evict the fresh one.
        """
        current = self._endpoints.get(user_id)
        if current is None:
            return False
        if endpoint is not None and current is not endpoint:
            return False
        del self._endpoints[user_id]
        return True

    def resolve(self, user_id: Optional[str]) -> Optional[Any]:
        if not user_id:
            return None
        return self._endpoints.get(user_id)

    def user_ids(self) -> List[str]:
        return list(self._endpoints)

    def __contains__(self, user_id: str) -> bool:
        return user_id in self._endpoints

    def __len__(self) -> int:
        return len(self._endpoints)


class OfferTable:
    """Open offers keyed by offering user; one in-flight offer per sender."""

    def __init__(self):
        self._offers: Dict[str, Offer] = {}

    def put(self, offer: Offer) -> Optional[Offer]:
        """Store an offer, returning the open offer it replaced (if any)."""
        previous = self._offers.get(offer.offerer_user_id)
        self._offers[offer.offerer_user_id] = offer
        return previous

    def get(self, offerer_user_id: str) -> Optional[Offer]:
        return self._offers.get(offerer_user_id)

    def remove(self, offerer_user_id: str) -> Optional[Offer]:
        return self._offers.pop(offerer_user_id, None)

    def find_by_answerer(self, answerer_user_id: str) -> Optional[Offer]:
        for offer in self._offers.values():
            if offer.answerer_user_id == answerer_user_id:
                return offer
        return None

    def open_offers_for(self, user_id: str) -> List[Offer]:
        """Unanswered offers a newly connected user may answer."""
        return [o for o in self._offers.values() if not o.answered and o.addresses(user_id)]

    def __iter__(self) -> Iterator[Offer]:
        return iter(list(self._offers.values()))

    def __len__(self) -> int:
        return len(self._offers)


@dataclass
class LeaveOutcome:
    """What happened when a user left a room.

    Attributes:
        room: The room record (a snapshot if the room was closed), or None if
            there was nothing to leave.
        closed: Whether the room was deleted.
        reason: REASON_HOST_LEFT or REASON_EMPTY when closed.
        remaining: Participants still to be notified.
    """

    room: Optional[RoomRecord]
    closed: bool = False
    reason: Optional[str] = None
    remaining: Optional[List[str]] = None


class RoomDirectory:
    """Room records and membership invariants."""

    def __init__(self, default_max_participants: int = 4):
        self.default_max_participants = default_max_participants
        self._rooms: Dict[str, RoomRecord] = {}

    def create_room(
        self,
        name: str,
        creator_user_id: str,
        max_participants: Optional[int] = None,
        is_private: bool = False,
        room_id: Optional[str] = None,
    ) -> RoomRecord:
        """Create a room with its creator as the only participant.

        Raises:
            DuplicateRoomIdError: If ``room_id`` is supplied and taken.
            RoomError: If ``max_participants`` is not a positive integer.
        """
        if room_id and room_id in self._rooms:
            raise DuplicateRoomIdError(f"Room {room_id} already exists")

        limit = self.default_max_participants if max_participants is None else max_participants
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
            raise RoomError(f"max_participants must be a positive integer, got {limit!r}")

        room = RoomRecord(
            room_id=room_id or uuid.uuid4().hex,
            name=name or "",
            creator_user_id=creator_user_id,
            max_participants=limit,
            is_private=bool(is_private),
            participants=[creator_user_id],
            created_at=time.time(),
        )
        self._rooms[room.room_id] = room
        logger.info(f"Room {room.room_id} created by {creator_user_id} (max {limit})")
        return room

    def join_room(self, room_id: str, user_id: str) -> RoomRecord:
        """Append ``user_id`` to the room's participants.

        Raises:
            RoomNotFoundError: Unknown room.
            AlreadyInRoomError: User already a participant.
            RoomFullError: Room at capacity.
        """
        room = self._rooms.get(room_id)
        if room is None:
            raise RoomNotFoundError(f"Room {room_id} not found")
        if user_id in room.participants:
            raise AlreadyInRoomError(f"User {user_id} already in room {room_id}")
        if room.is_full:
            raise RoomFullError(
                f"Room {room_id} is full ({room.max_participants} participants)"
            )
        room.participants.append(user_id)
        logger.info(f"User {user_id} joined room {room_id} ({len(room.participants)}/{room.max_participants})")
        return room

    def leave_room(self, room_id: str, user_id: str) -> LeaveOutcome:
        """Remove ``user_id``; close the room if it empties or the host left.

        A missing room or a non-member is treated as already-left.
        """
        room = self._rooms.get(room_id)
        if room is None or user_id not in room.participants:
            logger.debug(f"User {user_id} not in room {room_id}, nothing to leave")
            return LeaveOutcome(room=room)

        room.participants.remove(user_id)
        remaining = list(room.participants)

        if not remaining or user_id == room.creator_user_id:
            del self._rooms[room_id]
            reason = REASON_EMPTY if not remaining else REASON_HOST_LEFT
            logger.info(f"Room {room_id} closed ({reason})")
            return LeaveOutcome(room=room, closed=True, reason=reason, remaining=remaining)

        logger.info(f"User {user_id} left room {room_id}")
        return LeaveOutcome(room=room, remaining=remaining)

    def get(self, room_id: Optional[str]) -> Optional[RoomRecord]:
        if not room_id:
            return None
        return self._rooms.get(room_id)

    def available_rooms(self) -> List[RoomRecord]:
        """Every non-private room."""
        return [room for room in self._rooms.values() if not room.is_private]

    def rooms_of(self, user_id: str) -> List[RoomRecord]:
        return [room for room in self._rooms.values() if user_id in room.participants]

    def __contains__(self, room_id: str) -> bool:
        return room_id in self._rooms

    def __len__(self) -> int:
        return len(self._rooms)


class SignalingRegistry:
    """The server's process-wide state, bundled for injection into the router."""

    def __init__(self, default_max_participants: int = 4):
        self.users = UserDirectory()
        self.offers = OfferTable()
        self.rooms = RoomDirectory(default_max_participants=default_max_participants)
