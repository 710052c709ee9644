"""Room membership on top of SignalingClient.

Members of a room form a full mesh. When someone joins, every member already
in the room offers a link to the newcomer, and the newcomer answers every
offer tagged with the room it is joining. Only existing members initiate, so
two members never offer to each other at the same time.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from stream_rtc.client.media import MediaConstraints, RemoteStream
from stream_rtc.client.signaling_client import SignalingClient
from stream_rtc.events import SignalBus
from stream_rtc.exceptions import AlreadyInRoomError, room_error_from_ack
from stream_rtc.protocol import (
    EVT_AVAILABLE_ROOMS_UPDATED,
    EVT_CREATE_ROOM,
    EVT_DISCONNECT,
    EVT_GET_AVAILABLE_ROOMS,
    EVT_JOIN_ROOM,
    EVT_LEAVE_ROOM,
    EVT_ROOM_CLOSED,
    EVT_USER_JOINED_ROOM,
    EVT_USER_LEFT_ROOM,
    Offer,
    RoomRecord,
)

logger = logging.getLogger(__name__)


class RoomClient:
    """Room-aware front end for a SignalingClient.

    Events (``room_client.events``):
        room_joined(room), room_left(room_id), user_joined_room(user_id, room_id),
        user_left_room(user_id, room_id), room_closed(room_id, reason),
        room_list_updated(rooms)

    Errors are delivered on the wrapped client's ``error`` event.
    """

    def __init__(self, client: SignalingClient):
        self.client = client
        self.channel = client.channel
        self.events = SignalBus(f"rooms:{client.user_id}")
        self.room: Optional[RoomRecord] = None
        self.available_rooms: List[RoomRecord] = []
        self._joining_room_id: Optional[str] = None
        self._constraints: Optional[MediaConstraints] = None

        self.channel.on(EVT_USER_JOINED_ROOM, self._on_user_joined_room)
        self.channel.on(EVT_USER_LEFT_ROOM, self._on_user_left_room)
        self.channel.on(EVT_ROOM_CLOSED, self._on_room_closed)
        self.channel.on(EVT_AVAILABLE_ROOMS_UPDATED, self._on_rooms_updated)
        self.channel.on(EVT_DISCONNECT, self._on_disconnect)
        client.events.on("offers_received", self._on_offers_received)

    @property
    def room_id(self) -> Optional[str]:
        return self.room.room_id if self.room else None

    def remote_streams(self) -> Dict[str, RemoteStream]:
        """Remote streams of the links in the current room."""
        return {
            link.remote_user_id: link.remote_stream
            for link in self.client.links
            if self.room and link.room_id == self.room.room_id
        }

    def _fail(self, exc: Exception):
        self.client.report_error(exc)
        raise exc

    def _ensure_not_in_room(self):
        if self.room is not None or self._joining_room_id is not None:
            self._fail(AlreadyInRoomError(f"Already in room {self.room_id or self._joining_room_id}"))

    async def _request(self, event: str, data: Any) -> Any:
        result = await self.channel.emit_with_ack(event, data)
        error = room_error_from_ack(result)
        if error is not None:
            self._fail(error)
        return result

    # =========================================================================
    # Membership
    # =========================================================================

    async def create_room(
        self,
        name: str,
        max_participants: Optional[int] = None,
        room_id: Optional[str] = None,
        is_private: bool = False,
        constraints: Optional[MediaConstraints] = None,
    ) -> RoomRecord:
        """Create a room and enter it as host.

        Raises:
            AlreadyInRoomError: Already in (or joining) a room.
            DuplicateRoomIdError: ``room_id`` is taken.
            RoomError: ``max_participants`` is not a positive integer.
        """
        self._ensure_not_in_room()
        request = {"name": name, "isPrivate": is_private}
        if max_participants is not None:
            request["maxParticipants"] = max_participants
        if room_id:
            request["roomId"] = room_id

        result = await self._request(EVT_CREATE_ROOM, request)
        self.room = RoomRecord.from_dict(result)
        self._constraints = constraints
        logger.info(f"[{self.client.user_id}] created room {self.room.room_id}")
        self.events.emit("room_joined", self.room)
        return self.room

    async def join_room(self, room_id: str, constraints: Optional[MediaConstraints] = None) -> RoomRecord:
        """Join an existing room; its members will offer links to us.

        Raises:
            AlreadyInRoomError: Already in (or joining) a room.
            RoomNotFoundError: No such room.
            RoomFullError: The room is at capacity.
        """
        self._ensure_not_in_room()
        self._joining_room_id = room_id
        self._constraints = constraints
        try:
            result = await self._request(EVT_JOIN_ROOM, {"roomId": room_id})
        finally:
            self._joining_room_id = None

        self.room = RoomRecord.from_dict(result)
        logger.info(
            f"[{self.client.user_id}] joined room {room_id} "
            f"({len(self.room.participants)}/{self.room.max_participants})"
        )
        self.events.emit("room_joined", self.room)
        return self.room

    async def leave_room(self):
        """Leave the current room and close its links. No-op outside a room."""
        if self.room is None:
            return
        room_id = self.room.room_id
        if not self.channel.closed:
            await self.channel.emit_with_ack(EVT_LEAVE_ROOM, {"roomId": room_id})
        await self._teardown(room_id)
        logger.info(f"[{self.client.user_id}] left room {room_id}")
        self.events.emit("room_left", room_id)

    async def get_available_rooms(self) -> List[RoomRecord]:
        result = await self._request(EVT_GET_AVAILABLE_ROOMS, {})
        self.available_rooms = [RoomRecord.from_dict(r) for r in result or []]
        return self.available_rooms

    async def _teardown(self, room_id: str):
        for link in list(self.client.links):
            if link.room_id == room_id:
                await self.client.close_link(link.remote_user_id)
        if self.room is not None and self.room.room_id == room_id:
            self.room = None

    # =========================================================================
    # Server events
    # =========================================================================

    def _in_room(self, room_id: Optional[str]) -> bool:
        return room_id is not None and room_id in (self.room_id, self._joining_room_id)

    async def _on_offers_received(self, offers: List[Offer]):
        room_offers = [o for o in offers if self._in_room(o.room_id)]
        if not room_offers:
            return
        await asyncio.gather(
            *(self._accept(offer) for offer in room_offers), return_exceptions=True
        )

    async def _accept(self, offer: Offer):
        logger.info(f"[{self.client.user_id}] accepting room offer from {offer.offerer_user_id}")
        await self.client.accept_offer(offer, self._constraints)

    async def _on_user_joined_room(self, data):
        user_id, room_id = data.get("userId"), data.get("roomId")
        if self.room is None or room_id != self.room.room_id or user_id == self.client.user_id:
            return
        if user_id not in self.room.participants:
            self.room.participants.append(user_id)
        self.events.emit("user_joined_room", user_id, room_id)

        try:
            await self.client.initiate_link(user_id, self._constraints, room_id=room_id)
        except Exception:
            # Reported on the client's error event
            return

    async def _on_user_left_room(self, data):
        user_id, room_id = data.get("userId"), data.get("roomId")
        if self.room is None or room_id != self.room.room_id:
            return
        if user_id in self.room.participants:
            self.room.participants.remove(user_id)
        await self.client.close_link(user_id)
        self.events.emit("user_left_room", user_id, room_id)

    async def _on_room_closed(self, data):
        room_id, reason = data.get("roomId"), data.get("reason")
        if self.room is None or room_id != self.room.room_id:
            return
        logger.info(f"[{self.client.user_id}] room {room_id} closed ({reason})")
        await self._teardown(room_id)
        self.events.emit("room_closed", room_id, reason)

    def _on_rooms_updated(self, data):
        self.available_rooms = [RoomRecord.from_dict(r) for r in data or []]
        self.events.emit("room_list_updated", self.available_rooms)

    async def _on_disconnect(self, *args):
        if self.room is not None:
            await self._teardown(self.room.room_id)
