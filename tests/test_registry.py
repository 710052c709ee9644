"""Tests for the server-side user, offer and room registries."""

import pytest

from stream_rtc.exceptions import (
    AlreadyInRoomError,
    DuplicateRoomIdError,
    RoomError,
    RoomFullError,
    RoomNotFoundError,
)
from stream_rtc.protocol import REASON_EMPTY, REASON_HOST_LEFT, Offer
from stream_rtc.server.registry import OfferTable, RoomDirectory, UserDirectory


def make_offer(offerer="alice", **kwargs):
    return Offer(offerer_user_id=offerer, session_description={"sdp": "o", "type": "offer"}, **kwargs)


class TestUserDirectory:
    def test_register_replaces_endpoint(self):
        users = UserDirectory()
        first, second = object(), object()
        users.register("alice", first)
        users.register("alice", second)
        assert users.resolve("alice") is second
        assert len(users) == 1

    def test_stale_endpoint_does_not_evict(self):
        users = UserDirectory()
        first, second = object(), object()
        users.register("alice", first)
        users.register("alice", second)
        assert not users.remove("alice", first)
        assert users.resolve("alice") is second
        assert users.remove("alice", second)
        assert "alice" not in users

    def test_resolve_unknown(self):
        users = UserDirectory()
        assert users.resolve("nobody") is None
        assert users.resolve(None) is None


class TestOfferTable:
    def test_one_offer_per_sender(self):
        offers = OfferTable()
        first = make_offer(target_user_id="bob")
        assert offers.put(first) is None
        assert offers.put(make_offer(target_user_id="carol")) is first
        assert len(offers) == 1

    def test_find_by_answerer(self):
        offers = OfferTable()
        offer = make_offer()
        offers.put(offer)
        offer.accept_answer("bob", {"sdp": "a", "type": "answer"})
        assert offers.find_by_answerer("bob") is offer
        assert offers.find_by_answerer("carol") is None

    def test_open_offers_for(self):
        offers = OfferTable()
        to_bob = make_offer("alice", target_user_id="bob")
        broadcast = make_offer("carol")
        answered = make_offer("dave")
        answered.accept_answer("erin", {"sdp": "a", "type": "answer"})
        for offer in (to_bob, broadcast, answered):
            offers.put(offer)

        assert offers.open_offers_for("bob") == [to_bob, broadcast]
        assert offers.open_offers_for("frank") == [broadcast]


class TestRoomDirectory:
    def test_create_room_defaults(self):
        rooms = RoomDirectory(default_max_participants=3)
        room = rooms.create_room("standup", "alice")
        assert room.participants == ["alice"]
        assert room.max_participants == 3
        assert len(room.room_id) == 32
        assert room.created_at > 0

    def test_create_room_duplicate_id(self):
        rooms = RoomDirectory()
        rooms.create_room("a", "alice", room_id="r1")
        with pytest.raises(DuplicateRoomIdError):
            rooms.create_room("b", "bob", room_id="r1")

    @pytest.mark.parametrize("size", [-1, 0, "2", 2.5, True])
    def test_create_room_invalid_size(self, size):
        rooms = RoomDirectory()
        with pytest.raises(RoomError):
            rooms.create_room("a", "alice", max_participants=size)
        assert len(rooms) == 0

    def test_join_appends_in_order(self):
        rooms = RoomDirectory()
        rooms.create_room("a", "alice", room_id="r1")
        rooms.join_room("r1", "bob")
        room = rooms.join_room("r1", "carol")
        assert room.participants == ["alice", "bob", "carol"]

    def test_join_errors(self):
        rooms = RoomDirectory()
        rooms.create_room("a", "alice", max_participants=2, room_id="r1")
        with pytest.raises(RoomNotFoundError):
            rooms.join_room("nope", "bob")
        with pytest.raises(AlreadyInRoomError):
            rooms.join_room("r1", "alice")
        rooms.join_room("r1", "bob")
        with pytest.raises(RoomFullError):
            rooms.join_room("r1", "carol")
        assert rooms.get("r1").participants == ["alice", "bob"]

    def test_membership_never_exceeds_capacity(self):
        rooms = RoomDirectory()
        rooms.create_room("a", "u0", max_participants=3, room_id="r1")
        for i in range(1, 6):
            try:
                rooms.join_room("r1", f"u{i}")
            except RoomFullError:
                pass
        assert len(rooms.get("r1").participants) == 3

    def test_non_creator_leaving_keeps_room(self):
        rooms = RoomDirectory()
        rooms.create_room("a", "alice", room_id="r1")
        rooms.join_room("r1", "bob")
        rooms.join_room("r1", "carol")
        outcome = rooms.leave_room("r1", "bob")
        assert not outcome.closed
        assert outcome.remaining == ["alice", "carol"]
        assert "r1" in rooms

    def test_creator_leaving_closes_room(self):
        rooms = RoomDirectory()
        rooms.create_room("a", "alice", room_id="r1")
        rooms.join_room("r1", "bob")
        outcome = rooms.leave_room("r1", "alice")
        assert outcome.closed
        assert outcome.reason == REASON_HOST_LEFT
        assert outcome.remaining == ["bob"]
        assert "r1" not in rooms

    def test_last_member_leaving_empties_room(self):
        rooms = RoomDirectory()
        rooms.create_room("a", "alice", room_id="r1")
        outcome = rooms.leave_room("r1", "alice")
        assert outcome.closed
        assert outcome.reason == REASON_EMPTY
        assert outcome.remaining == []

    def test_leave_missing_room_is_noop(self):
        rooms = RoomDirectory()
        outcome = rooms.leave_room("nope", "alice")
        assert outcome.room is None
        assert not outcome.closed

    def test_leave_as_non_member_is_noop(self):
        rooms = RoomDirectory()
        rooms.create_room("a", "alice", room_id="r1")
        outcome = rooms.leave_room("r1", "bob")
        assert not outcome.closed
        assert outcome.remaining is None
        assert "r1" in rooms

    def test_available_rooms_hide_private(self):
        rooms = RoomDirectory()
        rooms.create_room("public", "alice", room_id="r1")
        rooms.create_room("secret", "bob", room_id="r2", is_private=True)
        assert [r.room_id for r in rooms.available_rooms()] == ["r1"]

    def test_rooms_of(self):
        rooms = RoomDirectory()
        rooms.create_room("a", "alice", room_id="r1")
        rooms.create_room("b", "bob", room_id="r2")
        rooms.join_room("r2", "alice")
        assert [r.room_id for r in rooms.rooms_of("alice")] == ["r1", "r2"]
        assert [r.room_id for r in rooms.rooms_of("bob")] == ["r2"]
