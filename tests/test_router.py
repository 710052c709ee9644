"""Tests for SignalingRouter delivery decisions."""

import json

import pytest

from stream_rtc.exceptions import RoutingFailure
from stream_rtc.protocol import IceCandidateMessage
from stream_rtc.server.registry import SignalingRegistry
from stream_rtc.server.router import SignalingRouter

OFFER_SDP = {"sdp": "offer", "type": "offer"}
ANSWER_SDP = {"sdp": "answer", "type": "answer"}


class Endpoint:
    """Records frames sent to one user."""

    def __init__(self):
        self.frames = []

    async def send(self, message):
        self.frames.append(json.loads(message))

    def events(self, name=None):
        return [f["data"] for f in self.frames if name is None or f["event"] == name]


class BrokenEndpoint:
    async def send(self, message):
        raise ConnectionResetError("gone")


async def make_router(*user_ids):
    router = SignalingRouter(SignalingRegistry())
    endpoints = {}
    for user_id in user_ids:
        endpoints[user_id] = Endpoint()
        await router.on_connect(user_id, endpoints[user_id])
    for endpoint in endpoints.values():
        endpoint.frames.clear()
    return router, endpoints


def candidate(n):
    return {"candidate": f"candidate:{n} 1 udp 1 192.0.2.1 {n} typ host", "sdpMid": "0", "sdpMLineIndex": 0}


class TestConnect:
    @pytest.mark.asyncio
    async def test_presence_broadcast(self):
        router, endpoints = await make_router("alice")
        bob = Endpoint()
        await router.on_connect("bob", bob)
        assert endpoints["alice"].events("userConnected") == ["bob"]
        assert bob.events("userConnected") == []

    @pytest.mark.asyncio
    async def test_available_offers_on_connect(self):
        router, endpoints = await make_router("alice")
        await router.on_new_offer("alice", OFFER_SDP, {"targetUserId": "bob"})
        await router.on_new_offer("alice", OFFER_SDP, {"targetUserId": "bob"})

        bob = Endpoint()
        await router.on_connect("bob", bob)
        offers = bob.events("availableOffers")
        assert len(offers) == 1
        assert offers[0][0]["offererUserId"] == "alice"

    @pytest.mark.asyncio
    async def test_resolve_unknown_user(self):
        router, endpoints = await make_router("alice")
        assert router.resolve("alice") is endpoints["alice"]
        with pytest.raises(RoutingFailure):
            router.resolve("ghost")
        assert not await router.send("ghost", "anything")

    @pytest.mark.asyncio
    async def test_unreachable_endpoint_is_logged_not_raised(self):
        router, endpoints = await make_router("alice")
        await router.on_connect("bob", BrokenEndpoint())
        assert not await router.send("bob", "anything")


class TestOffers:
    @pytest.mark.asyncio
    async def test_target_takes_precedence(self):
        router, endpoints = await make_router("alice", "bob", "carol")
        router.registry.rooms.create_room("r", "alice", room_id="r1")
        router.registry.rooms.join_room("r1", "carol")

        await router.on_new_offer("alice", OFFER_SDP, {"targetUserId": "bob", "roomId": "r1"})
        assert len(endpoints["bob"].events("newOfferAwaiting")) == 1
        assert endpoints["carol"].events("newOfferAwaiting") == []

    @pytest.mark.asyncio
    async def test_room_broadcast_excludes_sender(self):
        router, endpoints = await make_router("alice", "bob", "carol")
        router.registry.rooms.create_room("r", "alice", room_id="r1")
        router.registry.rooms.join_room("r1", "bob")

        await router.on_new_offer("alice", OFFER_SDP, {"roomId": "r1"})
        assert len(endpoints["bob"].events("newOfferAwaiting")) == 1
        assert endpoints["alice"].events("newOfferAwaiting") == []
        assert endpoints["carol"].events("newOfferAwaiting") == []

    @pytest.mark.asyncio
    async def test_user_ids_excluding_sender(self):
        router, endpoints = await make_router("alice", "bob", "carol")
        await router.on_new_offer("alice", OFFER_SDP, {"userIds": ["alice", "carol"]})
        assert endpoints["bob"].events("newOfferAwaiting") == []
        assert len(endpoints["carol"].events("newOfferAwaiting")) == 1
        assert endpoints["alice"].events("newOfferAwaiting") == []

    @pytest.mark.asyncio
    async def test_broadcast_to_everyone_else(self):
        router, endpoints = await make_router("alice", "bob", "carol")
        await router.on_new_offer("alice", OFFER_SDP)
        assert len(endpoints["bob"].events("newOfferAwaiting")) == 1
        assert len(endpoints["carol"].events("newOfferAwaiting")) == 1

    @pytest.mark.asyncio
    async def test_new_offer_replaces_open_offer(self):
        router, endpoints = await make_router("alice", "bob")
        await router.on_new_offer("alice", OFFER_SDP, {"targetUserId": "bob"})
        await router.on_new_offer("alice", {"sdp": "second", "type": "offer"}, {"targetUserId": "bob"})
        assert router.registry.offers.get("alice").session_description["sdp"] == "second"
        assert len(router.registry.offers) == 1

    @pytest.mark.asyncio
    async def test_unknown_target_dropped(self):
        router, endpoints = await make_router("alice")
        offer = await router.on_new_offer("alice", OFFER_SDP, {"targetUserId": "ghost"})
        assert router.registry.offers.get("alice") is offer


class TestAnswers:
    @pytest.mark.asyncio
    async def test_answer_acks_held_candidates_and_notifies_offerer(self):
        router, endpoints = await make_router("alice", "bob")
        offer = await router.on_new_offer("alice", OFFER_SDP, {"targetUserId": "bob"})
        for n in (1, 2):
            await router.on_ice_candidate(IceCandidateMessage("alice", candidate(n), target_user_id="bob"))
        assert endpoints["bob"].events("receivedIceCandidateFromServer") == []

        answered = dict(offer.to_dict(), answer=ANSWER_SDP, answererUserId="bob")
        ack = await router.on_new_answer("bob", answered)

        assert ack == [candidate(1), candidate(2)]
        response = endpoints["alice"].events("answerResponse")
        assert len(response) == 1
        assert response[0]["answer"] == ANSWER_SDP
        assert response[0]["answererUserId"] == "bob"

    @pytest.mark.asyncio
    async def test_answer_for_departed_offerer_acks_empty(self):
        router, endpoints = await make_router("alice", "bob")
        offer = await router.on_new_offer("alice", OFFER_SDP, {"targetUserId": "bob"})
        await router.on_disconnect("alice")

        ack = await router.on_new_answer("bob", dict(offer.to_dict(), answer=ANSWER_SDP))
        assert ack == []

    @pytest.mark.asyncio
    async def test_second_answer_rejected(self):
        router, endpoints = await make_router("alice", "bob", "carol")
        offer = await router.on_new_offer("alice", OFFER_SDP)
        await router.on_new_answer("bob", dict(offer.to_dict(), answer=ANSWER_SDP))
        ack = await router.on_new_answer("carol", dict(offer.to_dict(), answer=ANSWER_SDP))

        assert ack == []
        assert router.registry.offers.get("alice").answerer_user_id == "bob"
        assert len(endpoints["alice"].events("answerResponse")) == 1

    @pytest.mark.asyncio
    async def test_answer_to_superseded_offer_still_reaches_offerer(self):
        router, endpoints = await make_router("alice", "bob", "carol")
        to_bob = await router.on_new_offer("alice", OFFER_SDP, {"targetUserId": "bob"})
        await router.on_ice_candidate(IceCandidateMessage("alice", candidate(1), target_user_id="bob"))
        await router.on_new_offer("alice", OFFER_SDP, {"targetUserId": "carol"})

        # the held candidate was released to bob when the offer was replaced
        assert [d["iceCandidate"] for d in endpoints["bob"].events("receivedIceCandidateFromServer")] == [candidate(1)]

        ack = await router.on_new_answer("bob", dict(to_bob.to_dict(), answer=ANSWER_SDP))
        assert ack == []
        assert endpoints["alice"].events("answerResponse")[0]["answererUserId"] == "bob"
        assert not router.registry.offers.get("alice").answered


class TestIceCandidates:
    @pytest.mark.asyncio
    async def test_direct_delivery_payload(self):
        router, endpoints = await make_router("alice", "bob")
        await router.on_ice_candidate(IceCandidateMessage("bob", candidate(1), target_user_id="alice"))
        assert endpoints["alice"].events("receivedIceCandidateFromServer") == [
            {"iceCandidate": candidate(1), "senderUserId": "bob", "targetUserId": "alice"}
        ]

    @pytest.mark.asyncio
    async def test_offerer_candidates_forwarded_after_answer(self):
        router, endpoints = await make_router("alice", "bob")
        offer = await router.on_new_offer("alice", OFFER_SDP, {"targetUserId": "bob"})
        await router.on_new_answer("bob", dict(offer.to_dict(), answer=ANSWER_SDP))

        await router.on_ice_candidate(IceCandidateMessage("alice", candidate(3), target_user_id="bob"))
        delivered = endpoints["bob"].events("receivedIceCandidateFromServer")
        assert [d["iceCandidate"] for d in delivered] == [candidate(3)]
        assert router.registry.offers.get("alice").offer_candidates == [candidate(3)]

    @pytest.mark.asyncio
    async def test_room_candidates_to_other_participants(self):
        router, endpoints = await make_router("alice", "bob", "carol", "dave")
        router.registry.rooms.create_room("r", "alice", room_id="r1")
        router.registry.rooms.join_room("r1", "bob")
        router.registry.rooms.join_room("r1", "carol")

        await router.on_ice_candidate(IceCandidateMessage("alice", candidate(1), room_id="r1"))
        assert len(endpoints["bob"].events("receivedIceCandidateFromServer")) == 1
        assert len(endpoints["carol"].events("receivedIceCandidateFromServer")) == 1
        assert endpoints["dave"].events("receivedIceCandidateFromServer") == []
        assert endpoints["alice"].events("receivedIceCandidateFromServer") == []

    @pytest.mark.asyncio
    async def test_room_candidates_from_outsider_dropped(self):
        router, endpoints = await make_router("alice", "bob", "mallory")
        router.registry.rooms.create_room("r", "alice", room_id="r1")
        router.registry.rooms.join_room("r1", "bob")

        await router.on_ice_candidate(IceCandidateMessage("mallory", candidate(1), room_id="r1"))
        assert endpoints["bob"].events("receivedIceCandidateFromServer") == []

    @pytest.mark.asyncio
    async def test_legacy_offerer_candidates_buffered_until_answered(self):
        router, endpoints = await make_router("alice", "bob")
        offer = await router.on_new_offer("alice", OFFER_SDP)
        await router.on_ice_candidate(IceCandidateMessage("alice", candidate(1), initiated_locally=True))
        assert endpoints["bob"].events("receivedIceCandidateFromServer") == []

        ack = await router.on_new_answer("bob", dict(offer.to_dict(), answer=ANSWER_SDP))
        assert ack == [candidate(1)]

        await router.on_ice_candidate(IceCandidateMessage("alice", candidate(2), initiated_locally=True))
        assert [d["iceCandidate"] for d in endpoints["bob"].events("receivedIceCandidateFromServer")] == [
            candidate(2)
        ]

    @pytest.mark.asyncio
    async def test_legacy_answerer_candidates_go_to_offerer(self):
        router, endpoints = await make_router("alice", "bob")
        offer = await router.on_new_offer("alice", OFFER_SDP)
        await router.on_new_answer("bob", dict(offer.to_dict(), answer=ANSWER_SDP))

        await router.on_ice_candidate(IceCandidateMessage("bob", candidate(5), initiated_locally=False))
        delivered = endpoints["alice"].events("receivedIceCandidateFromServer")
        assert delivered == [{"iceCandidate": candidate(5), "senderUserId": "bob", "targetUserId": "alice"}]
        assert router.registry.offers.get("alice").answerer_candidates == [candidate(5)]

    @pytest.mark.asyncio
    async def test_legacy_without_offer_dropped(self):
        router, endpoints = await make_router("alice", "bob")
        await router.on_ice_candidate(IceCandidateMessage("bob", candidate(5), initiated_locally=False))
        await router.on_ice_candidate(IceCandidateMessage("bob", candidate(6), initiated_locally=True))
        assert endpoints["alice"].events() == []


class TestCancelAndDisconnect:
    @pytest.mark.asyncio
    async def test_cancel_offer(self):
        router, endpoints = await make_router("alice", "bob")
        await router.on_new_offer("alice", OFFER_SDP, {"targetUserId": "bob"})
        await router.on_cancel_offer("alice", "bob")
        assert router.registry.offers.get("alice") is None

    @pytest.mark.asyncio
    async def test_cancel_for_other_target_keeps_offer(self):
        router, endpoints = await make_router("alice", "bob", "carol")
        await router.on_new_offer("alice", OFFER_SDP, {"targetUserId": "carol"})
        await router.on_cancel_offer("alice", "bob")
        assert router.registry.offers.get("alice") is not None

    @pytest.mark.asyncio
    async def test_disconnect_cleans_up_user(self):
        router, endpoints = await make_router("alice", "bob", "carol")
        await router.on_new_offer("alice", OFFER_SDP, {"targetUserId": "bob"})
        await router.on_new_offer("bob", OFFER_SDP, {"targetUserId": "carol"})
        router.registry.rooms.create_room("a", "alice", room_id="r1")
        router.registry.rooms.join_room("r1", "bob")
        router.registry.rooms.create_room("b", "carol", room_id="r2")
        router.registry.rooms.join_room("r2", "alice")

        await router.on_disconnect("alice")

        assert "alice" not in router.registry.users
        assert router.registry.offers.get("alice") is None
        assert router.registry.offers.get("bob") is not None
        assert router.registry.rooms.rooms_of("alice") == []
        assert "r1" not in router.registry.rooms
        assert router.registry.rooms.get("r2").participants == ["carol"]

        assert endpoints["bob"].events("roomClosed") == [{"roomId": "r1", "reason": "host left"}]
        assert endpoints["carol"].events("userLeftRoom") == [{"userId": "alice", "roomId": "r2"}]
        assert endpoints["bob"].events("userDisconnected") == ["alice"]

    @pytest.mark.asyncio
    async def test_stale_disconnect_ignored(self):
        router, endpoints = await make_router("alice")
        fresh = Endpoint()
        await router.on_connect("alice", fresh)
        await router.on_disconnect("alice", endpoints["alice"])
        assert router.registry.users.resolve("alice") is fresh


class TestRooms:
    @pytest.mark.asyncio
    async def test_create_broadcasts_listing(self):
        router, endpoints = await make_router("alice", "bob")
        ack = await router.on_create_room("alice", {"name": "standup", "maxParticipants": 2})
        assert ack["participants"] == ["alice"]
        listing = endpoints["bob"].events("availableRoomsUpdated")
        assert [r["roomId"] for r in listing[-1]] == [ack["roomId"]]

    @pytest.mark.asyncio
    async def test_private_room_not_listed(self):
        router, endpoints = await make_router("alice", "bob")
        await router.on_create_room("alice", {"name": "secret", "isPrivate": True})
        assert endpoints["bob"].events("availableRoomsUpdated") == []
        assert await router.on_get_available_rooms("bob") == []

    @pytest.mark.asyncio
    async def test_room_errors_returned_as_ack(self):
        router, endpoints = await make_router("alice", "bob", "carol")
        await router.on_create_room("alice", {"name": "r", "roomId": "r1", "maxParticipants": 2})

        assert (await router.on_create_room("bob", {"roomId": "r1"}))["error"] == "DuplicateRoomIdError"
        assert (await router.on_join_room("bob", {"roomId": "nope"}))["error"] == "RoomNotFoundError"
        await router.on_join_room("bob", {"roomId": "r1"})
        assert (await router.on_join_room("bob", {"roomId": "r1"}))["error"] == "AlreadyInRoomError"
        assert (await router.on_join_room("carol", {"roomId": "r1"}))["error"] == "RoomFullError"

    @pytest.mark.asyncio
    async def test_invalid_room_size_returns_room_error(self):
        router, endpoints = await make_router("alice", "bob")
        for size in ("2", 0, -3):
            ack = await router.on_create_room("alice", {"name": "r", "maxParticipants": size})
            assert ack["error"] == "RoomError"
        assert len(router.registry.rooms) == 0
        assert endpoints["bob"].events("availableRoomsUpdated") == []

    @pytest.mark.asyncio
    async def test_join_notifies_existing_members(self):
        router, endpoints = await make_router("alice", "bob", "carol")
        await router.on_create_room("alice", {"roomId": "r1"})
        await router.on_join_room("bob", {"roomId": "r1"})
        await router.on_join_room("carol", {"roomId": "r1"})

        assert endpoints["alice"].events("userJoinedRoom") == [
            {"userId": "bob", "roomId": "r1"},
            {"userId": "carol", "roomId": "r1"},
        ]
        assert endpoints["bob"].events("userJoinedRoom") == [{"userId": "carol", "roomId": "r1"}]
        assert endpoints["carol"].events("userJoinedRoom") == []

    @pytest.mark.asyncio
    async def test_leave_notifies_remaining(self):
        router, endpoints = await make_router("alice", "bob", "carol")
        await router.on_create_room("alice", {"roomId": "r1"})
        await router.on_join_room("bob", {"roomId": "r1"})
        await router.on_join_room("carol", {"roomId": "r1"})

        ack = await router.on_leave_room("bob", {"roomId": "r1"})
        assert ack == {"roomId": "r1", "closed": False}
        assert endpoints["alice"].events("userLeftRoom") == [{"userId": "bob", "roomId": "r1"}]

        ack = await router.on_leave_room("alice", {"roomId": "r1"})
        assert ack == {"roomId": "r1", "closed": True}
        assert endpoints["carol"].events("roomClosed") == [{"roomId": "r1", "reason": "host left"}]
        assert endpoints["alice"].events("roomClosed") == []
