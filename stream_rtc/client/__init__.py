"""Client side of stream-rtc: signaling channel, peer links and room mesh."""

from stream_rtc.client.channel import SignalingChannel, connect_channel
from stream_rtc.client.ice_queue import IceCandidateQueue
from stream_rtc.client.media import LocalMedia, MediaConstraints, RemoteStream, open_local_media
from stream_rtc.client.peer_link import LinkState, PeerLink, PeerLinkRegistry
from stream_rtc.client.room_client import RoomClient
from stream_rtc.client.signaling_client import SignalingClient, create_peer_connection

__all__ = [
    "IceCandidateQueue",
    "LinkState",
    "LocalMedia",
    "MediaConstraints",
    "PeerLink",
    "PeerLinkRegistry",
    "RemoteStream",
    "RoomClient",
    "SignalingChannel",
    "SignalingClient",
    "connect_channel",
    "create_peer_connection",
    "open_local_media",
]
