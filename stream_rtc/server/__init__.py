"""Signaling server: registries, router and websocket handler."""

from stream_rtc.server.registry import (
    LeaveOutcome,
    OfferTable,
    RoomDirectory,
    SignalingRegistry,
    UserDirectory,
)
from stream_rtc.server.router import SignalingRouter
from stream_rtc.server.signaling_server import SignalingServer

__all__ = [
    "LeaveOutcome",
    "OfferTable",
    "RoomDirectory",
    "SignalingRegistry",
    "SignalingRouter",
    "SignalingServer",
    "UserDirectory",
]
