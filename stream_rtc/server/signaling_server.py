"""WebSocket signaling server for stream-rtc peers and rooms.

Authenticates each connection with the shared password, then relays offers,
answers, ICE candidates and room membership changes between connected users.

Usage:
    python -m stream_rtc.server.signaling_server [--host HOST] [--port PORT] [--password PASSWORD]

Examples:
    python -m stream_rtc.server.signaling_server
    python -m stream_rtc.server.signaling_server --port 8080
    python -m stream_rtc.server.signaling_server --host 0.0.0.0 --port 9000 --password x
"""

import argparse
import asyncio
import logging
from typing import Any, Optional

import websockets
import websockets.exceptions

from stream_rtc.auth import generate_secret, verify_shared_secret
from stream_rtc.config import get_config
from stream_rtc.protocol import (
    EVT_ACK,
    EVT_CANCEL_OFFER,
    EVT_CONNECTED,
    EVT_CREATE_ROOM,
    EVT_GET_AVAILABLE_ROOMS,
    EVT_JOIN_ROOM,
    EVT_LEAVE_ROOM,
    EVT_NEW_ANSWER,
    EVT_NEW_OFFER,
    EVT_REGISTER,
    EVT_SEND_ICE_CANDIDATE,
    IceCandidateMessage,
    format_frame,
    parse_frame,
)
from stream_rtc.server.registry import SignalingRegistry
from stream_rtc.server.router import SignalingRouter


class SignalingServer:
    """Per-connection handler plus the shared registry and router.

    Args:
        password: Shared password clients must present. If None or "", a
            random one is generated and logged.
        registry: Registry to serve from; a fresh one is created if omitted.
        default_max_participants: Room size used when a request names none.
    """

    def __init__(
        self,
        password: Optional[str] = None,
        registry: Optional[SignalingRegistry] = None,
        default_max_participants: int = 4,
    ):
        if not password:
            password = generate_secret()
            logging.warning(f"No password configured; generated shared password: {password}")
        self.password = password
        self.registry = registry or SignalingRegistry(default_max_participants)
        self.router = SignalingRouter(self.registry)

    async def _register(self, websocket, event: str, data: Any) -> Optional[str]:
        """Validate the handshake frame; return the user id or None to reject."""
        if event != EVT_REGISTER or not isinstance(data, dict):
            logging.warning(f"First frame was {event!r}, expected {EVT_REGISTER!r}")
            return None

        user_id = data.get("userId")
        if not user_id or not isinstance(user_id, str):
            logging.warning("Register frame without a user id")
            return None

        if not verify_shared_secret(self.password, data.get("password")):
            logging.warning(f"Rejected {user_id}: wrong password")
            return None

        others = [u for u in self.registry.users.user_ids() if u != user_id]
        await websocket.send(
            format_frame(EVT_CONNECTED, {"userId": user_id, "connectedUsers": others})
        )
        await self.router.on_connect(user_id, websocket)
        return user_id

    async def dispatch(self, user_id: str, event: str, data: Any) -> Any:
        """Route one frame from an authenticated user.

        Returns:
            The acknowledgement payload for request frames, else None.
        """
        router = self.router

        if event == EVT_NEW_OFFER:
            await router.on_new_offer(user_id, data["sessionDescription"], data)

        elif event == EVT_NEW_ANSWER:
            return await router.on_new_answer(user_id, data)

        elif event == EVT_SEND_ICE_CANDIDATE:
            msg = IceCandidateMessage.from_dict(data)
            if msg.sender_user_id != user_id:
                logging.warning(f"Candidate from {user_id} claimed sender {msg.sender_user_id}")
                msg.sender_user_id = user_id
            await router.on_ice_candidate(msg)

        elif event == EVT_CANCEL_OFFER:
            await router.on_cancel_offer(user_id, (data or {}).get("targetUserId"))

        elif event == EVT_CREATE_ROOM:
            return await router.on_create_room(user_id, data or {})

        elif event == EVT_JOIN_ROOM:
            return await router.on_join_room(user_id, data or {})

        elif event == EVT_LEAVE_ROOM:
            return await router.on_leave_room(user_id, data or {})

        elif event == EVT_GET_AVAILABLE_ROOMS:
            return await router.on_get_available_rooms(user_id, data)

        else:
            logging.warning(f"Unknown event from {user_id}: {event}")

        return None

    async def handler(self, websocket):
        """Handle a WebSocket connection."""
        user_id = None

        try:
            async for message in websocket:
                try:
                    event, data, ack_id = parse_frame(message)
                except ValueError as e:
                    logging.warning(f"Dropping malformed frame from {user_id}: {e}")
                    continue

                if user_id is None:
                    user_id = await self._register(websocket, event, data)
                    if user_id is None:
                        await websocket.close()
                        return
                    continue

                try:
                    result = await self.dispatch(user_id, event, data)
                except (AttributeError, KeyError, TypeError, ValueError) as e:
                    logging.warning(f"Bad {event} payload from {user_id}: {e!r}")
                    result = None

                if ack_id is not None:
                    await websocket.send(format_frame(EVT_ACK, result, ack_id=ack_id))

        except websockets.exceptions.ConnectionClosed:
            logging.info(f"Connection closed: {user_id}")
        finally:
            if user_id:
                await self.router.on_disconnect(user_id, websocket)

    async def serve(self, host: str, port: int):
        """Start the signaling server and run forever."""
        async with websockets.serve(self.handler, host, port):
            logging.info(f"Signaling server running on ws://{host}:{port}")
            await asyncio.Future()  # Run forever


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    config = get_config()

    parser = argparse.ArgumentParser(description="stream-rtc signaling server")
    parser.add_argument("--host", default=config.host, help=f"Host to bind to (default: {config.host})")
    parser.add_argument("--port", type=int, default=config.port, help=f"Port to listen on (default: {config.port})")
    parser.add_argument("--password", default=config.password, help="Shared password clients must present")

    args = parser.parse_args()

    server = SignalingServer(
        password=args.password,
        default_max_participants=config.default_max_participants,
    )
    try:
        asyncio.run(server.serve(args.host, args.port))
    except KeyboardInterrupt:
        logging.info("Server stopped")
