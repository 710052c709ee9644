"""Client side of the signaling transport.

SignalingChannel owns the websocket. One task reads it (the only caller of
the socket's receive side) and one task writes it, draining a queue that
``emit`` fills synchronously, so frames leave in the order they were emitted.

Incoming acks resolve the matching ``emit_with_ack`` future; every other
event is handed to ``channel.events``, where coroutine subscribers run as
their own tasks and may await further acks without stalling the reader.
"""

import asyncio
import itertools
import logging
from typing import Any, Callable, Dict, List, Optional

import websockets
import websockets.exceptions

from stream_rtc.events import SignalBus
from stream_rtc.exceptions import AuthenticationError
from stream_rtc.protocol import (
    EVT_ACK,
    EVT_CONNECTED,
    EVT_DISCONNECT,
    EVT_REGISTER,
    format_frame,
    parse_frame,
)

logger = logging.getLogger(__name__)


class SignalingChannel:
    """Event-oriented wrapper around a signaling websocket.

    Args:
        websocket: An open connection with async ``send(str)``, async
            iteration over incoming text frames and async ``close()``.
        name: Label used in logs.
    """

    def __init__(self, websocket: Any, name: str = "channel"):
        self.websocket = websocket
        self.name = name
        self.events = SignalBus(name)
        self.user_id: Optional[str] = None
        self.connected_users: List[str] = []
        self.closed = False

        self._outgoing: asyncio.Queue = asyncio.Queue()
        self._ack_ids = itertools.count(1)
        self._pending_acks: Dict[int, asyncio.Future] = {}
        self._registered: Optional[asyncio.Future] = None
        self._reader: Optional[asyncio.Task] = None
        self._writer: Optional[asyncio.Task] = None

    def on(self, event: str, handler: Callable):
        """Subscribe to a server event."""
        self.events.on(event, handler)

    def start(self):
        if self._reader is not None:
            return
        loop = asyncio.get_running_loop()
        self._registered = loop.create_future()
        self._writer = loop.create_task(self._write_loop())
        self._reader = loop.create_task(self._read_loop())

    async def connect(self, user_id: str, password: Optional[str] = None, timeout: float = 10.0) -> Dict[str, Any]:
        """Register with the server.

        Returns:
            The ``connected`` payload: ``{"userId", "connectedUsers"}``.

        Raises:
            AuthenticationError: If the server closes the connection (wrong
                password) or does not answer within ``timeout``.
        """
        self.start()
        self.emit(EVT_REGISTER, {"userId": user_id, "password": password})
        try:
            data = await asyncio.wait_for(asyncio.shield(self._registered), timeout)
        except asyncio.TimeoutError:
            raise AuthenticationError(f"No registration reply within {timeout}s")

        self.user_id = data.get("userId", user_id)
        self.connected_users = list(data.get("connectedUsers") or [])
        logger.info(f"[{self.name}] registered as {self.user_id}")
        return data

    def emit(self, event: str, data: Any = None):
        """Queue a fire-and-forget frame."""
        if self.closed:
            logger.warning(f"[{self.name}] not sending {event}: channel closed")
            return
        self._outgoing.put_nowait(format_frame(event, data))

    def request(self, event: str, data: Any = None) -> asyncio.Future:
        """Queue a request frame now; the returned future resolves with its ack.

        Frames emitted after this call are sent after the request.

        Raises:
            ConnectionError: If the channel is already closed.
        """
        if self.closed:
            raise ConnectionError(f"Cannot send {event}: channel closed")

        ack_id = next(self._ack_ids)
        future = asyncio.get_running_loop().create_future()
        self._pending_acks[ack_id] = future
        future.add_done_callback(lambda _: self._pending_acks.pop(ack_id, None))
        self._outgoing.put_nowait(format_frame(event, data, ack_id=ack_id))
        return future

    async def emit_with_ack(self, event: str, data: Any = None, timeout: Optional[float] = None) -> Any:
        """Send a request frame and wait for its acknowledgement payload.

        Raises:
            ConnectionError: If the channel closes before the ack arrives.
            asyncio.TimeoutError: If ``timeout`` elapses first.
        """
        future = self.request(event, data)
        if timeout is None:
            return await future
        return await asyncio.wait_for(future, timeout)

    async def _write_loop(self):
        while True:
            frame = await self._outgoing.get()
            if frame is None:
                return
            try:
                await self.websocket.send(frame)
            except websockets.exceptions.ConnectionClosed:
                logger.info(f"[{self.name}] connection closed while sending")
                return

    async def _read_loop(self):
        try:
            async for message in self.websocket:
                try:
                    event, data, ack_id = parse_frame(message)
                except ValueError as e:
                    logger.error(f"[{self.name}] invalid frame received: {e}")
                    continue

                if event == EVT_ACK:
                    future = self._pending_acks.get(ack_id)
                    if future is not None and not future.done():
                        future.set_result(data)
                    else:
                        logger.debug(f"[{self.name}] ack {ack_id} has no waiter")
                    continue

                if event == EVT_CONNECTED and not self._registered.done():
                    self._registered.set_result(data or {})

                logger.debug(f"[{self.name}] received {event}")
                self.events.emit(event, data)

        except websockets.exceptions.ConnectionClosed:
            logger.info(f"[{self.name}] connection closed")
        finally:
            self._on_closed()

    def _on_closed(self):
        if not self.closed:
            self.closed = True
            self._outgoing.put_nowait(None)

        if self._registered is not None and not self._registered.done():
            self._registered.set_exception(
                AuthenticationError("Server closed the connection during registration")
            )
            # Retrieved by connect(); mark it so an unused channel does not warn.
            self._registered.exception()

        for future in list(self._pending_acks.values()):
            if not future.done():
                future.set_exception(ConnectionError("Signaling connection closed"))
        self.events.emit(EVT_DISCONNECT)

    async def close(self):
        """Close the websocket and stop both loops. Idempotent."""
        if not self.closed:
            self.closed = True
            self._outgoing.put_nowait(None)
        if self._writer is not None:
            await self._writer
        await self.websocket.close()
        if self._reader is not None:
            await self._reader


async def connect_channel(url: str, user_id: str, password: Optional[str] = None) -> SignalingChannel:
    """Open a websocket to ``url`` and register ``user_id``."""
    websocket = await websockets.connect(url)
    channel = SignalingChannel(websocket, name=user_id)
    try:
        await channel.connect(user_id, password)
    except AuthenticationError:
        await websocket.close()
        raise
    return channel
