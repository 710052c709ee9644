"""Unified CLI for stream-rtc using Click."""

import asyncio
import logging
import sys
import uuid

import click
from aiortc.contrib.media import MediaBlackhole, MediaRecorder
from loguru import logger

from stream_rtc.auth import generate_secret
from stream_rtc.client.channel import connect_channel
from stream_rtc.client.media import MediaConstraints
from stream_rtc.client.room_client import RoomClient
from stream_rtc.client.signaling_client import SignalingClient
from stream_rtc.config import get_config
from stream_rtc.exceptions import StreamRTCError
from stream_rtc.server.signaling_server import SignalingServer


@click.group()
def cli():
    pass


def _connection_options(f):
    """Options shared by every command that talks to a signaling server."""
    f = click.option("--password", "-p", default=None, help="Shared server password (default: from config).")(f)
    f = click.option("--user-id", "-u", default=None, help="User id to register as (default: random).")(f)
    f = click.option("--server", "-s", default=None, help="Signaling websocket URL (default: from config).")(f)
    return f


def _resolve_connection(server, user_id, password):
    config = get_config()
    url = server or config.get_websocket_url()
    user_id = user_id or f"cli-{uuid.uuid4().hex[:8]}"
    password = password if password is not None else config.password
    return url, user_id, password


def _make_client(channel, constraints):
    return SignalingClient(channel, constraints=constraints,
                           legacy_candidate_fanout=get_config().legacy_candidate_fanout)


def _make_sink(record):
    if record:
        logger.info(f"Recording remote media to {record}")
        return MediaRecorder(record)
    return MediaBlackhole()


# =============================================================================
# Server
# =============================================================================


@cli.command()
@click.option("--host", default=None, help="Host to bind to (default: from config).")
@click.option("--port", type=int, default=None, help="Port to listen on (default: from config).")
@click.option("--password", default=None, help="Shared password clients must present (default: from config, else generated).")
def server(host, port, password):
    """Run the signaling server.

    Example:
        stream-rtc server --host 0.0.0.0 --port 8181 --password s3cret
    """
    logging.basicConfig(level=logging.INFO)
    config = get_config()
    signaling = SignalingServer(
        password=password if password is not None else config.password,
        default_max_participants=config.default_max_participants,
    )
    try:
        asyncio.run(signaling.serve(host or config.host, port or config.port))
    except KeyboardInterrupt:
        logger.info("Server stopped")


@cli.command()
def secret():
    """Generate a random shared password for the server."""
    click.echo(generate_secret())


# =============================================================================
# Client commands
# =============================================================================


@cli.command()
@_connection_options
def rooms(server, user_id, password):
    """List public rooms on the signaling server."""
    url, user_id, password = _resolve_connection(server, user_id, password)

    async def run():
        channel = await connect_channel(url, user_id, password)
        try:
            room_client = RoomClient(SignalingClient(channel))
            return await room_client.get_available_rooms()
        finally:
            await channel.close()

    try:
        available = asyncio.run(run())
    except (StreamRTCError, OSError) as e:
        logger.error(f"Failed to list rooms: {e}")
        sys.exit(1)

    if not available:
        click.echo("No rooms found")
        click.echo("Create one with: stream-rtc join ROOM --create")
        return

    click.echo("")
    click.echo(f"{'ROOM ID':<34} {'NAME':<20} {'MEMBERS':<8}")
    click.echo("-" * 64)
    for room in available:
        members = f"{len(room.participants)}/{room.max_participants}"
        click.echo(f"{room.room_id:<34} {room.name:<20} {members:<8}")
    click.echo("")


@cli.command()
@click.argument("user")
@_connection_options
@click.option("--media", "-m", default=None, help="Media file or device to send.")
@click.option("--format", "media_format", default=None, help="Media format (e.g. v4l2, avfoundation).")
@click.option("--record", "-r", default=None, help="File to record the remote media to.")
@click.option("--duration", "-d", type=float, default=30.0, help="Seconds to stay connected.")
def call(user, server, user_id, password, media, media_format, record, duration):
    """Offer a media link to USER.

    Example:
        stream-rtc call bob --media clip.mp4 --record bob.mp4
    """
    url, user_id, password = _resolve_connection(server, user_id, password)
    constraints = MediaConstraints(source=media, format=media_format)

    async def run():
        channel = await connect_channel(url, user_id, password)
        client = _make_client(channel, constraints)
        sink = _make_sink(record)

        @client.events.on("remote_stream_added")
        async def on_stream(stream, remote_user_id):
            sink.addTrack(stream.tracks[-1])
            await sink.start()

        @client.events.on("link_state_changed")
        def on_state(remote_user_id, state):
            logger.info(f"{remote_user_id}: {state.value}")

        try:
            await client.initiate_link(user)
            await asyncio.sleep(duration)
        finally:
            await sink.stop()
            await client.close_all()
            await channel.close()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("Call ended")
    except (StreamRTCError, OSError) as e:
        logger.error(f"Call failed: {e}")
        sys.exit(1)


@cli.command()
@_connection_options
@click.option("--media", "-m", default=None, help="Media file or device to send back.")
@click.option("--record", "-r", default=None, help="File to record the remote media to.")
@click.option("--duration", "-d", type=float, default=30.0, help="Seconds to wait and stay connected.")
def answer(server, user_id, password, media, record, duration):
    """Accept every offer addressed to this user.

    Example:
        stream-rtc answer --user-id bob --record alice.mp4
    """
    url, user_id, password = _resolve_connection(server, user_id, password)
    constraints = MediaConstraints(source=media)

    async def run():
        channel = await connect_channel(url, user_id, password)
        client = _make_client(channel, constraints)
        sink = _make_sink(record)
        click.echo(f"Waiting for offers as {user_id}")

        @client.events.on("offers_received")
        async def on_offers(offers):
            _, _, errors = await client.accept_offers(offers)
            for remote_user_id, error in errors.items():
                logger.error(f"Could not answer {remote_user_id}: {error}")

        @client.events.on("remote_stream_added")
        async def on_stream(stream, remote_user_id):
            sink.addTrack(stream.tracks[-1])
            await sink.start()

        try:
            await asyncio.sleep(duration)
        finally:
            await sink.stop()
            await client.close_all()
            await channel.close()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("Stopped answering")
    except (StreamRTCError, OSError) as e:
        logger.error(f"Answering failed: {e}")
        sys.exit(1)


@cli.command()
@click.argument("room")
@_connection_options
@click.option("--create", is_flag=True, help="Create ROOM instead of joining it.")
@click.option("--max-participants", type=int, default=None, help="Room size when creating.")
@click.option("--private", is_flag=True, help="Hide the created room from listings.")
@click.option("--media", "-m", default=None, help="Media file or device to send.")
@click.option("--duration", "-d", type=float, default=300.0, help="Seconds to stay in the room.")
def join(room, server, user_id, password, create, max_participants, private, media, duration):
    """Join (or --create) ROOM and exchange media with every member.

    Example:
        stream-rtc join standup --create --max-participants 4 --media cam.mp4
    """
    url, user_id, password = _resolve_connection(server, user_id, password)
    constraints = MediaConstraints(source=media)

    async def run():
        channel = await connect_channel(url, user_id, password)
        client = _make_client(channel, constraints)
        room_client = RoomClient(client)
        closed = asyncio.Event()

        @room_client.events.on("user_joined_room")
        def on_joined(member, room_id):
            logger.info(f"{member} joined {room_id}")

        @room_client.events.on("user_left_room")
        def on_left(member, room_id):
            logger.info(f"{member} left {room_id}")

        @room_client.events.on("room_closed")
        def on_closed(room_id, reason):
            logger.info(f"Room {room_id} closed: {reason}")
            closed.set()

        try:
            if create:
                record = await room_client.create_room(
                    room, max_participants=max_participants, room_id=room, is_private=private
                )
            else:
                record = await room_client.join_room(room)
            click.echo(f"In room {record.room_id} with {', '.join(record.participants)}")
            try:
                await asyncio.wait_for(closed.wait(), duration)
            except asyncio.TimeoutError:
                pass
        finally:
            await room_client.leave_room()
            await client.close_all()
            await channel.close()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("Left room")
    except (StreamRTCError, OSError) as e:
        logger.error(f"Room session failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    cli()
