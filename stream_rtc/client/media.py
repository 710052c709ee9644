"""Local media acquisition and remote-stream sinks.

Local media is opened once with ``aiortc.contrib.media.MediaPlayer`` and shared
across links through a ``MediaRelay``: every link subscribes its own proxy
tracks, so closing one link stops only that link's proxies while the source
keeps feeding the others.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from aiortc.contrib.media import MediaPlayer, MediaRelay

from stream_rtc.exceptions import MediaAcquisitionError

logger = logging.getLogger(__name__)


@dataclass
class MediaConstraints:
    """What local media to open.

    Attributes:
        audio: Send an audio track if the source has one.
        video: Send a video track if the source has one.
        source: File, URL or device passed to MediaPlayer. None means
            receive-only.
        format: Container/device format (e.g. "v4l2", "avfoundation").
        options: Extra demuxer options for the device.
    """

    audio: bool = True
    video: bool = True
    source: Optional[str] = None
    format: Optional[str] = None
    options: Dict[str, str] = field(default_factory=dict)


class LocalMedia:
    """Local tracks shared by every link of a client.

    Args:
        audio: Source audio track, or None.
        video: Source video track, or None.
        player: The MediaPlayer that produced the tracks, if any.
    """

    def __init__(self, audio: Any = None, video: Any = None, player: Optional[MediaPlayer] = None):
        self.audio = audio
        self.video = video
        self.player = player
        self._relay = MediaRelay()
        self.stopped = False

    @property
    def tracks(self) -> List[Any]:
        return [t for t in (self.audio, self.video) if t is not None]

    def subscribe(self) -> List[Any]:
        """Proxy tracks for one link; stopping them leaves the source running."""
        if self.stopped:
            raise MediaAcquisitionError("Local media has been stopped")
        return [self._relay.subscribe(track) for track in self.tracks]

    def stop(self):
        """Stop the source tracks. Idempotent."""
        if self.stopped:
            return
        self.stopped = True
        for track in self.tracks:
            track.stop()
        logger.info("Local media stopped")


class RemoteStream:
    """Collects the tracks a remote peer sends on one link."""

    def __init__(self, remote_user_id: str):
        self.remote_user_id = remote_user_id
        self._tracks: List[Any] = []
        self.detached = False

    def add_track(self, track: Any):
        if self.detached:
            logger.debug(f"Dropping {track.kind} track from {self.remote_user_id}: sink detached")
            return
        self._tracks.append(track)

    @property
    def tracks(self) -> List[Any]:
        return list(self._tracks)

    @property
    def audio(self) -> Optional[Any]:
        return next((t for t in self._tracks if t.kind == "audio"), None)

    @property
    def video(self) -> Optional[Any]:
        return next((t for t in self._tracks if t.kind == "video"), None)

    def detach(self):
        self.detached = True
        self._tracks = []

    def __len__(self) -> int:
        return len(self._tracks)


def open_local_media(constraints: Optional[MediaConstraints] = None) -> LocalMedia:
    """Open local media with MediaPlayer.

    Raises:
        MediaAcquisitionError: If the source cannot be opened or lacks a
            requested kind of track.
    """
    constraints = constraints or MediaConstraints()

    if not constraints.source or not (constraints.audio or constraints.video):
        logger.debug("No local media requested, receive-only")
        return LocalMedia()

    try:
        player = MediaPlayer(
            constraints.source,
            format=constraints.format,
            options=constraints.options or None,
        )
    except Exception as e:
        raise MediaAcquisitionError(f"Cannot open media source {constraints.source}: {e}") from e

    audio = player.audio if constraints.audio else None
    video = player.video if constraints.video else None
    if audio is None and video is None:
        raise MediaAcquisitionError(f"Media source {constraints.source} has no usable tracks")

    logger.info(f"Opened local media from {constraints.source}")
    return LocalMedia(audio=audio, video=video, player=player)
