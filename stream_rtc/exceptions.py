"""Exceptions raised by stream-rtc clients and the signaling server."""

from typing import Any, Dict, Optional


class StreamRTCError(Exception):
    """Base class for all stream-rtc errors."""


class MediaAcquisitionError(StreamRTCError):
    """Local media could not be opened (permission denied or device missing)."""


class DuplicateLinkError(StreamRTCError):
    """A PeerLink already exists for the remote user; close it first."""

    def __init__(self, remote_user_id: str):
        super().__init__(f"Link with user {remote_user_id} already exists")
        self.remote_user_id = remote_user_id


class SessionEngineNotReadyError(StreamRTCError):
    """A negotiation step ran against a link whose engine is gone or missing."""


class RoutingFailure(StreamRTCError):
    """A destination user or room could not be resolved by the server."""


class AuthenticationError(StreamRTCError):
    """The server rejected the shared password and closed the connection."""


class RoomError(StreamRTCError):
    """Base class for room errors returned through acknowledgements."""

    code = "RoomError"

    def to_ack(self) -> Dict[str, Any]:
        return {"error": self.code, "message": str(self)}


class RoomNotFoundError(RoomError):
    code = "RoomNotFoundError"


class RoomFullError(RoomError):
    code = "RoomFullError"


class DuplicateRoomIdError(RoomError):
    code = "DuplicateRoomIdError"


class AlreadyInRoomError(RoomError):
    code = "AlreadyInRoomError"


ROOM_ERRORS = {
    cls.code: cls
    for cls in (RoomNotFoundError, RoomFullError, DuplicateRoomIdError, AlreadyInRoomError)
}


def room_error_from_ack(result: Any) -> Optional[RoomError]:
    """Rebuild a room error from an acknowledgement payload.

    Args:
        result: The acknowledgement data returned by the server.

    Returns:
        The matching RoomError instance, or None if the ack is a success.
    """
    if not isinstance(result, dict) or "error" not in result:
        return None
    cls = ROOM_ERRORS.get(result["error"], RoomError)
    return cls(result.get("message", result["error"]))
