# chatrelay/core/errors.py

from __future__ import annotations


class RelayError(Exception):
    """Base class for errors raised by the relay core."""


class StoreError(RelayError):
    """The persistence backend failed or is unreachable."""


class IdentityRequiredError(RelayError):
    """A room command arrived from a session with no resolved user id."""


class RoomNotFoundError(RelayError):
    """The requested room is unknown to both the directory and storage."""

    def __init__(self, room_id: int) -> None:
        super().__init__(f"Room {room_id} not found")
        self.room_id = room_id


class InvalidFrameError(RelayError):
    """An application frame could not be parsed or carries an unsupported type."""
