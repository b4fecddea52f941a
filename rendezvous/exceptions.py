"""Exception types raised by rendezvous clients, servers, and peers."""
from __future__ import annotations


class RendezvousError(Exception):
    """Base exception type for all rendezvous errors."""

    pass


class RendezvousServerError(RendezvousError):
    """Base exception type for exceptions raised by the rendezvous server."""

    pass


class BadRequestError(RendezvousServerError):
    """A runtime exception indicating a bad client request."""

    pass


class RendezvousClientError(RendezvousError):
    """Base exception type for exceptions raised by rendezvous clients."""

    pass


class RendezvousNotConnectedError(RendezvousClientError):
    """Exception raised if a client is not connected to a server."""

    pass


class RoomFullError(RendezvousClientError):
    """Exception raised when joining a room that already has two members.

    Args:
        room: Name of the room that is full.
    """

    def __init__(self, room: str) -> None:
        super().__init__(f'Room {room} is full.')
        self.room = room


class NegotiationError(RendezvousError):
    """The WebRTC collaborator failed to complete a negotiation step.

    These errors are non-fatal. The negotiation state is left unchanged.

    Args:
        step: Name of the negotiation step that failed.
        cause: Exception raised by the collaborator.
    """

    def __init__(self, step: str, cause: BaseException) -> None:
        super().__init__(f'Failed to {step}: {cause!r}')
        self.step = step
        self.cause = cause


class TransferProtocolError(RendezvousError):
    """Unexpected frame received during a chunked transfer."""

    pass


class PeerConnectionError(RendezvousError):
    """Error connecting to peer."""

    pass


class PeerConnectionTimeoutError(PeerConnectionError):
    """Timeout waiting on peer to peer connection to establish."""

    pass
