"""Interface to the WebRTC engine used during negotiation."""
from __future__ import annotations

import dataclasses
from typing import Literal
from typing import Protocol
from typing import runtime_checkable

from rendezvous.signaling.messages import Answer
from rendezvous.signaling.messages import Candidate
from rendezvous.signaling.messages import Offer


@dataclasses.dataclass(frozen=True)
class SessionDescription:
    """Session description produced or consumed by the WebRTC engine.

    Attributes:
        type: One of `#!python 'offer'` or `#!python 'answer'`.
        sdp: Session description protocol blob.
    """

    type: Literal['offer', 'answer']
    sdp: str

    @classmethod
    def from_message(cls, message: Offer | Answer) -> SessionDescription:
        """Create a description from a relayed message."""
        if isinstance(message, Offer):
            return cls('offer', message.sdp)
        return cls('answer', message.sdp)

    def to_message(self) -> Offer | Answer:
        """Create the message used to relay this description."""
        if self.type == 'offer':
            return Offer(self.sdp)
        return Answer(self.sdp)


@runtime_checkable
class PeerBackend(Protocol):
    """WebRTC engine primitives used by the negotiation state machine.

    Implementations wrap a single peer connection. All methods may fail by
    raising any exception which the state machine reports as a
    [`NegotiationError`][rendezvous.exceptions.NegotiationError].
    """

    async def create_offer(self) -> SessionDescription:
        """Create a local offer."""
        ...

    async def create_answer(self) -> SessionDescription:
        """Create a local answer to the remote offer."""
        ...

    async def set_local_description(
        self,
        description: SessionDescription,
    ) -> SessionDescription:
        """Apply a local description.

        Returns:
            The description as applied, which may include gathered \
            candidates.
        """
        ...

    async def set_remote_description(
        self,
        description: SessionDescription,
    ) -> None:
        """Apply a description received from the peer."""
        ...

    async def add_ice_candidate(self, candidate: Candidate) -> None:
        """Apply a candidate received from the peer."""
        ...

    async def close(self) -> None:
        """Close the peer connection and release its resources."""
        ...
