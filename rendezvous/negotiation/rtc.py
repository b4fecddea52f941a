"""WebRTC engine backed by aiortc."""
from __future__ import annotations

import logging
import warnings
from typing import Any
from typing import Callable
from typing import Sequence

from aiortc import RTCConfiguration
from aiortc import RTCDataChannel
from aiortc import RTCIceServer
from aiortc import RTCPeerConnection
from aiortc import RTCSessionDescription
from aiortc.sdp import candidate_from_sdp
from cryptography.utils import CryptographyDeprecationWarning

from rendezvous.negotiation.protocols import SessionDescription
from rendezvous.signaling.messages import Candidate

warnings.simplefilter('ignore', CryptographyDeprecationWarning)

logger = logging.getLogger(__name__)

DEFAULT_STUN_SERVER = 'stun:stun.l.google.com:19302'


class AiortcBackend:
    """Peer connection implemented with aiortc.

    Implements the
    [`PeerBackend`][rendezvous.negotiation.protocols.PeerBackend] protocol.

    Note:
        aiortc gathers all local candidates while applying the local
        description and embeds them in the description so no separate
        candidate messages are produced locally. Candidates received from a
        peer that trickles them (e.g., a browser) are still applied.

    Args:
        ice_servers: URLs of STUN/TURN servers. If empty, only host
            candidates are gathered.
    """

    def __init__(self, ice_servers: Sequence[str] = ()) -> None:
        configuration = (
            RTCConfiguration(
                iceServers=[RTCIceServer(urls=url) for url in ice_servers],
            )
            if len(ice_servers) > 0
            else None
        )
        self._pc = RTCPeerConnection(configuration=configuration)

    @property
    def state(self) -> str:
        """Get the current connection state.

        Returns:
            One of 'connected', 'connecting', 'closed', 'failed', or 'new'.
        """
        return self._pc.connectionState

    async def create_offer(self) -> SessionDescription:
        """Create a local offer."""
        offer = await self._pc.createOffer()
        return SessionDescription('offer', offer.sdp)

    async def create_answer(self) -> SessionDescription:
        """Create a local answer to the remote offer."""
        answer = await self._pc.createAnswer()
        return SessionDescription('answer', answer.sdp)

    async def set_local_description(
        self,
        description: SessionDescription,
    ) -> SessionDescription:
        """Apply a local description and gather candidates."""
        await self._pc.setLocalDescription(
            RTCSessionDescription(sdp=description.sdp, type=description.type),
        )
        local = self._pc.localDescription
        return SessionDescription(description.type, local.sdp)

    async def set_remote_description(
        self,
        description: SessionDescription,
    ) -> None:
        """Apply a description received from the peer."""
        await self._pc.setRemoteDescription(
            RTCSessionDescription(sdp=description.sdp, type=description.type),
        )

    async def add_ice_candidate(self, candidate: Candidate) -> None:
        """Apply a candidate received from the peer.

        An empty candidate string marks the end of candidates and is
        ignored.
        """
        if not candidate.candidate:
            logger.debug('Received end of candidates')
            return

        sdp = candidate.candidate
        if sdp.startswith('candidate:'):
            sdp = sdp.split(':', 1)[1]
        ice_candidate = candidate_from_sdp(sdp)
        ice_candidate.sdpMid = candidate.sdp_mid
        ice_candidate.sdpMLineIndex = candidate.sdp_mline_index
        await self._pc.addIceCandidate(ice_candidate)

    def create_data_channel(self, label: str) -> RTCDataChannel:
        """Open an ordered and reliable data channel.

        Must be called by the offering side before the offer is created.
        """
        return self._pc.createDataChannel(label, ordered=True)

    def on_data_channel(
        self,
        callback: Callable[[RTCDataChannel], Any],
    ) -> None:
        """Register a callback for channels opened by the remote peer."""
        self._pc.on('datachannel', callback)

    def on_state_change(self, callback: Callable[[], Any]) -> None:
        """Register a callback for connection state changes."""
        self._pc.on('connectionstatechange', callback)

    async def close(self) -> None:
        """Close the peer connection."""
        await self._pc.close()
