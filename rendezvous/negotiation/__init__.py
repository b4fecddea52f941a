"""Per-peer WebRTC offer/answer/candidate negotiation."""
from __future__ import annotations

from rendezvous.negotiation.candidates import CandidateBuffer
from rendezvous.negotiation.machine import NegotiationState
from rendezvous.negotiation.machine import NegotiationStateMachine
from rendezvous.negotiation.machine import Session
from rendezvous.negotiation.protocols import PeerBackend
from rendezvous.negotiation.protocols import SessionDescription
