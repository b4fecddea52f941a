"""Negotiation state machine for a single peer connection.

Each side of a room owns one
[`NegotiationStateMachine`][rendezvous.negotiation.machine.NegotiationStateMachine]
which sequences the offer/answer/candidate exchange:

```
IDLE -> LOCAL_MEDIA_READY -> OFFERING (initiator)      -> DESCRIPTION_EXCHANGED
                          -> AWAITING_OFFER (joiner)   -> DESCRIPTION_EXCHANGED
DESCRIPTION_EXCHANGED -> CONNECTED
any -> CLOSED
```

Only the initiator ever creates an offer. Because the rendezvous server
assigns exactly one initiator per room, both sides can never offer at the
same time.

Events for a session are processed one at a time in arrival order. While
an event waits on the WebRTC engine no other event for the session is
processed, with the exception of closing which takes effect immediately and
turns any engine result arriving afterwards into a no-op.
"""
from __future__ import annotations

import asyncio
import dataclasses
import enum
import logging
from typing import Any
from typing import Awaitable
from typing import Callable
from typing import TypeVar

from rendezvous.exceptions import NegotiationError
from rendezvous.negotiation.candidates import CandidateBuffer
from rendezvous.negotiation.protocols import PeerBackend
from rendezvous.negotiation.protocols import SessionDescription
from rendezvous.signaling.messages import Answer
from rendezvous.signaling.messages import Bye
from rendezvous.signaling.messages import Candidate
from rendezvous.signaling.messages import Message
from rendezvous.signaling.messages import Offer
from rendezvous.signaling.messages import Ready
from rendezvous.signaling.rooms import Role

logger = logging.getLogger(__name__)

T = TypeVar('T')

SendCallback = Callable[[Message], Awaitable[None]]
ErrorCallback = Callable[[NegotiationError], Awaitable[None]]


class NegotiationState(enum.Enum):
    """States of the negotiation state machine."""

    IDLE = 'idle'
    LOCAL_MEDIA_READY = 'local-media-ready'
    OFFERING = 'offering'
    AWAITING_OFFER = 'awaiting-offer'
    DESCRIPTION_EXCHANGED = 'description-exchanged'
    CONNECTED = 'connected'
    CLOSED = 'closed'


@dataclasses.dataclass
class Session:
    """Negotiation state owned by one connection.

    Attributes:
        role: Role assigned by the rendezvous server.
        state: Current negotiation state.
        local_description: Local description once applied.
        remote_description: Remote description once applied.
        local_candidates: Locally gathered candidates waiting on the local
            description before they can be sent.
        remote_candidates: Received candidates waiting on the remote
            description before they can be applied.
        peer_ready: The rendezvous server reported both members present.
        pending_offer: Offer received before local media was ready.
        failed_remote: Offer or Answer whose remote description could not
            be applied, kept so it can be retried.
        offers_created: Number of offers created by this session.
    """

    role: Role
    state: NegotiationState = NegotiationState.IDLE
    local_description: SessionDescription | None = None
    remote_description: SessionDescription | None = None
    local_candidates: CandidateBuffer = dataclasses.field(
        default_factory=CandidateBuffer,
    )
    remote_candidates: CandidateBuffer = dataclasses.field(
        default_factory=CandidateBuffer,
    )
    peer_ready: bool = False
    pending_offer: Offer | None = None
    failed_remote: Offer | Answer | None = None
    offers_created: int = 0


class _AbortEvent(Exception):
    pass


class _StepFailed(_AbortEvent):
    pass


class _SessionClosed(_AbortEvent):
    pass


class NegotiationStateMachine:
    """Sequences the WebRTC negotiation of one peer connection.

    Args:
        role: Role of this side in the room.
        backend: WebRTC engine wrapping the peer connection.
        send: Coroutine used to send messages to the other peer via the
            rendezvous server.
        on_error: Optional coroutine invoked with non-fatal
            [`NegotiationError`][rendezvous.exceptions.NegotiationError]s
            raised when the engine fails a step.
        name: Optional name used in log messages.
    """

    def __init__(
        self,
        role: Role,
        backend: PeerBackend,
        send: SendCallback,
        *,
        on_error: ErrorCallback | None = None,
        name: str | None = None,
    ) -> None:
        self._session = Session(role)
        self._backend = backend
        self._send = send
        self._on_error = on_error
        self._name = role.value if name is None else name

        self._lock = asyncio.Lock()
        self._waiters: list[
            tuple[
                frozenset[NegotiationState],
                asyncio.Future[NegotiationState],
            ]
        ] = []

    @property
    def _log_prefix(self) -> str:
        return f'{self.__class__.__name__}[{self._name}]'

    @property
    def session(self) -> Session:
        """Session state."""
        return self._session

    @property
    def role(self) -> Role:
        """Role of this side in the room."""
        return self._session.role

    @property
    def state(self) -> NegotiationState:
        """Current negotiation state."""
        return self._session.state

    @property
    def closed(self) -> bool:
        """The session has been closed."""
        return self._session.state is NegotiationState.CLOSED

    @property
    def requires_restart(self) -> bool:
        """A closed joiner must negotiate again in a fresh room membership.

        Closed is terminal for every session. A joiner whose session closed
        cannot resume and its orchestrator must rejoin the room to start
        over, while an initiator keeps its room and waits for a new peer.
        """
        return self.closed and self.role is Role.JOINER

    def _set_state(self, state: NegotiationState) -> None:
        previous = self._session.state
        self._session.state = state
        logger.info(
            f'{self._log_prefix}: transitioned from {previous.value} '
            f'to {state.value}',
        )
        waiters = []
        for states, future in self._waiters:
            if state in states or state is NegotiationState.CLOSED:
                if not future.done():
                    future.set_result(state)
            else:
                waiters.append((states, future))
        self._waiters = waiters

    async def wait_for_state(
        self,
        *states: NegotiationState,
        timeout: float | None = None,
    ) -> NegotiationState:
        """Wait until the machine reaches one of the states.

        Closing always ends the wait.

        Args:
            states: States to wait for.
            timeout: Maximum time in seconds to wait. If `None`, wait
                indefinitely.

        Returns:
            The state reached.

        Raises:
            asyncio.TimeoutError: If no state is reached within the timeout.
        """
        if self.state in states or self.closed:
            return self.state
        future: asyncio.Future[
            NegotiationState
        ] = asyncio.get_running_loop().create_future()
        waiter = (frozenset(states), future)
        self._waiters.append(waiter)
        try:
            return await asyncio.wait_for(future, timeout)
        finally:
            if waiter in self._waiters:
                self._waiters.remove(waiter)

    def _sequencing_error(self, event: str) -> None:
        logger.warning(
            f'{self._log_prefix}: ignoring {event} received in state '
            f'{self.state.value}',
        )

    async def _dispatch(
        self,
        event: str,
        handler: Callable[..., Awaitable[None]],
        *args: Any,
    ) -> None:
        async with self._lock:
            if self.closed:
                logger.debug(
                    f'{self._log_prefix}: ignoring {event} because the '
                    'session is closed',
                )
                return
            try:
                await handler(*args)
            except _AbortEvent:
                logger.debug(f'{self._log_prefix}: aborted handling {event}')

    async def _run_step(self, step: str, operation: Awaitable[T]) -> T:
        # Results arriving after the session closed are discarded
        try:
            result = await operation
        except Exception as e:
            if self.closed:
                raise _SessionClosed from e
            error = NegotiationError(step, e)
            logger.error(f'{self._log_prefix}: {error}')
            if self._on_error is not None:
                await self._on_error(error)
            raise _StepFailed from error

        if self.closed:
            raise _SessionClosed
        return result

    async def _send_message(self, message: Message) -> None:
        await self._send(message)
        logger.info(f'{self._log_prefix}: sent {type(message).__name__}')

    async def local_media_ready(self) -> None:
        """Handle the engine reporting local media or channels are ready."""
        await self._dispatch('local-media-ready', self._on_local_media_ready)

    async def handle_message(self, message: Message) -> None:
        """Handle a message received from the rendezvous server.

        [`Bye`][rendezvous.signaling.messages.Bye] closes the session
        immediately, even while another event is being processed.
        """
        if isinstance(message, Bye):
            logger.info(f'{self._log_prefix}: peer left room {message.room}')
            await self.close()
        elif isinstance(message, Ready):
            await self._dispatch('Ready', self._on_ready)
        elif isinstance(message, Offer):
            await self._dispatch('Offer', self._on_offer, message)
        elif isinstance(message, Answer):
            await self._dispatch('Answer', self._on_answer, message)
        elif isinstance(message, Candidate):
            await self._dispatch('Candidate', self._on_candidate, message)
        else:
            logger.warning(
                f'{self._log_prefix}: ignoring non-negotiation message '
                f'{type(message).__name__}',
            )

    async def local_candidate(self, candidate: Candidate) -> None:
        """Handle a candidate gathered by the local engine.

        Candidates are sent to the peer once the local description has been
        applied and queued until then.
        """
        await self._dispatch(
            'local candidate',
            self._on_local_candidate,
            candidate,
        )

    async def transport_open(self) -> None:
        """Handle the engine reporting the transport or channel is open."""
        await self._dispatch('transport-open', self._on_transport_open)

    async def retry(self) -> None:
        """Retry the last negotiation step that failed.

        The machine never retries automatically. This is a no-op if there is
        no failed step to retry.
        """
        await self._dispatch('retry', self._on_retry)

    async def close(self) -> None:
        """Hang up and release all session resources.

        Pending candidates are discarded and any engine operation still in
        flight becomes a no-op when it completes. Closing is idempotent.
        """
        if self.closed:
            return

        self._set_state(NegotiationState.CLOSED)
        self._session.local_candidates.clear()
        self._session.remote_candidates.clear()
        self._session.pending_offer = None
        self._session.failed_remote = None

        try:
            await self._backend.close()
        except Exception as e:
            error = NegotiationError('close peer connection', e)
            logger.error(f'{self._log_prefix}: {error}')
            if self._on_error is not None:
                await self._on_error(error)

    async def _on_local_media_ready(self) -> None:
        if self.state is not NegotiationState.IDLE:
            self._sequencing_error('local-media-ready')
            return

        self._set_state(NegotiationState.LOCAL_MEDIA_READY)
        if self._session.pending_offer is not None:
            offer = self._session.pending_offer
            self._session.pending_offer = None
            await self._accept_offer(offer)
        elif self._session.peer_ready:
            await self._begin()

    async def _on_ready(self) -> None:
        if self._session.peer_ready:
            self._sequencing_error('duplicate Ready')
            return

        self._session.peer_ready = True
        if self.state is NegotiationState.IDLE:
            logger.info(
                f'{self._log_prefix}: peer is ready, waiting on local media',
            )
        elif self.state is NegotiationState.LOCAL_MEDIA_READY:
            await self._begin()
        else:
            self._sequencing_error('Ready')

    async def _begin(self) -> None:
        if self.role is Role.INITIATOR:
            self._set_state(NegotiationState.OFFERING)
            await self._create_offer()
        else:
            self._set_state(NegotiationState.AWAITING_OFFER)

    async def _create_offer(self) -> None:
        offer = await self._run_step(
            'create offer',
            self._backend.create_offer(),
        )
        self._session.offers_created += 1
        applied = await self._run_step(
            'set local description',
            self._backend.set_local_description(offer),
        )
        self._session.local_description = applied
        await self._send_message(applied.to_message())
        await self._flush_local_candidates()

    async def _on_offer(self, offer: Offer) -> None:
        if self.role is Role.INITIATOR:
            logger.warning(
                f'{self._log_prefix}: ignoring Offer because only the '
                'joiner answers offers',
            )
            return

        if self.state is NegotiationState.IDLE:
            if self._session.pending_offer is not None:
                logger.warning(
                    f'{self._log_prefix}: replacing deferred Offer with a '
                    'newer Offer',
                )
            self._session.pending_offer = offer
            logger.info(
                f'{self._log_prefix}: deferring Offer until local media '
                'is ready',
            )
        elif self.state in (
            NegotiationState.LOCAL_MEDIA_READY,
            NegotiationState.AWAITING_OFFER,
        ) and (self._session.remote_description is None):
            await self._accept_offer(offer)
        else:
            self._sequencing_error('Offer')

    async def _accept_offer(self, offer: Offer) -> None:
        if self.state is NegotiationState.LOCAL_MEDIA_READY:
            self._set_state(NegotiationState.AWAITING_OFFER)

        description = SessionDescription.from_message(offer)
        self._session.failed_remote = offer
        await self._run_step(
            'set remote description',
            self._backend.set_remote_description(description),
        )
        self._session.remote_description = description
        self._session.failed_remote = None
        await self._apply_buffered_candidates()
        await self._create_answer()

    async def _create_answer(self) -> None:
        answer = await self._run_step(
            'create answer',
            self._backend.create_answer(),
        )
        applied = await self._run_step(
            'set local description',
            self._backend.set_local_description(answer),
        )
        self._session.local_description = applied
        self._set_state(NegotiationState.DESCRIPTION_EXCHANGED)
        await self._send_message(applied.to_message())
        await self._flush_local_candidates()

    async def _on_answer(self, answer: Answer) -> None:
        if (
            self.state is not NegotiationState.OFFERING
            or self._session.local_description is None
        ):
            self._sequencing_error('Answer')
            return
        await self._accept_answer(answer)

    async def _accept_answer(self, answer: Answer) -> None:
        description = SessionDescription.from_message(answer)
        self._session.failed_remote = answer
        await self._run_step(
            'set remote description',
            self._backend.set_remote_description(description),
        )
        self._session.remote_description = description
        self._session.failed_remote = None
        self._set_state(NegotiationState.DESCRIPTION_EXCHANGED)
        await self._apply_buffered_candidates()

    async def _on_candidate(self, candidate: Candidate) -> None:
        if self._session.remote_description is None:
            self._session.remote_candidates.enqueue(candidate)
            logger.debug(
                f'{self._log_prefix}: buffered candidate until remote '
                f'description is set ({len(self._session.remote_candidates)} '
                'buffered)',
            )
        else:
            await self._apply_candidate(candidate)

    async def _apply_candidate(self, candidate: Candidate) -> None:
        try:
            await self._run_step(
                'add ICE candidate',
                self._backend.add_ice_candidate(candidate),
            )
        except _StepFailed:
            return
        logger.debug(f'{self._log_prefix}: applied remote candidate')

    async def _apply_buffered_candidates(self) -> None:
        candidates = self._session.remote_candidates.drain_in_order()
        if len(candidates) > 0:
            logger.info(
                f'{self._log_prefix}: applying {len(candidates)} buffered '
                'candidate(s)',
            )
        for candidate in candidates:
            await self._apply_candidate(candidate)

    async def _on_local_candidate(self, candidate: Candidate) -> None:
        if self._session.local_description is None:
            self._session.local_candidates.enqueue(candidate)
        else:
            await self._send_message(candidate)

    async def _flush_local_candidates(self) -> None:
        for candidate in self._session.local_candidates.drain_in_order():
            await self._send_message(candidate)

    async def _on_transport_open(self) -> None:
        if self.state is NegotiationState.DESCRIPTION_EXCHANGED:
            self._set_state(NegotiationState.CONNECTED)
        elif self.state is NegotiationState.CONNECTED:
            logger.debug(f'{self._log_prefix}: transport already open')
        else:
            self._sequencing_error('transport-open')

    async def _on_retry(self) -> None:
        session = self._session
        failed = session.failed_remote
        if (
            isinstance(failed, Offer)
            and self.state is NegotiationState.AWAITING_OFFER
            and session.remote_description is None
        ):
            await self._accept_offer(failed)
        elif (
            isinstance(failed, Answer)
            and self.state is NegotiationState.OFFERING
            and session.remote_description is None
        ):
            await self._accept_answer(failed)
        elif (
            self.state is NegotiationState.OFFERING
            and session.local_description is None
        ):
            if session.offers_created > 0:
                # The offer exists, only applying it failed
                logger.warning(
                    f'{self._log_prefix}: cannot retry because an offer was '
                    'already created',
                )
                return
            await self._create_offer()
        elif (
            self.state is NegotiationState.AWAITING_OFFER
            and session.remote_description is not None
            and session.local_description is None
        ):
            await self._create_answer()
        else:
            logger.info(f'{self._log_prefix}: no failed step to retry')
