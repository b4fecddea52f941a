"""Client orchestrator tying rooms, negotiation, and transfers together."""
from __future__ import annotations

import asyncio
import logging
import pathlib
import sys
from types import TracebackType
from typing import Any
from typing import Callable

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    from typing import Self
else:  # pragma: <3.11 cover
    from typing_extensions import Self

import websockets.exceptions
from aiortc import RTCDataChannel
from pydantic import BaseModel
from pydantic import Field

from rendezvous.exceptions import NegotiationError
from rendezvous.exceptions import PeerConnectionError
from rendezvous.exceptions import PeerConnectionTimeoutError
from rendezvous.exceptions import RendezvousClientError
from rendezvous.exceptions import RoomFullError
from rendezvous.negotiation.machine import NegotiationState
from rendezvous.negotiation.machine import NegotiationStateMachine
from rendezvous.negotiation.rtc import AiortcBackend
from rendezvous.signaling.client import RendezvousClient
from rendezvous.signaling.messages import Bye
from rendezvous.signaling.messages import Created
from rendezvous.signaling.messages import ErrorResponse
from rendezvous.signaling.messages import Full
from rendezvous.signaling.messages import IpAddr
from rendezvous.signaling.messages import IpAddrRequest
from rendezvous.signaling.messages import Message
from rendezvous.signaling.messages import MessageDecodeError
from rendezvous.signaling.rooms import random_room_name
from rendezvous.signaling.rooms import Role
from rendezvous.transfer import DEFAULT_CHUNK_BYTES
from rendezvous.transfer import encode
from rendezvous.transfer import TransferDecoder
from rendezvous.utils.config import load
from rendezvous.utils.tasks import SafeTaskExitError
from rendezvous.utils.tasks import spawn_guarded_background_task

logger = logging.getLogger(__name__)

DATA_CHANNEL_LABEL = 'photos'


class PeerConfig(BaseModel):
    """Peer orchestrator configuration.

    Attributes:
        chunk_bytes: Maximum size of each binary frame sent over the data
            channel.
        ice_servers: STUN/TURN server URLs. If empty, only host candidates
            are used.
        new_room_on_full: Join a randomly named room instead if the
            requested room is full.
        max_payload_bytes: Optional maximum size of payloads accepted from
            the peer.
    """

    chunk_bytes: int = Field(DEFAULT_CHUNK_BYTES, gt=0)
    ice_servers: list[str] = Field(default_factory=list)
    new_room_on_full: bool = True
    max_payload_bytes: int | None = None

    @classmethod
    def from_toml(cls, filepath: str | pathlib.Path) -> Self:
        """Parse an TOML config file.

        Example:
            ```toml title="peer.toml"
            chunk_bytes = 64000
            ice_servers = ["stun:stun.l.google.com:19302"]
            new_room_on_full = false
            ```
        """
        with open(filepath, 'rb') as f:
            return load(cls, f)


class Peer:
    """One side of a room.

    Joins a room via the rendezvous server, runs a
    [`NegotiationStateMachine`][rendezvous.negotiation.machine.NegotiationStateMachine]
    for the peer connection, and sends or receives chunked payloads over
    the resulting data channel.

    If the remote peer leaves, an initiator stays in the room and waits for
    a new peer with a fresh session while a joiner leaves and joins the room
    again to start over.

    Example:
        ```python
        from rendezvous.peer import Peer
        from rendezvous.signaling.client import RendezvousClient

        async with Peer(RendezvousClient(address), 'r1') as peer1, \\
                Peer(RendezvousClient(address), 'r1') as peer2:
            await peer1.ready()
            await peer1.send_payload(b'hello')
            assert await peer2.recv_payload() == b'hello'
        ```

    Args:
        client: Client connection to the rendezvous server.
        room: Name of the room to join.
        config: Peer configuration.
        backend_factory: Callable returning a new WebRTC engine for each
            session. Defaults to
            [`AiortcBackend`][rendezvous.negotiation.rtc.AiortcBackend].
    """

    def __init__(
        self,
        client: RendezvousClient,
        room: str,
        config: PeerConfig | None = None,
        *,
        backend_factory: Callable[[PeerConfig], AiortcBackend] | None = None,
    ) -> None:
        self._client = client
        self._room = room
        self._config = PeerConfig() if config is None else config
        self._backend_factory = (
            backend_factory
            if backend_factory is not None
            else lambda c: AiortcBackend(c.ice_servers)
        )

        self._machine: NegotiationStateMachine | None = None
        self._channel: RTCDataChannel | None = None
        self._channel_buffer_low = asyncio.Event()
        self._decoder = TransferDecoder(self._config.max_payload_bytes)
        self._payloads: asyncio.Queue[bytes] = asyncio.Queue()
        self._peer_left = asyncio.Event()
        self._server_addresses: list[str] = []

        self._server_task: asyncio.Task[None] | None = None
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def _log_prefix(self) -> str:
        role = 'pending' if self._machine is None else self.role.value
        return f'{self.__class__.__name__}[{self._room}:{role}]'

    @property
    def room(self) -> str:
        """Name of the room this peer is in (or trying to join)."""
        return self._room

    @property
    def machine(self) -> NegotiationStateMachine:
        """Negotiation state machine of the current session.

        Raises:
            RuntimeError: If the peer has not joined a room yet.
        """
        if self._machine is None:
            raise RuntimeError(
                'The peer has not joined a room yet. Was start() called?',
            )
        return self._machine

    @property
    def role(self) -> Role:
        """Role of this peer in the room."""
        return self.machine.role

    @property
    def server_addresses(self) -> list[str]:
        """IPv4 addresses reported by the rendezvous server."""
        return list(self._server_addresses)

    async def __aenter__(self) -> Self:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        exc_traceback: TracebackType | None,
    ) -> None:
        await self.close()

    async def start(self) -> None:
        """Join the room and begin handling server messages.

        Raises:
            RoomFullError: If the room is full and `new_room_on_full` is
                disabled.
        """
        await self._client.connect()
        await self._join()
        if self._server_task is None:
            self._server_task = spawn_guarded_background_task(
                self._handle_server_messages,
                name='peer-server-message-handler',
            )

    async def close(self) -> None:
        """Hang up, leave the room, and stop handling server messages."""
        if self._server_task is not None:
            self._server_task.cancel()
            try:
                await self._server_task
            except (asyncio.CancelledError, SafeTaskExitError):
                pass
            self._server_task = None

        for task in list(self._tasks):
            task.cancel()

        try:
            await self._client.leave()
        except websockets.exceptions.ConnectionClosed:
            logger.debug(f'{self._log_prefix}: server connection closed')

        if self._machine is not None:
            await self._machine.close()
        logger.info(f'{self._log_prefix}: closed')

    async def ready(self, timeout: float | None = None) -> None:
        """Wait for the data channel to the peer to open.

        Args:
            timeout: The maximum time in seconds to wait for the peer
                connection to establish. If None, block until the connection
                is established.

        Raises:
            PeerConnectionTimeoutError: If the connection is not ready within
                the timeout.
            PeerConnectionError: If the session closes before the connection
                is established.
        """
        try:
            state = await self.machine.wait_for_state(
                NegotiationState.CONNECTED,
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise PeerConnectionTimeoutError(
                'Timeout waiting for peer to peer connection to establish '
                f'in {self._log_prefix}.',
            ) from e

        if state is not NegotiationState.CONNECTED:
            raise PeerConnectionError(
                f'Session closed before the peer connection in '
                f'{self._log_prefix} was established.',
            )

    async def send_payload(
        self,
        payload: bytes,
        timeout: float | None = None,
    ) -> None:
        """Send a payload to the peer in chunks.

        Args:
            payload: Data to send.
            timeout: Timeout to wait on the peer connection to be ready.
        """
        await self.ready(timeout)
        channel = self._channel
        assert channel is not None

        frames = 0
        for frame in encode(payload, self._config.chunk_bytes):
            if channel.bufferedAmount > channel.bufferedAmountLowThreshold:
                await self._channel_buffer_low.wait()
                self._channel_buffer_low.clear()
            channel.send(frame)
            frames += 1

        logger.info(
            f'{self._log_prefix}: sent payload of {len(payload)} bytes '
            f'in {frames} frame(s)',
        )

    async def recv_payload(self) -> bytes:
        """Receive the next payload from the peer."""
        return await self._payloads.get()

    async def wait_peer_left(self, timeout: float | None = None) -> None:
        """Wait until the remote peer hangs up.

        Raises:
            asyncio.TimeoutError: If the peer does not leave within the
                timeout.
        """
        await asyncio.wait_for(self._peer_left.wait(), timeout)

    async def request_server_addresses(self) -> None:
        """Ask the server for its IPv4 addresses.

        Replies are collected in
        [`server_addresses`][rendezvous.peer.Peer.server_addresses].
        """
        await self._send(IpAddrRequest())

    async def _send(self, message: Message) -> None:
        try:
            await self._client.send(message)
        except websockets.exceptions.ConnectionClosed:
            logger.error(
                f'{self._log_prefix}: connection to the rendezvous server '
                f'closed while sending {type(message).__name__}',
            )

    async def _on_error(self, error: NegotiationError) -> None:
        logger.warning(
            f'{self._log_prefix}: negotiation step failed and will not be '
            f'retried automatically ({error.step})',
        )

    def _spawn(self, coro: Any, *args: Any, name: str) -> None:
        task = spawn_guarded_background_task(coro, *args, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _join(self) -> None:
        reply = await self._client.join(self._room)
        while isinstance(reply, Full):
            if not self._config.new_room_on_full:
                raise RoomFullError(reply.room)
            self._room = random_room_name()
            logger.warning(
                f'Room {reply.room} is full so joining new room {self._room}',
            )
            reply = await self._client.join(self._room)

        self._room = reply.room
        role = Role.INITIATOR if isinstance(reply, Created) else Role.JOINER
        await self._new_session(role)

    async def _new_session(self, role: Role) -> None:
        backend = self._backend_factory(self._config)
        machine = NegotiationStateMachine(
            role,
            backend,
            self._send,
            on_error=self._on_error,
            name=f'{self._room}:{role.value}',
        )
        self._machine = machine
        self._channel = None
        self._decoder = TransferDecoder(self._config.max_payload_bytes)

        if role is Role.INITIATOR:
            channel = backend.create_data_channel(DATA_CHANNEL_LABEL)
            self._setup_channel(machine, channel)
        else:

            def _on_datachannel(channel: RTCDataChannel) -> None:
                logger.info(
                    f'{self._log_prefix}: peer channel {channel.label} '
                    'established',
                )
                self._setup_channel(machine, channel)

            backend.on_data_channel(_on_datachannel)

        await machine.local_media_ready()

    def _setup_channel(
        self,
        machine: NegotiationStateMachine,
        channel: RTCDataChannel,
    ) -> None:
        self._channel = channel
        self._channel_buffer_low = asyncio.Event()
        channel.on('bufferedamountlow', self._channel_buffer_low.set)

        async def _on_message(data: bytes | str) -> None:
            payload = self._decoder.feed(channel.label, data)
            if payload is not None:
                logger.info(
                    f'{self._log_prefix}: received payload of '
                    f'{len(payload)} bytes',
                )
                await self._payloads.put(payload)

        async def _on_open() -> None:
            logger.info(f'{self._log_prefix}: channel {channel.label} open')
            await machine.transport_open()

        async def _on_close() -> None:
            logger.info(f'{self._log_prefix}: channel {channel.label} closed')
            self._decoder.reset(channel.label)

        channel.on('message', _on_message)
        channel.on('close', _on_close)
        if channel.readyState == 'open':
            self._spawn(_on_open, name='peer-channel-open')
        else:
            channel.on('open', _on_open)

    async def _restart(self) -> None:
        machine = self.machine
        if machine.requires_restart:
            logger.info(
                f'{self._log_prefix}: peer left so rejoining room '
                f'{self._room} to restart negotiation',
            )
            try:
                await self._client.leave()
                await self._join()
            except (RendezvousClientError, asyncio.TimeoutError) as e:
                logger.error(
                    f'{self._log_prefix}: failed to rejoin room '
                    f'{self._room}: {e!r}',
                )
        else:
            logger.info(
                f'{self._log_prefix}: peer left so waiting for a new peer',
            )
            await self._new_session(machine.role)

    async def _handle_server_messages(self) -> None:
        """Handle messages from the rendezvous server.

        Negotiation messages are handed to the state machine in separate
        tasks so a Bye can cancel a step in progress. The state machine
        processes them in arrival order.
        """
        while True:
            try:
                message = await self._client.recv()
            except websockets.exceptions.ConnectionClosed as e:
                logger.warning(
                    f'{self._log_prefix}: connection to the rendezvous '
                    'server closed',
                )
                if self._machine is not None:
                    await self._machine.close()
                raise SafeTaskExitError('Server connection closed.') from e
            except MessageDecodeError as e:
                logger.warning(
                    f'{self._log_prefix}: failed to decode message from '
                    f'rendezvous server: {e}',
                )
                continue

            if isinstance(message, Bye):
                await self.machine.handle_message(message)
                self._peer_left.set()
                await self._restart()
            elif isinstance(message, IpAddr):
                logger.info(
                    f'{self._log_prefix}: server IP address is '
                    f'{message.address}',
                )
                self._server_addresses.append(message.address)
            elif isinstance(message, ErrorResponse):
                logger.warning(
                    f'{self._log_prefix}: rendezvous server error: '
                    f'{message.message}',
                )
            else:
                self._spawn(
                    self.machine.handle_message,
                    message,
                    name='peer-negotiation-event',
                )
