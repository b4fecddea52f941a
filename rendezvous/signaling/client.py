"""Client interface to a rendezvous server."""
from __future__ import annotations

import asyncio
import logging
import ssl
import sys
import uuid
from types import TracebackType

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    from typing import Self
else:  # pragma: <3.11 cover
    from typing_extensions import Self

import websockets.exceptions
from websockets.asyncio.client import ClientConnection
from websockets.asyncio.client import connect as websocket_connect
from websockets.protocol import State

from rendezvous.exceptions import RendezvousClientError
from rendezvous.exceptions import RendezvousNotConnectedError
from rendezvous.signaling.messages import Bye
from rendezvous.signaling.messages import CreateOrJoin
from rendezvous.signaling.messages import Created
from rendezvous.signaling.messages import decode_message
from rendezvous.signaling.messages import encode_message
from rendezvous.signaling.messages import ErrorResponse
from rendezvous.signaling.messages import Full
from rendezvous.signaling.messages import Joined
from rendezvous.signaling.messages import Message
from rendezvous.signaling.messages import Ready
from rendezvous.signaling.messages import RELAYED_TYPES

logger = logging.getLogger(__name__)

# Messages from a previous room that may still be queued when rejoining
_STALE_TYPES = (Ready, Bye, *RELAYED_TYPES)


class RendezvousClient:
    """Client interface to a rendezvous server.

    Tip:
        This class can be used as an async context manager!
        ```python
        from rendezvous.signaling.client import RendezvousClient

        async with RendezvousClient('ws://localhost:8080') as client:
            reply = await client.join('r1')
            message = await client.recv()
        ```

    Note:
        The WebSocket connection is not opened until a message is sent,
        a message is received, or
        [`connect()`][rendezvous.signaling.client.RendezvousClient.connect]
        is called. Room membership is tied to the connection so a closed
        connection is not reopened automatically once a room was joined.

    Args:
        address: Address of the rendezvous server. Should start with `ws://`
            or `wss://`.
        extra_headers: Arbitrary HTTP headers to add to the handshake request.
        ssl_context: Custom SSL context to pass to
            [`websockets.connect()`][websockets.asyncio.client.connect]. A TLS
            context is created with
            [`ssl.create_default_context()`][ssl.create_default_context]
            when connecting to a `wss://` URI and `ssl_context` is not
            provided.
        timeout: Time to wait in seconds on rendezvous server connection.
        verify_certificate: Verify the server's SSL certificate. Only
            used if `ssl_context` is `None` and connecting to a `wss://` URI.

    Raises:
        ValueError: If address does not start with `ws://` or `wss://`.
    """

    def __init__(
        self,
        address: str,
        *,
        extra_headers: dict[str, str] | None = None,
        ssl_context: ssl.SSLContext | None = None,
        timeout: float = 10,
        verify_certificate: bool = True,
    ) -> None:
        if not (address.startswith('ws://') or address.startswith('wss://')):
            raise ValueError(
                'Rendezvous server address must start with ws:// or wss://. '
                f'Got {address}.',
            )

        self._address = address
        self._timeout = timeout

        if self._address.startswith('wss://') and ssl_context is None:
            ssl_context = ssl.create_default_context()
            if not verify_certificate:
                ssl_context.check_hostname = False
                ssl_context.verify_mode = ssl.CERT_NONE

        self._extra_headers = extra_headers
        self._ssl_context = ssl_context

        self._initial_backoff_seconds = 1.0

        self._connect_lock = asyncio.Lock()
        self._websocket: ClientConnection | None = None

        self._room: str | None = None
        self._client_id: uuid.UUID | None = None

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        exc_traceback: TracebackType | None,
    ) -> None:
        await self.close()

    @property
    def address(self) -> str:
        """Address of the rendezvous server."""
        return self._address

    @property
    def room(self) -> str | None:
        """Room the client is currently a member of."""
        return self._room

    @property
    def client_id(self) -> uuid.UUID | None:
        """Connection ID assigned by the server when joining a room."""
        return self._client_id

    @property
    def websocket(self) -> ClientConnection:
        """Websocket connection to the rendezvous server.

        Raises:
            RendezvousNotConnectedError: if the websocket connection to the
                server is not open. This usually indicates that
                [`connect()`][rendezvous.signaling.client.RendezvousClient.connect]
                needs to be called.
        """
        if self._websocket is not None and self._websocket.state is State.OPEN:
            return self._websocket
        else:
            raise RendezvousNotConnectedError(
                'Websocket connection to the rendezvous server is not open. '
                'Try calling connect() first.',
            )

    async def connect(self, retry: bool = True) -> None:
        """Connect to the rendezvous server.

        Note:
            This method is a no-op if a connection is already established.
            Otherwise, a new connection will be attempted with
            exponential backoff when `retry` is True for connection failures.

        Args:
            retry: Retry the connection with exponential backoff starting at
                one second and increasing to a max of 60 seconds.

        Raises:
            RendezvousNotConnectedError: If a previous connection that had
                joined a room was closed.
        """
        async with self._connect_lock:
            if self._websocket is not None:
                if self._websocket.state is State.OPEN:
                    return
                if self._room is not None:
                    raise RendezvousNotConnectedError(
                        'Connection to the rendezvous server was closed '
                        f'while a member of room {self._room}.',
                    )

            backoff_seconds = self._initial_backoff_seconds
            while True:
                try:
                    self._websocket = await websocket_connect(
                        self._address,
                        open_timeout=self._timeout,
                        ssl=self._ssl_context,
                        additional_headers=self._extra_headers,
                    )
                except (
                    # Exceptions that we should wait and retry again for
                    ConnectionRefusedError,
                    asyncio.TimeoutError,
                    websockets.exceptions.ConnectionClosed,
                ) as e:
                    if not retry:
                        raise

                    logger.warning(
                        f'Connection to rendezvous server at {self._address} '
                        f'failed because of {e}. Retrying connection in '
                        f'{backoff_seconds} seconds',
                    )
                    await asyncio.sleep(backoff_seconds)
                    backoff_seconds = min(backoff_seconds * 2, 60)
                else:
                    logger.info(
                        'Established client connection to rendezvous server '
                        f'at {self._address}',
                    )
                    break

    async def close(self) -> None:
        """Close the connection to the rendezvous server."""
        if self._websocket is not None:
            await self._websocket.close()
        self._room = None
        self._client_id = None

    async def recv(self) -> Message:
        """Receive the next message.

        Returns:
            The message received from the rendezvous server.

        Raises:
            MessageDecodeError: If the message received cannot
                be decoded into the appropriate message type.
        """
        try:
            websocket = self.websocket
        except RendezvousNotConnectedError:
            await self.connect()
            websocket = self.websocket

        message_str = await websocket.recv()
        if not isinstance(message_str, str):
            raise AssertionError('Received non-string from websocket.')
        return decode_message(message_str)

    async def send(self, message: Message) -> None:
        """Send a message.

        Args:
            message: The message to send to the rendezvous server.
        """
        message_str = encode_message(message)

        try:
            websocket = self.websocket
        except RendezvousNotConnectedError:
            await self.connect()
            websocket = self.websocket

        await websocket.send(message_str)

    async def join(self, room: str) -> Created | Joined | Full:
        """Request to create or join a room.

        Messages left over from a previous room, such as
        [`Ready`][rendezvous.signaling.messages.Ready] or relayed
        descriptions, are skipped while waiting on the reply.

        Args:
            room: Name of the room.

        Returns:
            [`Created`][rendezvous.signaling.messages.Created] if this client
            is the initiator of the room,
            [`Joined`][rendezvous.signaling.messages.Joined] if it is the
            joiner, or [`Full`][rendezvous.signaling.messages.Full] if the
            room already has two members.

        Raises:
            RendezvousClientError: If the server rejects the request or
                replies with an unexpected message.
        """
        await self.send(CreateOrJoin(room))
        reply = await asyncio.wait_for(self._recv_join_reply(), self._timeout)

        if isinstance(reply, (Created, Joined)):
            self._room = reply.room
            self._client_id = reply.client_id
            logger.info(
                f'{type(reply).__name__.lower()} room {reply.room} with '
                f'client id {reply.client_id}',
            )
            return reply
        elif isinstance(reply, Full):
            logger.info(f'Room {reply.room} is full')
            return reply
        elif isinstance(reply, ErrorResponse):
            raise RendezvousClientError(
                f'Failed to join room {room}: {reply.message}',
            )
        else:
            raise RendezvousClientError(
                'Rendezvous server replied with unexpected message type: '
                f'{type(reply).__name__}.',
            )

    async def _recv_join_reply(self) -> Message:
        while True:
            message = await self.recv()
            if isinstance(message, _STALE_TYPES):
                logger.debug(
                    f'Skipping {type(message).__name__} received while '
                    'waiting on the join reply',
                )
                continue
            return message

    async def leave(self) -> None:
        """Send [`Bye`][rendezvous.signaling.messages.Bye] to leave the room.

        This is a no-op if the client is not in a room.
        """
        if self._room is None:
            return
        room = self._room
        self._room = None
        self._client_id = None
        if self._websocket is None or self._websocket.state is not State.OPEN:
            return
        await self.send(Bye(room))
        logger.info(f'Left room {room}')
