"""Rendezvous server implementation for pairing WebRTC peers.

The rendezvous server (or signaling server) is a lightweight server
accessible by all peers that pairs two clients into a room and relays
the messages they need to establish a WebRTC peer connection.
"""
from __future__ import annotations

import logging
import sys
import uuid

import websockets.exceptions
from websockets.asyncio.server import ServerConnection

from rendezvous.exceptions import BadRequestError
from rendezvous.exceptions import RendezvousServerError
from rendezvous.signaling.manager import Client
from rendezvous.signaling.manager import ClientManager
from rendezvous.signaling.messages import Bye
from rendezvous.signaling.messages import CreateOrJoin
from rendezvous.signaling.messages import Created
from rendezvous.signaling.messages import decode_message
from rendezvous.signaling.messages import encode_message
from rendezvous.signaling.messages import ErrorResponse
from rendezvous.signaling.messages import Full
from rendezvous.signaling.messages import IpAddr
from rendezvous.signaling.messages import IpAddrRequest
from rendezvous.signaling.messages import Joined
from rendezvous.signaling.messages import Message
from rendezvous.signaling.messages import MessageDecodeError
from rendezvous.signaling.messages import MessageEncodeError
from rendezvous.signaling.messages import Ready
from rendezvous.signaling.messages import RELAYED_TYPES
from rendezvous.signaling.rooms import JoinOutcome
from rendezvous.signaling.rooms import RoomManager
from rendezvous.utils.environment import ipv4_addresses

logger = logging.getLogger(__name__)


class RendezvousServer:
    """WebRTC rendezvous server.

    Clients join a room by name. The first member of a room is the
    initiator, the second is the joiner, and further members are turned
    away with [`Full`][rendezvous.signaling.messages.Full]. Once both
    members are present each receives
    [`Ready`][rendezvous.signaling.messages.Ready] and any session
    descriptions or candidates one member sends are forwarded unchanged
    to the other.

    The server is built on websockets and designed to be
    served using [`serve()`][rendezvous.signaling.run.serve].

    Args:
        max_message_bytes: Optional maximum size of client messages in bytes.
            Clients that send oversized messages will have their connections
            closed. Note that message size is computed using
            [`sys.getsizeof()`][sys.getsizeof] so will also include the
            PyObject overhead.
    """

    def __init__(self, max_message_bytes: int | None = None) -> None:
        self._client_manager = ClientManager()
        self._room_manager = RoomManager()
        self._max_message_bytes = max_message_bytes

    @property
    def client_manager(self) -> ClientManager:
        """Manager of connected clients."""
        return self._client_manager

    @property
    def room_manager(self) -> RoomManager:
        """Manager of room membership."""
        return self._room_manager

    async def send(self, client: Client, message: Message) -> None:
        """Send message on the socket.

        Note:
            Messages are JSON string encoded using
            [`encode_message()`][rendezvous.signaling.messages.encode_message].

        Args:
            client: Client to send message to.
            message: Message to encode and send via the websocket connection
                to the client.
        """
        try:
            message_str = encode_message(message)
        except MessageEncodeError as e:
            logger.error(f'Failed to encode message: {e}')
            return

        try:
            await client.websocket.send(message_str)
        except websockets.exceptions.ConnectionClosed:
            logger.error('Connection closed while attempting to send message')

    async def _send_to_others(
        self,
        client: Client,
        room: str,
        message: Message,
    ) -> int:
        room_ = self.room_manager.get_room(room)
        others = [] if room_ is None else room_.others(client.uuid)
        sent = 0
        for other_uuid in others:
            other = self.client_manager.get_client_by_uuid(other_uuid)
            if other is None:  # pragma: no cover
                continue
            await self.send(other, message)
            sent += 1
        return sent

    async def join(self, client: Client, room: str) -> JoinOutcome:
        """Add a client to a room.

        Replies with [`Created`][rendezvous.signaling.messages.Created]
        to the first member, with
        [`Joined`][rendezvous.signaling.messages.Joined] to the second
        member followed by [`Ready`][rendezvous.signaling.messages.Ready]
        to both members, and with
        [`Full`][rendezvous.signaling.messages.Full] otherwise.

        Args:
            client: Client making the request.
            room: Name of the room to join.

        Returns:
            Outcome of the request.

        Raises:
            BadRequestError: If the client is already a member of a room.
        """
        if client.room is not None:
            raise BadRequestError(
                f'Client is already a member of room {client.room}. '
                'Send Bye before joining another room.',
            )

        async with self.room_manager.locked(room):
            outcome, role = self.room_manager.join(room, client.uuid)

            if outcome is JoinOutcome.FULL:
                logger.info(
                    f'Client {client.uuid} rejected from room {room} '
                    'because it is full',
                )
                await self.send(client, Full(room))
                return outcome

            client.room = room
            client.role = role
            if outcome is JoinOutcome.CREATED:
                logger.info(f'Client {client.uuid} created room {room}')
                await self.send(client, Created(room, client.uuid))
            else:
                logger.info(f'Client {client.uuid} joined room {room}')
                await self.send(client, Joined(room, client.uuid))
                for member_uuid in self.room_manager.members(room):
                    member = self.client_manager.get_client_by_uuid(
                        member_uuid,
                    )
                    if member is not None:  # pragma: no branch
                        await self.send(member, Ready())
                logger.info(f'Room {room} is ready')

        return outcome

    async def relay(self, client: Client, message: Message) -> None:
        """Forward a message to the other member of the client's room.

        Args:
            client: Client sending the message.
            message: Message to forward unchanged.

        Raises:
            BadRequestError: If the client is not a member of a room.
        """
        room = client.room
        if room is None:
            raise BadRequestError(
                'Client must join a room before sending '
                f'{type(message).__name__} messages.',
            )

        async with self.room_manager.locked(room):
            sent = await self._send_to_others(client, room, message)

        if sent == 0:
            logger.warning(
                f'Dropped {type(message).__name__} from client '
                f'{client.uuid} because room {room} has no other member',
            )
        else:
            logger.info(
                f'Relayed {type(message).__name__} from client '
                f'{client.uuid} in room {room}',
            )

    async def leave(
        self,
        client: Client,
        farewell: Message | None = None,
    ) -> None:
        """Remove a client from its current room.

        If the room becomes empty it is deleted so the next client to join
        the name becomes a fresh initiator.

        Args:
            client: Client leaving its room.
            farewell: Optional message to send to the remaining member
                before the client is removed.
        """
        room = client.room
        if room is None:
            return

        async with self.room_manager.locked(room):
            if farewell is not None:
                await self._send_to_others(client, room, farewell)
            self.room_manager.leave(room, client.uuid)
            client.room = None
            client.role = None

        logger.info(f'Client {client.uuid} left room {room}')

    async def bye(self, client: Client, message: Bye) -> None:
        """Relay a voluntary disconnect and remove the client from its room.

        Raises:
            BadRequestError: If the client is not a member of the room
                named in the message.
        """
        if client.room != message.room:
            raise BadRequestError(
                f'Client is not a member of room {message.room}.',
            )
        await self.leave(client, farewell=message)

    async def ip_addr(self, client: Client) -> None:
        """Reply with each non-loopback IPv4 address of the server."""
        for address in ipv4_addresses():
            await self.send(client, IpAddr(address))

    async def register(self, websocket: ServerConnection) -> Client:
        """Register a new client connection.

        Args:
            websocket: Websocket connection with the new client.

        Returns:
            Client with a newly assigned connection ID.
        """
        client = Client(uuid=uuid.uuid4(), websocket=websocket)
        self.client_manager.add_client(client)
        logger.info(f'Registered client: {client}')
        return client

    async def unregister(self, client: Client, expected: bool) -> None:
        """Unregister the client.

        A client that disconnects while still in a room is treated as
        leaving it, and the remaining member is sent
        [`Bye`][rendezvous.signaling.messages.Bye].

        Args:
            client: Client to unregister.
            expected: If the connection was closed intentionally or due to an
                error.
        """
        reason = 'ok' if expected else 'unexpected'
        logger.info(f'Unregistering client {client.uuid} for {reason} reason')
        if client.room is not None:
            await self.leave(client, farewell=Bye(client.room))
        self.client_manager.remove_client(client)
        await client.websocket.close(code=1000 if expected else 1001)

    async def _process_message(
        self,
        client: Client,
        message: Message,
    ) -> None:
        # Dispatches the message to the correct method depending on the type
        if isinstance(message, CreateOrJoin):
            await self.join(client, message.room)
        elif isinstance(message, RELAYED_TYPES):
            await self.relay(client, message)
        elif isinstance(message, Bye):
            await self.bye(client, message)
        elif isinstance(message, IpAddrRequest):
            await self.ip_addr(client)
        else:
            raise BadRequestError(
                f'Clients cannot send {type(message).__name__} messages.',
            )

    async def handler(self, websocket: ServerConnection) -> None:
        """Websocket server message handler.

        The handler will close the connection for the following reasons.

        - An unexpected message type is received (code 4000).
        - The client sends a message larger than the allowed size (code 4003).

        Args:
            websocket: Websocket message was received on.
        """
        client = await self.register(websocket)
        expected = False

        while True:
            try:
                message_str = await websocket.recv()
            except websockets.exceptions.ConnectionClosedOK:
                expected = True
                break
            except websockets.exceptions.ConnectionClosedError:
                break

            if (
                self._max_message_bytes is not None
                and sys.getsizeof(message_str) > self._max_message_bytes
            ):
                await websocket.close(
                    4003,
                    reason='Message length exceeds limit.',
                )
                logger.warning(
                    f'Client at {websocket.remote_address} sent message with '
                    f'size {sys.getsizeof(message_str)} bytes which exceeds '
                    f'the max configured size of {self._max_message_bytes} '
                    'bytes. Connection closed with error code 4003',
                )
                break

            try:
                if isinstance(message_str, bytes):
                    raise MessageDecodeError(
                        'Got message as bytes but expected str.',
                    )
                message = decode_message(message_str)
            except MessageDecodeError as e:
                logger.error(
                    'Closing websocket because deserialization error was '
                    'caught on message received from '
                    f'{websocket.remote_address}. {e}',
                )
                await websocket.close(4000, reason='Unknown message type.')
                break

            try:
                await self._process_message(client, message)
            except RendezvousServerError as e:
                logger.warning(
                    f'Rejected request from client {client.uuid}. '
                    f'{e.__class__.__name__}: {e}',
                )
                response = ErrorResponse(f'{e.__class__.__name__}: {e}')
                await self.send(client, response)

        await self.unregister(client, expected=expected)
