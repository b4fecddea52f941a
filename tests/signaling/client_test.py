from __future__ import annotations

import asyncio
import logging
import ssl
import uuid
from unittest import mock
from unittest.mock import AsyncMock

import pytest
from websockets.protocol import State

from rendezvous.exceptions import RendezvousClientError
from rendezvous.exceptions import RendezvousNotConnectedError
from rendezvous.signaling.client import RendezvousClient
from rendezvous.signaling.messages import Answer
from rendezvous.signaling.messages import Bye
from rendezvous.signaling.messages import Candidate
from rendezvous.signaling.messages import Created
from rendezvous.signaling.messages import Full
from rendezvous.signaling.messages import IpAddr
from rendezvous.signaling.messages import IpAddrRequest
from rendezvous.signaling.messages import Joined
from rendezvous.signaling.messages import Offer
from rendezvous.signaling.messages import Ready
from testing.rendezvous_server import RendezvousServerInfo

# Use 1s as wait_for/timeout to keep test short
_WAIT_FOR = 1


def test_invalid_address_protocol() -> None:
    with pytest.raises(ValueError, match='wss://'):
        RendezvousClient('myserver.com')


def test_default_ssl_context() -> None:
    client = RendezvousClient('wss://myserver.com', ssl_context=None)
    assert client._ssl_context is not None


def test_default_ssl_context_no_verify() -> None:
    client = RendezvousClient(
        'wss://myserver.com',
        ssl_context=None,
        verify_certificate=False,
    )
    assert client._ssl_context is not None
    assert client._ssl_context.check_hostname is False
    assert client._ssl_context.verify_mode == ssl.CERT_NONE


@pytest.mark.asyncio()
async def test_open_and_close() -> None:
    client = RendezvousClient('ws://localhost')
    await client.close()


def test_websocket_not_connected() -> None:
    client = RendezvousClient('ws://localhost')
    with pytest.raises(RendezvousNotConnectedError):
        client.websocket  # noqa: B018


@pytest.mark.asyncio()
async def test_connect_and_ping_server(
    rendezvous_server: RendezvousServerInfo,
) -> None:
    async with RendezvousClient(rendezvous_server.address) as client:
        pong_waiter = await client.websocket.ping()
        await asyncio.wait_for(pong_waiter, _WAIT_FOR)
        # Connecting again is a no-op
        websocket = client.websocket
        await client.connect()
        assert client.websocket is websocket


@pytest.mark.asyncio()
async def test_join_roles(rendezvous_server: RendezvousServerInfo) -> None:
    async with RendezvousClient(
        rendezvous_server.address,
    ) as client1, RendezvousClient(
        rendezvous_server.address,
    ) as client2, RendezvousClient(
        rendezvous_server.address,
    ) as client3:
        reply1 = await client1.join('r1')
        assert isinstance(reply1, Created)
        assert client1.room == 'r1'
        assert client1.client_id == reply1.client_id

        reply2 = await client2.join('r1')
        assert isinstance(reply2, Joined)
        assert client2.room == 'r1'

        reply3 = await client3.join('r1')
        assert reply3 == Full('r1')
        assert client3.room is None
        assert client3.client_id is None

        assert await asyncio.wait_for(client1.recv(), _WAIT_FOR) == Ready()
        assert await asyncio.wait_for(client2.recv(), _WAIT_FOR) == Ready()


@pytest.mark.asyncio()
async def test_join_rejected(rendezvous_server: RendezvousServerInfo) -> None:
    async with RendezvousClient(rendezvous_server.address) as client:
        await client.join('r1')
        with pytest.raises(
            RendezvousClientError,
            match='Failed to join room r2',
        ):
            await client.join('r2')


@pytest.mark.asyncio()
async def test_join_unexpected_reply(
    rendezvous_server: RendezvousServerInfo,
) -> None:
    async with RendezvousClient(rendezvous_server.address) as client:
        with mock.patch.object(
            client,
            'recv',
            AsyncMock(return_value=IpAddr('10.0.0.1')),
        ), pytest.raises(
            RendezvousClientError,
            match='unexpected message type: IpAddr',
        ):
            await client.join('r1')


@pytest.mark.asyncio()
async def test_join_skips_stale_messages() -> None:
    client = RendezvousClient('ws://localhost')
    client_id = uuid.uuid4()
    with mock.patch.object(client, 'send', AsyncMock()), mock.patch.object(
        client,
        'recv',
        AsyncMock(
            side_effect=[
                Ready(),
                Offer('sdp'),
                Answer('sdp'),
                Candidate(0, '0', 'candidate:1'),
                Bye('r0'),
                Created('r1', client_id),
            ],
        ),
    ) as mock_recv:
        reply = await client.join('r1')
        assert mock_recv.await_count == 6

    assert reply == Created('r1', client_id)
    assert client.room == 'r1'


@pytest.mark.asyncio()
async def test_rejoin_with_ready_queued(
    rendezvous_server: RendezvousServerInfo,
) -> None:
    async with RendezvousClient(
        rendezvous_server.address,
    ) as client1, RendezvousClient(rendezvous_server.address) as client2:
        await client1.join('r1')
        await client2.join('r1')
        # client1 leaves without reading the Ready sent to it
        await client1.leave()

        reply = await client1.join('r1')
        assert isinstance(reply, Joined)
        assert await asyncio.wait_for(client1.recv(), _WAIT_FOR) == Ready()


@pytest.mark.asyncio()
async def test_leave_notifies_peer(
    rendezvous_server: RendezvousServerInfo,
) -> None:
    async with RendezvousClient(
        rendezvous_server.address,
    ) as client1, RendezvousClient(rendezvous_server.address) as client2:
        await client1.join('r1')
        await client2.join('r1')
        assert await asyncio.wait_for(client1.recv(), _WAIT_FOR) == Ready()

        await client2.leave()
        assert client2.room is None
        assert client2.client_id is None
        assert await asyncio.wait_for(client1.recv(), _WAIT_FOR) == Bye('r1')

        # Leaving again is a no-op
        with mock.patch.object(client2, 'send', AsyncMock()) as mock_send:
            await client2.leave()
            mock_send.assert_not_awaited()


@pytest.mark.asyncio()
async def test_leave_after_connection_closed(
    rendezvous_server: RendezvousServerInfo,
) -> None:
    client = RendezvousClient(rendezvous_server.address)
    await client.join('r1')
    await client.websocket.close()

    with mock.patch.object(client, 'send', AsyncMock()) as mock_send:
        await client.leave()
        mock_send.assert_not_awaited()
    assert client.room is None
    await client.close()


@pytest.mark.asyncio()
async def test_send_connects_lazily(
    rendezvous_server: RendezvousServerInfo,
) -> None:
    client = RendezvousClient(rendezvous_server.address)
    with mock.patch(
        'rendezvous.signaling.server.ipv4_addresses',
        return_value=['10.0.0.1'],
    ):
        await client.send(IpAddrRequest())
        message = await asyncio.wait_for(client.recv(), _WAIT_FOR)
    assert message == IpAddr('10.0.0.1')
    await client.close()


@pytest.mark.asyncio()
async def test_recv_wrong_type(
    rendezvous_server: RendezvousServerInfo,
) -> None:
    async with RendezvousClient(rendezvous_server.address) as client:
        with mock.patch.object(
            client.websocket,
            'recv',
            AsyncMock(return_value=b''),
        ):
            with pytest.raises(AssertionError, match='non-string'):
                await client.recv()


@pytest.mark.asyncio()
async def test_connect_closed_while_in_room(
    rendezvous_server: RendezvousServerInfo,
) -> None:
    client = RendezvousClient(rendezvous_server.address)
    await client.join('r1')
    await client.websocket.close()

    with pytest.raises(RendezvousNotConnectedError, match='room r1'):
        await client.connect()

    # Closing the client forgets the room so a new connection is allowed
    await client.close()
    await client.connect()
    assert client.websocket.state is State.OPEN
    await client.close()


@pytest.mark.asyncio()
async def test_connect_backoff(caplog) -> None:
    caplog.set_level(logging.WARNING)
    client = RendezvousClient('ws://localhost')
    client._initial_backoff_seconds = 0.01

    websocket = mock.MagicMock()
    websocket.state = State.OPEN
    websocket.close = AsyncMock()

    with mock.patch(
        'rendezvous.signaling.client.websocket_connect',
        AsyncMock(
            side_effect=[
                ConnectionRefusedError(),
                asyncio.TimeoutError(),
                websocket,
            ],
        ),
    ) as mock_connect:
        await client.connect()
        assert mock_connect.await_count == 3

    assert client.websocket is websocket
    records = [
        record.message
        for record in caplog.records
        if 'Retrying connection' in record.message
    ]
    assert len(records) == 2

    await client.close()
    websocket.close.assert_awaited_once()


@pytest.mark.asyncio()
async def test_connect_no_retry() -> None:
    client = RendezvousClient('ws://localhost')
    with mock.patch(
        'rendezvous.signaling.client.websocket_connect',
        AsyncMock(side_effect=ConnectionRefusedError()),
    ), pytest.raises(ConnectionRefusedError):
        await client.connect(retry=False)
