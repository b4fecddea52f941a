from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import pathlib
from typing import AsyncGenerator
from unittest import mock
from unittest.mock import AsyncMock

import pydantic
import pytest

from rendezvous.exceptions import PeerConnectionTimeoutError
from rendezvous.exceptions import RendezvousClientError
from rendezvous.exceptions import RoomFullError
from rendezvous.negotiation.machine import NegotiationState
from rendezvous.peer import Peer
from rendezvous.peer import PeerConfig
from rendezvous.signaling.client import RendezvousClient
from rendezvous.signaling.rooms import Role
from rendezvous.transfer import DEFAULT_CHUNK_BYTES
from testing.rendezvous_server import RendezvousServerInfo
from testing.utils import wait_until

# Generous timeouts because ICE gathering can be slow on CI runners
_READY_TIMEOUT = 20


@contextlib.asynccontextmanager
async def _peer(
    address: str,
    room: str = 'r1',
    config: PeerConfig | None = None,
) -> AsyncGenerator[Peer, None]:
    async with RendezvousClient(address) as client:
        async with Peer(client, room, config) as peer:
            yield peer


def test_peer_config_defaults() -> None:
    config = PeerConfig()
    assert config.chunk_bytes == DEFAULT_CHUNK_BYTES
    assert config.ice_servers == []
    assert config.new_room_on_full
    assert config.max_payload_bytes is None


def test_peer_config_bad_chunk_bytes() -> None:
    with pytest.raises(pydantic.ValidationError):
        PeerConfig(chunk_bytes=0)


def test_peer_config_from_toml(tmp_path: pathlib.Path) -> None:
    filepath = tmp_path / 'peer.toml'
    filepath.write_text(
        'chunk_bytes = 1000\n'
        'ice_servers = ["stun:stun.example.com:3478"]\n'
        'new_room_on_full = false\n',
    )

    config = PeerConfig.from_toml(filepath)
    assert config.chunk_bytes == 1000
    assert config.ice_servers == ['stun:stun.example.com:3478']
    assert not config.new_room_on_full
    assert config.max_payload_bytes is None


def test_machine_before_start() -> None:
    peer = Peer(RendezvousClient('ws://localhost'), 'r1')
    assert peer.room == 'r1'
    assert peer.server_addresses == []
    with pytest.raises(RuntimeError, match='start()'):
        peer.machine  # noqa: B018


@pytest.mark.timeout(30)
@pytest.mark.asyncio()
async def test_peers_connect_and_transfer(
    rendezvous_server: RendezvousServerInfo,
) -> None:
    config = PeerConfig(chunk_bytes=16000)
    async with _peer(
        rendezvous_server.address,
        config=config,
    ) as peer1, _peer(rendezvous_server.address, config=config) as peer2:
        assert peer1.role is Role.INITIATOR
        assert peer2.role is Role.JOINER

        await peer1.ready(_READY_TIMEOUT)
        await peer2.ready(_READY_TIMEOUT)
        assert peer1.machine.state is NegotiationState.CONNECTED
        assert peer2.machine.state is NegotiationState.CONNECTED

        # Larger than a single chunk
        payload = os.urandom(50000)
        await peer1.send_payload(payload)
        assert await peer2.recv_payload() == payload

        await peer2.send_payload(b'')
        await peer2.send_payload(b'hello')
        assert await peer1.recv_payload() == b''
        assert await peer1.recv_payload() == b'hello'


@pytest.mark.asyncio()
async def test_ready_timeout(
    rendezvous_server: RendezvousServerInfo,
) -> None:
    async with _peer(rendezvous_server.address) as peer:
        # No second peer joins the room
        with pytest.raises(PeerConnectionTimeoutError):
            await peer.ready(timeout=0.05)


@pytest.mark.asyncio()
async def test_room_full(rendezvous_server: RendezvousServerInfo) -> None:
    async with RendezvousClient(
        rendezvous_server.address,
    ) as client1, RendezvousClient(rendezvous_server.address) as client2:
        await client1.join('r1')
        await client2.join('r1')

        async with RendezvousClient(rendezvous_server.address) as client:
            peer = Peer(client, 'r1', PeerConfig(new_room_on_full=False))
            with pytest.raises(RoomFullError, match='r1'):
                await peer.start()
            await peer.close()

        async with _peer(rendezvous_server.address) as peer:
            assert peer.room != 'r1'
            assert peer.role is Role.INITIATOR


@pytest.mark.asyncio()
async def test_request_server_addresses(
    rendezvous_server: RendezvousServerInfo,
) -> None:
    async with _peer(rendezvous_server.address) as peer:
        with mock.patch(
            'rendezvous.signaling.server.ipv4_addresses',
            return_value=['10.0.0.1', '10.0.0.2'],
        ):
            await peer.request_server_addresses()
            await wait_until(lambda: len(peer.server_addresses) == 2)
        assert peer.server_addresses == ['10.0.0.1', '10.0.0.2']


@pytest.mark.timeout(60)
@pytest.mark.asyncio()
async def test_joiner_rejoins_when_initiator_leaves(
    rendezvous_server: RendezvousServerInfo,
) -> None:
    async with _peer(rendezvous_server.address) as peer2:
        async with _peer(rendezvous_server.address) as peer3:
            # The initiator leaves while the joiner stays
            assert peer2.role is Role.INITIATOR
            assert peer3.role is Role.JOINER
            await peer3.ready(_READY_TIMEOUT)
            old_machine = peer3.machine

            await peer2.close()
            await peer3.wait_peer_left(timeout=5)
            assert old_machine.closed

            # The joiner rejoins the now empty room and becomes the initiator
            await wait_until(
                lambda: peer3.machine is not old_machine,
                timeout=5,
            )
            assert peer3.role is Role.INITIATOR
            assert peer3.room == 'r1'

            async with _peer(rendezvous_server.address) as peer4:
                assert peer4.role is Role.JOINER
                await peer4.ready(_READY_TIMEOUT)
                await peer3.ready(_READY_TIMEOUT)
                await peer4.send_payload(b'after restart')
                assert await peer3.recv_payload() == b'after restart'


@pytest.mark.timeout(60)
@pytest.mark.asyncio()
async def test_initiator_waits_when_joiner_leaves(
    rendezvous_server: RendezvousServerInfo,
) -> None:
    async with _peer(rendezvous_server.address) as peer1:
        async with _peer(rendezvous_server.address) as peer2:
            await peer1.ready(_READY_TIMEOUT)
            old_machine = peer1.machine
        await peer1.wait_peer_left(timeout=5)

        # The initiator stays in the room with a fresh session
        await wait_until(lambda: peer1.machine is not old_machine, timeout=5)
        assert old_machine.closed
        assert peer1.role is Role.INITIATOR
        assert not peer1.machine.closed

        async with _peer(rendezvous_server.address) as peer3:
            assert peer2.machine.closed
            assert peer3.role is Role.JOINER
            await peer1.ready(_READY_TIMEOUT)
            await peer1.send_payload(b'new session')
            assert await peer3.recv_payload() == b'new session'


@pytest.mark.timeout(30)
@pytest.mark.asyncio()
async def test_rejoin_skips_ready_from_previous_room(
    rendezvous_server: RendezvousServerInfo,
) -> None:
    async with RendezvousClient(rendezvous_server.address) as client:
        await client.join('r1')
        async with _peer(rendezvous_server.address) as peer:
            assert peer.role is Role.JOINER
            old_machine = peer.machine
            leave = peer._client.leave

            async def _leave_after_other_rejoins() -> None:
                # The other client rejoins first so a Ready is queued for
                # the peer before it leaves the room
                await client.join('r1')
                await asyncio.sleep(0.1)
                await leave()

            with mock.patch.object(
                peer._client,
                'leave',
                side_effect=_leave_after_other_rejoins,
            ):
                await client.leave()
                await wait_until(
                    lambda: peer.machine is not old_machine,
                    timeout=5,
                )

            assert peer.role is Role.JOINER
            assert peer.room == 'r1'
            assert peer._server_task is not None
            assert not peer._server_task.done()


@pytest.mark.asyncio()
async def test_rejoin_failure_keeps_peer_running(
    rendezvous_server: RendezvousServerInfo,
    caplog,
) -> None:
    caplog.set_level(logging.ERROR)

    async with RendezvousClient(rendezvous_server.address) as client:
        await client.join('r1')
        async with _peer(rendezvous_server.address) as peer:
            assert peer.role is Role.JOINER
            with mock.patch.object(
                peer._client,
                'join',
                AsyncMock(side_effect=RendezvousClientError('rejected')),
            ):
                await client.leave()
                await wait_until(
                    lambda: any(
                        'failed to rejoin room r1' in record.message
                        for record in caplog.records
                    ),
                    timeout=5,
                )

            assert peer._server_task is not None
            assert not peer._server_task.done()
