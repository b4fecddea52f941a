"""CLI for exchanging files with a peer over a WebRTC data channel."""
from __future__ import annotations

import asyncio
import logging
import pathlib

import click

from rendezvous.negotiation.rtc import DEFAULT_STUN_SERVER
from rendezvous.peer import Peer
from rendezvous.peer import PeerConfig
from rendezvous.signaling.client import RendezvousClient
from rendezvous.signaling.rooms import random_room_name
from rendezvous.signaling.run import configure_logging

logger = logging.getLogger(__name__)


async def run_peer(
    address: str,
    room: str,
    config: PeerConfig,
    *,
    send_path: pathlib.Path | None = None,
    output_dir: pathlib.Path | None = None,
    count: int | None = None,
    timeout: float | None = None,
) -> list[pathlib.Path]:
    """Join a room and send and/or receive payloads.

    Args:
        address: Address of the rendezvous server.
        room: Name of the room to join.
        config: Peer configuration.
        send_path: Optional file to send to the peer once connected. The
            peer waits for the remote side to hang up before returning.
        output_dir: Optional directory to write received payloads to.
        count: Number of payloads to receive before returning. If `None`,
            receive until cancelled.
        timeout: Seconds to wait on the peer connection to establish.

    Returns:
        Paths of the received payloads written to `output_dir`.
    """
    written: list[pathlib.Path] = []

    async with RendezvousClient(address) as client:
        async with Peer(client, room, config) as peer:
            logger.info(f'Joined room {peer.room} as {peer.role.value}')
            await peer.request_server_addresses()
            await peer.ready(timeout)
            logger.info(f'Connected to peer in room {peer.room}')

            if send_path is not None:
                await peer.send_payload(send_path.read_bytes())

            if output_dir is not None:
                output_dir.mkdir(parents=True, exist_ok=True)
                while count is None or len(written) < count:
                    payload = await peer.recv_payload()
                    path = output_dir / f'{peer.room}-{len(written)}.bin'
                    path.write_bytes(payload)
                    written.append(path)
                    logger.info(f'Wrote {len(payload)} bytes to {path}')
            elif send_path is not None:
                await peer.wait_peer_left()

    return written


@click.command()
@click.argument('room', required=False)
@click.option(
    '--server',
    'address',
    default='ws://localhost:8080',
    show_default=True,
    metavar='ADDR',
    help='Rendezvous server address.',
)
@click.option('--config', '-c', 'config_path', help='Configuration file.')
@click.option(
    '--send',
    'send_path',
    type=click.Path(exists=True, dir_okay=False, path_type=pathlib.Path),
    help='File to send to the peer.',
)
@click.option(
    '--output-dir',
    type=click.Path(file_okay=False, path_type=pathlib.Path),
    help='Directory to write received payloads to.',
)
@click.option(
    '--count',
    type=click.IntRange(min=1),
    help='Exit after receiving this many payloads.',
)
@click.option('--chunk-bytes', type=click.IntRange(min=1), help='Chunk size.')
@click.option(
    '--ice-server',
    'ice_servers',
    multiple=True,
    metavar='URL',
    help='STUN/TURN server URL (repeatable).',
)
@click.option(
    '--stun/--no-stun',
    default=False,
    help=f'Add the public STUN server {DEFAULT_STUN_SERVER}.',
)
@click.option(
    '--timeout',
    type=float,
    help='Seconds to wait for the peer connection.',
)
@click.option(
    '--log-level',
    type=click.Choice(
        ['CRITICAL', 'ERROR', 'WARNING', 'INFO', 'DEBUG'],
        case_sensitive=False,
    ),
    default='INFO',
    help='Minimum logging level.',
)
@click.option('--log-dir', metavar='PATH', help='Logging directory.')
def cli(
    room: str | None,
    address: str,
    config_path: str | None,
    send_path: pathlib.Path | None,
    output_dir: pathlib.Path | None,
    count: int | None,
    chunk_bytes: int | None,
    ice_servers: tuple[str, ...],
    stun: bool,
    timeout: float | None,
    log_level: str,
    log_dir: str | None,
) -> None:
    """Join ROOM and exchange files with the other member.

    If ROOM is omitted a random room name is generated. Share it with the
    peer so both sides join the same room.
    """
    if send_path is None and output_dir is None:
        raise click.UsageError(
            'At least one of --send or --output-dir is required.',
        )

    config = (
        PeerConfig()
        if config_path is None
        else PeerConfig.from_toml(config_path)
    )

    # Override config with CLI options if given
    if chunk_bytes is not None:
        config.chunk_bytes = chunk_bytes
    if len(ice_servers) > 0:
        config.ice_servers = list(ice_servers)
    if stun and DEFAULT_STUN_SERVER not in config.ice_servers:
        config.ice_servers = [*config.ice_servers, DEFAULT_STUN_SERVER]

    configure_logging(log_level.upper(), log_dir=log_dir, filename='peer.log')

    room = random_room_name() if room is None else room
    click.echo(f'Room: {room}')

    asyncio.run(
        run_peer(
            address,
            room,
            config,
            send_path=send_path,
            output_dir=output_dir,
            count=count,
            timeout=timeout,
        ),
    )
