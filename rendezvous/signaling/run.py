"""CLI and serving functions for running a rendezvous server."""
from __future__ import annotations

import asyncio
import datetime
import logging
import logging.handlers
import os
import pprint
import signal
import ssl
import sys

import click
from websockets.asyncio.server import serve as websocket_serve

from rendezvous.signaling.config import ServingConfig
from rendezvous.signaling.server import RendezvousServer
from rendezvous.utils.tasks import spawn_guarded_background_task

logger = logging.getLogger(__name__)

LOG_FORMAT = (
    '[%(asctime)s.%(msecs)03d] %(levelname)-5s (%(name)s) :: %(message)s'
)
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def configure_logging(
    level: int | str,
    *,
    log_dir: str | None = None,
    filename: str = 'server.log',
    websockets_level: int | str = logging.WARNING,
) -> None:
    """Configure the root logger for a CLI process.

    Logs are always written to stdout and additionally to a weekly rotated
    file in `log_dir` if provided.

    Args:
        level: Minimum logging level of the root logger.
        log_dir: Optional directory to write log files to.
        filename: Name of the log file within `log_dir`.
        websockets_level: Log level for the `websockets` logger.
    """
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_dir is not None:
        os.makedirs(log_dir, exist_ok=True)
        handlers.append(
            logging.handlers.TimedRotatingFileHandler(
                os.path.join(log_dir, filename),
                # Rotate logs Sunday at midnight
                when='W6',
                atTime=datetime.time(hour=0, minute=0, second=0),
            ),
        )

    logging.basicConfig(
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        level=level,
        handlers=handlers,
        force=True,
    )

    logging.getLogger('websockets').setLevel(websockets_level)


def periodic_room_logger(
    server: RendezvousServer,
    interval: float = 60,
    limit: float | None = 32,
    level: int = logging.INFO,
) -> asyncio.Task[None]:
    """Create an asyncio task which logs currently active rooms.

    Args:
        server: Rendezvous server instance to log active rooms of.
        interval: Seconds between logging active rooms.
        limit: Only log detailed room list if the number of rooms is
            less than this number.
        level: Logging level.

    Returns:
        Asyncio task.
    """

    async def _log() -> None:
        while True:
            await asyncio.sleep(interval)
            rooms = server.room_manager.get_rooms()
            rooms = sorted(rooms, key=lambda room: room.name)
            clients = len(server.client_manager.get_clients())
            message = (
                f'Active rooms: {len(rooms)}, connected clients: {clients}'
            )
            if limit is not None and 0 < len(rooms) < limit:
                rooms_repr = '\n'.join(repr(room) for room in rooms)
                message = f'{message}\n{rooms_repr}'
            logger.log(level, message)

    return spawn_guarded_background_task(
        _log,
        name='rendezvous-server-room-logger',
    )


async def serve(config: ServingConfig) -> None:
    """Run the rendezvous server.

    Initializes a
    [`RendezvousServer`][rendezvous.signaling.server.RendezvousServer]
    and starts a websocket server listening for new connections
    and incoming messages.

    Note:
        This function will not configure any logging. Configuring logging
        according to
        [`ServingConfig.logging`][rendezvous.signaling.config.ServingConfig]
        is the responsibility of the caller.

    Args:
        config: Serving configuration.
    """
    server = RendezvousServer(max_message_bytes=config.max_message_bytes)

    # Set the stop condition when receiving SIGINT (ctrl-C) and SIGTERM.
    loop = asyncio.get_running_loop()
    stop = loop.create_future()
    loop.add_signal_handler(signal.SIGINT, stop.set_result, None)
    loop.add_signal_handler(signal.SIGTERM, stop.set_result, None)

    ssl_context: ssl.SSLContext | None = None
    if config.certfile is not None:
        ssl_context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        ssl_context.load_cert_chain(config.certfile, keyfile=config.keyfile)

    room_logger_task: asyncio.Task[None] | None = None
    if config.logging.current_room_interval is not None:  # pragma: no branch
        level = (
            config.logging.default_level
            if isinstance(config.logging.default_level, int)
            else logging.getLevelName(config.logging.default_level)
        )
        room_logger_task = periodic_room_logger(
            server,
            config.logging.current_room_interval,
            config.logging.current_room_limit,
            level=level,
        )

    config_repr = pprint.pformat(config, indent=2)
    logger.info(f'Rendezvous serving configuration:\n{config_repr}')

    async with websocket_serve(
        server.handler,
        config.host,
        config.port,
        logger=None,
        ssl=ssl_context,
    ):
        logger.info(f'Rendezvous server listening on port {config.port}')
        logger.info('Use ctrl-C to stop')
        await stop

    if room_logger_task is not None:  # pragma: no branch
        room_logger_task.cancel()
        try:
            await room_logger_task
        except asyncio.CancelledError:
            pass

    loop.remove_signal_handler(signal.SIGINT)
    loop.remove_signal_handler(signal.SIGTERM)

    logger.info('Rendezvous server shutdown')


@click.command()
@click.option('--config', '-c', 'config_path', help='Configuration file.')
@click.option('--host', metavar='ADDR', help='Interface to bind to.')
@click.option('--port', type=int, metavar='PORT', help='Port to bind to.')
@click.option('--log-dir', metavar='PATH', help='Logging directory.')
@click.option(
    '--log-level',
    type=click.Choice(
        ['CRITICAL', 'ERROR', 'WARNING', 'INFO', 'DEBUG'],
        case_sensitive=False,
    ),
    help='Minimum logging level.',
)
def cli(
    config_path: str | None,
    host: str | None,
    port: int | None,
    log_dir: str | None,
    log_level: str | None,
) -> None:
    """Run a rendezvous server instance.

    The rendezvous server pairs clients into rooms of two and relays the
    messages they use to establish peer-to-peer WebRTC connections. If no
    configuration file is provided, a default configuration will be created
    from [`ServingConfig()`][rendezvous.signaling.config.ServingConfig].
    The remaining CLI options will override the options provided in the
    configuration object.
    """
    config = (
        ServingConfig()
        if config_path is None
        else ServingConfig.from_toml(config_path)
    )

    # Override config with CLI options if given
    if host is not None:
        config.host = host
    if port is not None:
        config.port = port
    if log_dir is not None:
        config.logging.log_dir = log_dir
    if log_level is not None:
        config.logging.default_level = logging.getLevelName(log_level.upper())

    configure_logging(
        config.logging.default_level,
        log_dir=config.logging.log_dir,
        websockets_level=config.logging.websockets_level,
    )

    asyncio.run(serve(config))
