"""Helper classes for managing clients connected to a rendezvous server."""
from __future__ import annotations

import dataclasses
import datetime
import uuid

from websockets.asyncio.server import ServerConnection

from rendezvous.signaling.rooms import Role


def _utc_current_time() -> datetime.datetime:
    # dataclasses.field's default_factory requires a zero argument callable
    return datetime.datetime.now(tz=datetime.timezone.utc)


@dataclasses.dataclass(eq=False)
class Client:
    """Representation of a client connection.

    Attributes:
        uuid: Connection ID assigned by the server.
        websocket: WebSocket connection to the client.
        room: Room the client is currently a member of.
        role: Role of the client in `room`.
        created: Time the client connected at.
    """

    uuid: uuid.UUID
    websocket: ServerConnection
    room: str | None = None
    role: Role | None = None
    created: datetime.datetime = dataclasses.field(
        default_factory=_utc_current_time,
    )

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Client):
            return self.uuid == other.uuid
        else:
            return False

    def __hash__(self) -> int:
        return hash(self.uuid)

    def __repr__(self) -> str:
        created = self.created.strftime('%Y-%m-%d %H:%M:%S %Z')
        address = str(self.websocket.remote_address)
        role = None if self.role is None else self.role.value
        return (
            f'{self.__class__.__name__}(uuid={self.uuid}, room={self.room}, '
            f'role={role}, address={address}, created={created})'
        )


class ClientManager:
    """Manages active client connections.

    Warning:
        This class is intended for internal use by the
        [`RendezvousServer`][rendezvous.signaling.server.RendezvousServer].
    """

    def __init__(self) -> None:
        self._clients_by_uuid: dict[uuid.UUID, Client] = {}
        self._clients_by_websocket: dict[ServerConnection, Client] = {}

    def add_client(self, client: Client) -> None:
        """Add a new client."""
        self._clients_by_uuid[client.uuid] = client
        self._clients_by_websocket[client.websocket] = client

    def get_clients(self) -> list[Client]:
        """Get a list of all clients."""
        return list(self._clients_by_uuid.values())

    def get_client_by_uuid(self, uuid: uuid.UUID) -> Client | None:
        """Get a client by the client's UUID."""
        return self._clients_by_uuid.get(uuid, None)

    def get_client_by_websocket(
        self,
        websocket: ServerConnection,
    ) -> Client | None:
        """Get a client by the current websocket connection."""
        return self._clients_by_websocket.get(websocket, None)

    def remove_client(self, client: Client) -> None:
        """Remove a client."""
        self._clients_by_uuid.pop(client.uuid, None)
        self._clients_by_websocket.pop(client.websocket, None)
