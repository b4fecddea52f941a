"""Room membership for the rendezvous server."""
from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import datetime
import enum
import secrets
import uuid
from typing import AsyncGenerator

ROOM_CAPACITY = 2


class Role(enum.Enum):
    """Role of a member within a room."""

    INITIATOR = 'initiator'
    """First member of the room. Creates the offer."""
    JOINER = 'joiner'
    """Second member of the room. Answers the offer."""


class JoinOutcome(enum.Enum):
    """Result of a join request."""

    CREATED = 'created'
    JOINED = 'joined'
    FULL = 'full'


def _utc_current_time() -> datetime.datetime:
    # dataclasses.field's default_factory requires a zero argument callable
    return datetime.datetime.now(tz=datetime.timezone.utc)


@dataclasses.dataclass
class Room:
    """A room of at most two members.

    Attributes:
        name: Room identifier.
        members: Mapping of member connection IDs to their role, in join
            order.
        created: Time the room was created at.
    """

    name: str
    members: dict[uuid.UUID, Role] = dataclasses.field(default_factory=dict)
    created: datetime.datetime = dataclasses.field(
        default_factory=_utc_current_time,
    )

    def __repr__(self) -> str:
        created = self.created.strftime('%Y-%m-%d %H:%M:%S %Z')
        members = ', '.join(
            f'{member}:{role.value}' for member, role in self.members.items()
        )
        return (
            f'{self.__class__.__name__}(name={self.name}, '
            f'members=[{members}], created={created})'
        )

    def others(self, client_id: uuid.UUID) -> list[uuid.UUID]:
        """Get the members other than `client_id`."""
        return [member for member in self.members if member != client_id]


@dataclasses.dataclass
class _RoomLock:
    lock: asyncio.Lock = dataclasses.field(default_factory=asyncio.Lock)
    users: int = 0


class RoomManager:
    """Manages membership of all active rooms.

    Membership of a single room must be mutated while holding that room's
    lock (see [`locked()`][rendezvous.signaling.rooms.RoomManager.locked])
    so two near-simultaneous joins cannot both observe an empty room.
    Different rooms never contend for the same lock.

    Warning:
        This class is intended for internal use by the
        [`RendezvousServer`][rendezvous.signaling.server.RendezvousServer].
    """

    def __init__(self) -> None:
        self._rooms: dict[str, Room] = {}
        self._locks: dict[str, _RoomLock] = {}

    @contextlib.asynccontextmanager
    async def locked(self, room: str) -> AsyncGenerator[None, None]:
        """Hold the exclusion lock for a room.

        The lock object is released from the manager once no task is
        holding or waiting on it.
        """
        room_lock = self._locks.get(room, None)
        if room_lock is None:
            room_lock = _RoomLock()
            self._locks[room] = room_lock
        room_lock.users += 1
        try:
            async with room_lock.lock:
                yield
        finally:
            room_lock.users -= 1
            if room_lock.users == 0:
                self._locks.pop(room, None)

    def get_rooms(self) -> list[Room]:
        """Get a list of all non-empty rooms."""
        return list(self._rooms.values())

    def get_room(self, room: str) -> Room | None:
        """Get a room by name."""
        return self._rooms.get(room, None)

    def members(self, room: str) -> list[uuid.UUID]:
        """Get the connection IDs of the members of a room."""
        room_ = self._rooms.get(room, None)
        return [] if room_ is None else list(room_.members)

    def join(
        self,
        room: str,
        client_id: uuid.UUID,
    ) -> tuple[JoinOutcome, Role | None]:
        """Add a connection to a room.

        The first member of an empty room is the initiator and the second
        is the joiner. A third request is rejected and membership is not
        changed.

        Args:
            room: Room identifier.
            client_id: Connection ID of the requesting client.

        Returns:
            Tuple of the outcome and the role assigned to the connection \
            (`None` if the room is full).
        """
        room_ = self._rooms.get(room, None)
        if room_ is None:
            room_ = Room(room)
            self._rooms[room] = room_

        count = len(room_.members)
        if count == 0:
            room_.members[client_id] = Role.INITIATOR
            return JoinOutcome.CREATED, Role.INITIATOR
        elif count < ROOM_CAPACITY:
            room_.members[client_id] = Role.JOINER
            return JoinOutcome.JOINED, Role.JOINER
        else:
            return JoinOutcome.FULL, None

    def leave(self, room: str, client_id: uuid.UUID) -> bool:
        """Remove a connection from a room.

        Rooms with no remaining members are deleted so the next join
        assigns a fresh initiator.

        Returns:
            If the connection was a member of the room.
        """
        room_ = self._rooms.get(room, None)
        if room_ is None:
            return False

        removed = room_.members.pop(client_id, None) is not None
        if len(room_.members) == 0:
            del self._rooms[room]
        return removed


def random_room_name() -> str:
    """Return a random 16 character hexadecimal room name."""
    return secrets.token_hex(8)
