"""Message types exchanged between peers and the rendezvous server.

The server only interprets
[`CreateOrJoin`][rendezvous.signaling.messages.CreateOrJoin],
[`Bye`][rendezvous.signaling.messages.Bye], and
[`IpAddrRequest`][rendezvous.signaling.messages.IpAddrRequest]. Session
descriptions and candidates are relayed to the other room member
unmodified.
"""
from __future__ import annotations

import dataclasses
import enum
import json
import sys
import uuid
from typing import Any


class MessageType(enum.Enum):
    """Types of messages supported."""

    create_or_join = 'CreateOrJoin'
    """Request to join a room, creating it if needed."""
    created = 'Created'
    """Caller created the room and is the initiator."""
    joined = 'Joined'
    """Caller joined an existing room and is the joiner."""
    full = 'Full'
    """Room already has two members."""
    ready = 'Ready'
    """Both members are present."""
    offer = 'Offer'
    """Session description offer."""
    answer = 'Answer'
    """Session description answer."""
    candidate = 'Candidate'
    """ICE candidate."""
    bye = 'Bye'
    """Voluntary disconnect."""
    ip_addr_request = 'IpAddrRequest'
    """Request for the server's network addresses."""
    ip_addr = 'IpAddr'
    """One network address of the server."""
    error_response = 'ErrorResponse'
    """Server rejected a request."""


@dataclasses.dataclass
class Message:
    """Base message."""

    pass


@dataclasses.dataclass
class CreateOrJoin(Message):
    """Request membership of a room.

    Attributes:
        room: Room identifier.
    """

    room: str
    message_type: str = MessageType.create_or_join.name


@dataclasses.dataclass
class Created(Message):
    """Caller is the first member and initiator of the room.

    Attributes:
        room: Room identifier.
        client_id: Connection ID assigned by the server.
    """

    room: str
    client_id: uuid.UUID
    message_type: str = MessageType.created.name


@dataclasses.dataclass
class Joined(Message):
    """Caller is the second member and joiner of the room.

    Attributes:
        room: Room identifier.
        client_id: Connection ID assigned by the server.
    """

    room: str
    client_id: uuid.UUID
    message_type: str = MessageType.joined.name


@dataclasses.dataclass
class Full(Message):
    """Room already has two members.

    Attributes:
        room: Room identifier.
    """

    room: str
    message_type: str = MessageType.full.name


@dataclasses.dataclass
class Ready(Message):
    """Both members are present and negotiation may begin."""

    message_type: str = MessageType.ready.name


@dataclasses.dataclass
class Offer(Message):
    """Session description offer.

    Attributes:
        sdp: Session description protocol blob.
    """

    sdp: str
    message_type: str = MessageType.offer.name


@dataclasses.dataclass
class Answer(Message):
    """Session description answer.

    Attributes:
        sdp: Session description protocol blob.
    """

    sdp: str
    message_type: str = MessageType.answer.name


@dataclasses.dataclass
class Candidate(Message):
    """ICE candidate gathered by a peer.

    Attributes:
        sdp_mline_index: Index of the media line the candidate belongs to.
        sdp_mid: Media stream identification tag.
        candidate: Candidate attribute (e.g., `#!python 'candidate:...'`).
    """

    sdp_mline_index: int | None
    sdp_mid: str | None
    candidate: str
    message_type: str = MessageType.candidate.name


@dataclasses.dataclass
class Bye(Message):
    """Voluntary disconnect from a room.

    Attributes:
        room: Room identifier.
    """

    room: str
    message_type: str = MessageType.bye.name


@dataclasses.dataclass
class IpAddrRequest(Message):
    """Request the non-loopback IPv4 addresses of the server."""

    message_type: str = MessageType.ip_addr_request.name


@dataclasses.dataclass
class IpAddr(Message):
    """One IPv4 address of the server.

    Attributes:
        address: IPv4 address.
    """

    address: str
    message_type: str = MessageType.ip_addr.name


@dataclasses.dataclass
class ErrorResponse(Message):
    """Message returned by the server when a request is rejected.

    Attributes:
        message: Error message from server.
    """

    message: str
    message_type: str = MessageType.error_response.name


RELAYED_TYPES = (Offer, Answer, Candidate)
"""Messages the server forwards to the other room member."""


class MessageError(Exception):
    """Base exception type for messages."""

    pass


class MessageDecodeError(MessageError):
    """Exception raised when a message cannot be decoded."""

    pass


class MessageEncodeError(MessageError):
    """Exception raised when an message cannot be encoded."""

    pass


def uuid_to_str(data: dict[str, Any]) -> dict[str, Any]:
    """Cast any UUIDs to strings.

    Returns:
        Shallow copy of the input dictionary with UUID values cast to str \
        for jsonification.
    """
    data = data.copy()
    for key in data:
        if isinstance(data[key], uuid.UUID):
            data[key] = str(data[key])
    return data


def str_to_uuid(data: dict[str, Any]) -> dict[str, Any]:
    """Cast ID strings to UUID objects.

    The inverse operation of
    [uuid_to_str()][rendezvous.signaling.messages.uuid_to_str] for keys
    ending in `_id`.

    Returns:
        Shallow copy of the input dictionary with values cast from \
        str to UUID if the key ends with `_id`.

    Raises:
        MessageDecodeError: If a key ends with `_id` but the value cannot be
            cast to a UUID.
    """
    data = data.copy()
    for key in data:
        if key.lower().endswith('_id'):
            try:
                data[key] = uuid.UUID(data[key])
            except (AttributeError, TypeError, ValueError) as e:
                raise MessageDecodeError(
                    f'Failed to convert key {key} to UUID.',
                ) from e
    return data


def decode_message(message: str) -> Message:
    """Decode JSON string into correct message type.

    Args:
        message: JSON string to decode.

    Returns:
        Parsed message.

    Raises:
        MessageDecodeError: If the message cannot be decoded.
    """
    try:
        data = json.loads(message)
    except json.JSONDecodeError as e:
        raise MessageDecodeError('Failed to load string as JSON.') from e

    if not isinstance(data, dict):
        raise MessageDecodeError('Message is not a JSON object.')

    try:
        message_type_name = data.pop('message_type')
    except KeyError as e:
        raise MessageDecodeError(
            'Message does not contain a message_type key.',
        ) from e

    try:
        message_type = getattr(
            sys.modules[__name__],
            MessageType[message_type_name].value,
        )
    except (AttributeError, KeyError, TypeError) as e:
        raise MessageDecodeError(
            'The message is of an unknown message type: '
            f'{message_type_name}.',
        ) from e

    data = str_to_uuid(data)

    try:
        return message_type(**data)
    except TypeError as e:
        raise MessageDecodeError(
            f'Failed to convert message to {message_type.__name__}: {e}',
        ) from e


def encode_message(message: Message) -> str:
    """Encode message as JSON string.

    Args:
        message: Message to JSON encode.

    Raises:
        MessageEncodeError: If the message cannot be JSON encoded.
    """
    if not isinstance(message, Message):
        raise MessageEncodeError(
            f'Message is not an instance of {Message.__name__}. '
            f'Got {type(message).__name__}.',
        )

    data = dataclasses.asdict(message)
    data = uuid_to_str(data)

    try:
        return json.dumps(data)
    except TypeError as e:
        raise MessageEncodeError('Error encoding message.') from e
