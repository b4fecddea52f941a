"""Chunked transfer of binary payloads over a size-limited message channel.

A payload is sent as one header frame followed by binary frames. The header
is a string containing the decimal length of the payload so the receiver
can allocate the whole buffer up front and detect completion without an
end marker. Binary frames are slices of the payload in order.

Example:
    ```python
    from rendezvous.transfer import decode
    from rendezvous.transfer import encode

    frames = list(encode(b'\\x00' * 150_000, 64_000))
    assert frames[0] == '150000'
    assert [len(f) for f in frames[1:]] == [64_000, 64_000, 22_000]
    assert decode(frames) == [b'\\x00' * 150_000]
    ```
"""
from __future__ import annotations

import dataclasses
import logging
from typing import Generator
from typing import Hashable
from typing import Iterable
from typing import Union

from rendezvous.exceptions import TransferProtocolError

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_BYTES = 64_000

Frame = Union[str, bytes]
"""Header frames are `str`, data frames are `bytes`."""


def encode(
    payload: bytes | bytearray | memoryview,
    max_chunk_bytes: int = DEFAULT_CHUNK_BYTES,
) -> Generator[Frame, None, None]:
    """Generate the frames needed to send a payload.

    Args:
        payload: Data to send.
        max_chunk_bytes: Maximum size of each binary frame.

    Yields:
        The header frame with the payload length followed by binary frames
        of `max_chunk_bytes` and a shorter final frame if the length is not
        a multiple of `max_chunk_bytes`.

    Raises:
        ValueError: If `max_chunk_bytes` is not positive.
    """
    if max_chunk_bytes <= 0:
        raise ValueError(
            f'max_chunk_bytes must be positive. Got {max_chunk_bytes}.',
        )

    view = memoryview(payload).cast('B')
    total = len(view)
    yield str(total)

    for start in range(0, total, max_chunk_bytes):
        yield bytes(view[start : start + max_chunk_bytes])


@dataclasses.dataclass
class TransferSession:
    """State of one incoming payload.

    Attributes:
        total_length: Number of bytes announced by the header frame.
        received: Number of bytes received so far.
        buffer: Preallocated buffer the frames are written into.
        chunks: Number of binary frames received so far.
    """

    total_length: int
    received: int = 0
    buffer: bytearray = dataclasses.field(init=False, repr=False)
    chunks: int = 0

    def __post_init__(self) -> None:
        self.buffer = bytearray(self.total_length)

    @property
    def complete(self) -> bool:
        """All announced bytes have been received."""
        return self.received == self.total_length

    def append(self, data: bytes) -> None:
        """Write the next frame at the current offset.

        Raises:
            TransferProtocolError: If the frame would exceed the announced
                length.
        """
        end = self.received + len(data)
        if end > self.total_length:
            raise TransferProtocolError(
                f'Frame of {len(data)} bytes overflows transfer of '
                f'{self.total_length} bytes ({self.received} received).',
            )
        self.buffer[self.received : end] = data
        self.received = end
        self.chunks += 1


def parse_header(frame: str, max_payload_bytes: int | None = None) -> int:
    """Parse the payload length from a header frame.

    Raises:
        TransferProtocolError: If the header is not an ASCII decimal integer
            or exceeds `max_payload_bytes`.
    """
    # int() would also accept signs, whitespace and underscores
    if not (frame.isascii() and frame.isdigit()):
        raise TransferProtocolError(
            f'Header frame is not a decimal length: {frame[:32]!r}.',
        )

    total = int(frame)
    if max_payload_bytes is not None and total > max_payload_bytes:
        raise TransferProtocolError(
            f'Announced payload of {total} bytes exceeds the limit of '
            f'{max_payload_bytes} bytes.',
        )
    return total


class TransferDecoder:
    """Reassemble payloads from frames, one transfer session per sender.

    Protocol errors never raise. They are logged, the offending session is
    discarded, and the frame is dropped.

    Args:
        max_payload_bytes: Optional maximum length a header may announce.
    """

    def __init__(self, max_payload_bytes: int | None = None) -> None:
        self._max_payload_bytes = max_payload_bytes
        self._sessions: dict[Hashable, TransferSession] = {}

    def session(self, sender: Hashable) -> TransferSession | None:
        """Get the open transfer session for a sender."""
        return self._sessions.get(sender, None)

    def reset(self, sender: Hashable) -> None:
        """Discard any incomplete transfer from a sender."""
        self._sessions.pop(sender, None)

    def feed(self, sender: Hashable, frame: Frame) -> bytes | None:
        """Process the next frame received from a sender.

        Args:
            sender: Key identifying the sender (e.g., a channel label).
            frame: Header (`str`) or data (`bytes`) frame.

        Returns:
            The reassembled payload if this frame completed a transfer,
            otherwise `None`.
        """
        try:
            return self._feed(sender, frame)
        except TransferProtocolError as e:
            logger.warning(
                f'Dropping transfer from {sender}: {e}',
            )
            self._sessions.pop(sender, None)
            return None

    def _feed(self, sender: Hashable, frame: Frame) -> bytes | None:
        if isinstance(frame, str):
            total = parse_header(frame, self._max_payload_bytes)
            previous = self._sessions.pop(sender, None)
            if previous is not None:
                logger.warning(
                    f'New transfer from {sender} replaces incomplete '
                    f'transfer ({previous.received}/{previous.total_length} '
                    'bytes received)',
                )
            session = TransferSession(total)
            logger.debug(f'Expecting a total of {total} bytes from {sender}')
            if session.complete:
                return bytes(session.buffer)
            self._sessions[sender] = session
            return None

        if not isinstance(frame, (bytes, bytearray, memoryview)):
            raise TransferProtocolError(
                f'Unexpected frame type {type(frame).__name__}.',
            )

        session_ = self._sessions.get(sender, None)
        if session_ is None:
            raise TransferProtocolError(
                'Received data frame without a transfer in progress.',
            )

        session_.append(bytes(frame))
        logger.debug(
            f'Received {session_.received}/{session_.total_length} bytes '
            f'from {sender}',
        )
        if session_.complete:
            del self._sessions[sender]
            return bytes(session_.buffer)
        return None


def decode(
    frames: Iterable[Frame],
    max_payload_bytes: int | None = None,
) -> list[bytes]:
    """Reassemble all complete payloads in a sequence of frames.

    Args:
        frames: Frames from a single sender in arrival order.
        max_payload_bytes: Optional maximum length a header may announce.

    Returns:
        List of completed payloads in order of completion.
    """
    decoder = TransferDecoder(max_payload_bytes)
    payloads = []
    for frame in frames:
        payload = decoder.feed(None, frame)
        if payload is not None:
            payloads.append(payload)
    return payloads
