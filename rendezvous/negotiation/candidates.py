"""Buffering of ICE candidates received before a remote description."""
from __future__ import annotations

from collections import deque
from typing import Iterator

from rendezvous.signaling.messages import Candidate


class CandidateBuffer:
    """FIFO queue of candidates waiting on a remote description.

    Candidates are commutative in effect but arrival order is preserved
    so application is deterministic.
    """

    def __init__(self) -> None:
        self._candidates: deque[Candidate] = deque()

    def __len__(self) -> int:
        return len(self._candidates)

    def __iter__(self) -> Iterator[Candidate]:
        return iter(self._candidates)

    def enqueue(self, candidate: Candidate) -> None:
        """Append a candidate to the end of the queue."""
        self._candidates.append(candidate)

    def drain_in_order(self) -> list[Candidate]:
        """Remove and return all buffered candidates in arrival order."""
        candidates = list(self._candidates)
        self._candidates.clear()
        return candidates

    def clear(self) -> None:
        """Discard all buffered candidates."""
        self._candidates.clear()
