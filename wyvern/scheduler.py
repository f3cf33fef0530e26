from typing import Hashable, List, Optional, Set
import asyncio
import threading

import bitstring

import wyvern.piece


class PieceAvailability:
    """
    Number of connected peers advertising each piece, built from the union of
    their bitfields.
    """

    def __init__(self, number_of_pieces: int):
        self._counts: List[int] = [0] * number_of_pieces
        self._lock = threading.Lock()

    def count(self, piece_index: int) -> int:
        return self._counts[piece_index]

    def add_bitfield(self, bitfield: bitstring.BitArray) -> None:
        with self._lock:
            for index, bit in enumerate(bitfield):
                if bit:
                    self._counts[index] += 1

    def remove_bitfield(self, bitfield: bitstring.BitArray) -> None:
        with self._lock:
            for index, bit in enumerate(bitfield):
                if bit and self._counts[index] > 0:
                    self._counts[index] -= 1

    def add_have(self, piece_index: int) -> None:
        with self._lock:
            self._counts[piece_index] += 1


class BlockScheduler:
    """
    Decides which block a peer is asked for next: rarest piece first among the
    pieces the peer has, lowest piece index on ties, blocks inside a piece in
    ascending offset order.

    Sessions waiting for work register an event with `watch`. `wake_all` sets
    every registered event whenever blocks become claimable again or a piece
    is finished, so idle sessions refill their pipelines.
    """

    def __init__(
        self,
        piece_store: wyvern.piece.PieceStore,
        availability: PieceAvailability,
        pipeline_depth: int,
    ):
        self._piece_store = piece_store
        self._availability = availability
        self.pipeline_depth = pipeline_depth
        self._watchers: Set[asyncio.Event] = set()

    def watch(self, event: asyncio.Event) -> None:
        self._watchers.add(event)

    def unwatch(self, event: asyncio.Event) -> None:
        self._watchers.discard(event)

    def wake_all(self) -> None:
        for event in self._watchers:
            event.set()

    def slots(self, outstanding: int) -> int:
        """ Number of requests that still fit into the peer's pipeline """
        return max(self.pipeline_depth - outstanding, 0)

    def candidate_pieces(self, bitfield: bitstring.BitArray) -> List[int]:
        pieces = [
            index
            for index, bit in enumerate(bitfield)
            if bit and self._piece_store.is_wanted(index)
        ]
        pieces.sort(key=lambda index: (self._availability.count(index), index))
        return pieces

    def wants(self, bitfield: bitstring.BitArray) -> bool:
        """ True if the peer has at least one piece we still need """
        return any(
            bit and self._piece_store.is_wanted(index)
            for index, bit in enumerate(bitfield)
        )

    def next_block(
        self, peer_id: Hashable, bitfield: bitstring.BitArray
    ) -> Optional[wyvern.piece.Block]:
        """
        Claims the next block for `peer_id`, None if the peer has nothing
        claimable right now.
        """
        for piece_index in self.candidate_pieces(bitfield):
            block = self._piece_store.claim_block(piece_index, peer_id)
            if block is not None:
                return block
        return None
