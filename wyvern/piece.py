from typing import Callable, Dict, Hashable, Iterable, List, Optional, Set
import collections
import enum
import hashlib
import threading

import attr
import bitstring
import logwood

import wyvern.torrent


BLOCK_LENGTH = 2 ** 14


@attr.s(frozen=True, slots=True, auto_attribs=True)
class Block:
    piece_index: int
    offset: int
    length: int


class PieceState(enum.Enum):
    MISSING = 'missing'
    IN_PROGRESS = 'in_progress'
    VERIFYING = 'verifying'
    COMPLETE = 'complete'
    FAILED = 'failed'


class Delivery(enum.Enum):
    """ Outcome of handing a received block to the `PieceStore` """

    ACCEPTED = 'accepted'
    DUPLICATE = 'duplicate'
    COMPLETED = 'completed'
    FAILED = 'failed'


class Piece:
    """
    Assembly buffer for a single piece, composed from individual blocks.
    """

    def __init__(self, index: int, piece_hash: bytes, blocks: Iterable[Block]):
        self.index = index
        self.hash = piece_hash
        self.blocks: List[Block] = list(blocks)
        self.state = PieceState.MISSING
        self._data: Dict[int, bytes] = {}
        # block offset -> peer the block data came from
        self._senders: Dict[int, Hashable] = {}

    def __repr__(self):
        return f'Piece[{self.index}] - {self.state.value}'

    def has_block(self, block: Block) -> bool:
        return block.offset in self._data

    @property
    def received_count(self) -> int:
        return len(self._data)

    @property
    def is_full(self) -> bool:
        return len(self._data) == len(self.blocks)

    @property
    def contributors(self) -> Set[Hashable]:
        return set(self._senders.values())

    def add_block(self, block: Block, data: bytes, peer_id: Hashable) -> None:
        self._data[block.offset] = data
        self._senders[block.offset] = peer_id

    def discard_from(self, peer_id: Hashable) -> int:
        offsets = [offset for offset, sender in self._senders.items() if sender == peer_id]
        for offset in offsets:
            del self._data[offset]
            del self._senders[offset]
        return len(offsets)

    def assemble(self) -> bytes:
        return b''.join(self._data[block.offset] for block in self.blocks)

    def clear(self) -> None:
        self._data.clear()
        self._senders.clear()


class PieceStore:
    """
    Authoritative ledger of what has been downloaded and what is in flight.

    Every read-modify-write on the ledger happens under a single lock, so the
    store can be shared by any number of peer sessions. Hashing and handing the
    piece to the sink happen outside the lock while the piece is `VERIFYING`.
    """

    def __init__(
        self,
        torrent_info: 'wyvern.torrent.TorrentInfo',
        sink,
        on_integrity_failure: Optional[Callable[[int, Set[Hashable]], None]] = None,
    ):
        self._torrent_info = torrent_info
        self._sink = sink
        self._on_integrity_failure = on_integrity_failure
        self._lock = threading.Lock()
        self._pieces: List[Piece] = [
            Piece(index, piece_hash, torrent_info.blocks(index))
            for index, piece_hash in enumerate(torrent_info.piece_hashes)
        ]
        # block -> peer id of the single peer the block is outstanding under
        self._claims: Dict[Block, Hashable] = {}
        self._peer_claims: Dict[Hashable, Set[Block]] = collections.defaultdict(set)
        self._completed_count = 0
        self.bitfield = bitstring.BitArray(bin='0' * torrent_info.piece_count)
        self.bytes_received = 0
        self.integrity_failures = 0
        self._logger = logwood.get_logger(self.__class__.__name__)

    @property
    def number_of_pieces(self) -> int:
        return len(self._pieces)

    @property
    def completed_count(self) -> int:
        return self._completed_count

    def is_complete(self) -> bool:
        return self._completed_count == len(self._pieces)

    def state(self, piece_index: int) -> PieceState:
        return self._pieces[piece_index].state

    def is_wanted(self, piece_index: int) -> bool:
        return self._pieces[piece_index].state in (
            PieceState.MISSING,
            PieceState.IN_PROGRESS,
        )

    def missing_pieces(self) -> List[int]:
        with self._lock:
            return [
                piece.index
                for piece in self._pieces
                if piece.state is not PieceState.COMPLETE
            ]

    def owner(self, block: Block) -> Optional[Hashable]:
        with self._lock:
            return self._claims.get(block)

    def outstanding(self, peer_id: Hashable) -> Set[Block]:
        with self._lock:
            return set(self._peer_claims.get(peer_id, ()))

    def claim_block(self, piece_index: int, peer_id: Hashable) -> Optional[Block]:
        """
        Reserve the lowest offset block of `piece_index` that is neither received
        nor outstanding under any peer. Returns None if there is no such block.
        """
        with self._lock:
            piece = self._pieces[piece_index]
            if piece.state not in (PieceState.MISSING, PieceState.IN_PROGRESS):
                return None

            for block in piece.blocks:
                if piece.has_block(block) or block in self._claims:
                    continue
                self._claims[block] = peer_id
                self._peer_claims[peer_id].add(block)
                piece.state = PieceState.IN_PROGRESS
                return block
            return None

    def release_block(self, block: Block, peer_id: Hashable) -> None:
        """
        Return block to the claimable pool. Does nothing if the block is not
        outstanding under `peer_id`, e.g. because another peer delivered it first.
        """
        with self._lock:
            if self._claims.get(block) != peer_id:
                return
            self._drop_claim(block)
            self._settle(self._pieces[block.piece_index])

    def release_peer(self, peer_id: Hashable) -> List[Block]:
        """
        Drop every claim held by `peer_id`. Returns the released blocks.
        """
        with self._lock:
            blocks = list(self._peer_claims.pop(peer_id, ()))
            for block in blocks:
                del self._claims[block]
            for piece_index in {block.piece_index for block in blocks}:
                self._settle(self._pieces[piece_index])
        if blocks:
            self._logger.debug('Released %d blocks held by %s', len(blocks), peer_id)
        return blocks

    def discard_peer_blocks(self, peer_id: Hashable) -> int:
        """
        Drop the data `peer_id` delivered to pieces that are still being
        assembled, so an untrusted peer cannot spoil them. Returns the number of
        discarded blocks.
        """
        discarded = 0
        with self._lock:
            for piece in self._pieces:
                if piece.state is not PieceState.IN_PROGRESS:
                    continue
                discarded += piece.discard_from(peer_id)
                self._settle(piece)
        if discarded:
            self._logger.info('Discarded %d blocks received from %s', discarded, peer_id)
        return discarded

    def deliver_block(self, block: Block, data: bytes, peer_id: Hashable) -> Delivery:
        """
        Store received block data. When the last block of a piece arrives the
        piece is verified against its hash and, if correct, written to the sink.

        Blocks already received or belonging to a piece that is not being
        downloaded anymore are ignored, the first delivery wins.

        Raises `InvalidBlock` if the block does not fit the torrent geometry and
        `DiskWriteFailure` if the sink cannot store the verified piece.
        """
        self._check_block(block, data)

        with self._lock:
            piece = self._pieces[block.piece_index]
            if block in self._claims:
                self._drop_claim(block)

            if (
                piece.state not in (PieceState.MISSING, PieceState.IN_PROGRESS)
                or piece.has_block(block)
            ):
                self._settle(piece)
                return Delivery.DUPLICATE

            piece.add_block(block, data, peer_id)
            piece.state = PieceState.IN_PROGRESS
            self.bytes_received += len(data)
            if not piece.is_full:
                return Delivery.ACCEPTED

            piece.state = PieceState.VERIFYING
            piece_data = piece.assemble()
            contributors = set(piece.contributors)

        if hashlib.sha1(piece_data).digest() != piece.hash:
            self._fail_piece(piece, contributors)
            return Delivery.FAILED

        try:
            self._sink.write(piece.index, piece_data)
        except DiskWriteFailure:
            self._reset_piece(piece)
            raise
        except OSError as e:
            self._reset_piece(piece)
            raise DiskWriteFailure(f'Unable to write piece {piece.index}: {e}') from e

        with self._lock:
            piece.state = PieceState.COMPLETE
            # drop ref count, the data lives in the sink now
            piece.clear()
            for remaining in piece.blocks:
                if remaining in self._claims:
                    self._drop_claim(remaining)
            self.bitfield.set(True, piece.index)
            self._completed_count += 1

        self._logger.debug('Downloaded piece n. %d', piece.index)
        return Delivery.COMPLETED

    def _check_block(self, block: Block, data: bytes) -> None:
        if not 0 <= block.piece_index < len(self._pieces):
            raise InvalidBlock(f'Piece index {block.piece_index} out of range')
        piece_size = self._torrent_info.piece_size(block.piece_index)
        if block.offset % BLOCK_LENGTH or not 0 <= block.offset < piece_size:
            raise InvalidBlock(
                f'Offset {block.offset} is not a block of piece {block.piece_index}'
            )
        expected_length = min(BLOCK_LENGTH, piece_size - block.offset)
        if block.length != expected_length or len(data) != expected_length:
            raise InvalidBlock(
                f'Block {block} carries {len(data)} bytes, expected {expected_length}'
            )

    def _fail_piece(self, piece: Piece, contributors: Set[Hashable]) -> None:
        with self._lock:
            piece.state = PieceState.FAILED
            piece.clear()
            piece.state = PieceState.MISSING
            self.integrity_failures += 1
        self._logger.warning(
            'Piece n. %d failed hash verification, data from %d peers discarded',
            piece.index,
            len(contributors),
        )
        if self._on_integrity_failure is not None:
            self._on_integrity_failure(piece.index, contributors)

    def _reset_piece(self, piece: Piece) -> None:
        with self._lock:
            piece.clear()
            piece.state = PieceState.MISSING

    def _drop_claim(self, block: Block) -> None:
        """ Must be called with the lock held """
        owner = self._claims.pop(block)
        claims = self._peer_claims.get(owner)
        if claims is not None:
            claims.discard(block)
            if not claims:
                del self._peer_claims[owner]

    def _settle(self, piece: Piece) -> None:
        """ Piece with nothing received and nothing outstanding is missing again """
        if piece.state is not PieceState.IN_PROGRESS or piece.received_count:
            return
        if not any(block in self._claims for block in piece.blocks):
            piece.state = PieceState.MISSING


class InvalidBlock(ValueError):
    """ Block data that does not fit the torrent's piece geometry """


class DiskWriteFailure(Exception):
    """ Verified piece could not be written, the download cannot continue """
