from typing import List, Optional
import asyncio
import hashlib
import os
import struct

import bitstring
import logwood
import pytest
import pytest_asyncio

logwood.basic_config(level=logwood.DEBUG)

import wyvern.message  # noqa
import wyvern.protocol  # noqa
import wyvern.torrent  # noqa


INFO_HASH = hashlib.sha1(b'wyvern test torrent').digest()


def build_torrent_info(data: bytes, piece_length: int) -> wyvern.torrent.TorrentInfo:
    return wyvern.torrent.TorrentInfo(
        piece_length=piece_length,
        total_length=len(data),
        piece_hashes=[
            hashlib.sha1(data[start : start + piece_length]).digest()
            for start in range(0, len(data), piece_length)
        ],
        info_hash=INFO_HASH,
    )


class RecordingSink:
    def __init__(self):
        self.pieces = []

    def write(self, piece_index: int, data: bytes) -> None:
        self.pieces.append((piece_index, data))

    def assembled(self) -> bytes:
        return b''.join(data for _, data in sorted(self.pieces))


class Seeder:
    """
    Minimal seeding peer: answers the handshake, advertises its pieces, unchokes
    on interest and serves requested blocks.

    With `hang_up_after` set it never serves a block and drops the connection
    that many seconds after the handshake.
    """

    def __init__(
        self,
        data: bytes,
        piece_length: int,
        info_hash: bytes = INFO_HASH,
        pieces: Optional[List[int]] = None,
        corrupt: bool = False,
        unchoke: bool = True,
        hang_up_after: Optional[float] = None,
    ):
        self._data = data
        self._piece_length = piece_length
        self._info_hash = info_hash
        self._corrupt = corrupt
        self._unchoke = unchoke
        self._hang_up_after = hang_up_after
        number_of_pieces = -(-len(data) // piece_length)
        self.bitfield = bitstring.BitArray(bin='0' * number_of_pieces)
        for index in range(number_of_pieces) if pieces is None else pieces:
            self.bitfield.set(True, index)
        self.peer_id = b'-SD0001-' + os.urandom(6).hex().encode()
        self.requests: List[wyvern.message.Request] = []
        self.handshakes = 0
        self._server: Optional[asyncio.AbstractServer] = None
        self._writers = set()
        self.address: Optional[wyvern.protocol.PeerAddress] = None

    async def start(self) -> 'Seeder':
        self._server = await asyncio.start_server(self._handle, '127.0.0.1', 0)
        port = self._server.sockets[0].getsockname()[1]
        self.address = wyvern.protocol.PeerAddress('127.0.0.1', port)
        return self

    async def close(self) -> None:
        for writer in list(self._writers):
            writer.close()
        self._server.close()
        await self._server.wait_closed()

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self._writers.add(writer)
        parser = wyvern.message.MessageParser()
        try:
            await reader.readexactly(wyvern.message.Handshake.LENGTH)
            self.handshakes += 1
            writer.write(wyvern.message.Handshake(self._info_hash, self.peer_id).to_bytes())
            writer.write(wyvern.message.BitField.from_bits(self.bitfield).to_bytes())
            await writer.drain()
            if self._hang_up_after is not None:
                asyncio.get_running_loop().call_later(self._hang_up_after, writer.close)
            while True:
                (length,) = struct.unpack('!I', await reader.readexactly(4))
                message = parser.parse(await reader.readexactly(length) if length else b'')
                if isinstance(message, wyvern.message.Interested) and self._unchoke:
                    writer.write(wyvern.message.Unchoke().to_bytes())
                elif isinstance(message, wyvern.message.Request):
                    self.requests.append(message)
                    if self._hang_up_after is not None:
                        continue
                    start = message.index * self._piece_length + message.begin
                    block = self._data[start : start + message.length]
                    if self._corrupt:
                        block = bytes(len(block))
                    writer.write(
                        wyvern.message.Piece(message.index, message.begin, block).to_bytes()
                    )
                await writer.drain()
        except (asyncio.IncompleteReadError, ConnectionError):
            pass
        finally:
            self._writers.discard(writer)
            writer.close()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def payload() -> bytes:
    # three full pieces of 32 KiB and a short last one
    return os.urandom(3 * 2 ** 15 + 5000)


@pytest_asyncio.fixture
async def seeders():
    started = []

    async def start(*args, **kwargs) -> Seeder:
        seeder = await Seeder(*args, **kwargs).start()
        started.append(seeder)
        return seeder

    yield start
    for seeder in started:
        await seeder.close()


@pytest_asyncio.fixture
async def closed_address() -> wyvern.protocol.PeerAddress:
    """ Address nobody listens on """
    server = await asyncio.start_server(lambda r, w: None, '127.0.0.1', 0)
    port = server.sockets[0].getsockname()[1]
    server.close()
    await server.wait_closed()
    return wyvern.protocol.PeerAddress('127.0.0.1', port)
