from typing import AsyncIterator, Optional
import asyncio
import contextlib

import attr
import logwood

import wyvern.message
import wyvern.piece


class PeerConnectionError(Exception):
    """ Base class for everything that ends a peer connection """


class PeerUnavailableError(PeerConnectionError):
    """ Unable to connect or send bytes to peer """


class ConnectionTimeout(PeerConnectionError):
    """ Peer did not answer within the configured timeout """


class HandshakeMismatch(PeerConnectionError):
    """ Peer answered the handshake for another torrent or with an unexpected id """


class ProtocolViolation(PeerConnectionError):
    """ Malformed or out of order message """


@attr.s(frozen=True, slots=True, auto_attribs=True)
class PeerAddress:
    host: str
    port: int
    # peer id advertised by the tracker, if any
    peer_id: Optional[bytes] = attr.ib(default=None, eq=False, repr=False)

    def __str__(self):
        return f'{self.host}:{self.port}'

    @classmethod
    def parse(cls, value: str) -> 'PeerAddress':
        """
        Parses `host:port`, IPv6 hosts have to be written in brackets: `[::1]:6881`
        """
        host, separator, port = value.rpartition(':')
        if not separator or not host or not port.isdigit():
            raise ValueError(f'Invalid peer address {value!r}, expected host:port')
        return cls(host=host.strip('[]'), port=int(port))


class PeerConnection:
    """
    TCP session with a single remote peer. Every socket operation is bounded by
    `timeout`, exceeding it ends the connection with `ConnectionTimeout`.
    """

    def __init__(
        self,
        address: PeerAddress,
        info_hash: bytes,
        peer_id: bytes,
        timeout: float,
        parser: Optional[wyvern.message.MessageParser] = None,
    ):
        self.address = address
        self._info_hash = info_hash
        self._peer_id = peer_id
        self._timeout = timeout
        self._parser = parser or wyvern.message.MessageParser()
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self.remote_peer_id: Optional[bytes] = None
        self.choked_by_peer = True
        self.bytes_received = 0
        self._logger = logwood.get_logger(self.__class__.__name__)

    def __str__(self):
        return f'PeerConnection<{self.address}>'

    @property
    def is_opened(self) -> bool:
        return self._writer is not None and self._reader is not None

    async def open(self) -> None:
        """
        Connect to the peer and exchange handshakes.
        """
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(self.address.host, self.address.port),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as exc:
            raise ConnectionTimeout(f'Connecting to {self.address} timed out') from exc
        except OSError as exc:
            raise PeerUnavailableError(f'Cannot connect to {self.address}: {exc}') from exc

        try:
            await self._handshake()
        except PeerConnectionError:
            await self.close()
            raise

    async def _handshake(self) -> None:
        handshake = wyvern.message.Handshake(
            info_hash=self._info_hash, peer_id=self._peer_id
        )
        await self._send_bytes(handshake.to_bytes())
        response = await self._read_exactly(wyvern.message.Handshake.LENGTH)
        try:
            reply = wyvern.message.Handshake.from_bytes(response)
        except wyvern.message.MessageError as exc:
            raise ProtocolViolation(str(exc)) from exc

        if reply.info_hash != self._info_hash:
            raise HandshakeMismatch(
                f'{self.address} answered with info hash {reply.info_hash.hex()}'
            )
        if self.address.peer_id is not None and reply.peer_id != self.address.peer_id:
            raise HandshakeMismatch(
                f'{self.address} answered with peer id {reply.peer_id!r}, '
                f'tracker advertised {self.address.peer_id!r}'
            )
        self.remote_peer_id = reply.peer_id
        self._logger.debug('Handshaked %s, peer id = %r', self.address, reply.peer_id)

    async def read_message(self) -> wyvern.message.BaseMessage:
        """
        Reads one length prefixed message and keeps track of the choke state.
        """
        header = await self._read_exactly(4)
        length = self._parser.get_length(header)
        try:
            self._parser.check_length(length)
            frame = await self._read_exactly(length) if length else b''
            message = self._parser.parse(frame)
        except wyvern.message.MessageError as exc:
            raise ProtocolViolation(f'{self.address} sent malformed message: {exc}') from exc

        if isinstance(message, wyvern.message.Choke):
            self.choked_by_peer = True
        elif isinstance(message, wyvern.message.Unchoke):
            self.choked_by_peer = False
        return message

    async def events(self) -> AsyncIterator[wyvern.message.BaseMessage]:
        """
        Messages received from the peer, the iteration stops when the peer closes
        the connection. Timeouts and protocol violations are raised.
        """
        while True:
            try:
                message = await self.read_message()
            except PeerUnavailableError as exc:
                self._logger.debug('%s disconnected: %s', self.address, exc)
                return
            yield message

    async def send_interested(self) -> None:
        await self._send_bytes(wyvern.message.Interested().to_bytes())

    async def request(self, block: wyvern.piece.Block) -> None:
        if self.choked_by_peer:
            raise ProtocolViolation(f'Requesting {block} from {self.address} while choked')
        await self._send_bytes(
            wyvern.message.Request(block.piece_index, block.offset, block.length).to_bytes()
        )

    async def cancel(self, block: wyvern.piece.Block) -> None:
        await self._send_bytes(
            wyvern.message.Cancel(block.piece_index, block.offset, block.length).to_bytes()
        )

    async def close(self) -> None:
        if self._writer is None:
            return
        writer, self._writer, self._reader = self._writer, None, None
        writer.close()
        with contextlib.suppress(OSError, asyncio.TimeoutError):
            await asyncio.wait_for(writer.wait_closed(), timeout=self._timeout)

    async def _send_bytes(self, data: bytes) -> None:
        """
        Sends `data` bytes through the established network connection

        Raises `PeerUnavailableError` if the connection is broken.
        """
        if self._writer is None:
            raise PeerUnavailableError(f'Connection to {self.address} is closed')
        try:
            self._writer.write(data)
            await asyncio.wait_for(self._writer.drain(), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise ConnectionTimeout(f'Writing to {self.address} timed out') from exc
        except OSError as exc:
            raise PeerUnavailableError(f'Cannot write to {self.address}: {exc}') from exc

    async def _read_exactly(self, size: int) -> bytes:
        if self._reader is None:
            raise PeerUnavailableError(f'Connection to {self.address} is closed')
        try:
            data = await asyncio.wait_for(
                self._reader.readexactly(size), timeout=self._timeout
            )
        except asyncio.TimeoutError as exc:
            raise ConnectionTimeout(f'{self.address} sent nothing for {self._timeout}s') from exc
        except asyncio.IncompleteReadError as exc:
            raise PeerUnavailableError(f'{self.address} closed the connection') from exc
        except OSError as exc:
            raise PeerUnavailableError(f'Cannot read from {self.address}: {exc}') from exc
        self.bytes_received += len(data)
        return data
