from typing import ClassVar, Dict, Type

import abc
import struct

import attr
import bitstring
import logwood


class MessageError(Exception):
    """ Malformed message received from peer """


class BaseMessage(abc.ABC):

    ID: ClassVar[int]

    @classmethod
    @abc.abstractmethod
    def from_payload(cls, payload: bytes) -> 'BaseMessage':
        """ Loads message from the payload following the message id """

    @abc.abstractmethod
    def to_bytes(self) -> bytes:
        """ Create length prefixed message for sending """

    def _frame(self, payload: bytes = b'') -> bytes:
        return struct.pack('!IB', len(payload) + 1, self.ID) + payload


@attr.s(slots=True, frozen=True, auto_attribs=True)
class Handshake:

    PSTR: ClassVar[bytes] = b'BitTorrent protocol'
    PSTRLEN: ClassVar[int] = len(PSTR)

    LENGTH: ClassVar[int] = 49 + PSTRLEN

    info_hash: bytes
    peer_id: bytes

    def to_bytes(self) -> bytes:
        return struct.pack(
            f'!B{self.PSTRLEN}s8s20s20s',
            self.PSTRLEN,
            self.PSTR,
            bytes(8),
            self.info_hash,
            self.peer_id,
        )

    @classmethod
    def from_bytes(cls, buffer: bytes) -> 'Handshake':
        if len(buffer) != cls.LENGTH:
            raise MessageError(f'Handshake must be {cls.LENGTH} bytes, got {len(buffer)}')
        pstrlen, pstr, _, info_hash, peer_id = struct.unpack(
            f'!B{cls.PSTRLEN}s8s20s20s', buffer
        )
        if pstrlen != cls.PSTRLEN or pstr != cls.PSTR:
            raise MessageError(f'Unsupported protocol {pstr!r}')
        return cls(info_hash=info_hash, peer_id=peer_id)


@attr.s(slots=True, frozen=True, auto_attribs=True)
class KeepAlive(BaseMessage):

    ID: ClassVar[int] = -1

    def to_bytes(self) -> bytes:
        return struct.pack('!I', 0)

    @classmethod
    def from_payload(cls, payload: bytes) -> 'KeepAlive':
        return cls()


class _EmptyMessage(BaseMessage):
    """ Messages that carry nothing but their id """

    def to_bytes(self) -> bytes:
        return self._frame()

    @classmethod
    def from_payload(cls, payload: bytes):
        if payload:
            raise MessageError(f'{cls.__name__} carries no payload, got {len(payload)} bytes')
        return cls()


@attr.s(slots=True, frozen=True, auto_attribs=True)
class Choke(_EmptyMessage):
    ID: ClassVar[int] = 0


@attr.s(slots=True, frozen=True, auto_attribs=True)
class Unchoke(_EmptyMessage):
    ID: ClassVar[int] = 1


@attr.s(slots=True, frozen=True, auto_attribs=True)
class Interested(_EmptyMessage):
    ID: ClassVar[int] = 2


@attr.s(slots=True, frozen=True, auto_attribs=True)
class NotInterested(_EmptyMessage):
    ID: ClassVar[int] = 3


@attr.s(slots=True, frozen=True, auto_attribs=True)
class Have(BaseMessage):

    ID: ClassVar[int] = 4

    index: int

    def to_bytes(self) -> bytes:
        return self._frame(struct.pack('!I', self.index))

    @classmethod
    def from_payload(cls, payload: bytes) -> 'Have':
        if len(payload) != 4:
            raise MessageError(f'Have payload must be 4 bytes, got {len(payload)}')
        (index,) = struct.unpack('!I', payload)
        return cls(index)


@attr.s(slots=True, frozen=True, auto_attribs=True)
class BitField(BaseMessage):
    """
    Piece ownership vector, most significant bit of the first byte is piece 0.
    The vector is padded to a byte boundary, so it may be longer than the
    number of pieces.
    """

    ID: ClassVar[int] = 5

    bitfield: bitstring.BitArray = attr.ib(eq=False)
    raw: bytes = attr.ib(repr=False)

    @classmethod
    def from_bits(cls, bitfield: bitstring.BitArray) -> 'BitField':
        padded = bitstring.BitArray(bitfield)
        padded.append(bitstring.BitArray(bin='0' * ((-len(padded)) % 8)))
        return cls(bitfield=bitstring.BitArray(bitfield), raw=padded.bytes)

    def to_bytes(self) -> bytes:
        return self._frame(self.raw)

    @classmethod
    def from_payload(cls, payload: bytes) -> 'BitField':
        return cls(bitfield=bitstring.BitArray(bytes=payload), raw=bytes(payload))


class _BlockMessage(BaseMessage):
    """ Messages addressing a block by index, begin and length """

    def to_bytes(self) -> bytes:
        return self._frame(struct.pack('!III', self.index, self.begin, self.length))

    @classmethod
    def from_payload(cls, payload: bytes):
        if len(payload) != 12:
            raise MessageError(f'{cls.__name__} payload must be 12 bytes, got {len(payload)}')
        index, begin, length = struct.unpack('!III', payload)
        return cls(index, begin, length)


@attr.s(slots=True, frozen=True, auto_attribs=True)
class Request(_BlockMessage):

    ID: ClassVar[int] = 6

    index: int
    begin: int
    length: int


@attr.s(slots=True, frozen=True, auto_attribs=True)
class Piece(BaseMessage):

    ID: ClassVar[int] = 7

    index: int
    begin: int
    block: bytes = attr.ib(repr=lambda block: f'<{len(block)} bytes>')

    def to_bytes(self) -> bytes:
        return self._frame(struct.pack('!II', self.index, self.begin) + self.block)

    @classmethod
    def from_payload(cls, payload: bytes) -> 'Piece':
        if len(payload) < 8:
            raise MessageError(f'Piece payload must be at least 8 bytes, got {len(payload)}')
        index, begin = struct.unpack('!II', payload[:8])
        return cls(index, begin, bytes(payload[8:]))


@attr.s(slots=True, frozen=True, auto_attribs=True)
class Cancel(_BlockMessage):

    ID: ClassVar[int] = 8

    index: int
    begin: int
    length: int


@attr.s(slots=True, frozen=True, auto_attribs=True)
class Unknown(BaseMessage):
    """ Message with an id this client does not speak, e.g. extension messages """

    ID: ClassVar[int] = -2

    message_id: int
    payload: bytes = attr.ib(repr=False)

    def to_bytes(self) -> bytes:
        return struct.pack('!IB', len(self.payload) + 1, self.message_id) + self.payload

    @classmethod
    def from_payload(cls, payload: bytes) -> 'Unknown':
        """ Unlike the other messages, `payload` still starts with the message id """
        if not payload:
            raise MessageError('Unknown message carries no message id')
        return cls(payload[0], bytes(payload[1:]))


class MessageParser:
    """
    Turns frames received from peers (length prefix already stripped) into
    message instances.
    """

    # largest block we ever request is 16 KiB, bitfields may be bigger for huge torrents
    MAX_MESSAGE_LENGTH = 2 ** 21

    MESSAGE_TYPES: Dict[int, Type[BaseMessage]] = {
        Choke.ID: Choke,
        Unchoke.ID: Unchoke,
        Interested.ID: Interested,
        NotInterested.ID: NotInterested,
        Have.ID: Have,
        BitField.ID: BitField,
        Request.ID: Request,
        Piece.ID: Piece,
        Cancel.ID: Cancel,
    }

    def __init__(self):
        self._logger = logwood.get_logger(self.__class__.__name__)

    @staticmethod
    def get_length(data: bytes) -> int:
        """
        Get message length from the 4 byte prefix
        """
        (length,) = struct.unpack('!I', data[:4])
        return length

    def check_length(self, length: int) -> None:
        if length > self.MAX_MESSAGE_LENGTH:
            raise MessageError(
                f'Message length {length} exceeds limit of {self.MAX_MESSAGE_LENGTH}'
            )

    def parse(self, frame: bytes) -> BaseMessage:
        """
        Parse a single frame made of the message id and its payload. An empty
        frame is a keep-alive.
        """
        if not frame:
            return KeepAlive()

        message_id, payload = frame[0], frame[1:]
        try:
            message_type = self.MESSAGE_TYPES[message_id]
        except KeyError:
            self._logger.debug('Unknown message id = %s', message_id)
            return Unknown.from_payload(frame)
        return message_type.from_payload(payload)
