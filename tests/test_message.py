import struct

import bitstring
import pytest

import wyvern.message


@pytest.fixture
def parser():
    return wyvern.message.MessageParser()


def test_handshake_layout():
    info_hash = bytes(range(20))
    peer_id = b'-WY0001-abcdefghijkl'
    raw = wyvern.message.Handshake(info_hash=info_hash, peer_id=peer_id).to_bytes()

    assert len(raw) == 68
    assert raw[:20] == b'\x13BitTorrent protocol'
    assert raw[20:28] == bytes(8)
    assert raw[28:48] == info_hash
    assert raw[48:] == peer_id
    assert wyvern.message.Handshake.from_bytes(raw).peer_id == peer_id


def test_handshake_with_other_protocol_is_rejected():
    raw = b'\x13BitTorrent protocoX' + bytes(48)
    with pytest.raises(wyvern.message.MessageError):
        wyvern.message.Handshake.from_bytes(raw)


def test_handshake_too_short_is_rejected():
    with pytest.raises(wyvern.message.MessageError):
        wyvern.message.Handshake.from_bytes(b'\x13BitTorrent protocol')


def test_request_and_cancel_wire_format():
    assert wyvern.message.Request(1, 16384, 16384).to_bytes() == struct.pack(
        '!IBIII', 13, 6, 1, 16384, 16384
    )
    assert wyvern.message.Cancel(2, 0, 100).to_bytes() == struct.pack('!IBIII', 13, 8, 2, 0, 100)


def test_keep_alive_is_bare_length_prefix(parser):
    assert wyvern.message.KeepAlive().to_bytes() == b'\x00\x00\x00\x00'
    assert isinstance(parser.parse(b''), wyvern.message.KeepAlive)


@pytest.mark.parametrize(
    'frame, expected',
    [
        (b'\x00', wyvern.message.Choke()),
        (b'\x01', wyvern.message.Unchoke()),
        (b'\x02', wyvern.message.Interested()),
        (b'\x03', wyvern.message.NotInterested()),
        (b'\x04\x00\x00\x00\x07', wyvern.message.Have(7)),
        (b'\x06' + struct.pack('!III', 1, 2, 3), wyvern.message.Request(1, 2, 3)),
        (b'\x08' + struct.pack('!III', 1, 2, 3), wyvern.message.Cancel(1, 2, 3)),
        (b'\x07' + struct.pack('!II', 3, 16384) + b'data', wyvern.message.Piece(3, 16384, b'data')),
    ],
)
def test_parse_known_messages(parser, frame, expected):
    assert parser.parse(frame) == expected


def test_bitfield_is_most_significant_bit_first(parser):
    message = parser.parse(b'\x05\x80\x01')

    assert isinstance(message, wyvern.message.BitField)
    assert message.bitfield[0]
    assert not any(message.bitfield[1:15])
    assert message.bitfield[15]
    assert message.raw == b'\x80\x01'


def test_bitfield_from_bits_pads_to_byte_boundary():
    bits = bitstring.BitArray(bin='0' * 10)
    bits.set(True, 9)
    message = wyvern.message.BitField.from_bits(bits)

    assert message.raw == b'\x00\x40'
    assert message.to_bytes() == b'\x00\x00\x00\x03\x05\x00\x40'


def test_unknown_message_id_is_kept_not_raised(parser):
    message = parser.parse(b'\x14payload')

    assert message == wyvern.message.Unknown(20, b'payload')
    assert message.to_bytes() == b'\x00\x00\x00\x08\x14payload'


def test_unknown_message_from_frame():
    assert wyvern.message.Unknown.from_payload(b'\x14') == wyvern.message.Unknown(20, b'')
    with pytest.raises(wyvern.message.MessageError):
        wyvern.message.Unknown.from_payload(b'')


@pytest.mark.parametrize('frame', [b'\x00\x01', b'\x04\x00\x01', b'\x06\x00', b'\x07\x00\x00'])
def test_wrong_payload_size_raises(parser, frame):
    with pytest.raises(wyvern.message.MessageError):
        parser.parse(frame)


def test_length_limit(parser):
    parser.check_length(2 ** 14 + 9)
    with pytest.raises(wyvern.message.MessageError):
        parser.check_length(parser.MAX_MESSAGE_LENGTH + 1)
