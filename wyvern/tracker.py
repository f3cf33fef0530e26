from typing import Optional, Set
import asyncio
import itertools
import random
import socket
import struct
import urllib.parse

import bencode
import logwood
import requests

import wyvern.protocol
import wyvern.torrent


class TrackerError(Exception):
    """ Tracker unreachable or answered with an error """


class UDPTracker:
    """
    Tracker class for sending connection and announce request and establishing
    connection with UDP tracker. After successful connection, information about
    peers is exchanged.
    """

    PROTOCOL_ID = 0x41727101980
    ACTION_CONNECT = 0
    ACTION_ANNOUNCE = 1
    EVENT_STARTED = 2

    def __init__(
        self,
        ip: str,
        port: int,
        peer_id: bytes,
        torrent: wyvern.torrent.Torrent,
        listen_port: int,
        timeout: float,
    ):
        self._address = (ip, port)
        self._peer_id = peer_id
        self._info_hash = torrent.info_hash
        self._torrent_size = torrent.total_length
        self._listen_port = listen_port
        self._timeout = timeout
        self._protocol: Optional[UDPClientProtocol] = None

    def __str__(self):
        return f'{self.__class__.__name__}[{self._address}]'

    async def get_peers(self) -> Set[wyvern.protocol.PeerAddress]:
        """
        First send the connection request, if the connection_id received back is OK
        we can continue with sending announce request
        """
        loop = asyncio.get_running_loop()
        transport, self._protocol = await loop.create_datagram_endpoint(
            UDPClientProtocol, remote_addr=self._address
        )
        try:
            connection_id = await self._send_connection_request()
            return await self._send_announce_request(connection_id)
        finally:
            transport.close()

    async def _exchange(self, message: bytes) -> bytes:
        self._protocol.send_message(message)
        try:
            return await asyncio.wait_for(self._protocol.buffer.get(), timeout=self._timeout)
        except asyncio.TimeoutError as e:
            raise TrackerError(f'{self} did not respond') from e

    async def _send_connection_request(self) -> int:
        transaction_id = random.getrandbits(32)
        buffer = await self._exchange(
            struct.pack('!QII', self.PROTOCOL_ID, self.ACTION_CONNECT, transaction_id)
        )
        if len(buffer) < 16:
            raise TrackerError(f'{self} sent truncated connect response')
        action, res_transaction_id, connection_id = struct.unpack_from('!IIQ', buffer)
        if action != self.ACTION_CONNECT or res_transaction_id != transaction_id:
            raise TrackerError(f'{self} sent invalid connect response')
        return connection_id

    async def _send_announce_request(self, connection_id: int) -> Set[wyvern.protocol.PeerAddress]:
        transaction_id = random.getrandbits(32)
        message = struct.pack(
            '!QII20s20sQQQIIIiH',
            connection_id,
            self.ACTION_ANNOUNCE,
            transaction_id,
            self._info_hash,
            self._peer_id,
            0,  # downloaded
            self._torrent_size,  # left
            0,  # uploaded
            self.EVENT_STARTED,
            0,  # ip, tracker uses the sender address
            random.getrandbits(32),  # key
            -1,  # number of peers wanted, tracker default
            self._listen_port,
        )
        buffer = await self._exchange(message)
        if len(buffer) < 20:
            raise TrackerError(f'{self} sent truncated announce response')
        action, res_transaction_id = struct.unpack_from('!II', buffer)
        if action != self.ACTION_ANNOUNCE or res_transaction_id != transaction_id:
            raise TrackerError(f'{self} sent invalid announce response')
        # first 20 bytes are action/transaction_id/interval/leechers/seeders
        return parse_compact_peers(buffer[20:])


class UDPClientProtocol(asyncio.DatagramProtocol):
    """
    UDP protocol that connects to the address. Individual messages can be send using
    `send_message` method, and response is offered through `self.buffer` queue.
    """

    def __init__(self):
        self._transport: Optional[asyncio.DatagramTransport] = None
        self.buffer: asyncio.Queue = asyncio.Queue()
        self._logger = logwood.get_logger(self.__class__.__name__)

    def send_message(self, message: bytes) -> None:
        self._transport.sendto(message)

    def connection_made(self, transport: asyncio.DatagramTransport) -> None:
        self._transport = transport

    def datagram_received(self, data, addr) -> None:
        self._logger.debug('Received %d bytes from %s', len(data), addr)
        self.buffer.put_nowait(data)

    def error_received(self, exc) -> None:
        self._logger.error('Error received: %s', exc)


class HTTPTracker:
    """
    Announces to an HTTP(S) tracker. `requests` is blocking, so the request runs
    in the default executor.
    """

    def __init__(
        self,
        url: str,
        peer_id: bytes,
        torrent: wyvern.torrent.Torrent,
        listen_port: int,
        timeout: float,
    ):
        self._url = url
        self._params = {
            'info_hash': torrent.info_hash,
            'peer_id': peer_id,
            'port': listen_port,
            'uploaded': 0,
            'downloaded': 0,
            'left': torrent.total_length,
            'compact': 1,
            'event': 'started',
        }
        self._timeout = timeout

    def __str__(self):
        return f'{self.__class__.__name__}[{self._url}]'

    async def get_peers(self) -> Set[wyvern.protocol.PeerAddress]:
        loop = asyncio.get_running_loop()
        content = await loop.run_in_executor(None, self._announce)
        return self.read(content)

    def _announce(self) -> bytes:
        try:
            response = requests.get(self._url, params=self._params, timeout=self._timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise TrackerError(f'{self} request failed: {e}') from e
        return response.content

    def read(self, content: bytes) -> Set[wyvern.protocol.PeerAddress]:
        try:
            response = bencode.decode(content)
        except Exception as e:
            raise TrackerError(f'{self} sent undecodable response') from e

        if not isinstance(response, dict):
            raise TrackerError(f'{self} sent unexpected response')
        if 'failure reason' in response:
            raise TrackerError(f'{self} refused announce: {response["failure reason"]}')

        peers = response.get('peers', b'')
        if isinstance(peers, list):
            return {
                wyvern.protocol.PeerAddress(
                    host=_text(peer['ip']),
                    port=peer['port'],
                    peer_id=_binary(peer.get('peer id')),
                )
                for peer in peers
            }
        return parse_compact_peers(_binary(peers))


def parse_compact_peers(buffer: bytes) -> Set[wyvern.protocol.PeerAddress]:
    """
    Peers packed as 4 bytes of IPv4 address followed by 2 bytes of port
    """
    peers = set()
    for offset in range(0, len(buffer) - len(buffer) % 6, 6):
        ip = socket.inet_ntoa(buffer[offset : offset + 4])
        (port,) = struct.unpack_from('!H', buffer, offset + 4)
        peers.add(wyvern.protocol.PeerAddress(host=ip, port=port))
    return peers


def create_tracker(
    announce: urllib.parse.ParseResult,
    peer_id: bytes,
    torrent: wyvern.torrent.Torrent,
    listen_port: int,
    timeout: float,
):
    if announce.scheme == 'udp' and announce.port:
        return UDPTracker(
            ip=announce.hostname,
            port=announce.port,
            peer_id=peer_id,
            torrent=torrent,
            listen_port=listen_port,
            timeout=timeout,
        )
    if announce.scheme in ('http', 'https'):
        return HTTPTracker(announce.geturl(), peer_id, torrent, listen_port, timeout)
    return None


async def fetch_peers(
    torrent: wyvern.torrent.Torrent, peer_id: bytes, listen_port: int, timeout: float
) -> Set[wyvern.protocol.PeerAddress]:
    """
    Announce to every tracker of the torrent once and return the union of the
    peers they know about. Trackers that fail are logged and skipped.
    """
    logger = logwood.get_logger(__name__)
    trackers = []
    for announce in torrent.announce_list:
        tracker = create_tracker(announce, peer_id, torrent, listen_port, timeout)
        if tracker is None:
            logger.warning('Skipping unsupported tracker = %s', announce.geturl())
        else:
            trackers.append(tracker)

    peer_sets = await asyncio.gather(*(_get_peers(tracker) for tracker in trackers))
    return set(itertools.chain.from_iterable(peer_sets))


async def _get_peers(tracker) -> Set[wyvern.protocol.PeerAddress]:
    logger = logwood.get_logger(__name__)
    try:
        peers = await tracker.get_peers()
    except (TrackerError, OSError) as e:
        logger.error('Error loading peers from tracker = %s: %s', tracker, e)
        return set()
    logger.info('Tracker %s returned %d peers', tracker, len(peers))
    return peers


def _text(value) -> str:
    if isinstance(value, bytes):
        return value.decode('utf-8', errors='replace')
    return value


def _binary(value) -> Optional[bytes]:
    if isinstance(value, str):
        return value.encode('utf-8')
    return value
