import asyncio
import hashlib
import os

import pytest

import wyvern.config
import wyvern.download
import wyvern.peer
import wyvern.piece

from conftest import build_torrent_info


PIECE_LENGTH = 2 ** 15
PEER_ID = b'-WY0001-downloadtest'


class FailingSink:
    def write(self, piece_index, data):
        raise OSError('no space left on device')


def make_coordinator(payload, sink, **options):
    settings = dict(active_peers=2, timeout=2.0, peer_update_interval=0.5, drain_timeout=0.1)
    settings.update(options)
    return wyvern.download.DownloadCoordinator(
        torrent_info=build_torrent_info(payload, PIECE_LENGTH),
        sink=sink,
        config=wyvern.config.ClientConfig(**settings),
        peer_id=PEER_ID,
    )


@pytest.mark.asyncio
async def test_download_completes_from_seeders(seeders, payload, sink):
    peers = [await seeders(payload, PIECE_LENGTH) for _ in range(3)]
    coordinator = make_coordinator(payload, sink)
    coordinator.add_peers(seeder.address for seeder in peers)

    assert await asyncio.wait_for(coordinator.download(), timeout=10)

    assert sorted(index for index, _ in sink.pieces) == [0, 1, 2, 3]
    assert sink.assembled() == payload
    assert coordinator.piece_store.is_complete()
    assert coordinator.piece_store.bytes_received == len(payload)
    assert coordinator.pool.active_count == 0
    assert sum(seeder.handshakes for seeder in peers) <= 3


@pytest.mark.asyncio
async def test_pieces_spread_over_peers(seeders, payload, sink):
    first = await seeders(payload, PIECE_LENGTH, pieces=[0, 1])
    second = await seeders(payload, PIECE_LENGTH, pieces=[2, 3])
    coordinator = make_coordinator(payload, sink)
    coordinator.add_peers([first.address, second.address])

    assert await asyncio.wait_for(coordinator.download(), timeout=10)

    assert sink.assembled() == payload
    assert {request.index for request in first.requests} == {0, 1}
    assert {request.index for request in second.requests} == {2, 3}


@pytest.mark.asyncio
async def test_corrupt_peer_is_replaced(seeders, payload, sink):
    corrupt = await seeders(payload, PIECE_LENGTH, corrupt=True)
    honest = await seeders(payload, PIECE_LENGTH)
    coordinator = make_coordinator(payload, sink, active_peers=1)
    coordinator.add_peers([corrupt.address, honest.address])

    assert await asyncio.wait_for(coordinator.download(), timeout=10)

    assert sink.assembled() == payload
    assert coordinator.piece_store.integrity_failures >= wyvern.peer.PeerPool.MAX_STRIKES
    assert honest.requests


@pytest.mark.asyncio
async def test_peer_for_other_torrent_is_skipped(seeders, payload, sink):
    stranger = await seeders(payload, PIECE_LENGTH, info_hash=hashlib.sha1(b'x').digest())
    honest = await seeders(payload, PIECE_LENGTH)
    coordinator = make_coordinator(payload, sink, active_peers=1)
    coordinator.add_peers([stranger.address, honest.address])

    assert await asyncio.wait_for(coordinator.download(), timeout=10)

    assert stranger.handshakes == 1
    assert stranger.requests == []
    assert sink.assembled() == payload


@pytest.mark.asyncio
async def test_peers_added_during_download(seeders, payload, sink):
    seeder = await seeders(payload, PIECE_LENGTH)
    coordinator = make_coordinator(payload, sink)
    download = asyncio.ensure_future(coordinator.download())

    await asyncio.sleep(0.1)
    assert not download.done()
    coordinator.add_peers([seeder.address])

    assert await asyncio.wait_for(download, timeout=10)
    assert sink.assembled() == payload


@pytest.mark.asyncio
async def test_disk_failure_aborts_download(seeders, payload):
    seeder = await seeders(payload, PIECE_LENGTH)
    coordinator = make_coordinator(payload, FailingSink())
    coordinator.add_peers([seeder.address])

    with pytest.raises(wyvern.piece.DiskWriteFailure):
        await asyncio.wait_for(coordinator.download(), timeout=10)
    assert coordinator.pool.active_count == 0


@pytest.mark.asyncio
async def test_download_stalls_without_peers(closed_address, payload, sink):
    coordinator = make_coordinator(payload, sink, peer_update_interval=0.1)
    coordinator.add_peers([closed_address])

    with pytest.raises(wyvern.download.DownloadStalled):
        await asyncio.wait_for(coordinator.download(), timeout=5)
    assert sink.pieces == []


@pytest.mark.asyncio
async def test_blocks_of_a_vanished_peer_go_to_a_connected_one(seeders, sink):
    data = os.urandom(PIECE_LENGTH)
    staller = await seeders(data, PIECE_LENGTH, hang_up_after=0.5)
    seeder = await seeders(data, PIECE_LENGTH)
    coordinator = make_coordinator(data, sink)
    coordinator.add_peers([staller.address])
    download = asyncio.ensure_future(coordinator.download())

    # the second peer connects while the first one holds every block
    await asyncio.sleep(0.2)
    coordinator.add_peers([seeder.address])

    assert await asyncio.wait_for(download, timeout=10)
    assert sink.assembled() == data
    assert {(request.index, request.begin) for request in staller.requests} == {
        (0, 0),
        (0, wyvern.piece.BLOCK_LENGTH),
    }
    assert {(request.index, request.begin) for request in seeder.requests} == {
        (0, 0),
        (0, wyvern.piece.BLOCK_LENGTH),
    }
    assert seeder.handshakes == 1
