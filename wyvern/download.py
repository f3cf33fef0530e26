from typing import Callable, Iterable, Optional, Set
import asyncio

import logwood

import wyvern.config
import wyvern.message
import wyvern.peer
import wyvern.piece
import wyvern.protocol
import wyvern.scheduler
import wyvern.torrent


class DownloadStalled(Exception):
    """ No peer is connected and no candidate is left to try """


class DownloadCoordinator:
    """
    Top level driver of a download. Owns the `PieceStore` and the `PeerPool`,
    runs until every piece is verified and written, then shuts the pool down.

    Integrity failures and running out of peers are only reported, the download
    is aborted by `DiskWriteFailure` or by `DownloadStalled`.
    """

    def __init__(
        self,
        torrent_info: wyvern.torrent.TorrentInfo,
        sink,
        config: wyvern.config.ClientConfig,
        peer_id: bytes,
        connection_factory: Optional[
            Callable[[wyvern.protocol.PeerAddress], wyvern.protocol.PeerConnection]
        ] = None,
    ):
        self._torrent_info = torrent_info
        self._config = config
        self._peer_id = peer_id
        self._piece_store = wyvern.piece.PieceStore(
            torrent_info, sink, on_integrity_failure=self._on_integrity_failure
        )
        self._availability = wyvern.scheduler.PieceAvailability(torrent_info.piece_count)
        self._scheduler = wyvern.scheduler.BlockScheduler(
            self._piece_store, self._availability, config.pipeline_depth
        )
        # single instance of parser is shared between all connections
        self._parser = wyvern.message.MessageParser()
        self._connection_factory = connection_factory or self._create_connection
        self._pool = wyvern.peer.PeerPool(
            config, self._create_session, on_fatal=self._on_fatal
        )
        self._finished: Optional[asyncio.Event] = None
        self._fatal: Optional[asyncio.Future] = None
        self._logger = logwood.get_logger(self.__class__.__name__)

    @property
    def piece_store(self) -> wyvern.piece.PieceStore:
        return self._piece_store

    @property
    def pool(self) -> wyvern.peer.PeerPool:
        return self._pool

    def add_peers(self, addresses: Iterable[wyvern.protocol.PeerAddress]) -> int:
        """
        Supply more candidate peers, before or during the download.
        """
        return self._pool.add_candidates(addresses)

    async def download(self) -> bool:
        # initialize here, because `EventLoop` might have not been started yet during `__init__`
        self._finished = asyncio.Event()
        self._fatal = asyncio.get_running_loop().create_future()
        if self._piece_store.is_complete():
            return True

        self._logger.info(
            'Downloading %d pieces of %d bytes from %d candidate peers',
            self._torrent_info.piece_count,
            self._torrent_info.piece_length,
            self._pool.candidate_count,
        )
        self._pool.start()
        try:
            await self._wait_for_completion()
        finally:
            await self._pool.stop(self._config.drain_timeout)

        self._logger.info('Download finished, %d bytes received', self._piece_store.bytes_received)
        return True

    async def _wait_for_completion(self) -> None:
        finished = asyncio.ensure_future(self._finished.wait())
        stalled = False
        try:
            while True:
                await asyncio.wait(
                    {finished, self._fatal},
                    timeout=self._config.peer_update_interval,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if self._fatal.done():
                    # re-raises the fatal error
                    self._fatal.result()
                if finished.done():
                    return

                self._logger.info(
                    'Progress: %d/%d pieces, %d peers active, %d candidates left',
                    self._piece_store.completed_count,
                    self._piece_store.number_of_pieces,
                    self._pool.active_count,
                    self._pool.candidate_count,
                )
                if self._pool.active_count or self._pool.candidate_count:
                    stalled = False
                elif stalled:
                    raise DownloadStalled(
                        f'No peers left with {len(self._piece_store.missing_pieces())} '
                        f'pieces missing'
                    )
                else:
                    stalled = True
                    self._logger.warning('No peers connected and no candidates left')
        finally:
            finished.cancel()

    def _create_connection(
        self, address: wyvern.protocol.PeerAddress
    ) -> wyvern.protocol.PeerConnection:
        return wyvern.protocol.PeerConnection(
            address=address,
            info_hash=self._torrent_info.info_hash,
            peer_id=self._peer_id,
            timeout=self._config.timeout,
            parser=self._parser,
        )

    def _create_session(self, address: wyvern.protocol.PeerAddress) -> wyvern.peer.PeerSession:
        return wyvern.peer.PeerSession(
            address=address,
            connection=self._connection_factory(address),
            piece_store=self._piece_store,
            scheduler=self._scheduler,
            availability=self._availability,
            on_piece_completed=self._on_piece_completed,
        )

    def _on_piece_completed(self, piece_index: int) -> None:
        self._logger.info(
            'Verified piece n. %d (%d/%d)',
            piece_index,
            self._piece_store.completed_count,
            self._piece_store.number_of_pieces,
        )
        if self._piece_store.is_complete() and self._finished is not None:
            self._finished.set()
        # sessions drop requests for the finished piece
        self._scheduler.wake_all()

    def _on_integrity_failure(self, piece_index: int, contributors: Set) -> None:
        self._logger.warning(
            'Piece n. %d is corrupt, it will be downloaded again', piece_index
        )
        for address in self._pool.record_integrity_failure(contributors):
            self._piece_store.discard_peer_blocks(address)
        self._scheduler.wake_all()

    def _on_fatal(self, exc: BaseException) -> None:
        if self._fatal is not None and not self._fatal.done():
            self._fatal.set_exception(exc)
