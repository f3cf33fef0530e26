from typing import Iterable
import os

import logwood

import wyvern.config
import wyvern.download
import wyvern.protocol
import wyvern.torrent
import wyvern.tracker
import wyvern.writer


class TorrentClient:
    def __init__(
        self,
        torrent_file: str,
        destination: str,
        config: wyvern.config.ClientConfig,
        peers: Iterable[wyvern.protocol.PeerAddress] = (),
    ):
        self._peer_id = wyvern.config.generate_peer_id()
        self._config = config
        self._destination = destination
        self._torrent = wyvern.torrent.Torrent.load_from_file(torrent_file)
        self._peers = set(peers)
        self._logger = logwood.get_logger(self.__class__.__name__)

    async def _load_peers(self) -> None:
        if self._peers:
            return
        self._peers = await wyvern.tracker.fetch_peers(
            self._torrent, self._peer_id, self._config.port, self._config.timeout
        )
        self._logger.info('Trackers returned %d peers', len(self._peers))

    async def run(self) -> bool:
        await self._load_peers()

        os.makedirs(self._destination, exist_ok=True)
        sink = wyvern.writer.FileSink(
            directory=self._destination,
            name=self._torrent.name,
            files=self._torrent.files,
            piece_length=self._torrent.piece_length,
        )
        try:
            coordinator = wyvern.download.DownloadCoordinator(
                torrent_info=self._torrent.torrent_info,
                sink=sink,
                config=self._config,
                peer_id=self._peer_id,
            )
            coordinator.add_peers(self._peers)
            return await coordinator.download()
        finally:
            sink.close()
