import asyncio
import sys

import click
import logwood

import wyvern.client
import wyvern.config
import wyvern.download
import wyvern.piece
import wyvern.protocol
import wyvern.torrent


def _parse_peers(ctx, param, values):
    try:
        return [wyvern.protocol.PeerAddress.parse(value) for value in values]
    except ValueError as e:
        raise click.BadParameter(str(e))


@click.command()
@click.option('-t', '--torrent', required=True, help='Path to a torrent file')
@click.option('-d', '--destination', default='.', help='Download destination directory')
@click.option('--active-peers', default=8, show_default=True, help='Maximum concurrent peer connections')
@click.option('--port', default=6881, show_default=True, help='Port advertised to trackers')
@click.option('--timeout', default=10.0, show_default=True, help='Network timeout in seconds')
@click.option(
    '--peer-update-interval',
    default=30.0,
    show_default=True,
    help='Seconds between evictions of unproductive peers',
)
@click.option(
    '--peer',
    'peers',
    multiple=True,
    callback=_parse_peers,
    help='Peer address host:port, skips the trackers when given (repeatable)',
)
@click.option('-v', '--verbose', is_flag=True, help='Log every peer message')
def main(
    torrent: str,
    destination: str,
    active_peers: int,
    port: int,
    timeout: float,
    peer_update_interval: float,
    peers,
    verbose: bool,
) -> None:
    logwood.basic_config(level=logwood.DEBUG if verbose else logwood.INFO)
    try:
        config = wyvern.config.ClientConfig(
            active_peers=active_peers,
            port=port,
            timeout=timeout,
            peer_update_interval=peer_update_interval,
        )
    except ValueError as e:
        raise click.BadParameter(str(e))

    try:
        torrent_client = wyvern.client.TorrentClient(torrent, destination, config, peers)
        asyncio.run(torrent_client.run())
    except (
        wyvern.torrent.TorrentFileError,
        wyvern.piece.DiskWriteFailure,
        wyvern.download.DownloadStalled,
    ) as e:
        click.echo(f'Download failed: {e}', err=True)
        sys.exit(1)


if __name__ == '__main__':
    main()
