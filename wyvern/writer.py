from typing import BinaryIO, List, Sequence
import os

import logwood

import wyvern.piece
import wyvern.torrent


class FileSink:
    """
    Writes verified pieces into the output file(s). The torrent's files are laid
    out back to back in one byte space, so a piece can span several files.
    """

    def __init__(
        self,
        directory: str,
        name: str,
        files: Sequence['wyvern.torrent.FileEntry'],
        piece_length: int,
    ) -> None:
        self._piece_length = piece_length
        self._logger = logwood.get_logger(self.__class__.__name__)
        # multi-file torrents get their own directory named after the torrent
        root = os.path.join(directory, name) if len(files) > 1 and name else directory
        self._spans: List[_FileSpan] = []
        start = 0
        try:
            for entry in files:
                path = os.path.join(root, entry.path)
                self._spans.append(_FileSpan(_preallocate(path, entry.length), start, entry.length))
                start += entry.length
        except OSError as e:
            self.close()
            raise wyvern.piece.DiskWriteFailure(f'Unable to create output files: {e}') from e

    def write(self, piece_index: int, data: bytes) -> None:
        position = piece_index * self._piece_length
        end = position + len(data)
        try:
            for span in self._spans:
                if span.end <= position or span.start >= end:
                    continue
                chunk_start = max(position, span.start)
                chunk_end = min(end, span.end)
                span.handle.seek(chunk_start - span.start)
                span.handle.write(data[chunk_start - position : chunk_end - position])
                span.handle.flush()
        except OSError as e:
            raise wyvern.piece.DiskWriteFailure(
                f'Unable to write piece n. {piece_index}: {e}'
            ) from e
        self._logger.debug('Wrote piece n. %d (%d bytes)', piece_index, len(data))

    def close(self) -> None:
        for span in self._spans:
            span.handle.close()


class _FileSpan:

    __slots__ = ['handle', 'start', 'length']

    def __init__(self, handle: BinaryIO, start: int, length: int):
        self.handle = handle
        self.start = start
        self.length = length

    @property
    def end(self) -> int:
        return self.start + self.length


def _preallocate(path: str, length: int) -> BinaryIO:
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    handle = open(path, 'wb+')
    handle.truncate(length)
    return handle
