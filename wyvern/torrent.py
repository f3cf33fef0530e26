from typing import Dict, Any, Iterator, List, Tuple
import hashlib
import math
import os
import urllib.parse

import attr
import bencode
import cached_property

import wyvern.piece


HASH_LENGTH = 20


def _check_hash_length(instance, attribute, value) -> None:
    if len(value) != HASH_LENGTH:
        raise ValueError(f'{attribute.name} must be {HASH_LENGTH} bytes long')


def _check_positive(instance, attribute, value) -> None:
    if value <= 0:
        raise ValueError(f'{attribute.name} must be positive, got {value}')


@attr.s(frozen=True, slots=True, auto_attribs=True)
class TorrentInfo:
    """
    Immutable description of the data being downloaded, shared read-only by all
    the download components.
    """

    piece_length: int = attr.ib(validator=_check_positive)
    total_length: int = attr.ib(validator=_check_positive)
    piece_hashes: Tuple[bytes, ...] = attr.ib(converter=tuple)
    info_hash: bytes = attr.ib(validator=_check_hash_length)

    @piece_hashes.validator
    def _check_piece_hashes(self, attribute, value) -> None:
        for piece_hash in value:
            if len(piece_hash) != HASH_LENGTH:
                raise ValueError('every piece hash must be 20 bytes long')
        expected = math.ceil(self.total_length / self.piece_length)
        if len(value) != expected:
            raise ValueError(
                f'torrent of {self.total_length} bytes needs {expected} piece hashes, '
                f'got {len(value)}'
            )

    @property
    def piece_count(self) -> int:
        return len(self.piece_hashes)

    def piece_size(self, index: int) -> int:
        if not 0 <= index < self.piece_count:
            raise IndexError(f'piece index {index} out of range')
        if index == self.piece_count - 1:
            return self.total_length - index * self.piece_length
        return self.piece_length

    def block_count(self, index: int) -> int:
        return math.ceil(self.piece_size(index) / wyvern.piece.BLOCK_LENGTH)

    def blocks(self, index: int) -> Iterator['wyvern.piece.Block']:
        """
        Blocks of piece `index` in ascending offset order, the last one being
        shorter if the piece size is not a multiple of `BLOCK_LENGTH`.
        """
        size = self.piece_size(index)
        for offset in range(0, size, wyvern.piece.BLOCK_LENGTH):
            yield wyvern.piece.Block(
                piece_index=index,
                offset=offset,
                length=min(wyvern.piece.BLOCK_LENGTH, size - offset),
            )


@attr.s(frozen=True, slots=True, auto_attribs=True)
class FileEntry:
    path: str
    length: int


class Torrent:
    def __init__(
        self,
        content: Dict[Any, Any],
        announce_list: List[urllib.parse.ParseResult],
    ):
        self.content = content
        self.info = content['info']
        self.announce_list = announce_list
        self.piece_length = self.info['piece length']

    @property
    def name(self) -> str:
        return _text(self.info['name'])

    @cached_property.cached_property
    def files(self) -> List[FileEntry]:
        """
        Files in the order their bytes are laid out in the piece space. Single-file
        torrents have exactly one entry named after the torrent.
        """
        try:
            return [FileEntry(path=self.name, length=self.info['length'])]
        except KeyError:
            return [
                FileEntry(
                    path=os.path.join(*(_text(part) for part in entry['path'])),
                    length=entry['length'],
                )
                for entry in self.info['files']
            ]

    @cached_property.cached_property
    def total_length(self) -> int:
        return sum(entry.length for entry in self.files)

    @cached_property.cached_property
    def info_hash(self) -> bytes:
        return hashlib.sha1(bencode.encode(self.info)).digest()

    @cached_property.cached_property
    def piece_hashes(self) -> Tuple[bytes, ...]:
        pieces = self.info['pieces']
        # bencode.py hands back `str` when the hashes happen to be valid utf-8
        if isinstance(pieces, str):
            pieces = pieces.encode('utf-8')
        if len(pieces) % HASH_LENGTH:
            raise TorrentFileError('Pieces field is not a multiple of 20 bytes')
        return tuple(
            pieces[start : start + HASH_LENGTH]
            for start in range(0, len(pieces), HASH_LENGTH)
        )

    @cached_property.cached_property
    def torrent_info(self) -> TorrentInfo:
        try:
            return TorrentInfo(
                piece_length=self.piece_length,
                total_length=self.total_length,
                piece_hashes=self.piece_hashes,
                info_hash=self.info_hash,
            )
        except ValueError as e:
            raise TorrentFileError(f'Invalid torrent metadata: {e}') from e

    @classmethod
    def load_from_file(cls, filepath: str) -> 'Torrent':
        """
        Opens torrent file at `filepath`.

        This method should be used instead of direct `__init__`
        """
        content = cls.open_torrent_file(filepath)
        return cls.load_from_content(content)

    @classmethod
    def load_from_content(cls, content: Dict[Any, Any]) -> 'Torrent':
        if not isinstance(content, dict) or 'info' not in content:
            raise TorrentFileError('Torrent file has no info dictionary')

        announce_list = []
        for tier in content.get('announce-list', []):
            announce_list.extend(urllib.parse.urlparse(_text(url)) for url in tier)
        if not announce_list and 'announce' in content:
            announce_list.append(urllib.parse.urlparse(_text(content['announce'])))

        try:
            return cls(content, announce_list)
        except KeyError as e:
            raise TorrentFileError(f'Torrent info is missing {e}') from e

    @staticmethod
    def open_torrent_file(filepath: str) -> Dict[Any, Any]:
        """
        Decode contents of torrent file.

        Raises `TorrentFileError` with any error during the bencode decode.
        """
        try:
            with open(filepath, 'rb') as f:
                return bencode.decode(f.read())
        except Exception as e:
            raise TorrentFileError('Unable to read torrent file') from e


def _text(value) -> str:
    if isinstance(value, bytes):
        return value.decode('utf-8', errors='replace')
    return value


class TorrentFileError(Exception):
    pass
