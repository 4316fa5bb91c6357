import hashlib
import logging
import os
import socket
from typing import NamedTuple

from .bencode import Value, decode, encode
from .errors import StructuralIntegrityError, UnexpectedTypeError

logger = logging.getLogger(__name__)

HASH_LENGTH = 20
COMPACT_PEER_SIZE = 6


class PeerAddress(NamedTuple):
    ip: str
    port: int

    @classmethod
    def from_compact(cls, data: bytes) -> 'PeerAddress':
        """4 bytes IPv4 address followed by a 2 byte port, both big-endian."""
        if len(data) != COMPACT_PEER_SIZE:
            raise ValueError(f"Compact peer entry must be {COMPACT_PEER_SIZE} bytes, got {len(data)}")
        return cls(socket.inet_ntop(socket.AF_INET, data[:4]), int.from_bytes(data[4:], byteorder='big'))

    @classmethod
    def parse(cls, text: str) -> 'PeerAddress':
        ip, sep, port = text.rpartition(':')
        if not sep or not ip or not port.isdigit():
            raise ValueError(f"Invalid peer address '{text}', expected <ip>:<port>")
        return cls(ip, int(port))

    def __str__(self):
        return f"{self.ip}:{self.port}"


class Metainfo:
    """Single-file torrent descriptor.

    ``pieces`` is kept exactly as it appeared in the file: a concatenation
    of 20-byte SHA-1 digests, one per piece.
    """

    def __init__(self, announce: str, name: str, length: int, piece_length: int, pieces: bytes, info: Value):
        self.announce = announce
        self.name = name
        self.length = length
        self.piece_length = piece_length
        self.pieces = pieces
        self.info = info
        self.info_hash = TorrentUtils.compute_info_hash(info)

    @property
    def piece_count(self) -> int:
        return len(self.pieces) // HASH_LENGTH

    def piece_digest(self, index: int) -> bytes:
        if not 0 <= index < self.piece_count:
            raise IndexError(f"Piece index {index} out of range (0..{self.piece_count - 1})")
        return self.pieces[index * HASH_LENGTH:(index + 1) * HASH_LENGTH]

    def get_piece_length(self, index: int) -> int:
        """Length of piece ``index``; the last piece holds the remainder, out of range pieces are empty."""
        if index < 0:
            raise IndexError(f"Negative piece index {index}")
        if index >= self.piece_count:
            return 0
        if index == self.piece_count - 1:
            return self.length % self.piece_length or self.piece_length
        return self.piece_length

    def piece_hashes(self) -> list[bytes]:
        return [self.piece_digest(i) for i in range(self.piece_count)]

    def __repr__(self):
        return (f"Metainfo({self.name!r}, length={self.length}, piece_length={self.piece_length}, "
                f"pieces={self.piece_count}, info_hash={self.info_hash.hex()})")


def _field(fields: dict, key: bytes) -> Value:
    try:
        return fields[key]
    except KeyError:
        raise StructuralIntegrityError(f"Missing required field '{key.decode()}'") from None


class TorrentUtilsClass:
    @staticmethod
    def generate_peer_id() -> str:
        """Generate a unique 20 character peer ID."""
        return '-BC0001-' + hashlib.sha1(os.urandom(20)).hexdigest()[:12]

    @staticmethod
    def compute_info_hash(info: Value) -> bytes:
        """SHA-1 of the canonical (key-sorted) encoding of the info dictionary."""
        return hashlib.sha1(encode(info)).digest()

    @staticmethod
    def parse_torrent(bencoded_content: bytes) -> Metainfo:
        root, consumed = decode(bencoded_content)
        if consumed != len(bencoded_content):
            logger.warning(f"Ignoring {len(bencoded_content) - consumed} trailing bytes after metainfo")

        try:
            fields = root.as_dict()
            announce = _field(fields, b'announce').as_bytes().decode('utf-8')
            info = _field(fields, b'info')
            info_fields = info.as_dict()
            length = _field(info_fields, b'length').as_int()
            name = _field(info_fields, b'name').as_bytes().decode('utf-8', errors='replace')
            piece_length = _field(info_fields, b'piece length').as_int()
            pieces = _field(info_fields, b'pieces').as_bytes()
        except UnexpectedTypeError as e:
            raise StructuralIntegrityError(f"Invalid metainfo: {e}") from e
        except UnicodeDecodeError as e:
            raise StructuralIntegrityError(f"Announce URL is not valid UTF-8: {e}") from e

        if length < 0:
            raise StructuralIntegrityError(f"Negative total length {length}")
        if piece_length <= 0:
            raise StructuralIntegrityError(f"Piece length must be positive, got {piece_length}")
        if len(pieces) % HASH_LENGTH:
            raise StructuralIntegrityError(
                f"Pieces field is {len(pieces)} bytes, not a multiple of {HASH_LENGTH}")

        expected_count = (length + piece_length - 1) // piece_length
        if len(pieces) != expected_count * HASH_LENGTH:
            raise StructuralIntegrityError(
                f"Expected {expected_count} piece hashes for {length} bytes, found {len(pieces) // HASH_LENGTH}")

        return Metainfo(announce, name, length, piece_length, pieces, info)

    def parse_torrent_file(self, torrent_file_path) -> Metainfo:
        with open(torrent_file_path, "rb") as torrent_file:
            bencoded_content = torrent_file.read()
        return self.parse_torrent(bencoded_content)

    @staticmethod
    def parse_compacted_peer_list(compacted_peer: bytes) -> list[PeerAddress]:
        """Split a compact peer string into addresses, keeping tracker order."""
        peers = []
        if len(compacted_peer) % COMPACT_PEER_SIZE != 0:
            logger.warning(f"Compacted peer string length {len(compacted_peer)} "
                           f"is not a multiple of {COMPACT_PEER_SIZE} bytes")

        for i in range(0, len(compacted_peer), COMPACT_PEER_SIZE):
            peer_data = compacted_peer[i:i + COMPACT_PEER_SIZE]
            if len(peer_data) < COMPACT_PEER_SIZE:
                logger.warning(f"Skipping incomplete peer data: {peer_data!r}")
                continue
            peers.append(PeerAddress.from_compact(peer_data))
        return peers

    @staticmethod
    def divide_piece_into_blocks(piece_index, piece_size, block_size=16 * 1024):
        """
        Divide a piece into blocks and prepare request arguments for each block.
        """
        args_list = []
        num_blocks = (piece_size + block_size - 1) // block_size

        for block_num in range(num_blocks):
            begin = block_num * block_size
            length = min(block_size, piece_size - begin)
            args_list.append((piece_index, begin, length))

        return args_list


TorrentUtils = TorrentUtilsClass()
