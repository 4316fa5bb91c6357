import hashlib
import logging

from .utils import IntegrityMismatchError, Metainfo, ProtocolViolationError, TorrentUtils
from .utils.config import BLOCK_SIZE

logger = logging.getLogger(__name__)


class PieceManager:
    """Piece bookkeeping for a single torrent.

    Reads only piece geometry and digests from the metainfo, which is never
    mutated after parsing, so one manager can outlive any number of peer
    connections. Blocks of one piece at a time are collected here and the
    piece is released only after its SHA-1 digest checks out.
    """

    def __init__(self, metainfo: Metainfo, block_size=BLOCK_SIZE):
        self.metainfo = metainfo
        self.block_size = block_size
        self.number_of_pieces = metainfo.piece_count

        self.requesting_piece = None
        self.requesting_blocks = dict()         # begin offset -> block bytes
        self.number_of_blocks = 0

        self.completed = set()
        self.downloaded = 0

    @property
    def left(self) -> int:
        return self.metainfo.length - self.downloaded

    def is_done_downloading(self):
        return len(self.completed) == self.number_of_pieces

    def get_piece_length(self, piece_idx) -> int:
        return self.metainfo.get_piece_length(piece_idx)

    def get_block_requests(self, piece_idx) -> list[tuple[int, int, int]]:
        """(index, begin, length) for every block of the piece, in offset order."""
        return TorrentUtils.divide_piece_into_blocks(piece_idx, self.get_piece_length(piece_idx), self.block_size)

    # -------------------------------------------------
    # -------------------------------------------------

    def add_requesting_blocks(self, piece_idx, block_requests):
        self.requesting_piece = piece_idx
        self.requesting_blocks = dict()
        self.number_of_blocks = len(block_requests)

    def add_block(self, piece_idx, begin, block_data):
        if piece_idx != self.requesting_piece:
            raise ProtocolViolationError(f"Got block of piece #{piece_idx} while downloading #{self.requesting_piece}")
        self.requesting_blocks[begin] = block_data

    def is_piece_request_done(self):
        return self.requesting_piece is not None and len(self.requesting_blocks) == self.number_of_blocks

    def merge_piece(self) -> bytes:
        """Join the collected blocks and verify them; raises IntegrityMismatchError on a bad digest."""
        piece_idx = self.requesting_piece
        if not self.is_piece_request_done():
            raise ProtocolViolationError(f"Piece #{piece_idx} is incomplete: "
                                         f"{len(self.requesting_blocks)}/{self.number_of_blocks} blocks received")
        piece_data = b''.join(self.requesting_blocks[begin] for begin in sorted(self.requesting_blocks))
        self.requesting_piece = None
        self.requesting_blocks = dict()

        self.verify_piece(piece_idx, piece_data)
        if piece_idx not in self.completed:
            self.completed.add(piece_idx)
            self.downloaded += len(piece_data)
        logger.info(f"Downloaded Piece #{piece_idx} | Progress: {len(self.completed)}/{self.number_of_pieces}")
        return piece_data

    def verify_piece(self, piece_idx, piece_data):
        expected = self.metainfo.piece_digest(piece_idx)
        actual = hashlib.sha1(piece_data).digest()
        if actual != expected or len(piece_data) != self.get_piece_length(piece_idx):
            raise IntegrityMismatchError(piece_idx, expected, actual)
