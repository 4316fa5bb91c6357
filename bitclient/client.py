import itertools
import logging
from urllib.parse import urlencode

import requests

from .peer_connection import PeerConnection
from .piece_manager import PieceManager
from .utils import (ClientConfig, IntegrityMismatchError, Metainfo, PeerAddress, ProtocolViolationError,
                    TorrentUtils, TrackerError, TransportError, UnexpectedTypeError, decode)
from .utils.config import DEFAULT_PEER_ID, DEFAULT_PORT

logger = logging.getLogger(__name__)


# -------------------------------------------------
# -------------------- Tracker --------------------

def build_announce_url(announce, info_hash: bytes, peer_id: bytes, port=DEFAULT_PORT,
                       uploaded=0, downloaded=0, left=0) -> str:
    """Announce URL with info_hash escaped byte by byte (%XX), appended after the regular parameters."""
    params = urlencode({
        'peer_id': peer_id,
        'port': port,
        'uploaded': uploaded,
        'downloaded': downloaded,
        'left': left,
        'compact': 1,
    })
    info_hash_param = ''.join(f'%{byte:02X}' for byte in info_hash)
    separator = '&' if '?' in announce else '?'
    return f"{announce}{separator}{params}&info_hash={info_hash_param}"


def discover(announce, info_hash: bytes, total_length: int, peer_id=DEFAULT_PEER_ID, port=DEFAULT_PORT,
             session=None, timeout=None) -> list[PeerAddress]:
    """Ask the tracker for peers and return them in the order it listed them."""
    url = build_announce_url(announce, info_hash, peer_id, port, left=total_length)
    http = session or requests
    try:
        response = http.get(url, timeout=timeout)
        response.raise_for_status()
    except requests.RequestException as e:
        raise TrackerError(f"Tracker request to {announce} failed: {e}") from e

    reply, _ = decode(response.content)
    try:
        fields = reply.as_dict()
        if b'failure reason' in fields:
            reason = fields[b'failure reason'].as_bytes().decode('utf-8', errors='replace')
            raise TrackerError(f"Tracker refused announce: {reason}")
        if b'peers' not in fields:
            raise TrackerError("Tracker response has no 'peers' field")
        compacted_peer = fields[b'peers'].as_bytes()
    except UnexpectedTypeError as e:
        raise TrackerError(f"Unexpected tracker response: {e}") from e

    if b'interval' in fields:
        logger.debug(f"Tracker interval: {fields[b'interval'].to_python()}")
    peers = TorrentUtils.parse_compacted_peer_list(compacted_peer)
    logger.info(f"Tracker returned {len(peers)} peers")
    return peers


# -------------------------------------------------
# -------------------- Client ---------------------

class TorrentClient:
    """Downloads a torrent from one peer at a time.

    A broken connection is replaced by the next discovered peer and a
    piece that fails its hash check is requested again, both bounded by
    ``config.max_piece_attempts``. With the default of one attempt every
    failure aborts the download.
    """

    def __init__(self, metainfo: Metainfo, config: ClientConfig = None, session=None):
        self.metainfo = metainfo
        self.config = config or ClientConfig()
        self.session = session
        self.piece_manager = PieceManager(metainfo, self.config.block_size)
        self.connection: PeerConnection | None = None

    @classmethod
    def from_file(cls, torrent_file, config: ClientConfig = None, session=None) -> 'TorrentClient':
        return cls(TorrentUtils.parse_torrent_file(torrent_file), config, session)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def close(self):
        self.drop_connection()

    def send_tracker_request(self) -> list[PeerAddress]:
        return discover(self.metainfo.announce, self.metainfo.info_hash, self.piece_manager.left,
                        peer_id=self.config.peer_id, port=self.config.port,
                        session=self.session, timeout=self.config.socket_timeout)

    # -------------------- Connect --------------------

    def connect_to_peer(self, address: PeerAddress) -> PeerConnection:
        return PeerConnection.open(address, self.metainfo.info_hash, self.config.peer_id, self.piece_manager,
                                   timeout=self.config.socket_timeout,
                                   verify_info_hash=self.config.verify_info_hash)

    def drop_connection(self):
        if self.connection is not None:
            self.connection.close()
            self.connection = None

    # -------------------- Download -------------------

    def download_piece(self, piece_idx: int, sink, peers=None) -> int:
        if self.piece_manager.get_piece_length(piece_idx) == 0:
            logger.debug(f"Piece #{piece_idx} is empty, nothing to download")
            return 0
        return self.download_pieces([piece_idx], sink, peers)

    def download(self, sink, peers=None) -> int:
        """Download every piece in order into ``sink``."""
        total = self.download_pieces(range(self.metainfo.piece_count), sink, peers)
        logger.info(f"Download complete: {total} bytes of '{self.metainfo.name}'")
        return total

    def download_pieces(self, piece_indexes, sink, peers=None) -> int:
        if peers is None:
            peers = self.send_tracker_request()
        peers = list(peers)
        if not peers:
            raise TrackerError("No peers to download from")

        candidates = itertools.cycle(peers)
        total = 0
        for piece_idx in piece_indexes:
            total += self._download_with_retry(piece_idx, sink, candidates)
        return total

    def _download_with_retry(self, piece_idx, sink, candidates) -> int:
        attempts = self.config.max_piece_attempts
        for attempt in range(1, attempts + 1):
            try:
                if self.connection is None:
                    self.connection = self.connect_to_peer(next(candidates))
                return self.connection.download_piece(piece_idx, sink)
            except IntegrityMismatchError as e:
                # The stream is still in sync, so the same peer can be asked again
                if attempt == attempts:
                    raise
                logger.warning(f"{e}; retrying piece #{piece_idx} ({attempt}/{attempts})")
            except (ProtocolViolationError, TransportError) as e:
                self.drop_connection()
                if attempt == attempts:
                    raise
                logger.warning(f"{e}; retrying piece #{piece_idx} with the next peer ({attempt}/{attempts})")
