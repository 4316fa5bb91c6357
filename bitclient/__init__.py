from .client import TorrentClient, build_announce_url, discover
from .peer_connection import ConnectionState, PeerConnection
from .piece_manager import PieceManager
