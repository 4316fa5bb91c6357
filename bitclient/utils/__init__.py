from .bencode import Value, ValueKind, decode, decode_exact, encode
from .config import ClientConfig, MessageType
from .errors import *
from .torrent_utils import Metainfo, PeerAddress, TorrentUtils
