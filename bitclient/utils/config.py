from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from .torrent_utils import HASH_LENGTH, TorrentUtils


class MessageType(Enum):
    CHOKE = 0
    UNCHOKE = 1
    INTERESTED = 2
    NOT_INTERESTED = 3
    HAVE = 4
    BITFIELD = 5
    REQUEST = 6
    PIECE = 7
    CANCEL = 8
    PORT = 9
    EXTENDED = 20


# Ids the download engine understands; anything else is read and dropped.
RECOGNIZED_MESSAGES = frozenset({
    MessageType.UNCHOKE,
    MessageType.INTERESTED,
    MessageType.BITFIELD,
    MessageType.REQUEST,
    MessageType.PIECE,
})

PROTOCOL_STRING = b"BitTorrent protocol"
RESERVED_BYTES = b"\x00" * 8
BLOCK_SIZE = 16 * 1024
MAX_MESSAGE_LENGTH = 2 * 1024 * 1024
RECV_CHUNK_SIZE = 64 * 1024
DEFAULT_PORT = 6881

# One identifier per process, reused for every tracker request and handshake.
DEFAULT_PEER_ID = TorrentUtils.generate_peer_id().encode('ascii')


class ClientConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    peer_id: bytes = Field(default=DEFAULT_PEER_ID, min_length=HASH_LENGTH, max_length=HASH_LENGTH)
    port: int = Field(default=DEFAULT_PORT, ge=1, le=65535)
    block_size: int = Field(default=BLOCK_SIZE, gt=0)
    socket_timeout: float | None = Field(default=None, gt=0)    # None blocks forever
    verify_info_hash: bool = True
    max_piece_attempts: int = Field(default=1, ge=1)
