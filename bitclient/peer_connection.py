import logging
import socket
import struct
from enum import Enum
from typing import NamedTuple

from .piece_manager import PieceManager
from .utils import HandshakeError, PeerAddress, ProtocolViolationError, TransportError
from .utils.config import (HASH_LENGTH, MAX_MESSAGE_LENGTH, PROTOCOL_STRING, RECOGNIZED_MESSAGES, RECV_CHUNK_SIZE,
                           RESERVED_BYTES, MessageType)

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    AWAITING_BITFIELD = 0
    AWAITING_UNCHOKE = 1
    READY = 2


class Message(NamedTuple):
    type: MessageType
    payload: bytes = b''


class PeerConnection:
    """One stream connection to one peer.

    The socket belongs to this object and is closed with it. Messages are
    strictly request/response paired: every ``Request`` is answered by the
    matching ``Piece`` before the next one is sent.
    """

    def __init__(self, sock: socket.socket, info_hash: bytes, peer_id: bytes, piece_manager: PieceManager,
                 verify_info_hash=True, address: PeerAddress = None):
        self.sock = sock
        self.info_hash = info_hash
        self.peer_id = peer_id
        self.piece_manager = piece_manager
        self.verify_info_hash = verify_info_hash
        # A Piece message carries the 8 byte header and the message id on top of the block
        self.max_message_length = max(MAX_MESSAGE_LENGTH, piece_manager.block_size + 9)
        self.address = address

        self.protocol = None
        self.remote_info_hash = None
        self.remote_peer_id = None
        self.state = ConnectionState.AWAITING_BITFIELD
        self.closed = False

    @classmethod
    def open(cls, address: PeerAddress, info_hash, peer_id, piece_manager,
             timeout=None, verify_info_hash=True) -> 'PeerConnection':
        """Connect to ``address`` and complete the handshake."""
        logger.info(f"Connecting to peer {address}")
        try:
            sock = socket.create_connection(tuple(address), timeout=timeout)
        except OSError as e:
            raise TransportError(f"Failed to connect to peer {address}: {e}") from e

        connection = cls(sock, info_hash, peer_id, piece_manager, verify_info_hash, address)
        try:
            connection.handshake()
        except Exception:
            connection.close()
            raise
        return connection

    @property
    def is_ready(self):
        return self.state is ConnectionState.READY

    def __str__(self):
        return str(self.address) if self.address else 'peer'

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def close(self):
        if not self.closed:
            self.closed = True
            self.sock.close()

    # -------------------------------------------------
    # ------------------- Handshake -------------------

    def handshake(self):
        handshake_message = (
            struct.pack('>B', len(PROTOCOL_STRING))
            + PROTOCOL_STRING
            + RESERVED_BYTES
            + self.info_hash
            + self.peer_id
        )
        self.send_raw(handshake_message)

        try:
            protocol_length = self.recv_exactly(1)[0]
            self.protocol = self.recv_exactly(protocol_length)
            self.recv_exactly(len(RESERVED_BYTES))
            self.remote_info_hash = self.recv_exactly(HASH_LENGTH)
            self.remote_peer_id = self.recv_exactly(HASH_LENGTH)
        except TransportError as e:
            raise HandshakeError(f"Incomplete handshake from {self}: {e}") from e

        if self.remote_info_hash != self.info_hash:
            if self.verify_info_hash:
                raise HandshakeError(f"Different info hash from {self}. Connection Severed. "
                                     f"{self.remote_info_hash.hex()} != {self.info_hash.hex()}")
            logger.warning(f"Peer {self} answered with info hash {self.remote_info_hash.hex()}, continuing unverified")

        logger.info(f"Handshake with {self} complete, remote peer id {self.remote_peer_id.hex()}")

    # -------------------------------------------------
    # -------------------- Framing --------------------

    def send_raw(self, data: bytes):
        try:
            self.sock.sendall(data)
        except OSError as e:
            raise TransportError(f"Error sending to peer {self}: {e}") from e

    def recv_exactly(self, size: int) -> bytes:
        buffer = bytearray()
        while len(buffer) < size:
            try:
                chunk = self.sock.recv(min(size - len(buffer), RECV_CHUNK_SIZE))
            except OSError as e:
                raise TransportError(f"Error receiving from peer {self}: {e}") from e
            if not chunk:
                raise TransportError(f"Connection closed by {self} after {len(buffer)} of {size} bytes")
            buffer += chunk
        return bytes(buffer)

    def send_message(self, message_type: MessageType, payload: bytes = b''):
        length_prefix = struct.pack('>I', len(payload) + 1)
        self.send_raw(length_prefix + struct.pack('>B', message_type.value) + payload)

    def recv_message(self) -> Message:
        """Read the next message the engine understands, dropping keepalives and unknown ids."""
        while True:
            message_length = struct.unpack('>I', self.recv_exactly(4))[0]
            if message_length == 0:
                logger.debug(f"Keepalive from {self}")
                continue
            if message_length > self.max_message_length:
                raise ProtocolViolationError(
                    f"Peer {self} announced a {message_length} byte message, limit is {self.max_message_length}")

            message_id = self.recv_exactly(1)[0]
            payload = self.recv_exactly(message_length - 1)

            try:
                message_type = MessageType(message_id)
            except ValueError:
                message_type = None
            if message_type not in RECOGNIZED_MESSAGES:
                logger.debug(f"Skipping message id {message_id} ({len(payload)} bytes) from {self}")
                continue
            return Message(message_type, payload)

    def expect_message(self, message_type: MessageType) -> Message:
        message = self.recv_message()
        if message.type is not message_type:
            raise ProtocolViolationError(f"Expected {message_type.name} message from {self}, got {message.type.name}")
        return message

    def send_interested(self):
        self.send_message(MessageType.INTERESTED)

    def send_request(self, piece_idx, begin, length):
        self.send_message(MessageType.REQUEST, struct.pack('>III', piece_idx, begin, length))

    @staticmethod
    def parse_piece_payload(payload: bytes) -> tuple[int, int, bytes]:
        if len(payload) < 8:
            raise ProtocolViolationError(f"Piece message payload too short ({len(payload)} bytes)")
        piece_idx, begin = struct.unpack('>II', payload[:8])
        return piece_idx, begin, payload[8:]

    # -------------------------------------------------
    # -------------------- Download -------------------

    def prepare(self):
        """Bitfield -> Interested -> Unchoke, once per connection."""
        if self.state is ConnectionState.AWAITING_BITFIELD:
            self.expect_message(MessageType.BITFIELD)
            self.state = ConnectionState.AWAITING_UNCHOKE
            self.send_interested()

        if self.state is ConnectionState.AWAITING_UNCHOKE:
            self.expect_message(MessageType.UNCHOKE)
            self.state = ConnectionState.READY
            logger.info(f"Unchoked by {self}")

    def download_piece(self, piece_idx: int, sink) -> int:
        """Download, verify and write one piece to ``sink``; returns the number of bytes written.

        Nothing reaches the sink unless the whole piece matches its digest.
        Indexes past the last piece download nothing.
        """
        block_requests = self.piece_manager.get_block_requests(piece_idx)
        if not block_requests:
            logger.debug(f"Piece #{piece_idx} is empty, nothing to download")
            return 0

        self.prepare()
        self.piece_manager.add_requesting_blocks(piece_idx, block_requests)

        for index, begin, length in block_requests:
            logger.debug(f"Requesting block {(index, begin, length)} from {self}")
            self.send_request(index, begin, length)

            message = self.expect_message(MessageType.PIECE)
            resp_index, resp_begin, block = self.parse_piece_payload(message.payload)
            if (resp_index, resp_begin) != (index, begin):
                raise ProtocolViolationError(
                    f"Requested block ({index}, {begin}) but {self} sent ({resp_index}, {resp_begin})")
            self.piece_manager.add_block(resp_index, resp_begin, block)

        piece_data = self.piece_manager.merge_piece()
        sink.write(piece_data)
        return len(piece_data)
