class TorrentError(Exception):
    pass


class MalformedInputError(TorrentError):
    """Raised when bencoded data cannot be parsed."""

    def __init__(self, message, offset=None):
        if offset is not None:
            message = f"{message} (at offset {offset})"
        super().__init__(message)
        self.offset = offset


class UnexpectedTypeError(TorrentError):
    """Raised when a decoded value does not have the shape the caller needs."""

    def __init__(self, expected, actual):
        super().__init__(f"Expected {expected}, got {actual}")
        self.expected = expected
        self.actual = actual


class StructuralIntegrityError(TorrentError):
    """Raised when a metainfo file is missing fields or has inconsistent piece digests."""


class ProtocolViolationError(TorrentError):
    """Raised when a peer sends something the wire protocol does not allow at this point."""


class HandshakeError(ProtocolViolationError):
    pass


class TransportError(TorrentError):
    """Raised on socket errors, including a stream closed in the middle of a read."""


class IntegrityMismatchError(TorrentError):
    """Raised when a downloaded piece does not hash to its expected digest."""

    def __init__(self, piece_index, expected, actual):
        super().__init__(f"Hash mismatch for piece #{piece_index}: expected {expected.hex()}, got {actual.hex()}")
        self.piece_index = piece_index


class TrackerError(TorrentError):
    pass
