"""Assembly of torrent metadata fetched piece by piece from peers."""

from __future__ import annotations

import hashlib
import logging

from .bencode import BencodeError, BencodeValue, decode

METADATA_BLOCK_SIZE = 16384

logger = logging.getLogger(__name__)


class MetadataDownloader:
    """Collects metadata pieces and verifies them against the info hash."""

    def __init__(self, info_hash: bytes, size: int) -> None:
        self.info_hash = bytes(info_hash)
        self.size = size
        self._pieces: list[bytes | None] = [None] * -(-size // METADATA_BLOCK_SIZE)

    def num_pieces(self) -> int:
        """Number of metadata pieces expected."""
        return len(self._pieces)

    def add_piece(self, piece_index: int, data: bytes) -> None:
        """Store a received piece; indices outside the range are ignored."""
        if 0 <= piece_index < len(self._pieces):
            self._pieces[piece_index] = bytes(data)

    def is_complete(self) -> bool:
        """Whether every piece has been received."""
        return all(piece is not None for piece in self._pieces)

    def assemble_and_verify(self) -> BencodeValue | None:
        """Join the pieces, check the SHA-1 and decode the info dictionary.

        Returns ``None`` if pieces are missing, the hash does not match,
        or the data is not valid bencode.
        """
        if not self.is_complete():
            return None
        full_data = b"".join(piece for piece in self._pieces if piece is not None)
        full_data = full_data[: self.size]
        if hashlib.sha1(full_data).digest() != self.info_hash:
            logger.warning("Metadata hash mismatch!")
            return None
        try:
            value, _ = decode(full_data)
        except BencodeError:
            return None
        return value