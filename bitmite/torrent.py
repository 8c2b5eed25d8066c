"""Torrent metadata and piece bookkeeping."""

from __future__ import annotations

import enum
import hashlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .bencode import BencodeValue

BLOCK_SIZE = 16384


class TorrentError(ValueError):
    """Raised when torrent metadata is invalid or pieces are misused."""


@dataclass(frozen=True)
class BlockInfo:
    """Identifies one block of one piece, with its length in bytes."""

    piece_index: int
    block_index: int
    length: int


@dataclass(frozen=True)
class FileInfo:
    """One file of a torrent, relative to the torrent's directory."""

    path: Path
    length: int


class PieceState(enum.Enum):
    NEEDED = "needed"
    IN_PROGRESS = "in_progress"
    HAVE = "have"


@dataclass
class Piece:
    """A piece being downloaded block by block."""

    expected_hash: bytes
    blocks: list[bytes | None] = field(default_factory=list)
    state: PieceState = PieceState.NEEDED
    downloaded_blocks: int = 0

    @classmethod
    def _sized(cls, expected_hash: bytes, size: int) -> Piece:
        return cls(expected_hash=expected_hash, blocks=[None] * -(-size // BLOCK_SIZE))

    def is_complete(self) -> bool:
        """Whether every block has been received."""
        return self.downloaded_blocks == len(self.blocks)

    def assemble(self) -> bytes:
        """Join the blocks of a complete piece."""
        if not self.is_complete():
            raise TorrentError("piece is incomplete")
        return b"".join(block for block in self.blocks if block is not None)

    def verify(self, data: bytes) -> bool:
        """Check data against the piece's SHA-1 hash."""
        return hashlib.sha1(data).digest() == self.expected_hash


def _as_int(value: Any) -> int | None:
    return value if isinstance(value, int) and not isinstance(value, bool) else None


def _as_str(value: Any) -> str | None:
    if not isinstance(value, bytes):
        return None
    try:
        return value.decode("utf-8")
    except UnicodeDecodeError:
        return None


def _parse_files(files_value: Any) -> tuple[FileInfo, ...]:
    if not isinstance(files_value, list):
        raise TorrentError("'files' key is not a list")
    files = []
    for entry in files_value:
        if not isinstance(entry, dict):
            raise TorrentError("File entry in 'files' is not a dictionary")
        length = _as_int(entry.get(b"length"))
        if length is None:
            raise TorrentError("File entry missing 'length'")
        components = entry.get(b"path")
        if not isinstance(components, list):
            raise TorrentError("File entry missing 'path'")
        parts = [_as_str(component) for component in components]
        if any(part is None for part in parts):
            raise TorrentError("Invalid path component")
        files.append(FileInfo(path=Path(*parts), length=length))
    return tuple(files)


@dataclass(frozen=True)
class Torrent:
    """The parts of an info dictionary needed to download its content."""

    info_hash: bytes
    name: str
    piece_length: int
    piece_hashes: tuple[bytes, ...]
    total_length: int
    files: tuple[FileInfo, ...]

    @classmethod
    def from_info(cls, info: BencodeValue, info_hash: bytes) -> Torrent:
        """Build a torrent from a decoded info dictionary."""
        if not isinstance(info, dict):
            raise TorrentError("Invalid info dictionary format")
        piece_length = _as_int(info.get(b"piece length"))
        if piece_length is None:
            raise TorrentError("Missing 'piece length'")
        name = _as_str(info.get(b"name"))
        if name is None:
            raise TorrentError("Missing 'name'")
        pieces_raw = info.get(b"pieces")
        if not isinstance(pieces_raw, bytes):
            raise TorrentError("Missing 'pieces'")
        if len(pieces_raw) % 20:
            raise TorrentError("Invalid 'pieces' length")
        piece_hashes = tuple(pieces_raw[i : i + 20] for i in range(0, len(pieces_raw), 20))

        if b"length" in info:
            length = _as_int(info[b"length"])
            if length is None:
                raise TorrentError("Invalid 'length' in single-file torrent")
            files: tuple[FileInfo, ...] = (FileInfo(path=Path(name), length=length),)
            total_length = length
        elif b"files" in info:
            files = _parse_files(info[b"files"])
            total_length = sum(f.length for f in files)
        else:
            raise TorrentError("Missing 'length' or 'files'")

        return cls(
            info_hash=bytes(info_hash),
            name=name,
            piece_length=piece_length,
            piece_hashes=piece_hashes,
            total_length=total_length,
            files=files,
        )

    def _piece_size(self, piece_index: int) -> int:
        if piece_index == len(self.piece_hashes) - 1:
            return self.total_length % self.piece_length or self.piece_length
        return self.piece_length


class PieceRarity:
    """How many known peers have each piece."""

    def __init__(self, num_pieces: int) -> None:
        self.counts = [0] * num_pieces


def _has_piece(bitfield: bytes, index: int) -> bool:
    byte_index, bit = divmod(index, 8)
    return byte_index < len(bitfield) and (bitfield[byte_index] >> (7 - bit)) & 1 != 0


class PieceManager:
    """Tracks the pieces of a torrent and the blocks requested from peers."""

    def __init__(self, torrent: Torrent) -> None:
        self.pieces = [
            Piece._sized(piece_hash, torrent._piece_size(index))
            for index, piece_hash in enumerate(torrent.piece_hashes)
        ]
        self.pending_requests: list[BlockInfo] = []

    def count_have_pieces(self) -> int:
        return sum(piece.state is PieceState.HAVE for piece in self.pieces)

    def is_complete(self) -> bool:
        return self.count_have_pieces() == len(self.pieces)

    def reset_piece(self, piece_index: int) -> None:
        """Discard everything received for a piece."""
        piece = self.pieces[piece_index]
        piece.state = PieceState.NEEDED
        piece.downloaded_blocks = 0
        piece.blocks = [None] * len(piece.blocks)

    def pending_request_count(self) -> int:
        return len(self.pending_requests)

    def add_pending_request(self, block: BlockInfo) -> None:
        self.pending_requests.append(block)

    def remove_pending_request(self, block: BlockInfo) -> None:
        """Remove the first pending request equal to ``block``, if any."""
        if block in self.pending_requests:
            self.pending_requests.remove(block)

    def reset_pending_requests(self, blocks: list[BlockInfo]) -> None:
        for block in blocks:
            self.remove_pending_request(block)

    def get_block_to_request(
        self, torrent: Torrent, peer_bitfield: bytes, rarity: PieceRarity
    ) -> BlockInfo | None:
        """Pick the next block to ask a peer for, rarest pieces first."""
        candidates = [
            index
            for index, piece in enumerate(self.pieces)
            if piece.state is not PieceState.HAVE and _has_piece(peer_bitfield, index)
        ]
        candidates.sort(key=lambda index: rarity.counts[index])
        for piece_index in candidates:
            piece = self.pieces[piece_index]
            block_index = next(
                (i for i, block in enumerate(piece.blocks) if block is None), None
            )
            if block_index is None:
                continue
            if BlockInfo(piece_index, block_index, 0) in self.pending_requests:
                continue
            if block_index == len(piece.blocks) - 1:
                length = torrent._piece_size(piece_index) % BLOCK_SIZE or BLOCK_SIZE
            else:
                length = BLOCK_SIZE
            return BlockInfo(piece_index, block_index, length)
        return None

    def add_block(self, info: BlockInfo, data: bytes) -> bool:
        """Store a block; returns whether its piece is now complete."""
        piece = self.pieces[info.piece_index]
        if piece.blocks[info.block_index] is None:
            piece.blocks[info.block_index] = bytes(data)
            piece.downloaded_blocks += 1
        return piece.is_complete()

    def write_to_disk(self, torrent: Torrent, root: str | Path = "downloads") -> None:
        """Write the downloaded content under ``root/<torrent name>``."""
        download_dir = Path(root) / torrent.name
        offset = 0
        for file_info in torrent.files:
            path = download_dir / file_info.path
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("wb") as out:
                written = 0
                while written < file_info.length:
                    piece_index, in_piece = divmod(offset, torrent.piece_length)
                    piece_data = self.pieces[piece_index].assemble()
                    count = min(file_info.length - written, torrent.piece_length - in_piece)
                    chunk = piece_data[in_piece : in_piece + count]
                    if len(chunk) != count:
                        raise TorrentError("piece data is shorter than expected")
                    out.write(chunk)
                    written += count
                    offset += count