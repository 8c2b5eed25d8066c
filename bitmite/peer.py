"""Peer wire protocol: handshakes, messages and download sessions."""

from __future__ import annotations

import asyncio
import enum
import logging
import struct
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any, Union

from .bencode import BencodeError, decode, encode
from .metadata import MetadataDownloader
from .torrent import BLOCK_SIZE, BlockInfo, PieceManager, PieceRarity, PieceState, Torrent
from .tracker import Peer

PROTOCOL_STRING = b"BitTorrent protocol"
HANDSHAKE_LENGTH = 68
EXTENSION_BIT = 0x10
UT_METADATA_ID = 1
CONNECT_TIMEOUT = 5.0
SESSION_TIMEOUT = 180.0
READ_TIMEOUT = 20.0
IDLE_WAIT = 0.2
MAX_PIPELINED_REQUESTS = 5
_READ_SIZE = 8 * 1024
_EXTENDED = 20

logger = logging.getLogger(__name__)


class PeerError(Exception):
    """Raised when a peer cannot be reached or breaks the protocol."""


@dataclass(frozen=True)
class Handshake:
    """The opening handshake of a peer connection."""

    info_hash: bytes
    peer_id: bytes
    supports_extended: bool = False

    def to_bytes(self) -> bytes:
        """Serialize, always advertising the extension protocol."""
        reserved = bytearray(8)
        reserved[5] |= EXTENSION_BIT
        return (
            bytes([len(PROTOCOL_STRING)])
            + PROTOCOL_STRING
            + bytes(reserved)
            + bytes(self.info_hash)
            + bytes(self.peer_id)
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> Handshake:
        """Parse a 68-byte handshake."""
        if len(data) != HANDSHAKE_LENGTH:
            raise PeerError("Handshake failed: peer sent invalid data")
        if data[0] != len(PROTOCOL_STRING) or data[1:20] != PROTOCOL_STRING:
            raise PeerError("Invalid handshake")
        return cls(
            info_hash=bytes(data[28:48]),
            peer_id=bytes(data[48:68]),
            supports_extended=bool(data[25] & EXTENSION_BIT),
        )

    @classmethod
    async def read_from(cls, reader: asyncio.StreamReader) -> Handshake:
        """Read and parse a handshake from a stream."""
        try:
            data = await reader.readexactly(HANDSHAKE_LENGTH)
        except asyncio.IncompleteReadError:
            raise PeerError("Handshake failed: peer sent invalid data") from None
        except OSError as exc:
            raise PeerError(f"TCP connection failed: {exc}") from exc
        return cls.from_bytes(data)


@dataclass(frozen=True)
class KeepAlive:
    pass


@dataclass(frozen=True)
class Choke:
    pass


@dataclass(frozen=True)
class Unchoke:
    pass


@dataclass(frozen=True)
class Interested:
    pass


@dataclass(frozen=True)
class NotInterested:
    pass


@dataclass(frozen=True)
class Have:
    piece_index: int


@dataclass(frozen=True)
class Bitfield:
    bitfield: bytes


@dataclass(frozen=True)
class Request:
    index: int
    begin: int
    length: int


@dataclass(frozen=True)
class PieceMessage:
    index: int
    begin: int
    block: bytes


@dataclass(frozen=True)
class Cancel:
    index: int
    begin: int
    length: int


@dataclass(frozen=True)
class ExtendedHandshake:
    """Extension-protocol handshake; ``m`` maps extension names to ids."""

    m: dict = field(default_factory=lambda: {b"ut_metadata": UT_METADATA_ID})
    metadata_size: int | None = None


@dataclass(frozen=True)
class MetadataRequest:
    piece: int


@dataclass(frozen=True)
class MetadataPiece:
    piece: int
    total_size: int
    data: bytes


@dataclass(frozen=True)
class MetadataReject:
    piece: int


Message = Union[
    KeepAlive,
    Choke,
    Unchoke,
    Interested,
    NotInterested,
    Have,
    Bitfield,
    Request,
    PieceMessage,
    Cancel,
    ExtendedHandshake,
    MetadataRequest,
    MetadataPiece,
    MetadataReject,
]


class DownloadState(enum.Enum):
    METADATA_PENDING = "metadata_pending"
    METADATA_IN_PROGRESS = "metadata_in_progress"
    CONTENT_DOWNLOAD = "content_download"


@dataclass
class SharedState:
    """State shared by every peer session of one download."""

    state: DownloadState = DownloadState.METADATA_PENDING
    torrent: Torrent | None = None
    manager: PieceManager | None = None
    rarity: PieceRarity | None = None


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _unpack_u32(body: bytes, count: int) -> tuple[int, ...]:
    try:
        return struct.unpack_from(">" + "I" * count, body)
    except struct.error:
        raise PeerError("truncated message") from None


def _decode_extended(body: bytes) -> Message | None:
    if not body:
        raise PeerError("truncated extended message")
    extended_id, payload = body[0], body[1:]
    if extended_id == 0:
        try:
            value, _ = decode(payload)
        except BencodeError:
            raise PeerError("bencode error") from None
        if not isinstance(value, dict):
            raise PeerError("extended handshake is not a dictionary")
        m_value = value.get(b"m")
        m = (
            {key: ident for key, ident in m_value.items() if _is_int(ident)}
            if isinstance(m_value, dict)
            else {}
        )
        size = value.get(b"metadata_size")
        return ExtendedHandshake(m=m, metadata_size=size if _is_int(size) else None)

    try:
        value, rest = decode(payload)
    except BencodeError:
        return None
    if not isinstance(value, dict):
        raise PeerError("metadata message is not a dictionary")
    msg_type = value.get(b"msg_type")
    piece = value.get(b"piece")
    if not _is_int(msg_type) or not _is_int(piece):
        raise PeerError("metadata message is missing 'msg_type' or 'piece'")
    if msg_type == 0:
        return MetadataRequest(piece)
    if msg_type == 1:
        total = value.get(b"total_size")
        return MetadataPiece(piece, total if _is_int(total) else 0, bytes(rest))
    if msg_type == 2:
        return MetadataReject(piece)
    return None


def _decode_payload(payload: bytes) -> Message | None:
    message_id, body = payload[0], payload[1:]
    if message_id == 0:
        return Choke()
    if message_id == 1:
        return Unchoke()
    if message_id == 2:
        return Interested()
    if message_id == 3:
        return NotInterested()
    if message_id == 4:
        return Have(*_unpack_u32(body, 1))
    if message_id == 5:
        return Bitfield(bytes(body))
    if message_id == 6:
        return Request(*_unpack_u32(body, 3))
    if message_id == 7:
        index, begin = _unpack_u32(body, 2)
        return PieceMessage(index, begin, bytes(body[8:]))
    if message_id == 8:
        return Cancel(*_unpack_u32(body, 3))
    if message_id == _EXTENDED:
        return _decode_extended(body)
    return None


def parse_message(buffer: bytearray) -> Message | None:
    """Take the next complete message off the front of ``buffer``.

    Returns ``None`` when more data is needed. Messages that are not
    understood are consumed and skipped.
    """
    while True:
        if len(buffer) < 4:
            return None
        (length,) = struct.unpack_from(">I", buffer)
        if length == 0:
            del buffer[:4]
            return KeepAlive()
        if len(buffer) < 4 + length:
            return None
        payload = bytes(buffer[4 : 4 + length])
        del buffer[: 4 + length]
        message = _decode_payload(payload)
        if message is not None:
            return message


def _frame(body: bytes) -> bytes:
    return struct.pack(">I", len(body)) + body


def _require_ut(ut_metadata_id: int | None) -> int:
    if ut_metadata_id is None:
        raise PeerError("Missing ut_metadata_id")
    return ut_metadata_id


def _extended(ut_metadata_id: int | None, header: dict, data: bytes = b"") -> bytes:
    ut = _require_ut(ut_metadata_id)
    return _frame(bytes([_EXTENDED, ut]) + encode(header) + bytes(data))


def encode_message(message: Message, ut_metadata_id: int | None = None) -> bytes:
    """Serialize a message with its length prefix.

    Metadata messages are sent under the peer's ``ut_metadata`` id.
    """
    match message:
        case KeepAlive():
            return b"\0\0\0\0"
        case Choke():
            return _frame(b"\x00")
        case Unchoke():
            return _frame(b"\x01")
        case Interested():
            return _frame(b"\x02")
        case NotInterested():
            return _frame(b"\x03")
        case Have(piece_index):
            return _frame(b"\x04" + struct.pack(">I", piece_index))
        case Bitfield(bits):
            return _frame(b"\x05" + bytes(bits))
        case Request(index, begin, length):
            return _frame(b"\x06" + struct.pack(">III", index, begin, length))
        case PieceMessage(index, begin, block):
            return _frame(b"\x07" + struct.pack(">II", index, begin) + bytes(block))
        case Cancel(index, begin, length):
            return _frame(b"\x08" + struct.pack(">III", index, begin, length))
        case ExtendedHandshake(m, metadata_size):
            header: dict = {b"m": dict(m)}
            if metadata_size is not None:
                header[b"metadata_size"] = metadata_size
            return _frame(bytes([_EXTENDED, 0]) + encode(header))
        case MetadataRequest(piece):
            return _extended(ut_metadata_id, {b"msg_type": 0, b"piece": piece})
        case MetadataPiece(piece, total_size, data):
            header = {b"msg_type": 1, b"piece": piece, b"total_size": total_size}
            return _extended(ut_metadata_id, header, data)
        case MetadataReject(piece):
            return _extended(ut_metadata_id, {b"msg_type": 2, b"piece": piece})
    raise TypeError(f"not a peer message: {message!r}")


class PeerConnection:
    """A connection to a peer that has completed the BitTorrent handshake."""

    def __init__(self, reader: asyncio.StreamReader, writer: Any) -> None:
        self.reader = reader
        self.writer = writer
        self._buffer = bytearray()

    async def __aenter__(self) -> PeerConnection:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def read_message(self) -> Message | None:
        """Read the next message; ``None`` when the peer closed cleanly."""
        while True:
            message = parse_message(self._buffer)
            if message is not None:
                return message
            try:
                chunk = await self.reader.read(_READ_SIZE)
            except OSError as exc:
                raise PeerError(f"TCP connection failed: {exc}") from exc
            if not chunk:
                if self._buffer:
                    raise PeerError("connection reset")
                return None
            self._buffer += chunk

    async def send_message(self, message: Message, ut_metadata_id: int | None = None) -> None:
        """Send one message to the peer."""
        data = encode_message(message, ut_metadata_id)
        try:
            self.writer.write(data)
            await self.writer.drain()
        except OSError as exc:
            raise PeerError(f"TCP connection failed: {exc}") from exc

    async def perform_extended_handshake(self) -> tuple[int | None, int | None]:
        """Exchange extension handshakes.

        Returns the peer's ``ut_metadata`` id and metadata size, either of
        which may be missing.
        """
        await self.send_message(ExtendedHandshake())
        response = await self.read_message()
        if response is None:
            raise PeerError("Peer closed connection")
        if not isinstance(response, ExtendedHandshake):
            raise PeerError("Expected extended handshake")
        ut_id = response.m.get(b"ut_metadata")
        return (ut_id & 0xFF if ut_id is not None else None), response.metadata_size

    async def download_metadata(
        self, info_hash: bytes, ut_metadata_id: int, metadata_size: int
    ) -> Any:
        """Fetch and verify the info dictionary from this peer."""
        downloader = MetadataDownloader(info_hash, metadata_size)
        next_request = 0
        while True:
            if next_request < downloader.num_pieces():
                await self.send_message(MetadataRequest(next_request), ut_metadata_id)
                next_request += 1
            elif downloader.is_complete():
                info = downloader.assemble_and_verify()
                if info is None:
                    raise PeerError("Metadata hash mismatch")
                return info
            message = await self.read_message()
            if message is None:
                raise PeerError("Peer closed")
            if isinstance(message, MetadataPiece):
                downloader.add_piece(message.piece, message.data)

    async def close(self) -> None:
        """Close the underlying stream."""
        self.writer.close()
        with suppress(OSError):
            await self.writer.wait_closed()


async def connect(peer: Peer, info_hash: bytes, peer_id: bytes) -> PeerConnection:
    """Open a TCP connection to a peer and exchange handshakes."""
    try:
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(str(peer.ip), peer.port), CONNECT_TIMEOUT
        )
    except asyncio.TimeoutError:
        raise PeerError("Peer connection timed out") from None
    except OSError as exc:
        raise PeerError(f"TCP connection failed: {exc}") from exc

    connection = PeerConnection(reader, writer)
    try:
        ours = Handshake(bytes(info_hash), bytes(peer_id))
        writer.write(ours.to_bytes())
        await writer.drain()
        theirs = await Handshake.read_from(reader)
        if theirs.info_hash != ours.info_hash:
            raise PeerError("Peer is for a different torrent (info_hash mismatch)")
        if not theirs.supports_extended:
            raise PeerError("Handshake failed: peer sent invalid data")
    except OSError as exc:
        await connection.close()
        raise PeerError(f"TCP connection failed: {exc}") from exc
    except BaseException:
        await connection.close()
        raise
    return connection


@dataclass
class _PeerState:
    am_interested: bool = False
    peer_choking: bool = True
    bitfield: bytearray | None = None
    pending_blocks: list[BlockInfo] = field(default_factory=list)


async def _obtain_metadata(
    connection: PeerConnection, info_hash: bytes, shared: SharedState, ut_id: int, size: int
) -> None:
    shared.state = DownloadState.METADATA_IN_PROGRESS
    try:
        info = await connection.download_metadata(info_hash, ut_id, size)
        torrent = Torrent.from_info(info, info_hash)
    except BaseException:
        shared.state = DownloadState.METADATA_PENDING
        raise
    shared.torrent = torrent
    shared.manager = PieceManager(torrent)
    shared.rarity = PieceRarity(len(torrent.piece_hashes))
    shared.state = DownloadState.CONTENT_DOWNLOAD
    logger.info("Peer completed metadata download.")


async def _fill_pipeline(
    connection: PeerConnection, peer: _PeerState, shared: SharedState
) -> None:
    manager, torrent, rarity = shared.manager, shared.torrent, shared.rarity
    while manager.pending_request_count() < MAX_PIPELINED_REQUESTS:
        if manager.is_complete():
            break
        block = manager.get_block_to_request(torrent, bytes(peer.bitfield), rarity)
        if block is None:
            break
        manager.add_pending_request(block)
        peer.pending_blocks.append(block)
        await connection.send_message(
            Request(block.piece_index, block.block_index * BLOCK_SIZE, block.length)
        )


def _receive_block(message: PieceMessage, peer: _PeerState, shared: SharedState) -> None:
    block_index = message.begin // BLOCK_SIZE
    for position, pending in enumerate(peer.pending_blocks):
        if (pending.piece_index, pending.block_index) == (message.index, block_index):
            del peer.pending_blocks[position]
            break
    manager = shared.manager
    if message.index >= len(manager.pieces):
        return
    piece = manager.pieces[message.index]
    if block_index >= len(piece.blocks):
        return
    info = BlockInfo(message.index, block_index, len(message.block))
    manager.remove_pending_request(info)
    if not manager.add_block(info, message.block):
        return
    if piece.verify(piece.assemble()):
        piece.state = PieceState.HAVE
        logger.info(
            "Piece #%d is VALID. (%d/%d)",
            message.index,
            manager.count_have_pieces(),
            len(manager.pieces),
        )
    else:
        manager.reset_piece(message.index)


def _handle_message(message: Message, peer: _PeerState, shared: SharedState) -> None:
    downloading = shared.state is DownloadState.CONTENT_DOWNLOAD
    if isinstance(message, Choke):
        peer.peer_choking = True
        if downloading:
            shared.manager.reset_pending_requests(peer.pending_blocks)
        peer.pending_blocks.clear()
    elif isinstance(message, Unchoke):
        peer.peer_choking = False
    elif isinstance(message, Bitfield):
        peer.bitfield = bytearray(message.bitfield)
        if downloading:
            counts = shared.rarity.counts
            for index in range(len(counts)):
                byte_index, bit = divmod(index, 8)
                if byte_index < len(message.bitfield) and (
                    message.bitfield[byte_index] >> (7 - bit)
                ) & 1:
                    counts[index] += 1
    elif isinstance(message, Have):
        byte_index, bit = divmod(message.piece_index, 8)
        if peer.bitfield is not None and byte_index < len(peer.bitfield):
            peer.bitfield[byte_index] |= 1 << (7 - bit)
        if downloading and message.piece_index < len(shared.rarity.counts):
            shared.rarity.counts[message.piece_index] += 1
    elif isinstance(message, PieceMessage) and downloading:
        _receive_block(message, peer, shared)


async def _session(connection: PeerConnection, info_hash: bytes, shared: SharedState) -> None:
    ut_id, size = await connection.perform_extended_handshake()
    if (
        shared.state is DownloadState.METADATA_PENDING
        and ut_id is not None
        and size is not None
    ):
        await _obtain_metadata(connection, info_hash, shared, ut_id, size)

    peer = _PeerState()
    loop = asyncio.get_running_loop()
    deadline = loop.time() + SESSION_TIMEOUT
    while loop.time() < deadline:
        if shared.state is not DownloadState.CONTENT_DOWNLOAD:
            await asyncio.sleep(IDLE_WAIT)
            continue
        if not peer.am_interested:
            await connection.send_message(Interested())
            peer.am_interested = True
        if not peer.peer_choking and peer.bitfield is not None:
            await _fill_pipeline(connection, peer, shared)
        try:
            message = await asyncio.wait_for(connection.read_message(), READ_TIMEOUT)
        except (asyncio.TimeoutError, PeerError):
            message = None
        if message is None:
            shared.manager.reset_pending_requests(peer.pending_blocks)
            break
        _handle_message(message, peer, shared)


async def run_session(connection: PeerConnection, info_hash: bytes, shared: SharedState) -> None:
    """Serve one peer: fetch metadata if nobody is yet, then download pieces.

    The connection is closed when the session ends.
    """
    try:
        await _session(connection, info_hash, shared)
    finally:
        await connection.close()