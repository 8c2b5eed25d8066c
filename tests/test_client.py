import asyncio
import contextlib
import hashlib
import socket
import struct
import threading
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import quote

import pytest

from bitmite.bencode import encode
from bitmite.client import download, main
from bitmite.magnet import MagnetError
from bitmite.metadata import METADATA_BLOCK_SIZE
from bitmite.peer import (
    UT_METADATA_ID,
    Bitfield,
    ExtendedHandshake,
    Handshake,
    Interested,
    MetadataPiece,
    MetadataRequest,
    PieceMessage,
    Request,
    Unchoke,
    encode_message,
    parse_message,
)
from bitmite.torrent import BLOCK_SIZE

PIECE_LENGTH = 2 * BLOCK_SIZE
SERVER_UT_ID = 3
SERVER_PEER_ID = b"-TS0001-" + b"0" * 12


@dataclass
class Swarm:
    content: bytes
    info_bytes: bytes
    info_hash: bytes
    piece_count: int


def _make_swarm(content: bytes, layout: dict) -> Swarm:
    hashes = b"".join(
        hashlib.sha1(content[i : i + PIECE_LENGTH]).digest()
        for i in range(0, len(content), PIECE_LENGTH)
    )
    info = dict(layout)
    info[b"piece length"] = PIECE_LENGTH
    info[b"pieces"] = hashes
    info_bytes = encode(info)
    return Swarm(
        content=content,
        info_bytes=info_bytes,
        info_hash=hashlib.sha1(info_bytes).digest(),
        piece_count=len(hashes) // 20,
    )


def _bitfield(count: int) -> bytes:
    bits = bytearray(-(-count // 8))
    for index in range(count):
        bits[index // 8] |= 1 << (7 - index % 8)
    return bytes(bits)


def _responses(swarm: Swarm, message):
    if isinstance(message, ExtendedHandshake):
        return [
            ExtendedHandshake(
                m={b"ut_metadata": SERVER_UT_ID}, metadata_size=len(swarm.info_bytes)
            )
        ]
    if isinstance(message, MetadataRequest):
        start = message.piece * METADATA_BLOCK_SIZE
        chunk = swarm.info_bytes[start : start + METADATA_BLOCK_SIZE]
        return [MetadataPiece(message.piece, len(swarm.info_bytes), chunk)]
    if isinstance(message, Interested):
        return [Bitfield(_bitfield(swarm.piece_count)), Unchoke()]
    if isinstance(message, Request):
        start = message.index * PIECE_LENGTH + message.begin
        return [
            PieceMessage(message.index, message.begin, swarm.content[start : start + message.length])
        ]
    return []


def _peer_handler(swarm: Swarm):
    async def handle(reader, writer):
        try:
            Handshake.from_bytes(await reader.readexactly(68))
            writer.write(Handshake(swarm.info_hash, SERVER_PEER_ID).to_bytes())
            await writer.drain()
            buffer = bytearray()
            while True:
                message = parse_message(buffer)
                if message is None:
                    chunk = await asyncio.wait_for(reader.read(8192), 1.0)
                    if not chunk:
                        break
                    buffer += chunk
                    continue
                for reply in _responses(swarm, message):
                    writer.write(encode_message(reply, UT_METADATA_ID))
                await writer.drain()
        except (asyncio.TimeoutError, asyncio.IncompleteReadError, ConnectionError):
            pass
        finally:
            writer.close()

    return handle


class _TrackerHandler(BaseHTTPRequestHandler):
    def do_GET(self):
        compact = socket.inet_aton("127.0.0.1") + struct.pack(">H", self.server.peer_port)
        body = encode({b"interval": 900, b"peers": compact})
        self.send_response(200)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, *args):
        pass


@contextlib.contextmanager
def _tracker(peer_port: int):
    server = ThreadingHTTPServer(("127.0.0.1", 0), _TrackerHandler)
    server.peer_port = peer_port
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield f"http://127.0.0.1:{server.server_address[1]}/announce"
    finally:
        server.shutdown()
        server.server_close()
        thread.join()


def _content(size: int) -> bytes:
    return bytes((i * 7 + 3) % 251 for i in range(size))


SINGLE_CONTENT = _content(40000)
MULTI_CONTENT = _content(45000)

CASES = [
    (
        SINGLE_CONTENT,
        {b"name": b"sample.bin", b"length": len(SINGLE_CONTENT)},
        [("sample.bin", SINGLE_CONTENT)],
        "sample.bin",
    ),
    (
        MULTI_CONTENT,
        {
            b"name": b"bundle",
            b"files": [
                {b"length": 30000, b"path": [b"a", b"one.bin"]},
                {b"length": 15000, b"path": [b"two.bin"]},
            ],
        },
        [("a/one.bin", MULTI_CONTENT[:30000]), ("two.bin", MULTI_CONTENT[30000:])],
        "bundle",
    ),
]


@pytest.mark.asyncio
@pytest.mark.parametrize("content, layout, expected_files, name", CASES)
async def test_download_fetches_metadata_and_content(
    tmp_path, monkeypatch, content, layout, expected_files, name
):
    monkeypatch.setenv("no_proxy", "*")
    monkeypatch.setenv("NO_PROXY", "*")
    swarm = _make_swarm(content, layout)
    server = await asyncio.start_server(_peer_handler(swarm), "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    try:
        with _tracker(port) as announce_url:
            uri = (
                f"magnet:?xt=urn:btih:{swarm.info_hash.hex()}"
                f"&tr={quote(announce_url, safe='')}"
            )
            complete = await asyncio.wait_for(download(uri, tmp_path), 60)
    finally:
        server.close()
        await server.wait_closed()

    assert complete is True
    for relative, data in expected_files:
        assert (tmp_path / name / relative).read_bytes() == data


@pytest.mark.asyncio
async def test_download_rejects_invalid_magnet(tmp_path):
    with pytest.raises(MagnetError, match="Must start with 'magnet:\\?'"):
        await download("http:?xt=urn:btih:e8f320feb8215d29994b29b472e043b2f8469e77", tmp_path)


@pytest.mark.asyncio
async def test_download_rejects_short_info_hash(tmp_path):
    with pytest.raises(MagnetError, match="Info hash must be 20 bytes long"):
        await download("magnet:?xt=urn:btih:deadbeef", tmp_path)


def test_main_reports_invalid_magnet(tmp_path, capsys):
    status = main(["magnet:?dn=ubuntu-24.04-desktop-amd64.iso", "-o", str(tmp_path)])
    assert status == 1
    err = capsys.readouterr().err
    assert "Magnet URI is missing the 'xt' (info hash) parameter" in err
    assert list(tmp_path.iterdir()) == []


def test_main_requires_magnet_argument():
    with pytest.raises(SystemExit) as excinfo:
        main([])
    assert excinfo.value.code == 2