"""Announcing to HTTP and UDP trackers to discover peers."""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import os
import secrets
import socket
import struct
from dataclasses import dataclass
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode, urlsplit, urlunsplit
from urllib.request import urlopen

from .bencode import BencodeError, decode
from .magnet import Magnet

CLIENT_PREFIX = b"-RS0001-"
LISTEN_PORT = 6881
UDP_DEFAULT_PORT = 6969
UDP_TIMEOUT = 8.0
HTTP_TIMEOUT = 30.0
_PROTOCOL_ID = 0x41727101980
_ACTION_CONNECT = 0
_ACTION_ANNOUNCE = 1
_ACTION_ERROR = 3
_EVENT_STARTED = 2

logger = logging.getLogger(__name__)


class TrackerError(Exception):
    """Raised when a tracker cannot be reached or answers badly."""


_BENCODE_MESSAGE = "Could not decode bencoded response"


@dataclass(frozen=True)
class Peer:
    ip: ipaddress.IPv4Address
    port: int


@dataclass(frozen=True)
class TrackerResponse:
    interval: int
    peers: tuple[Peer, ...]


def generate_peer_id() -> bytes:
    """A 20-byte peer id: the client prefix followed by random bytes."""
    return CLIENT_PREFIX + os.urandom(20 - len(CLIENT_PREFIX))


def parse_peers(data: bytes) -> list[Peer]:
    """Parse compact peer data: 4 address bytes and a 2-byte port each."""
    if len(data) % 6:
        raise TrackerError("Invalid peer data in tracker response")
    return [
        Peer(ip=ipaddress.IPv4Address(ip), port=port)
        for ip, port in struct.iter_unpack(">4sH", data)
    ]


def parse_http_response(data: bytes) -> TrackerResponse:
    """Interpret the bencoded body of an HTTP tracker response."""
    try:
        value, _ = decode(data)
    except BencodeError:
        raise TrackerError(_BENCODE_MESSAGE) from None
    if not isinstance(value, dict):
        raise TrackerError(_BENCODE_MESSAGE)
    reason = value.get(b"failure reason")
    if isinstance(reason, bytes):
        text = reason.decode("utf-8", "replace")
        raise TrackerError(f"Tracker returned a failure reason: {text}")
    interval = value.get(b"interval")
    if not isinstance(interval, int) or isinstance(interval, bool):
        raise TrackerError(_BENCODE_MESSAGE)
    peers = value.get(b"peers")
    if not isinstance(peers, bytes):
        raise TrackerError(_BENCODE_MESSAGE)
    return TrackerResponse(interval=interval, peers=tuple(parse_peers(peers)))


def _receive(sock: socket.socket, size: int) -> bytes:
    try:
        return sock.recv(size)
    except OSError:
        raise TrackerError("UDP tracker response timed out") from None


def _udp_exchange(sock: socket.socket, info_hash: bytes) -> TrackerResponse:
    connect_id = secrets.randbits(32)
    sock.send(struct.pack(">QII", _PROTOCOL_ID, _ACTION_CONNECT, connect_id))
    reply = _receive(sock, 16).ljust(16, b"\0")
    action, transaction_id, connection_id = struct.unpack(">IIQ", reply)
    if action != _ACTION_CONNECT:
        raise TrackerError(
            f"Received unexpected action from UDP tracker. Expected {_ACTION_CONNECT}, got {action}"
        )
    if transaction_id != connect_id:
        raise TrackerError("UDP tracker response transaction_id did not match request")

    announce_id = secrets.randbits(32)
    request = struct.pack(
        ">QII20s20sQQQIIIiH",
        connection_id,
        _ACTION_ANNOUNCE,
        announce_id,
        bytes(info_hash),
        generate_peer_id(),
        0,
        0,
        0,
        _EVENT_STARTED,
        0,
        secrets.randbits(32),
        -1,
        LISTEN_PORT,
    )
    sock.send(request)
    reply = _receive(sock, 8192)
    if len(reply) < 20:
        raise TrackerError(
            f"UDP tracker response was too short. Expected at least 20 bytes, got {len(reply)}"
        )
    action, transaction_id = struct.unpack(">II", reply[:8])
    if action == _ACTION_ERROR:
        try:
            text = reply[8:].decode("utf-8")
        except UnicodeDecodeError:
            raise TrackerError("UDP Socket error: stream did not contain valid UTF-8") from None
        raise TrackerError(f"Tracker returned a failure reason: {text}")
    if action != _ACTION_ANNOUNCE:
        raise TrackerError(
            f"Received unexpected action from UDP tracker. Expected {_ACTION_ANNOUNCE}, got {action}"
        )
    if transaction_id != announce_id:
        raise TrackerError("UDP tracker response transaction_id did not match request")
    (interval,) = struct.unpack(">I", reply[8:12])
    return TrackerResponse(interval=interval, peers=tuple(parse_peers(reply[20:])))


def announce_udp(tracker_url: str, info_hash: bytes) -> TrackerResponse:
    """Announce to a UDP tracker and return the peers it lists."""
    parts = urlsplit(tracker_url)
    try:
        host = parts.hostname
        port = parts.port or UDP_DEFAULT_PORT
    except ValueError:
        raise TrackerError("Failed to parse UDP tracker URL") from None
    if not parts.scheme or not host:
        raise TrackerError("Failed to parse UDP tracker URL")
    try:
        addresses = socket.getaddrinfo(host, port, type=socket.SOCK_DGRAM)
    except OSError as exc:
        raise TrackerError(f"UDP Socket error: {exc}") from exc
    if not addresses:
        raise TrackerError("UDP Socket error: Could not resolve tracker address")
    family, _, _, _, address = addresses[0]
    try:
        with socket.socket(family, socket.SOCK_DGRAM) as sock:
            sock.settimeout(UDP_TIMEOUT)
            sock.connect(address)
            return _udp_exchange(sock, info_hash)
    except OSError as exc:
        raise TrackerError(f"UDP Socket error: {exc}") from exc


def _with_query(url: str, params: list[tuple[str, str]]) -> str:
    parts = urlsplit(url)
    query = "&".join(filter(None, [parts.query, urlencode(params)]))
    return urlunsplit(parts._replace(query=query))


def announce(tracker_url: str, info_hash: bytes) -> TrackerResponse:
    """Announce to an HTTP tracker and return the peers it lists."""
    params = [
        ("port", str(LISTEN_PORT)),
        ("uploaded", "0"),
        ("downloaded", "0"),
        ("left", "0"),
        ("compact", "1"),
        ("event", "started"),
        ("info_hash", bytes(info_hash).decode("utf-8", "replace")),
        ("peer_id", generate_peer_id().decode("utf-8", "replace")),
    ]
    url = _with_query(tracker_url, params)
    logger.info("Announcing to tracker: %s", url)
    try:
        with urlopen(url, timeout=HTTP_TIMEOUT) as response:
            body = response.read()
    except HTTPError as exc:
        try:
            body = exc.read()
        except OSError as read_exc:
            raise TrackerError(f"HTTP request failed: {read_exc}") from read_exc
    except (URLError, OSError, ValueError) as exc:
        raise TrackerError(f"HTTP request failed: {exc}") from exc
    return parse_http_response(body)


async def find_peers(magnet: Magnet) -> tuple[list[Peer], int]:
    """Ask the magnet's trackers in turn; returns peers and the re-announce interval in seconds."""
    for tracker_url in magnet.trackers:
        if tracker_url.startswith("http"):
            call = announce
        elif tracker_url.startswith("udp"):
            call = announce_udp
        else:
            logger.warning("Skipping unsupported tracker protocol: %s", tracker_url)
            continue
        try:
            response = await asyncio.to_thread(call, tracker_url, magnet.info_hash)
        except TrackerError as exc:
            logger.warning("Announce to %s failed: %s", tracker_url, exc)
            continue
        return list(response.peers), response.interval
    raise TrackerError("Could not get a peer list from any tracker.")