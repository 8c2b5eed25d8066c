"""Magnet URI parsing."""

from __future__ import annotations

import binascii
from dataclasses import dataclass
from urllib.parse import unquote_to_bytes

_PREFIX = "magnet:?"
_BTIH = "urn:btih:"


class MagnetError(ValueError):
    """Raised when a magnet URI cannot be parsed."""


def _percent_decode(text: str) -> str | None:
    try:
        return unquote_to_bytes(text).decode("utf-8")
    except UnicodeDecodeError:
        return None


@dataclass(frozen=True)
class Magnet:
    """A parsed magnet link."""

    info_hash: bytes
    display_name: str | None = None
    trackers: tuple[str, ...] = ()

    @classmethod
    def from_uri(cls, uri: str) -> Magnet:
        """Parse a ``magnet:?`` URI carrying a BitTorrent info hash."""
        if not uri.startswith(_PREFIX):
            raise MagnetError("Invalid magnet URI: Must start with 'magnet:?'")

        params: dict[str, list[str]] = {}
        for pair in uri[len(_PREFIX) :].split("&"):
            key, sep, value = pair.partition("=")
            if sep:
                params.setdefault(key, []).append(value)

        exact_topics = params.get("xt")
        if not exact_topics:
            raise MagnetError("Magnet URI is missing the 'xt' (info hash) parameter")
        xt = exact_topics[0]
        if not xt.startswith(_BTIH):
            raise MagnetError("Invalid 'xt' parameter format: Must start with 'urn:btih:'")

        try:
            info_hash = binascii.unhexlify(xt[len(_BTIH) :])
        except (binascii.Error, ValueError):
            raise MagnetError("Invalid hex-encoded info hash") from None
        if len(info_hash) != 20:
            raise MagnetError("Info hash must be 20 bytes long")

        names = params.get("dn")
        display_name = _percent_decode(names[0].replace("+", " ")) if names else None

        trackers = tuple(
            decoded
            for decoded in map(_percent_decode, params.get("tr", []))
            if decoded is not None
        )
        return cls(info_hash=info_hash, display_name=display_name, trackers=trackers)