"""A small BitTorrent client: bencode, magnet links, trackers, peer protocol and downloads."""

__version__ = "0.1.0"
__all__ = ["bencode", "magnet", "metadata", "torrent", "tracker", "peer", "client"]