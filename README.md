# bitmite

A small BitTorrent client. Give it a magnet link and it finds peers through
the link's trackers (HTTP and UDP), fetches the torrent's metadata from a
peer over the `ut_metadata` extension, then downloads every piece, checks
each one against its SHA-1 hash and writes the files to disk.

It is pure Python with no third-party dependencies. Networking is done with
`asyncio`.

## Installing

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Command line

```
bitmite "magnet:?xt=urn:btih:<40 hex digits>&tr=udp%3A%2F%2Ftracker.example.com%3A6969"
bitmite -o /tmp/torrents "magnet:?xt=urn:btih:..."
```

Options:

- `magnet`: the magnet URI. It must carry a `urn:btih:` info hash written
  as 40 hex digits. Trackers are taken from its `tr` parameters.
- `-o`, `--output-dir`: the directory the content is written under. The
  default is `downloads`. Files go to `<output-dir>/<torrent name>/...`.

The client works in cycles. It keeps up to 50 peer sessions running. It
announces to the trackers again whenever its peer queue is empty or the
tracker's interval has passed. Progress, including each verified piece, is
logged to standard error. When the download ends, the total time is printed.

Exit status:

- `0`: the content was downloaded and written.
- `1`: the magnet link was invalid, a file could not be written, or the
  download did not complete.
- `130`: the run was interrupted.

## Library use

```python
import asyncio
from bitmite.client import download

completed = asyncio.run(download("magnet:?xt=urn:btih:...", "downloads"))
```

`download` returns `True` once every piece is verified and written.

The modules can also be used on their own:

- `bitmite.bencode`: `decode(data)` returns the first value together with
  the bytes that follow it. `encode(value)` writes dictionary keys in sorted
  order. Values map to `bytes`, `int`, `list` and `dict` keyed by `bytes`.
  Malformed input raises `BencodeError`.
- `bitmite.magnet`: `Magnet.from_uri(uri)` gives the info hash, the display
  name and the trackers. Bad input raises `MagnetError`.
- `bitmite.metadata`: `MetadataDownloader` collects metadata pieces. Its
  `assemble_and_verify()` returns the decoded info dictionary, or `None` if
  pieces are missing or the hash does not match.
- `bitmite.torrent`:
  - `Torrent.from_info(info, info_hash)` describes single-file and
    multi-file torrents, and raises `TorrentError` on invalid metadata.
  - `PieceManager` tracks blocks, pending requests and verified pieces.
    It picks the next block from the rarest piece a peer has, using
    `PieceRarity` counts.
  - `PieceManager.write_to_disk(torrent, root)` writes the files.
- `bitmite.tracker`:
  - `announce` (HTTP) and `announce_udp` announce to one tracker.
  - `find_peers(magnet)` tries each tracker of a magnet link in turn.
  - `parse_peers` and `parse_http_response` decode tracker replies.
  - Failures raise `TrackerError`.
- `bitmite.peer`: the peer wire protocol.
  - `Handshake` for the opening handshake.
  - `parse_message` and `encode_message`, and the message classes such as
    `Request`, `PieceMessage` and `MetadataPiece`.
  - `connect` and `PeerConnection` for peer connections.
  - `run_session`, which shares progress between sessions through a
    `SharedState`.

```python
from bitmite.bencode import decode, encode

value, rest = decode(b"d3:cow3:moo4:spaml1:a1:bee")
assert value == {b"cow": b"moo", b"spam": [b"a", b"b"]}
assert rest == b""
assert encode(value) == b"d3:cow3:moo4:spaml1:a1:bee"
```

## What it does not do

- It only downloads. It does not listen for incoming connections, even
  though it announces port 6881. It never answers other peers' requests,
  so it does not seed.
- It does not read `.torrent` files. Its only input is a magnet link with a
  hex-encoded info hash.
- All pieces are held in memory until the download is complete. Nothing is
  written before then, and an interrupted download cannot be resumed.