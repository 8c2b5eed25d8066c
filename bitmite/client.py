"""Command-line client: download a torrent's content from a magnet link."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import time
from collections import deque
from pathlib import Path

from .magnet import Magnet, MagnetError
from .peer import DownloadState, SharedState, connect, run_session
from .tracker import Peer, TrackerError, find_peers, generate_peer_id

TARGET_CONNECTIONS = 50
DEFAULT_ANNOUNCE_INTERVAL = 15 * 60
POLL_INTERVAL = 2.0
DEFAULT_OUTPUT_DIR = "downloads"

logger = logging.getLogger(__name__)


def _download_complete(shared: SharedState) -> bool:
    return (
        shared.state is DownloadState.CONTENT_DOWNLOAD
        and shared.manager is not None
        and shared.manager.is_complete()
    )


async def _serve_peer(peer: Peer, magnet: Magnet, peer_id: bytes, shared: SharedState) -> None:
    """Connect to one peer and run its session; failures only end this peer."""
    try:
        connection = await connect(peer, magnet.info_hash, peer_id)
    except Exception as exc:
        logger.debug("Could not connect to %s:%d: %s", peer.ip, peer.port, exc)
        return
    try:
        await run_session(connection, magnet.info_hash, shared)
    except Exception as exc:
        logger.debug("Session with %s:%d ended: %s", peer.ip, peer.port, exc)


async def download(magnet_uri: str, output_dir: str | Path = DEFAULT_OUTPUT_DIR) -> bool:
    """Download everything a magnet link describes into ``output_dir``.

    Keeps announcing to the magnet's trackers and holding connections to
    their peers until every piece is verified. Returns whether the content
    was completed and written to disk.
    """
    magnet = Magnet.from_uri(magnet_uri)
    peer_id = generate_peer_id()
    shared = SharedState()
    queue: deque[Peer] = deque()
    loop = asyncio.get_running_loop()
    last_announce = loop.time()
    announce_interval: float = DEFAULT_ANNOUNCE_INTERVAL
    tasks: set[asyncio.Task] = set()

    logger.info("Starting connection manager...")
    try:
        while True:
            tasks = {task for task in tasks if not task.done()}
            if _download_complete(shared):
                break

            if not queue or loop.time() - last_announce >= announce_interval:
                logger.info("Re-announcing to tracker...")
                try:
                    peers, interval = await find_peers(magnet)
                except TrackerError as exc:
                    logger.warning("Failed to re-announce: %s", exc)
                else:
                    queue.extend(peers)
                    last_announce = loop.time()
                    announce_interval = interval

            while len(tasks) < TARGET_CONNECTIONS and queue:
                peer = queue.popleft()
                tasks.add(asyncio.create_task(_serve_peer(peer, magnet, peer_id, shared)))

            if not queue and not tasks:
                logger.info("No active peers and queue is empty. Awaiting re-announce.")

            await asyncio.sleep(POLL_INTERVAL)

        await asyncio.gather(*tasks, return_exceptions=True)
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()

    logger.info("All peer sessions concluded.")
    if shared.state is not DownloadState.CONTENT_DOWNLOAD:
        logger.error("Failure. Could not download torrent metadata.")
        return False
    if not shared.manager.is_complete():
        logger.error("Download incomplete.")
        return False
    logger.info("Download complete!")
    shared.manager.write_to_disk(shared.torrent, output_dir)
    return True


def main(argv: list[str] | None = None) -> int:
    """Run the client from the command line; returns the exit status."""
    parser = argparse.ArgumentParser(
        prog="bitmite", description="Download a torrent from a magnet link."
    )
    parser.add_argument("magnet", help="magnet URI carrying a BitTorrent info hash")
    parser.add_argument(
        "-o",
        "--output-dir",
        default=DEFAULT_OUTPUT_DIR,
        help="directory the content is written under (default: %(default)s)",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(message)s")
    started = time.perf_counter()
    print("Starting BitTorrent client...")
    try:
        complete = asyncio.run(download(args.magnet, args.output_dir))
    except MagnetError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    except OSError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130
    print(f"Total execution time: {time.perf_counter() - started:.2f}s")
    return 0 if complete else 1