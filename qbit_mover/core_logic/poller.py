"""Per-server polling loop.

A cycle fetches a snapshot from the torrent client, keeps the completed
torrents the ledger has not seen moved, and moves them one at a time behind
the server's rate limiter. Failures for one torrent are logged, recorded in
the ledger and retried on the next cycle; they never stop the others.
"""
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

from .category_resolver import content_root, localize_path, resolve
from .move_ledger import MoveLedger
from .mover import Mover
from .rate_limiter import RateLimiter
from ..clients.base import TorrentClient, TorrentSnapshot
from ..config_manager import ServerConfig
from ..utils import AuthError, MoveError, ResolutionError, TransportError


@dataclass
class CycleResult:
    """Summary of one poll cycle for one server."""
    server: str
    listed: int = 0
    candidates: int = 0
    moved: int = 0
    failed: int = 0
    aborted: bool = False
    interrupted: bool = False


class Poller:
    """Runs the fetch -> filter -> resolve -> move -> record loop for one server.

    Everything inside a cycle is sequential. The shutdown event is checked
    between steps and between torrents, never in the middle of a move.
    """

    def __init__(self, server: ServerConfig, client: TorrentClient, ledger: MoveLedger,
                 rate_limiter: RateLimiter, mover: Optional[Mover] = None,
                 poll_interval: float = 60.0,
                 shutdown_event: Optional[threading.Event] = None,
                 server_source: Optional[Callable[[], Optional[ServerConfig]]] = None):
        self.server = server
        self.client = client
        self.ledger = ledger
        self.rate_limiter = rate_limiter
        self.mover = mover or Mover()
        self.poll_interval = poll_interval
        self.shutdown_event = shutdown_event or threading.Event()
        self._server_source = server_source
        self.client.attach_rate_limiter(rate_limiter)

    def _stopping(self) -> bool:
        return self.shutdown_event.is_set()

    def run(self) -> None:
        """Polls until the shutdown event is set."""
        logging.info(f"STATE: [{self.server.name}] Poller started (interval {self.poll_interval}s, "
                     f"rate limit {self.rate_limiter.delay}s).")
        while not self._stopping():
            try:
                self.run_cycle()
            except Exception as e:
                logging.error(f"STATE: [{self.server.name}] Unexpected error during poll cycle: {e}", exc_info=True)
            if self.shutdown_event.wait(self.poll_interval):
                break
        logging.info(f"STATE: [{self.server.name}] Poller stopped.")

    def run_cycle(self) -> CycleResult:
        """Runs one complete cycle and returns its summary."""
        self._refresh_server()
        result = CycleResult(server=self.server.name)

        snapshots = self._fetch()
        if snapshots is None:
            result.aborted = True
            return result
        result.listed = len(snapshots)

        candidates = self._filter(snapshots)
        result.candidates = len(candidates)
        if candidates:
            logging.info(f"STATE: [{self.server.name}] {len(candidates)} completed torrent(s) to move.")

        for snapshot in candidates:
            # acquire() only refuses once shutdown has been requested.
            if self._stopping() or not self.rate_limiter.acquire():
                logging.info(f"STATE: [{self.server.name}] Shutdown requested. Leaving remaining torrents for later.")
                result.interrupted = True
                break
            try:
                moved = self._process(snapshot)
            except Exception as e:
                logging.error(f"An exception was thrown for torrent '{snapshot.name}' "
                              f"({snapshot.hash}) on [{self.server.name}]: {e}", exc_info=True)
                self._record_failure(snapshot, None, e)
                moved = False
            if moved:
                result.moved += 1
            else:
                result.failed += 1

        logging.info(f"STATE: [{self.server.name}] Cycle finished: {result.listed} listed, "
                     f"{result.candidates} to move, {result.moved} moved, {result.failed} failed.")
        return result

    def _refresh_server(self) -> None:
        """Picks up edited settings (categories, paths, delay) from a reloaded config."""
        if self._server_source is None:
            return
        latest = self._server_source()
        if latest is not None and latest != self.server:
            logging.info(f"CONFIG: [{self.server.name}] Applying updated server settings.")
            self.server = latest
            self.rate_limiter.delay = max(0.0, latest.rate_limit_delay)

    def _fetch(self) -> Optional[List[TorrentSnapshot]]:
        """Authenticates if needed and lists torrents. Returns None when the cycle must be skipped.

        The client gates each of its round trips, re-logins included, through the rate limiter.
        """
        try:
            if not self.client.has_session:
                self.client.authenticate()
            if self._stopping():
                return None
            return self.client.list_torrents()
        except AuthError as e:
            logging.error(f"CLIENT: [{self.server.name}] Authentication failed, skipping this cycle: {e}")
        except TransportError as e:
            if self._stopping():
                logging.info(f"STATE: [{self.server.name}] Shutdown requested. Skipping this cycle.")
                return None
            logging.error(f"CLIENT: [{self.server.name}] Could not reach the client, skipping this cycle: {e}")
        self.client.invalidate_session()
        return None

    def _filter(self, snapshots: List[TorrentSnapshot]) -> List[TorrentSnapshot]:
        return [s for s in snapshots if s.is_completed and not self.ledger.is_moved(s.hash)]

    def _source_path(self, snapshot: TorrentSnapshot) -> Path:
        return localize_path(content_root(snapshot.save_path, snapshot.name, snapshot.content_path), self.server)

    def _process(self, snapshot: TorrentSnapshot) -> bool:
        """Moves one torrent. Returns True on success; failures are recorded in the ledger."""
        category_label = snapshot.category or '(none)'

        try:
            destination_dir = resolve(snapshot.category, self.server)
            source = self._source_path(snapshot)
        except ResolutionError as e:
            logging.warning(f"SKIP: [{self.server.name}] '{snapshot.name}' ({snapshot.hash}) "
                            f"category {category_label}: {e}. Will retry next cycle.")
            self._record_failure(snapshot, None, e)
            return False

        target = destination_dir / source.name
        self.ledger.record_attempt(snapshot.hash, target, name=snapshot.name, category=snapshot.category)

        try:
            final_path = self.mover.move(source, destination_dir)
        except MoveError as e:
            self._record_failure(snapshot, target, e)
            record = self.ledger.get(snapshot.hash)
            attempts = record.retry_count if record else 1
            logging.error(f"MOVE: [{self.server.name}] Failed to move '{snapshot.name}' ({snapshot.hash}) "
                          f"category '{category_label}': {e} (failure #{attempts}, will retry next cycle)")
            return False

        self.ledger.record_success(snapshot.hash, final_path)
        logging.info(f"SUCCESS: [{self.server.name}] Moved '{snapshot.name}' ({snapshot.hash}) "
                     f"category '{category_label}' -> '{final_path}'")

        if self.server.remove_after_move:
            self._remove_from_client(snapshot)
        return True

    def _remove_from_client(self, snapshot: TorrentSnapshot) -> None:
        try:
            self.client.remove_torrent(snapshot.hash)
        except (AuthError, TransportError) as e:
            logging.warning(f"CLIENT: [{self.server.name}] Moved '{snapshot.name}' ({snapshot.hash}) but could not "
                            f"remove it from the client: {e}")

    def _record_failure(self, snapshot: TorrentSnapshot, target: Optional[Path], error: BaseException) -> None:
        try:
            self.ledger.record_attempt(snapshot.hash, target, error, name=snapshot.name, category=snapshot.category)
        except OSError as e:
            logging.error(f"LEDGER: [{self.server.name}] Could not record failure for {snapshot.hash}: {e}")
