import abc
import threading
from dataclasses import dataclass
from typing import List, Optional

from ..config_manager import ServerConfig
from ..core_logic.rate_limiter import RateLimiter
from ..utils import TransportError

STATE_DOWNLOADING = "downloading"
STATE_COMPLETED = "completed"


@dataclass(frozen=True)
class TorrentSnapshot:
    """Point-in-time view of one torrent as reported by the client.

    Snapshots are never stored; they are only compared against the move ledger.
    """
    hash: str
    name: str
    category: str
    state: str
    save_path: str
    content_path: Optional[str] = None
    size: int = 0

    @property
    def is_completed(self) -> bool:
        return self.state == STATE_COMPLETED


class TorrentClient(abc.ABC):
    """
    An abstract base class for a torrent client. One instance per server; the
    session state it holds is never shared with another server.

    Implementations call `_throttle()` before every remote round trip, so an
    attached rate limiter gates logins and retries as well as listings.
    """

    def __init__(self, server: ServerConfig, rate_limiter: Optional[RateLimiter] = None):
        """Initializes the client with its server's configuration."""
        self.server = server
        self.client = None
        self.rate_limiter = rate_limiter

    def attach_rate_limiter(self, rate_limiter: RateLimiter) -> None:
        self.rate_limiter = rate_limiter

    @property
    def stop_event(self) -> Optional[threading.Event]:
        return getattr(self.rate_limiter, 'stop_event', None)

    def _throttle(self, interruptible: bool = True) -> None:
        """Waits for the rate limiter before one remote call.

        Raises TransportError when a shutdown cut an interruptible wait short.
        """
        if self.rate_limiter is None:
            return
        if not self.rate_limiter.acquire(interruptible=interruptible):
            raise TransportError(f"[{self.server.name}] Shutdown requested before contacting {self.server.url}")

    @property
    @abc.abstractmethod
    def has_session(self) -> bool:
        """Whether a session believed to be valid is currently held."""
        pass

    @abc.abstractmethod
    def authenticate(self) -> None:
        """
        Establishes or refreshes a session. Safe to call repeatedly.
        Raises AuthError on rejected credentials and TransportError when unreachable.
        """
        pass

    @abc.abstractmethod
    def invalidate_session(self) -> None:
        """Forgets the current session so the next cycle logs in again."""
        pass

    @abc.abstractmethod
    def list_torrents(self) -> List[TorrentSnapshot]:
        """
        Returns a fresh snapshot of every torrent in one round trip.
        Re-authenticates once on an auth failure before raising AuthError.
        """
        pass

    @abc.abstractmethod
    def remove_torrent(self, torrent_hash: str) -> None:
        """Removes a torrent from the client, keeping its data on disk."""
        pass
