from typing import Dict, List, Optional

from qbit_mover.clients.base import STATE_COMPLETED, STATE_DOWNLOADING, TorrentClient, TorrentSnapshot
from qbit_mover.config_manager import ServerConfig


def make_torrent_dict(name: str, hash_: str, save_path: str, category: str = "", progress: float = 1.0,
                      state: str = "uploading", content_path: Optional[str] = None, size: int = 0) -> Dict:
    """Builds a dict shaped like the entries of qbittorrentapi's torrents_info()."""
    return {
        'name': name,
        'hash': hash_,
        'save_path': save_path,
        'content_path': content_path if content_path is not None else f"{save_path.rstrip('/')}/{name}",
        'category': category,
        'progress': progress,
        'state': state,
        'size': size,
    }


def make_snapshot(name: str, hash_: str, save_path: str, category: str = "", completed: bool = True,
                  content_path: Optional[str] = None) -> TorrentSnapshot:
    return TorrentSnapshot(
        hash=hash_,
        name=name,
        category=category,
        state=STATE_COMPLETED if completed else STATE_DOWNLOADING,
        save_path=save_path,
        content_path=content_path,
    )


class MockTorrentClient(TorrentClient):
    """
    In-memory TorrentClient for Poller and Engine tests.
    Errors can be queued per operation by assigning exceptions to the *_errors lists.
    Every operation counts as one round trip through the attached rate limiter.
    """

    def __init__(self, server: ServerConfig, torrents: Optional[List[TorrentSnapshot]] = None):
        super().__init__(server)
        self.torrents: List[TorrentSnapshot] = list(torrents or [])
        self.removed: List[str] = []
        self.auth_calls = 0
        self.list_calls = 0
        self.auth_errors: List[Exception] = []
        self.list_errors: List[Exception] = []
        self.remove_errors: List[Exception] = []
        self._session = False

    @property
    def has_session(self) -> bool:
        return self._session

    def authenticate(self) -> None:
        self._throttle()
        self.auth_calls += 1
        if self.auth_errors:
            raise self.auth_errors.pop(0)
        self._session = True

    def invalidate_session(self) -> None:
        self._session = False

    def list_torrents(self) -> List[TorrentSnapshot]:
        self._throttle()
        self.list_calls += 1
        if self.list_errors:
            raise self.list_errors.pop(0)
        return list(self.torrents)

    def remove_torrent(self, torrent_hash: str) -> None:
        self._throttle(interruptible=False)
        if self.remove_errors:
            raise self.remove_errors.pop(0)
        self.removed.append(torrent_hash)
        self.torrents = [t for t in self.torrents if t.hash != torrent_hash]
