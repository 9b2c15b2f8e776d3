import logging
from typing import Any, List, Mapping

import qbittorrentapi
from qbittorrentapi.exceptions import APIError, Forbidden403Error, LoginFailed, Unauthorized401Error

from .base import STATE_COMPLETED, STATE_DOWNLOADING, TorrentClient, TorrentSnapshot
from ..utils import AuthError, Timeouts, TransportError, retry

# --- Constants ---
MAX_AUTH_ATTEMPTS = 2

# States in which a torrent at 100% progress is still not safe to move.
NOT_SETTLED_STATES = frozenset([
    'checkingUP', 'checkingDL', 'checkingResumeData', 'moving',
    'missingFiles', 'error', 'allocating', 'metaDL',
])

SESSION_ERRORS = (LoginFailed, Unauthorized401Error, Forbidden403Error)


class QBittorrentClient(TorrentClient):
    """
    qBittorrent implementation of the TorrentClient interface, backed by
    qbittorrentapi.Client. One instance per configured server.
    """

    def __init__(self, server):
        super().__init__(server)
        self._session = False

    @property
    def has_session(self) -> bool:
        return self._session and self.client is not None

    def _build_client(self) -> qbittorrentapi.Client:
        return qbittorrentapi.Client(
            host=self.server.url,
            username=self.server.username,
            password=self.server.password,
            VERIFY_WEBUI_CERTIFICATE=self.server.verify_cert,
            REQUESTS_ARGS={'timeout': self.server.request_timeout},
        )

    def _log_in(self, interruptible: bool = True) -> None:
        """Logs in and reads the version. Maps library errors onto AuthError / TransportError."""
        if self.client is None:
            self.client = self._build_client()
        try:
            self._throttle(interruptible)
            self.client.auth_log_in()
            self._throttle(interruptible)
            version = self.client.app.version
        except SESSION_ERRORS as e:
            self._session = False
            raise AuthError(f"[{self.server.name}] Login rejected by {self.server.url}: {e}") from e
        except APIError as e:
            self._session = False
            raise TransportError(f"[{self.server.name}] Could not reach {self.server.url}: {e}") from e
        self._session = True
        logging.info(f"CLIENT: [{self.server.name}] Successfully connected. Version: {version}")

    @retry(tries=MAX_AUTH_ATTEMPTS, delay=Timeouts.AUTH_RETRY_DELAY, exceptions=(AuthError, TransportError),
           stop_event_attr='stop_event')
    def authenticate(self) -> None:
        """Logs in to qBittorrent, retrying once on failure."""
        logging.info(f"STATE: [{self.server.name}] Connecting to qBittorrent at {self.server.url}...")
        self._log_in()

    def invalidate_session(self) -> None:
        self._session = False

    def list_torrents(self) -> List[TorrentSnapshot]:
        """Fetches every torrent. A rejected session triggers exactly one re-login."""
        if not self.has_session:
            self._log_in()
        try:
            self._throttle()
            raw_torrents = self.client.torrents_info()
        except SESSION_ERRORS as e:
            logging.warning(f"CLIENT: [{self.server.name}] Session rejected ({e}). Re-authenticating once.")
            self.invalidate_session()
            self._log_in()
            try:
                self._throttle()
                raw_torrents = self.client.torrents_info()
            except SESSION_ERRORS as retry_error:
                self.invalidate_session()
                raise AuthError(
                    f"[{self.server.name}] Session rejected again after re-authentication: {retry_error}"
                ) from retry_error
            except APIError as retry_error:
                raise TransportError(f"[{self.server.name}] Could not list torrents: {retry_error}") from retry_error
        except APIError as e:
            raise TransportError(f"[{self.server.name}] Could not list torrents: {e}") from e

        snapshots = [self._to_snapshot(t) for t in raw_torrents]
        logging.debug(f"CLIENT: [{self.server.name}] Listed {len(snapshots)} torrent(s).")
        return snapshots

    def remove_torrent(self, torrent_hash: str) -> None:
        """Removal finishes an in-flight move, so its rate limit waits are not cut short by shutdown."""
        if not self.has_session:
            self._log_in(interruptible=False)
        try:
            self._throttle(interruptible=False)
            self.client.torrents_delete(delete_files=False, torrent_hashes=torrent_hash)
        except SESSION_ERRORS as e:
            self.invalidate_session()
            raise AuthError(f"[{self.server.name}] Session rejected while removing {torrent_hash}: {e}") from e
        except APIError as e:
            raise TransportError(f"[{self.server.name}] Could not remove torrent {torrent_hash}: {e}") from e
        logging.info(f"CLIENT: [{self.server.name}] Removed torrent {torrent_hash[:10]}... from the client.")

    @staticmethod
    def _to_snapshot(torrent: Mapping[str, Any]) -> TorrentSnapshot:
        """Converts a qBittorrent torrent dictionary to the standardized TorrentSnapshot."""
        progress = float(torrent.get('progress', 0) or 0)
        qbit_state = torrent.get('state', '')
        completed = progress >= 1 and qbit_state not in NOT_SETTLED_STATES
        return TorrentSnapshot(
            hash=torrent['hash'],
            name=torrent.get('name', ''),
            category=torrent.get('category', '') or '',
            state=STATE_COMPLETED if completed else STATE_DOWNLOADING,
            save_path=torrent.get('save_path', ''),
            content_path=torrent.get('content_path'),
            size=int(torrent.get('size', 0) or 0),
        )
