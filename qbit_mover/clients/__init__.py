from .base import STATE_COMPLETED, STATE_DOWNLOADING, TorrentClient, TorrentSnapshot
from .factory import get_client

__all__ = [
    'STATE_COMPLETED',
    'STATE_DOWNLOADING',
    'TorrentClient',
    'TorrentSnapshot',
    'get_client',
]
