import logging

from .base import TorrentClient
from ..config_manager import ServerConfig
from ..utils import ConfigError


def get_client(server: ServerConfig) -> TorrentClient:
    """
    Factory function to get a torrent client instance for a configured server.

    Raises:
        ConfigError: If the server's client type is not supported.
    """
    client_type = (server.client_type or 'qbittorrent').lower()
    logging.debug(f"Creating client of type '{client_type}' for server '{server.name}'")

    if client_type == 'qbittorrent':
        from .qbittorrent import QBittorrentClient
        return QBittorrentClient(server)
    raise ConfigError(f"Unsupported client type '{client_type}' for server '{server.name}'")
