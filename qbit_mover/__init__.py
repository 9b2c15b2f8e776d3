"""qBittorrent Mover: relocates completed torrents into per-category directories."""

__version__ = "1.0.0"
