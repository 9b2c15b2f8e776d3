"""Maps a torrent's category to its destination directory.

Every function here is pure: they read the server's settings and never touch
the filesystem.
"""
from pathlib import Path, PurePosixPath
from typing import Optional

from ..config_manager import ServerConfig
from ..utils import UnmappedCategory, UnsupportedLayout


def _normalize_path(path: str) -> str:
    """Remove surrounding quotes from paths returned by qBittorrent."""
    return path.strip().strip('\'"')


def resolve(category: str, server: ServerConfig) -> Path:
    """Returns the destination directory mapped to `category` on `server`.

    Raises:
        UnmappedCategory: If the category is empty or has no entry in the map.
    """
    if not category or category not in server.categories:
        raise UnmappedCategory(category or '', server.name)
    return Path(_normalize_path(server.categories[category]))


def content_root(save_path: str, name: str, content_path: Optional[str] = None) -> str:
    """Returns the torrent's top-level file or folder, as the client sees it.

    When the client reports a content path, its first component below the save
    path is used, so a single file inside a folder moves the whole folder.
    Otherwise the torrent name is appended to the save path.

    Raises:
        UnsupportedLayout: If the content path is the save path itself, as for a
            multi-file torrent added without its own subfolder. Moving the save
            path would take every other torrent in it along.
    """
    save = PurePosixPath(_normalize_path(save_path))
    if content_path:
        content = PurePosixPath(_normalize_path(content_path))
        try:
            relative = content.relative_to(save)
        except ValueError:
            return str(content)
        if not relative.parts:
            raise UnsupportedLayout(
                f"Content of '{name}' lies directly in save path '{save}' (no subfolder). "
                f"Move it manually or re-add the torrent with a subfolder"
            )
        return str(save / relative.parts[0])
    return str(save / name)


def localize_path(save_path: str, server: ServerConfig) -> Path:
    """Rewrites a save path reported by the client into a locally visible path.

    If `save_path` lies under the server's `root_path`, that prefix is replaced
    by `path_prefix`, e.g. `/downloads/tv` with root_path `/downloads` and
    path_prefix `/mnt/seedbox` becomes `/mnt/seedbox/tv`. The comparison is done
    on whole path components, so `/downloads2` is not under `/downloads`. Paths
    outside root_path, or servers without a rewrite pair, are returned as-is.
    """
    cleaned = _normalize_path(save_path)
    if not server.root_path or not server.path_prefix:
        return Path(cleaned)

    remote = PurePosixPath(cleaned)
    root = PurePosixPath(_normalize_path(server.root_path))
    try:
        relative = remote.relative_to(root)
    except ValueError:
        return Path(cleaned)
    return Path(_normalize_path(server.path_prefix)).joinpath(*relative.parts)
