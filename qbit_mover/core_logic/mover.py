"""Relocates a torrent's content (a single file or a directory tree) on disk.

The Mover never retries and never overwrites: a destination that already
exists is treated as a completed earlier move. Retry policy belongs to the
Poller.
"""
import errno
import logging
import os
import shutil
from pathlib import Path
from typing import Union

from ..utils import (
    CrossVolumeCopyFailed, InsufficientSpace, MoveError, PermissionDenied, SourceNotFound
)

logger = logging.getLogger(__name__)

_NO_SPACE_ERRNOS = {errno.ENOSPC, getattr(errno, 'EDQUOT', errno.ENOSPC)}


def _total_size(path: Path) -> int:
    """Returns the size of a file, or the summed size of every file under a directory."""
    if not path.is_dir():
        return path.stat().st_size
    total = 0
    for root, _, files in os.walk(path):
        for name in files:
            total += os.path.getsize(os.path.join(root, name))
    return total


def _is_no_space(error: BaseException) -> bool:
    if isinstance(error, OSError) and error.errno in _NO_SPACE_ERRNOS:
        return True
    if isinstance(error, shutil.Error) and error.args and isinstance(error.args[0], list):
        no_space = os.strerror(errno.ENOSPC)
        return any(no_space in str(entry[-1]) for entry in error.args[0])
    return False


class Mover:
    """Moves content into a destination directory.

    Same-volume moves use a plain rename. Cross-volume moves copy into a
    hidden `.<name>.partial` sibling, verify the copied byte count against the
    source, rename the copy onto its final name and only then delete the
    source. A failed or short copy is removed again before the error is raised,
    and a partial copy left by a killed process is discarded on the next try.
    """

    def move(self, source: Union[str, Path], destination_dir: Union[str, Path]) -> Path:
        """Moves `source` into `destination_dir` and returns the final path.

        Raises:
            SourceNotFound: The source does not exist.
            PermissionDenied: The source or destination is not accessible.
            InsufficientSpace: The destination volume ran out of space.
            CrossVolumeCopyFailed: A copy between volumes failed or came up short.
            MoveError: Any other filesystem error.
        """
        source = Path(source)
        destination_dir = Path(destination_dir)
        destination = destination_dir / source.name

        if destination.exists() or destination.is_symlink():
            logger.warning(f"MOVE: Destination '{destination}' already exists. "
                           f"Skipping and treating as already moved.")
            return destination

        if not source.exists():
            raise SourceNotFound(f"Source path does not exist: '{source}'", source, destination)

        try:
            destination_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise self._translate(e, source, destination) from e

        if self._same_volume(source, destination_dir):
            try:
                os.rename(source, destination)
                logger.info(f"MOVE: Renamed '{source}' -> '{destination}'")
                return destination
            except OSError as e:
                if e.errno != errno.EXDEV:
                    raise self._translate(e, source, destination) from e
                logger.debug(f"MOVE: Rename crossed a device boundary for '{source}'. Falling back to copy.")

        return self._copy_then_delete(source, destination)

    @staticmethod
    def _same_volume(source: Path, destination_dir: Path) -> bool:
        try:
            return os.stat(source).st_dev == os.stat(destination_dir).st_dev
        except OSError:
            return False

    @staticmethod
    def _translate(error: OSError, source: Path, destination: Path) -> MoveError:
        if isinstance(error, FileNotFoundError) and not source.exists():
            return SourceNotFound(f"Source path does not exist: '{source}'", source, destination)
        if isinstance(error, PermissionError):
            return PermissionDenied(f"Permission denied moving '{source}' -> '{destination}': {error}",
                                    source, destination)
        if _is_no_space(error):
            return InsufficientSpace(f"Not enough space for '{destination}': {error}", source, destination)
        return MoveError(f"Could not move '{source}' -> '{destination}': {error}", source, destination)

    @staticmethod
    def partial_path(destination: Path) -> Path:
        """Hidden sibling a cross-volume copy is written to before it takes its final name."""
        return destination.with_name(f".{destination.name}.partial")

    def _copy_then_delete(self, source: Path, destination: Path) -> Path:
        expected = _total_size(source)
        partial = self.partial_path(destination)
        if partial.exists() or partial.is_symlink():
            logger.warning(f"MOVE: Removing stale partial copy '{partial}' from an interrupted move.")
            self._remove_partial(partial)

        logger.info(f"MOVE: Copying '{source}' -> '{destination}' across volumes ({expected} bytes)")
        try:
            if source.is_dir():
                shutil.copytree(source, partial, copy_function=shutil.copy2)
            else:
                shutil.copy2(source, partial)
        except (OSError, shutil.Error) as e:
            self._remove_partial(partial)
            if _is_no_space(e):
                raise InsufficientSpace(f"Not enough space for '{destination}': {e}", source, destination) from e
            if isinstance(e, PermissionError):
                raise PermissionDenied(f"Permission denied copying '{source}' -> '{destination}': {e}",
                                       source, destination) from e
            raise CrossVolumeCopyFailed(f"Copy of '{source}' -> '{destination}' failed: {e}",
                                        source, destination) from e

        copied = _total_size(partial)
        if copied != expected:
            self._remove_partial(partial)
            raise CrossVolumeCopyFailed(
                f"Copy of '{source}' is incomplete ({copied} of {expected} bytes). Source kept.",
                source, destination,
            )

        # Only a verified copy ever appears under the final name.
        try:
            os.replace(partial, destination)
        except OSError as e:
            self._remove_partial(partial)
            raise CrossVolumeCopyFailed(f"Could not rename verified copy '{partial}' -> '{destination}': {e}",
                                        source, destination) from e

        try:
            if source.is_dir():
                shutil.rmtree(source)
            else:
                source.unlink()
        except OSError as e:
            logger.error(f"MOVE: Copied '{source}' to '{destination}' but could not remove the source: {e}")
        else:
            logger.info(f"MOVE: Copied and removed source '{source}'")
        return destination

    @staticmethod
    def _remove_partial(destination: Path) -> None:
        try:
            if destination.is_dir() and not destination.is_symlink():
                shutil.rmtree(destination)
            elif destination.exists() or destination.is_symlink():
                destination.unlink()
        except OSError as e:
            logger.error(f"MOVE: Could not remove partial copy '{destination}': {e}")
