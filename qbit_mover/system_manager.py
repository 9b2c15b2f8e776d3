"""Manages system-level operations and startup checks.

This module provides functions for interacting with the underlying operating
system. Its responsibilities include:
- Ensuring only one instance works on a ledger directory using a file-based
  lock (`LockFile`).
- Setting up size-rotated file logging.
- Checking, before the first poll, that category destinations are writable.
"""
import atexit
import errno
import fcntl
import logging
import os
import tempfile
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, Optional

from .utils import parse_size

MAX_ARCHIVED_LOGS = 1
LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'


class LockFile:
    """Ensures that only one instance of the mover runs at a time on Unix-like systems.

    This class uses the `fcntl` module to create an advisory lock on a specified
    file. Two instances sharing a ledger directory would race on the same
    torrents, so the second one refuses to start.

    The lock is automatically released when the process exits gracefully. The
    class also detects and removes stale lock files left behind by crashed
    processes.

    Attributes:
        lock_path (Path): The path to the file used for locking.
    """

    def __init__(self, lock_path: Path):
        """Initializes the LockFile.

        Args:
            lock_path: The path to the file that will be used for locking.
        """
        self.lock_path = lock_path
        self.lock_fd = None
        self._acquired = False

    def acquire(self) -> None:
        """Acquires an exclusive, non-blocking lock on the lock file.

        If a lock file already exists, the PID inside it is checked. A lock held
        by a process that no longer exists is stale and gets removed.

        Raises:
            RuntimeError: If the lock is already held by another running instance.
        """
        if self.lock_path.exists():
            pid_str = self.get_locking_pid()
            if pid_str and pid_str.isdigit():
                pid = int(pid_str)
                if pid != os.getpid() and pid_exists(pid):
                    raise RuntimeError(f"qbit-mover is already running with PID {pid} (lock file: {self.lock_path})")
                logging.warning(f"Removing stale lock file for non-existent PID {pid}.")
                self.lock_path.unlink(missing_ok=True)
            else:
                logging.warning(f"Removing corrupt lock file with invalid PID: '{pid_str}'.")
                self.lock_path.unlink(missing_ok=True)

        try:
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
            self.lock_fd = open(self.lock_path, 'w')
            fcntl.flock(self.lock_fd.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            self.lock_fd.write(str(os.getpid()))
            self.lock_fd.flush()
            atexit.register(self.release)
            self._acquired = True
        except (IOError, BlockingIOError):
            if self.lock_fd:
                self.lock_fd.close()
                self.lock_fd = None
            pid = self.get_locking_pid()
            raise RuntimeError(f"qbit-mover is already running with PID {pid} (lock file: {self.lock_path})")

    def release(self) -> None:
        """Releases the file lock and deletes the lock file."""
        if self.lock_fd and self._acquired:
            try:
                fcntl.flock(self.lock_fd.fileno(), fcntl.LOCK_UN)
                self.lock_fd.close()
                self.lock_path.unlink(missing_ok=True)
                self._acquired = False
            except OSError as e:
                logging.error(f"Failed to release lock file '{self.lock_path}': {e}")
            finally:
                self.lock_fd = None

    @property
    def acquired(self) -> bool:
        return self._acquired

    def get_locking_pid(self) -> Optional[str]:
        """Reads the PID of the process that currently holds the lock, if any."""
        if self.lock_path.exists():
            try:
                return self.lock_path.read_text().strip()
            except IOError:
                return None
        return None


def pid_exists(pid: int) -> bool:
    """Checks if a process with the given PID is currently running on a Unix-like system.

    This function uses `os.kill` with a signal of 0, which doesn't actually send
    a signal but performs error checking to determine if the process exists.
    """
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except OSError as err:
        return err.errno == errno.EPERM
    else:
        return True


def setup_logging(log_file: str, max_log_file_size: str, debug: bool = False) -> RotatingFileHandler:
    """Configures the root logger to write to a size-rotated log file.

    The file rolls over once it reaches `max_log_file_size` and a single
    archive (`<log_file>.1`) is kept. Console handlers (RichHandler or a plain
    StreamHandler) are configured separately in the main entry point.

    Args:
        log_file: Path of the log file. Parent directories are created.
        max_log_file_size: Rotation threshold such as '10M', '1G' or a byte count.
        debug: If `True`, sets the logging level to `DEBUG`, otherwise `INFO`.

    Returns:
        The installed file handler.

    Raises:
        ValueError: If `max_log_file_size` cannot be parsed.
    """
    max_bytes = parse_size(max_log_file_size)
    log_path = Path(log_file)
    if log_path.parent != Path('.'):
        log_path.parent.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG if debug else logging.INFO)

    for handler in list(logger.handlers):
        if isinstance(handler, RotatingFileHandler):
            logger.removeHandler(handler)
            handler.close()

    file_handler = RotatingFileHandler(
        log_path, maxBytes=max_bytes, backupCount=MAX_ARCHIVED_LOGS, encoding='utf-8'
    )
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(file_handler)

    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("qbittorrentapi").setLevel(logging.WARNING)
    logging.info(f"--- qbit-mover file logging started ({log_path}, rotating at {max_log_file_size}) ---")
    return file_handler


def test_path_permissions(path_to_test: str) -> bool:
    """Tests for write permissions in a local directory.

    Creates and deletes a temporary file in the directory. A directory that
    does not exist yet is not an error, since the mover creates it on demand;
    in that case the closest existing parent is tested instead.
    """
    path = Path(path_to_test)
    while not path.exists() and path != path.parent:
        path = path.parent
    try:
        with tempfile.NamedTemporaryFile(dir=path, prefix='.qbit_mover_perm_test_'):
            pass
        return True
    except OSError as e:
        logging.error(f"PERMISSIONS: Cannot write to '{path}': {e}")
        return False


def check_destination_paths(server_name: str, categories: Dict[str, str]) -> bool:
    """Logs a warning for every category destination that is not writable.

    Returns:
        `True` if every destination passed the check.
    """
    all_ok = True
    for category, destination in categories.items():
        if not test_path_permissions(destination):
            logging.warning(
                f"PERMISSIONS: [{server_name}] destination for category '{category}' "
                f"('{destination}') is not writable. Moves into it will fail until fixed."
            )
            all_ok = False
    return all_ok
