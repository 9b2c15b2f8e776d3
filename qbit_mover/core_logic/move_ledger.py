"""Durable record of which torrents have already been moved.

The ledger is what makes moves idempotent across restarts: a hash recorded as
moved is never handed to the Mover again. Each server gets its own ledger
file, since torrent hashes are only unique within one client instance.
"""
import json
import logging
import os
import re
import tempfile
import threading
from dataclasses import asdict, dataclass, fields, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Union

logger = logging.getLogger(__name__)


def ledger_file_name(server_name: str) -> str:
    """File name of a server's ledger. Characters unsafe in file names become underscores."""
    return f"{re.sub(r'[^A-Za-z0-9._-]', '_', server_name) or 'default'}.json"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec='seconds')


@dataclass(frozen=True)
class MoveRecord:
    """Ledger entry for one torrent hash."""
    hash: str
    moved: bool = False
    destination: Optional[str] = None
    last_error: Optional[str] = None
    retry_count: int = 0
    timestamp: Optional[str] = None
    name: Optional[str] = None
    category: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        data = asdict(self)
        data.pop('hash')
        return data

    @classmethod
    def from_dict(cls, torrent_hash: str, data: Dict[str, object]) -> "MoveRecord":
        known = {f.name for f in fields(cls)} - {'hash'}
        return cls(hash=torrent_hash, **{k: v for k, v in data.items() if k in known})


class MoveLedger:
    """Manages a JSON ledger file tracking the move status of torrents.

    Every mutation is written to disk before the call returns, using a
    temporary file and an atomic rename so a crash never leaves a half-written
    ledger behind. Calls for the same hash are serialized by a per-hash lock;
    calls for different hashes only share the short file write.

    Attributes:
        file (Path): The path to the ledger JSON file.
    """

    def __init__(self, ledger_file: Union[str, Path]):
        self.file = Path(ledger_file)
        self._write_lock = threading.Lock()
        self._locks_guard = threading.Lock()
        self._hash_locks: Dict[str, threading.Lock] = {}
        self._records: Dict[str, MoveRecord] = self._load()

    @classmethod
    def for_server(cls, ledger_dir: Union[str, Path], server_name: str) -> "MoveLedger":
        """Returns the ledger for one server, stored as `<ledger_dir>/<server>.json`."""
        return cls(Path(ledger_dir) / ledger_file_name(server_name))

    def _load(self) -> Dict[str, MoveRecord]:
        """Loads ledger data from the JSON file. An unreadable file is set aside."""
        if not self.file.exists():
            return {}
        try:
            data = json.loads(self.file.read_text(encoding='utf-8'))
            if not isinstance(data, dict):
                raise ValueError("ledger root is not an object")
            records = {h: MoveRecord.from_dict(h, entry) for h, entry in data.items()}
            logger.info(f"LEDGER: Loaded {len(records)} record(s) from '{self.file}'.")
            return records
        except (ValueError, TypeError, AttributeError) as e:
            corrupt_path = self.file.with_name(f"{self.file.name}.corrupt-{datetime.now():%Y%m%d-%H%M%S}")
            logger.error(f"LEDGER: Could not decode ledger file '{self.file}' ({e}). "
                         f"Moving it to '{corrupt_path}' and starting fresh.")
            os.replace(self.file, corrupt_path)
            return {}

    def _save(self) -> None:
        """Writes all records atomically. Caller must hold the write lock."""
        self.file.parent.mkdir(parents=True, exist_ok=True)
        payload = {h: record.to_dict() for h, record in self._records.items()}
        fd, tmp_name = tempfile.mkstemp(dir=self.file.parent, prefix=f".{self.file.name}.", suffix='.tmp')
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(payload, f, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.file)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _commit(self, record: MoveRecord) -> None:
        with self._write_lock:
            self._records[record.hash] = record
            self._save()

    def _lock_for(self, torrent_hash: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._hash_locks.get(torrent_hash)
            if lock is None:
                lock = self._hash_locks[torrent_hash] = threading.Lock()
            return lock

    def is_moved(self, torrent_hash: str) -> bool:
        """Checks if a torrent has been recorded as moved."""
        record = self._records.get(torrent_hash)
        return bool(record and record.moved)

    def get(self, torrent_hash: str) -> Optional[MoveRecord]:
        return self._records.get(torrent_hash)

    def record_attempt(self, torrent_hash: str, destination: Optional[Union[str, Path]],
                       error: Optional[BaseException] = None,
                       name: Optional[str] = None, category: Optional[str] = None) -> None:
        """Records a move attempt for a torrent that is not yet moved.

        Without `error` this only notes where the torrent is headed. With an
        error, the error text is kept and the retry count goes up by one. A
        record that is already moved is left untouched.
        """
        with self._lock_for(torrent_hash):
            current = self._records.get(torrent_hash) or MoveRecord(hash=torrent_hash)
            if current.moved:
                logger.debug(f"LEDGER: Ignoring attempt for already moved torrent {torrent_hash[:10]}...")
                return
            updated = replace(
                current,
                destination=str(destination) if destination is not None else current.destination,
                timestamp=_now(),
                name=name if name is not None else current.name,
                category=category if category is not None else current.category,
            )
            if error is not None:
                updated = replace(
                    updated,
                    last_error=f"{type(error).__name__}: {error}",
                    retry_count=current.retry_count + 1,
                )
            self._commit(updated)

    def record_success(self, torrent_hash: str, destination: Optional[Union[str, Path]] = None) -> bool:
        """Marks a torrent as moved.

        Returns:
            `True` if this call flipped the flag, `False` if it was already moved.
        """
        with self._lock_for(torrent_hash):
            current = self._records.get(torrent_hash) or MoveRecord(hash=torrent_hash)
            if current.moved:
                return False
            self._commit(replace(
                current,
                moved=True,
                last_error=None,
                destination=str(destination) if destination is not None else current.destination,
                timestamp=_now(),
            ))
            return True

    def forget(self, torrent_hash: str) -> bool:
        """Deletes a record (manual cleanup). Returns `True` if one existed."""
        with self._lock_for(torrent_hash):
            with self._write_lock:
                if self._records.pop(torrent_hash, None) is None:
                    return False
                self._save()
        logger.info(f"LEDGER: Removed record for {torrent_hash} from '{self.file}'.")
        return True

    def records(self) -> List[MoveRecord]:
        with self._write_lock:
            return list(self._records.values())

    def pending(self) -> List[MoveRecord]:
        return [record for record in self.records() if not record.moved]

    def __len__(self) -> int:
        return len(self._records)
