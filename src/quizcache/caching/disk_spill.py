"""
Disk spill layer for the cache store.

Evicted entries of a ``memory_disk`` cache are written here and promoted
back into memory on a later miss. The same directory holds the snapshot
written on shutdown when ``persist_to_disk`` is enabled. This is a best
effort single-process store: files may disappear between calls and
unreadable files are treated as misses.
"""

import hashlib
import os
import pickle
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from ..logging_config import get_logger
from .serialization import ValueSerializer

SNAPSHOT_FILE = "snapshot.pkl"


@dataclass
class SpilledEntry:
    """Entry as stored on disk."""
    key: str
    payload: bytes
    created_at: float
    expires_at: Optional[float]
    metadata: Dict[str, Any] = field(default_factory=dict)

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


class DiskSpill:
    """File-per-key spill directory."""

    def __init__(self, directory: str, serializer: Optional[ValueSerializer] = None):
        self.directory = Path(directory)
        self.serializer = serializer or ValueSerializer()
        self.logger = get_logger(__name__, 'disk_spill')
        self.stats = {
            'writes': 0,
            'reads': 0,
            'misses': 0,
            'errors': 0
        }

    def _path_for(self, key: str) -> Path:
        digest = hashlib.sha256(key.encode('utf-8')).hexdigest()
        return self.directory / f"{digest}.entry"

    def _ensure_directory(self) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)

    def write(self, key: str, value: Any, created_at: float, expires_at: Optional[float],
              metadata: Optional[Dict[str, Any]] = None) -> bool:
        """Spill a value to disk."""
        try:
            self._ensure_directory()
            entry = SpilledEntry(
                key=key,
                payload=self.serializer.dumps(value),
                created_at=created_at,
                expires_at=expires_at,
                metadata=dict(metadata or {})
            )
            path = self._path_for(key)
            tmp_path = path.with_suffix('.tmp')
            with open(tmp_path, 'wb') as handle:
                pickle.dump(entry, handle, protocol=pickle.HIGHEST_PROTOCOL)
            os.replace(tmp_path, path)
            self.stats['writes'] += 1
            return True
        except Exception as e:
            self.stats['errors'] += 1
            self.logger.warning(f"Failed to spill key {key}: {e}", operation="spill_write")
            return False

    def read(self, key: str, now: float) -> Optional[SpilledEntry]:
        """Read a spilled entry, dropping it when expired."""
        path = self._path_for(key)
        if not path.exists():
            self.stats['misses'] += 1
            return None

        try:
            with open(path, 'rb') as handle:
                entry: SpilledEntry = pickle.load(handle)
        except Exception as e:
            self.stats['errors'] += 1
            self.logger.warning(f"Unreadable spill file for key {key}: {e}", operation="spill_read")
            self.remove(key)
            return None

        if entry.key != key or entry.is_expired(now):
            self.stats['misses'] += 1
            self.remove(key)
            return None

        self.stats['reads'] += 1
        return entry

    def load_value(self, entry: SpilledEntry) -> Any:
        return self.serializer.loads(entry.payload)

    def remove(self, key: str) -> bool:
        """Remove a spilled entry."""
        try:
            self._path_for(key).unlink()
            return True
        except FileNotFoundError:
            return False

    def clear(self) -> int:
        """Remove all spilled entries and the snapshot."""
        if not self.directory.exists():
            return 0

        removed = 0
        for path in self.directory.iterdir():
            if path.suffix in ('.entry', '.tmp') or path.name == SNAPSHOT_FILE:
                path.unlink(missing_ok=True)
                removed += 1
        return removed

    def prune_expired(self, keys: List[str], now: float) -> List[str]:
        """Remove the spill files of ``keys`` that are expired or unreadable.

        Returns the keys whose files are gone.
        """
        gone = []
        for key in keys:
            path = self._path_for(key)
            if not path.exists():
                gone.append(key)
                continue
            try:
                with open(path, 'rb') as handle:
                    entry: SpilledEntry = pickle.load(handle)
            except Exception as e:
                self.stats['errors'] += 1
                self.logger.warning(f"Unreadable spill file for key {key}: {e}", operation="spill_prune")
                entry = None
            if entry is None or entry.key != key or entry.is_expired(now):
                self.remove(key)
                gone.append(key)
        return gone

    def count(self) -> int:
        if not self.directory.exists():
            return 0
        return sum(1 for path in self.directory.iterdir() if path.suffix == '.entry')

    def write_snapshot(self, entries: List[SpilledEntry]) -> bool:
        """Persist a full snapshot of live entries."""
        try:
            self._ensure_directory()
            path = self.directory / SNAPSHOT_FILE
            tmp_path = path.with_suffix('.tmp')
            with open(tmp_path, 'wb') as handle:
                pickle.dump(entries, handle, protocol=pickle.HIGHEST_PROTOCOL)
            os.replace(tmp_path, path)
            self.logger.info(f"Persisted {len(entries)} cache entries", operation="write_snapshot")
            return True
        except Exception as e:
            self.stats['errors'] += 1
            self.logger.error(f"Failed to persist cache snapshot: {e}", operation="write_snapshot")
            return False

    def read_snapshot(self, now: float) -> Iterator[SpilledEntry]:
        """Yield the live entries of the persisted snapshot, then delete it."""
        path = self.directory / SNAPSHOT_FILE
        if not path.exists():
            return

        try:
            with open(path, 'rb') as handle:
                entries: List[SpilledEntry] = pickle.load(handle)
        except Exception as e:
            self.stats['errors'] += 1
            self.logger.error(f"Failed to read cache snapshot: {e}", operation="read_snapshot")
            return
        finally:
            path.unlink(missing_ok=True)

        for entry in entries:
            if not entry.is_expired(now):
                yield entry
