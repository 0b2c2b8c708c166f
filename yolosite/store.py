from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, List

from yolosite.filenames import is_safe_filename

logger = logging.getLogger(__name__)


class UploadSaveError(OSError):
    """Raised when an upload cannot be confirmed on disk after writing."""


@dataclass(frozen=True)
class StoredFile:
    name: str
    size: int


class UploadStore:
    """Flat directory holding both the uploaded images and their annotated copies."""

    def __init__(self, root):
        self.root = Path(root)
        # name -> [lock, number of holders and waiters]
        self._locks: Dict[str, list] = {}
        self._locks_guard = threading.Lock()

    def ensure(self) -> Path:
        self.root.mkdir(parents=True, exist_ok=True)
        return self.root

    def path_for(self, name: str) -> Path:
        if not is_safe_filename(name):
            raise ValueError(f"Unsafe upload filename :- {name!r}")
        return self.root / name

    def exists(self, name: str) -> bool:
        if not is_safe_filename(name):
            return False
        return (self.root / name).is_file()

    def save(self, name: str, data: bytes) -> Path:
        """Write `data` under `name`, replacing any earlier file, and verify it landed."""
        path = self.path_for(name)
        path.write_bytes(data)

        if not path.is_file():
            raise UploadSaveError(f"File not found after saving :- {path}")
        size = path.stat().st_size
        if size != len(data):
            raise UploadSaveError(f"Saved {size} of {len(data)} bytes :- {path}")

        logger.info("Original file saved to %s (%d bytes)", path, size)
        return path

    def listing(self) -> List[StoredFile]:
        if not self.root.exists():
            return []
        files = [
            StoredFile(path.name, path.stat().st_size)
            for path in self.root.iterdir()
            if path.is_file()
        ]
        files.sort(key=lambda item: item.name)
        return files

    @contextmanager
    def lock(self, *names: str) -> Iterator[None]:
        """Hold the locks for every name an upload writes (original and annotated copy).

        Names are taken in sorted order so two requests sharing any name cannot
        deadlock. An entry stays in the map only while someone holds or waits on it.
        """
        ordered = sorted(set(names))
        with self._locks_guard:
            entries = []
            for name in ordered:
                entry = self._locks.setdefault(name, [threading.Lock(), 0])
                entry[1] += 1
                entries.append(entry)

        acquired = []
        try:
            for entry in entries:
                entry[0].acquire()
                acquired.append(entry)
            yield
        finally:
            for entry in reversed(acquired):
                entry[0].release()
            with self._locks_guard:
                for name, entry in zip(ordered, entries):
                    entry[1] -= 1
                    if entry[1] == 0:
                        del self._locks[name]
