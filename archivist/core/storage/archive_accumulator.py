"""
Archive Accumulator - append-only ZIP scratch file for chunked builds.

A build attempt opens the accumulator once per chunk, appends that chunk's
entries and closes it again, so the central directory is flushed to disk
before the chunk checkpoint is committed. Re-opening resumes the same file.

Entries are never overwritten: ``append`` skips a name that is already in
the archive, which makes replaying a chunk after a crash a no-op for the
entries that made it to disk. A scratch file that cannot be read back as a
ZIP (crash while the central directory was being rewritten, truncated disk
write) is discarded and started over; the build controller re-fetches any
committed entries that went missing with it.
"""

import logging
import os
import zipfile
from pathlib import Path
from typing import Optional, Set, Union

logger = logging.getLogger("archivist.archives.accumulator")


class ArchiveAccumulator:
    """
    Scratch ZIP archive for one build.

    Usage:
        with ArchiveAccumulator(path) as archive:
            if not archive.has_entry(name):
                archive.append(name, data)
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._zip: Optional[zipfile.ZipFile] = None
        self._names: Set[str] = set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> "ArchiveAccumulator":
        """Open the scratch archive, resuming it when a readable one exists."""
        self.path.parent.mkdir(parents=True, exist_ok=True)

        existing = self.read_entry_names(self.path) if self.path.exists() else None
        if existing is None:
            if self.path.exists():
                logger.warning(f"Discarding unreadable scratch archive: {self.path}")
                self.path.unlink()
            self._zip = zipfile.ZipFile(self.path, "w", zipfile.ZIP_DEFLATED)
            self._names = set()
        else:
            self._zip = zipfile.ZipFile(self.path, "a", zipfile.ZIP_DEFLATED)
            self._names = existing
            logger.debug(f"Resumed scratch archive {self.path} ({len(existing)} entries)")
        return self

    def close(self) -> None:
        """Flush the central directory and release the file handle."""
        if self._zip is not None:
            self._zip.close()
            self._zip = None

    def __enter__(self) -> "ArchiveAccumulator":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------

    @property
    def entry_names(self) -> Set[str]:
        return set(self._names)

    @property
    def entry_count(self) -> int:
        return len(self._names)

    def has_entry(self, name: str) -> bool:
        return name in self._names

    def append(self, name: str, data: bytes) -> bool:
        """
        Append one entry.

        Returns:
            True if written, False if an entry with that name already existed
        """
        if self._zip is None:
            raise RuntimeError("Archive accumulator is not open")
        if name in self._names:
            return False
        self._zip.writestr(name, data)
        self._names.add(name)
        return True

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def read_entry_names(path: Union[str, Path]) -> Optional[Set[str]]:
        """Entry names of an existing archive, or None if it is not a readable ZIP."""
        try:
            with zipfile.ZipFile(path, "r") as zf:
                return set(zf.namelist())
        except (zipfile.BadZipFile, OSError, EOFError):
            return None

    def size(self) -> int:
        return os.path.getsize(self.path)

    def discard(self) -> None:
        """Close and delete the scratch file."""
        self.close()
        if self.path.exists():
            self.path.unlink()
