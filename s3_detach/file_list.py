"""Backup file entries and the work-claiming file list.

Workers drain a shared, sorted list of backup files. Each entry carries its
own non-blocking claim flag, so a worker claims a file with a single atomic
test-and-set and no lock is ever held over the whole list.
"""

import stat
import threading
from dataclasses import dataclass, field
from typing import Iterator, List, Optional


@dataclass
class BackupFileEntry:
    """One file of a materialized backup."""
    rel_path: str
    size: Optional[int] = None
    mode: int = stat.S_IFREG | 0o600
    external_dir_num: int = 0
    is_datafile: bool = False
    crc: int = 0
    write_size: int = 0
    claim_count: int = 0
    _claim: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False, compare=False)

    @property
    def is_regular(self) -> bool:
        return stat.S_ISREG(self.mode)

    @property
    def name(self) -> str:
        return self.rel_path.rsplit('/', 1)[-1]

    @property
    def claimed(self) -> bool:
        return self._claim.locked()

    def try_claim(self) -> bool:
        """Atomically move the entry from unclaimed to claimed.

        Returns True only for the single caller that won the flag.
        """
        if not self._claim.acquire(blocking=False):
            return False
        # Only the winner reaches this point, so the counter is never contended.
        self.claim_count += 1
        return True

    def clear_claim(self):
        """Reset the flag to unclaimed. Must not race with try_claim()."""
        self._claim = threading.Lock()


def sort_key(entry: BackupFileEntry):
    """Order by relative path, then external directory index."""
    return entry.rel_path, entry.external_dir_num


class ClaimableFileList:
    """Read-mostly list of backup files that workers claim one by one.

    The list is never resized once built; only per-entry claim flags and
    counters change, and only the claiming worker touches them.
    """

    def __init__(self, files: List[BackupFileEntry], sort: bool = True):
        self._files = sorted(files, key=sort_key) if sort else list(files)

    def __len__(self):
        return len(self._files)

    def __iter__(self) -> Iterator[BackupFileEntry]:
        return iter(self._files)

    def __getitem__(self, index) -> BackupFileEntry:
        return self._files[index]

    @property
    def regular_files(self) -> List[BackupFileEntry]:
        return [f for f in self._files if f.is_regular]

    @property
    def skipped_files(self) -> List[BackupFileEntry]:
        return [f for f in self._files if not f.is_regular]

    def reset_claims(self):
        """Mark every entry unclaimed. Call only before workers start."""
        for entry in self._files:
            entry.clear_claim()

    def claim_next(self) -> Optional[BackupFileEntry]:
        """Claim the first unclaimed regular file, or None when exhausted."""
        return next(self.iter_claims(), None)

    def iter_claims(self) -> Iterator[BackupFileEntry]:
        """Yield regular files claimed by the calling worker.

        A single forward pass over the list: entries already taken by other
        workers and non-regular entries are passed over. When the pass ends
        the list is exhausted for this worker.
        """
        for entry in self._files:
            if not entry.is_regular:
                continue
            if entry.try_claim():
                yield entry
