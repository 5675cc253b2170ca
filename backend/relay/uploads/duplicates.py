"""Per-user index of completed uploads keyed by content digest.

The index is scoped per user: two users uploading byte-identical files each
get their own upload and link, so one user can never learn another user's
link through a duplicate hit.

The index does no locking of its own; UploadQueue only touches it inside
its critical section.
"""
import logging
import time
from typing import Dict, Optional, Tuple

from .schemas import DuplicateRecord

logger = logging.getLogger(__name__)

DuplicateKey = Tuple[str, str]


def duplicate_key(user_id: str, digest: str) -> DuplicateKey:
    return (user_id, digest)


class DuplicateIndex:
    """In-memory (user, digest) -> DuplicateRecord map."""

    def __init__(self) -> None:
        self._records: Dict[DuplicateKey, DuplicateRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    def lookup(self, user_id: str, digest: str) -> Optional[DuplicateRecord]:
        return self._records.get(duplicate_key(user_id, digest))

    def record(
        self,
        user_id: str,
        digest: str,
        link: str,
        filename: str,
        timestamp: float,
    ) -> DuplicateRecord:
        """Insert or overwrite the entry for (user_id, digest)."""
        entry = DuplicateRecord(link=link, uploaded_at=timestamp, filename=filename)
        self._records[duplicate_key(user_id, digest)] = entry
        return entry

    def prune(self, max_age: float, now: Optional[float] = None) -> int:
        """Drop entries older than *max_age* seconds.

        Returns:
            Number of entries removed.
        """
        now = time.time() if now is None else now
        stale = [k for k, v in self._records.items() if now - v.uploaded_at > max_age]
        for k in stale:
            del self._records[k]
        if stale:
            logger.info("Duplicate index prune: evicted %d entries", len(stale))
        return len(stale)
