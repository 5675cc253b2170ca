"""Content digests for duplicate detection."""
import asyncio
import hashlib
from pathlib import Path
from typing import Union

CHUNK_SIZE = 1024 * 1024


class HashingError(IOError):
    """The staged file could not be read while computing its digest."""


def compute_file_digest(path: Union[str, Path]) -> str:
    """Return the SHA-256 hex digest of a file, streaming it in chunks.

    Raises:
        HashingError: If the file cannot be opened or read.
    """
    digest = hashlib.sha256()
    try:
        with open(path, "rb") as fh:
            while True:
                chunk = fh.read(CHUNK_SIZE)
                if not chunk:
                    break
                digest.update(chunk)
    except OSError as exc:
        raise HashingError(f"Cannot hash {path}: {exc}") from exc
    return digest.hexdigest()


async def compute_file_digest_async(path: Union[str, Path]) -> str:
    """Run compute_file_digest() in the default executor."""
    return await asyncio.get_event_loop().run_in_executor(None, compute_file_digest, path)
