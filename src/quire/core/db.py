"""Storage lifecycle.

One storage instance is opened per process on first use and closed at
shutdown. Components receive the instance explicitly.
"""

import logging
from pathlib import Path

from quire.core.storage import FileStorage, MemoryStorage, Storage

logger = logging.getLogger(__name__)

_storage: Storage | None = None


def init_storage(data_dir: Path, backend: str = "file") -> Storage:
    """Open storage, reusing an already opened instance.

    Args:
        data_dir: Root directory for file storage.
        backend: ``"file"`` or ``"memory"``.

    Returns:
        The storage instance.
    """
    global _storage
    if _storage is not None:
        return _storage

    if backend == "memory":
        _storage = MemoryStorage()
    elif backend == "file":
        _storage = FileStorage(data_dir)
    else:
        raise ValueError(f"Unknown storage backend: {backend!r}")

    logger.info("Storage initialized: %s (%s)", backend, data_dir)
    return _storage


async def shutdown_storage() -> None:
    """Close the process-wide storage instance."""
    global _storage
    if _storage is not None:
        try:
            await _storage.close()
            logger.info("Storage closed")
        except Exception:
            logger.exception("Error closing storage")
        _storage = None
