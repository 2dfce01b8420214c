"""Staging of audio chunks to temporary files.

The engine reads audio by path, so every chunk is written to its own
uniquely named file for the duration of exactly one engine call.
"""

import asyncio
import logging
import os
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from stt_relay.constants import STAGED_SUFFIX
from stt_relay.errors import StagingError

logger = logging.getLogger(__name__)


def staged_filename(suffix: str = STAGED_SUFFIX) -> str:
    """Return a process-unique filename with the given suffix."""
    return f"{uuid.uuid4()}{suffix}"


def write_chunk(path: Path, data: bytes) -> None:
    """Write data to a new file and make sure it reached storage.

    Raises:
        FileExistsError: If path already exists.
        OSError: On any other write failure.
    """
    with open(path, "xb") as f:
        f.write(data)
        f.flush()
        os.fsync(f.fileno())


def remove_staged(path: Path) -> bool:
    """Delete a staged file, logging (not raising) on failure.

    Returns:
        True if the file was removed.
    """
    logger.info("Cleaning up file %s", path)
    try:
        os.remove(path)
    except OSError as e:
        logger.warning("Failed to remove staged file %s: %s", path, e)
        return False
    return True


class FileStager:
    """Creates staged chunk files in one directory."""

    def __init__(self, directory: str | Path, suffix: str = STAGED_SUFFIX):
        self._directory = Path(directory)
        self._suffix = suffix

    @asynccontextmanager
    async def stage(self, data: bytes) -> AsyncIterator[Path]:
        """Stage a chunk for the duration of the block.

        The file is fully written and synced before the path is yielded, and
        removed once the block exits, whether it returned, raised or was
        cancelled. Cancellation during the write waits for the writer thread
        before removing, so the file cannot reappear afterwards.

        Args:
            data: Raw chunk bytes.

        Yields:
            Absolute path of the staged file.

        Raises:
            StagingError: If the file could not be written.
        """
        path = (self._directory / staged_filename(self._suffix)).resolve()
        loop = asyncio.get_running_loop()
        write = loop.run_in_executor(None, write_chunk, path, data)

        try:
            await asyncio.shield(write)
        except FileExistsError as e:
            # Not ours to delete.
            raise StagingError(f"staged file already exists: {path}") from e
        except OSError as e:
            # A partial file may have been created before the failure.
            await loop.run_in_executor(None, _discard_partial, path)
            raise StagingError(f"could not stage chunk to {path}: {e}") from e
        except asyncio.CancelledError:
            await asyncio.wait([write])
            if write.exception() is None:
                await loop.run_in_executor(None, remove_staged, path)
            elif not isinstance(write.exception(), FileExistsError):
                await loop.run_in_executor(None, _discard_partial, path)
            raise

        logger.info("Processing file %s (%d bytes)", path, len(data))
        try:
            yield path
        finally:
            await loop.run_in_executor(None, remove_staged, path)


def _discard_partial(path: Path) -> None:
    if path.exists():
        remove_staged(path)
