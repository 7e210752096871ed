"""
Attachment Spooler Module
Writes attachment bytes to temporary files in the background, then moves
them into content-addressed permanent storage

PATTERN RECOGNITION: This is a two-phase commit for blobs. Phase one
(``spool``) only ever touches private temporary files, so a failed parse
leaves nothing visible. Phase two (``finalize``) publishes each file under
``<md5>-<disambiguator>`` with a single move.

Concurrency safety of the attachments directory comes from naming, not
locking: the disambiguator embeds the pid, the process start time and a
per-process monotonic counter, so two finalize calls never pick the same
name even for identical content parsed in the same instant.
"""

import hashlib
import itertools
import logging
import os
import shutil
import tempfile
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Iterable, Optional, Union

from .errors import SpoolError
from ..utils.security_validators import is_safe_storage_name

logger = logging.getLogger(__name__)

_PROCESS_STARTED = int(time.time())
_sequence = itertools.count()
_sequence_lock = threading.Lock()


def next_disambiguator() -> str:
    """Return a storage-name suffix that is unique within and across processes."""
    with _sequence_lock:
        seq = next(_sequence)
    return f"{os.getpid()}.{_PROCESS_STARTED}.{seq}"


class SpoolHandle:
    """
    Tracks one in-flight or completed attachment write

    ``future`` resolves to the handle itself once the bytes are on disk;
    ``checksum`` and ``length`` are filled in at that point.
    """

    def __init__(self):
        self.future: Optional[Future] = None
        self.temp_path: Optional[str] = None
        self.storage_path: Optional[str] = None
        self.checksum: Optional[str] = None
        self.length = 0

    def done(self) -> bool:
        return self.future is not None and self.future.done()

    def result(self, timeout: Optional[float] = None) -> "SpoolHandle":
        """Block until the write finished; re-raises its SpoolError."""
        return self.future.result(timeout)

    def __repr__(self):
        state = "finalized" if self.storage_path else ("done" if self.done() else "pending")
        return f"SpoolHandle({state}, temp={self.temp_path!r}, stored={self.storage_path!r})"


class AttachmentSpooler:
    """
    Streams attachment chunks to temporary files and relocates them

    Args:
        attachments_path: Permanent storage directory
        temp_dir: Directory for temporary files (system default if None)
        allocate_temp_path: Callable returning a fresh unique temporary path;
            overrides the tempfile.mkstemp based default
        max_workers: Size of the background write pool
    """

    def __init__(
        self,
        attachments_path: Union[str, Path],
        temp_dir: Optional[Union[str, Path]] = None,
        allocate_temp_path: Optional[Callable[[], str]] = None,
        max_workers: int = 4,
    ):
        self.attachments_path = Path(attachments_path)
        self.temp_dir = str(temp_dir) if temp_dir else None
        self._allocate = allocate_temp_path or self._mkstemp
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="attachment-spool"
        )

    # ------------------------------------------------------------------
    # Phase one: temporary spooling
    # ------------------------------------------------------------------

    def spool(self, chunks: Iterable[bytes]) -> SpoolHandle:
        """
        Start writing an attachment stream to a new temporary file.

        Returns immediately; the write happens on the worker pool.

        Raises:
            SpoolError: If the pool no longer accepts work
        """
        handle = SpoolHandle()
        try:
            handle.future = self._executor.submit(self._write, handle, chunks)
        except RuntimeError as e:
            raise SpoolError(f"Attachment spooler is shut down: {e}") from e
        return handle

    def _write(self, handle: SpoolHandle, chunks: Iterable[bytes]) -> SpoolHandle:
        try:
            path = self._allocate()
        except OSError as e:
            raise SpoolError(f"Could not allocate a temporary attachment file: {e}") from e

        handle.temp_path = path
        digest = hashlib.md5(usedforsecurity=False)
        length = 0
        try:
            with open(path, "wb") as fh:
                for chunk in chunks:
                    digest.update(chunk)
                    fh.write(chunk)
                    length += len(chunk)
        except OSError as e:
            self._unlink(path)
            handle.temp_path = None
            raise SpoolError(f"Failed writing attachment to {path}: {e}") from e

        handle.checksum = digest.hexdigest()
        handle.length = length
        logger.debug("Spooled %d bytes to %s (md5 %s)", length, path, handle.checksum)
        return handle

    def _mkstemp(self) -> str:
        fd, path = tempfile.mkstemp(prefix="mailstore-", suffix=".part", dir=self.temp_dir)
        os.close(fd)
        return path

    # ------------------------------------------------------------------
    # Phase two: relocation to permanent storage
    # ------------------------------------------------------------------

    def finalize(self, handle: SpoolHandle, checksum: Optional[str] = None) -> str:
        """
        Move a completed temporary file to its permanent name.

        Args:
            handle: A handle whose write has completed
            checksum: Content checksum; defaults to the one computed while spooling

        Returns:
            Storage name relative to attachments_path

        Raises:
            SpoolError: If the handle has no temporary file or the move fails.
                The temporary bytes are left in place in that case.
        """
        checksum = checksum or handle.checksum
        if handle.temp_path is None or not checksum:
            raise SpoolError("Cannot finalize an attachment that was not spooled")

        storage_path = f"{checksum}-{next_disambiguator()}"
        target = self.attachments_path / storage_path
        if target.exists():
            raise SpoolError(f"Refusing to overwrite existing attachment {storage_path}")

        try:
            shutil.move(handle.temp_path, str(target))
        except OSError as e:
            # A cross-device move may have left a partial copy behind
            if os.path.exists(handle.temp_path):
                self._unlink(str(target))
            raise SpoolError(
                f"Failed moving attachment {handle.temp_path} to {target}: {e}"
            ) from e

        handle.temp_path = None
        handle.storage_path = storage_path
        return storage_path

    # ------------------------------------------------------------------
    # Cleanup and access
    # ------------------------------------------------------------------

    def discard(self, handle: SpoolHandle) -> None:
        """Delete the temporary file behind a handle, if any."""
        if handle.temp_path:
            self._unlink(handle.temp_path)
            handle.temp_path = None

    def remove(self, storage_path: str) -> bool:
        """Delete a permanently stored attachment. Returns False if it was missing."""
        path = self.path_for(storage_path)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True

    def path_for(self, storage_path: str) -> Path:
        """
        Resolve a storage name inside attachments_path.

        Raises:
            SpoolError: If the name is not one this spooler could have produced
        """
        if not is_safe_storage_name(storage_path):
            raise SpoolError(f"Invalid attachment storage name: {storage_path!r}")
        return self.attachments_path / storage_path

    def read_bytes(self, storage_path: str) -> bytes:
        """Read a stored attachment's bytes."""
        path = self.path_for(storage_path)
        try:
            return path.read_bytes()
        except OSError as e:
            raise SpoolError(f"Cannot read attachment {storage_path}: {e}") from e

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.shutdown()

    @staticmethod
    def _unlink(path: str) -> None:
        try:
            os.unlink(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Could not remove temporary attachment %s: %s", path, e)
