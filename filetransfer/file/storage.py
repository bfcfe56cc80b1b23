"""
File Store

Design Decision: Storage Layout
===============================

Options Considered:
1. Hash-named blobs with a name index
   - Deduplication, but needs a database
2. Plain files named by the client
   - What you see is what was stored
   - Names must be sanitised

Decision: Plain files directly under one root directory
- A request names a bare file; anything with a path separator or that
  would resolve outside the root is rejected
- Exclusive create is the only coordination between concurrent
  transfers, and the filesystem enforces it
- Free space is checked before data flows; the check is a preflight,
  not a reservation
"""

import os
import shutil
import logging
from pathlib import Path
from typing import Callable, Optional

import aiofiles
import aiofiles.os

from ..errors import AlreadyExists, InsufficientSpace, InvalidFileName, LocalFileError

logger = logging.getLogger(__name__)

# Returns free bytes available to unprivileged writers under a directory
FreeSpaceProbe = Callable[[Path], int]


def disk_free_space(directory: Path) -> int:
    """Bytes available on the filesystem holding `directory`."""
    return shutil.disk_usage(directory).free


def bare_name(file_name: str) -> str:
    """Last path component of a client-side path, either separator style."""
    return file_name.replace('\\', '/').rstrip('/').rsplit('/', 1)[-1]


class FileStore:
    """
    Files stored by the server, all directly under `root`.

    Provides:
    - Name validation against the root
    - Exclusive create / read / stat / remove
    - Free space preflight
    """

    def __init__(self, root: Path, free_space: Optional[FreeSpaceProbe] = None):
        """
        Initialize the store.

        Args:
            root: Directory that holds every stored file
            free_space: Free space probe (defaults to the real filesystem)
        """
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.root = self.root.resolve()
        self._free_space = free_space or disk_free_space

    def resolve(self, file_name: str) -> Path:
        """
        Map a client-supplied name to a path inside the root.

        Raises:
            InvalidFileName: if the name is not a bare file name
        """
        if not file_name or file_name in ('.', '..'):
            raise InvalidFileName(f"invalid file name: {file_name!r}")
        if '/' in file_name or '\\' in file_name or '\0' in file_name:
            raise InvalidFileName(f"file name must not contain a path: {file_name!r}")

        path = (self.root / file_name).resolve()
        if path.parent != self.root:
            raise InvalidFileName(f"file name escapes the store: {file_name!r}")
        return path

    async def create_exclusive(self, file_name: str):
        """
        Open a new file for writing; fails if it already exists.

        Returns:
            (path, aiofiles handle) tuple
        """
        path = self.resolve(file_name)
        try:
            handle = await aiofiles.open(path, 'xb')
        except FileExistsError as e:
            raise AlreadyExists(f"file already exists: {file_name}") from e
        except OSError as e:
            raise LocalFileError(f"cannot create {file_name}: {e.strerror or e}") from e
        return path, handle

    async def open_read(self, file_name: str):
        """
        Open a stored file for reading.

        Returns:
            (path, size, aiofiles handle) tuple
        """
        path = self.resolve(file_name)
        try:
            handle = await aiofiles.open(path, 'rb')
        except FileNotFoundError as e:
            raise LocalFileError(f"file not found: {file_name}") from e
        except OSError as e:
            raise LocalFileError(f"cannot open {file_name}: {e.strerror or e}") from e

        try:
            size = os.fstat(handle.fileno()).st_size
        except OSError as e:
            await handle.close()
            raise LocalFileError(f"cannot stat {file_name}: {e.strerror or e}") from e
        return path, size, handle

    async def stat(self, file_name: str) -> int:
        """Size of a stored file in bytes."""
        path = self.resolve(file_name)
        try:
            result = await aiofiles.os.stat(path)
        except FileNotFoundError as e:
            raise LocalFileError(f"file not found: {file_name}") from e
        except OSError as e:
            raise LocalFileError(f"cannot stat {file_name}: {e.strerror or e}") from e
        return result.st_size

    async def remove(self, path: Path) -> bool:
        """
        Delete a stored file by path.

        Returns:
            True if a file was removed, False if it was already gone
        """
        try:
            await aiofiles.os.remove(path)
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.error(f"Failed to remove {path}: {e}")
            raise LocalFileError(f"cannot remove {path.name}: {e.strerror or e}") from e
        logger.debug(f"Removed {path}")
        return True

    def free_space(self) -> int:
        """Bytes currently available under the root."""
        try:
            return self._free_space(self.root)
        except OSError as e:
            raise LocalFileError(f"cannot query free space: {e.strerror or e}") from e

    def check_space(self, size: int):
        """
        Preflight for an incoming file of `size` bytes.

        Raises:
            InsufficientSpace: if fewer than `size` bytes are free
        """
        available = self.free_space()
        if available < size:
            raise InsufficientSpace(size, available)
