"""The root shelf: the file that bootstraps the memory manager.

Layout: one cache line holding the magic number, then one cache-line-sized
ticket lock per pool, then one cache-line-sized entry per pool (e.g. its type).
"""

from __future__ import annotations

import logging
import mmap
import os

from .common import CACHE_LINE_SIZE, MB, ShelfFileError, ShelfId
from .fam import FamRegion, FamSpinlock
from .log import TRACE

_logger = logging.getLogger(__name__)

MAGIC_NUM = 766874353
SHELF_SIZE = 128 * MB
CREATE_MODE = 0o660

# offsets below are relative to the area returned by RootShelf.region()
LOCK_STRIDE = CACHE_LINE_SIZE
LOCKS_OFFSET = 0
TYPES_OFFSET = ShelfId.MAX_POOL_COUNT * LOCK_STRIDE
TYPE_ENTRY_SIZE = CACHE_LINE_SIZE
_TYPES_SIZE = ShelfId.MAX_POOL_COUNT * TYPE_ENTRY_SIZE
MIN_SHELF_SIZE = CACHE_LINE_SIZE + TYPES_OFFSET + _TYPES_SIZE


class RootShelf:
    """A root shelf file; it must exist before any memory manager starts."""

    def __init__(self, path: str | os.PathLike, size: int = SHELF_SIZE) -> None:
        if size < MIN_SHELF_SIZE:
            raise ValueError(f"root shelf needs at least {MIN_SHELF_SIZE} bytes, got {size}")
        self._path = os.fspath(path)
        self._size = size
        self._fd: int | None = None
        self._map: mmap.mmap | None = None

    def __repr__(self) -> str:
        return f"RootShelf({self._path!r})"

    def __enter__(self) -> RootShelf:
        self.open()
        return self

    def __exit__(self, *args) -> None:
        if self.is_open():
            self.close()

    def __del__(self) -> None:
        if getattr(self, "_fd", None) is not None:
            try:
                self.close()
            except ShelfFileError:
                pass

    @property
    def path(self) -> str:
        return self._path

    def _error(self, action: str, code: str) -> ShelfFileError:
        return ShelfFileError(f"RootShelf: {action} {self._path}", code=code)

    def exist(self) -> bool:
        return os.path.exists(self._path)

    def is_open(self) -> bool:
        return self._fd is not None

    def create(self) -> None:
        """Create the file, initialise every pool lock and entry, then set the magic number."""
        _logger.log(TRACE, "RootShelf.create %s", self._path)
        if self.exist():
            raise self._error("root shelf already exists:", "SHELF_FILE_FOUND")
        if self.is_open():
            raise self._error("root shelf is open:", "SHELF_FILE_OPENED")
        old_mask = os.umask(0)
        try:
            fd = os.open(self._path, os.O_CREAT | os.O_EXCL | os.O_RDWR, CREATE_MODE)
        except OSError as exc:
            _logger.critical("RootShelf: Failed to create the root shelf file %s", self._path)
            raise self._error("failed to create", "SHELF_FILE_CREATE_FAILED") from exc
        finally:
            os.umask(old_mask)
        try:
            os.ftruncate(fd, self._size)
            with mmap.mmap(fd, self._size) as mapped:
                whole = FamRegion(mapped)
                # the file was just extended, so only the header needs clearing
                whole.memset_persist(0, 0, CACHE_LINE_SIZE)
                area = FamRegion(mapped, CACHE_LINE_SIZE)
                for pool_id in range(ShelfId.MAX_POOL_COUNT):
                    FamSpinlock(area, LOCKS_OFFSET + pool_id * LOCK_STRIDE).init()
                area.memset_persist(TYPES_OFFSET, 0, _TYPES_SIZE)
                whole.persist(0, self._size)
                whole.write_64(0, MAGIC_NUM)
                whole.persist(0, CACHE_LINE_SIZE)
        except (OSError, ValueError) as exc:
            _logger.critical("RootShelf: Failed to set up the root shelf file %s", self._path)
            raise self._error("failed to set up", "SHELF_FILE_CREATE_FAILED") from exc
        finally:
            os.close(fd)

    def destroy(self) -> None:
        """Remove the file; raise SHELF_FILE_NOT_FOUND if it was not there."""
        _logger.log(TRACE, "RootShelf.destroy %s", self._path)
        existed = self.exist()
        if self.is_open():
            raise self._error("root shelf is open:", "SHELF_FILE_OPENED")
        try:
            os.remove(self._path)
        except FileNotFoundError:
            _logger.log(TRACE, "RootShelf: file vanished before removal")
        if not existed:
            raise self._error("root shelf not found:", "SHELF_FILE_NOT_FOUND")

    def open(self) -> None:
        """Map the file and check its magic number."""
        _logger.log(TRACE, "RootShelf.open %s", self._path)
        if self.is_open():
            raise self._error("root shelf is already open:", "SHELF_FILE_OPENED")
        try:
            fd = os.open(self._path, os.O_RDWR)
        except OSError as exc:
            _logger.critical("RootShelf: Failed to open the root shelf file %s", self._path)
            raise self._error("failed to open", "SHELF_FILE_OPEN_FAILED") from exc
        try:
            mapped = mmap.mmap(fd, self._size)
        except (OSError, ValueError) as exc:
            os.close(fd)
            _logger.critical("RootShelf: Failed to mmap the root shelf file %s", self._path)
            raise self._error("failed to map", "SHELF_FILE_OPEN_FAILED") from exc
        self._fd, self._map = fd, mapped
        if FamRegion(mapped).read_64(0) != MAGIC_NUM:
            self.close()
            raise self._error("bad magic number in", "SHELF_FILE_OPEN_FAILED")

    def close(self) -> None:
        _logger.log(TRACE, "RootShelf.close %s", self._path)
        if not self.is_open():
            raise self._error("root shelf is not open:", "SHELF_FILE_CLOSED")
        mapped, fd = self._map, self._fd
        self._map, self._fd = None, None
        try:
            mapped.close()
        except BufferError as exc:
            os.close(fd)
            raise self._error("failed to unmap", "SHELF_FILE_CLOSE_FAILED") from exc
        try:
            os.close(fd)
        except OSError as exc:
            raise self._error("failed to close", "SHELF_FILE_CLOSE_FAILED") from exc

    def region(self) -> FamRegion:
        """Return the area after the magic number: pool locks, then pool entries."""
        if not self.is_open():
            raise self._error("root shelf is not open:", "SHELF_FILE_CLOSED")
        return FamRegion(self._map, CACHE_LINE_SIZE)

    def pool_lock(self, pool_id: int) -> FamSpinlock:
        """Return the cross-process lock of ``pool_id``."""
        if not 0 <= pool_id < ShelfId.MAX_POOL_COUNT:
            raise ValueError(f"pool id {pool_id} out of range")
        return FamSpinlock(self.region(), LOCKS_OFFSET + pool_id * LOCK_STRIDE)