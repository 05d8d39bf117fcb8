"""A shelf: a file on a memory-backed file system that is mapped into memory."""

from __future__ import annotations

import mmap
import os

from .common import PERM_MASK, ShelfFileError, ShelfId
from .shelf_manager import get_shelf_manager

DEFAULT_MODE = 0o660


class ShelfFile:
    """A shelf file, optionally tied to a shelf id for registration with the shelf manager."""

    def __init__(self, path: str | os.PathLike, shelf_id: ShelfId | None = None) -> None:
        self._path = os.fspath(path)
        self._shelf_id = shelf_id if shelf_id is not None else ShelfId()
        self._fd: int | None = None

    def __repr__(self) -> str:
        return f"ShelfFile({self._path!r}, {self._shelf_id})"

    def __enter__(self) -> ShelfFile:
        return self

    def __exit__(self, *args) -> None:
        if self.is_open():
            self.close()

    def __del__(self) -> None:
        if getattr(self, "_fd", None) is not None:
            try:
                os.close(self._fd)
            except OSError:
                pass
            self._fd = None

    @property
    def path(self) -> str:
        return self._path

    @property
    def shelf_id(self) -> ShelfId:
        return self._shelf_id

    def _error(self, action: str, code: str) -> ShelfFileError:
        return ShelfFileError(f"{action} {self._path}", code=code)

    def is_open(self) -> bool:
        return self._fd is not None

    def create(self, mode: int = DEFAULT_MODE, size: int = 0) -> None:
        """Create the file with exactly ``mode`` and, if ``size`` > 0, that length."""
        if self.exist():
            raise self._error("shelf file already exists:", "SHELF_FILE_FOUND")
        if self.is_open():
            raise self._error("shelf file is open:", "SHELF_FILE_OPENED")
        old_mask = os.umask(0)
        try:
            fd = os.open(self._path, os.O_CREAT | os.O_EXCL | os.O_WRONLY | os.O_TRUNC, mode)
        except FileExistsError as exc:
            raise self._error("shelf file already exists:", "SHELF_FILE_FOUND") from exc
        except OSError as exc:
            raise self._error("cannot create shelf file", "SHELF_FILE_CREATE_FAILED") from exc
        finally:
            os.umask(old_mask)
        self._fd = fd
        try:
            if size > 0:
                self.truncate(size)
        finally:
            self.close()

    def destroy(self) -> None:
        """Remove the file; raise SHELF_FILE_NOT_FOUND if it was not there."""
        existed = self.exist()
        if self.is_open():
            raise self._error("shelf file is open:", "SHELF_FILE_OPENED")
        try:
            os.remove(self._path)
        except FileNotFoundError:
            pass
        if not existed:
            raise self._error("shelf file not found:", "SHELF_FILE_NOT_FOUND")

    def open(self, flags: int = os.O_RDWR) -> None:
        if self.is_open():
            raise self._error("shelf file is already open:", "SHELF_FILE_OPENED")
        if not self.exist():
            raise self._error("shelf file not found:", "SHELF_FILE_NOT_FOUND")
        try:
            self._fd = os.open(self._path, flags)
        except FileNotFoundError as exc:
            raise self._error("shelf file not found:", "SHELF_FILE_NOT_FOUND") from exc
        except OSError as exc:
            raise self._error("cannot open shelf file", "SHELF_FILE_OPEN_FAILED") from exc

    def close(self) -> None:
        if not self.is_open():
            raise self._error("shelf file is not open:", "SHELF_FILE_CLOSED")
        fd, self._fd = self._fd, None
        try:
            os.close(fd)
        except OSError as exc:
            raise self._error("cannot close shelf file", "SHELF_FILE_CLOSE_FAILED") from exc

    def map_range(self, length: int, offset: int = 0, register_fam_atomic: bool = True) -> mmap.mmap:
        """Map ``length`` bytes at ``offset`` read-write and shared.

        Atomic regions need no registration within a process; the flag is accepted and ignored.
        """
        if not self.is_open():
            raise self._error("shelf file is not open:", "SHELF_FILE_CLOSED")
        try:
            return mmap.mmap(
                self._fd,
                length,
                flags=mmap.MAP_SHARED,
                prot=mmap.PROT_READ | mmap.PROT_WRITE,
                offset=offset,
            )
        except (OSError, ValueError) as exc:
            raise self._error("cannot map shelf file", "SHELF_FILE_MAP_FAILED") from exc

    def map(self):
        """Map the whole file and register it, or reuse the registered mapping."""
        if not self.is_open():
            raise self._error("shelf file is not open:", "SHELF_FILE_CLOSED")
        if not self._shelf_id.is_valid():
            raise ValueError("mapping a whole shelf needs a valid shelf id")
        manager = get_shelf_manager()
        manager.lock()
        try:
            base = manager.find_and_open_shelf(self._shelf_id)
            if base is not None:
                return base
            length = self.size()
            mapped = self.map_range(length)
            return manager.register_shelf(self._shelf_id, mapped, length)
        finally:
            manager.unlock()

    def unmap(self, mapped, unregister: bool = False) -> None:
        """Release a mapping made by :meth:`map`.

        With ``unregister`` the shelf is unregistered and unmapped at once;
        otherwise a reference is dropped and the last one unmaps it.
        """
        if not self._shelf_id.is_valid():
            raise ValueError("unmapping a whole shelf needs a valid shelf id")
        manager = get_shelf_manager()
        manager.lock()
        try:
            if unregister:
                base = manager.unregister_shelf(self._shelf_id)
                needs_unmap = True
            else:
                base = manager.find_and_close_shelf(self._shelf_id)
                needs_unmap = base is None
                if needs_unmap:
                    base = manager.unregister_shelf(self._shelf_id)
        finally:
            manager.unlock()
        if base is not None and base is not mapped:
            raise self._error("mapping is not the registered one for", "SHELF_FILE_UNMAP_FAILED")
        if needs_unmap and not mapped.closed:
            self.unmap_range(mapped, len(mapped))

    @staticmethod
    def unmap_range(mapped: mmap.mmap, length: int) -> None:
        """Unmap a mapping of ``length`` bytes made by :meth:`map_range`."""
        if mapped.closed:
            return
        if length != len(mapped):
            raise ShelfFileError(
                f"cannot unmap {length} bytes of a {len(mapped)}-byte mapping",
                code="SHELF_FILE_UNMAP_FAILED",
            )
        try:
            mapped.close()
        except BufferError as exc:
            raise ShelfFileError("mapping still in use", code="SHELF_FILE_UNMAP_FAILED") from exc

    def truncate(self, length: int) -> None:
        try:
            if self.is_open():
                os.ftruncate(self._fd, length)
            else:
                os.truncate(self._path, length)
        except FileNotFoundError as exc:
            raise self._error("shelf file not found:", "SHELF_FILE_NOT_FOUND") from exc
        except OSError as exc:
            raise self._error("cannot truncate shelf file", "SHELF_FILE_TRUNCATE_FAILED") from exc

    def rename(self, new_path: str | os.PathLike) -> None:
        new_path = os.fspath(new_path)
        try:
            os.rename(self._path, new_path)
        except OSError as exc:
            raise self._error("cannot rename shelf file", "SHELF_FILE_RENAME_FAILED") from exc
        self._path = new_path

    def exist(self) -> bool:
        return os.path.exists(self._path)

    def size(self) -> int:
        try:
            if self.is_open():
                return os.fstat(self._fd).st_size
            return os.path.getsize(self._path)
        except FileNotFoundError as exc:
            raise self._error("shelf file not found:", "SHELF_FILE_NOT_FOUND") from exc
        except OSError as exc:
            raise self._error("cannot stat shelf file", "SHELF_FILE_SIZE_FAILED") from exc

    def get_permission(self) -> int:
        try:
            return os.stat(self._path).st_mode & PERM_MASK
        except OSError as exc:
            raise self._error("cannot read permission of", "SHELF_FILE_GET_PERM_FAILED") from exc

    def set_permission(self, mode: int) -> None:
        try:
            os.chmod(self._path, mode & PERM_MASK)
        except OSError as exc:
            raise self._error("cannot set permission of", "SHELF_FILE_SET_PERM_FAILED") from exc

    def mark_invalid(self) -> None:
        get_shelf_manager().mark_invalid(self._shelf_id)

    def is_invalid(self) -> bool:
        return get_shelf_manager().is_invalid(self._shelf_id)