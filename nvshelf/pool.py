"""A pool: a group of related shelves sharing one metadata shelf.

The metadata shelf holds the shelf size in its first cache line, then a
membership table with one versioned slot per shelf index, then a shared area
that pool users may use for their own metadata. Shelf creation and removal
rely on atomic file creation, rename and deletion, with the slot version
encoded in each shelf's file name.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable

from .common import (
    CACHE_LINE_SIZE,
    MB,
    MembershipError,
    NvmmError,
    PoolError,
    ShelfFileError,
    ShelfId,
)
from .config import Config, get_config
from .fam import FamRegion
from .log import TRACE
from .membership import Membership
from .pool_files import (
    TMP_SUFFIX,
    rand_version,
    remove_old_shelf_files,
    truncate_shelf_file,
)
from .shelf_file import DEFAULT_MODE, ShelfFile
from .shelf_name import ShelfName

_logger = logging.getLogger(__name__)

MAX_POOL_COUNT = ShelfId.MAX_POOL_COUNT
MAX_SHELF_COUNT = ShelfId.MAX_SHELF_COUNT
SHELF_SIZE = 128 * MB
METADATA_SHELF_SIZE = 128 * MB
# pool 0 is reserved for system-wide metadata
METADATA_POOL_ID = 0

FormatFn = Callable[[ShelfFile, int], None]


class Pool:
    """A group of shelves identified by shelf index within one pool id."""

    def __init__(
        self,
        pool_id: int,
        config: Config | None = None,
        metadata_shelf_size: int = METADATA_SHELF_SIZE,
    ) -> None:
        if not 0 <= pool_id < MAX_POOL_COUNT:
            raise ValueError(f"pool id {pool_id} out of range")
        if config is None:
            config = get_config()
        self._pool_id = pool_id
        self._base_dir = config.shelf_base
        self._shelf_name = ShelfName(config.shelf_base, "NVMM_Shelf", config.shelf_user)
        self._metadata_shelf = ShelfFile(
            self._shelf_name.path(ShelfId(METADATA_POOL_ID, pool_id))
        )
        self._metadata_shelf_size = metadata_shelf_size
        self._is_open = False
        self._map = None
        self._map_size = 0
        self._shelf_size = 0
        self._membership: Membership | None = None

    def __repr__(self) -> str:
        state = "open" if self._is_open else "closed"
        return f"Pool({self._pool_id}, {state})"

    def __enter__(self) -> Pool:
        self.open(False)
        return self

    def __exit__(self, *args) -> None:
        if self._is_open:
            self.close(False)

    @property
    def pool_id(self) -> int:
        return self._pool_id

    @property
    def shelf_size(self) -> int:
        """Size given to new shelves, as loaded when the pool was opened."""
        self._require_open()
        return self._shelf_size

    @property
    def metadata_path(self) -> str:
        return self._metadata_shelf.path

    # metadata shelf helpers

    def _error(self, message: str, code: str) -> PoolError:
        return PoolError(f"pool {self._pool_id}: {message}", code=code)

    def _require_open(self) -> None:
        if not self._is_open:
            raise self._error("pool is not open", "POOL_CLOSED")

    def _open_map_metadata(self) -> None:
        self._metadata_shelf.open(os.O_RDWR)
        try:
            size = self._metadata_shelf.size()
            self._map = self._metadata_shelf.map_range(size)
        except ShelfFileError:
            self._metadata_shelf.close()
            raise
        self._map_size = size

    def _unmap_close_metadata(self) -> None:
        mapped, size = self._map, self._map_size
        self._map, self._map_size = None, 0
        self._membership = None
        try:
            if mapped is not None:
                ShelfFile.unmap_range(mapped, size)
        finally:
            self._metadata_shelf.close()

    def _header(self) -> FamRegion:
        return FamRegion(self._map, 0, CACHE_LINE_SIZE)

    def _new_membership(self) -> Membership:
        region = FamRegion(self._map, CACHE_LINE_SIZE, self._map_size - CACHE_LINE_SIZE)
        return Membership(region)

    def _shelf_id(self, shelf_idx: int) -> ShelfId:
        return ShelfId(self._pool_id, shelf_idx)

    # pool lifecycle

    def create(self, shelf_size: int = SHELF_SIZE, mode: int = DEFAULT_MODE) -> None:
        """Create the metadata shelf, record ``shelf_size`` and an empty membership."""
        _logger.log(TRACE, "Pool.create %s", self._pool_id)
        if self.exist():
            raise self._error("pool already exists", "POOL_FOUND")
        if self._is_open:
            raise self._error("pool is open", "POOL_OPENED")
        try:
            self._metadata_shelf.create(mode, self._metadata_shelf_size)
        except ShelfFileError as exc:
            if exc.code == "SHELF_FILE_FOUND":
                raise self._error("pool already exists", "POOL_FOUND") from exc
            raise self._error("cannot create metadata shelf", "POOL_CREATE_FAILED") from exc
        try:
            self._open_map_metadata()
        except ShelfFileError as exc:
            raise self._error("cannot map metadata shelf", "POOL_CREATE_FAILED") from exc
        try:
            self._header().write_64(0, shelf_size)
            self._new_membership().create(MAX_SHELF_COUNT)
        except (MembershipError, ValueError) as exc:
            self._unmap_close_metadata()
            raise self._error("cannot create membership", "POOL_CREATE_FAILED") from exc
        try:
            self._unmap_close_metadata()
        except ShelfFileError as exc:
            raise self._error("cannot close metadata shelf", "POOL_CREATE_FAILED") from exc

    def destroy(self) -> None:
        """Remove every shelf of the pool, then the metadata shelf."""
        _logger.log(TRACE, "Pool.destroy %s", self._pool_id)
        if not self.exist():
            raise self._error("pool not found", "POOL_NOT_FOUND")
        if self._is_open:
            raise self._error("pool is open", "POOL_OPENED")
        try:
            self.open(False)
        except PoolError as exc:
            raise self._error("cannot open pool", "POOL_DESTROY_FAILED") from exc
        if not self.recover():
            _logger.critical("Found inconsistency in pool %s", self._pool_id)
        for shelf_idx in range(self.size()):
            if self.check_shelf(shelf_idx):
                try:
                    self.remove_shelf(shelf_idx)
                except NvmmError as exc:
                    self.close(False)
                    raise self._error(
                        f"cannot remove shelf {shelf_idx}", "POOL_DESTROY_FAILED"
                    ) from exc
        try:
            self.close(False)
        except PoolError as exc:
            raise self._error("cannot close pool", "POOL_DESTROY_FAILED") from exc

        try:
            self._open_map_metadata()
        except ShelfFileError as exc:
            raise self._error("cannot map metadata shelf", "POOL_DESTROY_FAILED") from exc
        try:
            self._header().write_64(0, 0)
            self._new_membership().destroy()
        except MembershipError as exc:
            self._unmap_close_metadata()
            raise self._error("cannot destroy membership", "POOL_DESTROY_FAILED") from exc
        try:
            self._unmap_close_metadata()
            self._metadata_shelf.destroy()
        except ShelfFileError as exc:
            raise self._error("cannot remove metadata shelf", "POOL_DESTROY_FAILED") from exc

    def exist(self) -> bool:
        return self._metadata_shelf.exist()

    def verify(self) -> bool:
        """Return whether the metadata shelf holds a valid membership table."""
        _logger.log(TRACE, "Pool.verify %s", self._pool_id)
        if not self.exist():
            raise self._error("pool not found", "POOL_NOT_FOUND")
        if self._is_open:
            raise self._error("pool is open", "POOL_OPENED")
        try:
            self._open_map_metadata()
        except ShelfFileError as exc:
            raise self._error("cannot map metadata shelf", "POOL_INVALID_META_FILE") from exc
        try:
            return self._new_membership().verify()
        finally:
            self._unmap_close_metadata()

    def open(self, recover: bool = False) -> None:
        """Map the metadata shelf and load the membership; optionally run recovery."""
        _logger.log(TRACE, "Pool.open %s", self._pool_id)
        if self._is_open:
            raise self._error("pool is already open", "POOL_OPENED")
        if not self.exist():
            raise self._error("pool not found", "POOL_NOT_FOUND")
        try:
            self._open_map_metadata()
        except ShelfFileError as exc:
            raise self._error("cannot map metadata shelf", "POOL_OPEN_FAILED") from exc
        try:
            self._shelf_size = self._header().read_64(0)
            membership = self._new_membership()
            membership.open()
        except (MembershipError, ValueError) as exc:
            self._unmap_close_metadata()
            raise self._error("cannot open membership", "POOL_OPEN_FAILED") from exc
        self._membership = membership
        self._is_open = True
        if recover and not self.recover():
            _logger.critical("Found inconsistency in pool %s", self._pool_id)

    def close(self, recover: bool = False) -> None:
        """Unmap the metadata shelf; optionally run recovery first."""
        _logger.log(TRACE, "Pool.close %s", self._pool_id)
        self._require_open()
        if recover and not self.recover():
            _logger.critical("Found inconsistency in pool %s", self._pool_id)
        try:
            self._membership.close()
            self._unmap_close_metadata()
        except (MembershipError, ShelfFileError) as exc:
            raise self._error("cannot close pool", "POOL_CLOSE_FAILED") from exc
        finally:
            self._is_open = False

    def set_permission(self, mode: int) -> None:
        _logger.log(TRACE, "Pool.set_permission %s", self._pool_id)
        self._require_open()
        self._metadata_shelf.set_permission(mode)

    def is_open(self) -> bool:
        return self._is_open

    def size(self) -> int:
        """Return the largest number of shelves the pool can hold."""
        return MAX_SHELF_COUNT

    def shared_area(self) -> FamRegion:
        """Return the part of the metadata shelf after the membership table."""
        self._require_open()
        offset = CACHE_LINE_SIZE + self._membership.size()
        return FamRegion(self._map, offset, self._map_size - offset)

    def shared_area_size(self) -> int:
        self._require_open()
        return self._metadata_shelf.size() - self._membership.size() - CACHE_LINE_SIZE

    def recover(self) -> bool:
        """Remove stale shelf files and check files against the membership.

        Returns True when no inconsistency was seen. With other processes at
        work an inconsistency may only be an operation still in progress.
        """
        _logger.log(TRACE, "Pool.recover %s", self._pool_id)
        self._require_open()
        consistent = True
        membership = self._membership
        for shelf_idx in range(MAX_SHELF_COUNT):
            shelf_id = self._shelf_id(shelf_idx)
            value = membership.get_item(shelf_idx)
            valid = membership.test_valid_bit(value)
            version = membership.get_version_num(value)
            if not valid and version == 0:
                continue  # slot never used
            if remove_old_shelf_files(self._shelf_name, self._base_dir, shelf_id, version):
                _logger.log(TRACE, "Recover: deleted old version for shelf index %s", shelf_idx)
            exists = ShelfFile(self._shelf_name.path(shelf_id, str(version), "")).exist()
            if valid and not exists:
                consistent = False
                _logger.log(
                    TRACE,
                    "Recover: found potential inconsistency for shelf index %s; "
                    "valid==1 but file does not exist",
                    shelf_idx,
                )
            elif not valid and exists:
                consistent = False
                _logger.log(
                    TRACE,
                    "Recover: found inconsistency for shelf index %s; "
                    "valid==0 but file exists",
                    shelf_idx,
                )
        return consistent

    # pool membership

    def new_shelf(self, format_func: FormatFn | None = None) -> int:
        """Add a shelf at the first free index and return that index."""
        return self.add_shelf(0, format_func)

    def add_shelf(
        self,
        shelf_idx: int = 0,
        format_func: FormatFn | None = None,
        assign_diff_shelf_idx: bool = True,
        mode: int = DEFAULT_MODE,
    ) -> int:
        """Create and format a shelf, then give it ``shelf_idx`` or the next free index.

        ``format_func(shelf, shelf_size)`` raises on failure; by default the
        shelf is truncated to the pool's shelf size. Returns the index assigned.
        """
        _logger.log(TRACE, "Pool.add_shelf %s %s", self._pool_id, shelf_idx)
        self._require_open()
        if not 0 <= shelf_idx < MAX_SHELF_COUNT:
            raise self._error(f"shelf index {shelf_idx} out of range", "POOL_ADD_SHELF_FAILED")
        if format_func is None:
            format_func = truncate_shelf_file

        tmp_shelf_id = self._shelf_id(shelf_idx)
        while True:
            tmp_path = self._shelf_name.path(tmp_shelf_id, str(rand_version()), TMP_SUFFIX)
            shelf = ShelfFile(tmp_path)
            try:
                shelf.create(mode)
                break
            except ShelfFileError as exc:
                if exc.code == "SHELF_FILE_FOUND":
                    continue
                _logger.error("AddShelf failed at Create %s", shelf_idx)
                raise self._error("cannot create shelf", "POOL_ADD_SHELF_FAILED") from exc

        try:
            format_func(shelf, self._shelf_size)
        except (NvmmError, OSError) as exc:
            _logger.error("AddShelf failed at Format %s", shelf_idx)
            raise self._error("cannot format shelf", "POOL_ADD_SHELF_FAILED") from exc

        if not assign_diff_shelf_idx:
            if self._claim(shelf, shelf_idx):
                return shelf_idx
            raise self._error(f"shelf index {shelf_idx} is taken", "POOL_ADD_SHELF_FAILED")

        start = shelf_idx
        end = shelf_idx + MAX_SHELF_COUNT - 1
        while start <= end:
            found = self._membership.find_first_free_slot(start, end)
            if found is None:
                break
            _logger.log(TRACE, "AddShelf try to assign %s", found)
            if self._claim(shelf, found):
                return found
            # someone is competing with us; look past this index
            start += (found - start) % MAX_SHELF_COUNT + 1
        _logger.error("Cannot add this shelf...")
        raise self._error("no free shelf index", "POOL_ADD_SHELF_FAILED")

    def _claim(self, shelf: ShelfFile, shelf_idx: int) -> bool:
        membership = self._membership
        claimed, expected = membership.get_free_slot(shelf_idx)
        if not claimed:
            return False
        version = membership.get_version_num(expected)
        actual_path = self._shelf_name.path(self._shelf_id(shelf_idx), str(version), "")
        try:
            shelf.rename(actual_path)
        except ShelfFileError as exc:
            _logger.log(TRACE, "AddShelf: there must be an on-going Recover()")
            raise self._error("cannot rename shelf", "POOL_ADD_SHELF_FAILED") from exc
        used, actual = membership.mark_slot_used(shelf_idx, expected)
        if used:
            _logger.log(
                TRACE,
                "AddShelf succeeded %s(ver %s)",
                shelf_idx,
                membership.get_version_num(actual),
            )
        return used

    def remove_shelf(self, shelf_idx: int) -> None:
        """Free ``shelf_idx`` and delete its shelf file.

        Raises POOL_SHELF_NOT_FOUND if the index was already free, and
        POOL_REMOVE_SHELF_FAILED if it now holds a newer shelf.
        """
        _logger.log(TRACE, "Pool.remove_shelf %s %s", self._pool_id, shelf_idx)
        self._require_open()
        if not 0 <= shelf_idx < MAX_SHELF_COUNT:
            raise IndexError(f"shelf index {shelf_idx} out of range")
        membership = self._membership
        freed, value = membership.mark_slot_free(shelf_idx)
        version = membership.get_version_num(value)
        if freed:
            path = self._shelf_name.path(self._shelf_id(shelf_idx), str(version), "")
            try:
                ShelfFile(path).destroy()
            except ShelfFileError as exc:
                if exc.code != "SHELF_FILE_NOT_FOUND":
                    raise
                _logger.log(TRACE, "RemoveShelf: there must be an on-going Recover()")
            _logger.log(TRACE, "RemoveShelf succeeded %s(ver %s)", shelf_idx, version)
            return
        if membership.test_valid_bit(value):
            _logger.error("There is a new version of this shelf %s(ver %s)", shelf_idx, version)
            raise self._error(
                f"shelf {shelf_idx} has a new version", "POOL_REMOVE_SHELF_FAILED"
            )
        _logger.error("Someone beat us %s(ver %s)", shelf_idx, version)
        raise self._error(f"shelf {shelf_idx} not found", "POOL_SHELF_NOT_FOUND")

    def find_next_shelf(self, start_idx: int = 0, end_idx: int = MAX_SHELF_COUNT - 1) -> int | None:
        """Return the first shelf in the pool from start to end inclusive, or None."""
        self._require_open()
        return self._membership.find_first_used_slot(start_idx, end_idx)

    def find_next_free_shelf(self) -> int:
        self._require_open()
        found = self._membership.find_first_free_slot(0, MAX_SHELF_COUNT - 1)
        if found is None:
            raise self._error("no free shelf index", "POOL_SHELF_NOT_FOUND")
        return found

    def check_shelf(self, shelf_idx: int) -> bool:
        """Return whether ``shelf_idx`` holds a shelf."""
        self._require_open()
        return self._membership.test_valid_bit_with_index(shelf_idx)

    def get_shelf_id(self, shelf_idx: int) -> ShelfId:
        if not self.check_shelf(shelf_idx):
            raise self._error(f"shelf {shelf_idx} not found", "POOL_SHELF_NOT_FOUND")
        return self._shelf_id(shelf_idx)

    def get_shelf_idx(self, shelf_id: ShelfId) -> int:
        self._require_open()
        if shelf_id.pool_id != self._pool_id:
            raise self._error(f"shelf {shelf_id} is in another pool", "POOL_INVALID_POOL_ID")
        if not self._membership.test_valid_bit_with_index(shelf_id.shelf_index):
            raise self._error(f"shelf {shelf_id} not found", "POOL_SHELF_NOT_FOUND")
        return shelf_id.shelf_index

    def get_shelf_path(self, shelf_idx: int) -> str:
        self._require_open()
        used, value = self._membership.get_used_slot(shelf_idx)
        if not used:
            raise self._error(f"shelf {shelf_idx} not found", "POOL_SHELF_NOT_FOUND")
        version = self._membership.get_version_num(value)
        return self._shelf_name.path(self._shelf_id(shelf_idx), str(version))