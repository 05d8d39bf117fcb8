"""Process-wide registry of mapped shelves.

Two views are kept: shelf id to mapping, and local address to mapping. Each
registered mapping is given a distinct range in a synthetic local address
space, so that a local address can be turned back into a shelf id and offset.
"""

from __future__ import annotations

import bisect
import logging
import mmap
import os
import threading
from dataclasses import dataclass

from .common import NvmmError, ShelfId, round_up
from .log import TRACE

_logger = logging.getLogger(__name__)

_ADDRESS_START = 1 << 32
_ADDRESS_ALIGN = mmap.PAGESIZE


@dataclass
class Mapping:
    """A registered shelf mapping and its place in the local address space."""

    shelf_id: ShelfId
    base: object
    length: int
    address: int
    valid: bool = True
    refcount: int = 1

    def contains(self, ptr: int) -> bool:
        return self.address <= ptr < self.address + self.length


class ShelfManager:
    """Keeps shelf id => mapping and local address => mapping.

    A shelf must be mapped entirely to be registered.
    """

    def __init__(self) -> None:
        self._mutex = threading.Lock()
        self._map: dict[ShelfId, Mapping] = {}
        self._reverse: dict[int, Mapping] = {}
        self._addresses: list[int] = []
        self._next_address = _ADDRESS_START
        self.num_heap_instance = 0

    def _allocate_address(self, length: int) -> int:
        address = self._next_address
        self._next_address += round_up(max(length, 1), _ADDRESS_ALIGN) + _ADDRESS_ALIGN
        return address

    def _drop(self, entry: Mapping) -> None:
        del self._map[entry.shelf_id]
        del self._reverse[entry.address]
        index = bisect.bisect_left(self._addresses, entry.address)
        del self._addresses[index]

    def mapping(self, shelf_id: ShelfId) -> Mapping | None:
        """Return the registered mapping of ``shelf_id``, valid or not."""
        return self._map.get(shelf_id)

    def register_shelf(self, shelf_id: ShelfId, base, length: int):
        """Register a mapped shelf; return the base that is now registered."""
        existing = self._map.get(shelf_id)
        if existing is not None and not existing.valid:
            self.unregister_shelf(shelf_id)
            existing = None
        if existing is not None:
            _logger.log(TRACE, "RegisterShelf: existing mapping")
            if existing.length != length:
                raise ValueError(
                    f"shelf {shelf_id} already registered with length {existing.length}, "
                    f"not {length}"
                )
            return existing.base
        entry = Mapping(shelf_id, base, length, self._allocate_address(length))
        self._map[shelf_id] = entry
        self._reverse[entry.address] = entry
        bisect.insort(self._addresses, entry.address)
        _logger.log(TRACE, "RegisterShelf: mapping registered")
        return base

    def unregister_shelf(self, shelf_id: ShelfId):
        """Forget a shelf; return its base, or None if it was not registered."""
        entry = self._map.get(shelf_id)
        if entry is None:
            _logger.log(TRACE, "UnregisterShelf: mapping not found")
            return None
        self._drop(entry)
        _logger.log(TRACE, "UnregisterShelf: mapping unregistered")
        return entry.base

    def lookup_shelf(self, shelf_id: ShelfId):
        """Return the base of a valid registered shelf, else None."""
        entry = self._map.get(shelf_id)
        if entry is None:
            _logger.log(TRACE, "LookupShelf: mapping not found")
            return None
        _logger.log(TRACE, "LookupShelf: mapping found")
        return entry.base if entry.valid else None

    def find_and_open_shelf(self, shelf_id: ShelfId):
        """Take a reference on a valid registered shelf and return its base."""
        entry = self._map.get(shelf_id)
        if entry is None or not entry.valid:
            return None
        entry.refcount += 1
        return entry.base

    def find_and_close_shelf(self, shelf_id: ShelfId):
        """Drop a reference; return the base while references remain, else None."""
        entry = self._map.get(shelf_id)
        if entry is None or not entry.valid:
            return None
        entry.refcount -= 1
        if entry.refcount == 0:
            return None
        return entry.base

    def find_base(self, shelf_id: ShelfId, path: str | os.PathLike | None = None):
        """Return the base of a shelf.

        Without ``path`` only registered shelves are found. With ``path`` an
        unregistered shelf is mapped from that file and registered.
        """
        if path is None:
            return self.lookup_shelf(shelf_id)
        with self._mutex:
            entry = self._map.get(shelf_id)
            if entry is not None:
                _logger.log(TRACE, "FindBase: mapping found")
                return entry.base if entry.valid else None
            _logger.log(TRACE, "FindBase: mapping not found")
            try:
                fd = os.open(path, os.O_RDWR)
            except OSError:
                return None
            try:
                length = os.fstat(fd).st_size
                base = mmap.mmap(fd, length)
            except (OSError, ValueError):
                return None
            finally:
                os.close(fd)
            return self.register_shelf(shelf_id, base, length)

    def find_shelf(self, ptr: int) -> tuple[ShelfId, int | None]:
        """Return the shelf id and base address of the mapping holding ``ptr``.

        An invalid shelf id comes back when no valid mapping holds it.
        """
        index = bisect.bisect_right(self._addresses, ptr) - 1
        if index >= 0:
            entry = self._reverse[self._addresses[index]]
            if entry.contains(ptr):
                if not entry.valid:
                    return ShelfId(), entry.address
                _logger.log(TRACE, "FindShelf: mapping found")
                return entry.shelf_id, entry.address
        _logger.log(TRACE, "FindShelf: mapping not found")
        return ShelfId(), None

    def mark_invalid(self, shelf_id: ShelfId) -> None:
        """Mark a valid registered shelf invalid."""
        entry = self._map.get(shelf_id)
        if entry is None or not entry.valid:
            raise NvmmError(f"shelf {shelf_id} not found", code="SHELF_ID_NOT_FOUND")
        entry.valid = False

    def is_invalid(self, shelf_id: ShelfId) -> bool:
        entry = self._map.get(shelf_id)
        return entry is not None and not entry.valid

    def reset(self) -> None:
        """Unmap everything and clear both views."""
        for entry in self._map.values():
            if isinstance(entry.base, mmap.mmap):
                try:
                    entry.base.close()
                except BufferError:
                    _logger.error("Reset: shelf %s still has views open", entry.shelf_id)
        self._map.clear()
        self._reverse.clear()
        self._addresses.clear()

    def lock(self) -> None:
        self._mutex.acquire()

    def unlock(self) -> None:
        self._mutex.release()


_manager = ShelfManager()


def get_shelf_manager() -> ShelfManager:
    """Return the process-wide shelf manager."""
    return _manager