"""Atomic access to fabric-attached memory held in a byte buffer.

Values are little-endian unsigned integers; negative arguments wrap to the
operand width. Atomicity holds for all regions within one process.
"""

from __future__ import annotations

import mmap
import threading
import time
from collections.abc import Callable, Sequence

_LOCK = threading.Lock()
_MASK32 = (1 << 32) - 1
_MASK64 = (1 << 64) - 1
_MASKS = {4: _MASK32, 8: _MASK64, 16: (1 << 128) - 1}


def _pack128(value: Sequence[int]) -> int:
    if len(value) != 2:
        raise ValueError("a 128-bit value is a pair of 64-bit words")
    low, high = value
    return (low & _MASK64) | ((high & _MASK64) << 64)


def _split128(value: int) -> tuple[int, int]:
    return value & _MASK64, value >> 64


class FamRegion:
    """A window of a writable buffer (bytearray, mmap, ...) with atomic operations."""

    def __init__(self, buffer, offset: int = 0, length: int | None = None) -> None:
        with memoryview(buffer) as view:
            if view.readonly:
                raise TypeError("buffer must be writable")
            size = view.nbytes
        if not 0 <= offset <= size:
            raise ValueError(f"offset {offset} outside buffer of {size} bytes")
        if length is None:
            length = size - offset
        if length < 0 or offset + length > size:
            raise ValueError(f"length {length} at offset {offset} exceeds buffer")
        self._buffer = buffer
        self._base = offset
        self._length = length

    @property
    def buffer(self):
        return self._buffer

    @property
    def base(self) -> int:
        return self._base

    def __len__(self) -> int:
        return self._length

    def _range(self, offset: int, length: int) -> int:
        if length < 0:
            raise ValueError(f"negative length {length}")
        if offset < 0 or offset + length > self._length:
            raise IndexError(f"range [{offset}, {offset + length}) outside region")
        return self._base + offset

    def _locate(self, offset: int, width: int) -> int:
        position = self._range(offset, width)
        if position % width:
            raise ValueError(f"offset {offset} not aligned to {width} bytes")
        return position

    def _load(self, position: int, width: int) -> int:
        return int.from_bytes(self._buffer[position:position + width], "little")

    def _store(self, position: int, width: int, value: int) -> None:
        self._buffer[position:position + width] = value.to_bytes(width, "little")

    def _read(self, offset: int, width: int) -> int:
        position = self._locate(offset, width)
        with _LOCK:
            return self._load(position, width)

    def _update(self, offset: int, width: int, change: Callable[[int], int]) -> int:
        position = self._locate(offset, width)
        mask = _MASKS[width]
        with _LOCK:
            old = self._load(position, width)
            self._store(position, width, change(old) & mask)
        return old

    def _fetch_add(self, offset: int, width: int, increment: int) -> int:
        return self._update(offset, width, lambda old: old + increment)

    def _swap(self, offset: int, width: int, value: int) -> int:
        return self._update(offset, width, lambda old: value)

    def _compare_store(self, offset: int, width: int, compare: int, store: int) -> int:
        expected = compare & _MASKS[width]
        return self._update(offset, width, lambda old: store if old == expected else old)

    # 32-bit operations

    def read_32(self, offset: int) -> int:
        return self._read(offset, 4)

    def write_32(self, offset: int, value: int) -> None:
        self._swap(offset, 4, value)

    def fetch_add_32(self, offset: int, increment: int) -> int:
        return self._fetch_add(offset, 4, increment)

    def swap_32(self, offset: int, value: int) -> int:
        return self._swap(offset, 4, value)

    def compare_store_32(self, offset: int, compare: int, store: int) -> int:
        """Store ``store`` if the word equals ``compare``; return the previous word."""
        return self._compare_store(offset, 4, compare, store)

    def fetch_and_32(self, offset: int, arg: int) -> int:
        return self._update(offset, 4, lambda old: old & arg)

    def fetch_or_32(self, offset: int, arg: int) -> int:
        return self._update(offset, 4, lambda old: old | arg)

    def fetch_xor_32(self, offset: int, arg: int) -> int:
        return self._update(offset, 4, lambda old: old ^ arg)

    # 64-bit operations

    def read_64(self, offset: int) -> int:
        return self._read(offset, 8)

    def write_64(self, offset: int, value: int) -> None:
        self._swap(offset, 8, value)

    def fetch_add_64(self, offset: int, increment: int) -> int:
        return self._fetch_add(offset, 8, increment)

    def swap_64(self, offset: int, value: int) -> int:
        return self._swap(offset, 8, value)

    def compare_store_64(self, offset: int, compare: int, store: int) -> int:
        """Store ``store`` if the word equals ``compare``; return the previous word."""
        return self._compare_store(offset, 8, compare, store)

    def fetch_and_64(self, offset: int, arg: int) -> int:
        return self._update(offset, 8, lambda old: old & arg)

    def fetch_or_64(self, offset: int, arg: int) -> int:
        return self._update(offset, 8, lambda old: old | arg)

    def fetch_xor_64(self, offset: int, arg: int) -> int:
        return self._update(offset, 8, lambda old: old ^ arg)

    # 128-bit operations on (low, high) pairs of 64-bit words

    def read_128(self, offset: int) -> tuple[int, int]:
        return _split128(self._read(offset, 16))

    def write_128(self, offset: int, value: Sequence[int]) -> None:
        self.swap_128(offset, value)

    def swap_128(self, offset: int, value: Sequence[int]) -> tuple[int, int]:
        return _split128(self._swap(offset, 16, _pack128(value)))

    def compare_store_128(
        self, offset: int, compare: Sequence[int], store: Sequence[int]
    ) -> tuple[int, int]:
        old = self._compare_store(offset, 16, _pack128(compare), _pack128(store))
        return _split128(old)

    # plain memory operations

    def memset_persist(self, offset: int, value: int, length: int) -> None:
        """Fill ``length`` bytes with ``value`` and persist them."""
        position = self._range(offset, length)
        self._buffer[position:position + length] = bytes([value & 0xFF]) * length
        self.persist(offset, length)

    def persist(self, offset: int, length: int) -> None:
        """Flush the range to its backing file when the buffer is a memory map."""
        position = self._range(offset, length)
        if length == 0 or not isinstance(self._buffer, mmap.mmap):
            return
        start = position - position % mmap.ALLOCATIONGRANULARITY
        self._buffer.flush(start, position + length - start)

    def invalidate(self, offset: int, length: int) -> None:
        """Check the range; in-process buffers need no cache invalidation."""
        self._range(offset, length)

    def read_bytes(self, offset: int, length: int) -> bytes:
        position = self._range(offset, length)
        return bytes(self._buffer[position:position + length])

    def write_bytes(self, offset: int, data: bytes) -> None:
        position = self._range(offset, len(data))
        self._buffer[position:position + len(data)] = bytes(data)


class FamSpinlock:
    """A ticket lock held in one 64-bit word: head in the low half, tail in the high."""

    SIZE = 8

    def __init__(self, region: FamRegion, offset: int = 0) -> None:
        region.read_64(offset)  # validates bounds and alignment
        self._region = region
        self._offset = offset

    def init(self) -> None:
        self._region.write_64(self._offset, 0)

    def lock(self) -> None:
        old = self._region.fetch_add_64(self._offset, 1 << 32)
        ticket = old >> 32
        head = old & _MASK32
        while head != ticket:
            time.sleep(0)
            head = self._region.read_32(self._offset)

    def trylock(self) -> bool:
        old = self._region.read_64(self._offset)
        head, tail = old & _MASK32, old >> 32
        if head != tail:
            return False
        new = head | (((tail + 1) & _MASK32) << 32)
        return self._region.compare_store_64(self._offset, old, new) == old

    def unlock(self) -> None:
        self._region.fetch_add_32(self._offset, 1)

    def __enter__(self) -> FamSpinlock:
        self.lock()
        return self

    def __exit__(self, *args) -> None:
        self.unlock()