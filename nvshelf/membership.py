"""A table of versioned slots held in fabric-attached memory.

Each slot is one cache line. Its item has a valid bit in the most significant
position and a version number in the remaining bits. All slot updates are
compare-and-swap operations, so several processes may share one table.
"""

from __future__ import annotations

from .common import CACHE_LINE_SIZE, MembershipError, round_up
from .fam import FamRegion

MAGIC_NUM = 686362377447

# magic_num, size, item_count, padding: four 64-bit words
_HEADER_STRUCT_SIZE = 32
_MAGIC_OFFSET = 0
_SIZE_OFFSET = 8
_COUNT_OFFSET = 16
_HEADER_SIZE = round_up(_HEADER_STRUCT_SIZE, CACHE_LINE_SIZE)
_MASK64 = (1 << 64) - 1


class Membership:
    """Slot membership table laid out at the start of a FamRegion."""

    def __init__(self, region: FamRegion, avail_size: int | None = None, item_bits: int = 16) -> None:
        if item_bits not in (8, 16, 32, 64):
            raise ValueError(f"item width must be 8, 16, 32 or 64 bits, got {item_bits}")
        if region.base % CACHE_LINE_SIZE:
            raise ValueError("membership region must be cache-line aligned")
        if avail_size is None:
            avail_size = len(region)
        if not 0 <= avail_size <= len(region):
            raise ValueError(f"available size {avail_size} exceeds region of {len(region)} bytes")
        self._region = region
        self._size = avail_size
        self._item_mask = (1 << item_bits) - 1
        self._valid_mask = 1 << (item_bits - 1)
        self._version_mask = self._valid_mask - 1
        self._item_count = 0
        self._is_open = False

    def __repr__(self) -> str:
        state = "open" if self._is_open else "closed"
        return f"Membership({self._item_count} items, {state})"

    # lifecycle

    def create(self, item_count: int) -> None:
        """Lay out an empty table of ``item_count`` slots."""
        if self._is_open:
            raise MembershipError("membership is open", code="MEMBERSHIP_CREATE_FAILED")
        if item_count <= 0:
            raise ValueError(f"item count must be positive, got {item_count}")
        remaining = self._size
        if remaining < _HEADER_SIZE:
            raise MembershipError(
                "Membership: insufficient space for header", code="MEMBERSHIP_CREATE_FAILED"
            )
        self._region.memset_persist(0, 0, _HEADER_SIZE)
        remaining -= _HEADER_SIZE
        items_size = round_up(item_count * CACHE_LINE_SIZE, CACHE_LINE_SIZE)
        if remaining < items_size:
            raise MembershipError(
                "Membership: insufficient space for items", code="MEMBERSHIP_CREATE_FAILED"
            )
        self._region.memset_persist(_HEADER_SIZE, 0, items_size)

        self._region.write_64(_COUNT_OFFSET, item_count)
        self._region.write_64(_SIZE_OFFSET, _HEADER_SIZE + items_size)
        self._region.persist(0, _HEADER_SIZE)
        # the magic number goes last so a half-made table never verifies
        self._region.write_64(_MAGIC_OFFSET, MAGIC_NUM)
        self._region.persist(0, _HEADER_SIZE)
        self._size = _HEADER_SIZE + items_size

    def destroy(self) -> None:
        """Zero the whole table, header included."""
        if self._is_open:
            raise MembershipError("membership is open", code="MEMBERSHIP_DESTROY_FAILED")
        if not self.verify():
            raise MembershipError(
                "Membership: no table to destroy", code="MEMBERSHIP_DESTROY_FAILED"
            )
        size = self._region.read_64(_SIZE_OFFSET)
        self._size = size
        self._region.memset_persist(0, 0, size)

    def verify(self) -> bool:
        return self._region.read_64(_MAGIC_OFFSET) == MAGIC_NUM

    def size(self) -> int:
        return self._size

    def is_open(self) -> bool:
        return self._is_open

    def open(self) -> None:
        if self._is_open:
            raise MembershipError("membership is already open", code="MEMBERSHIP_OPEN_FAILED")
        if not self.verify():
            raise MembershipError(
                "Membership: header magic number does not match", code="MEMBERSHIP_OPEN_FAILED"
            )
        size = self._region.read_64(_SIZE_OFFSET)
        if size > self._size:
            raise MembershipError(
                "Membership: insufficient space in this shelf", code="MEMBERSHIP_OPEN_FAILED"
            )
        self._size = size
        self._item_count = self._region.read_64(_COUNT_OFFSET)
        self._is_open = True

    def close(self) -> None:
        if not self._is_open:
            raise MembershipError("membership is not open", code="MEMBERSHIP_CLOSE_FAILED")
        self._is_open = False

    # inspection

    def count(self) -> int:
        return self._item_count

    def describe(self) -> str:
        """Return a listing of every item, one per line."""
        self._require_open()
        lines = [f"Membership ({self._item_count} items) :"]
        lines.extend(str(self.get_item(index)) for index in range(self._item_count))
        lines.append("")
        return "\n".join(lines) + "\n"

    def get_version_num(self, value: int) -> int:
        return value & self._version_mask

    def test_valid_bit(self, value: int) -> bool:
        return (value & self._valid_mask) != 0

    def get_item(self, index: int) -> int:
        return self._load(self._slot_offset(index))

    def get_version_num_with_index(self, index: int) -> int:
        return self.get_version_num(self.get_item(index))

    def test_valid_bit_with_index(self, index: int) -> bool:
        return self.test_valid_bit(self.get_item(index))

    # atomic slot operations

    def get_used_slot(self, index: int) -> tuple[bool, int]:
        """Return whether the slot is used, and its current value."""
        value = self.get_item(index)
        return self.test_valid_bit(value), value

    def mark_slot_free(self, index: int) -> tuple[bool, int]:
        """Free a used slot, bumping its version.

        Returns (True, value before the change) on success, or
        (False, current value) if the slot was free or changed under us.
        """
        offset = self._slot_offset(index)
        old_value = self._load(offset)
        if not self.test_valid_bit(old_value):
            return False, old_value
        new_value = self._clear_valid_bit(self._inc_version_num(old_value))
        return self._cas(offset, old_value, new_value)

    def get_free_slot(self, index: int) -> tuple[bool, int]:
        """Claim a free slot by bumping its version.

        Returns (True, new value) on success, or (False, current value).
        """
        offset = self._slot_offset(index)
        old_value = self._load(offset)
        if self.test_valid_bit(old_value):
            return False, old_value
        new_value = self._inc_version_num(old_value)
        ok, actual = self._cas(offset, old_value, new_value)
        if ok:
            return True, new_value
        return False, actual

    def mark_slot_used(self, index: int, value: int) -> tuple[bool, int]:
        """Set the valid bit of a slot expected to hold ``value``.

        Returns (True, new value) on success, or (False, current value).
        """
        offset = self._slot_offset(index)
        if self.test_valid_bit(value):
            raise ValueError(f"expected value {value:#x} already has the valid bit set")
        new_value = self._set_valid_bit(value)
        ok, actual = self._cas(offset, value, new_value)
        if ok:
            return True, new_value
        return False, actual

    def find_first_free_slot(self, start_index: int, end_index: int) -> int | None:
        """Return the first free slot from start to end inclusive, wrapping around."""
        return self._find_first(start_index, end_index, used=False)

    def find_first_used_slot(self, start_index: int, end_index: int) -> int | None:
        """Return the first used slot from start to end inclusive, wrapping around."""
        return self._find_first(start_index, end_index, used=True)

    # helpers

    def _require_open(self) -> None:
        if not self._is_open:
            raise MembershipError("membership is not open", code="MEMBERSHIP_CLOSED")

    def _slot_offset(self, index: int) -> int:
        self._require_open()
        if not 0 <= index < self._item_count:
            raise IndexError(f"slot {index} outside 0..{self._item_count - 1}")
        return _HEADER_SIZE + index * CACHE_LINE_SIZE

    def _load(self, offset: int) -> int:
        return self._region.read_64(offset) & self._item_mask

    def _cas(self, offset: int, expected: int, desired: int) -> tuple[bool, int]:
        result = self._region.compare_store_64(offset, expected, desired)
        if result != (expected & _MASK64):
            return False, result & self._item_mask
        return True, expected

    def _set_valid_bit(self, value: int) -> int:
        return (value ^ self._valid_mask) & self._item_mask

    def _clear_valid_bit(self, value: int) -> int:
        return value & ~self._valid_mask & self._item_mask

    def _inc_version_num(self, value: int) -> int:
        version = ((value & self._version_mask) + 1) & self._version_mask
        return (value & self._valid_mask) ^ version

    def _find_first(self, start_index: int, end_index: int, used: bool) -> int | None:
        self._require_open()
        count = self._item_count
        start = start_index % count
        end = end_index % count
        if end < start:
            candidates = [*range(start, count), *range(0, end + 1)]
        else:
            candidates = range(start, end + 1)
        return next(
            (i for i in candidates if self.test_valid_bit_with_index(i) == used),
            None,
        )