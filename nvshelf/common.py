"""Shared constants, error types, rounding helpers and shelf identifiers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar

CACHE_LINE_SIZE = 64
VIRTUAL_PAGE_SIZE = 64 * 1024

# rwx for user, group and others
PERM_MASK = 0o777

KB = 1024
MB = KB * KB
GB = MB * KB

MAX_ZONE_SIZE = 1024 * GB


class NvmmError(Exception):
    """Base error of the package; ``code`` names the failure when one is known."""

    def __init__(self, message: str = "", code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


class ShelfFileError(NvmmError):
    """A shelf file could not be created, opened, mapped or removed."""


class MembershipError(NvmmError):
    """A membership table could not be created, opened or destroyed."""


class PoolError(NvmmError):
    """A pool operation failed."""


def _check_rounding(x: int, multiple: int) -> None:
    if multiple <= 0:
        raise ValueError(f"multiple must be positive, got {multiple}")
    if x < 0:
        raise ValueError(f"value must be non-negative, got {x}")


def round_up(x: int, multiple: int) -> int:
    """Round non-negative ``x`` up to the nearest multiple of ``multiple``."""
    _check_rounding(x, multiple)
    return (x + multiple - 1) // multiple * multiple


def round_down(x: int, multiple: int) -> int:
    """Round non-negative ``x`` down to the nearest multiple of ``multiple``."""
    _check_rounding(x, multiple)
    return x // multiple * multiple


@dataclass(frozen=True)
class ShelfId:
    """Identifies a shelf by its pool id and its index within the pool.

    A ``ShelfId`` built without a pool id is the invalid shelf id.
    """

    pool_id: int | None = None
    shelf_index: int = 0

    MAX_POOL_COUNT: ClassVar[int] = 256
    MAX_SHELF_COUNT: ClassVar[int] = 256

    def __post_init__(self) -> None:
        if self.pool_id is None:
            return
        if not 0 <= self.pool_id < self.MAX_POOL_COUNT:
            raise ValueError(f"pool id {self.pool_id} out of range")
        if not 0 <= self.shelf_index < self.MAX_SHELF_COUNT:
            raise ValueError(f"shelf index {self.shelf_index} out of range")

    def is_valid(self) -> bool:
        return self.pool_id is not None

    def __str__(self) -> str:
        if self.pool_id is None:
            return "invalid"
        return f"{self.pool_id}_{self.shelf_index}"