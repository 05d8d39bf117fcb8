"""File-level helpers used by a pool: version numbers, recovery clean-up, formatting."""

from __future__ import annotations

import logging
import os
import random
import re

from .common import ShelfFileError, ShelfId
from .log import TRACE
from .shelf_file import ShelfFile
from .shelf_name import ShelfName

_logger = logging.getLogger(__name__)

VERSION_MAX = 0xFFFF
TMP_SUFFIX = "add"
_LEADING_DIGITS = re.compile(r"\d+")
_random = random.SystemRandom()


def rand_version() -> int:
    """Return a random 16-bit version number for a temporary shelf."""
    return _random.randint(0, VERSION_MAX)


def _destroy_quietly(path: str) -> None:
    try:
        ShelfFile(path).destroy()
    except ShelfFileError:
        pass


def remove_old_shelf_files(
    shelf_name: ShelfName, base_dir: str | os.PathLike, shelf_id: ShelfId, version: int
) -> bool:
    """Delete temporary versions and versions older than ``version`` of a shelf.

    Returns True if any such file was found.
    """
    found_old_version = False
    prefix = shelf_name.path(shelf_id) + "_"
    base_dir = os.fspath(base_dir)
    for entry in os.scandir(base_dir):
        pathname = os.path.join(base_dir, entry.name)
        if not pathname.startswith(prefix):
            continue
        version_string = pathname[len(prefix):]
        match = _LEADING_DIGITS.match(version_string)
        if match is None:
            _logger.warning("RemoveOldShelfFiles: unexpected file %s", pathname)
            continue
        old_version = int(match.group())
        if len(version_string) > len(TMP_SUFFIX) and version_string.endswith(TMP_SUFFIX):
            _logger.log(TRACE, "RemoveOldShelfFiles: found TMP version %s %s", shelf_id, old_version)
            _destroy_quietly(shelf_name.path(shelf_id, str(old_version), TMP_SUFFIX))
            found_old_version = True
        elif old_version < version:
            _logger.log(TRACE, "RemoveOldShelfFiles: found OLD version %s %s", shelf_id, old_version)
            _destroy_quietly(shelf_name.path(shelf_id, str(old_version), ""))
            found_old_version = True
    return found_old_version


def truncate_shelf_file(shelf: ShelfFile, shelf_size: int) -> None:
    """Format a shelf by setting its length to ``shelf_size``."""
    if not shelf.exist():
        raise ShelfFileError(f"shelf file not found: {shelf.path}", code="SHELF_FILE_NOT_FOUND")
    shelf.open(os.O_RDWR)
    try:
        shelf.truncate(shelf_size)
    finally:
        shelf.close()


def default_format(shelf: ShelfFile, shelf_size: int) -> None:
    """Leave the shelf as it is; only check that it exists."""
    if not shelf.exist():
        raise ShelfFileError(f"shelf file not found: {shelf.path}", code="SHELF_FILE_NOT_FOUND")