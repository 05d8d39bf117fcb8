"""Turn shelf ids into full path names.

A shelf name is ``<base>/<user>_<prefix>_<pool>_<index>[_<suffix1>][_<suffix2>]``.
"""

from __future__ import annotations

import os

from .common import ShelfId
from .config import get_config


class ShelfName:
    """Builds shelf paths that share one prefix."""

    def __init__(
        self,
        base_dir: str | os.PathLike | None = None,
        file_prefix: str = "Shelf",
        user: str | None = None,
    ) -> None:
        if base_dir is None or user is None:
            config = get_config()
            base = config.shelf_base if base_dir is None else os.fspath(base_dir)
            owner = config.shelf_user if user is None else user
        else:
            base, owner = os.fspath(base_dir), user
        self.prefix = f"{base}/{owner}_{file_prefix}"

    def __repr__(self) -> str:
        return f"ShelfName(prefix={self.prefix!r})"

    def path(self, shelf_id: ShelfId | str, suffix1="", suffix2="") -> str:
        """Return the path of a shelf, given a ShelfId or an id string, with optional suffixes."""
        if isinstance(shelf_id, ShelfId):
            if not shelf_id.is_valid():
                raise ValueError("cannot name an invalid shelf id")
            name = f"{shelf_id.pool_id}_{shelf_id.shelf_index}"
        else:
            name = str(shelf_id)
        suffixes = [str(s) for s in (suffix1, suffix2) if s is not None and str(s) != ""]
        return "_".join([self.prefix, name, *suffixes])