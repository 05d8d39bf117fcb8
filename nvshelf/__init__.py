"""File-backed shelves, pools, membership tables and shared-memory atomics."""

__version__ = "0.1.0"

__all__ = [
    "common",
    "config",
    "crash_points",
    "fam",
    "log",
    "membership",
    "pool",
    "pool_files",
    "process_id",
    "root_shelf",
    "shelf_file",
    "shelf_manager",
    "shelf_name",
]