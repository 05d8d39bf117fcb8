# nvshelf

`nvshelf` manages *shelves*: memory-mapped files kept under a common base
directory (typically `/dev/shm` or another shared file system) and grouped
into *pools*. A pool records which of its shelf indexes are in use in a
versioned slot table held in a metadata shelf, so that shelves can be added,
removed and cleaned up after a crash using only atomic file creation,
rename and deletion.

## Modules

- `nvshelf.common` – constants (`CACHE_LINE_SIZE`, `PERM_MASK`, `KB`, `MB`,
  `GB`), `round_up` / `round_down`, the `ShelfId` dataclass (pool id and
  shelf index, each below 256; `ShelfId()` is the invalid id), and the error
  types `NvmmError`, `ShelfFileError`, `MembershipError` and `PoolError`.
  Every error carries a `code` string such as `"SHELF_FILE_FOUND"` or
  `"POOL_SHELF_NOT_FOUND"`.
- `nvshelf.config` – `Config` holds `shelf_base` (default `/dev/shm`) and
  `shelf_user` (default `$USER`) and derives `root_shelf_path` and
  `epoch_shelf_path`. `load_config_file(path)` reads `shelf_base` and
  `shelf_user` from the `nvmm` section of a YAML file;
  `print_config_file(path)` and `print_config()` print settings.
  `get_config()` / `set_config()` hold the process-wide configuration.
  Calling `setup()` (done by the constructor and by `load_config_file`)
  drops every mapping registered with the shelf manager.
- `nvshelf.fam` – `FamRegion` wraps a writable buffer (a `bytearray` or an
  `mmap`) and offers little-endian 32-, 64- and 128-bit reads, writes,
  swaps, compare-and-store, fetch-add and fetch-and/or/xor, plus
  `memset_persist`, `persist`, `read_bytes` and `write_bytes`. Operations are
  atomic with respect to other threads of the same process.
  `FamSpinlock` is a ticket lock kept in one 64-bit word of a region and can
  be used as a context manager.
- `nvshelf.shelf_name` – `ShelfName(base_dir, file_prefix, user).path(shelf_id, suffix1, suffix2)`
  builds `<base>/<user>_<prefix>_<pool>_<index>[_<suffix1>][_<suffix2>]`.
- `nvshelf.shelf_file` – `ShelfFile` creates, opens, truncates, renames,
  maps (`map_range`, `map`), unmaps and removes one shelf file, and reads or
  sets its permission bits.
- `nvshelf.shelf_manager` – `get_shelf_manager()` returns the process-wide
  `ShelfManager`, which records each whole-shelf mapping by shelf id with a
  reference count and a valid flag. Each mapping is also given a range in a
  synthetic address space, so `find_shelf(address)` maps an address back to
  a shelf id and base address.
- `nvshelf.membership` – `Membership`, a table of cache-line slots each
  holding a valid bit and a version number, updated by compare-and-swap
  (`get_free_slot`, `mark_slot_used`, `mark_slot_free`,
  `find_first_free_slot`, `find_first_used_slot`).
- `nvshelf.pool` – `Pool(pool_id)`: `create`, `destroy`, `open`, `close`,
  `verify`, `recover`, `new_shelf`, `add_shelf`, `remove_shelf`,
  `find_next_shelf`, `find_next_free_shelf`, `check_shelf`, `get_shelf_id`,
  `get_shelf_idx`, `get_shelf_path`, and `shared_area()` for pool-wide data
  stored after the slot table. A pool holds up to 256 shelves. `Pool` is
  also a context manager that opens and closes the pool without recovery.
- `nvshelf.pool_files` – helpers used by pools: `rand_version`,
  `remove_old_shelf_files`, `truncate_shelf_file` (the default shelf
  format) and `default_format`.
- `nvshelf.root_shelf` – `RootShelf`, a bootstrap file holding a magic
  number and, for every pool id, a `FamSpinlock` (`pool_lock(pool_id)`) and a
  cache-line entry.
- `nvshelf.process_id` – `ProcessID` records a pid with its start time from
  `/proc/<pid>/stat` (`get_btime`), so `is_alive()` can tell a reused pid
  apart.
- `nvshelf.crash_points` – named crash points for recovery testing; once
  `set_debug(True)` is called, `crash_here(name)` raises
  `CrashPointReached` (a `SystemExit` with status 1) if the point was
  enabled with `enable_crash_point(name)`.
- `nvshelf.log` – `init_log(level, file_name)` attaches one handler to the
  `nvshelf` logger, writing to `file_name` (default `output.log`) or to
  stderr when the name is empty; levels run from `"trace"` to `"fatal"`.

## Example

```python
from nvshelf.config import Config, set_config
from nvshelf.pool import Pool

set_config(Config("/dev/shm", "demo"))

pool = Pool(1)
pool.create(1024 * 1024, 0o660)
pool.open(False)
try:
    shelf_idx = pool.new_shelf(None)
    print(pool.get_shelf_path(shelf_idx))
    pool.remove_shelf(shelf_idx)
finally:
    pool.close(False)
pool.destroy()
```

## What the package does not do

- There is no command-line tool; everything is used from Python.
- There is no heap allocator, region layer or memory manager on top of
  pools, and nothing that turns global pointers into local ones.
- `Config` derives `epoch_shelf_path`, but the package does not create or
  use an epoch shelf.
- The atomic operations in `nvshelf.fam` are serialised with a lock inside
  one process; separate processes sharing a mapping get no hardware
  atomicity from them.

## Installation

```
pip install .
```

Run the tests with `pip install .[test]` followed by `pytest`.