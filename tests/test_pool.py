import os

import pytest

from nvshelf.common import PoolError, ShelfFileError, ShelfId
from nvshelf.config import Config
from nvshelf.pool import MAX_SHELF_COUNT, Pool

META_SIZE = 64 * 1024
SHELF_SIZE = 4096


@pytest.fixture
def config(tmp_path):
    return Config(base=str(tmp_path), user="tester")


@pytest.fixture
def pool(config):
    p = Pool(1, config=config, metadata_shelf_size=META_SIZE)
    p.create(shelf_size=SHELF_SIZE)
    yield p
    if p.is_open():
        p.close()


@pytest.fixture
def opened(pool):
    pool.open(False)
    return pool


def shelf_files(tmp_path):
    return sorted(name for name in os.listdir(tmp_path) if name.startswith("tester_NVMM_Shelf_1_"))


def test_create_makes_metadata_shelf(pool, tmp_path):
    assert pool.exist() is True
    assert pool.metadata_path == str(tmp_path / "tester_NVMM_Shelf_0_1")
    assert os.path.getsize(pool.metadata_path) == META_SIZE


def test_create_twice_fails(pool):
    with pytest.raises(PoolError) as info:
        pool.create(shelf_size=SHELF_SIZE)
    assert info.value.code == "POOL_FOUND"


def test_pool_id_out_of_range(config):
    with pytest.raises(ValueError):
        Pool(MAX_SHELF_COUNT, config=config)


def test_open_close_states(pool):
    pool.open(False)
    assert pool.is_open() is True
    with pytest.raises(PoolError) as info:
        pool.open(False)
    assert info.value.code == "POOL_OPENED"
    pool.close(False)
    assert pool.is_open() is False
    with pytest.raises(PoolError) as info:
        pool.close(False)
    assert info.value.code == "POOL_CLOSED"


def test_open_missing_pool(config):
    p = Pool(2, config=config, metadata_shelf_size=META_SIZE)
    with pytest.raises(PoolError) as info:
        p.open(False)
    assert info.value.code == "POOL_NOT_FOUND"


def test_shelf_size_persists(pool, config):
    other = Pool(1, config=config, metadata_shelf_size=META_SIZE)
    other.open(False)
    try:
        assert other.shelf_size == SHELF_SIZE
    finally:
        other.close()


def test_new_shelf_formats_with_shelf_size(opened, tmp_path):
    idx = opened.new_shelf()
    assert idx == 0
    assert opened.check_shelf(0) is True
    path = opened.get_shelf_path(0)
    assert path == str(tmp_path / "tester_NVMM_Shelf_1_0_1")
    assert os.path.getsize(path) == SHELF_SIZE
    assert shelf_files(tmp_path) == ["tester_NVMM_Shelf_1_0_1"]


def test_add_shelf_specific_index(opened):
    assert opened.add_shelf(5, assign_diff_shelf_idx=False) == 5
    with pytest.raises(PoolError) as info:
        opened.add_shelf(5, assign_diff_shelf_idx=False)
    assert info.value.code == "POOL_ADD_SHELF_FAILED"
    assert opened.add_shelf(5, assign_diff_shelf_idx=True) == 6


def test_add_shelf_index_out_of_range(opened):
    with pytest.raises(PoolError) as info:
        opened.add_shelf(MAX_SHELF_COUNT)
    assert info.value.code == "POOL_ADD_SHELF_FAILED"


def test_add_shelf_custom_format(opened):
    calls = []

    def fmt(shelf, size):
        calls.append((shelf.exist(), size))

    idx = opened.add_shelf(3, fmt)
    assert idx == 3
    assert calls == [(True, SHELF_SIZE)]
    assert os.path.getsize(opened.get_shelf_path(3)) == 0


def test_add_shelf_format_failure(opened):
    def fmt(shelf, size):
        raise ShelfFileError("format failed", code="SHELF_FILE_TRUNCATE_FAILED")

    with pytest.raises(PoolError) as info:
        opened.add_shelf(0, fmt)
    assert info.value.code == "POOL_ADD_SHELF_FAILED"
    assert opened.check_shelf(0) is False


def test_remove_shelf(opened, tmp_path):
    idx = opened.new_shelf()
    path = opened.get_shelf_path(idx)
    opened.remove_shelf(idx)
    assert opened.check_shelf(idx) is False
    assert not os.path.exists(path)
    with pytest.raises(PoolError) as info:
        opened.remove_shelf(idx)
    assert info.value.code == "POOL_SHELF_NOT_FOUND"


def test_readd_after_remove_uses_new_version(opened):
    idx = opened.new_shelf()
    old_path = opened.get_shelf_path(idx)
    opened.remove_shelf(idx)
    assert opened.new_shelf() == idx
    new_path = opened.get_shelf_path(idx)
    assert new_path != old_path
    assert os.path.exists(new_path)


def test_find_next_shelf(opened):
    opened.add_shelf(3, assign_diff_shelf_idx=False)
    opened.add_shelf(7, assign_diff_shelf_idx=False)
    assert opened.find_next_shelf(0) == 3
    assert opened.find_next_shelf(4) == 7
    assert opened.find_next_shelf(8) is None


def test_find_next_free_shelf(opened):
    opened.new_shelf()
    assert opened.find_next_free_shelf() == 1


def test_shelf_id_lookups(opened):
    idx = opened.new_shelf()
    assert opened.get_shelf_id(idx) == ShelfId(1, idx)
    assert opened.get_shelf_idx(ShelfId(1, idx)) == idx
    with pytest.raises(PoolError) as info:
        opened.get_shelf_id(idx + 1)
    assert info.value.code == "POOL_SHELF_NOT_FOUND"
    with pytest.raises(PoolError) as info:
        opened.get_shelf_idx(ShelfId(2, idx))
    assert info.value.code == "POOL_INVALID_POOL_ID"
    with pytest.raises(PoolError) as info:
        opened.get_shelf_path(idx + 1)
    assert info.value.code == "POOL_SHELF_NOT_FOUND"


def test_closed_pool_operations(pool):
    for call in (pool.new_shelf, lambda: pool.check_shelf(0), pool.recover, pool.shared_area):
        with pytest.raises(PoolError) as info:
            call()
        assert info.value.code == "POOL_CLOSED"


def test_recover_removes_tmp_files(opened, tmp_path):
    idx = opened.new_shelf()
    stray = tmp_path / f"tester_NVMM_Shelf_1_{idx}_123_add"
    stray.write_bytes(b"")
    assert opened.recover() is True
    assert not stray.exists()
    assert os.path.exists(opened.get_shelf_path(idx))


def test_recover_detects_missing_file(opened):
    idx = opened.new_shelf()
    os.remove(opened.get_shelf_path(idx))
    assert opened.recover() is False


def test_destroy_removes_everything(pool, tmp_path):
    pool.open(False)
    pool.new_shelf()
    pool.new_shelf()
    pool.close(False)
    pool.destroy()
    assert pool.exist() is False
    assert shelf_files(tmp_path) == []
    assert not os.path.exists(pool.metadata_path)
    with pytest.raises(PoolError) as info:
        pool.destroy()
    assert info.value.code == "POOL_NOT_FOUND"


def test_destroy_open_pool_fails(opened):
    with pytest.raises(PoolError) as info:
        opened.destroy()
    assert info.value.code == "POOL_OPENED"


def test_verify(pool):
    assert pool.verify() is True
    with open(pool.metadata_path, "r+b") as f:
        f.seek(64)
        f.write(bytes(8))
    assert pool.verify() is False
    with pytest.raises(PoolError) as info:
        pool.open(False)
    assert info.value.code == "POOL_OPEN_FAILED"


def test_shared_area_round_trip(pool, config):
    pool.open(False)
    area = pool.shared_area()
    assert pool.shared_area_size() == len(area)
    area.write_bytes(0, b"hello")
    pool.close(False)
    pool.open(False)
    assert pool.shared_area().read_bytes(0, 5) == b"hello"


def test_set_permission(opened):
    opened.set_permission(0o600)
    assert os.stat(opened.metadata_path).st_mode & 0o777 == 0o600


def test_context_manager(pool):
    with pool as p:
        assert p.is_open() is True
        idx = p.new_shelf()
    assert pool.is_open() is False
    with pool as p:
        assert p.check_shelf(idx) is True