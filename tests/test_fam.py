import mmap
import threading

import pytest

from nvshelf.fam import FamRegion, FamSpinlock

MASK64 = (1 << 64) - 1
MASK32 = (1 << 32) - 1


@pytest.fixture
def region():
    return FamRegion(bytearray(256))


def test_read_write_64_round_trip(region):
    region.write_64(8, 0x0123456789ABCDEF)
    assert region.read_64(8) == 0x0123456789ABCDEF


def test_read_write_32_round_trip(region):
    region.write_32(4, 0xDEADBEEF)
    assert region.read_32(4) == 0xDEADBEEF


def test_values_are_little_endian(region):
    region.write_32(0, 0x11223344)
    assert region.read_bytes(0, 4) == b"\x44\x33\x22\x11"


def test_fetch_add_returns_previous(region):
    region.write_64(0, 10)
    assert region.fetch_add_64(0, 5) == 10
    assert region.read_64(0) == 10 + 5


def test_fetch_add_negative_wraps(region):
    region.write_64(0, 0)
    assert region.fetch_add_64(0, -1) == 0
    assert region.read_64(0) == MASK64


def test_fetch_add_32_wraps_without_touching_neighbour(region):
    region.write_32(0, MASK32)
    region.write_32(4, 7)
    assert region.fetch_add_32(0, 1) == MASK32
    assert region.read_32(0) == 0
    assert region.read_32(4) == 7


def test_swap_returns_previous(region):
    region.write_64(16, 3)
    assert region.swap_64(16, 9) == 3
    assert region.read_64(16) == 9
    assert region.swap_32(24, 4) == 0
    assert region.read_32(24) == 4


def test_compare_store_success(region):
    region.write_64(0, 42)
    assert region.compare_store_64(0, 42, 99) == 42
    assert region.read_64(0) == 99


def test_compare_store_failure_leaves_value(region):
    region.write_64(0, 42)
    assert region.compare_store_64(0, 41, 99) == 42
    assert region.read_64(0) == 42


def test_compare_store_32(region):
    region.write_32(8, 5)
    assert region.compare_store_32(8, 5, 6) == 5
    assert region.compare_store_32(8, 5, 7) == 6
    assert region.read_32(8) == 6


@pytest.mark.parametrize("width", [32, 64])
def test_fetch_bitwise_operations(region, width):
    fetch_and = getattr(region, f"fetch_and_{width}")
    fetch_or = getattr(region, f"fetch_or_{width}")
    fetch_xor = getattr(region, f"fetch_xor_{width}")
    write = getattr(region, f"write_{width}")
    read = getattr(region, f"read_{width}")

    write(0, 0b1100)
    assert fetch_or(0, 0b0011) == 0b1100
    assert read(0) == 0b1111
    assert fetch_and(0, 0b1010) == 0b1111
    assert read(0) == 0b1010
    assert fetch_xor(0, 0b1010) == 0b1010
    assert read(0) == 0


def test_128_write_read(region):
    region.write_128(16, (1, 2))
    assert region.read_128(16) == (1, 2)
    assert region.read_64(16) == 1
    assert region.read_64(24) == 2


def test_128_swap_returns_previous(region):
    region.write_128(32, (5, 6))
    assert region.swap_128(32, (7, 8)) == (5, 6)
    assert region.read_128(32) == (7, 8)


def test_128_compare_store(region):
    region.write_128(0, (1, 2))
    assert region.compare_store_128(0, (1, 3), (9, 9)) == (1, 2)
    assert region.read_128(0) == (1, 2)
    assert region.compare_store_128(0, (1, 2), (9, 9)) == (1, 2)
    assert region.read_128(0) == (9, 9)


def test_128_requires_pair(region):
    with pytest.raises(ValueError):
        region.write_128(0, (1, 2, 3))
    assert region.read_128(0) == (0, 0)


@pytest.mark.parametrize(
    "call",
    [
        lambda r: r.read_64(4),
        lambda r: r.write_32(2, 1),
        lambda r: r.read_128(8),
    ],
)
def test_misaligned_access_rejected(region, call):
    with pytest.raises(ValueError):
        call(region)
    assert region.read_bytes(0, 256) == bytes(256)


@pytest.mark.parametrize(
    "call",
    [
        lambda r: r.read_64(256),
        lambda r: r.write_64(-8, 1),
        lambda r: r.read_bytes(250, 10),
        lambda r: r.invalidate(200, 100),
        lambda r: r.memset_persist(255, 0xFF, 2),
    ],
)
def test_out_of_range_access_rejected(region, call):
    with pytest.raises(IndexError):
        call(region)
    assert region.read_bytes(0, 256) == bytes(256)


def test_bytes_round_trip(region):
    region.write_bytes(100, b"shelf")
    assert region.read_bytes(100, 5) == b"shelf"


def test_subregion_offsets_are_relative():
    buf = bytearray(128)
    sub = FamRegion(buf, 64, 64)
    sub.write_64(0, 0xABCDEF)
    assert bytes(buf[64:72]) == (0xABCDEF).to_bytes(8, "little")
    assert len(sub) == 64
    with pytest.raises(IndexError):
        sub.read_64(64)


def test_region_rejects_readonly_buffer():
    with pytest.raises(TypeError):
        FamRegion(b"\x00" * 16)


def test_region_rejects_bad_window():
    with pytest.raises(ValueError):
        FamRegion(bytearray(16), 8, 16)
    with pytest.raises(ValueError):
        FamRegion(bytearray(16), 32)


def test_memset_persist_bytearray(region):
    region.memset_persist(10, 0xAB, 6)
    assert region.read_bytes(10, 6) == b"\xab" * 6
    assert region.read_bytes(9, 1) == b"\x00"
    assert region.read_bytes(16, 1) == b"\x00"


def test_memset_persist_reaches_file(tmp_path):
    path = tmp_path / "shelf"
    path.write_bytes(b"\x00" * mmap.PAGESIZE)
    with open(path, "r+b") as handle:
        mapped = mmap.mmap(handle.fileno(), mmap.PAGESIZE)
        region = FamRegion(mapped)
        region.memset_persist(100, 0x5A, 20)
        region.write_64(8, 77)
        region.persist(0, 16)
        assert region.read_bytes(100, 20) == b"\x5a" * 20
        assert region.read_64(8) == 77
        mapped.close()
    data = path.read_bytes()
    assert data[100:120] == b"\x5a" * 20
    assert int.from_bytes(data[8:16], "little") == 77


def test_spinlock_trylock_sequence(region):
    lock = FamSpinlock(region, 64)
    lock.init()
    assert lock.trylock() is True
    assert lock.trylock() is False
    lock.unlock()
    assert lock.trylock() is True
    lock.unlock()
    assert region.read_32(64) == region.read_32(68)


def test_spinlock_context_manager(region):
    lock = FamSpinlock(region, 0)
    lock.init()
    with lock:
        assert lock.trylock() is False
    assert lock.trylock() is True


def test_spinlock_rejects_misaligned_offset(region):
    with pytest.raises(ValueError):
        FamSpinlock(region, 4)


def test_spinlock_mutual_exclusion(region):
    lock = FamSpinlock(region, 0)
    lock.init()
    counter_offset = 64
    threads_count = 4
    rounds = 200

    def work():
        for _ in range(rounds):
            with lock:
                value = region.read_64(counter_offset)
                region.write_64(counter_offset, value + 1)

    threads = [threading.Thread(target=work) for _ in range(threads_count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert region.read_64(counter_offset) == threads_count * rounds
    assert lock.trylock() is True