import pytest

from tapenet.metrics import TAPE_TOTAL_SEGMENTS_WRITTEN, TAPE_TOTAL_TAPES_WRITTEN
from tapenet.pubkey import Pubkey
from tapenet.store import (
    TAPE_STORE_PRIMARY_DB,
    TAPE_STORE_SECONDARY_DB_WEB,
    HealthNotFound,
    InvalidKeyValuePairLen,
    LocalStats,
    SegmentNotFound,
    SegmentNotFoundForAddress,
    SegmentSizeExceeded,
    StoreError,
    TapeNotFound,
    TapeNotFoundForAddress,
    TapeStore,
    primary,
    read_only,
    run_refresh_store,
    secondary_web,
)


@pytest.fixture
def store(tmp_path):
    with TapeStore(tmp_path / "db") as s:
        yield s


def test_add_tape(store):
    address = Pubkey.new_unique()
    store.write_tape(1, address)
    assert store.read_tape_number(address) == 1
    assert store.read_tape_address(1) == address


def test_add_segment(store):
    address = Pubkey.new_unique()
    store.write_tape(1, address)
    store.write_segment(address, 0, bytes([1, 2, 3]))
    assert store.read_segment(1, 0) == bytes([1, 2, 3])


def test_add_and_get_segments(store):
    address = Pubkey.new_unique()
    store.write_segment(address, 1, bytes([4, 5, 6]))
    store.write_segment(address, 0, bytes([1, 2, 3]))
    store.write_tape(1, address)

    segments = store.read_tape_segments(address)
    assert len(segments) == 2
    assert segments[0] == (0, bytes([1, 2, 3]))
    assert segments[1] == (1, bytes([4, 5, 6]))

    assert store.read_tape_segments(Pubkey.new_unique()) == []


def test_get_segment_by_address(store):
    address = Pubkey.new_unique()
    store.write_segment(address, 0, bytes([1, 2, 3]))
    assert store.read_segment_by_address(address, 0) == bytes([1, 2, 3])


def test_segment_size_limit(store):
    address = Pubkey.new_unique()
    with pytest.raises(SegmentSizeExceeded) as info:
        store.write_segment(address, 0, bytes(store.max_segment_size + 1))
    assert info.value.limit == store.max_segment_size


def test_segment_at_size_limit_is_accepted(store):
    address = Pubkey.new_unique()
    data = bytes(range(store.max_segment_size))
    store.write_segment(address, 0, data)
    assert store.read_segment_by_address(address, 0) == data


def test_error_cases(store):
    address = Pubkey.new_unique()
    with pytest.raises(TapeNotFoundForAddress):
        store.read_tape_number(address)
    with pytest.raises(TapeNotFound) as info:
        store.read_tape_address(1)
    assert info.value.tape_number == 1


def test_multiple_tapes(store):
    tape1 = Pubkey.new_unique()
    tape2 = Pubkey.new_unique()
    store.write_segment(tape1, 0, bytes([1, 2, 3]))
    store.write_tape(1, tape1)
    store.write_segment(tape2, 0, bytes([4, 5, 6]))
    store.write_tape(2, tape2)

    assert store.read_tape_number(tape1) == 1
    assert store.read_tape_address(1) == tape1
    assert store.read_tape_segments(tape1) == [(0, bytes([1, 2, 3]))]

    assert store.read_tape_number(tape2) == 2
    assert store.read_tape_address(2) == tape2
    assert store.read_tape_segments(tape2) == [(0, bytes([4, 5, 6]))]


def test_get_segment(store):
    address = Pubkey.new_unique()
    store.write_segment(address, 0, bytes([1, 2, 3]))
    store.write_tape(1, address)
    assert store.read_segment(1, 0) == bytes([1, 2, 3])


def test_get_segment_non_existent(store):
    address = Pubkey.new_unique()
    store.write_tape(1, address)
    with pytest.raises(SegmentNotFound) as info:
        store.read_segment(1, 0)
    assert info.value.segment_number == 0


def test_read_segment_unknown_tape(store):
    with pytest.raises(TapeNotFound):
        store.read_segment(7, 0)


def test_read_segment_by_address_missing(store):
    address = Pubkey.new_unique()
    with pytest.raises(SegmentNotFoundForAddress) as info:
        store.read_segment_by_address(address, 3)
    assert info.value.address == str(address)
    assert info.value.segment_number == 3


def test_get_multiple_segments(store):
    address = Pubkey.new_unique()
    store.write_segment(address, 0, bytes([1, 2, 3]))
    store.write_segment(address, 1, bytes([4, 5, 6]))
    store.write_tape(1, address)
    assert store.read_segment(1, 0) == bytes([1, 2, 3])
    assert store.read_segment(1, 1) == bytes([4, 5, 6])


def test_get_local_stats(store):
    stats = store.read_local_stats()
    assert stats.tapes == 0
    assert stats.segments == 0

    address = Pubkey.new_unique()
    store.write_tape(1, address)
    store.write_segment(address, 0, bytes([1, 2, 3]))
    store.write_segment(address, 1, bytes([4, 5, 6]))

    stats = store.read_local_stats()
    assert isinstance(stats, LocalStats)
    assert stats.tapes == 1
    assert stats.segments == 2
    assert stats.size_bytes > 0


def test_health_round_trip(store):
    store.update_health(1234, 56)
    assert store.get_health() == (1234, 56)
    store.update_health(2000, 0)
    assert store.get_health() == (2000, 0)


def test_health_missing(store):
    with pytest.raises(HealthNotFound):
        store.get_health()


def test_write_tapes_batch(store):
    addresses = [Pubkey.new_unique() for _ in range(3)]
    store.write_tapes_batch([1, 2, 3], addresses)
    assert [store.read_tape_address(n) for n in (1, 2, 3)] == addresses
    assert [store.read_tape_number(a) for a in addresses] == [1, 2, 3]


def test_write_tapes_batch_length_mismatch(store):
    with pytest.raises(InvalidKeyValuePairLen):
        store.write_tapes_batch([1, 2], [Pubkey.new_unique()])
    assert store.read_local_stats().tapes == 0


def test_write_segments_batch(store):
    address = Pubkey.new_unique()
    store.write_segments_batch([address] * 3, [2, 0, 1], [b"c", b"a", b"b"])
    assert store.read_tape_segments(address) == [(0, b"a"), (1, b"b"), (2, b"c")]
    assert store.read_segment_count(address) == 3


def test_write_segments_batch_errors(store):
    address = Pubkey.new_unique()
    with pytest.raises(SegmentSizeExceeded):
        store.write_segments_batch(
            [address, address], [0, 1], [b"x", bytes(store.max_segment_size + 1)]
        )
    with pytest.raises(InvalidKeyValuePairLen):
        store.write_segments_batch([address], [0, 1], [b"x", b"y"])
    assert store.read_segment_count(address) == 0


def test_segment_count_per_tape(store):
    first, second = Pubkey.new_unique(), Pubkey.new_unique()
    for n in range(4):
        store.write_segment(first, n, b"a")
    store.write_segment(second, 0, b"b")
    assert store.read_segment_count(first) == 4
    assert store.read_segment_count(second) == 1


def test_overwrite_segment(store):
    address = Pubkey.new_unique()
    store.write_segment(address, 0, b"old")
    store.write_segment(address, 0, b"new")
    assert store.read_tape_segments(address) == [(0, b"new")]


def test_write_counters(store):
    tapes_before = TAPE_TOTAL_TAPES_WRITTEN.value()
    segments_before = TAPE_TOTAL_SEGMENTS_WRITTEN.value()
    address = Pubkey.new_unique()
    store.write_tape(1, address)
    store.write_segments_batch([address, address], [0, 1], [b"a", b"b"])
    assert TAPE_TOTAL_TAPES_WRITTEN.value() == tapes_before + 1
    assert TAPE_TOTAL_SEGMENTS_WRITTEN.value() == segments_before + 2


def test_closed_store_raises(tmp_path):
    store = TapeStore(tmp_path / "db")
    store.close()
    with pytest.raises(StoreError):
        store.read_tape_address(1)


def test_read_only_sees_data_and_rejects_writes(tmp_path):
    path = tmp_path / "db"
    address = Pubkey.new_unique()
    with TapeStore(path) as writer:
        writer.write_tape(5, address)
    with TapeStore.open_read_only(path) as reader:
        assert reader.read_tape_address(5) == address
        with pytest.raises(StoreError):
            reader.write_tape(6, Pubkey.new_unique())


def test_read_only_missing_store(tmp_path):
    with pytest.raises(StoreError):
        TapeStore.open_read_only(tmp_path / "nothing")


def test_secondary_follows_primary(tmp_path):
    base = tmp_path
    first, second = Pubkey.new_unique(), Pubkey.new_unique()
    with primary(base) as writer:
        writer.write_tape(1, first)
        with secondary_web(base) as follower:
            assert follower.read_tape_address(1) == first
            assert (base / TAPE_STORE_SECONDARY_DB_WEB).is_dir()
            writer.write_tape(2, second)
            follower.catch_up_with_primary()
            assert follower.read_tape_address(2) == second


def test_primary_and_read_only_helpers(tmp_path):
    address = Pubkey.new_unique()
    with primary(tmp_path) as writer:
        writer.write_segment(address, 0, b"data")
    assert (tmp_path / TAPE_STORE_PRIMARY_DB).is_dir()
    with read_only(tmp_path) as reader:
        assert reader.read_segment_by_address(address, 0) == b"data"


def test_refresh_runs_until_stopped(store):
    stop = run_refresh_store(store, 0.01)
    assert stop.wait(0.1) is False
    stop.set()
    assert stop.is_set()


def test_refresh_stops_on_failure(tmp_path):
    store = TapeStore(tmp_path / "db")
    store.close()
    stop = run_refresh_store(store, 0.01)
    assert stop.wait(2.0) is True