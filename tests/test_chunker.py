"""Tests for range planning."""

import pytest

from clouddisk.file.chunker import ByteRange, chunk_size_for, plan_ranges


def assert_partition(ranges, total_size):
    """Ranges are ordered, contiguous, non-empty and cover [0, total_size)."""
    offset = 0
    for i, rng in enumerate(ranges):
        assert rng.index == i
        assert rng.start == offset
        assert rng.length > 0
        offset = rng.end
    assert offset == total_size
    assert sum(r.length for r in ranges) == total_size


@pytest.mark.parametrize("total_size", [1, 2, 3, 7, 100, 4095, 4096, 1_000_003])
@pytest.mark.parametrize("workers", [1, 2, 3, 5, 8, 64])
def test_ranges_partition_file(total_size, workers):
    ranges = plan_ranges(total_size, workers)
    assert len(ranges) <= workers
    assert_partition(ranges, total_size)


def test_one_mebibyte_five_workers():
    ranges = plan_ranges(1_048_576, 5)

    assert chunk_size_for(1_048_576, 5) == 209_716
    assert [(r.start, r.end) for r in ranges] == [
        (0, 209_716),
        (209_716, 419_432),
        (419_432, 629_148),
        (629_148, 838_864),
        (838_864, 1_048_576),
    ]
    assert ranges[-1].length == 209_712


def test_empty_file_has_no_ranges():
    assert plan_ranges(0, 5) == []


def test_more_workers_than_bytes():
    ranges = plan_ranges(3, 10)
    assert ranges == [ByteRange(0, 0, 1), ByteRange(1, 1, 2), ByteRange(2, 2, 3)]


def test_ranges_past_end_are_dropped():
    # chunk size 3, so the fifth range would start at 12
    ranges = plan_ranges(10, 5)
    assert [r.length for r in ranges] == [3, 3, 3, 1]

    ranges = plan_ranges(9, 5)
    assert [(r.start, r.end) for r in ranges] == [(0, 2), (2, 4), (4, 6), (6, 8), (8, 9)]


def test_single_worker_takes_everything():
    assert plan_ranges(12345, 1) == [ByteRange(0, 0, 12345)]


def test_planning_is_deterministic():
    assert plan_ranges(987_654, 7) == plan_ranges(987_654, 7)


@pytest.mark.parametrize("total_size,workers", [(-1, 5), (10, 0), (10, -3)])
def test_invalid_input(total_size, workers):
    with pytest.raises(ValueError):
        plan_ranges(total_size, workers)


def test_byte_range_str():
    assert str(ByteRange(2, 10, 20)) == "#2 [10, 20)"
