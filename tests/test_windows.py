"""Tests for date windows and range arithmetic."""

from datetime import date

import pytest

from tallycache.models.cache import DateRange
from tallycache.sync.windows import (
    count_windows,
    format_api_date,
    iter_windows,
    merge_ranges,
    parse_books_from,
    range_gaps,
)


def dr(start: str, end: str) -> DateRange:
    return DateRange(start_date=date.fromisoformat(start), end_date=date.fromisoformat(end))


class TestIterWindows:
    def test_two_day_chunks(self):
        windows = list(iter_windows(date(2024, 1, 1), date(2024, 1, 5), 2))
        assert [(w.index, w.start, w.end) for w in windows] == [
            (0, date(2024, 1, 1), date(2024, 1, 2)),
            (1, date(2024, 1, 3), date(2024, 1, 4)),
            (2, date(2024, 1, 5), date(2024, 1, 5)),
        ]
        assert count_windows(date(2024, 1, 1), date(2024, 1, 5), 2) == 3

    def test_start_index_skips_completed(self):
        windows = list(iter_windows(date(2024, 1, 1), date(2024, 1, 5), 2, start_index=1))
        assert [w.index for w in windows] == [1, 2]
        assert windows[0].start == date(2024, 1, 3)

    def test_single_day(self):
        windows = list(iter_windows(date(2024, 2, 29), date(2024, 2, 29)))
        assert len(windows) == 1
        assert windows[0].start == windows[0].end

    def test_reversed_range_is_empty(self):
        assert list(iter_windows(date(2024, 1, 5), date(2024, 1, 1))) == []
        assert count_windows(date(2024, 1, 5), date(2024, 1, 1)) == 0

    def test_windows_tile_the_range(self):
        start, end = date(2023, 4, 1), date(2024, 3, 31)
        windows = list(iter_windows(start, end, 7))
        assert windows[0].start == start
        assert windows[-1].end == end
        for previous, current in zip(windows, windows[1:]):
            assert (current.start - previous.end).days == 1
        assert len(windows) == count_windows(start, end, 7)

    def test_invalid_chunk_size(self):
        with pytest.raises(ValueError):
            list(iter_windows(date(2024, 1, 1), date(2024, 1, 2), 0))

    def test_label(self):
        window = next(iter_windows(date(2024, 1, 1), date(2024, 1, 5)))
        assert window.label == "2024-01-01 to 2024-01-02"


class TestParseBooksFrom:
    def test_formats(self):
        assert parse_books_from("20230401") == date(2023, 4, 1)
        assert parse_books_from("2023-04-01") == date(2023, 4, 1)
        assert parse_books_from("1-Apr-23") == date(2023, 4, 1)
        assert parse_books_from("1-apr-2023") == date(2023, 4, 1)
        assert parse_books_from("1-Apr-99") == date(1999, 4, 1)

    def test_empty(self):
        assert parse_books_from("") is None
        assert parse_books_from(None) is None

    def test_passthrough_date(self):
        assert parse_books_from(date(2020, 1, 1)) == date(2020, 1, 1)

    def test_invalid(self):
        with pytest.raises(ValueError):
            parse_books_from("April 2023")
        with pytest.raises(ValueError):
            parse_books_from("1-Foo-23")

    def test_format_api_date(self):
        assert format_api_date(date(2024, 1, 5)) == "20240105"


class TestRanges:
    def test_merge_overlapping_and_adjacent(self):
        merged = merge_ranges(
            [dr("2024-01-05", "2024-01-06"), dr("2024-01-01", "2024-01-02"), dr("2024-01-03", "2024-01-03")]
        )
        assert merged == [dr("2024-01-01", "2024-01-03"), dr("2024-01-05", "2024-01-06")]

    def test_merge_contained(self):
        assert merge_ranges([dr("2024-01-01", "2024-01-10"), dr("2024-01-02", "2024-01-03")]) == [
            dr("2024-01-01", "2024-01-10")
        ]

    def test_gaps(self):
        gaps = range_gaps(
            dr("2024-01-01", "2024-01-10"),
            [dr("2024-01-03", "2024-01-04"), dr("2024-01-07", "2024-01-12")],
        )
        assert gaps == [dr("2024-01-01", "2024-01-02"), dr("2024-01-05", "2024-01-06")]

    def test_no_cached_ranges(self):
        assert range_gaps(dr("2024-01-01", "2024-01-02"), []) == [dr("2024-01-01", "2024-01-02")]

    def test_fully_covered(self):
        assert range_gaps(dr("2024-01-02", "2024-01-03"), [dr("2024-01-01", "2024-01-05")]) == []
