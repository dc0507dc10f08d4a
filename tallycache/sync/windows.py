"""Date utilities for chunked downloads.

A download range is tiled into fixed-size windows which are fetched one after
another. With the default chunk size of two days, ``2024-01-01..2024-01-05``
becomes ``[01-01, 01-02], [01-03, 01-04], [01-05, 01-05]``.
"""

import re
from datetime import date, datetime, timedelta
from typing import Iterator, List, Optional, Union

from pydantic import BaseModel, ConfigDict

from ..models.cache import DateRange

DEFAULT_CHUNK_DAYS = 2

_MONTHS = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}
_DMY_RE = re.compile(r"^(\d{1,2})-([A-Za-z]{3})-(\d{2}|\d{4})$")


class DateWindow(BaseModel):
    """One chunk of a download range. ``index`` is 0-based."""

    model_config = ConfigDict(frozen=True)

    index: int
    start: date
    end: date

    @property
    def label(self) -> str:
        return f"{self.start.isoformat()} to {self.end.isoformat()}"


def parse_books_from(value: Union[str, date, None]) -> Optional[date]:
    """Parse a company's "books from" date.

    Accepts ``YYYYMMDD``, ``YYYY-MM-DD``, and ``D-Mon-YY`` / ``D-Mon-YYYY``.
    Two-digit years below 50 are read as 20xx, the rest as 19xx.

    Args:
        value: Raw date as sent by the server or written in the config

    Returns:
        Parsed date, or None for an empty value

    Raises:
        ValueError: the value is not in a supported format
    """
    if value is None or isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        return None

    if re.fullmatch(r"\d{8}", text):
        return datetime.strptime(text, "%Y%m%d").date()
    if re.fullmatch(r"\d{4}-\d{2}-\d{2}", text):
        return date.fromisoformat(text)

    match = _DMY_RE.match(text)
    if match:
        day, month_name, year_text = match.groups()
        month = _MONTHS.get(month_name.lower())
        if month is None:
            raise ValueError(f"Unknown month in date: {text!r}")
        year = int(year_text)
        if len(year_text) == 2:
            year += 2000 if year < 50 else 1900
        return date(year, month, int(day))

    raise ValueError(f"Unsupported date format: {text!r}")


def format_api_date(day: date) -> str:
    """Format a date the way the data service expects (``YYYYMMDD``)."""
    return day.strftime("%Y%m%d")


def iter_windows(
    from_date: date,
    to_date: date,
    chunk_days: int = DEFAULT_CHUNK_DAYS,
    start_index: int = 0,
) -> Iterator[DateWindow]:
    """Lazily yield the windows tiling ``[from_date, to_date]``.

    Args:
        from_date: First day of the range (inclusive)
        to_date: Last day of the range (inclusive)
        chunk_days: Days per window
        start_index: Skip the windows before this index (used on resume)

    Yields:
        Windows in chronological order; the last one is clipped to ``to_date``
    """
    if chunk_days < 1:
        raise ValueError("chunk_days must be at least 1")
    if to_date < from_date:
        return

    step = timedelta(days=chunk_days)
    index = max(start_index, 0)
    start = from_date + step * index
    while start <= to_date:
        end = min(start + timedelta(days=chunk_days - 1), to_date)
        yield DateWindow(index=index, start=start, end=end)
        index += 1
        start += step


def count_windows(from_date: date, to_date: date, chunk_days: int = DEFAULT_CHUNK_DAYS) -> int:
    if to_date < from_date:
        return 0
    days = (to_date - from_date).days + 1
    return -(-days // chunk_days)


def merge_ranges(ranges: List[DateRange]) -> List[DateRange]:
    """Merge overlapping or adjacent ranges into a sorted, disjoint list."""
    if not ranges:
        return []

    ordered = sorted(ranges, key=lambda r: r.start_date)
    merged = [DateRange(start_date=ordered[0].start_date, end_date=ordered[0].end_date)]
    for current in ordered[1:]:
        last = merged[-1]
        if current.start_date <= last.end_date + timedelta(days=1):
            if current.end_date > last.end_date:
                merged[-1] = DateRange(start_date=last.start_date, end_date=current.end_date)
        else:
            merged.append(DateRange(start_date=current.start_date, end_date=current.end_date))
    return merged


def range_gaps(requested: DateRange, cached: List[DateRange]) -> List[DateRange]:
    """Sub-ranges of ``requested`` not covered by any of ``cached``."""
    gaps = []
    position = requested.start_date
    for covered in merge_ranges(cached):
        if covered.end_date < position:
            continue
        if covered.start_date > requested.end_date:
            break
        if position < covered.start_date:
            gaps.append(DateRange(start_date=position, end_date=covered.start_date - timedelta(days=1)))
        position = max(position, covered.end_date + timedelta(days=1))
        if position > requested.end_date:
            break
    if position <= requested.end_date:
        gaps.append(DateRange(start_date=position, end_date=requested.end_date))
    return gaps
