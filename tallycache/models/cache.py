"""Cache metadata models for tallycache."""

from datetime import date, datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, computed_field, model_validator


class CacheType(str, Enum):
    """Dataset category of a cache entry."""

    SALES = "sales"
    DASHBOARD = "dashboard"
    CUSTOMERS = "customers"
    ITEMS = "items"
    SESSION = "session"


class DateRange(BaseModel):
    """Inclusive date range covered by a cached dataset."""

    start_date: date
    end_date: date

    @model_validator(mode="after")
    def check_order(self) -> "DateRange":
        if self.end_date < self.start_date:
            raise ValueError(
                f"end_date {self.end_date} is before start_date {self.start_date}"
            )
        return self

    def overlaps(self, other: "DateRange") -> bool:
        return self.start_date <= other.end_date and other.start_date <= self.end_date

    def contains(self, day: date) -> bool:
        return self.start_date <= day <= self.end_date

    def __str__(self) -> str:
        return f"{self.start_date.isoformat()}..{self.end_date.isoformat()}"


class CacheEntry(BaseModel):
    """Metadata index row for one stored payload."""

    cache_key: str
    type: CacheType
    size_bytes: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=datetime.now)
    date_range: Optional[DateRange] = None
    backend: str = Field(default="", description="Name of the backend holding the payload")

    @computed_field
    @property
    def age_days(self) -> int:
        """Whole days since the entry was written."""
        return max((datetime.now() - self.created_at).days, 0)


class CacheListing(BaseModel):
    """Summary of everything in the cache, computed from the metadata index."""

    total_entries: int = 0
    total_size_bytes: int = 0
    counts_by_type: Dict[str, int] = Field(default_factory=dict)
    entries: List[CacheEntry] = Field(default_factory=list)

    @computed_field
    @property
    def total_size_mb(self) -> float:
        return round(self.total_size_bytes / (1024 * 1024), 2)


class ChangeKind(str, Enum):
    SET = "set"
    DELETE = "delete"
    CLEAR = "clear"
    RELOAD = "reload"


class CacheChange(BaseModel):
    """Notification sent to cache listeners after a mutation."""

    kind: ChangeKind
    keys: List[str] = Field(default_factory=list)


class RangeCoverage(BaseModel):
    """Cached windows overlapping a requested range, and what is missing."""

    requested: DateRange
    cached: List[DateRange] = Field(default_factory=list)
    cached_keys: List[str] = Field(default_factory=list)
    gaps: List[DateRange] = Field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.gaps
