"""Data models for tallycache."""

from .cache import CacheChange, CacheEntry, CacheListing, CacheType, ChangeKind, DateRange, RangeCoverage
from .sync import CompanyIdentity, DownloadCheckpoint, SyncProgress, SyncResult, SyncStatus

__all__ = [
    "CacheChange",
    "CacheEntry",
    "CacheListing",
    "CacheType",
    "ChangeKind",
    "DateRange",
    "RangeCoverage",
    "CompanyIdentity",
    "DownloadCheckpoint",
    "SyncProgress",
    "SyncResult",
    "SyncStatus",
]
