"""Sync progress and checkpoint models for tallycache."""

from datetime import date, datetime
from enum import Enum
from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator


class CompanyIdentity(BaseModel):
    """A tenant: one company on one Tally location.

    ``(location_id, guid)`` is the compound key into every per-tenant store.
    """

    model_config = ConfigDict(frozen=True)

    location_id: str
    guid: str
    company_name: str

    @property
    def tenant_key(self) -> Tuple[str, str]:
        return (self.location_id, self.guid)

    def same_tenant(self, other: Optional["CompanyIdentity"]) -> bool:
        return other is not None and self.tenant_key == other.tenant_key

    def __str__(self) -> str:
        return f"{self.company_name} ({self.location_id}/{self.guid})"


class SyncStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    INTERRUPTED = "interrupted"
    COMPLETED = "completed"
    FAILED = "failed"


class SyncProgress(BaseModel):
    """Snapshot of a tenant's sync, published to subscribers."""

    company_guid: str
    location_id: str
    company_name: str = ""
    current_chunk: int = Field(default=0, ge=0)
    total_chunks: int = Field(default=0, ge=0)
    window_label: str = ""
    message: str = ""
    status: SyncStatus = SyncStatus.IDLE
    started_at: Optional[datetime] = None
    last_updated_at: datetime = Field(default_factory=datetime.now)
    record_count: int = Field(default=0, ge=0)
    error: Optional[str] = None
    remediation: Optional[str] = None

    @computed_field
    @property
    def percent(self) -> int:
        if self.total_chunks <= 0:
            return 0
        return round(self.current_chunk * 100 / self.total_chunks)

    @classmethod
    def idle(cls, identity: CompanyIdentity) -> "SyncProgress":
        return cls(
            company_guid=identity.guid,
            location_id=identity.location_id,
            company_name=identity.company_name,
        )


class DownloadCheckpoint(BaseModel):
    """Durable record of how far a chunked download got.

    ``current`` counts completed chunks, so the next chunk to fetch is
    ``current`` (0-indexed).
    """

    company_guid: str
    location_id: str
    current: int = Field(default=0, ge=0)
    total: int = Field(default=0, ge=0)
    timestamp: datetime = Field(default_factory=datetime.now)
    last_alter_id: Optional[int] = None
    since_alter_id: Optional[int] = Field(
        default=None,
        description="Watermark a chunked update pass was started from; None for a full download",
    )
    from_date: Optional[date] = None
    to_date: Optional[date] = None
    record_count: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def check_bounds(self) -> "DownloadCheckpoint":
        if self.current > self.total:
            raise ValueError(f"checkpoint current {self.current} exceeds total {self.total}")
        return self

    @property
    def is_incomplete(self) -> bool:
        return self.total > 0 and self.current < self.total

    @property
    def signature(self) -> str:
        """Identifies this exact checkpoint state for dismissal tracking."""
        return f"{self.location_id}|{self.company_guid}|{self.current}|{self.total}"


class SyncResult(BaseModel):
    """Outcome of one sync attempt."""

    status: SyncStatus
    record_count: int = 0
    last_alter_id: Optional[int] = None
    chunks_fetched: int = 0
    incremental: bool = False
