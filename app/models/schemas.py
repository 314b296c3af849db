from datetime import date
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator


class ScopeEvidenceOut(BaseModel):
    area_field: str | None = None
    national_marker: bool = False
    region_mentions: dict[str, int] = Field(default_factory=dict)
    non_national_region: str | None = None
    pollster: str = "Unknown"


class PollOut(BaseModel):
    id: str
    date: date
    percentage: float = Field(ge=0, le=100)
    pollster: str
    scope: Literal["national", "regional", "unknown"] = "unknown"
    region: str | None = None
    source_ref: str = ""
    days_until_election: int | None = None
    scope_strength: Literal["structural", "free_text", "outlet", "none"] = "none"
    scope_rule: int = Field(default=8, ge=1, le=8)
    evidence: ScopeEvidenceOut = Field(default_factory=ScopeEvidenceOut)

    @model_validator(mode="after")
    def _region_only_when_regional(self):
        if self.scope == "regional" and not self.region:
            raise ValueError(f"poll {self.id}: regional scope requires a region")
        if self.scope != "regional" and self.region is not None:
            raise ValueError(f"poll {self.id}: region is only allowed for regional scope")
        return self


class ElectionCycleOut(BaseModel):
    election_date: date
    actual_result: float | None = None
    polls: list[PollOut] = Field(default_factory=list)


class DatasetOut(BaseModel):
    elections: dict[str, ElectionCycleOut] = Field(default_factory=dict)


class ScanCursorOut(BaseModel):
    last_found_id: int = Field(ge=0)
    updated_at: str | None = None


class TrendPointOut(BaseModel):
    x: float
    y: float


class TrendOut(BaseModel):
    year: int
    scope: Literal["national", "regional", "all"]
    window_days: float
    sample_count: int
    points: list[TrendPointOut] = Field(default_factory=list)


class SuspiciousClusterOut(BaseModel):
    date: date
    outlet: str
    size: int
    poll_ids: list[str] = Field(default_factory=list)


class AuditOut(BaseModel):
    year: int
    min_cluster: int
    clusters: list[SuspiciousClusterOut] = Field(default_factory=list)


class ScanJobIn(BaseModel):
    mode: Literal["sequential", "feed"] = "sequential"
    start_id: int | None = Field(default=None, ge=1)
    max_scan_length: int | None = Field(default=None, ge=1)


class ReclassifyJobIn(BaseModel):
    refetch_weak: bool = False


class JobRunOut(BaseModel):
    run_id: str
    status: str
    summary: dict[str, Any] = Field(default_factory=dict)
    review_queue_count: int = 0
