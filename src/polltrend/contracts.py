from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from enum import Enum, IntEnum
from hashlib import sha1
from typing import Any
from urllib.parse import parse_qs, urlparse


ISSUE_TAXONOMY: tuple[str, ...] = ("fetch_error", "parse_error", "classify_error", "merge_error")
FETCH_STATUSES: tuple[str, ...] = ("ok", "not_found", "network_failure", "timeout")
MISS_STATUSES: frozenset[str] = frozenset({"not_found", "network_failure", "timeout"})

SOURCE_ID_PARAM = "gallupid"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def stable_id(prefix: str, *parts: str) -> str:
    normalized = "|".join(part.strip().lower() for part in parts if part is not None)
    digest = sha1(normalized.encode("utf-8")).hexdigest()[:16]
    return f"{prefix}_{digest}"


def poll_id_from_ref(source_ref: str) -> str:
    """Stable id of a poll: the numeric ``gallupid`` of its reference, else a hash of the reference."""
    query = parse_qs(urlparse(source_ref.strip()).query)
    values = query.get(SOURCE_ID_PARAM) or []
    for value in values:
        token = value.strip()
        if token.isdigit():
            return str(int(token))
    return stable_id("poll", source_ref)


def numeric_source_id(poll_id: str) -> int | None:
    return int(poll_id) if poll_id.isdigit() else None


class Scope(str, Enum):
    NATIONAL = "national"
    REGIONAL = "regional"
    UNKNOWN = "unknown"


class EvidenceStrength(IntEnum):
    NONE = 0
    OUTLET = 1
    FREE_TEXT = 2
    STRUCTURAL = 3

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def from_label(cls, value: str | None) -> "EvidenceStrength":
        if not value:
            return cls.NONE
        try:
            return cls[str(value).strip().upper()]
        except KeyError:
            return cls.NONE


@dataclass
class ScopeEvidence:
    area_field: str | None = None
    national_marker: bool = False
    region_mentions: dict[str, int] = field(default_factory=dict)
    non_national_region: str | None = None
    pollster: str = "Unknown"

    @property
    def has_region_token(self) -> bool:
        return bool(self.region_mentions)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> "ScopeEvidence":
        payload = payload or {}
        mentions = payload.get("region_mentions") or {}
        return cls(
            area_field=payload.get("area_field"),
            national_marker=bool(payload.get("national_marker")),
            region_mentions={str(k): int(v) for k, v in mentions.items()},
            non_national_region=payload.get("non_national_region"),
            pollster=payload.get("pollster") or "Unknown",
        )


@dataclass
class PollDraft:
    source_ref: str
    date: date
    percentage: float
    pollster: str
    evidence: ScopeEvidence

    @property
    def id(self) -> str:
        return poll_id_from_ref(self.source_ref)


@dataclass(frozen=True)
class ScopeDecision:
    scope: Scope
    region: str | None
    strength: EvidenceStrength
    rule: int
    reason: str


@dataclass
class PollRecord:
    id: str
    date: date
    percentage: float
    pollster: str
    source_ref: str
    scope: Scope = Scope.UNKNOWN
    region: str | None = None
    days_until_election: int | None = None
    scope_strength: EvidenceStrength = EvidenceStrength.NONE
    scope_rule: int = 8
    evidence: ScopeEvidence = field(default_factory=ScopeEvidence)

    @classmethod
    def from_draft(cls, draft: PollDraft) -> "PollRecord":
        return cls(
            id=draft.id,
            date=draft.date,
            percentage=draft.percentage,
            pollster=draft.pollster,
            source_ref=draft.source_ref,
            evidence=draft.evidence,
        )

    def apply_decision(self, decision: ScopeDecision) -> None:
        self.scope = decision.scope
        self.region = decision.region if decision.scope is Scope.REGIONAL else None
        self.scope_strength = decision.strength
        self.scope_rule = decision.rule

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "date": self.date.isoformat(),
            "percentage": self.percentage,
            "pollster": self.pollster,
            "scope": self.scope.value,
        }
        if self.scope is Scope.REGIONAL and self.region:
            payload["region"] = self.region
        payload.update(
            {
                "source_ref": self.source_ref,
                "days_until_election": self.days_until_election,
                "scope_strength": self.scope_strength.label,
                "scope_rule": self.scope_rule,
                "evidence": self.evidence.to_dict(),
            }
        )
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "PollRecord":
        raw_date = payload["date"]
        scope = Scope(payload.get("scope") or Scope.UNKNOWN.value)
        return cls(
            id=str(payload["id"]),
            date=raw_date if isinstance(raw_date, date) else date.fromisoformat(str(raw_date)),
            percentage=float(payload["percentage"]),
            pollster=payload.get("pollster") or "Unknown",
            source_ref=payload.get("source_ref") or "",
            scope=scope,
            region=payload.get("region") if scope is Scope.REGIONAL else None,
            days_until_election=payload.get("days_until_election"),
            scope_strength=EvidenceStrength.from_label(payload.get("scope_strength")),
            scope_rule=int(payload.get("scope_rule") or 8),
            evidence=ScopeEvidence.from_dict(payload.get("evidence")),
        )


@dataclass
class ElectionCycle:
    year: int
    election_date: date
    actual_result: float | None = None
    polls: list[PollRecord] = field(default_factory=list)

    def days_until(self, poll_date: date) -> int:
        return (self.election_date - poll_date).days

    def sort_polls(self) -> None:
        self.polls.sort(key=lambda poll: poll.date)

    def national_polls(self) -> list[PollRecord]:
        return [poll for poll in self.polls if poll.scope is Scope.NATIONAL]

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"election_date": self.election_date.isoformat()}
        if self.actual_result is not None:
            payload["actual_result"] = self.actual_result
        payload["polls"] = [poll.to_dict() for poll in self.polls]
        return payload


@dataclass
class Dataset:
    elections: dict[int, ElectionCycle] = field(default_factory=dict)

    def iter_polls(self):
        for year in sorted(self.elections):
            yield from self.elections[year].polls

    def poll_ids(self) -> set[str]:
        return {poll.id for poll in self.iter_polls()}

    def highest_source_id(self) -> int:
        numeric = [numeric_source_id(poll.id) for poll in self.iter_polls()]
        return max((value for value in numeric if value is not None), default=0)

    def national_only(self) -> "Dataset":
        projected: dict[int, ElectionCycle] = {}
        for year, cycle in self.elections.items():
            national = cycle.national_polls()
            if not national:
                continue
            projected[year] = ElectionCycle(
                year=cycle.year,
                election_date=cycle.election_date,
                actual_result=cycle.actual_result,
                polls=list(national),
            )
        return Dataset(elections=projected)

    def to_dict(self) -> dict[str, Any]:
        return {"elections": {str(year): self.elections[year].to_dict() for year in sorted(self.elections)}}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Dataset":
        elections: dict[int, ElectionCycle] = {}
        for raw_year, raw_cycle in (payload.get("elections") or {}).items():
            year = int(raw_year)
            elections[year] = ElectionCycle(
                year=year,
                election_date=date.fromisoformat(str(raw_cycle["election_date"])),
                actual_result=raw_cycle.get("actual_result"),
                polls=[PollRecord.from_dict(row) for row in raw_cycle.get("polls") or []],
            )
        return cls(elections=elections)


@dataclass
class FetchOutcome:
    ref: str
    url: str
    status: str
    body: str | None = None
    error: str | None = None
    attempts: int = 1

    @property
    def is_miss(self) -> bool:
        return self.status in MISS_STATUSES


@dataclass(frozen=True)
class ReviewQueueItem:
    id: str
    entity_type: str
    entity_id: str
    issue_type: str
    stage: str
    error_code: str
    error_message: str
    source_url: str | None
    payload: dict[str, Any]
    status: str = "pending"
    created_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "issue_type": self.issue_type,
            "stage": self.stage,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "source_url": self.source_url,
            "payload": self.payload,
            "status": self.status,
            "created_at": self.created_at,
        }


def new_review_queue_item(
    *,
    entity_type: str,
    entity_id: str,
    issue_type: str,
    stage: str,
    error_code: str,
    error_message: str,
    source_url: str | None = None,
    payload: dict[str, Any] | None = None,
) -> ReviewQueueItem:
    if issue_type not in ISSUE_TAXONOMY:
        raise ValueError(f"issue_type must be one of {ISSUE_TAXONOMY}, got {issue_type}")
    created_at = utc_now_iso()
    return ReviewQueueItem(
        id=stable_id("rvq", entity_type, entity_id, issue_type, created_at),
        entity_type=entity_type,
        entity_id=entity_id,
        issue_type=issue_type,
        stage=stage,
        error_code=error_code,
        error_message=error_message,
        source_url=source_url,
        payload=payload or {},
        created_at=created_at,
    )
