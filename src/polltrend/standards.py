from __future__ import annotations

from datetime import date
from functools import lru_cache
import json
from pathlib import Path
import re

from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import LookupTableError

PACKAGE_DIR = Path(__file__).resolve().parent
DEFAULT_SCOPE_TABLES_PATH = PACKAGE_DIR / "scope_tables.json"
DEFAULT_ELECTION_CALENDAR_PATH = PACKAGE_DIR / "election_calendar.json"


def _lower_list(values: list[str]) -> list[str]:
    return [value.strip().lower() for value in values if value and value.strip()]


class ScopeTables(BaseModel):
    national_marker: str = "hele landet"
    area_field_labels: list[str] = Field(default_factory=lambda: ["område", "area"])
    missing_page_markers: list[str] = Field(default_factory=list)
    site_title_prefixes: list[str] = Field(default_factory=list)
    national_marker_patterns: list[str] = Field(default_factory=lambda: [", hele landet /"])
    non_national_marker_patterns: list[str] = Field(default_factory=list)
    national_outlets: list[str] = Field(default_factory=list)
    regional_outlets: dict[str, str] = Field(default_factory=dict)
    survey_companies: list[str] = Field(default_factory=list)
    regions: dict[str, str] = Field(default_factory=dict)

    @field_validator("national_marker")
    @classmethod
    def _lower_marker(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator(
        "area_field_labels", "missing_page_markers", "national_marker_patterns", "national_outlets", "survey_companies"
    )
    @classmethod
    def _lower_items(cls, value: list[str]) -> list[str]:
        return _lower_list(value)

    @field_validator("regional_outlets", "regions")
    @classmethod
    def _lower_keys(cls, value: dict[str, str]) -> dict[str, str]:
        return {key.strip().lower(): name.strip() for key, name in value.items() if key.strip()}

    def region_tokens(self) -> list[str]:
        # Longest first so "sør-trøndelag" wins over "trøndelag".
        return sorted(self.regions, key=len, reverse=True)


class ElectionEntry(BaseModel):
    year: int
    election_date: date
    actual_result: float | None = None


class ElectionCalendar(BaseModel):
    elections: list[ElectionEntry] = Field(default_factory=list)

    def by_year(self) -> dict[int, ElectionEntry]:
        return {entry.year: entry for entry in self.elections}


def token_pattern(token: str) -> re.Pattern[str]:
    """Case-insensitive pattern matching ``token`` as a whole word."""
    return re.compile(r"(?<!\w)" + re.escape(token) + r"(?!\w)", flags=re.IGNORECASE)


def _read_json(path: Path) -> dict:
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise LookupTableError(f"lookup table not readable: {path}") from exc
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise LookupTableError(f"lookup table is not valid json: {path}") from exc
    if not isinstance(payload, dict):
        raise LookupTableError(f"lookup table must be a JSON object: {path}")
    return payload


@lru_cache(maxsize=8)
def load_scope_tables(path: str | Path | None = None) -> ScopeTables:
    source = Path(path) if path else DEFAULT_SCOPE_TABLES_PATH
    try:
        return ScopeTables.model_validate(_read_json(source))
    except ValidationError as exc:
        raise LookupTableError(f"invalid scope tables in {source}: {exc}") from exc


@lru_cache(maxsize=8)
def load_election_calendar(path: str | Path | None = None) -> ElectionCalendar:
    source = Path(path) if path else DEFAULT_ELECTION_CALENDAR_PATH
    try:
        return ElectionCalendar.model_validate(_read_json(source))
    except ValidationError as exc:
        raise LookupTableError(f"invalid election calendar in {source}: {exc}") from exc
