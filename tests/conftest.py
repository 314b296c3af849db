from __future__ import annotations

from datetime import date

import pytest

from src.polltrend.contracts import EvidenceStrength, PollRecord, Scope, ScopeEvidence


def render_poll_page(
    *,
    title: str = "pollofpolls.no - Norstat for NRK, august 2021",
    published: str | None = "20.08.2021",
    area: str | None = "Hele landet",
    party_link_value: str | None = "5.8",
    body_extra: str = "",
) -> str:
    parts = [f"<html><head><title>{title}</title></head><body>"]
    if published is not None:
        parts.append(f"<blockquote>Publisert {published}</blockquote>")
    if area is not None:
        parts.append(f"<table class='facts'><tr><td>Område:</td><td>{area}</td></tr></table>")
    if party_link_value is not None:
        parts.append(f"<p><a href='?cmd=Mandater&amp;Ap=25.1&amp;MDG={party_link_value}&amp;H=20.0'>Mandater</a></p>")
    parts.append(body_extra)
    parts.append("</body></html>")
    return "".join(parts)


def _default_evidence(scope: Scope, region: str | None, pollster: str) -> ScopeEvidence:
    if scope is Scope.REGIONAL:
        return ScopeEvidence(area_field=region, pollster=pollster)
    return ScopeEvidence(area_field="Hele landet", national_marker=True, pollster=pollster)


def make_record(
    poll_id: str,
    poll_date: date,
    *,
    percentage: float = 4.0,
    pollster: str = "Norstat for NRK",
    scope: Scope = Scope.NATIONAL,
    region: str | None = None,
    strength: EvidenceStrength = EvidenceStrength.STRUCTURAL,
    rule: int = 1,
    evidence: ScopeEvidence | None = None,
) -> PollRecord:
    return PollRecord(
        id=poll_id,
        date=poll_date,
        percentage=percentage,
        pollster=pollster,
        source_ref=f"https://www.pollofpolls.no/?cmd=Maling&gallupid={poll_id}",
        scope=scope,
        region=region,
        scope_strength=strength,
        scope_rule=rule,
        evidence=evidence or _default_evidence(scope, region, pollster),
    )


@pytest.fixture
def poll_page():
    return render_poll_page


@pytest.fixture
def record_factory():
    return make_record
