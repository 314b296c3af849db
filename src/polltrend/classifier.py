from __future__ import annotations

from dataclasses import asdict, dataclass
import logging
import re

from .contracts import Dataset, EvidenceStrength, PollRecord, Scope, ScopeDecision, ScopeEvidence
from .standards import ScopeTables, load_scope_tables, token_pattern

logger = logging.getLogger(__name__)

RECLASSIFY_OUTCOMES = ("changed", "unchanged", "kept_stronger")
# Survey company without a qualifying outlet: ranks below other outlet rules of the same strength.
LOW_CONFIDENCE_RULES = frozenset({7})


def _confidence(strength: EvidenceStrength, rule: int) -> tuple[int, int]:
    return int(strength), 0 if rule in LOW_CONFIDENCE_RULES else 1


@dataclass
class ReclassifySummary:
    examined: int = 0
    changed: int = 0
    unchanged: int = 0
    kept_stronger: int = 0

    def record(self, outcome: str) -> None:
        self.examined += 1
        setattr(self, outcome, getattr(self, outcome) + 1)

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class ScopeClassifier:
    """Resolve ``{scope, region}`` from harvested evidence; the first matching rule wins."""

    def __init__(self, tables: ScopeTables | None = None, *, region_mention_threshold: int = 2) -> None:
        self.tables = tables or load_scope_tables()
        self.region_mention_threshold = max(1, region_mention_threshold)
        self._region_patterns = self._compile(self.tables.region_tokens())
        self._national_outlets = self._compile(sorted(self.tables.national_outlets, key=len, reverse=True))
        self._regional_outlets = self._compile(sorted(self.tables.regional_outlets, key=len, reverse=True))
        self._survey_companies = self._compile(sorted(self.tables.survey_companies, key=len, reverse=True))

    @staticmethod
    def _compile(tokens: list[str]) -> list[tuple[str, re.Pattern[str]]]:
        return [(token, token_pattern(token)) for token in tokens]

    def classify(self, evidence: ScopeEvidence) -> ScopeDecision:
        area = (evidence.area_field or "").strip()
        if area:
            if area.lower() == self.tables.national_marker:
                return ScopeDecision(Scope.NATIONAL, None, EvidenceStrength.STRUCTURAL, 1, f"area_field={area}")
            region = self.tables.regions.get(area.lower(), area)
            return ScopeDecision(Scope.REGIONAL, region, EvidenceStrength.STRUCTURAL, 2, f"area_field={area}")

        if evidence.national_marker:
            return ScopeDecision(Scope.NATIONAL, None, EvidenceStrength.FREE_TEXT, 3, "national_marker")

        region_decision = self._free_text_region(evidence)
        if region_decision is not None:
            return region_decision

        return self._pollster_decision(evidence.pollster or "")

    def reclassify(self, record: PollRecord) -> str:
        """Re-run the rules on stored evidence; never trade a stronger classification for a weaker one."""
        decision = self.classify(record.evidence)
        same = (
            decision.scope is record.scope
            and (decision.region if decision.scope is Scope.REGIONAL else None) == record.region
            and decision.strength == record.scope_strength
            and decision.rule == record.scope_rule
        )
        if same:
            return "unchanged"
        weaker = _confidence(decision.strength, decision.rule) < _confidence(record.scope_strength, record.scope_rule)
        if decision.scope is Scope.UNKNOWN or weaker:
            return "kept_stronger"
        record.apply_decision(decision)
        return "changed"

    def reclassify_dataset(self, dataset: Dataset) -> ReclassifySummary:
        summary = ReclassifySummary()
        for record in dataset.iter_polls():
            previous = (record.scope, record.region)
            outcome = self.reclassify(record)
            summary.record(outcome)
            if outcome == "changed" and previous != (record.scope, record.region):
                logger.info(
                    "reclassified id=%s from=%s/%s to=%s/%s rule=%s",
                    record.id,
                    previous[0].value,
                    previous[1],
                    record.scope.value,
                    record.region,
                    record.scope_rule,
                )
        return summary

    def _free_text_region(self, evidence: ScopeEvidence) -> ScopeDecision | None:
        if not evidence.has_region_token:
            return None
        marked = evidence.non_national_region
        if marked and marked in evidence.region_mentions:
            return ScopeDecision(
                Scope.REGIONAL, marked, EvidenceStrength.FREE_TEXT, 4, f"non_national_marker={marked}"
            )
        region, count = sorted(evidence.region_mentions.items(), key=lambda item: (-item[1], item[0]))[0]
        if count >= self.region_mention_threshold:
            return ScopeDecision(
                Scope.REGIONAL, region, EvidenceStrength.FREE_TEXT, 4, f"region_mentions={region}:{count}"
            )
        return None

    def _pollster_decision(self, pollster: str) -> ScopeDecision:
        regional_outlet = self._first_match(self._regional_outlets, pollster)
        region_token = self._first_match(self._region_patterns, pollster)
        national_outlet = self._first_match(self._national_outlets, pollster)
        survey_company = self._first_match(self._survey_companies, pollster)

        if national_outlet and not regional_outlet and not region_token:
            return ScopeDecision(
                Scope.NATIONAL, None, EvidenceStrength.OUTLET, 5, f"national_outlet={national_outlet}"
            )
        if regional_outlet:
            region = self.tables.regional_outlets[regional_outlet]
            return ScopeDecision(
                Scope.REGIONAL, region, EvidenceStrength.OUTLET, 6, f"regional_outlet={regional_outlet}"
            )
        if region_token and (national_outlet or survey_company):
            region = self.tables.regions[region_token]
            return ScopeDecision(
                Scope.REGIONAL, region, EvidenceStrength.OUTLET, 6, f"qualified_outlet={region_token}"
            )
        if survey_company:
            return ScopeDecision(
                Scope.NATIONAL, None, EvidenceStrength.OUTLET, 7, f"survey_company={survey_company}"
            )
        return ScopeDecision(Scope.UNKNOWN, None, EvidenceStrength.NONE, 8, "no_evidence")

    @staticmethod
    def _first_match(patterns: list[tuple[str, re.Pattern[str]]], text: str) -> str | None:
        if not text:
            return None
        for token, pattern in patterns:
            if pattern.search(text):
                return token
        return None
