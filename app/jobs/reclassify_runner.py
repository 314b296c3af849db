from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
import sys
import time
from typing import Any, Iterable

from app.config import Settings, get_settings
from app.jobs.scan_runner import (
    JOB_LOCK,
    EventLogFn,
    configure_logging,
    emit_event,
    fetch_review_item,
    parse_review_item,
    write_run_report,
)
from app.services.errors import JobAlreadyRunningError
from app.services.pipeline import build_classifier, build_extractor, build_fetcher, scope_tables_for
from app.services.repository import JsonDatasetRepository
from src.polltrend.audit import find_suspicious_clusters
from src.polltrend.classifier import ScopeClassifier
from src.polltrend.contracts import (
    Dataset,
    EvidenceStrength,
    PollRecord,
    ReviewQueueItem,
    Scope,
    stable_id,
    utc_now_iso,
)
from src.polltrend.errors import ParseFailure
from src.polltrend.extractor import PollExtractor
from src.polltrend.fetcher import PollFetcher
from src.polltrend.standards import ScopeTables

logger = logging.getLogger(__name__)


@dataclass
class ReclassifyRunSummary:
    run_id: str
    status: str = "running"
    started_at: str = field(default_factory=utc_now_iso)
    finished_at: str | None = None
    elapsed_seconds: float | None = None
    refetch_targets: int = 0
    refetched: int = 0
    refetch_failed: int = 0
    suspicious_clusters: int = 0
    suspicious_values: int = 0
    percentage_corrected: int = 0
    examined: int = 0
    changed: int = 0
    unchanged: int = 0
    kept_stronger: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ReclassifyRunResult:
    summary: ReclassifyRunSummary
    review_queue: list[ReviewQueueItem] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "summary": self.summary.to_dict(),
            "review_queue": [item.to_dict() for item in self.review_queue],
        }


def has_suspicious_value(
    record: PollRecord,
    *,
    suspicious_values: Iterable[float] = (1.0,),
    national_ceiling: float | None = None,
) -> bool:
    """Values the source is known to get wrong: exact placeholders, or implausibly high national figures."""
    if any(abs(record.percentage - value) < 1e-9 for value in suspicious_values):
        return True
    return national_ceiling is not None and record.scope is Scope.NATIONAL and record.percentage > national_ceiling


def refetch_targets(
    dataset: Dataset,
    tables: ScopeTables,
    *,
    suspicious_values: Iterable[float] = (1.0,),
    national_ceiling: float | None = None,
) -> list[PollRecord]:
    """Records classified from outlet names or not at all, members of suspicious clusters, and suspicious values."""
    suspicious: set[str] = set()
    for cycle in dataset.elections.values():
        for cluster in find_suspicious_clusters(cycle, tables=tables):
            suspicious.update(cluster.poll_ids)
    return [
        record
        for record in dataset.iter_polls()
        if record.scope_strength <= EvidenceStrength.OUTLET
        or record.id in suspicious
        or has_suspicious_value(record, suspicious_values=suspicious_values, national_ceiling=national_ceiling)
    ]


def run_reclassify(
    *,
    settings: Settings,
    repository: JsonDatasetRepository,
    refetch_weak: bool = False,
    classifier: ScopeClassifier | None = None,
    extractor: PollExtractor | None = None,
    fetcher: PollFetcher | None = None,
    event_log_fn: EventLogFn | None = None,
) -> ReclassifyRunResult:
    if not JOB_LOCK.acquire(blocking=False):
        raise JobAlreadyRunningError("another job is already modifying the dataset")

    started_monotonic = time.monotonic()
    summary = ReclassifyRunSummary(run_id="")
    summary.run_id = stable_id("reclassify", summary.started_at)
    result = ReclassifyRunResult(summary=summary)
    classifier = classifier or build_classifier(settings)
    owns_fetcher = False

    try:
        dataset = repository.load_dataset()
        emit_event(event_log_fn, event="run_start", run_id=summary.run_id, refetch_weak=refetch_weak)

        if refetch_weak:
            extractor = extractor or build_extractor(settings)
            if fetcher is None:
                fetcher = build_fetcher(settings, extractor)
                owns_fetcher = True
            tables = scope_tables_for(settings)
            summary.suspicious_clusters = sum(
                len(find_suspicious_clusters(cycle, tables=tables)) for cycle in dataset.elections.values()
            )
            value_rules = {
                "suspicious_values": settings.suspicious_percentages,
                "national_ceiling": settings.national_percentage_ceiling,
            }
            summary.suspicious_values = sum(
                1 for record in dataset.iter_polls() if has_suspicious_value(record, **value_rules)
            )
            targets = refetch_targets(dataset, tables, **value_rules)
            summary.refetch_targets = len(targets)
            checkpoint_every = max(1, settings.checkpoint_every)
            for index, record in enumerate(targets, start=1):
                _refresh_evidence(record, extractor, fetcher, summary, result.review_queue)
                if index % checkpoint_every == 0:
                    repository.save_dataset(dataset)
                    emit_event(event_log_fn, event="checkpoint", refetched=summary.refetched, processed=index)

        outcome = classifier.reclassify_dataset(dataset)
        summary.examined = outcome.examined
        summary.changed = outcome.changed
        summary.unchanged = outcome.unchanged
        summary.kept_stronger = outcome.kept_stronger

        repository.save_dataset(dataset)
        repository.write_national_export(dataset)
        summary.status = "partial_success" if summary.refetch_failed else "success"
    except Exception:
        summary.status = "failed"
        logger.exception("reclassify_failed run_id=%s", summary.run_id)
        raise
    finally:
        summary.finished_at = utc_now_iso()
        summary.elapsed_seconds = round(time.monotonic() - started_monotonic, 3)
        emit_event(event_log_fn, event="run_end", **summary.to_dict())
        if owns_fetcher and fetcher is not None:
            fetcher.close()
        JOB_LOCK.release()

    logger.info(
        "reclassify_end run_id=%s examined=%s changed=%s kept_stronger=%s",
        summary.run_id,
        summary.examined,
        summary.changed,
        summary.kept_stronger,
    )
    return result


def _refresh_evidence(
    record: PollRecord,
    extractor: PollExtractor,
    fetcher: PollFetcher,
    summary: ReclassifyRunSummary,
    review_queue: list[ReviewQueueItem],
) -> None:
    outcome = fetcher.fetch(record.id, record.source_ref or None)
    if outcome.status != "ok":
        summary.refetch_failed += 1
        review_queue.append(fetch_review_item(outcome))
        return
    try:
        draft = extractor.extract(outcome.body or "", outcome.url)
    except ParseFailure as exc:
        summary.refetch_failed += 1
        review_queue.append(parse_review_item(exc, record.id))
        return
    if draft is None:
        summary.refetch_failed += 1
        return
    record.evidence = draft.evidence
    if draft.percentage != record.percentage:
        logger.info("percentage_corrected id=%s from=%s to=%s", record.id, record.percentage, draft.percentage)
        record.percentage = draft.percentage
        summary.percentage_corrected += 1
    summary.refetched += 1


def main() -> int:
    settings = get_settings()
    configure_logging(settings)
    repository = JsonDatasetRepository.from_settings(settings)
    result = run_reclassify(settings=settings, repository=repository)
    write_run_report(settings.resolved_report_dir() / f"{result.summary.run_id}.json", result.to_dict())
    print(json.dumps(result.summary.to_dict(), ensure_ascii=False, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
