from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
import sys
from threading import Lock
import time
from typing import Any, Callable

from app.config import Settings, get_settings
from app.services.errors import JobAlreadyRunningError
from app.services.pipeline import build_classifier, build_extractor, build_fetcher, election_calendar_for
from app.services.repository import JsonDatasetRepository
from src.polltrend.classifier import ScopeClassifier
from src.polltrend.contracts import (
    FetchOutcome,
    PollRecord,
    ReviewQueueItem,
    Scope,
    new_review_queue_item,
    numeric_source_id,
    stable_id,
    utc_now_iso,
)
from src.polltrend.errors import NetworkFailure, ParseFailure
from src.polltrend.extractor import PollExtractor
from src.polltrend.fetcher import PollFetcher
from src.polltrend.merger import MergeSummary, merge_batch
from src.polltrend.standards import ElectionCalendar

logger = logging.getLogger(__name__)

EventLogFn = Callable[[dict[str, Any]], None]
ShouldStopFn = Callable[[], bool]

# Held for the whole run by every job that mutates the dataset.
JOB_LOCK = Lock()


@dataclass
class ScanRunSummary:
    run_id: str
    mode: str
    status: str = "running"
    started_at: str = field(default_factory=utc_now_iso)
    finished_at: str | None = None
    elapsed_seconds: float | None = None
    start_id: int | None = None
    last_found_id: int | None = None
    scanned: int = 0
    ok: int = 0
    not_found: int = 0
    network_failure: int = 0
    timeout: int = 0
    parse_failure: int = 0
    unknown_scope: int = 0
    inserted: int = 0
    skipped_duplicate: int = 0
    discarded_out_of_window: int = 0
    checkpoints: int = 0
    stop_reason: str | None = None
    error: str | None = None

    def absorb_merge(self, merge: MergeSummary) -> None:
        self.inserted += merge.inserted
        self.skipped_duplicate += merge.skipped_duplicate
        self.discarded_out_of_window += merge.discarded_out_of_window

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ScanRunResult:
    summary: ScanRunSummary
    review_queue: list[ReviewQueueItem] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "summary": self.summary.to_dict(),
            "review_queue": [item.to_dict() for item in self.review_queue],
        }


def emit_event(event_log_fn: EventLogFn | None, *, event: str, **fields: Any) -> None:
    if event_log_fn is None:
        return
    payload = {"ts": utc_now_iso(), "event": event, **fields}
    try:
        event_log_fn(payload)
    except Exception:  # noqa: BLE001
        return


def fetch_review_item(outcome: FetchOutcome) -> ReviewQueueItem:
    return new_review_queue_item(
        entity_type="poll_ref",
        entity_id=outcome.ref,
        issue_type="fetch_error",
        stage="fetch",
        error_code=outcome.status.upper(),
        error_message=outcome.error or outcome.status,
        source_url=outcome.url,
        payload={"attempts": outcome.attempts},
    )


def parse_review_item(exc: ParseFailure, ref: str) -> ReviewQueueItem:
    return new_review_queue_item(
        entity_type="poll_ref",
        entity_id=ref,
        issue_type="parse_error",
        stage="extract",
        error_code=exc.error_code,
        error_message=str(exc),
        source_url=exc.source_ref,
        payload={"field": exc.field},
    )


def ambiguous_review_item(record: PollRecord) -> ReviewQueueItem:
    return new_review_queue_item(
        entity_type="poll",
        entity_id=record.id,
        issue_type="classify_error",
        stage="classify",
        error_code="CLASSIFICATION_AMBIGUOUS",
        error_message=f"scope unresolved for pollster={record.pollster}",
        source_url=record.source_ref,
        payload={"evidence": record.evidence.to_dict()},
    )


def _finish_status(summary: ScanRunSummary) -> str:
    if summary.parse_failure or summary.network_failure or summary.timeout:
        return "partial_success"
    return "success"


def run_scan(
    *,
    settings: Settings,
    repository: JsonDatasetRepository,
    mode: str = "sequential",
    start_id: int | None = None,
    max_scan_length: int | None = None,
    extractor: PollExtractor | None = None,
    classifier: ScopeClassifier | None = None,
    fetcher: PollFetcher | None = None,
    calendar: ElectionCalendar | None = None,
    should_stop: ShouldStopFn | None = None,
    event_log_fn: EventLogFn | None = None,
) -> ScanRunResult:
    """Fetch, extract, classify and merge polls, checkpointing every ``checkpoint_every`` units.

    A checkpoint merges the pending batch, saves the dataset and then the
    cursor. One runs before the scan stops for any reason, including an
    unexpected exception, which is re-raised afterwards.
    """
    if mode not in {"sequential", "feed"}:
        raise ValueError(f"mode must be 'sequential' or 'feed', got {mode}")
    if not JOB_LOCK.acquire(blocking=False):
        raise JobAlreadyRunningError("another job is already modifying the dataset")

    started_monotonic = time.monotonic()
    extractor = extractor or build_extractor(settings)
    classifier = classifier or build_classifier(settings)
    calendar = calendar or election_calendar_for(settings)
    owns_fetcher = fetcher is None
    fetcher = fetcher or build_fetcher(settings, extractor)

    summary = ScanRunSummary(run_id="", mode=mode)
    summary.run_id = stable_id("scan", mode, summary.started_at)
    result = ScanRunResult(summary=summary)
    pending: list[PollRecord] = []
    checkpoint_every = max(1, settings.checkpoint_every)

    try:
        dataset = repository.load_dataset()
        cursor = repository.load_cursor()
        if cursor is None:
            cursor = dataset.highest_source_id()
        last_found_id = cursor
        saved_cursor = cursor
        summary.start_id = (start_id or cursor + 1) if mode == "sequential" else None

        def checkpoint(reason: str) -> None:
            nonlocal saved_cursor
            merge = merge_batch(dataset, pending, calendar)
            summary.absorb_merge(merge)
            pending.clear()
            repository.save_dataset(dataset)
            if mode == "sequential" and last_found_id > saved_cursor:
                repository.save_cursor(last_found_id)
                saved_cursor = last_found_id
            summary.checkpoints += 1
            summary.last_found_id = last_found_id
            emit_event(
                event_log_fn,
                event="checkpoint",
                reason=reason,
                scanned=summary.scanned,
                inserted=merge.inserted,
                skipped_duplicate=merge.skipped_duplicate,
                discarded_out_of_window=merge.discarded_out_of_window,
                last_found_id=last_found_id,
            )

        emit_event(event_log_fn, event="run_start", run_id=summary.run_id, mode=mode, start_id=summary.start_id)
        logger.info("scan_start run_id=%s mode=%s start_id=%s", summary.run_id, mode, summary.start_id)

        try:
            if mode == "sequential":
                outcomes = fetcher.scan_sequential(
                    start_id=summary.start_id,
                    max_scan_length=max_scan_length or settings.max_scan_length,
                    max_consecutive_misses=settings.max_consecutive_misses,
                    should_stop=should_stop,
                )
            else:
                outcomes = fetcher.scan_feed(
                    keywords=settings.feed_title_keywords,
                    skip_ids=dataset.poll_ids(),
                    should_stop=should_stop,
                )

            for outcome in outcomes:
                summary.scanned += 1
                if outcome.status == "ok":
                    summary.ok += 1
                    record = _process_page(outcome, extractor, classifier, summary, result.review_queue)
                    if record is not None:
                        pending.append(record)
                    found_id = numeric_source_id(outcome.ref)
                    if found_id is not None:
                        last_found_id = max(last_found_id, found_id)
                else:
                    setattr(summary, outcome.status, getattr(summary, outcome.status) + 1)
                    if outcome.status != "not_found":
                        result.review_queue.append(fetch_review_item(outcome))

                if summary.scanned % checkpoint_every == 0:
                    checkpoint("interval")
        except NetworkFailure as exc:
            logger.warning("scan_source_unavailable run_id=%s error=%s", summary.run_id, exc)
            summary.error = str(exc)
            summary.status = "failed"
            result.review_queue.append(
                new_review_queue_item(
                    entity_type="source",
                    entity_id=exc.url,
                    issue_type="fetch_error",
                    stage="discover",
                    error_code="TIMEOUT" if exc.timed_out else "NETWORK_FAILURE",
                    error_message=str(exc),
                    source_url=exc.url,
                )
            )
        except Exception as exc:
            summary.status = "failed"
            summary.error = f"{exc.__class__.__name__}: {exc}"
            logger.exception("scan_failed run_id=%s", summary.run_id)
            checkpoint("error")
            summary.finished_at = utc_now_iso()
            emit_event(event_log_fn, event="run_end", **summary.to_dict())
            raise
        finally:
            if mode == "feed":
                # Known ids are skipped before fetching; they still count as duplicates.
                summary.skipped_duplicate += len(fetcher.skipped_known)
            summary.stop_reason = fetcher.stop_reason or summary.stop_reason
            summary.finished_at = utc_now_iso()
            summary.elapsed_seconds = round(time.monotonic() - started_monotonic, 3)

        checkpoint("final")
        repository.write_national_export(dataset)
        if summary.status == "running":
            summary.status = _finish_status(summary)
        emit_event(event_log_fn, event="run_end", **summary.to_dict())
        logger.info(
            "scan_end run_id=%s status=%s scanned=%s inserted=%s stop_reason=%s",
            summary.run_id,
            summary.status,
            summary.scanned,
            summary.inserted,
            summary.stop_reason,
        )
        return result
    finally:
        if owns_fetcher:
            fetcher.close()
        JOB_LOCK.release()


def _process_page(
    outcome: FetchOutcome,
    extractor: PollExtractor,
    classifier: ScopeClassifier,
    summary: ScanRunSummary,
    review_queue: list[ReviewQueueItem],
) -> PollRecord | None:
    try:
        draft = extractor.extract(outcome.body or "", outcome.url)
    except ParseFailure as exc:
        summary.parse_failure += 1
        review_queue.append(parse_review_item(exc, outcome.ref))
        return None
    if draft is None:
        return None

    record = PollRecord.from_draft(draft)
    record.apply_decision(classifier.classify(record.evidence))
    if record.scope is Scope.UNKNOWN:
        summary.unknown_scope += 1
        review_queue.append(ambiguous_review_item(record))
    return record


def write_run_report(path: str | Path, payload: dict[str, Any]) -> None:
    report_path = Path(path)
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2) + "\n", encoding="utf-8")


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def main() -> int:
    settings = get_settings()
    configure_logging(settings)
    repository = JsonDatasetRepository.from_settings(settings)
    result = run_scan(
        settings=settings,
        repository=repository,
        event_log_fn=lambda event: logger.debug("event %s", json.dumps(event, ensure_ascii=False)),
    )
    report_path = settings.resolved_report_dir() / f"{result.summary.run_id}.json"
    write_run_report(report_path, result.to_dict())
    print(json.dumps(result.summary.to_dict(), ensure_ascii=False, indent=2))
    return 0 if result.summary.status != "failed" else 1


if __name__ == "__main__":
    sys.exit(main())
