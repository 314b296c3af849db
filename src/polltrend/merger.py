from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import date
import logging
from typing import Iterable

from .contracts import Dataset, ElectionCycle, PollRecord
from .standards import ElectionCalendar, ElectionEntry

logger = logging.getLogger(__name__)

CYCLE_WINDOW_DAYS = 730


@dataclass
class MergeSummary:
    inserted: int = 0
    skipped_duplicate: int = 0
    discarded_out_of_window: int = 0

    def absorb(self, other: "MergeSummary") -> None:
        self.inserted += other.inserted
        self.skipped_duplicate += other.skipped_duplicate
        self.discarded_out_of_window += other.discarded_out_of_window

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


def assign_cycle(poll_date: date, calendar: ElectionCalendar) -> ElectionEntry | None:
    """Closest election on or after ``poll_date`` that is at most 730 days away."""
    candidates: list[tuple[int, ElectionEntry]] = []
    for entry in calendar.elections:
        days = (entry.election_date - poll_date).days
        if 0 <= days <= CYCLE_WINDOW_DAYS:
            candidates.append((days, entry))
    if not candidates:
        return None
    return min(candidates, key=lambda item: item[0])[1]


def merge_batch(dataset: Dataset, records: Iterable[PollRecord], calendar: ElectionCalendar) -> MergeSummary:
    """Insert new records into their cycles; records already present anywhere are skipped."""
    summary = MergeSummary()
    known_ids = dataset.poll_ids()
    touched: set[int] = set()

    for record in records:
        if record.id in known_ids:
            summary.skipped_duplicate += 1
            continue

        entry = assign_cycle(record.date, calendar)
        if entry is None:
            logger.info("merge_discard id=%s date=%s reason=out_of_window", record.id, record.date.isoformat())
            summary.discarded_out_of_window += 1
            continue

        cycle = dataset.elections.get(entry.year)
        if cycle is None:
            cycle = ElectionCycle(
                year=entry.year,
                election_date=entry.election_date,
                actual_result=entry.actual_result,
            )
            dataset.elections[entry.year] = cycle

        record.days_until_election = cycle.days_until(record.date)
        cycle.polls.append(record)
        known_ids.add(record.id)
        touched.add(entry.year)
        summary.inserted += 1

    for year in touched:
        dataset.elections[year].sort_polls()
    return summary
