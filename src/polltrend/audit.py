from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from .contracts import ElectionCycle, PollRecord
from .standards import ScopeTables, load_scope_tables, token_pattern


@dataclass
class SuspiciousCluster:
    date: date
    outlet: str
    poll_ids: list[str] = field(default_factory=list)

    @property
    def size(self) -> int:
        return len(self.poll_ids)

    def to_dict(self) -> dict[str, Any]:
        return {
            "date": self.date.isoformat(),
            "outlet": self.outlet,
            "size": self.size,
            "poll_ids": list(self.poll_ids),
        }


def outlet_of(pollster: str, tables: ScopeTables) -> str | None:
    outlets = sorted([*tables.national_outlets, *tables.regional_outlets], key=len, reverse=True)
    for outlet in outlets:
        if token_pattern(outlet).search(pollster):
            return outlet
    return None


def find_suspicious_clusters(
    cycle: ElectionCycle,
    *,
    tables: ScopeTables | None = None,
    min_cluster: int = 3,
) -> list[SuspiciousCluster]:
    """National polls published by one outlet on one day, ``min_cluster`` or more at a time.

    Several same-day releases from one outlet usually mean district polls that
    were classified as national.
    """
    tables = tables or load_scope_tables()
    groups: dict[tuple[date, str], list[PollRecord]] = defaultdict(list)
    for poll in cycle.national_polls():
        outlet = outlet_of(poll.pollster, tables)
        if outlet is None:
            continue
        groups[(poll.date, outlet)].append(poll)

    clusters = [
        SuspiciousCluster(date=poll_date, outlet=outlet, poll_ids=[poll.id for poll in polls])
        for (poll_date, outlet), polls in groups.items()
        if len(polls) >= min_cluster
    ]
    clusters.sort(key=lambda cluster: (-cluster.size, cluster.date, cluster.outlet))
    return clusters
