from __future__ import annotations

from bisect import bisect_left, bisect_right
from dataclasses import dataclass
import math
from typing import Iterable

from .contracts import ElectionCycle, Scope

TREND_SCOPES = ("national", "regional", "all")


@dataclass(frozen=True)
class TrendPoint:
    x: float
    y: float

    def to_dict(self) -> dict[str, float]:
        return {"x": self.x, "y": self.y}


def _positions(min_x: float, max_x: float, step: float) -> list[float]:
    positions: list[float] = []
    x = min_x
    while x <= max_x:
        positions.append(x)
        x += step
    if positions[-1] != max_x:
        positions.append(max_x)
    return positions


def rolling_average(
    samples: Iterable[tuple[float, float]],
    window_days: float = 7,
    *,
    target_points: int = 100,
    min_step: int = 3,
) -> list[TrendPoint]:
    """Resample irregular ``(x, y)`` samples into a windowed mean.

    Positions start at the smallest x and advance by
    ``max(min_step, floor(range / target_points))``; the largest x is always
    included. A position averages every sample within ``window_days / 2`` of
    it and is omitted when that window is empty.
    """
    ordered = sorted((float(x), float(y)) for x, y in samples)
    if not ordered:
        return []

    xs = [x for x, _ in ordered]
    ys = [y for _, y in ordered]
    min_x, max_x = xs[0], xs[-1]
    step = max(min_step, math.floor((max_x - min_x) / max(1, target_points)))
    half = window_days / 2

    points: list[TrendPoint] = []
    for position in _positions(min_x, max_x, step):
        lo = bisect_left(xs, position - half)
        hi = bisect_right(xs, position + half)
        if hi <= lo:
            continue
        window = ys[lo:hi]
        points.append(TrendPoint(x=position, y=round(math.fsum(window) / len(window), 6)))
    return points


def cycle_samples(cycle: ElectionCycle, scope: str = "national") -> list[tuple[float, float]]:
    if scope not in TREND_SCOPES:
        raise ValueError(f"scope must be one of {TREND_SCOPES}, got {scope}")
    samples: list[tuple[float, float]] = []
    for poll in cycle.polls:
        if scope != "all" and poll.scope is not Scope(scope):
            continue
        x = poll.days_until_election
        if x is None:
            x = cycle.days_until(poll.date)
        samples.append((x, poll.percentage))
    return samples


def cycle_trend(cycle: ElectionCycle, window_days: float = 7, scope: str = "national") -> list[TrendPoint]:
    return rolling_average(cycle_samples(cycle, scope), window_days)
