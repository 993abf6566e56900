"""Half-open interval arithmetic on naive business-local datetimes.

Nothing in here raises for malformed ranges: an interval whose end is not
after its start is simply empty and drops out of every result.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Iterable, Protocol


@dataclass(frozen=True, order=True)
class Interval:
    start: datetime
    end: datetime

    @property
    def is_empty(self) -> bool:
        return self.end <= self.start


class HoursSource(Protocol):
    def windows_on(self, day: date) -> list[Interval]: ...


def overlaps(a: Interval, b: Interval) -> bool:
    return a.start < b.end and b.start < a.end


def duration_minutes(interval: Interval) -> int:
    if interval.is_empty:
        return 0
    return int((interval.end - interval.start).total_seconds() // 60)


def day_bucket(value: datetime) -> date:
    return value.date()


def same_day(a: datetime, b: datetime) -> bool:
    return day_bucket(a) == day_bucket(b)


def day_span(day: date) -> Interval:
    start = datetime.combine(day, time.min)
    return Interval(start, start + timedelta(days=1))


def daterange(start_day: date, end_day: date) -> Iterable[date]:
    cursor = start_day
    while cursor <= end_day:
        yield cursor
        cursor += timedelta(days=1)


def intersect(a: Interval, b: Interval) -> Interval | None:
    start = max(a.start, b.start)
    end = min(a.end, b.end)
    if end <= start:
        return None
    return Interval(start, end)


def expand(interval: Interval, before_min: int = 0, after_min: int = 0) -> Interval:
    return Interval(
        interval.start - timedelta(minutes=max(0, int(before_min))),
        interval.end + timedelta(minutes=max(0, int(after_min))),
    )


def merge(intervals: Iterable[Interval]) -> list[Interval]:
    ordered = sorted(i for i in intervals if not i.is_empty)
    out: list[Interval] = []
    for current in ordered:
        if out and current.start <= out[-1].end:
            last = out[-1]
            out[-1] = Interval(last.start, max(last.end, current.end))
        else:
            out.append(current)
    return out


def subtract(bases: Iterable[Interval], cuts: Iterable[Interval]) -> list[Interval]:
    """Return the parts of ``bases`` not covered by any of ``cuts``."""
    merged_cuts = merge(cuts)
    free: list[Interval] = []
    for base in merge(bases):
        cursor = base.start
        for cut in merged_cuts:
            if cut.end <= cursor:
                continue
            if cut.start >= base.end:
                break
            if cut.start > cursor:
                free.append(Interval(cursor, cut.start))
            cursor = max(cursor, cut.end)
            if cursor >= base.end:
                break
        if cursor < base.end:
            free.append(Interval(cursor, base.end))
    return free


def saturated(intervals: Iterable[Interval], capacity: int = 1) -> list[Interval]:
    """Sub-intervals where at least ``capacity`` of the inputs overlap."""
    capacity = max(1, int(capacity))
    events: list[tuple[datetime, int]] = []
    for interval in intervals:
        if interval.is_empty:
            continue
        events.append((interval.start, 1))
        events.append((interval.end, -1))
    # ends sort before starts at the same instant: touching intervals do not stack
    events.sort(key=lambda e: (e[0], e[1]))

    out: list[Interval] = []
    level = 0
    opened_at: datetime | None = None
    for at, delta in events:
        level += delta
        if level >= capacity and opened_at is None:
            opened_at = at
        elif level < capacity and opened_at is not None:
            if at > opened_at:
                out.append(Interval(opened_at, at))
            opened_at = None
    return merge(out)


def clip_to_business_hours(interval: Interval, hours: HoursSource) -> list[Interval]:
    """Intersect ``interval`` with every business window it touches.

    Windows that run past midnight are produced by ``hours`` on the day they
    open, so the day before the interval is inspected as well. Results are
    split at midnight so each piece belongs to exactly one calendar day.
    """
    if interval.is_empty:
        return []
    pieces: list[Interval] = []
    first_day = interval.start.date() - timedelta(days=1)
    for day in daterange(first_day, interval.end.date()):
        for window in hours.windows_on(day):
            piece = intersect(interval, window)
            if piece is not None:
                pieces.append(piece)
    out: list[Interval] = []
    for piece in merge(pieces):
        out.extend(split_at_midnight(piece))
    return out


def split_at_midnight(interval: Interval) -> list[Interval]:
    out: list[Interval] = []
    cursor = interval.start
    while cursor < interval.end:
        boundary = datetime.combine(cursor.date() + timedelta(days=1), time.min)
        out.append(Interval(cursor, min(boundary, interval.end)))
        cursor = boundary
    return out
