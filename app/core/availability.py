from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Iterable

from .time_windows import (
    HoursSource,
    Interval,
    daterange,
    duration_minutes,
    expand,
    merge,
    overlaps,
    saturated,
    subtract,
)

DEFAULT_STEP_MIN = 15


@dataclass(frozen=True, order=True)
class Slot:
    start: datetime
    end: datetime


def _occupied(
    busy: Iterable[Interval], buffer_before_min: int, buffer_after_min: int, capacity: int
) -> list[Interval]:
    expanded = [expand(b, buffer_before_min, buffer_after_min) for b in busy if not b.is_empty]
    return saturated(expanded, capacity)


def _first_grid_point(value: datetime, step_min: int) -> datetime:
    midnight = datetime.combine(value.date(), time.min)
    offset = int((value - midnight).total_seconds())
    step = step_min * 60
    steps = -(-offset // step)
    return midnight + timedelta(seconds=steps * step)


def free_windows(
    hours: HoursSource,
    day: date,
    busy: Iterable[Interval],
    *,
    buffer_before_min: int = 0,
    buffer_after_min: int = 0,
    blocked: Iterable[Interval] = (),
    capacity: int = 1,
) -> list[Interval]:
    occupied = _occupied(busy, buffer_before_min, buffer_after_min, capacity)
    return subtract(hours.windows_on(day), list(occupied) + list(blocked))


def compute_available_slots(
    hours: HoursSource,
    busy: Iterable[Interval],
    start_day: date,
    end_day: date,
    duration_min: int,
    *,
    buffer_before_min: int = 0,
    buffer_after_min: int = 0,
    step_min: int = DEFAULT_STEP_MIN,
    blocked: Iterable[Interval] = (),
    capacity: int = 1,
    not_before: datetime | None = None,
) -> list[Slot]:
    """Bookable slots between ``start_day`` and ``end_day`` inclusive, earliest first.

    Every slot lies inside a working window, is at least ``duration_min`` long
    and does not overlap a busy interval widened by the buffers (or, with a
    capacity above one, a moment where that many jobs already run).
    """
    duration_min = int(duration_min or 0)
    if duration_min <= 0 or end_day < start_day:
        return []
    step_min = max(1, int(step_min or DEFAULT_STEP_MIN))
    busy = list(busy)
    blocked = list(blocked)
    length = timedelta(minutes=duration_min)

    seen: set[Slot] = set()
    for day in daterange(start_day, end_day):
        for free in free_windows(
            hours,
            day,
            busy,
            buffer_before_min=buffer_before_min,
            buffer_after_min=buffer_after_min,
            blocked=blocked,
            capacity=capacity,
        ):
            if duration_minutes(free) < duration_min:
                continue
            cursor = _first_grid_point(free.start, step_min)
            while cursor + length <= free.end:
                if not_before is None or cursor >= not_before:
                    seen.add(Slot(cursor, cursor + length))
                cursor += timedelta(minutes=step_min)
    return sorted(seen)


def is_slot_available(
    hours: HoursSource,
    busy: Iterable[Interval],
    start: datetime,
    duration_min: int,
    *,
    buffer_before_min: int = 0,
    buffer_after_min: int = 0,
    blocked: Iterable[Interval] = (),
    capacity: int = 1,
) -> tuple[bool, str | None]:
    if int(duration_min or 0) <= 0:
        return False, "Duration must be positive"
    candidate = Interval(start, start + timedelta(minutes=int(duration_min)))

    # touching windows such as a split shift count as one stretch
    windows = merge(hours.windows_on(start.date() - timedelta(days=1)) + hours.windows_on(start.date()))
    if not any(w.start <= candidate.start and candidate.end <= w.end for w in windows):
        return False, "Slot exceeds business hours"

    for block in blocked:
        if overlaps(candidate, block):
            return False, "Slot overlaps a blocked window"

    for occupied in _occupied(busy, buffer_before_min, buffer_after_min, capacity):
        if overlaps(candidate, occupied):
            return False, "Slot overlaps an existing job"
    return True, None
