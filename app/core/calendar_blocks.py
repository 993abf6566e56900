"""Expansion of recurring calendar definitions into concrete intervals."""

import calendar
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Iterable

from .time_windows import Interval, daterange, overlaps

RECURRENCE_PATTERNS = {"none", "daily", "weekly", "monthly", "yearly"}
DEFAULT_MAX_OCCURRENCES = 999

CUSTOMER_NEW = "new_customers"
CUSTOMER_RETURNING = "returning_customers"
CUSTOMER_VIP = "vip_customers"


@dataclass(frozen=True)
class PriorityBlockSpec:
    id: int
    name: str
    day_of_week: int
    start_time: time
    end_time: time
    priority_for: str
    fallback_hours: int = 24
    enabled: bool = True


@dataclass(frozen=True)
class PriorityBlockInstance:
    block: PriorityBlockSpec
    day: date
    interval: Interval


@dataclass(frozen=True)
class TimeBlockSpec:
    id: int
    title: str
    start: datetime
    end: datetime
    recurrence_pattern: str = "none"
    recurrence_end_date: date | None = None
    recurrence_count: int | None = None


def block_instance(block: PriorityBlockSpec, day: date) -> Interval:
    start = datetime.combine(day, block.start_time)
    end = datetime.combine(day, block.end_time)
    if end <= start:
        end += timedelta(days=1)
    return Interval(start, end)


def priority_block_instances(
    blocks: Iterable[PriorityBlockSpec], start_day: date, end_day: date
) -> list[PriorityBlockInstance]:
    ordered = sorted(
        (b for b in blocks if b.enabled), key=lambda b: (b.start_time, b.end_time, b.id)
    )
    out: list[PriorityBlockInstance] = []
    for day in daterange(start_day, end_day):
        for block in ordered:
            if block.day_of_week != day.weekday():
                continue
            out.append(PriorityBlockInstance(block, day, block_instance(block, day)))
    return out


def reserved_priority_windows(
    blocks: Iterable[PriorityBlockSpec],
    start_day: date,
    end_day: date,
    now: datetime,
    customer_type: str | None = None,
) -> list[Interval]:
    """Priority windows not yet released to the general public.

    A window is held for its ``priority_for`` customers until ``fallback_hours``
    before it starts; after that anyone can book it.
    """
    held: list[Interval] = []
    for instance in priority_block_instances(blocks, start_day, end_day):
        block = instance.block
        if customer_type and customer_type == block.priority_for:
            continue
        release_at = instance.interval.start - timedelta(hours=max(0, int(block.fallback_hours)))
        if now < release_at:
            held.append(instance.interval)
    return held


def _add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def _occurrence_start(base: datetime, pattern: str, index: int) -> datetime:
    if pattern == "daily":
        return base + timedelta(days=index)
    if pattern == "weekly":
        return base + timedelta(weeks=index)
    if pattern == "monthly":
        return _add_months(base, index)
    if pattern == "yearly":
        return _add_months(base, 12 * index)
    raise ValueError(f"Unsupported recurrence pattern: {pattern}")


def expand_time_blocks(blocks: Iterable[TimeBlockSpec], window: Interval) -> list[Interval]:
    """Concrete occurrences of ``blocks`` overlapping ``window``."""
    out: list[Interval] = []
    for block in blocks:
        length = block.end - block.start
        if length <= timedelta(0):
            continue
        pattern = (block.recurrence_pattern or "none").strip().lower()
        if pattern == "none":
            candidate = Interval(block.start, block.end)
            if overlaps(candidate, window):
                out.append(candidate)
            continue

        limit = window.end
        if block.recurrence_end_date is not None:
            limit = min(limit, datetime.combine(block.recurrence_end_date, time.max))
        max_occurrences = int(block.recurrence_count or DEFAULT_MAX_OCCURRENCES)
        for index in range(max_occurrences):
            start = _occurrence_start(block.start, pattern, index)
            if start > limit:
                break
            candidate = Interval(start, start + length)
            if overlaps(candidate, window):
                out.append(candidate)
    return sorted(out)
