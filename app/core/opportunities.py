"""Detectors that turn a calendar snapshot into notification candidates.

Each detector reads an immutable snapshot and returns its candidates in
chronological order. ``run_detectors`` isolates them so one failing detector
never hides the output of the others.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Callable

import structlog

from .calendar_blocks import PriorityBlockSpec, priority_block_instances
from .errors import ConfigurationMissing, DetectorFailure
from .notification_types import (
    CUSTOMER_OVERDUE,
    EMPTY_PRIORITY_SLOT,
    GAP_OPPORTUNITY,
    NOTIFICATION_TYPES,
    Candidate,
    CustomerOverdueMetadata,
    EmptyPrioritySlotMetadata,
    GapOpportunityMetadata,
)
from .time_windows import Interval, day_bucket, duration_minutes, overlaps
from .working_hours import WEEKDAY_NAMES

log = structlog.get_logger("detailos.opportunities")

INACTIVE_JOB_STATUSES = {"cancelled", "no_show"}


@dataclass(frozen=True)
class JobRecord:
    id: int
    start: datetime
    end: datetime
    status: str
    customer_id: int | None = None
    priority_block_id: int | None = None

    @property
    def interval(self) -> Interval:
        return Interval(self.start, self.end)

    @property
    def occupies_calendar(self) -> bool:
        return self.status not in INACTIVE_JOB_STATUSES


@dataclass(frozen=True)
class CustomerRecord:
    id: int
    name: str
    phone: str | None
    last_job_date: date | None
    cadence_days: int | None = None
    has_upcoming_job: bool = False


@dataclass(frozen=True)
class ScanSettings:
    lookahead_days: int = 14
    urgent_hours: int = 48
    min_fillable_minutes: int | None = None
    large_gap_minutes: int = 120
    default_cadence_days: int = 30
    overdue_medium_days: int = 7
    overdue_high_days: int = 30


@dataclass(frozen=True)
class CalendarSnapshot:
    business_id: int
    now: datetime
    jobs: tuple[JobRecord, ...] = ()
    blocks: tuple[PriorityBlockSpec, ...] = ()
    customers: tuple[CustomerRecord, ...] = ()
    settings: ScanSettings = ScanSettings()
    shortest_service_min: int | None = None

    @property
    def today(self) -> date:
        return self.now.date()

    @property
    def last_day(self) -> date:
        return self.today + timedelta(days=max(1, int(self.settings.lookahead_days)) - 1)

    def occupying_jobs(self) -> list[JobRecord]:
        return [j for j in self.jobs if j.occupies_calendar and j.end > j.start]


@dataclass
class ScanOutcome:
    candidates: dict[str, list[Candidate]] = field(default_factory=dict)
    failures: dict[str, DetectorFailure] = field(default_factory=dict)

    @property
    def scanned_types(self) -> set[str]:
        return set(self.candidates)

    def all_candidates(self) -> list[Candidate]:
        out: list[Candidate] = []
        for notification_type in NOTIFICATION_TYPES:
            out.extend(self.candidates.get(notification_type, []))
        return out


def overdue_priority(days_overdue: int, medium_days: int = 7, high_days: int = 30) -> str:
    if days_overdue >= high_days:
        return "high"
    if days_overdue >= medium_days:
        return "medium"
    return "low"


def detect_empty_priority_slots(snapshot: CalendarSnapshot) -> list[Candidate]:
    jobs = snapshot.occupying_jobs()
    urgent = timedelta(hours=snapshot.settings.urgent_hours)
    out: list[Candidate] = []
    for instance in priority_block_instances(snapshot.blocks, snapshot.today, snapshot.last_day):
        window = instance.interval
        if window.end <= snapshot.now:
            continue
        if any(overlaps(job.interval, window) for job in jobs):
            continue
        block = instance.block
        priority = "high" if window.start - snapshot.now <= urgent else "medium"
        start_label = window.start.strftime("%H:%M")
        weekday = WEEKDAY_NAMES[instance.day.weekday()].capitalize()
        out.append(
            Candidate(
                type=EMPTY_PRIORITY_SLOT,
                title=f"{block.name} is still open",
                message=(
                    f"{block.name} on {weekday} {instance.day.isoformat()} at {start_label} "
                    f"has no booking yet. Reach out to {block.priority_for.replace('_', ' ')} to fill it."
                ),
                priority=priority,
                metadata=EmptyPrioritySlotMetadata(
                    block_id=block.id,
                    block_name=block.name,
                    date=instance.day.isoformat(),
                    time=start_label,
                    priority_for=block.priority_for,
                ),
            )
        )
    return out


def resolve_min_fillable_minutes(snapshot: CalendarSnapshot) -> int:
    configured = snapshot.settings.min_fillable_minutes or snapshot.shortest_service_min
    if not configured or int(configured) <= 0:
        raise ConfigurationMissing(
            "No minimum fillable gap and no active service duration",
            business_id=snapshot.business_id,
        )
    return int(configured)


def detect_gap_opportunities(snapshot: CalendarSnapshot) -> list[Candidate]:
    min_fillable = resolve_min_fillable_minutes(snapshot)
    by_day: dict[date, list[JobRecord]] = {}
    for job in snapshot.occupying_jobs():
        day = day_bucket(job.start)
        if snapshot.today <= day <= snapshot.last_day:
            by_day.setdefault(day, []).append(job)

    out: list[Candidate] = []
    for day in sorted(by_day):
        jobs = sorted(by_day[day], key=lambda j: (j.start, j.end, j.id))
        latest = jobs[0]
        for following in jobs[1:]:
            gap = Interval(latest.end, following.start)
            minutes = duration_minutes(gap)
            if gap.end > snapshot.now and minutes >= min_fillable:
                priority = "high" if minutes > snapshot.settings.large_gap_minutes else "medium"
                out.append(
                    Candidate(
                        type=GAP_OPPORTUNITY,
                        title=f"{minutes} minute gap on {day.isoformat()}",
                        message=(
                            f"There is a {minutes} minute opening between "
                            f"{gap.start.strftime('%H:%M')} and {gap.end.strftime('%H:%M')}. "
                            "Offer it to waiting leads or repeat customers."
                        ),
                        priority=priority,
                        metadata=GapOpportunityMetadata(
                            gap_start=gap.start.isoformat(),
                            gap_end=gap.end.isoformat(),
                            gap_minutes=minutes,
                            before_job_id=latest.id,
                            after_job_id=following.id,
                        ),
                    )
                )
            if following.end > latest.end:
                latest = following
    return out


def detect_overdue_customers(snapshot: CalendarSnapshot) -> list[Candidate]:
    settings = snapshot.settings
    found: list[tuple[date, int, Candidate]] = []
    for customer in snapshot.customers:
        if customer.last_job_date is None or customer.has_upcoming_job:
            continue
        cadence = int(customer.cadence_days or settings.default_cadence_days)
        due = customer.last_job_date + timedelta(days=cadence)
        days_overdue = (snapshot.today - due).days
        if days_overdue <= 0:
            continue
        candidate = Candidate(
            type=CUSTOMER_OVERDUE,
            title=f"{customer.name} is due for a visit",
            message=(
                f"{customer.name} was last serviced on {customer.last_job_date.isoformat()} "
                f"and is {days_overdue} day{'s' if days_overdue != 1 else ''} past their usual "
                f"{cadence} day cadence."
            ),
            priority=overdue_priority(days_overdue, settings.overdue_medium_days, settings.overdue_high_days),
            metadata=CustomerOverdueMetadata(
                customer_id=customer.id,
                customer_name=customer.name,
                customer_phone=customer.phone,
                last_job_date=customer.last_job_date.isoformat(),
                days_overdue=days_overdue,
            ),
        )
        found.append((due, customer.id, candidate))
    found.sort(key=lambda row: (row[0], row[1]))
    return [row[2] for row in found]


DETECTORS: dict[str, Callable[[CalendarSnapshot], list[Candidate]]] = {
    EMPTY_PRIORITY_SLOT: detect_empty_priority_slots,
    GAP_OPPORTUNITY: detect_gap_opportunities,
    CUSTOMER_OVERDUE: detect_overdue_customers,
}


def run_detectors(snapshot: CalendarSnapshot, enabled_types: set[str] | None = None) -> ScanOutcome:
    enabled = set(NOTIFICATION_TYPES if enabled_types is None else enabled_types)
    outcome = ScanOutcome()
    for notification_type, detector in DETECTORS.items():
        if notification_type not in enabled:
            continue
        try:
            outcome.candidates[notification_type] = detector(snapshot)
        except Exception as exc:
            outcome.failures[notification_type] = DetectorFailure(
                str(exc), detector=notification_type, business_id=snapshot.business_id
            )
            log.error(
                "detector_failed",
                business_id=snapshot.business_id,
                detector=notification_type,
                error=str(exc),
                error_type=type(exc).__name__,
            )
    return outcome
