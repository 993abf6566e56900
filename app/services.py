import json
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog
from sqlalchemy import case, func, select, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .config import settings
from .core.availability import Slot, compute_available_slots, is_slot_available
from .core.calendar_blocks import (
    CUSTOMER_NEW,
    CUSTOMER_RETURNING,
    CUSTOMER_VIP,
    PriorityBlockSpec,
    TimeBlockSpec,
    expand_time_blocks,
    reserved_priority_windows,
)
from .core.delivery import deliver_new_notifications
from .core.errors import ConfigurationMissing, ConflictOnCommit, DataInconsistent
from .core.feature_flags import enabled_notification_types
from .core.lifecycle import NotificationState, ReconcilePlan, reconcile, user_transition
from .core.locks import business_scan_lock
from .core.notification_types import (
    NOTIFICATION_PRIORITIES,
    NOTIFICATION_STATUSES,
    NOTIFICATION_TYPES,
    OPEN_STATUSES,
    RESOLVED_BY_SCAN,
    RESOLVED_BY_USER,
    STATUS_ACTED,
    STATUS_ACTIVE,
    STATUS_SNOOZED,
)
from .core.opportunities import (
    INACTIVE_JOB_STATUSES,
    CalendarSnapshot,
    CustomerRecord,
    JobRecord,
    ScanSettings,
    run_detectors,
)
from .core.time_windows import Interval
from .core.working_hours import WorkingHours
from .models import (
    Business,
    BusinessHours,
    Client,
    Job,
    PriorityBlock,
    Service,
    ServiceSizeDuration,
    SmartNotification,
    TimeBlock,
    utc_now_naive,
)

log = structlog.get_logger("detailos.services")

VEHICLE_SIZES = {"small", "medium", "large", "xl"}
PRIORITY_RANK = {priority: rank for rank, priority in enumerate(reversed(NOTIFICATION_PRIORITIES))}


def to_utc_naive(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def business_zone(business: Business) -> ZoneInfo:
    name = (business.timezone or settings.DEFAULT_TIMEZONE or "UTC").strip()
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigurationMissing(f"Unknown time zone: {name}", business_id=business.id) from exc


def utc_to_local(value: datetime, zone: ZoneInfo) -> datetime:
    return value.replace(tzinfo=timezone.utc).astimezone(zone).replace(tzinfo=None)


def local_to_utc(value: datetime, zone: ZoneInfo) -> datetime:
    if value.tzinfo is not None:
        return to_utc_naive(value)
    return value.replace(tzinfo=zone).astimezone(timezone.utc).replace(tzinfo=None)


# --- businesses and configuration -------------------------------------------------


def get_business_by_slug(db: Session, slug: str) -> Business | None:
    return db.execute(
        select(Business).where(Business.slug == slug.strip().lower())
    ).scalar_one_or_none()


def get_or_create_business(db: Session, slug: str, name: str | None = None, **fields) -> Business:
    normalized_slug = slug.strip().lower()
    business = get_business_by_slug(db, normalized_slug)
    if business:
        return business

    business = Business(slug=normalized_slug, name=(name or normalized_slug).strip(), **fields)
    business.timezone = business.timezone or settings.DEFAULT_TIMEZONE
    db.add(business)
    db.commit()
    db.refresh(business)
    return business


def set_business_hours(
    db: Session, business_id: int, weekly: dict[int, list[tuple[time, time]]]
) -> list[BusinessHours]:
    for row in db.execute(
        select(BusinessHours).where(BusinessHours.business_id == business_id)
    ).scalars():
        db.delete(row)
    rows = []
    for weekday, windows in sorted(weekly.items()):
        if not 0 <= int(weekday) <= 6:
            raise ValueError("weekday must be between 0 (Monday) and 6 (Sunday)")
        for open_time, close_time in windows:
            if open_time == close_time:
                raise ValueError("open_time and close_time must differ")
            rows.append(
                BusinessHours(
                    business_id=business_id,
                    weekday=int(weekday),
                    open_time=open_time,
                    close_time=close_time,
                )
            )
    db.add_all(rows)
    db.commit()
    return rows


def load_working_hours(db: Session, business: Business) -> WorkingHours:
    rows = db.execute(
        select(BusinessHours).where(BusinessHours.business_id == business.id)
    ).scalars().all()
    if not rows:
        if not settings.DEFAULT_HOURS_FALLBACK:
            raise ConfigurationMissing("Business has no working hours", business_id=business.id)
        return WorkingHours.default_week(holiday_country=business.holiday_country)

    weekly: dict[int, list[tuple[time, time]]] = {}
    for row in rows:
        weekly.setdefault(int(row.weekday), []).append((row.open_time, row.close_time))
    return WorkingHours(weekly, holiday_country=business.holiday_country)


def create_service(
    db: Session,
    business_id: int,
    name: str,
    duration_min: int | None,
    size_durations: dict[str, int] | None = None,
) -> Service:
    service = Service(business_id=business_id, name=name.strip(), duration_min=duration_min, is_active=True)
    for size, minutes in (size_durations or {}).items():
        normalized_size = size.strip().lower()
        if normalized_size not in VEHICLE_SIZES:
            raise ValueError(f"Unknown vehicle size: {size}")
        service.size_durations.append(ServiceSizeDuration(vehicle_size=normalized_size, duration_min=int(minutes)))
    db.add(service)
    db.commit()
    db.refresh(service)
    return service


def resolve_service_duration(
    db: Session, business_id: int, service_id: int, vehicle_size: str | None = None
) -> int:
    service = db.execute(
        select(Service).where(Service.business_id == business_id, Service.id == service_id)
    ).scalar_one_or_none()
    if service is None or not service.is_active:
        raise ConfigurationMissing(f"Service {service_id} not found", business_id=business_id)

    size = (vehicle_size or "").strip().lower()
    if size:
        for row in service.size_durations:
            if row.vehicle_size == size and row.duration_min > 0:
                return int(row.duration_min)
    if service.duration_min and service.duration_min > 0:
        return int(service.duration_min)
    raise ConfigurationMissing(
        f"No duration configured for service {service.name}", business_id=business_id
    )


def shortest_service_duration(db: Session, business_id: int) -> int | None:
    base = db.execute(
        select(func.min(Service.duration_min)).where(
            Service.business_id == business_id,
            Service.is_active.is_(True),
            Service.duration_min > 0,
        )
    ).scalar_one()
    sized = db.execute(
        select(func.min(ServiceSizeDuration.duration_min))
        .join(Service, Service.id == ServiceSizeDuration.service_id)
        .where(
            Service.business_id == business_id,
            Service.is_active.is_(True),
            ServiceSizeDuration.duration_min > 0,
        )
    ).scalar_one()
    values = [int(v) for v in (base, sized) if v]
    return min(values) if values else None


def get_or_create_client(
    db: Session, business_id: int, name: str, phone: str | None = None
) -> Client:
    normalized_name = name.strip()
    normalized_phone = (phone or "").strip() or None
    obj = db.execute(
        select(Client).where(Client.business_id == business_id, Client.name == normalized_name)
    ).scalars().first()
    if obj:
        if normalized_phone and obj.phone != normalized_phone:
            obj.phone = normalized_phone
        return obj
    obj = Client(business_id=business_id, name=normalized_name, phone=normalized_phone)
    db.add(obj)
    db.flush()
    return obj


def resolve_customer_type(
    db: Session,
    business_id: int,
    client_id: int | None = None,
    phone: str | None = None,
    name: str | None = None,
) -> str | None:
    """Customer segment used to open held priority windows, from the client's own history.

    Unknown clients are new, clients with completed jobs are returning, and
    completed revenue above ``VIP_REVENUE_THRESHOLD`` makes a client vip.
    Returns ``None`` when nothing identifies the caller.
    """
    normalized_phone = (phone or "").strip()
    normalized_name = (name or "").strip()
    if client_id is None and not normalized_phone and not normalized_name:
        return None

    stmt = select(Client).where(Client.business_id == business_id)
    if client_id is not None:
        stmt = stmt.where(Client.id == client_id)
    elif normalized_phone:
        stmt = stmt.where(Client.phone == normalized_phone)
    else:
        stmt = stmt.where(Client.name == normalized_name)
    client = db.execute(stmt.order_by(Client.id.asc())).scalars().first()
    if client is None:
        return CUSTOMER_NEW

    completed, revenue = db.execute(
        select(func.count(Job.id), func.coalesce(func.sum(Job.estimated_cost), 0)).where(
            Job.business_id == business_id,
            Job.client_id == client.id,
            Job.status == "completed",
        )
    ).one()
    if float(revenue or 0) > float(settings.VIP_REVENUE_THRESHOLD):
        return CUSTOMER_VIP
    if completed:
        return CUSTOMER_RETURNING
    return CUSTOMER_NEW


# --- calendar snapshots ------------------------------------------------------------


def _jobs_in_range(db: Session, business_id: int, start_utc: datetime, end_utc: datetime) -> list[Job]:
    return db.execute(
        select(Job)
        .where(
            Job.business_id == business_id,
            Job.scheduled_start.is_not(None),
            Job.scheduled_start < end_utc,
            Job.scheduled_start >= start_utc - timedelta(days=1),
        )
        .order_by(Job.scheduled_start.asc(), Job.id.asc())
    ).scalars().all()


def job_record(job: Job, zone: ZoneInfo) -> JobRecord:
    if job.scheduled_start is None:
        raise DataInconsistent(f"Job {job.id} is not scheduled", record=f"job:{job.id}")
    if job.scheduled_end is None or job.scheduled_end <= job.scheduled_start:
        raise DataInconsistent(
            f"Job {job.id} ends before it starts", record=f"job:{job.id}", business_id=job.business_id
        )
    return JobRecord(
        id=job.id,
        start=utc_to_local(job.scheduled_start, zone),
        end=utc_to_local(job.scheduled_end, zone),
        status=job.status,
        customer_id=job.client_id,
        priority_block_id=job.priority_block_id,
    )


def _job_records(jobs: list[Job], zone: ZoneInfo) -> list[JobRecord]:
    out = []
    for job in jobs:
        try:
            out.append(job_record(job, zone))
        except DataInconsistent as exc:
            log.warning("record_skipped", record=exc.record, business_id=job.business_id, error=str(exc))
    return out


def _priority_block_specs(db: Session, business_id: int) -> list[PriorityBlockSpec]:
    rows = db.execute(
        select(PriorityBlock).where(PriorityBlock.business_id == business_id, PriorityBlock.enabled.is_(True))
    ).scalars().all()
    out = []
    for row in rows:
        if row.start_time == row.end_time or not 0 <= int(row.day_of_week) <= 6:
            log.warning(
                "record_skipped",
                record=f"priority_block:{row.id}",
                business_id=business_id,
                error="invalid block window",
            )
            continue
        out.append(
            PriorityBlockSpec(
                id=row.id,
                name=row.name,
                day_of_week=int(row.day_of_week),
                start_time=row.start_time,
                end_time=row.end_time,
                priority_for=row.priority_for,
                fallback_hours=int(row.fallback_hours if row.fallback_hours is not None else 24),
                enabled=bool(row.enabled),
            )
        )
    return out


def _time_block_intervals(db: Session, business_id: int, zone: ZoneInfo, window: Interval) -> list[Interval]:
    rows = db.execute(select(TimeBlock).where(TimeBlock.business_id == business_id)).scalars().all()
    specs = [
        TimeBlockSpec(
            id=row.id,
            title=row.title,
            start=utc_to_local(row.start_dt, zone),
            end=utc_to_local(row.end_dt, zone),
            recurrence_pattern=row.recurrence_pattern or "none",
            recurrence_end_date=row.recurrence_end_date,
            recurrence_count=row.recurrence_count,
        )
        for row in rows
    ]
    return expand_time_blocks(specs, window)


def _customer_records(
    db: Session, business_id: int, zone: ZoneInfo, now_utc: datetime
) -> list[CustomerRecord]:
    last_completed = dict(
        db.execute(
            select(Job.client_id, func.max(Job.scheduled_start))
            .where(
                Job.business_id == business_id,
                Job.status == "completed",
                Job.client_id.is_not(None),
                Job.scheduled_start.is_not(None),
            )
            .group_by(Job.client_id)
        ).all()
    )
    if not last_completed:
        return []
    upcoming = set(
        db.execute(
            select(Job.client_id)
            .where(
                Job.business_id == business_id,
                Job.client_id.in_(list(last_completed)),
                Job.scheduled_start >= now_utc,
                Job.status.not_in(list(INACTIVE_JOB_STATUSES | {"completed"})),
            )
            .distinct()
        ).scalars()
    )
    clients = db.execute(
        select(Client).where(Client.business_id == business_id, Client.id.in_(list(last_completed)))
    ).scalars().all()
    return [
        CustomerRecord(
            id=c.id,
            name=c.name,
            phone=c.phone,
            last_job_date=utc_to_local(last_completed[c.id], zone).date(),
            cadence_days=c.cadence_days,
            has_upcoming_job=c.id in upcoming,
        )
        for c in sorted(clients, key=lambda c: c.id)
    ]


def scan_settings_for(business: Business) -> ScanSettings:
    return ScanSettings(
        lookahead_days=int(business.lookahead_days or settings.SCAN_LOOKAHEAD_DAYS),
        urgent_hours=int(settings.EMPTY_SLOT_URGENT_HOURS),
        min_fillable_minutes=business.min_fillable_minutes or settings.MIN_FILLABLE_MINUTES,
        large_gap_minutes=int(business.large_gap_minutes or settings.LARGE_GAP_MINUTES),
        default_cadence_days=int(business.default_cadence_days or settings.DEFAULT_CADENCE_DAYS),
        overdue_medium_days=int(settings.OVERDUE_MEDIUM_DAYS),
        overdue_high_days=int(settings.OVERDUE_HIGH_DAYS),
    )


def load_snapshot(db: Session, business: Business, now: datetime | None = None) -> CalendarSnapshot:
    """Read everything one scan needs in one pass; detectors never touch the session."""
    now_utc = to_utc_naive(now or utc_now_naive())
    zone = business_zone(business)
    local_now = utc_to_local(now_utc, zone)
    scan = scan_settings_for(business)

    first_local = datetime.combine(local_now.date(), time.min)
    last_local = first_local + timedelta(days=max(1, scan.lookahead_days) + 1)
    jobs = _jobs_in_range(db, business.id, local_to_utc(first_local, zone), local_to_utc(last_local, zone))

    return CalendarSnapshot(
        business_id=business.id,
        now=local_now,
        jobs=tuple(_job_records(jobs, zone)),
        blocks=tuple(_priority_block_specs(db, business.id)),
        customers=tuple(_customer_records(db, business.id, zone, now_utc)),
        settings=scan,
        shortest_service_min=shortest_service_duration(db, business.id),
    )


# --- availability and booking ------------------------------------------------------


@dataclass(frozen=True)
class CalendarContext:
    hours: WorkingHours
    busy: list[Interval]
    blocked: list[Interval]
    zone: ZoneInfo
    local_now: datetime


def _calendar_context(
    db: Session,
    business: Business,
    date_from: date,
    date_to: date,
    customer_type: str | None,
    now_utc: datetime,
) -> CalendarContext:
    zone = business_zone(business)
    hours = load_working_hours(db, business)
    local_now = utc_to_local(now_utc, zone)

    window = Interval(
        datetime.combine(date_from - timedelta(days=1), time.min),
        datetime.combine(date_to + timedelta(days=2), time.min),
    )
    jobs = _jobs_in_range(db, business.id, local_to_utc(window.start, zone), local_to_utc(window.end, zone))
    busy = [r.interval for r in _job_records(jobs, zone) if r.occupies_calendar]

    blocked = _time_block_intervals(db, business.id, zone, window)
    blocked += reserved_priority_windows(
        _priority_block_specs(db, business.id),
        date_from - timedelta(days=1),
        date_to,
        local_now,
        customer_type=customer_type,
    )
    return CalendarContext(hours=hours, busy=busy, blocked=blocked, zone=zone, local_now=local_now)


def get_available_slots(
    db: Session,
    business: Business,
    date_from: date,
    date_to: date | None,
    duration_min: int,
    customer_type: str | None = None,
    now: datetime | None = None,
) -> list[Slot]:
    """Bookable slots in the business's local time, earliest first."""
    date_to = date_to or date_from
    if date_to < date_from:
        return []
    if (date_to - date_from).days + 1 > int(settings.MAX_AVAILABILITY_DAYS):
        raise ValueError(f"Date range is limited to {settings.MAX_AVAILABILITY_DAYS} days")
    if int(duration_min or 0) <= 0:
        raise ConfigurationMissing("Service duration could not be resolved", business_id=business.id)

    now_utc = to_utc_naive(now or utc_now_naive())
    ctx = _calendar_context(db, business, date_from, date_to, customer_type, now_utc)
    slots = compute_available_slots(
        ctx.hours,
        ctx.busy,
        date_from,
        date_to,
        int(duration_min),
        buffer_before_min=int(business.buffer_before_min or 0),
        buffer_after_min=int(business.buffer_after_min or 0),
        step_min=int(business.slot_step_min or settings.SLOT_STEP_MINUTES),
        blocked=ctx.blocked,
        capacity=max(1, int(business.worker_capacity or 1)),
        not_before=ctx.local_now,
    )
    log.info(
        "availability_computed",
        business_id=business.id,
        date_from=date_from.isoformat(),
        date_to=date_to.isoformat(),
        duration_min=int(duration_min),
        busy=len(ctx.busy),
        blocked=len(ctx.blocked),
        slots=len(slots),
    )
    return slots


def check_slot_available(
    db: Session,
    business: Business,
    start_local: datetime,
    duration_min: int,
    customer_type: str | None = None,
    now: datetime | None = None,
) -> tuple[bool, str | None]:
    now_utc = to_utc_naive(now or utc_now_naive())
    ctx = _calendar_context(db, business, start_local.date(), start_local.date(), customer_type, now_utc)
    if start_local < ctx.local_now:
        return False, "Slot is in the past"
    return is_slot_available(
        ctx.hours,
        ctx.busy,
        start_local,
        int(duration_min),
        buffer_before_min=int(business.buffer_before_min or 0),
        buffer_after_min=int(business.buffer_after_min or 0),
        blocked=ctx.blocked,
        capacity=max(1, int(business.worker_capacity or 1)),
    )


def lock_business_for_write(db: Session, business_id: int) -> None:
    """Serialize writers for one business until the session commits or rolls back.

    SQLite ignores row locks, so there the current transaction is closed and a
    new one is opened with BEGIN IMMEDIATE, which holds the database write lock
    from the first read.
    """
    if db.get_bind().dialect.name == "sqlite":
        db.commit()
        db.execute(text("BEGIN IMMEDIATE"))
        return
    db.execute(select(Business.id).where(Business.id == business_id).with_for_update()).first()


def book_job(
    db: Session,
    business: Business,
    start_local: datetime,
    duration_min: int | None = None,
    service_id: int | None = None,
    vehicle_size: str | None = None,
    client_id: int | None = None,
    client_name: str | None = None,
    client_phone: str | None = None,
    now: datetime | None = None,
) -> Job:
    """Create a scheduled job after re-checking the slot inside the write transaction.

    Slots returned by ``get_available_slots`` are advisory; a booking that lost
    the race raises ``ConflictOnCommit`` instead of double-booking.
    """
    if service_id is not None:
        duration_min = resolve_service_duration(db, business.id, service_id, vehicle_size)
    if not duration_min or int(duration_min) <= 0:
        raise ConfigurationMissing("Service duration could not be resolved", business_id=business.id)
    if vehicle_size and vehicle_size.strip().lower() not in VEHICLE_SIZES:
        raise ValueError(f"Unknown vehicle size: {vehicle_size}")

    lock_business_for_write(db, business.id)

    customer_type = resolve_customer_type(db, business.id, client_id, client_phone, client_name)
    ok, reason = check_slot_available(db, business, start_local, int(duration_min), customer_type, now)
    if not ok:
        db.rollback()
        log.info("booking_conflict", business_id=business.id, start=start_local.isoformat(), reason=reason)
        raise ConflictOnCommit(reason or "Slot unavailable", business_id=business.id)

    if client_id is not None:
        client = db.execute(
            select(Client).where(Client.business_id == business.id, Client.id == client_id)
        ).scalar_one_or_none()
        if client is None:
            db.rollback()
            raise ValueError("Client not found")
    elif client_name:
        client = get_or_create_client(db, business.id, client_name, phone=client_phone)
    else:
        client = None

    zone = business_zone(business)
    start_utc = local_to_utc(start_local, zone)
    job = Job(
        business_id=business.id,
        client_id=client.id if client else None,
        service_id=service_id,
        scheduled_start=start_utc,
        scheduled_end=start_utc + timedelta(minutes=int(duration_min)),
        status="scheduled",
        vehicle_size=(vehicle_size or "").strip().lower() or None,
        created_at=utc_now_naive(),
    )
    db.add(job)
    db.commit()
    db.refresh(job)
    log.info("job_booked", business_id=business.id, job_id=job.id, start=start_local.isoformat())
    return job


# --- notifications -----------------------------------------------------------------


def _metadata_json(metadata: dict) -> str:
    return json.dumps(metadata, ensure_ascii=True, sort_keys=True)


def notification_state(row: SmartNotification) -> NotificationState:
    return NotificationState(
        id=row.id,
        type=row.type,
        natural_key=row.natural_key,
        fingerprint=row.fingerprint,
        status=row.status,
        title=row.title,
        message=row.message,
        priority=row.priority,
        metadata=row.metadata_payload,
        snoozed_until=row.snoozed_until,
        resolved_by=row.resolved_by,
    )


def list_notifications(
    db: Session, business_id: int, status_filter: str | None = STATUS_ACTIVE, limit: int = 100
) -> list[SmartNotification]:
    stmt = select(SmartNotification).where(SmartNotification.business_id == business_id)
    if status_filter:
        normalized = status_filter.strip().lower()
        if normalized not in NOTIFICATION_STATUSES:
            raise ValueError("Invalid notification status")
        stmt = stmt.where(SmartNotification.status == normalized)
    rank = case(PRIORITY_RANK, value=SmartNotification.priority, else_=len(PRIORITY_RANK))
    stmt = stmt.order_by(rank.asc(), SmartNotification.created_at.desc(), SmartNotification.id.desc())
    return db.execute(stmt.limit(max(1, min(int(limit), 500)))).scalars().all()


def get_notification(db: Session, business_id: int, notification_id: int) -> SmartNotification | None:
    return db.execute(
        select(SmartNotification).where(
            SmartNotification.business_id == business_id,
            SmartNotification.id == notification_id,
        )
    ).scalar_one_or_none()


def transition_notification(
    db: Session,
    business_id: int,
    notification_id: int,
    action: str,
    until: datetime | None = None,
    now: datetime | None = None,
) -> SmartNotification | None:
    row = get_notification(db, business_id, notification_id)
    if row is None:
        return None
    now_utc = to_utc_naive(now or utc_now_naive())
    status, snoozed_until = user_transition(
        row.status,
        action,
        now_utc,
        until=to_utc_naive(until) if until else None,
        default_snooze_hours=settings.SNOOZE_DEFAULT_HOURS,
    )
    row.status = status
    row.snoozed_until = snoozed_until
    row.resolved_by = None if status == STATUS_SNOOZED else RESOLVED_BY_USER
    row.updated_at = now_utc
    db.commit()
    db.refresh(row)
    log.info(
        "notification_transitioned",
        business_id=business_id,
        notification_id=row.id,
        action=action,
        status=status,
    )
    return row


def apply_plan(
    db: Session, business_id: int, plan: ReconcilePlan, now_utc: datetime
) -> list[SmartNotification]:
    """Write a reconciliation plan as one unit; nothing is committed on failure."""
    created: list[SmartNotification] = []
    try:
        for update in plan.updates:
            row = db.get(SmartNotification, update.notification_id)
            for name, value in update.changes.items():
                if name == "metadata":
                    row.metadata_json = _metadata_json(value)
                else:
                    setattr(row, name, value)
            row.updated_at = now_utc

        for notification_id in plan.resolved:
            row = db.get(SmartNotification, notification_id)
            row.status = STATUS_ACTED
            row.resolved_by = RESOLVED_BY_SCAN
            row.snoozed_until = None
            row.updated_at = now_utc

        # resolved rows must leave the open-key index before new rows enter it
        db.flush()

        for candidate in plan.creates:
            row = SmartNotification(
                business_id=business_id,
                type=candidate.type,
                natural_key=candidate.natural_key,
                fingerprint=candidate.fingerprint,
                title=candidate.title,
                message=candidate.message,
                priority=candidate.priority,
                status=STATUS_ACTIVE,
                metadata_json=_metadata_json(candidate.metadata_dict),
                created_at=now_utc,
                updated_at=now_utc,
            )
            db.add(row)
            created.append(row)
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        log.warning("notification_plan_conflict", business_id=business_id, error=str(exc.orig))
        raise ConflictOnCommit("Notifications changed during the scan", business_id=business_id) from exc
    except Exception:
        db.rollback()
        raise
    for row in created:
        db.refresh(row)
    return created


@dataclass
class ScanReport:
    business_id: int
    business_slug: str
    status: str = "ok"
    scanned_types: list[str] = field(default_factory=list)
    skipped_types: list[str] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)
    summary: dict = field(default_factory=dict)
    created_ids: list[int] = field(default_factory=list)
    delivered: int = 0


def run_opportunity_scan(
    db: Session, business: Business, now: datetime | None = None, deliver: bool = True
) -> ScanReport:
    now_utc = to_utc_naive(now or utc_now_naive())
    enabled = enabled_notification_types(business.tier)
    report = ScanReport(
        business_id=business.id,
        business_slug=business.slug,
        skipped_types=[t for t in NOTIFICATION_TYPES if t not in enabled],
    )

    snapshot = load_snapshot(db, business, now_utc)
    outcome = run_detectors(snapshot, enabled)
    scanned = outcome.scanned_types
    report.scanned_types = [t for t in NOTIFICATION_TYPES if t in scanned]
    report.failures = {t: str(exc) for t, exc in outcome.failures.items()}

    candidates = outcome.all_candidates()
    # closed records only matter when a candidate carries the same fingerprint
    existing = db.execute(
        select(SmartNotification).where(
            SmartNotification.business_id == business.id,
            SmartNotification.type.in_(list(scanned) or [""]),
            (SmartNotification.status.in_(list(OPEN_STATUSES)))
            | (SmartNotification.fingerprint.in_([c.fingerprint for c in candidates] or [""])),
        )
    ).scalars().all()
    plan = reconcile(
        candidates,
        [notification_state(row) for row in existing],
        now_utc,
        scanned,
    )
    created = apply_plan(db, business.id, plan, now_utc) if not plan.is_noop else []

    report.summary = plan.summary()
    report.created_ids = [row.id for row in created]
    if report.failures:
        report.status = "partial" if scanned else "failed"
    if deliver and created:
        report.delivered = deliver_new_notifications(business.slug, created)

    log.info(
        "opportunity_scan_completed",
        business_id=business.id,
        status=report.status,
        scanned=report.scanned_types,
        failed=sorted(report.failures),
        **report.summary,
    )
    return report


def run_scheduled_scans(
    session_factory,
    business_slugs: list[str] | None = None,
    now: datetime | None = None,
    lock=None,
) -> list[ScanReport]:
    """Scan every business in its own session; one business failing never stops the batch."""
    lock = lock or business_scan_lock
    with session_factory() as db:
        stmt = select(Business.id, Business.slug).order_by(Business.id.asc())
        if business_slugs:
            stmt = stmt.where(Business.slug.in_([s.strip().lower() for s in business_slugs]))
        targets = db.execute(stmt).all()

    reports: list[ScanReport] = []
    for business_id, slug in targets:
        try:
            with lock(business_id), session_factory() as db:
                business = db.get(Business, business_id)
                reports.append(run_opportunity_scan(db, business, now=now))
        except Exception as exc:
            log.error(
                "opportunity_scan_failed",
                business_id=business_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            reports.append(
                ScanReport(
                    business_id=business_id,
                    business_slug=slug,
                    status="failed",
                    failures={"scan": str(exc)},
                )
            )
    return reports
