from datetime import date, datetime
from typing import List, Optional

from fastapi import APIRouter, Body, Depends, Header, HTTPException, Query, status
from sqlalchemy.orm import Session

from .config import settings
from .core.errors import ConfigurationMissing, ConflictOnCommit, InvalidTransition
from .core.locks import ScanLockBusy, business_scan_lock
from .db import get_db
from .models import Business, Job, SmartNotification
from .schemas import (
    AvailabilityOut,
    JobCreate,
    JobOut,
    NotificationOut,
    ScanReportOut,
    SlotOut,
    SnoozeRequest,
)
from .services import (
    book_job,
    business_zone,
    get_available_slots,
    get_or_create_business,
    list_notifications,
    resolve_customer_type,
    resolve_service_duration,
    run_opportunity_scan,
    transition_notification,
    utc_to_local,
)

router = APIRouter(prefix="/api")


def _resolve_business_or_default(db: Session, business_slug: Optional[str]) -> Business:
    slug = (business_slug or settings.DEFAULT_BUSINESS_SLUG).strip().lower()
    business_name = settings.DEFAULT_BUSINESS_NAME if slug == settings.DEFAULT_BUSINESS_SLUG else slug
    return get_or_create_business(db, slug=slug, name=business_name)


def get_current_business(
    db: Session = Depends(get_db),
    x_business_slug: Optional[str] = Header(default=None),
) -> Business:
    return _resolve_business_or_default(db, x_business_slug)


def _to_local_input(value: datetime, business: Business) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(business_zone(business)).replace(tzinfo=None)


def _to_job_out(job: Job, business: Business) -> JobOut:
    zone = business_zone(business)
    return JobOut(
        id=job.id,
        start=utc_to_local(job.scheduled_start, zone).replace(tzinfo=zone),
        end=utc_to_local(job.scheduled_end, zone).replace(tzinfo=zone),
        status=job.status,
        client_id=job.client_id,
        service_id=job.service_id,
        vehicle_size=job.vehicle_size,
    )


def _to_notification_out(row: SmartNotification) -> NotificationOut:
    return NotificationOut(
        id=row.id,
        type=row.type,
        title=row.title,
        message=row.message,
        priority=row.priority,
        status=row.status,
        metadata=row.metadata_payload,
        snoozed_until=row.snoozed_until,
        resolved_by=row.resolved_by,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


@router.get("/availability", response_model=AvailabilityOut)
def availability(
    date_from: date = Query(...),
    date_to: Optional[date] = Query(None),
    service_id: Optional[int] = Query(None),
    vehicle_size: Optional[str] = Query(None),
    duration_min: Optional[int] = Query(None, ge=5, le=720),
    client_id: Optional[int] = Query(None),
    client_phone: Optional[str] = Query(None, max_length=40),
    db: Session = Depends(get_db),
    business: Business = Depends(get_current_business),
):
    date_to = date_to or date_from
    try:
        if service_id is not None:
            duration_min = resolve_service_duration(db, business.id, service_id, vehicle_size)
        if duration_min is None:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="service_id or duration_min is required",
            )
        slots = get_available_slots(
            db,
            business,
            date_from,
            date_to,
            duration_min,
            customer_type=resolve_customer_type(db, business.id, client_id=client_id, phone=client_phone),
        )
    except ConfigurationMissing as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))

    zone = business_zone(business)
    return AvailabilityOut(
        business_slug=business.slug,
        timezone=zone.key,
        duration_min=int(duration_min),
        date_from=date_from,
        date_to=date_to,
        slots=[SlotOut(start=s.start.replace(tzinfo=zone), end=s.end.replace(tzinfo=zone)) for s in slots],
    )


@router.post("/jobs", response_model=JobOut, status_code=status.HTTP_201_CREATED)
def create_job(
    payload: JobCreate,
    db: Session = Depends(get_db),
    business: Business = Depends(get_current_business),
):
    try:
        job = book_job(
            db,
            business,
            _to_local_input(payload.start, business),
            duration_min=payload.duration_min,
            service_id=payload.service_id,
            vehicle_size=payload.vehicle_size,
            client_id=payload.client_id,
            client_name=payload.client_name,
            client_phone=payload.client_phone,
        )
    except ConflictOnCommit as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    except ConfigurationMissing as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return _to_job_out(job, business)


@router.get("/notifications", response_model=List[NotificationOut])
def notifications(
    status_filter: Optional[str] = Query(default="active", alias="status"),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
    business: Business = Depends(get_current_business),
):
    try:
        rows = list_notifications(db, business.id, status_filter=status_filter, limit=limit)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return [_to_notification_out(r) for r in rows]


def _transition(db: Session, business: Business, notification_id: int, action: str, until=None):
    try:
        row = transition_notification(db, business.id, notification_id, action, until=until)
    except InvalidTransition as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found")
    return _to_notification_out(row)


@router.post("/notifications/{notification_id}/dismiss", response_model=NotificationOut)
def dismiss_notification(
    notification_id: int,
    db: Session = Depends(get_db),
    business: Business = Depends(get_current_business),
):
    return _transition(db, business, notification_id, "dismiss")


@router.post("/notifications/{notification_id}/snooze", response_model=NotificationOut)
def snooze_notification(
    notification_id: int,
    payload: Optional[SnoozeRequest] = Body(default=None),
    db: Session = Depends(get_db),
    business: Business = Depends(get_current_business),
):
    return _transition(db, business, notification_id, "snooze", until=payload.until if payload else None)


@router.post("/notifications/{notification_id}/act", response_model=NotificationOut)
def act_on_notification(
    notification_id: int,
    db: Session = Depends(get_db),
    business: Business = Depends(get_current_business),
):
    return _transition(db, business, notification_id, "act")


@router.post("/notifications/scan", response_model=ScanReportOut)
def scan_notifications(
    db: Session = Depends(get_db),
    business: Business = Depends(get_current_business),
):
    try:
        with business_scan_lock(business.id):
            report = run_opportunity_scan(db, business)
    except (ScanLockBusy, ConflictOnCommit) as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    except ConfigurationMissing as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    return ScanReportOut(
        business_slug=report.business_slug,
        status=report.status,
        scanned_types=report.scanned_types,
        skipped_types=report.skipped_types,
        failures=report.failures,
        summary=report.summary,
        created_ids=report.created_ids,
        delivered=report.delivered,
    )
