import json
from datetime import date, datetime, time, timezone

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Time,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base


def utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Business(Base):
    __tablename__ = "businesses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    slug: Mapped[str] = mapped_column(String(80), unique=True, index=True)
    name: Mapped[str] = mapped_column(String(120))
    timezone: Mapped[str] = mapped_column(String(64), default="UTC")
    tier: Mapped[str] = mapped_column(String(16), default="starter")
    holiday_country: Mapped[str | None] = mapped_column(String(8), nullable=True)
    buffer_before_min: Mapped[int] = mapped_column(Integer, default=0)
    buffer_after_min: Mapped[int] = mapped_column(Integer, default=0)
    slot_step_min: Mapped[int | None] = mapped_column(Integer, nullable=True)
    worker_capacity: Mapped[int] = mapped_column(Integer, default=1)
    default_cadence_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    min_fillable_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    large_gap_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    lookahead_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)


class BusinessHours(Base):
    __tablename__ = "business_hours"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    business_id: Mapped[int] = mapped_column(ForeignKey("businesses.id"), index=True)
    weekday: Mapped[int] = mapped_column(Integer)
    open_time: Mapped[time] = mapped_column(Time)
    close_time: Mapped[time] = mapped_column(Time)


class Service(Base):
    __tablename__ = "services"
    __table_args__ = (UniqueConstraint("business_id", "name", name="uq_services_business_name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    business_id: Mapped[int] = mapped_column(ForeignKey("businesses.id"), index=True)
    name: Mapped[str] = mapped_column(String(120))
    duration_min: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    size_durations = relationship("ServiceSizeDuration", cascade="all, delete-orphan")


class ServiceSizeDuration(Base):
    __tablename__ = "service_size_durations"
    __table_args__ = (UniqueConstraint("service_id", "vehicle_size", name="uq_service_size"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    service_id: Mapped[int] = mapped_column(ForeignKey("services.id"), index=True)
    vehicle_size: Mapped[str] = mapped_column(String(16))
    duration_min: Mapped[int] = mapped_column(Integer)


class Client(Base):
    __tablename__ = "clients"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    business_id: Mapped[int] = mapped_column(ForeignKey("businesses.id"), index=True)
    name: Mapped[str] = mapped_column(String(120), index=True)
    phone: Mapped[str | None] = mapped_column(String(40), nullable=True)
    cadence_days: Mapped[int | None] = mapped_column(Integer, nullable=True)


class Job(Base):
    __tablename__ = "jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    business_id: Mapped[int] = mapped_column(ForeignKey("businesses.id"), index=True)
    client_id: Mapped[int | None] = mapped_column(ForeignKey("clients.id"), nullable=True, index=True)
    service_id: Mapped[int | None] = mapped_column(ForeignKey("services.id"), nullable=True)
    scheduled_start: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)
    scheduled_end: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    status: Mapped[str] = mapped_column(String(32), default="scheduled", index=True)
    vehicle_size: Mapped[str | None] = mapped_column(String(16), nullable=True)
    estimated_cost: Mapped[float | None] = mapped_column(Float, nullable=True)
    priority_block_id: Mapped[int | None] = mapped_column(ForeignKey("priority_blocks.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)

    client = relationship("Client")


class PriorityBlock(Base):
    __tablename__ = "priority_blocks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    business_id: Mapped[int] = mapped_column(ForeignKey("businesses.id"), index=True)
    name: Mapped[str] = mapped_column(String(120))
    day_of_week: Mapped[int] = mapped_column(Integer)
    start_time: Mapped[time] = mapped_column(Time)
    end_time: Mapped[time] = mapped_column(Time)
    priority_for: Mapped[str] = mapped_column(String(40), default="vip_customers")
    fallback_hours: Mapped[int] = mapped_column(Integer, default=24)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)


class TimeBlock(Base):
    __tablename__ = "time_blocks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    business_id: Mapped[int] = mapped_column(ForeignKey("businesses.id"), index=True)
    title: Mapped[str] = mapped_column(String(120))
    start_dt: Mapped[datetime] = mapped_column(DateTime)
    end_dt: Mapped[datetime] = mapped_column(DateTime)
    recurrence_pattern: Mapped[str] = mapped_column(String(16), default="none")
    recurrence_end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    recurrence_count: Mapped[int | None] = mapped_column(Integer, nullable=True)


class SmartNotification(Base):
    __tablename__ = "smart_notifications"
    __table_args__ = (
        Index(
            "uq_smart_notifications_open_key",
            "business_id",
            "type",
            "natural_key",
            unique=True,
            sqlite_where=text("status IN ('active', 'snoozed')"),
            postgresql_where=text("status IN ('active', 'snoozed')"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    business_id: Mapped[int] = mapped_column(ForeignKey("businesses.id"), index=True)
    type: Mapped[str] = mapped_column(String(32), index=True)
    natural_key: Mapped[str] = mapped_column(String(120))
    fingerprint: Mapped[str] = mapped_column(String(160))
    title: Mapped[str] = mapped_column(String(200))
    message: Mapped[str] = mapped_column(String(1000))
    priority: Mapped[str] = mapped_column(String(16), default="medium")
    status: Mapped[str] = mapped_column(String(16), default="active", index=True)
    metadata_json: Mapped[str] = mapped_column(Text, default="{}")
    snoozed_until: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(16), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)

    @property
    def metadata_payload(self) -> dict:
        try:
            return json.loads(self.metadata_json or "{}")
        except Exception:
            return {}
