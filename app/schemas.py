from datetime import date, datetime, timezone

from pydantic import BaseModel, Field, field_validator, model_validator


class SlotOut(BaseModel):
    start: datetime
    end: datetime


class AvailabilityOut(BaseModel):
    business_slug: str
    timezone: str
    duration_min: int
    date_from: date
    date_to: date
    slots: list[SlotOut]


class JobCreate(BaseModel):
    start: datetime
    service_id: int | None = None
    duration_min: int | None = Field(default=None, ge=5, le=720)
    vehicle_size: str | None = Field(default=None, max_length=16)
    client_id: int | None = None
    client_name: str | None = Field(default=None, min_length=2, max_length=120)
    client_phone: str | None = Field(default=None, min_length=7, max_length=40)

    @model_validator(mode="after")
    def validate_duration_source(self) -> "JobCreate":
        if self.duration_min is None and self.service_id is None:
            raise ValueError("service_id or duration_min is required")
        return self


class JobOut(BaseModel):
    id: int
    start: datetime
    end: datetime
    status: str
    client_id: int | None = None
    service_id: int | None = None
    vehicle_size: str | None = None


class NotificationOut(BaseModel):
    id: int
    type: str
    title: str
    message: str
    priority: str
    status: str
    metadata: dict
    snoozed_until: datetime | None = None
    resolved_by: str | None = None
    created_at: datetime
    updated_at: datetime


class SnoozeRequest(BaseModel):
    until: datetime | None = None

    @field_validator("until")
    @classmethod
    def validate_until_not_past(cls, value: datetime | None) -> datetime | None:
        if value is None:
            return value
        candidate = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        if candidate <= datetime.now(timezone.utc):
            raise ValueError("until must be in the future")
        return value


class ScanReportOut(BaseModel):
    business_slug: str
    status: str
    scanned_types: list[str]
    skipped_types: list[str]
    failures: dict[str, str]
    summary: dict[str, int]
    created_ids: list[int]
    delivered: int = 0
