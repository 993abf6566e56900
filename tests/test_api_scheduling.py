import threading
from datetime import date, datetime, time

from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from app.api import get_db, router
from app.config import settings
from app.core.errors import ConflictOnCommit
from app.db import Base
from app.models import Business, Client, Job, PriorityBlock, TimeBlock
from app.services import (
    book_job,
    create_service,
    get_available_slots,
    get_business_by_slug,
    get_or_create_business,
    resolve_customer_type,
    set_business_hours,
)

BOOKED_AT = datetime(2030, 1, 1, 8, 0)


def make_client(tmp_path):
    db_path = tmp_path / "test_detailos.db"
    database_url = f"sqlite:///{db_path}"
    engine = create_engine(
        database_url,
        connect_args={"check_same_thread": False},
    )
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    Base.metadata.create_all(bind=engine)

    app = FastAPI()
    app.include_router(router)

    def override_get_db():
        db = TestingSessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    return TestClient(app), TestingSessionLocal


def test_availability_defaults_to_weekday_hours(tmp_path):
    client, _ = make_client(tmp_path)

    response = client.get("/api/availability", params={"date_from": "2030-01-08", "duration_min": 60})
    assert response.status_code == 200
    body = response.json()
    assert body["business_slug"] == "demo"
    assert len(body["slots"]) == 29
    assert body["slots"][0]["start"].startswith("2030-01-08T09:00:00")
    assert body["slots"][-1]["start"].startswith("2030-01-08T16:00:00")

    weekend = client.get("/api/availability", params={"date_from": "2030-01-05", "duration_min": 60})
    assert weekend.status_code == 200
    assert weekend.json()["slots"] == []


def test_booking_then_conflict(tmp_path):
    client, _ = make_client(tmp_path)
    headers = {"X-Business-Slug": "north"}

    payload = {"start": "2030-01-08T10:00:00", "duration_min": 60, "client_name": "Jan Nowak"}
    created = client.post("/api/jobs", json=payload, headers=headers)
    assert created.status_code == 201
    assert created.json()["status"] == "scheduled"
    assert created.json()["client_id"] is not None

    again = client.post("/api/jobs", json=payload, headers=headers)
    assert again.status_code == 409

    overlapping = client.post("/api/jobs", json={**payload, "start": "2030-01-08T10:30:00"}, headers=headers)
    assert overlapping.status_code == 409

    outside = client.post("/api/jobs", json={**payload, "start": "2030-01-08T16:30:00"}, headers=headers)
    assert outside.status_code == 409
    assert outside.json()["detail"] == "Slot exceeds business hours"

    slots = client.get(
        "/api/availability",
        params={"date_from": "2030-01-08", "duration_min": 60},
        headers=headers,
    ).json()["slots"]
    starts = [s["start"][:16] for s in slots]
    assert starts[:2] == ["2030-01-08T09:00", "2030-01-08T11:00"]
    assert "2030-01-08T10:00" not in starts

    # other businesses keep their own calendar
    other = client.post("/api/jobs", json=payload, headers={"X-Business-Slug": "south"})
    assert other.status_code == 201


def test_booking_requires_duration_source(tmp_path):
    client, _ = make_client(tmp_path)
    response = client.post("/api/jobs", json={"start": "2030-01-08T10:00:00"})
    assert response.status_code == 422


def test_service_duration_by_vehicle_size(tmp_path):
    client, SessionLocal = make_client(tmp_path)
    with SessionLocal() as db:
        business = get_or_create_business(db, "north", "North Detailing")
        service = create_service(db, business.id, "Full detail", 120, {"large": 180})
        service_id = service.id

    headers = {"X-Business-Slug": "north"}
    params = {"date_from": "2030-01-08", "service_id": service_id}
    default = client.get("/api/availability", params=params, headers=headers).json()
    large = client.get("/api/availability", params={**params, "vehicle_size": "large"}, headers=headers).json()
    assert default["duration_min"] == 120
    assert large["duration_min"] == 180
    assert large["slots"][-1]["start"].startswith("2030-01-08T14:00:00")

    missing = client.get("/api/availability", params={**params, "service_id": 999}, headers=headers)
    assert missing.status_code == 422


def test_availability_validates_range(tmp_path):
    client, _ = make_client(tmp_path)
    too_long = client.get(
        "/api/availability",
        params={"date_from": "2030-01-01", "date_to": "2030-03-01", "duration_min": 60},
    )
    assert too_long.status_code == 400

    no_duration = client.get("/api/availability", params={"date_from": "2030-01-08"})
    assert no_duration.status_code == 400


def test_configured_hours_and_timezone(tmp_path):
    client, SessionLocal = make_client(tmp_path)
    with SessionLocal() as db:
        business = get_or_create_business(db, "waw", "Warsaw Detailing", timezone="Europe/Warsaw")
        set_business_hours(db, business.id, {1: [(time(8, 0), time(12, 0))]})

    headers = {"X-Business-Slug": "waw"}
    slots = client.get(
        "/api/availability",
        params={"date_from": "2030-01-08", "duration_min": 240},
        headers=headers,
    ).json()
    assert slots["timezone"] == "Europe/Warsaw"
    assert [s["start"][:16] for s in slots["slots"]] == ["2030-01-08T08:00"]

    booked = client.post("/api/jobs", json={"start": "2030-01-08T10:00:00", "duration_min": 60}, headers=headers)
    assert booked.status_code == 201
    assert booked.json()["start"].startswith("2030-01-08T10:00:00")

    with SessionLocal() as db:
        business = db.execute(select(Business).where(Business.slug == "waw")).scalar_one()
        job = db.execute(select(Job).where(Job.business_id == business.id)).scalar_one()
        assert job.scheduled_start == datetime(2030, 1, 8, 9, 0)


def test_split_shift_booking_across_the_seam(tmp_path):
    _, SessionLocal = make_client(tmp_path)
    with SessionLocal() as db:
        business = get_or_create_business(db, "north", "North Detailing")
        set_business_hours(db, business.id, {1: [(time(9, 0), time(12, 0)), (time(12, 0), time(17, 0))]})

        starts = [s.start for s in get_available_slots(db, business, date(2030, 1, 8), None, 60, now=BOOKED_AT)]
        assert datetime(2030, 1, 8, 11, 30) in starts

        job = book_job(db, business, datetime(2030, 1, 8, 11, 30), duration_min=60, now=BOOKED_AT)
        assert job.scheduled_end == datetime(2030, 1, 8, 12, 30)


def test_concurrent_bookings_for_one_slot_conflict(tmp_path):
    _, SessionLocal = make_client(tmp_path)
    with SessionLocal() as db:
        get_or_create_business(db, "north", "North Detailing")

    barrier = threading.Barrier(2)
    results = []

    def book():
        with SessionLocal() as db:
            business = get_business_by_slug(db, "north")
            barrier.wait(timeout=5)
            try:
                book_job(db, business, datetime(2030, 1, 8, 10, 0), duration_min=60, now=BOOKED_AT)
                results.append("booked")
            except ConflictOnCommit:
                results.append("conflict")

    threads = [threading.Thread(target=book) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert sorted(results) == ["booked", "conflict"]
    with SessionLocal() as db:
        assert db.execute(select(func.count(Job.id))).scalar_one() == 1


def _completed_job(db, business_id, client_id, cost):
    db.add(
        Job(
            business_id=business_id,
            client_id=client_id,
            scheduled_start=datetime(2029, 12, 3, 10, 0),
            scheduled_end=datetime(2029, 12, 3, 12, 0),
            status="completed",
            estimated_cost=cost,
        )
    )
    db.commit()


def _vip_morning(db, business_id, fallback_hours=24):
    db.add(
        PriorityBlock(
            business_id=business_id,
            name="VIP morning",
            day_of_week=1,
            start_time=time(9, 0),
            end_time=time(10, 0),
            priority_for="vip_customers",
            fallback_hours=fallback_hours,
            enabled=True,
        )
    )
    db.commit()


def test_priority_window_is_held_until_fallback(tmp_path):
    _, SessionLocal = make_client(tmp_path)
    tuesday = date(2030, 1, 8)
    with SessionLocal() as db:
        business = get_or_create_business(db, "north", "North Detailing")
        _vip_morning(db, business.id)

        held = get_available_slots(db, business, tuesday, None, 60, now=datetime(2030, 1, 6, 8, 0))
        assert held[0].start == datetime(2030, 1, 8, 10, 0)

        for_vip = get_available_slots(
            db, business, tuesday, None, 60, customer_type="vip_customers", now=datetime(2030, 1, 6, 8, 0)
        )
        assert for_vip[0].start == datetime(2030, 1, 8, 9, 0)

        # 24 hours before the window it is released to everyone
        released = get_available_slots(db, business, tuesday, None, 60, now=datetime(2030, 1, 7, 9, 0))
        assert released[0].start == datetime(2030, 1, 8, 9, 0)


def test_customer_type_comes_from_client_history(tmp_path):
    client, SessionLocal = make_client(tmp_path)
    headers = {"X-Business-Slug": "north"}
    with SessionLocal() as db:
        business = get_or_create_business(db, "north", "North Detailing")
        _vip_morning(db, business.id, fallback_hours=0)
        vip = Client(business_id=business.id, name="Vera Nowak", phone="500600700")
        regular = Client(business_id=business.id, name="Olek Kowal", phone="500600701")
        db.add_all([vip, regular])
        db.commit()
        _completed_job(db, business.id, vip.id, 650)
        _completed_job(db, business.id, regular.id, 120)
        vip_id = vip.id

        assert resolve_customer_type(db, business.id, client_id=vip_id) == "vip_customers"
        assert resolve_customer_type(db, business.id, phone="500600701") == "returning_customers"
        assert resolve_customer_type(db, business.id, name="Someone New") == "new_customers"
        assert resolve_customer_type(db, business.id) is None

    params = {"date_from": "2030-01-08", "duration_min": 60}
    anonymous = client.get(
        "/api/availability", params={**params, "customer_type": "vip_customers"}, headers=headers
    ).json()["slots"]
    assert anonymous[0]["start"].startswith("2030-01-08T10:00:00")
    vip_slots = client.get("/api/availability", params={**params, "client_id": vip_id}, headers=headers).json()["slots"]
    assert vip_slots[0]["start"].startswith("2030-01-08T09:00:00")

    payload = {"start": "2030-01-08T09:00:00", "duration_min": 60}
    claimed = client.post(
        "/api/jobs", json={**payload, "client_phone": "500600701", "customer_type": "vip_customers"}, headers=headers
    )
    assert claimed.status_code == 409
    assert claimed.json()["detail"] == "Slot overlaps a blocked window"

    booked = client.post("/api/jobs", json={**payload, "client_id": vip_id}, headers=headers)
    assert booked.status_code == 201
    assert booked.json()["client_id"] == vip_id


def test_time_blocks_are_removed_from_availability(tmp_path):
    client, SessionLocal = make_client(tmp_path)
    with SessionLocal() as db:
        business = get_or_create_business(db, "north", "North Detailing")
        db.add(
            TimeBlock(
                business_id=business.id,
                title="Team training",
                start_dt=datetime(2030, 1, 1, 12, 0),
                end_dt=datetime(2030, 1, 1, 13, 0),
                recurrence_pattern="weekly",
            )
        )
        db.commit()

    slots = client.get(
        "/api/availability",
        params={"date_from": "2030-01-08", "duration_min": 60},
        headers={"X-Business-Slug": "north"},
    ).json()["slots"]
    starts = [s["start"][11:16] for s in slots]
    assert "11:00" in starts
    assert "13:00" in starts
    assert not [s for s in starts if "11:00" < s < "13:00"]


def test_worker_capacity_allows_parallel_bookings(tmp_path):
    _, SessionLocal = make_client(tmp_path)
    tuesday = date(2030, 1, 8)
    ten = datetime(2030, 1, 8, 10, 0)
    with SessionLocal() as db:
        business = get_or_create_business(db, "north", "North Detailing", worker_capacity=2)

        book_job(db, business, ten, duration_min=60, now=BOOKED_AT)
        starts = [s.start for s in get_available_slots(db, business, tuesday, None, 60, now=BOOKED_AT)]
        assert ten in starts

        book_job(db, business, ten, duration_min=60, now=BOOKED_AT)
        starts = [s.start for s in get_available_slots(db, business, tuesday, None, 60, now=BOOKED_AT)]
        assert ten not in starts
        assert datetime(2030, 1, 8, 11, 0) in starts


def test_missing_hours_without_fallback_is_unprocessable(tmp_path):
    client, _ = make_client(tmp_path)
    previous_fallback = bool(settings.DEFAULT_HOURS_FALLBACK)
    try:
        settings.DEFAULT_HOURS_FALLBACK = False
        response = client.get("/api/availability", params={"date_from": "2030-01-08", "duration_min": 60})
        assert response.status_code == 422
        assert response.json()["detail"] == "Business has no working hours"
    finally:
        settings.DEFAULT_HOURS_FALLBACK = previous_fallback
