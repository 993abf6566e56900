from datetime import datetime
from types import SimpleNamespace

import httpx
import pytest
from fastapi.testclient import TestClient

from app.config import settings
from app.core.delivery import deliver_new_notifications
from app.core.locks import ScanLockBusy, business_scan_lock, lock_name
from app.core.observability import masking_processor
from app.main import app


def test_health_ok_without_redis():
    previous_redis = settings.REDIS_URL
    try:
        settings.REDIS_URL = ""
        client = TestClient(app)
        response = client.get("/health")
        assert response.status_code == 200
        payload = response.json()
        assert payload["status"] == "ok"
        assert payload["checks"]["db"] == "ok"
        assert payload["checks"]["redis"] == "skipped"
    finally:
        settings.REDIS_URL = previous_redis


def test_security_headers_are_present():
    previous_security_headers = bool(settings.SECURITY_HEADERS_ENABLED)
    try:
        settings.SECURITY_HEADERS_ENABLED = True
        client = TestClient(app)
        response = client.get("/ping")
        assert response.status_code == 200
        assert response.headers.get("X-Content-Type-Options") == "nosniff"
        assert response.headers.get("X-Frame-Options") == "DENY"
        assert response.headers.get("Referrer-Policy") == "no-referrer"
    finally:
        settings.SECURITY_HEADERS_ENABLED = previous_security_headers


def test_request_id_is_echoed():
    client = TestClient(app)
    response = client.get("/ping", headers={"X-Request-ID": "req-123"})
    assert response.headers.get("X-Request-ID") == "req-123"


def test_phone_numbers_are_masked_in_logs():
    event = masking_processor(None, "info", {"event": "x", "customer_phone": "500600700", "phone": "123"})
    assert event["customer_phone"] == "500***00"
    assert event["phone"] == "***"


class FakeLock:
    def __init__(self, acquired):
        self.acquired = acquired
        self.released = False

    def acquire(self):
        return self.acquired

    def release(self):
        self.released = True


class FakeRedis:
    def __init__(self, acquired=True):
        self.lock_obj = FakeLock(acquired)
        self.names = []

    def lock(self, name, timeout=None, blocking_timeout=None):
        self.names.append(name)
        return self.lock_obj


def test_scan_lock_is_released():
    fake = FakeRedis()
    with business_scan_lock(4, client=fake):
        pass
    assert fake.names == [lock_name(4)]
    assert fake.lock_obj.released


def test_busy_scan_lock_raises():
    with pytest.raises(ScanLockBusy):
        with business_scan_lock(4, client=FakeRedis(acquired=False)):
            pass


def test_scan_lock_skipped_without_redis():
    previous_redis = settings.REDIS_URL
    try:
        settings.REDIS_URL = ""
        ran = []
        with business_scan_lock(4):
            ran.append(True)
        assert ran == [True]
    finally:
        settings.REDIS_URL = previous_redis


def _notification(id, priority):
    return SimpleNamespace(
        id=id,
        type="empty_priority_slot",
        priority=priority,
        title="VIP morning is still open",
        message="Reach out to vip customers.",
        metadata_payload={"block_id": 1},
        created_at=datetime(2030, 1, 7, 8, 0),
    )


def test_only_urgent_notifications_are_delivered():
    previous_url = settings.NOTIFY_WEBHOOK_URL
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200 if len(seen) == 1 else 500)

    try:
        settings.NOTIFY_WEBHOOK_URL = "https://hooks.example.test/detailos"
        client = httpx.Client(transport=httpx.MockTransport(handler))
        sent = deliver_new_notifications(
            "north",
            [_notification(1, "high"), _notification(2, "medium"), _notification(3, "high")],
            client=client,
        )
        assert sent == 1
        assert len(seen) == 2
    finally:
        settings.NOTIFY_WEBHOOK_URL = previous_url


def test_delivery_disabled_without_webhook():
    previous_url = settings.NOTIFY_WEBHOOK_URL
    try:
        settings.NOTIFY_WEBHOOK_URL = ""
        assert deliver_new_notifications("north", [_notification(1, "high")]) == 0
    finally:
        settings.NOTIFY_WEBHOOK_URL = previous_url
