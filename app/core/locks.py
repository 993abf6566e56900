from contextlib import contextmanager

import redis
import structlog

from ..config import settings

log = structlog.get_logger("detailos.locks")


class ScanLockBusy(RuntimeError):
    def __init__(self, business_id: int):
        super().__init__(f"Scan already running for business {business_id}")
        self.business_id = business_id


def _redis_client() -> redis.Redis | None:
    redis_url = (settings.REDIS_URL or "").strip()
    if not redis_url:
        return None
    return redis.from_url(redis_url, decode_responses=True)


def lock_name(business_id: int) -> str:
    return f"detailos:scan-lock:{int(business_id)}"


@contextmanager
def business_scan_lock(business_id: int, client: redis.Redis | None = None):
    """Serialize reconciliation for one business across workers.

    Without a configured redis the lock is skipped, which is only safe with a
    single scan worker.
    """
    client = client if client is not None else _redis_client()
    if client is None:
        log.warning("scan_lock_skipped", business_id=business_id, reason="no_redis_url")
        yield
        return

    lock = client.lock(
        lock_name(business_id),
        timeout=max(1, int(settings.SCAN_LOCK_TIMEOUT_SECONDS)),
        blocking_timeout=max(0, int(settings.SCAN_LOCK_WAIT_SECONDS)),
    )
    if not lock.acquire():
        raise ScanLockBusy(business_id)
    try:
        yield
    finally:
        try:
            lock.release()
        except redis.exceptions.LockError:
            log.warning("scan_lock_expired", business_id=business_id)
