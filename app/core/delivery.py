import httpx
import structlog

from ..config import settings

log = structlog.get_logger("detailos.delivery")

DELIVERED_PRIORITIES = {"high"}


def _payload(business_slug: str, notification) -> dict:
    return {
        "business": business_slug,
        "id": notification.id,
        "type": notification.type,
        "priority": notification.priority,
        "title": notification.title,
        "message": notification.message,
        "metadata": notification.metadata_payload,
        "created_at": notification.created_at.isoformat() + "Z",
    }


def deliver_new_notifications(business_slug: str, notifications: list, client: httpx.Client | None = None) -> int:
    """Push freshly created urgent notifications to the configured webhook.

    Returns the number of notifications the webhook accepted. Delivery errors
    are logged; the notifications themselves are already committed.
    """
    url = (settings.NOTIFY_WEBHOOK_URL or "").strip()
    urgent = [n for n in notifications if n.priority in DELIVERED_PRIORITIES]
    if not url or not urgent:
        return 0

    owns_client = client is None
    client = client or httpx.Client(timeout=float(settings.NOTIFY_TIMEOUT_SECONDS))
    delivered = 0
    try:
        for notification in urgent:
            try:
                response = client.post(url, json=_payload(business_slug, notification))
                response.raise_for_status()
                delivered += 1
            except httpx.HTTPError as exc:
                log.warning(
                    "notification_delivery_failed",
                    business=business_slug,
                    notification_id=notification.id,
                    error=str(exc),
                )
    finally:
        if owns_client:
            client.close()
    return delivered
