from .notification_types import CUSTOMER_OVERDUE, EMPTY_PRIORITY_SLOT, GAP_OPPORTUNITY

TIER_NOTIFICATION_TYPES = {
    "starter": frozenset({EMPTY_PRIORITY_SLOT, CUSTOMER_OVERDUE}),
    "pro": frozenset({EMPTY_PRIORITY_SLOT, CUSTOMER_OVERDUE, GAP_OPPORTUNITY}),
    "fleet": frozenset({EMPTY_PRIORITY_SLOT, CUSTOMER_OVERDUE, GAP_OPPORTUNITY}),
}


def enabled_notification_types(tier: str | None) -> set[str]:
    """Notification types a business tier may receive; unknown tiers get the starter set."""
    normalized = (tier or "starter").strip().lower()
    return set(TIER_NOTIFICATION_TYPES.get(normalized, TIER_NOTIFICATION_TYPES["starter"]))
