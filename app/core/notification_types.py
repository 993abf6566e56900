from dataclasses import asdict, dataclass
from typing import Union

EMPTY_PRIORITY_SLOT = "empty_priority_slot"
CUSTOMER_OVERDUE = "customer_overdue"
GAP_OPPORTUNITY = "gap_opportunity"
NOTIFICATION_TYPES = (EMPTY_PRIORITY_SLOT, CUSTOMER_OVERDUE, GAP_OPPORTUNITY)

NOTIFICATION_PRIORITIES = ("low", "medium", "high")

STATUS_ACTIVE = "active"
STATUS_DISMISSED = "dismissed"
STATUS_SNOOZED = "snoozed"
STATUS_ACTED = "acted"
NOTIFICATION_STATUSES = {STATUS_ACTIVE, STATUS_DISMISSED, STATUS_SNOOZED, STATUS_ACTED}
OPEN_STATUSES = {STATUS_ACTIVE, STATUS_SNOOZED}

RESOLVED_BY_USER = "user"
RESOLVED_BY_SCAN = "scan"


@dataclass(frozen=True)
class EmptyPrioritySlotMetadata:
    block_id: int
    block_name: str
    date: str
    time: str
    priority_for: str


@dataclass(frozen=True)
class CustomerOverdueMetadata:
    customer_id: int
    customer_name: str
    customer_phone: str | None
    last_job_date: str
    days_overdue: int


@dataclass(frozen=True)
class GapOpportunityMetadata:
    gap_start: str
    gap_end: str
    gap_minutes: int
    before_job_id: int
    after_job_id: int


NotificationMetadata = Union[EmptyPrioritySlotMetadata, CustomerOverdueMetadata, GapOpportunityMetadata]

METADATA_TYPES = {
    EMPTY_PRIORITY_SLOT: EmptyPrioritySlotMetadata,
    CUSTOMER_OVERDUE: CustomerOverdueMetadata,
    GAP_OPPORTUNITY: GapOpportunityMetadata,
}


def natural_key(notification_type: str, metadata: dict) -> str:
    """Identity of the underlying condition; at most one open notification per key."""
    if notification_type == EMPTY_PRIORITY_SLOT:
        return f"{metadata['block_id']}:{metadata['date']}"
    if notification_type == CUSTOMER_OVERDUE:
        return str(metadata["customer_id"])
    if notification_type == GAP_OPPORTUNITY:
        return f"{metadata['before_job_id']}:{metadata['after_job_id']}"
    raise ValueError(f"Unknown notification type: {notification_type}")


def fingerprint(notification_type: str, metadata: dict) -> str:
    """Key inputs of the condition; a resolved notification only blocks an identical one."""
    key = natural_key(notification_type, metadata)
    if notification_type == CUSTOMER_OVERDUE:
        return f"{key}@{metadata['last_job_date']}"
    return key


@dataclass(frozen=True)
class Candidate:
    type: str
    title: str
    message: str
    priority: str
    metadata: NotificationMetadata

    def __post_init__(self):
        if self.priority not in NOTIFICATION_PRIORITIES:
            raise ValueError(f"Unknown notification priority: {self.priority}")
        expected = METADATA_TYPES.get(self.type)
        if expected is None or not isinstance(self.metadata, expected):
            raise ValueError(f"Metadata does not match notification type {self.type}")

    @property
    def metadata_dict(self) -> dict:
        return asdict(self.metadata)

    @property
    def natural_key(self) -> str:
        return natural_key(self.type, self.metadata_dict)

    @property
    def fingerprint(self) -> str:
        return fingerprint(self.type, self.metadata_dict)
