"""Reconciliation of freshly detected candidates against stored notifications.

``reconcile`` is pure: it returns a plan and the caller applies it inside a
single transaction. Running it twice against the same inputs yields the same
plan, and applying a plan then reconciling again yields an empty one.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable

from .errors import InvalidTransition
from .notification_types import (
    OPEN_STATUSES,
    STATUS_ACTED,
    STATUS_ACTIVE,
    STATUS_DISMISSED,
    STATUS_SNOOZED,
    Candidate,
)

MUTABLE_FIELDS = ("title", "message", "priority", "metadata")

USER_ACTIONS = {
    "dismiss": STATUS_DISMISSED,
    "snooze": STATUS_SNOOZED,
    "act": STATUS_ACTED,
}
ALLOWED_USER_TRANSITIONS = {
    STATUS_ACTIVE: {STATUS_DISMISSED, STATUS_SNOOZED, STATUS_ACTED},
    STATUS_SNOOZED: {STATUS_DISMISSED, STATUS_SNOOZED, STATUS_ACTED},
    STATUS_DISMISSED: set(),
    STATUS_ACTED: set(),
}


@dataclass(frozen=True)
class NotificationState:
    id: int
    type: str
    natural_key: str
    fingerprint: str
    status: str
    title: str
    message: str
    priority: str
    metadata: dict
    snoozed_until: datetime | None = None
    resolved_by: str | None = None

    def snooze_expired(self, now: datetime) -> bool:
        return self.snoozed_until is None or self.snoozed_until <= now


@dataclass(frozen=True)
class NotificationUpdate:
    notification_id: int
    status: str
    changes: dict


@dataclass
class ReconcilePlan:
    creates: list[Candidate] = field(default_factory=list)
    updates: list[NotificationUpdate] = field(default_factory=list)
    resolved: list[int] = field(default_factory=list)
    suppressed: list[Candidate] = field(default_factory=list)
    unchanged: list[int] = field(default_factory=list)

    @property
    def reactivated(self) -> list[int]:
        return [u.notification_id for u in self.updates if u.status == STATUS_ACTIVE and "status" in u.changes]

    @property
    def is_noop(self) -> bool:
        return not (self.creates or self.updates or self.resolved)

    def summary(self) -> dict:
        return {
            "created": len(self.creates),
            "updated": len(self.updates),
            "reactivated": len(self.reactivated),
            "resolved": len(self.resolved),
            "suppressed": len(self.suppressed),
            "unchanged": len(self.unchanged),
        }


def _field_changes(record: NotificationState, candidate: Candidate) -> dict:
    fresh = {
        "title": candidate.title,
        "message": candidate.message,
        "priority": candidate.priority,
        "metadata": candidate.metadata_dict,
    }
    return {name: fresh[name] for name in MUTABLE_FIELDS if getattr(record, name) != fresh[name]}


def reconcile(
    candidates: Iterable[Candidate],
    existing: Iterable[NotificationState],
    now: datetime,
    scanned_types: Iterable[str],
) -> ReconcilePlan:
    scanned = set(scanned_types)
    plan = ReconcilePlan()

    fresh: dict[tuple[str, str], Candidate] = {}
    for candidate in candidates:
        if candidate.type not in scanned:
            continue
        fresh.setdefault((candidate.type, candidate.natural_key), candidate)

    open_by_key: dict[tuple[str, str], NotificationState] = {}
    closed_fingerprints: set[tuple[str, str]] = set()
    for record in sorted(existing, key=lambda r: r.id):
        if record.type not in scanned:
            continue
        key = (record.type, record.natural_key)
        if record.status in OPEN_STATUSES:
            if key in open_by_key:
                # a second open record for one condition; keep the oldest
                plan.resolved.append(record.id)
                continue
            open_by_key[key] = record
        else:
            # dismissed or acted, by the user or by a scan
            closed_fingerprints.add((record.type, record.fingerprint))

    for key, candidate in fresh.items():
        record = open_by_key.get(key)
        if record is None:
            if (candidate.type, candidate.fingerprint) in closed_fingerprints:
                plan.suppressed.append(candidate)
            else:
                plan.creates.append(candidate)
            continue

        if record.status == STATUS_SNOOZED:
            if not record.snooze_expired(now):
                plan.unchanged.append(record.id)
                continue
            changes = _field_changes(record, candidate)
            changes["status"] = STATUS_ACTIVE
            changes["snoozed_until"] = None
            plan.updates.append(NotificationUpdate(record.id, STATUS_ACTIVE, changes))
            continue

        changes = _field_changes(record, candidate)
        if changes:
            plan.updates.append(NotificationUpdate(record.id, record.status, changes))
        else:
            plan.unchanged.append(record.id)

    for key, record in open_by_key.items():
        if key in fresh:
            continue
        if record.status == STATUS_SNOOZED and not record.snooze_expired(now):
            plan.unchanged.append(record.id)
            continue
        plan.resolved.append(record.id)
    return plan


def user_transition(
    current_status: str,
    action: str,
    now: datetime,
    until: datetime | None = None,
    default_snooze_hours: int = 24,
) -> tuple[str, datetime | None]:
    """Validate a dismiss/snooze/act request and return ``(status, snoozed_until)``."""
    target = USER_ACTIONS.get(action)
    if target is None:
        raise ValueError(f"Unknown notification action: {action}")
    if target not in ALLOWED_USER_TRANSITIONS.get(current_status, set()):
        raise InvalidTransition(current_status, action)
    if target != STATUS_SNOOZED:
        return target, None
    snoozed_until = until or now + timedelta(hours=max(1, int(default_snooze_hours)))
    if snoozed_until <= now:
        raise ValueError("snoozed_until must be in the future")
    return target, snoozed_until

