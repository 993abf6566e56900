from dataclasses import replace
from datetime import datetime, timedelta

import pytest

from app.core.errors import InvalidTransition
from app.core.lifecycle import NotificationState, reconcile, user_transition
from app.core.notification_types import (
    CUSTOMER_OVERDUE,
    GAP_OPPORTUNITY,
    NOTIFICATION_TYPES,
    RESOLVED_BY_SCAN,
    RESOLVED_BY_USER,
    Candidate,
    CustomerOverdueMetadata,
    GapOpportunityMetadata,
)

NOW = datetime(2030, 1, 7, 8, 0)


def gap(before_id=11, after_id=12, minutes=90):
    return Candidate(
        type=GAP_OPPORTUNITY,
        title=f"{minutes} minute gap on 2030-01-08",
        message="Offer it to waiting leads.",
        priority="medium",
        metadata=GapOpportunityMetadata(
            gap_start="2030-01-08T10:00:00",
            gap_end="2030-01-08T11:30:00",
            gap_minutes=minutes,
            before_job_id=before_id,
            after_job_id=after_id,
        ),
    )


def overdue(customer_id=3, last_job_date="2029-11-01", days=37):
    return Candidate(
        type=CUSTOMER_OVERDUE,
        title="Ala is due for a visit",
        message="Ala is overdue.",
        priority="high",
        metadata=CustomerOverdueMetadata(
            customer_id=customer_id,
            customer_name="Ala",
            customer_phone=None,
            last_job_date=last_job_date,
            days_overdue=days,
        ),
    )


def stored(candidate, id=1, status="active", **overrides):
    state = NotificationState(
        id=id,
        type=candidate.type,
        natural_key=candidate.natural_key,
        fingerprint=candidate.fingerprint,
        status=status,
        title=candidate.title,
        message=candidate.message,
        priority=candidate.priority,
        metadata=candidate.metadata_dict,
    )
    return replace(state, **overrides)


def test_first_detection_creates():
    plan = reconcile([gap()], [], NOW, NOTIFICATION_TYPES)
    assert [c.natural_key for c in plan.creates] == ["11:12"]
    assert plan.summary()["created"] == 1


def test_rescan_of_unchanged_condition_is_a_noop():
    candidate = gap()
    plan = reconcile([candidate, candidate], [stored(candidate)], NOW, NOTIFICATION_TYPES)
    assert plan.is_noop
    assert plan.unchanged == [1]


def test_changed_fields_update_existing_record():
    plan = reconcile([overdue(days=38)], [stored(overdue(days=37))], NOW, NOTIFICATION_TYPES)
    assert plan.creates == []
    assert len(plan.updates) == 1
    assert plan.updates[0].changes["metadata"]["days_overdue"] == 38


def test_absent_condition_is_auto_resolved():
    plan = reconcile([], [stored(gap())], NOW, NOTIFICATION_TYPES)
    assert plan.resolved == [1]
    assert plan.creates == []


def test_unscanned_types_are_left_alone():
    plan = reconcile([], [stored(gap())], NOW, {CUSTOMER_OVERDUE})
    assert plan.is_noop


def test_duplicate_open_records_keep_the_oldest():
    candidate = gap()
    plan = reconcile([candidate], [stored(candidate, id=5), stored(candidate, id=2)], NOW, NOTIFICATION_TYPES)
    assert plan.resolved == [5]
    assert plan.unchanged == [2]


def test_snoozed_record_stays_snoozed_until_expiry():
    candidate = gap()
    record = stored(candidate, status="snoozed", snoozed_until=NOW + timedelta(hours=3))

    assert reconcile([candidate], [record], NOW, NOTIFICATION_TYPES).is_noop
    # condition gone but the snooze has not expired yet
    assert reconcile([], [record], NOW, NOTIFICATION_TYPES).is_noop


def test_expired_snooze_is_reactivated_when_condition_holds():
    candidate = gap()
    record = stored(candidate, status="snoozed", snoozed_until=NOW - timedelta(minutes=1))
    plan = reconcile([candidate], [record], NOW, NOTIFICATION_TYPES)

    assert plan.reactivated == [1]
    assert plan.updates[0].changes == {"status": "active", "snoozed_until": None}


def test_expired_snooze_is_resolved_when_condition_is_gone():
    record = stored(gap(), status="snoozed", snoozed_until=NOW - timedelta(minutes=1))
    assert reconcile([], [record], NOW, NOTIFICATION_TYPES).resolved == [1]


def test_user_dismissal_suppresses_identical_condition():
    candidate = overdue()
    dismissed = stored(candidate, status="dismissed", resolved_by=RESOLVED_BY_USER)
    plan = reconcile([candidate], [dismissed], NOW, NOTIFICATION_TYPES)
    assert plan.creates == []
    assert plan.suppressed == [candidate]


def test_changed_key_inputs_create_a_new_record_after_dismissal():
    dismissed = stored(overdue(last_job_date="2029-11-01"), status="dismissed", resolved_by=RESOLVED_BY_USER)
    fresh = overdue(last_job_date="2029-12-20", days=5)
    plan = reconcile([fresh], [dismissed], NOW, NOTIFICATION_TYPES)
    assert plan.creates == [fresh]


def test_scan_resolved_record_suppresses_identical_condition():
    candidate = gap()
    resolved = stored(candidate, status="acted", resolved_by=RESOLVED_BY_SCAN)
    plan = reconcile([candidate], [resolved], NOW, NOTIFICATION_TYPES)
    assert plan.creates == []
    assert plan.suppressed == [candidate]

    # a different pair of neighbouring jobs is a new condition
    moved = gap(after_id=14)
    assert reconcile([moved], [resolved], NOW, NOTIFICATION_TYPES).creates == [moved]


def test_candidate_rejects_mismatched_metadata_and_priority():
    with pytest.raises(ValueError):
        Candidate(
            type=GAP_OPPORTUNITY,
            title="Ala is due for a visit",
            message="Ala is overdue.",
            priority="high",
            metadata=overdue().metadata,
        )
    with pytest.raises(ValueError):
        replace(gap(), priority="urgent")


def test_user_transitions():
    assert user_transition("active", "dismiss", NOW) == ("dismissed", None)
    assert user_transition("snoozed", "act", NOW) == ("acted", None)
    assert user_transition("active", "snooze", NOW) == ("snoozed", NOW + timedelta(hours=24))
    until = NOW + timedelta(hours=2)
    assert user_transition("active", "snooze", NOW, until=until) == ("snoozed", until)


def test_terminal_statuses_reject_user_actions():
    with pytest.raises(InvalidTransition):
        user_transition("dismissed", "act", NOW)
    with pytest.raises(InvalidTransition):
        user_transition("acted", "snooze", NOW)


def test_bad_snooze_and_unknown_action():
    with pytest.raises(ValueError):
        user_transition("active", "snooze", NOW, until=NOW - timedelta(minutes=5))
    with pytest.raises(ValueError):
        user_transition("active", "archive", NOW)
