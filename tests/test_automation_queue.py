from datetime import timedelta

from sqlalchemy import func, select

from fieldflow.core.clock import as_utc, utcnow
from fieldflow.models.automation import AutomationAnchor, AutomationQueueItem, AutomationRule, ScheduledTrigger
from fieldflow.services.automation_events import AutomationEvent, build_event
from fieldflow.services.automation_queue import (
    backoff_seconds,
    build_fingerprint,
    claim_next,
    cleanup_queue,
    enqueue,
    queue_stats,
    record_failure,
    record_success,
    requeue,
)
from tests.conftest import make_rule


def _signed_event(location_id: str, entity_id: str, occurrence: str = "quote-signed:1"):
    return build_event(
        "quote-signed",
        location_id=location_id,
        entity_type="quote",
        entity_id=entity_id,
        data={"quote": {"id": entity_id, "total": 4200}},
        occurrence_id=occurrence,
    )


def _enqueue_one(session_local, db, seeded, occurrence: str = "quote-signed:1") -> AutomationQueueItem:
    rule_id = make_rule(session_local, seeded.location_id)
    rule = db.get(AutomationRule, rule_id)
    outcome = enqueue(db, rule=rule, event=_signed_event(seeded.location_id, seeded.quote_id, occurrence))
    db.commit()
    return outcome.item


def test_enqueue_is_idempotent_per_occurrence(session_local, db, seeded):
    rule = db.get(AutomationRule, make_rule(session_local, seeded.location_id))
    event = _signed_event(seeded.location_id, seeded.quote_id)

    first = enqueue(db, rule=rule, event=event)
    second = enqueue(db, rule=rule, event=event)
    other = enqueue(db, rule=rule, event=_signed_event(seeded.location_id, seeded.quote_id, "quote-signed:2"))
    db.commit()

    assert first.created is True
    assert second.created is False
    assert second.item.id == first.item.id
    assert other.created is True
    assert db.execute(select(func.count(AutomationQueueItem.id))).scalar_one() == 2

    item = first.item
    assert item.fingerprint == build_fingerprint(
        location_id=seeded.location_id,
        rule_id=rule.id,
        entity_id=seeded.quote_id,
        occurrence_id="quote-signed:1",
    )
    assert item.status == "pending"
    assert item.max_attempts == 3
    assert AutomationEvent.from_json(item.trigger_json) == event


def test_claim_is_exclusive_between_workers(session_local, db, seeded):
    item = _enqueue_one(session_local, db, seeded)

    with session_local() as worker_a, session_local() as worker_b:
        claimed = claim_next(worker_a, worker_id="a")
        assert claimed is not None
        assert claimed.id == item.id
        assert claimed.status == "processing"
        assert claimed.attempts == 1
        assert claimed.claimed_by == "a"

        assert claim_next(worker_b, worker_id="b") is None


def test_future_retry_is_not_claimed_early(session_local, db, seeded):
    item = _enqueue_one(session_local, db, seeded)
    item.next_attempt_at = utcnow() + timedelta(minutes=5)
    db.commit()

    assert claim_next(db, worker_id="w1") is None
    assert claim_next(db, worker_id="w1", now=utcnow() + timedelta(minutes=6)) is not None


def test_stale_claim_is_reclaimed_once_and_old_worker_loses(session_local, db, seeded):
    _enqueue_one(session_local, db, seeded)
    start = utcnow()

    with session_local() as crashed, session_local() as rescuer_a, session_local() as rescuer_b:
        first_claim = claim_next(crashed, worker_id="crashed", now=start)
        assert first_claim is not None
        item_id = first_claim.id

        later = start + timedelta(seconds=301)
        reclaimed = claim_next(rescuer_a, worker_id="rescuer-a", now=later)
        assert reclaimed is not None
        assert reclaimed.id == item_id
        assert reclaimed.attempts == 2
        assert reclaimed.claim_token != first_claim.claim_token

        assert claim_next(rescuer_b, worker_id="rescuer-b", now=later) is None

        assert record_success(crashed, first_claim, result_json={"late": True}) is False
        crashed.commit()
        assert record_success(rescuer_a, reclaimed, result_json={"ok": True}) is True
        rescuer_a.commit()

    db.expire_all()
    stored = db.get(AutomationQueueItem, item_id)
    assert stored.status == "completed"
    assert stored.result_json == {"ok": True}


def test_claim_within_timeout_is_not_stolen(session_local, db, seeded):
    _enqueue_one(session_local, db, seeded)
    start = utcnow()
    assert claim_next(db, worker_id="w1", now=start) is not None
    assert claim_next(db, worker_id="w2", now=start + timedelta(seconds=120)) is None


def test_backoff_doubles_and_caps():
    assert backoff_seconds(1) == 30
    assert backoff_seconds(2) == 60
    assert backoff_seconds(3) == 120
    assert backoff_seconds(40) == 3600


def test_retries_then_dead_letters_with_alert(session_local, db, seeded):
    item = _enqueue_one(session_local, db, seeded)
    alerts = []
    now = utcnow()
    statuses = []

    for _ in range(3):
        claimed = claim_next(db, worker_id="w1", now=now)
        assert claimed is not None
        status = record_failure(
            db,
            claimed,
            error="CRM timeout",
            now=now,
            alert=lambda queue_item, exc: alerts.append((queue_item.id, exc.attempts, exc.last_error)),
        )
        db.commit()
        statuses.append(status)
        if status == "pending":
            db.expire_all()
            stored = db.get(AutomationQueueItem, item.id)
            assert as_utc(stored.next_attempt_at) == now + timedelta(seconds=backoff_seconds(claimed.attempts))
        now = now + timedelta(hours=2)

    assert statuses == ["pending", "pending", "dead-lettered"]
    assert alerts == [(item.id, 3, "CRM timeout")]

    db.expire_all()
    stored = db.get(AutomationQueueItem, item.id)
    assert stored.status == "dead-lettered"
    assert stored.dead_lettered_at is not None
    assert claim_next(db, worker_id="w1", now=now + timedelta(days=1)) is None


def test_non_retryable_failure_is_terminal(session_local, db, seeded):
    _enqueue_one(session_local, db, seeded)
    claimed = claim_next(db, worker_id="w1")
    assert record_failure(db, claimed, error="Rule no longer exists", retryable=False) == "failed"
    db.commit()
    assert claim_next(db, worker_id="w1", now=utcnow() + timedelta(days=1)) is None


def test_requeue_resets_dead_letter(session_local, db, seeded):
    item = _enqueue_one(session_local, db, seeded)
    item.status = "dead-lettered"
    item.attempts = 3
    item.dead_lettered_at = utcnow()
    db.commit()

    assert requeue(db, location_id="other-location", item_id=item.id) is False
    assert requeue(db, location_id=seeded.location_id, item_id=item.id) is True
    db.commit()
    db.expire_all()

    stored = db.get(AutomationQueueItem, item.id)
    assert stored.status == "pending"
    assert stored.attempts == 0
    assert stored.dead_lettered_at is None
    assert requeue(db, location_id=seeded.location_id, item_id=item.id) is False


def test_queue_stats_counts_every_status(session_local, db, seeded):
    first = _enqueue_one(session_local, db, seeded, "quote-signed:1")
    _enqueue_one(session_local, db, seeded, "quote-signed:2")
    first.status = "completed"
    db.commit()

    stats = queue_stats(db, location_id=seeded.location_id)
    assert stats["pending"] == 1
    assert stats["completed"] == 1
    assert stats["dead-lettered"] == 0
    assert stats["total"] == 2
    assert queue_stats(db, location_id="nowhere")["total"] == 0


def test_cleanup_applies_retention_windows(session_local, db, seeded):
    now = utcnow()
    old_done = _enqueue_one(session_local, db, seeded, "o:1")
    fresh_done = _enqueue_one(session_local, db, seeded, "o:2")
    old_failed = _enqueue_one(session_local, db, seeded, "o:3")
    dead = _enqueue_one(session_local, db, seeded, "o:4")

    old_done.status, old_done.completed_at = "completed", now - timedelta(days=8)
    fresh_done.status, fresh_done.completed_at = "completed", now - timedelta(days=1)
    old_failed.status, old_failed.completed_at = "failed", now - timedelta(days=4)
    dead.status, dead.dead_lettered_at = "dead-lettered", now - timedelta(hours=2)

    anchor = AutomationAnchor(
        id="anchor-1",
        location_id=seeded.location_id,
        anchor_event="appointment-scheduled",
        entity_type="appointment",
        entity_id=seeded.appointment_id,
        anchor_at=now,
    )
    db.add(anchor)
    db.flush()
    db.add(
        ScheduledTrigger(
            id="trigger-old",
            location_id=seeded.location_id,
            rule_id=old_done.rule_id,
            anchor_id=anchor.id,
            entity_type="appointment",
            entity_id=seeded.appointment_id,
            fire_at=now - timedelta(days=40),
            anchor_version=1,
            fired=True,
            outcome="enqueued",
            updated_at=now - timedelta(days=40),
        )
    )
    db.commit()

    summary = cleanup_queue(db, now=now)
    db.commit()

    assert summary.completed_deleted == 1
    assert summary.failed_deleted == 1
    assert summary.triggers_deleted == 1
    assert summary.recent_dead_letters == 1
    remaining = set(db.execute(select(AutomationQueueItem.id)).scalars().all())
    assert remaining == {fresh_done.id, dead.id}
