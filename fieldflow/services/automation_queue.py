import hashlib
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from fieldflow.core.clock import utcnow
from fieldflow.core.config import settings
from fieldflow.core.observability import automation_logger, log_json
from fieldflow.models.automation import AutomationQueueItem, AutomationRule, AutomationRuleRun, ScheduledTrigger
from fieldflow.services.automation_errors import QueueRetryExhausted
from fieldflow.services.automation_events import AutomationEvent


QUEUE_STATUSES = ("pending", "processing", "completed", "failed", "dead-lettered")

DeadLetterAlert = Callable[[AutomationQueueItem, QueueRetryExhausted], None]


@dataclass(frozen=True)
class EnqueueResult:
    item: AutomationQueueItem
    created: bool


@dataclass(frozen=True)
class CleanupSummary:
    completed_deleted: int
    failed_deleted: int
    triggers_deleted: int
    recent_dead_letters: int


def build_fingerprint(*, location_id: str, rule_id: str, entity_id: str, occurrence_id: str) -> str:
    raw = "|".join((location_id, rule_id, entity_id, occurrence_id))
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def backoff_seconds(attempts: int) -> int:
    exponent = max(int(attempts) - 1, 0)
    delay = settings.automation_retry_base_seconds * (2 ** min(exponent, 20))
    return int(min(delay, settings.automation_retry_max_seconds))


def _by_fingerprint(db: Session, fingerprint: str) -> AutomationQueueItem | None:
    return db.execute(
        select(AutomationQueueItem).where(AutomationQueueItem.fingerprint == fingerprint)
    ).scalar_one_or_none()


def _insert_ignoring_conflict(db: Session, values: dict[str, Any]) -> bool:
    dialect = db.get_bind().dialect.name
    if dialect in {"postgresql", "sqlite"}:
        insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
        result = db.execute(
            insert(AutomationQueueItem)
            .values(**values)
            .on_conflict_do_nothing(index_elements=["fingerprint"])
        )
        return result.rowcount == 1
    try:
        with db.begin_nested():
            db.add(AutomationQueueItem(**values))
    except IntegrityError:
        return False
    return True


def enqueue(
    db: Session,
    *,
    rule: AutomationRule,
    event: AutomationEvent,
    now: datetime | None = None,
) -> EnqueueResult:
    fingerprint = build_fingerprint(
        location_id=event.location_id,
        rule_id=rule.id,
        entity_id=event.entity_id,
        occurrence_id=event.occurrence_id,
    )
    existing = _by_fingerprint(db, fingerprint)
    if existing is None:
        now = now or utcnow()
        created = _insert_ignoring_conflict(
            db,
            {
                "id": str(uuid.uuid4()),
                "location_id": event.location_id,
                "rule_id": rule.id,
                "entity_type": event.entity_type,
                "entity_id": event.entity_id,
                "occurrence_id": event.occurrence_id,
                "fingerprint": fingerprint,
                "event_type": event.type,
                "trigger_json": event.to_json(),
                "status": "pending",
                "attempts": 0,
                "max_attempts": settings.automation_queue_max_attempts,
                "next_attempt_at": now,
                "created_at": now,
                "updated_at": now,
            },
        )
        item = _by_fingerprint(db, fingerprint)
        if created and item is not None:
            log_json(
                automation_logger,
                logging.INFO,
                "automation.enqueued",
                queue_item_id=item.id,
                rule_id=rule.id,
                entity_id=event.entity_id,
                event_type=event.type,
            )
            return EnqueueResult(item=item, created=True)
        existing = item

    log_json(
        automation_logger,
        logging.INFO,
        "automation.duplicate",
        queue_item_id=existing.id if existing else None,
        rule_id=rule.id,
        entity_id=event.entity_id,
        occurrence_id=event.occurrence_id,
    )
    return EnqueueResult(item=existing, created=False)


def claim_next(
    db: Session,
    *,
    worker_id: str,
    now: datetime | None = None,
    alert: DeadLetterAlert | None = None,
) -> AutomationQueueItem | None:
    """Claim one due item for ``worker_id`` and commit the claim.

    Pending items are eligible once ``next_attempt_at`` has passed. Items stuck in
    ``processing`` longer than the stale-claim timeout are reclaimed; the previous
    claim token is part of the update predicate so only one racing worker wins.
    """
    now = now or utcnow()
    stale_cutoff = now - timedelta(seconds=settings.automation_stale_claim_seconds)
    candidates = db.execute(
        select(
            AutomationQueueItem.id,
            AutomationQueueItem.status,
            AutomationQueueItem.claim_token,
        )
        .where(
            or_(
                and_(
                    AutomationQueueItem.status == "pending",
                    AutomationQueueItem.next_attempt_at <= now,
                ),
                and_(
                    AutomationQueueItem.status == "processing",
                    AutomationQueueItem.claimed_at <= stale_cutoff,
                ),
            )
        )
        .order_by(AutomationQueueItem.next_attempt_at.asc(), AutomationQueueItem.created_at.asc())
        .limit(settings.automation_claim_batch_size)
    ).all()

    for item_id, status, previous_token in candidates:
        stmt = update(AutomationQueueItem).where(
            AutomationQueueItem.id == item_id,
            AutomationQueueItem.status == status,
        )
        if status == "processing":
            if previous_token is None:
                stmt = stmt.where(AutomationQueueItem.claim_token.is_(None))
            else:
                stmt = stmt.where(AutomationQueueItem.claim_token == previous_token)
        else:
            stmt = stmt.where(AutomationQueueItem.next_attempt_at <= now)

        result = db.execute(
            stmt.values(
                status="processing",
                claim_token=str(uuid.uuid4()),
                claimed_by=worker_id,
                claimed_at=now,
                attempts=AutomationQueueItem.attempts + 1,
                updated_at=now,
            ).execution_options(synchronize_session=False)
        )
        db.commit()
        if result.rowcount != 1:
            continue

        item = db.get(AutomationQueueItem, item_id, populate_existing=True)
        if item is None:
            continue
        if item.attempts > item.max_attempts:
            record_failure(
                db,
                item,
                error=item.last_error or "Worker claim expired",
                now=now,
                alert=alert,
            )
            db.commit()
            continue
        return item
    return None


def record_success(
    db: Session,
    item: AutomationQueueItem,
    *,
    result_json: dict[str, Any] | None,
    last_error: str | None = None,
    now: datetime | None = None,
) -> bool:
    now = now or utcnow()
    result = db.execute(
        update(AutomationQueueItem)
        .where(
            AutomationQueueItem.id == item.id,
            AutomationQueueItem.status == "processing",
            AutomationQueueItem.claim_token == item.claim_token,
        )
        .values(
            status="completed",
            completed_at=now,
            result_json=result_json,
            last_error=last_error,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        log_json(
            automation_logger,
            logging.WARNING,
            "automation.claim_lost",
            queue_item_id=item.id,
            worker_id=item.claimed_by,
        )
        return False
    return True


def record_failure(
    db: Session,
    item: AutomationQueueItem,
    *,
    error: str,
    retryable: bool = True,
    now: datetime | None = None,
    alert: DeadLetterAlert | None = None,
) -> str | None:
    now = now or utcnow()
    message = (error or "Automation execution failed").strip()[:255]
    values: dict[str, Any] = {"last_error": message, "updated_at": now, "claim_token": None}
    if not retryable:
        values["status"] = "failed"
        values["completed_at"] = now
    elif item.attempts >= item.max_attempts:
        values["status"] = "dead-lettered"
        values["dead_lettered_at"] = now
    else:
        values["status"] = "pending"
        values["next_attempt_at"] = now + timedelta(seconds=backoff_seconds(item.attempts))

    result = db.execute(
        update(AutomationQueueItem)
        .where(
            AutomationQueueItem.id == item.id,
            AutomationQueueItem.status == "processing",
            AutomationQueueItem.claim_token == item.claim_token,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        log_json(automation_logger, logging.WARNING, "automation.claim_lost", queue_item_id=item.id)
        return None

    status = values["status"]
    if status == "dead-lettered":
        exhausted = QueueRetryExhausted(item.id, item.attempts, message)
        log_json(
            automation_logger,
            logging.ERROR,
            "automation.dead_letter",
            queue_item_id=item.id,
            rule_id=item.rule_id,
            location_id=item.location_id,
            attempts=item.attempts,
            error=str(exhausted),
        )
        if alert is not None:
            try:
                alert(item, exhausted)
            except Exception as exc:  # noqa: BLE001
                log_json(automation_logger, logging.WARNING, "automation.alert_failed", error=str(exc))
    elif status == "pending":
        log_json(
            automation_logger,
            logging.INFO,
            "automation.retry_scheduled",
            queue_item_id=item.id,
            attempts=item.attempts,
            next_attempt_at=values["next_attempt_at"].isoformat(),
            error=message,
        )
    return status


def requeue(db: Session, *, location_id: str, item_id: str, now: datetime | None = None) -> bool:
    now = now or utcnow()
    result = db.execute(
        update(AutomationQueueItem)
        .where(
            AutomationQueueItem.id == item_id,
            AutomationQueueItem.location_id == location_id,
            AutomationQueueItem.status.in_(["dead-lettered", "failed"]),
        )
        .values(
            status="pending",
            attempts=0,
            next_attempt_at=now,
            claim_token=None,
            claimed_by=None,
            claimed_at=None,
            dead_lettered_at=None,
            completed_at=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def queue_stats(db: Session, *, location_id: str | None = None) -> dict[str, int]:
    stmt = select(AutomationQueueItem.status, func.count(AutomationQueueItem.id)).group_by(AutomationQueueItem.status)
    if location_id:
        stmt = stmt.where(AutomationQueueItem.location_id == location_id)
    counts = {status: 0 for status in QUEUE_STATUSES}
    for status, count in db.execute(stmt).all():
        counts[status] = int(count or 0)
    counts["total"] = sum(counts[status] for status in QUEUE_STATUSES)
    return counts


def _delete_items(db: Session, where_clause) -> int:
    item_ids = select(AutomationQueueItem.id).where(where_clause)
    db.execute(
        update(AutomationRuleRun)
        .where(AutomationRuleRun.queue_item_id.in_(item_ids))
        .values(queue_item_id=None)
        .execution_options(synchronize_session=False)
    )
    result = db.execute(delete(AutomationQueueItem).where(where_clause).execution_options(synchronize_session=False))
    return int(result.rowcount or 0)


def cleanup_queue(db: Session, *, now: datetime | None = None) -> CleanupSummary:
    now = now or utcnow()
    completed_cutoff = now - timedelta(days=settings.automation_completed_retention_days)
    failed_cutoff = now - timedelta(days=settings.automation_failed_retention_days)
    trigger_cutoff = now - timedelta(days=settings.automation_trigger_retention_days)

    completed_deleted = _delete_items(
        db,
        and_(AutomationQueueItem.status == "completed", AutomationQueueItem.completed_at < completed_cutoff),
    )
    failed_deleted = _delete_items(
        db,
        and_(AutomationQueueItem.status == "failed", AutomationQueueItem.completed_at < failed_cutoff),
    )
    triggers = db.execute(
        delete(ScheduledTrigger)
        .where(ScheduledTrigger.fired.is_(True), ScheduledTrigger.updated_at < trigger_cutoff)
        .execution_options(synchronize_session=False)
    )
    recent_dead_letters = int(
        db.execute(
            select(func.count(AutomationQueueItem.id)).where(
                AutomationQueueItem.status == "dead-lettered",
                AutomationQueueItem.dead_lettered_at >= now - timedelta(hours=24),
            )
        ).scalar_one()
        or 0
    )
    summary = CleanupSummary(
        completed_deleted=completed_deleted,
        failed_deleted=failed_deleted,
        triggers_deleted=int(triggers.rowcount or 0),
        recent_dead_letters=recent_dead_letters,
    )
    log_json(
        automation_logger,
        logging.WARNING if recent_dead_letters else logging.INFO,
        "automation.cleanup",
        completed_deleted=summary.completed_deleted,
        failed_deleted=summary.failed_deleted,
        triggers_deleted=summary.triggers_deleted,
        recent_dead_letters=summary.recent_dead_letters,
    )
    return summary
