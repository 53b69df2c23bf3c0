import hmac
import uuid

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.orm import Session

from fieldflow.core.api_docs import error_responses
from fieldflow.core.clock import utcnow
from fieldflow.core.config import settings
from fieldflow.core.deps import get_action_services, get_db, get_event_bus
from fieldflow.schemas.automation import CronCleanupOut, CronQueueOut, CronSchedulerOut
from fieldflow.services.automation_actions import ActionServices
from fieldflow.services.automation_bus import AutomationEventBus
from fieldflow.services.automation_queue import cleanup_queue
from fieldflow.services.automation_scheduler import enqueue_recurring_schedules, sweep_due_triggers
from fieldflow.services.automation_worker import process_next, realtime_dead_letter_alert

router = APIRouter(prefix="/cron", tags=["cron"])


def require_cron_secret(authorization: str | None = Header(default=None)) -> None:
    expected = settings.cron_secret
    if not expected:
        raise HTTPException(status_code=503, detail="Cron endpoints are not configured")
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing cron credentials")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(token.strip(), expected):
        raise HTTPException(status_code=401, detail="Invalid cron credentials")


@router.api_route(
    "/automation-scheduler",
    methods=["GET", "POST"],
    response_model=CronSchedulerOut,
    summary="Fire due scheduled triggers and recurring schedule slots",
    responses=error_responses(401, 500, 503),
)
def run_scheduler(
    _: None = Depends(require_cron_secret),
    db: Session = Depends(get_db),
    bus: AutomationEventBus = Depends(get_event_bus),
):
    now = utcnow()
    sweep = sweep_due_triggers(db, bus, now=now)
    recurring = enqueue_recurring_schedules(db, bus, now=now)
    return CronSchedulerOut(
        fired=sweep.fired,
        stale=sweep.stale,
        skipped=sweep.skipped,
        errors=sweep.errors,
        recurring_enqueued=recurring,
    )


@router.api_route(
    "/process-automation-queue",
    methods=["GET", "POST"],
    response_model=CronQueueOut,
    summary="Drain a batch of due automation queue items",
    responses=error_responses(401, 500, 503),
)
def process_queue(
    _: None = Depends(require_cron_secret),
    db: Session = Depends(get_db),
    services: ActionServices = Depends(get_action_services),
):
    worker_id = f"cron-{uuid.uuid4().hex[:8]}"
    alert = realtime_dead_letter_alert(services.realtime)
    counts = {"completed": 0, "pending": 0, "failed": 0, "dead-lettered": 0}
    processed = 0
    for _ in range(settings.automation_claim_batch_size):
        outcome = process_next(db, services=services, worker_id=worker_id, alert=alert)
        if outcome is None:
            break
        processed += 1
        if outcome.status in counts:
            counts[outcome.status] += 1
    return CronQueueOut(
        processed=processed,
        completed=counts["completed"],
        retried=counts["pending"],
        failed=counts["failed"],
        dead_lettered=counts["dead-lettered"],
    )


@router.api_route(
    "/cleanup-automation-queue",
    methods=["GET", "POST"],
    response_model=CronCleanupOut,
    summary="Delete settled queue items and fired triggers past retention",
    responses=error_responses(401, 500, 503),
)
def cleanup(
    _: None = Depends(require_cron_secret),
    db: Session = Depends(get_db),
):
    summary = cleanup_queue(db)
    db.commit()
    return CronCleanupOut(
        completed_deleted=summary.completed_deleted,
        failed_deleted=summary.failed_deleted,
        triggers_deleted=summary.triggers_deleted,
        recent_dead_letters=summary.recent_dead_letters,
    )
