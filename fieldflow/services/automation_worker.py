import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from fieldflow.core.clock import utcnow
from fieldflow.core.config import settings
from fieldflow.core.observability import automation_logger, log_json
from fieldflow.models.automation import AutomationQueueItem, AutomationRule
from fieldflow.services.automation_actions import ActionServices
from fieldflow.services.automation_bus import AutomationEventBus
from fieldflow.services.automation_errors import QueueRetryExhausted
from fieldflow.services.automation_events import AutomationEvent
from fieldflow.services.automation_executor import execute_rule
from fieldflow.services.automation_queue import (
    DeadLetterAlert,
    claim_next,
    cleanup_queue,
    record_failure,
    record_success,
)
from fieldflow.services.automation_scheduler import enqueue_recurring_schedules, sweep_due_triggers
from fieldflow.services.realtime_publisher import RealtimePublisher, location_channel


@dataclass(frozen=True)
class ProcessOutcome:
    queue_item_id: str
    status: str | None
    run_id: str | None = None
    error: str | None = None


def realtime_dead_letter_alert(publisher: RealtimePublisher) -> DeadLetterAlert:
    def _alert(item: AutomationQueueItem, exc: QueueRetryExhausted) -> None:
        publisher.publish(
            location_channel(item.location_id),
            "automation-dead-lettered",
            {
                "queueItemId": item.id,
                "ruleId": item.rule_id,
                "entityId": item.entity_id,
                "attempts": exc.attempts,
                "error": exc.last_error,
            },
        )

    return _alert


def process_item(
    db: Session,
    item: AutomationQueueItem,
    *,
    services: ActionServices,
    alert: DeadLetterAlert | None = None,
) -> ProcessOutcome:
    """Execute one claimed item and settle its status. Commits."""
    rule = db.get(AutomationRule, item.rule_id)
    if rule is None:
        status = record_failure(db, item, error="Rule no longer exists", retryable=False)
        db.commit()
        return ProcessOutcome(item.id, status, error="Rule no longer exists")

    try:
        event = AutomationEvent.from_json(item.trigger_json or {})
    except (KeyError, TypeError, ValueError) as exc:
        message = f"Undecodable trigger payload: {exc}"
        status = record_failure(db, item, error=message, retryable=False)
        db.commit()
        return ProcessOutcome(item.id, status, error=message)

    if not rule.is_active:
        record_success(db, item, result_json={"skipped": "rule-inactive"})
        db.commit()
        return ProcessOutcome(item.id, "completed")

    try:
        execution = execute_rule(db, rule=rule, event=event, services=services, queue_item=item)
    except Exception as exc:  # noqa: BLE001
        db.rollback()
        status = record_failure(db, item, error=str(exc), alert=alert)
        db.commit()
        log_json(
            automation_logger,
            logging.ERROR,
            "automation.execution_error",
            queue_item_id=item.id,
            rule_id=rule.id,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return ProcessOutcome(item.id, status, error=str(exc))

    if execution.critical_failure:
        db.commit()
        status = record_failure(db, item, error=execution.error_summary or "Critical action failed", alert=alert)
    else:
        record_success(db, item, result_json=execution.to_json(), last_error=execution.error_summary)
        status = "completed"
    db.commit()
    return ProcessOutcome(item.id, status, run_id=execution.run.id if execution.run else None, error=execution.error_summary)


def process_next(
    db: Session,
    *,
    services: ActionServices,
    worker_id: str,
    now: datetime | None = None,
    alert: DeadLetterAlert | None = None,
) -> ProcessOutcome | None:
    item = claim_next(db, worker_id=worker_id, now=now, alert=alert)
    if item is None:
        return None
    return process_item(db, item, services=services, alert=alert)


def process_queue_batch(
    session_factory: Callable[[], Session],
    *,
    services: ActionServices,
    worker_id: str,
    limit: int | None = None,
    alert: DeadLetterAlert | None = None,
) -> list[ProcessOutcome]:
    outcomes: list[ProcessOutcome] = []
    with session_factory() as db:
        for _ in range(limit or settings.automation_claim_batch_size):
            outcome = process_next(db, services=services, worker_id=worker_id, alert=alert)
            if outcome is None:
                break
            outcomes.append(outcome)
    return outcomes


class AutomationWorker(threading.Thread):
    def __init__(
        self,
        session_factory: Callable[[], Session],
        services: ActionServices,
        *,
        worker_id: str,
        poll_seconds: float | None = None,
        alert: DeadLetterAlert | None = None,
    ):
        super().__init__(name=f"automation-worker-{worker_id}", daemon=True)
        self.worker_id = worker_id
        self._session_factory = session_factory
        self._services = services
        self._poll_seconds = poll_seconds or settings.automation_worker_poll_seconds
        self._alert = alert
        self._stop_event = threading.Event()

    def stop(self) -> None:
        self._stop_event.set()

    def run(self) -> None:
        while not self._stop_event.is_set():
            try:
                outcomes = process_queue_batch(
                    self._session_factory,
                    services=self._services,
                    worker_id=self.worker_id,
                    alert=self._alert,
                )
            except Exception as exc:  # noqa: BLE001
                log_json(automation_logger, logging.ERROR, "automation.worker_error", worker_id=self.worker_id, error=str(exc))
                outcomes = []
            if not outcomes:
                self._stop_event.wait(self._poll_seconds)


class SchedulerSweeper(threading.Thread):
    """Fires due scheduled triggers and recurring slots; runs queue cleanup once a day."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        bus: AutomationEventBus,
        *,
        poll_seconds: float | None = None,
    ):
        super().__init__(name="automation-scheduler", daemon=True)
        self._session_factory = session_factory
        self._bus = bus
        self._poll_seconds = poll_seconds or settings.automation_scheduler_poll_seconds
        self._stop_event = threading.Event()
        self._last_cleanup: datetime | None = None

    def stop(self) -> None:
        self._stop_event.set()

    def tick(self, now: datetime | None = None) -> None:
        now = now or utcnow()
        with self._session_factory() as db:
            sweep_due_triggers(db, self._bus, now=now)
            enqueue_recurring_schedules(db, self._bus, now=now)
            if self._last_cleanup is None or now - self._last_cleanup >= timedelta(days=1):
                cleanup_queue(db, now=now)
                db.commit()
                self._last_cleanup = now

    def run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception as exc:  # noqa: BLE001
                log_json(automation_logger, logging.ERROR, "automation.scheduler_error", error=str(exc))
            self._stop_event.wait(self._poll_seconds)
