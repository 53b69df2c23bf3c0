import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.orm import Session

from fieldflow.core.observability import automation_logger, log_json
from fieldflow.services.automation_events import AutomationEvent
from fieldflow.services.automation_matcher import match_event
from fieldflow.services.automation_queue import enqueue
from fieldflow.services.automation_scheduler import handle_anchor_event


@dataclass(frozen=True)
class DispatchSummary:
    event_type: str
    matched: int
    enqueued: int
    duplicates: int
    scheduled: int
    rescheduled: int
    cancelled: int
    match_errors: int
    queue_item_ids: tuple[str, ...] = ()

    def to_json(self) -> dict:
        return {
            "event_type": self.event_type,
            "matched": self.matched,
            "enqueued": self.enqueued,
            "duplicates": self.duplicates,
            "scheduled": self.scheduled,
            "rescheduled": self.rescheduled,
            "cancelled": self.cancelled,
            "match_errors": self.match_errors,
            "queue_item_ids": list(self.queue_item_ids),
        }


class AutomationEventBus:
    """Routes domain events into the engine: anchors, matching and queue fan-out.

    One instance is built at startup and handed to request handlers, workers and the
    scheduler; tests build their own around a test session factory.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def dispatch(self, db: Session, event: AutomationEvent, *, now: datetime | None = None) -> DispatchSummary:
        schedule = handle_anchor_event(db, event, now=now)
        result = match_event(db, event)
        enqueued = duplicates = 0
        item_ids: list[str] = []
        for match in result.matches:
            outcome = enqueue(db, rule=match.rule, event=event, now=now)
            if outcome.created:
                enqueued += 1
            else:
                duplicates += 1
            if outcome.item is not None:
                item_ids.append(outcome.item.id)
        return DispatchSummary(
            event_type=event.type,
            matched=len(result.matches),
            enqueued=enqueued,
            duplicates=duplicates,
            scheduled=schedule.scheduled,
            rescheduled=schedule.rescheduled,
            cancelled=schedule.cancelled,
            match_errors=len(result.errors),
            queue_item_ids=tuple(item_ids),
        )

    def emit(
        self,
        event: AutomationEvent | Callable[[], AutomationEvent],
        *,
        db: Session | None = None,
    ) -> DispatchSummary | None:
        """Fire-and-forget entry point for request handlers; failures are logged, never raised.

        ``event`` may be a zero-argument builder so snapshot errors are contained as well.
        With ``db`` the work joins the caller's transaction inside a SAVEPOINT and is
        committed by the caller. Without it the bus commits its own session.
        """
        built = event if isinstance(event, AutomationEvent) else None
        try:
            if built is None:
                built = event()
            if db is not None:
                with db.begin_nested():
                    return self.dispatch(db, built)
            with self._session_factory() as session:
                summary = self.dispatch(session, built)
                session.commit()
                return summary
        except Exception as exc:  # noqa: BLE001
            log_json(
                automation_logger,
                logging.ERROR,
                "automation.emit_failed",
                event_type=built.type if built else None,
                entity_type=built.entity_type if built else None,
                entity_id=built.entity_id if built else None,
                location_id=built.location_id if built else None,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None
