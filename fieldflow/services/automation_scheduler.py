import calendar
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Protocol
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from fieldflow.core.clock import as_utc, utcnow
from fieldflow.core.config import settings
from fieldflow.core.observability import automation_logger, log_json
from fieldflow.models.automation import AutomationAnchor, AutomationRule, ScheduledTrigger
from fieldflow.models.location import Location
from fieldflow.services.automation_errors import MatchError, SchedulerStaleAnchor
from fieldflow.services.automation_events import (
    EVENT_FAMILIES,
    PINNED_FAMILIES,
    AutomationEvent,
    build_event,
    location_snapshot,
)
from fieldflow.services.automation_matcher import build_context, resolve_path, scope_matches


OFFSET_UNITS = {
    "minutes": timedelta(minutes=1),
    "hours": timedelta(hours=1),
    "days": timedelta(days=1),
    "weeks": timedelta(weeks=1),
}
RECURRING_FREQUENCIES = ("hourly", "daily", "weekly", "monthly")

# A later event that moves an existing anchor.
ANCHOR_ALIASES = {
    "appointment-rescheduled": "appointment-scheduled",
}
# Events that cancel an anchor outright.
ANCHOR_CANCELLATIONS = {
    "appointment-cancelled": "appointment-scheduled",
}
DEFAULT_ANCHOR_FIELDS = {
    "appointment-scheduled": "appointment.startTime",
}
_CANCELLED_VALUES = {"fired": True, "cancelled": True, "outcome": "cancelled"}


class EventDispatcher(Protocol):
    def dispatch(self, db: Session, event: AutomationEvent, *, now: datetime | None = None) -> Any:
        ...


@dataclass(frozen=True)
class ScheduleSummary:
    scheduled: int = 0
    rescheduled: int = 0
    cancelled: int = 0


@dataclass(frozen=True)
class SweepSummary:
    fired: int
    stale: int
    skipped: int
    errors: int


def normalize_offset(raw: Any) -> timedelta:
    if not isinstance(raw, dict):
        raise MatchError("Time-based trigger needs an offset object")
    unit = str(raw.get("unit") or "hours").strip().lower()
    if unit not in OFFSET_UNITS:
        raise MatchError(f"Offset unit must be one of {sorted(OFFSET_UNITS)}")
    try:
        amount = float(raw.get("amount", 0))
    except (TypeError, ValueError):
        raise MatchError("Offset amount must be a number") from None
    return OFFSET_UNITS[unit] * amount


def anchor_event_for(rule: AutomationRule) -> str | None:
    config = rule.trigger_config or {}
    raw = str(config.get("anchor_event") or "").strip().lower().replace("_", "-").replace(".", "-")
    return ANCHOR_ALIASES.get(raw, raw) or None


def _parse_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return as_utc(value)
    if not value:
        return None
    try:
        return as_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))
    except ValueError:
        return None


def anchor_time(event: AutomationEvent, anchor_field: str | None, anchor_event: str) -> datetime | None:
    path = anchor_field or DEFAULT_ANCHOR_FIELDS.get(anchor_event)
    if not path:
        return event.occurred_at
    return _parse_datetime(resolve_path(build_context(event), path))


def compute_fire_at(rule: AutomationRule, event: AutomationEvent) -> datetime | None:
    """Return the anchor time of ``event`` shifted by the rule's offset."""
    config = rule.trigger_config or {}
    anchor_event = anchor_event_for(rule) or event.type
    base = anchor_time(event, config.get("anchor_field"), anchor_event)
    if base is None:
        return None
    return base + normalize_offset(config.get("offset") or {"amount": 0, "unit": "hours"})


def _cancel_on(rule: AutomationRule) -> set[str]:
    raw = (rule.trigger_config or {}).get("cancel_on") or []
    if isinstance(raw, str):
        raw = [raw]
    return {str(item).strip().lower() for item in raw if str(item).strip()}


def _time_based_rules(db: Session, location_id: str) -> list[AutomationRule]:
    return list(
        db.execute(
            select(AutomationRule)
            .where(
                AutomationRule.location_id == location_id,
                AutomationRule.trigger_type == "time-based",
                AutomationRule.is_active.is_(True),
            )
            .order_by(AutomationRule.priority.desc(), AutomationRule.created_at.asc(), AutomationRule.id.asc())
        ).scalars().all()
    )


def _get_anchor(db: Session, *, location_id: str, anchor_event: str, entity_id: str) -> AutomationAnchor | None:
    return db.execute(
        select(AutomationAnchor).where(
            AutomationAnchor.location_id == location_id,
            AutomationAnchor.anchor_event == anchor_event,
            AutomationAnchor.entity_id == entity_id,
        )
    ).scalar_one_or_none()


def _bump_anchor(db: Session, anchor: AutomationAnchor, *, anchor_at: datetime, cancelled: bool, now: datetime) -> int:
    # Compare-and-swap on version; a concurrent bump makes us retry from the fresh row.
    for _ in range(5):
        current_version = anchor.version
        result = db.execute(
            update(AutomationAnchor)
            .where(AutomationAnchor.id == anchor.id, AutomationAnchor.version == current_version)
            .values(version=current_version + 1, anchor_at=anchor_at, cancelled=cancelled, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            db.refresh(anchor)
            return anchor.version
        db.refresh(anchor)
    raise SchedulerStaleAnchor(anchor.id, expected_version=anchor.version, live_version=None)


def upsert_anchor(
    db: Session,
    *,
    event: AutomationEvent,
    anchor_event: str,
    anchor_at: datetime,
    now: datetime,
) -> AutomationAnchor:
    anchor = _get_anchor(db, location_id=event.location_id, anchor_event=anchor_event, entity_id=event.entity_id)
    if anchor is None:
        try:
            with db.begin_nested():
                anchor = AutomationAnchor(
                    id=str(uuid.uuid4()),
                    location_id=event.location_id,
                    anchor_event=anchor_event,
                    entity_type=event.entity_type,
                    entity_id=event.entity_id,
                    anchor_at=anchor_at,
                    version=1,
                    cancelled=False,
                    created_at=now,
                    updated_at=now,
                )
                db.add(anchor)
            return anchor
        except IntegrityError:
            anchor = _get_anchor(
                db,
                location_id=event.location_id,
                anchor_event=anchor_event,
                entity_id=event.entity_id,
            )
            if anchor is None:
                raise
    _bump_anchor(db, anchor, anchor_at=anchor_at, cancelled=False, now=now)
    return anchor


def cancel_anchor(db: Session, *, location_id: str, anchor_event: str, entity_id: str, now: datetime) -> int:
    anchor = _get_anchor(db, location_id=location_id, anchor_event=anchor_event, entity_id=entity_id)
    if anchor is None:
        return 0
    _bump_anchor(db, anchor, anchor_at=anchor.anchor_at, cancelled=True, now=now)
    result = db.execute(
        update(ScheduledTrigger)
        .where(ScheduledTrigger.anchor_id == anchor.id, ScheduledTrigger.fired.is_(False))
        .values(**_CANCELLED_VALUES, fired_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


def _cancel_rule_triggers(db: Session, *, rule_id: str, entity_id: str, now: datetime) -> int:
    result = db.execute(
        update(ScheduledTrigger)
        .where(
            ScheduledTrigger.rule_id == rule_id,
            ScheduledTrigger.entity_id == entity_id,
            ScheduledTrigger.fired.is_(False),
        )
        .values(**_CANCELLED_VALUES, fired_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


def _schedule_trigger(
    db: Session,
    *,
    rule: AutomationRule,
    anchor: AutomationAnchor,
    event: AutomationEvent,
    fire_at: datetime,
    now: datetime,
) -> bool:
    """Create or move the rule's pending trigger on ``anchor``. Returns True when an existing one moved."""
    snapshot = event.to_json()
    existing = db.execute(
        select(ScheduledTrigger).where(
            ScheduledTrigger.rule_id == rule.id,
            ScheduledTrigger.anchor_id == anchor.id,
            ScheduledTrigger.fired.is_(False),
        )
    ).scalars().first()
    if existing is not None:
        result = db.execute(
            update(ScheduledTrigger)
            .where(ScheduledTrigger.id == existing.id, ScheduledTrigger.fired.is_(False))
            .values(fire_at=fire_at, anchor_version=anchor.version, event_json=snapshot, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            return True

    db.add(
        ScheduledTrigger(
            id=str(uuid.uuid4()),
            location_id=rule.location_id,
            rule_id=rule.id,
            anchor_id=anchor.id,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            fire_at=fire_at,
            anchor_version=anchor.version,
            fired=False,
            cancelled=False,
            event_json=snapshot,
            created_at=now,
            updated_at=now,
        )
    )
    db.flush()
    return False


def handle_anchor_event(db: Session, event: AutomationEvent, *, now: datetime | None = None) -> ScheduleSummary:
    """Maintain anchors and scheduled triggers for a source event.

    Every (re)anchoring bumps the anchor version; pending triggers for rules that still
    apply are moved to the new version in place, the rest go stale and never fire.
    """
    if event.rule_id is not None or event.family in PINNED_FAMILIES:
        return ScheduleSummary()
    now = now or utcnow()
    rules = _time_based_rules(db, event.location_id)
    scheduled = rescheduled = cancelled = 0

    for rule in rules:
        if event.type in _cancel_on(rule):
            cancelled += _cancel_rule_triggers(db, rule_id=rule.id, entity_id=event.entity_id, now=now)

    cancelled_anchor = ANCHOR_CANCELLATIONS.get(event.type)
    if cancelled_anchor:
        cancelled += cancel_anchor(
            db,
            location_id=event.location_id,
            anchor_event=cancelled_anchor,
            entity_id=event.entity_id,
            now=now,
        )
        return ScheduleSummary(scheduled=scheduled, rescheduled=rescheduled, cancelled=cancelled)

    anchor_event = ANCHOR_ALIASES.get(event.type, event.type)
    anchored_rules = [rule for rule in rules if anchor_event_for(rule) == anchor_event]
    existing_anchor = _get_anchor(
        db,
        location_id=event.location_id,
        anchor_event=anchor_event,
        entity_id=event.entity_id,
    )
    if not anchored_rules and existing_anchor is None:
        return ScheduleSummary(cancelled=cancelled)

    base_time = anchor_time(event, None, anchor_event) or event.occurred_at
    anchor = upsert_anchor(db, event=event, anchor_event=anchor_event, anchor_at=base_time, now=now)

    for rule in anchored_rules:
        if not scope_matches(rule, event.data):
            continue
        try:
            fire_at = compute_fire_at(rule, event)
        except MatchError as exc:
            log_json(
                automation_logger,
                logging.WARNING,
                "automation.match_error",
                rule_id=rule.id,
                event_type=event.type,
                error=str(exc),
            )
            continue
        if fire_at is None:
            log_json(
                automation_logger,
                logging.WARNING,
                "automation.match_error",
                rule_id=rule.id,
                event_type=event.type,
                error="Anchor field is missing from the event",
            )
            continue
        fire_at = max(fire_at, now)
        if _schedule_trigger(db, rule=rule, anchor=anchor, event=event, fire_at=fire_at, now=now):
            rescheduled += 1
        else:
            scheduled += 1

    return ScheduleSummary(scheduled=scheduled, rescheduled=rescheduled, cancelled=cancelled)


def cancel_rule_triggers(db: Session, *, rule_id: str, now: datetime | None = None) -> int:
    now = now or utcnow()
    result = db.execute(
        update(ScheduledTrigger)
        .where(ScheduledTrigger.rule_id == rule_id, ScheduledTrigger.fired.is_(False))
        .values(**_CANCELLED_VALUES, fired_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


def reschedule_rule_triggers(db: Session, rule: AutomationRule, *, now: datetime | None = None) -> ScheduleSummary:
    """Recompute pending fire times from each trigger's anchoring snapshot after a trigger config edit.

    Triggers anchored on an event the rule no longer listens to, or whose snapshot
    lacks the anchor field, are cancelled instead.
    """
    now = now or utcnow()
    if rule.trigger_type != "time-based":
        return ScheduleSummary(cancelled=cancel_rule_triggers(db, rule_id=rule.id, now=now))

    anchor_event = anchor_event_for(rule)
    pending = db.execute(
        select(ScheduledTrigger.id, ScheduledTrigger.event_json, AutomationAnchor.anchor_event)
        .join(AutomationAnchor, AutomationAnchor.id == ScheduledTrigger.anchor_id)
        .where(ScheduledTrigger.rule_id == rule.id, ScheduledTrigger.fired.is_(False))
    ).all()
    rescheduled = cancelled = 0
    for trigger_id, snapshot, trigger_anchor in pending:
        fire_at = None
        if trigger_anchor == anchor_event and snapshot:
            try:
                fire_at = compute_fire_at(rule, AutomationEvent.from_json(snapshot))
            except (MatchError, KeyError, ValueError):
                fire_at = None
        if fire_at is None:
            values: dict[str, Any] = {**_CANCELLED_VALUES, "fired_at": now, "updated_at": now}
        else:
            values = {"fire_at": max(fire_at, now), "updated_at": now}
        result = db.execute(
            update(ScheduledTrigger)
            .where(ScheduledTrigger.id == trigger_id, ScheduledTrigger.fired.is_(False))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            continue
        if fire_at is None:
            cancelled += 1
        else:
            rescheduled += 1

    if pending:
        log_json(
            automation_logger,
            logging.INFO,
            "automation.triggers_rescheduled",
            rule_id=rule.id,
            rescheduled=rescheduled,
            cancelled=cancelled,
        )
    return ScheduleSummary(rescheduled=rescheduled, cancelled=cancelled)


def _finish_trigger(db: Session, trigger_id: str, outcome: str, now: datetime) -> None:
    db.execute(
        update(ScheduledTrigger)
        .where(ScheduledTrigger.id == trigger_id)
        .values(outcome=outcome, updated_at=now)
        .execution_options(synchronize_session=False)
    )


def sweep_due_triggers(
    db: Session,
    bus: EventDispatcher,
    *,
    now: datetime | None = None,
    limit: int | None = None,
) -> SweepSummary:
    now = now or utcnow()
    due_ids = db.execute(
        select(ScheduledTrigger.id)
        .where(ScheduledTrigger.fired.is_(False), ScheduledTrigger.fire_at <= now)
        .order_by(ScheduledTrigger.fire_at.asc(), ScheduledTrigger.id.asc())
        .limit(limit or settings.automation_scheduler_batch_size)
    ).scalars().all()

    fired = stale = skipped = errors = 0
    for trigger_id in due_ids:
        # Claim, dispatch and outcome share one transaction; a failed dispatch rolls
        # the claim back so the next sweep retries the trigger.
        claimed = db.execute(
            update(ScheduledTrigger)
            .where(ScheduledTrigger.id == trigger_id, ScheduledTrigger.fired.is_(False))
            .values(fired=True, fired_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            db.rollback()
            continue

        try:
            trigger = db.get(ScheduledTrigger, trigger_id, populate_existing=True)
            anchor = db.get(AutomationAnchor, trigger.anchor_id, populate_existing=True)
            if anchor is None or anchor.cancelled or anchor.version != trigger.anchor_version:
                stale_error = SchedulerStaleAnchor(
                    trigger.id,
                    expected_version=trigger.anchor_version,
                    live_version=anchor.version if anchor else None,
                )
                log_json(
                    automation_logger,
                    logging.INFO,
                    "automation.stale_anchor",
                    trigger_id=trigger.id,
                    rule_id=trigger.rule_id,
                    entity_id=trigger.entity_id,
                    error=str(stale_error),
                )
                _finish_trigger(db, trigger.id, "stale", now)
                db.commit()
                stale += 1
                continue

            rule = db.get(AutomationRule, trigger.rule_id)
            if rule is None or not rule.is_active:
                _finish_trigger(db, trigger.id, "skipped", now)
                db.commit()
                skipped += 1
                continue

            source = AutomationEvent.from_json(trigger.event_json or {})
            data = dict(source.data)
            data["anchor"] = {
                "event": anchor.anchor_event,
                "at": as_utc(anchor.anchor_at).isoformat(),
                "sourceEventType": source.type,
            }
            data["scheduledFor"] = as_utc(trigger.fire_at).isoformat()
            synthetic = build_event(
                "time-based",
                location_id=trigger.location_id,
                entity_type=trigger.entity_type,
                entity_id=trigger.entity_id,
                data=data,
                occurred_at=trigger.fire_at,
                occurrence_id=f"time-based:{trigger.id}:v{trigger.anchor_version}",
                rule_id=rule.id,
            )
            bus.dispatch(db, synthetic, now=now)
            _finish_trigger(db, trigger.id, "enqueued", now)
            db.commit()
            fired += 1
        except Exception as exc:  # noqa: BLE001
            db.rollback()
            errors += 1
            log_json(
                automation_logger,
                logging.ERROR,
                "automation.trigger_failed",
                trigger_id=trigger_id,
                error_type=type(exc).__name__,
                error=str(exc),
                retry=True,
            )

    return SweepSummary(fired=fired, stale=stale, skipped=skipped, errors=errors)


def _zone(name: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


def validate_recurring_config(config: dict[str, Any]) -> None:
    frequency = str(config.get("frequency") or "").lower()
    if frequency not in RECURRING_FREQUENCIES:
        raise MatchError(f"Recurring frequency must be one of {list(RECURRING_FREQUENCIES)}")
    bounds = {"hour": (0, 23), "minute": (0, 59), "day_of_week": (0, 6), "day_of_month": (1, 31)}
    for key, (low, high) in bounds.items():
        if config.get(key) is None:
            continue
        try:
            value = int(config[key])
        except (TypeError, ValueError):
            raise MatchError(f"Recurring {key} must be an integer") from None
        if not low <= value <= high:
            raise MatchError(f"Recurring {key} must be between {low} and {high}")


def latest_slot(config: dict[str, Any], now_local: datetime) -> datetime:
    """Most recent scheduled instant at or before ``now_local`` (wall-clock arithmetic)."""
    frequency = str(config.get("frequency") or "daily").lower()
    hour = int(config.get("hour") or 0)
    minute = int(config.get("minute") or 0)

    if frequency == "hourly":
        slot = now_local.replace(minute=minute, second=0, microsecond=0)
        return slot if slot <= now_local else slot - timedelta(hours=1)

    if frequency == "weekly":
        day_of_week = int(config.get("day_of_week") or 0)
        days_back = (now_local.weekday() - day_of_week) % 7
        slot = (now_local - timedelta(days=days_back)).replace(hour=hour, minute=minute, second=0, microsecond=0)
        return slot if slot <= now_local else slot - timedelta(days=7)

    if frequency == "monthly":
        day_of_month = int(config.get("day_of_month") or 1)
        year, month = now_local.year, now_local.month
        for _ in range(2):
            last_day = calendar.monthrange(year, month)[1]
            slot = now_local.replace(
                year=year,
                month=month,
                day=min(day_of_month, last_day),
                hour=hour,
                minute=minute,
                second=0,
                microsecond=0,
            )
            if slot <= now_local:
                return slot
            year, month = (year - 1, 12) if month == 1 else (year, month - 1)
        return slot

    slot = now_local.replace(hour=hour, minute=minute, second=0, microsecond=0)
    return slot if slot <= now_local else slot - timedelta(days=1)


def slot_key(frequency: str, slot: datetime) -> str:
    if frequency == "hourly":
        return f"hourly:{slot.strftime('%Y-%m-%dT%H')}"
    if frequency == "monthly":
        return f"monthly:{slot.strftime('%Y-%m')}"
    return f"{frequency}:{slot.date().isoformat()}"


def enqueue_recurring_schedules(db: Session, bus: EventDispatcher, *, now: datetime | None = None) -> int:
    """Dispatch the current slot of every active recurring rule; returns the number of new queue items."""
    now = now or utcnow()
    rules = db.execute(
        select(AutomationRule).where(
            AutomationRule.trigger_type == "recurring-schedule",
            AutomationRule.is_active.is_(True),
        )
    ).scalars().all()

    enqueued = 0
    for rule in rules:
        config = rule.trigger_config or {}
        try:
            validate_recurring_config(config)
        except MatchError as exc:
            log_json(automation_logger, logging.WARNING, "automation.match_error", rule_id=rule.id, error=str(exc))
            continue

        location = db.get(Location, rule.location_id)
        zone = _zone(config.get("timezone") or (location.timezone if location else None))
        frequency = str(config["frequency"]).lower()
        slot = latest_slot(config, now.astimezone(zone))
        slot_utc = as_utc(slot)
        if slot_utc < as_utc(rule.created_at):
            continue

        key = slot_key(frequency, slot)
        event = build_event(
            "recurring-schedule",
            location_id=rule.location_id,
            entity_type="location",
            entity_id=rule.location_id,
            data={
                "location": location_snapshot(location),
                "schedule": {"frequency": frequency, "slot": key, "slotAt": slot_utc.isoformat()},
            },
            occurred_at=slot_utc,
            occurrence_id=f"recurring:{key}",
            rule_id=rule.id,
        )
        try:
            summary = bus.dispatch(db, event, now=now)
            db.commit()
        except Exception as exc:  # noqa: BLE001
            db.rollback()
            log_json(
                automation_logger,
                logging.ERROR,
                "automation.recurring_failed",
                rule_id=rule.id,
                slot=key,
                error=str(exc),
            )
            continue
        enqueued += getattr(summary, "enqueued", 0)
    return enqueued


def validate_time_based_config(config: dict[str, Any]) -> None:
    anchor_event = str(config.get("anchor_event") or "").strip().lower()
    if not anchor_event:
        raise MatchError("Time-based trigger needs anchor_event")
    normalized = ANCHOR_ALIASES.get(anchor_event, anchor_event)
    if normalized not in EVENT_FAMILIES or EVENT_FAMILIES[normalized][0] in PINNED_FAMILIES:
        raise MatchError(f"Unsupported anchor_event '{anchor_event}'")
    normalize_offset(config.get("offset"))
    for item in config.get("cancel_on") or []:
        if str(item).strip().lower() not in EVENT_FAMILIES:
            raise MatchError(f"Unknown cancel_on event '{item}'")
