import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import update
from sqlalchemy.orm import Session

from fieldflow.core.clock import utcnow
from fieldflow.core.observability import automation_logger, log_json
from fieldflow.models.automation import AutomationQueueItem, AutomationRule, AutomationRuleRun, AutomationRuleStep
from fieldflow.models.location import Location
from fieldflow.services.automation_actions import (
    ActionContext,
    ActionServices,
    prepare_action,
    run_action,
)
from fieldflow.services.automation_errors import ActionFailure
from fieldflow.services.automation_events import AutomationEvent
from fieldflow.services.automation_matcher import build_context, evaluate_conditions


@dataclass
class RuleExecution:
    run: AutomationRuleRun | None
    status: str
    succeeded: int
    failed: int
    critical_failure: bool = False
    errors: list[str] = field(default_factory=list)
    steps: list[dict[str, Any]] = field(default_factory=list)

    @property
    def error_summary(self) -> str | None:
        return "; ".join(self.errors)[:255] if self.errors else None

    def to_json(self) -> dict[str, Any]:
        return {
            "run_id": self.run.id if self.run else None,
            "status": self.status,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "critical_failure": self.critical_failure,
            "errors": self.errors,
        }


def _short_error(value: Exception | str) -> str:
    text = str(value).strip() or "Action failed"
    return text[:255]


def record_rule_outcome(db: Session, *, rule_id: str, succeeded: bool, now: datetime | None = None) -> None:
    now = now or utcnow()
    db.execute(
        update(AutomationRule)
        .where(AutomationRule.id == rule_id)
        .values(
            execution_count=AutomationRule.execution_count + 1,
            success_count=AutomationRule.success_count + (1 if succeeded else 0),
            failure_count=AutomationRule.failure_count + (0 if succeeded else 1),
            last_executed_at=now,
        )
        .execution_options(synchronize_session=False)
    )


def execute_rule(
    db: Session,
    *,
    rule: AutomationRule,
    event: AutomationEvent,
    services: ActionServices,
    context: dict[str, Any] | None = None,
    queue_item: AutomationQueueItem | None = None,
) -> RuleExecution:
    """Run every action of ``rule`` in list order and record the run.

    A failing action is logged on its step and does not stop later actions unless it is
    marked ``critical``. Counters are bumped once per run, after the last action.
    """
    started_at = utcnow()
    context = context if context is not None else build_context(event, rule=rule)
    location = db.get(Location, rule.location_id)
    actions = [item for item in (rule.actions_json or []) if isinstance(item, dict)]

    run = AutomationRuleRun(
        id=str(uuid.uuid4()),
        location_id=rule.location_id,
        rule_id=rule.id,
        queue_item_id=queue_item.id if queue_item else None,
        attempt=queue_item.attempts if queue_item else 1,
        event_type=event.type,
        entity_type=event.entity_type,
        entity_id=event.entity_id,
        status="running",
        steps_total=len(actions),
        started_at=started_at,
    )
    db.add(run)
    db.flush()

    execution = RuleExecution(run=run, status="running", succeeded=0, failed=0)
    dedupe_key = queue_item.fingerprint if queue_item else run.id

    for index, action in enumerate(actions, start=1):
        raw_type = str(action.get("type") or "")
        critical = bool(action.get("critical", False))
        step = AutomationRuleStep(
            id=str(uuid.uuid4()),
            location_id=rule.location_id,
            rule_run_id=run.id,
            step_index=index,
            action_type=raw_type[:40] or "unknown",
            status="running",
        )
        db.add(step)
        try:
            action_type, config = prepare_action(action, context)
            step.input_json = {"type": action_type.value, "config": config, "critical": critical}
            ctx = ActionContext(
                db=db,
                rule=rule,
                location=location,
                context=context,
                services=services,
                rule_run=run,
                dedupe_key=dedupe_key,
                step_path=str(index),
            )
            with db.begin_nested():
                output = run_action(ctx, action_type, config)
        except Exception as exc:  # noqa: BLE001
            message = _short_error(exc)
            step.status = "failed"
            step.error_message = message
            execution.failed += 1
            execution.errors.append(f"{raw_type or 'unknown'}: {message}")
            execution.steps.append({"index": index, "type": raw_type, "status": "failed", "error": message})
            log_json(
                automation_logger,
                logging.WARNING,
                "automation.action_failed",
                rule_id=rule.id,
                run_id=run.id,
                step_index=index,
                action_type=raw_type,
                critical=critical,
                error_type=type(exc).__name__,
                error=message,
                expected=isinstance(exc, ActionFailure),
            )
            if critical:
                execution.critical_failure = True
                break
            continue

        step.status = "success"
        step.output_json = output
        execution.succeeded += 1
        execution.steps.append({"index": index, "type": action_type.value, "status": "success"})
        context.setdefault("actions", {})[action_type.value] = output
        context["last_action"] = {"type": action_type.value, "output": output}

    now = utcnow()
    if execution.failed == 0:
        execution.status = "success"
    elif execution.succeeded == 0:
        execution.status = "failed"
    else:
        execution.status = "partial"

    run.status = execution.status
    run.steps_succeeded = execution.succeeded
    run.steps_failed = execution.failed
    run.error_message = execution.error_summary
    run.completed_at = now
    record_rule_outcome(db, rule_id=rule.id, succeeded=execution.failed == 0, now=now)
    db.flush()
    db.expire(rule, ["execution_count", "success_count", "failure_count", "last_executed_at"])

    log_json(
        automation_logger,
        logging.INFO,
        "automation.rule_executed",
        rule_id=rule.id,
        run_id=run.id,
        queue_item_id=queue_item.id if queue_item else None,
        event_type=event.type,
        entity_id=event.entity_id,
        status=execution.status,
        succeeded=execution.succeeded,
        failed=execution.failed,
        critical_failure=execution.critical_failure,
    )
    return execution


def simulate_rule(
    db: Session,
    *,
    rule: AutomationRule,
    event: AutomationEvent,
    services: ActionServices,
) -> dict[str, Any]:
    context = build_context(event, rule=rule)
    conditions = evaluate_conditions(context=context, conditions=rule.conditions_json, rule_id=rule.id)
    location = db.get(Location, rule.location_id)

    previews: list[dict[str, Any]] = []
    if conditions.passed:
        for index, action in enumerate(rule.actions_json or [], start=1):
            raw_type = str((action or {}).get("type") or "")
            try:
                action_type, config = prepare_action(action, context)
                ctx = ActionContext(
                    db=db,
                    rule=rule,
                    location=location,
                    context=context,
                    services=services,
                    rule_run=None,
                    dedupe_key=f"dry-run:{rule.id}",
                    step_path=str(index),
                    dry_run=True,
                )
                output = run_action(ctx, action_type, config)
            except Exception as exc:  # noqa: BLE001
                previews.append({"index": index, "type": raw_type, "status": "failed", "error": _short_error(exc)})
                continue
            previews.append(
                {"index": index, "type": action_type.value, "status": "preview", "config": config, "output": output}
            )
            context.setdefault("actions", {})[action_type.value] = output
            context["last_action"] = {"type": action_type.value, "output": output}

    return {
        "rule_id": rule.id,
        "matched": conditions.passed,
        "reason": conditions.reason,
        "errors": [str(error) for error in conditions.errors],
        "actions": previews,
    }
