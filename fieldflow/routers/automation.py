from fastapi import APIRouter, Depends, HTTPException, Query, status as http_status
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from fieldflow.core.api_docs import error_responses
from fieldflow.core.deps import get_action_services, get_db, get_event_bus
from fieldflow.core.permissions import require_location_roles
from fieldflow.core.security_current import LocationAccess
from fieldflow.models.automation import AutomationQueueItem, AutomationRule, AutomationRuleRun, AutomationRuleStep
from fieldflow.schemas.automation import (
    AutomationActionOut,
    AutomationConditionOut,
    AutomationDispatchOut,
    AutomationEventIn,
    AutomationQueueItemOut,
    AutomationQueueListOut,
    AutomationQueueStatsOut,
    AutomationQueueStatus,
    AutomationRuleCreateIn,
    AutomationRuleListOut,
    AutomationRuleOut,
    AutomationRuleRunListOut,
    AutomationRuleRunOut,
    AutomationRuleStepOut,
    AutomationRuleTestIn,
    AutomationRuleTestOut,
    AutomationRuleUpdateIn,
    AutomationRunStatus,
    AutomationTemplateCatalogOut,
    AutomationTemplateInstallIn,
    AutomationTemplateInstallOut,
    AutomationTemplateOut,
)
from fieldflow.schemas.common import PaginationMeta
from fieldflow.services.audit_service import log_audit_event
from fieldflow.services.automation_actions import ActionServices
from fieldflow.services.automation_bus import AutomationEventBus
from fieldflow.services.automation_errors import UnknownEventType
from fieldflow.services.automation_events import build_event, ingress_event
from fieldflow.services.automation_executor import simulate_rule
from fieldflow.services.automation_queue import queue_stats, requeue
from fieldflow.services.automation_rules import (
    create_rule as create_rule_record,
    deactivate_rule,
    install_template_rule,
    list_automation_templates,
    update_rule as update_rule_record,
)

router = APIRouter(prefix="/automations", tags=["automation"])

_DEFAULT_TEST_EVENTS = {
    "quote-event": "quote-signed",
    "appointment-event": "appointment-scheduled",
    "contact-event": "contact-created",
}

_REQUIRED_RULE_FIELDS = ("name", "is_active", "trigger_type", "conditions", "actions", "priority")


def _rule_or_404(db: Session, *, location_id: str, rule_id: str) -> AutomationRule:
    rule = db.execute(
        select(AutomationRule).where(
            AutomationRule.id == rule_id,
            AutomationRule.location_id == location_id,
        )
    ).scalar_one_or_none()
    if not rule:
        raise HTTPException(status_code=404, detail="Automation rule not found")
    return rule


def _condition_out(item: dict) -> AutomationConditionOut:
    return AutomationConditionOut(
        field=str(item.get("field") or ""),
        operator=str(item.get("operator") or "equals"),
        value=item.get("value"),
        case_sensitive=bool(item.get("case_sensitive", False)),
    )


def _action_out(item: dict) -> AutomationActionOut:
    return AutomationActionOut(
        type=str(item.get("type") or ""),
        config_json=item.get("config_json") if isinstance(item.get("config_json"), dict) else {},
        critical=bool(item.get("critical", False)),
    )


def _rule_out(rule: AutomationRule) -> AutomationRuleOut:
    conditions = rule.conditions_json if isinstance(rule.conditions_json, list) else []
    actions = rule.actions_json if isinstance(rule.actions_json, list) else []
    return AutomationRuleOut(
        id=rule.id,
        name=rule.name,
        description=rule.description,
        is_active=rule.is_active,
        trigger_type=rule.trigger_type,
        trigger_subtype=rule.trigger_subtype,
        trigger_config=rule.trigger_config,
        pipeline_id=rule.pipeline_id,
        stage_id=rule.stage_id,
        calendar_id=rule.calendar_id,
        conditions=[_condition_out(item) for item in conditions if isinstance(item, dict)],
        actions=[_action_out(item) for item in actions if isinstance(item, dict)],
        priority=rule.priority,
        template_key=rule.template_key,
        version=rule.version,
        execution_count=rule.execution_count,
        success_count=rule.success_count,
        failure_count=rule.failure_count,
        last_executed_at=rule.last_executed_at,
        created_by_user_id=rule.created_by_user_id,
        updated_by_user_id=rule.updated_by_user_id,
        deactivated_at=rule.deactivated_at,
        created_at=rule.created_at,
        updated_at=rule.updated_at,
    )


def _template_out(item: dict) -> AutomationTemplateOut:
    return AutomationTemplateOut(
        template_key=item["template_key"],
        name=item["name"],
        description=item["description"],
        trigger_type=item["trigger_type"],
        trigger_subtype=item.get("trigger_subtype"),
        trigger_config=item.get("trigger_config"),
        default_conditions=[_condition_out(row) for row in item.get("default_conditions", []) if isinstance(row, dict)],
        default_actions=[_action_out(row) for row in item.get("default_actions", []) if isinstance(row, dict)],
    )


def _step_out(step: AutomationRuleStep) -> AutomationRuleStepOut:
    return AutomationRuleStepOut(
        id=step.id,
        step_index=step.step_index,
        action_type=step.action_type,
        status=step.status,
        input_json=step.input_json if isinstance(step.input_json, dict) else None,
        output_json=step.output_json if isinstance(step.output_json, dict) else None,
        error_message=step.error_message,
        created_at=step.created_at,
    )


def _steps_by_run_ids(
    db: Session,
    *,
    location_id: str,
    run_ids: list[str],
) -> dict[str, list[AutomationRuleStep]]:
    if not run_ids:
        return {}
    rows = db.execute(
        select(AutomationRuleStep)
        .where(
            AutomationRuleStep.location_id == location_id,
            AutomationRuleStep.rule_run_id.in_(run_ids),
        )
        .order_by(AutomationRuleStep.rule_run_id.asc(), AutomationRuleStep.step_index.asc())
    ).scalars().all()
    out: dict[str, list[AutomationRuleStep]] = {run_id: [] for run_id in run_ids}
    for row in rows:
        out.setdefault(row.rule_run_id, []).append(row)
    return out


def _run_out(run: AutomationRuleRun, *, steps: list[AutomationRuleStep]) -> AutomationRuleRunOut:
    return AutomationRuleRunOut(
        id=run.id,
        rule_id=run.rule_id,
        queue_item_id=run.queue_item_id,
        attempt=run.attempt,
        event_type=run.event_type,
        entity_type=run.entity_type,
        entity_id=run.entity_id,
        status=run.status,
        error_message=run.error_message,
        steps_total=run.steps_total,
        steps_succeeded=run.steps_succeeded,
        steps_failed=run.steps_failed,
        started_at=run.started_at,
        completed_at=run.completed_at,
        steps=[_step_out(item) for item in steps],
    )


def _queue_item_out(item: AutomationQueueItem) -> AutomationQueueItemOut:
    return AutomationQueueItemOut(
        id=item.id,
        rule_id=item.rule_id,
        entity_type=item.entity_type,
        entity_id=item.entity_id,
        occurrence_id=item.occurrence_id,
        event_type=item.event_type,
        status=item.status,
        attempts=item.attempts,
        max_attempts=item.max_attempts,
        next_attempt_at=item.next_attempt_at,
        claimed_by=item.claimed_by,
        claimed_at=item.claimed_at,
        last_error=item.last_error,
        result_json=item.result_json if isinstance(item.result_json, dict) else None,
        completed_at=item.completed_at,
        dead_lettered_at=item.dead_lettered_at,
        created_at=item.created_at,
    )


def _pagination(*, total: int, limit: int, offset: int, count: int) -> PaginationMeta:
    return PaginationMeta(
        total=total,
        limit=limit,
        offset=offset,
        count=count,
        has_next=(offset + count) < total,
    )


@router.get(
    "/templates",
    response_model=AutomationTemplateCatalogOut,
    summary="List automation templates",
    responses=error_responses(401, 403, 500),
)
def list_templates(
    _: LocationAccess = Depends(require_location_roles("owner", "admin", "staff")),
):
    return AutomationTemplateCatalogOut(items=[_template_out(item) for item in list_automation_templates()])


@router.post(
    "/templates/install",
    response_model=AutomationTemplateInstallOut,
    summary="Install automation template",
    responses=error_responses(401, 403, 422, 500),
)
def install_template(
    payload: AutomationTemplateInstallIn,
    db: Session = Depends(get_db),
    access: LocationAccess = Depends(require_location_roles("owner", "admin")),
):
    rule, template, created = install_template_rule(
        db,
        location_id=access.location.id,
        actor_user_id=access.user.id,
        template_key=payload.template_key,
        activate=payload.activate,
    )
    log_audit_event(
        db,
        location_id=access.location.id,
        actor_user_id=access.user.id,
        action="automation.template.install",
        target_type="automation_rule",
        target_id=rule.id,
        metadata_json={"template_key": payload.template_key, "version": rule.version, "is_active": rule.is_active},
    )
    db.commit()
    db.refresh(rule)
    return AutomationTemplateInstallOut(template=_template_out(template), rule=_rule_out(rule), created=created)


@router.post(
    "/rules",
    response_model=AutomationRuleOut,
    status_code=http_status.HTTP_201_CREATED,
    summary="Create automation rule",
    responses=error_responses(400, 401, 403, 409, 422, 500),
)
def create_rule(
    payload: AutomationRuleCreateIn,
    db: Session = Depends(get_db),
    access: LocationAccess = Depends(require_location_roles("owner", "admin")),
):
    try:
        rule = create_rule_record(
            db,
            location_id=access.location.id,
            actor_user_id=access.user.id,
            name=payload.name,
            description=payload.description,
            is_active=payload.is_active,
            trigger_type=payload.trigger_type,
            trigger_subtype=payload.trigger_subtype,
            trigger_config=payload.trigger_config,
            pipeline_id=payload.pipeline_id,
            stage_id=payload.stage_id,
            calendar_id=payload.calendar_id,
            conditions=[item.model_dump(mode="json") for item in payload.conditions],
            actions=[item.model_dump(mode="json") for item in payload.actions],
            priority=payload.priority,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="Automation rule name already exists") from None

    log_audit_event(
        db,
        location_id=access.location.id,
        actor_user_id=access.user.id,
        action="automation.rule.create",
        target_type="automation_rule",
        target_id=rule.id,
        metadata_json={"name": rule.name, "trigger_type": rule.trigger_type},
    )
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="Automation rule name already exists") from None
    db.refresh(rule)
    return _rule_out(rule)


@router.get(
    "/rules",
    response_model=AutomationRuleListOut,
    summary="List automation rules",
    responses=error_responses(401, 403, 422, 500),
)
def list_rules(
    is_active: bool | None = Query(default=None),
    trigger_type: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    access: LocationAccess = Depends(require_location_roles("owner", "admin", "staff")),
):
    count_stmt = select(func.count(AutomationRule.id)).where(AutomationRule.location_id == access.location.id)
    stmt = select(AutomationRule).where(AutomationRule.location_id == access.location.id)
    normalized_trigger = trigger_type.strip().lower() if trigger_type else None
    if is_active is not None:
        count_stmt = count_stmt.where(AutomationRule.is_active.is_(is_active))
        stmt = stmt.where(AutomationRule.is_active.is_(is_active))
    if normalized_trigger:
        count_stmt = count_stmt.where(AutomationRule.trigger_type == normalized_trigger)
        stmt = stmt.where(AutomationRule.trigger_type == normalized_trigger)

    total = int(db.execute(count_stmt).scalar_one())
    rows = db.execute(
        stmt.order_by(AutomationRule.priority.desc(), AutomationRule.created_at.asc()).offset(offset).limit(limit)
    ).scalars().all()
    items = [_rule_out(row) for row in rows]
    return AutomationRuleListOut(
        items=items,
        pagination=_pagination(total=total, limit=limit, offset=offset, count=len(items)),
        is_active=is_active,
        trigger_type=normalized_trigger,
    )


@router.get(
    "/rules/{rule_id}",
    response_model=AutomationRuleOut,
    summary="Get automation rule",
    responses=error_responses(401, 403, 404, 500),
)
def get_rule(
    rule_id: str,
    db: Session = Depends(get_db),
    access: LocationAccess = Depends(require_location_roles("owner", "admin", "staff")),
):
    return _rule_out(_rule_or_404(db, location_id=access.location.id, rule_id=rule_id))


@router.patch(
    "/rules/{rule_id}",
    response_model=AutomationRuleOut,
    summary="Update automation rule",
    responses=error_responses(400, 401, 403, 404, 409, 422, 500),
)
def update_rule(
    rule_id: str,
    payload: AutomationRuleUpdateIn,
    db: Session = Depends(get_db),
    access: LocationAccess = Depends(require_location_roles("owner", "admin")),
):
    rule = _rule_or_404(db, location_id=access.location.id, rule_id=rule_id)
    changes = payload.model_dump(mode="json", exclude_unset=True)
    for key in _REQUIRED_RULE_FIELDS:
        if key in changes and changes[key] is None:
            raise HTTPException(status_code=400, detail=f"{key} cannot be null")
    try:
        changed = update_rule_record(db, rule, actor_user_id=access.user.id, changes=changes)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    log_audit_event(
        db,
        location_id=access.location.id,
        actor_user_id=access.user.id,
        action="automation.rule.update",
        target_type="automation_rule",
        target_id=rule.id,
        metadata_json={"version": rule.version, "changed": changed},
    )
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="Automation rule name already exists") from None
    db.refresh(rule)
    return _rule_out(rule)


@router.delete(
    "/rules/{rule_id}",
    response_model=AutomationRuleOut,
    summary="Deactivate automation rule",
    responses=error_responses(401, 403, 404, 500),
)
def delete_rule(
    rule_id: str,
    db: Session = Depends(get_db),
    access: LocationAccess = Depends(require_location_roles("owner", "admin")),
):
    rule = _rule_or_404(db, location_id=access.location.id, rule_id=rule_id)
    if deactivate_rule(db, rule, actor_user_id=access.user.id):
        log_audit_event(
            db,
            location_id=access.location.id,
            actor_user_id=access.user.id,
            action="automation.rule.deactivate",
            target_type="automation_rule",
            target_id=rule.id,
            metadata_json={"version": rule.version},
        )
        db.commit()
        db.refresh(rule)
    return _rule_out(rule)


@router.post(
    "/rules/{rule_id}/test",
    response_model=AutomationRuleTestOut,
    summary="Test automation rule against a sample event (dry run)",
    responses=error_responses(400, 401, 403, 404, 422, 500),
)
def test_rule(
    rule_id: str,
    payload: AutomationRuleTestIn,
    db: Session = Depends(get_db),
    access: LocationAccess = Depends(require_location_roles("owner", "admin", "staff")),
    services: ActionServices = Depends(get_action_services),
):
    rule = _rule_or_404(db, location_id=access.location.id, rule_id=rule_id)
    event_type = payload.event_type or _DEFAULT_TEST_EVENTS.get(rule.trigger_type, rule.trigger_type)
    try:
        event = build_event(
            event_type,
            location_id=access.location.id,
            entity_type=payload.entity_type,
            entity_id=payload.entity_id,
            data=payload.data,
            rule_id=rule.id,
        )
    except UnknownEventType as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    simulation = simulate_rule(db, rule=rule, event=event, services=services)
    db.rollback()
    return AutomationRuleTestOut(event_type=event.type, **simulation)


@router.get(
    "/runs",
    response_model=AutomationRuleRunListOut,
    summary="List automation rule runs with step logs",
    responses=error_responses(401, 403, 422, 500),
)
def list_runs(
    rule_id: str | None = Query(default=None),
    status: AutomationRunStatus | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    access: LocationAccess = Depends(require_location_roles("owner", "admin", "staff")),
):
    count_stmt = select(func.count(AutomationRuleRun.id)).where(AutomationRuleRun.location_id == access.location.id)
    stmt = select(AutomationRuleRun).where(AutomationRuleRun.location_id == access.location.id)
    normalized_rule_id = rule_id.strip() if rule_id else None
    if normalized_rule_id:
        count_stmt = count_stmt.where(AutomationRuleRun.rule_id == normalized_rule_id)
        stmt = stmt.where(AutomationRuleRun.rule_id == normalized_rule_id)
    if status:
        count_stmt = count_stmt.where(AutomationRuleRun.status == status)
        stmt = stmt.where(AutomationRuleRun.status == status)

    total = int(db.execute(count_stmt).scalar_one())
    runs = db.execute(
        stmt.order_by(AutomationRuleRun.started_at.desc()).offset(offset).limit(limit)
    ).scalars().all()
    steps_map = _steps_by_run_ids(db, location_id=access.location.id, run_ids=[item.id for item in runs])
    items = [_run_out(run, steps=steps_map.get(run.id, [])) for run in runs]
    return AutomationRuleRunListOut(
        items=items,
        pagination=_pagination(total=total, limit=limit, offset=offset, count=len(items)),
        rule_id=normalized_rule_id,
        status=status,
    )


@router.get(
    "/queue",
    response_model=AutomationQueueListOut,
    summary="List automation queue items",
    responses=error_responses(401, 403, 422, 500),
)
def list_queue(
    status: AutomationQueueStatus | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    access: LocationAccess = Depends(require_location_roles("owner", "admin")),
):
    count_stmt = select(func.count(AutomationQueueItem.id)).where(AutomationQueueItem.location_id == access.location.id)
    stmt = select(AutomationQueueItem).where(AutomationQueueItem.location_id == access.location.id)
    if status:
        count_stmt = count_stmt.where(AutomationQueueItem.status == status)
        stmt = stmt.where(AutomationQueueItem.status == status)

    total = int(db.execute(count_stmt).scalar_one())
    rows = db.execute(
        stmt.order_by(AutomationQueueItem.created_at.desc()).offset(offset).limit(limit)
    ).scalars().all()
    items = [_queue_item_out(row) for row in rows]
    return AutomationQueueListOut(
        items=items,
        pagination=_pagination(total=total, limit=limit, offset=offset, count=len(items)),
        status=status,
    )


@router.get(
    "/queue/stats",
    response_model=AutomationQueueStatsOut,
    summary="Automation queue counts per status",
    responses=error_responses(401, 403, 500),
)
def get_queue_stats(
    db: Session = Depends(get_db),
    access: LocationAccess = Depends(require_location_roles("owner", "admin")),
):
    counts = queue_stats(db, location_id=access.location.id)
    return AutomationQueueStatsOut(
        pending=counts["pending"],
        processing=counts["processing"],
        completed=counts["completed"],
        failed=counts["failed"],
        dead_lettered=counts["dead-lettered"],
        total=counts["total"],
    )


@router.post(
    "/queue/{item_id}/requeue",
    response_model=AutomationQueueItemOut,
    summary="Requeue a dead-lettered or failed item",
    responses=error_responses(401, 403, 404, 409, 500),
)
def requeue_item(
    item_id: str,
    db: Session = Depends(get_db),
    access: LocationAccess = Depends(require_location_roles("owner", "admin")),
):
    item = db.execute(
        select(AutomationQueueItem).where(
            AutomationQueueItem.id == item_id,
            AutomationQueueItem.location_id == access.location.id,
        )
    ).scalar_one_or_none()
    if not item:
        raise HTTPException(status_code=404, detail="Queue item not found")
    if not requeue(db, location_id=access.location.id, item_id=item.id):
        raise HTTPException(status_code=409, detail="Only dead-lettered or failed items can be requeued")
    log_audit_event(
        db,
        location_id=access.location.id,
        actor_user_id=access.user.id,
        action="automation.queue.requeue",
        target_type="automation_queue_item",
        target_id=item.id,
        metadata_json={"rule_id": item.rule_id},
    )
    db.commit()
    db.refresh(item)
    return _queue_item_out(item)


@router.post(
    "/events",
    response_model=AutomationDispatchOut,
    status_code=http_status.HTTP_202_ACCEPTED,
    summary="Ingest an external event (CRM webhook, inbound SMS, payment)",
    responses=error_responses(400, 401, 403, 422, 500),
)
def ingest_event(
    payload: AutomationEventIn,
    db: Session = Depends(get_db),
    access: LocationAccess = Depends(require_location_roles("owner", "admin", "staff")),
    bus: AutomationEventBus = Depends(get_event_bus),
):
    try:
        event = ingress_event(
            db,
            payload.type,
            location_id=access.location.id,
            entity_type=payload.entity_type,
            entity_id=payload.entity_id,
            data=payload.data,
            occurred_at=payload.occurred_at,
            occurrence_id=payload.occurrence_id,
        )
    except UnknownEventType as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if event.rule_id is None and event.family in {"time-based", "recurring-schedule"}:
        raise HTTPException(status_code=400, detail=f"'{event.type}' events are generated by the scheduler")

    summary = bus.dispatch(db, event)
    db.commit()
    return AutomationDispatchOut(occurrence_id=event.occurrence_id, **summary.to_json())
