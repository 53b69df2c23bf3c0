import json
import uuid
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from fieldflow.core.clock import utcnow
from fieldflow.models.automation import AutomationRule
from fieldflow.services.automation_actions import ActionType, keyword_routes, tag_list
from fieldflow.services.automation_errors import MatchError
from fieldflow.services.automation_events import TRIGGER_SUBTYPES
from fieldflow.services.automation_matcher import CONDITION_OPERATORS, normalize_operator
from fieldflow.services.automation_scheduler import (
    cancel_rule_triggers,
    reschedule_rule_triggers,
    validate_recurring_config,
    validate_time_based_config,
)


_AUTOMATION_TEMPLATE_LIBRARY: list[dict[str, Any]] = [
    {
        "template_key": "quote_signed_followup",
        "name": "Quote Signed Follow-up",
        "description": "Thank the customer, queue project scheduling and draft the contract when a quote is signed.",
        "trigger_type": "quote-event",
        "trigger_subtype": "signed",
        "trigger_config": None,
        "default_conditions": [],
        "default_actions": [
            {
                "type": "send-sms",
                "config_json": {
                    "message": (
                        "Hi {{contact.firstName}}, thanks for signing quote {{quote.quoteNumber}} "
                        "for ${{quote.total}}. We will reach out shortly to schedule your project."
                    ),
                },
            },
            {
                "type": "create-task",
                "config_json": {
                    "title": "Schedule project for {{contact.fullName}}",
                    "body": "Quote {{quote.quoteNumber}} was signed by {{quote.signedBy}}.",
                    "priority": "high",
                    "due_in_hours": 24,
                },
            },
            {
                "type": "generate-contract",
                "config_json": {"template_key": "standard"},
            },
        ],
    },
    {
        "template_key": "appointment_reminder_24h",
        "name": "Appointment Reminder (24h)",
        "description": "Text the customer 24 hours before an appointment with a reschedule link.",
        "trigger_type": "time-based",
        "trigger_subtype": None,
        "trigger_config": {
            "anchor_event": "appointment-scheduled",
            "offset": {"amount": -24, "unit": "hours"},
            "cancel_on": ["appointment-completed", "appointment-noshow"],
        },
        "default_conditions": [],
        "default_actions": [
            {
                "type": "send-sms",
                "config_json": {
                    "message": (
                        "Hi {{contact.firstName}}, reminder: {{appointment.title}} is on "
                        "{{appointment.date}} at {{appointment.time}}. "
                        "Need to change it? {{appointment.rescheduleLink}}"
                    ),
                },
            },
        ],
    },
    {
        "template_key": "sms_keyword_router",
        "name": "Inbound SMS Keyword Router",
        "description": "Route customer replies: confirm, reschedule requests, everything else to the owner.",
        "trigger_type": "sms-received",
        "trigger_subtype": None,
        "trigger_config": None,
        "default_conditions": [
            {"field": "message.body", "operator": "not-empty", "value": None, "case_sensitive": False},
        ],
        "default_actions": [
            {
                "type": "keyword-router",
                "config_json": {
                    "text_path": "message.body",
                    "routes": {"yes": "confirm", "confirm": "confirm", "reschedule": "reschedule"},
                    "default_action": "notify_owner",
                    "actions": {
                        "confirm": {
                            "type": "send-sms",
                            "config_json": {"message": "Thanks {{contact.firstName}}, you are confirmed!"},
                        },
                        "reschedule": {
                            "type": "create-task",
                            "config_json": {
                                "title": "Reschedule request from {{contact.fullName}}",
                                "body": "{{message.body}}",
                                "priority": "high",
                                "due_in_hours": 4,
                            },
                        },
                        "notify_owner": {
                            "type": "push-notification",
                            "config_json": {
                                "title": "New SMS from {{contact.fullName}}",
                                "body": "{{message.body}}",
                            },
                        },
                    },
                },
            },
        ],
    },
    {
        "template_key": "daily_brief",
        "name": "Morning Daily Brief",
        "description": "Push the day's new contacts, projects, signed quotes and appointments to the team.",
        "trigger_type": "recurring-schedule",
        "trigger_subtype": None,
        "trigger_config": {"frequency": "daily", "hour": 7, "minute": 0},
        "default_conditions": [],
        "default_actions": [
            {
                "type": "send-daily-brief",
                "config_json": {"title": "Good morning from {{location.name}}"},
            },
        ],
    },
]


def list_automation_templates() -> list[dict[str, Any]]:
    return [json.loads(json.dumps(item)) for item in _AUTOMATION_TEMPLATE_LIBRARY]


def get_automation_template(template_key: str) -> dict[str, Any]:
    normalized = (template_key or "").strip().lower()
    for template in _AUTOMATION_TEMPLATE_LIBRARY:
        if template["template_key"] == normalized:
            return json.loads(json.dumps(template))
    available = ", ".join(sorted(item["template_key"] for item in _AUTOMATION_TEMPLATE_LIBRARY))
    raise ValueError(f"Unknown template '{template_key}'. Available: {available}")


def normalize_trigger(
    trigger_type: str,
    trigger_subtype: str | None,
    trigger_config: dict[str, Any] | None,
) -> tuple[str, str | None, dict[str, Any] | None]:
    normalized_type = (trigger_type or "").strip().lower().replace("_", "-")
    if normalized_type not in TRIGGER_SUBTYPES:
        available = ", ".join(sorted(TRIGGER_SUBTYPES))
        raise ValueError(f"Unknown trigger type '{trigger_type}'. Available: {available}")
    normalized_subtype = (trigger_subtype or "").strip().lower() or None
    if normalized_subtype and normalized_subtype not in TRIGGER_SUBTYPES[normalized_type]:
        raise ValueError(f"Unknown sub-type '{trigger_subtype}' for trigger '{normalized_type}'")

    config = dict(trigger_config or {})
    try:
        if normalized_type == "time-based":
            validate_time_based_config(config)
        elif normalized_type == "recurring-schedule":
            validate_recurring_config(config)
    except MatchError as exc:
        raise ValueError(str(exc)) from exc
    return normalized_type, normalized_subtype, config or None


def normalize_conditions(raw: list[dict[str, Any]] | None) -> list[dict[str, Any]]:
    normalized: list[dict[str, Any]] = []
    for item in raw or []:
        field_name = str(item.get("field") or "").strip()
        if not field_name:
            raise ValueError("Condition field is required")
        operator = normalize_operator(item.get("operator"))
        if operator not in CONDITION_OPERATORS:
            raise ValueError(f"Unsupported condition operator '{item.get('operator')}'")
        normalized.append(
            {
                "field": field_name,
                "operator": operator,
                "value": item.get("value"),
                "case_sensitive": bool(item.get("case_sensitive", False)),
            }
        )
    return normalized


def _normalize_action(item: dict[str, Any], *, depth: int = 0) -> dict[str, Any]:
    if not isinstance(item, dict):
        raise ValueError("Action must be an object")
    raw_type = str(item.get("type") or "").strip().lower()
    try:
        action_type = ActionType(raw_type)
    except ValueError:
        available = ", ".join(sorted(member.value for member in ActionType))
        raise ValueError(f"Unsupported action type '{raw_type}'. Available: {available}") from None
    config = item.get("config_json")
    if config is None:
        config = {}
    if not isinstance(config, dict):
        raise ValueError(f"config_json for '{raw_type}' must be an object")
    config = dict(config)

    if depth >= 3 and action_type in {ActionType.CONDITIONAL_ACTION, ActionType.KEYWORD_ROUTER}:
        raise ValueError("Nested actions are limited to three levels")
    if action_type == ActionType.CONDITIONAL_ACTION:
        if not config.get("expression") and not isinstance(config.get("condition"), dict):
            raise ValueError("conditional-action requires expression or condition")
        if not isinstance(config.get("action"), dict):
            raise ValueError("conditional-action requires a nested action")
        config["action"] = _normalize_action(config["action"], depth=depth + 1)
        if config.get("else_action") is not None:
            config["else_action"] = _normalize_action(config["else_action"], depth=depth + 1)
    elif action_type == ActionType.KEYWORD_ROUTER:
        named = config.get("actions")
        if not isinstance(named, dict) or not named:
            raise ValueError("keyword-router requires named actions")
        config["actions"] = {str(name): _normalize_action(action, depth=depth + 1) for name, action in named.items()}
        targets = [name for _, name in keyword_routes(config)]
        if config.get("default_action"):
            targets.append(config["default_action"])
        missing = sorted({str(name) for name in targets if str(name) not in config["actions"]})
        if missing:
            raise ValueError(f"keyword-router routes to unknown actions: {', '.join(missing)}")
    elif action_type in {ActionType.ADD_TAG, ActionType.REMOVE_TAG}:
        if not tag_list(config):
            raise ValueError(f"{raw_type} requires tags")

    normalized = {"type": action_type.value, "config_json": config}
    if item.get("critical"):
        normalized["critical"] = True
    return normalized


def normalize_actions(raw: list[dict[str, Any]] | None) -> list[dict[str, Any]]:
    normalized = [_normalize_action(item) for item in raw or []]
    if not normalized:
        raise ValueError("At least one action is required")
    return normalized


def unique_rule_name(db: Session, *, location_id: str, seed_name: str) -> str:
    base = (seed_name or "Automation Rule").strip() or "Automation Rule"
    candidate = base
    suffix = 2
    while db.execute(
        select(AutomationRule.id).where(
            AutomationRule.location_id == location_id,
            func.lower(AutomationRule.name) == candidate.lower(),
        )
    ).scalar_one_or_none():
        candidate = f"{base} ({suffix})"
        suffix += 1
    return candidate


def create_rule(
    db: Session,
    *,
    location_id: str,
    actor_user_id: str | None,
    name: str,
    trigger_type: str,
    actions: list[dict[str, Any]],
    description: str | None = None,
    trigger_subtype: str | None = None,
    trigger_config: dict[str, Any] | None = None,
    conditions: list[dict[str, Any]] | None = None,
    pipeline_id: str | None = None,
    stage_id: str | None = None,
    calendar_id: str | None = None,
    priority: int = 0,
    is_active: bool = True,
    template_key: str | None = None,
) -> AutomationRule:
    normalized_type, normalized_subtype, normalized_config = normalize_trigger(
        trigger_type, trigger_subtype, trigger_config
    )
    rule = AutomationRule(
        id=str(uuid.uuid4()),
        location_id=location_id,
        name=name.strip(),
        description=description,
        is_active=is_active,
        trigger_type=normalized_type,
        trigger_subtype=normalized_subtype,
        trigger_config=normalized_config,
        pipeline_id=pipeline_id,
        stage_id=stage_id,
        calendar_id=calendar_id,
        conditions_json=normalize_conditions(conditions),
        actions_json=normalize_actions(actions),
        priority=priority,
        template_key=template_key,
        version=1,
        created_by_user_id=actor_user_id,
        updated_by_user_id=actor_user_id,
        deactivated_at=None if is_active else utcnow(),
    )
    db.add(rule)
    db.flush()
    return rule


_UPDATABLE_FIELDS = (
    "name",
    "description",
    "is_active",
    "pipeline_id",
    "stage_id",
    "calendar_id",
    "priority",
)


def update_rule(
    db: Session,
    rule: AutomationRule,
    *,
    actor_user_id: str | None,
    changes: dict[str, Any],
) -> list[str]:
    """Apply ``changes`` to ``rule``, bump its version and return the changed field names."""
    changed: list[str] = []
    if {"trigger_type", "trigger_subtype", "trigger_config"} & set(changes):
        trigger_type, trigger_subtype, trigger_config = normalize_trigger(
            changes.get("trigger_type") or rule.trigger_type,
            changes["trigger_subtype"] if "trigger_subtype" in changes else rule.trigger_subtype,
            changes["trigger_config"] if "trigger_config" in changes else rule.trigger_config,
        )
        rule.trigger_type = trigger_type
        rule.trigger_subtype = trigger_subtype
        rule.trigger_config = trigger_config
        changed.extend(key for key in ("trigger_type", "trigger_subtype", "trigger_config") if key in changes)
        reschedule_rule_triggers(db, rule)
    if "conditions" in changes:
        rule.conditions_json = normalize_conditions(changes["conditions"])
        changed.append("conditions")
    if "actions" in changes:
        rule.actions_json = normalize_actions(changes["actions"])
        changed.append("actions")
    for key in _UPDATABLE_FIELDS:
        if key in changes:
            value = changes[key]
            if key == "name":
                value = str(value).strip()
            setattr(rule, key, value)
            changed.append(key)

    if "is_active" in changes:
        rule.deactivated_at = None if rule.is_active else utcnow()
        if not rule.is_active:
            cancel_rule_triggers(db, rule_id=rule.id)

    rule.updated_by_user_id = actor_user_id
    rule.version += 1
    db.flush()
    return changed


def deactivate_rule(db: Session, rule: AutomationRule, *, actor_user_id: str | None) -> bool:
    if not rule.is_active:
        return False
    update_rule(db, rule, actor_user_id=actor_user_id, changes={"is_active": False})
    return True


def install_template_rule(
    db: Session,
    *,
    location_id: str,
    actor_user_id: str | None,
    template_key: str,
    activate: bool = True,
) -> tuple[AutomationRule, dict[str, Any], bool]:
    template = get_automation_template(template_key)
    existing = db.execute(
        select(AutomationRule).where(
            AutomationRule.location_id == location_id,
            func.lower(AutomationRule.template_key) == template["template_key"],
        )
    ).scalar_one_or_none()

    if existing:
        update_rule(
            db,
            existing,
            actor_user_id=actor_user_id,
            changes={
                "description": template["description"],
                "is_active": activate,
                "trigger_type": template["trigger_type"],
                "trigger_subtype": template["trigger_subtype"],
                "trigger_config": template["trigger_config"],
                "conditions": template["default_conditions"],
                "actions": template["default_actions"],
            },
        )
        return existing, template, False

    rule = create_rule(
        db,
        location_id=location_id,
        actor_user_id=actor_user_id,
        name=unique_rule_name(db, location_id=location_id, seed_name=template["name"]),
        description=template["description"],
        trigger_type=template["trigger_type"],
        trigger_subtype=template["trigger_subtype"],
        trigger_config=template["trigger_config"],
        conditions=template["default_conditions"],
        actions=template["default_actions"],
        is_active=activate,
        template_key=template["template_key"],
    )
    return rule, template, True
