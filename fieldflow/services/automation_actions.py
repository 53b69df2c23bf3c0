import hashlib
import json
import re
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from fieldflow.core.clock import utcnow
from fieldflow.core.config import settings
from fieldflow.core.id_utils import generate_reference
from fieldflow.models.appointment import Appointment
from fieldflow.models.automation import AutomationRule, AutomationRuleRun
from fieldflow.models.contact import Contact
from fieldflow.models.contract import Contract
from fieldflow.models.integration import OutboundMessage
from fieldflow.models.location import Location
from fieldflow.models.project import Project
from fieldflow.models.quote import Quote
from fieldflow.models.task import Task
from fieldflow.models.user import User
from fieldflow.services.automation_errors import ActionFailure, MatchError
from fieldflow.services.automation_matcher import condition_matches, parse_expression, resolve_path
from fieldflow.services.crm_client import CrmClientFactory
from fieldflow.services.messaging_provider import (
    MessageSendRequest,
    MessagingProvider,
    build_messaging_providers,
    get_messaging_provider,
)
from fieldflow.services.realtime_publisher import (
    RealtimePublisher,
    build_realtime_publisher,
    location_channel,
    user_channel,
)
from fieldflow.services.weather_provider import WeatherProvider, build_weather_provider


class ActionType(str, Enum):
    SEND_SMS = "send-sms"
    SEND_EMAIL = "send-email"
    CREATE_TASK = "create-task"
    MOVE_TO_STAGE = "move-to-stage"
    PUSH_NOTIFICATION = "push-notification"
    ASSIGN_USER = "assign-user"
    UPDATE_REALTIME_CHANNEL = "update-realtime-channel"
    TRANSITION_PIPELINE = "transition-pipeline"
    CONDITIONAL_ACTION = "conditional-action"
    KEYWORD_ROUTER = "keyword-router"
    CHECK_WEATHER = "check-weather"
    GENERATE_CONTRACT = "generate-contract"
    ENABLE_TRACKING = "enable-tracking"
    SEND_DAILY_BRIEF = "send-daily-brief"
    ADD_TAG = "add-tag"
    REMOVE_TAG = "remove-tag"


_TEMPLATE_VAR_RE = re.compile(r"{{\s*([a-zA-Z0-9_.$]+)\s*}}")
# Nested action definitions are rendered when they are dispatched, not by their parent.
_NESTED_ACTION_KEYS = frozenset({"action", "else_action", "actions"})
_MAX_NESTING = 3
_TASK_PRIORITIES = {"low", "medium", "high"}


@dataclass
class ActionServices:
    messaging: dict[str, MessagingProvider]
    crm: CrmClientFactory
    realtime: RealtimePublisher
    weather: WeatherProvider | None = None
    default_messaging_provider: str = field(default_factory=lambda: settings.messaging_provider_default)


def build_action_services() -> ActionServices:
    return ActionServices(
        messaging=build_messaging_providers(),
        crm=CrmClientFactory(),
        realtime=build_realtime_publisher(),
        weather=build_weather_provider(),
    )


@dataclass
class ActionContext:
    db: Session
    rule: AutomationRule
    location: Location | None
    context: dict[str, Any]
    services: ActionServices
    rule_run: AutomationRuleRun | None
    dedupe_key: str
    step_path: str
    dry_run: bool = False
    depth: int = 0

    @property
    def location_id(self) -> str:
        return self.rule.location_id

    def nested(self, suffix: str) -> "ActionContext":
        if self.depth + 1 > _MAX_NESTING:
            raise ActionFailure("Nested actions are limited to three levels")
        return ActionContext(
            db=self.db,
            rule=self.rule,
            location=self.location,
            context=self.context,
            services=self.services,
            rule_run=self.rule_run,
            dedupe_key=self.dedupe_key,
            step_path=f"{self.step_path}.{suffix}",
            dry_run=self.dry_run,
            depth=self.depth + 1,
        )


ActionHandler = Callable[[ActionContext, dict[str, Any]], dict[str, Any]]


def render_template(template: str, context: dict[str, Any]) -> str:
    def _replace(match: re.Match[str]) -> str:
        resolved = resolve_path(context, match.group(1))
        if resolved is None:
            return ""
        if isinstance(resolved, bool):
            return "true" if resolved else "false"
        if isinstance(resolved, float) and resolved.is_integer():
            return str(int(resolved))
        if isinstance(resolved, (dict, list)):
            return json.dumps(resolved, ensure_ascii=True)
        return str(resolved)

    return _TEMPLATE_VAR_RE.sub(_replace, template)


def render_config(config: dict[str, Any], context: dict[str, Any]) -> dict[str, Any]:
    def _render(value: Any) -> Any:
        if isinstance(value, str):
            return render_template(value, context)
        if isinstance(value, list):
            return [_render(item) for item in value]
        if isinstance(value, dict):
            return {key: _render(item) for key, item in value.items()}
        return value

    return {
        key: (value if key in _NESTED_ACTION_KEYS else _render(value))
        for key, value in (config or {}).items()
    }


def parse_action_type(action: dict[str, Any]) -> ActionType:
    raw = str((action or {}).get("type") or "").strip().lower()
    try:
        return ActionType(raw)
    except ValueError:
        raise ActionFailure(f"Unsupported action type '{raw}'", action_type=raw) from None


def prepare_action(action: dict[str, Any], context: dict[str, Any]) -> tuple[ActionType, dict[str, Any]]:
    action_type = parse_action_type(action)
    config = action.get("config_json") if isinstance(action.get("config_json"), dict) else {}
    return action_type, render_config(config, context)


def run_action(ctx: ActionContext, action_type: ActionType, config: dict[str, Any]) -> dict[str, Any]:
    try:
        return _ACTION_HANDLERS[action_type](ctx, config)
    except ActionFailure as exc:
        if exc.action_type is None:
            exc.action_type = action_type.value
        raise


def dispatch_action(ctx: ActionContext, action: dict[str, Any]) -> dict[str, Any]:
    action_type, config = prepare_action(action, ctx.context)
    output = run_action(ctx, action_type, config)
    return {"type": action_type.value, "output": output}


def _text(config: dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = config.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    return ""


def _context_id(ctx: ActionContext, config: dict[str, Any], key: str, path: str) -> str | None:
    value = config.get(key) or resolve_path(ctx.context, path)
    return str(value).strip() if value else None


def _load_contact(ctx: ActionContext, config: dict[str, Any]) -> Contact | None:
    contact_id = _context_id(ctx, config, "contact_id", "contact.id")
    if not contact_id:
        return None
    return ctx.db.execute(
        select(Contact).where(Contact.location_id == ctx.location_id, Contact.id == contact_id)
    ).scalar_one_or_none()


def _load_project(ctx: ActionContext, config: dict[str, Any]) -> Project | None:
    project_id = _context_id(ctx, config, "project_id", "project.id")
    if not project_id:
        project_id = resolve_path(ctx.context, "quote.projectId")
    if not project_id:
        return None
    return ctx.db.execute(
        select(Project).where(Project.location_id == ctx.location_id, Project.id == str(project_id))
    ).scalar_one_or_none()


def _publish(ctx: ActionContext, channel: str, name: str, data: dict[str, Any]) -> bool:
    return bool(ctx.services.realtime.publish(channel, name, data))


def _message_fingerprint(ctx: ActionContext, channel: str, recipient: str, content: str) -> str:
    raw = "|".join((ctx.dedupe_key, ctx.step_path, channel, recipient, content))
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def _send_message(ctx: ActionContext, config: dict[str, Any], *, channel: str) -> dict[str, Any]:
    contact_snapshot = ctx.context.get("contact") if isinstance(ctx.context.get("contact"), dict) else {}
    default_recipient = contact_snapshot.get("phone") if channel == "sms" else contact_snapshot.get("email")
    recipient = _text(config, "to", "recipient") or str(default_recipient or "").strip()
    if not recipient:
        raise ActionFailure(f"No {channel} recipient for contact")

    content = _text(config, "message", "body", "content")
    if not content:
        raise ActionFailure(f"{channel} content rendered empty")
    subject = _text(config, "subject") or None
    if channel == "email" and not subject:
        raise ActionFailure("Email subject is required")

    provider_name = _text(config, "provider") or ctx.services.default_messaging_provider
    fingerprint = _message_fingerprint(ctx, channel, recipient, content)
    existing = ctx.db.execute(
        select(OutboundMessage).where(OutboundMessage.fingerprint == fingerprint)
    ).scalar_one_or_none()
    if existing is not None and existing.status == "sent":
        return {
            "outbound_message_id": existing.id,
            "recipient": recipient,
            "status": existing.status,
            "deduplicated": True,
        }

    if ctx.dry_run:
        return {
            "provider": provider_name,
            "recipient": recipient,
            "subject": subject,
            "content_preview": content,
            "dry_run": True,
        }

    provider = get_messaging_provider(ctx.services.messaging, provider_name)
    message = existing or OutboundMessage(
        id=str(uuid.uuid4()),
        location_id=ctx.location_id,
        fingerprint=fingerprint,
        channel=channel,
        provider=provider.name,
        contact_id=contact_snapshot.get("id"),
        rule_run_id=ctx.rule_run.id if ctx.rule_run else None,
        recipient=recipient,
        subject=subject,
        content=content[:2000],
        status="queued",
    )
    if existing is None:
        ctx.db.add(message)

    try:
        result = provider.send_message(
            MessageSendRequest(
                location_id=ctx.location_id,
                channel=channel,
                recipient=recipient,
                content=content,
                subject=subject,
                crm_contact_id=contact_snapshot.get("crmContactId"),
                crm_access_token=ctx.location.crm_access_token if ctx.location else None,
            )
        )
    except ActionFailure:
        raise
    except Exception as exc:  # noqa: BLE001
        raise ActionFailure(f"{channel} send failed: {exc}") from exc

    message.provider = result.provider
    message.status = result.status
    message.external_message_id = result.message_id or None
    message.error_message = None
    ctx.db.flush()
    return {
        "outbound_message_id": message.id,
        "provider": result.provider,
        "message_id": result.message_id,
        "recipient": recipient,
        "status": result.status,
    }


def _action_send_sms(ctx: ActionContext, config: dict[str, Any]) -> dict[str, Any]:
    return _send_message(ctx, config, channel="sms")


def _action_send_email(ctx: ActionContext, config: dict[str, Any]) -> dict[str, Any]:
    return _send_message(ctx, config, channel="email")


def _action_create_task(ctx: ActionContext, config: dict[str, Any]) -> dict[str, Any]:
    title = _text(config, "title")
    if not title:
        raise ActionFailure("Task title rendered empty")
    body = _text(config, "body", "description") or None
    priority = (_text(config, "priority") or "medium").lower()
    if priority not in _TASK_PRIORITIES:
        raise ActionFailure(f"Task priority must be one of {sorted(_TASK_PRIORITIES)}")

    due_at = None
    due_in_hours = float(config.get("due_in_hours") or 0) + 24 * float(config.get("due_in_days") or 0)
    if due_in_hours > 0:
        due_at = utcnow() + timedelta(hours=due_in_hours)

    assignee_user_id = _text(config, "assignee_user_id") or None
    if not assignee_user_id and config.get("assign_to_owner", True):
        assignee_user_id = resolve_path(ctx.context, "contact.assignedUserId") or resolve_path(
            ctx.context, "project.assignedUserId"
        )

    if ctx.dry_run:
        return {
            "title": title,
            "body": body,
            "priority": priority,
            "due_at": due_at.isoformat() if due_at else None,
            "assignee_user_id": assignee_user_id,
            "dry_run": True,
        }

    task = Task(
        id=str(uuid.uuid4()),
        location_id=ctx.location_id,
        reference=generate_reference("TSK"),
        rule_run_id=ctx.rule_run.id if ctx.rule_run else None,
        contact_id=resolve_path(ctx.context, "contact.id"),
        project_id=resolve_path(ctx.context, "project.id"),
        title=title[:200],
        body=body[:1000] if body else None,
        priority=priority,
        status="open",
        assignee_user_id=assignee_user_id,
        due_at=due_at,
        metadata_json={"rule_id": ctx.rule.id, "event_type": resolve_path(ctx.context, "event.type")},
    )
    ctx.db.add(task)
    ctx.db.flush()
    return {
        "task_id": task.id,
        "reference": task.reference,
        "title": task.title,
        "priority": task.priority,
        "assignee_user_id": task.assignee_user_id,
        "due_at": due_at.isoformat() if due_at else None,
    }


def _move_project(
    ctx: ActionContext,
    config: dict[str, Any],
    *,
    stage_id: str,
    pipeline_id: str | None,
) -> dict[str, Any]:
    project = _load_project(ctx, config)
    if project is None:
        raise ActionFailure("No project linked to this event")

    previous_stage_id = project.pipeline_stage_id
    previous_pipeline_id = project.pipeline_id
    if ctx.dry_run:
        return {
            "project_id": project.id,
            "from_stage_id": previous_stage_id,
            "to_stage_id": stage_id,
            "pipeline_id": pipeline_id or previous_pipeline_id,
            "dry_run": True,
        }

    now = utcnow()
    project.pipeline_stage_id = stage_id
    if pipeline_id:
        project.pipeline_id = pipeline_id
    if previous_stage_id != stage_id:
        project.stage_entered_at = now
    ctx.db.flush()

    output: dict[str, Any] = {
        "project_id": project.id,
        "from_stage_id": previous_stage_id,
        "to_stage_id": stage_id,
        "pipeline_id": project.pipeline_id,
        "crm_synced": False,
    }
    client = ctx.services.crm.for_location(ctx.location) if project.crm_opportunity_id else None
    if client is not None:
        payload: dict[str, Any] = {"pipelineStageId": stage_id}
        if project.pipeline_id:
            payload["pipelineId"] = project.pipeline_id
        with client:
            client.update_opportunity(project.crm_opportunity_id, payload)
        output["crm_synced"] = True

    # Publish last: a CRM failure rolls the stage write back.
    _publish(
        ctx,
        location_channel(ctx.location_id),
        "project-stage-changed",
        {"projectId": project.id, "fromStageId": previous_stage_id, "toStageId": stage_id},
    )
    return output


def _action_move_to_stage(ctx: ActionContext, config: dict[str, Any]) -> dict[str, Any]:
    stage_id = _text(config, "stage_id")
    if not stage_id:
        raise ActionFailure("move-to-stage requires stage_id")
    return _move_project(ctx, config, stage_id=stage_id, pipeline_id=_text(config, "pipeline_id") or None)


def _action_transition_pipeline(ctx: ActionContext, config: dict[str, Any]) -> dict[str, Any]:
    pipeline_id = _text(config, "pipeline_id")
    stage_id = _text(config, "stage_id")
    if not pipeline_id or not stage_id:
        raise ActionFailure("transition-pipeline requires pipeline_id and stage_id")
    return _move_project(ctx, config, stage_id=stage_id, pipeline_id=pipeline_id)


def _active_user(ctx: ActionContext, user_id: str) -> User | None:
    return ctx.db.execute(
        select(User).where(
            User.location_id == ctx.location_id,
            User.id == user_id,
            User.is_active.is_(True),
        )
    ).scalar_one_or_none()


def _action_assign_user(ctx: ActionContext, config: dict[str, Any]) -> dict[str, Any]:
    user_id = _text(config, "user_id")
    if not user_id:
        raise ActionFailure("assign-user requires user_id")
    user = _active_user(ctx, user_id)
    if user is None:
        raise ActionFailure("Assignee is not an active user of this location")

    target = (_text(config, "target") or "both").lower()
    contact = _load_contact(ctx, config) if target in {"contact", "both"} else None
    project = _load_project(ctx, config) if target in {"project", "both"} else None
    if contact is None and project is None:
        raise ActionFailure("No contact or project to assign")

    if ctx.dry_run:
        return {
            "user_id": user.id,
            "contact_id": contact.id if contact else None,
            "project_id": project.id if project else None,
            "dry_run": True,
        }

    if contact is not None:
        contact.assigned_user_id = user.id
    if project is not None:
        project.assigned_user_id = user.id
    ctx.db.flush()

    output: dict[str, Any] = {
        "user_id": user.id,
        "contact_id": contact.id if contact else None,
        "project_id": project.id if project else None,
        "crm_synced": False,
    }
    if contact is not None and contact.crm_contact_id and user.crm_user_id:
        client = ctx.services.crm.for_location(ctx.location)
        if client is not None:
            with client:
                client.update_contact(contact.crm_contact_id, {"assignedTo": user.crm_user_id})
            output["crm_synced"] = True
    _publish(
        ctx,
        user_channel(user.id),
        "assignment",
        {"contactId": output["contact_id"], "projectId": output["project_id"], "ruleId": ctx.rule.id},
    )
    return output


def tag_list(config: dict[str, Any]) -> list[str]:
    """Tags named by ``tags`` (list or comma separated) or a single ``tag``."""
    raw = config.get("tags")
    if raw is None:
        raw = config.get("tag")
    if isinstance(raw, str):
        raw = raw.split(",")
    if not isinstance(raw, list):
        return []
    tags: list[str] = []
    for item in raw:
        tag = str(item or "").strip()
        if tag and tag.lower() not in {existing.lower() for existing in tags}:
            tags.append(tag)
    return tags


def _change_tags(ctx: ActionContext, config: dict[str, Any], *, add: bool) -> dict[str, Any]:
    label = "add-tag" if add else "remove-tag"
    requested = tag_list(config)
    if not requested:
        raise ActionFailure(f"{label} requires tags")
    contact = _load_contact(ctx, config)
    if contact is None:
        raise ActionFailure("No contact to tag")

    current = [str(tag) for tag in contact.tags_json or []]
    current_keys = {tag.lower() for tag in current}
    requested_keys = {tag.lower() for tag in requested}
    if add:
        changed = [tag for tag in requested if tag.lower() not in current_keys]
        tags = current + changed
    else:
        changed = [tag for tag in current if tag.lower() in requested_keys]
        tags = [tag for tag in current if tag.lower() not in requested_keys]

    output: dict[str, Any] = {
        "contact_id": contact.id,
        "added" if add else "removed": changed,
        "tags": tags,
        "crm_synced": False,
    }
    if ctx.dry_run:
        output["dry_run"] = True
        return output
    if not changed:
        return output

    # JSON columns only track reassignment.
    contact.tags_json = tags
    ctx.db.flush()
    if contact.crm_contact_id:
        client = ctx.services.crm.for_location(ctx.location)
        if client is not None:
            with client:
                client.update_contact(contact.crm_contact_id, {"tags": tags})
            output["crm_synced"] = True
    _publish(
        ctx,
        location_channel(ctx.location_id),
        "contact-tags-changed",
        {"contactId": contact.id, "tags": tags, "ruleId": ctx.rule.id},
    )
    return output


def _action_add_tag(ctx: ActionContext, config: dict[str, Any]) -> dict[str, Any]:
    return _change_tags(ctx, config, add=True)


def _action_remove_tag(ctx: ActionContext, config: dict[str, Any]) -> dict[str, Any]:
    return _change_tags(ctx, config, add=False)


def _notification_recipients(ctx: ActionContext, config: dict[str, Any]) -> list[str]:
    raw = config.get("user_ids")
    if isinstance(raw, list) and raw:
        return [str(item) for item in raw if str(item).strip()]
    audience = (_text(config, "audience") or "assigned").lower()
    if audience == "all":
        return list(
            ctx.db.execute(
                select(User.id).where(User.location_id == ctx.location_id, User.is_active.is_(True))
            ).scalars().all()
        )
    assigned = resolve_path(ctx.context, "contact.assignedUserId") or resolve_path(
        ctx.context, "project.assignedUserId"
    )
    return [str(assigned)] if assigned else []


def _action_push_notification(ctx: ActionContext, config: dict[str, Any]) -> dict[str, Any]:
    title = _text(config, "title")
    body = _text(config, "body", "message")
    if not title and not body:
        raise ActionFailure("push-notification requires title or body")
    recipients = _notification_recipients(ctx, config)
    if not recipients:
        raise ActionFailure("push-notification has no recipients")
    if ctx.dry_run:
        return {"recipients": recipients, "title": title, "body": body, "dry_run": True}

    payload = {"title": title, "body": body, "data": config.get("data") or {}, "ruleId": ctx.rule.id}
    delivered = sum(1 for user_id in recipients if _publish(ctx, user_channel(user_id), "notification", payload))
    return {"recipients": recipients, "delivered": delivered}


def _action_update_realtime_channel(ctx: ActionContext, config: dict[str, Any]) -> dict[str, Any]:
    name = _text(config, "event", "name") or "automation-update"
    data = config.get("data") if isinstance(config.get("data"), dict) else {}
    payload = {
        "ruleId": ctx.rule.id,
        "entityType": resolve_path(ctx.context, "event.entityType"),
        "entityId": resolve_path(ctx.context, "event.entityId"),
        **data,
    }
    channel = location_channel(ctx.location_id)
    if ctx.dry_run:
        return {"channel": channel, "event": name, "data": payload, "dry_run": True}
    return {"channel": channel, "event": name, "published": _publish(ctx, channel, name, payload)}


def _action_conditional(ctx: ActionContext, config: dict[str, Any]) -> dict[str, Any]:
    condition = config.get("condition")
    if not isinstance(condition, dict):
        expression = _text(config, "expression", "if")
        if not expression:
            raise ActionFailure("conditional-action requires expression or condition")
        try:
            condition = parse_expression(expression)
        except MatchError as exc:
            raise ActionFailure(str(exc)) from exc

    actual = resolve_path(ctx.context, str(condition.get("field") or ""))
    matched = condition_matches(
        actual,
        operator=str(condition.get("operator") or "equals"),
        expected=condition.get("value"),
        case_sensitive=bool(condition.get("case_sensitive", False)),
    )
    branch = config.get("action") if matched else config.get("else_action")
    output: dict[str, Any] = {"matched": matched, "actual": actual, "dispatched": None}
    if isinstance(branch, dict):
        nested = dispatch_action(ctx.nested("then" if matched else "else"), branch)
        output["dispatched"] = nested["type"]
        output["result"] = nested["output"]
    return output


def keyword_routes(config: dict[str, Any]) -> list[tuple[str, str]]:
    """Flatten route config into ordered ``(keyword, action_name)`` pairs.

    Accepts a ``{keyword: action}`` map or a list of ``{"keyword": ..., "action": ...}``
    / ``{"keywords": [...], "action": ...}`` entries.
    """
    routes = config.get("routes") or config.get("keywords") or {}
    if isinstance(routes, dict):
        return [(str(keyword), str(name)) for keyword, name in routes.items()]
    pairs: list[tuple[str, str]] = []
    if isinstance(routes, list):
        for item in routes:
            if not isinstance(item, dict) or not item.get("action"):
                continue
            keywords = item.get("keywords", item.get("keyword"))
            if not isinstance(keywords, list):
                keywords = [keywords]
            pairs.extend((str(keyword), str(item["action"])) for keyword in keywords if keyword)
    return pairs


def match_keyword(
    text: str,
    routes: list[tuple[str, str]],
    *,
    whole_word: bool = False,
) -> tuple[str, str] | None:
    lowered = (text or "").lower()
    for keyword, action_name in routes:
        needle = keyword.strip().lower()
        if not needle:
            continue
        if whole_word:
            if re.search(rf"(?<!\w){re.escape(needle)}(?!\w)", lowered):
                return keyword, action_name
        elif needle in lowered:
            return keyword, action_name
    return None


def _action_keyword_router(ctx: ActionContext, config: dict[str, Any]) -> dict[str, Any]:
    text = resolve_path(ctx.context, _text(config, "text_path") or "message.body")
    found = match_keyword(str(text or ""), keyword_routes(config), whole_word=bool(config.get("whole_word")))
    action_name = found[1] if found else (_text(config, "default_action") or None)
    output: dict[str, Any] = {
        "keyword": found[0] if found else None,
        "action_name": action_name,
        "dispatched": None,
    }
    if action_name is None:
        return output

    named_actions = config.get("actions") if isinstance(config.get("actions"), dict) else {}
    action = named_actions.get(action_name)
    if not isinstance(action, dict):
        raise ActionFailure(f"keyword-router has no action named '{action_name}'")
    nested = dispatch_action(ctx.nested(action_name), action)
    output["dispatched"] = nested["type"]
    output["result"] = nested["output"]
    return output


def _action_check_weather(ctx: ActionContext, config: dict[str, Any]) -> dict[str, Any]:
    query = _text(config, "location")
    if not query:
        parts = [
            resolve_path(ctx.context, "contact.city"),
            resolve_path(ctx.context, "contact.state"),
        ]
        query = ",".join(str(part) for part in parts if part)
        if query:
            query = f"{query},US"
        else:
            query = str(resolve_path(ctx.context, "contact.postalCode") or "")
    if not query:
        raise ActionFailure("check-weather needs a location or a contact address")
    if ctx.dry_run:
        return {"location": query, "dry_run": True}
    if ctx.services.weather is None:
        raise ActionFailure("Weather provider is not configured")

    report = ctx.services.weather.current(location_query=query).to_json()
    report["location"] = query
    ctx.context["weather"] = report
    return report


def _action_generate_contract(ctx: ActionContext, config: dict[str, Any]) -> dict[str, Any]:
    quote_id = _context_id(ctx, config, "quote_id", "quote.id")
    quote = None
    if quote_id:
        quote = ctx.db.execute(
            select(Quote).where(Quote.location_id == ctx.location_id, Quote.id == quote_id)
        ).scalar_one_or_none()
    if quote is None:
        raise ActionFailure("generate-contract requires a quote")

    template_key = _text(config, "template_key") or "standard"
    existing = ctx.db.execute(
        select(Contract).where(
            Contract.location_id == ctx.location_id,
            Contract.quote_id == quote.id,
            Contract.template_key == template_key,
        )
    ).scalar_one_or_none()
    if existing is not None:
        return {"contract_id": existing.id, "contract_number": existing.contract_number, "deduplicated": True}

    valid_days = int(config.get("valid_days") or settings.contract_valid_days)
    valid_until = utcnow() + timedelta(days=valid_days)
    title = _text(config, "title") or f"Service Agreement {quote.quote_number}"
    if ctx.dry_run:
        return {"quote_id": quote.id, "title": title, "valid_until": valid_until.isoformat(), "dry_run": True}

    contract = Contract(
        id=str(uuid.uuid4()),
        location_id=ctx.location_id,
        contract_number=generate_reference("CTR"),
        quote_id=quote.id,
        project_id=quote.project_id,
        contact_id=quote.contact_id,
        rule_run_id=ctx.rule_run.id if ctx.rule_run else None,
        title=title[:200],
        template_key=template_key,
        status="draft",
        total=quote.total,
        terms_json=config.get("terms") if isinstance(config.get("terms"), dict) else None,
        valid_until=valid_until,
    )
    ctx.db.add(contract)
    ctx.db.flush()
    return {
        "contract_id": contract.id,
        "contract_number": contract.contract_number,
        "status": contract.status,
        "valid_until": valid_until.isoformat(),
    }


def _action_enable_tracking(ctx: ActionContext, config: dict[str, Any]) -> dict[str, Any]:
    tracking_type = _text(config, "tracking_type", "type")
    if not tracking_type:
        raise ActionFailure("enable-tracking requires tracking_type")
    contact = _load_contact(ctx, config)
    if contact is None:
        raise ActionFailure("No contact linked to this event")
    enabled = bool(config.get("enabled", True))
    if ctx.dry_run:
        return {"contact_id": contact.id, "tracking_type": tracking_type, "enabled": enabled, "dry_run": True}

    tracking = dict(contact.tracking_json or {})
    tracking[tracking_type] = {
        "enabled": enabled,
        "updatedAt": utcnow().isoformat(),
        "ruleId": ctx.rule.id,
    }
    contact.tracking_json = tracking
    ctx.db.flush()
    return {"contact_id": contact.id, "tracking_type": tracking_type, "enabled": enabled}


def _local_day_start(location: Location | None, now: datetime) -> datetime:
    try:
        zone = ZoneInfo(location.timezone if location else "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        zone = ZoneInfo("UTC")
    local_now = now.astimezone(zone)
    return local_now.replace(hour=0, minute=0, second=0, microsecond=0).astimezone(ZoneInfo("UTC"))


def daily_brief_counts(db: Session, *, location: Location | None, location_id: str, now: datetime) -> dict[str, int]:
    start = _local_day_start(location, now)
    end = start + timedelta(days=1)

    def _count(model, column, *criteria) -> int:
        return int(
            db.execute(
                select(func.count(model.id)).where(
                    model.location_id == location_id,
                    column >= start,
                    column < end,
                    *criteria,
                )
            ).scalar_one()
            or 0
        )

    return {
        "new_contacts": _count(Contact, Contact.created_at),
        "new_projects": _count(Project, Project.created_at),
        "quotes_signed": _count(Quote, Quote.signed_at),
        "appointments_today": _count(Appointment, Appointment.start_time, Appointment.status != "cancelled"),
    }


def _action_send_daily_brief(ctx: ActionContext, config: dict[str, Any]) -> dict[str, Any]:
    counts = daily_brief_counts(ctx.db, location=ctx.location, location_id=ctx.location_id, now=utcnow())
    recipients = _notification_recipients(ctx, {"audience": "all", **config})
    if ctx.dry_run:
        return {"counts": counts, "recipients": recipients, "dry_run": True}

    payload = {"title": _text(config, "title") or "Daily brief", "counts": counts}
    delivered = sum(1 for user_id in recipients if _publish(ctx, user_channel(user_id), "daily-brief", payload))
    _publish(ctx, location_channel(ctx.location_id), "daily-brief", payload)
    return {"counts": counts, "recipients": recipients, "delivered": delivered}


_ACTION_HANDLERS: dict[ActionType, ActionHandler] = {
    ActionType.SEND_SMS: _action_send_sms,
    ActionType.SEND_EMAIL: _action_send_email,
    ActionType.CREATE_TASK: _action_create_task,
    ActionType.MOVE_TO_STAGE: _action_move_to_stage,
    ActionType.PUSH_NOTIFICATION: _action_push_notification,
    ActionType.ASSIGN_USER: _action_assign_user,
    ActionType.UPDATE_REALTIME_CHANNEL: _action_update_realtime_channel,
    ActionType.TRANSITION_PIPELINE: _action_transition_pipeline,
    ActionType.CONDITIONAL_ACTION: _action_conditional,
    ActionType.KEYWORD_ROUTER: _action_keyword_router,
    ActionType.CHECK_WEATHER: _action_check_weather,
    ActionType.GENERATE_CONTRACT: _action_generate_contract,
    ActionType.ENABLE_TRACKING: _action_enable_tracking,
    ActionType.SEND_DAILY_BRIEF: _action_send_daily_brief,
    ActionType.ADD_TAG: _action_add_tag,
    ActionType.REMOVE_TAG: _action_remove_tag,
}

_missing_handlers = set(ActionType) - set(_ACTION_HANDLERS)
if _missing_handlers:
    raise RuntimeError(f"Action types without handlers: {sorted(item.value for item in _missing_handlers)}")
