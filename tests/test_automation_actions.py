import json
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from fieldflow.core.clock import as_utc, utcnow
from fieldflow.models.automation import AutomationRule
from fieldflow.models.contact import Contact
from fieldflow.models.contract import Contract
from fieldflow.models.integration import OutboundMessage
from fieldflow.models.location import Location
from fieldflow.models.project import Project
from fieldflow.models.quote import Quote
from fieldflow.models.task import Task
from fieldflow.services.automation_actions import (
    ActionContext,
    daily_brief_counts,
    dispatch_action,
    keyword_routes,
    match_keyword,
    prepare_action,
    render_config,
    render_template,
)
from fieldflow.services.automation_errors import ActionFailure, CrmError
from fieldflow.services.automation_events import quote_event
from fieldflow.services.automation_matcher import build_context
from tests.conftest import make_rule


def _ctx(session_local, db, seeded, services, *, dry_run: bool = False, **extra_context) -> ActionContext:
    rule = db.get(AutomationRule, make_rule(session_local, seeded.location_id))
    event = quote_event(db, db.get(Quote, seeded.quote_id), "signed")
    context = build_context(event, rule=rule)
    context.update(extra_context)
    return ActionContext(
        db=db,
        rule=rule,
        location=db.get(Location, seeded.location_id),
        context=context,
        services=services,
        rule_run=None,
        dedupe_key="dedupe-1",
        step_path="1",
        dry_run=dry_run,
    )


def _run(ctx: ActionContext, action_type: str, **config):
    return dispatch_action(ctx, {"type": action_type, "config_json": config})["output"]


def test_render_template_substitutes_paths_and_blanks_missing():
    context = {
        "contact": {"firstName": "Dana"},
        "quote": {"total": 4200.0, "depositRequired": True},
        "tags": ["a", "b"],
    }
    rendered = render_template(
        "Hi {{contact.firstName}}, ${{ quote.total }} deposit={{quote.depositRequired}} {{tags}}{{missing.path}}!",
        context,
    )
    assert rendered == 'Hi Dana, $4200 deposit=true ["a", "b"]!'


def test_render_config_leaves_nested_actions_for_dispatch_time():
    config = {
        "message": "Hi {{contact.firstName}}",
        "action": {"type": "send-sms", "config_json": {"message": "{{weather.condition}}"}},
    }
    rendered = render_config(config, {"contact": {"firstName": "Dana"}})
    assert rendered["message"] == "Hi Dana"
    assert rendered["action"]["config_json"]["message"] == "{{weather.condition}}"


def test_unknown_action_type_fails():
    with pytest.raises(ActionFailure):
        prepare_action({"type": "launch-rocket", "config_json": {}}, {})


def test_send_sms_uses_contact_phone_and_deduplicates(session_local, db, seeded, services, messaging):
    ctx = _ctx(session_local, db, seeded, services)

    first = _run(ctx, "send-sms", message="Thanks {{contact.firstName}} for signing {{quote.quoteNumber}}")
    second = _run(ctx, "send-sms", message="Thanks {{contact.firstName}} for signing {{quote.quoteNumber}}")

    assert [request.content for request in messaging.sent] == ["Thanks Dana for signing Q-1001"]
    assert messaging.sent[0].recipient == "+15125550100"
    assert messaging.sent[0].crm_contact_id == "crm-contact-1"
    assert first["status"] == "sent"
    assert second["deduplicated"] is True
    assert second["outbound_message_id"] == first["outbound_message_id"]
    stored = db.get(OutboundMessage, first["outbound_message_id"])
    assert stored.channel == "sms"
    assert stored.external_message_id == "fake-1"


def test_send_sms_without_recipient_fails(session_local, db, seeded, services, messaging):
    ctx = _ctx(session_local, db, seeded, services)
    ctx.context["contact"]["phone"] = None
    with pytest.raises(ActionFailure, match="recipient"):
        _run(ctx, "send-sms", message="hello")
    assert messaging.sent == []


def test_provider_error_becomes_action_failure(session_local, db, seeded, services, messaging):
    ctx = _ctx(session_local, db, seeded, services)
    messaging.fail_with = RuntimeError("gateway down")
    with pytest.raises(ActionFailure, match="gateway down"):
        _run(ctx, "send-sms", message="hello")


def test_send_email_requires_subject(session_local, db, seeded, services, messaging):
    ctx = _ctx(session_local, db, seeded, services)
    with pytest.raises(ActionFailure, match="subject"):
        _run(ctx, "send-email", body="Your quote")

    output = _run(ctx, "send-email", subject="Quote {{quote.quoteNumber}}", body="Signed!")
    assert output["recipient"] == "dana@example.com"
    assert messaging.sent[-1].subject == "Quote Q-1001"


def test_create_task_assigns_contact_owner(session_local, db, seeded, services):
    ctx = _ctx(session_local, db, seeded, services)
    before = utcnow()
    output = _run(ctx, "create-task", title="Schedule {{contact.fullName}}", priority="high", due_in_hours=24)

    task = db.get(Task, output["task_id"])
    assert task.title == "Schedule Dana Customer"
    assert task.priority == "high"
    assert task.assignee_user_id == seeded.tech_id
    assert task.contact_id == seeded.contact_id
    assert task.reference.startswith("TSK-")
    assert as_utc(task.due_at) >= before + timedelta(hours=24)

    with pytest.raises(ActionFailure):
        _run(ctx, "create-task", title="Bad", priority="urgent")


def test_move_to_stage_updates_project_and_syncs_crm(session_local, db, seeded, services, publisher, crm):
    ctx = _ctx(session_local, db, seeded, services)
    output = _run(ctx, "move-to-stage", stage_id="stage-signed")

    project = db.get(Project, seeded.project_id)
    assert project.pipeline_stage_id == "stage-signed"
    assert as_utc(project.stage_entered_at) > utcnow() - timedelta(minutes=1)
    assert output["from_stage_id"] == "stage-new"
    assert output["crm_synced"] is True
    assert publisher.names(f"location:{seeded.location_id}") == ["project-stage-changed"]

    assert len(crm.requests) == 1
    request = crm.requests[0]
    assert request.method == "PUT"
    assert request.url.path == "/opportunities/opp-1"
    assert request.headers["Authorization"] == "Bearer crm-token"
    assert json.loads(request.content) == {"pipelineStageId": "stage-signed", "pipelineId": "pipe-main"}


def test_move_to_stage_surfaces_crm_errors(session_local, db, seeded, services, crm):
    crm.status_code = 500
    ctx = _ctx(session_local, db, seeded, services)
    with pytest.raises(CrmError) as excinfo:
        _run(ctx, "move-to-stage", stage_id="stage-signed")
    assert excinfo.value.status_code == 500


def test_failed_crm_sync_does_not_announce_stage_move(session_local, db, seeded, services, publisher, crm):
    crm.status_code = 500
    ctx = _ctx(session_local, db, seeded, services)
    with pytest.raises(CrmError):
        with db.begin_nested():
            _run(ctx, "move-to-stage", stage_id="stage-signed")

    db.expire_all()
    assert db.get(Project, seeded.project_id).pipeline_stage_id == "stage-new"
    assert publisher.names(f"location:{seeded.location_id}") == []


def test_failed_crm_sync_does_not_announce_assignment(session_local, db, seeded, services, publisher, crm):
    crm.status_code = 500
    ctx = _ctx(session_local, db, seeded, services)
    with pytest.raises(CrmError):
        with db.begin_nested():
            _run(ctx, "assign-user", user_id=seeded.staff_id)

    assert publisher.names(f"user:{seeded.staff_id}") == []


def test_assign_user_updates_contact_and_project(session_local, db, seeded, services, publisher, crm):
    ctx = _ctx(session_local, db, seeded, services)
    output = _run(ctx, "assign-user", user_id=seeded.staff_id)

    assert db.get(Contact, seeded.contact_id).assigned_user_id == seeded.staff_id
    assert db.get(Project, seeded.project_id).assigned_user_id == seeded.staff_id
    assert publisher.names(f"user:{seeded.staff_id}") == ["assignment"]
    assert output["crm_synced"] is True
    assert crm.requests[0].url.path == "/contacts/crm-contact-1"
    assert json.loads(crm.requests[0].content) == {"assignedTo": "crm-staff_id"}

    with pytest.raises(ActionFailure, match="active user"):
        _run(ctx, "assign-user", user_id="ghost")


def test_add_and_remove_tag_sync_contact_tags(session_local, db, seeded, services, publisher, crm):
    ctx = _ctx(session_local, db, seeded, services)

    added = _run(ctx, "add-tag", tags="VIP, lead, roofing")
    assert added["added"] == ["VIP", "roofing"]
    assert db.get(Contact, seeded.contact_id).tags_json == ["lead", "VIP", "roofing"]
    assert added["crm_synced"] is True
    assert crm.requests[-1].url.path == "/contacts/crm-contact-1"
    assert json.loads(crm.requests[-1].content) == {"tags": ["lead", "VIP", "roofing"]}
    assert publisher.names(f"location:{seeded.location_id}") == ["contact-tags-changed"]

    removed = _run(ctx, "remove-tag", tag="vip")
    assert removed["removed"] == ["VIP"]
    assert db.get(Contact, seeded.contact_id).tags_json == ["lead", "roofing"]

    requests_before = len(crm.requests)
    unchanged = _run(ctx, "remove-tag", tag="missing")
    assert unchanged["removed"] == []
    assert len(crm.requests) == requests_before

    with pytest.raises(ActionFailure, match="requires tags"):
        _run(ctx, "add-tag", tags=[])


def test_tag_actions_respect_dry_run(session_local, db, seeded, services, publisher, crm):
    ctx = _ctx(session_local, db, seeded, services, dry_run=True)
    output = _run(ctx, "add-tag", tags=["vip"])

    assert output["dry_run"] is True
    assert output["tags"] == ["lead", "vip"]
    assert db.get(Contact, seeded.contact_id).tags_json == ["lead"]
    assert crm.requests == []
    assert publisher.names() == []


def test_failed_crm_sync_rolls_back_tag_change(session_local, db, seeded, services, publisher, crm):
    crm.status_code = 500
    ctx = _ctx(session_local, db, seeded, services)
    with pytest.raises(CrmError):
        with db.begin_nested():
            _run(ctx, "add-tag", tags=["vip"])

    db.expire_all()
    assert db.get(Contact, seeded.contact_id).tags_json == ["lead"]
    assert publisher.names(f"location:{seeded.location_id}") == []


def test_push_notification_audiences(session_local, db, seeded, services, publisher):
    ctx = _ctx(session_local, db, seeded, services)

    assigned = _run(ctx, "push-notification", title="Quote signed", body="{{contact.fullName}} signed")
    assert assigned["recipients"] == [seeded.tech_id]
    channel, name, data = publisher.published[-1]
    assert (channel, name) == (f"user:{seeded.tech_id}", "notification")
    assert data["body"] == "Dana Customer signed"

    everyone = _run(ctx, "push-notification", title="Heads up", audience="all")
    assert set(everyone["recipients"]) == {seeded.owner_id, seeded.staff_id, seeded.tech_id}
    assert everyone["delivered"] == 3


def test_update_realtime_channel_publishes_to_location(session_local, db, seeded, services, publisher):
    ctx = _ctx(session_local, db, seeded, services)
    output = _run(ctx, "update-realtime-channel", event="quote-updated", data={"status": "{{quote.status}}"})
    assert output["published"] is True
    channel, name, data = publisher.published[-1]
    assert channel == f"location:{seeded.location_id}"
    assert name == "quote-updated"
    assert data["status"] == "sent"
    assert data["entityId"] == seeded.quote_id


def test_conditional_action_picks_branch(session_local, db, seeded, services, publisher):
    ctx = _ctx(session_local, db, seeded, services)
    then_branch = {"type": "update-realtime-channel", "config_json": {"event": "big-quote"}}
    else_branch = {"type": "update-realtime-channel", "config_json": {"event": "small-quote"}}

    big = _run(ctx, "conditional-action", expression="quote.total > 1000", action=then_branch, else_action=else_branch)
    small = _run(
        ctx,
        "conditional-action",
        condition={"field": "quote.total", "operator": "greater-than", "value": 10000},
        action=then_branch,
        else_action=else_branch,
    )

    assert big["matched"] is True
    assert small["matched"] is False
    assert publisher.names() == ["big-quote", "small-quote"]


def test_nesting_is_limited():
    ctx = ActionContext(
        db=None,
        rule=None,
        location=None,
        context={},
        services=None,
        rule_run=None,
        dedupe_key="k",
        step_path="1",
        depth=3,
    )
    with pytest.raises(ActionFailure, match="three levels"):
        ctx.nested("then")


def test_match_keyword_is_substring_and_first_route_wins():
    routes = [("yes", "confirm"), ("reschedule", "reschedule"), ("stop", "optout")]
    assert match_keyword("YES please", routes) == ("yes", "confirm")
    assert match_keyword("Yess please", routes) == ("yes", "confirm")
    assert match_keyword("Can we reschedule? yes", routes) == ("yes", "confirm")
    assert match_keyword("nothing to see", routes) is None
    assert match_keyword("", routes) is None


def test_match_keyword_whole_word_opt_in():
    routes = [("yes", "confirm")]
    assert match_keyword("yesterday was fine", routes) == ("yes", "confirm")
    assert match_keyword("yesterday was fine", routes, whole_word=True) is None
    assert match_keyword("ok, YES.", routes, whole_word=True) == ("yes", "confirm")


def test_keyword_routes_accept_keyword_lists():
    config = {
        "routes": [
            {"keywords": ["stop", "unsubscribe"], "action": "optout"},
            {"keyword": "yes", "action": "confirm"},
            {"keywords": "help", "action": "support"},
            {"keywords": ["ignored"]},
        ]
    }
    routes = keyword_routes(config)
    assert routes == [("stop", "optout"), ("unsubscribe", "optout"), ("yes", "confirm"), ("help", "support")]
    assert match_keyword("Please UNSUBSCRIBE me", routes) == ("unsubscribe", "optout")
    assert keyword_routes({"routes": {"yes": "confirm"}}) == [("yes", "confirm")]


def test_keyword_router_dispatches_named_action(session_local, db, seeded, services, publisher):
    ctx = _ctx(session_local, db, seeded, services, message={"body": "Need to RESCHEDULE"})
    config = {
        "routes": {"yes": "confirm", "reschedule": "move"},
        "default_action": "fallback",
        "actions": {
            "confirm": {"type": "update-realtime-channel", "config_json": {"event": "confirmed"}},
            "move": {"type": "update-realtime-channel", "config_json": {"event": "reschedule-{{contact.firstName}}"}},
            "fallback": {"type": "update-realtime-channel", "config_json": {"event": "fallback"}},
        },
    }

    routed = _run(ctx, "keyword-router", **config)
    assert routed["keyword"] == "reschedule"
    assert routed["action_name"] == "move"
    assert routed["dispatched"] == "update-realtime-channel"

    ctx.context["message"]["body"] = "who is this"
    fallback = _run(ctx, "keyword-router", **config)
    assert fallback["keyword"] is None
    assert fallback["action_name"] == "fallback"
    assert publisher.names() == ["reschedule-Dana", "fallback"]


def test_check_weather_feeds_later_conditions(session_local, db, seeded, services, weather, publisher):
    weather.condition_code = 202
    ctx = _ctx(session_local, db, seeded, services)

    report = _run(ctx, "check-weather")
    assert weather.queries == ["Austin,TX,US"]
    assert report["severity"] == 9
    assert ctx.context["weather"]["condition"] == "Thunderstorm"

    outcome = _run(
        ctx,
        "conditional-action",
        expression="weather.severity >= 7",
        action={"type": "update-realtime-channel", "config_json": {"event": "weather-alert"}},
    )
    assert outcome["matched"] is True
    assert publisher.names() == ["weather-alert"]


def test_check_weather_without_provider_fails(session_local, db, seeded, services):
    services.weather = None
    ctx = _ctx(session_local, db, seeded, services)
    with pytest.raises(ActionFailure, match="not configured"):
        _run(ctx, "check-weather")


def test_generate_contract_once_per_quote(session_local, db, seeded, services):
    ctx = _ctx(session_local, db, seeded, services)
    first = _run(ctx, "generate-contract", template_key="standard")
    second = _run(ctx, "generate-contract", template_key="standard")

    contract = db.get(Contract, first["contract_id"])
    assert contract.quote_id == seeded.quote_id
    assert contract.total == 4200.0
    assert contract.title == "Service Agreement Q-1001"
    assert second["deduplicated"] is True
    assert db.execute(select(func.count(Contract.id))).scalar_one() == 1


def test_enable_tracking_records_flag(session_local, db, seeded, services):
    ctx = _ctx(session_local, db, seeded, services)
    _run(ctx, "enable-tracking", tracking_type="technician-eta")
    tracking = db.get(Contact, seeded.contact_id).tracking_json
    assert tracking["technician-eta"]["enabled"] is True
    assert tracking["technician-eta"]["ruleId"] == ctx.rule.id


def test_daily_brief_counts_and_publishes(session_local, db, seeded, services, publisher):
    location = db.get(Location, seeded.location_id)
    counts = daily_brief_counts(db, location=location, location_id=location.id, now=utcnow())
    assert counts == {"new_contacts": 1, "new_projects": 1, "quotes_signed": 0, "appointments_today": 0}

    ctx = _ctx(session_local, db, seeded, services)
    output = _run(ctx, "send-daily-brief", title="Morning {{location.name}}")
    assert output["delivered"] == 3
    assert publisher.names(f"location:{seeded.location_id}") == ["daily-brief"]
    assert publisher.published[-1][2]["title"] == "Morning Lone Star Roofing"


def test_dry_run_has_no_side_effects(session_local, db, seeded, services, messaging, crm, publisher):
    ctx = _ctx(session_local, db, seeded, services, dry_run=True)

    sms = _run(ctx, "send-sms", message="Hi {{contact.firstName}}")
    stage = _run(ctx, "move-to-stage", stage_id="stage-signed")

    assert sms["content_preview"] == "Hi Dana"
    assert stage["dry_run"] is True
    assert messaging.sent == []
    assert crm.requests == []
    assert publisher.published == []
    assert db.execute(select(func.count(OutboundMessage.id))).scalar_one() == 0
    assert db.get(Project, seeded.project_id).pipeline_stage_id == "stage-new"
