from datetime import timedelta

import pytest

from fieldflow.core.clock import utcnow
from fieldflow.models.automation import AutomationRule
from fieldflow.services.automation_errors import MatchError, UnknownEventType
from fieldflow.services.automation_events import build_event, normalize_event_type
from fieldflow.services.automation_matcher import (
    condition_matches,
    evaluate_conditions,
    match_event,
    parse_expression,
    resolve_path,
)
from tests.conftest import make_rule, seed_location


def _quote_signed(location_id: str, **data):
    payload = {
        "quote": {"id": "q-1", "total": 4200, "status": "signed"},
        "contact": {"firstName": "Dana", "tags": ["vip", "roof"]},
        "pipelineId": "pipe-main",
        "stageId": "stage-new",
    }
    payload.update(data)
    return build_event(
        "quote-signed",
        location_id=location_id,
        entity_type="quote",
        entity_id="q-1",
        data=payload,
    )


def test_normalize_event_type_accepts_separators_and_rejects_unknown():
    assert normalize_event_type("Quote.Signed") == "quote-signed"
    assert normalize_event_type("appointment_noshow") == "appointment-noshow"
    with pytest.raises(UnknownEventType):
        normalize_event_type("invoice-paid")


def test_build_event_defaults_occurrence_to_type_and_timestamp():
    occurred = utcnow().replace(microsecond=0)
    event = build_event("contact-created", location_id="loc", entity_type="contact", entity_id="c1", occurred_at=occurred)
    assert event.family == "contact-event"
    assert event.subtype == "created"
    assert event.occurrence_id == f"contact-created:{occurred.isoformat()}"


def test_build_event_keys_sms_and_payment_occurrences_on_provider_ids():
    sms = build_event(
        "sms.received",
        location_id="loc",
        entity_type="contact",
        entity_id="c1",
        data={"message": {"id": "msg-9", "body": "YES"}},
    )
    assert sms.occurrence_id == "sms-received:msg-9"

    payment = build_event(
        "payment-received", location_id="loc", entity_type="payment", entity_id="p1", data={"payment": {"id": "pay-3"}}
    )
    assert payment.occurrence_id == "payment-received:pay-3"

    explicit = build_event(
        "sms-received",
        location_id="loc",
        entity_type="contact",
        entity_id="c1",
        data={"message": {"id": "msg-9"}},
        occurrence_id="custom-1",
    )
    assert explicit.occurrence_id == "custom-1"


def test_resolve_path_handles_nested_lists_and_missing_keys():
    context = {"contact": {"tags": ["vip", "roof"], "name": "Dana"}, "items": [{"sku": "A"}]}
    assert resolve_path(context, "contact.name") == "Dana"
    assert resolve_path(context, "$.items.0.sku") == "A"
    assert resolve_path(context, "contact.tags.5") is None
    assert resolve_path(context, "contact.missing.deeper") is None
    assert resolve_path(context, "") is None


@pytest.mark.parametrize(
    ("actual", "operator", "expected", "result"),
    [
        ("Signed", "equals", "signed", True),
        ("Signed", "not-equals", "signed", False),
        (4200, "greater-than", 1000, True),
        ("4200", "greater-than-or-equals", 4200, True),
        (999, "less-than", "1000", True),
        (1000, "less-than-or-equals", 999, False),
        ("abc", "greater-than", 1, False),
        ("Roof replacement", "contains", "ROOF", True),
        (["vip", "roof"], "contains", "VIP", True),
        ("sent", "in", ["sent", "viewed"], True),
        ("sent", "not-in", ["sent", "viewed"], False),
        ("sent", "in", "sent", False),
        (None, "exists", None, False),
        ("  ", "not-empty", None, False),
        ([], "empty", None, True),
        (0, "exists", None, True),
        ("true", "equals", True, False),
    ],
)
def test_condition_operators(actual, operator, expected, result):
    assert condition_matches(actual, operator=operator, expected=expected) is result


def test_case_sensitive_equality_is_opt_in():
    assert condition_matches("YES", operator="equals", expected="yes") is True
    assert condition_matches("YES", operator="equals", expected="yes", case_sensitive=True) is False


def test_conditions_are_anded_and_stop_at_first_failure():
    context = {"quote": {"total": 4200, "status": "signed"}}
    passed = evaluate_conditions(
        context=context,
        conditions=[
            {"field": "quote.total", "operator": "greater-than", "value": 1000},
            {"field": "quote.status", "operator": "equals", "value": "signed"},
        ],
    )
    assert passed.passed is True

    failed = evaluate_conditions(
        context=context,
        conditions=[
            {"field": "quote.total", "operator": "greater-than", "value": 1000},
            {"field": "quote.status", "operator": "equals", "value": "draft"},
        ],
    )
    assert failed.passed is False
    assert "quote.status" in failed.reason
    assert failed.errors == []


def test_unknown_operator_reports_match_error_and_does_not_match():
    result = evaluate_conditions(
        context={"quote": {"total": 10}},
        conditions=[{"field": "quote.total", "operator": "between", "value": [1, 20]}],
        rule_id="rule-1",
    )
    assert result.passed is False
    assert len(result.errors) == 1
    assert isinstance(result.errors[0], MatchError)
    assert result.errors[0].rule_id == "rule-1"


def test_parse_expression_decodes_json_values():
    assert parse_expression("weather.severity >= 7") == {
        "field": "weather.severity",
        "operator": "greater-than-or-equals",
        "value": 7,
    }
    assert parse_expression("contact.state == 'TX'")["value"] == "TX"
    assert parse_expression('quote.status in ["sent", "viewed"]')["value"] == ["sent", "viewed"]
    with pytest.raises(MatchError):
        parse_expression("just words")


def test_match_orders_by_priority_then_creation(session_local, db, seeded):
    base = utcnow() - timedelta(hours=1)
    low = make_rule(session_local, seeded.location_id, name="Low", priority=1, created_at=base)
    high_late = make_rule(session_local, seeded.location_id, name="High late", priority=5, created_at=base + timedelta(minutes=2))
    high_early = make_rule(session_local, seeded.location_id, name="High early", priority=5, created_at=base)

    event = _quote_signed(seeded.location_id)
    first = match_event(db, event)
    second = match_event(db, event)

    assert [rule.id for rule in first.rules] == [high_early, high_late, low]
    assert [rule.id for rule in second.rules] == [rule.id for rule in first.rules]


def test_match_filters_by_subtype_scope_and_conditions(session_local, db, seeded):
    signed_only = make_rule(session_local, seeded.location_id, name="Signed", trigger_subtype="signed")
    make_rule(session_local, seeded.location_id, name="Viewed", trigger_subtype="viewed")
    make_rule(session_local, seeded.location_id, name="Other pipeline", pipeline_id="pipe-other")
    make_rule(
        session_local,
        seeded.location_id,
        name="Small quotes",
        conditions=[{"field": "quote.total", "operator": "less-than", "value": 100}],
    )
    big = make_rule(
        session_local,
        seeded.location_id,
        name="Big VIP quotes",
        pipeline_id="pipe-main",
        conditions=[
            {"field": "quote.total", "operator": "greater-than", "value": 1000},
            {"field": "contact.tags", "operator": "contains", "value": "vip"},
        ],
    )
    make_rule(session_local, seeded.location_id, name="Inactive", is_active=False)
    make_rule(session_local, seeded.location_id, name="Appointments", trigger_type="appointment-event")

    result = match_event(db, _quote_signed(seeded.location_id))

    assert {rule.id for rule in result.rules} == {signed_only, big}
    assert result.errors == []


def test_match_is_location_scoped(session_local, db, seeded):
    other = seed_location(session_local)
    make_rule(session_local, other.location_id, name="Elsewhere")
    mine = make_rule(session_local, seeded.location_id, name="Mine")

    result = match_event(db, _quote_signed(seeded.location_id))
    assert [rule.id for rule in result.rules] == [mine]


def test_pinned_families_only_match_their_own_rule(session_local, db, seeded):
    reminder = make_rule(
        session_local,
        seeded.location_id,
        name="Reminder",
        trigger_type="time-based",
        trigger_config={"anchor_event": "appointment-scheduled", "offset": {"amount": -24, "unit": "hours"}},
    )
    make_rule(
        session_local,
        seeded.location_id,
        name="Other reminder",
        trigger_type="time-based",
        trigger_config={"anchor_event": "appointment-scheduled", "offset": {"amount": -1, "unit": "hours"}},
    )

    unpinned = build_event("time-based", location_id=seeded.location_id, entity_type="appointment", entity_id="a1")
    assert match_event(db, unpinned).rules == []

    pinned = build_event(
        "time-based",
        location_id=seeded.location_id,
        entity_type="appointment",
        entity_id="a1",
        rule_id=reminder,
    )
    assert [rule.id for rule in match_event(db, pinned).rules] == [reminder]


def test_broken_rule_config_is_reported_and_skipped(session_local, db, seeded):
    broken = make_rule(session_local, seeded.location_id, name="Broken")
    healthy = make_rule(session_local, seeded.location_id, name="Healthy")
    with session_local() as session:
        rule = session.get(AutomationRule, broken)
        rule.conditions_json = [{"field": "quote.total", "operator": "roughly", "value": 1}]
        session.commit()

    result = match_event(db, _quote_signed(seeded.location_id))

    assert [rule.id for rule in result.rules] == [healthy]
    assert [error.rule_id for error in result.errors] == [broken]
