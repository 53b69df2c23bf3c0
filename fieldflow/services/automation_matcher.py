import copy
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from fieldflow.core.clock import as_utc, utcnow
from fieldflow.core.observability import automation_logger, log_json
from fieldflow.models.automation import AutomationRule
from fieldflow.services.automation_errors import MatchError
from fieldflow.services.automation_events import PINNED_FAMILIES, TRIGGER_SUBTYPES, AutomationEvent


CONDITION_OPERATORS = frozenset(
    {
        "equals",
        "not-equals",
        "in",
        "not-in",
        "greater-than",
        "less-than",
        "greater-than-or-equals",
        "less-than-or-equals",
        "contains",
        "exists",
        "empty",
        "not-empty",
    }
)

OPERATOR_ALIASES = {
    "eq": "equals",
    "==": "equals",
    "neq": "not-equals",
    "!=": "not-equals",
    "gt": "greater-than",
    ">": "greater-than",
    "gte": "greater-than-or-equals",
    ">=": "greater-than-or-equals",
    "lt": "less-than",
    "<": "less-than",
    "lte": "less-than-or-equals",
    "<=": "less-than-or-equals",
    "not-exists": "empty",
}

_EXPRESSION_RE = re.compile(
    r"^\s*(?P<field>[$a-zA-Z0-9_.]+)\s*(?P<op>>=|<=|==|!=|>|<|contains\b|in\b)\s*(?P<value>.+?)\s*$"
)


@dataclass(frozen=True)
class ConditionResult:
    passed: bool
    reason: str | None = None
    errors: list[MatchError] = field(default_factory=list)


@dataclass(frozen=True)
class RuleMatch:
    rule: AutomationRule
    context: dict[str, Any]


@dataclass(frozen=True)
class MatchResult:
    matches: list[RuleMatch]
    errors: list[MatchError]

    @property
    def rules(self) -> list[AutomationRule]:
        return [item.rule for item in self.matches]


def normalize_operator(operator: str | None) -> str:
    normalized = str(operator or "equals").strip().lower().replace("_", "-")
    return OPERATOR_ALIASES.get(normalized, normalized)


def resolve_path(container: Any, path: str) -> Any:
    normalized = (path or "").strip()
    if not normalized:
        return None
    if normalized.startswith("$."):
        normalized = normalized[2:]
    elif normalized.startswith("$"):
        normalized = normalized[1:]

    current: Any = container
    for part in [item for item in normalized.split(".") if item]:
        if isinstance(current, dict):
            if part not in current:
                return None
            current = current[part]
            continue
        if isinstance(current, list):
            if not part.isdigit():
                return None
            index = int(part)
            if index >= len(current):
                return None
            current = current[index]
            continue
        return None
    return current


def build_context(event: AutomationEvent, *, rule: AutomationRule | None = None) -> dict[str, Any]:
    context = copy.deepcopy(event.data)
    context["event"] = {
        "type": event.type,
        "family": event.family,
        "subtype": event.subtype,
        "entityType": event.entity_type,
        "entityId": event.entity_id,
        "locationId": event.location_id,
        "occurredAt": event.occurred_at.isoformat(),
        "occurrenceId": event.occurrence_id,
    }
    context["now"] = utcnow().isoformat()
    if rule is not None:
        context["rule"] = {"id": rule.id, "name": rule.name, "priority": rule.priority}
    context["actions"] = {}
    context["last_action"] = None
    return context


def evaluate_conditions(
    *,
    context: dict[str, Any],
    conditions: list[dict[str, Any]] | None,
    rule_id: str | None = None,
) -> ConditionResult:
    errors: list[MatchError] = []
    for condition in conditions or []:
        if not isinstance(condition, dict):
            errors.append(MatchError("Condition must be an object", rule_id=rule_id))
            return ConditionResult(False, "Malformed condition", errors)
        path = str(condition.get("field") or "").strip()
        operator = normalize_operator(condition.get("operator"))
        expected = condition.get("value")
        if operator not in CONDITION_OPERATORS:
            errors.append(MatchError(f"Unknown condition operator '{operator}'", rule_id=rule_id, field=path))
            return ConditionResult(False, f"Unknown operator {operator!r}", errors)
        if not path:
            errors.append(MatchError("Condition field is required", rule_id=rule_id))
            return ConditionResult(False, "Condition without field", errors)
        actual = resolve_path(context, path)
        case_sensitive = bool(condition.get("case_sensitive", False))
        if condition_matches(actual, operator=operator, expected=expected, case_sensitive=case_sensitive):
            continue
        return ConditionResult(False, f"Condition failed: {path} {operator} {expected!r}", errors)
    return ConditionResult(True, None, errors)


def condition_matches(actual: Any, *, operator: str, expected: Any, case_sensitive: bool = False) -> bool:
    op = normalize_operator(operator)
    if op == "exists" or op == "not-empty":
        return _has_value(actual)
    if op == "empty":
        return not _has_value(actual)

    if op in {"greater-than", "less-than", "greater-than-or-equals", "less-than-or-equals"}:
        left = _to_number(actual)
        right = _to_number(expected)
        if left is None or right is None:
            return False
        if op == "greater-than":
            return left > right
        if op == "less-than":
            return left < right
        if op == "greater-than-or-equals":
            return left >= right
        return left <= right

    if op == "contains":
        if isinstance(actual, str):
            left_text = actual if case_sensitive else actual.lower()
            right_text = str(expected or "")
            right_text = right_text if case_sensitive else right_text.lower()
            return right_text in left_text
        if isinstance(actual, (list, tuple, set)):
            return any(_equals(item, expected, case_sensitive=case_sensitive) for item in actual)
        return False

    if op in {"in", "not-in"}:
        if not isinstance(expected, (list, tuple, set)):
            return False
        found = any(_equals(actual, item, case_sensitive=case_sensitive) for item in expected)
        return found if op == "in" else not found

    if op == "not-equals":
        return not _equals(actual, expected, case_sensitive=case_sensitive)
    if op == "equals":
        return _equals(actual, expected, case_sensitive=case_sensitive)
    return False


def parse_expression(expression: str) -> dict[str, Any]:
    match = _EXPRESSION_RE.match(expression or "")
    if not match:
        raise MatchError(f"Cannot parse expression '{expression}'")
    raw_value = match.group("value")
    try:
        value = json.loads(raw_value)
    except ValueError:
        value = raw_value.strip("'\"")
    return {
        "field": match.group("field"),
        "operator": normalize_operator(match.group("op")),
        "value": value,
    }


def rule_in_scope(rule: AutomationRule, event: AutomationEvent) -> bool:
    if rule.location_id != event.location_id:
        return False
    if event.rule_id is not None:
        return rule.id == event.rule_id
    if rule.trigger_type in PINNED_FAMILIES:
        return False
    if rule.trigger_type != event.family:
        return False
    if rule.trigger_subtype and rule.trigger_subtype != event.subtype:
        return False
    return scope_matches(rule, event.data)


def scope_matches(rule: AutomationRule, data: dict[str, Any]) -> bool:
    for rule_value, key in (
        (rule.pipeline_id, "pipelineId"),
        (rule.stage_id, "stageId"),
        (rule.calendar_id, "calendarId"),
    ):
        if rule_value and str(data.get(key) or "") != rule_value:
            return False
    return True


def validate_trigger(rule: AutomationRule) -> None:
    subtypes = TRIGGER_SUBTYPES.get(rule.trigger_type)
    if subtypes is None:
        raise MatchError(f"Unknown trigger type '{rule.trigger_type}'", rule_id=rule.id)
    if rule.trigger_subtype and rule.trigger_subtype not in subtypes:
        raise MatchError(
            f"Unknown sub-type '{rule.trigger_subtype}' for trigger '{rule.trigger_type}'",
            rule_id=rule.id,
        )


def _sort_key(rule: AutomationRule) -> tuple:
    return (-int(rule.priority or 0), as_utc(rule.created_at), rule.id)


def match_event(db: Session, event: AutomationEvent) -> MatchResult:
    stmt = select(AutomationRule).where(
        AutomationRule.location_id == event.location_id,
        AutomationRule.is_active.is_(True),
    )
    if event.rule_id is not None:
        stmt = stmt.where(AutomationRule.id == event.rule_id)
    else:
        stmt = stmt.where(AutomationRule.trigger_type == event.family)
    candidates = db.execute(
        stmt.order_by(
            AutomationRule.priority.desc(),
            AutomationRule.created_at.asc(),
            AutomationRule.id.asc(),
        )
    ).scalars().all()

    matches: list[RuleMatch] = []
    errors: list[MatchError] = []
    for rule in sorted(candidates, key=_sort_key):
        try:
            validate_trigger(rule)
        except MatchError as exc:
            errors.append(exc)
            continue
        if not rule_in_scope(rule, event):
            continue
        context = build_context(event, rule=rule)
        result = evaluate_conditions(context=context, conditions=rule.conditions_json, rule_id=rule.id)
        errors.extend(result.errors)
        if result.passed:
            matches.append(RuleMatch(rule=rule, context=context))

    for error in errors:
        log_json(
            automation_logger,
            logging.WARNING,
            "automation.match_error",
            rule_id=error.rule_id,
            field=error.field,
            event_type=event.type,
            location_id=event.location_id,
            error=str(error),
        )
    return MatchResult(matches=matches, errors=errors)


def _equals(left: Any, right: Any, *, case_sensitive: bool) -> bool:
    if isinstance(left, str) and isinstance(right, str):
        if case_sensitive:
            return left == right
        return left.lower() == right.lower()
    if isinstance(left, bool) or isinstance(right, bool):
        return left == right
    left_number = _to_number(left) if isinstance(left, (int, float)) else None
    right_number = _to_number(right) if isinstance(right, (int, float)) else None
    if left_number is not None and right_number is not None:
        return left_number == right_number
    return left == right


def _to_number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _has_value(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, tuple, set, dict)):
        return len(value) > 0
    return True
