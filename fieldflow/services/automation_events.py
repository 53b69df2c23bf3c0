import re
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.orm import Session

from fieldflow.core.clock import as_utc, utcnow
from fieldflow.core.config import settings
from fieldflow.models.appointment import Appointment
from fieldflow.models.contact import Contact
from fieldflow.models.location import Location
from fieldflow.models.project import Project
from fieldflow.models.quote import Quote
from fieldflow.services.automation_errors import UnknownEventType


EVENT_FAMILIES: dict[str, tuple[str, str | None]] = {
    "quote-signed": ("quote-event", "signed"),
    "quote-viewed": ("quote-event", "viewed"),
    "quote-sent": ("quote-event", "sent"),
    "quote-expired": ("quote-event", "expired"),
    "quote-presented": ("quote-event", "presented"),
    "quote-published": ("quote-event", "published"),
    "appointment-scheduled": ("appointment-event", "scheduled"),
    "appointment-rescheduled": ("appointment-event", "rescheduled"),
    "appointment-cancelled": ("appointment-event", "cancelled"),
    "appointment-completed": ("appointment-event", "completed"),
    "appointment-noshow": ("appointment-event", "noshow"),
    "contact-created": ("contact-event", "created"),
    "contact-tagged": ("contact-event", "tagged"),
    "contact-assigned": ("contact-event", "assigned"),
    "stage-entered": ("stage-entered", None),
    "sms-received": ("sms-received", None),
    "payment-received": ("payment-received", None),
    "time-based": ("time-based", None),
    "recurring-schedule": ("recurring-schedule", None),
}

TRIGGER_SUBTYPES: dict[str, set[str]] = {}
for _family, _subtype in EVENT_FAMILIES.values():
    TRIGGER_SUBTYPES.setdefault(_family, set())
    if _subtype:
        TRIGGER_SUBTYPES[_family].add(_subtype)

# Families that only fire from engine-generated events pinned to one rule.
PINNED_FAMILIES = frozenset({"time-based", "recurring-schedule"})

_SEPARATOR_RE = re.compile(r"[.:_\s]+")


def normalize_event_type(value: str) -> str:
    normalized = _SEPARATOR_RE.sub("-", (value or "").strip().lower())
    if normalized not in EVENT_FAMILIES:
        raise UnknownEventType(f"Unknown automation event type '{value}'")
    return normalized


@dataclass(frozen=True)
class AutomationEvent:
    type: str
    location_id: str
    entity_type: str
    entity_id: str
    occurrence_id: str
    occurred_at: datetime
    data: dict[str, Any] = field(default_factory=dict)
    rule_id: str | None = None

    @property
    def family(self) -> str:
        return EVENT_FAMILIES[self.type][0]

    @property
    def subtype(self) -> str | None:
        return EVENT_FAMILIES[self.type][1]

    def to_json(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "location_id": self.location_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "occurrence_id": self.occurrence_id,
            "occurred_at": self.occurred_at.isoformat(),
            "data": self.data,
            "rule_id": self.rule_id,
        }

    @classmethod
    def from_json(cls, raw: dict[str, Any]) -> "AutomationEvent":
        return cls(
            type=normalize_event_type(str(raw["type"])),
            location_id=str(raw["location_id"]),
            entity_type=str(raw["entity_type"]),
            entity_id=str(raw["entity_id"]),
            occurrence_id=str(raw["occurrence_id"]),
            occurred_at=as_utc(datetime.fromisoformat(str(raw["occurred_at"]))),
            data=raw.get("data") if isinstance(raw.get("data"), dict) else {},
            rule_id=raw.get("rule_id"),
        )


_PROVIDER_ID_KEYS = {"sms-received": "message", "payment-received": "payment"}


def provider_occurrence_id(event_type: str, data: dict[str, Any]) -> str | None:
    """Occurrence id keyed on the provider's message or payment id, so webhook redeliveries dedupe."""
    key = _PROVIDER_ID_KEYS.get(event_type)
    payload = data.get(key) if key else None
    provider_id = payload.get("id") if isinstance(payload, dict) else None
    if provider_id in (None, ""):
        return None
    return f"{event_type}:{provider_id}"


def build_event(
    event_type: str,
    *,
    location_id: str,
    entity_type: str,
    entity_id: str,
    data: dict[str, Any] | None = None,
    occurred_at: datetime | None = None,
    occurrence_id: str | None = None,
    rule_id: str | None = None,
) -> AutomationEvent:
    normalized = normalize_event_type(event_type)
    when = as_utc(occurred_at) or utcnow()
    occurrence = (
        (occurrence_id or "").strip()
        or provider_occurrence_id(normalized, data or {})
        or f"{normalized}:{when.isoformat()}"
    )
    return AutomationEvent(
        type=normalized,
        location_id=location_id,
        entity_type=entity_type,
        entity_id=entity_id,
        occurrence_id=occurrence[:200],
        occurred_at=when,
        data=dict(data or {}),
        rule_id=rule_id,
    )


def _iso(value: datetime | None) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None


def _zone(name: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


def format_local_time(value: datetime, timezone_name: str | None) -> str:
    local = as_utc(value).astimezone(_zone(timezone_name))
    return local.strftime("%I:%M %p").lstrip("0")


def format_local_date(value: datetime, timezone_name: str | None) -> str:
    local = as_utc(value).astimezone(_zone(timezone_name))
    return f"{local.strftime('%A, %B')} {local.day}, {local.year}"


def location_snapshot(location: Location | None) -> dict[str, Any] | None:
    if location is None:
        return None
    return {"id": location.id, "name": location.name, "timezone": location.timezone}


def contact_snapshot(contact: Contact | None) -> dict[str, Any] | None:
    if contact is None:
        return None
    full_name = " ".join(part for part in (contact.first_name, contact.last_name) if part)
    return {
        "id": contact.id,
        "crmContactId": contact.crm_contact_id,
        "firstName": contact.first_name or "",
        "lastName": contact.last_name or "",
        "fullName": full_name,
        "email": contact.email,
        "phone": contact.phone,
        "address": contact.address,
        "city": contact.city,
        "state": contact.state,
        "postalCode": contact.postal_code,
        "tags": list(contact.tags_json or []),
        "assignedUserId": contact.assigned_user_id,
    }


def project_snapshot(project: Project | None) -> dict[str, Any] | None:
    if project is None:
        return None
    return {
        "id": project.id,
        "title": project.title,
        "status": project.status,
        "contactId": project.contact_id,
        "pipelineId": project.pipeline_id,
        "stageId": project.pipeline_stage_id,
        "crmOpportunityId": project.crm_opportunity_id,
        "assignedUserId": project.assigned_user_id,
        "monetaryValue": project.monetary_value,
    }


def quote_snapshot(quote: Quote | None) -> dict[str, Any] | None:
    if quote is None:
        return None
    return {
        "id": quote.id,
        "quoteNumber": quote.quote_number,
        "title": quote.title,
        "status": quote.status,
        "total": quote.total,
        "depositRequired": quote.deposit_required,
        "depositAmount": quote.deposit_amount,
        "projectId": quote.project_id,
        "contactId": quote.contact_id,
        "sentAt": _iso(quote.sent_at),
        "viewedAt": _iso(quote.viewed_at),
        "signedAt": _iso(quote.signed_at),
        "signedBy": quote.signed_by,
    }


def appointment_snapshot(appointment: Appointment | None, *, timezone_name: str | None) -> dict[str, Any] | None:
    if appointment is None:
        return None
    reschedule_link = None
    if appointment.calendar_id:
        reschedule_link = f"{settings.booking_widget_base_url.rstrip('/')}/{appointment.calendar_id}"
        if appointment.crm_appointment_id:
            reschedule_link += f"?event_id={appointment.crm_appointment_id}"
    return {
        "id": appointment.id,
        "title": appointment.title,
        "status": appointment.status,
        "calendarId": appointment.calendar_id,
        "crmAppointmentId": appointment.crm_appointment_id,
        "startTime": _iso(appointment.start_time),
        "endTime": _iso(appointment.end_time),
        "address": appointment.address,
        "assignedUserId": appointment.assigned_user_id,
        "time": format_local_time(appointment.start_time, timezone_name),
        "date": format_local_date(appointment.start_time, timezone_name),
        "rescheduleLink": reschedule_link,
    }


def _project_scope(project: Project | None) -> dict[str, Any]:
    if project is None:
        return {}
    return {
        "pipelineId": project.pipeline_id,
        "stageId": project.pipeline_stage_id,
        "stage": project.pipeline_stage_id,
    }


def quote_event(db: Session, quote: Quote, kind: str, *, occurred_at: datetime | None = None) -> AutomationEvent:
    project = db.get(Project, quote.project_id) if quote.project_id else None
    contact_id = quote.contact_id or (project.contact_id if project else None)
    contact = db.get(Contact, contact_id) if contact_id else None
    location = db.get(Location, quote.location_id)
    stamp = {"signed": quote.signed_at, "viewed": quote.viewed_at, "sent": quote.sent_at}.get(kind)
    data: dict[str, Any] = {
        "location": location_snapshot(location),
        "quote": quote_snapshot(quote),
        "project": project_snapshot(project),
        "contact": contact_snapshot(contact),
        "depositAmount": quote.deposit_amount,
        "depositRequired": quote.deposit_required,
        "total": quote.total,
    }
    data.update(_project_scope(project))
    return build_event(
        f"quote-{kind}",
        location_id=quote.location_id,
        entity_type="quote",
        entity_id=quote.id,
        data=data,
        occurred_at=occurred_at or stamp,
    )


def appointment_event(
    db: Session,
    appointment: Appointment,
    kind: str,
    *,
    occurred_at: datetime | None = None,
    previous_start_time: datetime | None = None,
) -> AutomationEvent:
    location = db.get(Location, appointment.location_id)
    contact = db.get(Contact, appointment.contact_id) if appointment.contact_id else None
    project = db.get(Project, appointment.project_id) if appointment.project_id else None
    timezone_name = location.timezone if location else None
    data: dict[str, Any] = {
        "location": location_snapshot(location),
        "appointment": appointment_snapshot(appointment, timezone_name=timezone_name),
        "contact": contact_snapshot(contact),
        "project": project_snapshot(project),
        "calendarId": appointment.calendar_id,
    }
    data.update(_project_scope(project))
    if previous_start_time is not None:
        data["previousStartTime"] = _iso(previous_start_time)
    return build_event(
        f"appointment-{kind}",
        location_id=appointment.location_id,
        entity_type="appointment",
        entity_id=appointment.id,
        data=data,
        occurred_at=occurred_at,
    )


def stage_entered_event(
    db: Session,
    project: Project,
    *,
    from_stage_id: str | None,
    occurred_at: datetime | None = None,
) -> AutomationEvent:
    contact = db.get(Contact, project.contact_id) if project.contact_id else None
    location = db.get(Location, project.location_id)
    data: dict[str, Any] = {
        "location": location_snapshot(location),
        "project": project_snapshot(project),
        "contact": contact_snapshot(contact),
        "fromStageId": from_stage_id,
    }
    data.update(_project_scope(project))
    return build_event(
        "stage-entered",
        location_id=project.location_id,
        entity_type="project",
        entity_id=project.id,
        data=data,
        occurred_at=occurred_at or project.stage_entered_at,
    )


def contact_event(
    db: Session,
    contact: Contact,
    kind: str,
    *,
    tags: list[str] | None = None,
    occurred_at: datetime | None = None,
) -> AutomationEvent:
    location = db.get(Location, contact.location_id)
    data: dict[str, Any] = {
        "location": location_snapshot(location),
        "contact": contact_snapshot(contact),
    }
    if tags is not None:
        data["tags"] = list(tags)
    return build_event(
        f"contact-{kind}",
        location_id=contact.location_id,
        entity_type="contact",
        entity_id=contact.id,
        data=data,
        occurred_at=occurred_at,
    )


def sms_received_event(
    db: Session,
    contact: Contact,
    *,
    body: str,
    message_id: str | None = None,
    received_at: datetime | None = None,
) -> AutomationEvent:
    location = db.get(Location, contact.location_id)
    when = as_utc(received_at) or utcnow()
    return build_event(
        "sms-received",
        location_id=contact.location_id,
        entity_type="contact",
        entity_id=contact.id,
        data={
            "location": location_snapshot(location),
            "contact": contact_snapshot(contact),
            "message": {"id": message_id, "body": body, "receivedAt": when.isoformat()},
        },
        occurred_at=when,
    )


def payment_received_event(
    db: Session,
    *,
    location_id: str,
    payment_id: str,
    amount: float,
    quote: Quote | None = None,
    received_at: datetime | None = None,
) -> AutomationEvent:
    location = db.get(Location, location_id)
    data: dict[str, Any] = {
        "location": location_snapshot(location),
        "payment": {"id": payment_id, "amount": amount},
    }
    if quote is not None:
        project = db.get(Project, quote.project_id) if quote.project_id else None
        contact = db.get(Contact, quote.contact_id) if quote.contact_id else None
        data.update(
            {
                "quote": quote_snapshot(quote),
                "project": project_snapshot(project),
                "contact": contact_snapshot(contact),
            }
        )
        data.update(_project_scope(project))
    return build_event(
        "payment-received",
        location_id=location_id,
        entity_type="payment",
        entity_id=payment_id,
        data=data,
        occurred_at=received_at,
    )


def _amount(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _owned(db: Session, model, entity_id: Any, location_id: str):
    if not entity_id:
        return None
    row = db.get(model, str(entity_id))
    return row if row is not None and row.location_id == location_id else None


def ingress_event(
    db: Session,
    event_type: str,
    *,
    location_id: str,
    entity_type: str,
    entity_id: str,
    data: dict[str, Any] | None = None,
    occurred_at: datetime | None = None,
    occurrence_id: str | None = None,
) -> AutomationEvent:
    """Build an externally reported event.

    Contact, inbound SMS and payment events resolve through their adapters when the
    referenced rows belong to the location, so snapshots come from stored records.
    Caller supplied data fills keys the adapter does not set. Anything else falls back
    to ``build_event`` with the raw payload.
    """
    normalized = normalize_event_type(event_type)
    raw = dict(data or {})
    family, subtype = EVENT_FAMILIES[normalized]
    contact = _owned(db, Contact, entity_id, location_id) if entity_type == "contact" else None

    event: AutomationEvent | None = None
    if family == "sms-received" and contact is not None:
        message = raw.get("message") if isinstance(raw.get("message"), dict) else {}
        event = sms_received_event(
            db,
            contact,
            body=str(message.get("body") or ""),
            message_id=message.get("id") or None,
            received_at=occurred_at,
        )
    elif family == "payment-received":
        payment = raw.get("payment") if isinstance(raw.get("payment"), dict) else {}
        payment_id = payment.get("id") or (entity_id if entity_type == "payment" else None)
        if payment_id:
            quote_ref = raw.get("quote") if isinstance(raw.get("quote"), dict) else {}
            event = payment_received_event(
                db,
                location_id=location_id,
                payment_id=str(payment_id),
                amount=_amount(payment.get("amount")),
                quote=_owned(db, Quote, quote_ref.get("id"), location_id),
                received_at=occurred_at,
            )
    elif family == "contact-event" and contact is not None:
        tags = raw.get("tags")
        event = contact_event(
            db,
            contact,
            subtype or "",
            tags=[str(tag) for tag in tags] if isinstance(tags, list) else None,
            occurred_at=occurred_at,
        )

    if event is None:
        return build_event(
            normalized,
            location_id=location_id,
            entity_type=entity_type,
            entity_id=entity_id,
            data=raw,
            occurred_at=occurred_at,
            occurrence_id=occurrence_id,
        )
    merged = {**raw, **{key: value for key, value in event.data.items() if value is not None}}
    explicit = (occurrence_id or "").strip()
    return replace(event, data=merged, occurrence_id=explicit[:200] if explicit else event.occurrence_id)
