from functools import partial

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.orm import Session

from fieldflow.core.api_docs import error_responses
from fieldflow.core.clock import as_utc
from fieldflow.core.deps import get_db, get_event_bus
from fieldflow.core.permissions import require_location_roles
from fieldflow.core.security_current import LocationAccess
from fieldflow.models.appointment import Appointment
from fieldflow.models.user import User
from fieldflow.schemas.field_service import AppointmentOut, AppointmentUpdateIn
from fieldflow.services.audit_service import log_audit_event
from fieldflow.services.automation_bus import AutomationEventBus
from fieldflow.services.automation_events import appointment_event

router = APIRouter(prefix="/appointments", tags=["appointments"])

_STATUS_EVENTS = {"cancelled": "cancelled", "completed": "completed", "noshow": "noshow"}


def _appointment_out(appointment: Appointment, *, events: list[str] | None = None) -> AppointmentOut:
    return AppointmentOut(
        id=appointment.id,
        contact_id=appointment.contact_id,
        project_id=appointment.project_id,
        calendar_id=appointment.calendar_id,
        title=appointment.title,
        status=appointment.status,
        start_time=appointment.start_time,
        end_time=appointment.end_time,
        assigned_user_id=appointment.assigned_user_id,
        events=events or [],
    )


def _ensure_transition_allowed(current_status: str, next_status: str) -> None:
    if current_status == next_status:
        return
    if current_status != "scheduled":
        raise HTTPException(
            status_code=409,
            detail=f"Appointment in status '{current_status}' cannot move to '{next_status}'",
        )


@router.patch(
    "/{appointment_id}",
    response_model=AppointmentOut,
    summary="Reschedule, cancel, complete or mark an appointment as no-show",
    responses=error_responses(400, 401, 403, 404, 409, 422, 500),
)
def update_appointment(
    appointment_id: str,
    payload: AppointmentUpdateIn,
    db: Session = Depends(get_db),
    access: LocationAccess = Depends(require_location_roles("owner", "admin", "staff")),
    bus: AutomationEventBus = Depends(get_event_bus),
):
    appointment = db.execute(
        select(Appointment).where(
            Appointment.id == appointment_id,
            Appointment.location_id == access.location.id,
        )
    ).scalar_one_or_none()
    if not appointment:
        raise HTTPException(status_code=404, detail="Appointment not found")

    current_status = appointment.status
    next_status = payload.status or current_status
    _ensure_transition_allowed(current_status, next_status)

    events: list[str] = []
    previous_start = as_utc(appointment.start_time)
    new_start = as_utc(payload.start_time)
    if new_start is not None and new_start != previous_start:
        if current_status != "scheduled":
            raise HTTPException(status_code=409, detail="Only scheduled appointments can be rescheduled")
        appointment.start_time = new_start
        events.append("rescheduled")
    if payload.end_time is not None:
        appointment.end_time = as_utc(payload.end_time)
    if "assigned_user_id" in payload.model_fields_set:
        if payload.assigned_user_id is not None:
            assignee = db.execute(
                select(User.id).where(
                    User.id == payload.assigned_user_id,
                    User.location_id == access.location.id,
                    User.is_active.is_(True),
                )
            ).scalar_one_or_none()
            if assignee is None:
                raise HTTPException(status_code=400, detail="Assignee is not an active user of this location")
        appointment.assigned_user_id = payload.assigned_user_id
    if next_status != current_status:
        appointment.status = next_status
        events.append(_STATUS_EVENTS[next_status])

    log_audit_event(
        db,
        location_id=access.location.id,
        actor_user_id=access.user.id,
        action="appointment.update",
        target_type="appointment",
        target_id=appointment.id,
        metadata_json={
            "from_status": current_status,
            "to_status": next_status,
            "previous_start_time": previous_start.isoformat() if previous_start else None,
            "events": events,
        },
    )
    for kind in events:
        builder = partial(
            appointment_event,
            db,
            appointment,
            kind,
            previous_start_time=previous_start if kind == "rescheduled" else None,
        )
        bus.emit(builder, db=db)
    db.commit()
    db.refresh(appointment)
    return _appointment_out(appointment, events=[f"appointment-{kind}" for kind in events])
