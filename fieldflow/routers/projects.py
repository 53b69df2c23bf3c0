from functools import partial

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.orm import Session

from fieldflow.core.api_docs import error_responses
from fieldflow.core.clock import utcnow
from fieldflow.core.deps import get_db, get_event_bus
from fieldflow.core.permissions import require_location_roles
from fieldflow.core.security_current import LocationAccess
from fieldflow.models.project import Project
from fieldflow.schemas.field_service import ProjectOut, ProjectStageIn
from fieldflow.services.audit_service import log_audit_event
from fieldflow.services.automation_bus import AutomationEventBus
from fieldflow.services.automation_events import stage_entered_event

router = APIRouter(prefix="/projects", tags=["projects"])


def _project_out(project: Project) -> ProjectOut:
    return ProjectOut(
        id=project.id,
        contact_id=project.contact_id,
        title=project.title,
        status=project.status,
        pipeline_id=project.pipeline_id,
        pipeline_stage_id=project.pipeline_stage_id,
        stage_entered_at=project.stage_entered_at,
        assigned_user_id=project.assigned_user_id,
    )


@router.post(
    "/{project_id}/stage",
    response_model=ProjectOut,
    summary="Move a project to a pipeline stage",
    responses=error_responses(401, 403, 404, 422, 500),
)
def move_project_stage(
    project_id: str,
    payload: ProjectStageIn,
    db: Session = Depends(get_db),
    access: LocationAccess = Depends(require_location_roles("owner", "admin", "staff")),
    bus: AutomationEventBus = Depends(get_event_bus),
):
    project = db.execute(
        select(Project).where(Project.id == project_id, Project.location_id == access.location.id)
    ).scalar_one_or_none()
    if not project:
        raise HTTPException(status_code=404, detail="Project not found")

    pipeline_id = payload.pipeline_id or project.pipeline_id
    if project.pipeline_stage_id == payload.stage_id and project.pipeline_id == pipeline_id:
        return _project_out(project)

    from_stage_id = project.pipeline_stage_id
    project.pipeline_id = pipeline_id
    project.pipeline_stage_id = payload.stage_id
    project.stage_entered_at = utcnow()
    log_audit_event(
        db,
        location_id=access.location.id,
        actor_user_id=access.user.id,
        action="project.stage.move",
        target_type="project",
        target_id=project.id,
        metadata_json={"from_stage_id": from_stage_id, "to_stage_id": payload.stage_id, "pipeline_id": pipeline_id},
    )
    bus.emit(partial(stage_entered_event, db, project, from_stage_id=from_stage_id), db=db)
    db.commit()
    db.refresh(project)
    return _project_out(project)
