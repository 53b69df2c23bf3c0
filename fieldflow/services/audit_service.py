import logging
import uuid
from typing import Any

from sqlalchemy.orm import Session

from fieldflow.core.observability import logger, log_json
from fieldflow.models.audit_log import AuditLog


def log_audit_event(
    db: Session,
    *,
    location_id: str,
    actor_user_id: str | None,
    action: str,
    target_type: str,
    target_id: str | None = None,
    metadata_json: dict[str, Any] | None = None,
) -> AuditLog:
    """Stage an audit row in the caller's transaction; the caller commits."""
    metadata = {key: value for key, value in (metadata_json or {}).items() if value is not None}
    entry = AuditLog(
        id=str(uuid.uuid4()),
        location_id=location_id,
        actor_user_id=actor_user_id,
        action=action,
        target_type=target_type,
        target_id=target_id,
        metadata_json=metadata or None,
    )
    db.add(entry)
    log_json(
        logger,
        logging.DEBUG,
        "audit",
        location_id=location_id,
        actor_user_id=actor_user_id,
        action=action,
        target_type=target_type,
        target_id=target_id,
    )
    return entry
