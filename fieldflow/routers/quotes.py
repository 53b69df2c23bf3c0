from functools import partial

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.orm import Session

from fieldflow.core.api_docs import error_responses
from fieldflow.core.clock import as_utc, utcnow
from fieldflow.core.deps import get_db, get_event_bus
from fieldflow.core.permissions import require_location_roles
from fieldflow.core.security_current import LocationAccess
from fieldflow.models.quote import Quote
from fieldflow.schemas.field_service import QuoteOut, QuoteSignIn
from fieldflow.services.audit_service import log_audit_event
from fieldflow.services.automation_bus import AutomationEventBus
from fieldflow.services.automation_events import quote_event

router = APIRouter(prefix="/quotes", tags=["quotes"])

_SIGNABLE_STATUSES = {"draft", "sent", "viewed", "presented", "published"}


def _quote_or_404(db: Session, *, location_id: str, quote_id: str) -> Quote:
    quote = db.execute(
        select(Quote).where(Quote.id == quote_id, Quote.location_id == location_id)
    ).scalar_one_or_none()
    if not quote:
        raise HTTPException(status_code=404, detail="Quote not found")
    return quote


def _quote_out(quote: Quote) -> QuoteOut:
    return QuoteOut(
        id=quote.id,
        quote_number=quote.quote_number,
        project_id=quote.project_id,
        contact_id=quote.contact_id,
        title=quote.title,
        status=quote.status,
        total=quote.total,
        deposit_required=quote.deposit_required,
        deposit_amount=quote.deposit_amount,
        sent_at=quote.sent_at,
        viewed_at=quote.viewed_at,
        signed_at=quote.signed_at,
        signed_by=quote.signed_by,
    )


@router.get(
    "/{quote_id}",
    response_model=QuoteOut,
    summary="Get quote",
    responses=error_responses(401, 403, 404, 500),
)
def get_quote(
    quote_id: str,
    db: Session = Depends(get_db),
    access: LocationAccess = Depends(require_location_roles("owner", "admin", "staff")),
):
    return _quote_out(_quote_or_404(db, location_id=access.location.id, quote_id=quote_id))


@router.post(
    "/{quote_id}/sign",
    response_model=QuoteOut,
    summary="Record a customer signature on a quote",
    responses=error_responses(401, 403, 404, 409, 422, 500),
)
def sign_quote(
    quote_id: str,
    payload: QuoteSignIn,
    db: Session = Depends(get_db),
    access: LocationAccess = Depends(require_location_roles("owner", "admin", "staff")),
    bus: AutomationEventBus = Depends(get_event_bus),
):
    quote = _quote_or_404(db, location_id=access.location.id, quote_id=quote_id)
    if quote.status not in _SIGNABLE_STATUSES:
        raise HTTPException(status_code=409, detail=f"Quote in status '{quote.status}' cannot be signed")

    previous_status = quote.status
    quote.status = "signed"
    quote.signed_at = as_utc(payload.signed_at) or utcnow()
    quote.signed_by = payload.signed_by.strip()
    log_audit_event(
        db,
        location_id=access.location.id,
        actor_user_id=access.user.id,
        action="quote.sign",
        target_type="quote",
        target_id=quote.id,
        metadata_json={"from_status": previous_status, "signed_by": quote.signed_by},
    )
    bus.emit(partial(quote_event, db, quote, "signed"), db=db)
    db.commit()
    db.refresh(quote)
    return _quote_out(quote)


@router.post(
    "/{quote_id}/view",
    response_model=QuoteOut,
    summary="Record that the customer opened a quote",
    responses=error_responses(401, 403, 404, 500),
)
def view_quote(
    quote_id: str,
    db: Session = Depends(get_db),
    access: LocationAccess = Depends(require_location_roles("owner", "admin", "staff")),
    bus: AutomationEventBus = Depends(get_event_bus),
):
    quote = _quote_or_404(db, location_id=access.location.id, quote_id=quote_id)
    if quote.viewed_at is not None:
        return _quote_out(quote)

    quote.viewed_at = utcnow()
    if quote.status in {"draft", "sent"}:
        quote.status = "viewed"
    bus.emit(partial(quote_event, db, quote, "viewed"), db=db)
    db.commit()
    db.refresh(quote)
    return _quote_out(quote)
