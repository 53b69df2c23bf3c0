from dataclasses import dataclass

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.orm import Session

from fieldflow.core.deps import get_db
from fieldflow.core.security import AccessClaims, TokenValidationError, decode_access_token
from fieldflow.models.location import Location
from fieldflow.models.user import User

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class LocationAccess:
    location: Location
    user: User
    role: str


def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> tuple[User, AccessClaims]:
    if credentials is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        claims = decode_access_token(credentials.credentials)
    except TokenValidationError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    user = db.execute(
        select(User).where(User.id == claims.user_id, User.is_active.is_(True))
    ).scalar_one_or_none()
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return user, claims


def get_current_location_access(
    current: tuple[User, AccessClaims] = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> LocationAccess:
    user, claims = current
    if user.location_id != claims.location_id:
        raise HTTPException(status_code=403, detail="User does not belong to this location")
    location = db.execute(
        select(Location).where(Location.id == claims.location_id, Location.is_active.is_(True))
    ).scalar_one_or_none()
    if not location:
        raise HTTPException(status_code=404, detail="Location not found")
    return LocationAccess(location=location, user=user, role=(user.role or "staff").lower())
