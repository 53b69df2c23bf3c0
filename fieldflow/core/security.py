from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from jose import JWTError, jwt

from fieldflow.core.config import settings

ALGORITHM = "HS256"
ACCESS_TOKEN_TYPE = "access"


class TokenValidationError(ValueError):
    pass


@dataclass(frozen=True)
class AccessClaims:
    user_id: str
    location_id: str
    jti: str
    expires_at: datetime


def create_access_token(user_id: str, location_id: str, *, expires_delta: timedelta | None = None) -> str:
    """Sign a bearer token scoped to one location."""
    issued = datetime.now(timezone.utc)
    lifetime = expires_delta or timedelta(minutes=settings.access_token_expire_minutes)
    claims = {
        "sub": user_id,
        "location_id": location_id,
        "type": ACCESS_TOKEN_TYPE,
        "jti": str(uuid4()),
        "iat": int(issued.timestamp()),
        "exp": int((issued + lifetime).timestamp()),
    }
    return jwt.encode(claims, settings.secret_key, algorithm=ALGORITHM)


def decode_access_token(token: str) -> AccessClaims:
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[ALGORITHM])
    except JWTError as exc:
        raise TokenValidationError("Invalid token") from exc

    if payload.get("type") != ACCESS_TOKEN_TYPE:
        raise TokenValidationError("Invalid token type")
    for claim, label in (("sub", "subject"), ("location_id", "location"), ("jti", "id"), ("exp", "expiration")):
        if not payload.get(claim):
            raise TokenValidationError(f"Invalid token {label}")

    return AccessClaims(
        user_id=str(payload["sub"]),
        location_id=str(payload["location_id"]),
        jti=str(payload["jti"]),
        expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
    )
