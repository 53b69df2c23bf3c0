from collections.abc import Callable

from fastapi import Depends, HTTPException, status

from fieldflow.core.security_current import LocationAccess, get_current_location_access


def require_location_roles(*allowed_roles: str) -> Callable[[LocationAccess], LocationAccess]:
    normalized_allowed = {role.strip().lower() for role in allowed_roles if role.strip()}
    if not normalized_allowed:
        raise ValueError("At least one allowed role is required")

    def dependency(access: LocationAccess = Depends(get_current_location_access)) -> LocationAccess:
        if (access.role or "").lower() not in normalized_allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient role for this action",
            )
        return access

    return dependency
