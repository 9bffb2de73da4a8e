from fastapi import Depends, HTTPException, status

from .security import get_current_user

ADMIN = "admin"


def token_roles(user: dict | None) -> set[str]:
    roles = (user or {}).get("roles")
    if not isinstance(roles, list):
        return set()
    return {str(r).lower() for r in roles}


def is_admin(user: dict | None) -> bool:
    return ADMIN in token_roles(user)


def require_role(*allowed_roles: str):
    """Dependency factory: the bearer token must carry one of `allowed_roles`."""
    allowed = {r.lower() for r in allowed_roles}

    def check(user: dict = Depends(get_current_user)) -> dict:
        roles = token_roles(user)
        if not roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Roles missing in token",
            )
        if roles.isdisjoint(allowed):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Access forbidden for this role",
            )
        return user

    return check


require_admin = require_role(ADMIN)
