"""
Role-Based Access Control (RBAC)

Role hierarchy (highest → lowest privilege):
    super_admin > admin > user

Routes that trigger processing or expose full book text declare their
minimum role with require_role():

    @router.post("/jobs/{job_id}/retry")
    async def retry_job(
        job_id: UUID,
        user: TokenPayload = Depends(require_role("admin")),
    ): ...

The dependency raises 403 if the user's role is below the requirement and
passes the TokenPayload through to the handler.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, status

from book_pipeline.auth.token import TokenPayload, get_current_user
from book_pipeline.schemas.content import PipelineErrors

# ---------------------------------------------------------------------------
# Role ordering: higher index = more privilege
# ---------------------------------------------------------------------------

_ROLE_ORDER: dict[str, int] = {
    "user":        0,
    "admin":       1,
    "super_admin": 2,
}


def has_role(user_role: str, required_role: str) -> bool:
    """Return True if user_role meets or exceeds required_role."""
    user_level     = _ROLE_ORDER.get(user_role, -1)
    required_level = _ROLE_ORDER.get(required_role, 999)
    return user_level >= required_level


def forbidden(required_role: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail=PipelineErrors.forbidden(required_role).model_dump(),
    )


# ---------------------------------------------------------------------------
# Dependency factory
# ---------------------------------------------------------------------------

def require_role(minimum_role: str):
    """
    Returns a FastAPI dependency that verifies the JWT (via get_current_user)
    and checks the user's role meets the minimum requirement.

    Args:
        minimum_role: "user" | "admin" | "super_admin"
    """
    async def _dependency(
        user: Annotated[TokenPayload, Depends(get_current_user)],
    ) -> TokenPayload:
        if not has_role(user.role, minimum_role):
            raise forbidden(minimum_role)
        return user

    return _dependency


# ---------------------------------------------------------------------------
# Convenience aliases
# ---------------------------------------------------------------------------

RequireAdmin = Depends(require_role("admin"))
