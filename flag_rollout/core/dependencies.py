"""
FastAPI dependencies for the flag rollout service.

The RolloutService is built once in the application lifespan and stored on
`app.state.rollout_service`; endpoints receive it through `RolloutServiceDep`.
Tests override `get_rollout_service` (or set the state attribute directly) to
inject a service wired with in-memory fakes.

Usage:
    @router.get("/rollouts/{rollout_id}")
    async def get_rollout(rollout_id: str, service: RolloutServiceDep) -> RolloutStatus:
        return service.get_rollout_status(rollout_id)
"""

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from flag_rollout.services.rollout_service import RolloutService


# =============================================================================
# Service Dependency
# =============================================================================

def get_rollout_service(request: Request) -> RolloutService:
    """
    Return the RolloutService attached to the running application.

    Raises:
        HTTPException: 503 when the service is not wired (no DATABASE_URL).
    """
    service = getattr(request.app.state, 'rollout_service', None)
    if service is None:
        raise HTTPException(
            status_code=503,
            detail="Rollout service unavailable: storage is not configured",
        )
    return service


# =============================================================================
# Type Aliases
# =============================================================================

RolloutServiceDep = Annotated[RolloutService, Depends(get_rollout_service)]
