"""
FastAPI router for gradual rollout management.

Endpoints:
- POST /rollouts: start a rollout (201); 422 on an invalid config, 409 when the
  variant already has an unfinished rollout
- GET /rollouts: list every rollout status
- GET /rollouts/{rollout_id}: one rollout status; 404 when unknown
- POST /rollouts/{rollout_id}/pause | resume | rollback: operator transitions
  with a `reason`; 409 when the transition is not allowed from the current state

Storage failures surface as 503 so callers can retry.
"""

import logging
from typing import List

from fastapi import APIRouter, Body, HTTPException

from flag_rollout.core.dependencies import RolloutServiceDep
from flag_rollout.models import (
    RolloutActionRequest,
    RolloutConfig,
    RolloutCreateResponse,
    RolloutStatus,
)
from flag_rollout.services.rollout_controller import (
    RolloutConfigError,
    RolloutNotFoundError,
    RolloutPersistenceError,
    RolloutStateError,
)


logger = logging.getLogger(__name__)


router = APIRouter()


def _to_http_error(error: Exception) -> HTTPException:
    if isinstance(error, RolloutNotFoundError):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, RolloutConfigError):
        return HTTPException(status_code=422, detail=str(error))
    if isinstance(error, RolloutStateError):
        return HTTPException(status_code=409, detail=str(error))
    return HTTPException(status_code=503, detail=f"Rollout storage unavailable: {str(error)}")


@router.post("", response_model=RolloutCreateResponse, status_code=201)
async def start_rollout(
    service: RolloutServiceDep,
    config: RolloutConfig = Body(...),
) -> RolloutCreateResponse:
    try:
        rollout_id = await service.start_rollout(config)
    except (RolloutConfigError, RolloutStateError) as e:
        raise _to_http_error(e)
    except Exception as e:
        logger.exception(f"Error starting rollout for {config.flag_key}")
        raise _to_http_error(e)

    return RolloutCreateResponse(id=rollout_id, status=service.get_rollout_status(rollout_id))


@router.get("", response_model=List[RolloutStatus])
async def list_rollouts(service: RolloutServiceDep) -> List[RolloutStatus]:
    return service.list_rollouts()


@router.get("/{rollout_id}", response_model=RolloutStatus)
async def get_rollout(rollout_id: str, service: RolloutServiceDep) -> RolloutStatus:
    try:
        return service.get_rollout_status(rollout_id)
    except RolloutNotFoundError as e:
        raise _to_http_error(e)


@router.post("/{rollout_id}/pause", response_model=RolloutStatus)
async def pause_rollout(
    rollout_id: str,
    service: RolloutServiceDep,
    request: RolloutActionRequest = Body(...),
) -> RolloutStatus:
    try:
        return await service.pause_rollout(rollout_id, request.reason)
    except (RolloutNotFoundError, RolloutStateError) as e:
        raise _to_http_error(e)


@router.post("/{rollout_id}/resume", response_model=RolloutStatus)
async def resume_rollout(
    rollout_id: str,
    service: RolloutServiceDep,
    request: RolloutActionRequest = Body(...),
) -> RolloutStatus:
    try:
        return await service.resume_rollout(rollout_id, request.reason)
    except (RolloutNotFoundError, RolloutStateError) as e:
        raise _to_http_error(e)
    except RolloutPersistenceError as e:
        logger.error(f"Could not resume rollout {rollout_id}: {e}")
        raise _to_http_error(e)


@router.post("/{rollout_id}/rollback", response_model=RolloutStatus)
async def rollback_rollout(
    rollout_id: str,
    service: RolloutServiceDep,
    request: RolloutActionRequest = Body(...),
) -> RolloutStatus:
    try:
        return await service.rollback(rollout_id, request.reason)
    except (RolloutNotFoundError, RolloutStateError) as e:
        raise _to_http_error(e)
