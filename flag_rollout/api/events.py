"""
FastAPI router for event tracking.

Implements POST /events (buffer one behavioral event) and
GET /recorder/stats (Event Recorder counters).

Tracking only appends to the in-memory buffer; the response never waits on
storage. Missing or malformed fields are rejected by request validation (422).
"""

import logging

from fastapi import APIRouter, Body, HTTPException

from flag_rollout.core.dependencies import RolloutServiceDep
from flag_rollout.models import EventData, RecorderStats, TrackEventResponse


logger = logging.getLogger(__name__)


router = APIRouter()


@router.post("/events", response_model=TrackEventResponse)
async def track_event(
    service: RolloutServiceDep,
    event: EventData = Body(...),
) -> TrackEventResponse:
    """
    Track one event for a flag variant.

    `session_id`, `variant` and `timestamp` are filled in when omitted.
    """
    try:
        service.record_event(event)
    except Exception as e:
        logger.exception("Error tracking event")
        raise HTTPException(status_code=500, detail=f"Failed to track event: {str(e)}")

    return TrackEventResponse()


@router.get("/recorder/stats", response_model=RecorderStats)
async def recorder_stats(service: RolloutServiceDep) -> RecorderStats:
    return service.recorder_stats()
