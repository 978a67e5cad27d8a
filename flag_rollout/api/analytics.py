"""
FastAPI router for A/B test analytics.

Endpoints:
- GET /analytics/{flag_key}/metrics: per-variant conversion metrics
- GET /analytics/{flag_key}/results: significance judgment and recommended action

Both accept optional `start` / `end` query parameters (ISO 8601). A missing
`start` means "from the beginning", a missing `end` means "now".
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Query

from flag_rollout.core.dependencies import RolloutServiceDep
from flag_rollout.models import ABTestResults, ConversionMetrics, DateRange, utc_now


logger = logging.getLogger(__name__)


router = APIRouter()


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def build_date_range(start: Optional[datetime], end: Optional[datetime]) -> DateRange:
    """
    Build a query window from optional bounds.

    Raises:
        HTTPException: 400 when start is after end.
    """
    end = _as_utc(end) if end else utc_now()
    start = _as_utc(start) if start else datetime.fromtimestamp(0, tz=timezone.utc)
    try:
        return DateRange(start=start, end=end)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"Invalid date range: {e}")


@router.get("/{flag_key}/metrics", response_model=List[ConversionMetrics])
async def get_metrics(
    flag_key: str,
    service: RolloutServiceDep,
    start: Optional[datetime] = Query(default=None, description="Window start (inclusive)"),
    end: Optional[datetime] = Query(default=None, description="Window end (inclusive)"),
) -> List[ConversionMetrics]:
    date_range = build_date_range(start, end)
    try:
        return await service.get_metrics(flag_key, date_range)
    except Exception as e:
        logger.exception(f"Error computing metrics for {flag_key}")
        raise HTTPException(status_code=500, detail=f"Failed to compute metrics: {str(e)}")


@router.get("/{flag_key}/results", response_model=ABTestResults)
async def get_results(
    flag_key: str,
    service: RolloutServiceDep,
    start: Optional[datetime] = Query(default=None, description="Window start (inclusive)"),
    end: Optional[datetime] = Query(default=None, description="Window end (inclusive)"),
) -> ABTestResults:
    """
    Analyze a flag's A/B test.

    Raises:
        HTTPException: 404 when the flag has no events in the window.
    """
    date_range = build_date_range(start, end)
    try:
        results = await service.analyze_test(flag_key, date_range)
    except Exception as e:
        logger.exception(f"Error analyzing test for {flag_key}")
        raise HTTPException(status_code=500, detail=f"Failed to analyze test: {str(e)}")

    if results is None:
        raise HTTPException(status_code=404, detail=f"No test results found for {flag_key}")
    return results
