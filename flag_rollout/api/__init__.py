"""
API package for the flag rollout service.

Routers:
- events: event tracking and Event Recorder stats
- analytics: conversion metrics and A/B test results
- rollouts: gradual rollout management
"""

from fastapi import APIRouter

from flag_rollout.api.events import router as events_router
from flag_rollout.api.analytics import router as analytics_router
from flag_rollout.api.rollouts import router as rollouts_router

api_router = APIRouter()

api_router.include_router(events_router, tags=["events"])
api_router.include_router(analytics_router, prefix="/analytics", tags=["analytics"])
api_router.include_router(rollouts_router, prefix="/rollouts", tags=["rollouts"])

__all__ = [
    "api_router",
    "events_router",
    "analytics_router",
    "rollouts_router",
]
