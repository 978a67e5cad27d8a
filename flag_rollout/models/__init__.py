"""
Package initialization file for flag rollout models.

Re-exports the enumerations and Pydantic schemas so other modules can write:

    from flag_rollout.models import Event, RolloutConfig, RolloutState
"""

# =============================================================================
# Enums
# =============================================================================

from flag_rollout.models.enums import (
    DeviceType,
    EventType,
    RecommendedAction,
    RolloutState,
    UserRole,
)

# =============================================================================
# Schemas
# =============================================================================

from flag_rollout.models.schemas import (
    # Events
    EventData,
    Event,
    DateRange,
    # Metrics
    DropOffPoint,
    ConversionMetrics,
    VariantResult,
    ABTestResults,
    # Rollouts
    EmergencyStopConditions,
    RolloutConfig,
    RolloutStats,
    IncrementRecord,
    ScheduledIncrement,
    RolloutStatus,
    FeedbackSignal,
    # API payloads
    RolloutActionRequest,
    RolloutCreateResponse,
    TrackEventResponse,
    RecorderStats,
    # Helpers
    as_utc,
    utc_now,
    to_epoch_millis,
)


__all__ = [
    'DeviceType',
    'EventType',
    'RecommendedAction',
    'RolloutState',
    'UserRole',
    'EventData',
    'Event',
    'DateRange',
    'DropOffPoint',
    'ConversionMetrics',
    'VariantResult',
    'ABTestResults',
    'EmergencyStopConditions',
    'RolloutConfig',
    'RolloutStats',
    'IncrementRecord',
    'ScheduledIncrement',
    'RolloutStatus',
    'FeedbackSignal',
    'RolloutActionRequest',
    'RolloutCreateResponse',
    'TrackEventResponse',
    'RecorderStats',
    'as_utc',
    'utc_now',
    'to_epoch_millis',
]
