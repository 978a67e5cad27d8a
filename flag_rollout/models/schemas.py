"""
Pydantic models for the flag rollout service.

Covers the four families of data the service handles:
- Events: immutable behavioral facts tagged with a flag variant
- Metrics: per-variant conversion metrics and A/B test judgments (derived, never stored)
- Rollouts: operator-authored configuration and the mutable rollout status
- API payloads: request/response bodies used by the FastAPI routers

All models use Pydantic v2 syntax.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from flag_rollout.models.enums import (
    DeviceType,
    EventType,
    RecommendedAction,
    RolloutState,
    UserRole,
)


def utc_now() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_epoch_millis(value: datetime) -> int:
    return int(as_utc(value).timestamp() * 1000)


# =============================================================================
# Event Models
# =============================================================================


class EventData(BaseModel):
    """
    Partially filled event as produced by request-handling code.

    `session_id`, `variant` and `timestamp` may be omitted; the Event Recorder
    fills them in before buffering (see `EventRecorder.record`).
    """
    model_config = ConfigDict(
        str_strip_whitespace=True,
        json_schema_extra={
            "example": {
                "event_type": "conversion",
                "user_id": "user_42",
                "flag_key": "patient-onboarding-variant",
                "flag_value": "express",
                "user_role": "patient",
                "duration": 95000,
            }
        }
    )

    event_type: EventType = Field(..., description="Type of behavioral event")
    user_id: str = Field(..., min_length=1, description="User who produced the event")
    flag_key: str = Field(..., min_length=1, description="Feature flag key")
    flag_value: str = Field(..., min_length=1, description="Value the flag evaluated to")
    session_id: Optional[str] = Field(default=None, description="Client session identifier")
    variant: Optional[str] = Field(default=None, description="Variant name, defaults to flag_value")
    timestamp: Optional[int] = Field(default=None, ge=0, description="Epoch milliseconds")

    # Contextual attributes
    user_role: Optional[UserRole] = None
    onboarding_step: Optional[str] = None
    step_index: Optional[int] = Field(default=None, ge=0)
    total_steps: Optional[int] = Field(default=None, ge=0)
    duration: Optional[float] = Field(default=None, ge=0, description="Duration in milliseconds")
    error_message: Optional[str] = None
    form_field: Optional[str] = None
    interaction_type: Optional[str] = None
    user_agent: Optional[str] = None
    device_type: Optional[DeviceType] = None
    country: Optional[str] = None
    custom_data: Optional[Dict[str, Any]] = None


class Event(EventData):
    """
    A recorded event. Write-once: instances are frozen after creation.
    """
    model_config = ConfigDict(frozen=True)

    session_id: str = Field(..., min_length=1)
    variant: str = Field(..., min_length=1)
    timestamp: int = Field(..., ge=0)


class DateRange(BaseModel):
    """Inclusive time window used to query events."""
    start: datetime
    end: datetime

    @model_validator(mode="after")
    def _check_order(self) -> "DateRange":
        if self.start > self.end:
            raise ValueError("start must not be after end")
        return self

    @property
    def start_millis(self) -> int:
        return to_epoch_millis(self.start)

    @property
    def end_millis(self) -> int:
        return to_epoch_millis(self.end)

    @classmethod
    def trailing(cls, hours: float, now: Optional[datetime] = None) -> "DateRange":
        """Window covering the last `hours` hours up to `now`."""
        end = now or utc_now()
        return cls(start=end - timedelta(hours=hours), end=end)

    @classmethod
    def all_time(cls, now: Optional[datetime] = None) -> "DateRange":
        """Window from the epoch up to `now`, used when no range is given."""
        return cls(start=datetime.fromtimestamp(0, tz=timezone.utc), end=now or utc_now())


# =============================================================================
# Metrics Models
# =============================================================================


class DropOffPoint(BaseModel):
    step: str
    drop_off_rate: float = Field(..., ge=0.0)


class ConversionMetrics(BaseModel):
    """
    Conversion metrics for one (flag_key, variant) pair over a query window.

    Always recomputed from events; never persisted as source of truth.
    """
    flag_key: str
    variant: str
    total_users: int = Field(..., ge=0)
    conversions: int = Field(..., ge=0)
    conversion_rate: float = Field(..., ge=0.0, le=1.0)
    average_time_to_conversion: float = Field(default=0.0, ge=0.0)
    drop_off_points: List[DropOffPoint] = Field(default_factory=list)
    error_users: int = Field(default=0, ge=0)
    error_rate: float = Field(default=0.0, ge=0.0, le=1.0)


class VariantResult(BaseModel):
    name: str
    users: int = Field(..., ge=0)
    conversions: int = Field(..., ge=0)
    conversion_rate: float = Field(..., ge=0.0, le=1.0)
    confidence: float = Field(..., ge=0.0, le=1.0)
    is_winner: bool = False


class ABTestResults(BaseModel):
    """Point-in-time judgment over a flag's variants."""
    flag_key: str
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    variants: List[VariantResult]
    statistical_significance: bool
    recommended_action: RecommendedAction

    @property
    def winner(self) -> Optional[VariantResult]:
        return next((v for v in self.variants if v.is_winner), None)


# =============================================================================
# Rollout Models
# =============================================================================


class EmergencyStopConditions(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_error_rate_spike: float = Field(..., ge=0.0, le=1.0, description="Error rate that forces a rollback")
    min_conversion_rate_drop: float = Field(..., ge=0.0, le=1.0, description="Conversion rate floor that forces a rollback")
    max_user_complaints: int = Field(default=0, ge=0, description="Complaint count above which the rollout is rolled back")


class RolloutConfig(BaseModel):
    """
    Operator-authored rollout configuration. Immutable once the rollout starts.

    Invariants:
        0 <= initial_percentage <= target_percentage <= 100
        0 < increment_percentage <= 50
        increment_interval_hours >= 1
        start_date <= end_date (naive datetimes are read as UTC)
    """
    model_config = ConfigDict(
        frozen=True,
        json_schema_extra={
            "example": {
                "flag_key": "patient-onboarding-variant",
                "target_variant": "express",
                "initial_percentage": 5,
                "target_percentage": 100,
                "increment_percentage": 10,
                "increment_interval_hours": 24,
                "min_sample_size": 50,
                "max_error_rate": 0.05,
                "min_conversion_rate": 0.2,
                "emergency_stop": {
                    "max_error_rate_spike": 0.2,
                    "min_conversion_rate_drop": 0.05,
                    "max_user_complaints": 10,
                },
                "created_by": "ops@nutrisensia.ch",
                "reason": "Express onboarding won the Q3 test",
            }
        }
    )

    flag_key: str = Field(..., min_length=1)
    target_variant: str = Field(..., min_length=1)

    initial_percentage: float = Field(..., ge=0, le=100)
    target_percentage: float = Field(..., ge=0, le=100)
    increment_percentage: float = Field(..., gt=0, le=50)
    increment_interval_hours: float = Field(..., ge=1)

    min_sample_size: int = Field(..., ge=0)
    max_error_rate: float = Field(..., ge=0.0, le=1.0)
    min_conversion_rate: float = Field(..., ge=0.0, le=1.0)

    emergency_stop: EmergencyStopConditions

    created_by: str = Field(..., min_length=1)
    reason: str = Field(default="")
    start_date: datetime = Field(default_factory=utc_now)
    end_date: Optional[datetime] = None

    @field_validator("start_date", "end_date")
    @classmethod
    def _normalize_to_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value) if value is not None else None

    @model_validator(mode="after")
    def _check_ranges(self) -> "RolloutConfig":
        if self.target_percentage < self.initial_percentage:
            raise ValueError(
                f"target_percentage ({self.target_percentage}) must be >= "
                f"initial_percentage ({self.initial_percentage})"
            )
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError(
                f"end_date ({self.end_date.isoformat()}) must not be before "
                f"start_date ({self.start_date.isoformat()})"
            )
        return self


class RolloutStats(BaseModel):
    """Snapshot of the metrics a rollout decision is based on."""
    total_users: int = Field(default=0, ge=0)
    error_rate: float = Field(default=0.0, ge=0.0, le=1.0)
    conversion_rate: float = Field(default=0.0, ge=0.0, le=1.0)
    user_feedback_score: Optional[float] = Field(default=None, ge=0.0, le=5.0)
    user_complaints: Optional[int] = Field(default=None, ge=0)


class IncrementRecord(BaseModel):
    """One entry of the append-only rollout audit log."""
    timestamp: datetime = Field(default_factory=utc_now)
    from_percentage: float
    to_percentage: float
    reason: str
    metrics: RolloutStats


class ScheduledIncrement(BaseModel):
    scheduled_at: datetime
    to_percentage: float


class RolloutStatus(BaseModel):
    """
    Mutable state of one rollout. Only the Rollout Controller mutates it.
    """
    id: str
    flag_key: str
    target_variant: str
    current_percentage: float
    target_percentage: float
    status: RolloutState = RolloutState.ACTIVE
    current_stats: RolloutStats = Field(default_factory=RolloutStats)
    increment_history: List[IncrementRecord] = Field(default_factory=list)
    next_scheduled_increment: Optional[ScheduledIncrement] = None
    last_updated: datetime = Field(default_factory=utc_now)
    failure_reason: Optional[str] = None


class FeedbackSignal(BaseModel):
    """External user-feedback signal for a variant (score out of 5)."""
    score: Optional[float] = Field(default=None, ge=0.0, le=5.0)
    complaints: Optional[int] = Field(default=None, ge=0)


# =============================================================================
# API Payloads
# =============================================================================


class RolloutActionRequest(BaseModel):
    reason: str = Field(..., min_length=1, description="Why the operator takes this action")


class RolloutCreateResponse(BaseModel):
    id: str
    status: RolloutStatus


class TrackEventResponse(BaseModel):
    success: bool = True
    message: str = "Event tracked successfully"


class RecorderStats(BaseModel):
    buffered: int
    flushed: int
    dropped: int
    failed_flushes: int
