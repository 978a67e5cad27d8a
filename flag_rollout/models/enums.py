"""
Enumeration definitions for the flag rollout service.

All enums inherit from both `str` and `Enum` so that Pydantic models serialize
them as plain strings in API responses and in the JSON columns written to
PostgreSQL.
"""

from enum import Enum


class EventType(str, Enum):
    """
    Behavioral event types recorded against a feature flag variant.

    Only `conversion`, `onboarding_abandon` and `error` feed the metrics
    aggregation; the remaining types are stored for downstream analysis.
    """
    FLAG_ASSIGNMENT = "flag_assignment"
    ONBOARDING_START = "onboarding_start"
    ONBOARDING_STEP = "onboarding_step"
    ONBOARDING_COMPLETE = "onboarding_complete"
    ONBOARDING_ABANDON = "onboarding_abandon"
    FORM_VALIDATION_ERROR = "form_validation_error"
    HELP_REQUESTED = "help_requested"
    SKIP_STEP = "skip_step"
    CONVERSION = "conversion"
    ENGAGEMENT = "engagement"
    ERROR = "error"
    PERFORMANCE = "performance"


class UserRole(str, Enum):
    """Role of the user who produced an event."""
    NUTRITIONIST = "nutritionist"
    PATIENT = "patient"
    ADMIN = "admin"


class DeviceType(str, Enum):
    """Device class reported by the client."""
    MOBILE = "mobile"
    TABLET = "tablet"
    DESKTOP = "desktop"


class RecommendedAction(str, Enum):
    """
    Action recommended after analyzing an A/B test.

    - continue: keep collecting data, nothing conclusive yet
    - stop: stop the test (never produced by the current rules, kept for API parity)
    - declare_winner: results are significant and one variant is confident enough
    - extend: enough traffic to matter but not yet significant, extend the test
    """
    CONTINUE = "continue"
    STOP = "stop"
    DECLARE_WINNER = "declare_winner"
    EXTEND = "extend"


class RolloutState(str, Enum):
    """
    Lifecycle states of a gradual rollout.

    `completed` and `rolled_back` are terminal. `failed` is reached when the
    status cannot be persisted and waits for operator intervention.
    """
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RolloutState.COMPLETED, RolloutState.ROLLED_BACK)
