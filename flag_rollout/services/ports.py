"""
Abstract ports used by the rollout services.

The services never talk to a database, a flag-serving system or a chat tool
directly; they call these interfaces. Concrete adapters live in
`flag_rollout.services.storage` (asyncpg), `flag_rollout.jobs.notifications`
(slack-sdk) and in the test fixtures.
"""

from abc import ABC, abstractmethod
from typing import List, Optional, Sequence, Tuple

from flag_rollout.models import (
    DateRange,
    Event,
    FeedbackSignal,
    RolloutConfig,
    RolloutStatus,
)


class StoragePort(ABC):
    """Durable store for events and rollout state."""

    @abstractmethod
    async def append_events(self, events: Sequence[Event]) -> None:
        """Write a batch of events. Must raise on failure so the batch is re-queued."""

    @abstractmethod
    async def query_events(self, flag_key: str, date_range: DateRange) -> List[Event]:
        """Return events for `flag_key` whose timestamp lies within `date_range`, oldest first."""

    @abstractmethod
    async def save_rollout_config(self, rollout_id: str, config: RolloutConfig) -> None:
        ...

    @abstractmethod
    async def save_rollout_status(self, rollout_id: str, status: RolloutStatus) -> None:
        """Upsert the status. Writes must be idempotent."""

    @abstractmethod
    async def load_rollouts(self) -> List[Tuple[RolloutConfig, RolloutStatus]]:
        """Return every persisted rollout, used to rebuild controller state on restart."""


class DistributionPort(ABC):
    """The live flag-serving system that routes users into variants."""

    @abstractmethod
    async def set_variant_percentage(self, flag_key: str, variant: str, percentage: float) -> None:
        ...


class NotificationPort(ABC):
    """Operator notifications. Implementations must not raise on delivery failure."""

    @abstractmethod
    async def send_alert(self, message: str) -> None:
        ...

    @abstractmethod
    async def send_completion(self, message: str) -> None:
        ...


class FeedbackPort(ABC):
    """Source of user-feedback signals (ratings and complaints) per variant."""

    @abstractmethod
    async def get_feedback(self, flag_key: str, variant: str) -> Optional[FeedbackSignal]:
        ...


class NoFeedback(FeedbackPort):
    """Feedback source used when no feedback system is connected."""

    async def get_feedback(self, flag_key: str, variant: str) -> Optional[FeedbackSignal]:
        return None
