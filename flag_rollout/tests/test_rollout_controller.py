"""
Tests for the Rollout Controller.

Test Classes:
- TestConfigValidation: invariants checked before a rollout starts
- TestStartRollout: initial status, schedule, persistence and distribution
- TestIncrements: sample-size, error-rate and conversion gates
- TestEmergencyStop: automatic rollback on quality regressions
- TestOperatorTransitions: pause / resume / rollback state machine
- TestPersistenceFailures: retries and the `failed` state
- TestRestore: rebuilding state after a restart
- TestTick: concurrency isolation and the end-to-end path from events
"""

from datetime import datetime, timedelta, timezone
from typing import List

import pytest
from pydantic import ValidationError

from flag_rollout.models import (
    EventType,
    FeedbackSignal,
    RolloutConfig,
    RolloutState,
    to_epoch_millis,
)
from flag_rollout.services.metrics import MetricsAggregator
from flag_rollout.services.rollout_controller import (
    RolloutConfigError,
    RolloutController,
    RolloutNotFoundError,
    RolloutPersistenceError,
    RolloutStateError,
    calculate_next_increment,
    validate_rollout_config,
)

from flag_rollout.tests.conftest import FLAG_KEY, START_TIME, TARGET_VARIANT, RecordingDistribution


pytestmark = pytest.mark.asyncio


def _percentages(distribution) -> List[float]:
    return [call[2] for call in distribution.calls]


# =============================================================================
# Config validation
# =============================================================================


class TestConfigValidation:

    async def test_target_below_initial_is_rejected(self, rollout_config_data) -> None:
        data = {**rollout_config_data, "initial_percentage": 50, "target_percentage": 30}

        with pytest.raises(ValidationError):
            RolloutConfig.model_validate(data)

    async def test_start_rollout_rejects_invalid_mapping(self, controller, rollout_config_data, storage) -> None:
        data = {**rollout_config_data, "initial_percentage": 50, "target_percentage": 30}

        with pytest.raises(RolloutConfigError):
            await controller.start_rollout(data)

        assert storage.configs == {}
        assert controller.list_statuses() == []

    async def test_constructed_config_is_rechecked(self, make_config) -> None:
        config = make_config().model_copy(update={"initial_percentage": 50, "target_percentage": 30})

        with pytest.raises(RolloutConfigError):
            validate_rollout_config(config)

    async def test_naive_dates_are_read_as_utc(self, rollout_config_data) -> None:
        data = {k: v for k, v in rollout_config_data.items() if k != "start_date"}

        config = RolloutConfig.model_validate({**data, "end_date": "2030-01-01T00:00:00"})

        assert config.end_date == datetime(2030, 1, 1, tzinfo=timezone.utc)
        assert config.start_date.tzinfo is not None

    async def test_end_before_start_is_rejected(self, rollout_config_data) -> None:
        data = {**rollout_config_data, "start_date": START_TIME, "end_date": "2024-12-31T00:00:00"}

        with pytest.raises(ValidationError):
            RolloutConfig.model_validate(data)

    async def test_constructed_config_with_naive_end_date_is_rechecked(self, make_config) -> None:
        config = make_config().model_copy(update={"end_date": datetime(2024, 12, 31)})

        with pytest.raises(RolloutConfigError):
            validate_rollout_config(config)

    @pytest.mark.parametrize("field,value", [
        ("increment_percentage", 0),
        ("increment_percentage", 60),
        ("increment_interval_hours", 0.5),
        ("target_percentage", 120),
    ])
    async def test_invalid_fields(self, rollout_config_data, field, value) -> None:
        with pytest.raises(ValidationError):
            RolloutConfig.model_validate({**rollout_config_data, field: value})


# =============================================================================
# Start
# =============================================================================


class TestStartRollout:

    async def test_initial_status(self, controller, make_config, storage, distribution, clock) -> None:
        rollout_id = await controller.start_rollout(make_config())

        status = controller.get_status(rollout_id)
        assert rollout_id == f"rollout_{FLAG_KEY}_{to_epoch_millis(START_TIME)}"
        assert status.status == RolloutState.ACTIVE
        assert status.current_percentage == 5
        assert status.target_percentage == 100

        [entry] = status.increment_history
        assert (entry.from_percentage, entry.to_percentage) == (0, 5)
        assert entry.reason == "Initial rollout start"

        schedule = status.next_scheduled_increment
        assert schedule.to_percentage == 15
        assert (schedule.scheduled_at - START_TIME).total_seconds() == 24 * 3600

        assert rollout_id in storage.configs
        assert storage.statuses[rollout_id].current_percentage == 5
        assert distribution.calls == [(FLAG_KEY, TARGET_VARIANT, 5)]

    async def test_no_schedule_when_starting_at_target(self, controller, make_config) -> None:
        rollout_id = await controller.start_rollout(make_config(initial_percentage=100))
        assert controller.get_status(rollout_id).next_scheduled_increment is None

    async def test_duplicate_active_rollout_is_rejected(self, controller, make_config) -> None:
        await controller.start_rollout(make_config())

        with pytest.raises(RolloutStateError):
            await controller.start_rollout(make_config())

    async def test_new_rollout_allowed_after_rollback(self, controller, make_config, clock) -> None:
        first = await controller.start_rollout(make_config())
        await controller.rollback(first, "bad copy")
        clock.advance(1)

        second = await controller.start_rollout(make_config())

        assert second != first

    async def test_start_fails_when_storage_down(self, controller, make_config, storage, distribution) -> None:
        storage.fail_status_writes = True

        with pytest.raises(ConnectionError):
            await controller.start_rollout(make_config())

        assert controller.list_statuses() == []
        assert distribution.calls == []

    async def test_next_increment_is_capped(self, make_config) -> None:
        config = make_config(initial_percentage=95)
        assert calculate_next_increment(95, config, START_TIME).to_percentage == 100
        assert calculate_next_increment(100, config, START_TIME) is None


# =============================================================================
# Increments
# =============================================================================


class TestIncrements:

    async def test_insufficient_sample_holds_percentage(self, controller, make_config, preset_aggregator, clock, distribution) -> None:
        rollout_id = await controller.start_rollout(make_config())
        preset_aggregator.set_metrics(total_users=40, conversion_rate=0.3, error_rate=0.0)

        await controller.tick(clock.advance(25))

        status = controller.get_status(rollout_id)
        assert status.current_percentage == 5
        assert status.status == RolloutState.ACTIVE
        assert len(status.increment_history) == 1
        assert _percentages(distribution) == [5]

    async def test_healthy_metrics_increment(self, controller, make_config, preset_aggregator, clock, distribution, storage, recorder) -> None:
        rollout_id = await controller.start_rollout(make_config())
        preset_aggregator.set_metrics(total_users=60, conversion_rate=0.3, error_rate=0.01)

        now = clock.advance(25)
        await controller.tick(now)

        status = controller.get_status(rollout_id)
        assert status.current_percentage == 15
        last = status.increment_history[-1]
        assert (last.from_percentage, last.to_percentage, last.reason) == (5, 15, "Scheduled increment")
        assert last.metrics.total_users == 60
        assert status.current_stats.error_rate == pytest.approx(0.01)
        assert status.next_scheduled_increment.to_percentage == 25
        assert (status.next_scheduled_increment.scheduled_at - now).total_seconds() == 24 * 3600
        assert _percentages(distribution) == [5, 15]
        assert storage.statuses[rollout_id].current_percentage == 15

        [audit] = recorder.snapshot()
        assert audit.event_type == EventType.PERFORMANCE
        assert audit.user_id == "system"
        assert audit.custom_data == {
            "rollout_id": rollout_id,
            "action": "increment",
            "from_percentage": 5,
            "to_percentage": 15,
        }

    async def test_not_due_yet(self, controller, make_config, preset_aggregator, clock) -> None:
        rollout_id = await controller.start_rollout(make_config())
        preset_aggregator.set_metrics(total_users=60, conversion_rate=0.3)

        await controller.tick(clock.advance(1))

        assert controller.get_status(rollout_id).current_percentage == 5

    async def test_error_rate_gate(self, controller, make_config, preset_aggregator, clock) -> None:
        rollout_id = await controller.start_rollout(make_config())
        preset_aggregator.set_metrics(total_users=100, conversion_rate=0.3, error_rate=0.1)

        await controller.tick(clock.advance(25))

        status = controller.get_status(rollout_id)
        assert status.current_percentage == 5
        assert status.status == RolloutState.ACTIVE

    async def test_conversion_gate(self, controller, make_config, preset_aggregator, clock) -> None:
        rollout_id = await controller.start_rollout(make_config())
        preset_aggregator.set_metrics(total_users=100, conversion_rate=0.1)

        await controller.tick(clock.advance(25))

        assert controller.get_status(rollout_id).current_percentage == 5

    async def test_one_increment_per_interval(self, controller, make_config, preset_aggregator, clock) -> None:
        rollout_id = await controller.start_rollout(make_config())
        preset_aggregator.set_metrics(total_users=60, conversion_rate=0.3)

        await controller.tick(clock.advance(25))
        await controller.tick(clock.advance(1))

        assert controller.get_status(rollout_id).current_percentage == 15

    async def test_reaching_target_completes(self, controller, make_config, preset_aggregator, clock, notifier) -> None:
        rollout_id = await controller.start_rollout(make_config(initial_percentage=95))
        preset_aggregator.set_metrics(total_users=60, conversion_rate=0.3)

        await controller.tick(clock.advance(25))

        status = controller.get_status(rollout_id)
        assert status.current_percentage == 100
        assert status.status == RolloutState.COMPLETED
        assert status.next_scheduled_increment is None
        assert status.increment_history[-1].reason == "Rollout completed successfully"
        assert len(notifier.completions) == 1
        assert notifier.alerts == []

    async def test_starting_at_target_completes_on_first_tick(self, controller, make_config, preset_aggregator, clock, notifier) -> None:
        rollout_id = await controller.start_rollout(make_config(initial_percentage=100))
        preset_aggregator.set_metrics(total_users=60, conversion_rate=0.3)

        await controller.tick(clock.advance(1))

        assert controller.get_status(rollout_id).status == RolloutState.COMPLETED
        assert len(notifier.completions) == 1

    async def test_percentage_never_decreases_while_active(self, controller, make_config, preset_aggregator, clock) -> None:
        rollout_id = await controller.start_rollout(make_config())
        preset_aggregator.set_metrics(total_users=60, conversion_rate=0.3)

        seen = [controller.get_status(rollout_id).current_percentage]
        for _ in range(12):
            await controller.tick(clock.advance(25))
            seen.append(controller.get_status(rollout_id).current_percentage)

        assert seen == sorted(seen)
        assert seen[-1] == 100
        assert controller.get_status(rollout_id).status == RolloutState.COMPLETED

    async def test_completed_rollout_is_not_evaluated(self, controller, make_config, preset_aggregator, clock, distribution) -> None:
        await controller.start_rollout(make_config(initial_percentage=100))
        preset_aggregator.set_metrics(total_users=60, conversion_rate=0.3)
        await controller.tick(clock.advance(1))

        preset_aggregator.set_metrics(total_users=60, conversion_rate=0.3, error_rate=0.9)
        evaluated = await controller.tick(clock.advance(25))

        assert evaluated == 0
        assert _percentages(distribution) == [100]


# =============================================================================
# Emergency stop
# =============================================================================


class TestEmergencyStop:

    async def test_error_spike_rolls_back(self, controller, make_config, preset_aggregator, clock, distribution, notifier) -> None:
        rollout_id = await controller.start_rollout(make_config())
        preset_aggregator.set_metrics(total_users=60, conversion_rate=0.3, error_rate=0.5)

        await controller.tick(clock.advance(1))

        status = controller.get_status(rollout_id)
        assert status.status == RolloutState.ROLLED_BACK
        assert status.current_percentage == 0
        assert status.next_scheduled_increment is None
        assert status.increment_history[-1].reason.startswith("Rollback: Emergency stop")
        assert _percentages(distribution)[-1] == 0
        assert len(notifier.alerts) == 1
        assert rollout_id in notifier.alerts[0]

    async def test_emergency_stop_wins_over_due_increment(self, controller, make_config, preset_aggregator, clock) -> None:
        rollout_id = await controller.start_rollout(make_config(min_sample_size=0, max_error_rate=1.0))
        preset_aggregator.set_metrics(total_users=60, conversion_rate=0.3, error_rate=0.5)

        await controller.tick(clock.advance(25))

        status = controller.get_status(rollout_id)
        assert status.status == RolloutState.ROLLED_BACK
        assert all(r.to_percentage <= 5 for r in status.increment_history)

    async def test_conversion_collapse_rolls_back(self, controller, make_config, preset_aggregator, clock) -> None:
        rollout_id = await controller.start_rollout(make_config())
        preset_aggregator.set_metrics(total_users=60, conversion_rate=0.01)

        await controller.tick(clock.advance(1))

        assert controller.get_status(rollout_id).status == RolloutState.ROLLED_BACK

    async def test_no_users_is_not_an_emergency(self, controller, make_config, clock) -> None:
        rollout_id = await controller.start_rollout(make_config())

        await controller.tick(clock.advance(1))

        assert controller.get_status(rollout_id).status == RolloutState.ACTIVE

    async def test_low_feedback_score_rolls_back(self, controller, make_config, preset_aggregator, feedback, clock) -> None:
        rollout_id = await controller.start_rollout(make_config())
        preset_aggregator.set_metrics(total_users=60, conversion_rate=0.3)
        feedback.signal = FeedbackSignal(score=1.5)

        await controller.tick(clock.advance(1))

        status = controller.get_status(rollout_id)
        assert status.status == RolloutState.ROLLED_BACK
        assert status.increment_history[-1].metrics.user_feedback_score == 1.5

    async def test_acceptable_feedback_keeps_rollout(self, controller, make_config, preset_aggregator, feedback, clock) -> None:
        rollout_id = await controller.start_rollout(make_config())
        preset_aggregator.set_metrics(total_users=60, conversion_rate=0.3)
        feedback.signal = FeedbackSignal(score=4.2, complaints=3)

        await controller.tick(clock.advance(1))

        status = controller.get_status(rollout_id)
        assert status.status == RolloutState.ACTIVE
        assert status.current_stats.user_complaints == 3

    async def test_too_many_complaints_roll_back(self, controller, make_config, preset_aggregator, feedback, clock) -> None:
        rollout_id = await controller.start_rollout(make_config())
        preset_aggregator.set_metrics(total_users=60, conversion_rate=0.3)
        feedback.signal = FeedbackSignal(complaints=11)

        await controller.tick(clock.advance(1))

        assert controller.get_status(rollout_id).status == RolloutState.ROLLED_BACK

    async def test_rollback_survives_status_write_failure(self, controller, make_config, preset_aggregator, clock, storage, distribution, notifier) -> None:
        rollout_id = await controller.start_rollout(make_config())
        preset_aggregator.set_metrics(total_users=60, conversion_rate=0.3, error_rate=0.5)
        storage.fail_status_writes = True

        for _ in range(4):
            await controller.tick(clock.advance(1))

        assert controller.get_status(rollout_id).status == RolloutState.ROLLED_BACK
        assert _percentages(distribution)[-1] == 0
        assert len(notifier.alerts) == 1

    async def test_rollback_retries_distribution(self, controller, make_config, preset_aggregator, clock, distribution) -> None:
        rollout_id = await controller.start_rollout(make_config())
        preset_aggregator.set_metrics(total_users=60, conversion_rate=0.3, error_rate=0.5)
        distribution.failures = 1

        await controller.tick(clock.advance(1))
        assert controller.get_status(rollout_id).status == RolloutState.ROLLED_BACK
        assert _percentages(distribution) == [5]

        await controller.tick(clock.advance(1))
        assert _percentages(distribution) == [5, 0]


# =============================================================================
# Operator transitions
# =============================================================================


class TestOperatorTransitions:

    async def test_pause_keeps_percentage_and_clears_schedule(self, controller, make_config, storage) -> None:
        rollout_id = await controller.start_rollout(make_config())

        status = await controller.pause(rollout_id, "investigating tickets")

        assert status.status == RolloutState.PAUSED
        assert status.current_percentage == 5
        assert status.next_scheduled_increment is None
        assert status.increment_history[-1].reason == "Paused: investigating tickets"
        assert storage.statuses[rollout_id].status == RolloutState.PAUSED

    async def test_paused_rollout_is_not_evaluated(self, controller, make_config, preset_aggregator, clock) -> None:
        rollout_id = await controller.start_rollout(make_config())
        await controller.pause(rollout_id, "hold")
        preset_aggregator.set_metrics(total_users=60, conversion_rate=0.3, error_rate=0.9)

        await controller.tick(clock.advance(25))

        assert controller.get_status(rollout_id).status == RolloutState.PAUSED

    async def test_resume_reschedules_from_now(self, controller, make_config, clock) -> None:
        rollout_id = await controller.start_rollout(make_config())
        await controller.pause(rollout_id, "hold")
        now = clock.advance(30)

        status = await controller.resume(rollout_id, "tickets resolved")

        assert status.status == RolloutState.ACTIVE
        assert status.next_scheduled_increment.to_percentage == 15
        assert (status.next_scheduled_increment.scheduled_at - now).total_seconds() == 24 * 3600
        assert status.increment_history[-1].reason == "Resumed: tickets resolved"

    async def test_invalid_transitions(self, controller, make_config) -> None:
        rollout_id = await controller.start_rollout(make_config())

        with pytest.raises(RolloutStateError):
            await controller.resume(rollout_id, "not paused")

        await controller.pause(rollout_id, "hold")
        with pytest.raises(RolloutStateError):
            await controller.pause(rollout_id, "again")

    async def test_manual_rollback_from_paused(self, controller, make_config, distribution, notifier) -> None:
        rollout_id = await controller.start_rollout(make_config())
        await controller.pause(rollout_id, "hold")

        status = await controller.rollback(rollout_id, "product decision")

        assert status.status == RolloutState.ROLLED_BACK
        assert status.current_percentage == 0
        assert status.increment_history[-1].reason == "Rollback: product decision"
        assert _percentages(distribution) == [5, 0]
        assert len(notifier.alerts) == 1

    async def test_rolled_back_is_terminal(self, controller, make_config) -> None:
        rollout_id = await controller.start_rollout(make_config())
        await controller.rollback(rollout_id, "first")
        history_length = len(controller.get_status(rollout_id).increment_history)

        again = await controller.rollback(rollout_id, "second")
        assert len(again.increment_history) == history_length

        with pytest.raises(RolloutStateError):
            await controller.pause(rollout_id, "no")
        with pytest.raises(RolloutStateError):
            await controller.resume(rollout_id, "no")

    async def test_completed_cannot_be_rolled_back(self, controller, make_config, preset_aggregator, clock) -> None:
        rollout_id = await controller.start_rollout(make_config(initial_percentage=100))
        preset_aggregator.set_metrics(total_users=60, conversion_rate=0.3)
        await controller.tick(clock.advance(1))

        with pytest.raises(RolloutStateError):
            await controller.rollback(rollout_id, "too late")

    async def test_unknown_rollout(self, controller) -> None:
        with pytest.raises(RolloutNotFoundError):
            controller.get_status("rollout_missing_1")
        with pytest.raises(RolloutNotFoundError):
            await controller.pause("rollout_missing_1", "x")

    async def test_status_copies_are_detached(self, controller, make_config) -> None:
        rollout_id = await controller.start_rollout(make_config())

        copy = controller.get_status(rollout_id)
        copy.current_percentage = 99

        assert controller.get_status(rollout_id).current_percentage == 5


# =============================================================================
# Persistence failures
# =============================================================================


class TestPersistenceFailures:

    async def test_repeated_write_failures_fail_rollout(self, controller, make_config, preset_aggregator, clock, storage, distribution, notifier) -> None:
        rollout_id = await controller.start_rollout(make_config())
        preset_aggregator.set_metrics(total_users=60, conversion_rate=0.3)
        storage.fail_status_writes = True

        await controller.tick(clock.advance(25))
        await controller.tick(clock.advance(1))
        assert controller.get_status(rollout_id).status == RolloutState.ACTIVE
        assert controller.get_status(rollout_id).current_percentage == 5

        await controller.tick(clock.advance(1))

        status = controller.get_status(rollout_id)
        assert status.status == RolloutState.FAILED
        assert "status write failed" in status.failure_reason
        assert status.current_percentage == 5
        assert _percentages(distribution) == [5]
        assert len(notifier.alerts) == 1

    async def test_successful_write_resets_failure_count(self, controller, make_config, preset_aggregator, clock, storage) -> None:
        rollout_id = await controller.start_rollout(make_config())
        preset_aggregator.set_metrics(total_users=60, conversion_rate=0.3)
        storage.status_write_failures = 2

        await controller.tick(clock.advance(25))
        await controller.tick(clock.advance(1))
        await controller.tick(clock.advance(1))

        status = controller.get_status(rollout_id)
        assert status.status == RolloutState.ACTIVE
        assert status.current_percentage == 15

    async def test_failed_rollout_can_be_resumed(self, controller, make_config, preset_aggregator, clock, storage) -> None:
        rollout_id = await controller.start_rollout(make_config())
        preset_aggregator.set_metrics(total_users=60, conversion_rate=0.3)
        storage.fail_status_writes = True
        for _ in range(3):
            await controller.tick(clock.advance(25))
        assert controller.get_status(rollout_id).status == RolloutState.FAILED

        storage.fail_status_writes = False
        status = await controller.resume(rollout_id, "database restored")

        assert status.status == RolloutState.ACTIVE
        assert status.failure_reason is None
        assert storage.statuses[rollout_id].status == RolloutState.ACTIVE

    async def test_failed_rollout_can_be_rolled_back(self, controller, make_config, preset_aggregator, clock, storage) -> None:
        rollout_id = await controller.start_rollout(make_config())
        preset_aggregator.set_metrics(total_users=60, conversion_rate=0.3)
        storage.fail_status_writes = True
        for _ in range(3):
            await controller.tick(clock.advance(25))

        status = await controller.rollback(rollout_id, "abandon")

        assert status.status == RolloutState.ROLLED_BACK

    async def test_resume_requires_persistence(self, controller, make_config, storage) -> None:
        rollout_id = await controller.start_rollout(make_config())
        await controller.pause(rollout_id, "hold")
        storage.status_write_failures = 1

        with pytest.raises(RolloutPersistenceError):
            await controller.resume(rollout_id, "go")

        assert controller.get_status(rollout_id).status == RolloutState.PAUSED


# =============================================================================
# Restore
# =============================================================================


class TestRestore:

    async def test_restore_reapplies_distribution(
        self, controller, make_config, preset_aggregator, clock, storage, notifier, feedback
    ) -> None:
        active_id = await controller.start_rollout(make_config())
        paused_id = await controller.start_rollout(make_config(target_variant="guided"))
        await controller.pause(paused_id, "hold")
        rolled_back_id = await controller.start_rollout(make_config(target_variant="classic", initial_percentage=20))
        await controller.rollback(rolled_back_id, "bad")
        completed_id = await controller.start_rollout(make_config(target_variant="full", initial_percentage=100))
        preset_aggregator.set_metrics(total_users=60, conversion_rate=0.3, variant="full")
        await controller.process_rollout(completed_id, clock.advance(1))
        assert controller.get_status(completed_id).status == RolloutState.COMPLETED

        distribution = RecordingDistribution()
        restarted = RolloutController(storage, distribution, notifier, MetricsAggregator(storage), feedback=feedback, clock=clock)

        loaded = await restarted.restore()

        assert loaded == 4
        assert {s.id for s in restarted.list_statuses()} == {active_id, paused_id, rolled_back_id, completed_id}
        assert distribution.current == {
            (FLAG_KEY, TARGET_VARIANT): 5,
            (FLAG_KEY, "guided"): 5,
            (FLAG_KEY, "classic"): 0,
        }
        assert restarted.get_status(paused_id).status == RolloutState.PAUSED


# =============================================================================
# Tick
# =============================================================================


class TestTick:

    async def test_one_failing_rollout_does_not_block_others(self, controller, make_config, preset_aggregator, clock) -> None:
        broken_id = await controller.start_rollout(make_config(flag_key="broken-flag"))
        healthy_id = await controller.start_rollout(make_config())
        preset_aggregator.failing_flags.add("broken-flag")
        preset_aggregator.set_metrics(total_users=60, conversion_rate=0.3)

        evaluated = await controller.tick(clock.advance(25))

        assert evaluated == 2
        assert controller.get_status(broken_id).current_percentage == 5
        assert controller.get_status(healthy_id).current_percentage == 15

    async def test_end_to_end_from_events(self, storage, distribution, notifier, make_config, make_events, clock, recorder) -> None:
        aggregator = MetricsAggregator(storage)
        controller = RolloutController(
            storage, distribution, notifier, aggregator, recorder=recorder, clock=clock
        )
        rollout_id = await controller.start_rollout(make_config())

        now = clock.advance(25)
        storage.events.extend(make_events(TARGET_VARIANT, users=100, converted=30, errored=1, at=now))
        storage.events.extend(make_events("control", users=100, converted=5, errored=50, at=now))

        await controller.tick(now)

        status = controller.get_status(rollout_id)
        assert status.current_percentage == 15
        assert status.current_stats.total_users == 100
        assert status.current_stats.error_rate == pytest.approx(0.01)
        assert status.current_stats.conversion_rate == pytest.approx(0.3)

        await recorder.flush()
        assert [e.user_id for e in storage.events if e.event_type == EventType.PERFORMANCE] == ["system"]

        metrics = await aggregator.compute_variant_metrics(FLAG_KEY, TARGET_VARIANT)
        assert metrics.total_users == 100
        assert metrics.conversion_rate == pytest.approx(0.3)
        assert metrics.error_rate == pytest.approx(0.01)

        await controller.tick(clock.advance(1))

        status = controller.get_status(rollout_id)
        assert status.current_stats.total_users == 100
        assert status.current_stats.conversion_rate == pytest.approx(0.3)

    async def test_increment_audit_event_leaves_variant_metrics_unchanged(self, storage, distribution, notifier, make_config, make_events, clock, recorder) -> None:
        aggregator = MetricsAggregator(storage)
        controller = RolloutController(
            storage, distribution, notifier, aggregator, recorder=recorder, clock=clock
        )
        storage.events.extend(make_events(TARGET_VARIANT, users=60, converted=18, at=START_TIME + timedelta(hours=1)))
        rollout_id = await controller.start_rollout(make_config())

        await controller.tick(clock.advance(24))
        assert controller.get_status(rollout_id).current_percentage == 15
        await recorder.flush()

        metrics = await aggregator.compute_variant_metrics(FLAG_KEY, TARGET_VARIANT)
        assert metrics.total_users == 60
        assert metrics.conversion_rate == pytest.approx(0.30)

    async def test_old_events_fall_out_of_the_window(self, storage, distribution, notifier, make_config, make_events, clock) -> None:
        controller = RolloutController(
            storage, distribution, notifier, MetricsAggregator(storage), clock=clock
        )
        rollout_id = await controller.start_rollout(make_config())
        storage.events.extend(make_events(TARGET_VARIANT, users=100, converted=30, at=START_TIME))

        await controller.tick(clock.advance(49))

        status = controller.get_status(rollout_id)
        assert status.current_stats.total_users == 0
        assert status.current_percentage == 5
