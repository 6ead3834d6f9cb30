"""Tests for the predict-or-poll policy and lost/extra sample detection."""

from unittest.mock import MagicMock

import pytest

from buffersync.clock_model import ClockModel
from buffersync.config import PolicyConfig
from buffersync.errors import BufferConnectionError
from buffersync.polling import PollingPolicy, ResetReason


@pytest.fixture
def stream(synthetic_buffer):
    """Poll callable counting round trips to the synthetic buffer."""
    return lambda: synthetic_buffer.poll(0).num_samples


@pytest.fixture
def policy(clock_model, stream):
    return PollingPolicy(clock_model, stream, PolicyConfig())


def warm_up(policy, manual_clock, points=8, step_ms=20.0):
    for _ in range(points):
        policy.resolve()
        manual_clock.advance(step_ms)


class TestResolve:
    """Decision between prediction and forced poll."""

    def test_polls_until_enough_points(self, policy, manual_clock, synthetic_buffer):
        warm_up(policy, manual_clock, points=8)
        assert synthetic_buffer.poll_calls == 8
        assert policy.clock.n == 8

        sample = policy.resolve()
        assert synthetic_buffer.poll_calls == 8
        assert sample == synthetic_buffer.samples()
        assert policy.stats.predictions == 1

    def test_poll_returns_observed_count(self, policy, synthetic_buffer):
        sample = policy.resolve()
        assert sample == synthetic_buffer.samples()
        assert policy.clock.s_last == sample
        assert synthetic_buffer.poll_calls == 1

    def test_polls_after_update_interval(self, policy, manual_clock, synthetic_buffer):
        warm_up(policy, manual_clock)
        manual_clock.advance(3001)

        policy.resolve()
        assert synthetic_buffer.poll_calls == 9

    def test_no_poll_within_update_interval(self, policy, manual_clock, synthetic_buffer):
        warm_up(policy, manual_clock)
        manual_clock.advance(2900)

        assert policy.resolve() == synthetic_buffer.samples()
        assert synthetic_buffer.poll_calls == 8

    def test_polls_when_error_too_large(self, clock_model, stream, manual_clock, synthetic_buffer):
        policy = PollingPolicy(clock_model, stream, PolicyConfig(max_samp_error=10))
        warm_up(policy, manual_clock)

        # 50 samples off the fit: above max_samp_error, below the drift tolerance
        policy.observe(synthetic_buffer.samples() + 50)
        manual_clock.advance(20)

        policy.resolve()
        assert synthetic_buffer.poll_calls == 9
        assert policy.stats.resets[ResetReason.EXTRA_SAMPLES.value] == 0

    def test_rate_limit_collapses_polls(self, policy, manual_clock, synthetic_buffer):
        policy.resolve()
        assert synthetic_buffer.poll_calls == 1

        # Still bootstrapping (n < 8) and error unknown, but inside the floor
        manual_clock.advance(5)
        sample = policy.resolve()
        assert synthetic_buffer.poll_calls == 1
        assert sample == policy.clock.predict(manual_clock.now_ms)

        manual_clock.advance(10)
        policy.resolve()
        assert synthetic_buffer.poll_calls == 2

    def test_poll_errors_propagate(self, clock_model, manual_clock):
        poll = MagicMock(side_effect=BufferConnectionError("connection reset"))
        policy = PollingPolicy(clock_model, poll)

        with pytest.raises(BufferConnectionError):
            policy.resolve()
        assert clock_model.n == 0


class TestOrdering:
    """Predictions falling behind the last known sample count."""

    @pytest.fixture
    def lagging_clock(self):
        clock = MagicMock(spec=ClockModel)
        clock.current_time_ms.return_value = 1000.0
        clock.t_last = 900.0
        clock.s_last = 100
        clock.n = 20
        clock.slope = 0.25
        clock.error_magnitude.return_value = 0.0
        # Always predicts below the last reported count
        clock.predict.return_value = 90
        return clock

    def test_violation_forces_poll(self, lagging_clock):
        poll = MagicMock(return_value=100)
        policy = PollingPolicy(lagging_clock, poll)

        assert policy.resolve() == 100
        assert policy.num_wrong == 1
        poll.assert_called_once()

    def test_reset_after_more_than_five_violations(self, lagging_clock):
        poll = MagicMock(return_value=100)
        policy = PollingPolicy(lagging_clock, poll)

        for _ in range(5):
            policy.resolve()
        assert policy.num_wrong == 5
        lagging_clock.reset.assert_not_called()

        policy.resolve()
        lagging_clock.reset.assert_called_once()
        assert policy.num_wrong == 0
        assert policy.stats.resets[ResetReason.DESYNC.value] == 1

    def test_consistent_prediction_clears_counter(self, lagging_clock):
        policy = PollingPolicy(lagging_clock, MagicMock(return_value=100))
        policy.resolve()
        policy.resolve()
        assert policy.num_wrong == 2

        lagging_clock.predict.return_value = 110
        policy.resolve()
        assert policy.num_wrong == 0

    def test_backwards_fit_with_real_clock(self, clock_model, manual_clock):
        poll = MagicMock()
        policy = PollingPolicy(clock_model, poll)
        for i in range(10):
            policy.observe(i * 25)
            manual_clock.advance(100)

        # 100 samples ahead of the line: under the drift tolerance, but it
        # leaves s_last above what the refitted line gives shortly after
        policy.observe(350)
        manual_clock.advance(10)
        assert clock_model.predict(manual_clock.now_ms) < clock_model.s_last

        poll.return_value = 352
        assert policy.resolve() == 352
        assert policy.num_wrong == 1
        poll.assert_called_once()
        assert clock_model.s_last == 352

    def test_prediction_at_last_point_is_not_a_violation(self, clock_model, manual_clock):
        poll = MagicMock()
        policy = PollingPolicy(clock_model, poll)
        for i in range(10):
            policy.observe(i * 25 + 3)
            manual_clock.advance(100)
        manual_clock.advance(-100)

        # Rounded prediction at t_last equals s_last even with float error in the fit
        assert policy.resolve() == clock_model.s_last
        assert policy.num_wrong == 0
        poll.assert_not_called()

    def test_violation_counted_inside_rate_limit(self, lagging_clock):
        lagging_clock.t_last = 995.0
        poll = MagicMock(return_value=100)
        policy = PollingPolicy(lagging_clock, poll)

        assert policy.resolve() == 90
        assert policy.num_wrong == 1
        poll.assert_not_called()


class TestDriftDetection:
    """Lost and extra samples seen on ground-truth observations."""

    @pytest.fixture
    def fitted(self, manual_clock):
        clock = ClockModel(alpha=0.95, time_source=manual_clock)
        policy = PollingPolicy(clock, MagicMock(), PolicyConfig())
        # 250 Hz: slope 0.25 samples/ms, tolerance 0.5 * 250 = 125 samples
        for i in range(10):
            policy.observe(i * 25, i * 100.0)
        assert clock.error_magnitude() < policy.config.max_samp_error
        return policy

    def test_lost_samples_reset(self, fitted):
        predicted = fitted.clock.predict(1000.0)
        lag = int(0.6 * fitted.clock.slope * 1000)

        fitted.observe(predicted - lag, 1000.0)

        assert fitted.stats.resets[ResetReason.LOST_SAMPLES.value] == 1
        # The new point starts the next fit
        assert fitted.clock.n == 1
        assert fitted.clock.s_last == predicted - lag

    def test_small_lag_does_not_reset(self, fitted):
        predicted = fitted.clock.predict(1000.0)
        lag = int(0.4 * fitted.clock.slope * 1000)

        fitted.observe(predicted - lag, 1000.0)

        assert fitted.stats.resets[ResetReason.LOST_SAMPLES.value] == 0
        assert fitted.clock.n == 11

    def test_extra_samples_reset(self, fitted):
        predicted = fitted.clock.predict(1000.0)
        lead = int(0.6 * fitted.clock.slope * 1000)

        fitted.observe(predicted + lead, 1000.0)

        assert fitted.stats.resets[ResetReason.EXTRA_SAMPLES.value] == 1
        assert fitted.clock.n == 1

    def test_skipped_while_untrusted(self, manual_clock):
        clock = ClockModel(alpha=0.95, time_source=manual_clock)
        policy = PollingPolicy(clock, MagicMock(), PolicyConfig(max_samp_error=40))
        for i in range(10):
            policy.observe(i * 25, i * 100.0)

        # 60 samples off: inside the drift tolerance but above max_samp_error
        policy.observe(clock.predict(1000.0) + 60, 1000.0)
        assert clock.error_magnitude() >= 40

        policy.observe(clock.predict(1100.0) - 150, 1100.0)
        assert sum(policy.stats.resets.values()) == 0
        assert clock.n == 12

    def test_no_check_without_estimate(self, clock_model):
        policy = PollingPolicy(clock_model, MagicMock())
        policy.observe(123_456, 0.0)

        assert clock_model.n == 1
        assert sum(policy.stats.resets.values()) == 0
        assert len(policy.stats.residuals) == 0


class TestStatistics:

    def test_statistics_summary(self, policy, manual_clock):
        warm_up(policy, manual_clock, points=10)
        stats = policy.get_statistics()

        assert stats["forced_polls"] == 8
        assert stats["predictions"] == 2
        assert stats["fit_points"] == 8
        assert stats["rate_hz"] == pytest.approx(250.0, rel=0.01)
        assert stats["residuals"]["count"] == 7
        assert stats["last_observation"]["sample_count"] == policy.clock.s_last

    def test_statistics_before_any_observation(self, policy):
        stats = policy.get_statistics()
        assert stats["residuals"] is None
        assert stats["last_observation"] is None
        assert stats["fit_points"] == 0
