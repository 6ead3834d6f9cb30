#!/usr/bin/env python3
"""
Clock model mapping local wall-clock time to stream sample index.

The acquisition stream advances at a (nearly) constant rate, so the sample
count seen by the server is a linear function of local time. The model keeps
an exponentially weighted linear fit of that function, updated one
ground-truth point at a time:

    predict(T) = S0 + b + m * (T - T0)

where (T0, S0) is the first point accepted after a reset, m is the rate in
samples per millisecond and b the intercept relative to that anchor.

Each update uses the weighted incremental (West) recurrence with forgetting
factor alpha, so the weights of older points decay geometrically:

    W     = alpha * W + 1
    dt    = t - mean_t
    mean_t += dt / W
    mean_s += (s - mean_s) / W
    C_tt  = alpha * C_tt + dt * (t - mean_t)
    C_ts  = alpha * C_ts + dt * (s - mean_s)
    m     = C_ts / C_tt            (only if positive)
    b     = mean_s - m * mean_t

Working with running means and co-moments instead of raw power sums keeps
the fit well conditioned for sessions lasting many hours.
"""

import logging
import math
import time
from typing import Callable, NamedTuple, Optional

logger = logging.getLogger(__name__)

# Weighted variance of the fit times (ms^2) below which the slope is not refitted
MIN_TIME_VARIANCE = 1e-9


def monotonic_ms() -> float:
    """Local monotonic time in milliseconds"""
    return time.monotonic() * 1000.0


class ClockState(NamedTuple):
    """Read-only view of the fit, for statistics and logging"""
    n: int
    slope: float              # samples per millisecond
    intercept: float          # relative to the (t0, s0) anchor
    t_last: Optional[float]
    s_last: Optional[int]
    error: float              # absolute error of the last prediction (samples)


class ClockModel:
    """
    Incremental linear regression between local time (ms) and sample count.

    Attributes:
        alpha: Forgetting factor in (0, 1]; 1.0 gives an ordinary least squares fit
        slope: Current rate estimate in samples per millisecond, always positive
        n: Number of ground-truth points accepted since the last reset
        t_last: Time of the most recently accepted point (None after reset)
        s_last: Sample count of the most recently accepted point (None after reset)
    """

    def __init__(self, alpha: float = 0.95, nominal_rate_hz: float = 1000.0,
                 time_source: Optional[Callable[[], float]] = None):
        """
        Args:
            alpha: Forgetting factor of the regression
            nominal_rate_hz: Rate assumed for the very first fit
            time_source: Callable returning the current time in ms
                (defaults to the monotonic clock)
        """
        if not 0.0 < alpha <= 1.0:
            raise ValueError(f"alpha must be in (0, 1], got {alpha}")
        if nominal_rate_hz <= 0:
            raise ValueError(f"nominal_rate_hz must be positive, got {nominal_rate_hz}")

        self.alpha = alpha
        self.time_source = time_source or monotonic_ms
        self.slope = nominal_rate_hz / 1000.0
        self.reset()

    def reset(self):
        """
        Forget the fit.

        The slope survives the reset and seeds the next first fit; alpha is
        a construction-time setting and is never touched.
        """
        self.n = 0
        self.t0 = 0.0
        self.s0 = 0
        self.weight = 0.0
        self.mean_t = 0.0
        self.mean_s = 0.0
        self.c_tt = 0.0
        self.c_ts = 0.0
        self.intercept = 0.0
        self.t_last = None
        self.s_last = None
        self.last_error = math.inf

    def current_time_ms(self) -> float:
        return self.time_source()

    def update(self, sample_count: int, time_ms: Optional[float] = None):
        """
        Incorporate one ground-truth observation.

        Args:
            sample_count: Number of samples the server reported
            time_ms: Local time of the observation (defaults to now)
        """
        if time_ms is None:
            time_ms = self.current_time_ms()

        if self.n == 0:
            # Bootstrap: anchor the fit on this point, keep the known rate
            self.t0 = time_ms
            self.s0 = sample_count
            self.last_error = math.inf
        else:
            self.last_error = sample_count - self._predict(time_ms)

        t = time_ms - self.t0
        s = sample_count - self.s0

        self.weight = self.alpha * self.weight + 1.0
        dt = t - self.mean_t
        self.mean_t += dt / self.weight
        self.mean_s += (s - self.mean_s) / self.weight
        self.c_tt = self.alpha * self.c_tt + dt * (t - self.mean_t)
        self.c_ts = self.alpha * self.c_ts + dt * (s - self.mean_s)
        self.n += 1

        if self.n >= 2 and self.c_tt > MIN_TIME_VARIANCE:
            slope = self.c_ts / self.c_tt
            if slope > 0:
                self.slope = slope
            else:
                logger.debug(f"[CLOCK_FIT] Rejected non-positive slope {slope:.6f}, "
                             f"keeping {self.slope:.6f} samples/ms")
        self.intercept = self.mean_s - self.slope * self.mean_t

        self.t_last = time_ms
        self.s_last = sample_count

    def _predict(self, time_ms: float) -> float:
        return self.s0 + self.intercept + self.slope * (time_ms - self.t0)

    def predict(self, time_ms: float) -> Optional[int]:
        """Estimated sample index at ``time_ms``, or None before the first fit."""
        if self.n == 0:
            return None
        return int(round(self._predict(time_ms)))

    def predict_now(self) -> Optional[int]:
        return self.predict(self.current_time_ms())

    def error_magnitude(self) -> float:
        """
        Absolute prediction error of the most recent observation.

        The error is measured against the fit as it was before that
        observation was applied, so it tells how far the model can be trusted
        going forward. Infinite until a prediction could be checked.
        """
        return abs(self.last_error)

    def set_nominal_rate(self, fsample_hz: float):
        """Seed the bootstrap rate from a known sampling frequency while no slope was fitted."""
        if fsample_hz <= 0 or self.n >= 2:
            return
        self.slope = fsample_hz / 1000.0
        self.intercept = self.mean_s - self.slope * self.mean_t

    @property
    def rate_hz(self) -> float:
        return self.slope * 1000.0

    def snapshot(self) -> ClockState:
        return ClockState(
            n=self.n,
            slope=self.slope,
            intercept=self.intercept,
            t_last=self.t_last,
            s_last=self.s_last,
            error=self.error_magnitude()
        )
