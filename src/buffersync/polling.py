#!/usr/bin/env python3
"""
Polling policy for the clocked buffer client.

Decides, for every event that needs a sample index, whether the clock model
can be trusted or whether a round trip to the server is required, and watches
every ground-truth observation for lost or duplicated samples.
"""

import logging
import math
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Optional

import numpy as np

from .clock_model import ClockModel
from .config import PolicyConfig
from .models import GroundTruthSample

logger = logging.getLogger(__name__)


class ResetReason(str, Enum):
    """Why the clock model was thrown away."""
    LOST_SAMPLES = "lost_samples"
    EXTRA_SAMPLES = "extra_samples"
    DESYNC = "desync"
    RECONNECT = "reconnect"
    CALIBRATION = "calibration"


@dataclass
class DriftState:
    """Consecutive predictions that fell behind the last known sample count"""
    num_wrong: int = 0


@dataclass
class PolicyStats:
    """Counters for telemetry; never used for decisions"""
    forced_polls: int = 0
    predictions: int = 0
    observations: int = 0
    resets: Dict[str, int] = field(default_factory=lambda: {r.value: 0 for r in ResetReason})
    residuals: deque = field(default_factory=lambda: deque(maxlen=100))
    last_observation: Optional[GroundTruthSample] = None


class PollingPolicy:
    """
    Resolves sample indices from the clock model, polling when it is not trusted.

    ``poll`` is called to obtain a fresh authoritative sample count from the
    server. Any exception it raises propagates unchanged to the caller of
    resolve().
    """

    def __init__(self, clock: ClockModel, poll: Callable[[], int],
                 config: Optional[PolicyConfig] = None):
        self.clock = clock
        self.poll = poll
        self.config = config or PolicyConfig()
        self.drift = DriftState()
        self.stats = PolicyStats()

    @property
    def num_wrong(self) -> int:
        return self.drift.num_wrong

    def _elapsed_ms(self, now: float) -> float:
        if self.clock.t_last is None:
            return math.inf
        return now - self.clock.t_last

    def resolve(self) -> int:
        """Return the sample index to stamp on unresolved events."""
        cfg = self.config
        clock = self.clock
        now = clock.current_time_ms()
        elapsed = self._elapsed_ms(now)

        should_poll = (clock.error_magnitude() > cfg.max_samp_error or
                       elapsed > cfg.update_interval_ms or
                       clock.n < cfg.min_fit_points)

        predicted = clock.predict(now)
        if predicted is not None and clock.s_last is not None and predicted < clock.s_last:
            # Prediction fell behind a sample count the server already reported
            self.drift.num_wrong += 1
            should_poll = True
        else:
            self.drift.num_wrong = 0

        # Rate limit: never poll more often than the floor
        if elapsed < cfg.min_update_interval_ms:
            should_poll = False

        if should_poll:
            if self.drift.num_wrong > cfg.max_wrong:
                logger.warning(f"[DESYNC] {self.drift.num_wrong} consecutive predictions behind "
                               f"last known sample {clock.s_last}, resetting clock")
                self.reset(ResetReason.DESYNC)

            self.stats.forced_polls += 1
            sample = self.poll()
            self.observe(sample)
            logger.debug(f"[FORCED_POLL] sample={sample} predicted={predicted} "
                         f"err={clock.error_magnitude():.1f} n={clock.n}")
            return sample

        self.stats.predictions += 1
        return predicted

    def observe(self, sample_count: int, time_ms: Optional[float] = None):
        """
        Feed one authoritative sample count into the clock model.

        Before updating, the count is compared with the model's prediction.
        A difference of more than half a second worth of samples means the
        stream lost or duplicated samples, and the model is reset so the
        new point starts a fresh fit.
        """
        clock = self.clock
        if time_ms is None:
            time_ms = clock.current_time_ms()

        predicted = clock.predict(time_ms)
        if predicted is not None:
            delta = predicted - sample_count
            self.stats.residuals.append(delta)

            if clock.error_magnitude() < self.config.max_samp_error:
                tolerance = self.config.drift_tolerance_s * clock.slope * 1000.0
                if delta > tolerance:
                    logger.warning(f"[LOST_SAMPLES] {delta} lost samples detected "
                                   f"(tolerance={tolerance:.1f})")
                    self.reset(ResetReason.LOST_SAMPLES)
                elif delta < -tolerance:
                    logger.warning(f"[EXTRA_SAMPLES] {-delta} extra samples detected "
                                   f"(tolerance={tolerance:.1f})")
                    self.reset(ResetReason.EXTRA_SAMPLES)

        clock.update(sample_count, time_ms)
        self.stats.observations += 1
        self.stats.last_observation = GroundTruthSample(time_ms, sample_count)

    def reset(self, reason: ResetReason):
        """Hard-reset the clock model."""
        self.clock.reset()
        if reason in (ResetReason.DESYNC, ResetReason.RECONNECT, ResetReason.CALIBRATION):
            self.drift.num_wrong = 0
        self.stats.resets[reason.value] += 1
        logger.info(f"[CLOCK_RESET] reason={reason.value}, "
                    f"total={sum(self.stats.resets.values())}")

    def get_statistics(self) -> dict:
        """Counters plus a summary of recent prediction residuals (samples)"""
        state = self.clock.snapshot()
        residuals = np.asarray(self.stats.residuals, dtype=np.float64)

        residual_stats = None
        if residuals.size > 0:
            residual_stats = {
                "mean": float(np.mean(residuals)),
                "std": float(np.std(residuals)),
                "max_abs": float(np.max(np.abs(residuals))),
                "median_abs": float(np.median(np.abs(residuals))),
                "count": int(residuals.size)
            }

        return {
            "forced_polls": self.stats.forced_polls,
            "predictions": self.stats.predictions,
            "observations": self.stats.observations,
            "resets": dict(self.stats.resets),
            "num_wrong": self.drift.num_wrong,
            "fit_points": state.n,
            "rate_hz": state.slope * 1000.0,
            "error_samples": state.error,
            "residuals": residual_stats,
            "last_observation": self.stats.last_observation._asdict() if self.stats.last_observation else None
        }
