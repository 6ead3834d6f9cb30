#!/usr/bin/env python3
"""
Clocked buffer client.

Wraps any BufferClient and fills in the sample index of events that were
created without one (sample < 0). The index is estimated from a clock model
that maps local time to the stream's sample count; the model is refreshed
from every authoritative count the server returns (wait, poll, header) and
polled explicitly only when its estimate cannot be trusted.

Example:
    client = ClockedBufferClient(TcpBufferClient())
    client.connect("localhost", 1972)
    client.sync_clocks()
    client.put_event(BufferEvent(type="stimulus", value="target"))
"""

import logging
import threading
from typing import Iterable, Optional, Sequence, Union

from .clock_model import ClockModel
from .config import BufferSyncConfig, PolicyConfig
from .models import BufferEvent, Header, SamplesEventsCount
from .polling import PollingPolicy, ResetReason
from .protocol import BufferClient, TcpBufferClient

logger = logging.getLogger(__name__)

DEFAULT_CALIBRATION_WAITS_MS = [100] * 9


class ClockedBufferClient(BufferClient):
    """
    BufferClient decorator that stamps unresolved events with a sample index.

    All requests are delegated to the wrapped client. Sample counts returned
    by wait(), poll() and get_header() update the clock model; connect()
    resets it.
    """

    def __init__(self, client: BufferClient, alpha: float = 0.95,
                 policy_config: Optional[PolicyConfig] = None,
                 clock: Optional[ClockModel] = None,
                 calibration_waits_ms: Optional[Sequence[int]] = None):
        """
        Args:
            client: Connection that performs the actual requests
            alpha: Forgetting factor of the clock model (ignored if ``clock`` is given)
            policy_config: Polling thresholds
            clock: Pre-built clock model, e.g. with a custom time source
            calibration_waits_ms: Default schedule used by sync_clocks()
        """
        self.client = client
        self.clock = clock or ClockModel(alpha=alpha)
        self.policy = PollingPolicy(self.clock, self._poll_sample_count, policy_config)
        if calibration_waits_ms is None:
            calibration_waits_ms = DEFAULT_CALIBRATION_WAITS_MS
        self.calibration_waits_ms = list(calibration_waits_ms)
        self._interrupt = threading.Event()

    # ------------------------------------------------------------------
    # Connection

    def connect(self, host: str, port: int) -> bool:
        # Any previous time -> sample mapping belongs to another session
        self.policy.reset(ResetReason.RECONNECT)
        return self.client.connect(host, port)

    def disconnect(self) -> None:
        self.client.disconnect()

    @property
    def is_connected(self) -> bool:
        return self.client.is_connected

    @property
    def host(self) -> Optional[str]:
        return self.client.host

    @property
    def port(self) -> Optional[int]:
        return self.client.port

    def __enter__(self) -> "ClockedBufferClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()

    # ------------------------------------------------------------------
    # Requests that return ground truth

    def _poll_sample_count(self) -> int:
        return self.client.poll(0).num_samples

    def wait(self, num_samples: int, num_events: int, timeout_ms: int) -> SamplesEventsCount:
        counts = self.client.wait(num_samples, num_events, timeout_ms)
        self.policy.observe(counts.num_samples)
        return counts

    def poll(self, timeout_ms: int = 0) -> SamplesEventsCount:
        counts = self.client.poll(timeout_ms)
        self.policy.observe(counts.num_samples)
        return counts

    def get_header(self) -> Header:
        header = self.client.get_header()
        self.clock.set_nominal_rate(header.fsample)
        self.policy.observe(header.num_samples)
        return header

    # ------------------------------------------------------------------
    # Events

    def put_event(self, event: BufferEvent) -> BufferEvent:
        if not event.is_resolved:
            event.sample = int(self.policy.resolve())
        return self.client.put_event(event)

    def put_events(self, events: Iterable[BufferEvent]) -> None:
        events = list(events)
        sample = None
        for event in events:
            if not event.is_resolved:
                if sample is None:
                    sample = int(self.policy.resolve())
                event.sample = sample
        self.client.put_events(events)

    # ------------------------------------------------------------------
    # Estimation

    def resolve(self) -> int:
        """Sample index for an event happening now; polls only when needed."""
        return self.policy.resolve()

    def get_samp(self, time_ms: Optional[float] = None) -> Optional[int]:
        """Estimated sample index at ``time_ms`` (default now) without polling."""
        if time_ms is None:
            return self.clock.predict_now()
        return self.clock.predict(time_ms)

    def get_samp_err(self) -> float:
        return self.clock.error_magnitude()

    @property
    def time_ms(self) -> float:
        """Current time on the clock model's time base"""
        return self.clock.current_time_ms()

    def get_statistics(self) -> dict:
        return self.policy.get_statistics()

    # ------------------------------------------------------------------
    # Calibration

    def sync_clocks(self, waits_ms: Union[None, int, Sequence[int]] = None) -> SamplesEventsCount:
        """
        Bootstrap the clock model with several quick polls.

        Resets the model, polls once, then for every entry of ``waits_ms``
        sleeps that many milliseconds and polls again.

        Args:
            waits_ms: Sleep schedule; a single int is a one-step schedule.
                Defaults to the client's calibration schedule (9 x 100 ms).

        Returns:
            Counts from the last poll
        """
        if waits_ms is None:
            waits_ms = self.calibration_waits_ms
        elif isinstance(waits_ms, int):
            waits_ms = [waits_ms]

        self._interrupt.clear()
        self.policy.reset(ResetReason.CALIBRATION)
        counts = self.poll(0)
        for wait_ms in waits_ms:
            self._pause(wait_ms)
            counts = self.poll(0)

        logger.info(f"[CALIBRATION] {len(waits_ms) + 1} polls, rate={self.clock.rate_hz:.2f}Hz, "
                    f"err={self.clock.error_magnitude():.1f} samples, n={self.clock.n}")
        return counts

    def interrupt(self):
        """Cut short the current calibration sleep (safe from another thread)."""
        self._interrupt.set()

    def _pause(self, wait_ms: int):
        if self._interrupt.wait(wait_ms / 1000.0):
            # An interrupted sleep only shortens the schedule
            self._interrupt.clear()
            logger.debug(f"[CALIBRATION] Sleep of {wait_ms}ms interrupted, polling early")


def create_clocked_client(config: Optional[BufferSyncConfig] = None,
                          connect: bool = False) -> ClockedBufferClient:
    """
    Build a TCP buffer client wrapped in a ClockedBufferClient from config.

    Args:
        config: Complete configuration (defaults if None)
        connect: Connect to the configured host/port right away
    """
    config = config or BufferSyncConfig()
    transport = config.transport
    tcp_client = TcpBufferClient(
        byte_order=transport.byte_order,
        read_timeout_s=transport.read_timeout_s,
        connect_timeout_s=transport.connect_timeout_s
    )
    clock = ClockModel(alpha=config.clock.alpha, nominal_rate_hz=config.clock.nominal_rate_hz)
    client = ClockedBufferClient(
        tcp_client,
        policy_config=config.policy,
        clock=clock,
        calibration_waits_ms=config.calibration.waits_ms
    )
    if connect:
        client.connect(transport.host, transport.port)
    return client
