"""
Pytest configuration and shared fixtures for buffersync tests.
"""

import socket
import struct
import threading
import time
from typing import List, Optional

import pytest

from buffersync.clock_model import ClockModel, monotonic_ms
from buffersync.client import ClockedBufferClient
from buffersync.models import BufferEvent, DataType, Header, SamplesEventsCount
from buffersync.protocol import (
    GET_HDR, GET_OK, PUT_ERR, PUT_EVT, PUT_OK, WAIT_DAT, WAIT_OK,
    BufferClient, pack_message,
)


class ManualClock:
    """Time source (ms) that only moves when told to."""

    def __init__(self, start_ms: float = 10_000.0):
        self.now_ms = start_ms

    def __call__(self) -> float:
        return self.now_ms

    def advance(self, ms: float):
        self.now_ms += ms


class SyntheticBuffer(BufferClient):
    """
    In-memory buffer whose sample count grows at a constant rate.

    ``skew_samples`` is added to every reported count, to simulate lost
    (negative) or duplicated (positive) samples.
    """

    def __init__(self, time_source, rate_hz: float = 250.0):
        self.time_source = time_source
        self.rate_hz = rate_hz
        self.t_start = time_source()
        self.skew_samples = 0
        self.fail_with: Optional[Exception] = None

        self.connected = False
        self._host = None
        self._port = None
        self.poll_calls = 0
        self.wait_calls = 0
        self.header_calls = 0
        self.sent: List[List[BufferEvent]] = []

    def samples(self) -> int:
        elapsed_ms = self.time_source() - self.t_start
        return int(elapsed_ms * self.rate_hz / 1000.0) + self.skew_samples

    def _counts(self) -> SamplesEventsCount:
        if self.fail_with is not None:
            raise self.fail_with
        return SamplesEventsCount(self.samples(), sum(len(batch) for batch in self.sent))

    def connect(self, host: str, port: int) -> bool:
        self.connected = True
        self._host = host
        self._port = port
        return True

    def disconnect(self) -> None:
        self.connected = False

    @property
    def is_connected(self) -> bool:
        return self.connected

    @property
    def host(self):
        return self._host

    @property
    def port(self):
        return self._port

    def poll(self, timeout_ms: int = 0) -> SamplesEventsCount:
        self.poll_calls += 1
        return self._counts()

    def wait(self, num_samples: int, num_events: int, timeout_ms: int) -> SamplesEventsCount:
        self.wait_calls += 1
        return self._counts()

    def get_header(self) -> Header:
        self.header_calls += 1
        counts = self._counts()
        return Header(
            num_channels=4,
            num_samples=counts.num_samples,
            num_events=counts.num_events,
            fsample=self.rate_hz,
            data_type=int(DataType.FLOAT32)
        )

    def put_event(self, event: BufferEvent) -> BufferEvent:
        self.sent.append([event])
        return event

    def put_events(self, events) -> None:
        self.sent.append(list(events))


class FakeBufferServer:
    """Single-connection TCP server answering GET_HDR, WAIT_DAT and PUT_EVT."""

    def __init__(self, rate_hz: float = 250.0):
        self.rate_hz = rate_hz
        self.listener = socket.create_server(("127.0.0.1", 0))
        self.port = self.listener.getsockname()[1]
        self.t_start = time.monotonic()
        self.commands: List[int] = []
        self.event_payloads: List[bytes] = []
        self.thread = threading.Thread(target=self._serve, daemon=True)

    def samples(self) -> int:
        return int((time.monotonic() - self.t_start) * self.rate_hz)

    @staticmethod
    def _recv_exact(conn: socket.socket, num_bytes: int) -> Optional[bytes]:
        data = b""
        while len(data) < num_bytes:
            chunk = conn.recv(num_bytes - len(data))
            if not chunk:
                return None
            data += chunk
        return data

    def _serve(self):
        try:
            conn, _ = self.listener.accept()
        except OSError:
            return
        with conn:
            while True:
                head = self._recv_exact(conn, 8)
                if head is None:
                    return
                _, command, size = struct.unpack("<HHI", head)
                body = self._recv_exact(conn, size) if size else b""
                if size and body is None:
                    return
                self.commands.append(command)

                if command == GET_HDR:
                    payload = struct.pack("<IIIfII", 4, self.samples(), len(self.event_payloads),
                                          self.rate_hz, int(DataType.FLOAT32), 0)
                    reply = GET_OK
                elif command == WAIT_DAT:
                    payload = struct.pack("<II", self.samples(), len(self.event_payloads))
                    reply = WAIT_OK
                elif command == PUT_EVT:
                    self.event_payloads.append(body)
                    payload, reply = b"", PUT_OK
                else:
                    payload, reply = b"", PUT_ERR
                conn.sendall(pack_message(reply, payload))

    def start(self):
        self.thread.start()

    def close(self):
        self.listener.close()
        self.thread.join(timeout=2.0)


@pytest.fixture
def manual_clock():
    return ManualClock()


@pytest.fixture
def synthetic_buffer(manual_clock):
    return SyntheticBuffer(manual_clock, rate_hz=250.0)


@pytest.fixture
def clock_model(manual_clock):
    return ClockModel(alpha=0.95, nominal_rate_hz=1000.0, time_source=manual_clock)


@pytest.fixture
def clocked_client(synthetic_buffer, clock_model):
    client = ClockedBufferClient(synthetic_buffer, clock=clock_model)
    client.connect("localhost", 1972)
    return client


@pytest.fixture
def realtime_buffer():
    """Synthetic buffer driven by the real monotonic clock."""
    return SyntheticBuffer(monotonic_ms, rate_hz=250.0)


@pytest.fixture
def fake_server():
    server = FakeBufferServer(rate_hz=250.0)
    server.start()
    yield server
    server.close()
