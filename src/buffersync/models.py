"""Value types exchanged with the acquisition buffer."""

from dataclasses import dataclass
from enum import IntEnum
from typing import Any, NamedTuple

# Sample index of an event that still has to be stamped by the client
UNRESOLVED_SAMPLE = -1


class DataType(IntEnum):
    """Element types understood by the buffer server."""
    CHAR = 0
    UINT8 = 1
    UINT16 = 2
    UINT32 = 3
    UINT64 = 4
    INT8 = 5
    INT16 = 6
    INT32 = 7
    INT64 = 8
    FLOAT32 = 9
    FLOAT64 = 10


class SamplesEventsCount(NamedTuple):
    """Authoritative sample/event counts returned by poll and wait"""
    num_samples: int
    num_events: int


class GroundTruthSample(NamedTuple):
    """A (wall-clock, sample) pair read from the server"""
    time_ms: float        # Local monotonic time of the observation (ms)
    sample_count: int     # Samples in the buffer at that moment


@dataclass
class Header:
    """Snapshot of the buffer header."""
    num_channels: int
    num_samples: int
    num_events: int
    fsample: float
    data_type: int
    chunks: bytes = b""


@dataclass
class BufferEvent:
    """
    Out-of-band event to store in the buffer.

    An event whose ``sample`` is negative is unresolved; the clocked client
    fills in an estimated sample index before sending it.
    """
    type: Any
    value: Any
    sample: int = UNRESOLVED_SAMPLE
    offset: int = 0
    duration: int = 0

    @property
    def is_resolved(self) -> bool:
        return self.sample >= 0
