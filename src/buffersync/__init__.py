"""
buffersync - sample-accurate event stamping for FieldTrip buffer clients

Events written to an acquisition buffer need the sample index at which they
happened. buffersync keeps a running clock model that maps local time to the
stream's sample count, so events created without an index (sample < 0) are
stamped from the model and the server is only polled when the estimate can no
longer be trusted.

Quick Start:
    >>> from buffersync import BufferEvent, create_clocked_client
    >>> client = create_clocked_client()
    >>> client.connect("localhost", 1972)
    >>> client.sync_clocks()
    >>> client.put_event(BufferEvent(type="stimulus", value="target"))

Components:
- ClockedBufferClient: wraps any BufferClient and stamps unresolved events
- ClockModel: incremental time -> sample regression
- PollingPolicy: predict-or-poll decisions and lost/extra sample detection
- TcpBufferClient / SocketChannel: wire protocol and transport
"""

from .client import ClockedBufferClient, create_clocked_client
from .clock_model import ClockModel, ClockState
from .config import BufferSyncConfig, PolicyConfig, load_config
from .errors import (
    BufferConnectionError,
    BufferProtocolError,
    BufferSyncError,
    ConfigurationError,
)
from .models import (
    UNRESOLVED_SAMPLE,
    BufferEvent,
    DataType,
    GroundTruthSample,
    Header,
    SamplesEventsCount,
)
from .polling import PollingPolicy, ResetReason
from .protocol import BufferClient, TcpBufferClient
from .transport import SocketChannel

__version__ = "0.1.0"

__all__ = [
    "ClockedBufferClient",
    "create_clocked_client",
    "ClockModel",
    "ClockState",
    "PollingPolicy",
    "ResetReason",
    "BufferClient",
    "TcpBufferClient",
    "SocketChannel",
    "BufferEvent",
    "DataType",
    "GroundTruthSample",
    "Header",
    "SamplesEventsCount",
    "UNRESOLVED_SAMPLE",
    "BufferSyncConfig",
    "PolicyConfig",
    "load_config",
    "BufferSyncError",
    "BufferConnectionError",
    "BufferProtocolError",
    "ConfigurationError",
]
