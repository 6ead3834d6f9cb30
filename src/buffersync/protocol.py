#!/usr/bin/env python3
"""
FieldTrip buffer protocol client.

Implements the subset of the version 1 wire protocol needed to read the
header, wait for or poll the sample/event counts and store events. Every
message starts with an 8 byte definition:

    | version (u16) | command (u16) | bufsize (u32) |

followed by ``bufsize`` bytes of payload. All fields use the byte order the
client was created with (little endian unless configured otherwise).
"""

import logging
import struct
from abc import ABC, abstractmethod
from typing import Iterable, Optional, Tuple, Union

import numpy as np

from .errors import BufferConnectionError, BufferProtocolError
from .models import BufferEvent, DataType, Header, SamplesEventsCount
from .transport import SocketChannel

logger = logging.getLogger(__name__)

VERSION = 1

PUT_EVT = 0x103
PUT_OK = 0x104
PUT_ERR = 0x105
GET_HDR = 0x201
GET_OK = 0x204
GET_ERR = 0x205
WAIT_DAT = 0x402
WAIT_OK = 0x404
WAIT_ERR = 0x405

MESSAGE_FORMAT = "HHI"
HEADER_FORMAT = "IIIfII"
EVENT_FORMAT = "IIIIiiiI"
WAIT_REQUEST_FORMAT = "III"
SAMPLES_EVENTS_FORMAT = "II"

MAX_UINT32 = 0xFFFFFFFF

# (numpy kind, itemsize) -> wire data type
_NUMPY_TYPES = {
    ("u", 1): DataType.UINT8,
    ("u", 2): DataType.UINT16,
    ("u", 4): DataType.UINT32,
    ("u", 8): DataType.UINT64,
    ("i", 1): DataType.INT8,
    ("i", 2): DataType.INT16,
    ("i", 4): DataType.INT32,
    ("i", 8): DataType.INT64,
    ("f", 4): DataType.FLOAT32,
    ("f", 8): DataType.FLOAT64,
}

_INT32_MIN = -(2 ** 31)
_INT32_MAX = 2 ** 31 - 1


def endian_prefix(byte_order: str) -> str:
    if byte_order == "little":
        return "<"
    if byte_order == "big":
        return ">"
    raise ValueError(f"byte_order must be 'little' or 'big', got {byte_order!r}")


def pack_message(command: int, payload: bytes = b"", endian: str = "<") -> bytes:
    return struct.pack(endian + MESSAGE_FORMAT, VERSION, command, len(payload)) + payload


def unpack_message(data: bytes, endian: str = "<") -> Tuple[int, int, int]:
    """Return (version, command, bufsize) of a message definition."""
    if len(data) < struct.calcsize(MESSAGE_FORMAT):
        raise BufferProtocolError(f"Message definition too short: {len(data)} bytes")
    return struct.unpack_from(endian + MESSAGE_FORMAT, data)


def encode_value(value) -> Tuple[DataType, int, Union[bytes, np.ndarray]]:
    """
    Encode an event type or value field.

    Strings are sent as CHAR, Python ints as INT32 (INT64 when they do not
    fit), floats as FLOAT64 and numpy arrays or numeric sequences keep their
    numpy dtype. Returns (data type, number of elements, data) where data is
    bytes for CHAR and a flat native-order array otherwise.
    """
    if isinstance(value, str):
        raw = value.encode("utf-8")
        return DataType.CHAR, len(raw), raw
    if isinstance(value, bytes):
        return DataType.CHAR, len(value), value

    if isinstance(value, (bool, int, np.integer)):
        dtype = np.int32 if _INT32_MIN <= int(value) <= _INT32_MAX else np.int64
        arr = np.asarray([int(value)], dtype=dtype)
    elif isinstance(value, (float, np.floating)):
        arr = np.asarray([value], dtype=np.float64)
    else:
        arr = np.asarray(value)
        if arr.ndim == 0:
            arr = arr.reshape(1)
        if arr.dtype.kind == "b":
            arr = arr.astype(np.uint8)

    key = (arr.dtype.kind, arr.dtype.itemsize)
    if key not in _NUMPY_TYPES:
        raise BufferProtocolError(f"Unsupported event field dtype {arr.dtype}")
    return _NUMPY_TYPES[key], int(arr.size), arr.ravel()


def _to_wire(data, endian: str) -> bytes:
    if isinstance(data, bytes):
        return data
    return data.astype(data.dtype.newbyteorder(endian)).tobytes()


def encode_event(event: BufferEvent, endian: str = "<") -> bytes:
    """Serialize one event: definition followed by type bytes and value bytes."""
    type_type, type_numel, type_data = encode_value(event.type)
    value_type, value_numel, value_data = encode_value(event.value)
    type_bytes = _to_wire(type_data, endian)
    value_bytes = _to_wire(value_data, endian)

    definition = struct.pack(
        endian + EVENT_FORMAT,
        int(type_type), type_numel,
        int(value_type), value_numel,
        event.sample, event.offset, event.duration,
        len(type_bytes) + len(value_bytes)
    )
    return definition + type_bytes + value_bytes


def encode_wait_request(num_samples: int, num_events: int, timeout_ms: int,
                        endian: str = "<") -> bytes:
    for name, field_value in (("num_samples", num_samples), ("num_events", num_events),
                              ("timeout_ms", timeout_ms)):
        if not 0 <= field_value <= MAX_UINT32:
            raise ValueError(f"{name} out of range for the wait request: {field_value}")
    return struct.pack(endian + WAIT_REQUEST_FORMAT, num_samples, num_events, timeout_ms)


def decode_samples_events(payload: bytes, endian: str = "<") -> SamplesEventsCount:
    if len(payload) < struct.calcsize(SAMPLES_EVENTS_FORMAT):
        raise BufferProtocolError(f"WAIT_OK payload too short: {len(payload)} bytes")
    num_samples, num_events = struct.unpack_from(endian + SAMPLES_EVENTS_FORMAT, payload)
    return SamplesEventsCount(num_samples, num_events)


def decode_header(payload: bytes, endian: str = "<") -> Header:
    size = struct.calcsize(HEADER_FORMAT)
    if len(payload) < size:
        raise BufferProtocolError(f"Header payload too short: {len(payload)} bytes")
    nchans, nsamples, nevents, fsample, data_type, bufsize = struct.unpack_from(
        endian + HEADER_FORMAT, payload
    )
    return Header(
        num_channels=nchans,
        num_samples=nsamples,
        num_events=nevents,
        fsample=float(fsample),
        data_type=data_type,
        chunks=bytes(payload[size:size + bufsize])
    )


class BufferClient(ABC):
    """Requests the clock layer needs from a buffer connection."""

    @abstractmethod
    def connect(self, host: str, port: int) -> bool:
        pass

    @abstractmethod
    def disconnect(self) -> None:
        pass

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        pass

    @property
    def host(self) -> Optional[str]:
        return None

    @property
    def port(self) -> Optional[int]:
        return None

    @abstractmethod
    def poll(self, timeout_ms: int = 0) -> SamplesEventsCount:
        """Fresh authoritative sample/event counts."""
        pass

    @abstractmethod
    def wait(self, num_samples: int, num_events: int, timeout_ms: int) -> SamplesEventsCount:
        """Block until either threshold is exceeded or the timeout expires."""
        pass

    @abstractmethod
    def get_header(self) -> Header:
        pass

    @abstractmethod
    def put_event(self, event: BufferEvent) -> BufferEvent:
        pass

    @abstractmethod
    def put_events(self, events: Iterable[BufferEvent]) -> None:
        pass


class TcpBufferClient(BufferClient):
    """BufferClient speaking the wire protocol over a SocketChannel."""

    def __init__(self, byte_order: str = "little", read_timeout_s: Optional[float] = None,
                 connect_timeout_s: Optional[float] = 10.0):
        self.endian = endian_prefix(byte_order)
        self.read_timeout_s = read_timeout_s
        self.connect_timeout_s = connect_timeout_s
        self._channel: Optional[SocketChannel] = None

    def connect(self, host: str, port: int) -> bool:
        self.disconnect()
        channel = SocketChannel(read_timeout_s=self.read_timeout_s,
                                connect_timeout_s=self.connect_timeout_s)
        channel.connect(host, port)
        self._channel = channel
        return True

    def disconnect(self) -> None:
        if self._channel is not None:
            self._channel.close()
            self._channel = None

    @property
    def is_connected(self) -> bool:
        return self._channel is not None and self._channel.is_connected

    @property
    def host(self) -> Optional[str]:
        return self._channel.host if self._channel else None

    @property
    def port(self) -> Optional[int]:
        return self._channel.port if self._channel else None

    def _request(self, command: int, payload: bytes = b"") -> Tuple[int, bytes]:
        if self._channel is None:
            raise BufferConnectionError("Not connected to a buffer server")
        channel = self._channel
        channel.write(pack_message(command, payload, self.endian))

        version, reply, bufsize = unpack_message(
            channel.read_exact(struct.calcsize(MESSAGE_FORMAT)), self.endian
        )
        if version != VERSION:
            # Framing of a foreign version is unknown, the stream cannot be resynchronised
            self.disconnect()
            raise BufferProtocolError(f"Unsupported protocol version {version}, disconnected",
                                      command=reply)
        body = channel.read_exact(bufsize) if bufsize else b""
        return reply, body

    @staticmethod
    def _expect(reply: int, ok: int, request: str):
        if reply != ok:
            raise BufferProtocolError(f"{request} failed: server replied 0x{reply:04x}", command=reply)

    def get_header(self) -> Header:
        reply, body = self._request(GET_HDR)
        self._expect(reply, GET_OK, "GET_HDR")
        return decode_header(body, self.endian)

    def wait(self, num_samples: int, num_events: int, timeout_ms: int) -> SamplesEventsCount:
        payload = encode_wait_request(num_samples, num_events, timeout_ms, self.endian)
        reply, body = self._request(WAIT_DAT, payload)
        self._expect(reply, WAIT_OK, "WAIT_DAT")
        return decode_samples_events(body, self.endian)

    def poll(self, timeout_ms: int = 0) -> SamplesEventsCount:
        return self.wait(0, 0, timeout_ms)

    def put_event(self, event: BufferEvent) -> BufferEvent:
        self.put_events([event])
        return event

    def put_events(self, events: Iterable[BufferEvent]) -> None:
        events = list(events)
        if not events:
            return
        payload = b"".join(encode_event(e, self.endian) for e in events)
        reply, _ = self._request(PUT_EVT, payload)
        self._expect(reply, PUT_OK, "PUT_EVT")
        logger.debug(f"Stored {len(events)} event(s)")
