"""
PyHeimdall - Python implementation of the Samsung Download-mode flash protocol

Loads Partition Information Tables, resolves image files to partitions
and flashes them over USB using the session/chunk/ACK protocol.
"""

__version__ = "1.0.0"
__author__ = "PyHeimdall Developers"

from .session import DeviceSession, DeviceState
from .protocol import FlashProtocol, FlashSession, SessionStatus, Checksum
from .pit import PitParser, PitTable, PitEntry
from .partition import PartitionResolver
from .events import EventConsumer, ProgressEvent, StatusEvent, StatusLevel
from .settings import Settings, SettingsStore
from .exceptions import (
    HeimdallException,
    FormatError,
    ValidationError,
    DeviceNotFoundError,
    BusyError,
    InvalidStateError,
    UnresolvedPartitionError,
    ImageError,
    VerificationError,
    TransportError,
    TransportTimeoutError,
    FlashError,
    HandshakeError,
    AckTimeoutError,
    AckRejectedError,
    FinalizeError,
    AbortedError,
    status_message,
)

__all__ = [
    "DeviceSession",
    "DeviceState",
    "FlashProtocol",
    "FlashSession",
    "SessionStatus",
    "Checksum",
    "PitParser",
    "PitTable",
    "PitEntry",
    "PartitionResolver",
    "EventConsumer",
    "ProgressEvent",
    "StatusEvent",
    "StatusLevel",
    "Settings",
    "SettingsStore",
    "HeimdallException",
    "FormatError",
    "ValidationError",
    "DeviceNotFoundError",
    "BusyError",
    "InvalidStateError",
    "UnresolvedPartitionError",
    "ImageError",
    "VerificationError",
    "TransportError",
    "TransportTimeoutError",
    "FlashError",
    "HandshakeError",
    "AckTimeoutError",
    "AckRejectedError",
    "FinalizeError",
    "AbortedError",
    "status_message",
]
