"""
Download-mode flash protocol

Frames one image transfer as session start, sequenced chunks with one
acknowledgment each, and session end. Simple device commands (reboot,
PIT request, PIT upload) reuse the same acknowledgment wait.
"""

import io
import struct
from typing import BinaryIO, Optional, Union
from dataclasses import dataclass

from .events import EventConsumer, ProgressEvent
from .usb_device import Transport
from .exceptions import (
    TransportError,
    TransportTimeoutError,
    BusyError,
    FormatError,
    ImageError,
    FlashError,
    HandshakeError,
    AckTimeoutError,
    AckRejectedError,
    FinalizeError,
    AbortedError,
)
from .constants import (
    FrameType,
    SESSION_START_SIZE,
    SESSION_START_NAME_SIZE,
    CHUNK_HEADER_SIZE,
    COMMAND_FRAME_SIZE,
    COMMAND_REBOOT,
    COMMAND_REQUEST_PIT,
    ABORT_FRAME,
    PIT_UPLOAD_FRAME,
    PIT_MAX_SIZE,
    ACK_SIZE,
    ACK_ACCEPTED,
    FLASH_CHUNK_SIZE,
    TIMEOUT_ACK,
    USB_RECEIVE_SIZE,
)

_MASK32 = 0xFFFFFFFF


def _rotl32(value: int, count: int) -> int:
    count %= 32
    return ((value << count) | (value >> (32 - count))) & _MASK32


class Checksum:
    """
    Streaming payload checksum

    For every byte b, in order: ``c = rotl32(c, 1) ^ b``, starting from 0.
    update() folds whole buffers at once using the fact that rotation
    distributes over XOR, so the result equals the byte-by-byte loop.
    """

    def __init__(self):
        self.value = 0

    def update(self, data: bytes):
        n = len(data)
        if n == 0:
            return

        # Front padding aligns the last byte to rotation 0
        pad = -n % 32
        padded = bytes(pad) + bytes(data)

        folded = 0
        for offset in range(0, len(padded), 32):
            folded ^= int.from_bytes(padded[offset:offset + 32], "big")

        mixed = 0
        for position, byte in enumerate(folded.to_bytes(32, "big")):
            if byte:
                mixed ^= _rotl32(byte, 31 - position)

        self.value = _rotl32(self.value, n) ^ mixed


class SessionStatus:
    """Flash session states"""
    IDLE = "idle"
    NEGOTIATING = "negotiating"
    TRANSFERRING = "transferring"
    FINALIZING = "finalizing"
    COMPLETE = "complete"
    FAILED = "failed"
    ABORTED = "aborted"

    ACTIVE = (NEGOTIATING, TRANSFERRING, FINALIZING)
    ABORTABLE = (NEGOTIATING, TRANSFERRING)


@dataclass
class FlashSession:
    """State of one image transfer"""
    partition: str
    total_length: int
    bytes_sent: int = 0
    sequence: int = 0
    checksum: int = 0
    status: str = SessionStatus.IDLE

    @property
    def active(self) -> bool:
        return self.status in SessionStatus.ACTIVE

    @property
    def fraction(self) -> float:
        if self.total_length == 0:
            return 0.0
        return self.bytes_sent / self.total_length


def build_session_start(partition: str) -> bytes:
    frame = bytearray(SESSION_START_SIZE)
    frame[0] = FrameType.SESSION_START
    name = partition.encode("utf-8")[:SESSION_START_NAME_SIZE]
    frame[1:1 + len(name)] = name
    return bytes(frame)


def build_chunk_header(sequence: int, length: int) -> bytes:
    return struct.pack("<IIII", FrameType.CHUNK, sequence, length, 0)


def build_session_end(total_length: int, checksum: int) -> bytes:
    return struct.pack("<IIII", FrameType.SESSION_END, total_length, checksum, 0)


def build_command(tag: bytes, param: int = 0) -> bytes:
    frame = bytearray(COMMAND_FRAME_SIZE)
    struct.pack_into("<4sI", frame, 0, tag, param)
    return bytes(frame)


class FlashProtocol:
    """
    Flash session protocol over a Transport

    Only one session may be in flight. Every send is followed by exactly
    one bounded acknowledgment wait; nothing is pipelined or retried.
    """

    def __init__(
        self,
        transport: Transport,
        handle,
        chunk_size: int = FLASH_CHUNK_SIZE,
        ack_timeout: float = TIMEOUT_ACK
    ):
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if ack_timeout <= 0:
            raise ValueError("ack_timeout must be positive")

        self.transport = transport
        self.handle = handle
        self.chunk_size = chunk_size
        self.ack_timeout = ack_timeout
        self.session: Optional[FlashSession] = None

    @property
    def busy(self) -> bool:
        return self.session is not None and self.session.active

    def _send(self, data: bytes):
        written = self.transport.send_bulk(self.handle, data)
        if written != len(data):
            raise TransportError(f"Short write: {written}/{len(data)} bytes")

    def wait_ack(self) -> bytes:
        """
        Block for one acknowledgment frame

        Returns:
            The raw acknowledgment

        Raises:
            AckTimeoutError: nothing arrived within ack_timeout
            AckRejectedError: transport failure, short frame or non-zero status
        """
        try:
            response = self.transport.receive_bulk(self.handle, ACK_SIZE, self.ack_timeout)
        except TransportTimeoutError as e:
            raise AckTimeoutError(f"No acknowledgment within {self.ack_timeout}s: {e.message}")
        except TransportError as e:
            raise AckRejectedError(f"Acknowledgment read failed: {e.message}")

        if len(response) < ACK_SIZE:
            raise AckRejectedError(f"Acknowledgment too short ({len(response)} bytes)")

        status, = struct.unpack_from("<I", response, 0)
        if status != ACK_ACCEPTED:
            raise AckRejectedError(f"Device rejected request (status 0x{status:08X})")

        return response

    def command(self, frame: bytes) -> bytes:
        """Send a fixed-size command and wait for its acknowledgment"""
        self._send(frame)
        return self.wait_ack()

    def flash(
        self,
        partition: str,
        payload: Union[bytes, BinaryIO],
        total_length: Optional[int] = None,
        consumer: Optional[EventConsumer] = None
    ) -> FlashSession:
        """
        Transfer one image to one partition

        Args:
            partition: Target partition name
            payload: Image bytes, or a binary stream read chunk by chunk
            total_length: Stream length; required when payload is a stream
            consumer: Receives progress events at each chunk boundary

        Returns:
            The completed FlashSession

        Raises:
            BusyError: a session is already in flight
            HandshakeError: session start not acknowledged
            AckTimeoutError, AckRejectedError: chunk not acknowledged
            FinalizeError: session end not acknowledged
            AbortedError: abort() was called during the transfer
            TransportError: the transport failed outside an acknowledgment wait

        A KeyboardInterrupt during the transfer sends the abort frame before
        propagating.
        """
        if self.busy:
            raise BusyError(f"Flash session for {self.session.partition} already in progress")

        if isinstance(payload, (bytes, bytearray, memoryview)):
            total_length = len(payload)
            payload = io.BytesIO(payload)
        elif total_length is None:
            raise ValueError("total_length is required for stream payloads")

        if total_length <= 0:
            raise ImageError(f"Nothing to flash to {partition}: image is empty")

        consumer = consumer or EventConsumer()
        session = FlashSession(partition=partition, total_length=total_length)
        self.session = session

        try:
            self._negotiate(session, consumer)
            self._transfer(session, payload, consumer)
            self._finalize(session)
        except FlashError as e:
            if session.status != SessionStatus.ABORTED:
                session.status = SessionStatus.FAILED
            e.session = session
            raise
        except TransportError as e:
            e.device_state_unknown = session.status != SessionStatus.NEGOTIATING
            session.status = SessionStatus.FAILED
            e.session = session
            raise
        except ImageError:
            session.status = SessionStatus.FAILED
            raise
        except KeyboardInterrupt:
            self.abort()
            raise
        finally:
            self.session = None

        session.status = SessionStatus.COMPLETE
        consumer.on_progress(ProgressEvent(1.0, "Complete"))
        return session

    def _negotiate(self, session: FlashSession, consumer: EventConsumer):
        session.status = SessionStatus.NEGOTIATING
        consumer.on_progress(ProgressEvent(0.0, f"Negotiating {session.partition}"))
        self._check_aborted(session)

        try:
            self.command(build_session_start(session.partition))
        except (TransportError, FlashError) as e:
            raise HandshakeError(f"Session start for {session.partition} failed: {e.message}") from e

        self._check_aborted(session)

    def _transfer(self, session: FlashSession, payload: BinaryIO, consumer: EventConsumer):
        session.status = SessionStatus.TRANSFERRING
        checksum = Checksum()

        while session.bytes_sent < session.total_length:
            want = min(self.chunk_size, session.total_length - session.bytes_sent)
            chunk = payload.read(want)
            if len(chunk) != want:
                raise ImageError(f"Image ended early: expected {want} bytes at offset "
                                 f"{session.bytes_sent}, read {len(chunk)}",
                                 device_state_unknown=session.bytes_sent > 0)

            self._send(build_chunk_header(session.sequence, len(chunk)))
            self._send(chunk)
            checksum.update(chunk)

            try:
                self.wait_ack()
            except FlashError as e:
                e.device_state_unknown = True
                raise

            session.bytes_sent += len(chunk)
            session.sequence += 1
            session.checksum = checksum.value

            consumer.on_progress(ProgressEvent(session.fraction, f"Sending chunk {session.sequence}"))
            self._check_aborted(session)

    def _finalize(self, session: FlashSession):
        session.status = SessionStatus.FINALIZING

        try:
            self.command(build_session_end(session.total_length, session.checksum))
        except (TransportError, FlashError) as e:
            raise FinalizeError(f"Session end for {session.partition} failed: {e.message}") from e

    def _check_aborted(self, session: FlashSession):
        if session.status == SessionStatus.ABORTED:
            raise AbortedError(f"Flash of {session.partition} aborted after {session.bytes_sent} bytes",
                               device_state_unknown=session.bytes_sent > 0)

    def abort(self) -> bool:
        """
        Cancel the session in flight

        Legal while negotiating or transferring; the check runs at the next
        chunk boundary. Does nothing when no session is active.

        Returns:
            True if an abort frame was sent
        """
        session = self.session
        if session is None or session.status not in SessionStatus.ABORTABLE:
            return False

        session.status = SessionStatus.ABORTED
        self._send(ABORT_FRAME)
        return True

    def reboot(self):
        """Ask the device to leave Download mode and reboot"""
        if self.busy:
            raise BusyError("Cannot reboot during a flash session")
        self.command(build_command(COMMAND_REBOOT))

    def request_pit(self) -> bytes:
        """
        Download the device's PIT

        The acknowledgment's second word carries the PIT length.

        Returns:
            Raw PIT bytes
        """
        if self.busy:
            raise BusyError("Cannot request PIT during a flash session")

        ack = self.command(build_command(COMMAND_REQUEST_PIT))
        if len(ack) < 8:
            raise FormatError("PIT request acknowledgment carries no length")

        length, = struct.unpack_from("<I", ack, 4)
        if length == 0 or length > PIT_MAX_SIZE:
            raise FormatError(f"Device reports PIT length {length} (maximum {PIT_MAX_SIZE})")

        data = bytearray()
        while len(data) < length:
            try:
                part = self.transport.receive_bulk(
                    self.handle, min(USB_RECEIVE_SIZE, length - len(data)), self.ack_timeout
                )
            except TransportTimeoutError as e:
                raise AckTimeoutError(f"PIT download stalled at {len(data)}/{length} bytes: {e.message}")
            if not part:
                raise FormatError(f"PIT download ended at {len(data)}/{length} bytes")
            data.extend(part)

        return bytes(data[:length])

    def send_pit(self, pit_data: bytes):
        """Upload a PIT to the device (repartition)"""
        if self.busy:
            raise BusyError("Cannot send PIT during a flash session")

        self._send(PIT_UPLOAD_FRAME)
        self._send(pit_data)
        self.wait_ack()
