"""
Device session

Sequences detection, PIT loading, flashing and reboot for one device and
is the single-flight guard for all of them. Results are returned or
raised; progress and status lines go to an EventConsumer.
"""

import os
from contextlib import contextmanager
from typing import Optional, Union

from .events import EventConsumer, StatusEvent, StatusLevel
from .image import ImageSource
from .partition import PartitionResolver
from .pit import PitParser, PitTable
from .protocol import FlashProtocol, FlashSession
from .settings import Settings
from .usb_device import DeviceSelector, Transport
from .exceptions import (
    HeimdallException,
    BusyError,
    DeviceNotFoundError,
    ImageError,
    InvalidStateError,
    TransportError,
    UnresolvedPartitionError,
    VerificationError,
    status_message,
)
from .constants import FLASH_CHUNK_SIZE, TIMEOUT_ACK


class DeviceState:
    """Device session states"""
    NO_DEVICE = "no_device"
    DETECTED = "detected"
    PIT_READY = "pit_ready"
    FLASHING = "flashing"
    SETTINGS = "settings"

    CONNECTED = (DETECTED, PIT_READY)


PitSource = Union[None, bytes, str, os.PathLike]


class DeviceSession:
    """
    Device session state machine

    NO_DEVICE -> DETECTED -> PIT_READY -> FLASHING -> back to the ready
    state, or NO_DEVICE after a reboot. SETTINGS is a side state entered
    from any idle state and left back to it.
    """

    def __init__(
        self,
        transport: Transport,
        settings: Optional[Settings] = None,
        consumer: Optional[EventConsumer] = None,
        resolver: Optional[PartitionResolver] = None,
        chunk_size: int = FLASH_CHUNK_SIZE,
        ack_timeout: float = TIMEOUT_ACK
    ):
        self.transport = transport
        self.settings = settings or Settings()
        self.consumer = consumer or EventConsumer()
        self.resolver = resolver or PartitionResolver()
        self.parser = PitParser()
        self.chunk_size = chunk_size
        self.ack_timeout = ack_timeout

        self.state = DeviceState.NO_DEVICE
        self.pit: Optional[PitTable] = None
        self.handle = None
        self.protocol: Optional[FlashProtocol] = None
        self.operation: Optional[str] = None
        self._settings_return: Optional[str] = None

    @property
    def busy(self) -> bool:
        return self.operation is not None

    def _report(self, message: str, level: str = StatusLevel.INFO):
        self.consumer.on_status(StatusEvent(message, level))

    @contextmanager
    def _run(self, name: str):
        """Run one operation, refusing to start while another is active"""
        try:
            if self.operation is not None:
                raise BusyError(f"Cannot {name} while {self.operation} is in progress")
            if self.state == DeviceState.SETTINGS:
                raise InvalidStateError(f"Cannot {name} from the settings screen")
        except HeimdallException as e:
            self._report(status_message(e), StatusLevel.ERROR)
            raise

        self.operation = name
        try:
            yield
        except HeimdallException as e:
            self._report(status_message(e), StatusLevel.ERROR)
            raise
        finally:
            self.operation = None

    def _require_device(self, name: str):
        if self.state not in DeviceState.CONNECTED:
            raise InvalidStateError(f"Cannot {name}: no device detected")

    def _close_handle(self):
        handle, self.handle, self.protocol = self.handle, None, None
        if handle is None:
            return
        try:
            self.transport.close(handle)
        except TransportError as e:
            self._report(f"Device close failed: {e.message}", StatusLevel.WARNING)

    def detect(self, selector: Optional[DeviceSelector] = None):
        """
        Open a device in Download mode

        Raises:
            DeviceNotFoundError: the transport could not open a device
        """
        with self._run("detect"):
            self._report("Detecting Samsung device...")

            # The interface can only be claimed once
            self._close_handle()
            self.pit = None
            self.state = DeviceState.NO_DEVICE

            try:
                handle = self.transport.open(selector)
            except TransportError as e:
                raise DeviceNotFoundError(e.message) from e

            self.handle = handle
            self.protocol = FlashProtocol(self.transport, handle,
                                          chunk_size=self.chunk_size,
                                          ack_timeout=self.ack_timeout)
            self.state = DeviceState.DETECTED

            self._report("Device detected successfully!", StatusLevel.SUCCESS)

    def _read_pit_source(self, source: PitSource) -> bytes:
        if source is None:
            self._report("Requesting PIT from device...")
            return self.protocol.request_pit()

        if isinstance(source, (bytes, bytearray)):
            return bytes(source)

        try:
            with open(source, 'rb') as f:
                return f.read()
        except OSError as e:
            raise ImageError(f"Cannot read PIT file {source}: {e}")

    def load_pit(self, source: PitSource = None) -> PitTable:
        """
        Load and validate a PIT, replacing any table held so far

        Args:
            source: PIT file path, raw bytes, or None to ask the device

        Returns:
            The loaded PitTable
        """
        with self._run("load PIT"):
            self._require_device("load PIT")

            table = self.parser.parse(self._read_pit_source(source))
            self.parser.validate(table)

            self.pit = table
            self.state = DeviceState.PIT_READY

            self._report("PIT file loaded successfully", StatusLevel.SUCCESS)
            self._report(f"PIT: {table.entry_count} partitions, Device: {table.device_name}")
            return table

    def write_pit(self, source: PitSource) -> PitTable:
        """
        Repartition the device with a new PIT

        Refused while safe mode is on.
        """
        with self._run("write PIT"):
            self._require_device("write PIT")
            if self.settings.safe_mode:
                raise InvalidStateError("Repartitioning is disabled in safe mode")
            if source is None:
                raise ImageError("No PIT given to write")

            table = self.parser.parse(self._read_pit_source(source))
            self.parser.validate(table)

            self._report(f"Writing PIT for {table.device_name} ({table.entry_count} partitions)...")
            self.protocol.send_pit(self.parser.serialize(table))

            self.pit = table
            self.state = DeviceState.PIT_READY
            self._report("PIT written", StatusLevel.SUCCESS)
            return table

    def resolve(self, filename: str) -> str:
        """
        Resolve the partition an image goes to

        Raises:
            UnresolvedPartitionError: no mapping, or an inferred mapping
                refused by safe mode
        """
        partition = self.resolver.resolve(filename, self.pit)
        if partition is None:
            raise UnresolvedPartitionError(f"Cannot determine partition for {filename}")

        if self.pit is None:
            if self.settings.safe_mode:
                raise UnresolvedPartitionError(
                    f"{filename} maps to {partition} but no PIT is loaded to confirm it "
                    f"(load a PIT or disable safe mode)"
                )
            self._report(f"No PIT loaded: {partition} is inferred, not verified", StatusLevel.WARNING)

        return partition

    def _verify(self, image: ImageSource, partition: str):
        if image.verify_md5():
            self._report(f"MD5 verified for {image.path}", StatusLevel.SUCCESS)
        else:
            self._report(f"No MD5 file for {image.path}", StatusLevel.WARNING)

        if self.pit is not None:
            entry = self.pit.find(partition)
            if entry is not None and entry.capacity and image.size > entry.capacity:
                raise VerificationError(
                    f"{image.path} is {image.size} bytes but {partition} holds {entry.capacity}"
                )

    def flash(self, filename: str) -> FlashSession:
        """
        Flash one image file

        Resolves the partition, transfers the image and, when auto-reboot
        is set, reboots the device. A failure leaves the session state as
        it was; nothing is retried.

        Returns:
            The completed FlashSession
        """
        with self._run("flash"):
            self._require_device("flash")
            previous = self.state

            image = ImageSource(filename)
            partition = self.resolve(image.name)

            if self.settings.verify_flash:
                self._verify(image, partition)

            self._report(f"Flashing {filename} to {partition}...")
            self.state = DeviceState.FLASHING
            try:
                with image.open() as stream:
                    session = self.protocol.flash(partition, stream, image.size, self.consumer)
            finally:
                self.state = previous

            self._report("Flash completed successfully!", StatusLevel.SUCCESS)

            if self.settings.auto_reboot:
                self._reboot()

            return session

    def abort(self) -> bool:
        """Cancel the flash in progress at the next chunk boundary"""
        if self.protocol is None:
            return False
        return self.protocol.abort()

    def _reboot(self):
        self._report("Rebooting device...")
        self.protocol.reboot()
        self._close_handle()
        self.pit = None
        self.state = DeviceState.NO_DEVICE
        self._report("Reboot command sent", StatusLevel.SUCCESS)

    def reboot(self):
        """Reboot the device; it disconnects, so the session returns to NO_DEVICE"""
        with self._run("reboot"):
            self._require_device("reboot")
            self._reboot()

    def open_settings(self):
        with self._run("open settings"):
            self._settings_return = self.state
            self.state = DeviceState.SETTINGS

    def toggle_setting(self, name: str) -> bool:
        """Flip one flag while on the settings screen and return its new value"""
        if self.state != DeviceState.SETTINGS:
            raise InvalidStateError("Settings can only be changed from the settings screen")
        if name not in ("auto_reboot", "verify_flash", "safe_mode"):
            raise KeyError(name)

        value = not getattr(self.settings, name)
        setattr(self.settings, name, value)
        return value

    def close_settings(self, store=None):
        """Leave the settings screen, saving to store if given"""
        if self.state != DeviceState.SETTINGS:
            return
        if store is not None:
            store.save(self.settings)
            self._report("Settings saved", StatusLevel.SUCCESS)
        self.state = self._settings_return
        self._settings_return = None

    def close(self):
        """Release the device"""
        if self.busy:
            raise BusyError(f"Cannot close while {self.operation} is in progress")
        self._close_handle()
        self.pit = None
        self.state = DeviceState.NO_DEVICE
