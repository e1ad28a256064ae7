"""
USB transport for Samsung devices in Download mode

The flash engine only sees the Transport interface: open, close,
send_bulk and receive_bulk. Everything about descriptors, interfaces
and endpoints stays in this module.
"""

import usb.core
import usb.util
from typing import Optional, List
from dataclasses import dataclass, field

from .exceptions import TransportError, TransportTimeoutError
from .constants import (
    SAMSUNG_VENDOR_ID,
    SAMSUNG_DOWNLOAD_MODE_PIDS,
    USB_PACKET_SIZE,
    TIMEOUT_ACK,
    TIMEOUT_WRITE
)


def is_download_mode_device(vendor_id: int, product_id: int) -> bool:
    """Check whether a VID/PID pair belongs to a Samsung device in Download mode"""
    return vendor_id == SAMSUNG_VENDOR_ID and product_id in SAMSUNG_DOWNLOAD_MODE_PIDS


@dataclass
class DeviceSelector:
    """Which device to open"""
    vendor_id: int = SAMSUNG_VENDOR_ID
    product_ids: List[int] = field(default_factory=lambda: list(SAMSUNG_DOWNLOAD_MODE_PIDS))
    index: int = 0


@dataclass
class DeviceInfo:
    """Samsung device information"""
    vendor_id: int
    product_id: int
    manufacturer: str = ""
    product: str = ""
    serial_number: str = ""

    def __repr__(self) -> str:
        return f"DeviceInfo(product='{self.product}', serial='{self.serial_number}')"


def _read_strings(device, device_info: DeviceInfo):
    device_info.manufacturer = usb.util.get_string(device, device.iManufacturer) or ""
    device_info.product = usb.util.get_string(device, device.iProduct) or ""
    device_info.serial_number = usb.util.get_string(device, device.iSerialNumber) or ""


def _is_timeout(error: usb.core.USBError) -> bool:
    return isinstance(error, usb.core.USBTimeoutError) or error.errno == 110


class UsbDevice:
    """
    Opened USB device channel

    Handles low-level USB communication with one Samsung device in
    Download mode. Instances are the opaque handles passed back to
    UsbTransport.
    """

    def __init__(self, device: usb.core.Device, device_info: DeviceInfo, verbose: bool = False):
        self.verbose = verbose
        self.device = device
        self.device_info = device_info
        self.interface = 0
        self.endpoint_out: Optional[usb.core.Endpoint] = None
        self.endpoint_in: Optional[usb.core.Endpoint] = None
        self.packet_size = USB_PACKET_SIZE

    def log(self, message: str):
        """Print log message if verbose"""
        if self.verbose:
            print(f"[UsbDevice] {message}")

    def connect(self):
        """
        Configure the device and claim the interface holding the bulk endpoints

        Raises:
            TransportError: if configuration fails or endpoints are missing
        """
        try:
            self.log("Connecting to device...")

            # Detach kernel driver from all interfaces (Linux)
            cfg = self.device.get_active_configuration()
            for intf in cfg:
                if_num = intf.bInterfaceNumber
                try:
                    if self.device.is_kernel_driver_active(if_num):
                        self.log(f"Detaching kernel driver from interface {if_num}...")
                        self.device.detach_kernel_driver(if_num)
                except (AttributeError, NotImplementedError, usb.core.USBError) as e:
                    self.log(f"  Warning: Could not detach from interface {if_num}: {e}")

            try:
                self.device.set_configuration()
            except usb.core.USBError as e:
                self.log(f"Warning: Could not set configuration: {e}")

            cfg = self.device.get_active_configuration()
            self.log(f"Active configuration: {cfg.bConfigurationValue}")

            for intf in cfg:
                out_ep = usb.util.find_descriptor(
                    intf,
                    custom_match=lambda ep: (
                        usb.util.endpoint_direction(ep.bEndpointAddress) == usb.util.ENDPOINT_OUT and
                        usb.util.endpoint_type(ep.bmAttributes) == usb.util.ENDPOINT_TYPE_BULK
                    )
                )
                in_ep = usb.util.find_descriptor(
                    intf,
                    custom_match=lambda ep: (
                        usb.util.endpoint_direction(ep.bEndpointAddress) == usb.util.ENDPOINT_IN and
                        usb.util.endpoint_type(ep.bmAttributes) == usb.util.ENDPOINT_TYPE_BULK
                    )
                )

                if out_ep is not None and in_ep is not None:
                    usb.util.claim_interface(self.device, intf.bInterfaceNumber)
                    self.interface = intf.bInterfaceNumber
                    self.endpoint_out = out_ep
                    self.endpoint_in = in_ep
                    self.log(f"Claimed interface {intf.bInterfaceNumber}")
                    break

            if self.endpoint_out is None or self.endpoint_in is None:
                raise TransportError("Could not find bulk USB endpoints")

            self.log(f"Endpoints: OUT 0x{self.endpoint_out.bEndpointAddress:02X}, "
                     f"IN 0x{self.endpoint_in.bEndpointAddress:02X}")

            self.packet_size = self.endpoint_out.wMaxPacketSize
            self.log(f"Max packet size: {self.packet_size}")

        except usb.core.USBError as e:
            raise TransportError(f"USB connection failed: {e}")

    def disconnect(self):
        """Release the interface and free USB resources"""
        if self.device is not None:
            try:
                usb.util.release_interface(self.device, self.interface)
            except usb.core.USBError as e:
                self.log(f"Warning: Could not release interface: {e}")
            usb.util.dispose_resources(self.device)
            self.log("Disconnected from device")

        self.device = None
        self.endpoint_out = None
        self.endpoint_in = None

    def write(self, data: bytes, timeout: float = TIMEOUT_WRITE) -> int:
        """
        Write data to device in a single bulk transfer

        Args:
            data: Data to write
            timeout: Timeout in seconds

        Returns:
            Number of bytes written
        """
        if self.endpoint_out is None:
            raise TransportError("Device not connected")

        try:
            written = self.endpoint_out.write(data, timeout=_timeout_ms(timeout))
        except usb.core.USBError as e:
            if _is_timeout(e):
                raise TransportTimeoutError(f"USB write timeout after {timeout}s")
            raise TransportError(f"USB write failed: {e}")

        self.log(f"Wrote {written} bytes")
        return written

    def read(self, size: int, timeout: float = TIMEOUT_ACK) -> bytes:
        """
        Read data from device

        Args:
            size: Maximum number of bytes to read
            timeout: Timeout in seconds

        Returns:
            Data read from device
        """
        if self.endpoint_in is None:
            raise TransportError("Device not connected")

        try:
            data = self.endpoint_in.read(size, timeout=_timeout_ms(timeout))
        except usb.core.USBError as e:
            if _is_timeout(e):
                raise TransportTimeoutError(f"USB read timeout after {timeout}s")
            raise TransportError(f"USB read failed: {e}")

        self.log(f"Read {len(data)} bytes")
        return bytes(data)


def _timeout_ms(timeout: float) -> int:
    # libusb treats 0 as an unlimited wait
    return max(1, int(timeout * 1000))


class Transport:
    """
    Byte-oriented channel to one device

    The flash engine depends only on these four calls.
    """

    def open(self, selector: Optional[DeviceSelector] = None):
        """Open a device and return its handle"""
        raise NotImplementedError

    def close(self, handle):
        """Close a handle returned by open()"""
        raise NotImplementedError

    def send_bulk(self, handle, data: bytes) -> int:
        """Write data, returning the number of bytes written"""
        raise NotImplementedError

    def receive_bulk(self, handle, max_length: int, timeout: float) -> bytes:
        """Read up to max_length bytes, raising TransportTimeoutError on timeout"""
        raise NotImplementedError


class UsbTransport(Transport):
    """Transport backed by pyusb"""

    def __init__(self, verbose: bool = False):
        self.verbose = verbose

    def log(self, message: str):
        """Print log message if verbose"""
        if self.verbose:
            print(f"[UsbTransport] {message}")

    def open(self, selector: Optional[DeviceSelector] = None) -> UsbDevice:
        """
        Find and connect to a Samsung device in Download mode

        Args:
            selector: Which device to open, first match by default

        Returns:
            Connected UsbDevice handle
        """
        selector = selector or DeviceSelector()
        self.log("Searching for Samsung device in Download mode...")

        found = []
        try:
            for pid in selector.product_ids:
                found.extend(usb.core.find(find_all=True, idVendor=selector.vendor_id, idProduct=pid))
        except (usb.core.USBError, usb.core.NoBackendError) as e:
            raise TransportError(f"USB enumeration failed: {e}")

        if selector.index >= len(found):
            raise TransportError("No Samsung device found in Download mode")

        device = found[selector.index]
        device_info = DeviceInfo(vendor_id=device.idVendor, product_id=device.idProduct)
        try:
            _read_strings(device, device_info)
        except (usb.core.USBError, ValueError) as e:
            self.log(f"Warning: Could not read device strings: {e}")

        self.log(f"Found device: VID=0x{device_info.vendor_id:04X}, PID=0x{device_info.product_id:04X}")

        handle = UsbDevice(device, device_info, verbose=self.verbose)
        try:
            handle.connect()
        except TransportError:
            usb.util.dispose_resources(device)
            raise
        return handle

    def close(self, handle: UsbDevice):
        handle.disconnect()

    def send_bulk(self, handle: UsbDevice, data: bytes) -> int:
        return handle.write(data)

    def receive_bulk(self, handle: UsbDevice, max_length: int, timeout: float = TIMEOUT_ACK) -> bytes:
        return handle.read(max_length, timeout)

    @staticmethod
    def list_devices() -> List[DeviceInfo]:
        """
        List all Samsung devices in Download mode

        Returns:
            List of DeviceInfo objects
        """
        devices = []

        try:
            found = list(usb.core.find(find_all=True, idVendor=SAMSUNG_VENDOR_ID))
        except (usb.core.USBError, usb.core.NoBackendError) as e:
            raise TransportError(f"USB enumeration failed: {e}")

        for device in found:
            if not is_download_mode_device(device.idVendor, device.idProduct):
                continue

            device_info = DeviceInfo(vendor_id=device.idVendor, product_id=device.idProduct)
            try:
                _read_strings(device, device_info)
            except (usb.core.USBError, ValueError):
                # String descriptors need access rights some hosts do not grant
                pass

            devices.append(device_info)

        return devices
