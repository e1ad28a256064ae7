"""
Custom exceptions for PyHeimdall
"""

DEVICE_STATE_UNKNOWN = "device state unknown - do not disconnect without investigating"


class HeimdallException(Exception):
    """Base exception for all Heimdall errors"""

    status = "Error"

    def __init__(self, message: str, device_state_unknown: bool = False):
        self.message = message
        self.device_state_unknown = device_state_unknown
        super().__init__(self.message)


class FormatError(HeimdallException):
    """Raised when PIT bytes are malformed"""
    status = "Invalid PIT data"


class ValidationError(HeimdallException):
    """Raised when a structurally valid PIT is semantically invalid"""
    status = "PIT validation failed"


class DeviceNotFoundError(HeimdallException):
    """Raised when no device in Download mode can be opened"""
    status = "No Samsung device found"


class BusyError(HeimdallException):
    """Raised when an operation is attempted while another is active"""
    status = "Busy"


class InvalidStateError(HeimdallException):
    """Raised when an operation is not permitted in the current state"""
    status = "Not allowed now"


class UnresolvedPartitionError(HeimdallException):
    """Raised when no partition can be determined for a filename"""
    status = "Unknown file type"


class ImageError(HeimdallException):
    """Raised when an image file cannot be read"""
    status = "Cannot read image"


class VerificationError(HeimdallException):
    """Raised when pre-flight image verification fails"""
    status = "Verification failed"


class TransportError(HeimdallException):
    """Raised when the USB transport fails"""
    status = "USB transfer failed"
    session = None


class TransportTimeoutError(TransportError):
    """Raised when a transport read or write times out"""
    status = "USB timeout"


class FlashError(HeimdallException):
    """Base for protocol failures during a flash session or device command"""

    status = "Flash failed"

    def __init__(self, message: str, device_state_unknown: bool = False, session=None):
        super().__init__(message, device_state_unknown)
        self.session = session


class HandshakeError(FlashError):
    """Raised when the device does not accept a session start"""
    status = "Handshake failed"


class AckTimeoutError(FlashError):
    """Raised when no acknowledgment arrives in time"""
    status = "No ACK received"


class AckRejectedError(FlashError):
    """Raised when the device answers with a negative acknowledgment"""
    status = "ACK rejected"


class FinalizeError(FlashError):
    """Raised when the session end is not acknowledged"""
    status = "Finalize failed"

    def __init__(self, message: str, session=None):
        super().__init__(message, device_state_unknown=True, session=session)


class AbortedError(FlashError):
    """Raised when a session is cancelled with abort()"""
    status = "Aborted"


def status_message(error: Exception) -> str:
    """
    Map an error to a short human-readable status line

    Args:
        error: Exception raised by the engine

    Returns:
        Status string for the presentation layer
    """
    if not isinstance(error, HeimdallException):
        return f"Unexpected error: {error}"

    text = f"{error.status}: {error.message}"
    if error.device_state_unknown:
        text += f" ({DEVICE_STATE_UNKNOWN})"
    return text
