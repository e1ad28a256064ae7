"""
Constants and frame layouts for the Download-Mode flash protocol
"""

# Samsung USB Vendor ID
SAMSUNG_VENDOR_ID = 0x04E8

# Samsung Product IDs for Download Mode
SAMSUNG_DOWNLOAD_MODE_PIDS = [
    0x685D,  # Download mode
    0x68C3,  # Newer devices
]

# USB Transfer sizes
USB_PACKET_SIZE = 512
USB_RECEIVE_SIZE = 0x10000  # 64KB per bulk read

# PIT (Partition Information Table)
PIT_MAGIC = 0x12349876
PIT_HEADER_SIZE = 44
PIT_ENTRY_SIZE = 132
PIT_MAX_ENTRIES = 64
PIT_MAX_SIZE = PIT_HEADER_SIZE + PIT_MAX_ENTRIES * PIT_ENTRY_SIZE

# Header layout: magic, entry_count, reserved1, reserved2, device_name
PIT_HEADER_FORMAT = "<IIII28s"
PIT_DEVICE_NAME_OFFSET = 16
PIT_DEVICE_NAME_SIZE = 28

# Entry layout: 9 words followed by three 32-byte text fields
PIT_ENTRY_FORMAT = "<9I32s32s32s"
PIT_TEXT_FIELD_SIZE = 32


class FrameType:
    """Flash protocol frame markers"""
    SESSION_START = 0x11
    CHUNK = 0x00000001
    SESSION_END = 0x00000002
    PIT_UPLOAD = 0x01
    ABORT = 0xFF


# Frame sizes
SESSION_START_SIZE = 64
SESSION_START_NAME_SIZE = 31
CHUNK_HEADER_SIZE = 16
SESSION_END_SIZE = 16
COMMAND_FRAME_SIZE = 16
ACK_SIZE = 16

ABORT_FRAME = bytes([FrameType.ABORT, 0x00, 0x00, 0x00, 0x00, 0x00])
PIT_UPLOAD_FRAME = bytes([FrameType.PIT_UPLOAD, 0x00, 0x00, 0x00, 0x00, 0x00])

# Four-character command tags for simple device commands
COMMAND_REBOOT = b"REBT"
COMMAND_REQUEST_PIT = b"PITR"

# Acknowledgment status
ACK_ACCEPTED = 0x00000000

# Chunk size for image transfer
FLASH_CHUNK_SIZE = 256 * 1024  # 256KB

# Timeouts (in seconds)
TIMEOUT_OPEN = 5
TIMEOUT_ACK = 60
TIMEOUT_WRITE = 60

# Partition aliases applied when a candidate name is not found directly
PARTITION_ALIASES = {
    "MODEM": "RADIO",
    "SYSTEM": "FACTORYFS",
    "DBDATA": "PARAM",
    "ZIMAGE": "KERNEL",
}

# Partition names accepted without a PIT (inferred, never verified)
KNOWN_PARTITIONS = [
    "BOOT",
    "KERNEL",
    "RECOVERY",
    "CACHE",
    "RADIO",
    "FACTORYFS",
    "PARAM",
    "DATAFS",
    "HIDDEN",
    "EFS",
    "SBOOT",
]

# Image file handling
LZ4_EXTENSION = ".lz4"
MD5_FILE_EXTENSION = ".md5"
LZ4_SIGNATURE = b"\x04\x22\x4D\x18"

# Persisted settings record: auto_reboot, verify_flash, safe_mode
SETTINGS_FORMAT = "<III"
DEFAULT_SETTINGS_PATH = "~/.pyheimdall.cfg"
