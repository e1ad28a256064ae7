"""
PIT (Partition Information Table) handling

Parses, validates and serializes Samsung PIT files.
"""

import struct
from typing import List, Optional
from dataclasses import dataclass, field

from .exceptions import FormatError, ValidationError
from .constants import (
    PIT_MAGIC,
    PIT_HEADER_SIZE,
    PIT_HEADER_FORMAT,
    PIT_ENTRY_SIZE,
    PIT_ENTRY_FORMAT,
    PIT_MAX_ENTRIES,
    PIT_DEVICE_NAME_SIZE,
    PIT_TEXT_FIELD_SIZE,
)


def decode_text(raw: bytes, width: int) -> str:
    """
    Decode a fixed-length text field

    Never reads past ``width`` bytes and always leaves room for the
    terminator, so at most ``width - 1`` bytes become visible text.
    """
    raw = raw[:width - 1]
    end = raw.find(b"\x00")
    if end != -1:
        raw = raw[:end]
    return raw.decode("utf-8", errors="ignore")


def encode_text(text: str, width: int) -> bytes:
    """Encode text into a zero-padded field of ``width`` bytes"""
    raw = text.encode("utf-8")[:width - 1]
    return raw.ljust(width, b"\x00")


@dataclass
class PitEntry:
    """Single PIT partition entry"""
    binary_type: int = 0
    device_type: int = 0
    identifier: int = 0
    attributes: int = 0
    update_attributes: int = 0
    block_size: int = 0
    block_count: int = 0
    file_offset: int = 0
    file_size: int = 0
    partition_name: str = ""
    flash_filename: str = ""
    fota_filename: str = ""

    @property
    def capacity(self) -> int:
        """Partition capacity in bytes, 0 when the entry does not say"""
        return self.block_size * self.block_count

    def matches(self, name: str) -> bool:
        """Case-insensitive match against partition or flash filename"""
        name = name.upper()
        return (self.partition_name.upper() == name or
                (self.flash_filename != "" and self.flash_filename.upper() == name))

    def __repr__(self) -> str:
        return f"PitEntry(name='{self.partition_name}', id={self.identifier}, blocks={self.block_count})"


@dataclass
class PitTable:
    """Complete PIT data"""
    device_name: str = ""
    reserved1: int = 0
    reserved2: int = 0
    entries: List[PitEntry] = field(default_factory=list)

    @property
    def entry_count(self) -> int:
        return len(self.entries)

    @property
    def size(self) -> int:
        """Serialized size in bytes"""
        return PIT_HEADER_SIZE + self.entry_count * PIT_ENTRY_SIZE

    def find(self, name: str) -> Optional[PitEntry]:
        """Get PIT entry by partition name or flash filename"""
        for entry in self.entries:
            if entry.matches(name):
                return entry
        return None

    def get_entry_by_id(self, identifier: int) -> Optional[PitEntry]:
        """Get PIT entry by partition identifier"""
        for entry in self.entries:
            if entry.identifier == identifier:
                return entry
        return None

    def __repr__(self) -> str:
        return f"PitTable(device='{self.device_name}', entries={self.entry_count})"


class PitParser:
    """
    PIT file codec

    Converts between raw PIT bytes and PitTable objects. Every field is
    read and written at a fixed offset; embedded lengths are never trusted
    beyond what the buffer holds.
    """

    def parse(self, pit_data: bytes) -> PitTable:
        """
        Parse PIT data

        Args:
            pit_data: Raw PIT file data

        Returns:
            PitTable object

        Raises:
            FormatError: buffer too small, wrong magic or bad entry count
        """
        pit_data = bytes(pit_data)

        if len(pit_data) < PIT_HEADER_SIZE:
            raise FormatError(f"PIT data too small ({len(pit_data)} bytes, header is {PIT_HEADER_SIZE})")

        magic, count, reserved1, reserved2, device_name = struct.unpack_from(PIT_HEADER_FORMAT, pit_data, 0)

        if magic != PIT_MAGIC:
            raise FormatError(f"Invalid PIT magic: 0x{magic:08X} (expected 0x{PIT_MAGIC:08X})")

        if count > PIT_MAX_ENTRIES:
            raise FormatError(f"PIT declares {count} entries (maximum {PIT_MAX_ENTRIES})")

        required = PIT_HEADER_SIZE + count * PIT_ENTRY_SIZE
        if required > len(pit_data):
            raise FormatError(f"PIT declares {count} entries ({required} bytes) but only {len(pit_data)} bytes present")

        table = PitTable(
            device_name=decode_text(device_name, PIT_DEVICE_NAME_SIZE),
            reserved1=reserved1,
            reserved2=reserved2,
        )

        offset = PIT_HEADER_SIZE
        for _ in range(count):
            table.entries.append(self._parse_entry(pit_data, offset))
            offset += PIT_ENTRY_SIZE

        return table

    def _parse_entry(self, pit_data: bytes, offset: int) -> PitEntry:
        """Parse single PIT entry at offset"""
        # PIT entry structure (132 bytes):
        # - binary_type, device_type, identifier (4 each)
        # - attributes, update_attributes (4 each)
        # - block_size, block_count (4 each)
        # - file_offset, file_size (4 each)
        # - partition_name, flash_filename, fota_filename (32 each)
        values = struct.unpack_from(PIT_ENTRY_FORMAT, pit_data, offset)

        return PitEntry(
            binary_type=values[0],
            device_type=values[1],
            identifier=values[2],
            attributes=values[3],
            update_attributes=values[4],
            block_size=values[5],
            block_count=values[6],
            file_offset=values[7],
            file_size=values[8],
            partition_name=decode_text(values[9], PIT_TEXT_FIELD_SIZE),
            flash_filename=decode_text(values[10], PIT_TEXT_FIELD_SIZE),
            fota_filename=decode_text(values[11], PIT_TEXT_FIELD_SIZE),
        )

    def validate(self, table: PitTable):
        """
        Validate a parsed PIT

        Raises:
            ValidationError: empty or oversized table, duplicate identifier,
                or empty device name
        """
        if table.entry_count == 0:
            raise ValidationError("PIT has no entries")

        if table.entry_count > PIT_MAX_ENTRIES:
            raise ValidationError(f"PIT has {table.entry_count} entries (maximum {PIT_MAX_ENTRIES})")

        seen = set()
        for entry in table.entries:
            if entry.identifier in seen:
                raise ValidationError(f"Duplicate partition identifier {entry.identifier} ({entry.partition_name})")
            seen.add(entry.identifier)

        if not table.device_name:
            raise ValidationError("PIT device name is empty")

    def serialize(self, table: PitTable) -> bytes:
        """
        Create PIT data from a table

        Args:
            table: PitTable to encode

        Returns:
            Raw PIT data, header plus one record per entry
        """
        if table.entry_count > PIT_MAX_ENTRIES:
            raise ValidationError(f"PIT has {table.entry_count} entries (maximum {PIT_MAX_ENTRIES})")

        buf = bytearray(table.size)

        try:
            struct.pack_into(PIT_HEADER_FORMAT, buf, 0,
                             PIT_MAGIC,
                             table.entry_count,
                             table.reserved1,
                             table.reserved2,
                             encode_text(table.device_name, PIT_DEVICE_NAME_SIZE))

            offset = PIT_HEADER_SIZE
            for entry in table.entries:
                struct.pack_into(PIT_ENTRY_FORMAT, buf, offset,
                                 entry.binary_type,
                                 entry.device_type,
                                 entry.identifier,
                                 entry.attributes,
                                 entry.update_attributes,
                                 entry.block_size,
                                 entry.block_count,
                                 entry.file_offset,
                                 entry.file_size,
                                 encode_text(entry.partition_name, PIT_TEXT_FIELD_SIZE),
                                 encode_text(entry.flash_filename, PIT_TEXT_FIELD_SIZE),
                                 encode_text(entry.fota_filename, PIT_TEXT_FIELD_SIZE))
                offset += PIT_ENTRY_SIZE
        except struct.error as e:
            raise ValidationError(f"PIT field out of range: {e}")

        return bytes(buf)

    def dump_info(self, table: PitTable):
        """Print PIT information"""
        print(f"\nPIT Information:")
        print(f"  Device: {table.device_name}")
        print(f"  Entry Count: {table.entry_count}")
        print(f"\nPartitions:")

        for i, entry in enumerate(table.entries):
            print(f"\n  [{i:02d}] {entry.partition_name}")
            print(f"    Identifier: {entry.identifier}")
            print(f"    Binary Type: {entry.binary_type}")
            print(f"    Device Type: {entry.device_type}")
            print(f"    Block Size: {entry.block_size}")
            print(f"    Block Count: {entry.block_count}")
            if entry.flash_filename:
                print(f"    Flash File: {entry.flash_filename}")
            if entry.fota_filename:
                print(f"    FOTA File: {entry.fota_filename}")
