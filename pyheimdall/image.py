"""
Image files to be flashed

Opens plain or LZ4-compressed images for streaming and verifies them
against an optional MD5 sidecar file.
"""

import os
import struct
import hashlib
from typing import BinaryIO, Optional

import lz4.frame

from .exceptions import ImageError, VerificationError
from .constants import LZ4_EXTENSION, LZ4_SIGNATURE, MD5_FILE_EXTENSION


def calculate_md5_file(filepath: str, chunk_size: int = 1024 * 1024) -> str:
    """
    Calculate MD5 hash of file using streaming (memory efficient)

    Args:
        filepath: Path to file
        chunk_size: Chunk size for reading

    Returns:
        Hexadecimal MD5 hash string
    """
    md5 = hashlib.md5()
    with open(filepath, 'rb') as f:
        while True:
            chunk = f.read(chunk_size)
            if not chunk:
                break
            md5.update(chunk)
    return md5.hexdigest()


def read_md5_sidecar(md5_path: str) -> str:
    """Read the hex digest from an md5sum-style file"""
    with open(md5_path, 'r', encoding='ascii', errors='ignore') as f:
        fields = f.read().split()
    if not fields or len(fields[0]) != 32:
        raise VerificationError(f"Malformed MD5 file: {md5_path}")
    return fields[0].lower()


def _lz4_content_size(path: str) -> Optional[int]:
    """Content size from the LZ4 frame descriptor, if the frame records it"""
    with open(path, 'rb') as f:
        header = f.read(14)

    if len(header) < 14 or header[:4] != LZ4_SIGNATURE:
        return None

    flg = header[4]
    if not (flg >> 3) & 0x01:
        return None

    # FLG(1) + BD(1) then 8-byte content size
    return struct.unpack('<Q', header[6:14])[0]


class ImageSource:
    """
    An image file on local storage

    ``name`` is the filename used for partition resolution (the ``.lz4``
    suffix removed), ``size`` is the number of bytes that will be sent.
    """

    def __init__(self, path: str):
        self.path = path

        if not os.path.isfile(path):
            raise ImageError(f"Image file not found: {path}")

        self.compressed = path.lower().endswith(LZ4_EXTENSION)
        self.name = path[:-len(LZ4_EXTENSION)] if self.compressed else path

        try:
            self.size = self._measure()
        except (OSError, RuntimeError) as e:
            raise ImageError(f"Cannot read image {path}: {e}")

        if self.size == 0:
            raise ImageError(f"Image file is empty: {path}")

    def _measure(self) -> int:
        if not self.compressed:
            return os.path.getsize(self.path)

        size = _lz4_content_size(self.path)
        if size is not None:
            return size

        # Frame does not record its size: stream and count
        total = 0
        with lz4.frame.open(self.path, 'rb') as f:
            while True:
                chunk = f.read(1024 * 1024)
                if not chunk:
                    break
                total += len(chunk)
        return total

    def open(self) -> BinaryIO:
        """Open the image for reading its flashable bytes"""
        try:
            if self.compressed:
                return lz4.frame.open(self.path, 'rb')
            return open(self.path, 'rb')
        except OSError as e:
            raise ImageError(f"Cannot open image {self.path}: {e}")

    @property
    def md5_path(self) -> str:
        return self.path + MD5_FILE_EXTENSION

    def verify_md5(self) -> bool:
        """
        Check the image against ``<path>.md5`` if present

        Returns:
            True if a sidecar was found and matched, False if there is none

        Raises:
            VerificationError: the digest does not match
        """
        if not os.path.isfile(self.md5_path):
            return False

        expected = read_md5_sidecar(self.md5_path)
        actual = calculate_md5_file(self.path)
        if actual != expected:
            raise VerificationError(f"MD5 mismatch for {self.path}: expected {expected}, got {actual}")
        return True

    def __repr__(self) -> str:
        return f"ImageSource(path='{self.path}', size={self.size}, compressed={self.compressed})"
