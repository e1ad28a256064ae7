"""
Persisted user settings

Three boolean flags stored as a fixed-size little-endian record.
"""

import os
import struct
from dataclasses import dataclass

from .constants import SETTINGS_FORMAT, DEFAULT_SETTINGS_PATH


@dataclass
class Settings:
    """Flags that change how the device session behaves"""
    auto_reboot: bool = False
    verify_flash: bool = False
    safe_mode: bool = True

    def to_bytes(self) -> bytes:
        return struct.pack(SETTINGS_FORMAT,
                           int(self.auto_reboot),
                           int(self.verify_flash),
                           int(self.safe_mode))

    @classmethod
    def from_bytes(cls, data: bytes) -> "Settings":
        auto_reboot, verify_flash, safe_mode = struct.unpack_from(SETTINGS_FORMAT, data, 0)
        return cls(bool(auto_reboot), bool(verify_flash), bool(safe_mode))


class SettingsStore:
    """Load and save Settings at a path"""

    def __init__(self, path: str = DEFAULT_SETTINGS_PATH):
        self.path = os.path.expanduser(path)

    def load(self) -> Settings:
        """Read settings, falling back to defaults if the file is missing or short"""
        try:
            with open(self.path, 'rb') as f:
                data = f.read(struct.calcsize(SETTINGS_FORMAT))
        except FileNotFoundError:
            return Settings()

        if len(data) < struct.calcsize(SETTINGS_FORMAT):
            return Settings()

        return Settings.from_bytes(data)

    def save(self, settings: Settings):
        with open(self.path, 'wb') as f:
            f.write(settings.to_bytes())
