#!/usr/bin/env python3
"""
PyHeimdall Command-Line Interface

Command-line tool for Download-mode flashing operations.
"""

import argparse
import sys
import os

from . import __version__
from .events import EventConsumer, ProgressEvent, StatusEvent, StatusLevel
from .pit import PitParser
from .session import DeviceSession
from .settings import SettingsStore
from .usb_device import UsbTransport, DeviceSelector
from .exceptions import HeimdallException, status_message
from .constants import DEFAULT_SETTINGS_PATH


STATUS_PREFIX = {
    StatusLevel.INFO: "",
    StatusLevel.SUCCESS: "✓ ",
    StatusLevel.WARNING: "⚠️  ",
    StatusLevel.ERROR: "❌ ",
}


class ConsoleConsumer(EventConsumer):
    """Print progress bar and status lines"""

    def __init__(self):
        self._in_progress = False

    def on_progress(self, event: ProgressEvent):
        bar_length = 40
        filled = int(bar_length * event.fraction)
        bar = '█' * filled + '░' * (bar_length - filled)

        print(f"\r[{bar}] {event.percentage:5.1f}% | {event.phase:<24}", end='', flush=True)
        self._in_progress = True

    def on_status(self, event: StatusEvent):
        if self._in_progress:
            print()
            self._in_progress = False
        print(f"{STATUS_PREFIX.get(event.level, '')}{event.message}")


def make_session(args, settings=None) -> DeviceSession:
    store = SettingsStore(args.config)
    return DeviceSession(
        UsbTransport(verbose=args.verbose),
        settings=settings or store.load(),
        consumer=ConsoleConsumer(),
    )


def cmd_list_devices(args):
    """List connected devices"""
    print("Searching for Samsung devices in Download mode...")

    devices = UsbTransport.list_devices()

    if not devices:
        print("No devices found.")
        return 1

    print(f"\nFound {len(devices)} device(s):\n")

    for i, device in enumerate(devices):
        print(f"[{i}] {device.product}")
        print(f"    Manufacturer: {device.manufacturer}")
        print(f"    Serial: {device.serial_number}")
        print(f"    VID:PID = 0x{device.vendor_id:04X}:0x{device.product_id:04X}")
        print()

    return 0


def cmd_detect(args):
    """Check that a device can be opened"""
    session = make_session(args)
    try:
        session.detect(DeviceSelector(index=args.device))
    finally:
        session.close()
    return 0


def cmd_flash(args):
    """Flash image files to device"""
    for path in args.images:
        if not os.path.exists(path):
            print(f"Error: Image file not found: {path}")
            return 1

    settings = SettingsStore(args.config).load()
    if args.reboot is not None:
        settings.auto_reboot = args.reboot
    if args.verify:
        settings.verify_flash = True
    if args.unsafe:
        settings.safe_mode = False

    print(f"PyHeimdall v{__version__} - Download Mode Flasher")
    print("=" * 60)

    session = make_session(args, settings)
    reboot_after = settings.auto_reboot
    session.settings.auto_reboot = False

    try:
        session.detect(DeviceSelector(index=args.device))

        if args.pit:
            session.load_pit(args.pit)
        elif not args.no_pit:
            session.load_pit()

        if not args.yes:
            print(f"\n⚠️  WARNING: This will flash {len(args.images)} image(s) to your device!")
            response = input("Continue? (yes/no): ")
            if response.lower() not in ['yes', 'y']:
                print("Flashing cancelled.")
                return 0

        for path in args.images:
            session.flash(path)

        if reboot_after:
            session.reboot()

        print("\n✨ Flashing Complete! ✨")
        return 0

    except KeyboardInterrupt:
        print("\n\n⚠️  Flashing interrupted by user!")
        print("Device state unknown - do not disconnect without investigating")
        return 1
    finally:
        session.close()


def cmd_dump_pit(args):
    """Dump PIT from device"""
    session = make_session(args)

    try:
        session.detect(DeviceSelector(index=args.device))
        pit = session.load_pit()
    finally:
        session.close()

    output_file = args.output or "dump.pit"
    with open(output_file, 'wb') as f:
        f.write(session.parser.serialize(pit))

    print(f"PIT saved to: {output_file} ({pit.size} bytes)")

    if args.verbose:
        session.parser.dump_info(pit)

    return 0


def cmd_reboot(args):
    """Reboot device out of Download mode"""
    session = make_session(args)
    try:
        session.detect(DeviceSelector(index=args.device))
        session.reboot()
    finally:
        session.close()
    return 0


def cmd_parse_pit(args):
    """Parse and display PIT information"""
    if not os.path.exists(args.pit):
        print(f"Error: PIT file not found: {args.pit}")
        return 1

    print(f"Parsing PIT: {args.pit}\n")

    parser = PitParser()

    with open(args.pit, 'rb') as f:
        pit = parser.parse(f.read())

    parser.dump_info(pit)
    parser.validate(pit)
    return 0


def cmd_settings(args):
    """Show or change persisted settings"""
    store = SettingsStore(args.config)
    session = DeviceSession(UsbTransport(verbose=args.verbose),
                            settings=store.load(),
                            consumer=ConsoleConsumer())

    changes = {
        "auto_reboot": args.auto_reboot,
        "verify_flash": args.verify_flash,
        "safe_mode": args.safe_mode,
    }

    session.open_settings()
    for name, value in changes.items():
        if value is not None and getattr(session.settings, name) != value:
            session.toggle_setting(name)
    session.close_settings(store if any(v is not None for v in changes.values()) else None)

    for name in changes:
        print(f"  {name}: {'on' if getattr(session.settings, name) else 'off'}")
    return 0


def on_off(value: str) -> bool:
    value = value.lower()
    if value in ('on', 'yes', 'true', '1'):
        return True
    if value in ('off', 'no', 'false', '0'):
        return False
    raise argparse.ArgumentTypeError(f"expected on/off, got {value!r}")


def main(argv=None):
    """Main entry point"""
    parser = argparse.ArgumentParser(
        description=f"PyHeimdall v{__version__} - Samsung Download Mode Flasher",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    parser.add_argument('-v', '--verbose', action='store_true',
                        help='Enable verbose output')
    parser.add_argument('--config', default=DEFAULT_SETTINGS_PATH,
                        help=f'Settings file (default: {DEFAULT_SETTINGS_PATH})')
    parser.add_argument('--device', type=int, default=0,
                        help='Device index if several are connected (default: 0)')
    parser.add_argument('--version', action='version',
                        version=f'PyHeimdall v{__version__}')

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    list_parser = subparsers.add_parser('list', help='List connected devices')
    list_parser.set_defaults(func=cmd_list_devices)

    detect_parser = subparsers.add_parser('detect', help='Open the device to check it responds')
    detect_parser.set_defaults(func=cmd_detect)

    flash_parser = subparsers.add_parser('flash', help='Flash image files to device')
    flash_parser.add_argument('images', nargs='+', help='Image files, e.g. recovery.img modem.bin')
    flash_parser.add_argument('-p', '--pit', help='PIT file (default: read from device)')
    flash_parser.add_argument('--no-pit', action='store_true',
                              help='Do not load a PIT (partitions are inferred, needs --unsafe)')
    flash_parser.add_argument('-y', '--yes', action='store_true',
                              help='Skip confirmation prompt')
    flash_parser.add_argument('--verify', action='store_true',
                              help='Check MD5 sidecars and partition capacity before flashing')
    flash_parser.add_argument('--unsafe', action='store_true',
                              help='Disable safe mode for this run')
    reboot_group = flash_parser.add_mutually_exclusive_group()
    reboot_group.add_argument('--reboot', dest='reboot', action='store_true', default=None,
                              help='Reboot device after flashing')
    reboot_group.add_argument('--no-reboot', dest='reboot', action='store_false',
                              help='Do not reboot device after flashing')
    flash_parser.set_defaults(func=cmd_flash)

    dump_parser = subparsers.add_parser('dump-pit', help='Dump PIT from device')
    dump_parser.add_argument('-o', '--output', help='Output file (default: dump.pit)')
    dump_parser.set_defaults(func=cmd_dump_pit)

    reboot_parser = subparsers.add_parser('reboot', help='Reboot device')
    reboot_parser.set_defaults(func=cmd_reboot)

    parse_pit_parser = subparsers.add_parser('parse-pit',
                                             help='Parse and display PIT info')
    parse_pit_parser.add_argument('pit', help='PIT file')
    parse_pit_parser.set_defaults(func=cmd_parse_pit)

    settings_parser = subparsers.add_parser('settings', help='Show or change settings')
    settings_parser.add_argument('--auto-reboot', type=on_off, metavar='on|off')
    settings_parser.add_argument('--verify-flash', type=on_off, metavar='on|off')
    settings_parser.add_argument('--safe-mode', type=on_off, metavar='on|off')
    settings_parser.set_defaults(func=cmd_settings)

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    try:
        return args.func(args)
    except HeimdallException as e:
        # Session operations have already reported their own status
        if args.command in ('list', 'parse-pit', 'settings'):
            print(f"❌ {status_message(e)}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
