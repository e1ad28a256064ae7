"""
Tests for the device session state machine

Each test drives DeviceSession over the FakeTransport and checks the
resulting state, the frames on the wire and the status events.
"""

import hashlib

import lz4.frame
import pytest

from pyheimdall.events import RecordingConsumer, StatusLevel
from pyheimdall.pit import PitParser
from pyheimdall.protocol import SessionStatus
from pyheimdall.session import DeviceSession, DeviceState
from pyheimdall.settings import Settings, SettingsStore
from pyheimdall.exceptions import (
    AbortedError,
    AckRejectedError,
    BusyError,
    DeviceNotFoundError,
    FormatError,
    ImageError,
    InvalidStateError,
    UnresolvedPartitionError,
    ValidationError,
    VerificationError,
)
from pyheimdall.constants import ABORT_FRAME, PIT_UPLOAD_FRAME

from conftest import FakeTransport, ack, make_entry, make_table


@pytest.fixture
def consumer():
    return RecordingConsumer()


@pytest.fixture
def session(transport, consumer):
    device = DeviceSession(transport, settings=Settings(), consumer=consumer, chunk_size=4)
    device.detect()
    return device


@pytest.fixture
def ready(session, pit_bytes):
    session.load_pit(pit_bytes)
    return session


@pytest.fixture
def image(tmp_path):
    path = tmp_path / "recovery.img"
    path.write_bytes(b"0123456789")
    return str(path)


def errors(consumer):
    return [e.message for e in consumer.status if e.level == StatusLevel.ERROR]


class TestDetect:
    def test_detect(self, transport, consumer):
        device = DeviceSession(transport, consumer=consumer)
        assert device.state == DeviceState.NO_DEVICE

        device.detect()

        assert device.state == DeviceState.DETECTED
        assert device.handle == "handle-1"
        assert consumer.status[-1].level == StatusLevel.SUCCESS

    def test_device_not_found(self, consumer):
        device = DeviceSession(FakeTransport(fail_open=True), consumer=consumer)

        with pytest.raises(DeviceNotFoundError):
            device.detect()

        assert device.state == DeviceState.NO_DEVICE
        assert errors(consumer)[0].startswith("No Samsung device found")

    def test_redetect_closes_previous_handle(self, session, transport):
        session.detect()

        assert transport.closed == 1
        assert session.handle == "handle-2"

    def test_redetect_releases_handle_before_opening(self, consumer):
        class OrderedTransport(FakeTransport):
            def open(self, selector=None):
                self.log.append(("open", self.closed))
                return super().open(selector)

        transport = OrderedTransport()
        device = DeviceSession(transport, consumer=consumer)
        device.detect()
        device.detect()

        assert transport.log == [("open", 0), ("open", 1)]

    def test_failed_redetect_leaves_no_device(self, ready, transport):
        transport.fail_open = True

        with pytest.raises(DeviceNotFoundError):
            ready.detect()

        assert ready.state == DeviceState.NO_DEVICE
        assert ready.handle is None
        assert ready.pit is None
        assert transport.closed == 1


class TestLoadPit:
    def test_requires_device(self, transport, pit_bytes):
        with pytest.raises(InvalidStateError):
            DeviceSession(transport).load_pit(pit_bytes)

    def test_from_bytes(self, session, pit_bytes):
        table = session.load_pit(pit_bytes)

        assert session.state == DeviceState.PIT_READY
        assert session.pit is table
        assert table.device_name == "GT-I9000"

    def test_from_file(self, session, pit_bytes, tmp_path):
        path = tmp_path / "device.pit"
        path.write_bytes(pit_bytes)

        session.load_pit(str(path))

        assert session.pit.entry_count == 4

    def test_missing_file(self, session, tmp_path):
        with pytest.raises(ImageError):
            session.load_pit(str(tmp_path / "missing.pit"))
        assert session.state == DeviceState.DETECTED

    def test_from_device(self, session, transport, pit_bytes):
        transport.responses.extend([ack(0, len(pit_bytes)), pit_bytes])

        session.load_pit()

        assert transport.sent[0][:4] == b"PITR"
        assert session.state == DeviceState.PIT_READY

    def test_malformed(self, session):
        with pytest.raises(FormatError):
            session.load_pit(b"\x00" * 10)

        assert session.state == DeviceState.DETECTED
        assert session.pit is None

    def test_invalid(self, session):
        table = make_table(names=("BOOT",))
        table.entries.append(make_entry(1, "CACHE"))

        with pytest.raises(ValidationError):
            session.load_pit(PitParser().serialize(table))

        assert session.state == DeviceState.DETECTED

    def test_reload_replaces_table(self, ready):
        first = ready.pit

        second = ready.load_pit(PitParser().serialize(make_table(names=("EFS",), device_name="SM-T")))

        assert ready.pit is second
        assert first is not second
        assert ready.pit.device_name == "SM-T"


class TestFlash:
    def test_flash_with_pit(self, ready, transport, consumer, image):
        flashed = ready.flash(image)

        assert flashed.status == SessionStatus.COMPLETE
        assert flashed.partition == "RECOVERY"
        assert flashed.bytes_sent == 10
        assert ready.state == DeviceState.PIT_READY
        assert transport.sent[0][1:9] == b"RECOVERY"
        assert consumer.progress[-1].fraction == 1.0
        assert consumer.status[-1].message == "Flash completed successfully!"

    def test_requires_device(self, transport, image):
        with pytest.raises(InvalidStateError):
            DeviceSession(transport).flash(image)

    def test_safe_mode_refuses_inferred_partition(self, session, transport, image):
        with pytest.raises(UnresolvedPartitionError):
            session.flash(image)

        assert transport.sent == []
        assert session.state == DeviceState.DETECTED

    def test_inferred_partition_without_safe_mode(self, session, transport, consumer, tmp_path):
        session.settings.safe_mode = False
        path = tmp_path / "modem.bin"
        path.write_bytes(b"radio-image")

        flashed = session.flash(str(path))

        assert flashed.partition == "RADIO"
        assert any(e.level == StatusLevel.WARNING for e in consumer.status)

    def test_unresolved(self, ready, tmp_path):
        path = tmp_path / "holiday.jpg"
        path.write_bytes(b"jpeg")

        with pytest.raises(UnresolvedPartitionError):
            ready.flash(str(path))

    def test_missing_image(self, ready, tmp_path):
        with pytest.raises(ImageError):
            ready.flash(str(tmp_path / "recovery.img"))

    def test_failure_restores_state(self, ready, transport, consumer, image):
        transport.responses.extend([ack(), ack(), ack(status=1)])

        with pytest.raises(AckRejectedError) as exc_info:
            ready.flash(image)

        assert exc_info.value.session.status == SessionStatus.FAILED
        assert ready.state == DeviceState.PIT_READY
        assert ready.pit is not None
        assert "device state unknown" in errors(consumer)[-1]
        assert ready.abort() is False

    def test_auto_reboot(self, ready, transport, image):
        ready.settings.auto_reboot = True

        ready.flash(image)

        assert transport.sent[-1][:4] == b"REBT"
        assert ready.state == DeviceState.NO_DEVICE
        assert ready.pit is None
        assert transport.closed == 1

    def test_compressed_image(self, ready, transport, tmp_path):
        data = bytes(range(200))
        path = tmp_path / "recovery.img.lz4"
        path.write_bytes(lz4.frame.compress(data))
        ready.protocol.chunk_size = 64

        flashed = ready.flash(str(path))

        assert flashed.partition == "RECOVERY"
        assert flashed.total_length == 200
        assert b"".join(f for f in transport.sent if len(f) == 64 and f[0] != 0x11) == data[:192]

    def test_single_flight(self, ready, consumer, image):
        rejected = []

        class Reentrant(RecordingConsumer):
            def on_progress(self, event):
                if event.phase == "Sending chunk 1":
                    for call in (lambda: ready.flash(image), ready.reboot, ready.detect):
                        try:
                            call()
                        except BusyError as e:
                            rejected.append(e)

        ready.consumer = Reentrant()
        flashed = ready.flash(image)

        assert len(rejected) == 3
        assert flashed.status == SessionStatus.COMPLETE
        assert flashed.bytes_sent == 10
        assert not ready.busy

    def test_abort(self, ready, transport, image):
        class Aborting(RecordingConsumer):
            def on_progress(self, event):
                if event.phase == "Sending chunk 2":
                    ready.abort()

        ready.consumer = Aborting()

        with pytest.raises(AbortedError):
            ready.flash(image)

        assert ABORT_FRAME in transport.sent
        assert ready.state == DeviceState.PIT_READY

    def test_interrupt_aborts_transfer(self, ready, transport, image):
        class Interrupting(RecordingConsumer):
            def on_progress(self, event):
                if event.phase == "Sending chunk 1":
                    raise KeyboardInterrupt

        ready.consumer = Interrupting()

        with pytest.raises(KeyboardInterrupt):
            ready.flash(image)

        assert transport.sent[-1] == ABORT_FRAME
        assert ready.state == DeviceState.PIT_READY
        assert not ready.busy
        assert ready.abort() is False


class TestVerify:
    def test_md5_match(self, ready, consumer, image):
        ready.settings.verify_flash = True
        with open(image + ".md5", "w") as f:
            f.write(hashlib.md5(b"0123456789").hexdigest() + "  recovery.img\n")

        ready.flash(image)

        assert any(e.message.startswith("MD5 verified") for e in consumer.status)

    def test_md5_mismatch(self, ready, transport, image):
        ready.settings.verify_flash = True
        with open(image + ".md5", "w") as f:
            f.write("0" * 32)

        with pytest.raises(VerificationError):
            ready.flash(image)

        assert transport.sent == []

    def test_capacity(self, session, transport, image):
        table = make_table(names=("BOOT",))
        table.entries.append(make_entry(9, "RECOVERY", block_size=2, block_count=4))
        session.load_pit(PitParser().serialize(table))
        session.settings.verify_flash = True

        with pytest.raises(VerificationError, match="holds 8"):
            session.flash(image)

        assert transport.sent == []


class TestReboot:
    def test_reboot(self, ready, transport):
        ready.reboot()

        assert transport.sent == [b"REBT" + b"\x00" * 12]
        assert ready.state == DeviceState.NO_DEVICE
        assert ready.handle is None

    def test_reboot_failure(self, ready, transport):
        transport.responses.append(ack(status=3))

        with pytest.raises(AckRejectedError):
            ready.reboot()

        assert ready.state == DeviceState.PIT_READY
        assert transport.closed == 0

    def test_requires_device(self, transport):
        with pytest.raises(InvalidStateError):
            DeviceSession(transport).reboot()


class TestWritePit:
    def test_refused_in_safe_mode(self, session, transport, pit_bytes):
        with pytest.raises(InvalidStateError):
            session.write_pit(pit_bytes)
        assert transport.sent == []

    def test_write(self, session, transport, pit_bytes):
        session.settings.safe_mode = False

        session.write_pit(pit_bytes)

        assert transport.sent == [PIT_UPLOAD_FRAME, pit_bytes]
        assert session.state == DeviceState.PIT_READY


class TestSettings:
    def test_side_state(self, ready):
        ready.open_settings()
        assert ready.state == DeviceState.SETTINGS

        assert ready.toggle_setting("auto_reboot") is True

        with pytest.raises(InvalidStateError):
            ready.reboot()

        ready.close_settings()
        assert ready.state == DeviceState.PIT_READY
        assert ready.settings.auto_reboot is True

    def test_toggle_outside_settings(self, ready):
        with pytest.raises(InvalidStateError):
            ready.toggle_setting("safe_mode")

    def test_unknown_setting(self, ready):
        ready.open_settings()
        with pytest.raises(KeyError):
            ready.toggle_setting("turbo")

    def test_save(self, transport, tmp_path):
        store = SettingsStore(str(tmp_path / "heimdall.cfg"))
        device = DeviceSession(transport, settings=store.load())

        device.open_settings()
        device.toggle_setting("verify_flash")
        device.toggle_setting("safe_mode")
        device.close_settings(store)

        assert store.load() == Settings(auto_reboot=False, verify_flash=True, safe_mode=False)
        assert device.state == DeviceState.NO_DEVICE


def test_close(ready, transport):
    ready.close()

    assert ready.state == DeviceState.NO_DEVICE
    assert transport.closed == 1
    assert ready.pit is None
