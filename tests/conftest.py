"""
Shared fixtures: a scripted in-memory transport and PIT builders
"""

import struct
from collections import deque

import pytest

from pyheimdall.pit import PitEntry, PitTable, PitParser
from pyheimdall.usb_device import Transport
from pyheimdall.exceptions import TransportError, TransportTimeoutError


def ack(status=0, value=0):
    """Build a 16-byte acknowledgment frame"""
    return struct.pack("<IIII", status, value, 0, 0)


class FakeTransport(Transport):
    """
    Transport that records every call

    ``responses`` is consumed by receive_bulk in order; an exception
    instance in the queue is raised instead of returned. When the queue
    is empty an accepting ACK is returned (or a timeout if auto_ack is off).
    """

    def __init__(self, responses=None, auto_ack=True, fail_open=False):
        self.responses = deque(responses or [])
        self.auto_ack = auto_ack
        self.fail_open = fail_open
        self.sent = []
        self.log = []
        self.timeouts = []
        self.opened = 0
        self.closed = 0

    def open(self, selector=None):
        if self.fail_open:
            raise TransportError("No Samsung device found in Download mode")
        self.opened += 1
        return f"handle-{self.opened}"

    def close(self, handle):
        self.closed += 1

    def send_bulk(self, handle, data):
        self.sent.append(bytes(data))
        self.log.append(("send", len(data)))
        return len(data)

    def receive_bulk(self, handle, max_length, timeout):
        self.log.append(("recv", max_length))
        self.timeouts.append(timeout)
        if self.responses:
            response = self.responses.popleft()
        elif self.auto_ack:
            response = ack()
        else:
            response = TransportTimeoutError("USB read timeout")

        if isinstance(response, Exception):
            raise response
        return response


def make_entry(identifier, name, flash_filename="", block_size=512, block_count=1024):
    return PitEntry(
        binary_type=0,
        device_type=2,
        identifier=identifier,
        attributes=5,
        update_attributes=1,
        block_size=block_size,
        block_count=block_count,
        partition_name=name,
        flash_filename=flash_filename,
    )


def make_table(names=("BOOT", "RECOVERY", "RADIO", "FACTORYFS"), device_name="GT-I9000"):
    entries = [make_entry(i + 1, name, f"{name.lower()}.img") for i, name in enumerate(names)]
    return PitTable(device_name=device_name, reserved1=0xAABBCCDD, reserved2=7, entries=entries)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def pit_table():
    return make_table()


@pytest.fixture
def pit_bytes(pit_table):
    return PitParser().serialize(pit_table)
