"""
Shared fixtures for the cec-mqtt tests.

The CEC connection and MQTT client are replaced by mocks; the cec-client
subprocess is replaced by FakeProcess, which answers ``scan`` and ``q``.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from cec_mqtt.cec_protocol import DeviceInfo

SCAN_OUTPUT = [
    "requesting CEC bus information ...",
    "CEC bus information",
    "===================",
    "device #0: TV",
    "address:       0.0.0.0",
    "active source: no",
    "vendor:        Samsung",
    "osd string:    TV",
    "CEC version:   1.4",
    "power status:  standby",
    "language:      eng",
    "",
    "",
    "device #4: Playback 1",
    "address:       1.0.0.0",
    "active source: yes",
    "vendor:        Sony",
    "osd string:    PlayStation 4",
    "CEC version:   1.4",
    "power status:  on",
    "language:      ???",
    "",
    "",
    "currently active source: Playback 1 (4)",
]

STARTUP_OUTPUT = [
    "opening a connection to the CEC adapter...",
    "NOTICE:  [             266]\tCEC client registered: libCEC version = 6.0.2, "
    "client version = 6.0.2, firmware version = 1, logical address(es) = Recorder 1 (1) , "
    "physical address: 1.0.0.0",
    "waiting for input",
]


class FakeProcess:
    """Stands in for the asyncio cec-client subprocess."""

    def __init__(self, startup=STARTUP_OUTPUT, scan=SCAN_OUTPUT):
        self.stdout = asyncio.StreamReader()
        self.stdin = MagicMock()
        self.stdin.write = MagicMock(side_effect=self._on_write)
        self.stdin.drain = AsyncMock()
        self.stdin.is_closing = MagicMock(return_value=False)
        self.returncode = None
        self.written = []
        self._scan = scan
        self._exited = asyncio.Event()
        self.feed(*startup)

    def feed(self, *lines):
        for line in lines:
            self.stdout.feed_data((line + "\n").encode())

    def exit(self, returncode=0):
        self.returncode = returncode
        self.stdout.feed_eof()
        self._exited.set()

    def kill(self):
        self.exit(-9)

    async def wait(self):
        await self._exited.wait()
        return self.returncode

    def _on_write(self, data):
        line = data.decode().strip()
        self.written.append(line)
        if line == "scan":
            self.feed(*self._scan)
        elif line == "q":
            self.exit(0)


async def wait_for_awaits(mock, count, timeout=1.0):
    """Wait until an AsyncMock has been awaited ``count`` times."""

    async def _poll():
        while mock.await_count < count:
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_poll(), timeout)


@pytest.fixture
def mock_mqtt_client():
    client = MagicMock()
    client.publish = AsyncMock(return_value=True)
    client.subscribe = AsyncMock()
    client.connected = True
    return client


@pytest.fixture
def two_devices():
    return {
        "TV": DeviceInfo(
            logical_address=0,
            active_source=False,
            osd_name="TV",
            physical_address="0.0.0.0",
            power_status="standby",
            vendor="Samsung",
        ),
        "Playback 1": DeviceInfo(
            logical_address=4,
            active_source=True,
            osd_name="PlayStation 4",
            physical_address="1.0.0.0",
            power_status="on",
            vendor="Sony",
        ),
    }


@pytest.fixture
def mock_cec(two_devices):
    cec = MagicMock()
    cec.list = AsyncMock(return_value=two_devices)
    cec.transmit = AsyncMock()
    cec.key_send = AsyncMock()
    cec.destroy = AsyncMock()
    return cec
