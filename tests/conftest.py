"""
Pytest configuration and shared fixtures for plotter bridge tests.

Provides a scripted fake serial device, fake port descriptors and a
Flask test client wired to a fresh command queue.
"""

from collections import deque
from typing import List, Optional

import pytest
import serial

from plotbridge.api import create_app
from plotbridge.core import CommandQueue
from plotbridge.logger import get_logger


class FakeSerial:
    """
    Stand-in for serial.Serial that records every write and read.

    Each write queues up ``reply_script`` as the lines returned by the
    following readline() calls. An empty readline() models a read timeout.
    """

    def __init__(self, reply_script=(b"OK\r\n",), port: str = "/dev/fake0"):
        self.reply_script = list(reply_script)
        self.port = port
        self.events: List[tuple] = []
        self.closed = False
        self.fail_write = False
        self.fail_read = False
        self._pending: deque = deque()

    def write(self, data: bytes) -> int:
        if self.fail_write:
            raise serial.SerialException("write failed")
        self.events.append(("write", data))
        self._pending.extend(self.reply_script)
        return len(data)

    def flush(self) -> None:
        self.events.append(("flush", None))

    def readline(self) -> bytes:
        if self.fail_read:
            raise serial.SerialException("device disconnected")
        line = self._pending.popleft() if self._pending else b""
        self.events.append(("read", line))
        return line

    def close(self) -> None:
        self.closed = True

    @property
    def writes(self) -> List[bytes]:
        return [data for kind, data in self.events if kind == "write"]


class FakePort:
    """Stand-in for a pyserial ListPortInfo entry."""

    def __init__(self, device: str, vid: Optional[int] = None,
                 pid: Optional[int] = None, product: Optional[str] = None):
        self.device = device
        self.vid = vid
        self.pid = pid
        self.product = product

    def __repr__(self):
        return f"FakePort({self.device!r})"


@pytest.fixture(autouse=True)
def clean_logger():
    """Give every test an empty log buffer and no log files."""
    syslog = get_logger()
    syslog.clear()
    yield syslog
    syslog.close_files()
    syslog.clear()


@pytest.fixture
def fake_serial() -> FakeSerial:
    return FakeSerial()


@pytest.fixture
def command_queue() -> CommandQueue:
    return CommandQueue()


@pytest.fixture
def app(command_queue):
    app = create_app(command_queue, device_name="/dev/fake0")
    app.testing = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def ebb_port() -> FakePort:
    """USB port advertising the EiBotBoard product string."""
    return FakePort("/dev/ttyACM0", vid=0x04D8, pid=0xFD92, product="EiBotBoard")
