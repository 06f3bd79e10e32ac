"""
Unit tests for the command relay.

Tests cover:
- Wire format of a single exchange
- Skipping blank and partial reads
- Strict write/acknowledge alternation
- Queue draining on the worker thread
- Fatal handling of write/read failures
"""

import time

import pytest

from plotbridge.core import (
    CommandQueue, CommandRelay, RelayState, RelayError, AcknowledgmentTimeout
)
from plotbridge.logger import get_logger

from tests.conftest import FakeSerial


def wait_until(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


def assert_strict_alternation(events):
    """Every write is followed by a non-blank read before the next write."""
    awaiting = False
    for kind, data in events:
        if kind == "write":
            assert not awaiting, "second write issued before acknowledgment"
            awaiting = True
        elif kind == "read" and data.strip():
            assert awaiting, "acknowledgment read without a pending write"
            awaiting = False
    assert not awaiting


class TestRelayCommand:
    """Tests for a single write/acknowledge exchange."""

    def test_appends_carriage_return_and_flushes(self, fake_serial):
        relay = CommandRelay(fake_serial, CommandQueue())

        response = relay.relay_command("SM,1000,100,100")

        assert response == "OK"
        assert fake_serial.events[0] == ("write", b"SM,1000,100,100\r")
        assert fake_serial.events[1] == ("flush", None)
        assert relay.state == RelayState.IDLE
        assert relay.relayed_count == 1
        assert relay.last_command == "SM,1000,100,100"
        assert relay.last_response == "OK"

    def test_skips_blank_lines_and_timeouts(self):
        device = FakeSerial(reply_script=[b"", b"\r\n", b"   \n", b"OK\r\n"])
        relay = CommandRelay(device, CommandQueue())

        assert relay.relay_command("V") == "OK"
        reads = [data for kind, data in device.events if kind == "read"]
        assert reads == [b"", b"\r\n", b"   \n", b"OK\r\n"]

    def test_joins_partial_reads(self):
        device = FakeSerial(reply_script=[b"EBBv13_and_ab", b"", b"ove EB Firmware\r\n"])
        relay = CommandRelay(device, CommandQueue())

        assert relay.relay_command("V") == "EBBv13_and_above EB Firmware"

    def test_only_first_line_is_the_acknowledgment(self):
        device = FakeSerial(reply_script=[b"0,0\r\n", b"OK\r\n"])
        relay = CommandRelay(device, CommandQueue())

        assert relay.relay_command("QB") == "0,0"

    def test_response_content_not_interpreted(self):
        device = FakeSerial(reply_script=[b"!8 Err: Unknown command\r\n"])
        relay = CommandRelay(device, CommandQueue())

        assert relay.relay_command("XX") == "!8 Err: Unknown command"
        assert relay.state == RelayState.IDLE

    def test_write_failure_raises(self, fake_serial):
        fake_serial.fail_write = True
        relay = CommandRelay(fake_serial, CommandQueue())

        with pytest.raises(RelayError) as exc_info:
            relay.relay_command("SP,1")
        assert exc_info.value.command == "SP,1"

    def test_read_failure_raises(self, fake_serial):
        fake_serial.fail_read = True
        relay = CommandRelay(fake_serial, CommandQueue())

        with pytest.raises(RelayError):
            relay.relay_command("SP,1")

    def test_bounded_acknowledgment_wait(self):
        device = FakeSerial(reply_script=[])
        relay = CommandRelay(device, CommandQueue(), ack_read_limit=3)

        with pytest.raises(AcknowledgmentTimeout):
            relay.relay_command("SP,0")

        reads = [data for kind, data in device.events if kind == "read"]
        assert len(reads) == 3

    def test_commands_and_responses_logged(self, fake_serial):
        relay = CommandRelay(fake_serial, CommandQueue())
        relay.relay_command("SP,1")

        messages = [e["message"] for e in get_logger().get_logs(category="COMM")]
        assert "Writing to serial port: SP,1" in messages
        assert "Response from serial port: OK" in messages


class TestRelayWorker:
    """Tests for the queue-draining worker."""

    def test_strict_alternation_over_many_commands(self):
        device = FakeSerial(reply_script=[b"", b"\r\n", b"OK\r\n"])
        relay = CommandRelay(device, CommandQueue())

        for i in range(20):
            relay.relay_command(f"SM,{i},0,0")

        assert_strict_alternation(device.events)
        assert len(device.writes) == 20

    def test_worker_relays_in_queue_order(self, fake_serial):
        q = CommandQueue()
        relay = CommandRelay(fake_serial, q)
        q.put_batch(["a", "b", "c"])

        relay.start()
        try:
            assert wait_until(lambda: relay.relayed_count == 3)
            q.put_batch(["d"])
            assert wait_until(lambda: relay.relayed_count == 4)
        finally:
            relay.stop()

        assert fake_serial.writes == [b"a\r", b"b\r", b"c\r", b"d\r"]
        assert_strict_alternation(fake_serial.events)
        assert relay.state == RelayState.STOPPED

    def test_idle_worker_does_not_touch_device(self, fake_serial):
        relay = CommandRelay(fake_serial, CommandQueue())
        relay.start()
        try:
            time.sleep(0.05)
            assert relay.state == RelayState.IDLE
            assert relay.is_running
        finally:
            relay.stop()
        assert fake_serial.events == []

    def test_write_failure_is_fatal(self, fake_serial):
        fake_serial.fail_write = True
        failures = []
        q = CommandQueue()
        q.put_batch(["SP,1", "SP,0"])
        relay = CommandRelay(fake_serial, q, on_fatal=failures.append)

        relay.run()

        assert len(failures) == 1
        assert isinstance(failures[0], RelayError)
        assert relay.state == RelayState.FAILED
        assert not relay.is_running
        assert "Write failed" in relay.last_error
        # Remaining command is not attempted
        assert q.drain() == ["SP,0"]

    def test_acknowledgment_timeout_is_fatal(self):
        device = FakeSerial(reply_script=[])
        failures = []
        q = CommandQueue()
        q.put("SP,1")
        relay = CommandRelay(device, q, on_fatal=failures.append, ack_read_limit=2)

        relay.run()

        assert isinstance(failures[0], AcknowledgmentTimeout)
        critical = get_logger().get_logs(level="CRITICAL")
        assert len(critical) == 1
        assert critical[0]["details"]["exception_type"] == "AcknowledgmentTimeout"

    def test_unexpected_device_error_is_fatal(self):
        termios = pytest.importorskip("termios")

        class UnpluggedSerial(FakeSerial):
            def flush(self):
                raise termios.error(5, "Input/output error")

        device = UnpluggedSerial()
        failures = []
        q = CommandQueue()
        q.put_batch(["SP,1", "SP,0"])
        relay = CommandRelay(device, q, on_fatal=failures.append)

        relay.start()
        try:
            assert wait_until(lambda: failures)
        finally:
            relay.stop()

        assert isinstance(failures[0], RelayError)
        assert isinstance(failures[0].__cause__, termios.error)
        assert relay.state == RelayState.FAILED
        assert not relay.is_running
        assert "Unexpected device error" in relay.last_error
        assert q.drain() == ["SP,0"]

    def test_stop_wakes_blocked_worker(self, fake_serial):
        q = CommandQueue()
        relay = CommandRelay(fake_serial, q)
        relay.start()
        assert wait_until(lambda: relay.state == RelayState.IDLE)

        started = time.monotonic()
        relay.stop(timeout=5.0)

        assert time.monotonic() - started < 1.0
        assert relay.state == RelayState.STOPPED
        assert q.depth == 0
