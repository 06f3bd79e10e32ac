"""
Command relay worker.

The relay is the only owner of the open serial handle. It takes commands
from the queue one at a time, writes each one terminated by a carriage
return, and waits for the first non-blank reply line before taking the
next. The board does not support pipelining, so there is never more than
one command in flight.
"""

import threading
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

import serial

from plotbridge.logger import get_logger, log_exception, LogCategory, LogLevel

from .command_queue import CommandQueue, QueueInterrupted
from .errors import AcknowledgmentTimeout, RelayError

COMMAND_TERMINATOR = "\r"


class RelayState(Enum):
    """Relay worker state."""
    STOPPED = "stopped"
    IDLE = "idle"
    WRITING = "writing"
    AWAITING_RESPONSE = "awaiting_response"
    FAILED = "failed"


class CommandRelay:
    """
    Drains the command queue into the serial device.

    Write or read failures are fatal: the worker logs the error, stops,
    and calls ``on_fatal`` so the process can shut down.
    """

    def __init__(self, handle, command_queue: CommandQueue,
                 on_fatal: Optional[Callable[[RelayError], None]] = None,
                 ack_read_limit: int = 0,
                 encoding: str = "utf-8"):
        """
        Initialize command relay.

        Args:
            handle: Open serial handle (write, flush, readline)
            command_queue: Queue to drain
            on_fatal: Called from the worker thread after a relay failure
            ack_read_limit: Max timed reads per acknowledgment, 0 = wait forever
            encoding: Text encoding for commands and replies
        """
        self._handle = handle
        self._queue = command_queue
        self._on_fatal = on_fatal
        self._ack_read_limit = max(0, int(ack_read_limit or 0))
        self._encoding = encoding

        self._state = RelayState.STOPPED
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._syslog = get_logger()

        self.relayed_count = 0
        self.last_command: Optional[str] = None
        self.last_response: Optional[str] = None
        self.last_response_time: Optional[datetime] = None
        self.last_error: Optional[str] = None

    @property
    def state(self) -> RelayState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state not in (RelayState.STOPPED, RelayState.FAILED)

    # === Protocol exchange ===

    def relay_command(self, command: str) -> str:
        """
        Write one command and wait for its acknowledgment line.

        Returns:
            The first non-blank line read back from the device.

        Raises:
            RelayError: write or read failed.
            AcknowledgmentTimeout: ack_read_limit reads went by without a line.
        """
        self._state = RelayState.WRITING
        self.last_command = command
        self._syslog.comm(f"Writing to serial port: {command}", source="relay")

        data = (command + COMMAND_TERMINATOR).encode(self._encoding)
        try:
            self._handle.write(data)
            self._handle.flush()
        except (serial.SerialException, OSError) as e:
            raise RelayError(command, f"Write failed: {e}") from e

        self._state = RelayState.AWAITING_RESPONSE
        response = self._read_acknowledgment(command)

        self.last_response = response
        self.last_response_time = datetime.now()
        self.relayed_count += 1
        self._syslog.comm(f"Response from serial port: {response}", source="relay")

        self._state = RelayState.IDLE
        return response

    def _read_acknowledgment(self, command: str) -> str:
        """Read until a complete non-blank line arrives."""
        pending = b""
        attempts = 0

        while True:
            if self._ack_read_limit and attempts >= self._ack_read_limit:
                raise AcknowledgmentTimeout(
                    command, f"No acknowledgment after {attempts} read(s)")
            attempts += 1

            try:
                raw = self._handle.readline()
            except (serial.SerialException, OSError) as e:
                raise RelayError(command, f"Read failed: {e}") from e

            if not raw:
                continue

            pending += raw
            # readline() returns a partial line when the read timeout expires
            if not pending.endswith(b"\n"):
                continue

            line = pending.decode(self._encoding, errors="replace").strip()
            pending = b""
            if line:
                return line

    # === Worker ===

    def run(self) -> None:
        """Relay queued commands until stopped or a relay error occurs."""
        self._state = RelayState.IDLE

        while not self._stop_event.is_set():
            try:
                command = self._queue.get()
            except QueueInterrupted:
                continue

            try:
                self.relay_command(command)
            except RelayError as e:
                self._fail(e)
                return
            except Exception as e:
                # e.g. termios.error from flush() after the board is unplugged
                error = RelayError(command, f"Unexpected device error: {e!r}")
                error.__cause__ = e
                self._fail(error)
                return
            finally:
                self._queue.task_done()

        self._state = RelayState.STOPPED

    def _fail(self, error: RelayError) -> None:
        self._state = RelayState.FAILED
        self.last_error = str(error)
        log_exception(LogCategory.COMM, "Relay stopped", error,
                      source="relay", level=LogLevel.CRITICAL)
        if self._on_fatal is not None:
            self._on_fatal(error)

    def start(self) -> None:
        """Start the relay on its own daemon thread."""
        if self._thread is not None and self._thread.is_alive():
            return

        self._stop_event.clear()
        self._thread = threading.Thread(target=self.run, name="command-relay", daemon=True)
        self._thread.start()
        self._syslog.system("Command relay started", source="relay")

    def stop(self, timeout: Optional[float] = 2.0) -> None:
        """Stop the worker after the current exchange completes."""
        self._stop_event.set()
        self._queue.interrupt()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        if self._state != RelayState.FAILED:
            self._state = RelayState.STOPPED
        self._syslog.system("Command relay stopped", source="relay")
