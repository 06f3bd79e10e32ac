"""
Serial device discovery for the plotter control board.

Scans serial ports until the target board shows up, then opens it.
Either an explicit port name is matched exactly, or the first USB port
whose product string contains the board marker is used.
"""

import logging
import threading
import time
from typing import Callable, Iterable, List, Optional

import serial
import serial.tools.list_ports

from .errors import DeviceOpenError, DiscoveryCancelled

logger = logging.getLogger(__name__)

# Product string advertised by the EiBotBoard (AxiDraw control board)
DEFAULT_PRODUCT_MARKER = "EiBotBoard"
DEFAULT_BAUDRATE = 9600
DEFAULT_TIMEOUT = 1.0
DEFAULT_POLL_INTERVAL = 1.0


def list_serial_ports() -> List:
    """Enumerate serial ports via pyserial."""
    return list(serial.tools.list_ports.comports())


def open_serial_port(port: str, baudrate: int, timeout: float) -> serial.Serial:
    """Open a serial port with the board's fixed line settings."""
    return serial.Serial(
        port=port,
        baudrate=baudrate,
        bytesize=serial.EIGHTBITS,
        parity=serial.PARITY_NONE,
        stopbits=serial.STOPBITS_ONE,
        timeout=timeout,
        write_timeout=timeout,
        xonxoff=False,
        rtscts=False,
        dsrdtr=False
    )


def is_usb_port(port) -> bool:
    """A port is USB when pyserial reports a USB vendor id for it."""
    return getattr(port, 'vid', None) is not None


class DeviceLocator:
    """
    Finds and opens the serial connection to the control board.

    Scanning is retried every ``poll_interval`` seconds with no attempt
    limit. Setting ``stop_event`` aborts the wait.
    """

    def __init__(self, explicit_name: Optional[str] = None,
                 product_marker: str = DEFAULT_PRODUCT_MARKER,
                 baudrate: int = DEFAULT_BAUDRATE,
                 timeout: float = DEFAULT_TIMEOUT,
                 poll_interval: float = DEFAULT_POLL_INTERVAL,
                 scanner: Callable[[], Iterable] = list_serial_ports,
                 opener: Callable[..., object] = open_serial_port):
        """
        Initialize device locator.

        Args:
            explicit_name: Exact port name to wait for (disables USB heuristic)
            product_marker: Substring of the USB product string to look for
            baudrate: Serial baud rate
            timeout: Serial read/write timeout in seconds
            poll_interval: Delay between scans in seconds
            scanner: Callable returning port descriptors
            opener: Callable(port, baudrate, timeout) returning an open handle
        """
        self._explicit_name = explicit_name
        self._product_marker = product_marker
        self._baudrate = baudrate
        self._timeout = timeout
        self._poll_interval = poll_interval
        self._scanner = scanner
        self._opener = opener
        self._scan_count = 0

    @property
    def scan_count(self) -> int:
        """Number of scans performed so far."""
        return self._scan_count

    def matches(self, port) -> bool:
        """Check whether a port descriptor is the target board."""
        if self._explicit_name:
            return port.device == self._explicit_name

        if not is_usb_port(port):
            return False

        product = getattr(port, 'product', None) or ""
        return self._product_marker in product

    def find(self, ports: Iterable):
        """Return the first matching port descriptor, or None."""
        for port in ports:
            if self.matches(port):
                return port
        return None

    def scan(self):
        """Run one enumeration pass. Enumeration errors count as no match."""
        self._scan_count += 1
        try:
            ports = self._scanner()
        except Exception as e:
            logger.warning("Serial port enumeration failed: %s", e)
            return None
        return self.find(ports)

    def wait_for_port(self, stop_event: Optional[threading.Event] = None):
        """Block until a matching port descriptor is found."""
        while True:
            if stop_event is not None and stop_event.is_set():
                raise DiscoveryCancelled("Device discovery cancelled")

            port = self.scan()
            if port is not None:
                return port

            if stop_event is not None:
                if stop_event.wait(self._poll_interval):
                    raise DiscoveryCancelled("Device discovery cancelled")
            else:
                time.sleep(self._poll_interval)

    def open(self, port):
        """Open a matched port. Failure is fatal for the caller."""
        try:
            handle = self._opener(port.device, self._baudrate, self._timeout)
        except (serial.SerialException, OSError, ValueError) as e:
            raise DeviceOpenError(port.device, e) from e

        logger.info("Opened %s at %d baud", port.device, self._baudrate)
        return handle

    def locate(self, stop_event: Optional[threading.Event] = None):
        """
        Wait for the control board and open it.

        Returns:
            Open serial handle.

        Raises:
            DiscoveryCancelled: stop_event was set while waiting.
            DeviceOpenError: the matching port could not be opened.
        """
        if self._explicit_name:
            logger.info("Waiting for serial port %s...", self._explicit_name)
        else:
            logger.info("Waiting for USB device with product '%s'...", self._product_marker)

        port = self.wait_for_port(stop_event)
        logger.info("Found serial port %s after %d scan(s)", port.device, self._scan_count)
        return self.open(port)


def locate(explicit_name: Optional[str] = None,
           stop_event: Optional[threading.Event] = None, **kwargs):
    """Shortcut for ``DeviceLocator(explicit_name, **kwargs).locate(stop_event)``."""
    return DeviceLocator(explicit_name, **kwargs).locate(stop_event)
