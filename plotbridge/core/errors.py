"""
Exception types for the plotter bridge.
"""

from typing import Optional


class BridgeError(Exception):
    """Base class for all bridge errors."""


class DiscoveryCancelled(BridgeError):
    """Device discovery was aborted before a port was found."""


class DeviceOpenError(BridgeError):
    """A matching serial port was found but could not be opened."""

    def __init__(self, port: str, cause: Optional[Exception] = None):
        self.port = port
        self.cause = cause
        message = f"Could not open serial port {port}"
        if cause is not None:
            message += f": {cause}"
        super().__init__(message)


class RelayError(BridgeError):
    """Writing a command or reading its acknowledgment failed."""

    def __init__(self, command: str, message: str):
        self.command = command
        super().__init__(f"{message} (command {command!r})")


class AcknowledgmentTimeout(RelayError):
    """The device did not answer within the configured number of reads."""


class QueueFullError(BridgeError):
    """Accepting a batch would exceed the configured queue depth."""

    def __init__(self, depth: int, batch_size: int, max_depth: int):
        self.depth = depth
        self.batch_size = batch_size
        self.max_depth = max_depth
        super().__init__(
            f"Queue full: {depth} queued + {batch_size} new > {max_depth}"
        )
