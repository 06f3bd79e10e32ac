"""
Core modules for the plotter bridge.

Provides serial device discovery, the ordered command queue and the
single-writer relay worker that talks to the control board.
"""

from .errors import (
    BridgeError, DiscoveryCancelled, DeviceOpenError,
    RelayError, AcknowledgmentTimeout, QueueFullError
)
from .locator import DeviceLocator, locate
from .command_queue import CommandQueue, QueueInterrupted
from .relay import CommandRelay, RelayState

__all__ = [
    'BridgeError',
    'DiscoveryCancelled',
    'DeviceOpenError',
    'RelayError',
    'AcknowledgmentTimeout',
    'QueueFullError',
    'DeviceLocator',
    'locate',
    'CommandQueue',
    'QueueInterrupted',
    'CommandRelay',
    'RelayState',
]
