#!/usr/bin/env python3
"""
Main entry point for the plotter bridge.

Usage:
    plotbridge                        # Auto-detect the board, listen on 7878
    plotbridge --port 8080            # Listen on another port
    plotbridge --device /dev/ttyACM0  # Wait for a specific serial port
"""

import sys
import argparse
import copy
import signal
import logging
import threading
from pathlib import Path
from typing import Optional

import yaml

from plotbridge.core import (
    DeviceLocator, CommandQueue, CommandRelay,
    DiscoveryCancelled, DeviceOpenError, RelayError
)
from plotbridge.api import create_app, APIServer
from plotbridge.logger import get_logger, log_exception, LogCategory, LogLevel


DEFAULT_CONFIG = {
    'api': {
        'host': '::',
        'port': 7878,
    },
    'device': {
        'name': None,
        'product_marker': 'EiBotBoard',
        'baudrate': 9600,
        'timeout': 1.0,
        'poll_interval': 1.0,
    },
    'relay': {
        'ack_read_limit': 0,
    },
    'queue': {
        'max_depth': 0,
    },
    'logging': {
        'level': 'INFO',
        'file': None,
        'dir': None,
    },
}

CONFIG_PATHS = [
    Path(__file__).parent / 'config' / 'settings.yaml',
    Path('/etc/plotbridge/settings.yaml'),
    Path('settings.yaml'),
]

# Set by signal handlers or a fatal relay error
shutdown_event = threading.Event()
exit_code = 0


def merge_config(base: dict, override: dict) -> dict:
    """Recursively merge override into a copy of base."""
    result = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = merge_config(result[key], value)
        else:
            result[key] = value
    return result


def load_config(path: Optional[str] = None) -> dict:
    """
    Load configuration from YAML.

    An explicit path must exist; otherwise the first readable file from
    CONFIG_PATHS is used, and defaults apply when none is found.
    """
    if path is not None:
        with open(path, 'r') as f:
            return merge_config(DEFAULT_CONFIG, yaml.safe_load(f) or {})

    for candidate in CONFIG_PATHS:
        if candidate.exists():
            try:
                with open(candidate, 'r') as f:
                    loaded = yaml.safe_load(f) or {}
                print(f"Loaded config from {candidate}")
                return merge_config(DEFAULT_CONFIG, loaded)
            except (OSError, yaml.YAMLError) as e:
                print(f"WARNING: Failed to load config from {candidate}: {e}")

    return copy.deepcopy(DEFAULT_CONFIG)


def apply_args(config: dict, args: argparse.Namespace) -> dict:
    """Command-line options override the config file."""
    config = copy.deepcopy(config)
    if args.port is not None:
        config['api']['port'] = args.port
    if args.host is not None:
        config['api']['host'] = args.host
    if args.device is not None:
        config['device']['name'] = args.device
    return config


def setup_logging(config: dict) -> None:
    """Configure logging."""
    log_config = config.get('logging', {})
    level = getattr(logging, str(log_config.get('level') or 'INFO').upper())

    handlers = [logging.StreamHandler(sys.stdout)]
    log_file = log_config.get('file')
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True
    )

    if log_config.get('dir'):
        get_logger().setup_file_logging(log_config['dir'])


def request_shutdown(code: int = 0) -> None:
    global exit_code
    if code:
        exit_code = code
    shutdown_event.set()


def signal_handler(signum, frame):
    """Handle shutdown signals."""
    get_logger().system(f"Shutdown requested (signal {signum})", source="main")
    request_shutdown(0)


def on_relay_failure(error: RelayError) -> None:
    """Relay failures end the process."""
    get_logger().system("Relay failed, shutting down", level=LogLevel.CRITICAL, source="main")
    request_shutdown(1)


def open_device(config: dict):
    """Wait for the control board and open it. Returns (handle, port name)."""
    device_config = config['device']
    locator = DeviceLocator(
        explicit_name=device_config.get('name'),
        product_marker=device_config['product_marker'],
        baudrate=device_config['baudrate'],
        timeout=device_config['timeout'],
        poll_interval=device_config['poll_interval']
    )
    handle = locator.locate(stop_event=shutdown_event)
    return handle, getattr(handle, 'port', None) or device_config.get('name')


def run(config: dict) -> int:
    """Run the bridge until interrupted. Returns the process exit status."""
    syslog = get_logger()

    syslog.device("Waiting for serial connection...", source="main")
    try:
        handle, device_name = open_device(config)
    except DiscoveryCancelled:
        syslog.system("Startup cancelled before a device was found", source="main")
        return 0
    except DeviceOpenError as e:
        log_exception(LogCategory.DEVICE, "Cannot open control board", e,
                      source="main", level=LogLevel.CRITICAL)
        return 1

    syslog.device(f"Serial connection {device_name or 'unknown'} opened", source="main")

    command_queue = CommandQueue(max_depth=config['queue']['max_depth'])
    relay = CommandRelay(
        handle, command_queue,
        on_fatal=on_relay_failure,
        ack_read_limit=config['relay']['ack_read_limit']
    )

    app = create_app(command_queue, relay=relay, device_name=device_name, config=config)
    api_server = APIServer(app, config['api']['host'], config['api']['port'])

    try:
        relay.start()
        api_server.start(threaded=True)

        while not shutdown_event.wait(0.5):
            pass
    finally:
        api_server.stop()
        relay.stop()
        handle.close()
        syslog.system("Cleanup complete", source="main")

    return exit_code


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description='HTTP to serial bridge for pen plotters')
    parser.add_argument('-p', '--port', type=int, default=None,
                        help='Port to listen on (default 7878)')
    parser.add_argument('-d', '--device', default=None,
                        help='Serial device of the control board (default: auto-detect)')
    parser.add_argument('--host', default=None,
                        help='Address to bind (default: all interfaces)')
    parser.add_argument('-c', '--config', default=None,
                        help='Path to a YAML settings file')
    args = parser.parse_args()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    config = apply_args(load_config(args.config), args)
    setup_logging(config)

    sys.exit(run(config))


if __name__ == '__main__':
    main()
