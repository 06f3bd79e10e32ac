"""
Structured logging for the plotter bridge.

Keeps recent entries in a ring buffer for the HTTP API, optionally writes
rotating text and JSONL files, and mirrors every entry onto the standard
logging hierarchy under ``plotbridge.<category>``.
"""

import json
import logging
import threading
import traceback
from collections import deque
from datetime import datetime
from enum import Enum
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Dict, Any, List, Union


# === Log Categories ===
class LogCategory(str, Enum):
    SYSTEM = "SYSTEM"       # Startup, shutdown, configuration
    API = "API"             # HTTP requests and responses
    QUEUE = "QUEUE"         # Command queue activity
    DEVICE = "DEVICE"       # Serial discovery and opening
    COMM = "COMM"           # Commands written, acknowledgments read


# === Log Levels ===
class LogLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


LEVEL_MAP = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARNING: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
    LogLevel.CRITICAL: logging.CRITICAL,
}

LEVEL_PRIORITY = {
    LogLevel.DEBUG: 0,
    LogLevel.INFO: 1,
    LogLevel.WARNING: 2,
    LogLevel.ERROR: 3,
    LogLevel.CRITICAL: 4,
}


# === Log Entry ===
class LogEntry:
    """Represents a single log entry."""

    _counter = 0
    _counter_lock = threading.Lock()

    def __init__(
        self,
        level: LogLevel,
        category: LogCategory,
        message: str,
        source: str = "",
        details: Optional[Dict[str, Any]] = None
    ):
        with LogEntry._counter_lock:
            LogEntry._counter += 1
            self.id = LogEntry._counter

        self.timestamp = datetime.now()
        self.level = level
        self.category = category
        self.message = message
        self.source = source
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "level": self.level.value,
            "category": self.category.value,
            "message": self.message,
            "source": self.source,
            "details": self.details
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)

    def __str__(self) -> str:
        ts = self.timestamp.strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]
        src = f"[{self.source}]" if self.source else ""
        return f"{ts} [{self.level.value}] [{self.category.value}] {src} {self.message}"


# === Ring Buffer ===
class LogBuffer:
    """Thread-safe ring buffer for storing recent logs."""

    def __init__(self, max_size: int = 5000):
        self.max_size = max_size
        self.buffer: deque = deque(maxlen=max_size)
        self.lock = threading.Lock()

    def __len__(self) -> int:
        with self.lock:
            return len(self.buffer)

    def add(self, entry: LogEntry) -> None:
        with self.lock:
            self.buffer.append(entry)

    def get_all(self) -> List[Dict[str, Any]]:
        with self.lock:
            return [e.to_dict() for e in self.buffer]

    def get_filtered(
        self,
        level: Optional[LogLevel] = None,
        category: Optional[LogCategory] = None,
        since_id: Optional[int] = None,
        search: Optional[str] = None,
        limit: int = 500
    ) -> List[Dict[str, Any]]:
        """Get filtered logs, oldest first, at most ``limit`` newest entries."""
        with self.lock:
            result = []
            search_lower = search.lower() if search else None

            for entry in reversed(self.buffer):
                if since_id is not None and entry.id <= since_id:
                    continue

                # This level and higher
                if level is not None:
                    if LEVEL_PRIORITY[entry.level] < LEVEL_PRIORITY[level]:
                        continue

                if category is not None and entry.category != category:
                    continue

                if search_lower:
                    if (search_lower not in entry.message.lower() and
                            search_lower not in entry.source.lower()):
                        continue

                result.append(entry.to_dict())

                if len(result) >= limit:
                    break

            return list(reversed(result))

    def clear(self) -> None:
        with self.lock:
            self.buffer.clear()


# === Main Logger Class ===
class BridgeLogger:
    """Process-wide structured logger."""

    _instance = None
    _lock = threading.Lock()

    def __new__(cls):
        with cls._lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
                cls._instance._initialized = False
            return cls._instance

    def __init__(self):
        if self._initialized:
            return

        self._initialized = True
        self.buffer = LogBuffer(max_size=5000)
        self.file_handler: Optional[RotatingFileHandler] = None
        self.json_file_handler: Optional[RotatingFileHandler] = None

    def setup_file_logging(self, log_dir: Union[str, Path],
                           max_bytes: int = 10 * 1024 * 1024,
                           backup_count: int = 5) -> None:
        """Write entries to rotating plotbridge.log and plotbridge.jsonl files."""
        self.close_files()

        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)

        formatter = logging.Formatter('%(message)s')

        self.file_handler = RotatingFileHandler(
            log_dir / "plotbridge.log",
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding='utf-8'
        )
        self.file_handler.setFormatter(formatter)

        self.json_file_handler = RotatingFileHandler(
            log_dir / "plotbridge.jsonl",
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding='utf-8'
        )
        self.json_file_handler.setFormatter(formatter)

    def close_files(self) -> None:
        for handler in (self.file_handler, self.json_file_handler):
            if handler is not None:
                handler.close()
        self.file_handler = None
        self.json_file_handler = None

    def log(
        self,
        level: LogLevel,
        category: LogCategory,
        message: str,
        source: str = "",
        details: Optional[Dict[str, Any]] = None
    ) -> LogEntry:
        """Log a message."""
        entry = LogEntry(level, category, message, source, details)
        numeric_level = LEVEL_MAP[level]

        self.buffer.add(entry)

        if self.file_handler is not None:
            self.file_handler.handle(logging.makeLogRecord(
                {'msg': str(entry), 'levelno': numeric_level}))
        if self.json_file_handler is not None:
            self.json_file_handler.handle(logging.makeLogRecord(
                {'msg': entry.to_json(), 'levelno': numeric_level}))

        std_logger = logging.getLogger(f"plotbridge.{category.value.lower()}")
        if source:
            std_logger.log(numeric_level, "[%s] %s", source, message)
        else:
            std_logger.log(numeric_level, "%s", message)

        return entry

    # Category-specific convenience methods
    def system(self, message: str, level: LogLevel = LogLevel.INFO, source: str = "", details: Dict = None):
        return self.log(level, LogCategory.SYSTEM, message, source, details)

    def api(self, message: str, level: LogLevel = LogLevel.INFO, source: str = "", details: Dict = None):
        return self.log(level, LogCategory.API, message, source, details)

    def queue(self, message: str, level: LogLevel = LogLevel.DEBUG, source: str = "", details: Dict = None):
        return self.log(level, LogCategory.QUEUE, message, source, details)

    def device(self, message: str, level: LogLevel = LogLevel.INFO, source: str = "", details: Dict = None):
        return self.log(level, LogCategory.DEVICE, message, source, details)

    def comm(self, message: str, level: LogLevel = LogLevel.INFO, source: str = "", details: Dict = None):
        return self.log(level, LogCategory.COMM, message, source, details)

    def get_logs(
        self,
        level: Optional[str] = None,
        category: Optional[str] = None,
        since_id: Optional[int] = None,
        search: Optional[str] = None,
        limit: int = 500
    ) -> List[Dict[str, Any]]:
        """
        Get logs with optional filters.

        Raises:
            ValueError: unknown level or category name.
        """
        lvl = LogLevel(level.upper()) if level else None
        cat = LogCategory(category.upper()) if category else None
        return self.buffer.get_filtered(lvl, cat, since_id, search, limit)

    def get_stats(self) -> Dict[str, Any]:
        """Counts by level and category, plus the 10 newest errors (newest first)."""
        logs = self.buffer.get_all()

        stats = {
            "total": len(logs),
            "by_level": {},
            "by_category": {},
            "recent_errors": []
        }

        for log in reversed(logs):
            level = log["level"]
            category = log["category"]

            stats["by_level"][level] = stats["by_level"].get(level, 0) + 1
            stats["by_category"][category] = stats["by_category"].get(category, 0) + 1

            if level in ("ERROR", "CRITICAL"):
                if len(stats["recent_errors"]) < 10:
                    stats["recent_errors"].append(log)

        return stats

    def clear(self):
        """Clear log buffer (file logs remain)."""
        self.buffer.clear()


# === Global Logger Instance ===
logger = BridgeLogger()


def get_logger() -> BridgeLogger:
    """Get the global logger instance."""
    return logger


def log_exception(category: LogCategory, message: str, exception: BaseException,
                  source: str = "", level: LogLevel = LogLevel.ERROR) -> LogEntry:
    """Log an exception with its traceback in the entry details."""
    details = {
        "exception_type": type(exception).__name__,
        "exception_message": str(exception),
        "traceback": "".join(traceback.format_exception(
            type(exception), exception, exception.__traceback__))
    }
    return logger.log(level, category, f"{message}: {exception}", source, details)


def get_log_categories() -> List[str]:
    return [c.value for c in LogCategory]


def get_log_levels() -> List[str]:
    return [l.value for l in LogLevel]
