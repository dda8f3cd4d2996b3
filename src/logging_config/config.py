"""Logging Configuration.

Levels, output formats and slow-event thresholds for the dispatch service.
"""

from dataclasses import dataclass, field
from enum import Enum


class LogLevel(str, Enum):
    """Log level options."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LogFormat(str, Enum):
    """Log output format."""
    JSON = "json"
    CONSOLE = "console"


@dataclass
class LoggingConfig:
    """Structured logging configuration."""

    level: LogLevel = LogLevel.INFO
    format: LogFormat = LogFormat.JSON
    include_caller: bool = True
    # handle_event calls slower than this are logged at WARNING
    slow_threshold_ms: float = 2000.0
    service_name: str = "push-dispatch"
    env_prefix: str = "PUSH_DISPATCH_"
    quiet_loggers: list[str] = field(default_factory=lambda: ["asyncio", "httpx", "httpcore"])


DEFAULT_LOGGING_CONFIG = LoggingConfig()
