"""Structured logging and per-event log context for the dispatch service."""

from src.logging_config.config import LogFormat, LoggingConfig, LogLevel
from src.logging_config.context import EventContext, bind_user, get_context_dict
from src.logging_config.performance import log_performance
from src.logging_config.setup import configure_logging, get_logger

__all__ = [
    "EventContext",
    "LogFormat",
    "LogLevel",
    "LoggingConfig",
    "bind_user",
    "configure_logging",
    "get_context_dict",
    "get_logger",
    "log_performance",
]
