"""Cross-cutting infrastructure: logging and time."""

from fairshare_core.core.clock import Clock, utcnow
from fairshare_core.core.logging import LogFormat, LogLevel, configure_logging

__all__ = [
    "Clock",
    "utcnow",
    "LogFormat",
    "LogLevel",
    "configure_logging",
]
