"""
Core infrastructure layer
"""
from .constants import *
from .exceptions import *
from .logging import setup_logging, get_logger, get_stdout_console, get_stderr_console
from .interfaces import ConnectionFactory, CommandRunner
from .telemetry import Telemetry, get_telemetry
from .keys import (
    parse_public_key,
    canonical_key_bytes,
    key_fingerprint,
    authorized_key_line,
    load_private_key,
    generate_private_key_text,
)
from .utils import (
    parse_host_port,
    format_host_port,
    open_listener,
    close_quietly,
)

__all__ = [
    "setup_logging",
    "get_logger",
    "get_stdout_console",
    "get_stderr_console",
    "ConnectionFactory",
    "CommandRunner",
    "Telemetry",
    "get_telemetry",
    "parse_public_key",
    "canonical_key_bytes",
    "key_fingerprint",
    "authorized_key_line",
    "load_private_key",
    "generate_private_key_text",
    "parse_host_port",
    "format_host_port",
    "open_listener",
    "close_quietly",
]
