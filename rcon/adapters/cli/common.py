"""
Helpers shared by the broker and agent commands
"""
import signal
from pathlib import Path
from typing import Any, Callable, Dict

import typer
from rich.markup import escape

from ...core.exceptions import RconError
from ...core.logging import get_logger, get_stderr_console
from ..config.loader import ConfigLoader

logger = get_logger(__name__)
stderr_console = get_stderr_console()


def load_config_dict(config_file: Path) -> Dict[str, Any]:
    """Read a TOML config with RCON_* environment overrides applied"""
    return ConfigLoader().load(toml_path=config_file)


def fail(error: RconError) -> typer.Exit:
    """Print an error and return the Exit to raise"""
    stderr_console.print(f"[red]Error:[/red] {escape(str(error))}")
    logger.debug("Command failed", exc_info=error)
    return typer.Exit(1)


def install_signal_handlers(stop: Callable[[], None]) -> None:
    """Call ``stop`` on SIGINT or SIGTERM"""
    def handler(signum, frame):
        logger.info(f"Received {signal.Signals(signum).name}, shutting down")
        stop()

    signal.signal(signal.SIGINT, handler)
    signal.signal(signal.SIGTERM, handler)
