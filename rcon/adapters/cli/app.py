"""
Main CLI application
"""
import typer
from pathlib import Path
from typing import Optional

from ...core.logging import setup_logging, get_logger
from .agent import create_agent_app
from .broker import create_broker_app

logger = get_logger(__name__)

# Create main app
app = typer.Typer(
    name="rcon",
    add_completion=False,
    help="Reverse shell access to machines behind NAT",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

# Create sub-apps
app.add_typer(create_broker_app(), name="broker")
app.add_typer(create_agent_app(), name="agent")


@app.callback()
def main(
    log_level: str = typer.Option(
        "INFO",
        "--log-level",
        "-l",
        help="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    ),
    log_file: Optional[Path] = typer.Option(
        None,
        "--log-file",
        help="Log file path",
    ),
):
    """
    single-rcon - reverse shell access to machines behind NAT

    Use subcommands to run either role:
    - broker: Rendezvous point with a reachable address
    - agent: Runs on the target machine and dials the broker
    """
    setup_logging(level=log_level, log_file=log_file)


def run():
    """CLI entry point"""
    app()


if __name__ == "__main__":
    run()
