"""
Broker CLI commands
"""
from pathlib import Path

import typer
from rich.markup import escape
from rich.table import Table

from ...core.constants import DEFAULT_BROKER_CONFIG
from ...core.exceptions import RconError
from ...core.keys import key_fingerprint
from ...core.logging import get_logger, get_stdout_console
from ...core.utils import format_host_port
from ...domain.broker import BrokerConfig, BrokerService
from ...domain.identity import load_host_key, load_or_create_host_key
from .common import load_config_dict, fail, install_signal_handlers

logger = get_logger(__name__)
stdout_console = get_stdout_console()


def create_broker_app() -> typer.Typer:
    """Create broker subcommand app"""
    broker_app = typer.Typer(
        name="broker",
        help="Run the rendezvous broker agents dial into",
        add_completion=False,
        no_args_is_help=True,
    )

    broker_app.command(name="run")(broker_run)
    broker_app.command(name="check")(broker_check)

    return broker_app


def _load_config(config_file: Path) -> BrokerConfig:
    return BrokerConfig.from_dict(load_config_dict(config_file))


def broker_run(
    config_file: Path = typer.Option(
        Path(DEFAULT_BROKER_CONFIG),
        "--config", "-c",
        help="Broker configuration file (TOML)",
    ),
):
    """
    Run the broker until SIGINT/SIGTERM

    Agents listed in the configuration may dial in and publish their
    pinned port; every connection to that port is relayed to the agent.
    """
    try:
        config = _load_config(config_file)
        host_key = load_or_create_host_key(config.host_key)
        service = BrokerService(config, host_key)
        address = service.bind()
    except RconError as e:
        raise fail(e)

    install_signal_handlers(service.stop)
    stdout_console.print(
        f"[green]✓[/green] Broker listening on [cyan]{escape(format_host_port(*address))}[/cyan] "
        f"({len(config.agents)} agent(s))"
    )
    service.serve_forever()


def broker_check(
    config_file: Path = typer.Option(
        Path(DEFAULT_BROKER_CONFIG),
        "--config", "-c",
        help="Broker configuration file (TOML)",
    ),
):
    """
    Validate the configuration and host key, then list registered agents
    """
    try:
        config = _load_config(config_file)
        host_key_path = Path(config.host_key).expanduser()
        host_key = load_host_key(host_key_path) if host_key_path.exists() else None
    except RconError as e:
        raise fail(e)

    stdout_console.print(f"[green]✓[/green] Configuration OK: listen [cyan]{escape(config.listen)}[/cyan]")
    if host_key is None:
        stdout_console.print(f"  Host key [yellow]{escape(str(host_key_path))}[/yellow] will be generated on first run")
    else:
        stdout_console.print(f"  Host key {host_key.get_name()} [cyan]{key_fingerprint(host_key)}[/cyan]")

    table = Table(title="Registered agents")
    table.add_column("Agent", style="cyan")
    table.add_column("Key fingerprint")
    table.add_column("Pinned address", style="green")
    for name, identity in sorted(config.agents.items()):
        table.add_row(escape(name), key_fingerprint(identity.key), escape(identity.listen))
    stdout_console.print(table)
