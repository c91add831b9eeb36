"""
Agent CLI commands
"""
from pathlib import Path

import typer
from rich.markup import escape

from ...core.constants import DEFAULT_AGENT_CONFIG, SERVICE_NAME
from ...core.exceptions import RconError
from ...core.keys import key_fingerprint
from ...core.logging import get_logger, get_stdout_console
from ...domain.agent import AgentConfig, TunnelAgent
from ...domain.identity import load_or_create_host_key
from ...infrastructure.systemd import SystemdInstaller
from .common import load_config_dict, fail, install_signal_handlers
from .connection import BrokerConnectionFactory

logger = get_logger(__name__)
stdout_console = get_stdout_console()

CONFIG_HELP = "Agent configuration file (TOML)"


def create_agent_app() -> typer.Typer:
    """Create agent subcommand app"""
    agent_app = typer.Typer(
        name="agent",
        help="Publish this machine's shell through a broker",
        add_completion=False,
    )

    agent_app.callback(invoke_without_command=True)(agent_default)
    agent_app.command(name="check")(agent_check)
    agent_app.command(name="run")(agent_run)
    agent_app.command(name="install")(agent_install)
    agent_app.command(name="uninstall")(agent_uninstall)

    return agent_app


def _load_config(config_file: Path) -> AgentConfig:
    return AgentConfig.from_dict(load_config_dict(config_file))


def _create_agent(config: AgentConfig) -> TunnelAgent:
    host_key = load_or_create_host_key(config.host_key)
    return TunnelAgent(config, host_key, BrokerConnectionFactory())


def agent_default(
    ctx: typer.Context,
    config_file: Path = typer.Option(Path(DEFAULT_AGENT_CONFIG), "--config", "-c", help=CONFIG_HELP),
):
    """
    Publish this machine's shell through a broker

    Without a subcommand, runs [cyan]check[/cyan].
    """
    if ctx.invoked_subcommand is None:
        agent_check(config_file)


def agent_check(
    config_file: Path = typer.Option(Path(DEFAULT_AGENT_CONFIG), "--config", "-c", help=CONFIG_HELP),
):
    """
    Dial the broker, request a forward and cancel it again
    """
    try:
        config = _load_config(config_file)
        agent = _create_agent(config)
        port = agent.check()
    except RconError as e:
        raise fail(e)

    stdout_console.print("[green]✓[/green] Check: SUCCESS")
    stdout_console.print(f"  Broker: [cyan]{escape(config.bridge.address)}[/cyan] as {escape(config.bridge.username)}")
    stdout_console.print(f"  Host key: {agent.host_key.get_name()} [cyan]{key_fingerprint(agent.host_key)}[/cyan]")
    stdout_console.print(f"  Test forward bound port [yellow]{port}[/yellow] (cancelled)")
    stdout_console.print(f"  End users: {len(config.users)}")


def agent_run(
    config_file: Path = typer.Option(Path(DEFAULT_AGENT_CONFIG), "--config", "-c", help=CONFIG_HELP),
):
    """
    Keep the tunnel open and serve shells until SIGINT/SIGTERM

    Exits with status 1 when the tunnel is lost; the service manager
    restarts it.
    """
    try:
        config = _load_config(config_file)
        config.bridge.designated_port
        agent = _create_agent(config)
    except RconError as e:
        raise fail(e)

    install_signal_handlers(agent.stop)
    try:
        agent.run()
    except RconError as e:
        raise fail(e)


def agent_install(
    config_file: Path = typer.Option(Path(DEFAULT_AGENT_CONFIG), "--config", "-c", help=CONFIG_HELP),
):
    """
    Install the agent as a systemd service and start it
    """
    try:
        config = _load_config(config_file)
        config.bridge.designated_port
        SystemdInstaller(config.install).install(config_file)
    except RconError as e:
        raise fail(e)

    stdout_console.print(f"[green]✓[/green] Installed [cyan]{SERVICE_NAME}[/cyan] into {escape(config.install)}")


def agent_uninstall(
    config_file: Path = typer.Option(Path(DEFAULT_AGENT_CONFIG), "--config", "-c", help=CONFIG_HELP),
):
    """
    Stop the systemd service and remove the installation
    """
    try:
        config = _load_config(config_file)
        SystemdInstaller(config.install).uninstall()
    except RconError as e:
        raise fail(e)

    stdout_console.print(f"[green]✓[/green] Uninstalled [cyan]{SERVICE_NAME}[/cyan]")
