"""
systemd service registration for the agent
"""
import os
import subprocess
import sys
from pathlib import Path
from typing import Optional, Union

from ..core.constants import (
    DEFAULT_AGENT_CONFIG,
    DEFAULT_HOST_KEY_PATH,
    INSTALL_DIR_MODE,
    INSTALLED_CONFIG_MODE,
    SERVICE_NAME,
    SYSTEMD_UNIT_DIR,
    UNIT_FILE_MODE,
)
from ..core.exceptions import ServiceError
from ..core.interfaces import CommandRunner
from ..core.logging import get_logger

logger = get_logger(__name__)


UNIT_TEMPLATE = """\
[Unit]
Description=single-rcon reverse shell agent
After=network-online.target
Wants=network-online.target

[Service]
Type=simple
ExecStart={exec_start}
WorkingDirectory={working_directory}
Restart=always
RestartSec=5

[Install]
WantedBy=multi-user.target
"""


class SubprocessRunner(CommandRunner):
    """Runs commands with the caller's stdout/stderr"""

    def run(self, *args: str) -> None:
        try:
            subprocess.run(list(args), check=True)
        except (OSError, subprocess.CalledProcessError) as e:
            raise ServiceError(f"Command failed: {' '.join(args)}: {e}") from e


class SystemdInstaller:
    """
    Installs the agent as a systemd service and removes it again.

    The installed service runs ``<python> -m rcon agent run`` against a
    private copy of the agent configuration in the install directory.
    """

    def __init__(
        self,
        install_dir: Union[str, Path],
        unit_dir: Union[str, Path] = SYSTEMD_UNIT_DIR,
        runner: Optional[CommandRunner] = None,
        python: str = sys.executable,
    ):
        """
        Initialize installer.

        Args:
            install_dir: Directory holding the installed config and host key
            unit_dir: systemd unit directory
            runner: Command runner for systemctl
            python: Interpreter the service runs
        """
        self.install_dir = Path(install_dir)
        self.unit_dir = Path(unit_dir)
        self.runner = runner or SubprocessRunner()
        self.python = python

    @property
    def unit_path(self) -> Path:
        return self.unit_dir / SERVICE_NAME

    @property
    def config_path(self) -> Path:
        return self.install_dir / DEFAULT_AGENT_CONFIG

    @property
    def host_key_path(self) -> Path:
        return self.install_dir / DEFAULT_HOST_KEY_PATH

    def render_unit(self) -> str:
        """Render the service unit file"""
        exec_start = " ".join(
            [self.python, "-m", "rcon", "agent", "run", "--config", str(self.config_path)]
        )
        return UNIT_TEMPLATE.format(
            exec_start=exec_start,
            working_directory=self.install_dir,
        )

    def install(self, config_file: Path) -> None:
        """
        Install and start the service.

        Args:
            config_file: Agent configuration to copy into the install directory

        Raises:
            ServiceError: If systemd is absent or any step fails
        """
        if not self.unit_dir.is_dir():
            raise ServiceError(
                f"{self.unit_dir} not found; automatic install requires systemd"
            )

        logger.info(f"Installing {SERVICE_NAME} into {self.install_dir}")
        try:
            self.install_dir.mkdir(mode=INSTALL_DIR_MODE, parents=True, exist_ok=True)
            self._write(self.config_path, Path(config_file).read_bytes(), INSTALLED_CONFIG_MODE)
            self._write(self.unit_path, self.render_unit().encode("utf-8"), UNIT_FILE_MODE)
        except OSError as e:
            raise ServiceError(f"Install failed: {e}") from e

        self.runner.run("systemctl", "daemon-reload")
        self.runner.run("systemctl", "enable", "--now", SERVICE_NAME)
        logger.info("Install: SUCCESS")

    def uninstall(self) -> None:
        """
        Stop the service and remove everything install() created.

        The host key is removed too if the service generated one.

        Raises:
            ServiceError: If any step fails
        """
        logger.info(f"Uninstalling {SERVICE_NAME} from {self.install_dir}")
        self.runner.run("systemctl", "disable", "--now", SERVICE_NAME)

        try:
            self.config_path.unlink()
            self.host_key_path.unlink(missing_ok=True)
            self.install_dir.rmdir()
            self.unit_path.unlink()
        except OSError as e:
            raise ServiceError(f"Uninstall failed: {e}") from e

        self.runner.run("systemctl", "daemon-reload")
        logger.info("Uninstall: SUCCESS")

    @staticmethod
    def _write(path: Path, data: bytes, mode: int) -> None:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.chmod(path, mode)
