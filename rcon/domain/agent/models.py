"""
Agent domain models
"""
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, Tuple

import paramiko

from ...core.constants import (
    DEFAULT_HOST_KEY_PATH,
    DEFAULT_INSTALL_DIR,
    DEFAULT_MAX_SESSIONS,
    DEFAULT_SHELL,
)
from ...core.exceptions import ConfigError
from ...core.keys import parse_public_key, load_private_key
from ...core.utils import parse_host_port
from ..identity.models import EndUserIdentity


@dataclass
class BridgeConfig:
    """How the agent reaches and proves itself to the broker"""
    address: str
    hostkey: str
    username: str
    privkey: str = field(repr=False)
    port: Optional[int] = None

    @property
    def broker_address(self) -> Tuple[str, int]:
        return parse_host_port(self.address)

    @property
    def broker_host_key(self) -> paramiko.PKey:
        """Expected broker host key (from a known_hosts or authorized-key line)"""
        return parse_public_key(self.hostkey)

    @property
    def private_key(self) -> paramiko.PKey:
        return load_private_key(self.privkey)

    @property
    def designated_port(self) -> int:
        """
        Port the agent publishes on the broker; must match its pinned port.

        Raises:
            ConfigError: If bridge.port is not set
        """
        if self.port is None:
            raise ConfigError("bridge.port is required to run the agent (its pinned port on the broker)")
        return self.port

    def validate(self) -> None:
        """Validate configuration"""
        host, port = self.broker_address
        if not host or port == 0:
            raise ConfigError(f"bridge.address needs a host and a port, got: {self.address!r}")
        if not self.username:
            raise ConfigError("bridge.username is required")
        if self.port is not None and not (1 <= self.port <= 65535):
            raise ConfigError(f"Invalid bridge.port: {self.port}, must be 1-65535")
        self.broker_host_key
        self.private_key

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BridgeConfig":
        """Create from the ``[bridge]`` table"""
        missing = [key for key in ("address", "hostkey", "username", "privkey") if not data.get(key)]
        if missing:
            raise ConfigError(f"[bridge] is missing: {', '.join(missing)}")
        port = data.get("port")
        if port is not None:
            try:
                port = int(port)
            except (TypeError, ValueError):
                raise ConfigError(f"Invalid bridge.port: {port!r}") from None
        return cls(
            address=str(data["address"]),
            hostkey=str(data["hostkey"]),
            username=str(data["username"]),
            privkey=str(data["privkey"]),
            port=port,
        )


@dataclass
class AgentConfig:
    """Agent configuration"""
    bridge: BridgeConfig
    users: Dict[str, EndUserIdentity] = field(default_factory=dict)
    install: str = DEFAULT_INSTALL_DIR
    host_key: str = DEFAULT_HOST_KEY_PATH
    shell: str = DEFAULT_SHELL
    max_sessions: int = DEFAULT_MAX_SESSIONS

    def validate(self) -> None:
        """Validate configuration"""
        self.bridge.validate()
        if not self.shell.strip():
            raise ConfigError("shell must not be empty")
        if self.max_sessions < 1:
            raise ConfigError(f"Invalid max_sessions: {self.max_sessions}, must be >= 1")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AgentConfig":
        """Create from dictionary"""
        bridge = data.get("bridge")
        if not isinstance(bridge, dict):
            raise ConfigError("Missing [bridge] table")

        users_data = data.get("server", {}).get("users", {})
        if not isinstance(users_data, dict):
            raise ConfigError("'server.users' must be a table of user name -> {key}")

        config = cls(
            bridge=BridgeConfig.from_dict(bridge),
            users={
                name: EndUserIdentity.from_dict(name, entry)
                for name, entry in users_data.items()
            },
            install=str(data.get("install", DEFAULT_INSTALL_DIR)),
            host_key=str(data.get("host_key", DEFAULT_HOST_KEY_PATH)),
            shell=str(data.get("shell", DEFAULT_SHELL)),
            max_sessions=int(data.get("max_sessions", DEFAULT_MAX_SESSIONS)),
        )
        config.validate()
        return config
