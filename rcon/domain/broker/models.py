"""
Broker domain models
"""
import socket
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Any, Tuple

from ...core.constants import (
    ANY_PORT,
    DEFAULT_BROKER_LISTEN,
    DEFAULT_HOST_KEY_PATH,
    DEFAULT_MAX_RELAYS_PER_AGENT,
)
from ...core.exceptions import ConfigError
from ...core.utils import parse_host_port, format_host_port, close_quietly
from ..identity.models import AgentIdentity


class SessionPhase(str, Enum):
    """Lifecycle of one inbound agent session"""
    ESTABLISHED = "established"
    AUTHENTICATED = "authenticated"
    FORWARDING = "forwarding"
    CLOSED = "closed"


@dataclass
class BrokerConfig:
    """Broker configuration"""
    listen: str = DEFAULT_BROKER_LISTEN
    agents: Dict[str, AgentIdentity] = field(default_factory=dict)
    host_key: str = DEFAULT_HOST_KEY_PATH
    max_relays_per_agent: int = DEFAULT_MAX_RELAYS_PER_AGENT

    @property
    def listen_address(self) -> Tuple[str, int]:
        return parse_host_port(self.listen)

    def validate(self) -> None:
        """Validate configuration"""
        parse_host_port(self.listen)
        if self.max_relays_per_agent < 1:
            raise ConfigError(
                f"Invalid max_relays_per_agent: {self.max_relays_per_agent}, must be >= 1"
            )
        for name, identity in self.agents.items():
            if name != identity.name:
                raise ConfigError(f"Agent table key {name!r} != identity name {identity.name!r}")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BrokerConfig":
        """Create from dictionary"""
        agents_data = data.get("agents", {})
        if not isinstance(agents_data, dict):
            raise ConfigError("'agents' must be a table of agent name -> {key, listen}")

        config = cls(
            listen=str(data.get("listen", DEFAULT_BROKER_LISTEN)),
            agents={
                name: AgentIdentity.from_dict(name, entry)
                for name, entry in agents_data.items()
            },
            host_key=str(data.get("host_key", DEFAULT_HOST_KEY_PATH)),
            max_relays_per_agent=int(
                data.get("max_relays_per_agent", DEFAULT_MAX_RELAYS_PER_AGENT)
            ),
        )
        config.validate()
        return config


@dataclass
class ForwardBinding:
    """
    A listener the broker bound on behalf of one agent.

    Lives until the agent cancels it or its session ends.
    """
    agent: str
    request_address: str
    requested_port: int
    bind_host: str
    bind_port: int
    listener: socket.socket
    created_at: float = field(default_factory=time.time)
    _closed: threading.Event = field(default_factory=threading.Event, repr=False)

    @property
    def address(self) -> str:
        return format_host_port(self.bind_host, self.bind_port)

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @property
    def ephemeral(self) -> bool:
        return self.requested_port == ANY_PORT

    def matches(self, port: int) -> bool:
        """Whether a cancel-tcpip-forward for ``port`` refers to this binding"""
        return port in (self.bind_port, self.requested_port)

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        close_quietly(self.listener)
