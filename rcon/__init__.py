"""
rcon - reverse shell access to machines behind NAT

An agent on the target machine dials a broker and publishes a reverse
tunnel; end users connect to the agent's pinned port on the broker and
get an SSH shell served by the agent itself:
- Broker: authenticates agents, binds their ports, relays connections
- Agent: terminates each relayed connection as a nested SSH session
- Shell: pty-aware shell sessions with resize and exit status
"""

__version__ = "0.1.0"

from .core.exceptions import RconError

from .domain.identity import (
    AgentIdentity,
    EndUserIdentity,
    AuthPolicy,
    load_or_create_host_key,
)

from .domain.broker import (
    BrokerConfig,
    BrokerService,
)

from .domain.agent import (
    AgentConfig,
    BridgeConfig,
    TunnelAgent,
)

from .domain.shell import (
    ShellSession,
    NestedShellSession,
)

__all__ = [
    # Version
    "__version__",
    # Errors
    "RconError",
    # Identity
    "AgentIdentity",
    "EndUserIdentity",
    "AuthPolicy",
    "load_or_create_host_key",
    # Broker
    "BrokerConfig",
    "BrokerService",
    # Agent
    "AgentConfig",
    "BridgeConfig",
    "TunnelAgent",
    # Shell
    "ShellSession",
    "NestedShellSession",
]
