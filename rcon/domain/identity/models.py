"""
Identity domain models
"""
from dataclasses import dataclass
from typing import Dict, Any

from ...core.exceptions import ConfigError, KeyFormatError
from ...core.keys import canonical_key_bytes
from ...core.utils import parse_host_port, format_host_port


def _canonical_key(owner: str, data: Dict[str, Any]) -> bytes:
    key_text = data.get("key")
    if not key_text or not isinstance(key_text, str):
        raise ConfigError(f"{owner}: missing 'key' (authorized-key line)")
    try:
        return canonical_key_bytes(key_text)
    except KeyFormatError as e:
        raise KeyFormatError(f"{owner}: {e}") from e


@dataclass(frozen=True)
class AgentIdentity:
    """Registered agent: who may dial the broker and which port it owns"""
    name: str
    key: bytes
    listen_host: str
    listen_port: int

    @property
    def listen(self) -> str:
        return format_host_port(self.listen_host, self.listen_port)

    @classmethod
    def from_dict(cls, name: str, data: Dict[str, Any]) -> "AgentIdentity":
        """Create from the ``[agents.<name>]`` table"""
        key = _canonical_key(f"agent '{name}'", data)

        listen = data.get("listen")
        if not listen or not isinstance(listen, str):
            raise ConfigError(f"agent '{name}': missing 'listen' (host:port)")
        host, port = parse_host_port(listen)

        return cls(name=name, key=key, listen_host=host, listen_port=port)


@dataclass(frozen=True)
class EndUserIdentity:
    """End user allowed to open a shell through the agent"""
    name: str
    key: bytes

    @classmethod
    def from_dict(cls, name: str, data: Dict[str, Any]) -> "EndUserIdentity":
        """Create from the ``[server.users.<name>]`` table"""
        return cls(name=name, key=_canonical_key(f"user '{name}'", data))
