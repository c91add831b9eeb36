"""
Core utility functions
"""
import socket
from typing import Any, Tuple

import paramiko

from .constants import ACCEPT_POLL_INTERVAL, LISTEN_BACKLOG
from .exceptions import AddressResolutionError, ConfigError, ListenerBindError


# ============================================================
# Address Parsing
# ============================================================

def parse_host_port(text: str) -> Tuple[str, int]:
    """
    Split ``host:port`` text.

    IPv6 hosts use brackets (``[::1]:22``). An empty host (``:2222``)
    means every local interface.

    Args:
        text: Address text

    Returns:
        (host, port)

    Raises:
        ConfigError: If the text has no port or the port is out of range
    """
    host, sep, port_text = text.strip().rpartition(":")
    if not sep:
        raise ConfigError(f"Address must be host:port, got: {text!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]

    try:
        port = int(port_text)
    except ValueError:
        raise ConfigError(f"Invalid port in address: {text!r}") from None
    if not (0 <= port <= 65535):
        raise ConfigError(f"Port out of range in address: {text!r}")

    return host, port


def format_host_port(host: str, port: int) -> str:
    """Inverse of parse_host_port"""
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


# ============================================================
# Listeners
# ============================================================

def resolve_bind_address(host: str, port: int) -> Tuple[int, Any]:
    """
    Resolve a bind address.

    Returns:
        (address family, sockaddr)

    Raises:
        AddressResolutionError: If the host cannot be resolved
    """
    try:
        infos = socket.getaddrinfo(
            host or None,
            port,
            type=socket.SOCK_STREAM,
            flags=socket.AI_PASSIVE,
        )
    except (socket.gaierror, UnicodeError) as e:
        raise AddressResolutionError(
            f"Cannot resolve listen address {format_host_port(host, port)}: {e}"
        ) from e

    if not infos:
        raise AddressResolutionError(
            f"No addresses for listen address {format_host_port(host, port)}"
        )

    family, _, _, _, sockaddr = infos[0]
    return family, sockaddr


def open_listener(host: str, port: int, backlog: int = LISTEN_BACKLOG) -> socket.socket:
    """
    Bind and listen on host:port.

    The returned socket has a short accept timeout so accept loops can
    notice when they are asked to stop.

    Raises:
        AddressResolutionError: If the host cannot be resolved
        ListenerBindError: If bind or listen fails
    """
    family, sockaddr = resolve_bind_address(host, port)

    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind(sockaddr)
        sock.listen(backlog)
    except OSError as e:
        sock.close()
        raise ListenerBindError(
            f"Failed to listen on {format_host_port(host, port)}: {e}"
        ) from e

    sock.settimeout(ACCEPT_POLL_INTERVAL)
    return sock


def close_quietly(endpoint: Any) -> None:
    """
    Shut down and close a socket or paramiko channel.

    Shutting down first wakes any thread blocked in recv() on it.
    """
    try:
        endpoint.shutdown(socket.SHUT_RDWR)
    except (OSError, EOFError, paramiko.SSHException):
        pass
    try:
        endpoint.close()
    except (OSError, EOFError, paramiko.SSHException):
        pass
