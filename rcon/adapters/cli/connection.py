"""
Connection factory implementation
"""
import socket

import paramiko

from ...core.constants import DIAL_TIMEOUT, KEEPALIVE_INTERVAL
from ...core.exceptions import TransportError
from ...core.interfaces import ConnectionFactory
from ...core.keys import key_fingerprint
from ...core.logging import get_logger
from ...core.utils import format_host_port
from ...domain.agent.models import BridgeConfig

logger = get_logger(__name__)


class BrokerConnectionFactory(ConnectionFactory):
    """paramiko client transport towards the broker"""

    def __init__(self, timeout: float = DIAL_TIMEOUT, keepalive: int = KEEPALIVE_INTERVAL):
        self.timeout = timeout
        self.keepalive = keepalive

    def create(self, bridge: BridgeConfig) -> paramiko.Transport:
        """
        Dial the broker, verify its host key and authenticate.

        Args:
            bridge: Broker address, expected host key and agent credentials

        Returns:
            Active, authenticated transport

        Raises:
            TransportError: If any step fails
        """
        host, port = bridge.broker_address
        address = format_host_port(host, port)
        expected = bridge.broker_host_key

        try:
            sock = socket.create_connection((host, port), timeout=self.timeout)
        except OSError as e:
            raise TransportError(f"Cannot reach broker {address}: {e}") from e

        transport = paramiko.Transport(sock)
        try:
            # Fixed host key: anything but the configured key fails the handshake
            transport.connect(
                hostkey=expected,
                username=bridge.username,
                pkey=bridge.private_key,
            )
        except paramiko.AuthenticationException as e:
            transport.close()
            raise TransportError(f"Broker {address} rejected agent {bridge.username!r}: {e}") from e
        except (paramiko.SSHException, EOFError, OSError) as e:
            transport.close()
            raise TransportError(
                f"Handshake with broker {address} failed "
                f"(expected host key {key_fingerprint(expected)}): {e}"
            ) from e

        transport.set_keepalive(self.keepalive)
        logger.debug(f"Connected to broker {address}")
        return transport
