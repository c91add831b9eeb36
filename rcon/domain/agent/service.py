"""
Agent domain service - outbound reverse tunnel to the broker
"""
import threading
from typing import Optional, Set

import paramiko

from ...core.constants import (
    ACCEPT_POLL_INTERVAL,
    ANY_PORT,
    DEFAULT_FORWARD_ADDRESS,
    THREAD_JOIN_TIMEOUT,
)
from ...core.exceptions import ForwardRejectedError, TransportError
from ...core.interfaces import ConnectionFactory
from ...core.logging import get_logger
from ...core.telemetry import get_telemetry
from ...core.utils import close_quietly
from ..identity.policy import AuthPolicy
from ..shell.server import NestedShellSession
from .models import AgentConfig

logger = get_logger(__name__)
telemetry = get_telemetry()


class TunnelAgent:
    """
    Tunnel agent.

    Dials the broker, requests the agent's forward binding, then treats
    every forwarded channel as a fresh SSH session terminated locally.
    No direct dependency on CLI or the service manager.
    """

    def __init__(
        self,
        config: AgentConfig,
        host_key: paramiko.PKey,
        connection_factory: ConnectionFactory,
    ):
        """
        Initialize agent.

        Args:
            config: Validated agent configuration
            host_key: Signing key presented to end users
            connection_factory: Dials and authenticates to the broker
        """
        self.config = config
        self.host_key = host_key
        self.connection_factory = connection_factory
        self.policy = AuthPolicy(config.users)
        self.transport: Optional[paramiko.Transport] = None
        self.bound_port: Optional[int] = None
        self.ready = threading.Event()
        self._stopping = threading.Event()
        self._lock = threading.Lock()
        self._session_slots = threading.BoundedSemaphore(config.max_sessions)
        self._sessions: Set[NestedShellSession] = set()

    @property
    def session_count(self) -> int:
        with self._lock:
            return len(self._sessions)

    @property
    def sessions(self) -> Set[NestedShellSession]:
        """Snapshot of the nested sessions being served"""
        with self._lock:
            return set(self._sessions)

    def connect(self) -> paramiko.Transport:
        """
        Open the outer tunnel session.

        Raises:
            TransportError: If dial, host-key check or authentication fails
        """
        self.transport = self.connection_factory.create(self.config.bridge)
        logger.info(
            f"Tunnel to {self.config.bridge.address} established "
            f"as {self.config.bridge.username!r}"
        )
        telemetry.record_event("agent.tunnel.established", {
            "broker": self.config.bridge.address,
            "user": self.config.bridge.username,
        })
        return self.transport

    def request_forward(self, port: Optional[int] = None) -> int:
        """
        Issue the forward-listen request and wait for the reply.

        Args:
            port: Port to request (default: the designated bridge.port)

        Returns:
            Port the broker bound

        Raises:
            ConfigError: If no port is given and bridge.port is not set
            ForwardRejectedError: If the broker replied with failure
            TransportError: If no tunnel is open
        """
        requested = self.config.bridge.designated_port if port is None else port
        if self.transport is None or not self.transport.is_active():
            raise TransportError("Tunnel is not connected")

        try:
            bound = self.transport.request_port_forward(DEFAULT_FORWARD_ADDRESS, requested)
        except paramiko.SSHException as e:
            raise ForwardRejectedError(
                f"Broker rejected forward-listen for port {requested}: {e}"
            ) from e

        logger.info(f"Broker is forwarding port {bound} to this agent")
        return bound

    def run(self) -> None:
        """
        Serve tunneled connections until stop() or loss of the tunnel; blocks.

        Raises:
            ConfigError: If bridge.port is not set
            TransportError: If the tunnel cannot be opened or is lost
            ForwardRejectedError: If the broker rejected the forward-listen request
        """
        port = self.config.bridge.designated_port
        self.connect()
        try:
            self.bound_port = self.request_forward(port)
            self.ready.set()

            while not self._stopping.is_set():
                if not self.transport.is_active():
                    if self._stopping.is_set():
                        break
                    raise TransportError("Tunnel to broker closed")
                channel = self.transport.accept(ACCEPT_POLL_INTERVAL)
                if channel is None:
                    continue
                self._dispatch(channel)
        finally:
            self._shutdown()

    def _dispatch(self, channel: paramiko.Channel) -> None:
        """Start a nested session for a forwarded channel, if a slot is free"""
        origin = channel.origin_addr or ("?", 0)
        if not self._session_slots.acquire(blocking=False):
            logger.warning(
                f"Session limit reached; refusing connection from {origin[0]}:{origin[1]}"
            )
            telemetry.record_event("agent.session.refused", {"origin": origin[0]})
            close_quietly(channel)
            return

        session = NestedShellSession(
            channel,
            self.host_key,
            self.policy,
            shell=self.config.shell,
            label=f"session from {origin[0]}:{origin[1]}",
        )
        with self._lock:
            self._sessions.add(session)

        logger.info(f"Tunneled connection from {origin[0]}:{origin[1]}")
        telemetry.record_event("agent.session.opened", {"origin": origin[0]})
        threading.Thread(
            target=self._serve_session,
            args=(session,),
            daemon=True,
            name=f"rcon-nested-{origin[0]}:{origin[1]}",
        ).start()

    def _serve_session(self, session: NestedShellSession) -> None:
        try:
            session.serve()
        except Exception:
            logger.exception(f"{session.label} crashed")
        finally:
            with self._lock:
                self._sessions.discard(session)
            self._session_slots.release()

    def check(self) -> int:
        """
        Verify the broker end to end without serving anything.

        Dials, authenticates, requests an any-port binding and cancels it.

        Returns:
            Port the broker bound for the check

        Raises:
            TransportError: If any step fails
        """
        self.connect()
        try:
            port = self.request_forward(ANY_PORT)
            self.transport.cancel_port_forward(DEFAULT_FORWARD_ADDRESS, port)
            return port
        finally:
            self._shutdown()

    def stop(self) -> None:
        """Stop serving; ends the tunnel and every nested session"""
        self._stopping.set()
        if self.transport is not None:
            self.transport.close()

    def _shutdown(self) -> None:
        with self._lock:
            sessions = list(self._sessions)
        for session in sessions:
            session.close()
        if self.transport is not None:
            self.transport.close()
        self.ready.clear()
        logger.debug(f"Agent shut down, {len(sessions)} nested session(s) closed")

    def wait_ready(self, timeout: float = THREAD_JOIN_TIMEOUT) -> bool:
        """Wait until the forward binding is active"""
        return self.ready.wait(timeout)
