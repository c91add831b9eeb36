"""
Broker side of one inbound agent session

Design:
=======
paramiko runs one transport thread per connection and calls the
``check_*`` hooks below from it, one at a time, in arrival order. That
thread is the session's dispatch loop: every hook only validates,
binds or hands work to a new thread, and returns.

- Authentication: exact public-key match against the agent table
- Global requests: only tcpip-forward / cancel-tcpip-forward succeed
- Channel opens from the agent: always refused (the broker only opens
  channels towards the agent)
- Each TCP connection accepted on the agent's binding becomes a
  forwarded-tcpip channel plus a RelaySession
"""
import socket
import threading
from typing import Optional, Set, Tuple

import paramiko

from ...core.constants import (
    ANY_PORT,
    CHANNEL_OPEN_TIMEOUT,
    DEFAULT_MAX_RELAYS_PER_AGENT,
    FORWARDED_TCPIP_CHANNEL,
    THREAD_JOIN_TIMEOUT,
)
from ...core.exceptions import (
    IdentityError,
    ForwardPolicyError,
    ProtocolViolationError,
    ResourceError,
)
from ...core.keys import key_fingerprint
from ...core.logging import get_logger
from ...core.telemetry import get_telemetry
from ...core.utils import open_listener, close_quietly
from ..identity.models import AgentIdentity
from ..identity.policy import AuthPolicy
from .models import ForwardBinding, SessionPhase
from .relay import RelaySession

logger = get_logger(__name__)
telemetry = get_telemetry()


class AgentSession(paramiko.ServerInterface):
    """
    One inbound agent session: established -> authenticated -> forwarding -> closed.

    Owns the agent's ForwardBinding and every RelaySession created on it;
    ``close()`` cancels all of them.
    """

    def __init__(
        self,
        transport: paramiko.Transport,
        policy: AuthPolicy,
        peer: Tuple[str, int],
        max_relays: int = DEFAULT_MAX_RELAYS_PER_AGENT,
    ):
        """
        Initialize session.

        Args:
            transport: Server-mode transport of this session
            policy: Agent authentication policy
            peer: Remote address of the agent's TCP connection
            max_relays: Max concurrent relays on this agent's binding
        """
        self.transport = transport
        self.policy = policy
        self.peer = peer
        self.identity: Optional[AgentIdentity] = None
        self.phase = SessionPhase.ESTABLISHED
        self.binding: Optional[ForwardBinding] = None
        self._relays: Set[RelaySession] = set()
        self._lock = threading.Lock()
        self._relay_slots = threading.BoundedSemaphore(max_relays)
        self._acceptor: Optional[threading.Thread] = None

    @property
    def name(self) -> str:
        return self.identity.name if self.identity else "<unauthenticated>"

    @property
    def relay_count(self) -> int:
        with self._lock:
            return len(self._relays)

    # ============================================================
    # Authentication
    # ============================================================

    def get_allowed_auths(self, username):
        return "publickey"

    def check_auth_publickey(self, username, key):
        try:
            identity = self.policy.authenticate(username, key)
        except IdentityError as e:
            logger.warning(
                f"Rejected agent {username!r} from {self.peer[0]}: {e.reason} "
                f"({key.get_name()} {key_fingerprint(key)})"
            )
            telemetry.record_event("broker.auth.rejected", {
                "user": username,
                "reason": e.reason,
                "peer": self.peer[0],
            })
            return paramiko.AUTH_FAILED

        with self._lock:
            self.identity = identity
            self.phase = SessionPhase.AUTHENTICATED
        logger.info(f"Agent {identity.name!r} authenticated from {self.peer[0]}:{self.peer[1]}")
        return paramiko.AUTH_SUCCESSFUL

    # ============================================================
    # Channels and Global Requests
    # ============================================================

    def check_channel_request(self, kind, chanid):
        logger.warning(f"Agent {self.name!r} tried to open a {kind!r} channel; refused")
        return paramiko.OPEN_FAILED_ADMINISTRATIVELY_PROHIBITED

    def check_global_request(self, kind, msg):
        logger.debug(f"Agent {self.name!r} sent unsupported global request {kind!r}")
        return False

    def check_port_forward_request(self, address, port):
        try:
            binding = self.bind_forward(address, port)
        except (ProtocolViolationError, ResourceError) as e:
            logger.warning(f"Forward-listen {address}:{port} for agent {self.name!r} rejected: {e}")
            telemetry.record_event("broker.forward.rejected", {
                "agent": self.name,
                "port": port,
                "reason": type(e).__name__,
            })
            return False
        return binding.bind_port

    def cancel_port_forward_request(self, address, port):
        with self._lock:
            binding = self.binding
        if binding is None or not binding.matches(port):
            logger.debug(f"Agent {self.name!r} cancelled unknown forward {address}:{port}")
            return
        logger.info(f"Agent {self.name!r} cancelled forward {binding.address}")
        self._release_binding(binding)

    # ============================================================
    # Forward Binding
    # ============================================================

    def bind_forward(self, address: str, port: int) -> ForwardBinding:
        """
        Validate a forward-listen request and bind its listener.

        The listener is bound on the agent's pinned host. ``port`` must be
        the agent's pinned port, or ANY_PORT for an ephemeral port.

        Args:
            address: Address from the request, echoed in forwarded-tcpip opens
            port: Requested port

        Returns:
            The active binding

        Raises:
            ProtocolViolationError: If the session is not authenticated
            ForwardPolicyError: If the port is forbidden or a binding is active
            AddressResolutionError: If the pinned host cannot be resolved
            ListenerBindError: If the listener cannot be bound
        """
        identity = self.identity
        if identity is None:
            raise ProtocolViolationError("Forward-listen before authentication")

        with self._lock:
            if self.phase is SessionPhase.CLOSED:
                raise ProtocolViolationError("Session is closing")
            if self.binding is not None and not self.binding.closed:
                raise ForwardPolicyError(
                    f"Agent {identity.name!r} already forwards {self.binding.address}"
                )

        if port != ANY_PORT and port != identity.listen_port:
            raise ForwardPolicyError(
                f"Port {port} is not the pinned port {identity.listen_port} of agent {identity.name!r}"
            )

        bind_port = identity.listen_port if port != ANY_PORT else ANY_PORT
        listener = open_listener(identity.listen_host, bind_port)

        binding = ForwardBinding(
            agent=identity.name,
            request_address=address,
            requested_port=port,
            bind_host=identity.listen_host,
            bind_port=listener.getsockname()[1],
            listener=listener,
        )

        with self._lock:
            closing = self.phase is SessionPhase.CLOSED
            if not closing:
                self.binding = binding
                self.phase = SessionPhase.FORWARDING
        if closing:
            binding.close()
            raise ProtocolViolationError("Session is closing")

        self._acceptor = threading.Thread(
            target=self._accept_loop,
            args=(binding,),
            daemon=True,
            name=f"rcon-forward-{identity.name}",
        )
        self._acceptor.start()

        logger.info(f"Agent {identity.name!r} forwarding {binding.address}")
        telemetry.record_event("broker.forward.bound", {
            "agent": identity.name,
            "address": binding.bind_host,
            "port": binding.bind_port,
            "ephemeral": binding.ephemeral,
        })
        return binding

    def _release_binding(self, binding: ForwardBinding) -> None:
        """Close a binding and every relay it spawned"""
        binding.close()
        with self._lock:
            if self.binding is binding:
                self.binding = None
                if self.phase is SessionPhase.FORWARDING:
                    self.phase = SessionPhase.AUTHENTICATED
            relays = list(self._relays)
        for relay in relays:
            relay.close()

    # ============================================================
    # Relays
    # ============================================================

    def _accept_loop(self, binding: ForwardBinding) -> None:
        """Accept TCP connections on the binding until it is closed"""
        while not binding.closed:
            try:
                conn, origin = binding.listener.accept()
            except socket.timeout:
                continue
            except OSError as e:
                if not binding.closed:
                    logger.error(f"Listener {binding.address} for agent {binding.agent!r} failed: {e}")
                break

            if not self._relay_slots.acquire(blocking=False):
                logger.warning(
                    f"Relay limit reached for agent {binding.agent!r}; "
                    f"dropping connection from {origin[0]}:{origin[1]}"
                )
                telemetry.record_event("broker.relay.refused", {
                    "agent": binding.agent,
                    "origin": origin[0],
                })
                close_quietly(conn)
                continue

            threading.Thread(
                target=self._relay,
                args=(binding, conn, origin),
                daemon=True,
                name=f"rcon-relay-{origin[0]}:{origin[1]}",
            ).start()

        logger.debug(f"Listener {binding.address} for agent {binding.agent!r} stopped")

    def _relay(self, binding: ForwardBinding, conn: socket.socket, origin: Tuple) -> None:
        """Open a forwarded-tcpip channel for ``conn`` and relay until either side ends"""
        try:
            conn.settimeout(None)
            try:
                channel = self.transport.open_channel(
                    FORWARDED_TCPIP_CHANNEL,
                    dest_addr=(binding.request_address, binding.bind_port),
                    src_addr=(origin[0], origin[1]),
                    timeout=CHANNEL_OPEN_TIMEOUT,
                )
            except (paramiko.SSHException, EOFError, OSError) as e:
                logger.warning(
                    f"Cannot open channel to agent {binding.agent!r} "
                    f"for {origin[0]}:{origin[1]}: {e}"
                )
                close_quietly(conn)
                return

            relay = RelaySession(conn, channel, (origin[0], origin[1]))
            with self._lock:
                accepted = self.phase is not SessionPhase.CLOSED and not binding.closed
                if accepted:
                    self._relays.add(relay)
            if not accepted:
                relay.close()
                return

            logger.info(f"Relay opened {origin[0]}:{origin[1]} -> agent {binding.agent!r}")
            telemetry.record_event("broker.relay.opened", {
                "agent": binding.agent,
                "origin": origin[0],
            })
            try:
                relay.run()
            finally:
                with self._lock:
                    self._relays.discard(relay)
                logger.info(
                    f"Relay closed {origin[0]}:{origin[1]} "
                    f"({relay.bytes_to_channel} up / {relay.bytes_to_conn} down)"
                )
                telemetry.record_event("broker.relay.closed", {
                    "agent": binding.agent,
                    "origin": origin[0],
                    "bytes_up": relay.bytes_to_channel,
                    "bytes_down": relay.bytes_to_conn,
                })
                tags = {"agent": binding.agent}
                telemetry.record_metric("broker.relay.bytes_up", relay.bytes_to_channel, tags)
                telemetry.record_metric("broker.relay.bytes_down", relay.bytes_to_conn, tags)
        finally:
            self._relay_slots.release()

    # ============================================================
    # Teardown
    # ============================================================

    def close(self) -> None:
        """Cancel the binding and every in-flight relay of this session"""
        with self._lock:
            if self.phase is SessionPhase.CLOSED:
                return
            self.phase = SessionPhase.CLOSED
            binding = self.binding
            relays = list(self._relays)

        if binding is not None:
            binding.close()
        for relay in relays:
            relay.close()

        acceptor = self._acceptor
        if acceptor is not None and acceptor is not threading.current_thread():
            acceptor.join(THREAD_JOIN_TIMEOUT)

        telemetry.record_event("broker.session.closed", {
            "agent": self.name,
            "peer": self.peer[0],
            "relays_cancelled": len(relays),
        })
