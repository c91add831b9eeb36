"""
Broker domain service - rendezvous listener for agents
"""
import socket
import threading
import time
from typing import Optional, Set, Tuple

import paramiko

from ...core.constants import ACCEPT_POLL_INTERVAL, AUTH_GRACE_PERIOD, THREAD_JOIN_TIMEOUT
from ...core.exceptions import RconError
from ...core.logging import get_logger
from ...core.telemetry import get_telemetry
from ...core.utils import open_listener, close_quietly, format_host_port
from ..identity.policy import AuthPolicy
from .models import BrokerConfig
from .session import AgentSession

logger = get_logger(__name__)
telemetry = get_telemetry()


class BrokerService:
    """
    Reverse-tunnel broker.

    Accepts agent connections on the primary listener and runs one
    AgentSession per connection on its own thread. A failing session
    never stops the listener.
    """

    def __init__(self, config: BrokerConfig, host_key: paramiko.PKey):
        """
        Initialize broker.

        Args:
            config: Validated broker configuration
            host_key: Signing key presented to agents
        """
        self.config = config
        self.host_key = host_key
        self.policy = AuthPolicy(config.agents)
        self._listener: Optional[socket.socket] = None
        self._stopping = threading.Event()
        self._lock = threading.Lock()
        self._sessions: Set[AgentSession] = set()
        self._threads: Set[threading.Thread] = set()

    @property
    def address(self) -> Tuple[str, int]:
        """Actual address of the primary listener"""
        if self._listener is None:
            raise RconError("Broker is not bound")
        sockname = self._listener.getsockname()
        return sockname[0], sockname[1]

    @property
    def sessions(self) -> Set[AgentSession]:
        with self._lock:
            return set(self._sessions)

    def bind(self) -> Tuple[str, int]:
        """
        Bind the primary listener.

        Raises:
            AddressResolutionError: If the listen host cannot be resolved
            ListenerBindError: If the listen address is unavailable
        """
        if self._listener is None:
            host, port = self.config.listen_address
            self._listener = open_listener(host, port)
            logger.info(
                f"Broker listening on {format_host_port(*self.address)} "
                f"for {len(self.policy)} agent(s)"
            )
        return self.address

    def serve_forever(self) -> None:
        """Accept agent connections until stop() is called; blocks"""
        self.bind()
        listener = self._listener

        while not self._stopping.is_set():
            try:
                conn, peer = listener.accept()
            except socket.timeout:
                continue
            except OSError as e:
                if not self._stopping.is_set():
                    logger.error(f"Primary listener failed: {e}")
                break

            thread = threading.Thread(
                target=self._handle_connection,
                args=(conn, (peer[0], peer[1])),
                daemon=True,
                name=f"rcon-session-{peer[0]}:{peer[1]}",
            )
            with self._lock:
                self._threads.add(thread)
            thread.start()

        logger.info("Broker stopped accepting connections")

    def _handle_connection(self, conn: socket.socket, peer: Tuple[str, int]) -> None:
        """Run one agent session until its transport ends"""
        logger.debug(f"Connection from {peer[0]}:{peer[1]}")
        transport = None
        session = None
        try:
            conn.settimeout(None)
            transport = paramiko.Transport(conn)
            transport.add_server_key(self.host_key)
            session = AgentSession(
                transport,
                self.policy,
                peer,
                max_relays=self.config.max_relays_per_agent,
            )
            with self._lock:
                self._sessions.add(session)

            try:
                transport.start_server(server=session)
            except (paramiko.SSHException, EOFError, OSError) as e:
                logger.warning(f"Handshake with {peer[0]}:{peer[1]} failed: {e}")
                return

            telemetry.record_event("broker.session.opened", {"peer": peer[0]})
            started = time.monotonic()

            while transport.is_active() and not self._stopping.is_set():
                # Agents never get a channel accepted; this only waits
                channel = transport.accept(ACCEPT_POLL_INTERVAL)
                if channel is not None:
                    channel.close()
                if session.identity is None and time.monotonic() - started > AUTH_GRACE_PERIOD:
                    logger.warning(f"{peer[0]}:{peer[1]} did not authenticate in time")
                    break

            logger.info(f"Session for agent {session.name!r} from {peer[0]}:{peer[1]} ended")
        except Exception:
            logger.exception(f"Session from {peer[0]}:{peer[1]} crashed")
        finally:
            if session is not None:
                session.close()
                with self._lock:
                    self._sessions.discard(session)
            if transport is not None:
                transport.close()
            close_quietly(conn)
            with self._lock:
                self._threads.discard(threading.current_thread())

    def stop(self) -> None:
        """Stop accepting, end every agent session and its relays"""
        if self._stopping.is_set():
            return
        self._stopping.set()
        logger.info("Stopping broker")

        if self._listener is not None:
            close_quietly(self._listener)

        for session in self.sessions:
            session.close()
            session.transport.close()

        with self._lock:
            threads = list(self._threads)
        for thread in threads:
            if thread is not threading.current_thread():
                thread.join(THREAD_JOIN_TIMEOUT)
