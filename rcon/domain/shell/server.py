"""
Nested SSH session server

Terminates an SSH session over any socket-like stream (a tunnel channel
in production) and serves exactly one interactive session channel at a
time.
"""
import threading
import time
from typing import Any, Optional

import paramiko

from ...core.constants import (
    ACCEPT_POLL_INTERVAL,
    AUTH_GRACE_PERIOD,
    DEFAULT_SHELL,
    SESSION_CHANNEL,
)
from ...core.exceptions import IdentityError, ProtocolViolationError, SpawnError
from ...core.keys import key_fingerprint
from ...core.logging import get_logger
from ...core.utils import close_quietly
from ..identity.policy import AuthPolicy
from .models import PtySize
from .session import ShellSession

logger = get_logger(__name__)


class ShellServer(paramiko.ServerInterface):
    """Server callbacks of one nested session"""

    def __init__(self, policy: AuthPolicy, shell: str = DEFAULT_SHELL, label: str = ""):
        self.policy = policy
        self.shell = shell
        self.label = label
        self.user: Optional[str] = None
        self.session: Optional[ShellSession] = None
        self._chanid: Optional[int] = None
        self._lock = threading.Lock()

    # Authentication

    def get_allowed_auths(self, username):
        return "publickey"

    def check_auth_publickey(self, username, key):
        try:
            self.policy.authenticate(username, key)
        except IdentityError as e:
            logger.warning(
                f"Rejected user {username!r} on {self.label}: {e.reason} "
                f"({key.get_name()} {key_fingerprint(key)})"
            )
            return paramiko.AUTH_FAILED
        self.user = username
        logger.info(f"User {username!r} authenticated on {self.label}")
        return paramiko.AUTH_SUCCESSFUL

    # Channels

    def check_channel_request(self, kind, chanid):
        if kind != SESSION_CHANNEL:
            logger.warning(f"Rejected {kind!r} channel on {self.label}: only {SESSION_CHANNEL!r} is served")
            return paramiko.OPEN_FAILED_UNKNOWN_CHANNEL_TYPE

        with self._lock:
            if self.session is not None and not self.session.finished:
                logger.warning(f"Rejected second session channel on {self.label}")
                return paramiko.OPEN_FAILED_ADMINISTRATIVELY_PROHIBITED
            self.session = ShellSession(shell=self.shell, user=self.user or "")
            self._chanid = chanid
        return paramiko.OPEN_SUCCEEDED

    def attach(self, channel: Any) -> None:
        """Hand an accepted channel to its shell session"""
        session = self._session_for(channel)
        if session is None:
            channel.close()
            return
        session.attach(channel)

    def _session_for(self, channel) -> Optional[ShellSession]:
        with self._lock:
            if self.session is not None and channel.get_id() == self._chanid:
                return self.session
        return None

    # Sub-requests

    def check_channel_pty_request(self, channel, term, width, height, pixelwidth, pixelheight, modes):
        session = self._session_for(channel)
        if session is None:
            return False
        if isinstance(term, bytes):
            term = term.decode("ascii", errors="replace")
        try:
            session.request_pty(term, PtySize.from_request(width, height, pixelwidth, pixelheight))
        except ProtocolViolationError as e:
            logger.warning(f"{e} on {self.label}")
            return False
        return True

    def check_channel_window_change_request(self, channel, width, height, pixelwidth, pixelheight):
        session = self._session_for(channel)
        if session is None:
            return False
        session.resize(PtySize.from_request(width, height, pixelwidth, pixelheight))
        return True

    def check_channel_shell_request(self, channel):
        session = self._session_for(channel)
        if session is None:
            return False
        try:
            session.start_shell(channel)
        except (ProtocolViolationError, SpawnError) as e:
            logger.warning(f"Shell request on {self.label} rejected: {e}")
            return False
        return True

    def check_channel_exec_request(self, channel, command):
        logger.warning(f"Unsupported exec request on {self.label}: {command!r}")
        return False

    def check_channel_subsystem_request(self, channel, name):
        logger.warning(f"Unsupported subsystem request on {self.label}: {name!r}")
        return False

    def check_channel_env_request(self, channel, name, value):
        logger.info(f"Ignored env request on {self.label}: {name!r}")
        return False

    def check_channel_x11_request(self, channel, single_connection, auth_protocol, auth_cookie, screen_number):
        logger.warning(f"Unsupported x11-req on {self.label}")
        return False

    def check_channel_forward_agent_request(self, channel):
        logger.warning(f"Unsupported agent forwarding request on {self.label}")
        return False

    # Global requests

    def check_port_forward_request(self, address, port):
        logger.warning(f"Unsupported forward-listen {address}:{port} on {self.label}")
        return False

    def check_global_request(self, kind, msg):
        logger.info(f"Unsupported global request {kind!r} on {self.label}")
        return False

    def close(self) -> None:
        with self._lock:
            session = self.session
        if session is not None:
            session.close()


class NestedShellSession:
    """
    A second, independent SSH session on top of a raw byte stream.

    The agent runs one per forwarded channel; it presents the agent's
    host key and authenticates end users against their own table.
    """

    def __init__(
        self,
        stream: Any,
        host_key: paramiko.PKey,
        policy: AuthPolicy,
        shell: str = DEFAULT_SHELL,
        label: str = "nested session",
    ):
        """
        Initialize nested session.

        Args:
            stream: Socket-like duplex stream (paramiko Channel or socket)
            host_key: Signing key presented to the end user
            policy: End-user authentication policy
            shell: Command line of the interpreter to spawn
            label: Name used in logs
        """
        self.stream = stream
        self.host_key = host_key
        self.label = label
        self.server = ShellServer(policy, shell=shell, label=label)
        self.transport: Optional[paramiko.Transport] = None
        self._stopping = threading.Event()

    def serve(self) -> None:
        """Run the session until the stream ends or close() is called; blocks"""
        try:
            self.transport = paramiko.Transport(self.stream)
            self.transport.add_server_key(self.host_key)
            try:
                self.transport.start_server(server=self.server)
            except (paramiko.SSHException, EOFError, OSError) as e:
                logger.warning(f"Handshake on {self.label} failed: {e}")
                return

            started = time.monotonic()
            while self.transport.is_active() and not self._stopping.is_set():
                channel = self.transport.accept(ACCEPT_POLL_INTERVAL)
                if channel is not None:
                    self.server.attach(channel)
                elif self.server.user is None and time.monotonic() - started > AUTH_GRACE_PERIOD:
                    logger.warning(f"No authentication on {self.label} in time")
                    break
        finally:
            self.close()
        logger.info(f"{self.label} ended")

    def close(self) -> None:
        """Cancel the shell session, then tear down the transport and stream"""
        self._stopping.set()
        self.server.close()
        if self.transport is not None:
            self.transport.close()
        close_quietly(self.stream)
