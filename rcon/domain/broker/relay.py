"""
TCP <-> SSH channel relay

One RelaySession per TCP connection accepted on a forward binding.
Two copy threads per relay; end-of-stream or an error in either
direction closes both endpoints (half-close is not preserved).
"""
import threading
from typing import Any, Callable, Optional, Tuple

import paramiko

from ...core.constants import RELAY_BUFFER_SIZE, THREAD_JOIN_TIMEOUT
from ...core.logging import get_logger
from ...core.utils import close_quietly

logger = get_logger(__name__)


class RelaySession:
    """
    Bidirectional byte copy between a TCP connection and a logical channel.

    Both endpoints only need ``recv``, ``sendall``, ``shutdown`` and
    ``close``, so a paramiko Channel and a socket are interchangeable.
    """

    def __init__(
        self,
        conn: Any,
        channel: Any,
        origin: Tuple[str, int],
        buffer_size: int = RELAY_BUFFER_SIZE,
        on_close: Optional[Callable[["RelaySession"], None]] = None,
    ):
        """
        Initialize relay.

        Args:
            conn: Accepted TCP connection (blocking mode)
            channel: Channel opened towards the agent
            origin: Remote address of the TCP connection
            buffer_size: Max bytes per recv
            on_close: Called once, after both endpoints are closed
        """
        self.conn = conn
        self.channel = channel
        self.origin = origin
        self.buffer_size = buffer_size
        self.on_close = on_close
        self.bytes_to_channel = 0
        self.bytes_to_conn = 0
        self._closed = threading.Event()
        self._close_lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def run(self) -> None:
        """Copy in both directions until either side ends; blocks"""
        peer = f"{self.origin[0]}:{self.origin[1]}"
        threads = [
            threading.Thread(
                target=self._copy,
                args=(self.conn, self.channel, "to_channel"),
                daemon=True,
                name=f"rcon-relay-up-{peer}",
            ),
            threading.Thread(
                target=self._copy,
                args=(self.channel, self.conn, "to_conn"),
                daemon=True,
                name=f"rcon-relay-down-{peer}",
            ),
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

    def _copy(self, src: Any, dst: Any, direction: str) -> None:
        try:
            while True:
                data = src.recv(self.buffer_size)
                if not data:
                    break
                if direction == "to_channel":
                    self.bytes_to_channel += len(data)
                else:
                    self.bytes_to_conn += len(data)
                dst.sendall(data)
        except (OSError, EOFError, paramiko.SSHException) as e:
            if not self.closed:
                logger.debug(f"Relay {self.origin} {direction} ended: {e}")
        finally:
            self.close()

    def close(self) -> None:
        """Close both endpoints; safe to call from any thread, any number of times"""
        with self._close_lock:
            if self._closed.is_set():
                return
            self._closed.set()

        close_quietly(self.conn)
        close_quietly(self.channel)

        if self.on_close:
            self.on_close(self)

    def wait(self, timeout: float = THREAD_JOIN_TIMEOUT) -> bool:
        """Wait until the relay is closed"""
        return self._closed.wait(timeout)
