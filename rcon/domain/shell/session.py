"""
Shell session - one interactive shell behind one session channel

Design:
=======
Sub-requests arrive on paramiko's transport thread in channel order,
so request_pty / resize / start_shell are applied in arrival order.
Once the shell runs, separate threads copy bytes and wait for exit:

- pty mode:   pty output -> channel, channel -> pty input
- pipe mode:  stdout -> channel, stderr -> channel (extended data),
              channel -> stdin (closed on EOF)
- waiter:     process exit -> drain output -> exit-status -> close channel

The lock only guards the state record and the pty master descriptor.
"""
import os
import select
import shlex
import signal
import subprocess
import threading
from typing import Any, Callable, Dict, List, Optional

import paramiko

from ...core.constants import (
    DEFAULT_SHELL,
    DEFAULT_TERM,
    OUTPUT_DRAIN_TIMEOUT,
    PTY_BUFFER_SIZE,
    PTY_POLL_INTERVAL,
    THREAD_JOIN_TIMEOUT,
)
from ...core.exceptions import ProtocolViolationError, SpawnError
from ...core.logging import get_logger
from ...core.telemetry import get_telemetry
from . import terminal
from .models import PtySize, ShellPhase, ShellSessionState

logger = get_logger(__name__)
telemetry = get_telemetry()

_CHANNEL_ERRORS = (OSError, EOFError, paramiko.SSHException)


class ShellSession:
    """
    Shell session state machine for one session channel.

    At most one shell per channel: a second start_shell raises
    ProtocolViolationError and spawns nothing.
    """

    def __init__(
        self,
        shell: str = DEFAULT_SHELL,
        user: str = "",
        env: Optional[Dict[str, str]] = None,
    ):
        """
        Initialize shell session.

        Args:
            shell: Command line of the interpreter to spawn
            user: Authenticated end user (for logs)
            env: Base environment of the shell (default: this process's)
        """
        self.shell = shell
        self.user = user
        self.env = env
        self.state = ShellSessionState()
        self.channel: Optional[Any] = None
        self._lock = threading.Lock()
        self._master_lock = threading.Lock()
        self._stop_output = threading.Event()
        self._exited = threading.Event()

    @property
    def phase(self) -> ShellPhase:
        return self.state.phase

    @property
    def finished(self) -> bool:
        """Whether this session no longer occupies its nested session"""
        if self.state.phase in (ShellPhase.EXITED, ShellPhase.CLOSED):
            return True
        return self.channel is not None and self.channel.closed

    def attach(self, channel: Any) -> None:
        """Bind the accepted channel; the first binding wins"""
        with self._lock:
            if self.channel is None:
                self.channel = channel

    # ============================================================
    # Sub-requests
    # ============================================================

    def request_pty(self, term: str, size: PtySize) -> None:
        """
        Record a pty-req.

        Raises:
            ProtocolViolationError: If the shell already started
        """
        with self._lock:
            if self.state.started:
                raise ProtocolViolationError("pty-req after shell start")
            self.state.term = term or DEFAULT_TERM
            self.state.pty_requested = True
            self.state.pty_size = size
        logger.debug(f"pty-req {self.state.term} {size.cols}x{size.rows} for {self.user!r}")

    def resize(self, size: PtySize) -> None:
        """Apply a window-change live, or keep it for the pty the shell will get"""
        with self._lock:
            self.state.pty_size = size
        with self._master_lock:
            master_fd = self.state.master_fd
            if master_fd is None:
                return
            try:
                terminal.set_winsize(master_fd, size)
            except OSError as e:
                logger.debug(f"Resize of pty for {self.user!r} failed: {e}")

    def start_shell(self, channel: Any) -> None:
        """
        Spawn the shell and start bridging it to ``channel``.

        Returns once the process has started.

        Raises:
            ProtocolViolationError: If a shell was already started on this channel
            SpawnError: If the pty or the process cannot be created
        """
        with self._lock:
            if self.state.started:
                raise ProtocolViolationError("Shell already started on this channel")
            if self.channel is None:
                self.channel = channel

            if self.state.pty_requested:
                workers = self._spawn_with_pty()
            else:
                workers = self._spawn_with_pipes()
            self.state.phase = ShellPhase.RUNNING
            process = self.state.process

        outputs, pump_in = workers
        for thread in outputs + [pump_in]:
            thread.start()
        threading.Thread(
            target=self._wait_for_exit,
            args=(outputs, pump_in),
            daemon=True,
            name=f"rcon-shell-wait-{process.pid}",
        ).start()

        logger.info(
            f"Started {self.shell!r} (pid {process.pid}, "
            f"{'pty' if self.state.has_pty else 'no pty'}) for {self.user!r}"
        )
        telemetry.record_event("shell.started", {
            "user": self.user,
            "pid": process.pid,
            "pty": self.state.has_pty,
        })

    # ============================================================
    # Spawning
    # ============================================================

    def _command(self) -> List[str]:
        argv = shlex.split(self.shell)
        if not argv:
            raise SpawnError("Empty shell command")
        return argv

    def _environment(self, term: Optional[str]) -> Dict[str, str]:
        env = dict(os.environ if self.env is None else self.env)
        if term:
            env["TERM"] = term
        return env

    def _spawn_with_pty(self):
        argv = self._command()
        size = self.state.pty_size or PtySize(cols=80, rows=24)
        try:
            master_fd, slave_fd = terminal.open_pty(size)
        except OSError as e:
            raise SpawnError(f"Cannot allocate pty: {e}") from e

        try:
            process = subprocess.Popen(
                argv,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                env=self._environment(self.state.term),
                start_new_session=True,
                preexec_fn=terminal.make_controlling_tty,
            )
        except (OSError, subprocess.SubprocessError) as e:
            os.close(master_fd)
            raise SpawnError(f"Cannot start {self.shell!r}: {e}") from e
        finally:
            os.close(slave_fd)

        self.state.process = process
        self.state.master_fd = master_fd

        outputs = [self._worker(self._pump_pty_output, (master_fd,), "out", process.pid)]
        pump_in = self._worker(self._pump_pty_input, (), "in", process.pid)
        return outputs, pump_in

    def _spawn_with_pipes(self):
        argv = self._command()
        try:
            process = subprocess.Popen(
                argv,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=self._environment(None),
                start_new_session=True,
            )
        except (OSError, subprocess.SubprocessError) as e:
            raise SpawnError(f"Cannot start {self.shell!r}: {e}") from e

        self.state.process = process
        outputs = [
            self._worker(self._pump_pipe_output, (process.stdout, self.channel.sendall), "out", process.pid),
            self._worker(self._pump_pipe_output, (process.stderr, self.channel.sendall_stderr), "err", process.pid),
        ]
        pump_in = self._worker(self._pump_pipe_input, (process.stdin,), "in", process.pid)
        return outputs, pump_in

    def _worker(self, target: Callable, args: tuple, role: str, pid: int) -> threading.Thread:
        return threading.Thread(target=target, args=args, daemon=True, name=f"rcon-shell-{role}-{pid}")

    # ============================================================
    # Copy Loops
    # ============================================================

    def _pump_pty_output(self, master_fd: int) -> None:
        while not self._stop_output.is_set():
            try:
                ready, _, _ = select.select([master_fd], [], [], PTY_POLL_INTERVAL)
                if not ready:
                    continue
                data = os.read(master_fd, PTY_BUFFER_SIZE)
            except OSError:
                # EIO once every slave descriptor is closed
                break
            if not data:
                break
            try:
                self.channel.sendall(data)
            except _CHANNEL_ERRORS as e:
                logger.debug(f"pty output for {self.user!r} stopped: {e}")
                break

    def _pump_pty_input(self) -> None:
        while True:
            try:
                data = self.channel.recv(PTY_BUFFER_SIZE)
            except _CHANNEL_ERRORS:
                break
            if not data or not self._write_master(data):
                break

    def _write_master(self, data: bytes) -> bool:
        with self._master_lock:
            master_fd = self.state.master_fd
            if master_fd is None:
                return False
            view = memoryview(data)
            try:
                while view:
                    written = os.write(master_fd, view)
                    view = view[written:]
            except OSError:
                return False
        return True

    def _pump_pipe_output(self, stream, send: Callable[[bytes], Any]) -> None:
        try:
            while True:
                data = stream.read1(PTY_BUFFER_SIZE)
                if not data:
                    break
                send(data)
        except (ValueError,) + _CHANNEL_ERRORS as e:
            logger.debug(f"Output pump for {self.user!r} stopped: {e}")

    def _pump_pipe_input(self, stdin) -> None:
        try:
            while True:
                data = self.channel.recv(PTY_BUFFER_SIZE)
                if not data:
                    break
                stdin.write(data)
                stdin.flush()
        except (ValueError,) + _CHANNEL_ERRORS as e:
            logger.debug(f"Input pump for {self.user!r} stopped: {e}")
        finally:
            try:
                stdin.close()
            except OSError:
                pass

    # ============================================================
    # Exit and Teardown
    # ============================================================

    def _wait_for_exit(self, outputs: List[threading.Thread], pump_in: threading.Thread) -> None:
        process = self.state.process
        returncode = process.wait()

        for thread in outputs:
            thread.join(OUTPUT_DRAIN_TIMEOUT)
        self._stop_output.set()
        for thread in outputs:
            thread.join(PTY_POLL_INTERVAL * 2)

        # Negative: killed by a signal, no exit code to report
        exit_code = returncode if returncode >= 0 else None
        with self._lock:
            self.state.exit_code = exit_code
            if self.state.phase is ShellPhase.RUNNING:
                self.state.phase = ShellPhase.EXITED

        channel = self.channel
        if exit_code is not None:
            try:
                channel.send_exit_status(exit_code)
            except _CHANNEL_ERRORS as e:
                logger.debug(f"Cannot send exit status to {self.user!r}: {e}")
        else:
            logger.info(f"Shell pid {process.pid} killed by signal {-returncode}; no exit status sent")

        try:
            channel.close()
        except _CHANNEL_ERRORS:
            pass

        for thread in outputs:
            thread.join(THREAD_JOIN_TIMEOUT)
        pump_in.join(THREAD_JOIN_TIMEOUT)
        if not any(thread.is_alive() for thread in outputs):
            self._close_master()
        else:
            logger.warning(f"Output pump of pid {process.pid} did not stop; leaving pty open")

        logger.info(f"Shell pid {process.pid} for {self.user!r} exited with {returncode}")
        telemetry.record_event("shell.exited", {
            "user": self.user,
            "pid": process.pid,
            "exit_code": exit_code,
        })
        self._exited.set()

    def _close_master(self) -> None:
        with self._master_lock:
            master_fd = self.state.master_fd
            self.state.master_fd = None
        if master_fd is not None:
            try:
                os.close(master_fd)
            except OSError:
                pass

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Wait until the shell exited and its channel was closed"""
        return self._exited.wait(timeout)

    def close(self) -> None:
        """
        Cancel the session: close the channel and hang up the shell.

        The process is sent SIGHUP, not killed; the exit waiter still
        reaps it and releases the pty.
        """
        with self._lock:
            if self.state.phase is ShellPhase.CLOSED:
                return
            self.state.phase = ShellPhase.CLOSED
            process = self.state.process
            channel = self.channel

        if process is not None and process.poll() is None:
            try:
                os.killpg(process.pid, signal.SIGHUP)
            except (ProcessLookupError, PermissionError) as e:
                logger.debug(f"Cannot hang up pid {process.pid}: {e}")

        if channel is not None:
            try:
                channel.close()
            except _CHANNEL_ERRORS:
                pass
