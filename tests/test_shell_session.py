"""Tests for the shell session state machine with real processes."""

import socket
import threading

import pytest

from rcon.core.exceptions import ProtocolViolationError, SpawnError
from rcon.core.telemetry import get_telemetry
from rcon.domain.shell import PtySize, ShellPhase, ShellSession
from rcon.domain.shell.terminal import get_winsize
from tests.conftest import recv_until_closed


class FakeChannel:
    """The parts of a paramiko Channel a shell session uses, over a socket pair."""

    def __init__(self, chanid=0):
        self.sock, self.peer = socket.socketpair()
        self.chanid = chanid
        self.closed = False
        self.exit_status = None
        self.stderr = bytearray()
        self.history = []
        self._lock = threading.Lock()

    def get_id(self):
        return self.chanid

    def recv(self, size):
        return self.sock.recv(size)

    def sendall(self, data):
        self.sock.sendall(data)

    def sendall_stderr(self, data):
        with self._lock:
            self.stderr += data

    def send_exit_status(self, status):
        self.exit_status = status
        self.history.append(("exit-status", status))

    def close(self):
        with self._lock:
            if self.closed:
                return
            self.closed = True
        self.history.append(("close",))
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass

    def dispose(self):
        self.sock.close()
        self.peer.close()


@pytest.fixture
def channel():
    chan = FakeChannel()
    yield chan
    chan.close()
    chan.dispose()


@pytest.fixture
def session():
    shell = ShellSession(shell="sh", user="alice")
    yield shell
    shell.close()
    shell.wait(10)


def run_script(session, channel, script):
    """Start the shell, feed it ``script`` and collect output until the channel closes."""
    session.start_shell(channel)
    channel.peer.sendall(script)
    output = recv_until_closed(channel.peer, timeout=15)
    assert session.wait(15)
    return output


class TestWithoutPty:
    """Standard streams wired straight to the channel"""

    def test_output_and_exit_status(self, session, channel):
        output = run_script(session, channel, b"echo hello\nexit 5\n")

        assert b"hello" in output
        assert channel.exit_status == 5
        assert channel.history[-2:] == [("exit-status", 5), ("close",)]
        assert session.phase is ShellPhase.EXITED
        assert session.state.exit_code == 5

    def test_clean_exit_reports_zero(self, session, channel):
        run_script(session, channel, b"true\nexit\n")
        assert channel.exit_status == 0
        assert session.state.exit_code == 0

    def test_stderr_is_extended_data(self, session, channel):
        output = run_script(session, channel, b"echo oops 1>&2\nexit 0\n")

        assert b"oops" not in output
        assert b"oops" in bytes(channel.stderr)

    def test_no_terminal(self, session, channel):
        output = run_script(session, channel, b'[ -t 0 ] || echo "NO""_TTY"\nexit 0\n')

        assert b"NO_TTY" in output
        assert session.state.master_fd is None

    def test_end_of_input_ends_shell(self, session, channel):
        session.start_shell(channel)
        channel.peer.shutdown(socket.SHUT_WR)

        assert session.wait(15)
        assert channel.exit_status == 0

    def test_signal_death_omits_exit_status(self, session, channel):
        run_script(session, channel, b"kill -9 $$\n")

        assert channel.exit_status is None
        assert channel.closed
        assert session.state.exit_code is None

        exited = get_telemetry().get_events("shell.exited")
        assert exited[0].metadata["exit_code"] is None


class TestWithPty:
    """pty-req before shell attaches a terminal of the requested size"""

    def test_requested_size(self, session, channel):
        session.request_pty("xterm", PtySize.from_request(80, 24))
        output = run_script(session, channel, b"stty size; exit 7\n")

        assert b"24 80" in output
        assert channel.exit_status == 7

    def test_is_a_terminal(self, session, channel):
        session.request_pty("xterm", PtySize.from_request(80, 24))
        output = run_script(session, channel, b'[ -t 0 ] && echo "IS""_TTY"; exit 0\n')

        assert b"IS_TTY" in output

    def test_term_is_exported(self, session, channel):
        session.request_pty("vt100", PtySize.from_request(80, 24))
        output = run_script(session, channel, b'echo "T=$TERM"; exit 0\n')

        assert b"T=vt100" in output

    def test_window_change_before_shell(self, session, channel):
        session.request_pty("xterm", PtySize.from_request(80, 24))
        session.resize(PtySize.from_request(100, 40))
        output = run_script(session, channel, b"stty size; exit 0\n")

        assert b"40 100" in output

    def test_window_change_while_running(self, session, channel):
        session.request_pty("xterm", PtySize.from_request(80, 24))
        session.start_shell(channel)

        session.resize(PtySize.from_request(100, 40, 800, 600))
        assert get_winsize(session.state.master_fd) == PtySize(cols=100, rows=40, pixel_width=800, pixel_height=600)

        channel.peer.sendall(b"stty size; exit 0\n")
        output = recv_until_closed(channel.peer, timeout=15)
        assert session.wait(15)
        assert b"40 100" in output

    def test_pty_released_after_exit(self, session, channel):
        session.request_pty("xterm", PtySize.from_request(80, 24))
        run_script(session, channel, b"exit 0\n")

        assert session.state.master_fd is None

    def test_pty_req_after_shell_rejected(self, session, channel):
        session.start_shell(channel)
        with pytest.raises(ProtocolViolationError):
            session.request_pty("xterm", PtySize.from_request(80, 24))


class TestWindowChangeWithoutPty:
    """window-change alone never creates a terminal"""

    def test_resize_only_updates_pending_size(self, session, channel):
        session.resize(PtySize.from_request(100, 40))
        output = run_script(session, channel, b'[ -t 0 ] || echo "NO""_TTY"\nexit 0\n')

        assert b"NO_TTY" in output
        assert session.state.pty_size == PtySize(cols=100, rows=40)


class TestShellIdempotence:
    """At most one shell per channel"""

    def test_second_shell_rejected(self, session, channel):
        session.start_shell(channel)
        pid = session.state.process.pid

        with pytest.raises(ProtocolViolationError):
            session.start_shell(channel)

        assert session.state.process.pid == pid
        assert len(get_telemetry().get_events("shell.started")) == 1

    def test_spawn_failure(self, channel):
        broken = ShellSession(shell="/nonexistent/shell-binary", user="alice")

        with pytest.raises(SpawnError):
            broken.start_shell(channel)
        assert broken.phase is ShellPhase.PENDING
        assert get_telemetry().get_events("shell.started") == []


class TestCancellation:
    """Closing a running session"""

    def test_close_hangs_up_shell(self, session, channel):
        session.request_pty("xterm", PtySize.from_request(80, 24))
        session.start_shell(channel)

        session.close()

        assert channel.closed
        assert session.wait(15)
        assert session.phase is ShellPhase.CLOSED
        assert session.state.process.poll() is not None

    def test_close_before_shell(self, channel):
        idle = ShellSession(shell="sh")
        idle.attach(channel)
        idle.close()

        assert channel.closed
        assert idle.finished
        with pytest.raises(ProtocolViolationError):
            idle.start_shell(channel)
