"""Tests for the broker's per-agent session: auth, forward-listen policy, relays, teardown."""

import socket
from unittest import mock

import paramiko
import pytest

from rcon.core.telemetry import get_telemetry
from rcon.domain.broker import AgentSession, SessionPhase
from rcon.domain.identity import AgentIdentity, AuthPolicy
from tests.conftest import wait_for, recv_exactly, is_closed


def connect(port):
    return socket.create_connection(("127.0.0.1", port), timeout=5)


def port_is_listening(port):
    try:
        with connect(port):
            return True
    except OSError:
        return False


@pytest.fixture
def make_session(agent_key, pub_line):
    sessions = []

    def factory(listen, max_relays=64, authenticate=True):
        identity = AgentIdentity.from_dict("office-pc", {"key": pub_line(agent_key), "listen": listen})
        transport = mock.Mock(spec=paramiko.Transport)
        # No agent behind the mock unless a test provides channel ends
        transport.open_channel.side_effect = paramiko.ChannelException(2, "Connect failed")
        session = AgentSession(
            transport,
            AuthPolicy({"office-pc": identity}),
            ("127.0.0.1", 40000),
            max_relays=max_relays,
        )
        if authenticate:
            assert session.check_auth_publickey("office-pc", agent_key) == paramiko.AUTH_SUCCESSFUL
        sessions.append(session)
        return session

    yield factory
    for session in sessions:
        session.close()


def rejection_reasons():
    return [event.metadata["reason"] for event in get_telemetry().get_events("broker.forward.rejected")]


class TestAgentAuthentication:
    """Session establishment"""

    def test_registered_agent(self, make_session):
        session = make_session("127.0.0.1:0")
        assert session.phase is SessionPhase.AUTHENTICATED
        assert session.name == "office-pc"
        assert session.get_allowed_auths("office-pc") == "publickey"

    def test_unknown_agent(self, make_session, agent_key):
        session = make_session("127.0.0.1:0", authenticate=False)

        assert session.check_auth_publickey("intruder", agent_key) == paramiko.AUTH_FAILED
        assert session.phase is SessionPhase.ESTABLISHED
        events = get_telemetry().get_events("broker.auth.rejected")
        assert events[0].metadata["reason"] == "UnknownIdentity"

    def test_wrong_key(self, make_session, other_key):
        session = make_session("127.0.0.1:0", authenticate=False)

        assert session.check_auth_publickey("office-pc", other_key) == paramiko.AUTH_FAILED
        assert session.identity is None
        events = get_telemetry().get_events("broker.auth.rejected")
        assert events[0].metadata["reason"] == "KeyMismatch"

    def test_agent_cannot_open_channels(self, make_session):
        session = make_session("127.0.0.1:0")
        assert session.check_channel_request("session", 1) == paramiko.OPEN_FAILED_ADMINISTRATIVELY_PROHIBITED
        assert session.check_channel_request("direct-tcpip", 2) == paramiko.OPEN_FAILED_ADMINISTRATIVELY_PROHIBITED

    def test_unknown_global_request(self, make_session):
        session = make_session("127.0.0.1:0")
        assert session.check_global_request("keepalive@openssh.com", None) is False


class TestForwardPolicy:
    """Forward-listen validation"""

    def test_pinned_port(self, make_session, free_port):
        session = make_session(f"127.0.0.1:{free_port}")

        assert session.check_port_forward_request("0.0.0.0", free_port) == free_port
        assert session.phase is SessionPhase.FORWARDING
        assert port_is_listening(free_port)

        event = get_telemetry().get_events("broker.forward.bound")[0]
        assert event.metadata["port"] == free_port
        assert event.metadata["ephemeral"] is False

    def test_other_port_rejected(self, make_session, free_port):
        session = make_session(f"127.0.0.1:{free_port}")
        other_port = free_port + 1 if free_port < 65535 else free_port - 1

        assert session.check_port_forward_request("0.0.0.0", other_port) is False
        assert session.binding is None
        assert session.phase is SessionPhase.AUTHENTICATED
        assert not port_is_listening(other_port)
        assert not port_is_listening(free_port)
        assert rejection_reasons() == ["ForwardPolicyError"]

    def test_any_port(self, make_session, free_port):
        session = make_session(f"127.0.0.1:{free_port}")

        bound = session.check_port_forward_request("0.0.0.0", 0)

        assert bound and bound != 0
        assert session.binding.listener.getsockname()[1] == bound
        assert session.binding.bind_host == "127.0.0.1"
        assert session.binding.ephemeral
        assert port_is_listening(bound)

    def test_unresolvable_host_is_distinct(self, make_session):
        session = make_session("pinned-host.invalid:10022")

        assert session.check_port_forward_request("0.0.0.0", 10022) is False
        assert session.binding is None
        assert rejection_reasons() == ["AddressResolutionError"]

    def test_port_in_use(self, make_session):
        with socket.socket() as blocker:
            blocker.bind(("127.0.0.1", 0))
            blocker.listen(1)
            port = blocker.getsockname()[1]

            session = make_session(f"127.0.0.1:{port}")
            assert session.check_port_forward_request("0.0.0.0", port) is False
            assert rejection_reasons() == ["ListenerBindError"]

    def test_before_authentication(self, make_session):
        session = make_session("127.0.0.1:0", authenticate=False)
        assert session.check_port_forward_request("0.0.0.0", 0) is False
        assert rejection_reasons() == ["ProtocolViolationError"]

    def test_second_binding_rejected(self, make_session):
        session = make_session("127.0.0.1:0")

        first = session.check_port_forward_request("0.0.0.0", 0)
        assert first
        assert session.check_port_forward_request("0.0.0.0", 0) is False
        assert session.binding.bind_port == first
        assert rejection_reasons() == ["ForwardPolicyError"]

    def test_cancel_releases_binding(self, make_session):
        session = make_session("127.0.0.1:0")
        bound = session.check_port_forward_request("0.0.0.0", 0)

        session.cancel_port_forward_request("0.0.0.0", bound)

        assert session.binding is None
        assert session.phase is SessionPhase.AUTHENTICATED
        assert not port_is_listening(bound)
        assert session.check_port_forward_request("0.0.0.0", 0)

    def test_cancel_unknown_port_ignored(self, make_session):
        session = make_session("127.0.0.1:0")
        bound = session.check_port_forward_request("0.0.0.0", 0)

        session.cancel_port_forward_request("0.0.0.0", 1)

        assert session.binding is not None
        assert port_is_listening(bound)


class TestRelays:
    """Relaying accepted TCP connections into channels"""

    def test_relay_opens_forwarded_channel(self, make_session):
        session = make_session("127.0.0.1:0")
        channel_end, agent_end = socket.socketpair()
        session.transport.open_channel.side_effect = None
        session.transport.open_channel.return_value = channel_end
        bound = session.check_port_forward_request("0.0.0.0", 0)

        with connect(bound) as client:
            client.sendall(b"ping")
            assert recv_exactly(agent_end, 4) == b"ping"
            agent_end.sendall(b"\x00pong\xff")
            assert recv_exactly(client, 6) == b"\x00pong\xff"

            args, kwargs = session.transport.open_channel.call_args
            assert args[0] == "forwarded-tcpip"
            assert kwargs["dest_addr"] == ("0.0.0.0", bound)
            assert kwargs["src_addr"] == client.getsockname()

        agent_end.close()

    @pytest.mark.filterwarnings("error::pytest.PytestUnhandledThreadExceptionWarning")
    def test_unreachable_agent_closes_connection(self, make_session):
        session = make_session("127.0.0.1:0")
        bound = session.check_port_forward_request("0.0.0.0", 0)

        with connect(bound) as client:
            assert is_closed(client)

        assert session.relay_count == 0
        assert get_telemetry().get_events("broker.relay.opened") == []
        assert port_is_listening(bound)

    def test_channel_open_failure_keeps_listener(self, make_session):
        session = make_session("127.0.0.1:0")
        channel_end, agent_end = socket.socketpair()
        session.transport.open_channel.side_effect = [
            paramiko.ChannelException(2, "Connect failed"),
            channel_end,
        ]
        bound = session.check_port_forward_request("0.0.0.0", 0)

        with connect(bound) as first:
            assert is_closed(first)

        with connect(bound) as second:
            second.sendall(b"still here")
            assert recv_exactly(agent_end, 10) == b"still here"

        agent_end.close()

    def test_relay_limit(self, make_session):
        session = make_session("127.0.0.1:0", max_relays=1)
        channel_end, agent_end = socket.socketpair()
        session.transport.open_channel.side_effect = None
        session.transport.open_channel.return_value = channel_end
        bound = session.check_port_forward_request("0.0.0.0", 0)

        with connect(bound) as first:
            assert wait_for(lambda: session.relay_count == 1)
            with connect(bound) as second:
                assert is_closed(second)
            assert get_telemetry().get_events("broker.relay.refused")

            first.sendall(b"ok")
            assert recv_exactly(agent_end, 2) == b"ok"

        agent_end.close()

    def test_session_close_cascades(self, make_session):
        session = make_session("127.0.0.1:0")
        pairs = [socket.socketpair() for _ in range(2)]
        session.transport.open_channel.side_effect = [pair[0] for pair in pairs]
        bound = session.check_port_forward_request("0.0.0.0", 0)

        clients = [connect(bound), connect(bound)]
        assert wait_for(lambda: session.relay_count == 2)

        session.close()

        assert session.phase is SessionPhase.CLOSED
        for client in clients:
            assert is_closed(client)
            client.close()
        for _, agent_end in pairs:
            assert is_closed(agent_end)
            agent_end.close()
        assert wait_for(lambda: session.relay_count == 0)
        assert not port_is_listening(bound)

        closed = get_telemetry().get_events("broker.session.closed")
        assert closed[0].metadata["relays_cancelled"] == 2

    def test_forward_after_close_rejected(self, make_session):
        session = make_session("127.0.0.1:0")
        session.close()
        assert session.check_port_forward_request("0.0.0.0", 0) is False
