"""Tests for the TCP <-> channel relay, over socket pairs."""

import os
import socket
import threading

import pytest

from rcon.domain.broker import RelaySession
from tests.conftest import recv_exactly, is_closed


class RelayHarness:
    """client <-> [conn | relay | channel] <-> agent"""

    def __init__(self, on_close=None):
        self.client, conn = socket.socketpair()
        channel, self.agent = socket.socketpair()
        self.relay = RelaySession(conn, channel, ("198.51.100.7", 50000), on_close=on_close)
        self.thread = threading.Thread(target=self.relay.run, daemon=True)
        self.thread.start()

    def close(self):
        self.relay.close()
        self.thread.join(5)
        self.client.close()
        self.agent.close()


@pytest.fixture
def harness():
    relays = []

    def factory(**kwargs):
        relay = RelayHarness(**kwargs)
        relays.append(relay)
        return relay

    yield factory
    for relay in relays:
        relay.close()


class TestTransparency:
    """Bytes pass unmodified and in order"""

    def test_client_to_agent(self, harness):
        h = harness()
        h.client.sendall(b"hello agent")
        assert recv_exactly(h.agent, 11) == b"hello agent"

    def test_agent_to_client(self, harness):
        h = harness()
        h.agent.sendall(b"hello client")
        assert recv_exactly(h.client, 12) == b"hello client"

    def test_binary_data_both_ways(self, harness):
        h = harness()
        payload = bytes(range(256)) * 64 + os.urandom(4096)

        h.client.sendall(payload)
        assert recv_exactly(h.agent, len(payload)) == payload
        h.agent.sendall(payload[::-1])
        assert recv_exactly(h.client, len(payload)) == payload[::-1]
        assert h.relay.bytes_to_channel == len(payload)
        assert h.relay.bytes_to_conn == len(payload)

    def test_empty_write_is_not_end_of_stream(self, harness):
        h = harness()
        h.client.sendall(b"")
        h.client.sendall(b"after")
        assert recv_exactly(h.agent, 5) == b"after"
        assert not h.relay.closed

    def test_large_transfer_in_order(self, harness):
        h = harness()
        payload = os.urandom(1024 * 1024)
        sender = threading.Thread(target=h.client.sendall, args=(payload,))
        sender.start()
        assert recv_exactly(h.agent, len(payload), timeout=30) == payload
        sender.join(5)


class TestTeardown:
    """End of stream on either side closes both"""

    def test_client_close_closes_channel(self, harness):
        h = harness()
        h.client.close()
        assert is_closed(h.agent)
        assert h.relay.wait(5)

    def test_agent_close_closes_connection(self, harness):
        h = harness()
        h.agent.shutdown(socket.SHUT_WR)
        assert is_closed(h.client)
        assert h.relay.wait(5)

    def test_close_is_idempotent(self, harness):
        calls = []
        h = harness(on_close=calls.append)

        h.relay.close()
        h.relay.close()

        assert calls == [h.relay]
        assert is_closed(h.client)
        assert is_closed(h.agent)

    def test_run_returns_after_close(self, harness):
        h = harness()
        h.relay.close()
        h.thread.join(5)
        assert not h.thread.is_alive()


class TestIsolation:
    """One relay ending never affects another"""

    def test_closing_one_relay(self, harness):
        first, second = harness(), harness()

        first.client.close()
        assert first.relay.wait(5)

        second.client.sendall(b"unaffected")
        assert recv_exactly(second.agent, 10) == b"unaffected"
        assert not second.relay.closed
