"""Shared fixtures: generated keys, free ports, clean telemetry."""

import socket
import time

import pytest

from rcon.core.keys import generate_private_key_text, load_private_key, authorized_key_line
from rcon.core.telemetry import get_telemetry


def make_key():
    """Return (private key text, paramiko key) for a fresh Ed25519 key."""
    text = generate_private_key_text()
    return text, load_private_key(text)


def wait_for(predicate, timeout=10.0, interval=0.05):
    """Poll ``predicate`` until it is truthy or ``timeout`` elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


def recv_exactly(sock, size, timeout=10.0):
    """Read exactly ``size`` bytes from a socket or channel."""
    sock.settimeout(timeout)
    data = bytearray()
    while len(data) < size:
        chunk = sock.recv(size - len(data))
        if not chunk:
            break
        data += chunk
    return bytes(data)


def recv_until_closed(sock, timeout=10.0):
    """Read from a socket or channel until end-of-stream."""
    sock.settimeout(timeout)
    data = bytearray()
    while True:
        try:
            chunk = sock.recv(65536)
        except (ConnectionResetError, socket.timeout):
            break
        if not chunk:
            break
        data += chunk
    return bytes(data)


def is_closed(sock, timeout=5.0):
    """True if the peer closed ``sock`` (EOF or reset) within ``timeout``."""
    sock.settimeout(timeout)
    try:
        return sock.recv(1) == b""
    except ConnectionResetError:
        return True
    except socket.timeout:
        return False


@pytest.fixture
def agent_key():
    return make_key()[1]


@pytest.fixture
def user_key():
    return make_key()[1]


@pytest.fixture
def other_key():
    return make_key()[1]


@pytest.fixture
def host_key():
    return make_key()[1]


@pytest.fixture
def pub_line():
    """Render a key as an authorized_keys line."""
    return lambda key, comment="test": authorized_key_line(key, comment)


@pytest.fixture
def free_port():
    """A TCP port on 127.0.0.1 that was free a moment ago."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture(autouse=True)
def clean_telemetry():
    get_telemetry().clear()
    yield
    get_telemetry().clear()
