"""
Project constants definitions
"""

# ============================================================
# Configuration Files
# ============================================================

DEFAULT_BROKER_CONFIG = "broker.toml"
DEFAULT_AGENT_CONFIG = "agent.toml"
ENV_PREFIX = "RCON_"

# ============================================================
# Host Identity
# ============================================================

DEFAULT_HOST_KEY_PATH = "hostkey"
HOST_KEY_MODE = 0o600

# ============================================================
# SSH Protocol Names
# ============================================================

SESSION_CHANNEL = "session"
FORWARDED_TCPIP_CHANNEL = "forwarded-tcpip"
ANY_PORT = 0

# ============================================================
# Broker Default Values
# ============================================================

DEFAULT_BROKER_LISTEN = "0.0.0.0:2222"
DEFAULT_MAX_RELAYS_PER_AGENT = 64
LISTEN_BACKLOG = 128
CHANNEL_OPEN_TIMEOUT = 10.0
RELAY_BUFFER_SIZE = 32768
AUTH_GRACE_PERIOD = 30.0

# ============================================================
# Agent Default Values
# ============================================================

DEFAULT_INSTALL_DIR = "/opt/single-rcon"
DEFAULT_FORWARD_ADDRESS = "0.0.0.0"
DEFAULT_MAX_SESSIONS = 16
DIAL_TIMEOUT = 10.0
KEEPALIVE_INTERVAL = 30

# ============================================================
# Shell Sessions
# ============================================================

DEFAULT_SHELL = "sh"
DEFAULT_TERM = "xterm"
PTY_BUFFER_SIZE = 8192
OUTPUT_DRAIN_TIMEOUT = 2.0
PTY_POLL_INTERVAL = 0.2

# ============================================================
# Threads
# ============================================================

ACCEPT_POLL_INTERVAL = 1.0
THREAD_JOIN_TIMEOUT = 2.0

# Events and metrics kept in memory; oldest dropped first
TELEMETRY_HISTORY = 1000

# ============================================================
# Service Manager
# ============================================================

SERVICE_NAME = "single-rcon.service"
SYSTEMD_UNIT_DIR = "/etc/systemd/system"
INSTALL_DIR_MODE = 0o700
INSTALLED_CONFIG_MODE = 0o600
UNIT_FILE_MODE = 0o644
