"""
Unified exception definitions
"""


class RconError(Exception):
    """Base exception class"""
    pass


class ConfigError(RconError):
    """Configuration error"""
    pass


class KeyFormatError(ConfigError):
    """Public or private key text cannot be parsed"""
    pass


class HostKeyError(RconError):
    """Host identity cannot be created or loaded"""
    pass


# ============================================================
# Identity
# ============================================================

class IdentityError(RconError):
    """Peer identity rejected"""
    reason = "IdentityRejected"


class UnknownIdentityError(IdentityError):
    """Claimed identity name is not in the identity table"""
    reason = "UnknownIdentity"


class KeyMismatchError(IdentityError):
    """Presented key differs from the key on record"""
    reason = "KeyMismatch"


# ============================================================
# Request / Channel Scoped
# ============================================================

class ProtocolViolationError(RconError):
    """Malformed or forbidden request, rejects that request only"""
    pass


class ForwardPolicyError(ProtocolViolationError):
    """Forward-listen request violates the agent's pinned binding"""
    pass


class ResourceError(RconError):
    """Local resource could not be acquired for a request"""
    pass


class AddressResolutionError(ResourceError):
    """Configured listen address cannot be resolved"""
    pass


class ListenerBindError(ResourceError):
    """TCP listener cannot be bound"""
    pass


class SpawnError(ResourceError):
    """Shell process cannot be started"""
    pass


# ============================================================
# Session Scoped
# ============================================================

class TransportError(RconError):
    """Underlying SSH session or connection failure"""
    pass


class ForwardRejectedError(TransportError):
    """Broker answered the forward-listen request with failure"""
    pass


class ServiceError(RconError):
    """Service manager registration error"""
    pass
