"""
Broker domain module
"""
from .models import BrokerConfig, ForwardBinding, SessionPhase
from .relay import RelaySession
from .session import AgentSession
from .service import BrokerService

__all__ = [
    "BrokerConfig",
    "ForwardBinding",
    "SessionPhase",
    "RelaySession",
    "AgentSession",
    "BrokerService",
]
