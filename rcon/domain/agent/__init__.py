"""
Agent domain module
"""
from .models import AgentConfig, BridgeConfig
from .service import TunnelAgent

__all__ = [
    "AgentConfig",
    "BridgeConfig",
    "TunnelAgent",
]
