"""
Identity domain module
"""
from .models import AgentIdentity, EndUserIdentity
from .policy import AuthPolicy
from .host_key import load_or_create_host_key, create_host_key_if_absent, load_host_key

__all__ = [
    "AgentIdentity",
    "EndUserIdentity",
    "AuthPolicy",
    "load_or_create_host_key",
    "create_host_key_if_absent",
    "load_host_key",
]
