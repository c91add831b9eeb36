"""
Shell domain module
"""
from .models import PtySize, ShellPhase, ShellSessionState
from .session import ShellSession
from .server import ShellServer, NestedShellSession

__all__ = [
    "PtySize",
    "ShellPhase",
    "ShellSessionState",
    "ShellSession",
    "ShellServer",
    "NestedShellSession",
]
