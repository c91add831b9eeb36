"""
Shell session domain models
"""
import subprocess
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ...core.constants import DEFAULT_TERM


class ShellPhase(str, Enum):
    """Lifecycle of one session channel's shell"""
    PENDING = "pending"
    RUNNING = "running"
    EXITED = "exited"
    CLOSED = "closed"


@dataclass(frozen=True)
class PtySize:
    """Terminal dimensions as carried by pty-req and window-change"""
    cols: int
    rows: int
    pixel_width: int = 0
    pixel_height: int = 0

    @classmethod
    def from_request(cls, width: int, height: int, pixel_width: int = 0, pixel_height: int = 0) -> "PtySize":
        """Clamp wire values (uint32) to what a winsize struct holds"""
        def clamp(value: int) -> int:
            return max(0, min(int(value), 0xFFFF))

        return cls(
            cols=clamp(width),
            rows=clamp(height),
            pixel_width=clamp(pixel_width),
            pixel_height=clamp(pixel_height),
        )


@dataclass
class ShellSessionState:
    """
    Everything one session channel negotiated or spawned.

    ``pty_requested`` decides whether the shell gets a terminal;
    ``pty_size`` is also updated by window-change before the shell starts.
    """
    phase: ShellPhase = ShellPhase.PENDING
    term: str = DEFAULT_TERM
    pty_requested: bool = False
    pty_size: Optional[PtySize] = None
    process: Optional[subprocess.Popen] = None
    master_fd: Optional[int] = None
    exit_code: Optional[int] = None

    @property
    def started(self) -> bool:
        return self.phase is not ShellPhase.PENDING

    @property
    def has_pty(self) -> bool:
        return self.master_fd is not None
