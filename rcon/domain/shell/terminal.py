"""
Pseudo-terminal helpers
"""
import fcntl
import os
import pty
import struct
import termios
from typing import Tuple

from .models import PtySize

_WINSIZE = "HHHH"


def open_pty(size: PtySize) -> Tuple[int, int]:
    """
    Allocate a pseudo-terminal of the given size.

    Returns:
        (master_fd, slave_fd)
    """
    master_fd, slave_fd = pty.openpty()
    try:
        set_winsize(master_fd, size)
    except OSError:
        os.close(master_fd)
        os.close(slave_fd)
        raise
    return master_fd, slave_fd


def set_winsize(fd: int, size: PtySize) -> None:
    """Apply terminal dimensions; the foreground process group gets SIGWINCH"""
    packed = struct.pack(_WINSIZE, size.rows, size.cols, size.pixel_width, size.pixel_height)
    fcntl.ioctl(fd, termios.TIOCSWINSZ, packed)


def get_winsize(fd: int) -> PtySize:
    packed = fcntl.ioctl(fd, termios.TIOCGWINSZ, struct.pack(_WINSIZE, 0, 0, 0, 0))
    rows, cols, pixel_width, pixel_height = struct.unpack(_WINSIZE, packed)
    return PtySize(cols=cols, rows=rows, pixel_width=pixel_width, pixel_height=pixel_height)


def make_controlling_tty() -> None:
    """
    Child-side hook: make stdin (the pty slave) the controlling terminal.

    Runs after setsid(), so the new session has no controlling terminal yet.
    """
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)
