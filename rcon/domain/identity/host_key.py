"""
Host identity store

The signing key every session terminated by this process presents.
Created once on first run, then only ever loaded.
"""
import os
from pathlib import Path
from typing import Union

import paramiko

from ...core.constants import HOST_KEY_MODE
from ...core.exceptions import HostKeyError, KeyFormatError
from ...core.keys import generate_private_key_text, load_private_key, key_fingerprint
from ...core.logging import get_logger

logger = get_logger(__name__)


def create_host_key_if_absent(path: Path) -> bool:
    """
    Generate and persist a host key unless the file exists.

    Uses exclusive create: if the file already exists, or another
    process creates it first, nothing is written and the caller loads
    whatever is there.

    Returns:
        True if this call created the key

    Raises:
        HostKeyError: If the file was created but the key could not be written
    """
    try:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, HOST_KEY_MODE)
    except OSError as e:
        logger.debug(f"Not creating host key at {path}: {e}")
        return False

    try:
        with os.fdopen(fd, "w", encoding="ascii") as f:
            f.write(generate_private_key_text())
    except (OSError, ValueError) as e:
        try:
            path.unlink()
        except OSError as cleanup_error:
            logger.warning(f"Cannot remove incomplete host key {path}: {cleanup_error}")
        raise HostKeyError(f"Failed to write host key {path}: {e}") from e

    logger.info(f"Generated new host key at {path}")
    return True


def load_host_key(path: Path) -> paramiko.PKey:
    """
    Load the host key file.

    Raises:
        HostKeyError: If the file is unreadable or not a usable key
    """
    try:
        text = path.read_text(encoding="ascii")
    except (OSError, UnicodeDecodeError) as e:
        raise HostKeyError(f"Failed to read host key {path}: {e}") from e

    try:
        key = load_private_key(text)
    except KeyFormatError as e:
        raise HostKeyError(f"Failed to parse host key {path}: {e}") from e

    logger.info(f"Host key {key.get_name()} {key_fingerprint(key)} ({path})")
    return key


def load_or_create_host_key(path: Union[str, Path]) -> paramiko.PKey:
    """
    Return this role's host key, generating it on first run.

    Args:
        path: Key file path

    Returns:
        Signing key for paramiko's ``add_server_key``

    Raises:
        HostKeyError: If no usable key can be produced
    """
    path = Path(path).expanduser()
    create_host_key_if_absent(path)
    return load_host_key(path)
