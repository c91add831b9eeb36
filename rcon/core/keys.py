"""
SSH key parsing, loading and generation
"""
import base64
import binascii
import hashlib
import io
import struct
from typing import Tuple, Union

import paramiko
from paramiko.pkey import UnknownKeyType
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

from .exceptions import KeyFormatError


# Tried in order when loading private key text
_PRIVATE_KEY_CLASSES = (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey)


# ============================================================
# Public Keys
# ============================================================

def _blob_key_type(blob: bytes) -> str:
    """Read the key type string every SSH public key blob starts with"""
    if len(blob) < 4:
        return ""
    (length,) = struct.unpack(">I", blob[:4])
    return blob[4:4 + length].decode("ascii", errors="replace")


def split_public_key(text: str) -> Tuple[str, bytes]:
    """
    Find the key type and decoded blob in a public key line.

    Accepts authorized_keys lines (with or without leading options) and
    known_hosts lines (with or without the host field). The first
    ``<type> <base64>`` pair whose blob declares the same type wins.

    Args:
        text: Single-line key text

    Returns:
        (key_type, blob)

    Raises:
        KeyFormatError: If no public key is found
    """
    fields = text.split()
    for key_type, data in zip(fields, fields[1:]):
        try:
            blob = base64.b64decode(data, validate=True)
        except (binascii.Error, ValueError):
            continue
        if _blob_key_type(blob) == key_type:
            return key_type, blob
    raise KeyFormatError(f"No SSH public key found in: {text[:40]!r}")


def parse_public_key(text: str) -> paramiko.PKey:
    """
    Parse a single-line public key into a paramiko key.

    Raises:
        KeyFormatError: If the key is malformed or of an unsupported type
    """
    key_type, blob = split_public_key(text)
    try:
        return paramiko.PKey.from_type_string(key_type, blob)
    except (paramiko.SSHException, UnknownKeyType, ValueError, TypeError) as e:
        raise KeyFormatError(f"Unsupported or malformed {key_type} key: {e}") from e


def canonical_key_bytes(text: str) -> bytes:
    """Canonical wire encoding of a public key line"""
    return parse_public_key(text).asbytes()


def key_fingerprint(key: Union[paramiko.PKey, bytes]) -> str:
    """OpenSSH-style SHA256 fingerprint of a key or its wire encoding, safe to log"""
    blob = key if isinstance(key, bytes) else key.asbytes()
    digest = hashlib.sha256(blob).digest()
    return "SHA256:" + base64.b64encode(digest).decode("ascii").rstrip("=")


def authorized_key_line(key: paramiko.PKey, comment: str = "") -> str:
    """Render a key as an authorized_keys line"""
    return f"{key.get_name()} {key.get_base64()} {comment}".strip()


# ============================================================
# Private Keys
# ============================================================

def load_private_key(text: str) -> paramiko.PKey:
    """
    Load unencrypted private key text.

    Tries Ed25519, then ECDSA, then RSA.

    Raises:
        KeyFormatError: If no key class accepts the text
    """
    failures = []
    for key_class in _PRIVATE_KEY_CLASSES:
        try:
            return key_class.from_private_key(io.StringIO(text))
        except (paramiko.SSHException, ValueError, TypeError) as e:
            failures.append(f"{key_class.__name__}: {e}")
    raise KeyFormatError(
        "Unsupported private key (expected unencrypted Ed25519, ECDSA or RSA): "
        + "; ".join(failures)
    )


def generate_private_key_text() -> str:
    """Generate an Ed25519 private key in OpenSSH PEM format"""
    private_key = ed25519.Ed25519PrivateKey.generate()
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.OpenSSH,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")
