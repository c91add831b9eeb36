"""
Peer authentication policy

Exact match of a claimed name and a presented public key against a
static identity table. Invoked from paramiko's auth callback, so it
never performs I/O.
"""
import hmac
from typing import Mapping, TypeVar, Union, Generic, Iterator

import paramiko

from ...core.exceptions import UnknownIdentityError, KeyMismatchError, IdentityError

IdentityT = TypeVar("IdentityT")


class AuthPolicy(Generic[IdentityT]):
    """
    Identity table lookup plus key comparison.

    The table is copied at construction and never mutated, so any
    number of sessions may authenticate against it concurrently.
    """

    def __init__(self, identities: Mapping[str, IdentityT]):
        self._identities = dict(identities)

    def authenticate(
        self,
        name: str,
        presented: Union[paramiko.PKey, bytes],
    ) -> IdentityT:
        """
        Decide whether ``name`` may authenticate with ``presented``.

        Args:
            name: Claimed identity name (SSH username)
            presented: Presented public key, or its wire encoding

        Returns:
            The matching identity record

        Raises:
            UnknownIdentityError: If no identity has this name
            KeyMismatchError: If the key encoding differs from the record
        """
        identity = self._identities.get(name)
        if identity is None:
            raise UnknownIdentityError(f"Unknown identity: {name!r}")

        blob = presented if isinstance(presented, bytes) else presented.asbytes()
        if not hmac.compare_digest(blob, identity.key):
            raise KeyMismatchError(f"Key does not match record for {name!r}")

        return identity

    def is_authorized(self, name: str, presented: Union[paramiko.PKey, bytes]) -> bool:
        try:
            self.authenticate(name, presented)
        except IdentityError:
            return False
        return True

    def __contains__(self, name: object) -> bool:
        return name in self._identities

    def __iter__(self) -> Iterator[str]:
        return iter(self._identities)

    def __len__(self) -> int:
        return len(self._identities)
