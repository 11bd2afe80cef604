"""Credential resolution for r2pilot.

Credentials come in exactly two shapes. The control plane (buckets, tokens)
authenticates with a bearer API token; the data plane (object transfer,
signed URLs) signs requests with an access-key pair. ``resolve`` hands back
the one shape a capability needs, or fails naming the missing field.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from r2pilot.errors import MissingCredential

if TYPE_CHECKING:
    from r2pilot.config import R2PilotConfig


class Capability(str, Enum):
    CONTROL_PLANE = "control-plane"
    DATA_PLANE = "data-plane"


@dataclass(frozen=True)
class BearerToken:
    """A Cloudflare API token for control-plane calls."""

    token: str

    def __repr__(self) -> str:
        return "BearerToken(token=***)"


@dataclass(frozen=True)
class AccessKeyPair:
    """An S3 access key ID and secret for SigV4 signing."""

    access_key_id: str
    secret_access_key: str

    def __repr__(self) -> str:
        return f"AccessKeyPair(access_key_id={self.access_key_id!r}, secret_access_key=***)"


Credentials = BearerToken | AccessKeyPair


def resolve(config: "R2PilotConfig", capability: Capability) -> Credentials:
    """Return the credential variant required by ``capability``.

    Args:
        config: The resolved configuration snapshot.
        capability: Which API surface the caller is about to use.

    Returns:
        BearerToken for CONTROL_PLANE, AccessKeyPair for DATA_PLANE.

    Raises:
        MissingCredential: Naming the first absent field.
    """
    cf = config.cloudflare
    if capability is Capability.CONTROL_PLANE:
        if not cf.api_token:
            raise MissingCredential("api_token", capability.value)
        return BearerToken(cf.api_token)

    if not cf.access_key_id:
        raise MissingCredential("access_key_id", capability.value)
    if not cf.secret_access_key:
        raise MissingCredential("secret_access_key", capability.value)
    return AccessKeyPair(cf.access_key_id, cf.secret_access_key)


def require_access_key_pair(credentials: Credentials) -> AccessKeyPair:
    """Narrow ``credentials`` to the signing variant or fail closed."""
    if isinstance(credentials, AccessKeyPair):
        return credentials
    raise MissingCredential("access_key_id", Capability.DATA_PLANE.value)
