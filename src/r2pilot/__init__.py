"""r2pilot storage transfer core."""

from r2pilot.credentials import AccessKeyPair, BearerToken, Capability, resolve
from r2pilot.engine import TransferEngine
from r2pilot.errors import TransferError
from r2pilot.models import (
    ByteRange,
    ObjectLocation,
    ProgressEvent,
    SignedUrlMethod,
    SignedUrlSpec,
    TransferResult,
)
from r2pilot.multipart import CancellationToken
from r2pilot.progress import ProgressChannel

__version__ = "0.1.0"

__all__ = [
    "AccessKeyPair",
    "BearerToken",
    "ByteRange",
    "CancellationToken",
    "Capability",
    "ObjectLocation",
    "ProgressChannel",
    "ProgressEvent",
    "resolve",
    "SignedUrlMethod",
    "SignedUrlSpec",
    "TransferEngine",
    "TransferError",
    "TransferResult",
]
