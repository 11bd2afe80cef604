"""Bucket name and object key validation for r2pilot.

These checks run before anything is signed or sent, so malformed input
fails locally instead of producing a confusing signature error.

Each function raises an appropriate ``TransferError`` subclass on invalid
input.
"""

import re

from r2pilot.errors import InvalidBucketName, InvalidObjectKey

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# S3 bucket naming rules:
#   - 3-63 characters
#   - lowercase letters, digits, hyphens, and periods
#   - must start and end with a letter or digit
#   - must not be formatted as an IP address
#   - no consecutive periods ("..") allowed

_BUCKET_RE = re.compile(r"^[a-z0-9][a-z0-9.\-]{1,61}[a-z0-9]$")
_IP_RE = re.compile(r"^\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}$")

MAX_KEY_BYTES = 1024


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def validate_bucket_name(name: str) -> None:
    """Validate a bucket name against S3 naming rules.

    Args:
        name: The candidate bucket name.

    Raises:
        InvalidBucketName: If the name violates any bucket naming rule.
    """
    if len(name) < 3 or len(name) > 63:
        raise InvalidBucketName(name)

    if not _BUCKET_RE.match(name):
        raise InvalidBucketName(name)

    if _IP_RE.match(name):
        raise InvalidBucketName(name)

    if ".." in name:
        raise InvalidBucketName(name)


def validate_object_key(key: str) -> None:
    """Validate an object key.

    A key is a non-empty, UTF-8 encodable, path-like string of at most
    1024 bytes with no leading slash and no '.' or '..' path segments.
    URL normalisation would rewrite such segments, so the object written
    would not be the one named.

    Args:
        key: The object key string.

    Raises:
        InvalidObjectKey: If the key breaks any of the rules above.
    """
    if not key:
        raise InvalidObjectKey(key, "key must not be empty")

    if key.startswith("/"):
        raise InvalidObjectKey(key, "key must not start with '/'")

    if any(segment in (".", "..") for segment in key.split("/")):
        raise InvalidObjectKey(key, "key must not contain '.' or '..' path segments")

    try:
        encoded = key.encode("utf-8")
    except UnicodeEncodeError:
        raise InvalidObjectKey(key, "key is not valid UTF-8")

    if len(encoded) > MAX_KEY_BYTES:
        raise InvalidObjectKey(key, f"key exceeds {MAX_KEY_BYTES} bytes")
