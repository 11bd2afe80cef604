"""Data model types for the r2pilot transfer core.

These dataclasses describe a single transfer: where it goes, how it is
split, what the multipart session looks like, what a signed URL covers,
and the events and results handed back to the presentation layer.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum

MIB = 1024 * 1024

# Storage-service limits
MIN_PART_SIZE = 5 * MIB
MAX_PART_COUNT = 10_000
MAX_SIGNED_URL_EXPIRES = 604_800  # 7 days in seconds

# Client defaults
DEFAULT_MULTIPART_THRESHOLD = 100 * MIB
DEFAULT_PART_SIZE = 100 * MIB


@dataclass(frozen=True)
class ObjectLocation:
    """A bucket/key pair identifying one object.

    Attributes:
        bucket: The bucket name.
        key: The object key (no leading slash).
    """

    bucket: str
    key: str

    def __str__(self) -> str:
        return f"{self.bucket}/{self.key}"


@dataclass(frozen=True)
class ByteRange:
    """An inclusive byte range for ranged GETs.

    Attributes:
        start: First byte offset.
        end: Last byte offset (inclusive), or None for "to the end".
    """

    start: int
    end: int | None = None

    def __post_init__(self) -> None:
        if self.start < 0:
            raise ValueError("range start must be >= 0")
        if self.end is not None and self.end < self.start:
            raise ValueError("range end must be >= start")

    def header(self) -> str:
        end = "" if self.end is None else str(self.end)
        return f"bytes={self.start}-{end}"


@dataclass(frozen=True)
class TransferRequest:
    """One HTTP object operation, constructed once per operation.

    Attributes:
        bucket: The bucket name.
        key: The object key, or "" for bucket-level requests (listing).
        method: HTTP method (uppercase).
        content_type: Content-Type sent with the request, if any.
        byte_range: Range to request on GET, if any.
        query: Sub-resource query parameters (e.g. uploadId, partNumber).
        headers: Extra headers to send and sign (e.g. x-amz-copy-source).
    """

    bucket: str
    key: str
    method: str
    content_type: str | None = None
    byte_range: ByteRange | None = None
    query: dict[str, str] = field(default_factory=dict)
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def path(self) -> str:
        """Path-style resource path: /bucket or /bucket/key."""
        if self.key:
            return f"/{self.bucket}/{self.key}"
        return f"/{self.bucket}"

    def describe(self) -> str:
        sub = ",".join(sorted(self.query))
        return f"{self.method} {self.path}" + (f"?{sub}" if sub else "")


# -- Upload planning ----------------------------------------------------------


@dataclass(frozen=True)
class SingleShot:
    """Upload the whole payload with one PUT."""

    size_bytes: int


@dataclass(frozen=True)
class Multipart:
    """Upload the payload as ``part_count`` parts of ``part_size_bytes``.

    Every part except the last is exactly ``part_size_bytes`` long.
    """

    size_bytes: int
    part_size_bytes: int
    part_count: int

    def part_range(self, part_number: int) -> tuple[int, int]:
        """Return (offset, length) for a 1-based part number."""
        if part_number < 1 or part_number > self.part_count:
            raise ValueError(f"part number {part_number} out of range 1..{self.part_count}")
        offset = (part_number - 1) * self.part_size_bytes
        length = min(self.part_size_bytes, self.size_bytes - offset)
        return offset, max(length, 0)


UploadPlan = SingleShot | Multipart


def plan_upload(
    size_bytes: int,
    threshold: int = DEFAULT_MULTIPART_THRESHOLD,
    part_size: int = DEFAULT_PART_SIZE,
    force_multipart: bool = False,
) -> UploadPlan:
    """Decide between a single PUT and a multipart upload.

    Args:
        size_bytes: Total payload size.
        threshold: Sizes at or above this go multipart.
        part_size: Preferred part size; raised to the 5 MiB minimum.
        force_multipart: Use multipart regardless of size.

    Returns:
        A SingleShot or Multipart plan. Multipart plans never exceed
        10 000 parts; the part size is grown (in whole MiB) if needed.

    Raises:
        ValueError: If size_bytes is negative.
    """
    if size_bytes < 0:
        raise ValueError("size must be >= 0")

    if not force_multipart and size_bytes < threshold:
        return SingleShot(size_bytes)

    part_size = max(part_size, MIN_PART_SIZE)
    if size_bytes == 0:
        return Multipart(size_bytes=0, part_size_bytes=part_size, part_count=1)

    part_count = math.ceil(size_bytes / part_size)
    if part_count > MAX_PART_COUNT:
        part_size = math.ceil(math.ceil(size_bytes / MAX_PART_COUNT) / MIB) * MIB
        part_count = math.ceil(size_bytes / part_size)

    return Multipart(size_bytes=size_bytes, part_size_bytes=part_size, part_count=part_count)


# -- Multipart session --------------------------------------------------------


@dataclass(frozen=True)
class CompletedPart:
    """A part the service has acknowledged.

    Attributes:
        part_number: 1-based part number.
        etag: ETag returned by the service for this part (quoted).
    """

    part_number: int
    etag: str


@dataclass
class MultipartSession:
    """A server-side multipart upload owned by one orchestrator.

    Attributes:
        upload_id: The service-issued upload identifier.
        bucket: The bucket name.
        key: The object key.
        parts: Completed parts in arrival order.
    """

    upload_id: str
    bucket: str
    key: str
    parts: list[CompletedPart] = field(default_factory=list)

    def ordered_parts(self) -> list[CompletedPart]:
        return sorted(self.parts, key=lambda p: p.part_number)


class SessionState(str, Enum):
    """Lifecycle states of a multipart upload."""

    PLANNING = "planning"
    INITIATING = "initiating"
    UPLOADING_PARTS = "uploading_parts"
    COMPLETING = "completing"
    DONE = "done"
    ABORTING = "aborting"
    ABORTED = "aborted"


# -- Signed URLs --------------------------------------------------------------


class SignedUrlMethod(str, Enum):
    GET = "GET"
    PUT = "PUT"
    DELETE = "DELETE"
    HEAD = "HEAD"


@dataclass(frozen=True)
class SignedUrlSpec:
    """What a presigned URL grants.

    Attributes:
        method: The HTTP method the URL authorizes.
        bucket: The bucket name.
        key: The object key.
        expires_in: Validity window in seconds, starting at generation time.
        content_type: Content-Type the holder must send (PUT only).
    """

    method: SignedUrlMethod
    bucket: str
    key: str
    expires_in: int
    content_type: str | None = None

    def expires_at(self, now_epoch: int) -> int:
        """Epoch second at which a URL generated at ``now_epoch`` expires."""
        return now_epoch + self.expires_in


# -- Progress and results -----------------------------------------------------


@dataclass(frozen=True)
class ProgressEvent:
    """Bytes moved so far in one transfer.

    Attributes:
        bytes_transferred: Cumulative bytes; never decreases within a transfer.
        total_bytes: Expected total size.
        part_number: The multipart part that just completed, if any.
    """

    bytes_transferred: int
    total_bytes: int
    part_number: int | None = None


@dataclass
class TransferResult:
    """Outcome of an engine operation.

    Attributes:
        bucket: The bucket name.
        key: The object key.
        size: Bytes moved.
        etag: ETag reported by the service, if any.
        strategy: "single", "multipart", "download", or "delete".
        part_count: Number of parts (1 for single-shot).
        upload_id: Multipart upload ID, for multipart uploads.
    """

    bucket: str
    key: str
    size: int = 0
    etag: str = ""
    strategy: str = "single"
    part_count: int = 1
    upload_id: str = ""


@dataclass
class ObjectInfo:
    """One entry of an object listing."""

    key: str
    size: int = 0
    etag: str = ""
    last_modified: str = ""
    storage_class: str = "STANDARD"


@dataclass
class ObjectHead:
    """Metadata returned by HEAD on an object."""

    key: str
    size: int = 0
    etag: str = ""
    content_type: str = "application/octet-stream"
    last_modified: str = ""
