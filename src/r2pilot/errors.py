"""Transfer error definitions for r2pilot.

Every failure surfaced by the transfer core is a ``TransferError`` carrying a
``kind`` from a fixed taxonomy plus the context (bucket, key, part number)
accumulated as the error travels up through the layers.
"""

from __future__ import annotations


class TransferError(Exception):
    """A transfer-core error with a kind, context, and optional HTTP details.

    Attributes:
        kind: Taxonomy kind (e.g. "Transient", "Permanent").
        message: Human-readable error description.
        status_code: HTTP status of the failing response, if any.
        code: S3 error code parsed from the response body, if any.
        bucket: Bucket the operation targeted.
        key: Object key the operation targeted.
        part_number: Multipart part number, when the failure is part-scoped.
        upload_id: Multipart upload ID, when a session existed.
        abort_succeeded: For multipart failures, whether the session abort
            succeeded (``None`` when no abort was attempted).
    """

    kind = "TransferError"

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        code: str = "",
        bucket: str = "",
        key: str = "",
        part_number: int | None = None,
        upload_id: str = "",
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code
        self.bucket = bucket
        self.key = key
        self.part_number = part_number
        self.upload_id = upload_id
        self.abort_succeeded: bool | None = None

    def with_context(
        self,
        bucket: str | None = None,
        key: str | None = None,
        part_number: int | None = None,
        upload_id: str | None = None,
    ) -> "TransferError":
        """Fill in missing context fields and return self.

        Fields already set by a lower layer are kept.
        """
        if bucket and not self.bucket:
            self.bucket = bucket
        if key and not self.key:
            self.key = key
        if part_number is not None and self.part_number is None:
            self.part_number = part_number
        if upload_id and not self.upload_id:
            self.upload_id = upload_id
        return self

    def context(self) -> dict[str, object]:
        """Return the populated context fields as a dict."""
        ctx: dict[str, object] = {}
        if self.bucket:
            ctx["bucket"] = self.bucket
        if self.key:
            ctx["key"] = self.key
        if self.part_number is not None:
            ctx["part_number"] = self.part_number
        if self.upload_id:
            ctx["upload_id"] = self.upload_id
        if self.status_code is not None:
            ctx["status"] = self.status_code
        if self.code:
            ctx["code"] = self.code
        return ctx

    def __str__(self) -> str:
        parts = [f"{self.kind}: {self.message}"]
        ctx = self.context()
        if ctx:
            parts.append(" ".join(f"{k}={v}" for k, v in ctx.items()))
        if self.abort_succeeded is True:
            parts.append("multipart upload aborted")
        elif self.abort_succeeded is False:
            parts.append(
                f"multipart abort FAILED, upload {self.upload_id} may still hold storage"
            )
        return " | ".join(parts)


# -- Taxonomy -----------------------------------------------------------------


class MissingCredential(TransferError):
    """A required credential field is absent for the requested capability."""

    kind = "MissingCredential"

    def __init__(self, field: str, capability: str = "") -> None:
        message = f"Missing credential field '{field}'"
        if capability:
            message += f" required for {capability} operations"
        super().__init__(message)
        self.field = field
        self.capability = capability


class TransientError(TransferError):
    """Network failure, 5xx, or 429 that persisted through every retry."""

    kind = "Transient"

    def __init__(self, message: str = "Transient failure", **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.attempts = 0


class PermanentError(TransferError):
    """A 4xx response other than 429; never retried."""

    kind = "Permanent"

    def __init__(self, message: str = "Request rejected", **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.body = ""


class IntegrityMismatch(TransferError):
    """Expected and service-reported parts or ETags disagree at completion."""

    kind = "IntegrityMismatch"


class InitiationFailed(TransferError):
    """The service did not open a multipart upload session."""

    kind = "InitiationFailed"


class AbortFailed(TransferError):
    """Releasing a multipart session failed. Logged, never raised to callers."""

    kind = "AbortFailed"


class Cancelled(TransferError):
    """The transfer was cancelled before it finished."""

    kind = "Cancelled"

    def __init__(self, message: str = "Transfer cancelled", **kwargs) -> None:
        super().__init__(message, **kwargs)


class SourceSizeMismatch(TransferError):
    """The source stream ended before the announced size was read."""

    kind = "SourceSizeMismatch"


class InvalidSignedUrlSpec(TransferError):
    """The signed URL request cannot be honoured (e.g. expiry out of range)."""

    kind = "InvalidSignedUrlSpec"


class InvalidObjectKey(TransferError):
    """The object key violates key naming rules."""

    kind = "InvalidObjectKey"

    def __init__(self, key: str, reason: str) -> None:
        super().__init__(f"Invalid object key: {reason}", key=key)


class InvalidBucketName(TransferError):
    """The bucket name violates S3 bucket naming rules."""

    kind = "InvalidBucketName"

    def __init__(self, bucket: str) -> None:
        super().__init__("The specified bucket is not valid.", bucket=bucket)


class ConfigError(TransferError):
    """The configuration snapshot is incomplete or inconsistent."""

    kind = "ConfigError"
