"""Transfer engine: the public face of the r2pilot transfer core.

``TransferEngine`` composes credential resolution, signing, the retrying
transport, and the multipart orchestrator into the operations the CLI
calls: upload, download, delete, signed URL generation, plus listing,
HEAD, and server-side copy.

Each engine instance carries its own credentials, HTTP client, and
per-transfer state; nothing is shared between instances.
"""

from __future__ import annotations

import contextlib
import logging
import mimetypes
import os
import tempfile
from collections.abc import AsyncIterator, Iterator
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Protocol

import httpx

from r2pilot import metrics
from r2pilot.config import R2PilotConfig
from r2pilot.credentials import Capability, Credentials, resolve
from r2pilot.errors import (
    Cancelled,
    InvalidSignedUrlSpec,
    PermanentError,
    SourceSizeMismatch,
    TransferError,
    TransientError,
)
from r2pilot.models import (
    MAX_SIGNED_URL_EXPIRES,
    ByteRange,
    ObjectHead,
    ObjectInfo,
    ObjectLocation,
    SignedUrlSpec,
    SingleShot,
    TransferRequest,
    TransferResult,
    plan_upload,
)
from r2pilot.multipart import CancellationToken, MultipartUploader, Source, SourceReader
from r2pilot.progress import ProgressChannel, ProgressTracker
from r2pilot.signer import RequestSigner, uri_encode
from r2pilot.transport import Clock, ObjectTransport, Sleep, utc_now
from r2pilot.validation import validate_bucket_name, validate_object_key
from r2pilot.xml_utils import parse_copy_object_result, parse_list_objects_v2

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "application/octet-stream"
_DOWNLOAD_CHUNK = 64 * 1024


class ByteSink(Protocol):
    def write(self, data: bytes) -> object: ...


class TransferEngine:
    """Uploads, downloads, deletes, and signs URLs for one configuration.

    Use as an async context manager so the HTTP client is closed::

        async with TransferEngine(config) as engine:
            await engine.upload_file("video.mp4", engine.location("videos/v.mp4"))

    Attributes:
        config: The configuration snapshot.
        signer: The SigV4 signer for the configured endpoint.
        transport: The retrying object transport.
    """

    def __init__(
        self,
        config: R2PilotConfig,
        client: httpx.AsyncClient | None = None,
        credentials: Credentials | None = None,
        clock: Clock | None = None,
        sleep: Sleep | None = None,
    ) -> None:
        self.config = config
        self._credentials = credentials or resolve(config, Capability.DATA_PLANE)
        self._clock = clock or utc_now
        self.signer = RequestSigner(config.cloudflare.endpoint_url, config.r2.region)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=config.transfer.timeout)
        self.transport = ObjectTransport(
            self._client,
            self.signer,
            self._credentials,
            max_attempts=config.transfer.max_attempts,
            base_delay=config.transfer.retry_base_delay,
            clock=self._clock,
            sleep=sleep,
        )

    async def __aenter__(self) -> "TransferEngine":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def location(self, key: str, bucket: str | None = None) -> ObjectLocation:
        """Build a validated ObjectLocation, defaulting to the configured bucket."""
        bucket = bucket or self.config.r2.default_bucket
        validate_bucket_name(bucket)
        validate_object_key(key)
        return ObjectLocation(bucket=bucket, key=key)

    @contextlib.contextmanager
    def _operation(self, name: str, bucket: str, key: str = "") -> Iterator[None]:
        """Record the outcome of ``name`` and attach bucket/key to errors."""
        try:
            yield
        except TransferError as exc:
            metrics.record_operation(name, exc.kind)
            exc.with_context(bucket=bucket, key=key)
            raise
        metrics.record_operation(name, "ok")

    # -- Upload -----------------------------------------------------------------

    async def upload(
        self,
        source: Source,
        size_hint: int,
        destination: ObjectLocation,
        content_type: str | None = None,
        force_multipart: bool = False,
        progress: ProgressChannel | None = None,
        cancel: CancellationToken | None = None,
    ) -> TransferResult:
        """Upload ``size_hint`` bytes from ``source`` to ``destination``.

        Sizes below the multipart threshold go up in one PUT; larger ones
        (or any size with ``force_multipart``) go through a multipart upload.

        Args:
            source: bytes or a binary file object positioned at the start.
            size_hint: Exact number of bytes to read from ``source``.
            destination: Target bucket and key.
            content_type: Content-Type of the stored object.
            force_multipart: Use multipart regardless of size.
            progress: Channel receiving ProgressEvents; not closed here.
            cancel: Cooperative cancellation token.

        Returns:
            The TransferResult of the finished upload.
        """
        validate_bucket_name(destination.bucket)
        validate_object_key(destination.key)
        transfer = self.config.transfer
        plan = plan_upload(
            size_hint,
            threshold=transfer.multipart_threshold,
            part_size=transfer.part_size,
            force_multipart=force_multipart,
        )
        tracker = ProgressTracker(size_hint, progress)

        if isinstance(plan, SingleShot):
            with self._operation("upload", destination.bucket, destination.key):
                return await self._put_object(
                    source, plan.size_bytes, destination, content_type, tracker, cancel
                )

        uploader = MultipartUploader(
            self.transport,
            plan,
            destination.bucket,
            destination.key,
            content_type=content_type,
            max_concurrency=transfer.max_concurrency,
            part_retries=transfer.part_retries,
            tracker=tracker,
            cancel=cancel,
        )
        with self._operation("upload", destination.bucket, destination.key):
            return await uploader.run(source)

    async def _put_object(
        self,
        source: Source,
        size: int,
        destination: ObjectLocation,
        content_type: str | None,
        tracker: ProgressTracker,
        cancel: CancellationToken | None,
    ) -> TransferResult:
        reader = SourceReader(source)
        body = reader.read(size)
        if len(body) != size:
            raise SourceSizeMismatch(
                f"Source ended at byte {len(body)}, expected {size}",
                bucket=destination.bucket,
                key=destination.key,
            )
        if cancel is not None and cancel.cancelled:
            raise Cancelled(bucket=destination.bucket, key=destination.key)

        def on_send(sent: int) -> None:
            if sent > tracker.bytes_transferred:
                tracker.advance(sent - tracker.bytes_transferred)

        request = TransferRequest(
            bucket=destination.bucket,
            key=destination.key,
            method="PUT",
            content_type=content_type or DEFAULT_CONTENT_TYPE,
        )
        response = await self.transport.execute(request, body=body, on_send=on_send)
        if tracker.bytes_transferred < size or size == 0:
            tracker.advance(size - tracker.bytes_transferred)
        metrics.record_bytes_uploaded(size)
        logger.info(
            "Uploaded %s (%d bytes)",
            destination,
            size,
            extra={"bucket": destination.bucket, "key": destination.key},
        )
        return TransferResult(
            bucket=destination.bucket,
            key=destination.key,
            size=size,
            etag=response.etag,
            strategy="single",
            part_count=1,
        )

    async def upload_file(
        self,
        path: str | os.PathLike,
        destination: ObjectLocation,
        content_type: str | None = None,
        force_multipart: bool = False,
        progress: ProgressChannel | None = None,
        cancel: CancellationToken | None = None,
    ) -> TransferResult:
        """Upload a local file; the content type is guessed from its name."""
        path = Path(path)
        size = path.stat().st_size
        if content_type is None:
            content_type = mimetypes.guess_type(path.name)[0] or DEFAULT_CONTENT_TYPE
        with open(path, "rb") as fh:
            return await self.upload(
                fh,
                size,
                destination,
                content_type=content_type,
                force_multipart=force_multipart,
                progress=progress,
                cancel=cancel,
            )

    # -- Download ---------------------------------------------------------------

    async def download(
        self,
        destination: ObjectLocation,
        sink: ByteSink,
        byte_range: ByteRange | None = None,
        progress: ProgressChannel | None = None,
    ) -> TransferResult:
        """Stream an object (or a byte range of it) into ``sink``.

        Raises:
            PermanentError: e.g. 404 NoSuchKey, 416 InvalidRange.
            TransientError: Retries exhausted, or the stream broke mid-body.
        """
        request = TransferRequest(
            bucket=destination.bucket,
            key=destination.key,
            method="GET",
            byte_range=byte_range,
        )
        with self._operation("download", destination.bucket, destination.key):
            response = await self.transport.execute(request, stream=True)
            stream = response.stream
            total = int(response.headers.get("content-length", "0") or 0)
            tracker = ProgressTracker(total, progress)
            try:
                async for chunk in stream.aiter_bytes(_DOWNLOAD_CHUNK):
                    sink.write(chunk)
                    tracker.advance(len(chunk))
            except httpx.TransportError as exc:
                raise TransientError(
                    f"Connection lost after {tracker.bytes_transferred} of {total} bytes: {exc}",
                    bucket=destination.bucket,
                    key=destination.key,
                ) from exc
            finally:
                await stream.aclose()

        metrics.record_bytes_downloaded(tracker.bytes_transferred)
        logger.info(
            "Downloaded %s (%d bytes)",
            destination,
            tracker.bytes_transferred,
            extra={"bucket": destination.bucket, "key": destination.key},
        )
        return TransferResult(
            bucket=destination.bucket,
            key=destination.key,
            size=tracker.bytes_transferred,
            etag=response.etag,
            strategy="download",
        )

    async def download_file(
        self,
        destination: ObjectLocation,
        path: str | os.PathLike,
        byte_range: ByteRange | None = None,
        progress: ProgressChannel | None = None,
    ) -> TransferResult:
        """Download to ``path`` atomically via a temp file and rename."""
        path = Path(path)
        target_dir = path.parent
        target_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=target_dir, suffix=".r2pilot.tmp")
        try:
            with os.fdopen(fd, "wb") as fh:
                result = await self.download(destination, fh, byte_range, progress)
            os.replace(tmp_path, path)
        except BaseException:
            with contextlib.suppress(OSError):
                os.unlink(tmp_path)
            raise
        return result

    # -- Delete -----------------------------------------------------------------

    async def delete(self, destination: ObjectLocation) -> TransferResult:
        """Delete an object. A missing key counts as success."""
        request = TransferRequest(
            bucket=destination.bucket, key=destination.key, method="DELETE"
        )
        with self._operation("delete", destination.bucket, destination.key):
            try:
                await self.transport.execute(request)
            except PermanentError as exc:
                if exc.status_code != 404:
                    raise
                logger.debug("Delete of missing key %s treated as success", destination)
        return TransferResult(bucket=destination.bucket, key=destination.key, strategy="delete")

    async def delete_many(self, bucket: str, keys: list[str]) -> list[str]:
        """Delete each key in turn; returns the keys deleted."""
        deleted = []
        for key in keys:
            await self.delete(self.location(key, bucket))
            deleted.append(key)
        return deleted

    # -- Metadata, listing, copy -----------------------------------------------

    async def head(self, destination: ObjectLocation) -> ObjectHead | None:
        """Return object metadata, or None if the key does not exist."""
        request = TransferRequest(bucket=destination.bucket, key=destination.key, method="HEAD")
        with self._operation("head", destination.bucket, destination.key):
            try:
                response = await self.transport.execute(request)
            except PermanentError as exc:
                if exc.status_code == 404:
                    return None
                raise
        headers = response.headers
        return ObjectHead(
            key=destination.key,
            size=int(headers.get("content-length", "0") or 0),
            etag=headers.get("etag", ""),
            content_type=headers.get("content-type", DEFAULT_CONTENT_TYPE),
            last_modified=headers.get("last-modified", ""),
        )

    async def exists(self, destination: ObjectLocation) -> bool:
        return await self.head(destination) is not None

    async def list_objects(
        self, bucket: str | None = None, prefix: str = ""
    ) -> AsyncIterator[ObjectInfo]:
        """Yield every object under ``prefix``, following continuation tokens."""
        bucket = bucket or self.config.r2.default_bucket
        validate_bucket_name(bucket)
        token: str | None = None
        while True:
            query = {"list-type": "2"}
            if prefix:
                query["prefix"] = prefix
            if token:
                query["continuation-token"] = token
            request = TransferRequest(bucket=bucket, key="", method="GET", query=query)
            with self._operation("list", bucket):
                response = await self.transport.execute(request)
                try:
                    page = parse_list_objects_v2(response.body)
                except ValueError as exc:
                    raise PermanentError(str(exc), bucket=bucket) from exc
            for info in page["contents"]:
                yield info
            token = page["next_continuation_token"]
            if not page["is_truncated"] or not token:
                return

    async def copy(self, source: ObjectLocation, destination: ObjectLocation) -> str:
        """Server-side copy; returns the new object's ETag."""
        copy_source = uri_encode(f"{source.bucket}/{source.key}", encode_slash=False)
        request = TransferRequest(
            bucket=destination.bucket,
            key=destination.key,
            method="PUT",
            headers={"x-amz-copy-source": copy_source},
        )
        with self._operation("copy", destination.bucket, destination.key):
            response = await self.transport.execute(request)
            try:
                return parse_copy_object_result(response.body)
            except ValueError as exc:
                raise PermanentError(str(exc)) from exc

    # -- Signed URLs ------------------------------------------------------------

    def check_signed_url_spec(self, spec: SignedUrlSpec) -> SignedUrlSpec:
        """Validate ``spec`` and apply the configured expiry policy.

        Expiry outside 1..604800 seconds is rejected or clamped according
        to ``transfer.expiry_policy``; clamping is logged.

        Returns:
            ``spec`` itself, or a copy with the clamped expiry.

        Raises:
            InvalidSignedUrlSpec: Out-of-range expiry under the reject policy.
        """
        validate_bucket_name(spec.bucket)
        validate_object_key(spec.key)
        expires = spec.expires_in
        if 1 <= expires <= MAX_SIGNED_URL_EXPIRES:
            return spec
        if self.config.transfer.expiry_policy == "reject":
            raise InvalidSignedUrlSpec(
                f"Expiry of {expires}s is outside 1..{MAX_SIGNED_URL_EXPIRES} seconds",
                bucket=spec.bucket,
                key=spec.key,
            )
        clamped = min(max(expires, 1), MAX_SIGNED_URL_EXPIRES)
        logger.warning(
            "Signed URL expiry %ds out of range, clamped to %ds",
            expires,
            clamped,
            extra={"bucket": spec.bucket, "key": spec.key},
        )
        return replace(spec, expires_in=clamped)

    def generate_signed_url(self, spec: SignedUrlSpec, now: datetime | None = None) -> str:
        """Return a presigned URL for ``spec``. No network call is made.

        Raises:
            InvalidSignedUrlSpec: Out-of-range expiry under the reject policy.
        """
        spec = self.check_signed_url_spec(spec)
        url = self.signer.sign_query_string(spec, self._credentials, now or self._clock())
        metrics.record_operation("presign", "ok")
        return url
