"""Multipart upload orchestration for r2pilot.

A ``MultipartUploader`` drives one multipart upload through its lifecycle::

    PLANNING -> INITIATING -> UPLOADING_PARTS -> COMPLETING -> DONE
                     \\              |                |
                      +--------> ABORTING -> ABORTED <+

Parts are read from the source one at a time by a single coordinator and
handed to at most ``min(part_count, max_concurrency)`` concurrent upload
tasks. Only the coordinator touches the session's completed-parts list and
only it publishes progress, in the order it observes parts finishing.

Once the service has issued an upload ID, the session is held inside
``_owned_session``: every exit other than a verified completion (errors,
cancellation, asyncio task cancellation) sends an abort so no billable
parts are left behind.
"""

from __future__ import annotations

import asyncio
import binascii
import hashlib
import logging
import re
from collections import deque
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import BinaryIO, Union

from r2pilot import metrics
from r2pilot.errors import (
    AbortFailed,
    Cancelled,
    InitiationFailed,
    IntegrityMismatch,
    PermanentError,
    SourceSizeMismatch,
    TransferError,
    TransientError,
)
from r2pilot.models import (
    CompletedPart,
    Multipart,
    MultipartSession,
    SessionState,
    TransferRequest,
    TransferResult,
)
from r2pilot.progress import ProgressTracker
from r2pilot.transport import ObjectTransport
from r2pilot.xml_utils import (
    parse_complete_multipart_upload,
    parse_initiate_multipart_upload,
    render_complete_multipart_upload,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENCY = 4
DEFAULT_PART_RETRIES = 2

_MD5_HEX_RE = re.compile(r"^[0-9a-f]{32}$")

Source = Union[bytes, bytearray, memoryview, BinaryIO]


class CancellationToken:
    """Cooperative cancellation flag shared between a caller and a transfer."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class SourceReader:
    """Sequential, exact-size reads over bytes or a binary file object."""

    def __init__(self, source: Source) -> None:
        if isinstance(source, (bytes, bytearray, memoryview)):
            self._view: memoryview | None = memoryview(source)
            self._file = None
        else:
            self._view = None
            self._file = source
        self.offset = 0

    def read(self, size: int) -> bytes:
        """Read exactly ``size`` bytes, or fewer only at end of input."""
        if self._view is not None:
            chunk = bytes(self._view[self.offset : self.offset + size])
            self.offset += len(chunk)
            return chunk

        chunks = []
        remaining = size
        while remaining > 0:
            data = self._file.read(remaining)
            if not data:
                break
            chunks.append(data)
            remaining -= len(data)
        chunk = b"".join(chunks)
        self.offset += len(chunk)
        return chunk


def composite_etag(part_etags: list[str]) -> str | None:
    """Compute the S3 multipart ETag (md5 of part md5s, '-N') if possible.

    Returns None when any part ETag is not a plain MD5 hex digest, in which
    case the composite cannot be predicted.
    """
    digests = []
    for etag in part_etags:
        clean = etag.strip('"').lower()
        if not _MD5_HEX_RE.match(clean):
            return None
        digests.append(binascii.unhexlify(clean))
    return f"{hashlib.md5(b''.join(digests)).hexdigest()}-{len(part_etags)}"


def verify_completed_etag(etag: str, parts: list[CompletedPart]) -> None:
    """Check the service's final ETag against the parts that were sent.

    Raises:
        IntegrityMismatch: If the part-count suffix or composite digest differ.
    """
    clean = etag.strip('"')
    if "-" not in clean:
        return
    digest, _, count = clean.rpartition("-")
    if not count.isdigit() or int(count) != len(parts):
        raise IntegrityMismatch(
            f"Service assembled {count} parts, expected {len(parts)} (ETag {etag})"
        )
    expected = composite_etag([p.etag for p in parts])
    if expected is not None and expected != f"{digest.lower()}-{count}":
        raise IntegrityMismatch(f"Composite ETag {etag} does not match uploaded parts")


class MultipartUploader:
    """Runs one multipart upload from initiation to completion or abort.

    Attributes:
        plan: Part size and count for this upload.
        bucket: Destination bucket.
        key: Destination key.
        state: Current lifecycle state.
        history: Every state entered, in order.
        session: The server-side session once initiated.
        abort_succeeded: Outcome of the abort, if one was attempted.
        abort_error: The AbortFailed error logged when the abort failed.
    """

    def __init__(
        self,
        transport: ObjectTransport,
        plan: Multipart,
        bucket: str,
        key: str,
        content_type: str | None = None,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        part_retries: int = DEFAULT_PART_RETRIES,
        tracker: ProgressTracker | None = None,
        cancel: CancellationToken | None = None,
    ) -> None:
        self._transport = transport
        self.plan = plan
        self.bucket = bucket
        self.key = key
        self.content_type = content_type
        self.max_concurrency = max(1, max_concurrency)
        self.part_retries = part_retries
        self._tracker = tracker or ProgressTracker(plan.size_bytes)
        self._cancel = cancel or CancellationToken()
        self.state = SessionState.PLANNING
        self.history: list[SessionState] = [SessionState.PLANNING]
        self.session: MultipartSession | None = None
        self.abort_succeeded: bool | None = None
        self.abort_error: AbortFailed | None = None
        self._completed = False

    @property
    def concurrency(self) -> int:
        return min(self.plan.part_count, self.max_concurrency)

    def _transition(self, state: SessionState) -> None:
        logger.debug(
            "Multipart %s/%s: %s -> %s", self.bucket, self.key, self.state.value, state.value
        )
        self.state = state
        self.history.append(state)

    def _object_request(self, method: str, **query: str) -> TransferRequest:
        return TransferRequest(bucket=self.bucket, key=self.key, method=method, query=query)

    # -- Lifecycle --------------------------------------------------------------

    async def run(self, source: Source) -> TransferResult:
        """Upload ``source`` and return the finalized object's result.

        Raises:
            InitiationFailed: The service refused to open a session.
            Cancelled: The cancellation token fired.
            IntegrityMismatch: The assembled object does not match the parts.
            TransientError / PermanentError: A part or the completion failed.
                Errors raised after initiation carry ``upload_id`` and
                ``abort_succeeded``.
        """
        if self._cancel.cancelled:
            raise Cancelled(bucket=self.bucket, key=self.key)

        self._transition(SessionState.INITIATING)
        session = await self._initiate()

        async with self._owned_session(session):
            if self._cancel.cancelled:
                raise Cancelled(bucket=self.bucket, key=self.key)
            self._transition(SessionState.UPLOADING_PARTS)
            await self._upload_parts(session, SourceReader(source))
            self._transition(SessionState.COMPLETING)
            etag = await self._complete(session)
            self._transition(SessionState.DONE)

        metrics.record_operation("multipart_upload", "ok")
        logger.info(
            "Completed multipart upload of %s/%s (%d parts)",
            self.bucket,
            self.key,
            self.plan.part_count,
            extra={"bucket": self.bucket, "key": self.key, "upload_id": session.upload_id},
        )
        return TransferResult(
            bucket=self.bucket,
            key=self.key,
            size=self.plan.size_bytes,
            etag=etag,
            strategy="multipart",
            part_count=self.plan.part_count,
            upload_id=session.upload_id,
        )

    async def _initiate(self) -> MultipartSession:
        request = TransferRequest(
            bucket=self.bucket,
            key=self.key,
            method="POST",
            content_type=self.content_type,
            query={"uploads": ""},
        )
        try:
            response = await self._transport.execute(request)
            upload_id = parse_initiate_multipart_upload(response.body)
        except TransferError as exc:
            metrics.record_operation("multipart_upload", "initiation_failed")
            raise InitiationFailed(
                f"Could not initiate multipart upload: {exc.message}",
                status_code=exc.status_code,
                code=exc.code,
                bucket=self.bucket,
                key=self.key,
            ) from exc
        except ValueError as exc:
            metrics.record_operation("multipart_upload", "initiation_failed")
            raise InitiationFailed(
                f"Could not initiate multipart upload: {exc}", bucket=self.bucket, key=self.key
            ) from exc

        self.session = MultipartSession(upload_id=upload_id, bucket=self.bucket, key=self.key)
        logger.info(
            "Initiated multipart upload %s for %s/%s (%d parts of %d bytes)",
            upload_id,
            self.bucket,
            self.key,
            self.plan.part_count,
            self.plan.part_size_bytes,
            extra={"bucket": self.bucket, "key": self.key, "upload_id": upload_id},
        )
        return self.session

    @asynccontextmanager
    async def _owned_session(self, session: MultipartSession) -> AsyncIterator[MultipartSession]:
        """Hold ``session``; abort it on any exit that is not a verified completion."""
        try:
            yield session
        except BaseException as exc:
            if self._completed:
                raise
            self._transition(SessionState.ABORTING)
            self.abort_succeeded = await asyncio.shield(self._abort(session))
            self._transition(SessionState.ABORTED)
            metrics.record_operation("multipart_upload", "aborted")
            if isinstance(exc, TransferError):
                exc.with_context(bucket=self.bucket, key=self.key, upload_id=session.upload_id)
                exc.abort_succeeded = self.abort_succeeded
            raise

    async def _abort(self, session: MultipartSession) -> bool:
        """Best-effort abort. Returns whether server-side state was released."""
        try:
            await self._transport.execute(
                self._object_request("DELETE", uploadId=session.upload_id)
            )
        except PermanentError as exc:
            if exc.status_code == 404:
                logger.debug("Upload %s already gone at abort", session.upload_id)
                return True
            self._log_abort_failure(session, exc)
            return False
        except TransferError as exc:
            self._log_abort_failure(session, exc)
            return False
        logger.info(
            "Aborted multipart upload %s for %s/%s",
            session.upload_id,
            self.bucket,
            self.key,
            extra={"bucket": self.bucket, "key": self.key, "upload_id": session.upload_id},
        )
        return True

    def _log_abort_failure(self, session: MultipartSession, exc: TransferError) -> None:
        failure = AbortFailed(
            f"Could not abort multipart upload {session.upload_id}: {exc.message}",
            status_code=exc.status_code,
            code=exc.code,
            bucket=self.bucket,
            key=self.key,
            upload_id=session.upload_id,
        )
        failure.__cause__ = exc
        self.abort_error = failure
        logger.warning(
            "%s",
            failure,
            extra={
                "bucket": self.bucket,
                "key": self.key,
                "upload_id": session.upload_id,
                "status": exc.status_code,
            },
        )

    # -- Parts ------------------------------------------------------------------

    async def _upload_parts(self, session: MultipartSession, reader: SourceReader) -> None:
        """Dispatch parts through a bounded pool and collect results."""
        pending: dict[asyncio.Task, tuple[int, bytes]] = {}
        retries_used: dict[int, int] = {}
        retry_queue: deque[tuple[int, bytes]] = deque()
        next_part = 1
        failure: BaseException | None = None

        try:
            while True:
                while (
                    failure is None
                    and not self._cancel.cancelled
                    and len(pending) < self.concurrency
                    and (retry_queue or next_part <= self.plan.part_count)
                ):
                    if retry_queue:
                        part_number, data = retry_queue.popleft()
                    else:
                        part_number = next_part
                        next_part += 1
                        data = self._read_part(reader, part_number)
                    task = asyncio.create_task(self._upload_part(session, part_number, data))
                    pending[task] = (part_number, data)

                if not pending:
                    break

                done, _ = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    part_number, data = pending.pop(task)
                    try:
                        etag = task.result()
                    except TransientError as exc:
                        used = retries_used.get(part_number, 0)
                        if failure is None and used < self.part_retries:
                            retries_used[part_number] = used + 1
                            logger.warning(
                                "Part %d of %s/%s failed after transport retries, "
                                "re-dispatching (%d/%d)",
                                part_number,
                                self.bucket,
                                self.key,
                                used + 1,
                                self.part_retries,
                                extra={"part_number": part_number, "upload_id": session.upload_id},
                            )
                            retry_queue.append((part_number, data))
                        elif failure is None:
                            failure = exc.with_context(part_number=part_number)
                    except Exception as exc:
                        if failure is None:
                            if isinstance(exc, TransferError):
                                exc.with_context(part_number=part_number)
                            failure = exc
                    else:
                        # Single writer: only this coordinator appends.
                        session.parts.append(CompletedPart(part_number, etag))
                        self._tracker.advance(len(data), part_number)
                        metrics.record_bytes_uploaded(len(data))
                        logger.debug(
                            "Part %d/%d of %s/%s done",
                            part_number,
                            self.plan.part_count,
                            self.bucket,
                            self.key,
                            extra={"part_number": part_number, "upload_id": session.upload_id},
                        )
        except SourceSizeMismatch as exc:
            failure = failure or exc
        finally:
            if pending:
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

        if failure is not None:
            raise failure
        if self._cancel.cancelled:
            raise Cancelled(bucket=self.bucket, key=self.key)

    def _read_part(self, reader: SourceReader, part_number: int) -> bytes:
        _, length = self.plan.part_range(part_number)
        data = reader.read(length)
        if len(data) != length:
            raise SourceSizeMismatch(
                f"Source ended at byte {reader.offset}, expected {self.plan.size_bytes}",
                bucket=self.bucket,
                key=self.key,
                part_number=part_number,
            )
        return data

    async def _upload_part(self, session: MultipartSession, part_number: int, data: bytes) -> str:
        request = self._object_request(
            "PUT", partNumber=str(part_number), uploadId=session.upload_id
        )
        response = await self._transport.execute(request, body=data)
        if not response.etag:
            raise IntegrityMismatch(
                "Service returned no ETag for uploaded part",
                bucket=self.bucket,
                key=self.key,
                part_number=part_number,
            )
        return response.etag

    # -- Completion -------------------------------------------------------------

    async def _complete(self, session: MultipartSession) -> str:
        parts = session.ordered_parts()
        numbers = [p.part_number for p in parts]
        if numbers != list(range(1, self.plan.part_count + 1)):
            raise IntegrityMismatch(
                f"Expected parts 1..{self.plan.part_count}, have {numbers}",
                bucket=self.bucket,
                key=self.key,
            )

        body = render_complete_multipart_upload(parts).encode("utf-8")
        request = TransferRequest(
            bucket=self.bucket,
            key=self.key,
            method="POST",
            content_type="application/xml",
            query={"uploadId": session.upload_id},
        )
        response = await self._transport.execute(request, body=body)
        try:
            result = parse_complete_multipart_upload(response.body)
        except ValueError as exc:
            raise PermanentError(str(exc), bucket=self.bucket, key=self.key) from exc

        verify_completed_etag(result["etag"], parts)
        self._completed = True
        return result["etag"]
