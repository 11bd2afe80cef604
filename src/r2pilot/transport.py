"""Single-operation HTTP transport for r2pilot.

``ObjectTransport.execute`` performs one logical object operation against the
storage endpoint. Network failures, 5xx, and 429 responses are retried with
exponential backoff; every attempt is signed afresh because SigV4
signatures are time-scoped. Any other 4xx is returned to the caller at once
as a ``PermanentError``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone

import httpx

from r2pilot import metrics
from r2pilot.credentials import Credentials
from r2pilot.errors import PermanentError, TransferError, TransientError
from r2pilot.models import TransferRequest
from r2pilot.signer import EMPTY_SHA256, RequestSigner, payload_sha256
from r2pilot.xml_utils import parse_error

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY = 0.2  # seconds

SEND_CHUNK_SIZE = 1024 * 1024

Clock = Callable[[], datetime]
Sleep = Callable[[float], Awaitable[None]]
SendCallback = Callable[[int], None]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def _chunked_body(body: bytes, on_send: SendCallback) -> AsyncIterator[bytes]:
    view = memoryview(body)
    sent = 0
    while sent < len(body):
        chunk = bytes(view[sent : sent + SEND_CHUNK_SIZE])
        yield chunk
        sent += len(chunk)
        on_send(sent)


@dataclass
class ObjectResponse:
    """A successful (2xx) response.

    Attributes:
        status_code: HTTP status.
        headers: Response headers.
        body: Response body; empty for streamed responses.
        stream: The open httpx response for streamed GETs, else None.
            The caller must close it.
    """

    status_code: int
    headers: httpx.Headers
    body: bytes = b""
    stream: httpx.Response | None = None

    @property
    def etag(self) -> str:
        return self.headers.get("etag", "")


def is_transient_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


def classify_response(
    status_code: int, body: bytes, request: TransferRequest
) -> TransferError:
    """Turn a non-2xx response into a Transient or Permanent error."""
    parsed = parse_error(body) or {}
    code = parsed.get("code", "")
    message = parsed.get("message") or f"HTTP {status_code} for {request.describe()}"
    kwargs = dict(status_code=status_code, code=code, bucket=request.bucket, key=request.key)
    if is_transient_status(status_code):
        return TransientError(message, **kwargs)
    error = PermanentError(message, **kwargs)
    error.body = body.decode("utf-8", errors="replace")
    return error


class ObjectTransport:
    """Executes signed object operations with transient-error retry.

    Attributes:
        signer: Signs each attempt.
        credentials: Access-key pair used for signing.
        max_attempts: Total attempts per operation (first try included).
        base_delay: Backoff before the second attempt; doubles each time.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        signer: RequestSigner,
        credentials: Credentials,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay: float = DEFAULT_BASE_DELAY,
        clock: Clock | None = None,
        sleep: Sleep | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._client = client
        self.signer = signer
        self.credentials = credentials
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self._clock = clock or utc_now
        self._sleep = sleep or asyncio.sleep

    def backoff(self, attempt: int) -> float:
        """Delay after failed attempt number ``attempt`` (1-based)."""
        return self.base_delay * (2 ** (attempt - 1))

    async def execute(
        self,
        request: TransferRequest,
        body: bytes = b"",
        stream: bool = False,
        on_send: SendCallback | None = None,
    ) -> ObjectResponse:
        """Run ``request`` until it succeeds, fails permanently, or runs out of attempts.

        Args:
            request: The operation to perform.
            body: Request payload (PUT/POST).
            stream: Return the response unread, for streaming GETs.
            on_send: Called with the cumulative bytes of ``body`` handed to
                the connection during the current attempt.

        Returns:
            The 2xx ObjectResponse.

        Raises:
            PermanentError: On 4xx other than 429 (no retry).
            TransientError: When every attempt failed transiently.
        """
        payload_hash = payload_sha256(body) if body else EMPTY_SHA256
        url = self.signer.url_for(request)
        operation = request.describe()
        last_error: TransferError | None = None

        for attempt in range(1, self.max_attempts + 1):
            headers = self.signer.sign_headers(
                request, self.credentials, self._clock(), payload_hash
            )
            try:
                response = await self._send(request.method, url, headers, body, stream, on_send)
            except httpx.TransportError as exc:
                last_error = TransientError(
                    f"Network error during {operation}: {exc}",
                    bucket=request.bucket,
                    key=request.key,
                )
                last_error.__cause__ = exc
            else:
                if 200 <= response.status_code < 300:
                    if stream:
                        return ObjectResponse(response.status_code, response.headers, stream=response)
                    return ObjectResponse(response.status_code, response.headers, response.content)

                error_body = await response.aread() if stream else response.content
                if stream:
                    await response.aclose()
                last_error = classify_response(response.status_code, error_body, request)
                if isinstance(last_error, PermanentError):
                    raise last_error

            if attempt < self.max_attempts:
                delay = self.backoff(attempt)
                logger.warning(
                    "Transient failure on %s (attempt %d/%d), retrying in %.2fs: %s",
                    operation,
                    attempt,
                    self.max_attempts,
                    delay,
                    last_error.message,
                    extra={
                        "bucket": request.bucket,
                        "key": request.key,
                        "attempt": attempt,
                        "status": last_error.status_code,
                    },
                )
                metrics.record_retry(request.method)
                await self._sleep(delay)

        assert last_error is not None
        if isinstance(last_error, TransientError):
            last_error.attempts = self.max_attempts
        raise last_error

    async def _send(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        body: bytes,
        stream: bool,
        on_send: SendCallback | None = None,
    ) -> httpx.Response:
        content = body if body or method in ("PUT", "POST") else None
        if on_send is not None and body:
            # An explicit Content-Length keeps httpx from switching to chunked encoding.
            headers = {**headers, "content-length": str(len(body))}
            content = _chunked_body(body, on_send)
        if stream:
            req = self._client.build_request(method, url, headers=headers, content=content)
            return await self._client.send(req, stream=True)
        return await self._client.request(method, url, headers=headers, content=content)
