"""AWS Signature Version 4 request signing for r2pilot.

Implements the SigV4 signing algorithm for both header-based auth
(Authorization header) and query-string auth (presigned URLs).

The signer is pure: the signing time is always passed in, never read from
the wall clock, so identical inputs produce identical signatures.

References:
    - https://docs.aws.amazon.com/AmazonS3/latest/API/sig-v4-authenticating-requests.html
    - https://docs.aws.amazon.com/AmazonS3/latest/API/sigv4-query-string-auth.html
"""

from __future__ import annotations

import hashlib
import hmac
import re
import urllib.parse
from datetime import datetime, timezone

from r2pilot.credentials import Credentials, require_access_key_pair
from r2pilot.errors import InvalidSignedUrlSpec
from r2pilot.models import MAX_SIGNED_URL_EXPIRES, SignedUrlSpec, TransferRequest

# Constants
ALGORITHM = "AWS4-HMAC-SHA256"
KEY_PREFIX = "AWS4"
SCOPE_TERMINATOR = "aws4_request"
SERVICE_NAME = "s3"
UNSIGNED_PAYLOAD = "UNSIGNED-PAYLOAD"
EMPTY_SHA256 = "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
AMZ_DATE_FORMAT = "%Y%m%dT%H%M%SZ"


class RequestSigner:
    """Signs S3 requests for one endpoint and region.

    Attributes:
        endpoint: Base URL of the storage service.
        region: Region used in the credential scope ("auto" for R2).
    """

    def __init__(self, endpoint: str, region: str = "auto") -> None:
        parsed = urllib.parse.urlsplit(endpoint)
        if not parsed.scheme or not parsed.netloc:
            raise ValueError(f"Invalid endpoint URL: {endpoint!r}")
        self.endpoint = endpoint
        self.region = region
        self.scheme = parsed.scheme
        self.host = parsed.netloc
        # Signing key cache: (access_key, date, region, service) -> signing_key bytes
        self._signing_key_cache: dict[tuple[str, str, str, str], bytes] = {}

    # -- Header-based signing -------------------------------------------------

    def sign_headers(
        self,
        request: TransferRequest,
        credentials: Credentials,
        now: datetime,
        payload_hash: str = EMPTY_SHA256,
    ) -> dict[str, str]:
        """Produce the headers that authenticate ``request`` at time ``now``.

        Args:
            request: The operation to sign.
            credentials: Must be an AccessKeyPair.
            now: Signing time (UTC).
            payload_hash: Hex SHA-256 of the body, or UNSIGNED_PAYLOAD.

        Returns:
            Every header to send: host, x-amz-date, x-amz-content-sha256,
            any content-type/range/extra headers, and Authorization.

        Raises:
            MissingCredential: If credentials are not an access-key pair.
        """
        keys = require_access_key_pair(credentials)
        amz_date = format_amz_date(now)
        date_stamp = amz_date[:8]

        headers: dict[str, str] = {
            "host": self.host,
            "x-amz-content-sha256": payload_hash,
            "x-amz-date": amz_date,
        }
        if request.content_type:
            headers["content-type"] = request.content_type
        if request.byte_range is not None:
            headers["range"] = request.byte_range.header()
        for name, value in request.headers.items():
            headers[name.lower()] = value

        signed_headers = sorted(headers)
        canonical = build_canonical_request(
            method=request.method,
            canonical_uri=uri_encode_path(request.path),
            canonical_query=build_canonical_query(request.query),
            headers=headers,
            signed_headers=signed_headers,
            payload_hash=payload_hash,
        )
        scope = credential_scope(date_stamp, self.region)
        to_sign = build_string_to_sign(amz_date, scope, canonical)
        signing_key = self._signing_key(keys.access_key_id, keys.secret_access_key, date_stamp)
        signature = compute_signature(signing_key, to_sign)

        headers["authorization"] = (
            f"{ALGORITHM} Credential={keys.access_key_id}/{scope}, "
            f"SignedHeaders={';'.join(signed_headers)}, Signature={signature}"
        )
        return headers

    def url_for(self, request: TransferRequest) -> str:
        """Return the fully-qualified URL matching what sign_headers signed."""
        url = f"{self.scheme}://{self.host}{uri_encode_path(request.path)}"
        query = build_canonical_query(request.query)
        if query:
            url += f"?{query}"
        return url

    # -- Query-string signing (presigned URLs) --------------------------------

    def sign_query_string(
        self,
        spec: SignedUrlSpec,
        credentials: Credentials,
        now: datetime,
    ) -> str:
        """Produce a presigned URL valid over ``[now, now + spec.expires_in]``.

        Args:
            spec: Method, object, validity window, and optional content type.
            credentials: Must be an AccessKeyPair.
            now: Signing time (UTC); the start of the validity window.

        Returns:
            The fully-qualified URL with X-Amz-* parameters and signature.

        Raises:
            InvalidSignedUrlSpec: If expires_in is outside 1..604800.
            MissingCredential: If credentials are not an access-key pair.
        """
        if spec.expires_in < 1 or spec.expires_in > MAX_SIGNED_URL_EXPIRES:
            raise InvalidSignedUrlSpec(
                f"X-Amz-Expires must be between 1 and {MAX_SIGNED_URL_EXPIRES} seconds",
                bucket=spec.bucket,
                key=spec.key,
            )
        keys = require_access_key_pair(credentials)
        amz_date = format_amz_date(now)
        date_stamp = amz_date[:8]
        scope = credential_scope(date_stamp, self.region)

        headers = {"host": self.host}
        if spec.content_type:
            headers["content-type"] = spec.content_type
        signed_headers = sorted(headers)

        params = {
            "X-Amz-Algorithm": ALGORITHM,
            "X-Amz-Credential": f"{keys.access_key_id}/{scope}",
            "X-Amz-Date": amz_date,
            "X-Amz-Expires": str(spec.expires_in),
            "X-Amz-SignedHeaders": ";".join(signed_headers),
        }
        canonical_query = build_canonical_query(params)
        path = f"/{spec.bucket}/{spec.key}"
        canonical = build_canonical_request(
            method=spec.method.value,
            canonical_uri=uri_encode_path(path),
            canonical_query=canonical_query,
            headers=headers,
            signed_headers=signed_headers,
            payload_hash=UNSIGNED_PAYLOAD,
        )
        to_sign = build_string_to_sign(amz_date, scope, canonical)
        signing_key = self._signing_key(keys.access_key_id, keys.secret_access_key, date_stamp)
        signature = compute_signature(signing_key, to_sign)

        return (
            f"{self.scheme}://{self.host}{uri_encode_path(path)}"
            f"?{canonical_query}&X-Amz-Signature={signature}"
        )

    # -- Signing key derivation -----------------------------------------------

    def _signing_key(self, access_key: str, secret_key: str, date: str) -> bytes:
        """Derive (or reuse) the signing key for one access key and day."""
        cache_key = (access_key, date, self.region, SERVICE_NAME)
        cached = self._signing_key_cache.get(cache_key)
        if cached is not None:
            return cached

        signing_key = derive_signing_key(secret_key, date, self.region, SERVICE_NAME)

        # Store in cache (evict old entries if cache gets too large)
        if len(self._signing_key_cache) > 100:
            self._signing_key_cache.clear()
        self._signing_key_cache[cache_key] = signing_key
        return signing_key


# ---------------------------------------------------------------------------
# Module-level utility functions
# ---------------------------------------------------------------------------


def format_amz_date(now: datetime) -> str:
    """Format a datetime as the SigV4 timestamp (YYYYMMDDTHHMMSSZ, UTC)."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc).strftime(AMZ_DATE_FORMAT)


def credential_scope(date_stamp: str, region: str, service: str = SERVICE_NAME) -> str:
    return f"{date_stamp}/{region}/{service}/{SCOPE_TERMINATOR}"


def payload_sha256(body: bytes) -> str:
    """Hex SHA-256 of a request body, as sent in x-amz-content-sha256."""
    return hashlib.sha256(body).hexdigest()


def build_canonical_request(
    method: str,
    canonical_uri: str,
    canonical_query: str,
    headers: dict[str, str],
    signed_headers: list[str],
    payload_hash: str,
) -> str:
    """Build the canonical request string.

    Args:
        method: HTTP method (uppercase).
        canonical_uri: The already URI-encoded request path.
        canonical_query: The already canonicalized query string.
        headers: Request headers (names may be mixed case).
        signed_headers: Names of the headers covered by the signature.
        payload_hash: SHA-256 hex digest or UNSIGNED-PAYLOAD.

    Returns:
        The canonical request string.
    """
    # Canonical headers: lowercase names, trim values, sort by name
    lower_headers: dict[str, str] = {}
    for name, value in headers.items():
        lower_name = name.lower()
        if lower_name in lower_headers:
            # Multiple same headers: join with comma
            lower_headers[lower_name] += "," + trim_header_value(value)
        else:
            lower_headers[lower_name] = trim_header_value(value)

    sorted_signed = sorted(signed_headers)
    canonical_headers = "".join(
        f"{name}:{lower_headers.get(name, '')}\n" for name in sorted_signed
    )

    parts = [
        method,
        canonical_uri or "/",
        canonical_query,
        canonical_headers,
        ";".join(sorted_signed),
        payload_hash,
    ]
    return "\n".join(parts)


def build_string_to_sign(timestamp: str, scope: str, canonical_request: str) -> str:
    """Build the string to sign.

    Args:
        timestamp: ISO 8601 basic timestamp (YYYYMMDDTHHMMSSZ).
        scope: Credential scope (YYYYMMDD/region/s3/aws4_request).
        canonical_request: The assembled canonical request string.

    Returns:
        The string to sign.
    """
    canonical_hash = hashlib.sha256(canonical_request.encode("utf-8")).hexdigest()
    return f"{ALGORITHM}\n{timestamp}\n{scope}\n{canonical_hash}"


def derive_signing_key(secret_key: str, date: str, region: str, service: str) -> bytes:
    """Derive the SigV4 signing key via the HMAC-SHA256 chain.

    Args:
        secret_key: The secret access key.
        date: Date string (YYYYMMDD).
        region: Region name.
        service: Service name.

    Returns:
        The 32-byte signing key.
    """
    k_date = hmac.new(
        (KEY_PREFIX + secret_key).encode("utf-8"),
        date.encode("utf-8"),
        hashlib.sha256,
    ).digest()
    k_region = hmac.new(k_date, region.encode("utf-8"), hashlib.sha256).digest()
    k_service = hmac.new(k_region, service.encode("utf-8"), hashlib.sha256).digest()
    k_signing = hmac.new(k_service, SCOPE_TERMINATOR.encode("utf-8"), hashlib.sha256).digest()
    return k_signing


def compute_signature(signing_key: bytes, string_to_sign: str) -> str:
    """Compute the final HMAC-SHA256 hex signature."""
    return hmac.new(signing_key, string_to_sign.encode("utf-8"), hashlib.sha256).hexdigest()


def uri_encode(s: str, encode_slash: bool = True) -> str:
    """S3-compatible URI encoding.

    Characters A-Z, a-z, 0-9, '-', '_', '.', '~' are not encoded.
    All other characters are percent-encoded with uppercase hex.
    Spaces become %20 (not +).

    Args:
        s: The string to encode.
        encode_slash: If True (default), '/' is encoded as %2F.

    Returns:
        The URI-encoded string.
    """
    safe = "-_.~" if encode_slash else "-_.~/"
    return urllib.parse.quote(s, safe=safe)


def uri_encode_path(path: str) -> str:
    """URI-encode a path, preserving forward slashes.

    Args:
        path: The URI path to encode.

    Returns:
        The URI-encoded path, always starting with '/'.
    """
    if not path:
        return "/"
    segments = path.split("/")
    result = "/".join(uri_encode(seg, encode_slash=False) for seg in segments)
    if not result.startswith("/"):
        result = "/" + result
    return result


def build_canonical_query(params: dict[str, str]) -> str:
    """Build the canonical query string from decoded parameters.

    Parameters are sorted by name (byte-order), then by value. Each name
    and value is URI-encoded; parameters with no value render as 'name='.
    """
    if not params:
        return ""
    pairs = sorted((str(k), str(v)) for k, v in params.items())
    return "&".join(f"{uri_encode(name)}={uri_encode(value)}" for name, value in pairs)


def trim_header_value(value: str) -> str:
    """Trim a header value and collapse sequential spaces."""
    return re.sub(r" +", " ", value.strip())
