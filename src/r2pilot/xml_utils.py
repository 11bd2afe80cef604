"""S3 XML request rendering and response parsing helpers for r2pilot."""

import xml.etree.ElementTree as ET
from typing import Any
from xml.sax.saxutils import escape as _sax_escape

from r2pilot.models import CompletedPart, ObjectInfo

S3_NAMESPACE = "http://s3.amazonaws.com/doc/2006-03-01/"


def _escape_xml(value: str) -> str:
    """Escape special XML characters in a string value.

    Args:
        value: The raw string to escape.

    Returns:
        The XML-safe escaped string.
    """
    return _sax_escape(str(value))


def _local(tag: str) -> str:
    """Strip an ElementTree '{namespace}' prefix from a tag."""
    return tag.rsplit("}", 1)[-1]


def _parse(body: bytes | str) -> ET.Element:
    try:
        return ET.fromstring(body)
    except ET.ParseError as exc:
        raise ValueError(f"Malformed XML response: {exc}") from exc


def _child_text(elem: ET.Element, name: str, default: str = "") -> str:
    for child in elem:
        if _local(child.tag) == name:
            return (child.text or "").strip()
    return default


def _children(elem: ET.Element, name: str) -> list[ET.Element]:
    return [child for child in elem if _local(child.tag) == name]


# -- Request bodies -----------------------------------------------------------


def render_complete_multipart_upload(parts: list[CompletedPart]) -> str:
    """Render a CompleteMultipartUpload request body.

    Args:
        parts: Completed parts, already sorted by part number.

    Returns:
        An XML string listing each PartNumber/ETag pair in order.
    """
    xml_parts = [
        '<?xml version="1.0" encoding="UTF-8"?>',
        f'<CompleteMultipartUpload xmlns="{S3_NAMESPACE}">',
    ]
    for part in parts:
        xml_parts.append("<Part>")
        xml_parts.append(f"<PartNumber>{part.part_number}</PartNumber>")
        xml_parts.append(f"<ETag>{_escape_xml(part.etag)}</ETag>")
        xml_parts.append("</Part>")
    xml_parts.append("</CompleteMultipartUpload>")
    return "\n".join(xml_parts)


# -- Response bodies ----------------------------------------------------------


def parse_error(body: bytes | str) -> dict[str, str] | None:
    """Parse an S3 <Error> document.

    Returns:
        A dict with 'code' and 'message' (plus any other child elements),
        or None if the body is empty, not XML, or not an Error document.
    """
    if not body:
        return None
    try:
        root = _parse(body)
    except ValueError:
        return None
    if _local(root.tag) != "Error":
        return None
    result = {_local(child.tag).lower(): (child.text or "").strip() for child in root}
    result.setdefault("code", "")
    result.setdefault("message", "")
    return result


def parse_initiate_multipart_upload(body: bytes | str) -> str:
    """Extract the UploadId from an InitiateMultipartUploadResult.

    Raises:
        ValueError: If the body is malformed or has no UploadId.
    """
    root = _parse(body)
    if _local(root.tag) != "InitiateMultipartUploadResult":
        raise ValueError(f"Unexpected response element: {_local(root.tag)}")
    upload_id = _child_text(root, "UploadId")
    if not upload_id:
        raise ValueError("InitiateMultipartUploadResult has no UploadId")
    return upload_id


def parse_complete_multipart_upload(body: bytes | str) -> dict[str, str]:
    """Parse a CompleteMultipartUploadResult.

    S3 may answer CompleteMultipartUpload with HTTP 200 and an <Error>
    body; that case raises ValueError so callers treat it as a failure.

    Returns:
        A dict with 'location', 'bucket', 'key', and 'etag'.
    """
    root = _parse(body)
    name = _local(root.tag)
    if name == "Error":
        raise ValueError(
            f"CompleteMultipartUpload failed: {_child_text(root, 'Code')}: "
            f"{_child_text(root, 'Message')}"
        )
    if name != "CompleteMultipartUploadResult":
        raise ValueError(f"Unexpected response element: {name}")
    return {
        "location": _child_text(root, "Location"),
        "bucket": _child_text(root, "Bucket"),
        "key": _child_text(root, "Key"),
        "etag": _child_text(root, "ETag"),
    }


def parse_list_objects_v2(body: bytes | str) -> dict[str, Any]:
    """Parse a ListBucketResult (ListObjectsV2).

    Returns:
        A dict with 'contents' (list of ObjectInfo), 'is_truncated',
        'next_continuation_token', and 'common_prefixes'.
    """
    root = _parse(body)
    if _local(root.tag) != "ListBucketResult":
        raise ValueError(f"Unexpected response element: {_local(root.tag)}")

    contents = []
    for elem in _children(root, "Contents"):
        size_text = _child_text(elem, "Size", "0")
        contents.append(
            ObjectInfo(
                key=_child_text(elem, "Key"),
                size=int(size_text) if size_text.isdigit() else 0,
                etag=_child_text(elem, "ETag"),
                last_modified=_child_text(elem, "LastModified"),
                storage_class=_child_text(elem, "StorageClass", "STANDARD"),
            )
        )

    common_prefixes = [
        _child_text(cp, "Prefix") for cp in _children(root, "CommonPrefixes")
    ]

    return {
        "contents": contents,
        "is_truncated": _child_text(root, "IsTruncated").lower() == "true",
        "next_continuation_token": _child_text(root, "NextContinuationToken") or None,
        "common_prefixes": common_prefixes,
    }


def parse_copy_object_result(body: bytes | str) -> str:
    """Return the ETag of a CopyObjectResult (may arrive with HTTP 200 + <Error>)."""
    root = _parse(body)
    if _local(root.tag) == "Error":
        raise ValueError(
            f"CopyObject failed: {_child_text(root, 'Code')}: {_child_text(root, 'Message')}"
        )
    return _child_text(root, "ETag")
