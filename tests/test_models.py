"""Tests for r2pilot data model types and upload planning."""

import pytest

from r2pilot.models import (
    DEFAULT_MULTIPART_THRESHOLD,
    MAX_PART_COUNT,
    MIB,
    MIN_PART_SIZE,
    ByteRange,
    CompletedPart,
    Multipart,
    MultipartSession,
    ObjectLocation,
    SingleShot,
    TransferRequest,
    plan_upload,
)

TIB = 1024 * 1024 * MIB

PLAN_SIZES = [
    0,
    1,
    5 * MIB - 1,
    5 * MIB,
    5 * MIB + 1,
    99 * MIB,
    100 * MIB,
    100 * MIB + 1,
    250 * MIB,
    1024 * MIB + 17,
    977 * 1024 * MIB,
    5 * TIB,
]


class TestPlanUpload:
    """Choosing between single-shot and multipart, and sizing parts."""

    def test_below_threshold_is_single_shot(self):
        assert plan_upload(DEFAULT_MULTIPART_THRESHOLD - 1) == SingleShot(
            DEFAULT_MULTIPART_THRESHOLD - 1
        )

    def test_at_threshold_is_multipart(self):
        plan = plan_upload(DEFAULT_MULTIPART_THRESHOLD)
        assert isinstance(plan, Multipart)
        assert plan.part_count == 1

    def test_250_mib_uses_three_parts(self):
        """250 MiB at 100 MiB parts: 100 + 100 + 50."""
        plan = plan_upload(250 * MIB)
        assert isinstance(plan, Multipart)
        assert plan.part_count == 3
        assert [plan.part_range(n) for n in (1, 2, 3)] == [
            (0, 100 * MIB),
            (100 * MIB, 100 * MIB),
            (200 * MIB, 50 * MIB),
        ]

    def test_force_multipart_small_payload(self):
        plan = plan_upload(10, force_multipart=True)
        assert plan == Multipart(size_bytes=10, part_size_bytes=100 * MIB, part_count=1)

    def test_force_multipart_empty_payload(self):
        plan = plan_upload(0, force_multipart=True)
        assert isinstance(plan, Multipart)
        assert plan.part_count == 1
        assert plan.part_range(1) == (0, 0)

    def test_part_size_raised_to_minimum(self):
        plan = plan_upload(20 * MIB, threshold=1, part_size=1 * MIB)
        assert plan.part_size_bytes == MIN_PART_SIZE
        assert plan.part_count == 4

    def test_part_count_capped(self):
        """5 TiB at 5 MiB parts would need 1M parts; the part size grows instead."""
        plan = plan_upload(5 * TIB, part_size=5 * MIB)
        assert plan.part_count <= MAX_PART_COUNT
        assert plan.part_size_bytes % MIB == 0
        assert plan.part_size_bytes == 525 * MIB

    def test_negative_size_rejected(self):
        with pytest.raises(ValueError):
            plan_upload(-1)

    @pytest.mark.parametrize("size", PLAN_SIZES)
    @pytest.mark.parametrize("part_size", [5 * MIB, 8 * MIB, 100 * MIB])
    def test_multipart_invariants(self, size, part_size):
        """Parts cover the payload exactly, in order, within service limits."""
        plan = plan_upload(size, threshold=0, part_size=part_size)
        assert isinstance(plan, Multipart)
        assert plan.part_size_bytes >= MIN_PART_SIZE
        assert 1 <= plan.part_count <= MAX_PART_COUNT
        assert plan.part_count * plan.part_size_bytes >= size
        if size:
            assert (plan.part_count - 1) * plan.part_size_bytes < size

        # Only check every range for plans small enough to enumerate quickly.
        if plan.part_count <= 1000:
            offset = 0
            for number in range(1, plan.part_count + 1):
                start, length = plan.part_range(number)
                assert start == offset
                if number < plan.part_count:
                    assert length == plan.part_size_bytes
                offset += length
            assert offset == size

    def test_part_range_out_of_bounds(self):
        plan = plan_upload(250 * MIB)
        with pytest.raises(ValueError):
            plan.part_range(0)
        with pytest.raises(ValueError):
            plan.part_range(4)


class TestByteRange:
    """Inclusive byte ranges for ranged GETs."""

    def test_closed_range_header(self):
        assert ByteRange(0, 99).header() == "bytes=0-99"

    def test_open_range_header(self):
        assert ByteRange(100).header() == "bytes=100-"

    def test_negative_start_rejected(self):
        with pytest.raises(ValueError):
            ByteRange(-1, 5)

    def test_end_before_start_rejected(self):
        with pytest.raises(ValueError):
            ByteRange(10, 5)


class TestTransferRequest:
    """Path and description of object operations."""

    def test_object_path(self):
        req = TransferRequest(bucket="b-1", key="a/b.txt", method="GET")
        assert req.path == "/b-1/a/b.txt"

    def test_bucket_path(self):
        req = TransferRequest(bucket="b-1", key="", method="GET", query={"list-type": "2"})
        assert req.path == "/b-1"
        assert req.describe() == "GET /b-1?list-type"

    def test_describe_lists_subresources(self):
        req = TransferRequest(
            bucket="b-1", key="k", method="PUT", query={"uploadId": "u", "partNumber": "3"}
        )
        assert req.describe() == "PUT /b-1/k?partNumber,uploadId"

    def test_object_location_str(self):
        assert str(ObjectLocation("b-1", "dir/k")) == "b-1/dir/k"


class TestMultipartSession:
    """Completed parts are stored in arrival order and sorted on demand."""

    def test_ordered_parts(self):
        session = MultipartSession(upload_id="u", bucket="b", key="k")
        for n in (3, 1, 2):
            session.parts.append(CompletedPart(n, f'"etag{n}"'))
        assert [p.part_number for p in session.parts] == [3, 1, 2]
        assert [p.part_number for p in session.ordered_parts()] == [1, 2, 3]
