"""Tests for bucket name and object key validation."""

import pytest

from r2pilot.errors import InvalidBucketName, InvalidObjectKey
from r2pilot.validation import MAX_KEY_BYTES, validate_bucket_name, validate_object_key


class TestValidateBucketName:
    """Tests for validate_bucket_name()."""

    # -- Valid names ----------------------------------------------------------

    def test_valid_simple(self):
        """A simple lowercase alphanumeric name passes."""
        validate_bucket_name("my-bucket")

    def test_valid_three_chars(self):
        """Minimum length (3 chars) is accepted."""
        validate_bucket_name("abc")

    def test_valid_63_chars(self):
        """Maximum length (63 chars) is accepted."""
        validate_bucket_name("a" * 63)

    def test_valid_with_dots(self):
        """Names with dots (but no consecutive dots) are accepted."""
        validate_bucket_name("my.bucket.name")

    # -- Invalid names --------------------------------------------------------

    @pytest.mark.parametrize(
        "name",
        [
            "ab",
            "a" * 64,
            "MyBucket",
            "-bucket",
            "bucket-",
            "192.168.1.1",
            "my..bucket",
            "my_bucket",
            "",
        ],
    )
    def test_invalid(self, name):
        with pytest.raises(InvalidBucketName) as exc_info:
            validate_bucket_name(name)
        assert exc_info.value.bucket == name


class TestValidateObjectKey:
    """Tests for validate_object_key()."""

    def test_valid_short_key(self):
        validate_object_key("a")

    def test_valid_key_with_slashes(self):
        """Path-like keys are accepted."""
        validate_object_key("videos/2026/01/clip.mp4")

    def test_valid_at_limit(self):
        validate_object_key("k" * MAX_KEY_BYTES)

    def test_valid_multibyte_at_limit(self):
        """341 three-byte characters are 1023 bytes."""
        validate_object_key("中" * 341)

    def test_empty(self):
        with pytest.raises(InvalidObjectKey, match="must not be empty"):
            validate_object_key("")

    def test_leading_slash(self):
        with pytest.raises(InvalidObjectKey, match="must not start with '/'"):
            validate_object_key("/videos/clip.mp4")

    @pytest.mark.parametrize("key", ["a/./b.txt", "a/../b.txt", "./a", "../a", "a/.", "a/..", "."])
    def test_dot_segments(self, key):
        with pytest.raises(InvalidObjectKey, match="'.' or '..' path segments"):
            validate_object_key(key)

    @pytest.mark.parametrize("key", ["dir//x", "a/.hidden", "a/...", "a/..b", "v1.2/file.tar.gz"])
    def test_dots_inside_segments_allowed(self, key):
        validate_object_key(key)

    def test_too_long_ascii(self):
        with pytest.raises(InvalidObjectKey, match="exceeds 1024 bytes"):
            validate_object_key("k" * (MAX_KEY_BYTES + 1))

    def test_too_long_multibyte(self):
        """Length is measured in UTF-8 bytes, not characters."""
        with pytest.raises(InvalidObjectKey):
            validate_object_key("é" * 513)

    def test_lone_surrogate(self):
        with pytest.raises(InvalidObjectKey, match="not valid UTF-8"):
            validate_object_key("bad-\ud800-key")

    def test_error_carries_key(self):
        with pytest.raises(InvalidObjectKey) as exc_info:
            validate_object_key("/x")
        assert exc_info.value.key == "/x"
