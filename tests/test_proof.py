"""
Tests for candidate encoding and the leading-zero predicate
"""

import random
from datetime import datetime, timezone

import pytest

from proof import (
    CandidateFields,
    candidate_digest,
    decode_candidate,
    encode_candidate,
    format_timestamp,
    has_leading_zero_bits,
    leading_zero_bits,
    parse_timestamp,
    split_candidate,
)


class TestEncoding:
    def test_plain_fields_encode_to_themselves(self):
        fields = CandidateFields("abc", 0, "2024-01-01T00:00:00Z", "1.2.3.4", "s1")
        assert encode_candidate(fields) == "abc|0|2024-01-01T00:00:00Z|1.2.3.4|s1"

    def test_canvas_hash_is_sixth_field(self):
        fields = CandidateFields("abc", 7, "2024-01-01T00:00:00Z", "1.2.3.4", "s1", "c4nv4s")
        assert encode_candidate(fields).endswith("|s1|c4nv4s")

    def test_separator_and_escape_are_escaped(self):
        fields = CandidateFields("a|b", 1, "t", "ip", "s\\1")
        encoded = encode_candidate(fields)
        assert encoded == "a\\|b|1|t|ip|s\\\\1"
        assert decode_candidate(encoded) == fields

    def test_escaped_fields_cannot_shift_boundaries(self):
        a = CandidateFields("n", 0, "t", "1.2.3.4|x", "s")
        b = CandidateFields("n", 0, "t", "1.2.3.4", "x|s")
        assert encode_candidate(a) != encode_candidate(b)

    def test_decode_desktop_candidate(self):
        fields = decode_candidate("n|42|2024-01-01T00:00:00Z|10.0.0.1|seed|hash")
        assert fields.iteration == 42
        assert fields.canvas_hash == "hash"

    @pytest.mark.parametrize("candidate", [
        "n|0|t|ip",
        "n|0|t|ip|s|c|extra",
        "n|01|t|ip|s",
        "n|-1|t|ip|s",
        "n|x|t|ip|s",
        "n||t|ip|s",
    ])
    def test_decode_rejects_malformed(self, candidate):
        with pytest.raises(ValueError):
            decode_candidate(candidate)

    def test_dangling_escape_is_rejected(self):
        with pytest.raises(ValueError):
            split_candidate("n|0|t|ip|s\\")


class TestPredicate:
    def test_zero_bits_always_pass(self):
        assert has_leading_zero_bits(b"\xff" * 32, 0)
        assert has_leading_zero_bits(b"", 0)

    def test_bits_beyond_digest_fail(self):
        assert not has_leading_zero_bits(b"\x00", 9)

    def test_partial_byte_mask(self):
        assert has_leading_zero_bits(b"\x00\x0f", 12)
        assert not has_leading_zero_bits(b"\x00\x0f", 13)
        assert has_leading_zero_bits(b"\x1f", 3)
        assert not has_leading_zero_bits(b"\x1f", 4)

    def test_leading_zero_bits_counts(self):
        assert leading_zero_bits(b"\x80") == 0
        assert leading_zero_bits(b"\x00\x0f") == 12
        assert leading_zero_bits(bytes(32)) == 256

    def test_bytewise_matches_bitwise(self):
        rng = random.Random(1337)
        for _ in range(500):
            prefix = bytes(rng.randrange(0, 4))
            digest = prefix + bytes([rng.randrange(0, 256)]) + rng.randbytes(31 - len(prefix))
            counted = leading_zero_bits(digest)
            for bits in range(32):
                assert has_leading_zero_bits(digest, bits) == (counted >= bits)

    def test_digest_is_sha256_of_utf8(self):
        digest = candidate_digest("abc|0|2024-01-01T00:00:00Z|1.2.3.4|s1")
        assert len(digest) == 32


class TestTimestamps:
    def test_format_uses_z_suffix(self):
        assert format_timestamp(datetime(2024, 1, 1, tzinfo=timezone.utc)) == "2024-01-01T00:00:00Z"

    def test_parse_accepts_milliseconds(self):
        parsed = parse_timestamp("2024-01-01T00:00:00.123Z")
        assert parsed.tzinfo is not None
        assert parsed.microsecond == 123000

    def test_parse_rejects_garbage(self):
        with pytest.raises(ValueError):
            parse_timestamp("yesterday")
