"""
Proof-of-work candidate encoding and the leading-zero-bit predicate.

Client and server must hash byte-identical candidates, so the candidate is
built by one encoding function instead of ad-hoc concatenation.

Encoding v1
    Ordered fields ``nonce | iteration | timestamp | clientIP | seed``, with a
    sixth ``canvasHash`` field for canvas-bound (desktop) challenges. Fields
    are joined with ``|``. Inside a field ``\\`` is written ``\\\\`` and ``|`` is
    written ``\\|``. Fields free of both characters encode to themselves.
"""

import hashlib
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

ENCODING_VERSION = "v1"
SEPARATOR = "|"
ESCAPE = "\\"

MOBILE_FIELD_COUNT = 5
DESKTOP_FIELD_COUNT = 6


@dataclass(frozen=True)
class CandidateFields:
    nonce: str
    iteration: int
    timestamp: str
    client_ip: str
    seed: str
    canvas_hash: Optional[str] = None

    def as_list(self) -> List[str]:
        parts = [self.nonce, str(self.iteration), self.timestamp, self.client_ip, self.seed]
        if self.canvas_hash is not None:
            parts.append(self.canvas_hash)
        return parts


def _escape(value: str) -> str:
    return value.replace(ESCAPE, ESCAPE + ESCAPE).replace(SEPARATOR, ESCAPE + SEPARATOR)


def split_candidate(candidate: str) -> List[str]:
    """Split an encoded candidate into unescaped fields."""
    parts: List[str] = []
    current: List[str] = []
    chars = iter(candidate)
    for ch in chars:
        if ch == ESCAPE:
            nxt = next(chars, None)
            if nxt is None:
                raise ValueError("dangling escape at end of candidate")
            current.append(nxt)
        elif ch == SEPARATOR:
            parts.append("".join(current))
            current = []
        else:
            current.append(ch)
    parts.append("".join(current))
    return parts


def encode_candidate(fields: CandidateFields) -> str:
    return SEPARATOR.join(_escape(p) for p in fields.as_list())


def decode_candidate(candidate: str) -> CandidateFields:
    parts = split_candidate(candidate)
    if len(parts) not in (MOBILE_FIELD_COUNT, DESKTOP_FIELD_COUNT):
        raise ValueError(f"candidate has {len(parts)} fields")
    nonce, iteration, timestamp, client_ip, seed = parts[:5]
    if not re.fullmatch(r"0|[1-9][0-9]*", iteration):
        raise ValueError(f"iteration is not a canonical non-negative integer: {iteration!r}")
    return CandidateFields(
        nonce=nonce,
        iteration=int(iteration),
        timestamp=timestamp,
        client_ip=client_ip,
        seed=seed,
        canvas_hash=parts[5] if len(parts) == DESKTOP_FIELD_COUNT else None,
    )


def candidate_digest(candidate: str) -> bytes:
    return hashlib.sha256(candidate.encode("utf-8")).digest()


def has_leading_zero_bits(digest: bytes, zero_bits: int) -> bool:
    """Byte-wise test that ``digest`` starts with ``zero_bits`` zero bits."""
    if zero_bits <= 0:
        return True
    full_bytes, extra_bits = divmod(zero_bits, 8)
    if full_bytes + (1 if extra_bits else 0) > len(digest):
        return False
    for i in range(full_bytes):
        if digest[i] != 0:
            return False
    if extra_bits > 0:
        mask = (0xFF << (8 - extra_bits)) & 0xFF
        return (digest[full_bytes] & mask) == 0
    return True


def leading_zero_bits(digest: bytes) -> int:
    """Count leading zero bits one bit at a time."""
    zeros = 0
    for byte in digest:
        for bit in range(7, -1, -1):
            if (byte >> bit) & 1:
                return zeros
            zeros += 1
    return zeros


def format_timestamp(when: datetime) -> str:
    return when.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 UTC timestamp; accepts the ``Z`` suffix and milliseconds."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
