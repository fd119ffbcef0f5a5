"""
PowGate Proof Solver

Runs in the client next to the collector. The search is cooperative: it yields
to the event loop after every hash so UI and telemetry work keep running.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Mapping, Optional

from errors import ProofIterationExhausted
from models import FingerprintDocument
from proof import (
    CandidateFields,
    candidate_digest,
    encode_candidate,
    format_timestamp,
    has_leading_zero_bits,
)

log = logging.getLogger(__name__)

MOBILE_ITERATION_CAP = 1000
DESKTOP_ITERATION_CAP = 5000

AnswerProvider = Callable[[Mapping[str, Any]], Awaitable[str]]


@dataclass(frozen=True)
class SolvedProof:
    proof: str
    digest: Optional[str] = None
    iteration: Optional[int] = None

    def payload(self, nonce: str):
        data = {"nonce": nonce, "proof": self.proof}
        if self.digest is not None:
            data["digest"] = self.digest
        return data


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def effective_cap(challenge: Mapping[str, Any], fingerprint: FingerprintDocument) -> int:
    device_cap = MOBILE_ITERATION_CAP if fingerprint.isMobile else DESKTOP_ITERATION_CAP
    return max(0, min(int(challenge["iterations"]), device_cap))


def build_candidate_fields(challenge: Mapping[str, Any], fingerprint: FingerprintDocument,
                           iteration: int, timestamp: str) -> CandidateFields:
    """Mobile candidates carry five fields; canvas-bound desktop ones add the canvas hash."""
    canvas = None
    if not fingerprint.isMobile and challenge.get("canvasBound"):
        canvas = fingerprint.canvasHash
    return CandidateFields(
        nonce=challenge["nonce"],
        iteration=iteration,
        timestamp=timestamp,
        client_ip=challenge["clientIP"],
        seed=challenge["seed"],
        canvas_hash=canvas,
    )


def interactive_answer(challenge: Mapping[str, Any], value: str) -> str:
    if challenge.get("kind") == "image":
        return "image-solved"
    return f"logic-{value}"


class ProofSolver:
    def __init__(self, answer_provider: Optional[AnswerProvider] = None,
                 clock: Callable[[], datetime] = _utcnow):
        self.answer_provider = answer_provider
        self._clock = clock

    async def solve(self, challenge: Mapping[str, Any], fingerprint: FingerprintDocument) -> SolvedProof:
        if challenge.get("type") == "interactive":
            return await self._solve_interactive(challenge)
        return await self._solve_pow(challenge, fingerprint)

    async def _solve_interactive(self, challenge: Mapping[str, Any]) -> SolvedProof:
        if self.answer_provider is None:
            raise RuntimeError("interactive challenge needs an answer provider")
        value = await self.answer_provider(challenge)
        return SolvedProof(proof=interactive_answer(challenge, value))

    async def _solve_pow(self, challenge: Mapping[str, Any], fingerprint: FingerprintDocument) -> SolvedProof:
        cap = effective_cap(challenge, fingerprint)
        bits = int(challenge.get("zeroBits", challenge.get("difficulty", 0)))
        timestamp = format_timestamp(self._clock())

        for i in range(cap):
            candidate = encode_candidate(build_candidate_fields(challenge, fingerprint, i, timestamp))
            digest = candidate_digest(candidate)
            if has_leading_zero_bits(digest, bits):
                log.debug("Solved %d-bit challenge at iteration %d", bits, i)
                return SolvedProof(proof=candidate, digest=digest.hex(), iteration=i)
            await asyncio.sleep(0)

        log.debug("No %d-bit solution within %d iterations", bits, cap)
        raise ProofIterationExhausted(attempts=cap)
