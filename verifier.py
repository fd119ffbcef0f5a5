"""
PowGate Verifier

Checks a submitted proof against the challenge it names. The server never
trusts a client-declared pass: the candidate is decoded, every bound field is
compared with the stored challenge, and the digest is recomputed from the
re-encoded fields before the leading-zero predicate is applied.
"""

import hmac
import logging
import time
from typing import Callable, Optional

from challenge import Challenge, ChallengeState, ChallengeStore, ChallengeType
from errors import GateError, InteractiveAnswerIncorrect, ProofInvalid
from proof import (
    DESKTOP_FIELD_COUNT,
    MOBILE_FIELD_COUNT,
    candidate_digest,
    decode_candidate,
    encode_candidate,
    has_leading_zero_bits,
    parse_timestamp,
)

log = logging.getLogger(__name__)


class Verifier:
    def __init__(self, store: ChallengeStore, timestamp_skew: int = 60,
                 clock: Callable[[], float] = time.time):
        self.store = store
        self.timestamp_skew = timestamp_skew
        self._clock = clock

    def verify(self, nonce: str, proof: str, client_ip: str,
               digest: Optional[str] = None) -> Challenge:
        """Consume ``nonce`` and check ``proof``. Raises a ``GateError`` on any failure.

        The nonce is consumed before any proof check, so a failed attempt can
        never be retried on the same challenge.
        """
        now = self._clock()
        challenge = self.store.consume(nonce, now)
        try:
            self._check(challenge, proof, client_ip, digest, now)
        except GateError:
            self.store.finish(nonce, ChallengeState.REJECTED)
            raise
        self.store.finish(nonce, ChallengeState.VERIFIED)
        log.debug("Nonce %s verified (%s, %d bits)", nonce, challenge.type.value, challenge.difficultyBits)
        return challenge

    def _check(self, challenge: Challenge, proof: str, client_ip: str,
               digest: Optional[str], now: float) -> None:
        if client_ip != challenge.clientBindingIP:
            raise ProofInvalid(f"requester {client_ip} is not bound IP {challenge.clientBindingIP}",
                               reason="ip_mismatch")
        if challenge.type is ChallengeType.INTERACTIVE:
            check_interactive(challenge, proof)
        else:
            check_proof_of_work(challenge, proof, digest, now, self.timestamp_skew)


def check_interactive(challenge: Challenge, answer: str) -> None:
    expected = challenge.expectedAnswer or ""
    if not hmac.compare_digest(answer.encode(), expected.encode()):
        raise InteractiveAnswerIncorrect("interactive answer does not match")


def check_proof_of_work(challenge: Challenge, candidate: str, digest: Optional[str],
                        now: float, skew: int) -> None:
    try:
        fields = decode_candidate(candidate)
    except ValueError as e:
        raise ProofInvalid(str(e), reason="malformed_proof") from e

    expected_count = MOBILE_FIELD_COUNT if challenge.canvasBinding is None else DESKTOP_FIELD_COUNT
    if len(fields.as_list()) != expected_count:
        raise ProofInvalid(f"expected {expected_count} fields", reason="malformed_proof")

    if (fields.nonce != challenge.nonce
            or fields.client_ip != challenge.clientBindingIP
            or fields.seed != challenge.seed):
        raise ProofInvalid("candidate fields do not match challenge", reason="component_mismatch")

    if challenge.canvasBinding is not None and not hmac.compare_digest(
            fields.canvas_hash.encode(), challenge.canvasBinding.encode()):
        raise ProofInvalid("canvas hash mismatch", reason="canvas_mismatch")

    if not 0 <= fields.iteration < challenge.iterationCap:
        raise ProofInvalid(f"iteration {fields.iteration} outside cap {challenge.iterationCap}",
                           reason="invalid_iteration")

    try:
        stamped = parse_timestamp(fields.timestamp).timestamp()
    except ValueError as e:
        raise ProofInvalid(f"bad timestamp {fields.timestamp!r}", reason="invalid_timestamp") from e
    if stamped < challenge.issuedAt - skew or stamped > now + skew:
        raise ProofInvalid(f"timestamp {fields.timestamp} outside window", reason="invalid_timestamp")

    recomputed = candidate_digest(encode_candidate(fields))
    if digest is not None and not hmac.compare_digest(digest.lower().encode(), recomputed.hex().encode()):
        raise ProofInvalid("digest does not match candidate", reason="invalid_hash")

    if not has_leading_zero_bits(recomputed, challenge.difficultyBits):
        raise ProofInvalid(f"digest lacks {challenge.difficultyBits} leading zero bits",
                           reason="insufficient_difficulty")
