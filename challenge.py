"""
PowGate Challenge Issuer and nonce store.

A challenge is single-use: it leaves ``ISSUED`` exactly once, through the
store's atomic ``consume``, and every later lookup sees a terminal state.
"""

import logging
import math
import secrets
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional

from detection import RateLimiter, RiskAssessment, RiskTier
from errors import AlreadyConsumed, ChallengeExpired, ChallengeIssueError, UnknownNonce
from models import FingerprintDocument
from proof import ENCODING_VERSION
from settings import Settings

log = logging.getLogger(__name__)

NONCE_BYTES = 16  # 128 bits
SEED_BYTES = 8
MAX_NONCE_ATTEMPTS = 5
CLEANUP_EVERY = 10

IMAGE_ANSWER = "image-solved"
LOGIC_PREFIX = "logic-"


class ChallengeType(str, Enum):
    PROOF_OF_WORK = "pow"
    INTERACTIVE = "interactive"


class InteractiveKind(str, Enum):
    IMAGE = "image"
    LOGIC = "logic"


class ChallengeState(str, Enum):
    ISSUED = "issued"
    VERIFYING = "verifying"
    VERIFIED = "verified"
    EXPIRED = "expired"
    REJECTED = "rejected"


@dataclass
class Challenge:
    nonce: str
    seed: str
    iterationCap: int
    difficultyBits: int
    type: ChallengeType
    issuedAt: float
    expiresAt: float
    clientBindingIP: str
    isMobile: bool = False
    canvasBinding: Optional[str] = None
    interactiveKind: Optional[InteractiveKind] = None
    prompt: Optional[str] = None
    expectedAnswer: Optional[str] = field(default=None, repr=False)
    riskTier: RiskTier = RiskTier.LOW
    riskScore: float = 0.0
    fingerprintKey: str = ""
    state: ChallengeState = ChallengeState.ISSUED

    def expired(self, now: float) -> bool:
        return now > self.expiresAt

    def public(self) -> Dict[str, Any]:
        """Client view; never includes the expected interactive answer."""
        data = {
            "nonce": self.nonce,
            "iterations": self.iterationCap,
            "seed": self.seed,
            "clientIP": self.clientBindingIP,
            "difficulty": self.difficultyBits,
            "zeroBits": self.difficultyBits,
            "type": self.type.value,
            "encoding": ENCODING_VERSION,
            "canvasBound": self.canvasBinding is not None,
            "expiresAt": int(self.expiresAt * 1000),
        }
        if self.type is ChallengeType.INTERACTIVE:
            data["kind"] = self.interactiveKind.value
            if self.prompt:
                data["prompt"] = self.prompt
        return data


CONSUMED_STATES = {ChallengeState.VERIFYING, ChallengeState.VERIFIED, ChallengeState.REJECTED}


def achievable_bits(cap: int) -> int:
    """Difficulty whose expected work (2**bits) stays within a quarter of ``cap``."""
    if cap < 4:
        return 0
    return max(0, int(math.floor(math.log2(cap))) - 2)


class ChallengeStore:
    """Challenges keyed by nonce, with TTL eviction.

    Consumed nonces stay as tombstones until their expiry so replays are
    reported as already consumed rather than unknown.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._lock = threading.Lock()
        self._challenges: Dict[str, Challenge] = {}
        self._clock = clock

    def __len__(self) -> int:
        with self._lock:
            return len(self._challenges)

    def __contains__(self, nonce: str) -> bool:
        with self._lock:
            return nonce in self._challenges

    def put(self, challenge: Challenge) -> bool:
        """Store a fresh challenge; False if the nonce is already taken."""
        with self._lock:
            if challenge.nonce in self._challenges:
                return False
            self._challenges[challenge.nonce] = challenge
            return True

    def peek(self, nonce: str) -> Optional[Challenge]:
        with self._lock:
            return self._challenges.get(nonce)

    def consume(self, nonce: str, now: Optional[float] = None) -> Challenge:
        """Atomically move an issued challenge to VERIFYING and return it."""
        now = self._clock() if now is None else now
        with self._lock:
            challenge = self._challenges.get(nonce)
            if challenge is None:
                raise UnknownNonce(f"no challenge for nonce {nonce!r}")
            if challenge.state is ChallengeState.EXPIRED or (
                    challenge.state is ChallengeState.ISSUED and challenge.expired(now)):
                challenge.state = ChallengeState.EXPIRED
                raise ChallengeExpired(f"nonce {nonce!r} expired")
            if challenge.state in CONSUMED_STATES:
                raise AlreadyConsumed(f"nonce {nonce!r} is {challenge.state.value}")
            challenge.state = ChallengeState.VERIFYING
            return challenge

    def finish(self, nonce: str, state: ChallengeState) -> None:
        with self._lock:
            challenge = self._challenges.get(nonce)
            if challenge is not None:
                challenge.state = state

    def sweep(self, now: Optional[float] = None) -> int:
        now = self._clock() if now is None else now
        with self._lock:
            expired = [n for n, c in self._challenges.items() if c.expired(now)]
            for n in expired:
                del self._challenges[n]
        if expired:
            log.debug("Evicted %d expired challenges", len(expired))
        return len(expired)


def generate_nonce() -> str:
    return secrets.token_urlsafe(NONCE_BYTES)


def generate_seed() -> str:
    return secrets.token_urlsafe(SEED_BYTES)


class ChallengeIssuer:
    def __init__(self, settings: Settings, store: ChallengeStore,
                 limiter: Optional[RateLimiter] = None,
                 clock: Callable[[], float] = time.time,
                 nonce_factory: Callable[[], str] = generate_nonce):
        self.settings = settings
        self.store = store
        self.limiter = limiter or RateLimiter(clock)
        self._clock = clock
        self._nonce_factory = nonce_factory
        self._issued = 0

    def _allocate_nonce(self) -> str:
        for _ in range(MAX_NONCE_ATTEMPTS):
            try:
                nonce = self._nonce_factory()
            except (OSError, NotImplementedError) as e:
                raise ChallengeIssueError(f"entropy source failed: {e}") from e
            if nonce and len(nonce) >= 22 and nonce not in self.store:
                return nonce
            log.warning("Discarding unusable or colliding nonce")
        raise ChallengeIssueError("could not allocate a unique nonce")

    def _pow_parameters(self, mobile: bool, assessment: RiskAssessment, ip: str):
        s = self.settings
        if mobile:
            cap = s.mobile_iterations
            bits = min(s.mobile_difficulty, achievable_bits(cap))
        else:
            cap = s.desktop_iterations
            bits = s.desktop_difficulty

        if assessment.trusted:
            return cap, 0

        if assessment.tier is RiskTier.ELEVATED:
            bits += s.elevated_extra_bits
        elif assessment.tier is RiskTier.HIGH:
            bits += s.high_extra_bits

        _, count = self.limiter.check(f"pow:{ip}", 60, 20)
        if count > 10:
            bits += 1
        return cap, bits

    def issue(self, fingerprint: FingerprintDocument, assessment: RiskAssessment,
              ip: str) -> Challenge:
        """Issue a challenge for ``fingerprint``. The device class comes only
        from the stored document, never from the route the client picked."""
        mobile = fingerprint.isMobile
        nonce = self._allocate_nonce()
        now = self._clock()

        challenge = Challenge(
            nonce=nonce,
            seed=generate_seed(),
            iterationCap=0,
            difficultyBits=0,
            type=ChallengeType.PROOF_OF_WORK,
            issuedAt=now,
            expiresAt=now + self.settings.challenge_ttl,
            clientBindingIP=ip,
            isMobile=mobile,
            riskTier=assessment.tier,
            riskScore=assessment.score,
            fingerprintKey=assessment.fingerprint_key,
        )

        if assessment.tier is RiskTier.HIGH and self.settings.interactive_for_high_risk:
            self._make_interactive(challenge)
        else:
            challenge.iterationCap, challenge.difficultyBits = self._pow_parameters(mobile, assessment, ip)
            if not mobile:
                challenge.canvasBinding = fingerprint.canvasHash

        if not self.store.put(challenge):
            raise ChallengeIssueError("nonce collision on store")

        self._issued += 1
        if self._issued % CLEANUP_EVERY == 0:
            self.store.sweep(now)

        log.info("Issued %s challenge for %s: tier=%s mobile=%s difficulty=%d cap=%d",
                 challenge.type.value, ip, assessment.tier.value, mobile,
                 challenge.difficultyBits, challenge.iterationCap)
        return challenge

    def _make_interactive(self, challenge: Challenge) -> None:
        """Turn ``challenge`` into an interactive one.

        The image kind expects the fixed ``IMAGE_ANSWER`` token that the image
        widget reports once the user completes it. The gateway does not render
        or grade images, so that kind alone does not stop a client that knows
        the token; it still costs a fresh single-use nonce per attempt. The
        logic kind carries a per-challenge answer.
        """
        challenge.type = ChallengeType.INTERACTIVE
        challenge.interactiveKind = secrets.choice(list(InteractiveKind))
        if challenge.interactiveKind is InteractiveKind.IMAGE:
            challenge.expectedAnswer = IMAGE_ANSWER
        else:
            a, b = secrets.randbelow(9) + 1, secrets.randbelow(9) + 1
            challenge.prompt = f"What is {a} + {b}?"
            challenge.expectedAnswer = f"{LOGIC_PREFIX}{a + b}"
