"""
PowGate sessions and continuous trust scoring.

A session is created by a successful verification and is afterwards mutated
only by telemetry ingestion. Ingestion for one session is serialized by that
session's lock; different sessions never share a lock.
"""

import asyncio
import base64
import hashlib
import hmac
import json
import logging
import secrets
import statistics
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional

from challenge import Challenge
from detection import RiskTier
from errors import UnknownSession
from models import ActivityKind, FingerprintDocument, Sample, TelemetryBatch

log = logging.getLogger(__name__)

INITIAL_TRUST = {
    RiskTier.LOW: 0.8,
    RiskTier.ELEVATED: 0.6,
    RiskTier.HIGH: 0.5,
}

NATURAL_MOUSE_BONUS = 0.15
IMPLAUSIBLE_MOUSE_PENALTY = 0.25
FIRST_SCROLL_BONUS = 0.05
MOTION_BONUS = 0.10
STATIC_MOTION_PENALTY = 0.25


@dataclass
class Session:
    sessionId: str
    grantedAt: float
    clientIP: str
    fingerprintSummary: Dict[str, Any]
    trustScore: float
    expiresAt: float
    telemetryWindow: Deque[Dict[str, Any]] = field(default_factory=deque)
    lastActivityAt: float = 0.0
    lastScoredAt: float = 0.0
    hasScrolled: bool = False
    hasNaturalMouseMovement: bool = False
    revoked: bool = False

    @property
    def is_mobile(self) -> bool:
        return bool(self.fingerprintSummary.get("isMobile"))

    def status(self) -> Dict[str, Any]:
        return {
            "sessionId": self.sessionId,
            "grantedAt": int(self.grantedAt),
            "trustScore": round(self.trustScore, 3),
            "riskTier": self.fingerprintSummary.get("riskTier"),
            "samples": len(self.telemetryWindow),
            "hasScrolled": self.hasScrolled,
            "hasNaturalMouseMovement": self.hasNaturalMouseMovement,
        }


def summarize_fingerprint(challenge: Challenge, fp: Optional[FingerprintDocument] = None) -> Dict[str, Any]:
    """Risk inputs retained with the session; the raw document is dropped."""
    summary = {
        "riskTier": challenge.riskTier.value,
        "riskScore": round(challenge.riskScore, 3),
        "isMobile": challenge.isMobile,
        "fingerprintKey": challenge.fingerprintKey,
    }
    if fp is not None:
        summary.update({
            "platform": fp.platform,
            "pluginCount": len(fp.pluginNames),
            "webdriverFlag": fp.webdriverFlag,
            "automationMarker": fp.automationMarker,
            "canvasDigest": hashlib.sha256(fp.canvasHash.encode()).hexdigest()[:16],
        })
    return summary


# =============================================================================
# Behavioral analysis
# =============================================================================

def is_collinear(samples: List[Sample]) -> bool:
    """True when every point lies on the line through the first two moves."""
    if len(samples) < 3:
        return True
    dx1 = samples[1].x - samples[0].x
    dy1 = samples[1].y - samples[0].y
    for prev, cur in zip(samples[1:], samples[2:]):
        dx2 = cur.x - prev.x
        dy2 = cur.y - prev.y
        if dx1 * dy2 != dx2 * dy1:
            return False
    return True


def velocity_variance(samples: List[Sample]) -> float:
    speeds = []
    for prev, cur in zip(samples, samples[1:]):
        dt = cur.t - prev.t
        if dt <= 0:
            continue
        dist = ((cur.x - prev.x) ** 2 + (cur.y - prev.y) ** 2) ** 0.5
        speeds.append(dist / dt)
    if len(speeds) < 2:
        return 0.0
    return statistics.pvariance(speeds)


def motion_variance(samples: List[Sample]) -> float:
    if len(samples) < 2:
        return 0.0
    return sum(statistics.pvariance([getattr(s, axis) for s in samples]) for axis in ("x", "y", "z"))


def score_delta(session: Session, batch: TelemetryBatch) -> float:
    kind = batch.activity
    if kind is ActivityKind.MOUSEMOVE:
        if len(batch.samples) < 3:
            return 0.0
        natural = not is_collinear(batch.samples) and velocity_variance(batch.samples) > 0
        if natural:
            session.hasNaturalMouseMovement = True
            return NATURAL_MOUSE_BONUS
        return 0.0 if session.is_mobile else -IMPLAUSIBLE_MOUSE_PENALTY
    if kind is ActivityKind.SCROLL:
        if session.hasScrolled:
            return 0.0
        session.hasScrolled = True
        return FIRST_SCROLL_BONUS
    if kind is ActivityKind.DEVICEMOTION:
        if len(batch.samples) < 2:
            return 0.0
        return MOTION_BONUS if motion_variance(batch.samples) > 0 else -STATIC_MOTION_PENALTY
    return 0.0


def decay(score: float, elapsed: float, half_life: float) -> float:
    if elapsed <= 0:
        return score
    return score * 0.5 ** (elapsed / half_life)


# =============================================================================
# Session tokens
# =============================================================================

def hash_ip(ip: str) -> str:
    return hashlib.sha256(ip.encode()).hexdigest()[:8]


def sign_session_token(secret: str, session_id: str, ip: str, now: Optional[float] = None) -> str:
    data = {
        "sid": session_id,
        "ts": int(time.time() if now is None else now),
        "ip_hash": hash_ip(ip),
    }
    payload = json.dumps(data, sort_keys=True)
    sig = hmac.new(secret.encode(), payload.encode(), hashlib.sha256).hexdigest()
    data["sig"] = sig
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode()


def read_session_token(secret: str, token: str, max_age: int,
                       now: Optional[float] = None) -> Optional[Dict[str, Any]]:
    """Return the signed claims (``sid``, ``ts``, ``ip_hash``) of a valid token, else None."""
    try:
        decoded = json.loads(base64.urlsafe_b64decode(token.encode()).decode())
    except (ValueError, UnicodeDecodeError):
        return None
    if not isinstance(decoded, dict):
        return None

    ts = decoded.get("ts")
    if not isinstance(ts, int):
        return None
    now = time.time() if now is None else now
    if now - ts > max_age:
        return None

    sig = str(decoded.pop("sig", ""))
    payload = json.dumps(decoded, sort_keys=True)
    expected_sig = hmac.new(secret.encode(), payload.encode(), hashlib.sha256).hexdigest()
    if not hmac.compare_digest(sig.encode(), expected_sig.encode()):
        return None
    if not isinstance(decoded.get("sid"), str) or not isinstance(decoded.get("ip_hash"), str):
        return None
    return decoded


def token_matches_ip(claims: Dict[str, Any], ip: str) -> bool:
    return hmac.compare_digest(str(claims.get("ip_hash", "")).encode(), hash_ip(ip).encode())


# =============================================================================
# Store
# =============================================================================

class SessionStore:
    def __init__(self, ttl: int = 900, trust_threshold: float = 0.2,
                 half_life: float = 600, window_size: int = 200,
                 clock: Callable[[], float] = time.time):
        self.ttl = ttl
        self.trust_threshold = trust_threshold
        self.half_life = half_life
        self.window_size = window_size
        self._clock = clock
        self._sessions: Dict[str, Session] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def create(self, ip: str, summary: Dict[str, Any], initial_trust: float) -> Session:
        now = self._clock()
        session = Session(
            sessionId=secrets.token_urlsafe(18),
            grantedAt=now,
            clientIP=ip,
            fingerprintSummary=summary,
            trustScore=initial_trust,
            expiresAt=now + self.ttl,
            telemetryWindow=deque(maxlen=self.window_size),
            lastActivityAt=now,
            lastScoredAt=now,
        )
        self._sessions[session.sessionId] = session
        self._locks[session.sessionId] = asyncio.Lock()
        log.info("Session %s granted to %s (trust %.2f)", session.sessionId, ip, initial_trust)
        return session

    def get(self, session_id: str) -> Optional[Session]:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        if self._clock() > session.expiresAt:
            self.destroy(session_id, "expired")
            return None
        return session

    def destroy(self, session_id: str, why: str = "logout") -> bool:
        session = self._sessions.pop(session_id, None)
        self._locks.pop(session_id, None)
        if session is None:
            return False
        log.info("Session %s destroyed (%s)", session_id, why)
        return True

    def current_trust(self, session: Session) -> float:
        return decay(session.trustScore, self._clock() - session.lastScoredAt, self.half_life)

    def _revoke(self, session: Session) -> None:
        session.revoked = True
        self.destroy(session.sessionId, f"revoked, trust {session.trustScore:.3f}")

    async def ingest(self, session_id: str, batch: TelemetryBatch) -> Session:
        session = self.get(session_id)
        if session is None:
            raise UnknownSession(f"no session {session_id!r}")
        lock = self._locks[session_id]
        async with lock:
            if session.revoked:
                raise UnknownSession(f"session {session_id!r} revoked")
            now = self._clock()
            score = decay(session.trustScore, now - session.lastScoredAt, self.half_life)
            score += score_delta(session, batch)
            session.trustScore = min(1.0, max(0.0, score))
            session.lastScoredAt = now
            if batch.activity is not ActivityKind.HEARTBEAT:
                session.lastActivityAt = now
            for sample in batch.samples:
                entry = sample.model_dump(exclude_none=True)
                entry["kind"] = batch.activity.value
                session.telemetryWindow.append(entry)
            log.debug("Session %s %s batch (%d samples): trust %.3f",
                      session_id, batch.activity.value, len(batch.samples), session.trustScore)
            if session.trustScore < self.trust_threshold:
                self._revoke(session)
        return session

    def sweep(self, now: Optional[float] = None) -> int:
        """Drop expired sessions and revoke those whose trust decayed away in silence."""
        now = self._clock() if now is None else now
        removed = 0
        for sid, s in list(self._sessions.items()):
            if now > s.expiresAt:
                self.destroy(sid, "expired")
                removed += 1
            elif decay(s.trustScore, now - s.lastScoredAt, self.half_life) < self.trust_threshold:
                self._revoke(s)
                removed += 1
        return removed
