"""
PowGate Server - Python/FastAPI Implementation

Run: uvicorn server:app --host 0.0.0.0 --port 3000
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from challenge import ChallengeIssuer, ChallengeStore
from detection import FingerprintStore, RateLimiter, RiskClassifier, ip_in_networks, parse_networks
from errors import ChallengeIssueError, GateError, UnknownSession
from models import FingerprintDocument, TelemetryBatch, VerifyRequest
from sessions import (
    INITIAL_TRUST,
    Session,
    SessionStore,
    read_session_token,
    sign_session_token,
    summarize_fingerprint,
    token_matches_ip,
)
from settings import Settings, load_settings
from verifier import Verifier

log = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s.%(funcName)s (%(lineno)d)] %(message)s"

GATEWAY_PATHS = {
    "/health",
    "/fingerprint",
    "/challenge",
    "/challenge/mobile",
    "/verify",
    "/activity",
    "/session",
    "/logout",
    "/docs",
    "/openapi.json",
}


def client_ip(request: Request, trust_proxy_headers: bool = False, trusted_proxies=()) -> str:
    """Requester address. Proxy headers count only when trusted, and, when
    ``trusted_proxies`` is set, only if the peer itself is one of them."""
    peer = request.client.host if request.client else "unknown"
    if not trust_proxy_headers:
        return peer
    if trusted_proxies and not ip_in_networks(peer, trusted_proxies):
        return peer
    return (
        request.headers.get("X-Real-IP")
        or request.headers.get("X-Forwarded-For", "").split(",")[0].strip()
        or peer
    )


# =============================================================================
# Gateway state
# =============================================================================

class Gateway:
    """Stores and services shared by the routes of one app instance."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.trusted_proxies = parse_networks(settings.trusted_proxies)
        self.limiter = RateLimiter()
        self.fingerprints = FingerprintStore(ttl=settings.challenge_ttl, history_ttl=settings.history_ttl)
        self.classifier = RiskClassifier(
            self.fingerprints, self.limiter,
            allowlist_ips=settings.allowlist_ips,
            allowlist_user_agents=settings.allowlist_user_agents,
            blocklist=settings.blocklist,
            rate_window=settings.rate_window,
            rate_max_requests=settings.rate_max_requests,
        )
        self.challenges = ChallengeStore()
        self.issuer = ChallengeIssuer(settings, self.challenges, self.limiter)
        self.verifier = Verifier(self.challenges, timestamp_skew=settings.timestamp_skew)
        self.sessions = SessionStore(
            ttl=settings.session_ttl,
            trust_threshold=settings.trust_threshold,
            half_life=settings.trust_half_life,
            window_size=settings.window_size,
        )

    def ip(self, request: Request) -> str:
        return client_ip(request, self.settings.trust_proxy_headers, self.trusted_proxies)

    def session_for(self, request: Request) -> Optional[Session]:
        """Live session for the request's cookie, bound to the requesting IP."""
        token = request.cookies.get(self.settings.cookie_name)
        if not token:
            return None
        claims = read_session_token(self.settings.secret_key, token, self.settings.session_ttl)
        if not claims:
            return None
        ip = self.ip(request)
        if not token_matches_ip(claims, ip):
            log.warning("Session cookie presented from %s, not the address it was granted to", ip)
            return None
        session = self.sessions.get(claims["sid"])
        if session is None or session.clientIP != ip:
            return None
        return session

    def sweep(self) -> Dict[str, int]:
        return {
            "challenges": self.challenges.sweep(),
            "fingerprints": self.fingerprints.sweep(),
            "rates": self.limiter.sweep(),
            "sessions": self.sessions.sweep(),
        }


async def _periodic_sweep(gateway: Gateway):
    while True:
        await asyncio.sleep(gateway.settings.sweep_interval)
        try:
            removed = gateway.sweep()
            if any(removed.values()):
                log.debug("Periodic sweep removed %s", removed)
        except Exception:
            log.exception("Error in periodic sweep task")


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Hard per-IP request ceiling, enforced ahead of the session gate."""

    async def dispatch(self, request: Request, call_next):
        if request.method == "OPTIONS":
            return await call_next(request)
        gateway: Gateway = request.app.state.gateway
        ip = gateway.ip(request)
        window = gateway.settings.rate_window
        exceeded, count = gateway.limiter.check(f"hard:{ip}", window, gateway.settings.hard_max_requests)
        if exceeded:
            log.warning("Rate limit exceeded for %s (%d requests in %ds)", ip, count, window)
            return JSONResponse({"detail": "rate limit exceeded"}, status_code=429,
                                headers={"Retry-After": str(window)})
        return await call_next(request)


class SessionGateMiddleware(BaseHTTPMiddleware):
    """Admit traffic outside the gateway routes only with a live session."""

    async def dispatch(self, request: Request, call_next):
        if request.method == "OPTIONS" or request.url.path in GATEWAY_PATHS:
            return await call_next(request)
        gateway: Gateway = request.app.state.gateway
        session = gateway.session_for(request)
        if session is None:
            return JSONResponse({"detail": "verification required"}, status_code=401)
        request.state.session = session
        return await call_next(request)


# =============================================================================
# App
# =============================================================================

def create_app(settings: Optional[Settings] = None, downstream: Any = None) -> FastAPI:
    """Build the gateway app. ``downstream`` is an ASGI app served behind the session gate."""
    settings = settings or load_settings()
    gateway = Gateway(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        sweeper = asyncio.create_task(_periodic_sweep(gateway))
        log.info("Started periodic sweep every %ds", settings.sweep_interval)
        try:
            yield
        finally:
            sweeper.cancel()
            try:
                await sweeper
            except asyncio.CancelledError:
                pass

    app = FastAPI(title="PowGate", version="1.0.0", lifespan=lifespan)
    app.state.gateway = gateway

    app.add_middleware(SessionGateMiddleware)
    app.add_middleware(RateLimitMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.post("/fingerprint")
    async def fingerprint(doc: FingerprintDocument, request: Request):
        ip = gateway.ip(request)
        key = gateway.fingerprints.record(doc, ip)
        log.debug("Fingerprint %s recorded for %s", key, ip)
        return {"status": "ok"}

    def issue(request: Request, mobile_route: bool = False):
        ip = gateway.ip(request)
        doc = gateway.fingerprints.get(ip)
        if doc is None:
            raise HTTPException(status_code=400, detail="fingerprint required")
        if mobile_route and not doc.isMobile:
            log.warning("Mobile challenge requested for desktop fingerprint from %s", ip)
            raise HTTPException(status_code=400, detail="mobile fingerprint required")
        headers = {k.lower(): v for k, v in request.headers.items()}
        assessment = gateway.classifier.classify(
            doc, ip, request.headers.get("User-Agent", ""), headers,
            trusted_history=settings.trusted_history,
        )
        try:
            challenge = gateway.issuer.issue(doc, assessment, ip)
        except ChallengeIssueError as e:
            log.error("Challenge issuance failed for %s: %s", ip, e)
            raise HTTPException(status_code=503, detail="challenge unavailable") from e
        return challenge.public()

    @app.get("/challenge")
    async def challenge(request: Request):
        return issue(request)

    @app.get("/challenge/mobile")
    async def challenge_mobile(request: Request):
        return issue(request, mobile_route=True)

    @app.post("/verify")
    async def verify(req: VerifyRequest, request: Request):
        ip = gateway.ip(request)
        try:
            challenge = gateway.verifier.verify(req.nonce, req.proof, ip, req.digest)
        except GateError as e:
            log.warning("Verification failed for %s: %s (%s)", ip, e.reason, e)
            return JSONResponse({"status": "failure"}, status_code=403)

        gateway.fingerprints.record_success(challenge.fingerprintKey)
        summary = summarize_fingerprint(challenge, gateway.fingerprints.get(ip))
        session = gateway.sessions.create(ip, summary, INITIAL_TRUST[challenge.riskTier])

        response = JSONResponse({"status": "success"})
        response.set_cookie(
            settings.cookie_name,
            sign_session_token(settings.secret_key, session.sessionId, ip),
            max_age=settings.session_ttl,
            httponly=True,
            samesite="lax",
            secure=request.url.scheme == "https",
        )
        return response

    @app.post("/activity")
    async def activity(batch: TelemetryBatch, request: Request):
        session = gateway.session_for(request)
        if session is None:
            return JSONResponse({"detail": "session required"}, status_code=403)
        try:
            session = await gateway.sessions.ingest(session.sessionId, batch)
        except UnknownSession as e:
            log.info("Telemetry for dead session: %s", e)
            return JSONResponse({"detail": "session required"}, status_code=403)

        response = JSONResponse({"status": "ok"})
        if session.revoked:
            log.warning("Session %s revoked for %s", session.sessionId, gateway.ip(request))
            response.delete_cookie(settings.cookie_name, path="/")
        return response

    @app.get("/session")
    async def session_status(request: Request):
        session = gateway.session_for(request)
        if session is None:
            return JSONResponse({"detail": "verification required"}, status_code=401)
        status = session.status()
        status["trustScore"] = round(gateway.sessions.current_trust(session), 3)
        return status

    @app.post("/logout")
    async def logout(request: Request):
        session = gateway.session_for(request)
        if session is not None:
            gateway.sessions.destroy(session.sessionId, "logout")
        response = JSONResponse({"status": "ok"})
        response.delete_cookie(settings.cookie_name, path="/")
        return response

    if downstream is not None:
        app.mount("/", downstream)

    return app


app = create_app()


def main():
    settings = load_settings()
    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)
    import uvicorn
    port = int(os.getenv("PORT", 3000))
    uvicorn.run(create_app(settings), host=os.getenv("HOST", "0.0.0.0"), port=port)


if __name__ == "__main__":
    main()
