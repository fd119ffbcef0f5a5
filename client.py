"""
PowGate gateway client

Drives the one-shot verification flow against a gateway over httpx:
fingerprint, challenge, solve, verify. Afterwards ``monitor()`` wires the
telemetry pipeline to ``POST /activity`` using the granted session cookie.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from errors import ProofIterationExhausted, VerificationFailed
from fingerprint import FingerprintCollector, BrowserEnvironment
from models import FingerprintDocument, TelemetryBatch
from monitor import TelemetryMonitor
from solver import AnswerProvider, ProofSolver

log = logging.getLogger(__name__)

FAILURE_MESSAGE = "verification failed, refresh to retry"


class InitToken:
    """Caller-owned guard that lets a gateway flow run exactly once."""

    def __init__(self):
        self._claimed = False

    @property
    def claimed(self) -> bool:
        return self._claimed

    def claim(self) -> None:
        if self._claimed:
            raise RuntimeError("gateway initialization already ran for this token")
        self._claimed = True


class GatewayClient:
    def __init__(self, base_url: str, environment: BrowserEnvironment,
                 http: Optional[httpx.AsyncClient] = None,
                 collector: Optional[FingerprintCollector] = None,
                 answer_provider: Optional[AnswerProvider] = None,
                 max_attempts: int = 3, timeout: float = 10.0):
        self.environment = environment
        self.http = http or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self._owns_http = http is None
        self.collector = collector or FingerprintCollector()
        self.solver = ProofSolver(answer_provider=answer_provider)
        self.max_attempts = max_attempts
        self.document: Optional[FingerprintDocument] = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http:
            await self.http.aclose()

    async def run(self, token: InitToken) -> Dict[str, Any]:
        """Run the flow once. Returns the verify response on success."""
        token.claim()
        # collection is local and happens before any network call
        result = self.collector.collect(self.environment)
        self.document = result.document
        if result.degraded:
            log.debug("Degraded signals: %s", ", ".join(result.degraded_signals))

        try:
            resp = await self.http.post("/fingerprint", json=self.document.model_dump())
            resp.raise_for_status()
            for attempt in range(1, self.max_attempts + 1):
                challenge = await self._fetch_challenge()
                try:
                    solved = await self.solver.solve(challenge, self.document)
                except ProofIterationExhausted as e:
                    log.info("Attempt %d/%d exhausted %d iterations", attempt, self.max_attempts, e.attempts)
                    continue
                resp = await self.http.post("/verify", json=solved.payload(challenge["nonce"]))
                body = resp.json() if "json" in resp.headers.get("content-type", "") else {}
                if resp.status_code == 200 and body.get("status") == "success":
                    log.info("Verified after %d attempt(s)", attempt)
                    return body
                log.warning("Gateway rejected proof (HTTP %d)", resp.status_code)
                break
        except httpx.HTTPError as e:
            log.warning("Gateway request failed: %r", e)
            raise VerificationFailed(FAILURE_MESSAGE) from e
        raise VerificationFailed(FAILURE_MESSAGE)

    async def _fetch_challenge(self) -> Dict[str, Any]:
        path = "/challenge/mobile" if self.document.isMobile else "/challenge"
        resp = await self.http.get(path)
        resp.raise_for_status()
        return resp.json()

    async def send_activity(self, batch: TelemetryBatch) -> None:
        resp = await self.http.post("/activity", json=batch.model_dump(mode="json", exclude_none=True))
        resp.raise_for_status()

    def monitor(self, **opts) -> TelemetryMonitor:
        is_mobile = bool(self.document and self.document.isMobile)
        return TelemetryMonitor(self.send_activity, is_mobile=is_mobile, **opts)
