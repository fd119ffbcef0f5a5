"""
HTTP surface tests for the gateway app
"""

import dataclasses
from datetime import datetime, timezone

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from starlette.requests import Request

from detection import parse_networks
from models import FingerprintDocument
from proof import decode_candidate
from server import client_ip, create_app
from tests.helpers import DESKTOP_FP, MOBILE_FP, find_solution


def solve(ch, canvas_hash=None):
    assert ch["type"] == "pow"
    _, candidate = find_solution(
        ch["nonce"], ch["clientIP"], ch["seed"], ch["zeroBits"], ch["iterations"],
        canvas_hash=canvas_hash if ch["canvasBound"] else None,
        start=_now(), max_seconds=30,
    )
    return candidate


def _now():
    return datetime.now(timezone.utc).replace(microsecond=0)


def origin_app():
    origin = FastAPI()

    @origin.get("/protected")
    async def protected():
        return {"secret": "content"}

    return origin


@pytest.fixture
def client(settings):
    with TestClient(create_app(settings, downstream=origin_app())) as c:
        yield c


@pytest.fixture
def proxied(settings):
    behind_proxy = dataclasses.replace(settings, trust_proxy_headers=True)
    with TestClient(create_app(behind_proxy, downstream=origin_app())) as c:
        yield c


def verify_desktop(client, headers=None):
    assert client.post("/fingerprint", json=DESKTOP_FP, headers=headers).json() == {"status": "ok"}
    ch = client.get("/challenge", headers=headers).json()
    proof = solve(ch, DESKTOP_FP["canvasHash"])
    return ch, client.post("/verify", json={"nonce": ch["nonce"], "proof": proof}, headers=headers)


class TestBasics:
    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok"}

    def test_challenge_requires_fingerprint(self, client):
        assert client.get("/challenge").status_code == 400

    def test_fingerprint_with_junk_fields_is_accepted(self, client):
        resp = client.post("/fingerprint", json={"canvasHash": 12, "screenWidth": "wide"})
        assert resp.status_code == 200

    def test_desktop_challenge_shape(self, client):
        client.post("/fingerprint", json=DESKTOP_FP)
        ch = client.get("/challenge").json()
        assert ch["type"] == "pow"
        assert ch["iterations"] == 5000
        assert ch["zeroBits"] == 4
        assert ch["canvasBound"] is True
        assert ch["encoding"] == "v1"
        assert ch["clientIP"] == "testclient"
        assert len(ch["nonce"]) >= 22

    def test_mobile_challenge(self, client):
        client.post("/fingerprint", json=MOBILE_FP)
        ch = client.get("/challenge/mobile").json()
        assert ch["iterations"] == 1000
        assert ch["canvasBound"] is False

    def test_mobile_route_refuses_desktop_fingerprint(self, client):
        client.post("/fingerprint", json=DESKTOP_FP)
        assert client.get("/challenge/mobile").status_code == 400
        assert client.get("/challenge").json()["iterations"] == 5000

    def test_mobile_fingerprint_gets_mobile_policy_on_either_route(self, client):
        client.post("/fingerprint", json=MOBILE_FP)
        ch = client.get("/challenge").json()
        assert ch["iterations"] == 1000
        assert ch["canvasBound"] is False

    def test_forwarded_ip_is_bound(self, proxied):
        headers = {"X-Forwarded-For": "81.2.69.160, 10.0.0.1"}
        proxied.post("/fingerprint", json=DESKTOP_FP, headers=headers)
        assert proxied.get("/challenge", headers=headers).json()["clientIP"] == "81.2.69.160"

    def test_forwarded_ip_ignored_by_default(self, client):
        headers = {"X-Forwarded-For": "81.2.69.160"}
        client.post("/fingerprint", json=DESKTOP_FP, headers=headers)
        assert client.get("/challenge", headers=headers).json()["clientIP"] == "testclient"

    def test_webdriver_gets_interactive(self, client):
        client.post("/fingerprint", json={**DESKTOP_FP, "webdriverFlag": True})
        ch = client.get("/challenge").json()
        assert ch["type"] == "interactive"
        assert ch["kind"] in ("image", "logic")
        assert "expectedAnswer" not in ch


class TestVerify:
    def test_success_grants_session(self, client):
        ch, resp = verify_desktop(client)
        assert resp.status_code == 200
        assert resp.json() == {"status": "success"}
        assert client.cookies.get("powgate_session")
        status = client.get("/session").json()
        assert status["riskTier"] == "low"
        assert status["trustScore"] == pytest.approx(0.8)

    def test_replay_is_generic_failure(self, client):
        ch, _ = verify_desktop(client)
        proof = solve(ch, DESKTOP_FP["canvasHash"])
        resp = client.post("/verify", json={"nonce": ch["nonce"], "proof": proof})
        assert resp.status_code == 403
        assert resp.json() == {"status": "failure"}

    def test_unknown_nonce_is_generic_failure(self, client):
        resp = client.post("/verify", json={"nonce": "missing", "proof": "x"})
        assert resp.status_code == 403
        assert resp.json() == {"status": "failure"}

    def test_wrong_canvas_fails(self, client):
        client.post("/fingerprint", json=DESKTOP_FP)
        ch = client.get("/challenge").json()
        proof = solve(ch, "not-my-canvas")
        assert decode_candidate(proof).canvas_hash == "not-my-canvas"
        resp = client.post("/verify", json={"nonce": ch["nonce"], "proof": proof})
        assert resp.status_code == 403

    def test_malformed_request_is_422(self, client):
        assert client.post("/verify", json={"nonce": ""}).status_code == 422

    def test_repeat_success_earns_invisible_pass(self, client):
        for _ in range(3):
            _, resp = verify_desktop(client)
            assert resp.status_code == 200
        client.post("/fingerprint", json=DESKTOP_FP)
        assert client.get("/challenge").json()["zeroBits"] == 0


class TestGate:
    def test_origin_requires_session(self, client):
        resp = client.get("/protected")
        assert resp.status_code == 401
        assert resp.json() == {"detail": "verification required"}

    def test_origin_after_verification(self, client):
        verify_desktop(client)
        assert client.get("/protected").json() == {"secret": "content"}

    def test_logout_closes_gate(self, client):
        verify_desktop(client)
        token = client.cookies.get("powgate_session")
        assert client.post("/logout").json() == {"status": "ok"}
        client.cookies.clear()
        resp = client.get("/protected", headers={"Cookie": f"powgate_session={token}"})
        assert resp.status_code == 401

    def test_cookie_is_bound_to_granting_ip(self, proxied):
        home = {"X-Forwarded-For": "81.2.69.160"}
        _, resp = verify_desktop(proxied, home)
        assert resp.status_code == 200
        token = proxied.cookies.get("powgate_session")
        assert proxied.get("/protected", headers=home).json() == {"secret": "content"}

        proxied.cookies.clear()
        elsewhere = {"X-Forwarded-For": "203.0.113.9", "Cookie": f"powgate_session={token}"}
        assert proxied.get("/protected", headers=elsewhere).status_code == 401
        assert proxied.get("/session", headers=elsewhere).status_code == 401
        at_home = {**home, "Cookie": f"powgate_session={token}"}
        assert proxied.get("/protected", headers=at_home).status_code == 200

    def test_forged_cookie_is_rejected(self, client):
        resp = client.get("/protected", headers={"Cookie": "powgate_session=eyJzaWQiOiAieCJ9"})
        assert resp.status_code == 401


class TestActivity:
    def test_requires_session(self, client):
        resp = client.post("/activity", json={"activity": "heartbeat", "samples": []})
        assert resp.status_code == 403

    def test_malformed_batch_is_422(self, client):
        verify_desktop(client)
        resp = client.post("/activity", json={"activity": "mousemove", "samples": [{"x": 1, "t": 0}]})
        assert resp.status_code == 422

    def test_natural_movement_raises_trust(self, client):
        verify_desktop(client)
        samples = [{"x": 0, "y": 0, "t": 0}, {"x": 10, "y": 3, "t": 16},
                   {"x": 25, "y": 11, "t": 30}, {"x": 31, "y": 30, "t": 52}]
        resp = client.post("/activity", json={"activity": "mousemove", "samples": samples})
        assert resp.json() == {"status": "ok"}
        status = client.get("/session").json()
        assert status["hasNaturalMouseMovement"] is True
        assert status["trustScore"] > 0.9

    def test_scripted_movement_revokes(self, client):
        verify_desktop(client)
        token = client.cookies.get("powgate_session")
        samples = [{"x": i * 10, "y": i * 10, "t": i * 10} for i in range(10)]
        for _ in range(3):
            assert client.post("/activity", json={"activity": "mousemove", "samples": samples}).status_code == 200
        client.cookies.clear()
        resp = client.get("/protected", headers={"Cookie": f"powgate_session={token}"})
        assert resp.status_code == 401


class TestClientIP:
    def make_request(self, headers, host="9.9.9.9"):
        scope = {
            "type": "http",
            "headers": [(k.lower().encode(), v.encode()) for k, v in headers.items()],
            "client": (host, 1234),
        }
        return Request(scope)

    def test_prefers_real_ip(self):
        req = self.make_request({"X-Real-IP": "1.1.1.1", "X-Forwarded-For": "2.2.2.2"})
        assert client_ip(req, trust_proxy_headers=True) == "1.1.1.1"

    def test_first_forwarded_entry(self):
        req = self.make_request({"X-Forwarded-For": "2.2.2.2, 3.3.3.3"})
        assert client_ip(req, trust_proxy_headers=True) == "2.2.2.2"

    def test_headers_untrusted_by_default(self):
        req = self.make_request({"X-Real-IP": "1.1.1.1"})
        assert client_ip(req) == "9.9.9.9"

    def test_headers_only_from_trusted_proxies(self):
        proxies = parse_networks(["9.9.9.0/24"])
        req = self.make_request({"X-Real-IP": "1.1.1.1"})
        assert client_ip(req, True, proxies) == "1.1.1.1"
        req = self.make_request({"X-Real-IP": "1.1.1.1"}, host="8.8.8.8")
        assert client_ip(req, True, proxies) == "8.8.8.8"


class TestAdmission:
    def test_hard_rate_limit_answers_429(self, settings):
        tight = dataclasses.replace(settings, hard_max_requests=3)
        with TestClient(create_app(tight)) as c:
            for _ in range(3):
                assert c.get("/health").status_code == 200
            resp = c.get("/health")
            assert resp.status_code == 429
            assert resp.headers["Retry-After"] == "60"

    def test_blocklisted_range_gets_interactive(self, settings):
        blocking = dataclasses.replace(settings, trust_proxy_headers=True, blocklist=["203.0.113.0/24"])
        with TestClient(create_app(blocking)) as c:
            headers = {"X-Forwarded-For": "203.0.113.7"}
            c.post("/fingerprint", json=DESKTOP_FP, headers=headers)
            assert c.get("/challenge", headers=headers).json()["type"] == "interactive"

    def test_allowlist_needs_ip_and_agent(self, settings):
        allowing = dataclasses.replace(
            settings, trust_proxy_headers=True,
            allowlist_ips=["10.0.0.1"], allowlist_user_agents=["UptimeMonitor"],
        )
        with TestClient(create_app(allowing)) as c:
            monitor = {"X-Real-IP": "10.0.0.1", "User-Agent": "UptimeMonitor/2.0"}
            c.post("/fingerprint", json=DESKTOP_FP, headers=monitor)
            assert c.get("/challenge", headers=monitor).json()["zeroBits"] == 0

            browser = {"X-Real-IP": "10.0.0.1"}
            c.post("/fingerprint", json=DESKTOP_FP, headers=browser)
            assert c.get("/challenge", headers=browser).json()["zeroBits"] == 4

    def test_allowlist_does_not_excuse_webdriver(self, settings):
        allowing = dataclasses.replace(
            settings, trust_proxy_headers=True,
            allowlist_ips=["10.0.0.1"], allowlist_user_agents=["UptimeMonitor"],
        )
        with TestClient(create_app(allowing)) as c:
            monitor = {"X-Real-IP": "10.0.0.1", "User-Agent": "UptimeMonitor/2.0"}
            c.post("/fingerprint", json={**DESKTOP_FP, "webdriverFlag": True}, headers=monitor)
            assert c.get("/challenge", headers=monitor).json()["type"] == "interactive"

    def test_spoofed_allowlisted_ip_is_ignored_without_proxy_trust(self, settings):
        allowing = dataclasses.replace(
            settings, allowlist_ips=["10.0.0.1"], allowlist_user_agents=["UptimeMonitor"],
        )
        with TestClient(create_app(allowing)) as c:
            monitor = {"X-Real-IP": "10.0.0.1", "User-Agent": "UptimeMonitor/2.0"}
            c.post("/fingerprint", json=DESKTOP_FP, headers=monitor)
            ch = c.get("/challenge", headers=monitor).json()
            assert ch["clientIP"] == "testclient"
            assert ch["zeroBits"] != 0


def test_issue_failure_is_503(settings):
    app = create_app(settings)
    app.state.gateway.issuer._nonce_factory = lambda: "short"
    with TestClient(app) as c:
        c.post("/fingerprint", json=DESKTOP_FP)
        assert c.get("/challenge").status_code == 503


def test_gateway_sweep_prunes_request_history(settings, clock):
    gateway = create_app(settings).state.gateway
    gateway.limiter._clock = clock
    gateway.fingerprints._clock = clock
    fp = FingerprintDocument.model_validate(DESKTOP_FP)
    for n in range(20):
        ip = f"198.51.100.{n}"
        gateway.fingerprints.record(fp, ip)
        gateway.limiter.check(f"hard:{ip}", 60, 100)
    clock.advance(settings.history_ttl + 1)
    removed = gateway.sweep()
    assert removed["rates"] == 20
    assert len(gateway.limiter) == 0
    assert not gateway.fingerprints.latest
    assert not gateway.fingerprints.ip_fingerprints
    assert not gateway.fingerprints.fingerprint_ips
