"""
PowGate Risk Classifier

Fuses a fingerprint document and request metadata into a coarse risk tier.
Detectors emit weighted detections; hard rules lift the tier directly.
"""

import hashlib
import ipaddress
import logging
import re
import time
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from models import FingerprintDocument, NO_WEBGL, UNKNOWN

log = logging.getLogger(__name__)


# =============================================================================
# Threat Categories
# =============================================================================

class ThreatCategory(str, Enum):
    HEADLESS = "headless"
    AUTOMATION = "automation"
    BOT = "bot"
    FINGERPRINT = "fingerprint"
    DATACENTER = "datacenter"
    RATE_LIMIT = "rate_limit"


class RiskTier(str, Enum):
    LOW = "low"
    ELEVATED = "elevated"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _TIER_RANK[self]


_TIER_RANK = {RiskTier.LOW: 0, RiskTier.ELEVATED: 1, RiskTier.HIGH: 2}


@dataclass
class Detection:
    category: ThreatCategory
    score: float
    confidence: float
    reason: str
    floor: Optional[RiskTier] = None
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RiskAssessment:
    tier: RiskTier
    score: float
    detections: List[Detection]
    trusted: bool = False
    fingerprint_key: str = ""

    def reasons(self) -> List[str]:
        return [d.reason for d in self.detections]


WEIGHTS = {
    ThreatCategory.HEADLESS: 0.30,
    ThreatCategory.AUTOMATION: 0.20,
    ThreatCategory.BOT: 0.15,
    ThreatCategory.FINGERPRINT: 0.15,
    ThreatCategory.DATACENTER: 0.10,
    ThreatCategory.RATE_LIMIT: 0.10,
}

ELEVATED_SCORE = 0.3
HIGH_SCORE = 0.6


# =============================================================================
# Rate Limiter / Fingerprint Store (In-Memory)
# =============================================================================

class RateLimiter:
    def __init__(self, clock=time.time):
        self.requests: Dict[str, List[float]] = defaultdict(list)
        self.windows: Dict[str, int] = {}
        self._clock = clock

    def __len__(self) -> int:
        return len(self.requests)

    def check(self, key: str, window: int = 60, max_requests: int = 10) -> Tuple[bool, int]:
        now = self._clock()
        cutoff = now - window
        self.windows[key] = window

        self.requests[key] = [t for t in self.requests[key] if t > cutoff]
        count = len(self.requests[key])

        if count >= max_requests:
            return True, count

        self.requests[key].append(now)
        return False, count + 1

    def sweep(self) -> int:
        """Drop keys with no request inside their window."""
        now = self._clock()
        stale = [k for k, ts in self.requests.items()
                 if not ts or ts[-1] <= now - self.windows.get(k, 60)]
        for k in stale:
            del self.requests[k]
            self.windows.pop(k, None)
        return len(stale)


def fingerprint_key(fp: FingerprintDocument) -> str:
    components = [fp.canvasHash, fp.webglRenderer, fp.platform, str(fp.hardwareConcurrency)]
    return hashlib.sha256("|".join(components).encode()).hexdigest()[:16]


class FingerprintStore:
    """Latest document per IP, fingerprint/IP cross counts and success history.

    Documents live for ``ttl``; cross counts and successes are remembered for
    ``history_ttl`` after they were last seen.
    """

    def __init__(self, ttl: int = 300, history_ttl: int = 3600, clock=time.time):
        self.ttl = ttl
        self.history_ttl = history_ttl
        self._clock = clock
        self.latest: Dict[str, Tuple[FingerprintDocument, float]] = {}
        self.fingerprint_ips: Dict[str, Dict[str, float]] = defaultdict(dict)
        self.ip_fingerprints: Dict[str, Dict[str, float]] = defaultdict(dict)
        self.successes: Dict[str, Tuple[int, float]] = {}

    def record(self, fp: FingerprintDocument, ip: str) -> str:
        key = fingerprint_key(fp)
        now = self._clock()
        self.latest[ip] = (fp, now)
        self.fingerprint_ips[key][ip] = now
        self.ip_fingerprints[ip][key] = now
        return key

    def get(self, ip: str) -> Optional[FingerprintDocument]:
        entry = self.latest.get(ip)
        if not entry:
            return None
        fp, recorded_at = entry
        if self._clock() - recorded_at > self.ttl:
            del self.latest[ip]
            return None
        return fp

    def get_ip_fp_count(self, ip: str) -> int:
        return len(self.ip_fingerprints.get(ip, {}))

    def get_fp_ip_count(self, key: str) -> int:
        return len(self.fingerprint_ips.get(key, {}))

    def record_success(self, key: str) -> int:
        count, _ = self.successes.get(key, (0, 0.0))
        self.successes[key] = (count + 1, self._clock())
        return count + 1

    def success_count(self, key: str) -> int:
        return self.successes.get(key, (0, 0.0))[0]

    def sweep(self) -> int:
        now = self._clock()
        expired = [ip for ip, (_, at) in self.latest.items() if now - at > self.ttl]
        for ip in expired:
            del self.latest[ip]

        cutoff = now - self.history_ttl
        removed = len(expired)
        for index in (self.fingerprint_ips, self.ip_fingerprints):
            for outer in list(index):
                seen = index[outer]
                for inner in [i for i, at in seen.items() if at <= cutoff]:
                    del seen[inner]
                if not seen:
                    del index[outer]
                    removed += 1
        for key in [k for k, (_, at) in self.successes.items() if at <= cutoff]:
            del self.successes[key]
            removed += 1
        return removed


# =============================================================================
# Datacenter IP Ranges
# =============================================================================

DATACENTER_CIDRS = [
    # AWS
    "3.0.0.0/8", "13.0.0.0/8", "18.0.0.0/8", "52.0.0.0/8", "54.0.0.0/8",
    # Google Cloud
    "34.64.0.0/10", "35.184.0.0/13", "104.154.0.0/15", "104.196.0.0/14",
    # Azure
    "20.0.0.0/8", "40.64.0.0/10",
    # DigitalOcean
    "64.225.0.0/16", "68.183.0.0/16", "104.131.0.0/16", "134.209.0.0/16",
    "138.68.0.0/16", "139.59.0.0/16", "142.93.0.0/16", "157.245.0.0/16",
    "159.65.0.0/16", "159.89.0.0/16", "161.35.0.0/16", "164.90.0.0/16",
    # Linode / Vultr
    "45.33.0.0/16", "45.56.0.0/16", "45.79.0.0/16", "139.162.0.0/16",
    "45.32.0.0/16", "45.63.0.0/16", "45.76.0.0/16", "45.77.0.0/16",
    # Hetzner / OVH
    "5.9.0.0/16", "46.4.0.0/14", "78.46.0.0/15", "88.99.0.0/16",
    "95.216.0.0/14", "135.181.0.0/16", "51.38.0.0/16", "51.68.0.0/16",
    "51.75.0.0/16", "51.77.0.0/16", "137.74.0.0/16", "149.56.0.0/16",
]

DATACENTER_NETWORKS = [ipaddress.ip_network(cidr) for cidr in DATACENTER_CIDRS]


def parse_networks(entries) -> list:
    """Single addresses become /32 (or /128) networks."""
    return [ipaddress.ip_network(e, strict=False) for e in entries]


def ip_in_networks(ip_str: str, networks) -> bool:
    try:
        ip = ipaddress.ip_address(ip_str)
    except ValueError:
        return False
    return any(ip.version == net.version and ip in net for net in networks)


def is_datacenter_ip(ip_str: str) -> bool:
    """Check if IP belongs to a known datacenter."""
    return ip_in_networks(ip_str, DATACENTER_NETWORKS)


# =============================================================================
# User-Agent and header heuristics
# =============================================================================

AUTOMATION_UA_PATTERNS = [
    re.compile(p, re.I) for p in [
        r'headless', r'phantomjs', r'selenium', r'webdriver',
        r'puppeteer', r'playwright', r'cypress', r'nightwatch',
        r'zombie', r'electron',
    ]
]

BOT_UA_PATTERNS = [
    re.compile(p, re.I) for p in [
        r'bot', r'spider', r'crawler', r'scraper', r'curl', r'wget',
        r'python', r'java/', r'httpie', r'postman', r'axios',
        r'node-fetch', r'go-http', r'okhttp',
    ]
]

EXPECTED_BROWSER_HEADERS = {"accept", "accept-language", "accept-encoding", "user-agent"}

SOFTWARE_RENDERERS = ("swiftshader", "llvmpipe", "softpipe")


def parse_user_agent(ua: str) -> Dict[str, Any]:
    """Parse user agent string."""
    info = {"browser": None, "os": None, "is_mobile": False, "is_bot": False, "bot_name": None}

    for pattern in BOT_UA_PATTERNS:
        match = pattern.search(ua)
        if match:
            info["is_bot"] = True
            info["bot_name"] = match.group(0)
            return info

    if "Edg/" in ua:
        info["browser"] = "Edge"
    elif "Chrome/" in ua:
        info["browser"] = "Chrome"
    elif "Firefox/" in ua:
        info["browser"] = "Firefox"
    elif "Safari/" in ua and "Chrome" not in ua:
        info["browser"] = "Safari"

    # Android and iOS UAs also mention Linux / Mac OS X
    if "Android" in ua:
        info["os"] = "Android"
        info["is_mobile"] = True
    elif "iPhone" in ua or "iPad" in ua:
        info["os"] = "iOS"
        info["is_mobile"] = True
    elif "Windows" in ua:
        info["os"] = "Windows"
    elif "Mac OS X" in ua or "Macintosh" in ua:
        info["os"] = "macOS"
    elif "Linux" in ua:
        info["os"] = "Linux"

    if "Mobile" in ua:
        info["is_mobile"] = True

    return info


_PLATFORM_TOKENS = {"Windows": "Win", "macOS": "Mac", "Linux": "Linux"}


def detect_user_agent(fp: FingerprintDocument, user_agent: str) -> List[Detection]:
    detections = []
    ua = user_agent or (fp.userAgent if fp.userAgent != UNKNOWN else "")

    if not ua:
        detections.append(Detection(
            ThreatCategory.BOT, 0.6, 0.6, "Empty User-Agent"
        ))
        return detections

    for pattern in AUTOMATION_UA_PATTERNS:
        if pattern.search(ua):
            detections.append(Detection(
                ThreatCategory.HEADLESS, 0.9, 0.9,
                "Automation pattern in User-Agent", floor=RiskTier.HIGH
            ))
            break

    ua_info = parse_user_agent(ua)
    if ua_info["is_bot"]:
        detections.append(Detection(
            ThreatCategory.BOT, 0.9, 0.95,
            f"User-Agent indicates bot: {ua_info['bot_name']}", floor=RiskTier.HIGH
        ))
        return detections

    token = _PLATFORM_TOKENS.get(ua_info["os"])
    if token and fp.platform != UNKNOWN and token not in fp.platform:
        detections.append(Detection(
            ThreatCategory.AUTOMATION, 0.6, 0.7,
            f"UA/platform mismatch: UA claims {ua_info['os']}, platform={fp.platform}"
        ))

    if ua_info["is_mobile"] != fp.isMobile:
        detections.append(Detection(
            ThreatCategory.FINGERPRINT, 0.4, 0.5,
            "UA device class disagrees with reported device class"
        ))

    return detections


def analyze_headers(headers: Dict[str, str]) -> List[Detection]:
    """Analyze HTTP headers for bot indicators."""
    detections = []
    headers_lower = {k.lower(): v for k, v in headers.items()}

    missing_count = sum(1 for h in EXPECTED_BROWSER_HEADERS if h not in headers_lower)
    if missing_count > 1:
        detections.append(Detection(
            ThreatCategory.BOT, 0.4, 0.5,
            f"Missing {missing_count} expected browser headers"
        ))

    accept_lang = headers_lower.get("accept-language")
    if accept_lang is not None and accept_lang.strip() in ("", "*"):
        detections.append(Detection(
            ThreatCategory.BOT, 0.3, 0.4,
            "Invalid Accept-Language header"
        ))

    return detections


# =============================================================================
# Fingerprint Detectors
# =============================================================================

def detect_headless(fp: FingerprintDocument) -> List[Detection]:
    detections = []

    if fp.webdriverFlag:
        detections.append(Detection(
            ThreatCategory.HEADLESS, 0.95, 0.95,
            "WebDriver detected (navigator.webdriver = true)", floor=RiskTier.HIGH
        ))

    if not fp.pluginNames and fp.is_desktop_resolution:
        detections.append(Detection(
            ThreatCategory.HEADLESS, 0.6, 0.6,
            "No browser plugins on a desktop-sized screen", floor=RiskTier.ELEVATED
        ))

    renderer = fp.webglRenderer.lower()
    if any(r in renderer for r in SOFTWARE_RENDERERS):
        detections.append(Detection(
            ThreatCategory.HEADLESS, 0.8, 0.8,
            "Software WebGL renderer detected"
        ))
    elif fp.webglRenderer in (NO_WEBGL, UNKNOWN, "error"):
        detections.append(Detection(
            ThreatCategory.HEADLESS, 0.5, 0.5,
            "WebGL unavailable"
        ))

    return detections


def detect_automation(fp: FingerprintDocument, user_agent: str) -> List[Detection]:
    """An automation-controlled browser object is only plausible on a platform
    and browser that actually expose one; a marker alongside a normal declared
    platform is a mismatch."""
    detections = []
    if not fp.automationMarker:
        return detections

    ua = user_agent or fp.userAgent
    declared_normal = fp.platform != UNKNOWN and not any(p.search(ua) for p in AUTOMATION_UA_PATTERNS)
    if declared_normal:
        detections.append(Detection(
            ThreatCategory.AUTOMATION, 0.9, 0.9,
            f"Automation marker present on declared platform {fp.platform}", floor=RiskTier.HIGH
        ))
    else:
        detections.append(Detection(
            ThreatCategory.AUTOMATION, 0.7, 0.7,
            "Automation marker present"
        ))
    return detections


def detect_fingerprint(fp: FingerprintDocument, ip: str, key: str, store: FingerprintStore) -> List[Detection]:
    detections = []

    if fp.canvasHash in (UNKNOWN, "error", "CanvasError"):
        detections.append(Detection(
            ThreatCategory.FINGERPRINT, 0.4, 0.4,
            "Canvas fingerprinting blocked or failed"
        ))

    if fp.hardwareConcurrency == 0:
        detections.append(Detection(
            ThreatCategory.FINGERPRINT, 0.3, 0.3,
            "Hardware concurrency unavailable"
        ))

    if fp.timezone == UNKNOWN:
        detections.append(Detection(
            ThreatCategory.FINGERPRINT, 0.3, 0.3,
            "Timezone unavailable"
        ))

    if fp.screenWidth == 0 or fp.screenHeight == 0:
        detections.append(Detection(
            ThreatCategory.FINGERPRINT, 0.5, 0.5,
            "Screen dimensions unavailable"
        ))

    ip_fp_count = store.get_ip_fp_count(ip)
    if ip_fp_count > 5:
        detections.append(Detection(
            ThreatCategory.FINGERPRINT, 0.6, 0.6,
            "IP has used many different fingerprints",
            details={"count": ip_fp_count}
        ))

    fp_ip_count = store.get_fp_ip_count(key)
    if fp_ip_count > 10:
        detections.append(Detection(
            ThreatCategory.FINGERPRINT, 0.5, 0.5,
            "Fingerprint seen from many IPs",
            details={"count": fp_ip_count}
        ))

    return detections


def detect_datacenter(ip: str) -> List[Detection]:
    if is_datacenter_ip(ip):
        return [Detection(
            ThreatCategory.DATACENTER, 0.6, 0.8,
            "Request from known datacenter IP range"
        )]
    return []


def detect_blocklisted(ip: str, blocklist) -> List[Detection]:
    if ip_in_networks(ip, blocklist):
        return [Detection(
            ThreatCategory.BOT, 1.0, 1.0,
            "Request from blocklisted IP", floor=RiskTier.HIGH
        )]
    return []


def detect_rate_abuse(ip: str, limiter: RateLimiter, window: int, max_requests: int) -> List[Detection]:
    detections = []

    exceeded, count = limiter.check(f"risk:{ip}", window, max_requests)
    if exceeded:
        detections.append(Detection(
            ThreatCategory.RATE_LIMIT, 0.8, 0.9,
            "Rate limit exceeded", floor=RiskTier.ELEVATED,
            details={"count": count}
        ))
    elif count > max_requests // 2:
        detections.append(Detection(
            ThreatCategory.RATE_LIMIT, 0.3, 0.5,
            "High request rate",
            details={"count": count}
        ))

    return detections


# =============================================================================
# Scoring
# =============================================================================

def calculate_category_scores(detections: List[Detection]) -> Dict[str, float]:
    category_data: Dict[ThreatCategory, List[tuple]] = defaultdict(list)

    for d in detections:
        category_data[d.category].append((d.score, d.confidence))

    result = {}
    for cat, scores in category_data.items():
        total_weight = sum(conf for _, conf in scores)
        if total_weight > 0:
            weighted_sum = sum(score * conf for score, conf in scores)
            result[cat.value] = min(1.0, weighted_sum / total_weight)

    for cat in ThreatCategory:
        if cat.value not in result:
            result[cat.value] = 0.0

    return result


def calculate_final_score(category_scores: Dict[str, float]) -> float:
    total = 0.0
    for cat, weight in WEIGHTS.items():
        total += category_scores.get(cat.value, 0.0) * weight
    return min(1.0, total)


def tier_for(score: float, detections: List[Detection]) -> RiskTier:
    if score >= HIGH_SCORE:
        tier = RiskTier.HIGH
    elif score >= ELEVATED_SCORE:
        tier = RiskTier.ELEVATED
    else:
        tier = RiskTier.LOW
    for d in detections:
        if d.floor is not None and d.floor.rank > tier.rank:
            tier = d.floor
    return tier


class RiskClassifier:
    """Classifies a fingerprint and request into a ``RiskAssessment``.

    Blocklisted addresses are always high. The allow-list bypass needs both an
    allow-listed IP and a User-Agent containing one of the allow-listed
    substrings, and it never overrides a high floor raised by the browser
    itself (webdriver flag, automation marker).
    """

    def __init__(self, store: FingerprintStore, limiter: RateLimiter,
                 allowlist_ips=(), allowlist_user_agents=(), blocklist=(),
                 rate_window: int = 60, rate_max_requests: int = 20):
        self.store = store
        self.limiter = limiter
        self.allowlist_ips = set(allowlist_ips)
        self.allowlist_user_agents = [ua.lower() for ua in allowlist_user_agents if ua]
        self.blocklist = parse_networks(blocklist)
        self.rate_window = rate_window
        self.rate_max_requests = rate_max_requests

    def is_allowlisted(self, ip: str, user_agent: str) -> bool:
        if ip not in self.allowlist_ips:
            return False
        ua = (user_agent or "").lower()
        return any(allowed in ua for allowed in self.allowlist_user_agents)

    def classify(self, fp: FingerprintDocument, ip: str, user_agent: str = "",
                 headers: Optional[Dict[str, str]] = None,
                 trusted_history: int = 0) -> RiskAssessment:
        key = fingerprint_key(fp)
        blocked = detect_blocklisted(ip, self.blocklist)

        if not blocked and self.is_allowlisted(ip, user_agent):
            hard = [d for d in detect_headless(fp) + detect_automation(fp, user_agent)
                    if d.floor is RiskTier.HIGH]
            if not hard:
                log.info("Allow-listed IP %s and User-Agent, skipping risk checks", ip)
                return RiskAssessment(RiskTier.LOW, 0.0, [], trusted=True, fingerprint_key=key)
            log.warning("Allow-listed IP %s failed hard check: %s", ip, hard[0].reason)

        detections: List[Detection] = list(blocked)
        detections.extend(detect_headless(fp))
        detections.extend(detect_automation(fp, user_agent))
        detections.extend(detect_user_agent(fp, user_agent))
        detections.extend(detect_fingerprint(fp, ip, key, self.store))
        detections.extend(detect_datacenter(ip))
        detections.extend(detect_rate_abuse(ip, self.limiter, self.rate_window, self.rate_max_requests))
        if headers:
            detections.extend(analyze_headers(headers))

        score = calculate_final_score(calculate_category_scores(detections))
        tier = tier_for(score, detections)
        trusted = (
            tier is RiskTier.LOW
            and trusted_history > 0
            and self.store.success_count(key) >= trusted_history
        )
        log.info("Risk for %s: tier=%s score=%.3f detections=%d trusted=%s",
                 ip, tier.value, score, len(detections), trusted)
        return RiskAssessment(tier, score, detections, trusted=trusted, fingerprint_key=key)
