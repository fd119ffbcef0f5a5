# settings.py
from __future__ import annotations
import ipaddress
import os
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Dict, Any, List
import yaml

log = logging.getLogger(__name__)


@dataclass
class Settings:
    # Server / cookie
    secret_key: str
    cookie_name: str
    trust_proxy_headers: bool
    allowlist_ips: List[str]
    allowlist_user_agents: List[str]
    blocklist: List[str]
    trusted_proxies: List[str]
    # Challenge issuance
    challenge_ttl: int
    desktop_iterations: int
    mobile_iterations: int
    desktop_difficulty: int
    mobile_difficulty: int
    elevated_extra_bits: int
    high_extra_bits: int
    interactive_for_high_risk: bool
    trusted_history: int
    history_ttl: int
    timestamp_skew: int
    sweep_interval: int
    # Sessions / trust
    session_ttl: int
    trust_threshold: float
    trust_half_life: float
    window_size: int
    # Rate limiting
    rate_window: int
    rate_max_requests: int
    hard_max_requests: int
    # Logging
    log_level: str
    # Tests and benchmarks may issue challenges outside the 16-20 bit band
    allow_any_difficulty: bool = False
    cfg_file_used: Optional[str] = None


_DEFAULTS: Dict[str, Any] = {
    "server": {
        "secret_key": "dev-secret-change-in-production",
        "cookie_name": "powgate_session",
        "trust_proxy_headers": False,
        "trusted_proxies": [],
        "allowlist_ips": [],
        "allowlist_user_agents": [],
        "blocklist": [],
    },
    "challenge": {
        "ttl_seconds": 300,
        "desktop_iterations": 5000,
        "mobile_iterations": 1000,
        "desktop_difficulty": 16,
        "mobile_difficulty": 8,
        "elevated_extra_bits": 2,
        "high_extra_bits": 4,
        "interactive_for_high_risk": True,
        "trusted_history": 3,
        "history_ttl_seconds": 3600,
        "timestamp_skew_seconds": 60,
        "sweep_interval_seconds": 60,
        "allow_any_difficulty": False,
    },
    "session": {
        "ttl_seconds": 900,
        "trust_threshold": 0.2,
        "trust_half_life_seconds": 600,
        "window_size": 200,
    },
    "ratelimit": {"window_seconds": 60, "max_requests": 20, "hard_max_requests": 100},
    "logging": {"level": "INFO"},
}

_SEARCH_ORDER = (
    "powgate.yaml",
    "powgate.yml",
    "powgate.dev.yaml",
)


def _merge(a: Dict[str, Any], b: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(a)
    for k, v in (b or {}).items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _merge(out[k], v)
        else:
            out[k] = v
    return out


def _find_config(path: Optional[str]) -> Optional[Path]:
    if path:
        candidate = Path(path)
        if not candidate.exists():
            raise FileNotFoundError(f"Config file not found: {candidate}")
        return candidate
    env_cfg = os.getenv("POWGATE_CONFIG")
    if env_cfg:
        candidate = Path(env_cfg)
        if not candidate.exists():
            raise FileNotFoundError(f"POWGATE_CONFIG not found: {candidate}")
        return candidate
    for name in _SEARCH_ORDER:
        p = Path.cwd() / name
        if p.exists():
            return p
    return None


def _validate(s: Settings) -> None:
    if not s.allow_any_difficulty and not 16 <= s.desktop_difficulty <= 20:
        raise ValueError("challenge.desktop_difficulty must be between 16 and 20")
    if s.desktop_difficulty < 0 or s.mobile_difficulty < 0:
        raise ValueError("difficulty must not be negative")
    if not 1 <= s.challenge_ttl <= 600:
        raise ValueError("challenge.ttl_seconds must be between 1 and 600")
    if s.desktop_iterations < 1 or s.mobile_iterations < 1:
        raise ValueError("iteration caps must be positive")
    if not 0.0 < s.trust_threshold < 1.0:
        raise ValueError("session.trust_threshold must be between 0 and 1")
    if s.trust_half_life <= 0:
        raise ValueError("session.trust_half_life_seconds must be positive")
    if s.session_ttl < 60:
        raise ValueError("session.ttl_seconds must be >= 60")
    if s.hard_max_requests < 1:
        raise ValueError("ratelimit.hard_max_requests must be positive")
    if s.history_ttl < s.challenge_ttl:
        raise ValueError("challenge.history_ttl_seconds must be >= challenge.ttl_seconds")
    for entry in s.blocklist + s.trusted_proxies:
        try:
            ipaddress.ip_network(entry, strict=False)
        except ValueError as e:
            raise ValueError(f"invalid IP or CIDR {entry!r}: {e}") from e


def load_settings(path: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None) -> Settings:
    """
    Load YAML settings with sensible overrides:

    Priority:
      1) explicit `path` arg
      2) env POWGATE_CONFIG
      3) search order in the working directory: powgate.yaml|yml|powgate.dev.yaml
    `overrides` is merged last, after the environment.
    """
    cfg_file_used = _find_config(path)

    data: Dict[str, Any] = {}
    if cfg_file_used:
        with open(cfg_file_used, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        log.info("Loaded config from: %s", str(cfg_file_used))

    cfg = _merge(_DEFAULTS, data)

    # Environment overrides
    env: Dict[str, Any] = {}
    if os.getenv("POWGATE_SECRET"):
        env.setdefault("server", {})["secret_key"] = os.environ["POWGATE_SECRET"]
    if os.getenv("POWGATE_LOG_LEVEL"):
        env.setdefault("logging", {})["level"] = os.environ["POWGATE_LOG_LEVEL"]
    if os.getenv("POWGATE_DESKTOP_DIFFICULTY"):
        env.setdefault("challenge", {})["desktop_difficulty"] = int(os.environ["POWGATE_DESKTOP_DIFFICULTY"])
    cfg = _merge(cfg, env)
    cfg = _merge(cfg, overrides or {})

    server = cfg.get("server") or {}
    chal = cfg.get("challenge") or {}
    sess = cfg.get("session") or {}
    rate = cfg.get("ratelimit") or {}

    s = Settings(
        secret_key=str(server.get("secret_key")),
        cookie_name=server.get("cookie_name") or "powgate_session",
        trust_proxy_headers=bool(server.get("trust_proxy_headers", False)),
        trusted_proxies=list(server.get("trusted_proxies") or []),
        allowlist_ips=list(server.get("allowlist_ips") or []),
        allowlist_user_agents=list(server.get("allowlist_user_agents") or []),
        blocklist=list(server.get("blocklist") or []),
        challenge_ttl=int(chal.get("ttl_seconds", 300)),
        desktop_iterations=int(chal.get("desktop_iterations", 5000)),
        mobile_iterations=int(chal.get("mobile_iterations", 1000)),
        desktop_difficulty=int(chal.get("desktop_difficulty", 16)),
        mobile_difficulty=int(chal.get("mobile_difficulty", 8)),
        elevated_extra_bits=int(chal.get("elevated_extra_bits", 2)),
        high_extra_bits=int(chal.get("high_extra_bits", 4)),
        interactive_for_high_risk=bool(chal.get("interactive_for_high_risk", True)),
        trusted_history=int(chal.get("trusted_history", 3)),
        history_ttl=int(chal.get("history_ttl_seconds", 3600)),
        timestamp_skew=int(chal.get("timestamp_skew_seconds", 60)),
        sweep_interval=int(chal.get("sweep_interval_seconds", 60)),
        allow_any_difficulty=bool(chal.get("allow_any_difficulty", False)),
        session_ttl=int(sess.get("ttl_seconds", 900)),
        trust_threshold=float(sess.get("trust_threshold", 0.2)),
        trust_half_life=float(sess.get("trust_half_life_seconds", 600)),
        window_size=int(sess.get("window_size", 200)),
        rate_window=int(rate.get("window_seconds", 60)),
        rate_max_requests=int(rate.get("max_requests", 20)),
        hard_max_requests=int(rate.get("hard_max_requests", 100)),
        log_level=str((cfg.get("logging") or {}).get("level") or "INFO").upper(),
        cfg_file_used=str(cfg_file_used) if cfg_file_used else None,
    )
    _validate(s)
    if s.secret_key == _DEFAULTS["server"]["secret_key"]:
        log.warning("Using the development secret key; set POWGATE_SECRET in production")
    return s
