"""
PowGate Fingerprint Collector

Reads a browsing environment and always returns a complete
``FingerprintDocument``. A signal that throws or is unsupported degrades to
its sentinel; collection itself never fails.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Sequence, Tuple

from errors import SignalDegraded
from models import FingerprintDocument, NO_WEBGL, UNKNOWN

log = logging.getLogger(__name__)

DEFAULT_FONT_CANDIDATES = (
    "Arial", "Times New Roman", "Helvetica", "Courier New", "Verdana",
    "Georgia", "Segoe UI", "Roboto", "Ubuntu", "Menlo",
)


class BrowserEnvironment:
    """Browsing-environment surface read by the collector.

    Every method may raise; the collector treats that as an unavailable signal.
    """

    def canvas_hash(self) -> str:
        raise NotImplementedError

    def webgl_renderer(self) -> str:
        raise NotImplementedError

    def plugin_names(self) -> Sequence[str]:
        raise NotImplementedError

    def screen(self) -> Tuple[int, int, int]:
        """Width, height and color depth."""
        raise NotImplementedError

    def font_available(self, name: str) -> bool:
        raise NotImplementedError

    def hardware_concurrency(self) -> int:
        raise NotImplementedError

    def webdriver(self) -> bool:
        raise NotImplementedError

    def automation_marker(self) -> bool:
        raise NotImplementedError

    def timezone(self) -> str:
        raise NotImplementedError

    def is_mobile(self) -> bool:
        raise NotImplementedError

    def platform(self) -> str:
        raise NotImplementedError

    def user_agent(self) -> str:
        raise NotImplementedError


class StaticEnvironment(BrowserEnvironment):
    """Environment answered from a mapping. Missing keys behave like failed signals."""

    def __init__(self, values: Mapping[str, Any]):
        self.values = dict(values)

    def _get(self, key: str):
        value = self.values[key]
        if isinstance(value, Exception):
            raise value
        return value

    def canvas_hash(self):
        return self._get("canvasHash")

    def webgl_renderer(self):
        return self._get("webglRenderer")

    def plugin_names(self):
        return self._get("pluginNames")

    def screen(self):
        return self._get("screenWidth"), self._get("screenHeight"), self._get("colorDepth")

    def font_available(self, name):
        return name in self._get("availableFonts")

    def hardware_concurrency(self):
        return self._get("hardwareConcurrency")

    def webdriver(self):
        return self._get("webdriverFlag")

    def automation_marker(self):
        return self._get("automationMarker")

    def timezone(self):
        return self._get("timezone")

    def is_mobile(self):
        return self._get("isMobile")

    def platform(self):
        return self._get("platform")

    def user_agent(self):
        return self._get("userAgent")


@dataclass
class CollectionResult:
    document: FingerprintDocument
    degraded: List[SignalDegraded] = field(default_factory=list)

    @property
    def degraded_signals(self) -> List[str]:
        return [d.signal for d in self.degraded]


class FingerprintCollector:
    def __init__(self, font_candidates: Sequence[str] = DEFAULT_FONT_CANDIDATES):
        self.font_candidates = tuple(font_candidates)

    def collect(self, env: BrowserEnvironment) -> CollectionResult:
        degraded: List[SignalDegraded] = []

        def read(name: str, fn: Callable[[], Any], sentinel: Any) -> Any:
            try:
                value = fn()
            except Exception as e:  # environment code is foreign; any failure degrades
                degraded.append(SignalDegraded(name, e))
                log.debug("Signal %s degraded: %r", name, e)
                return sentinel
            if value is None:
                degraded.append(SignalDegraded(name))
                return sentinel
            return value

        width, height, depth = read("screen", env.screen, (0, 0, 0))
        fonts = [f for f in self.font_candidates
                 if read(f"font:{f}", lambda f=f: env.font_available(f), False) is True]

        raw: Dict[str, Any] = {
            "canvasHash": read("canvas", env.canvas_hash, UNKNOWN),
            "webglRenderer": read("webgl", env.webgl_renderer, NO_WEBGL),
            "pluginNames": list(read("plugins", env.plugin_names, [])),
            "screenWidth": width,
            "screenHeight": height,
            "colorDepth": depth,
            "availableFonts": fonts,
            "hardwareConcurrency": read("hardwareConcurrency", env.hardware_concurrency, 0),
            "webdriverFlag": read("webdriver", env.webdriver, False),
            "automationMarker": read("automationMarker", env.automation_marker, False),
            "timezone": read("timezone", env.timezone, UNKNOWN),
            "isMobile": read("isMobile", env.is_mobile, False),
            "platform": read("platform", env.platform, UNKNOWN),
            "userAgent": read("userAgent", env.user_agent, UNKNOWN),
        }
        document = FingerprintDocument.model_validate(raw)
        if degraded:
            log.debug("Fingerprint collected with %d degraded signals", len(degraded))
        return CollectionResult(document, degraded)
