"""
PowGate wire models.

Field names follow the browser sensor's JSON (camelCase) so documents pass
through unchanged.
"""

from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

UNKNOWN = "unknown"
NO_WEBGL = "no-webgl"
MAX_BATCH_SAMPLES = 200


# =============================================================================
# Fingerprint
# =============================================================================

def _as_str(value: Any) -> str:
    if isinstance(value, str) and value.strip():
        return value
    return UNKNOWN


def _as_uint(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    try:
        number = int(value)
    except (TypeError, ValueError):
        return 0
    return number if number >= 0 else 0


def _as_bool(value: Any) -> bool:
    return value if isinstance(value, bool) else False


def _as_str_list(value: Any) -> List[str]:
    if isinstance(value, str):
        value = [v for v in value.split(",") if v]
    if not isinstance(value, (list, tuple, set, frozenset)):
        return []
    return [v for v in value if isinstance(v, str)]


class FingerprintDocument(BaseModel):
    """Environment signal bundle. Every field is always present."""
    model_config = ConfigDict(frozen=True, extra="ignore")

    canvasHash: str = UNKNOWN
    webglRenderer: str = UNKNOWN
    pluginNames: List[str] = Field(default_factory=list)
    screenWidth: int = 0
    screenHeight: int = 0
    colorDepth: int = 0
    availableFonts: List[str] = Field(default_factory=list)
    hardwareConcurrency: int = 0
    webdriverFlag: bool = False
    automationMarker: bool = False
    timezone: str = UNKNOWN
    isMobile: bool = False
    platform: str = UNKNOWN
    userAgent: str = UNKNOWN

    @field_validator("canvasHash", "timezone", "platform", "userAgent", mode="before")
    @classmethod
    def _sentinel_str(cls, v):
        return _as_str(v)

    @field_validator("webglRenderer", mode="before")
    @classmethod
    def _sentinel_webgl(cls, v):
        if v is None or v is False:
            return NO_WEBGL
        return _as_str(v)

    @field_validator("screenWidth", "screenHeight", "colorDepth", "hardwareConcurrency", mode="before")
    @classmethod
    def _sentinel_uint(cls, v):
        return _as_uint(v)

    @field_validator("webdriverFlag", "automationMarker", "isMobile", mode="before")
    @classmethod
    def _sentinel_bool(cls, v):
        return _as_bool(v)

    @field_validator("pluginNames", mode="before")
    @classmethod
    def _sentinel_plugins(cls, v):
        return _as_str_list(v)

    @field_validator("availableFonts", mode="before")
    @classmethod
    def _sentinel_fonts(cls, v):
        # set semantics, first occurrence order kept
        return list(dict.fromkeys(_as_str_list(v)))

    @property
    def is_desktop_resolution(self) -> bool:
        return not self.isMobile and self.screenWidth >= 1024


# =============================================================================
# Telemetry
# =============================================================================

class ActivityKind(str, Enum):
    MOUSEMOVE = "mousemove"
    SCROLL = "scroll"
    DEVICEMOTION = "devicemotion"
    HEARTBEAT = "heartbeat"


class Sample(BaseModel):
    model_config = ConfigDict(frozen=True)

    x: Optional[float] = None
    y: Optional[float] = None
    z: Optional[float] = None
    t: float


_REQUIRED_AXES = {
    ActivityKind.MOUSEMOVE: ("x", "y"),
    ActivityKind.SCROLL: ("y",),
    ActivityKind.DEVICEMOTION: ("x", "y", "z"),
    ActivityKind.HEARTBEAT: (),
}


class TelemetryBatch(BaseModel):
    activity: ActivityKind
    samples: List[Sample] = Field(default_factory=list, max_length=MAX_BATCH_SAMPLES)

    @model_validator(mode="after")
    def _check_shape(self):
        axes = _REQUIRED_AXES[self.activity]
        for sample in self.samples:
            missing = [a for a in axes if getattr(sample, a) is None]
            if missing:
                raise ValueError(f"{self.activity.value} sample missing {','.join(missing)}")
        if self.activity is ActivityKind.MOUSEMOVE and not self.samples:
            raise ValueError("mousemove batch without samples")
        return self


# =============================================================================
# Requests
# =============================================================================

class VerifyRequest(BaseModel):
    nonce: str = Field(min_length=1, max_length=128)
    proof: str = Field(min_length=1, max_length=4096)
    digest: Optional[str] = Field(default=None, max_length=128)
