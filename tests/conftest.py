import pytest

from models import FingerprintDocument
from settings import load_settings
from tests.helpers import DESKTOP_FP, MOBILE_FP


class FakeClock:
    def __init__(self, now: float = 1_704_067_200.0):  # 2024-01-01T00:00:00Z
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path, monkeypatch):
    """Low-difficulty settings isolated from any config in the working directory."""
    monkeypatch.chdir(tmp_path)
    for var in ("POWGATE_CONFIG", "POWGATE_SECRET", "POWGATE_LOG_LEVEL", "POWGATE_DESKTOP_DIFFICULTY"):
        monkeypatch.delenv(var, raising=False)
    return load_settings(overrides={
        "server": {"secret_key": "test-secret"},
        "challenge": {
            "desktop_difficulty": 4,
            "mobile_difficulty": 4,
            "allow_any_difficulty": True,
        },
    })


@pytest.fixture
def desktop_doc():
    return FingerprintDocument.model_validate(DESKTOP_FP)


@pytest.fixture
def mobile_doc():
    return FingerprintDocument.model_validate(MOBILE_FP)
