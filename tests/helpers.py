"""Shared test helpers."""

from datetime import datetime, timedelta, timezone

from proof import CandidateFields, candidate_digest, encode_candidate, format_timestamp, has_leading_zero_bits

EPOCH = datetime(2024, 1, 1, tzinfo=timezone.utc)

CHROME_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
ANDROID_UA = (
    "Mozilla/5.0 (Linux; Android 14; Pixel 8) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Mobile Safari/537.36"
)

DESKTOP_FP = {
    "canvasHash": "c4nv4s",
    "webglRenderer": "ANGLE (NVIDIA GeForce RTX 3060)",
    "pluginNames": ["PDF Viewer", "Chrome PDF Viewer"],
    "screenWidth": 1920,
    "screenHeight": 1080,
    "colorDepth": 24,
    "availableFonts": ["Arial", "Verdana"],
    "hardwareConcurrency": 8,
    "webdriverFlag": False,
    "automationMarker": False,
    "timezone": "Europe/Berlin",
    "isMobile": False,
    "platform": "Win32",
    "userAgent": CHROME_UA,
}

MOBILE_FP = {
    "canvasHash": "m0b1le",
    "webglRenderer": "Adreno (TM) 740",
    "pluginNames": [],
    "screenWidth": 412,
    "screenHeight": 915,
    "colorDepth": 24,
    "availableFonts": ["Roboto"],
    "hardwareConcurrency": 8,
    "webdriverFlag": False,
    "automationMarker": False,
    "timezone": "America/New_York",
    "isMobile": True,
    "platform": "Linux armv81",
    "userAgent": ANDROID_UA,
}


def find_solution(nonce, client_ip, seed, bits, cap, canvas_hash=None, start=EPOCH, max_seconds=2000):
    """Brute force a satisfying candidate, moving the timestamp forward when a cap runs out."""
    for k in range(max_seconds):
        stamp = format_timestamp(start + timedelta(seconds=k))
        for i in range(cap):
            fields = CandidateFields(nonce, i, stamp, client_ip, seed, canvas_hash)
            candidate = encode_candidate(fields)
            if has_leading_zero_bits(candidate_digest(candidate), bits):
                return fields, candidate
    raise AssertionError("no solution found")
