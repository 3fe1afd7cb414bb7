from __future__ import annotations

import hashlib
import hmac
import time

# Signed webhooks older than this are rejected as replays.
DEFAULT_TOLERANCE_S = 300


def compute_signature(payload: bytes, secret: str, timestamp: int) -> str:
    msg = f"{timestamp}.".encode("utf-8") + payload
    return hmac.new(secret.encode("utf-8"), msg, hashlib.sha256).hexdigest()


def sign_header(payload: bytes, secret: str, timestamp: int | None = None) -> str:
    ts = int(timestamp if timestamp is not None else time.time())
    return f"t={ts},v1={compute_signature(payload, secret, ts)}"


def _parse(header: str) -> tuple[int | None, list[str]]:
    ts: int | None = None
    sigs: list[str] = []
    for part in str(header or "").split(","):
        k, _, v = part.strip().partition("=")
        if k == "t":
            try:
                ts = int(v)
            except ValueError:
                return None, []
        elif k == "v1" and v:
            sigs.append(v)
    return ts, sigs


def verify_signature(
    payload: bytes,
    header: str | None,
    secret: str | None,
    *,
    tolerance_s: int = DEFAULT_TOLERANCE_S,
    now: float | None = None,
) -> bool:
    """Check a `t=<unix>,v1=<hex hmac-sha256 of "<t>.<body>">` header."""
    if not header or not secret:
        return False
    ts, sigs = _parse(header)
    if ts is None or not sigs:
        return False
    if abs((now if now is not None else time.time()) - ts) > tolerance_s:
        return False
    expected = compute_signature(payload, secret, ts)
    return any(hmac.compare_digest(expected, s) for s in sigs)
