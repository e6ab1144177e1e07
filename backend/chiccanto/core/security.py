from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import math
import time

SESSION_COOKIE_NAME = "cc_fulfill"
SESSION_TOKEN_VERSION = 1
# Issued payloads are about 40 characters.
MAX_PAYLOAD_B64_LEN = 256


def b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def b64url_decode(value: str) -> bytes:
    padded = value + "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def _now_ms(now: float | None) -> int:
    return int((time.time() if now is None else now) * 1000)


def _sign(secret: str, payload_b64: str) -> bytes:
    return hmac.new(secret.encode("utf-8"), payload_b64.encode("ascii"), hashlib.sha256).digest()


def issue_session_token(secret: str, ttl_s: int, now: float | None = None) -> str:
    """Return ``base64url(JSON{v,exp}) + "." + base64url(HMAC-SHA256)``.

    ``exp`` is expressed in epoch milliseconds, as the fulfillment page expects.
    """
    if not secret:
        raise ValueError("session secret is required")
    payload = {"v": SESSION_TOKEN_VERSION, "exp": _now_ms(now) + int(ttl_s) * 1000}
    payload_b64 = b64url_encode(json.dumps(payload, separators=(",", ":")).encode("utf-8"))
    return f"{payload_b64}.{b64url_encode(_sign(secret, payload_b64))}"


def verify_session_token(token: str | None, secret: str | None, now: float | None = None) -> bool:
    """Check signature and expiry. Malformed input returns False, never raises."""
    if not token or not secret:
        return False
    token = str(token).strip()
    dot = token.rfind(".")
    if dot <= 0 or dot == len(token) - 1:
        return False
    payload_b64, sig_b64 = token[:dot], token[dot + 1 :]
    if len(payload_b64) > MAX_PAYLOAD_B64_LEN:
        return False

    try:
        payload = json.loads(b64url_decode(payload_b64).decode("utf-8"))
        provided = b64url_decode(sig_b64)
    except (ValueError, UnicodeError, binascii.Error, RecursionError):
        return False
    if not isinstance(payload, dict):
        return False
    # Non-canonical encodings (stray padding bits) decode to the same bytes.
    if b64url_encode(provided) != sig_b64:
        return False

    exp = payload.get("exp")
    if isinstance(exp, bool) or not isinstance(exp, (int, float)) or not math.isfinite(exp):
        return False
    if exp <= _now_ms(now):
        return False

    try:
        expected = _sign(secret, payload_b64)
    except UnicodeError:
        return False
    return hmac.compare_digest(expected, provided)


def build_session_cookie(token: str, max_age: int) -> str:
    parts = [
        f"{SESSION_COOKIE_NAME}={token}",
        "Path=/",
        f"Max-Age={int(max_age)}",
        "HttpOnly",
        "Secure",
        "SameSite=Strict",
    ]
    return "; ".join(parts)


def build_cleared_session_cookie() -> str:
    return build_session_cookie("", 0)
