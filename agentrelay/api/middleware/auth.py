"""Optional shared API key for human-facing routes, plus auth rate limiting.

Agent routes authenticate with per-agent bearer credentials (see
api.deps.get_current_agent). Routes acting for a human user are called by
the upstream web layer; when ``auth.api_key`` is configured they must also
carry it in ``X-API-Key``. Failures of either kind count against the same
per-IP limiter.
"""

from __future__ import annotations

import hmac
import logging
import os
import threading
import time

from fastapi import Request
from fastapi.responses import JSONResponse, Response

logger = logging.getLogger(__name__)

# (method, path prefix) pairs that act on behalf of a human user
_HUMAN_ROUTES = (
    ("POST", "/api/v1/agents/claim"),
    ("PUT", "/api/v1/agent/gateway"),
    ("DELETE", "/api/v1/agent"),
    ("POST", "/api/v1/listings/"),
)

# --- Rate limiting for auth failures ---
_auth_fail_max = 10
_auth_fail_window_seconds = 300
_auth_failures: dict[str, list[float]] = {}
_auth_lock = threading.Lock()

# X-Forwarded-For is only honoured behind a trusted proxy, otherwise
# clients could spoof IPs to dodge the limiter.
_TRUST_PROXY = os.environ.get("AGENTRELAY_TRUST_PROXY", "").strip().lower() in ("1", "true")


def configure_rate_limit(max_failures: int, window_seconds: int) -> None:
    global _auth_fail_max, _auth_fail_window_seconds
    _auth_fail_max = max_failures
    _auth_fail_window_seconds = window_seconds


def get_client_ip(request: Request) -> str:
    if _TRUST_PROXY:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def is_rate_limited(client_ip: str) -> bool:
    """Check if the client IP has exceeded the auth failure rate limit."""
    with _auth_lock:
        now = time.monotonic()
        timestamps = _auth_failures.get(client_ip, [])
        timestamps = [t for t in timestamps if now - t < _auth_fail_window_seconds]
        _auth_failures[client_ip] = timestamps
        return len(timestamps) >= _auth_fail_max


def record_auth_failure(client_ip: str) -> None:
    with _auth_lock:
        _auth_failures.setdefault(client_ip, []).append(time.monotonic())


def reset_rate_limiter() -> None:
    """Reset the rate limiter state. Used by tests."""
    with _auth_lock:
        _auth_failures.clear()


def should_authenticate(method: str, path: str) -> bool:
    """Return True when this request acts for a human user."""
    method = method.upper()
    for route_method, prefix in _HUMAN_ROUTES:
        if method != route_method:
            continue
        if prefix.endswith("/") and path.startswith(prefix):
            return True
        if path == prefix:
            return True
    return False


async def maybe_require_api_key(request: Request, call_next) -> Response:
    """Middleware entrypoint: enforce the shared key on human routes."""
    config = getattr(request.app.state, "config", None)
    expected_key = config.auth.api_key.strip() if config is not None else ""
    if not expected_key or not should_authenticate(request.method, request.url.path):
        return await call_next(request)

    client_ip = get_client_ip(request)
    if is_rate_limited(client_ip):
        logger.warning("Auth rate limit exceeded for IP %s", client_ip)
        return JSONResponse(
            status_code=429,
            content={"error": "Too many authentication failures. Try again later."},
        )

    provided_key = request.headers.get("X-API-Key", "")
    if not provided_key or not hmac.compare_digest(provided_key, expected_key):
        record_auth_failure(client_ip)
        return JSONResponse(status_code=401, content={"error": "Invalid or missing API key"})
    return await call_next(request)
