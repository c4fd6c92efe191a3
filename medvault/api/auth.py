"""
Bearer-token sessions for the Flask API.

A login issues an HS256 JWT bound to one party; the token is only honoured
while its session entry exists, so logout takes effect immediately.
"""

import uuid
from datetime import datetime, timedelta, timezone
from functools import wraps
from typing import Any, Dict, Optional

import jwt
from flask import jsonify, request

from medvault.config import SECRET_KEY, TOKEN_EXPIRY_HOURS
from medvault.models import AccessContext

# token -> {"ctx": AccessContext, "created_at": datetime, "last_activity": datetime}
sessions: Dict[str, Dict[str, Any]] = {}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def generate_token(ctx: AccessContext) -> str:
    """Issue a token for *ctx*; every call yields a distinct token."""
    issued = _now()
    claims = {
        "sub": str(ctx.party_id),
        "role": ctx.role,
        "name": ctx.display_name,
        "jti": uuid.uuid4().hex,
        "iat": issued,
        "exp": issued + timedelta(hours=TOKEN_EXPIRY_HOURS),
    }
    return jwt.encode(claims, SECRET_KEY, algorithm="HS256")


def verify_token(token: str) -> Optional[Dict[str, Any]]:
    """Decoded claims, or None for a bad signature or an expired token."""
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=["HS256"])
    except jwt.InvalidTokenError:
        return None


def _token_from_request() -> Optional[str]:
    header = request.headers.get("Authorization")
    if header is not None:
        scheme, _, value = header.partition(" ")
        if scheme.lower() != "bearer" or not value.strip():
            raise ValueError("Invalid authorization header format")
        return value.strip()
    return request.args.get("token")


def _unauthorized(message: str):
    return jsonify({"success": False, "error": message}), 401


def token_required(f):
    """Resolve the caller's session and expose it as ``request.session_data``."""
    @wraps(f)
    def decorated(*args, **kwargs):
        try:
            token = _token_from_request()
        except ValueError as e:
            return _unauthorized(str(e))
        if not token:
            return _unauthorized("Authentication token is missing")

        claims = verify_token(token)
        if not claims:
            return _unauthorized("Invalid or expired token")

        session_data = sessions.get(token)
        if session_data is None:
            return _unauthorized("Session not found. Please login again.")
        if str(session_data["ctx"].party_id) != claims.get("sub"):
            return _unauthorized("Token does not match session")

        session_data["last_activity"] = _now()
        request.session_data = session_data
        request.token = token
        return f(*args, **kwargs)

    return decorated


def role_required(role: str):
    """Restrict an endpoint to one role; stack it under ``token_required``."""
    def wrapper(f):
        @wraps(f)
        def decorated(*args, **kwargs):
            ctx = request.session_data["ctx"]
            if ctx.role != role:
                return jsonify({
                    "success": False,
                    "error": f"Access denied. {role.capitalize()} access required.",
                }), 403
            return f(*args, **kwargs)
        return decorated
    return wrapper


def cleanup_expired_sessions(max_idle_hours: float = TOKEN_EXPIRY_HOURS) -> int:
    """Drop sessions idle for longer than *max_idle_hours*; returns how many."""
    cutoff = _now() - timedelta(hours=max_idle_hours)
    stale = [tok for tok, data in sessions.items() if data["last_activity"] < cutoff]
    for tok in stale:
        sessions.pop(tok, None)
    if stale:
        print(f"[cleanup] Removed {len(stale)} expired sessions")
    return len(stale)
