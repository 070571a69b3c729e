"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Access tokens arrive as "Authorization: Bearer <token>". Verification is
stateless (signature + expiry, see auth/tokens.py), followed by one user
lookup so deleted accounts stop working immediately.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises HTTP 401 if unauthenticated.
require_admin() wraps get_current_user() and raises HTTP 403 if not admin.
require_recent_two_factor() is the step-up guard: the caller must have
passed /auth/2fa/verify within the last two_factor_step_up_seconds.

The verified claims are left on request.state.token_claims so routes can
read the session id the token was issued for.

Layer rule: auth/dependencies.py may import from fastapi (for
Depends/HTTPException/Request) because this module is part of the FastAPI
dependency injection system. No imports from api/.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.models import AccessTokenClaims, Role, User
from core.errors import AuthenticationError

SESSION_2FA_VERIFIED_AT = "two_factor_verified_at"


def bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def try_get_current_user(request: Request) -> User | None:
    """Authenticate the request via its Bearer access token.

    Returns the authenticated User on success, None on any failure.
    Never raises -- callers that need a hard 401 should use get_current_user().
    """
    token = bearer_token(request)
    if not token:
        return None
    try:
        claims: AccessTokenClaims = request.app.state.tokens.verify_access_token(token)
    except AuthenticationError:
        return None
    user = request.app.state.store.get_user_by_id(claims.user_id)
    # A token minted before an email change no longer names this account
    if user is None or user.email != claims.email:
        return None
    request.state.token_claims = claims
    return user


def get_current_user(request: Request) -> User:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: User = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


def require_admin(request: Request) -> User:
    """Require admin role. Raises HTTP 401 if unauthenticated, HTTP 403 if not admin.

    Use as a FastAPI dependency:
        @router.post("/admin-only")
        async def route(user: User = Depends(require_admin)): ...
    """
    user = get_current_user(request)
    if user.role != Role.ADMIN:
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Admin access required."},
        )
    return user


def record_two_factor_verification(request: Request, user: User, verified_at: float) -> None:
    """Remember a successful 2FA check in the signed session cookie, bound to the user."""
    request.session[SESSION_2FA_VERIFIED_AT] = {"user_id": user.id, "at": verified_at}


def two_factor_verified_at(request: Request, user: User) -> float | None:
    """Timestamp of this user's last 2FA check in this session. Another account's record counts as none."""
    record = request.session.get(SESSION_2FA_VERIFIED_AT)
    if isinstance(record, dict) and record.get("user_id") == user.id:
        return record.get("at")
    return None


def require_recent_two_factor(request: Request) -> User:
    """Require a 2FA verification recorded in this caller's session within the step-up window.

    Raises HTTP 401 if unauthenticated, HTTP 403 if 2FA is off or stale.
    """
    user = get_current_user(request)
    verified_at = two_factor_verified_at(request, user)
    try:
        request.app.state.two_factor.require_step_up(user, verified_at)
    except AuthenticationError as exc:
        raise HTTPException(
            status_code=403,
            detail={"code": exc.code, "message": exc.message},
        ) from exc
    return user
