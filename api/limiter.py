"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and
api/routes/v1/auth.py (to apply per-route limits with @limiter.limit()).
The limit decorator goes directly under @router.*: the router registers the
function it is handed, so only a wrapped function is throttled.

Using a single shared instance ensures all routes share the same in-memory
counter store. If this were instantiated in each module separately, each
module would get its own isolated counter and rate limits would never trigger.

Tracking key: "user:<id>" when the request carries a valid access token,
otherwise "<client ip>:<user agent>". Authenticated callers are throttled per
account no matter how many addresses they come from; anonymous callers
behind one NAT are at least split by browser.

Limit strings come from Settings (STRICT_RATE_LIMIT, AUTH_RATE_LIMIT,
API_RATE_LIMIT) and are resolved when the route is first hit.
"""

from __future__ import annotations

from slowapi import Limiter
from slowapi.util import get_remote_address
from starlette.requests import Request

from auth.dependencies import bearer_token
from core.config import get_settings
from core.errors import AuthenticationError


def tracking_key(request: Request) -> str:
    token = bearer_token(request)
    tokens = getattr(request.app.state, "tokens", None)
    if token and tokens is not None:
        try:
            return f"user:{tokens.verify_access_token(token).user_id}"
        except AuthenticationError:
            # Invalid tokens are throttled like anonymous traffic
            return _anonymous_key(request)
    return _anonymous_key(request)


def _anonymous_key(request: Request) -> str:
    return f"{get_remote_address(request)}:{request.headers.get('user-agent', 'unknown')}"


def strict_limit() -> str:
    """Registration, login and password reset."""
    return get_settings().strict_rate_limit


def auth_limit() -> str:
    """2FA verification and confirmation."""
    return get_settings().auth_rate_limit


def api_limit() -> str:
    return get_settings().api_rate_limit


limiter = Limiter(key_func=tracking_key, storage_uri="memory://")
