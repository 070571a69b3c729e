"""
api/routes/v1/auth.py -- Authentication, session and account REST endpoints.

Routes:
  POST   /api/v1/auth/register                 -- create account; sends verification code
  POST   /api/v1/auth/login                    -- password login; session + token pair
  POST   /api/v1/auth/refresh                  -- rotate refresh token
  POST   /api/v1/auth/logout                   -- end the current session (requires auth)
  POST   /api/v1/auth/logout-all               -- end every session (requires auth)
  GET    /api/v1/auth/me                       -- current user (requires auth)
  POST   /api/v1/auth/change-password          -- requires auth
  POST   /api/v1/auth/forgot-password          -- public; constant response
  POST   /api/v1/auth/reset-password           -- public; redeems a reset token
  POST   /api/v1/auth/verify-email             -- public; redeems a verification code
  POST   /api/v1/auth/resend-verification      -- public; constant response
  POST   /api/v1/auth/2fa/enable               -- start 2FA setup (requires auth + password)
  POST   /api/v1/auth/2fa/confirm              -- finish setup with a TOTP code
  POST   /api/v1/auth/2fa/verify               -- login-time 2FA; records step-up timestamp
  POST   /api/v1/auth/2fa/disable              -- requires password + TOTP
  POST   /api/v1/auth/2fa/backup-codes         -- regenerate backup codes (requires password)
  GET    /api/v1/auth/sensitive-action         -- example step-up protected route
  POST   /api/v1/auth/oauth/login              -- provider token assertion login
  GET    /api/v1/auth/oauth/providers          -- enabled providers (public)
  GET    /api/v1/auth/oauth/{provider}/authorize -- authorization-code redirect URL
  POST   /api/v1/auth/oauth/{provider}/callback  -- authorization-code exchange + login
  GET    /api/v1/auth/oauth/accounts           -- linked provider accounts (requires auth)
  DELETE /api/v1/auth/oauth/accounts/{provider} -- unlink (requires auth)
  GET    /api/v1/auth/sessions                 -- active sessions + refresh tokens
  DELETE /api/v1/auth/sessions/{id}            -- revoke one session (ownership checked)
  POST   /api/v1/auth/admin/cleanup-tokens     -- purge expired rows (admin only)
  GET    /api/v1/auth/users                    -- list users (admin only)

Security:
  [H2] Registration, login and password-reset routes use STRICT_RATE_LIMIT;
       2FA verification uses AUTH_RATE_LIMIT. Keys prefer the user id over
       IP + User-Agent (api/limiter.py).
  [M5] Cache-Control: no-store on every response that carries tokens or
       one-time secrets.
  IDOR guard: session revocation passes user_id to the store; the store's
       WHERE clause checks ownership.

Handlers are plain `def` so the synchronous service calls (bcrypt, SQLite)
run in the threadpool instead of blocking the event loop. Service errors
(core.errors.AuthError) propagate to the handler in api/main.py.
"""

from __future__ import annotations

import secrets

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response

from api.limiter import api_limit, auth_limit, limiter, strict_limit
from api.models import (
    AuthResponse,
    BackupCodesResponse,
    ChangePasswordRequest,
    CleanupResponse,
    DisableTwoFactorRequest,
    EmailVerificationResponse,
    ForgotPasswordRequest,
    LoginRequest,
    MessageResponse,
    OAuthAccountResponse,
    OAuthAuthorizeResponse,
    OAuthCallbackRequest,
    OAuthLoginRequest,
    OAuthProviderInfo,
    OtpRequest,
    PasswordConfirmRequest,
    RefreshRequest,
    RefreshTokenSummaryResponse,
    RegisterRequest,
    ResendVerificationRequest,
    ResetPasswordRequest,
    SessionListResponse,
    SessionResponse,
    TokenPairResponse,
    TwoFactorSetupResponse,
    TwoFactorVerifyRequest,
    TwoFactorVerifyResponse,
    UserResponse,
    VerifyEmailRequest,
)
from auth.dependencies import (
    SESSION_2FA_VERIFIED_AT,
    get_current_user,
    record_two_factor_verification,
    require_admin,
    require_recent_two_factor,
)
from auth.models import AuthResult, OAuthProvider, TokenPair, User
from auth.service import AuthService

# Auth policy:
# - register, login, refresh, forgot/reset-password, verify-email, resend,
#   oauth login/providers/authorize/callback: public
# - everything else: requires auth (get_current_user)
# - sensitive-action: requires auth + 2FA verified within the step-up window
# - admin/cleanup-tokens, users: requires admin (require_admin)
router = APIRouter()

_OAUTH_STATE_KEY = "oauth_state"


def _service(request: Request) -> AuthService:
    return request.app.state.auth_service


def _client_meta(request: Request) -> tuple[str | None, str | None]:
    return request.headers.get("user-agent"), request.client.host if request.client else None


def _no_store(response: Response) -> None:
    response.headers["Cache-Control"] = "no-store"  # [M5]


def _expires_in(request: Request) -> int:
    return request.app.state.settings.access_token_expire_minutes * 60


# ---------------------------------------------------------------------------
# Registration and login
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=UserResponse, status_code=201)
@limiter.limit(strict_limit)  # [H2]
def register(request: Request, response: Response, body: RegisterRequest) -> UserResponse:
    """Create an account. The verification code goes out through the notifier, never in the response."""
    user = _service(request).register(body.email, body.password, body.name)
    _no_store(response)
    return _user_to_response(user)


@router.post("/auth/login", response_model=AuthResponse)
@limiter.limit(strict_limit)  # [H2]
def login(request: Request, response: Response, body: LoginRequest) -> AuthResponse:
    """Password login. Unknown email and wrong password produce the same 401."""
    user_agent, ip = _client_meta(request)
    result = _service(request).login(body.email, body.password, user_agent=user_agent, ip=ip)
    _no_store(response)
    return _auth_response(request, result)


@router.post("/auth/refresh", response_model=TokenPairResponse)
@limiter.limit(auth_limit)
def refresh(request: Request, response: Response, body: RefreshRequest) -> TokenPairResponse:
    """Exchange a refresh token for a new pair. The presented token is spent."""
    pair = _service(request).refresh(body.refresh_token)
    _no_store(response)
    return _pair_response(request, pair)


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, current_user: User = Depends(get_current_user)) -> MessageResponse:
    """End the session the access token was issued for and drop its step-up state."""
    claims = request.state.token_claims
    _service(request).logout(current_user.id, claims.session_id)
    request.session.pop(SESSION_2FA_VERIFIED_AT, None)
    return MessageResponse(message="Logged out successfully")


@router.post("/auth/logout-all", response_model=MessageResponse)
def logout_all(request: Request, current_user: User = Depends(get_current_user)) -> MessageResponse:
    _service(request).logout_all(current_user.id)
    request.session.clear()
    return MessageResponse(message="Logged out from all devices")


@router.get("/auth/me", response_model=UserResponse)
async def me(current_user: User = Depends(get_current_user)) -> UserResponse:
    """Return the currently authenticated user."""
    return _user_to_response(current_user)


# ---------------------------------------------------------------------------
# Passwords and email verification
# ---------------------------------------------------------------------------


@router.post("/auth/change-password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    current_user: User = Depends(get_current_user),
) -> MessageResponse:
    """Change password and revoke every refresh token. Re-login is required on other devices."""
    message = _service(request).change_password(current_user.id, body.current_password, body.new_password)
    return MessageResponse(message=message)


@router.post("/auth/forgot-password", response_model=MessageResponse)
@limiter.limit(strict_limit)  # [H2]
def forgot_password(request: Request, body: ForgotPasswordRequest) -> MessageResponse:
    """Always 200 with the same message, whether or not the email is registered."""
    return MessageResponse(message=_service(request).forgot_password(body.email))


@router.post("/auth/reset-password", response_model=MessageResponse)
@limiter.limit(strict_limit)  # [H2]
def reset_password(request: Request, body: ResetPasswordRequest) -> MessageResponse:
    return MessageResponse(message=_service(request).reset_password(body.token, body.new_password))


@router.post("/auth/verify-email", response_model=EmailVerificationResponse)
@limiter.limit(strict_limit)
def verify_email(request: Request, body: VerifyEmailRequest) -> EmailVerificationResponse:
    result = _service(request).verify_email(body.email, body.code)
    return EmailVerificationResponse(verified=result.verified, message=result.message)


@router.post("/auth/resend-verification", response_model=EmailVerificationResponse)
@limiter.limit(strict_limit)
def resend_verification(request: Request, body: ResendVerificationRequest) -> EmailVerificationResponse:
    result = _service(request).resend_verification(body.email)
    return EmailVerificationResponse(verified=result.verified, message=result.message)


# ---------------------------------------------------------------------------
# Two-factor
# ---------------------------------------------------------------------------


@router.post("/auth/2fa/enable", response_model=TwoFactorSetupResponse)
def enable_two_factor(
    request: Request,
    response: Response,
    body: PasswordConfirmRequest,
    current_user: User = Depends(get_current_user),
) -> TwoFactorSetupResponse:
    """Start setup. Secret and backup codes are shown once; 2FA stays off until /2fa/confirm."""
    setup = _service(request).enable_two_factor(current_user.id, body.password)
    _no_store(response)
    return TwoFactorSetupResponse(
        secret=setup.secret,
        qr_code_uri=setup.qr_code_uri,
        manual_entry_key=setup.manual_entry_key,
        backup_codes=setup.backup_codes,
    )


@router.post("/auth/2fa/confirm", response_model=MessageResponse)
@limiter.limit(auth_limit)
def confirm_two_factor(
    request: Request,
    body: OtpRequest,
    current_user: User = Depends(get_current_user),
) -> MessageResponse:
    _service(request).confirm_two_factor(current_user.id, body.code)
    return MessageResponse(message="Two-factor authentication enabled")


@router.post("/auth/2fa/verify", response_model=TwoFactorVerifyResponse)
@limiter.limit(auth_limit)  # [H2]
def verify_two_factor(
    request: Request,
    body: TwoFactorVerifyRequest,
    current_user: User = Depends(get_current_user),
) -> TwoFactorVerifyResponse:
    """Check a TOTP or backup code and record the verification time in the session cookie."""
    result = _service(request).verify_two_factor(current_user.id, body.code)
    record_two_factor_verification(request, current_user, result.verified_at.timestamp())
    return TwoFactorVerifyResponse(
        method=result.method,
        verified_at=result.verified_at,
        remaining_backup_codes=result.remaining_backup_codes,
    )


@router.post("/auth/2fa/disable", response_model=MessageResponse)
def disable_two_factor(
    request: Request,
    body: DisableTwoFactorRequest,
    current_user: User = Depends(get_current_user),
) -> MessageResponse:
    _service(request).disable_two_factor(current_user.id, body.password, body.code)
    request.session.pop(SESSION_2FA_VERIFIED_AT, None)
    return MessageResponse(message="Two-factor authentication disabled")


@router.post("/auth/2fa/backup-codes", response_model=BackupCodesResponse)
def regenerate_backup_codes(
    request: Request,
    response: Response,
    body: PasswordConfirmRequest,
    current_user: User = Depends(get_current_user),
) -> BackupCodesResponse:
    codes = _service(request).regenerate_backup_codes(current_user.id, body.password)
    _no_store(response)
    return BackupCodesResponse(backup_codes=codes)


@router.get("/auth/sensitive-action", response_model=MessageResponse)
async def sensitive_action(current_user: User = Depends(require_recent_two_factor)) -> MessageResponse:
    """Reachable only within the step-up window after /2fa/verify."""
    return MessageResponse(message="Sensitive action authorized")


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


@router.post("/auth/oauth/login", response_model=AuthResponse)
@limiter.limit(strict_limit)
def oauth_login(request: Request, response: Response, body: OAuthLoginRequest) -> AuthResponse:
    """Log in with a provider token the client already holds."""
    user_agent, ip = _client_meta(request)
    result = _service(request).oauth_login(
        body.provider, body.access_token, body.id_token, user_agent=user_agent, ip=ip
    )
    _no_store(response)
    return _auth_response(request, result)


@router.get("/auth/oauth/providers", response_model=list[OAuthProviderInfo])
async def list_providers(request: Request) -> list[OAuthProviderInfo]:
    """Return the configured OAuth providers. Empty when no provider credentials are set."""
    return [OAuthProviderInfo(**p) for p in request.app.state.oauth.enabled_providers()]


@router.get("/auth/oauth/{provider}/authorize", response_model=OAuthAuthorizeResponse)
def oauth_authorize(
    request: Request,
    provider: OAuthProvider,
    redirect_uri: str = Query(min_length=1),
) -> OAuthAuthorizeResponse:
    """Build the provider redirect URL. The state value is kept in the signed session cookie."""
    url, state = request.app.state.oauth.authorization_url(provider, redirect_uri)
    request.session[_OAUTH_STATE_KEY] = {"provider": provider.value, "state": state}
    return OAuthAuthorizeResponse(authorization_url=url)


@router.post("/auth/oauth/{provider}/callback", response_model=AuthResponse)
@limiter.limit(strict_limit)
def oauth_callback(
    request: Request,
    response: Response,
    provider: OAuthProvider,
    body: OAuthCallbackRequest,
) -> AuthResponse:
    """Finish the authorization-code flow: check state, exchange the code, log in."""
    expected = request.session.pop(_OAUTH_STATE_KEY, None) or {}
    if expected.get("provider") != provider.value or not secrets.compare_digest(
        str(expected.get("state", "")), body.state
    ):
        raise HTTPException(
            status_code=400,
            detail={"code": "oauth_state_mismatch", "message": "OAuth state mismatch."},
        )
    tokens = request.app.state.oauth.exchange_code(provider, body.code, body.redirect_uri)
    if not tokens.get("access_token"):
        raise HTTPException(
            status_code=400,
            detail={"code": "oauth_failed", "message": "Provider returned no access token."},
        )
    user_agent, ip = _client_meta(request)
    result = _service(request).oauth_login(
        provider,
        tokens["access_token"],
        tokens.get("id_token"),
        user_agent=user_agent,
        ip=ip,
        provider_refresh_token=tokens.get("refresh_token"),
    )
    _no_store(response)
    return _auth_response(request, result)


@router.get("/auth/oauth/accounts", response_model=list[OAuthAccountResponse])
def list_oauth_accounts(
    request: Request,
    current_user: User = Depends(get_current_user),
) -> list[OAuthAccountResponse]:
    """Linked provider accounts. Stored provider tokens are never returned."""
    return [
        OAuthAccountResponse(
            provider=a.provider,
            provider_account_id=a.provider_account_id,
            created_at=a.created_at,
            updated_at=a.updated_at,
        )
        for a in _service(request).list_oauth_accounts(current_user.id)
    ]


@router.delete("/auth/oauth/accounts/{provider}", status_code=204)
def unlink_oauth_account(
    request: Request,
    provider: OAuthProvider,
    current_user: User = Depends(get_current_user),
) -> Response:
    _service(request).unlink_oauth_account(current_user.id, provider)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@router.get("/auth/sessions", response_model=SessionListResponse)
@limiter.limit(api_limit)
def list_sessions(request: Request, current_user: User = Depends(get_current_user)) -> SessionListResponse:
    """Unexpired sessions and refresh tokens. The caller's own session is flagged current."""
    overview = _service(request).list_sessions(current_user.id)
    current_sid = request.state.token_claims.session_id
    return SessionListResponse(
        sessions=[
            SessionResponse(
                id=s.id,
                user_agent=s.user_agent,
                ip=s.ip,
                created_at=s.created_at,
                expires=s.expires,
                current=s.id == current_sid,
            )
            for s in overview.sessions
        ],
        refresh_tokens=[
            RefreshTokenSummaryResponse(id=t.id, created_at=t.created_at, expires=t.expires, session_id=t.session_id)
            for t in overview.refresh_tokens
        ],
    )


@router.delete("/auth/sessions/{session_id}", status_code=204)
def revoke_session(
    request: Request,
    session_id: int,
    current_user: User = Depends(get_current_user),
) -> Response:
    """Revoke one of the caller's sessions [IDOR guard]. 404 for unknown or foreign ids."""
    _service(request).revoke_session(current_user.id, session_id)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------


@router.post("/auth/admin/cleanup-tokens", response_model=CleanupResponse)
def cleanup_tokens(request: Request, current_user: User = Depends(require_admin)) -> CleanupResponse:
    """Delete expired refresh tokens and sessions. Safe to call repeatedly."""
    count = _service(request).cleanup_expired()
    return CleanupResponse(message="Expired tokens and sessions removed", count=count)


@router.get("/auth/users", response_model=list[UserResponse])
def list_users(request: Request, current_user: User = Depends(require_admin)) -> list[UserResponse]:
    """List all user accounts. Admin only."""
    return [_user_to_response(u) for u in _service(request).list_users()]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _user_to_response(user: User | None) -> UserResponse:
    if user is None:
        raise HTTPException(
            status_code=500,
            detail={"code": "internal_error", "message": "User not found after write."},
        )
    return UserResponse(
        id=user.id,
        email=user.email,
        name=user.name,
        role=user.role,
        email_verified=user.email_verified,
        two_factor_enabled=user.two_factor_enabled,
        created_at=user.created_at,
    )


def _pair_response(request: Request, pair: TokenPair) -> TokenPairResponse:
    return TokenPairResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
        expires_in=_expires_in(request),
    )


def _auth_response(request: Request, result: AuthResult) -> AuthResponse:
    return AuthResponse(
        user=_user_to_response(result.user),
        access_token=result.tokens.access_token,
        refresh_token=result.tokens.refresh_token,
        token_type="bearer",  # noqa: S106 # nosec B106
        expires_in=_expires_in(request),
        session_id=result.session_id,
        is_new_user=result.is_new_user,
    )
