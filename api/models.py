"""
API request and response models for AuthCore REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.

Input validation (email format, password policy, code shape) happens here,
before any service is called. A request that fails it never reaches the core
and is answered with 422.
"""

import re
from datetime import datetime
from typing import Annotated, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from auth.models import OAuthProvider, Role

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128
PASSWORD_SPECIALS = "@$!%*?&"
OTP_PATTERN = r"^\d{6}$"
# Login-time 2FA accepts a TOTP code or an 8-character backup code
SECOND_FACTOR_PATTERN = r"^(\d{6}|[A-Za-z0-9]{8})$"

_OtpCode = Annotated[str, Field(pattern=OTP_PATTERN, description="6-digit code")]


def _check_password_policy(value: str) -> str:
    """At least one lowercase, one uppercase, one digit and one of @$!%*?&."""
    if not re.search(r"[a-z]", value):
        raise ValueError("Password must contain a lowercase letter")
    if not re.search(r"[A-Z]", value):
        raise ValueError("Password must contain an uppercase letter")
    if not re.search(r"\d", value):
        raise ValueError("Password must contain a digit")
    if not any(ch in PASSWORD_SPECIALS for ch in value):
        raise ValueError(f"Password must contain one of {PASSWORD_SPECIALS}")
    return value


_NewPassword = Annotated[str, Field(min_length=PASSWORD_MIN_LENGTH, max_length=PASSWORD_MAX_LENGTH)]


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register.

    Email and name are trimmed. The password is stored exactly as typed, the
    same way login and change-password read it.
    """

    email: EmailStr
    password: _NewPassword
    name: Optional[str] = Field(default=None, min_length=2, max_length=100)

    @field_validator("email", "name", mode="before")
    @classmethod
    def strip_text(cls, value):
        return value.strip() if isinstance(value, str) else value

    @field_validator("password")
    @classmethod
    def password_policy(cls, value: str) -> str:
        return _check_password_policy(value)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1, max_length=PASSWORD_MAX_LENGTH)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(min_length=1)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=PASSWORD_MAX_LENGTH)
    new_password: _NewPassword

    @field_validator("new_password")
    @classmethod
    def password_policy(cls, value: str) -> str:
        return _check_password_policy(value)


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    token: str = Field(min_length=1, max_length=256)
    new_password: _NewPassword

    @field_validator("new_password")
    @classmethod
    def password_policy(cls, value: str) -> str:
        return _check_password_policy(value)


class VerifyEmailRequest(BaseModel):
    email: EmailStr
    code: _OtpCode


class ResendVerificationRequest(BaseModel):
    email: EmailStr


class PasswordConfirmRequest(BaseModel):
    """Body for operations that re-check the password (2FA enable, backup code regeneration)."""

    password: str = Field(min_length=1, max_length=PASSWORD_MAX_LENGTH)


class OtpRequest(BaseModel):
    code: _OtpCode


class TwoFactorVerifyRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    code: str = Field(pattern=SECOND_FACTOR_PATTERN, description="TOTP code or backup code")


class DisableTwoFactorRequest(BaseModel):
    password: str = Field(min_length=1, max_length=PASSWORD_MAX_LENGTH)
    code: _OtpCode


class OAuthLoginRequest(BaseModel):
    """Provider token assertion for POST /api/v1/auth/oauth/login."""

    provider: OAuthProvider
    access_token: str = Field(min_length=1)
    id_token: Optional[str] = None


class OAuthCallbackRequest(BaseModel):
    code: str = Field(min_length=1)
    state: str = Field(min_length=1)
    redirect_uri: str = Field(min_length=1)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    id: int
    email: str
    name: Optional[str] = None
    role: Role
    email_verified: Optional[datetime] = None
    two_factor_enabled: bool
    created_at: Optional[datetime] = None


class AuthResponse(BaseModel):
    """Response for password and OAuth logins. Sent with Cache-Control: no-store."""

    user: UserResponse
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    session_id: int
    is_new_user: bool = False


class TokenPairResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class MessageResponse(BaseModel):
    message: str


class EmailVerificationResponse(BaseModel):
    verified: bool
    message: str


class TwoFactorSetupResponse(BaseModel):
    secret: str
    qr_code_uri: str
    manual_entry_key: str
    backup_codes: list[str]


class TwoFactorVerifyResponse(BaseModel):
    verified: bool = True
    method: str
    verified_at: datetime
    remaining_backup_codes: int


class BackupCodesResponse(BaseModel):
    backup_codes: list[str]


class SessionResponse(BaseModel):
    id: int
    user_agent: Optional[str] = None
    ip: Optional[str] = None
    created_at: Optional[datetime] = None
    expires: datetime
    current: bool = False


class RefreshTokenSummaryResponse(BaseModel):
    id: int
    created_at: Optional[datetime] = None
    expires: datetime
    session_id: Optional[int] = None


class SessionListResponse(BaseModel):
    sessions: list[SessionResponse]
    refresh_tokens: list[RefreshTokenSummaryResponse]


class OAuthProviderInfo(BaseModel):
    name: str
    label: str


class OAuthAccountResponse(BaseModel):
    provider: OAuthProvider
    provider_account_id: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class OAuthAuthorizeResponse(BaseModel):
    authorization_url: str


class CleanupResponse(BaseModel):
    message: str
    count: int


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    database: str = "ok"
