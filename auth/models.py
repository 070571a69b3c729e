"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own domain
shape; the store maps rows onto them and the services do the work.

Token records are a tagged family rather than one loose dict: access and
refresh claims each carry only the fields that belong to their kind, and
verification tokens are tagged with the purpose they were issued for.

All timestamps are timezone-aware UTC datetimes.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    USER = "USER"
    ADMIN = "ADMIN"
    MODERATOR = "MODERATOR"


class OAuthProvider(str, Enum):
    GOOGLE = "google"
    FACEBOOK = "facebook"


class VerificationPurpose(str, Enum):
    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"


# ---------------------------------------------------------------------------
# Persisted entities
# ---------------------------------------------------------------------------


@dataclass
class User:
    """The identity anchor.

    email_verified is None until the address is confirmed (OAuth-created users
    are stamped at creation). password_hash is never empty: OAuth-created users
    get the hash of a random value nobody knows, which satisfies the invariant
    without enabling password login.
    """

    email: str
    password_hash: str
    id: int | None = None
    name: str | None = None
    role: Role = Role.USER
    email_verified: datetime | None = None
    two_factor_enabled: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Session:
    """A device/browser login. session_token is random hex, unrelated to any JWT."""

    user_id: int
    session_token: str
    expires: datetime
    id: int | None = None
    user_agent: str | None = None
    ip: str | None = None
    created_at: datetime | None = None


@dataclass
class RefreshToken:
    """Stored half of a refresh token.

    token_hash is bcrypt of the raw JWT; the raw value is returned to the
    client once and never persisted. jti is a non-secret random id that is
    also embedded in the JWT so lookups do not scan every active row.
    Rows are revoked, never deleted, until they expire and cleanup reaps them.
    """

    user_id: int
    token_hash: str
    jti: str
    expires: datetime
    id: int | None = None
    session_id: int | None = None
    revoked: bool = False
    created_at: datetime | None = None


@dataclass
class VerificationToken:
    identifier: str  # email address
    purpose: VerificationPurpose
    token_hash: str
    expires: datetime
    id: int | None = None
    created_at: datetime | None = None


@dataclass
class TwoFactorSecret:
    user_id: int
    secret: str  # base32
    last_used_step: int | None = None  # newest TOTP time step already accepted
    created_at: datetime | None = None


@dataclass
class BackupCode:
    user_id: int
    code_hash: str
    id: int | None = None
    used_at: datetime | None = None
    created_at: datetime | None = None


@dataclass
class OAuthAccount:
    """Link between a local user and one provider identity.

    (provider, provider_account_id) is unique: one local account per external
    identity per provider.
    """

    provider: OAuthProvider
    provider_account_id: str
    user_id: int
    id: int | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


# ---------------------------------------------------------------------------
# Token claim variants (never persisted)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AccessTokenClaims:
    user_id: int
    email: str
    issued_at: datetime
    expires_at: datetime
    session_id: int | None = None


@dataclass(frozen=True)
class RefreshTokenClaims:
    user_id: int
    jti: str
    issued_at: datetime
    expires_at: datetime
    session_id: int | None = None


# ---------------------------------------------------------------------------
# Service results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str


@dataclass(frozen=True)
class IssuedSecret:
    """A freshly minted one-time secret. raw is shown once, only its hash is stored."""

    raw: str
    expires: datetime


@dataclass
class AuthResult:
    user: User
    tokens: TokenPair
    session_id: int
    is_new_user: bool = False


@dataclass
class TwoFactorSetup:
    secret: str
    qr_code_uri: str
    backup_codes: list[str]
    manual_entry_key: str


@dataclass(frozen=True)
class RefreshTokenSummary:
    id: int
    created_at: datetime
    expires: datetime
    session_id: int | None = None


@dataclass
class SessionOverview:
    sessions: list[Session] = field(default_factory=list)
    refresh_tokens: list[RefreshTokenSummary] = field(default_factory=list)


@dataclass(frozen=True)
class OAuthIdentity:
    """Normalized identity returned by every provider adapter. email is mandatory."""

    provider: OAuthProvider
    external_id: str
    email: str
    name: str | None = None
    picture: str | None = None


@dataclass(frozen=True)
class EmailVerificationResult:
    verified: bool
    message: str


@dataclass(frozen=True)
class TwoFactorVerification:
    """Outcome of a successful login-time 2FA check.

    verified_at feeds the step-up guard; method is "totp" or "backup_code".
    """

    verified_at: datetime
    method: str
    remaining_backup_codes: int
