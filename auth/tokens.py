"""
auth/tokens.py -- Access/refresh JWTs, refresh rotation, session tokens.

Security design decisions:
  Access tokens: python-jose HS256 signed with JWT_SECRET. Short-lived
       (15 minutes by default) and stateless -- verification is signature +
       expiry only, no store lookup. A revoked session's access token stays
       valid until it expires; that window is accepted.

  Refresh tokens: HS256 signed with JWT_REFRESH_SECRET (a different key), long
       lived (7 days), and stateful. Only a bcrypt hash of the raw token is
       stored. Each token carries a random jti that is also stored, so lookup
       reads one row instead of hash-comparing every active row for the user.

  Rotation: exchanging a refresh token revokes it with a conditional UPDATE
       (revoked=0 -> 1) and only the caller whose update changed the row gets
       a new pair. A replayed or concurrently reused token fails with
       AuthenticationError [R1]. A token bound to a session only rotates while
       that session row exists and is unexpired; ending the session ends the
       refresh chain.

  Failure messages are generic per token kind. Callers never learn whether a
       token was malformed, expired, revoked or unknown.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from auth.models import (
    AccessTokenClaims,
    RefreshToken,
    RefreshTokenClaims,
    RefreshTokenSummary,
    TokenPair,
    User,
)
from auth.passwords import PasswordHasher
from auth.store import CredentialStore
from core.config import Settings
from core.errors import AuthenticationError

logger = logging.getLogger("authcore.auth.tokens")

_ALGORITHM = "HS256"
_ACCESS_TYPE = "access"
_REFRESH_TYPE = "refresh"

_INVALID_ACCESS = "Invalid or expired access token"
_INVALID_REFRESH = "Invalid or expired refresh token"


def _from_timestamp(value) -> datetime:
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


class TokenService:
    """Mints and verifies the two token kinds and owns the refresh-token rows.

    Usage:
        tokens = TokenService(store, hasher, settings)
        pair = tokens.issue_token_pair(user, session_id=session.id)
        claims = tokens.verify_access_token(pair.access_token)
        new_pair = tokens.rotate_refresh_token(pair.refresh_token)
    """

    def __init__(self, store: CredentialStore, hasher: PasswordHasher, settings: Settings) -> None:
        self.store = store
        self.hasher = hasher
        self.settings = settings

    @property
    def access_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.access_token_expire_minutes)

    @property
    def refresh_ttl(self) -> timedelta:
        return timedelta(days=self.settings.refresh_token_expire_days)

    # ------------------------------------------------------------------
    # Access tokens
    # ------------------------------------------------------------------

    def issue_access_token(self, user: User, session_id: int | None = None) -> str:
        """Encode {sub, email, sid, iat, exp}. No side effects."""
        now = datetime.now(timezone.utc)
        payload = {
            "sub": str(user.id),  # jose requires a string subject
            "email": user.email,
            "sid": session_id,
            "type": _ACCESS_TYPE,
            "iat": now,
            "exp": now + self.access_ttl,
        }
        return jwt.encode(payload, self.settings.jwt_secret, algorithm=_ALGORITHM)

    def verify_access_token(self, token: str) -> AccessTokenClaims:
        """Verify signature, expiry and type. Raises AuthenticationError on any failure."""
        try:
            payload = jwt.decode(token, self.settings.jwt_secret, algorithms=[_ALGORITHM])
            if payload.get("type") != _ACCESS_TYPE:
                raise AuthenticationError(_INVALID_ACCESS)
            return AccessTokenClaims(
                user_id=int(payload["sub"]),
                email=payload["email"],
                session_id=payload.get("sid"),
                issued_at=_from_timestamp(payload["iat"]),
                expires_at=_from_timestamp(payload["exp"]),
            )
        except (JWTError, KeyError, TypeError, ValueError) as exc:
            raise AuthenticationError(_INVALID_ACCESS) from exc

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def issue_refresh_token(self, user_id: int, session_id: int | None = None) -> str:
        """Sign a refresh JWT and persist its hash. The raw token is returned exactly once."""
        now = datetime.now(timezone.utc)
        expires = now + self.refresh_ttl
        jti = secrets.token_hex(16)
        payload = {
            "sub": str(user_id),
            "type": _REFRESH_TYPE,
            "jti": jti,
            "sid": session_id,
            "iat": now,
            "exp": expires,
        }
        token = jwt.encode(payload, self.settings.jwt_refresh_secret, algorithm=_ALGORITHM)
        self.store.create_refresh_token(
            RefreshToken(
                user_id=user_id,
                session_id=session_id,
                jti=jti,
                token_hash=self.hasher.hash(token),
                expires=expires,
            )
        )
        return token

    def issue_token_pair(self, user: User, session_id: int | None = None) -> TokenPair:
        return TokenPair(
            access_token=self.issue_access_token(user, session_id),
            refresh_token=self.issue_refresh_token(user.id, session_id),
        )

    def decode_refresh_token(self, token: str) -> RefreshTokenClaims:
        """Structure, signature, expiry and type check only -- no store lookup."""
        try:
            payload = jwt.decode(token, self.settings.jwt_refresh_secret, algorithms=[_ALGORITHM])
            if payload.get("type") != _REFRESH_TYPE:
                raise AuthenticationError(_INVALID_REFRESH)
            return RefreshTokenClaims(
                user_id=int(payload["sub"]),
                jti=str(payload["jti"]),
                session_id=payload.get("sid"),
                issued_at=_from_timestamp(payload["iat"]),
                expires_at=_from_timestamp(payload["exp"]),
            )
        except (JWTError, KeyError, TypeError, ValueError) as exc:
            raise AuthenticationError(_INVALID_REFRESH) from exc

    def verify_refresh_token(self, raw_token: str) -> tuple[int, RefreshToken]:
        """Return (user_id, stored row) for a live refresh token.

        Fails fast on bad structure, then compares the raw token against the
        user's active rows. Revoked and expired rows are never candidates.
        """
        claims = self.decode_refresh_token(raw_token)
        candidates = self.store.find_active_refresh_tokens(claims.user_id, jti=claims.jti)
        record = self.hasher.find_match(raw_token, candidates, lambda row: row.token_hash)
        if record is None:
            logger.info("Refresh token rejected for user_id=%s (no live match)", claims.user_id)
            raise AuthenticationError(_INVALID_REFRESH)
        return claims.user_id, record

    def rotate_refresh_token(self, raw_token: str) -> TokenPair:
        """Spend a refresh token and issue a new pair bound to the same session [R1]."""
        user_id, record = self.verify_refresh_token(raw_token)
        if not self.store.revoke_refresh_token_if_active(record.id):
            # Lost the race: another request spent this token between our read and write.
            logger.warning("Concurrent refresh token reuse detected for user_id=%s", user_id)
            raise AuthenticationError(_INVALID_REFRESH)
        if record.session_id is not None and not self._session_alive(record.session_id, user_id):
            logger.info("Refresh rejected for user_id=%s: session %s ended", user_id, record.session_id)
            raise AuthenticationError(_INVALID_REFRESH)
        user = self.store.get_user_by_id(user_id)
        if user is None:
            raise AuthenticationError(_INVALID_REFRESH)
        logger.info("Refresh token rotated for user_id=%s", user_id)
        return self.issue_token_pair(user, record.session_id)

    def _session_alive(self, session_id: int, user_id: int) -> bool:
        session = self.store.get_session(session_id)
        return (
            session is not None
            and session.user_id == user_id
            and session.expires > datetime.now(timezone.utc)
        )

    def revoke_all_for_user(self, user_id: int) -> int:
        count = self.store.revoke_refresh_tokens_for_user(user_id)
        logger.info("Revoked %d refresh token(s) for user_id=%s", count, user_id)
        return count

    def revoke_for_session(self, session_id: int, user_id: int) -> int:
        return self.store.revoke_refresh_tokens_for_session(session_id, user_id)

    def list_active_refresh_tokens(self, user_id: int) -> list[RefreshTokenSummary]:
        return [
            RefreshTokenSummary(id=t.id, created_at=t.created_at, expires=t.expires, session_id=t.session_id)
            for t in self.store.find_active_refresh_tokens(user_id)
        ]

    def cleanup_expired(self) -> int:
        """Delete refresh rows past their expiry. Idempotent."""
        return self.store.delete_expired_refresh_tokens()

    # ------------------------------------------------------------------
    # Session tokens
    # ------------------------------------------------------------------

    @staticmethod
    def generate_session_token() -> str:
        """32 random bytes as hex. A label for a session row, not a credential."""
        return secrets.token_hex(32)
