"""
auth/service.py -- AuthService, the single entry point for every auth flow.

Routes call AuthService; AuthService coordinates the store, the hasher, the
token and two-factor services, the OAuth linker and the notifier. Nothing
below this layer knows about HTTP, and nothing above it touches the store.

Security design decisions:
  [C1] Login does not reveal which half of the credential was wrong. Unknown
       email and wrong password raise the same AuthenticationError, and the
       unknown-email branch burns one bcrypt compare so the two take the same
       time.

  [C2] forgot_password() and resend_verification() return the same message
       whether or not the account exists. resend_verification() does say
       "already verified" for a verified account -- a smaller leak accepted
       for usability.

  [C3] Password change and password reset revoke every refresh token the
       user holds. Access tokens already issued stay valid until they expire.

  [C4] One-time secrets (verification codes, reset tokens) are purpose
       tagged. An email-verification code can never be redeemed as a reset
       token and vice versa. Redemption deletes the row first; if the delete
       loses a race the redemption fails.

  [C5] 2FA setup is confirmed with a valid TOTP (confirm_two_factor). The
       login-time check (verify_two_factor) requires 2FA to be enabled already
       and never turns it on.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import IntegrityError

from auth.models import (
    AuthResult,
    EmailVerificationResult,
    IssuedSecret,
    OAuthAccount,
    Session,
    SessionOverview,
    TokenPair,
    TwoFactorSetup,
    TwoFactorVerification,
    User,
    VerificationPurpose,
    VerificationToken,
)
from auth.notifications import LoggingNotifier, Notifier
from auth.oauth import OAuthService
from auth.passwords import PasswordHasher
from auth.store import CredentialStore
from auth.tokens import TokenService
from auth.two_factor import TwoFactorService
from core.config import Settings
from core.errors import AuthenticationError, BadRequestError, ConflictError, NotFoundError

logger = logging.getLogger("authcore.auth")

_INVALID_CREDENTIALS = "Invalid email or password"
_INVALID_OTP = "Invalid two-factor code"
_FORGOT_MESSAGE = "If the email exists, a password reset link has been sent"
_RESEND_MESSAGE = "If the email exists, a verification code has been sent"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuthService:
    """Orchestrates registration, login, tokens, passwords, 2FA and OAuth.

    Usage:
        service = AuthService(store, hasher, tokens, two_factor, oauth, notifier, settings)
        user = service.register("a@x.com", "P@ssw0rd1", name="Ada")
        result = service.login("a@x.com", "P@ssw0rd1", user_agent="curl", ip="127.0.0.1")
        pair = service.refresh(result.tokens.refresh_token)
    """

    def __init__(
        self,
        store: CredentialStore,
        hasher: PasswordHasher,
        tokens: TokenService,
        two_factor: TwoFactorService,
        oauth: OAuthService,
        notifier: Notifier | None,
        settings: Settings,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.tokens = tokens
        self.two_factor = two_factor
        self.oauth = oauth
        self.notifier = notifier or LoggingNotifier()
        self.settings = settings

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_user(self, user_id: int) -> User:
        user = self.store.get_user_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    def _check_password(self, user: User, password: str, message: str = "Incorrect password") -> None:
        if not self.hasher.verify(password, user.password_hash):
            raise BadRequestError(message)

    def _issue_secret(self, identifier: str, purpose: VerificationPurpose, raw: str, ttl: timedelta) -> IssuedSecret:
        """Hash and store a one-time secret, replacing any earlier one for the same purpose."""
        expires = _utcnow() + ttl
        self.store.replace_verification_token(
            VerificationToken(
                identifier=identifier,
                purpose=purpose,
                token_hash=self.hasher.hash(raw),
                expires=expires,
            )
        )
        return IssuedSecret(raw=raw, expires=expires)

    def _issue_verification_code(self, email: str) -> IssuedSecret:
        code = f"{secrets.randbelow(900000) + 100000}"
        issued = self._issue_secret(
            email,
            VerificationPurpose.EMAIL_VERIFICATION,
            code,
            timedelta(minutes=self.settings.verification_code_expire_minutes),
        )
        if not self.notifier.send_verification_code(email, issued.raw):
            logger.warning("Verification code delivery failed for %s", email)
        return issued

    def _redeem(self, purpose: VerificationPurpose, raw: str, identifier: str | None = None) -> VerificationToken | None:
        """Find the live token matching raw and consume it. None if absent or already consumed [C4]."""
        candidates = self.store.find_active_verification_tokens(purpose, identifier=identifier)
        match = self.hasher.find_match(raw, candidates, lambda row: row.token_hash)
        if match is None or not self.store.delete_verification_token(match.id):
            return None
        return match

    def _start_session(self, user: User, user_agent: str | None, ip: str | None) -> tuple[Session, TokenPair]:
        session = self.store.create_session(
            Session(
                user_id=user.id,
                session_token=self.tokens.generate_session_token(),
                user_agent=user_agent,
                ip=ip,
                expires=_utcnow() + timedelta(days=self.settings.session_expire_days),
            )
        )
        return session, self.tokens.issue_token_pair(user, session.id)

    # ------------------------------------------------------------------
    # Registration and login
    # ------------------------------------------------------------------

    def register(self, email: str, password: str, name: str | None = None) -> User:
        """Create an unverified account and send its 6-digit verification code."""
        if self.store.get_user_by_email(email) is not None:
            raise ConflictError("Email is already registered")
        try:
            user_id = self.store.create_user(
                User(email=email, password_hash=self.hasher.hash(password), name=name)
            )
        except IntegrityError as exc:
            # Concurrent registration with the same email won the insert
            raise ConflictError("Email is already registered") from exc
        self._issue_verification_code(email)
        logger.info("Registered user_id=%s", user_id)
        return self.store.get_user_by_id(user_id)

    def login(self, email: str, password: str, user_agent: str | None = None, ip: str | None = None) -> AuthResult:
        user = self.store.get_user_by_email(email)
        if user is None:
            self.hasher.equalize_timing(password)
            logger.info("Login failed: unknown email")
            raise AuthenticationError(_INVALID_CREDENTIALS)
        if not self.hasher.verify(password, user.password_hash):
            logger.info("Login failed for user_id=%s: bad password", user.id)
            raise AuthenticationError(_INVALID_CREDENTIALS)
        session, pair = self._start_session(user, user_agent, ip)
        logger.info("Login succeeded for user_id=%s session_id=%s", user.id, session.id)
        return AuthResult(user=user, tokens=pair, session_id=session.id)

    def refresh(self, refresh_token: str) -> TokenPair:
        return self.tokens.rotate_refresh_token(refresh_token)

    def logout(self, user_id: int, session_id: int | None = None) -> None:
        """End one session and its refresh tokens. Without a session id every refresh token goes."""
        if session_id is None:
            self.tokens.revoke_all_for_user(user_id)
        else:
            self.tokens.revoke_for_session(session_id, user_id)
            self.store.delete_session(session_id, user_id)
        logger.info("Logout user_id=%s session_id=%s", user_id, session_id)

    def logout_all(self, user_id: int) -> None:
        removed = self.store.delete_sessions_for_user(user_id)
        self.tokens.revoke_all_for_user(user_id)
        logger.info("Logout from all devices user_id=%s (%d session(s))", user_id, removed)

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    def change_password(self, user_id: int, current_password: str, new_password: str) -> str:
        user = self._require_user(user_id)
        self._check_password(user, current_password, "Current password is incorrect")
        self.store.update_user(user_id, password_hash=self.hasher.hash(new_password))
        self.tokens.revoke_all_for_user(user_id)
        logger.info("Password changed for user_id=%s", user_id)
        return "Password changed successfully"

    def forgot_password(self, email: str) -> str:
        """Issue a 1-hour reset token if the account exists. Same answer either way [C2]."""
        user = self.store.get_user_by_email(email)
        if user is None:
            self.hasher.equalize_timing(email)
            return _FORGOT_MESSAGE
        issued = self._issue_secret(
            email,
            VerificationPurpose.PASSWORD_RESET,
            secrets.token_hex(32),
            timedelta(minutes=self.settings.password_reset_expire_minutes),
        )
        if not self.notifier.send_password_reset(email, issued.raw):
            logger.warning("Password reset delivery failed for user_id=%s", user.id)
        logger.info("Password reset requested for user_id=%s", user.id)
        return _FORGOT_MESSAGE

    def reset_password(self, token: str, new_password: str) -> str:
        record = self._redeem(VerificationPurpose.PASSWORD_RESET, token)
        if record is None:
            raise BadRequestError("Invalid or expired reset token")
        user = self.store.get_user_by_email(record.identifier)
        if user is None:
            raise NotFoundError("User not found")
        self.store.update_user(user.id, password_hash=self.hasher.hash(new_password))
        self.tokens.revoke_all_for_user(user.id)
        logger.info("Password reset completed for user_id=%s", user.id)
        return "Password has been reset successfully"

    # ------------------------------------------------------------------
    # Email verification
    # ------------------------------------------------------------------

    def verify_email(self, email: str, code: str) -> EmailVerificationResult:
        record = self._redeem(VerificationPurpose.EMAIL_VERIFICATION, code, identifier=email)
        if record is None:
            raise BadRequestError("Invalid or expired verification code")
        user = self.store.get_user_by_email(record.identifier)
        if user is None:
            raise NotFoundError("User not found")
        self.store.update_user(user.id, email_verified=_utcnow())
        logger.info("Email verified for user_id=%s", user.id)
        if user.name:
            self.notifier.send_welcome(user.email, user.name)
        return EmailVerificationResult(verified=True, message="Email verified successfully")

    def resend_verification(self, email: str) -> EmailVerificationResult:
        user = self.store.get_user_by_email(email)
        if user is None:
            return EmailVerificationResult(verified=False, message=_RESEND_MESSAGE)
        if user.email_verified is not None:
            return EmailVerificationResult(verified=True, message="Email is already verified")
        self._issue_verification_code(email)
        return EmailVerificationResult(verified=False, message=_RESEND_MESSAGE)

    # ------------------------------------------------------------------
    # Two-factor
    # ------------------------------------------------------------------

    def enable_two_factor(self, user_id: int, password: str) -> TwoFactorSetup:
        """Start setup. 2FA is not on until confirm_two_factor() sees a valid code."""
        user = self._require_user(user_id)
        self._check_password(user, password)
        if user.two_factor_enabled:
            raise BadRequestError("Two-factor authentication is already enabled")
        return self.two_factor.generate_setup(user.id, user.email)

    def confirm_two_factor(self, user_id: int, code: str) -> None:
        """PendingSetup -> Enabled [C5]."""
        user = self._require_user(user_id)
        if user.two_factor_enabled:
            raise BadRequestError("Two-factor authentication is already enabled")
        if not self.two_factor.verify_code(user_id, code):
            raise AuthenticationError(_INVALID_OTP)
        self.two_factor.confirm_enable(user_id)

    def verify_two_factor(self, user_id: int, code: str, now: datetime | None = None) -> TwoFactorVerification:
        """Login-time check. Accepts a TOTP code or an unused backup code."""
        user = self._require_user(user_id)
        if not user.two_factor_enabled:
            raise BadRequestError("Two-factor authentication is not enabled")
        if self.two_factor.accept_code(user_id, code, now=now):
            method = "totp"
        elif self.two_factor.verify_backup_code(user_id, code):
            method = "backup_code"
        else:
            logger.info("2FA verification failed for user_id=%s", user_id)
            raise AuthenticationError(_INVALID_OTP)
        return TwoFactorVerification(
            verified_at=now or _utcnow(),
            method=method,
            remaining_backup_codes=self.two_factor.remaining_backup_codes(user_id),
        )

    def disable_two_factor(self, user_id: int, password: str, code: str) -> None:
        user = self._require_user(user_id)
        self._check_password(user, password)
        if not user.two_factor_enabled:
            raise BadRequestError("Two-factor authentication is not enabled")
        if not self.two_factor.verify_code(user_id, code):
            raise AuthenticationError(_INVALID_OTP)
        self.two_factor.disable(user_id)

    def regenerate_backup_codes(self, user_id: int, password: str) -> list[str]:
        user = self._require_user(user_id)
        self._check_password(user, password)
        if not user.two_factor_enabled:
            raise BadRequestError("Two-factor authentication is not enabled")
        return self.two_factor.regenerate_backup_codes(user_id)

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    def oauth_login(
        self,
        provider,
        access_token: str,
        id_token: str | None = None,
        user_agent: str | None = None,
        ip: str | None = None,
        provider_refresh_token: str | None = None,
    ) -> AuthResult:
        """Verify a provider assertion, resolve the local user, then log in like a password login."""
        identity = self.oauth.verify_assertion(provider, access_token, id_token)
        user, is_new = self.oauth.link_or_create(identity, access_token, provider_refresh_token)
        session, pair = self._start_session(user, user_agent, ip)
        logger.info(
            "OAuth login via %s for user_id=%s (new=%s)", identity.provider.value, user.id, is_new
        )
        return AuthResult(user=user, tokens=pair, session_id=session.id, is_new_user=is_new)

    def list_oauth_accounts(self, user_id: int) -> list[OAuthAccount]:
        return self.oauth.list_accounts(user_id)

    def unlink_oauth_account(self, user_id: int, provider) -> None:
        self.oauth.unlink(user_id, provider)

    # ------------------------------------------------------------------
    # Sessions and maintenance
    # ------------------------------------------------------------------

    def list_sessions(self, user_id: int) -> SessionOverview:
        return SessionOverview(
            sessions=self.store.list_active_sessions(user_id),
            refresh_tokens=self.tokens.list_active_refresh_tokens(user_id),
        )

    def revoke_session(self, user_id: int, session_id: int) -> None:
        """Delete one of the caller's sessions and revoke its refresh tokens."""
        self.tokens.revoke_for_session(session_id, user_id)
        if not self.store.delete_session(session_id, user_id):
            raise NotFoundError("Session not found")
        logger.info("Session %s revoked for user_id=%s", session_id, user_id)

    def cleanup_expired(self) -> int:
        """Delete expired refresh tokens and sessions; returns the combined count."""
        tokens = self.tokens.cleanup_expired()
        sessions = self.store.delete_expired_sessions()
        logger.info("Cleanup removed %d refresh token(s) and %d session(s)", tokens, sessions)
        return tokens + sessions

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def get_user(self, user_id: int) -> User:
        return self._require_user(user_id)

    def list_users(self) -> list[User]:
        return self.store.list_users()
