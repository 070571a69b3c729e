"""
auth/two_factor.py -- TOTP two-factor setup, verification and backup codes.

State per user:

    Disabled --generate_setup--> PendingSetup --confirm_enable--> Enabled --disable--> Disabled

  Disabled      no secret row, two_factor_enabled = False
  PendingSetup  secret row exists, two_factor_enabled = False
  Enabled       secret row exists, two_factor_enabled = True

generate_setup() may be called again while pending; it overwrites the secret.
Password and OTP prerequisites are the orchestrator's job (auth/service.py);
this module only moves state and checks codes.

Codes are RFC 6238 TOTP (30 s step, 6 digits, SHA-1) via pyotp, accepted
within +/-2 steps to absorb authenticator clock drift. accept_code() also
records the matched time step, so a code that has passed once (or any code
older than it) cannot pass again.

Backup codes are stored as bcrypt hashes and spent with a conditional update,
so each one works exactly once.

Step-up: some operations demand a 2FA verification younger than
two_factor_step_up_seconds. The timestamp lives in the caller's session
(api/ keeps it in the signed session cookie) and is checked by
require_step_up(); nothing about it is persisted here.
"""

from __future__ import annotations

import hmac
import logging
import re
import secrets
import string
from datetime import datetime, timezone

import pyotp

from auth.models import TwoFactorSecret, TwoFactorSetup, User
from auth.passwords import PasswordHasher
from auth.store import CredentialStore
from core.config import Settings
from core.errors import AuthenticationError, BadRequestError

logger = logging.getLogger("authcore.auth.two_factor")

VALID_WINDOW = 2
BACKUP_CODE_COUNT = 8
BACKUP_CODE_LENGTH = 8
_BACKUP_ALPHABET = string.ascii_uppercase + string.digits
_OTP_RE = re.compile(r"^\d{6}$")


def generate_backup_codes(count: int = BACKUP_CODE_COUNT, length: int = BACKUP_CODE_LENGTH) -> list[str]:
    return ["".join(secrets.choice(_BACKUP_ALPHABET) for _ in range(length)) for _ in range(count)]


def _matching_step(secret: str, code: str, moment: datetime) -> int | None:
    """Time step of the window slot that produced code, or None."""
    code = (code or "").strip()
    if not _OTP_RE.match(code):
        return None
    totp = pyotp.TOTP(secret)
    for offset in range(-VALID_WINDOW, VALID_WINDOW + 1):
        if hmac.compare_digest(code, totp.at(moment, offset)):
            return totp.timecode(moment) + offset
    return None


class TwoFactorService:
    def __init__(self, store: CredentialStore, hasher: PasswordHasher, settings: Settings) -> None:
        self.store = store
        self.hasher = hasher
        self.settings = settings

    def generate_setup(self, user_id: int, email: str) -> TwoFactorSetup:
        """Create a fresh secret and backup codes. 2FA stays disabled until confirmed."""
        secret = pyotp.random_base32(length=32)
        self.store.upsert_two_factor_secret(user_id, secret)
        backup_codes = self._store_new_backup_codes(user_id)
        logger.info("2FA setup generated for user_id=%s", user_id)
        return TwoFactorSetup(
            secret=secret,
            qr_code_uri=self.provisioning_uri(secret, email),
            backup_codes=backup_codes,
            manual_entry_key=secret,
        )

    def provisioning_uri(self, secret: str, email: str) -> str:
        """otpauth:// URI for authenticator apps (render it as a QR code client-side)."""
        return pyotp.TOTP(secret).provisioning_uri(name=email, issuer_name=self.settings.app_name)

    def verify_code(self, user_id: int, code: str, now: datetime | None = None) -> bool:
        """Check a 6-digit TOTP against the stored secret.

        Raises BadRequestError when 2FA was never set up. A malformed or wrong
        code is a plain False, not an exception.
        """
        record = self._secret(user_id)
        return _matching_step(record.secret, code, now or datetime.now(timezone.utc)) is not None

    def accept_code(self, user_id: int, code: str, now: datetime | None = None) -> bool:
        """verify_code() that also spends the code's time step."""
        record = self._secret(user_id)
        step = _matching_step(record.secret, code, now or datetime.now(timezone.utc))
        if step is None:
            return False
        if not self.store.claim_totp_step(user_id, step):
            logger.warning("Replayed TOTP code rejected for user_id=%s", user_id)
            return False
        return True

    def _secret(self, user_id: int) -> TwoFactorSecret:
        record = self.store.get_two_factor_secret(user_id)
        if record is None:
            raise BadRequestError("Two-factor authentication is not set up", code="two_factor_not_initialized")
        return record

    def confirm_enable(self, user_id: int) -> None:
        self.store.update_user(user_id, two_factor_enabled=True)
        logger.info("2FA enabled for user_id=%s", user_id)

    def disable(self, user_id: int) -> None:
        """Turn 2FA off and forget the secret and every backup code."""
        self.store.update_user(user_id, two_factor_enabled=False)
        self.store.delete_two_factor_secret(user_id)
        self.store.delete_backup_codes(user_id)
        logger.info("2FA disabled for user_id=%s", user_id)

    def is_enabled(self, user_id: int) -> bool:
        user = self.store.get_user_by_id(user_id)
        return bool(user and user.two_factor_enabled)

    def is_pending(self, user_id: int) -> bool:
        return not self.is_enabled(user_id) and self.store.get_two_factor_secret(user_id) is not None

    # ------------------------------------------------------------------
    # Backup codes
    # ------------------------------------------------------------------

    def regenerate_backup_codes(self, user_id: int) -> list[str]:
        """Issue a new set. Every previous code stops working."""
        codes = self._store_new_backup_codes(user_id)
        logger.info("Backup codes regenerated for user_id=%s", user_id)
        return codes

    def verify_backup_code(self, user_id: int, code: str) -> bool:
        """Spend one unused backup code. Returns False for unknown or already-used codes."""
        normalized = (code or "").strip().upper()
        if len(normalized) != BACKUP_CODE_LENGTH:
            return False
        candidates = self.store.list_unused_backup_codes(user_id)
        match = self.hasher.find_match(normalized, candidates, lambda row: row.code_hash)
        if match is None:
            return False
        spent = self.store.mark_backup_code_used(match.id)
        if spent:
            logger.info("Backup code used for user_id=%s", user_id)
        return spent

    def remaining_backup_codes(self, user_id: int) -> int:
        return len(self.store.list_unused_backup_codes(user_id))

    def _store_new_backup_codes(self, user_id: int) -> list[str]:
        codes = generate_backup_codes()
        self.store.replace_backup_codes(user_id, [self.hasher.hash(c) for c in codes])
        return codes

    # ------------------------------------------------------------------
    # Step-up freshness
    # ------------------------------------------------------------------

    def require_step_up(self, user: User, verified_at: float | None, now: datetime | None = None) -> None:
        """Raise unless the user has 2FA on and verified it within the step-up window.

        verified_at is a POSIX timestamp taken from the caller's session.
        """
        if not user.two_factor_enabled:
            raise AuthenticationError(
                "Two-factor authentication is required for this action", code="two_factor_required"
            )
        self.require_recent_verification(verified_at, now)

    def require_recent_verification(self, verified_at: float | None, now: datetime | None = None) -> None:
        moment = (now or datetime.now(timezone.utc)).timestamp()
        if verified_at is None or moment - float(verified_at) > self.settings.two_factor_step_up_seconds:
            raise AuthenticationError(
                "Two-factor authentication verification required", code="two_factor_verification_required"
            )
