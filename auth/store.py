"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper.
CredentialStore is the repository; the _row_to_* functions are the mappers.
Service code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Secrets are stored only as bcrypt hashes (refresh tokens, verification
  tokens, backup codes). The TOTP secret is the one exception: TOTP needs the
  shared secret itself to compute codes.

Atomicity:
  Each public method is one transaction. Methods that must not race on a
  check-then-act use a conditional UPDATE and report whether a row changed:
  revoke_refresh_token_if_active(), mark_backup_code_used() and
  claim_totp_step() are the places where exactly-once semantics matter.

Timestamps:
  DateTime(timezone=True) columns. SQLite hands them back naive, so the
  mappers re-attach UTC; every value written is UTC to begin with.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.models import (
    BackupCode,
    OAuthAccount,
    OAuthProvider,
    RefreshToken,
    Role,
    Session,
    TwoFactorSecret,
    User,
    VerificationPurpose,
    VerificationToken,
)
from core.config import get_settings

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_hash", Text, nullable=False),
    Column("name", String(100)),
    Column("role", String(16), nullable=False, server_default=Role.USER.value),
    Column("email_verified", DateTime(timezone=True)),
    Column("two_factor_enabled", Boolean, nullable=False, server_default="0"),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

_sessions = Table(
    "sessions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("session_token", String(64), nullable=False, unique=True),
    Column("user_agent", Text),
    Column("ip", String(64)),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("expires", DateTime(timezone=True), nullable=False),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("session_id", Integer),  # no FK: rows outlive their session for audit
    Column("jti", String(64), nullable=False, unique=True),
    Column("token_hash", Text, nullable=False),
    Column("revoked", Boolean, nullable=False, server_default="0"),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("expires", DateTime(timezone=True), nullable=False),
)

_verification_tokens = Table(
    "verification_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("identifier", String(255), nullable=False, index=True),
    Column("purpose", String(32), nullable=False),
    Column("token_hash", Text, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("expires", DateTime(timezone=True), nullable=False),
)

_two_factor_secrets = Table(
    "two_factor_secrets",
    _metadata,
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("secret", String(64), nullable=False),
    Column("last_used_step", Integer),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

_backup_codes = Table(
    "backup_codes",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("code_hash", Text, nullable=False),
    Column("used_at", DateTime(timezone=True)),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

_oauth_accounts = Table(
    "oauth_accounts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("provider", String(16), nullable=False),
    Column("provider_account_id", String(255), nullable=False),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("access_token", Text),
    Column("refresh_token", Text),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("provider", "provider_account_id", name="uq_oauth_provider_account"),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and FK enforcement for SQLite connections.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for users, sessions, tokens, 2FA secrets and OAuth links.

    Usage:
        store = CredentialStore("sqlite:///:memory:")
        user_id = store.create_user(User(email="a@x.com", password_hash=hasher.hash("pw")))
        user = store.get_user_by_email("a@x.com")
        store.close()
    """

    # Columns update_user() will write. Anything else is a programming error.
    _USER_FIELDS: set = {"email", "password_hash", "name", "role", "email_verified", "two_factor_enabled"}

    def __init__(self, db_url: str | None = None) -> None:
        db_url = db_url or get_settings().database_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        Callers translate that into ConflictError -- it is the backstop for two
        concurrent registrations that both passed the existence check.
        """
        now = _utcnow()
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    email=user.email,
                    password_hash=user.password_hash,
                    name=user.name,
                    role=Role(user.role).value,
                    email_verified=user.email_verified,
                    two_factor_enabled=user.two_factor_enabled,
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_user_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_user_by_email(self, email: str) -> User | None:
        """Exact, case-sensitive lookup. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(self) -> list[User]:
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.id)).fetchall()
        return [_row_to_user(r) for r in rows]

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable fields on an existing user.

        Returns True if a row was updated, False if user_id was not found.
        Unknown field names raise ValueError rather than being ignored.
        """
        unknown = set(fields) - self._USER_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        if "role" in fields:
            fields["role"] = Role(fields["role"]).value
        fields["updated_at"] = _utcnow()
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        now = _utcnow()
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.insert().values(
                    user_id=session.user_id,
                    session_token=session.session_token,
                    user_agent=session.user_agent,
                    ip=session.ip,
                    created_at=now,
                    expires=session.expires,
                )
            )
            conn.commit()
            session_id = result.inserted_primary_key[0]
        session.id = session_id
        session.created_at = now
        return session

    def get_session(self, session_id: int) -> Session | None:
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.id == session_id)).fetchone()
        return _row_to_session(row) if row is not None else None

    def list_active_sessions(self, user_id: int, now: datetime | None = None) -> list[Session]:
        """Unexpired sessions for a user, newest first."""
        moment = now or _utcnow()
        with self.engine.connect() as conn:
            rows = conn.execute(
                _sessions.select()
                .where((_sessions.c.user_id == user_id) & (_sessions.c.expires > moment))
                .order_by(_sessions.c.created_at.desc(), _sessions.c.id.desc())
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def delete_session(self, session_id: int, user_id: int) -> bool:
        """Delete one session. user_id is part of the WHERE clause (IDOR guard)."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.delete().where((_sessions.c.id == session_id) & (_sessions.c.user_id == user_id))
            )
            conn.commit()
        return result.rowcount > 0

    def delete_sessions_for_user(self, user_id: int) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.user_id == user_id))
            conn.commit()
        return result.rowcount

    def delete_expired_sessions(self, now: datetime | None = None) -> int:
        moment = now or _utcnow()
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.expires < moment))
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def create_refresh_token(self, token: RefreshToken) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.insert().values(
                    user_id=token.user_id,
                    session_id=token.session_id,
                    jti=token.jti,
                    token_hash=token.token_hash,
                    revoked=False,
                    created_at=_utcnow(),
                    expires=token.expires,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def find_active_refresh_tokens(
        self, user_id: int, jti: str | None = None, now: datetime | None = None
    ) -> list[RefreshToken]:
        """Non-revoked, unexpired refresh rows for a user, optionally narrowed by jti."""
        moment = now or _utcnow()
        condition = (
            (_refresh_tokens.c.user_id == user_id)
            & (_refresh_tokens.c.revoked.is_(False))
            & (_refresh_tokens.c.expires > moment)
        )
        if jti is not None:
            condition = condition & (_refresh_tokens.c.jti == jti)
        with self.engine.connect() as conn:
            rows = conn.execute(
                _refresh_tokens.select().where(condition).order_by(_refresh_tokens.c.created_at.desc())
            ).fetchall()
        return [_row_to_refresh_token(r) for r in rows]

    def revoke_refresh_token_if_active(self, token_id: int) -> bool:
        """Atomically flip revoked=False -> True. Returns True only for the caller that flipped it.

        Two concurrent rotations of the same token both reach this UPDATE; the
        database serializes them and only one sees rowcount == 1.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.id == token_id) & (_refresh_tokens.c.revoked.is_(False)))
                .values(revoked=True)
            )
            conn.commit()
        return result.rowcount == 1

    def revoke_refresh_tokens_for_user(self, user_id: int) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.user_id == user_id) & (_refresh_tokens.c.revoked.is_(False)))
                .values(revoked=True)
            )
            conn.commit()
        return result.rowcount

    def revoke_refresh_tokens_for_session(self, session_id: int, user_id: int) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where(
                    (_refresh_tokens.c.session_id == session_id)
                    & (_refresh_tokens.c.user_id == user_id)
                    & (_refresh_tokens.c.revoked.is_(False))
                )
                .values(revoked=True)
            )
            conn.commit()
        return result.rowcount

    def delete_expired_refresh_tokens(self, now: datetime | None = None) -> int:
        moment = now or _utcnow()
        with self.engine.connect() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.expires < moment))
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Verification tokens
    # ------------------------------------------------------------------

    def replace_verification_token(self, token: VerificationToken) -> int:
        """Delete prior tokens for identifier+purpose, then insert this one, in one transaction.

        Keeps at most one live token per identifier and purpose. Two concurrent
        calls resolve as last-writer-wins.
        """
        purpose = VerificationPurpose(token.purpose).value
        with self.engine.begin() as conn:
            conn.execute(
                _verification_tokens.delete().where(
                    (_verification_tokens.c.identifier == token.identifier)
                    & (_verification_tokens.c.purpose == purpose)
                )
            )
            result = conn.execute(
                _verification_tokens.insert().values(
                    identifier=token.identifier,
                    purpose=purpose,
                    token_hash=token.token_hash,
                    created_at=_utcnow(),
                    expires=token.expires,
                )
            )
            return result.inserted_primary_key[0]

    def find_active_verification_tokens(
        self,
        purpose: VerificationPurpose,
        identifier: str | None = None,
        now: datetime | None = None,
    ) -> list[VerificationToken]:
        moment = now or _utcnow()
        condition = (_verification_tokens.c.purpose == VerificationPurpose(purpose).value) & (
            _verification_tokens.c.expires > moment
        )
        if identifier is not None:
            condition = condition & (_verification_tokens.c.identifier == identifier)
        with self.engine.connect() as conn:
            rows = conn.execute(
                _verification_tokens.select().where(condition).order_by(_verification_tokens.c.created_at.desc())
            ).fetchall()
        return [_row_to_verification_token(r) for r in rows]

    def delete_verification_token(self, token_id: int) -> bool:
        """Delete a redeemed token. False means another request already consumed it."""
        with self.engine.connect() as conn:
            result = conn.execute(_verification_tokens.delete().where(_verification_tokens.c.id == token_id))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Two-factor secrets and backup codes
    # ------------------------------------------------------------------

    def upsert_two_factor_secret(self, user_id: int, secret: str) -> None:
        """Create or overwrite the user's TOTP secret."""
        now = _utcnow()
        with self.engine.begin() as conn:
            updated = conn.execute(
                _two_factor_secrets.update()
                .where(_two_factor_secrets.c.user_id == user_id)
                .values(secret=secret, last_used_step=None, created_at=now)
            )
            if updated.rowcount == 0:
                conn.execute(_two_factor_secrets.insert().values(user_id=user_id, secret=secret, created_at=now))

    def get_two_factor_secret(self, user_id: int) -> TwoFactorSecret | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _two_factor_secrets.select().where(_two_factor_secrets.c.user_id == user_id)
            ).fetchone()
        if row is None:
            return None
        return TwoFactorSecret(
            user_id=row.user_id,
            secret=row.secret,
            last_used_step=row.last_used_step,
            created_at=_as_utc(row.created_at),
        )

    def claim_totp_step(self, user_id: int, step: int) -> bool:
        """Record step as the newest accepted TOTP time step.

        Returns False when that step or a later one was already accepted, so
        each code is good for one verification only.
        """
        column = _two_factor_secrets.c.last_used_step
        with self.engine.connect() as conn:
            result = conn.execute(
                _two_factor_secrets.update()
                .where(_two_factor_secrets.c.user_id == user_id)
                .where(column.is_(None) | (column < step))
                .values(last_used_step=step)
            )
            conn.commit()
        return result.rowcount > 0

    def delete_two_factor_secret(self, user_id: int) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_two_factor_secrets.delete().where(_two_factor_secrets.c.user_id == user_id))
            conn.commit()
        return result.rowcount > 0

    def replace_backup_codes(self, user_id: int, code_hashes: list[str]) -> None:
        """Swap the user's whole backup-code set for a new one in one transaction."""
        now = _utcnow()
        with self.engine.begin() as conn:
            conn.execute(_backup_codes.delete().where(_backup_codes.c.user_id == user_id))
            if code_hashes:
                conn.execute(
                    _backup_codes.insert(),
                    [{"user_id": user_id, "code_hash": h, "created_at": now} for h in code_hashes],
                )

    def list_unused_backup_codes(self, user_id: int) -> list[BackupCode]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _backup_codes.select()
                .where((_backup_codes.c.user_id == user_id) & (_backup_codes.c.used_at.is_(None)))
                .order_by(_backup_codes.c.id)
            ).fetchall()
        return [_row_to_backup_code(r) for r in rows]

    def mark_backup_code_used(self, code_id: int) -> bool:
        """Conditional update: a code can be spent once even under concurrent use."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _backup_codes.update()
                .where((_backup_codes.c.id == code_id) & (_backup_codes.c.used_at.is_(None)))
                .values(used_at=_utcnow())
            )
            conn.commit()
        return result.rowcount == 1

    def delete_backup_codes(self, user_id: int) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(_backup_codes.delete().where(_backup_codes.c.user_id == user_id))
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # OAuth accounts
    # ------------------------------------------------------------------

    def get_oauth_account(self, provider: OAuthProvider, provider_account_id: str) -> OAuthAccount | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _oauth_accounts.select().where(
                    (_oauth_accounts.c.provider == OAuthProvider(provider).value)
                    & (_oauth_accounts.c.provider_account_id == provider_account_id)
                )
            ).fetchone()
        return _row_to_oauth_account(row) if row is not None else None

    def list_oauth_accounts(self, user_id: int) -> list[OAuthAccount]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _oauth_accounts.select().where(_oauth_accounts.c.user_id == user_id).order_by(_oauth_accounts.c.id)
            ).fetchall()
        return [_row_to_oauth_account(r) for r in rows]

    def upsert_oauth_account(self, account: OAuthAccount) -> int:
        """Insert the (provider, provider_account_id) link or refresh its stored tokens.

        The refresh_token column is only overwritten when a new value is given;
        providers do not resend it on every login.
        """
        provider = OAuthProvider(account.provider).value
        existing = self.get_oauth_account(account.provider, account.provider_account_id)
        if existing is None:
            now = _utcnow()
            try:
                with self.engine.begin() as conn:
                    result = conn.execute(
                        _oauth_accounts.insert().values(
                            provider=provider,
                            provider_account_id=account.provider_account_id,
                            user_id=account.user_id,
                            access_token=account.access_token,
                            refresh_token=account.refresh_token,
                            created_at=now,
                            updated_at=now,
                        )
                    )
                    return result.inserted_primary_key[0]
            except IntegrityError:
                # A concurrent login linked the same identity first; fall through to update.
                existing = self.get_oauth_account(account.provider, account.provider_account_id)
                if existing is None:
                    raise

        values: dict = {"access_token": account.access_token, "updated_at": _utcnow()}
        if account.refresh_token is not None:
            values["refresh_token"] = account.refresh_token
        with self.engine.connect() as conn:
            conn.execute(_oauth_accounts.update().where(_oauth_accounts.c.id == existing.id).values(**values))
            conn.commit()
        return existing.id

    def delete_oauth_accounts(self, user_id: int, provider: OAuthProvider) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _oauth_accounts.delete().where(
                    (_oauth_accounts.c.user_id == user_id)
                    & (_oauth_accounts.c.provider == OAuthProvider(provider).value)
                )
            )
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def ping(self) -> bool:
        """Cheap connectivity probe for the health endpoint."""
        with self.engine.connect() as conn:
            conn.execute(select(func.count()).select_from(_users)).scalar()
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        password_hash=row.password_hash,
        name=row.name,
        role=Role(row.role),
        email_verified=_as_utc(row.email_verified),
        two_factor_enabled=bool(row.two_factor_enabled),
        created_at=_as_utc(row.created_at),
        updated_at=_as_utc(row.updated_at),
    )


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        user_id=row.user_id,
        session_token=row.session_token,
        user_agent=row.user_agent,
        ip=row.ip,
        created_at=_as_utc(row.created_at),
        expires=_as_utc(row.expires),
    )


def _row_to_refresh_token(row) -> RefreshToken:
    return RefreshToken(
        id=row.id,
        user_id=row.user_id,
        session_id=row.session_id,
        jti=row.jti,
        token_hash=row.token_hash,
        revoked=bool(row.revoked),
        created_at=_as_utc(row.created_at),
        expires=_as_utc(row.expires),
    )


def _row_to_verification_token(row) -> VerificationToken:
    return VerificationToken(
        id=row.id,
        identifier=row.identifier,
        purpose=VerificationPurpose(row.purpose),
        token_hash=row.token_hash,
        created_at=_as_utc(row.created_at),
        expires=_as_utc(row.expires),
    )


def _row_to_backup_code(row) -> BackupCode:
    return BackupCode(
        id=row.id,
        user_id=row.user_id,
        code_hash=row.code_hash,
        used_at=_as_utc(row.used_at),
        created_at=_as_utc(row.created_at),
    )


def _row_to_oauth_account(row) -> OAuthAccount:
    return OAuthAccount(
        id=row.id,
        provider=OAuthProvider(row.provider),
        provider_account_id=row.provider_account_id,
        user_id=row.user_id,
        access_token=row.access_token,
        refresh_token=row.refresh_token,
        created_at=_as_utc(row.created_at),
        updated_at=_as_utc(row.updated_at),
    )
