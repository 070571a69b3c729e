"""
auth/oauth.py -- OAuth provider verification and account linking.

Two entry styles are supported:

  Token assertion: the client already holds a provider access token (and for
      Google optionally an ID token) and posts it to /auth/oauth/login. The
      provider adapter verifies it server-side and returns a normalized
      OAuthIdentity.

  Authorization code: authorization_url() builds the redirect (Authlib
      OAuth2Session generates and returns the state value; the caller keeps it
      in the signed session cookie and compares it on callback), and
      exchange_code() swaps the code for provider tokens.

Security notes:
  [H1] Google: an ID token is verified locally (RS256 signature against
       Google's published JWKS, audience = our client id, issuer
       accounts.google.com) and rejected when email_verified is false.
       A bare access token is first checked with the tokeninfo endpoint and
       must carry our client id as aud or azp; userinfo is read only after.
       Facebook: the access token is checked with debug_token using the app
       credentials, and must have been issued to OUR app_id -- a token minted
       for another app would otherwise log its holder in here.

  Every provider failure (network error, bad signature, missing email)
  surfaces as AuthenticationError with a generic per-provider message. The
  underlying cause is logged, never returned.

  One requests.Session is injected and shared by the adapters; tests pass a
  mock in its place.

Supported providers:
  google   -- ID token (preferred) or userinfo endpoint.
  facebook -- debug_token + Graph /me.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timezone

import requests
from authlib.common.errors import AuthlibBaseError
from authlib.integrations.requests_client import OAuth2Session
from jose import JWTError, jwt

from auth.models import OAuthAccount, OAuthIdentity, OAuthProvider, User
from auth.passwords import PasswordHasher
from auth.store import CredentialStore
from core.config import Settings
from core.errors import AuthenticationError, BadRequestError, NotFoundError

logger = logging.getLogger("authcore.auth.oauth")

_HTTP_TIMEOUT = 10

GOOGLE_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"  # noqa: S105 -- URL, not a password
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v3/userinfo"
GOOGLE_TOKENINFO_URL = "https://oauth2.googleapis.com/tokeninfo"
GOOGLE_JWKS_URL = "https://www.googleapis.com/oauth2/v3/certs"
GOOGLE_ISSUERS = ["accounts.google.com", "https://accounts.google.com"]

FACEBOOK_GRAPH_URL = "https://graph.facebook.com"
FACEBOOK_AUTHORIZE_URL = "https://www.facebook.com/v18.0/dialog/oauth"
FACEBOOK_TOKEN_URL = "https://graph.facebook.com/v18.0/oauth/access_token"  # noqa: S105 -- URL, not a password

_LABELS = {OAuthProvider.GOOGLE: "Google", OAuthProvider.FACEBOOK: "Facebook"}


# ---------------------------------------------------------------------------
# Provider adapters
# ---------------------------------------------------------------------------


class GoogleProvider:
    name = OAuthProvider.GOOGLE
    authorize_url = GOOGLE_AUTHORIZE_URL
    token_url = GOOGLE_TOKEN_URL
    scope = "openid email profile"

    def __init__(self, client_id: str, client_secret: str, http: requests.Session) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.http = http
        self._jwks: dict | None = None

    def verify(self, access_token: str, id_token: str | None = None) -> OAuthIdentity:
        """Return the Google identity behind the token. Prefers the ID token when given."""
        try:
            if id_token:
                return self._verify_id_token(id_token, access_token)
            return self._fetch_userinfo(access_token)
        except (requests.RequestException, JWTError, KeyError, ValueError) as exc:
            logger.warning("Google token verification failed: %s", exc)
            raise AuthenticationError("Invalid Google token") from exc

    def _verify_id_token(self, id_token: str, access_token: str | None) -> OAuthIdentity:
        claims = jwt.decode(
            id_token,
            self._signing_keys(jwt.get_unverified_header(id_token).get("kid")),
            algorithms=["RS256"],
            audience=self.client_id,
            issuer=GOOGLE_ISSUERS,
            # Enables the at_hash check when the token carries one
            access_token=access_token or None,
        )
        if claims.get("email_verified") is False:
            raise ValueError("email not verified by Google")
        return _identity(self.name, claims.get("sub"), claims.get("email"), claims.get("name"), claims.get("picture"))

    def _fetch_userinfo(self, access_token: str) -> OAuthIdentity:
        grant = self._check_audience(access_token)
        resp = self.http.get(
            GOOGLE_USERINFO_URL,
            headers={"Authorization": f"Bearer {access_token}"},
            timeout=_HTTP_TIMEOUT,
        )
        resp.raise_for_status()
        info = resp.json()
        if info.get("email_verified") is False:
            raise ValueError("email not verified by Google")
        if grant.get("sub") and info.get("sub") and grant["sub"] != info["sub"]:
            raise ValueError("tokeninfo and userinfo disagree on the account")
        return _identity(
            self.name, info.get("sub") or info.get("id"), info.get("email"), info.get("name"), info.get("picture")
        )

    def _check_audience(self, access_token: str) -> dict:
        resp = self.http.get(GOOGLE_TOKENINFO_URL, params={"access_token": access_token}, timeout=_HTTP_TIMEOUT)
        resp.raise_for_status()
        grant = resp.json()
        if self.client_id not in (grant.get("aud"), grant.get("azp")):
            raise ValueError("token was issued to a different client")
        return grant

    def _signing_keys(self, kid: str | None) -> dict:
        """Google's JWKS, cached until a token names a key id the cache lacks."""
        if self._jwks is None or (kid and kid not in _key_ids(self._jwks)):
            resp = self.http.get(GOOGLE_JWKS_URL, timeout=_HTTP_TIMEOUT)
            resp.raise_for_status()
            self._jwks = resp.json()
        return self._jwks


def _key_ids(jwks: dict) -> set:
    return {key.get("kid") for key in jwks.get("keys", [])}


class FacebookProvider:
    name = OAuthProvider.FACEBOOK
    authorize_url = FACEBOOK_AUTHORIZE_URL
    token_url = FACEBOOK_TOKEN_URL
    scope = "email public_profile"

    def __init__(self, client_id: str, client_secret: str, http: requests.Session) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.http = http

    def verify(self, access_token: str, id_token: str | None = None) -> OAuthIdentity:
        """Check the token was issued to this app, then read the profile."""
        try:
            debug = self.http.get(
                f"{FACEBOOK_GRAPH_URL}/debug_token",
                params={"input_token": access_token, "access_token": f"{self.client_id}|{self.client_secret}"},
                timeout=_HTTP_TIMEOUT,
            )
            debug.raise_for_status()
            data = debug.json().get("data") or {}
            if not data.get("is_valid"):
                raise ValueError("token reported invalid")
            if str(data.get("app_id")) != str(self.client_id):
                raise ValueError("token was issued to a different app")

            me = self.http.get(
                f"{FACEBOOK_GRAPH_URL}/me",
                params={"fields": "id,email,name,picture", "access_token": access_token},
                timeout=_HTTP_TIMEOUT,
            )
            me.raise_for_status()
            profile = me.json()
            picture = ((profile.get("picture") or {}).get("data") or {}).get("url")
            return _identity(self.name, profile.get("id"), profile.get("email"), profile.get("name"), picture)
        except (requests.RequestException, KeyError, ValueError) as exc:
            logger.warning("Facebook token verification failed: %s", exc)
            raise AuthenticationError("Invalid Facebook access token") from exc


def _identity(provider: OAuthProvider, external_id, email, name, picture) -> OAuthIdentity:
    if not external_id:
        raise ValueError(f"{provider.value}: missing account id")
    if not email:
        raise ValueError(f"{provider.value}: email not provided")
    return OAuthIdentity(provider=provider, external_id=str(external_id), email=email, name=name, picture=picture)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class OAuthService:
    """Verifies provider assertions and maps external identities to local users.

    Only providers with both client id and secret configured are registered.
    Asking for any other provider is an AuthenticationError, the same failure
    a bad token produces.
    """

    def __init__(
        self,
        store: CredentialStore,
        hasher: PasswordHasher,
        settings: Settings,
        http: requests.Session | None = None,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.settings = settings
        self.http = http or requests.Session()
        self.providers: dict = {}
        if settings.google_client_id and settings.google_client_secret:
            self.providers[OAuthProvider.GOOGLE] = GoogleProvider(
                settings.google_client_id, settings.google_client_secret, self.http
            )
            logger.info("Google OAuth provider registered")
        if settings.facebook_app_id and settings.facebook_app_secret:
            self.providers[OAuthProvider.FACEBOOK] = FacebookProvider(
                settings.facebook_app_id, settings.facebook_app_secret, self.http
            )
            logger.info("Facebook OAuth provider registered")

    def _provider(self, provider):
        try:
            key = OAuthProvider(provider)
        except ValueError as exc:
            raise BadRequestError(f"Unsupported OAuth provider: {provider!r}") from exc
        adapter = self.providers.get(key)
        if adapter is None:
            raise AuthenticationError(f"OAuth provider {key.value!r} is not enabled")
        return adapter

    def enabled_providers(self) -> list[dict]:
        """Return [{"name", "label"}] for every configured provider."""
        return [{"name": key.value, "label": _LABELS[key]} for key in self.providers]

    def verify_assertion(self, provider, access_token: str, id_token: str | None = None) -> OAuthIdentity:
        return self._provider(provider).verify(access_token, id_token)

    def find_local_user(self, provider, external_id: str) -> User | None:
        account = self.store.get_oauth_account(OAuthProvider(provider), external_id)
        if account is None:
            return None
        return self.store.get_user_by_id(account.user_id)

    def link_or_create(
        self,
        identity: OAuthIdentity,
        raw_provider_token: str,
        provider_refresh_token: str | None = None,
    ) -> tuple[User, bool]:
        """Resolve an external identity to a local user, creating one if needed.

        Order:
          1. Existing link for (provider, external_id) -> that user; tokens refreshed.
          2. Local user with the same email -> link created (account merge).
             An unverified local user loses its password, 2FA and sessions
             first; a verified one keeps them.
          3. Otherwise a new user, email pre-verified, with the hash of a random
             password nobody knows. Password login stays impossible until a
             reset.

        Returns (user, is_new_user).
        """
        user = self.find_local_user(identity.provider, identity.external_id)
        is_new = False
        if user is None:
            user = self.store.get_user_by_email(identity.email)
            if user is None:
                user = self._create_user(identity)
                is_new = True
            else:
                logger.info("Linking %s identity to existing user_id=%s", identity.provider.value, user.id)
                if user.email_verified is None:
                    user = self._claim_unverified(user, identity)

        self.store.upsert_oauth_account(
            OAuthAccount(
                provider=identity.provider,
                provider_account_id=identity.external_id,
                user_id=user.id,
                access_token=raw_provider_token,
                refresh_token=provider_refresh_token,
            )
        )
        return user, is_new

    def _claim_unverified(self, user: User, identity: OAuthIdentity) -> User:
        """Hand an unverified account to the provider-verified owner of its email.

        Whoever registered the address never proved they own it, so every
        credential they set is dropped: the password becomes a random hash,
        2FA and backup codes are removed, and their sessions and refresh
        tokens are revoked.
        """
        self.store.update_user(
            user.id,
            password_hash=self.hasher.hash(secrets.token_hex(32)),
            email_verified=datetime.now(timezone.utc),
            two_factor_enabled=False,
        )
        self.store.delete_two_factor_secret(user.id)
        self.store.delete_backup_codes(user.id)
        self.store.revoke_refresh_tokens_for_user(user.id)
        self.store.delete_sessions_for_user(user.id)
        logger.warning(
            "Unverified user_id=%s claimed by %s identity; prior credentials revoked",
            user.id,
            identity.provider.value,
        )
        return self.store.get_user_by_id(user.id)

    def _create_user(self, identity: OAuthIdentity) -> User:
        user = User(
            email=identity.email,
            password_hash=self.hasher.hash(secrets.token_hex(32)),
            name=identity.name,
            email_verified=datetime.now(timezone.utc),
        )
        user.id = self.store.create_user(user)
        logger.info("Created user_id=%s from %s login", user.id, identity.provider.value)
        return self.store.get_user_by_id(user.id)

    def list_accounts(self, user_id: int) -> list[OAuthAccount]:
        return self.store.list_oauth_accounts(user_id)

    def unlink(self, user_id: int, provider) -> None:
        removed = self.store.delete_oauth_accounts(user_id, OAuthProvider(provider))
        if not removed:
            raise NotFoundError(f"No linked {OAuthProvider(provider).value} account")
        logger.info("Unlinked %s account from user_id=%s", OAuthProvider(provider).value, user_id)

    # ------------------------------------------------------------------
    # Authorization code flow
    # ------------------------------------------------------------------

    def _client(self, adapter, redirect_uri: str, state: str | None = None) -> OAuth2Session:
        return OAuth2Session(
            adapter.client_id,
            adapter.client_secret,
            scope=adapter.scope,
            redirect_uri=redirect_uri,
            state=state,
        )

    def authorization_url(self, provider, redirect_uri: str) -> tuple[str, str]:
        """Return (url, state). The caller must keep state and compare it on callback."""
        adapter = self._provider(provider)
        extra = {"access_type": "offline"} if adapter.name is OAuthProvider.GOOGLE else {}
        return self._client(adapter, redirect_uri).create_authorization_url(adapter.authorize_url, **extra)

    def exchange_code(self, provider, code: str, redirect_uri: str) -> dict:
        """Swap an authorization code for the provider's token response.

        Returns {"access_token", "refresh_token", "id_token"}; missing values are None.
        """
        adapter = self._provider(provider)
        try:
            token = self._client(adapter, redirect_uri).fetch_token(adapter.token_url, code=code)
        except (AuthlibBaseError, requests.RequestException) as exc:
            logger.warning("%s code exchange failed: %s", adapter.name.value, exc)
            raise BadRequestError(f"Failed to exchange {_LABELS[adapter.name]} authorization code") from exc
        return {
            "access_token": token.get("access_token"),
            "refresh_token": token.get("refresh_token"),
            "id_token": token.get("id_token"),
        }
