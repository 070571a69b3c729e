"""
tests/test_api_auth.py -- Integration tests for api/routes/v1/auth.py.

Runs the real app through TestClient with a shared-memory store, a recording
notifier and a mocked provider HTTP session (see conftest.api). The client is
module scoped, so every test registers its own email address.

Covers:
  - register/login/me/refresh/logout round trip and Cache-Control: no-store
  - 401 envelope and WWW-Authenticate for missing or bad tokens
  - 409 on duplicate registration, 422 on weak passwords (password not echoed)
  - registration keeps the password exactly as typed
  - forgot/reset password and email verification through the notifier
  - 2FA enable/confirm/verify, TOTP replay, and the step-up protected route
  - OAuth token login, foreign-client tokens, and the authorization-code
    callback with state check
  - session listing and revocation, including another user's session
  - admin-only routes
"""

from __future__ import annotations

from urllib.parse import parse_qs, urlparse
from unittest.mock import patch

import pyotp
import pytest

from auth.models import Role
from conftest import STRONG_PASSWORD, bearer, fake_response, google_responses, register_and_login

NEW_PASSWORD = "N3w!passw0rd"


@pytest.fixture(autouse=True)
def _fresh_cookies_and_http(api):
    api.client.cookies.clear()
    api.http.reset_mock(return_value=True, side_effect=True)
    yield


class TestRegisterAndLogin:
    def test_round_trip(self, api):
        """Register, log in, read /me, refresh, log out."""
        body = register_and_login(api, "round@x.com")
        assert body["token_type"] == "bearer"
        assert body["expires_in"] == 15 * 60
        assert body["user"]["email"] == "round@x.com"
        assert body["user"]["email_verified"] is None

        me = api.client.get("/api/v1/auth/me", headers=bearer(body["access_token"]))
        assert me.status_code == 200
        assert me.json()["id"] == body["user"]["id"]

        refreshed = api.client.post("/api/v1/auth/refresh", json={"refresh_token": body["refresh_token"]})
        assert refreshed.status_code == 200
        assert refreshed.headers["cache-control"] == "no-store"
        replay = api.client.post("/api/v1/auth/refresh", json={"refresh_token": body["refresh_token"]})
        assert replay.status_code == 401

        new_tokens = refreshed.json()
        out = api.client.post("/api/v1/auth/logout", headers=bearer(new_tokens["access_token"]))
        assert out.status_code == 200
        after = api.client.post("/api/v1/auth/refresh", json={"refresh_token": new_tokens["refresh_token"]})
        assert after.status_code == 401

    def test_login_response_not_cached(self, api):
        api.client.post("/api/v1/auth/register", json={"email": "cache@x.com", "password": STRONG_PASSWORD})
        resp = api.client.post("/api/v1/auth/login", json={"email": "cache@x.com", "password": STRONG_PASSWORD})
        assert resp.headers["cache-control"] == "no-store"

    def test_register_does_not_return_code(self, api):
        resp = api.client.post("/api/v1/auth/register", json={"email": "quiet@x.com", "password": STRONG_PASSWORD})
        assert resp.status_code == 201
        code = api.notifier.last("verification", "quiet@x.com")
        assert code not in resp.json().values()
        assert "code" not in resp.json()

    def test_duplicate_registration(self, api):
        payload = {"email": "dup@x.com", "password": STRONG_PASSWORD}
        assert api.client.post("/api/v1/auth/register", json=payload).status_code == 201
        resp = api.client.post("/api/v1/auth/register", json=payload)
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"

    @pytest.mark.parametrize("password", ["Sh0rt!", "alllowercase1!", "ALLUPPER1!", "NoDigits!!", "NoSpecial123"])
    def test_weak_password_rejected(self, api, password):
        resp = api.client.post("/api/v1/auth/register", json={"email": "weak@x.com", "password": password})
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"
        assert password not in resp.text

    def test_password_with_surrounding_spaces_kept_verbatim(self, api):
        padded = f" {STRONG_PASSWORD} "
        resp = api.client.post(
            "/api/v1/auth/register", json={"email": "  padded@x.com ", "password": padded, "name": " Pad "}
        )
        assert resp.status_code == 201, resp.text
        assert resp.json()["email"] == "padded@x.com"
        assert resp.json()["name"] == "Pad"

        typed = api.client.post("/api/v1/auth/login", json={"email": "padded@x.com", "password": padded})
        assert typed.status_code == 200
        trimmed = api.client.post("/api/v1/auth/login", json={"email": "padded@x.com", "password": STRONG_PASSWORD})
        assert trimmed.status_code == 401

    def test_invalid_email_rejected(self, api):
        resp = api.client.post("/api/v1/auth/register", json={"email": "not-an-email", "password": STRONG_PASSWORD})
        assert resp.status_code == 422

    def test_bad_credentials_are_generic(self, api):
        register_and_login(api, "generic@x.com")
        wrong = api.client.post("/api/v1/auth/login", json={"email": "generic@x.com", "password": "Wr0ng!pass"})
        unknown = api.client.post("/api/v1/auth/login", json={"email": "ghost@x.com", "password": STRONG_PASSWORD})
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json() == unknown.json()
        assert wrong.headers["www-authenticate"] == "Bearer"


class TestAuthRequired:
    @pytest.mark.parametrize(
        "method,path",
        [
            ("get", "/api/v1/auth/me"),
            ("post", "/api/v1/auth/logout"),
            ("get", "/api/v1/auth/sessions"),
            ("get", "/api/v1/auth/oauth/accounts"),
        ],
    )
    def test_missing_token(self, api, method, path):
        resp = getattr(api.client, method)(path)
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"
        assert resp.headers["www-authenticate"] == "Bearer"

    def test_garbage_token(self, api):
        resp = api.client.get("/api/v1/auth/me", headers=bearer("nope"))
        assert resp.status_code == 401

    def test_refresh_token_is_not_a_bearer_token(self, api):
        body = register_and_login(api, "swap@x.com")
        resp = api.client.get("/api/v1/auth/me", headers=bearer(body["refresh_token"]))
        assert resp.status_code == 401


class TestPasswordFlows:
    def test_change_password(self, api):
        body = register_and_login(api, "change@x.com")
        resp = api.client.post(
            "/api/v1/auth/change-password",
            json={"current_password": STRONG_PASSWORD, "new_password": NEW_PASSWORD},
            headers=bearer(body["access_token"]),
        )
        assert resp.status_code == 200
        stale = api.client.post("/api/v1/auth/refresh", json={"refresh_token": body["refresh_token"]})
        assert stale.status_code == 401
        relog = api.client.post("/api/v1/auth/login", json={"email": "change@x.com", "password": NEW_PASSWORD})
        assert relog.status_code == 200

    def test_change_password_wrong_current(self, api):
        body = register_and_login(api, "change2@x.com")
        resp = api.client.post(
            "/api/v1/auth/change-password",
            json={"current_password": "Wr0ng!pass", "new_password": NEW_PASSWORD},
            headers=bearer(body["access_token"]),
        )
        assert resp.status_code == 400

    def test_forgot_and_reset(self, api):
        register_and_login(api, "forgot@x.com")
        known = api.client.post("/api/v1/auth/forgot-password", json={"email": "forgot@x.com"})
        unknown = api.client.post("/api/v1/auth/forgot-password", json={"email": "nobody@x.com"})
        assert known.status_code == unknown.status_code == 200
        assert known.json() == unknown.json()

        token = api.notifier.last("password_reset", "forgot@x.com")
        reset = api.client.post("/api/v1/auth/reset-password", json={"token": token, "new_password": NEW_PASSWORD})
        assert reset.status_code == 200
        again = api.client.post("/api/v1/auth/reset-password", json={"token": token, "new_password": NEW_PASSWORD})
        assert again.status_code == 400
        login = api.client.post("/api/v1/auth/login", json={"email": "forgot@x.com", "password": NEW_PASSWORD})
        assert login.status_code == 200

    def test_verify_email(self, api):
        body = register_and_login(api, "verify@x.com")
        code = api.notifier.last("verification", "verify@x.com")
        resp = api.client.post("/api/v1/auth/verify-email", json={"email": "verify@x.com", "code": code})
        assert resp.status_code == 200
        assert resp.json()["verified"] is True
        me = api.client.get("/api/v1/auth/me", headers=bearer(body["access_token"])).json()
        assert me["email_verified"] is not None
        resend = api.client.post("/api/v1/auth/resend-verification", json={"email": "verify@x.com"})
        assert resend.json() == {"verified": True, "message": "Email is already verified"}

    def test_verify_email_malformed_code(self, api):
        resp = api.client.post("/api/v1/auth/verify-email", json={"email": "verify@x.com", "code": "12ab56"})
        assert resp.status_code == 422


class TestTwoFactorRoutes:
    def _enable(self, api, token: str) -> tuple[str, list[str]]:
        setup = api.client.post("/api/v1/auth/2fa/enable", json={"password": STRONG_PASSWORD}, headers=bearer(token))
        assert setup.status_code == 200
        assert setup.headers["cache-control"] == "no-store"
        data = setup.json()
        confirm = api.client.post(
            "/api/v1/auth/2fa/confirm", json={"code": pyotp.TOTP(data["secret"]).now()}, headers=bearer(token)
        )
        assert confirm.status_code == 200
        return data["secret"], data["backup_codes"]

    def test_step_up_flow(self, api):
        token = register_and_login(api, "tfa@x.com")["access_token"]
        blocked = api.client.get("/api/v1/auth/sensitive-action", headers=bearer(token))
        assert blocked.status_code == 403
        assert blocked.json()["error"]["code"] == "two_factor_required"

        secret, _ = self._enable(api, token)
        stale = api.client.get("/api/v1/auth/sensitive-action", headers=bearer(token))
        assert stale.status_code == 403
        assert stale.json()["error"]["code"] == "two_factor_verification_required"

        verify = api.client.post(
            "/api/v1/auth/2fa/verify", json={"code": pyotp.TOTP(secret).now()}, headers=bearer(token)
        )
        assert verify.status_code == 200
        assert verify.json()["method"] == "totp"
        allowed = api.client.get("/api/v1/auth/sensitive-action", headers=bearer(token))
        assert allowed.status_code == 200

    def test_step_up_not_shared_between_accounts(self, api):
        first = register_and_login(api, "tfa-a@x.com")["access_token"]
        secret, _ = self._enable(api, first)
        api.client.post("/api/v1/auth/2fa/verify", json={"code": pyotp.TOTP(secret).now()}, headers=bearer(first))

        second = register_and_login(api, "tfa-b@x.com")["access_token"]
        self._enable(api, second)
        resp = api.client.get("/api/v1/auth/sensitive-action", headers=bearer(second))
        assert resp.status_code == 403

    def test_totp_code_spent_after_verify(self, api):
        token = register_and_login(api, "tfa-replay@x.com")["access_token"]
        secret, _ = self._enable(api, token)
        code = pyotp.TOTP(secret).now()
        first = api.client.post("/api/v1/auth/2fa/verify", json={"code": code}, headers=bearer(token))
        assert first.status_code == 200
        again = api.client.post("/api/v1/auth/2fa/verify", json={"code": code}, headers=bearer(token))
        assert again.status_code == 401

    def test_backup_code_and_wrong_code(self, api):
        token = register_and_login(api, "tfa2@x.com")["access_token"]
        _, codes = self._enable(api, token)
        ok = api.client.post("/api/v1/auth/2fa/verify", json={"code": codes[0]}, headers=bearer(token))
        assert ok.status_code == 200
        assert ok.json()["method"] == "backup_code"
        reused = api.client.post("/api/v1/auth/2fa/verify", json={"code": codes[0]}, headers=bearer(token))
        assert reused.status_code == 401

    def test_disable(self, api):
        token = register_and_login(api, "tfa3@x.com")["access_token"]
        secret, _ = self._enable(api, token)
        resp = api.client.post(
            "/api/v1/auth/2fa/disable",
            json={"password": STRONG_PASSWORD, "code": pyotp.TOTP(secret).now()},
            headers=bearer(token),
        )
        assert resp.status_code == 200
        me = api.client.get("/api/v1/auth/me", headers=bearer(token)).json()
        assert me["two_factor_enabled"] is False


class TestOAuthRoutes:
    GOOGLE_PROFILE = {"sub": "g-api-1", "email": "oauth@x.com", "email_verified": True, "name": "O Auth"}

    def test_providers(self, api):
        resp = api.client.get("/api/v1/auth/oauth/providers")
        assert resp.status_code == 200
        assert {"name": "google", "label": "Google"} in resp.json()

    def test_token_login_then_accounts(self, api):
        api.http.get.side_effect = google_responses(self.GOOGLE_PROFILE)
        resp = api.client.post("/api/v1/auth/oauth/login", json={"provider": "google", "access_token": "ya29"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["is_new_user"] is True
        assert body["user"]["email_verified"] is not None

        accounts = api.client.get("/api/v1/auth/oauth/accounts", headers=bearer(body["access_token"]))
        assert accounts.json()[0]["provider"] == "google"
        assert "access_token" not in accounts.json()[0]

        gone = api.client.delete("/api/v1/auth/oauth/accounts/google", headers=bearer(body["access_token"]))
        assert gone.status_code == 204
        again = api.client.delete("/api/v1/auth/oauth/accounts/google", headers=bearer(body["access_token"]))
        assert again.status_code == 404

    def test_bad_provider_token(self, api):
        api.http.get.return_value = fake_response({}, status_code=401)
        resp = api.client.post("/api/v1/auth/oauth/login", json={"provider": "google", "access_token": "bad"})
        assert resp.status_code == 401

    def test_token_for_another_client_rejected(self, api):
        profile = {**self.GOOGLE_PROFILE, "sub": "g-api-3", "email": "foreign@x.com"}
        api.http.get.side_effect = google_responses(profile, audience="someone-elses-app")
        resp = api.client.post("/api/v1/auth/oauth/login", json={"provider": "google", "access_token": "ya29"})
        assert resp.status_code == 401
        assert api.store.get_user_by_email("foreign@x.com") is None

    def test_disabled_provider(self, api):
        resp = api.client.post("/api/v1/auth/oauth/login", json={"provider": "facebook", "access_token": "EAAB"})
        assert resp.status_code == 401

    def test_authorization_code_flow(self, api):
        auth = api.client.get(
            "/api/v1/auth/oauth/google/authorize", params={"redirect_uri": "https://app.example/cb"}
        )
        assert auth.status_code == 200
        url = auth.json()["authorization_url"]
        state = parse_qs(urlparse(url).query)["state"][0]

        profile = {**self.GOOGLE_PROFILE, "sub": "g-api-2", "email": "code@x.com"}
        api.http.get.side_effect = google_responses(profile)
        with patch("auth.oauth.OAuth2Session.fetch_token", return_value={"access_token": "ya29", "refresh_token": "1//r"}):
            resp = api.client.post(
                "/api/v1/auth/oauth/google/callback",
                json={"code": "abc", "state": state, "redirect_uri": "https://app.example/cb"},
            )
        assert resp.status_code == 200, resp.text
        assert resp.json()["user"]["email"] == "code@x.com"

    def test_callback_state_mismatch(self, api):
        api.client.get("/api/v1/auth/oauth/google/authorize", params={"redirect_uri": "https://app.example/cb"})
        resp = api.client.post(
            "/api/v1/auth/oauth/google/callback",
            json={"code": "abc", "state": "forged", "redirect_uri": "https://app.example/cb"},
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "oauth_state_mismatch"


class TestSessionsAndAdmin:
    def test_list_and_revoke(self, api):
        first = register_and_login(api, "sess@x.com")
        second = api.client.post("/api/v1/auth/login", json={"email": "sess@x.com", "password": STRONG_PASSWORD}).json()
        listing = api.client.get("/api/v1/auth/sessions", headers=bearer(first["access_token"])).json()
        ids = {s["id"]: s["current"] for s in listing["sessions"]}
        assert ids == {first["session_id"]: True, second["session_id"]: False}
        assert len(listing["refresh_tokens"]) == 2

        resp = api.client.delete(f"/api/v1/auth/sessions/{second['session_id']}", headers=bearer(first["access_token"]))
        assert resp.status_code == 204
        dead = api.client.post("/api/v1/auth/refresh", json={"refresh_token": second["refresh_token"]})
        assert dead.status_code == 401

    def test_cannot_revoke_foreign_session(self, api):
        mine = register_and_login(api, "own@x.com")
        theirs = register_and_login(api, "other@x.com")
        resp = api.client.delete(f"/api/v1/auth/sessions/{theirs['session_id']}", headers=bearer(mine["access_token"]))
        assert resp.status_code == 404
        alive = api.client.post("/api/v1/auth/refresh", json={"refresh_token": theirs["refresh_token"]})
        assert alive.status_code == 200

    def test_logout_all(self, api):
        first = register_and_login(api, "all@x.com")
        second = api.client.post("/api/v1/auth/login", json={"email": "all@x.com", "password": STRONG_PASSWORD}).json()
        resp = api.client.post("/api/v1/auth/logout-all", headers=bearer(first["access_token"]))
        assert resp.status_code == 200
        for body in (first, second):
            assert api.client.post("/api/v1/auth/refresh", json={"refresh_token": body["refresh_token"]}).status_code == 401

    def test_admin_routes(self, api):
        user = register_and_login(api, "plain@x.com")
        assert api.client.get("/api/v1/auth/users", headers=bearer(user["access_token"])).status_code == 403
        assert api.client.post("/api/v1/auth/admin/cleanup-tokens", headers=bearer(user["access_token"])).status_code == 403

        admin = register_and_login(api, "admin@x.com")
        api.store.update_user(admin["user"]["id"], role=Role.ADMIN)
        users = api.client.get("/api/v1/auth/users", headers=bearer(admin["access_token"]))
        assert users.status_code == 200
        assert "admin@x.com" in {u["email"] for u in users.json()}
        cleanup = api.client.post("/api/v1/auth/admin/cleanup-tokens", headers=bearer(admin["access_token"]))
        assert cleanup.status_code == 200
        assert cleanup.json()["count"] >= 0
