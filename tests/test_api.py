"""HTTP tests for the OAuth and identity endpoints.

Tests the complete sign-in over the API including:
- Sign-up and password sign-in without MFA
- OTP enrollment and verification
- Email MFA with the recording sender
- Consent accept/decline
- Token endpoint errors, refresh, revoke, userinfo and logout
- Discovery documents
"""

import time

import pytest
from fastapi.testclient import TestClient

from lumenauth import app as app_module
from lumenauth.service.mfa import generate_totp
from lumenauth.storage.kv import session_key

from conftest import CLIENT_ID, CODE_VERIFIER, REDIRECT_URI, SoftwareAuthenticator

EMAIL = "a@b.com"
PASSWORD = "Password1!"


@pytest.fixture
def client(runtime, demo_app):
    """Test client bound to the recording runtime with one registered app."""
    runtime.store.set_system_settings(
        {"enforce_one_mfa_enrollment": [], "enable_user_app_consent": False}
    )
    return TestClient(app_module.app)


@pytest.fixture
def authorize_body(code_challenge):
    return {
        "client_id": CLIENT_ID,
        "redirect_uri": REDIRECT_URI,
        "scope": "openid profile offline_access",
        "code_challenge": code_challenge,
        "state": "client-state",
    }


def _sign_up(client, authorize_body, email=EMAIL):
    response = client.post(
        "/identity/v1/authorize-account",
        json={**authorize_body, "email": email, "password": PASSWORD},
    )
    assert response.status_code == 200, response.text
    return response.json()["data"]


def _sign_in(client, authorize_body, password=PASSWORD):
    return client.post(
        "/identity/v1/authorize-password",
        json={**authorize_body, "email": EMAIL, "password": password},
    )


def _exchange(client, code, verifier=CODE_VERIFIER):
    return client.post(
        "/oauth2/v1/token",
        data={
            "grant_type": "authorization_code",
            "code": code,
            "code_verifier": verifier,
            "client_id": CLIENT_ID,
        },
    )


class TestAuthorizeEndpoint:
    def test_valid_request_describes_sign_in(self, client, code_challenge):
        response = client.get(
            "/oauth2/v1/authorize",
            params={
                "client_id": CLIENT_ID,
                "redirect_uri": REDIRECT_URI,
                "scope": "openid",
                "code_challenge": code_challenge,
            },
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["app_name"] == "Demo"
        assert data["enable_sign_up"] is True

    def test_unregistered_redirect_is_validation_error(self, client, code_challenge):
        response = client.get(
            "/oauth2/v1/authorize",
            params={
                "client_id": CLIENT_ID,
                "redirect_uri": "https://evil.example.com/cb",
                "scope": "openid",
                "code_challenge": code_challenge,
            },
        )
        assert response.status_code == 400
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "validation_error"
        assert body["error"]["details"] == {"field": "redirect_uri"}


class TestNoMfaScenario:
    """Register, get a final code, exchange it and call userinfo."""

    def test_sign_up_to_userinfo(self, client, authorize_body):
        data = _sign_up(client, authorize_body)
        assert "next_page" not in data
        assert data["redirect_uri"] == REDIRECT_URI
        assert data["state"] == "client-state"
        assert data["scopes"] == ["openid", "profile", "offline_access"]

        token_response = _exchange(client, data["code"])
        assert token_response.status_code == 200
        assert token_response.headers["Cache-Control"] == "no-store"
        tokens = token_response.json()

        info = client.get(
            "/oauth2/v1/userinfo",
            headers={"Authorization": f"Bearer {tokens['access_token']}"},
        )
        assert info.status_code == 200
        assert info.json()["email"] == EMAIL

    def test_code_replay_is_invalid_grant(self, client, authorize_body):
        data = _sign_up(client, authorize_body)
        assert _exchange(client, data["code"]).status_code == 200

        replay = _exchange(client, data["code"])
        assert replay.status_code == 400
        assert replay.json() == {"error": "invalid_grant", "error_description": "invalid grant"}

    def test_wrong_verifier_is_invalid_grant(self, client, authorize_body):
        data = _sign_up(client, authorize_body)
        response = _exchange(client, data["code"], verifier="not-the-verifier")
        assert response.json()["error"] == "invalid_grant"

    def test_refresh_and_revoke(self, client, authorize_body):
        data = _sign_up(client, authorize_body)
        tokens = _exchange(client, data["code"]).json()

        refreshed = client.post(
            "/oauth2/v1/token",
            data={"grant_type": "refresh_token", "refresh_token": tokens["refresh_token"]},
        )
        assert refreshed.status_code == 200
        assert refreshed.json()["access_token"]

        revoked = client.post("/oauth2/v1/revoke", data={"token": tokens["refresh_token"]})
        assert revoked.status_code == 200
        assert revoked.json() == {}

        again = client.post(
            "/oauth2/v1/token",
            data={"grant_type": "refresh_token", "refresh_token": tokens["refresh_token"]},
        )
        assert again.json()["error"] == "invalid_grant"


class TestTokenEndpointErrors:
    def test_unsupported_grant_type(self, client):
        response = client.post("/oauth2/v1/token", data={"grant_type": "password"})
        assert response.status_code == 400
        assert response.json()["error"] == "unsupported_grant_type"

    def test_missing_verifier(self, client):
        response = client.post(
            "/oauth2/v1/token", data={"grant_type": "authorization_code", "code": "abc"}
        )
        assert response.json()["error"] == "invalid_request"

    def test_userinfo_requires_bearer(self, client):
        response = client.get("/oauth2/v1/userinfo")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"


class TestPasswordSignIn:
    def test_wrong_password_is_unauthorized(self, client, authorize_body):
        _sign_up(client, authorize_body)
        response = _sign_in(client, authorize_body, password="wrong-password")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_lockout_returns_locked(self, client, runtime, authorize_body):
        runtime.store.set_system_settings({"account_lockout_threshold": 1})
        _sign_up(client, authorize_body)
        _sign_in(client, authorize_body, password="wrong-password")

        response = _sign_in(client, authorize_body)
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "locked"

    def test_duplicate_sign_up_conflicts(self, client, authorize_body):
        _sign_up(client, authorize_body)
        response = client.post(
            "/identity/v1/authorize-account",
            json={**authorize_body, "email": EMAIL, "password": PASSWORD},
        )
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_extra_fields_rejected(self, client, authorize_body):
        response = client.post(
            "/identity/v1/authorize-password",
            json={**authorize_body, "email": EMAIL, "password": PASSWORD, "admin": True},
        )
        assert response.status_code == 422


class TestOtpScenario:
    """OTP required for an unenrolled user: enroll, verify, exchange."""

    def test_enroll_and_verify_otp(self, client, runtime, authorize_body):
        runtime.store.set_system_settings({"otp_mfa_is_required": True})
        data = _sign_up(client, authorize_body)
        assert data["next_page"] == "mfa_enroll"
        code = data["code"]

        options = client.get("/identity/v1/mfa-enroll-info", params={"code": code})
        assert options.json()["data"] == {"mfa_types": ["otp"]}

        enrolled = client.post(
            "/identity/v1/authorize-mfa-enroll", json={"code": code, "mfa_type": "otp"}
        )
        assert enrolled.json()["data"] == {"code": code, "next_page": "otp_mfa"}

        setup = client.get("/identity/v1/otp-setup-info", params={"code": code})
        assert setup.json()["data"]["otp_uri"].startswith("otpauth://totp/")

        secret = runtime.store.get_user_by_email(EMAIL).otp_secret
        wrong = client.post(
            "/identity/v1/authorize-otp-mfa", json={"code": code, "mfa_code": "000000"}
        )
        assert wrong.status_code == 401

        verified = client.post(
            "/identity/v1/authorize-otp-mfa",
            json={"code": code, "mfa_code": generate_totp(secret, time.time())},
        )
        final = verified.json()["data"]
        assert "next_page" not in final
        assert final["redirect_uri"] == REDIRECT_URI
        assert _exchange(client, code).status_code == 200

    def test_unknown_mfa_type_is_rejected(self, client, runtime, authorize_body):
        runtime.store.set_system_settings({"otp_mfa_is_required": True})
        code = _sign_up(client, authorize_body)["code"]
        response = client.post(
            "/identity/v1/authorize-mfa-enroll", json={"code": code, "mfa_type": "fax"}
        )
        assert response.status_code == 422


class TestEmailMfa:
    def test_send_and_verify(self, client, runtime, authorize_body, email_sender):
        runtime.store.set_system_settings({"email_mfa_is_required": True})
        data = _sign_up(client, authorize_body)
        code = data["code"]
        enrolled = client.post(
            "/identity/v1/authorize-mfa-enroll", json={"code": code, "mfa_type": "email"}
        )
        assert enrolled.json()["data"]["next_page"] == "email_mfa"

        sent = client.post("/identity/v1/send-email-mfa", json={"code": code})
        assert sent.json()["data"] == {"sent": True}
        assert email_sender.sent[-1]["to"] == EMAIL

        verified = client.post(
            "/identity/v1/authorize-email-mfa",
            json={"code": code, "mfa_code": email_sender.last_code},
        )
        assert verified.status_code == 200
        assert verified.json()["data"]["redirect_uri"] == REDIRECT_URI

    def test_send_threshold_returns_locked(self, client, runtime, authorize_body):
        runtime.store.set_system_settings(
            {"email_mfa_is_required": True, "email_mfa_email_threshold": 1}
        )
        code = _sign_up(client, authorize_body)["code"]
        client.post("/identity/v1/authorize-mfa-enroll", json={"code": code, "mfa_type": "email"})

        assert client.post("/identity/v1/send-email-mfa", json={"code": code}).status_code == 200
        again = client.post("/identity/v1/resend-email-mfa", json={"code": code})
        assert again.status_code == 403
        assert again.json()["error"]["code"] == "locked"


class TestConsentEndpoints:
    def test_accept(self, client, runtime, authorize_body):
        runtime.store.set_system_settings({"enable_user_app_consent": True})
        data = _sign_up(client, authorize_body)
        assert data["next_page"] == "consent"

        info = client.get("/identity/v1/consent-info", params={"code": data["code"]})
        assert info.json()["data"]["scopes"] == ["openid", "profile", "offline_access"]

        accepted = client.post("/identity/v1/authorize-consent", json={"code": data["code"]})
        assert accepted.json()["data"]["redirect_uri"] == REDIRECT_URI

    def test_decline(self, client, runtime, authorize_body):
        runtime.store.set_system_settings({"enable_user_app_consent": True})
        data = _sign_up(client, authorize_body)
        declined = client.post(
            "/identity/v1/authorize-consent", json={"code": data["code"], "accept": False}
        )
        assert declined.json()["data"]["redirect_uri"].endswith(
            "?error=access_denied&state=client-state"
        )
        assert _exchange(client, data["code"]).json()["error"] == "invalid_grant"


class TestAuthorizeNext:
    """A pending session is re-evaluated against the settings of the moment."""

    def test_settings_change_unblocks_pending_session(self, client, runtime, authorize_body):
        runtime.store.set_system_settings({"enable_user_app_consent": True})
        code = _sign_up(client, authorize_body)["code"]

        pending = client.get("/identity/v1/authorize-next", params={"code": code})
        assert pending.json()["data"] == {"code": code, "next_page": "consent"}

        runtime.store.set_system_settings({"enable_user_app_consent": False})
        resumed = client.get("/identity/v1/authorize-next", params={"code": code})
        assert resumed.status_code == 200
        assert resumed.json()["data"]["redirect_uri"] == REDIRECT_URI
        assert _exchange(client, code).status_code == 200

    def test_unknown_code_is_expired(self, client):
        response = client.get("/identity/v1/authorize-next", params={"code": "nope"})
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "authorization_expired"


class TestPasskeySignIn:
    def test_signed_assertion_finishes_sign_in(self, client, runtime, authorize_body):
        user = runtime.accounts.register(EMAIL, PASSWORD)
        device = SoftwareAuthenticator()
        runtime.store.add_passkey_credential(user.id, device.credential_id, device.cose_public_key)

        challenge = client.get("/identity/v1/passkey-challenge").json()["data"]
        assert challenge["rpId"] == "testserver"
        response = client.post(
            "/identity/v1/authorize-passkey-verify",
            json={
                **authorize_body,
                "challenge_id": challenge["challenge_id"],
                "credential": device.assertion(challenge["challenge"]),
            },
        )
        assert response.status_code == 200, response.text
        data = response.json()["data"]
        assert data["redirect_uri"] == REDIRECT_URI
        assert _exchange(client, data["code"]).status_code == 200

    def test_reused_challenge_is_unauthorized(self, client, runtime, authorize_body):
        user = runtime.accounts.register(EMAIL, PASSWORD)
        device = SoftwareAuthenticator()
        runtime.store.add_passkey_credential(user.id, device.credential_id, device.cose_public_key)
        challenge = client.get("/identity/v1/passkey-challenge").json()["data"]
        body = {**authorize_body, "challenge_id": challenge["challenge_id"]}

        first = client.post(
            "/identity/v1/authorize-passkey-verify",
            json={**body, "credential": device.assertion(challenge["challenge"])},
        )
        assert first.status_code == 200
        second = client.post(
            "/identity/v1/authorize-passkey-verify",
            json={**body, "credential": device.assertion(challenge["challenge"])},
        )
        assert second.status_code == 401


class TestExpiredSession:
    def test_expired_code_reports_authorization_expired(self, client, runtime, authorize_body):
        runtime.store.set_system_settings({"enable_user_app_consent": True})
        code = _sign_up(client, authorize_body)["code"]
        runtime.kv.expire_now(session_key(code))

        response = client.get("/identity/v1/consent-info", params={"code": code})
        assert response.status_code == 403
        error = response.json()["error"]
        assert error["code"] == "authorization_expired"
        assert error["details"] == {"redirect": "/identity/v1/auth-code-expired"}


class TestLogout:
    def test_logout_revokes_and_returns_central_redirect(self, client, authorize_body):
        tokens = _exchange(client, _sign_up(client, authorize_body)["code"]).json()
        response = client.post(
            "/identity/v1/logout",
            data={
                "refresh_token": tokens["refresh_token"],
                "post_logout_redirect_uri": REDIRECT_URI,
            },
            headers={"Authorization": f"Bearer {tokens['access_token']}"},
        )
        assert response.status_code == 200
        assert response.json()["data"]["redirect_uri"].startswith(
            "http://testserver/oauth2/v1/logout?client_id=demo-client"
        )

        refreshed = client.post(
            "/oauth2/v1/token",
            data={"grant_type": "refresh_token", "refresh_token": tokens["refresh_token"]},
        )
        assert refreshed.json()["error"] == "invalid_grant"

    def test_central_logout_redirects_to_registered_uri(self, client):
        response = client.get(
            "/oauth2/v1/logout",
            params={"client_id": CLIENT_ID, "post_logout_redirect_uri": REDIRECT_URI},
            follow_redirects=False,
        )
        assert response.status_code == 302
        assert response.headers["location"] == REDIRECT_URI

    def test_central_logout_rejects_unregistered_uri(self, client):
        response = client.get(
            "/oauth2/v1/logout",
            params={"client_id": CLIENT_ID, "post_logout_redirect_uri": "https://evil.example"},
            follow_redirects=False,
        )
        assert response.status_code == 400


class TestDiscoveryAndHeaders:
    def test_openid_configuration(self, client):
        document = client.get("/.well-known/openid-configuration").json()
        assert document["issuer"] == "http://testserver"
        assert document["code_challenge_methods_supported"] == ["S256"]
        assert document["jwks_uri"] == "http://testserver/.well-known/jwks.json"

    def test_jwks_lists_signing_key(self, client, runtime, authorize_body):
        _exchange(client, _sign_up(client, authorize_body)["code"])
        keys = client.get("/.well-known/jwks.json").json()["keys"]
        assert len(keys) == 1
        assert keys[0]["use"] == "sig"

    def test_request_id_and_security_headers(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
