"""Tests for code exchange, refresh, signing keys and logout.

Tests for:
- PKCE S256 verification
- Single-use authorization codes, including concurrent exchange
- Key rotation keeping old tokens valid until cleanup
- Refresh tokens and userinfo
- Logout revoking refresh tokens
"""

import asyncio

import jwt
import pytest

from lumenauth.config import Settings
from lumenauth.service.errors import AuthenticationError, InvalidGrantError, ValidationError
from lumenauth.service.tokens import pkce_challenge, verify_pkce
from lumenauth.storage.models import AuthorizeRequest

from conftest import CLIENT_ID, CODE_VERIFIER, REDIRECT_URI

IP = "203.0.113.7"
EMAIL = "tokens@example.com"
PASSWORD = "Password1!"


@pytest.fixture
def settings():
    return Settings(
        enforce_one_mfa_enrollment=[],
        enable_user_app_consent=False,
        auth_server_url="http://testserver",
    )


@pytest.fixture
def user(runtime):
    created = runtime.accounts.register(EMAIL, PASSWORD, first_name="Ada")
    runtime.store.assign_user_role(created.id, "member")
    return created


async def _authorized_code(runtime, code_challenge, settings, scopes=None):
    request = AuthorizeRequest(
        client_id=CLIENT_ID,
        redirect_uri=REDIRECT_URI,
        scopes=scopes or ["openid", "profile", "offline_access"],
        code_challenge=code_challenge,
        state="s",
    )
    result = await runtime.orchestrator.authorize_password(
        request, EMAIL, PASSWORD, settings, IP
    )
    assert result.is_final
    return result.code


class TestPkce:
    def test_rfc7636_example(self):
        verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
        assert pkce_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"

    def test_mismatch_and_missing(self):
        challenge = pkce_challenge(CODE_VERIFIER)
        assert verify_pkce(CODE_VERIFIER, challenge)
        assert not verify_pkce(CODE_VERIFIER + "x", challenge)
        assert not verify_pkce(None, challenge)


class TestCodeExchange:
    async def test_exchange_issues_all_tokens(
        self, runtime, demo_app, user, code_challenge, settings
    ):
        code = await _authorized_code(runtime, code_challenge, settings)
        tokens = await runtime.tokens.exchange_code(
            code, CODE_VERIFIER, settings, client_id=CLIENT_ID
        )

        assert tokens["token_type"] == "Bearer"
        assert {"access_token", "id_token", "refresh_token"} <= set(tokens)
        claims = await runtime.tokens.verify_access_token(tokens["access_token"], settings)
        assert claims["sub"] == user.auth_id
        assert claims["aud"] == CLIENT_ID
        assert claims["roles"] == ["member"]
        id_claims = jwt.decode(tokens["id_token"], options={"verify_signature": False})
        assert id_claims["email"] == EMAIL

    async def test_no_openid_no_offline_means_access_token_only(
        self, runtime, demo_app, user, code_challenge, settings
    ):
        code = await _authorized_code(runtime, code_challenge, settings, scopes=["profile"])
        tokens = await runtime.tokens.exchange_code(code, CODE_VERIFIER, settings)
        assert "id_token" not in tokens
        assert "refresh_token" not in tokens

    async def test_code_is_single_use(self, runtime, demo_app, user, code_challenge, settings):
        code = await _authorized_code(runtime, code_challenge, settings)
        await runtime.tokens.exchange_code(code, CODE_VERIFIER, settings)
        with pytest.raises(InvalidGrantError):
            await runtime.tokens.exchange_code(code, CODE_VERIFIER, settings)

    async def test_wrong_verifier_is_invalid_grant(
        self, runtime, demo_app, user, code_challenge, settings
    ):
        code = await _authorized_code(runtime, code_challenge, settings)
        with pytest.raises(InvalidGrantError) as exc_info:
            await runtime.tokens.exchange_code(code, "wrong-verifier", settings)
        assert exc_info.value.message == "invalid grant"

    async def test_client_mismatch_is_invalid_grant(
        self, runtime, demo_app, user, code_challenge, settings
    ):
        code = await _authorized_code(runtime, code_challenge, settings)
        with pytest.raises(InvalidGrantError):
            await runtime.tokens.exchange_code(
                code, CODE_VERIFIER, settings, client_id="other-client"
            )

    async def test_unknown_code_is_invalid_grant(self, runtime, settings):
        with pytest.raises(InvalidGrantError):
            await runtime.tokens.exchange_code("no-such-code", CODE_VERIFIER, settings)

    async def test_concurrent_exchange_has_one_winner(
        self, runtime, demo_app, user, code_challenge, settings
    ):
        code = await _authorized_code(runtime, code_challenge, settings)
        results = await asyncio.gather(
            *(runtime.tokens.exchange_code(code, CODE_VERIFIER, settings) for _ in range(4)),
            return_exceptions=True,
        )
        winners = [r for r in results if isinstance(r, dict)]
        losers = [r for r in results if isinstance(r, InvalidGrantError)]
        assert len(winners) == 1
        assert len(losers) == 3


class TestSigningKeys:
    """Rotated-out keys verify until cleanup removes them."""

    async def test_rotation_then_cleanup(self, runtime, demo_app, user, code_challenge, settings):
        code = await _authorized_code(runtime, code_challenge, settings)
        tokens = await runtime.tokens.exchange_code(code, CODE_VERIFIER, settings)
        old_token = tokens["access_token"]
        old_kid = jwt.get_unverified_header(old_token)["kid"]

        new_key = await runtime.keyring.rotate()
        assert new_key.kid != old_kid
        await runtime.tokens.verify_access_token(old_token, settings)
        jwks = await runtime.keyring.jwks()
        assert {key["kid"] for key in jwks["keys"]} == {old_kid, new_key.kid}

        removed = await runtime.keyring.cleanup()
        assert removed == [old_kid]
        with pytest.raises(AuthenticationError):
            await runtime.tokens.verify_access_token(old_token, settings)

    async def test_new_tokens_use_current_key(self, runtime, settings):
        first = await runtime.keyring.ensure_current()
        assert await runtime.keyring.ensure_current() == first
        rotated = await runtime.keyring.rotate()
        current = [key for key in await runtime.keyring.load() if key.is_current]
        assert [key.kid for key in current] == [rotated.kid]

    async def test_jwks_has_no_private_material(self, runtime):
        await runtime.keyring.ensure_current()
        for key in (await runtime.keyring.jwks())["keys"]:
            assert key["kty"] == "RSA"
            assert key["alg"] == "RS256"
            assert "d" not in key

    async def test_tampered_token_rejected(self, runtime, demo_app, user, code_challenge, settings):
        code = await _authorized_code(runtime, code_challenge, settings)
        tokens = await runtime.tokens.exchange_code(code, CODE_VERIFIER, settings)
        header, payload, signature = tokens["access_token"].split(".")
        tampered = ".".join([header, payload, signature[::-1]])
        with pytest.raises(AuthenticationError):
            await runtime.tokens.verify_access_token(tampered, settings)

    async def test_id_token_not_accepted_as_access_token(
        self, runtime, demo_app, user, code_challenge, settings
    ):
        code = await _authorized_code(runtime, code_challenge, settings)
        tokens = await runtime.tokens.exchange_code(code, CODE_VERIFIER, settings)
        with pytest.raises(AuthenticationError):
            await runtime.tokens.verify_access_token(tokens["id_token"], settings)


class TestRefreshAndUserinfo:
    async def test_refresh_issues_new_access_token(
        self, runtime, demo_app, user, code_challenge, settings
    ):
        code = await _authorized_code(runtime, code_challenge, settings)
        tokens = await runtime.tokens.exchange_code(code, CODE_VERIFIER, settings)

        refreshed = await runtime.tokens.refresh(tokens["refresh_token"], settings)
        assert refreshed["refresh_token"] == tokens["refresh_token"]
        claims = await runtime.tokens.verify_access_token(refreshed["access_token"], settings)
        assert claims["sub"] == user.auth_id

    async def test_refresh_for_deleted_user_fails_and_revokes(
        self, runtime, demo_app, user, code_challenge, settings
    ):
        code = await _authorized_code(runtime, code_challenge, settings)
        tokens = await runtime.tokens.exchange_code(code, CODE_VERIFIER, settings)
        runtime.store.soft_delete_user(user.id)

        with pytest.raises(InvalidGrantError):
            await runtime.tokens.refresh(tokens["refresh_token"], settings)
        assert await runtime.tokens._load_refresh(tokens["refresh_token"]) is None

    async def test_revoked_refresh_token_fails(
        self, runtime, demo_app, user, code_challenge, settings
    ):
        code = await _authorized_code(runtime, code_challenge, settings)
        tokens = await runtime.tokens.exchange_code(code, CODE_VERIFIER, settings)
        await runtime.tokens.revoke_refresh_token(tokens["refresh_token"])
        with pytest.raises(InvalidGrantError):
            await runtime.tokens.refresh(tokens["refresh_token"], settings)

    async def test_userinfo(self, runtime, demo_app, user, code_challenge, settings):
        code = await _authorized_code(runtime, code_challenge, settings)
        tokens = await runtime.tokens.exchange_code(code, CODE_VERIFIER, settings)
        info = await runtime.tokens.userinfo(tokens["access_token"], settings)
        assert info["sub"] == user.auth_id
        assert info["email"] == EMAIL
        assert info["given_name"] == "Ada"
        assert info["roles"] == ["member"]

    async def test_wrong_issuer_rejected(
        self, runtime, demo_app, user, code_challenge, settings
    ):
        code = await _authorized_code(runtime, code_challenge, settings)
        tokens = await runtime.tokens.exchange_code(code, CODE_VERIFIER, settings)
        other = settings.with_overrides({"auth_server_url": "https://other.example.com"})
        with pytest.raises(AuthenticationError):
            await runtime.tokens.verify_access_token(tokens["access_token"], other)


class TestLogout:
    async def test_logout_revokes_refresh_token(
        self, runtime, demo_app, user, code_challenge, settings
    ):
        code = await _authorized_code(runtime, code_challenge, settings)
        tokens = await runtime.tokens.exchange_code(code, CODE_VERIFIER, settings)

        redirect = await runtime.tokens.logout(
            tokens["access_token"], tokens["refresh_token"], REDIRECT_URI, settings
        )
        assert redirect.startswith("http://testserver/oauth2/v1/logout?client_id=demo-client")
        with pytest.raises(InvalidGrantError):
            await runtime.tokens.refresh(tokens["refresh_token"], settings)

    async def test_any_valid_access_token_revokes_any_refresh_token(
        self, runtime, demo_app, user, code_challenge, settings
    ):
        """Logout does not check that the refresh token belongs to the caller."""
        code = await _authorized_code(runtime, code_challenge, settings)
        victim = await runtime.tokens.exchange_code(code, CODE_VERIFIER, settings)

        runtime.accounts.register("other@example.com", PASSWORD)
        request = AuthorizeRequest(
            client_id=CLIENT_ID,
            redirect_uri=REDIRECT_URI,
            scopes=["openid"],
            code_challenge=code_challenge,
        )
        other = await runtime.orchestrator.authorize_password(
            request, "other@example.com", PASSWORD, settings, IP
        )
        caller = await runtime.tokens.exchange_code(other.code, CODE_VERIFIER, settings)

        await runtime.tokens.logout(
            caller["access_token"], victim["refresh_token"], REDIRECT_URI, settings
        )
        with pytest.raises(InvalidGrantError):
            await runtime.tokens.refresh(victim["refresh_token"], settings)

    async def test_logout_needs_valid_access_token(self, runtime, settings):
        with pytest.raises(AuthenticationError):
            await runtime.tokens.logout("not-a-jwt", None, REDIRECT_URI, settings)

    def test_logout_redirect_must_be_registered(self, runtime, demo_app):
        assert runtime.tokens.logout_redirect(CLIENT_ID, REDIRECT_URI) == REDIRECT_URI
        with pytest.raises(ValidationError):
            runtime.tokens.logout_redirect(CLIENT_ID, "https://evil.example.com")
