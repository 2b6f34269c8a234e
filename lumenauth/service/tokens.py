from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
import uuid
from dataclasses import asdict
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from lumenauth.config import Settings
from lumenauth.logging import get_logger
from lumenauth.service.errors import (
    AuthenticationError,
    InvalidGrantError,
    ValidationError,
)
from lumenauth.service.sessions import AuthorizationSessionStore
from lumenauth.storage.directory import Directory
from lumenauth.storage.kv import SIGNING_KEYS_KEY, KVStore, refresh_token_key
from lumenauth.storage.models import (
    AuthorizationSession,
    RefreshTokenRecord,
    SessionState,
    SigningKey,
)

logger = get_logger(__name__)

JWT_ALGORITHM = "RS256"
_JWT_LEEWAY_SECONDS = 30
OPENID_SCOPE = "openid"
OFFLINE_ACCESS_SCOPE = "offline_access"


def pkce_challenge(code_verifier: str) -> str:
    digest = hashlib.sha256(code_verifier.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def verify_pkce(code_verifier: Optional[str], code_challenge: str) -> bool:
    if not code_verifier or not code_challenge:
        return False
    return hmac.compare_digest(pkce_challenge(code_verifier), code_challenge)


class SigningKeyRing:
    """RSA signing keys kept as one JSON list in the KV store.

    Exactly one key is ``current`` and signs new tokens. Rotated-out keys stay
    ``deprecated`` (and published in the JWKS) until ``cleanup`` drops them,
    so tokens they signed keep verifying in between.
    """

    def __init__(self, kv: KVStore) -> None:
        self.kv = kv

    async def load(self) -> List[SigningKey]:
        raw = await self.kv.get(SIGNING_KEYS_KEY)
        if not raw:
            return []
        return [SigningKey.from_dict(item) for item in json.loads(raw)]

    async def _save(self, keys: List[SigningKey]) -> None:
        await self.kv.put(SIGNING_KEYS_KEY, json.dumps([key.to_dict() for key in keys]))

    @staticmethod
    def _generate() -> SigningKey:
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        kid = uuid.uuid4().hex
        private_pem = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ).decode("utf-8")
        public_jwk = json.loads(RSAAlgorithm.to_jwk(private_key.public_key()))
        public_jwk.update({"kid": kid, "alg": JWT_ALGORITHM, "use": "sig"})
        return SigningKey(kid=kid, private_pem=private_pem, public_jwk=public_jwk)

    async def rotate(self) -> SigningKey:
        keys = await self.load()
        for key in keys:
            key.status = "deprecated"
        new_key = self._generate()
        keys.append(new_key)
        await self._save(keys)
        logger.info(
            "signing_key_rotated",
            kid=new_key.kid,
            deprecated=[key.kid for key in keys if not key.is_current],
        )
        return new_key

    async def cleanup(self) -> List[str]:
        keys = await self.load()
        removed = [key.kid for key in keys if not key.is_current]
        if removed:
            await self._save([key for key in keys if key.is_current])
            logger.info("signing_keys_cleaned_up", removed=removed)
        return removed

    async def ensure_current(self) -> SigningKey:
        keys = await self.load()
        for key in keys:
            if key.is_current:
                return key
        return await self.rotate()

    async def find(self, kid: Optional[str]) -> Optional[SigningKey]:
        if not kid:
            return None
        for key in await self.load():
            if key.kid == kid:
                return key
        return None

    async def jwks(self) -> Dict[str, Any]:
        return {"keys": [dict(key.public_jwk) for key in await self.load()]}


class TokenService:
    """Issues, exchanges, refreshes and verifies OAuth tokens."""

    def __init__(
        self,
        kv: KVStore,
        directory: Directory,
        sessions: AuthorizationSessionStore,
        keyring: SigningKeyRing,
    ) -> None:
        self.kv = kv
        self.directory = directory
        self.sessions = sessions
        self.keyring = keyring

    async def _sign(self, claims: Dict[str, Any]) -> str:
        key = await self.keyring.ensure_current()
        return jwt.encode(
            claims, key.private_pem, algorithm=JWT_ALGORITHM, headers={"kid": key.kid}
        )

    async def _access_and_id_tokens(
        self,
        *,
        auth_id: str,
        email: str,
        client_id: str,
        scopes: List[str],
        roles: List[str],
        settings: Settings,
    ) -> Dict[str, Any]:
        now = int(time.time())
        scope = " ".join(scopes)
        access_claims = {
            "iss": settings.auth_server_url,
            "sub": auth_id,
            "azp": client_id,
            "aud": client_id,
            "scope": scope,
            "roles": list(roles),
            "iat": now,
            "exp": now + settings.access_token_expires_in,
            "jti": uuid.uuid4().hex,
            "typ": "access",
        }
        tokens: Dict[str, Any] = {
            "access_token": await self._sign(access_claims),
            "token_type": "Bearer",
            "expires_in": settings.access_token_expires_in,
            "scope": scope,
        }
        if OPENID_SCOPE in scopes:
            id_claims = {
                "iss": settings.auth_server_url,
                "sub": auth_id,
                "aud": client_id,
                "email": email,
                "iat": now,
                "exp": now + settings.id_token_expires_in,
                "typ": "id",
            }
            tokens["id_token"] = await self._sign(id_claims)
        return tokens

    async def issue_tokens(
        self, record: AuthorizationSession, settings: Settings
    ) -> Dict[str, Any]:
        scopes = list(record.request.scopes)
        tokens = await self._access_and_id_tokens(
            auth_id=record.user.auth_id,
            email=record.user.email,
            client_id=record.app.client_id,
            scopes=scopes,
            roles=record.user.roles,
            settings=settings,
        )
        if OFFLINE_ACCESS_SCOPE in scopes:
            refresh_token = secrets.token_urlsafe(64)
            refresh_record = RefreshTokenRecord(
                auth_id=record.user.auth_id,
                client_id=record.app.client_id,
                scope=" ".join(scopes),
                roles=list(record.user.roles),
            )
            await self.kv.put(
                refresh_token_key(refresh_token),
                json.dumps(asdict(refresh_record)),
                settings.refresh_token_expires_in,
            )
            tokens["refresh_token"] = refresh_token
            tokens["refresh_token_expires_in"] = settings.refresh_token_expires_in
        logger.info(
            "tokens_issued",
            client_id=record.app.client_id,
            user_id=record.user.id,
            id_token="id_token" in tokens,
            refresh_token="refresh_token" in tokens,
        )
        return tokens

    async def exchange_code(
        self,
        code: str,
        code_verifier: Optional[str],
        settings: Settings,
        *,
        client_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Trade an authorized session token for tokens, exactly once."""
        pending = await self.sessions.load(code)
        if pending is None or pending.state != SessionState.AUTHORIZED:
            logger.info("code_exchange_rejected", reason="not_authorized")
            raise InvalidGrantError()
        record = await self.sessions.consume(code)
        if record is None or record.state != SessionState.AUTHORIZED:
            logger.info("code_exchange_rejected", reason="already_consumed")
            raise InvalidGrantError()
        if client_id and client_id != record.app.client_id:
            logger.info("code_exchange_rejected", reason="client_mismatch")
            raise InvalidGrantError()
        if not verify_pkce(code_verifier, record.request.code_challenge):
            logger.info("code_exchange_rejected", reason="pkce_mismatch")
            raise InvalidGrantError()
        return await self.issue_tokens(record, settings)

    async def _load_refresh(self, refresh_token: str) -> Optional[RefreshTokenRecord]:
        if not refresh_token:
            return None
        raw = await self.kv.get(refresh_token_key(refresh_token))
        if raw is None:
            return None
        return RefreshTokenRecord(**json.loads(raw))

    async def refresh(
        self,
        refresh_token: str,
        settings: Settings,
        *,
        client_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        record = await self._load_refresh(refresh_token)
        if record is None or (client_id and client_id != record.client_id):
            raise InvalidGrantError()
        user = self.directory.get_user_by_auth_id(record.auth_id)
        if user is None or not user.is_active:
            await self.revoke_refresh_token(refresh_token)
            raise InvalidGrantError()
        tokens = await self._access_and_id_tokens(
            auth_id=record.auth_id,
            email=user.email,
            client_id=record.client_id,
            scopes=record.scope.split(),
            roles=self.directory.get_user_roles(user.id),
            settings=settings,
        )
        # refresh tokens are not rotated
        tokens["refresh_token"] = refresh_token
        logger.info("tokens_refreshed", client_id=record.client_id, user_id=user.id)
        return tokens

    async def revoke_refresh_token(self, refresh_token: str) -> None:
        if refresh_token:
            await self.kv.delete(refresh_token_key(refresh_token))

    async def verify_access_token(self, token: str, settings: Settings) -> Dict[str, Any]:
        if not token:
            raise AuthenticationError("missing access token")
        try:
            header = jwt.get_unverified_header(token)
        except jwt.InvalidTokenError as exc:
            raise AuthenticationError("invalid access token") from exc
        if header.get("alg") != JWT_ALGORITHM:
            raise AuthenticationError("invalid access token")
        key = await self.keyring.find(header.get("kid"))
        if key is None:
            logger.info("access_token_unknown_kid", kid=header.get("kid"))
            raise AuthenticationError("invalid access token")
        public_key = RSAAlgorithm.from_jwk(json.dumps(key.public_jwk))
        try:
            claims = jwt.decode(
                token,
                key=public_key,
                algorithms=[JWT_ALGORITHM],
                issuer=settings.auth_server_url,
                leeway=_JWT_LEEWAY_SECONDS,
                options={"require": ["exp", "iat", "iss", "sub"], "verify_aud": False},
            )
        except jwt.ExpiredSignatureError as exc:
            raise AuthenticationError("access token expired") from exc
        except jwt.InvalidTokenError as exc:
            raise AuthenticationError("invalid access token") from exc
        if claims.get("typ") != "access":
            raise AuthenticationError("invalid access token")
        return claims

    async def logout(
        self,
        access_token: str,
        refresh_token: Optional[str],
        post_logout_redirect_uri: str,
        settings: Settings,
    ) -> str:
        """Drop the refresh token and point the client at the central logout.

        Any valid access token may revoke any refresh token; the refresh
        record's subject is not compared with the caller.
        """
        claims = await self.verify_access_token(access_token, settings)
        if refresh_token:
            await self.revoke_refresh_token(refresh_token)
        query = urlencode(
            {
                "client_id": claims.get("azp", ""),
                "post_logout_redirect_uri": post_logout_redirect_uri,
            }
        )
        logger.info("user_logged_out", client_id=claims.get("azp"))
        return f"{settings.auth_server_url}/oauth2/v1/logout?{query}"

    def logout_redirect(self, client_id: str, post_logout_redirect_uri: str) -> str:
        app = self.directory.get_app_by_client_id(client_id)
        if app is None or post_logout_redirect_uri not in app.redirect_uris:
            raise ValidationError("invalid post_logout_redirect_uri")
        return post_logout_redirect_uri

    async def userinfo(self, access_token: str, settings: Settings) -> Dict[str, Any]:
        claims = await self.verify_access_token(access_token, settings)
        user = self.directory.get_user_by_auth_id(claims["sub"])
        if user is None:
            raise AuthenticationError("unknown subject")
        info: Dict[str, Any] = {
            "sub": user.auth_id,
            "email": user.email,
            "roles": self.directory.get_user_roles(user.id),
        }
        if user.first_name:
            info["given_name"] = user.first_name
        if user.last_name:
            info["family_name"] = user.last_name
        if user.locale:
            info["locale"] = user.locale
        return info
