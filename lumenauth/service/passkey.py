from __future__ import annotations

import json
import secrets
from typing import Any, Dict, Optional, Protocol, Tuple
from urllib.parse import urlparse

from webauthn import (
    generate_authentication_options,
    options_to_json,
    verify_authentication_response,
)
from webauthn.helpers import base64url_to_bytes, bytes_to_base64url
from webauthn.helpers.exceptions import WebAuthnException
from webauthn.helpers.structs import UserVerificationRequirement

from lumenauth.config import Settings
from lumenauth.logging import get_logger
from lumenauth.service.errors import AuthenticationError, ForbiddenError
from lumenauth.storage.directory import Directory
from lumenauth.storage.kv import KVStore, passkey_challenge_key

logger = get_logger(__name__)


class PasskeyVerifier(Protocol):
    """Checks a WebAuthn assertion against the stored credential.

    Returns the directory user id that owns the credential, or ``None`` when
    the assertion does not verify.
    """

    async def verify_assertion(
        self, challenge: str, credential: Dict[str, Any], rp_id: str, origin: str
    ) -> Optional[str]: ...


def relying_party(settings: Settings) -> Tuple[str, str]:
    """``(rp_id, origin)`` for the public URL of this server."""
    parsed = urlparse(settings.auth_server_url)
    rp_id = parsed.hostname or "localhost"
    origin = f"{parsed.scheme or 'https'}://{parsed.netloc or rp_id}"
    return rp_id, origin


class WebAuthnPasskeyVerifier:
    """Assertion checks with py_webauthn against credentials in the directory."""

    def __init__(self, directory: Directory, *, require_user_verification: bool = False) -> None:
        self.directory = directory
        self.require_user_verification = require_user_verification

    async def verify_assertion(
        self, challenge: str, credential: Dict[str, Any], rp_id: str, origin: str
    ) -> Optional[str]:
        credential_id = credential.get("id") if isinstance(credential, dict) else None
        if not credential_id or not isinstance(credential_id, str):
            return None
        stored = self.directory.get_passkey_credential(credential_id)
        if stored is None:
            logger.info("passkey_credential_unknown", credential_id=credential_id)
            return None
        try:
            verification = verify_authentication_response(
                credential=credential,
                expected_challenge=base64url_to_bytes(challenge),
                expected_rp_id=rp_id,
                expected_origin=origin,
                credential_public_key=stored.public_key,
                credential_current_sign_count=stored.sign_count,
                require_user_verification=self.require_user_verification,
            )
        except (WebAuthnException, ValueError) as exc:
            logger.info(
                "passkey_assertion_invalid",
                credential_id=credential_id,
                user_id=stored.user_id,
                error=str(exc),
            )
            return None
        self.directory.update_passkey_sign_count(
            stored.credential_id, verification.new_sign_count
        )
        return stored.user_id


class PasskeyService:
    """One-time sign-in challenges; the assertion check is delegated to a verifier."""

    def __init__(self, kv: KVStore, verifier: Optional[PasskeyVerifier] = None) -> None:
        self.kv = kv
        self.verifier = verifier

    def _ensure_enabled(self, settings: Settings) -> PasskeyVerifier:
        if not settings.enable_passkey_sign_in or self.verifier is None:
            raise ForbiddenError("passkey sign-in is not enabled")
        return self.verifier

    async def create_challenge(self, settings: Settings) -> Dict[str, Any]:
        self._ensure_enabled(settings)
        rp_id, _ = relying_party(settings)
        options = generate_authentication_options(
            rp_id=rp_id,
            challenge=secrets.token_bytes(32),
            timeout=settings.authorization_code_expires_in * 1000,
            user_verification=UserVerificationRequirement.PREFERRED,
        )
        challenge = bytes_to_base64url(options.challenge)
        challenge_id = secrets.token_urlsafe(16)
        await self.kv.put(
            passkey_challenge_key(challenge_id),
            json.dumps({"challenge": challenge}),
            settings.authorization_code_expires_in,
        )
        return {"challenge_id": challenge_id, **json.loads(options_to_json(options))}

    async def verify(
        self, challenge_id: str, credential: Dict[str, Any], settings: Settings
    ) -> str:
        """Consume the challenge and return the authenticated user id."""
        verifier = self._ensure_enabled(settings)
        raw = await self.kv.pop(passkey_challenge_key(challenge_id)) if challenge_id else None
        if raw is None:
            raise AuthenticationError("passkey challenge expired")
        challenge = json.loads(raw)["challenge"]
        rp_id, origin = relying_party(settings)
        user_id = await verifier.verify_assertion(challenge, credential, rp_id, origin)
        if not user_id:
            logger.info("passkey_assertion_rejected", challenge_id=challenge_id)
            raise AuthenticationError("passkey verification failed")
        return user_id
