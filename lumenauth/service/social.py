from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import httpx

from lumenauth.config import Settings
from lumenauth.logging import get_logger

logger = get_logger(__name__)

SOCIAL_PROVIDERS = {
    "google": {
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
    },
    "github": {
        "token_url": "https://github.com/login/oauth/access_token",
        "userinfo_url": "https://api.github.com/user",
        "emails_url": "https://api.github.com/user/emails",
    },
}


@dataclass
class SocialIdentity:
    provider: str
    provider_uid: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None


def _credentials(provider: str, settings: Settings) -> Tuple[Optional[str], Optional[str]]:
    if provider == "google":
        return settings.oauth_google_client_id, settings.oauth_google_client_secret
    if provider == "github":
        return settings.oauth_github_client_id, settings.oauth_github_client_secret
    return None, None


def _parse_userinfo(provider: str, userinfo: Dict[str, Any]) -> Dict[str, Any]:
    if provider == "google":
        return {
            "provider_uid": userinfo.get("id"),
            "email": userinfo.get("email"),
            "first_name": userinfo.get("given_name"),
            "last_name": userinfo.get("family_name"),
        }
    name = (userinfo.get("name") or "").split(" ", 1)
    return {
        "provider_uid": str(userinfo["id"]) if userinfo.get("id") is not None else None,
        "email": userinfo.get("email"),
        "first_name": name[0] or None,
        "last_name": name[1] if len(name) > 1 else None,
    }


class SocialIdentityService:
    """Exchanges a provider authorization code for a verified identity."""

    def __init__(self, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.transport = transport

    def is_configured(self, provider: str, settings: Settings) -> bool:
        client_id, client_secret = _credentials(provider, settings)
        return provider in SOCIAL_PROVIDERS and bool(client_id and client_secret)

    async def exchange(
        self, provider: str, code: str, settings: Settings
    ) -> Optional[SocialIdentity]:
        if provider not in SOCIAL_PROVIDERS:
            logger.error("social_unknown_provider", provider=provider)
            return None
        client_id, client_secret = _credentials(provider, settings)
        if not client_id or not client_secret:
            logger.error("social_credentials_missing", provider=provider)
            return None
        config = SOCIAL_PROVIDERS[provider]
        redirect_uri = settings.oauth_redirect_uri or (
            f"{settings.auth_server_url}/identity/v1/authorize-social/{provider}"
        )
        try:
            async with httpx.AsyncClient(
                timeout=30.0, follow_redirects=False, transport=self.transport
            ) as client:
                token_response = await client.post(
                    config["token_url"],
                    data={
                        "client_id": client_id,
                        "client_secret": client_secret,
                        "code": code,
                        "redirect_uri": redirect_uri,
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                access_token = token_response.json().get("access_token")
                if not access_token:
                    logger.error("social_no_access_token", provider=provider)
                    return None

                headers = {"Authorization": f"Bearer {access_token}"}
                if provider == "github":
                    headers["Accept"] = "application/vnd.github+json"
                userinfo_response = await client.get(config["userinfo_url"], headers=headers)
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
                if not isinstance(userinfo, dict):
                    logger.error("social_userinfo_invalid_format", provider=provider)
                    return None
                identity = _parse_userinfo(provider, userinfo)

                if provider == "github" and not identity.get("email"):
                    emails_response = await client.get(config["emails_url"], headers=headers)
                    if emails_response.status_code == 200:
                        identity["email"] = next(
                            (
                                item["email"]
                                for item in emails_response.json()
                                if item.get("primary") and item.get("verified")
                            ),
                            None,
                        )
        except httpx.HTTPStatusError as exc:
            logger.error(
                "social_exchange_http_error",
                provider=provider,
                status_code=exc.response.status_code,
            )
            return None
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("social_exchange_error", provider=provider, error=str(exc))
            return None

        if not identity.get("provider_uid") or not identity.get("email"):
            logger.error("social_identity_incomplete", provider=provider)
            return None
        logger.info("social_exchange_success", provider=provider)
        return SocialIdentity(provider=provider, **identity)
