from __future__ import annotations

import json
import secrets
from typing import Optional

from lumenauth.logging import get_logger
from lumenauth.service.errors import AuthorizationExpiredError
from lumenauth.storage.kv import KVStore, session_key
from lumenauth.storage.models import (
    AppSnapshot,
    AuthorizationSession,
    AuthorizeRequest,
    SessionUser,
)

logger = get_logger(__name__)


class AuthorizationSessionStore:
    """Keeps one JSON record per authorization session token."""

    def __init__(self, kv: KVStore) -> None:
        self.kv = kv

    @staticmethod
    def _decode(raw: Optional[str]) -> Optional[AuthorizationSession]:
        if raw is None:
            return None
        try:
            return AuthorizationSession.from_dict(json.loads(raw))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            # unreadable records are treated like expired ones
            logger.warning("authorization_session_corrupt", error=str(exc))
            return None

    async def create(
        self,
        app: AppSnapshot,
        request: AuthorizeRequest,
        user: SessionUser,
        ttl_seconds: int,
    ) -> AuthorizationSession:
        record = AuthorizationSession(
            token=secrets.token_urlsafe(32), app=app, request=request, user=user
        )
        await self.kv.put(session_key(record.token), json.dumps(record.to_dict()), ttl_seconds)
        logger.info(
            "authorization_session_started",
            client_id=app.client_id,
            user_id=user.id,
        )
        return record

    async def load(self, token: str) -> Optional[AuthorizationSession]:
        if not token:
            return None
        return self._decode(await self.kv.get(session_key(token)))

    async def require(self, token: str) -> AuthorizationSession:
        record = await self.load(token)
        if record is None:
            raise AuthorizationExpiredError(
                detail={"redirect": "/identity/v1/auth-code-expired"}
            )
        return record

    async def save(self, record: AuthorizationSession) -> None:
        """Overwrite the record in place; its original TTL keeps running."""
        stored = await self.kv.replace(session_key(record.token), json.dumps(record.to_dict()))
        if not stored:
            raise AuthorizationExpiredError(
                detail={"redirect": "/identity/v1/auth-code-expired"}
            )

    async def consume(self, token: str) -> Optional[AuthorizationSession]:
        """Atomically remove and return the record; at most one caller wins."""
        if not token:
            return None
        return self._decode(await self.kv.pop(session_key(token)))

    async def discard(self, token: str) -> None:
        await self.kv.delete(session_key(token))
