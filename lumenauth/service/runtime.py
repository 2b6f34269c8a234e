from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

import redis

from lumenauth.config import Settings, get_settings, reset_settings_cache
from lumenauth.logging import get_logger
from lumenauth.service.accounts import AccountService
from lumenauth.service.consent import ConsentManager
from lumenauth.service.counters import CounterStore, PasswordLockout
from lumenauth.service.delivery import (
    EmailSender,
    HttpSmsSender,
    SmsSender,
    SmtpEmailSender,
)
from lumenauth.service.mfa import MfaService
from lumenauth.service.orchestrator import AuthorizationOrchestrator
from lumenauth.service.passkey import (
    PasskeyService,
    PasskeyVerifier,
    WebAuthnPasskeyVerifier,
)
from lumenauth.service.sessions import AuthorizationSessionStore
from lumenauth.service.social import SocialIdentityService
from lumenauth.service.tokens import SigningKeyRing, TokenService
from lumenauth.storage.directory import Directory
from lumenauth.storage.kv import MemoryKV
from lumenauth.storage.memory import MemoryStore
from lumenauth.storage.postgres import PostgresStore
from lumenauth.storage.redis_cache import RedisKV, SyncRedisKV

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """redis://:secret@host:6379 -> redis://:***@host:6379"""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds the shared stores and services for the FastAPI app."""

    def __init__(
        self,
        *,
        email_sender: Optional[EmailSender] = None,
        sms_sender: Optional[SmsSender] = None,
        passkey_verifier: Optional[PasskeyVerifier] = None,
        social: Optional[SocialIdentityService] = None,
    ) -> None:
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    otp_secret_key=self.settings.otp_secret_key,
                )
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.kv = self._connect_kv()

        self.sessions = AuthorizationSessionStore(self.kv)
        self.counters = CounterStore(self.kv)
        self.email_sender = email_sender or SmtpEmailSender(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )
        self.sms_sender = sms_sender or HttpSmsSender(
            api_url=self.settings.sms_api_url,
            account_id=self.settings.sms_account_id,
            auth_token=self.settings.sms_auth_token,
            sender_number=self.settings.sms_sender_number,
        )
        self.accounts = AccountService(self.store)
        self.consent = ConsentManager(self.store)
        self.mfa = MfaService(
            self.kv,
            self.store,
            email_sender=self.email_sender,
            sms_sender=self.sms_sender,
        )
        self.keyring = SigningKeyRing(self.kv)
        self.tokens = TokenService(self.kv, self.store, self.sessions, self.keyring)
        self.social = social or SocialIdentityService()
        self.passkey = PasskeyService(
            self.kv, passkey_verifier or WebAuthnPasskeyVerifier(self.store)
        )
        self.orchestrator = AuthorizationOrchestrator(
            self.store,
            self.sessions,
            accounts=self.accounts,
            mfa=self.mfa,
            consent=self.consent,
            lockout=PasswordLockout(self.counters),
            social=self.social,
            passkey=self.passkey,
        )
        logger.info(
            "runtime_initialized",
            store_type=type(self.store).__name__,
            kv_type=type(self.kv).__name__,
        )

    def _connect_kv(self) -> Union[RedisKV, SyncRedisKV, MemoryKV]:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # sync client in test mode avoids binding to one event loop
                kv = (
                    SyncRedisKV(self.settings.redis_url)
                    if self.settings.test_mode
                    else RedisKV(self.settings.redis_url)
                )
                kv.verify_connection()
                return kv
            except (redis.RedisError, OSError) as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for authorization sessions, counters and signing keys; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            mode="TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
        )
        return MemoryKV()

    def settings_snapshot(self) -> Settings:
        """Environment settings with the directory's stored overrides applied."""
        return self.settings.with_overrides(self.store.get_system_settings())

    async def close(self) -> None:
        await self.kv.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def set_runtime(instance: Runtime) -> Runtime:
    """Install a preconfigured runtime, e.g. one with stub delivery."""
    global runtime
    with _runtime_lock:
        runtime = instance
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime singleton; only allowed in TEST_MODE."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.kv, SyncRedisKV):
            asyncio.run(runtime.kv.close())
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
