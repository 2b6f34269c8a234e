from __future__ import annotations

from enum import Enum
from typing import Optional

from lumenauth.config import Settings
from lumenauth.logging import get_logger
from lumenauth.service.errors import LockedError
from lumenauth.storage.kv import KVStore, counter_key

logger = get_logger(__name__)

OTP_MFA_LOCK_THRESHOLD = 5


class CounterPurpose(str, Enum):
    PASSWORD_LOGIN = "password_login"
    OTP_MFA = "otp_mfa"
    SMS_MFA = "sms_mfa"
    EMAIL_MFA = "email_mfa"


class CounterStore:
    """TTL counters keyed by (purpose, subject, remote IP).

    Purposes never share keys, so a password lockout cannot be tripped by
    MFA traffic and vice versa.
    """

    def __init__(self, kv: KVStore) -> None:
        self.kv = kv

    @staticmethod
    def _key(purpose: CounterPurpose, subject: str, ip: str) -> str:
        return counter_key(purpose.value, subject, ip or "unknown")

    async def get(self, purpose: CounterPurpose, subject: str, ip: str) -> int:
        raw = await self.kv.get(self._key(purpose, subject, ip))
        return int(raw) if raw else 0

    async def increment_below(
        self,
        purpose: CounterPurpose,
        subject: str,
        ip: str,
        limit: int,
        ttl_seconds: int,
    ) -> Optional[int]:
        return await self.kv.incr_below(
            self._key(purpose, subject, ip), limit, ttl_seconds
        )

    async def reset(self, purpose: CounterPurpose, subject: str, ip: str) -> None:
        await self.kv.delete(self._key(purpose, subject, ip))


class PasswordLockout:
    """Failed password attempts per (email, IP)."""

    def __init__(self, counters: CounterStore) -> None:
        self.counters = counters

    async def reserve_attempt(self, settings: Settings, email: str, ip: str) -> Optional[int]:
        """Count this attempt, or raise ``LockedError`` once the threshold is reached.

        Runs before any credential comparison and does not look the account
        up, so the outcome never reveals whether the email exists. The slot
        is taken atomically; a failed attempt simply keeps it and a successful
        one releases all of them through ``clear``.
        """
        threshold = settings.account_lockout_threshold
        if threshold <= 0:
            return None
        attempt = await self.counters.increment_below(
            CounterPurpose.PASSWORD_LOGIN,
            email,
            ip,
            threshold,
            settings.account_lockout_expires_in,
        )
        if attempt is None:
            logger.warning("password_login_locked", email=email, ip=ip, failures=threshold)
            raise LockedError("account temporarily locked")
        return attempt

    async def clear(self, email: str, ip: str) -> None:
        await self.counters.reset(CounterPurpose.PASSWORD_LOGIN, email, ip)
