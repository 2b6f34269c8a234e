from __future__ import annotations

import base64
import hashlib
import hmac
import os
import secrets
import time
from typing import List, Optional, Tuple
from urllib.parse import quote, urlencode

from lumenauth.config import MfaType, Settings
from lumenauth.logging import get_logger
from lumenauth.service.counters import (
    OTP_MFA_LOCK_THRESHOLD,
    CounterPurpose,
    CounterStore,
)
from lumenauth.service.delivery import EmailSender, SmsSender
from lumenauth.service.errors import (
    AuthenticationError,
    ForbiddenError,
    LockedError,
    NotFoundError,
    ServerError,
)
from lumenauth.storage.directory import Directory
from lumenauth.storage.kv import KVStore, mfa_code_key
from lumenauth.storage.models import AuthorizationSession, SessionUser

logger = get_logger(__name__)

OTP_INTERVAL_SECONDS = 30
OTP_DIGITS = 6


def generate_otp_secret() -> str:
    """160-bit base32 secret, created once per user."""
    return base64.b32encode(os.urandom(20)).decode("utf-8").rstrip("=")


def generate_totp(
    secret: str, timestamp: float, *, interval: int = OTP_INTERVAL_SECONDS, digits: int = OTP_DIGITS
) -> str:
    padded = secret + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, True)
    except (ValueError, TypeError):
        logger.warning("totp_secret_invalid")
        return ""
    counter = int(timestamp // interval).to_bytes(8, "big")
    # SHA1 is what authenticator apps implement for otpauth:// URIs
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def verify_totp(
    secret: str,
    code: str,
    *,
    at: Optional[float] = None,
    window: int = 1,
    interval: int = OTP_INTERVAL_SECONDS,
) -> bool:
    """Check ``code`` against the current step and ``window`` steps either side."""
    if not secret:
        return False
    if not code or not code.isdigit() or len(code) != OTP_DIGITS:
        return False
    now = time.time() if at is None else at
    for offset in range(-window, window + 1):
        generated = generate_totp(secret, now + offset * interval, interval=interval)
        if generated and hmac.compare_digest(generated, code):
            return True
    return False


def otp_enrollment_uri(secret: str, account: str, issuer: str) -> str:
    label = quote(f"{issuer}:{account}")
    query = urlencode(
        {
            "secret": secret,
            "issuer": issuer,
            "algorithm": "SHA1",
            "digits": OTP_DIGITS,
            "period": OTP_INTERVAL_SECONDS,
        }
    )
    return f"otpauth://totp/{label}?{query}"


def generate_numeric_code(digits: int = OTP_DIGITS) -> str:
    return f"{secrets.randbelow(10**digits):0{digits}d}"


class MfaChannel:
    """One way of proving a second factor.

    Subclasses decide when they are required, how (and whether) a code is
    delivered, how a submission is checked, and what changes on success.
    """

    mfa_type: MfaType
    counter_purpose: CounterPurpose

    def __init__(self, counters: CounterStore, directory: Directory) -> None:
        self.counters = counters
        self.directory = directory

    @property
    def name(self) -> str:
        return self.mfa_type.value

    def is_enrolled(self, user: SessionUser) -> bool:
        return self.name in user.mfa_types

    def is_forced(self, settings: Settings) -> bool:
        raise NotImplementedError

    def is_required(self, user: SessionUser, settings: Settings) -> bool:
        return self.is_enrolled(user) or self.is_forced(settings)

    def allows_email_fallback(self, user: SessionUser, settings: Settings) -> bool:
        return False

    async def send(
        self, record: AuthorizationSession, settings: Settings, ip: str
    ) -> None:
        raise ForbiddenError(f"{self.name} codes are not delivered")

    async def verify(
        self, record: AuthorizationSession, code: str, settings: Settings, ip: str
    ) -> None:
        raise NotImplementedError

    def _email_fallback_base(self, user: SessionUser, settings: Settings) -> bool:
        if not settings.allow_email_mfa_as_backup:
            return False
        email_mandatory_unenrolled = (
            settings.email_mfa_is_required and MfaType.EMAIL.value not in user.mfa_types
        )
        return not email_mandatory_unenrolled and self.is_required(user, settings)


class OtpChannel(MfaChannel):
    mfa_type = MfaType.OTP
    counter_purpose = CounterPurpose.OTP_MFA

    def is_forced(self, settings: Settings) -> bool:
        return settings.otp_mfa_is_required

    def allows_email_fallback(self, user: SessionUser, settings: Settings) -> bool:
        return self._email_fallback_base(user, settings)

    async def verify(
        self, record: AuthorizationSession, code: str, settings: Settings, ip: str
    ) -> None:
        user = record.user
        if not user.otp_secret:
            raise ForbiddenError("otp is not set up for this user")
        # the attempt is counted before the comparison so parallel guesses share one budget
        attempt = await self.counters.increment_below(
            self.counter_purpose,
            user.id,
            ip,
            OTP_MFA_LOCK_THRESHOLD,
            settings.mfa_counter_expires_in,
        )
        if attempt is None:
            logger.warning("otp_mfa_locked", user_id=user.id, ip=ip)
            raise LockedError("too many failed attempts")
        if not verify_totp(user.otp_secret, code):
            logger.info("otp_mfa_failed", user_id=user.id, ip=ip, failures=attempt)
            raise AuthenticationError("invalid code")
        await self.counters.reset(self.counter_purpose, user.id, ip)
        if not user.otp_verified:
            if self.directory.mark_otp_verified(user.id) is None:
                raise NotFoundError("user not found")
            user.otp_verified = True
            logger.info("otp_mfa_verified_first_time", user_id=user.id)


class _DeliveredCodeChannel(MfaChannel):
    """Shared issue/verify logic for channels that deliver a random code."""

    def threshold(self, settings: Settings) -> int:
        raise NotImplementedError

    def destination(self, user: SessionUser) -> str:
        raise NotImplementedError

    async def deliver(self, destination: str, code: str, record: AuthorizationSession) -> bool:
        raise NotImplementedError

    async def send(
        self, record: AuthorizationSession, settings: Settings, ip: str
    ) -> None:
        user = record.user
        destination = self.destination(user)
        limit = self.threshold(settings)
        if limit > 0:
            sent = await self.counters.increment_below(
                self.counter_purpose, user.id, ip, limit, settings.mfa_counter_expires_in
            )
            if sent is None:
                logger.warning(f"{self.name}_mfa_locked", user_id=user.id, ip=ip)
                raise LockedError("too many codes requested")
        code = generate_numeric_code()
        await self.counters.kv.put(
            mfa_code_key(self.name, record.token),
            code,
            settings.authorization_code_expires_in,
        )
        if not await self.deliver(destination, code, record):
            logger.error(f"{self.name}_mfa_delivery_failed", user_id=user.id)
            raise ServerError("unable to deliver verification code")
        logger.info(f"{self.name}_mfa_code_sent", user_id=user.id)

    async def verify(
        self, record: AuthorizationSession, code: str, settings: Settings, ip: str
    ) -> None:
        consumed = bool(code) and await self.counters.kv.pop_if_equals(
            mfa_code_key(self.name, record.token), code
        )
        if not consumed:
            logger.info(f"{self.name}_mfa_failed", user_id=record.user.id, ip=ip)
            raise AuthenticationError("invalid code")
        await self.on_verified(record)

    async def on_verified(self, record: AuthorizationSession) -> None:
        return None


class SmsChannel(_DeliveredCodeChannel):
    mfa_type = MfaType.SMS
    counter_purpose = CounterPurpose.SMS_MFA

    def __init__(self, counters: CounterStore, directory: Directory, sender: SmsSender) -> None:
        super().__init__(counters, directory)
        self.sender = sender

    def is_forced(self, settings: Settings) -> bool:
        return settings.sms_mfa_is_required

    def allows_email_fallback(self, user: SessionUser, settings: Settings) -> bool:
        has_verified_phone = bool(user.sms_phone_number and user.sms_phone_number_verified)
        return has_verified_phone and self._email_fallback_base(user, settings)

    def threshold(self, settings: Settings) -> int:
        return settings.sms_mfa_message_threshold

    def destination(self, user: SessionUser) -> str:
        if not user.sms_phone_number:
            raise ForbiddenError("phone number not set")
        return user.sms_phone_number

    async def deliver(self, destination: str, code: str, record: AuthorizationSession) -> bool:
        return await self.sender.send_sms(
            destination, f"{record.app.name} verification code: {code}"
        )

    async def on_verified(self, record: AuthorizationSession) -> None:
        user = record.user
        if not user.sms_phone_number_verified:
            if self.directory.mark_sms_phone_verified(user.id) is None:
                raise NotFoundError("user not found")
            user.sms_phone_number_verified = True
            logger.info("sms_phone_verified", user_id=user.id)


class EmailChannel(_DeliveredCodeChannel):
    mfa_type = MfaType.EMAIL
    counter_purpose = CounterPurpose.EMAIL_MFA

    def __init__(self, counters: CounterStore, directory: Directory, sender: EmailSender) -> None:
        super().__init__(counters, directory)
        self.sender = sender

    def is_forced(self, settings: Settings) -> bool:
        return settings.email_mfa_is_required

    def threshold(self, settings: Settings) -> int:
        return settings.email_mfa_email_threshold

    def destination(self, user: SessionUser) -> str:
        return user.email

    async def deliver(self, destination: str, code: str, record: AuthorizationSession) -> bool:
        return await self.sender.send_mfa_code(destination, code, record.request.locale)


class MfaService:
    """Channel registry plus the cross-channel enrollment/fallback rules."""

    def __init__(
        self,
        kv: KVStore,
        directory: Directory,
        *,
        email_sender: EmailSender,
        sms_sender: SmsSender,
    ) -> None:
        self.counters = CounterStore(kv)
        self.directory = directory
        self.otp = OtpChannel(self.counters, directory)
        self.sms = SmsChannel(self.counters, directory, sms_sender)
        self.email = EmailChannel(self.counters, directory, email_sender)
        # precedence order
        self.channels: Tuple[MfaChannel, ...] = (self.otp, self.sms, self.email)

    def channel(self, mfa_type: MfaType | str) -> MfaChannel:
        wanted = MfaType(mfa_type)
        for channel in self.channels:
            if channel.mfa_type == wanted:
                return channel
        raise NotFoundError(f"unknown mfa type {mfa_type}")

    def forced_channels(self, settings: Settings) -> List[MfaType]:
        return [c.mfa_type for c in self.channels if c.is_forced(settings)]

    def enrollment_options(self, settings: Settings) -> List[MfaType]:
        if settings.enforce_one_mfa_enrollment:
            return list(settings.enforce_one_mfa_enrollment)
        return self.forced_channels(settings)

    def email_fallback_allowed(self, user: SessionUser, settings: Settings) -> bool:
        return self.otp.allows_email_fallback(
            user, settings
        ) or self.sms.allows_email_fallback(user, settings)

    def can_use(self, channel: MfaChannel, user: SessionUser, settings: Settings) -> bool:
        if channel.is_required(user, settings):
            return True
        return channel.mfa_type == MfaType.EMAIL and self.email_fallback_allowed(user, settings)
