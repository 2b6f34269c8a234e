from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence

from lumenauth.config import MfaType, Settings
from lumenauth.service.mfa import MfaChannel
from lumenauth.storage.models import SessionState, SessionUser


class NextPage(str, Enum):
    MFA_ENROLL = "mfa_enroll"
    OTP_MFA = "otp_mfa"
    SMS_MFA = "sms_mfa"
    EMAIL_MFA = "email_mfa"
    CONSENT = "consent"


_VERIFY_PAGES = {
    MfaType.OTP: NextPage.OTP_MFA,
    MfaType.SMS: NextPage.SMS_MFA,
    MfaType.EMAIL: NextPage.EMAIL_MFA,
}


@dataclass(frozen=True)
class Decision:
    state: SessionState
    next_page: Optional[NextPage] = None

    @property
    def is_authorized(self) -> bool:
        return self.state == SessionState.AUTHORIZED


def required_channel(
    user: SessionUser, settings: Settings, channels: Sequence[MfaChannel]
) -> Optional[MfaChannel]:
    """First channel, in precedence order, that is enrolled or forced."""
    for channel in channels:
        if channel.is_required(user, settings):
            return channel
    return None


def needs_enrollment(
    user: SessionUser, settings: Settings, channels: Sequence[MfaChannel]
) -> bool:
    if any(channel.is_enrolled(user) for channel in channels):
        return False
    forced = any(channel.is_forced(settings) for channel in channels)
    return forced or bool(settings.enforce_one_mfa_enrollment)


def resolve_next_step(
    user: SessionUser,
    settings: Settings,
    channels: Sequence[MfaChannel],
    *,
    mfa_verified_by: Optional[str],
    has_consent: bool,
) -> Decision:
    """Decide where an authenticated session goes next.

    Pure function of the user, a settings snapshot, the channels in
    precedence order and the session's MFA status. Same inputs always
    produce the same decision.
    """
    if not mfa_verified_by:
        if needs_enrollment(user, settings, channels):
            return Decision(SessionState.MFA_ENROLL_PENDING, NextPage.MFA_ENROLL)
        channel = required_channel(user, settings, channels)
        if channel is not None:
            return Decision(SessionState.MFA_VERIFY_PENDING, _VERIFY_PAGES[channel.mfa_type])
    if not has_consent:
        return Decision(SessionState.CONSENT_PENDING, NextPage.CONSENT)
    return Decision(SessionState.AUTHORIZED)
