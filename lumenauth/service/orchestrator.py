from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode, urlparse

from lumenauth.config import MfaType, Settings
from lumenauth.logging import get_logger, mask_phone_number
from lumenauth.service.accounts import AccountService, normalize_email
from lumenauth.service.consent import ConsentManager
from lumenauth.service.counters import PasswordLockout
from lumenauth.service.errors import (
    AuthenticationError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from lumenauth.service.flow import NextPage, resolve_next_step
from lumenauth.service.mfa import MfaChannel, MfaService, otp_enrollment_uri
from lumenauth.service.passkey import PasskeyService
from lumenauth.service.sessions import AuthorizationSessionStore
from lumenauth.service.social import SocialIdentityService
from lumenauth.storage.directory import Directory
from lumenauth.storage.models import (
    App,
    AppSnapshot,
    AuthorizationSession,
    AuthorizeRequest,
    SessionState,
    SessionUser,
    User,
)

logger = get_logger(__name__)

# requestable by any client on top of the app's own scopes
STANDARD_SCOPES = frozenset({"openid", "profile", "offline_access"})

_PHONE_DIGITS = re.compile(r"^\+?[0-9]{6,15}$")


class Step(str, Enum):
    MFA_ENROLL = "mfa_enroll"
    OTP_MFA = "otp_mfa"
    SMS_MFA = "sms_mfa"
    EMAIL_MFA = "email_mfa"
    CONSENT = "consent"


_VERIFY_STEPS = {
    Step.OTP_MFA: MfaType.OTP,
    Step.SMS_MFA: MfaType.SMS,
    Step.EMAIL_MFA: MfaType.EMAIL,
}


@dataclass
class AdvanceResult:
    """Outcome of a step: either the next page or the final redirect data."""

    code: str
    state: SessionState
    next_page: Optional[NextPage] = None
    redirect_uri: Optional[str] = None
    client_state: str = ""
    scopes: List[str] = field(default_factory=list)

    @property
    def is_final(self) -> bool:
        return self.state == SessionState.AUTHORIZED

    def to_dict(self) -> Dict[str, Any]:
        if self.next_page is not None:
            return {"code": self.code, "next_page": self.next_page.value}
        return {
            "code": self.code,
            "redirect_uri": self.redirect_uri,
            "state": self.client_state,
            "scopes": list(self.scopes),
        }


def _with_query(uri: str, params: Dict[str, str]) -> str:
    separator = "&" if urlparse(uri).query else "?"
    return f"{uri}{separator}{urlencode(params)}"


class AuthorizationOrchestrator:
    """Drives one login attempt from credential check to an exchangeable code.

    Every decision takes the caller's settings snapshot, so configuration
    changes apply between steps of a session that is already in flight.
    """

    def __init__(
        self,
        directory: Directory,
        sessions: AuthorizationSessionStore,
        *,
        accounts: AccountService,
        mfa: MfaService,
        consent: ConsentManager,
        lockout: PasswordLockout,
        social: SocialIdentityService,
        passkey: PasskeyService,
    ) -> None:
        self.directory = directory
        self.sessions = sessions
        self.accounts = accounts
        self.mfa = mfa
        self.consent = consent
        self.lockout = lockout
        self.social = social
        self.passkey = passkey

    # authorize request
    def validate_authorize_request(self, request: AuthorizeRequest) -> App:
        app = self.directory.get_app_by_client_id(request.client_id)
        if app is None or not app.is_active:
            raise ValidationError("unknown client", detail={"field": "client_id"})
        if request.redirect_uri not in app.redirect_uris:
            raise ValidationError("redirect_uri not allowed", detail={"field": "redirect_uri"})
        if not request.scopes:
            raise ValidationError("scope is required", detail={"field": "scope"})
        unknown = sorted(set(request.scopes) - set(app.scopes) - STANDARD_SCOPES)
        if unknown:
            raise ValidationError(
                "scope not allowed", detail={"field": "scope", "scopes": unknown}
            )
        if not request.code_challenge:
            raise ValidationError("code_challenge is required", detail={"field": "code_challenge"})
        if request.code_challenge_method != "S256":
            raise ValidationError(
                "unsupported code_challenge_method",
                detail={"field": "code_challenge_method"},
            )
        if request.org and self.directory.get_org_by_slug(request.org) is None:
            raise ValidationError("unknown org", detail={"field": "org"})
        return app

    def authorize_info(self, request: AuthorizeRequest, settings: Settings) -> Dict[str, Any]:
        """What the sign-in page needs to render for a validated request."""
        app = self.validate_authorize_request(request)
        return {
            "client_id": app.client_id,
            "app_name": app.name,
            "redirect_uri": request.redirect_uri,
            "scopes": list(request.scopes),
            "state": request.state,
            "locale": request.locale,
            "org": request.org,
            "enable_sign_up": settings.enable_sign_up,
            "enable_password_sign_in": settings.enable_password_sign_in,
            "enable_passkey_sign_in": settings.enable_passkey_sign_in
            and self.passkey.verifier is not None,
            "social_providers": [
                provider
                for provider in ("google", "github")
                if self.social.is_configured(provider, settings)
            ],
        }

    # session lifecycle
    async def start_session(
        self, app: App, request: AuthorizeRequest, user: User, settings: Settings
    ) -> AuthorizationSession:
        return await self.sessions.create(
            AppSnapshot(id=app.id, name=app.name, client_id=app.client_id),
            request,
            SessionUser.from_user(user, self.directory.get_user_roles(user.id)),
            settings.authorization_code_expires_in,
        )

    async def _resolve(self, record: AuthorizationSession, settings: Settings) -> AdvanceResult:
        has_consent = self.consent.is_satisfied(settings, record.user.id, record.app.id)
        decision = resolve_next_step(
            record.user,
            settings,
            self.mfa.channels,
            mfa_verified_by=record.mfa_verified_by,
            has_consent=has_consent,
        )
        if record.state != decision.state:
            logger.info(
                "authorization_session_transition",
                client_id=record.app.client_id,
                from_state=record.state.value,
                to_state=decision.state.value,
            )
        record.state = decision.state
        await self.sessions.save(record)
        if not decision.is_authorized:
            return AdvanceResult(record.token, record.state, next_page=decision.next_page)
        return AdvanceResult(
            record.token,
            record.state,
            redirect_uri=record.request.redirect_uri,
            client_state=record.request.state,
            scopes=list(record.request.scopes),
        )

    async def _begin(
        self, app: App, request: AuthorizeRequest, user: User, settings: Settings
    ) -> AdvanceResult:
        record = await self.start_session(app, request, user, settings)
        return await self._resolve(record, settings)

    async def resume(self, token: str, settings: Settings) -> AdvanceResult:
        """Re-evaluate the next step without performing any action."""
        record = await self.sessions.require(token)
        return await self._resolve(record, settings)

    # entry points
    async def authorize_password(
        self,
        request: AuthorizeRequest,
        email: str,
        password: str,
        settings: Settings,
        ip: str,
    ) -> AdvanceResult:
        if not settings.enable_password_sign_in:
            raise ForbiddenError("password sign-in is disabled")
        app = self.validate_authorize_request(request)
        normalized = normalize_email(email)
        attempt = await self.lockout.reserve_attempt(settings, normalized, ip)
        user = self.accounts.authenticate(normalized, password)
        if user is None:
            logger.info("password_login_failed", email=normalized, ip=ip, failures=attempt)
            raise AuthenticationError("invalid email or password")
        await self.lockout.clear(normalized, ip)
        logger.info("password_sign_in_succeeded", user_id=user.id, client_id=app.client_id)
        return await self._begin(app, request, user, settings)

    async def authorize_account(
        self,
        request: AuthorizeRequest,
        email: str,
        password: str,
        settings: Settings,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> AdvanceResult:
        if not settings.enable_sign_up:
            raise ForbiddenError("sign-up is disabled")
        app = self.validate_authorize_request(request)
        user = self.accounts.register(
            email,
            password,
            first_name=first_name,
            last_name=last_name,
            locale=request.locale,
            org_slug=request.org,
        )
        return await self._begin(app, request, user, settings)

    async def authorize_social(
        self, request: AuthorizeRequest, provider: str, code: str, settings: Settings
    ) -> AdvanceResult:
        app = self.validate_authorize_request(request)
        identity = await self.social.exchange(provider, code, settings)
        if identity is None:
            raise AuthenticationError("social sign-in failed")
        user = self.accounts.find_or_create_social(
            identity.provider,
            identity.provider_uid,
            identity.email,
            first_name=identity.first_name,
            last_name=identity.last_name,
            locale=request.locale,
            org_slug=request.org,
        )
        return await self._begin(app, request, user, settings)

    async def passkey_challenge(self, settings: Settings) -> Dict[str, Any]:
        return await self.passkey.create_challenge(settings)

    async def authorize_passkey(
        self,
        request: AuthorizeRequest,
        challenge_id: str,
        credential: Dict[str, Any],
        settings: Settings,
    ) -> AdvanceResult:
        app = self.validate_authorize_request(request)
        user_id = await self.passkey.verify(challenge_id, credential, settings)
        user = self.directory.get_user(user_id)
        if user is None or not user.is_active:
            raise AuthenticationError("passkey verification failed")
        return await self._begin(app, request, user, settings)

    # steps
    async def advance(
        self,
        step: Step,
        token: str,
        payload: Dict[str, Any],
        *,
        settings: Settings,
        ip: str,
    ) -> AdvanceResult:
        step = Step(step)
        if step == Step.MFA_ENROLL:
            return await self.enroll_mfa(token, payload.get("mfa_type", ""), settings)
        if step == Step.CONSENT:
            return await self.accept_consent(token, settings)
        return await self.verify_mfa(
            token, _VERIFY_STEPS[step], payload.get("mfa_code", ""), settings, ip
        )

    async def enroll_mfa(self, token: str, mfa_type: str, settings: Settings) -> AdvanceResult:
        record = await self.sessions.require(token)
        if record.user.mfa_types or record.state != SessionState.MFA_ENROLL_PENDING:
            raise ForbiddenError("mfa already enrolled")
        try:
            wanted = MfaType(mfa_type)
        except ValueError as exc:
            raise ValidationError("unknown mfa type", detail={"field": "mfa_type"}) from exc
        if wanted not in self.mfa.enrollment_options(settings):
            raise ValidationError("mfa type not offered", detail={"field": "mfa_type"})
        updated = self.directory.enroll_mfa(record.user.id, wanted.value)
        if updated is None:
            raise NotFoundError("user not found")
        record.user.mfa_types = list(updated.mfa_types)
        logger.info("mfa_enrolled", user_id=record.user.id, mfa_type=wanted.value)
        return await self._resolve(record, settings)

    async def _require_mfa_pending(
        self, token: str, channel: MfaChannel, settings: Settings
    ) -> AuthorizationSession:
        record = await self.sessions.require(token)
        if record.mfa_verified_by or record.state != SessionState.MFA_VERIFY_PENDING:
            raise ForbiddenError("mfa already verified")
        if not self.mfa.can_use(channel, record.user, settings):
            raise ForbiddenError(f"{channel.name} mfa is not available")
        return record

    async def verify_mfa(
        self, token: str, mfa_type: MfaType, code: str, settings: Settings, ip: str
    ) -> AdvanceResult:
        channel = self.mfa.channel(mfa_type)
        record = await self._require_mfa_pending(token, channel, settings)
        await channel.verify(record, (code or "").strip(), settings, ip)
        record.mfa_verified_by = channel.name
        logger.info("mfa_verified", user_id=record.user.id, mfa_type=channel.name)
        return await self._resolve(record, settings)

    async def send_mfa_code(
        self, token: str, mfa_type: MfaType, settings: Settings, ip: str
    ) -> None:
        """Issue (or re-issue) an SMS or Email code for the session."""
        channel = self.mfa.channel(mfa_type)
        record = await self._require_mfa_pending(token, channel, settings)
        await channel.send(record, settings, ip)

    async def setup_sms_mfa(
        self, token: str, phone_number: str, settings: Settings, ip: str
    ) -> Dict[str, Any]:
        channel = self.mfa.sms
        record = await self._require_mfa_pending(token, channel, settings)
        if record.user.sms_phone_number_verified:
            raise ForbiddenError("phone number already verified")
        number = re.sub(r"[\s\-().]", "", phone_number or "")
        if not _PHONE_DIGITS.match(number):
            raise ValidationError("invalid phone number", detail={"field": "phone_number"})
        if not number.startswith("+"):
            number = f"{settings.sms_mfa_country_code}{number}"
        if self.directory.set_sms_phone_number(record.user.id, number) is None:
            raise NotFoundError("user not found")
        record.user.sms_phone_number = number
        record.user.sms_phone_number_verified = False
        await self.sessions.save(record)
        await channel.send(record, settings, ip)
        return {"phone_number": mask_phone_number(number)}

    async def accept_consent(self, token: str, settings: Settings) -> AdvanceResult:
        record = await self.sessions.require(token)
        if record.state != SessionState.CONSENT_PENDING:
            raise ForbiddenError("consent is not pending")
        self.consent.grant_consent(record.user.id, record.app.id)
        return await self._resolve(record, settings)

    async def decline_consent(self, token: str) -> Dict[str, Any]:
        record = await self.sessions.require(token)
        if record.state != SessionState.CONSENT_PENDING:
            raise ForbiddenError("consent is not pending")
        await self.sessions.discard(token)
        logger.info("user_app_consent_declined", user_id=record.user.id, app_id=record.app.id)
        params = {"error": "access_denied"}
        if record.request.state:
            params["state"] = record.request.state
        return {"redirect_uri": _with_query(record.request.redirect_uri, params)}

    # read-only projections
    async def mfa_enroll_info(self, token: str, settings: Settings) -> Dict[str, Any]:
        record = await self.sessions.require(token)
        if record.state != SessionState.MFA_ENROLL_PENDING:
            raise ForbiddenError("mfa enrollment is not pending")
        return {"mfa_types": [t.value for t in self.mfa.enrollment_options(settings)]}

    async def otp_setup_info(self, token: str, settings: Settings) -> Dict[str, Any]:
        record = await self._require_mfa_pending(token, self.mfa.otp, settings)
        if record.user.otp_verified:
            raise ForbiddenError("otp already set up")
        return {
            "otp_uri": otp_enrollment_uri(
                record.user.otp_secret, record.user.email, settings.otp_issuer
            )
        }

    async def otp_mfa_info(self, token: str, settings: Settings) -> Dict[str, Any]:
        record = await self._require_mfa_pending(token, self.mfa.otp, settings)
        return {
            "otp_setup_required": not record.user.otp_verified,
            "allow_fallback_to_email_mfa": self.mfa.otp.allows_email_fallback(
                record.user, settings
            ),
        }

    async def sms_mfa_info(self, token: str, settings: Settings, ip: str) -> Dict[str, Any]:
        """Describe the SMS step; a verified number gets its first code right away."""
        record = await self._require_mfa_pending(token, self.mfa.sms, settings)
        user = record.user
        code_sent = bool(user.sms_phone_number and user.sms_phone_number_verified)
        if code_sent:
            await self.mfa.sms.send(record, settings, ip)
        return {
            "code_sent": code_sent,
            "phone_number": mask_phone_number(user.sms_phone_number)
            if user.sms_phone_number
            else None,
            "phone_number_verified": user.sms_phone_number_verified,
            "country_code": settings.sms_mfa_country_code,
            "allow_fallback_to_email_mfa": self.mfa.sms.allows_email_fallback(user, settings),
        }

    async def consent_info(self, token: str) -> Dict[str, Any]:
        record = await self.sessions.require(token)
        if record.state != SessionState.CONSENT_PENDING:
            raise ForbiddenError("consent is not pending")
        return {
            "app_name": record.app.name,
            "client_id": record.app.client_id,
            "scopes": list(record.request.scopes),
            "redirect_uri": record.request.redirect_uri,
        }
