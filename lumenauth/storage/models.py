from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    auth_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    password_hash: Optional[str] = None
    otp_secret: str = ""
    otp_verified: bool = False
    mfa_types: List[str] = field(default_factory=list)
    sms_phone_number: Optional[str] = None
    sms_phone_number_verified: bool = False
    social_provider: Optional[str] = None
    social_uid: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    locale: str = "en"
    org_slug: Optional[str] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=_utcnow)
    deleted_at: Optional[datetime] = None


@dataclass
class App:
    id: str
    client_id: str
    name: str
    type: str = "spa"
    redirect_uris: List[str] = field(default_factory=list)
    scopes: List[str] = field(default_factory=list)
    is_active: bool = True
    created_at: datetime = field(default_factory=_utcnow)
    deleted_at: Optional[datetime] = None


@dataclass
class Org:
    id: str
    slug: str
    name: str
    created_at: datetime = field(default_factory=_utcnow)
    deleted_at: Optional[datetime] = None


@dataclass
class UserAppConsent:
    user_id: str
    app_id: str
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class PasskeyCredential:
    """A registered WebAuthn public key; ``credential_id`` is base64url."""

    credential_id: str
    user_id: str
    public_key: bytes
    sign_count: int = 0
    created_at: datetime = field(default_factory=_utcnow)
    last_used_at: Optional[datetime] = None


class SessionState(str, Enum):
    UNVERIFIED = "unverified"
    MFA_ENROLL_PENDING = "mfa_enroll_pending"
    MFA_VERIFY_PENDING = "mfa_verify_pending"
    CONSENT_PENDING = "consent_pending"
    AUTHORIZED = "authorized"


@dataclass
class AppSnapshot:
    id: str
    name: str
    client_id: str


@dataclass
class AuthorizeRequest:
    """Validated parameters of an /authorize call."""

    client_id: str
    redirect_uri: str
    scopes: List[str]
    code_challenge: str
    code_challenge_method: str = "S256"
    state: str = ""
    locale: str = "en"
    org: Optional[str] = None


@dataclass
class SessionUser:
    """User fields an authorization session needs between steps."""

    id: str
    auth_id: str
    email: str
    mfa_types: List[str] = field(default_factory=list)
    otp_secret: str = ""
    otp_verified: bool = False
    sms_phone_number: Optional[str] = None
    sms_phone_number_verified: bool = False
    roles: List[str] = field(default_factory=list)

    @classmethod
    def from_user(cls, user: User, roles: List[str]) -> "SessionUser":
        return cls(
            id=user.id,
            auth_id=user.auth_id,
            email=user.email,
            mfa_types=list(user.mfa_types),
            otp_secret=user.otp_secret,
            otp_verified=user.otp_verified,
            sms_phone_number=user.sms_phone_number,
            sms_phone_number_verified=user.sms_phone_number_verified,
            roles=list(roles),
        )


@dataclass
class AuthorizationSession:
    """One login attempt; ``token`` doubles as the authorization code."""

    token: str
    app: AppSnapshot
    request: AuthorizeRequest
    user: SessionUser
    state: SessionState = SessionState.UNVERIFIED
    mfa_verified_by: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["state"] = self.state.value
        payload["created_at"] = self.created_at.isoformat()
        return payload

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuthorizationSession":
        return cls(
            token=data["token"],
            app=AppSnapshot(**data["app"]),
            request=AuthorizeRequest(**data["request"]),
            user=SessionUser(**data["user"]),
            state=SessionState(data.get("state", SessionState.UNVERIFIED.value)),
            mfa_verified_by=data.get("mfa_verified_by"),
            created_at=datetime.fromisoformat(data["created_at"])
            if data.get("created_at")
            else _utcnow(),
        )


@dataclass
class RefreshTokenRecord:
    auth_id: str
    client_id: str
    scope: str
    roles: List[str] = field(default_factory=list)


@dataclass
class SigningKey:
    kid: str
    private_pem: str
    public_jwk: Dict[str, Any]
    status: str = "current"
    created_at: datetime = field(default_factory=_utcnow)

    @property
    def is_current(self) -> bool:
        return self.status == "current"

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["created_at"] = self.created_at.isoformat()
        return payload

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SigningKey":
        return cls(
            kid=data["kid"],
            private_pem=data["private_pem"],
            public_jwk=dict(data["public_jwk"]),
            status=data.get("status", "current"),
            created_at=datetime.fromisoformat(data["created_at"]),
        )
