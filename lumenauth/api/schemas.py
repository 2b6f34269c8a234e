from __future__ import annotations

from typing import Any, Dict, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from lumenauth.config import MfaType
from lumenauth.storage.models import AuthorizeRequest

_VALID_ERROR_CODES = frozenset({
    "validation_error",
    "invalid_grant",
    "unauthorized",
    "forbidden",
    "authorization_expired",
    "locked",
    "not_found",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code the UI can switch on."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_email(value: str) -> str:
    value = (value or "").strip().lower()
    if value.count("@") != 1 or value.startswith("@") or value.endswith("@"):
        raise ValueError("invalid email address")
    return value


class AuthorizeParams(BaseModel):
    """Parameters of the client's original /authorize call, echoed by each sign-in form."""

    model_config = ConfigDict(extra="forbid")

    client_id: str = Field(..., min_length=1, max_length=255)
    redirect_uri: str = Field(..., min_length=1, max_length=2048)
    scope: str = Field(..., max_length=1024)
    code_challenge: str = Field(..., min_length=43, max_length=128)
    code_challenge_method: str = "S256"
    state: str = Field("", max_length=1024)
    locale: str = Field("en", max_length=16)
    org: Optional[str] = Field(None, max_length=128)

    def to_request(self) -> AuthorizeRequest:
        return AuthorizeRequest(
            client_id=self.client_id,
            redirect_uri=self.redirect_uri,
            scopes=self.scope.split(),
            code_challenge=self.code_challenge,
            code_challenge_method=self.code_challenge_method,
            state=self.state,
            locale=self.locale,
            org=self.org,
        )


class PasswordAuthorizeRequest(AuthorizeParams):
    email: str = Field(..., max_length=320)
    password: str = Field(..., max_length=1024)

    @field_validator("email")
    @classmethod
    def validate_email(cls, value: str) -> str:
        return _normalize_email(value)


class AccountAuthorizeRequest(AuthorizeParams):
    email: str = Field(..., max_length=320)
    password: str = Field(..., min_length=8, max_length=1024)
    first_name: Optional[str] = Field(None, max_length=100)
    last_name: Optional[str] = Field(None, max_length=100)

    @field_validator("email")
    @classmethod
    def validate_email(cls, value: str) -> str:
        return _normalize_email(value)


class SocialAuthorizeRequest(AuthorizeParams):
    code: str = Field(..., min_length=1, max_length=2048)


class PasskeyAuthorizeRequest(AuthorizeParams):
    challenge_id: str = Field(..., min_length=1, max_length=128)
    credential: Dict[str, Any]


class SessionCodeRequest(BaseModel):
    """Body of every step that acts on an existing authorization session."""

    code: str = Field(..., min_length=1, max_length=256)


class MfaEnrollRequest(SessionCodeRequest):
    mfa_type: MfaType


class MfaCodeRequest(SessionCodeRequest):
    mfa_code: str = Field(..., min_length=1, max_length=16)


class SmsSetupRequest(SessionCodeRequest):
    phone_number: str = Field(..., min_length=4, max_length=32)


class ConsentRequest(SessionCodeRequest):
    accept: bool = True

