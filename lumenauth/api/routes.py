from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Form, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse

from lumenauth.api.schemas import (
    AccountAuthorizeRequest,
    AuthorizeParams,
    ConsentRequest,
    Envelope,
    MfaCodeRequest,
    MfaEnrollRequest,
    PasskeyAuthorizeRequest,
    PasswordAuthorizeRequest,
    SessionCodeRequest,
    SmsSetupRequest,
    SocialAuthorizeRequest,
)
from lumenauth.config import MfaType
from lumenauth.logging import get_logger
from lumenauth.service.errors import InvalidGrantError
from lumenauth.service.orchestrator import STANDARD_SCOPES, AdvanceResult, Step
from lumenauth.service.runtime import get_runtime
from lumenauth.service.tokens import JWT_ALGORITHM

logger = get_logger(__name__)

oauth_router = APIRouter(prefix="/oauth2/v1", tags=["oauth2"])
identity_router = APIRouter(prefix="/identity/v1", tags=["identity"])
well_known_router = APIRouter(prefix="/.well-known", tags=["discovery"])


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise _http_error("unauthorized", "bearer token required", status_code=401)
    return authorization.split(" ", 1)[1].strip()


def _step_envelope(result: AdvanceResult) -> Envelope:
    return Envelope(status="ok", data=result.to_dict())


def _oauth_error(error: str, description: str, status_code: int = 400) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": error, "error_description": description},
    )


# /oauth2/v1
@oauth_router.get("/authorize", response_model=Envelope)
async def authorize(
    client_id: str = Query(..., max_length=255),
    redirect_uri: str = Query(..., max_length=2048),
    scope: str = Query(..., max_length=1024),
    code_challenge: str = Query(..., min_length=43, max_length=128),
    code_challenge_method: str = Query("S256"),
    state: str = Query("", max_length=1024),
    locale: str = Query("en", max_length=16),
    org: Optional[str] = Query(None, max_length=128),
):
    """Validate an authorization request and describe the sign-in options."""
    runtime = get_runtime()
    params = AuthorizeParams(
        client_id=client_id,
        redirect_uri=redirect_uri,
        scope=scope,
        code_challenge=code_challenge,
        code_challenge_method=code_challenge_method,
        state=state,
        locale=locale,
        org=org,
    )
    info = runtime.orchestrator.authorize_info(params.to_request(), runtime.settings_snapshot())
    return Envelope(status="ok", data=info)


@oauth_router.post("/token")
async def token(
    grant_type: str = Form(...),
    code: Optional[str] = Form(None),
    code_verifier: Optional[str] = Form(None),
    client_id: Optional[str] = Form(None),
    refresh_token: Optional[str] = Form(None),
):
    runtime = get_runtime()
    settings = runtime.settings_snapshot()
    try:
        if grant_type == "authorization_code":
            if not code or not code_verifier:
                return _oauth_error("invalid_request", "code and code_verifier are required")
            tokens = await runtime.tokens.exchange_code(
                code, code_verifier, settings, client_id=client_id
            )
        elif grant_type == "refresh_token":
            if not refresh_token:
                return _oauth_error("invalid_request", "refresh_token is required")
            tokens = await runtime.tokens.refresh(refresh_token, settings, client_id=client_id)
        else:
            return _oauth_error("unsupported_grant_type", "grant_type not supported")
    except InvalidGrantError as exc:
        return _oauth_error(exc.error_code, exc.message)
    return JSONResponse(
        content=tokens, headers={"Cache-Control": "no-store", "Pragma": "no-cache"}
    )


@oauth_router.post("/revoke")
async def revoke(token: str = Form(...)):
    """RFC 7009: unknown tokens are not an error."""
    await get_runtime().tokens.revoke_refresh_token(token)
    return JSONResponse(content={})


@oauth_router.get("/logout")
async def logout_redirect(
    client_id: str = Query(..., max_length=255),
    post_logout_redirect_uri: str = Query(..., max_length=2048),
):
    target = get_runtime().tokens.logout_redirect(client_id, post_logout_redirect_uri)
    return RedirectResponse(target, status_code=302)


@oauth_router.get("/userinfo")
async def userinfo(authorization: Optional[str] = Header(None)):
    runtime = get_runtime()
    info = await runtime.tokens.userinfo(
        _bearer_token(authorization), runtime.settings_snapshot()
    )
    return JSONResponse(content=info)


# /identity/v1 sign-in entry points
@identity_router.post("/authorize-password", response_model=Envelope)
async def authorize_password(body: PasswordAuthorizeRequest, request: Request):
    runtime = get_runtime()
    result = await runtime.orchestrator.authorize_password(
        body.to_request(),
        body.email,
        body.password,
        runtime.settings_snapshot(),
        _client_ip(request),
    )
    return _step_envelope(result)


@identity_router.post("/authorize-account", response_model=Envelope)
async def authorize_account(body: AccountAuthorizeRequest):
    runtime = get_runtime()
    result = await runtime.orchestrator.authorize_account(
        body.to_request(),
        body.email,
        body.password,
        runtime.settings_snapshot(),
        first_name=body.first_name,
        last_name=body.last_name,
    )
    return _step_envelope(result)


@identity_router.post("/authorize-social/{provider}", response_model=Envelope)
async def authorize_social(provider: str, body: SocialAuthorizeRequest):
    runtime = get_runtime()
    result = await runtime.orchestrator.authorize_social(
        body.to_request(), provider, body.code, runtime.settings_snapshot()
    )
    return _step_envelope(result)


@identity_router.get("/passkey-challenge", response_model=Envelope)
async def passkey_challenge():
    runtime = get_runtime()
    challenge = await runtime.orchestrator.passkey_challenge(runtime.settings_snapshot())
    return Envelope(status="ok", data=challenge)


@identity_router.post("/authorize-passkey-verify", response_model=Envelope)
async def authorize_passkey(body: PasskeyAuthorizeRequest):
    runtime = get_runtime()
    result = await runtime.orchestrator.authorize_passkey(
        body.to_request(), body.challenge_id, body.credential, runtime.settings_snapshot()
    )
    return _step_envelope(result)


@identity_router.get("/authorize-next", response_model=Envelope)
async def authorize_next(code: str = Query(..., max_length=256)):
    """Re-evaluate the session under the current settings without acting on it."""
    runtime = get_runtime()
    result = await runtime.orchestrator.resume(code, runtime.settings_snapshot())
    return _step_envelope(result)


# MFA enrollment
@identity_router.get("/mfa-enroll-info", response_model=Envelope)
async def mfa_enroll_info(code: str = Query(..., max_length=256)):
    runtime = get_runtime()
    info = await runtime.orchestrator.mfa_enroll_info(code, runtime.settings_snapshot())
    return Envelope(status="ok", data=info)


@identity_router.post("/authorize-mfa-enroll", response_model=Envelope)
async def authorize_mfa_enroll(body: MfaEnrollRequest, request: Request):
    runtime = get_runtime()
    result = await runtime.orchestrator.advance(
        Step.MFA_ENROLL,
        body.code,
        {"mfa_type": body.mfa_type.value},
        settings=runtime.settings_snapshot(),
        ip=_client_ip(request),
    )
    return _step_envelope(result)


# OTP
@identity_router.get("/otp-setup-info", response_model=Envelope)
async def otp_setup_info(code: str = Query(..., max_length=256)):
    runtime = get_runtime()
    info = await runtime.orchestrator.otp_setup_info(code, runtime.settings_snapshot())
    return Envelope(status="ok", data=info)


@identity_router.get("/otp-mfa-info", response_model=Envelope)
async def otp_mfa_info(code: str = Query(..., max_length=256)):
    runtime = get_runtime()
    info = await runtime.orchestrator.otp_mfa_info(code, runtime.settings_snapshot())
    return Envelope(status="ok", data=info)


async def _verify_step(step: Step, body: MfaCodeRequest, request: Request) -> Envelope:
    runtime = get_runtime()
    result = await runtime.orchestrator.advance(
        step,
        body.code,
        {"mfa_code": body.mfa_code},
        settings=runtime.settings_snapshot(),
        ip=_client_ip(request),
    )
    return _step_envelope(result)


@identity_router.post("/authorize-otp-mfa", response_model=Envelope)
async def authorize_otp_mfa(body: MfaCodeRequest, request: Request):
    return await _verify_step(Step.OTP_MFA, body, request)


# SMS
@identity_router.get("/sms-mfa-info", response_model=Envelope)
async def sms_mfa_info(request: Request, code: str = Query(..., max_length=256)):
    runtime = get_runtime()
    info = await runtime.orchestrator.sms_mfa_info(
        code, runtime.settings_snapshot(), _client_ip(request)
    )
    return Envelope(status="ok", data=info)


@identity_router.post("/setup-sms-mfa", response_model=Envelope)
async def setup_sms_mfa(body: SmsSetupRequest, request: Request):
    runtime = get_runtime()
    data = await runtime.orchestrator.setup_sms_mfa(
        body.code, body.phone_number, runtime.settings_snapshot(), _client_ip(request)
    )
    return Envelope(status="ok", data=data)


async def _send_code(mfa_type: MfaType, body: SessionCodeRequest, request: Request) -> Envelope:
    runtime = get_runtime()
    await runtime.orchestrator.send_mfa_code(
        body.code, mfa_type, runtime.settings_snapshot(), _client_ip(request)
    )
    return Envelope(status="ok", data={"sent": True})


@identity_router.post("/resend-sms-mfa", response_model=Envelope)
async def resend_sms_mfa(body: SessionCodeRequest, request: Request):
    return await _send_code(MfaType.SMS, body, request)


@identity_router.post("/authorize-sms-mfa", response_model=Envelope)
async def authorize_sms_mfa(body: MfaCodeRequest, request: Request):
    return await _verify_step(Step.SMS_MFA, body, request)


# Email
@identity_router.post("/send-email-mfa", response_model=Envelope)
async def send_email_mfa(body: SessionCodeRequest, request: Request):
    return await _send_code(MfaType.EMAIL, body, request)


@identity_router.post("/resend-email-mfa", response_model=Envelope)
async def resend_email_mfa(body: SessionCodeRequest, request: Request):
    return await _send_code(MfaType.EMAIL, body, request)


@identity_router.post("/authorize-email-mfa", response_model=Envelope)
async def authorize_email_mfa(body: MfaCodeRequest, request: Request):
    return await _verify_step(Step.EMAIL_MFA, body, request)


# Consent
@identity_router.get("/consent-info", response_model=Envelope)
async def consent_info(code: str = Query(..., max_length=256)):
    info = await get_runtime().orchestrator.consent_info(code)
    return Envelope(status="ok", data=info)


@identity_router.post("/authorize-consent", response_model=Envelope)
async def authorize_consent(body: ConsentRequest, request: Request):
    runtime = get_runtime()
    if not body.accept:
        data = await runtime.orchestrator.decline_consent(body.code)
        return Envelope(status="ok", data=data)
    result = await runtime.orchestrator.advance(
        Step.CONSENT,
        body.code,
        {},
        settings=runtime.settings_snapshot(),
        ip=_client_ip(request),
    )
    return _step_envelope(result)


@identity_router.post("/logout", response_model=Envelope)
async def logout(
    authorization: Optional[str] = Header(None),
    refresh_token: Optional[str] = Form(None),
    post_logout_redirect_uri: str = Form(""),
):
    runtime = get_runtime()
    redirect = await runtime.tokens.logout(
        _bearer_token(authorization),
        refresh_token,
        post_logout_redirect_uri,
        runtime.settings_snapshot(),
    )
    return Envelope(status="ok", data={"redirect_uri": redirect})


# discovery
@well_known_router.get("/jwks.json")
async def jwks():
    return JSONResponse(content=await get_runtime().keyring.jwks())


@well_known_router.get("/openid-configuration")
async def openid_configuration():
    issuer = get_runtime().settings_snapshot().auth_server_url
    document: Dict[str, Any] = {
        "issuer": issuer,
        "authorization_endpoint": f"{issuer}/oauth2/v1/authorize",
        "token_endpoint": f"{issuer}/oauth2/v1/token",
        "userinfo_endpoint": f"{issuer}/oauth2/v1/userinfo",
        "revocation_endpoint": f"{issuer}/oauth2/v1/revoke",
        "end_session_endpoint": f"{issuer}/oauth2/v1/logout",
        "jwks_uri": f"{issuer}/.well-known/jwks.json",
        "response_types_supported": ["code"],
        "grant_types_supported": ["authorization_code", "refresh_token"],
        "code_challenge_methods_supported": ["S256"],
        "subject_types_supported": ["public"],
        "id_token_signing_alg_values_supported": [JWT_ALGORITHM],
        "token_endpoint_auth_methods_supported": ["none"],
        "scopes_supported": sorted(STANDARD_SCOPES),
    }
    return JSONResponse(content=document)
