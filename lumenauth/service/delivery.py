from __future__ import annotations

import asyncio
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol

import httpx

from lumenauth.logging import get_logger

logger = get_logger(__name__)


class EmailSender(Protocol):
    async def send_mfa_code(self, to_email: str, code: str, locale: str = "en") -> bool: ...


class SmsSender(Protocol):
    async def send_sms(self, to_number: str, body: str) -> bool: ...


def _redact_email(email: str) -> str:
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


_MFA_SUBJECTS = {
    "en": "Your verification code",
    "fr": "Votre code de vérification",
}


class SmtpEmailSender:
    """Sends MFA codes over SMTP.

    Without an SMTP host the message is logged instead of sent, which keeps
    local development and tests working without a mail server.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "LumenAuth",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _send_email(self, to_email: str, subject: str, text_body: str) -> bool:
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=_redact_email(to_email),
                subject=subject,
            )
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email
            msg.attach(MIMEText(text_body, "plain"))

            context = ssl.create_default_context()
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())

            logger.info("email_sent", to=_redact_email(to_email), subject=subject)
            return True
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=_redact_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=_redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_transport_error",
                to=_redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False

    async def send_mfa_code(self, to_email: str, code: str, locale: str = "en") -> bool:
        subject = _MFA_SUBJECTS.get(locale, _MFA_SUBJECTS["en"])
        text_body = f"""{subject}

{code}

This code expires in a few minutes. If you did not try to sign in, you can ignore this email.

---
{self.from_name}
"""
        return await asyncio.to_thread(self._send_email, to_email, subject, text_body)


class HttpSmsSender:
    """Posts SMS messages to a Twilio-compatible Messages endpoint."""

    def __init__(
        self,
        *,
        api_url: Optional[str] = None,
        account_id: Optional[str] = None,
        auth_token: Optional[str] = None,
        sender_number: Optional[str] = None,
        timeout: float = 10.0,
    ) -> None:
        self.api_url = api_url
        self.account_id = account_id
        self.auth_token = auth_token
        self.sender_number = sender_number
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.api_url and self.account_id and self.auth_token and self.sender_number)

    async def send_sms(self, to_number: str, body: str) -> bool:
        if not self.is_configured:
            logger.info("sms_dev_mode", phone=to_number)
            return True
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    self.api_url,
                    data={"To": to_number, "From": self.sender_number, "Body": body},
                    auth=(self.account_id, self.auth_token),
                )
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "sms_http_error",
                phone=to_number,
                status_code=e.response.status_code,
            )
            return False
        except httpx.HTTPError as e:
            logger.error("sms_send_failed", phone=to_number, error=str(e))
            return False
        logger.info("sms_sent", phone=to_number)
        return True
