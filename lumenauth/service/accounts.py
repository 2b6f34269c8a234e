from __future__ import annotations

from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from lumenauth.logging import get_logger
from lumenauth.service.errors import ConflictError, ValidationError
from lumenauth.service.mfa import generate_otp_secret
from lumenauth.storage.directory import Directory
from lumenauth.storage.errors import ConstraintViolation
from lumenauth.storage.models import User

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8

# Verified against when the email is unknown so both paths cost one hash check.
_DUMMY_HASH = PasswordHasher(type=Type.ID).hash("lumenauth-unknown-user")


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class AccountService:
    """User creation and password checks on top of the directory."""

    def __init__(self, directory: Directory) -> None:
        self.directory = directory
        self._pwd_hasher = PasswordHasher(type=Type.ID)

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def authenticate(self, email: str, password: str) -> Optional[User]:
        """Return the user when ``password`` matches, otherwise ``None``.

        Unknown email, missing password hash and wrong password all look the
        same to the caller.
        """
        user = self.directory.get_user_by_email(normalize_email(email))
        stored_hash = user.password_hash if user else None
        try:
            self._pwd_hasher.verify(stored_hash or _DUMMY_HASH, password or "")
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return None
        if user is None or not stored_hash or not user.is_active:
            return None
        return user

    def register(
        self,
        email: str,
        password: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        locale: str = "en",
        org_slug: Optional[str] = None,
    ) -> User:
        normalized = normalize_email(email)
        if "@" not in normalized:
            raise ValidationError("invalid email", detail={"field": "email"})
        if len(password or "") < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"password must be at least {MIN_PASSWORD_LENGTH} characters",
                detail={"field": "password"},
            )
        try:
            user = self.directory.create_user(
                normalized,
                otp_secret=generate_otp_secret(),
                password_hash=self.hash_password(password),
                first_name=first_name,
                last_name=last_name,
                locale=locale,
                org_slug=org_slug,
            )
        except ConstraintViolation as exc:
            logger.info("account_create_conflict", field=exc.field)
            raise ConflictError("account already exists", detail={"field": exc.field}) from exc
        logger.info("account_created", user_id=user.id)
        return user

    def find_or_create_social(
        self,
        provider: str,
        provider_uid: str,
        email: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        locale: str = "en",
        org_slug: Optional[str] = None,
    ) -> User:
        """Resolve a social identity, creating the user on first sign-in."""
        user = self.directory.get_user_by_social(provider, provider_uid)
        if user is not None:
            return user
        normalized = normalize_email(email)
        if self.directory.get_user_by_email(normalized) is not None:
            # an existing password account is never taken over by a social login
            raise ConflictError("email already registered", detail={"field": "email"})
        try:
            user = self.directory.create_user(
                normalized,
                otp_secret=generate_otp_secret(),
                first_name=first_name,
                last_name=last_name,
                locale=locale,
                org_slug=org_slug,
                social_provider=provider,
                social_uid=provider_uid,
            )
        except ConstraintViolation as exc:
            raise ConflictError("account already exists", detail={"field": exc.field}) from exc
        logger.info("social_account_created", user_id=user.id, provider=provider)
        return user
