from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol

from lumenauth.storage.models import App, Org, PasskeyCredential, User


class Directory(Protocol):
    """Durable users/apps/roles/orgs/consents store.

    Lookups exclude soft-deleted rows. Uniqueness violations raise
    ``ConstraintViolation``.
    """

    # users
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_auth_id(self, auth_id: str) -> Optional[User]: ...

    def get_user_by_social(self, provider: str, provider_uid: str) -> Optional[User]: ...

    def create_user(
        self,
        email: str,
        *,
        otp_secret: str,
        password_hash: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        locale: str = "en",
        org_slug: Optional[str] = None,
        social_provider: Optional[str] = None,
        social_uid: Optional[str] = None,
    ) -> User: ...

    def enroll_mfa(self, user_id: str, mfa_type: str) -> Optional[User]: ...

    def mark_otp_verified(self, user_id: str) -> Optional[User]: ...

    def set_sms_phone_number(self, user_id: str, phone_number: str) -> Optional[User]: ...

    def mark_sms_phone_verified(self, user_id: str) -> Optional[User]: ...

    def soft_delete_user(self, user_id: str) -> bool: ...

    # roles
    def get_user_roles(self, user_id: str) -> List[str]: ...

    def assign_user_role(self, user_id: str, role: str) -> None: ...

    # apps
    def create_app(
        self,
        name: str,
        *,
        redirect_uris: List[str],
        scopes: List[str],
        app_type: str = "spa",
        client_id: Optional[str] = None,
    ) -> App: ...

    def get_app_by_client_id(self, client_id: str) -> Optional[App]: ...

    def soft_delete_app(self, app_id: str) -> bool: ...

    # orgs
    def create_org(self, slug: str, name: str) -> Org: ...

    def get_org_by_slug(self, slug: str) -> Optional[Org]: ...

    # consents
    def has_consent(self, user_id: str, app_id: str) -> bool: ...

    def create_consent(self, user_id: str, app_id: str) -> None: ...

    # passkeys
    def add_passkey_credential(
        self, user_id: str, credential_id: str, public_key: bytes, sign_count: int = 0
    ) -> PasskeyCredential: ...

    def get_passkey_credential(self, credential_id: str) -> Optional[PasskeyCredential]: ...

    def update_passkey_sign_count(self, credential_id: str, sign_count: int) -> bool: ...

    # runtime overrides
    def get_system_settings(self) -> Dict[str, Any]: ...

    def set_system_settings(self, values: Dict[str, Any]) -> None: ...
