from __future__ import annotations

import secrets
import threading
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set, Tuple

from lumenauth.logging import get_logger
from lumenauth.storage.errors import ConstraintViolation
from lumenauth.storage.models import App, Org, PasskeyCredential, User, UserAppConsent


class MemoryStore:
    """In-memory directory used in tests and single-node development."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.apps: Dict[str, App] = {}
        self.orgs: Dict[str, Org] = {}
        self.user_roles: Dict[str, Set[str]] = {}
        self.consents: Dict[Tuple[str, str], UserAppConsent] = {}
        self.passkey_credentials: Dict[str, PasskeyCredential] = {}
        self.system_settings: Dict[str, Any] = {}
        # RLock so helpers can be nested within one operation
        self._data_lock = threading.RLock()

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    def _live_users(self):
        return (u for u in self.users.values() if u.deleted_at is None)

    def _update_user(self, user_id: str, **changes: Any) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.deleted_at is not None:
                return None
            updated = replace(user, **changes)
            self.users[user_id] = updated
            return updated

    # users
    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return user if user and user.deleted_at is None else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            return next((u for u in self._live_users() if u.email == normalized), None)

    def get_user_by_auth_id(self, auth_id: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self._live_users() if u.auth_id == auth_id), None)

    def get_user_by_social(self, provider: str, provider_uid: str) -> Optional[User]:
        with self._data_lock:
            return next(
                (
                    u
                    for u in self._live_users()
                    if u.social_provider == provider and u.social_uid == provider_uid
                ),
                None,
            )

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
    ) -> User:
        normalized = email.strip().lower()
        with self._data_lock:
            if self.get_user_by_email(normalized):
                raise ConstraintViolation("email already exists", field="email")
            if social_provider and self.get_user_by_social(social_provider, social_uid or ""):
                raise ConstraintViolation(
                    "social account already linked", field="social_account"
                )
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                password_hash=password_hash,
                otp_secret=otp_secret,
                first_name=first_name,
                last_name=last_name,
                locale=locale,
                org_slug=org_slug,
                social_provider=social_provider,
                social_uid=social_uid,
            )
            self.users[user.id] = user
            return user

    def enroll_mfa(self, user_id: str, mfa_type: str) -> Optional[User]:
        with self._data_lock:
            user = self.get_user(user_id)
            if not user:
                return None
            if mfa_type in user.mfa_types:
                return user
            return self._update_user(user_id, mfa_types=[*user.mfa_types, mfa_type])

    def mark_otp_verified(self, user_id: str) -> Optional[User]:
        return self._update_user(user_id, otp_verified=True)

    def set_sms_phone_number(self, user_id: str, phone_number: str) -> Optional[User]:
        return self._update_user(
            user_id, sms_phone_number=phone_number, sms_phone_number_verified=False
        )

    def mark_sms_phone_verified(self, user_id: str) -> Optional[User]:
        return self._update_user(user_id, sms_phone_number_verified=True)

    def soft_delete_user(self, user_id: str) -> bool:
        return self._update_user(user_id, deleted_at=self._now()) is not None

    # roles
    def get_user_roles(self, user_id: str) -> List[str]:
        with self._data_lock:
            return sorted(self.user_roles.get(user_id, set()))

    def assign_user_role(self, user_id: str, role: str) -> None:
        with self._data_lock:
            self.user_roles.setdefault(user_id, set()).add(role)

    # apps
    def create_app(
        self,
        name: str,
        *,
        redirect_uris: List[str],
        scopes: List[str],
        app_type: str = "spa",
        client_id: Optional[str] = None,
    ) -> App:
        with self._data_lock:
            resolved_client_id = client_id or secrets.token_hex(16)
            if any(a.client_id == resolved_client_id for a in self.apps.values()):
                raise ConstraintViolation("client id already exists", field="client_id")
            app = App(
                id=str(uuid.uuid4()),
                client_id=resolved_client_id,
                name=name,
                type=app_type,
                redirect_uris=list(redirect_uris),
                scopes=list(scopes),
            )
            self.apps[app.id] = app
            return app

    def get_app_by_client_id(self, client_id: str) -> Optional[App]:
        with self._data_lock:
            return next(
                (
                    a
                    for a in self.apps.values()
                    if a.client_id == client_id and a.deleted_at is None
                ),
                None,
            )

    def soft_delete_app(self, app_id: str) -> bool:
        with self._data_lock:
            app = self.apps.get(app_id)
            if not app or app.deleted_at is not None:
                return False
            self.apps[app_id] = replace(app, deleted_at=self._now())
            return True

    # orgs
    def create_org(self, slug: str, name: str) -> Org:
        with self._data_lock:
            if self.get_org_by_slug(slug):
                raise ConstraintViolation("org slug already exists", field="slug")
            org = Org(id=str(uuid.uuid4()), slug=slug, name=name)
            self.orgs[org.id] = org
            return org

    def get_org_by_slug(self, slug: str) -> Optional[Org]:
        with self._data_lock:
            return next(
                (o for o in self.orgs.values() if o.slug == slug and o.deleted_at is None),
                None,
            )

    # consents
    def has_consent(self, user_id: str, app_id: str) -> bool:
        with self._data_lock:
            return (user_id, app_id) in self.consents

    def create_consent(self, user_id: str, app_id: str) -> None:
        with self._data_lock:
            self.consents.setdefault(
                (user_id, app_id), UserAppConsent(user_id=user_id, app_id=app_id)
            )

    # passkeys
    def add_passkey_credential(
        self, user_id: str, credential_id: str, public_key: bytes, sign_count: int = 0
    ) -> PasskeyCredential:
        with self._data_lock:
            if credential_id in self.passkey_credentials:
                raise ConstraintViolation(
                    "passkey credential already exists", field="credential_id"
                )
            credential = PasskeyCredential(
                credential_id=credential_id,
                user_id=user_id,
                public_key=bytes(public_key),
                sign_count=sign_count,
            )
            self.passkey_credentials[credential_id] = credential
            return credential

    def get_passkey_credential(self, credential_id: str) -> Optional[PasskeyCredential]:
        with self._data_lock:
            credential = self.passkey_credentials.get(credential_id)
            if credential is None:
                return None
            user = self.users.get(credential.user_id)
            if user is None or user.deleted_at is not None:
                return None
            return credential

    def update_passkey_sign_count(self, credential_id: str, sign_count: int) -> bool:
        with self._data_lock:
            credential = self.passkey_credentials.get(credential_id)
            if credential is None:
                return False
            self.passkey_credentials[credential_id] = replace(
                credential, sign_count=sign_count, last_used_at=self._now()
            )
            return True

    # runtime overrides
    def get_system_settings(self) -> Dict[str, Any]:
        with self._data_lock:
            return dict(self.system_settings)

    def set_system_settings(self, values: Dict[str, Any]) -> None:
        with self._data_lock:
            self.system_settings.update(values)
            self.logger.info("system_settings_updated", keys=sorted(values))
