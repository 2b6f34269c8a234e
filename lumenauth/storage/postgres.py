from __future__ import annotations

import base64
import contextlib
import hashlib
import json
import secrets
import uuid
from typing import Any, Dict, Iterator, List, Optional

import psycopg
from cryptography.fernet import Fernet, InvalidToken
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from lumenauth.logging import get_logger
from lumenauth.storage.errors import ConstraintViolation, DirectoryUnavailable
from lumenauth.storage.models import App, Org, PasskeyCredential, User

_REQUIRED_TABLES = (
    "org",
    "app_user",
    "user_role",
    "client_app",
    "user_app_consent",
    "passkey_credential",
    "instance_config",
)

_USER_COLUMNS = """
    id, auth_id, email, password_hash, otp_secret, otp_verified, mfa_types,
    sms_phone_number, sms_phone_number_verified, social_provider, social_uid,
    first_name, last_name, locale, org_slug, is_active, created_at, deleted_at
"""


class PostgresStore:
    """Postgres-backed directory.

    OTP secrets are encrypted at rest with Fernet; everything else is stored
    as-is. Run ``sql/001_identity.sql`` before first start.
    """

    def __init__(self, dsn: str, *, otp_secret_key: str | None) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        if not otp_secret_key:
            raise RuntimeError("OTP_SECRET_KEY is required for the Postgres directory")
        self._otp_cipher = Fernet(self._derive_cipher_key(otp_secret_key))
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    @contextlib.contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except psycopg.OperationalError as exc:
            self.logger.error("directory_unavailable", error=str(exc))
            raise DirectoryUnavailable("directory unavailable") from exc

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing.append(table)
        if missing:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply sql/001_identity.sql first.".format(
                    ", ".join(sorted(missing))
                )
            )

    def _encrypt_otp_secret(self, secret: str) -> str:
        return self._otp_cipher.encrypt(secret.encode()).decode()

    def _decrypt_otp_secret(self, token: str) -> str:
        try:
            return self._otp_cipher.decrypt(token.encode()).decode()
        except InvalidToken as exc:
            # a rotated OTP_SECRET_KEY makes every stored secret unreadable
            raise RuntimeError("Unable to decrypt OTP secret; check OTP_SECRET_KEY") from exc

    def _row_to_user(self, row: Optional[dict]) -> Optional[User]:
        if not row:
            return None
        return User(
            id=str(row["id"]),
            auth_id=str(row["auth_id"]),
            email=str(row["email"]),
            password_hash=row.get("password_hash"),
            otp_secret=self._decrypt_otp_secret(row["otp_secret"]),
            otp_verified=bool(row.get("otp_verified")),
            mfa_types=list(row.get("mfa_types") or []),
            sms_phone_number=row.get("sms_phone_number"),
            sms_phone_number_verified=bool(row.get("sms_phone_number_verified")),
            social_provider=row.get("social_provider"),
            social_uid=row.get("social_uid"),
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            locale=row.get("locale") or "en",
            org_slug=row.get("org_slug"),
            is_active=row.get("is_active", True),
            created_at=row["created_at"],
            deleted_at=row.get("deleted_at"),
        )

    @staticmethod
    def _row_to_app(row: Optional[dict]) -> Optional[App]:
        if not row:
            return None
        return App(
            id=str(row["id"]),
            client_id=row["client_id"],
            name=row["name"],
            type=row.get("type") or "spa",
            redirect_uris=list(row.get("redirect_uris") or []),
            scopes=list(row.get("scopes") or []),
            is_active=row.get("is_active", True),
            created_at=row["created_at"],
            deleted_at=row.get("deleted_at"),
        )

    def _fetch_user(self, where: str, params: tuple) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE {where} AND deleted_at IS NULL",
                params,
            ).fetchone()
        return self._row_to_user(row)

    def _update_user(self, user_id: str, assignments: str, params: tuple) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE app_user SET {assignments} WHERE id = %s AND deleted_at IS NULL "
                f"RETURNING {_USER_COLUMNS}",
                (*params, user_id),
            ).fetchone()
        return self._row_to_user(row)

    # users
    def get_user(self, user_id: str) -> Optional[User]:
        return self._fetch_user("id = %s", (user_id,))

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._fetch_user("email = %s", (email.strip().lower(),))

    def get_user_by_auth_id(self, auth_id: str) -> Optional[User]:
        return self._fetch_user("auth_id = %s", (auth_id,))

    def get_user_by_social(self, provider: str, provider_uid: str) -> Optional[User]:
        return self._fetch_user(
            "social_provider = %s AND social_uid = %s", (provider, provider_uid)
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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO app_user (
                        id, auth_id, email, password_hash, otp_secret, first_name,
                        last_name, locale, org_slug, social_provider, social_uid
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING {_USER_COLUMNS}
                    """,
                    (
                        str(uuid.uuid4()),
                        str(uuid.uuid4()),
                        email.strip().lower(),
                        password_hash,
                        self._encrypt_otp_secret(otp_secret),
                        first_name,
                        last_name,
                        locale,
                        org_slug,
                        social_provider,
                        social_uid,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", "") or ""
            if "social" in constraint:
                raise ConstraintViolation(
                    "social account already linked", field="social_account"
                ) from exc
            raise ConstraintViolation("email already exists", field="email") from exc
        return self._row_to_user(row)

    def enroll_mfa(self, user_id: str, mfa_type: str) -> Optional[User]:
        # array_append guarded in SQL so concurrent enrolls cannot duplicate
        return self._update_user(
            user_id,
            "mfa_types = CASE WHEN %s = ANY(mfa_types) THEN mfa_types "
            "ELSE array_append(mfa_types, %s) END",
            (mfa_type, mfa_type),
        )

    def mark_otp_verified(self, user_id: str) -> Optional[User]:
        return self._update_user(user_id, "otp_verified = true", ())

    def set_sms_phone_number(self, user_id: str, phone_number: str) -> Optional[User]:
        return self._update_user(
            user_id,
            "sms_phone_number = %s, sms_phone_number_verified = false",
            (phone_number,),
        )

    def mark_sms_phone_verified(self, user_id: str) -> Optional[User]:
        return self._update_user(user_id, "sms_phone_number_verified = true", ())

    def soft_delete_user(self, user_id: str) -> bool:
        return self._update_user(user_id, "deleted_at = now()", ()) is not None

    # roles
    def get_user_roles(self, user_id: str) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT role FROM user_role WHERE user_id = %s ORDER BY role", (user_id,)
            ).fetchall()
        return [row["role"] for row in rows]

    def assign_user_role(self, user_id: str, role: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO user_role (user_id, role) VALUES (%s, %s)
                ON CONFLICT (user_id, role) DO NOTHING
                """,
                (user_id, role),
            )

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO client_app (id, client_id, name, type, redirect_uris, scopes)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        str(uuid.uuid4()),
                        client_id or secrets.token_hex(16),
                        name,
                        app_type,
                        list(redirect_uris),
                        list(scopes),
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("client id already exists", field="client_id") from exc
        return self._row_to_app(row)

    def get_app_by_client_id(self, client_id: str) -> Optional[App]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM client_app WHERE client_id = %s AND deleted_at IS NULL",
                (client_id,),
            ).fetchone()
        return self._row_to_app(row)

    def soft_delete_app(self, app_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE client_app SET deleted_at = now() WHERE id = %s AND deleted_at IS NULL RETURNING id",
                (app_id,),
            ).fetchone()
        return row is not None

    # orgs
    def create_org(self, slug: str, name: str) -> Org:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "INSERT INTO org (id, slug, name) VALUES (%s, %s, %s) RETURNING *",
                    (str(uuid.uuid4()), slug, name),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("org slug already exists", field="slug") from exc
        return Org(id=str(row["id"]), slug=row["slug"], name=row["name"], created_at=row["created_at"])

    def get_org_by_slug(self, slug: str) -> Optional[Org]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM org WHERE slug = %s AND deleted_at IS NULL", (slug,)
            ).fetchone()
        if not row:
            return None
        return Org(id=str(row["id"]), slug=row["slug"], name=row["name"], created_at=row["created_at"])

    # consents
    def has_consent(self, user_id: str, app_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 AS found FROM user_app_consent WHERE user_id = %s AND app_id = %s",
                (user_id, app_id),
            ).fetchone()
        return row is not None

    def create_consent(self, user_id: str, app_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO user_app_consent (user_id, app_id) VALUES (%s, %s)
                ON CONFLICT (user_id, app_id) DO NOTHING
                """,
                (user_id, app_id),
            )

    # passkeys
    @staticmethod
    def _row_to_passkey(row: Optional[dict]) -> Optional[PasskeyCredential]:
        if not row:
            return None
        return PasskeyCredential(
            credential_id=row["credential_id"],
            user_id=str(row["user_id"]),
            public_key=bytes(row["public_key"]),
            sign_count=int(row["sign_count"]),
            created_at=row["created_at"],
            last_used_at=row.get("last_used_at"),
        )

    def add_passkey_credential(
        self, user_id: str, credential_id: str, public_key: bytes, sign_count: int = 0
    ) -> PasskeyCredential:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO passkey_credential (credential_id, user_id, public_key, sign_count)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (credential_id, user_id, bytes(public_key), sign_count),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "passkey credential already exists", field="credential_id"
            ) from exc
        return self._row_to_passkey(row)

    def get_passkey_credential(self, credential_id: str) -> Optional[PasskeyCredential]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT c.* FROM passkey_credential c
                JOIN app_user u ON u.id = c.user_id
                WHERE c.credential_id = %s AND u.deleted_at IS NULL
                """,
                (credential_id,),
            ).fetchone()
        return self._row_to_passkey(row)

    def update_passkey_sign_count(self, credential_id: str, sign_count: int) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE passkey_credential SET sign_count = %s, last_used_at = now()
                WHERE credential_id = %s RETURNING credential_id
                """,
                (sign_count, credential_id),
            ).fetchone()
        return row is not None

    # runtime overrides
    def get_system_settings(self) -> Dict[str, Any]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT config FROM instance_config WHERE name = %s", ("system_settings",)
            ).fetchone()
        raw_config = row.get("config") if row else {}
        if isinstance(raw_config, str):
            try:
                return json.loads(raw_config)
            except json.JSONDecodeError as exc:
                self.logger.warning("system_settings_parse_failed", error=str(exc))
                return {}
        return dict(raw_config or {})

    def set_system_settings(self, values: Dict[str, Any]) -> None:
        merged = {**self.get_system_settings(), **values}
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO instance_config (name, config, created_at, updated_at)
                VALUES (%s, %s, now(), now())
                ON CONFLICT (name) DO UPDATE SET config = EXCLUDED.config, updated_at = EXCLUDED.updated_at
                """,
                ("system_settings", json.dumps(merged)),
            )
        self.logger.info("system_settings_updated", keys=sorted(values))

    def close(self) -> None:
        self.pool.close()
