from __future__ import annotations

from lumenauth.config import Settings
from lumenauth.logging import get_logger
from lumenauth.storage.directory import Directory

logger = get_logger(__name__)


class ConsentManager:
    """Per-(user, app) consent records, created once and never revoked here."""

    def __init__(self, directory: Directory) -> None:
        self.directory = directory

    def has_consent(self, user_id: str, app_id: str) -> bool:
        return self.directory.has_consent(user_id, app_id)

    def grant_consent(self, user_id: str, app_id: str) -> None:
        if self.directory.has_consent(user_id, app_id):
            return
        self.directory.create_consent(user_id, app_id)
        logger.info("user_app_consent_granted", user_id=user_id, app_id=app_id)

    def is_satisfied(self, settings: Settings, user_id: str, app_id: str) -> bool:
        """True when consent exists or the consent step is switched off."""
        if not settings.enable_user_app_consent:
            return True
        return self.has_consent(user_id, app_id)
